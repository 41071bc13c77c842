"""Session lifecycle and priority buffering for tracked events."""

import logging
import uuid
from typing import Any, Callable, Dict, List, Optional

from ..core.config import TrackerConfig
from ..core.priority import EventPriority
from .device import DeviceInfo, IPLocation, PageInfo, generate_fingerprint, get_page_info
from .events import SessionData, SessionEndReason, SessionState, TrackingEvent, UserBehavior
from .host import MemoryStore, PersistentStore
from .scheduler import Scheduler

logger = logging.getLogger(__name__)

VISITOR_ID_KEY = "beacon_visitor_id"

# payload, priority -> queue id
Sender = Callable[[Dict[str, Any], EventPriority], Any]

# Field names accepted by update_user_behavior, with the collector aliases they may arrive under
_BEHAVIOR_ALIASES = {
    "clicks": "click_count",
    "keystrokes": "keyboard_events",
    "mouse_moves": "mouse_movements",
}


class SessionManager:
    """Owns the single live session of a page and its two event buffers.

    Urgent events are coalesced and flushed ``immediate_flush_delay`` after
    the first one arrives. Everything else waits in the batched buffer until
    it holds ``event_buffer_size`` events or the batch timer fires. All
    methods must be called from the scheduler's loop.
    """

    def __init__(self, sender: Sender, scheduler: Scheduler, config: Optional[TrackerConfig] = None,
                 store: Optional[PersistentStore] = None, device: Optional[DeviceInfo] = None,
                 page: Optional[PageInfo] = None, location: Optional[IPLocation] = None):
        self.sender = sender
        self.scheduler = scheduler
        self.config = config or TrackerConfig()
        self.store = store or MemoryStore()
        self.device = device or DeviceInfo()
        self.page = page or PageInfo()
        self.location = location or IPLocation()

        self.session: Optional[SessionData] = None
        self.state = SessionState.ABSENT
        self._urgent: List[TrackingEvent] = []
        self._batched: List[TrackingEvent] = []
        self._page_started = scheduler.now()

        self._immediate_handle = None
        self._batch_handle = None
        self._heartbeat_handle = None
        self._inactivity_handle = None
        self._end_callbacks: List[Callable[[SessionData], None]] = []

    def on_session_end(self, callback: Callable[[SessionData], None]):
        self._end_callbacks.append(callback)

    @property
    def is_active(self) -> bool:
        return self.state is SessionState.ACTIVE

    @property
    def session_id(self) -> Optional[str]:
        return self.session.session_id if self.session else None

    @property
    def visitor_id(self) -> Optional[str]:
        return self.session.visitor_id if self.session else None

    def buffered(self) -> Dict[str, int]:
        return {"urgent": len(self._urgent), "batched": len(self._batched)}

    # ---- lifecycle ----

    def start_session(self) -> SessionData:
        """Start a session, or return the active one unchanged."""
        if self.is_active and self.session:
            logger.debug(f"Session {self.session.session_id} already active")
            return self.session

        now = self.scheduler.now()
        stamp = self._stamp()
        visitor_id = self._get_or_create_visitor_id()
        self.session = SessionData(
            session_id=str(uuid.uuid4()),
            visitor_id=visitor_id,
            business_id=str(self.config.business_id),
            fingerprint=generate_fingerprint(self.device, visitor_id),
            started_at=stamp,
            started_monotonic=now,
            device_info=self.device,
            page_info=self.page,
            ip_location=self.location,
            user_behavior=UserBehavior(),
            last_activity_at=stamp,
        )
        self.state = SessionState.ACTIVE
        self._urgent = []
        self._batched = []
        self._page_started = now

        self._arm_heartbeat()
        self._arm_batch_timer()
        self._reset_inactivity_timer()
        logger.info(f"Session started: {self.session.session_id} (visitor {visitor_id})")

        self._enqueue(self._make_event("session", "session_start", self.session.snapshot()))
        return self.session

    def end_session(self, reason: SessionEndReason = SessionEndReason.MANUAL):
        """Close the session and hand every buffered event to delivery before returning."""
        if not self.is_active or self.session is None:
            logger.debug("No active session to end")
            return

        session = self.session
        self._refresh_durations()
        session.ended_at = self._stamp()
        session.end_reason = reason

        self._enqueue(self._make_event("session", "session_end", {
            "reason": reason.value,
            "endedAt": session.ended_at,
            "totalDuration": int(session.user_behavior.session_duration),
            "finalPageUrl": session.page_info.url,
            "finalScrollDepth": session.user_behavior.max_scroll_percentage,
        }))
        self.state = SessionState.ENDED
        self._flush_urgent()
        self._flush_batched()
        self._stop_timers()
        logger.info(f"Session ended: {session.session_id} ({reason.value})")

        for callback in list(self._end_callbacks):
            try:
                callback(session)
            except Exception:
                logger.exception("Session end callback failed")

    def reset(self):
        self._stop_timers()
        self.session = None
        self.state = SessionState.ABSENT
        self._urgent = []
        self._batched = []

    # ---- events ----

    def add_event(self, event: TrackingEvent):
        """Classify and buffer an externally produced event."""
        if self._enqueue(event):
            self.record_signal()

    def track(self, category: str, event_type: str, event_data: Optional[Dict[str, Any]] = None) -> Optional[TrackingEvent]:
        if not self.is_active:
            logger.warning(f"No active session, dropping {category}/{event_type}")
            return None
        event = self._make_event(category, event_type, event_data or {})
        self.add_event(event)
        return event

    def flush_now(self):
        self._flush_urgent()
        self._flush_batched()

    def record_signal(self):
        """Note user activity observed on the page; restarts the inactivity timer."""
        if not self.is_active or self.session is None:
            return
        self.session.last_activity_at = self._stamp()
        self.session.user_behavior.is_active = True
        self._reset_inactivity_timer()

    def update_user_behavior(self, **updates: Any):
        """Merge collector stats into the session's behavior snapshot."""
        if self.session is None:
            return
        behavior = self.session.user_behavior
        for key, value in updates.items():
            name = _BEHAVIOR_ALIASES.get(key, key)
            if hasattr(behavior, name):
                setattr(behavior, name, value)
            else:
                logger.debug(f"Ignoring unknown behavior field '{key}'")

    def update_page(self, url: str, title: str = "", referrer: str = ""):
        """Record client-side navigation to a new URL."""
        self.page = get_page_info(url, title, referrer or self.page.url)
        self._page_started = self.scheduler.now()
        if self.session is not None:
            utm = self.session.page_info.utm or self.page.utm
            self.session.page_info = self.page
            self.session.page_info.utm = utm

    def handle_unload(self):
        if self.is_active:
            self.end_session(SessionEndReason.WINDOW_CLOSE)

    def handle_visibility(self, hidden: bool):
        if not self.is_active or self.session is None:
            return
        data = {"timestamp": self.scheduler.wall_time().timestamp()}
        if hidden:
            self.session.user_behavior.visibility_changes += 1
            self._enqueue(self._make_event("visibility", "tab_hidden", data))
            # The page may be discarded while hidden
            self.flush_now()
        else:
            self.record_signal()
            self._enqueue(self._make_event("visibility", "tab_visible", data))

    # ---- internals ----

    def _make_event(self, category: str, event_type: str, event_data: Dict[str, Any]) -> TrackingEvent:
        session = self.session
        return TrackingEvent(
            event_type=event_type,
            category=category,
            session_id=session.session_id if session else "",
            visitor_id=session.visitor_id if session else "",
            business_id=str(self.config.business_id),
            event_data=event_data,
            page_url=self.page.url,
            page_title=self.page.title,
            timestamp=self._stamp(),
            client_timestamp=self.scheduler.wall_time().timestamp(),
        )

    def _enqueue(self, event: TrackingEvent) -> bool:
        if not self.is_active or self.session is None:
            logger.warning(f"No active session, dropping event {event.event_type}")
            return False
        if not event.event_type:
            logger.warning("Dropping event without an event type")
            return False

        event.session_id = event.session_id or self.session.session_id
        event.visitor_id = event.visitor_id or self.session.visitor_id
        event.business_id = event.business_id or self.session.business_id
        event.timestamp = event.timestamp or self._stamp()
        event.classify()
        self.session.event_count += 1

        if event.priority.is_urgent:
            self._urgent.append(event)
            self._schedule_immediate_flush()
        else:
            self._batched.append(event)
            if len(self._batched) >= self.config.event_buffer_size:
                self._flush_batched()
        logger.debug(f"Buffered {event.category}/{event.event_type} ({event.priority.value})")
        return True

    def _schedule_immediate_flush(self):
        if self._immediate_handle is not None:
            return
        self._immediate_handle = self.scheduler.call_later(self.config.immediate_flush_delay, self._on_immediate_timer)

    def _on_immediate_timer(self):
        self._immediate_handle = None
        self._flush_urgent()

    def _flush_urgent(self):
        self.scheduler.cancel(self._immediate_handle)
        self._immediate_handle = None
        events, self._urgent = self._urgent, []
        self._hand_off(events, EventPriority.IMMEDIATE, requeue=self._urgent)

    def _flush_batched(self):
        events, self._batched = self._batched, []
        if not events:
            return
        priority = min((e.priority for e in events), key=lambda p: p.rank)
        self._hand_off(events, priority, requeue=self._batched)

    def _hand_off(self, events: List[TrackingEvent], priority: EventPriority, requeue: List[TrackingEvent]):
        if not events or self.session is None:
            return
        payload = self._build_batch(events)
        try:
            self.sender(payload, priority)
        except Exception:
            logger.exception(f"Could not queue {len(events)} events, keeping them buffered")
            requeue[:0] = events
            return
        logger.debug(f"Handed {len(events)} events to delivery ({priority.value})")

    def _build_batch(self, events: List[TrackingEvent]) -> Dict[str, Any]:
        self._refresh_durations()
        return {
            "type": "batch_events",
            "sessionData": self.session.snapshot(),
            "events": [event.to_wire() for event in events],
        }

    def _refresh_durations(self):
        if self.session is None or not self.session.is_active:
            return
        now = self.scheduler.now()
        behavior = self.session.user_behavior
        behavior.session_duration = now - self.session.started_monotonic
        behavior.time_on_page = now - self._page_started

    def _get_or_create_visitor_id(self) -> str:
        visitor_id = self.store.get_persistent_value(VISITOR_ID_KEY)
        if visitor_id:
            logger.debug(f"Existing visitor id {visitor_id}")
            return visitor_id
        visitor_id = str(uuid.uuid4())
        self.store.set_persistent_value(VISITOR_ID_KEY, visitor_id)
        logger.debug(f"New visitor id {visitor_id}")
        return visitor_id

    def _stamp(self) -> str:
        return self.scheduler.wall_time().isoformat()

    # ---- timers ----

    def _arm_heartbeat(self):
        self._heartbeat_handle = self.scheduler.call_later(self.config.heartbeat_interval, self._on_heartbeat)

    def _on_heartbeat(self):
        self._heartbeat_handle = None
        if not self.is_active or self.session is None:
            return
        self._refresh_durations()
        behavior = self.session.user_behavior
        # Not routed through record_signal: liveness is not user activity
        self._enqueue(self._make_event("heartbeat", "heartbeat", {
            "isActive": behavior.is_active,
            "scrollDepth": behavior.max_scroll_percentage,
            "timeOnPage": int(behavior.time_on_page),
        }))
        self._arm_heartbeat()

    def _arm_batch_timer(self):
        self._batch_handle = self.scheduler.call_later(self.config.batch_flush_interval, self._on_batch_timer)

    def _on_batch_timer(self):
        self._batch_handle = None
        if not self.is_active:
            return
        self._flush_batched()
        self._arm_batch_timer()

    def _reset_inactivity_timer(self):
        self.scheduler.cancel(self._inactivity_handle)
        self._inactivity_handle = self.scheduler.call_later(self.config.inactivity_timeout, self._on_inactivity)

    def _on_inactivity(self):
        self._inactivity_handle = None
        if not self.is_active or self.session is None:
            return
        self.session.user_behavior.inactivity_count += 1
        self.session.user_behavior.is_active = False
        logger.info(f"Session {self.session.session_id} inactive for {self.config.inactivity_timeout:.0f}s")
        self.end_session(SessionEndReason.INACTIVITY)

    def _stop_timers(self):
        for handle in (self._immediate_handle, self._batch_handle, self._heartbeat_handle, self._inactivity_handle):
            self.scheduler.cancel(handle)
        self._immediate_handle = None
        self._batch_handle = None
        self._heartbeat_handle = None
        self._inactivity_handle = None
