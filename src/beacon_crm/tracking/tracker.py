"""Tracker facade wiring collectors, session orchestration and delivery."""

import logging
from typing import Any, Callable, Dict, List, Optional

from ..core.config import TrackerConfig, config_for_profile
from ..core.priority import EventPriority
from .activity import ACTIVITY_SIGNALS, ActivityMonitor, ActivityStats
from .delivery import DeliveryQueue, QueueItem, RequestsTransport
from .device import DeviceInfo, IPLocation, PageInfo
from .events import SessionData, SessionEndReason, TrackingEvent
from .host import MemoryStore, PersistentStore, SignalHub
from .scheduler import Scheduler
from .scroll import ScrollStats, ScrollTracker
from .session import SessionManager

logger = logging.getLogger(__name__)

LIFECYCLE_SIGNALS = ("visibilitychange", "beforeunload", "online", "offline")


class Tracker:
    """Client entry point for a single page.

    The host emits raw signals on ``hub``; the tracker turns them into
    session activity, collector stats and tracked events, and ships them
    through the delivery queue.
    """

    def __init__(self, scheduler: Scheduler, config: Optional[TrackerConfig] = None,
                 hub: Optional[SignalHub] = None, store: Optional[PersistentStore] = None,
                 transport=None, device: Optional[DeviceInfo] = None, page: Optional[PageInfo] = None,
                 location: Optional[IPLocation] = None):
        self.config = config or TrackerConfig()
        self.scheduler = scheduler
        self.hub = hub or SignalHub()
        self.store = store or MemoryStore()
        if self.config.debug:
            logging.getLogger("beacon_crm.tracking").setLevel(logging.DEBUG)

        self.delivery = DeliveryQueue(
            transport or RequestsTransport.from_config(self.config),
            scheduler, store=self.store, config=self.config,
        )
        self.sessions = SessionManager(
            self.delivery.send, scheduler, config=self.config,
            store=self.store, device=device, page=page, location=location,
        )
        self.activity = ActivityMonitor(self.hub, scheduler, self.config)
        self.scroll = ScrollTracker(self.hub, scheduler, self.config)

        self.is_tracking = False
        self._unsubscribers: List[Callable[[], None]] = []
        self._event_callbacks: List[Callable[[TrackingEvent], None]] = []

        self.activity.on_stats(self._on_activity_stats)
        self.scroll.on_stats(self._on_scroll_stats)
        self.sessions.on_session_end(self._on_session_end)

    # ---- lifecycle ----

    def start_tracking(self, scroll_top: float = 0, document_height: float = 0,
                       viewport_height: float = 0) -> SessionData:
        if self.is_tracking and self.sessions.session is not None:
            logger.debug("Tracker already running")
            return self.sessions.session

        session = self.sessions.start_session()
        for kind in ACTIVITY_SIGNALS:
            self._unsubscribers.append(self.hub.on_signal(kind, self._on_user_signal))
        for kind in LIFECYCLE_SIGNALS:
            self._unsubscribers.append(self.hub.on_signal(kind, self._on_lifecycle_signal))

        if self.config.enable_activity_monitoring:
            self.activity.start()
        if self.config.enable_scroll_tracking:
            self.scroll.start(scroll_top, document_height, viewport_height)

        self.is_tracking = True
        logger.info(f"Tracking started for business {self.config.business_id}")
        return session

    def stop_tracking(self, reason: SessionEndReason = SessionEndReason.MANUAL):
        if not self.is_tracking:
            logger.debug("Tracker not running")
            return
        self.sessions.end_session(reason)
        self.delivery.flush_all()

    def flush(self):
        self.sessions.flush_now()
        self.delivery.flush_all()

    def reset(self):
        self._teardown()
        self.sessions.reset()
        self.activity.reset()
        self.scroll.reset()
        self.delivery.reset()
        self.is_tracking = False

    # ---- tracking API ----

    def on_event(self, callback: Callable[[TrackingEvent], None]):
        self._event_callbacks.append(callback)

    def on_permanent_failure(self, callback: Callable[[QueueItem, Optional[BaseException]], None]):
        self.delivery.on_permanent_failure(callback)

    def track(self, category: str, event_type: str, event_data: Optional[Dict[str, Any]] = None) -> Optional[TrackingEvent]:
        if not self.is_tracking:
            logger.warning(f"Tracker not running, ignoring {category}/{event_type}")
            return None
        event = self.sessions.track(category, event_type, event_data)
        if event is not None:
            for callback in list(self._event_callbacks):
                try:
                    callback(event)
                except Exception:
                    logger.exception("Event callback failed")
        return event

    def track_page_view(self, url: str, title: str = "", **data: Any) -> Optional[TrackingEvent]:
        self.sessions.update_page(url, title)
        return self.track("page_view", "page_view", {"page": self.sessions.page.pathname, "url": url, "title": title, **data})

    def track_button_click(self, button_id: str, button_text: str = "", **data: Any) -> Optional[TrackingEvent]:
        return self.track("user_interaction", "button_click", {"buttonId": button_id, "buttonText": button_text, **data})

    def track_form_interaction(self, form_id: str, action: str, **data: Any) -> Optional[TrackingEvent]:
        event_type = "form_submit" if action == "submit" else "form_interaction"
        return self.track("form_interaction", event_type, {"formId": form_id, "action": action, **data})

    def track_cta_click(self, cta_name: str, **data: Any) -> Optional[TrackingEvent]:
        return self.track("user_interaction", "cta_click", {"ctaName": cta_name, **data})

    def track_conversion(self, email: str, name: str, conversion_type: str = "form", **data: Any) -> Optional[TrackingEvent]:
        """Track a conversion; the server turns it into a contact and lead."""
        return self.track("conversion", "conversion", {
            "conversionType": conversion_type, "email": email, "name": name, **data,
        })

    def track_custom_event(self, event_type: str, **data: Any) -> Optional[TrackingEvent]:
        return self.track("custom", event_type, data)

    # ---- info ----

    @property
    def session_id(self) -> Optional[str]:
        return self.sessions.session_id

    def get_stats(self) -> Dict[str, Any]:
        return {
            "is_tracking": self.is_tracking,
            "session_id": self.sessions.session_id,
            "buffered": self.sessions.buffered(),
            "events_tracked": self.sessions.session.event_count if self.sessions.session else 0,
            "activity": self.activity.get_stats().to_dict(),
            "scroll": {
                "max_scroll_percentage": self.scroll.stats.max_scroll_percentage,
                "engagement_score": self.scroll.stats.engagement_score,
            },
            "delivery": self.delivery.get_stats(),
        }

    # ---- wiring ----

    def _on_user_signal(self, kind: str, data: Dict[str, Any]):
        self.sessions.record_signal()

    def _on_lifecycle_signal(self, kind: str, data: Dict[str, Any]):
        if kind == "visibilitychange":
            self.sessions.handle_visibility(bool(data.get("hidden")))
        elif kind == "beforeunload":
            self.sessions.handle_unload()
        elif kind == "online":
            self.delivery.set_online(True)
        elif kind == "offline":
            self.delivery.set_online(False)

    def _on_activity_stats(self, stats: ActivityStats):
        self.sessions.update_user_behavior(
            is_active=stats.is_active,
            click_count=stats.counts.clicks,
            keyboard_events=stats.counts.keystrokes,
            mouse_movements=stats.counts.mouse_moves,
            engagement_score=stats.engagement_score,
            interaction_score=stats.interaction_score,
            inactivity_count=stats.inactivity_count,
            total_inactive_time=stats.total_inactive_time,
        )

    def _on_scroll_stats(self, stats: ScrollStats):
        self.sessions.update_user_behavior(
            max_scroll_percentage=stats.max_scroll_percentage,
            current_scroll_percentage=stats.current_scroll_percentage,
            scroll_direction=stats.scroll_direction,
            scroll_speed=stats.scroll_speed,
            attention_map={k: zone.time_spent for k, zone in stats.attention_map.items() if zone.visits},
        )

    def _on_session_end(self, session: SessionData):
        if self.config.enable_scroll_tracking and self.scroll.is_tracking:
            self.scroll.stop()
            self._send_scroll_summary(session)
        self.activity.stop()
        self._teardown()
        self.is_tracking = False

    def _send_scroll_summary(self, session: SessionData):
        # Session is already closed, so the summary goes straight to delivery
        stats = self.scroll.get_stats()
        event = TrackingEvent(
            event_type="scroll_attention_map",
            category="engagement",
            session_id=session.session_id,
            visitor_id=session.visitor_id,
            business_id=session.business_id,
            event_data=stats.to_dict(),
            page_url=session.page_info.url,
            page_title=session.page_info.title,
            timestamp=self.scheduler.wall_time().isoformat(),
            client_timestamp=self.scheduler.wall_time().timestamp(),
        )
        event.classify()
        self.delivery.send({
            "type": "batch_events",
            "sessionData": session.snapshot(),
            "events": [event.to_wire()],
        }, EventPriority.ANALYTICS)

    def _teardown(self):
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []


def create_tracker(scheduler: Scheduler, profile: Optional[str] = None, **overrides: Any) -> Tracker:
    """Build a tracker from a named profile (development, production, testing)."""
    config = config_for_profile(profile, **overrides) if profile else TrackerConfig().with_overrides(**overrides)
    return Tracker(scheduler, config=config)
