"""User activity monitoring: active/inactive state and interaction scores."""

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional

from ..core.config import TrackerConfig
from .host import SignalHub
from .scheduler import Scheduler

logger = logging.getLogger(__name__)

ACTIVITY_SIGNALS = ("click", "keydown", "mousemove", "scroll", "focus", "blur", "touchstart", "touchmove")

# Signals that are sampled at most once per throttle window
THROTTLED_SIGNALS = frozenset({"mousemove", "touchmove"})

# Signal -> counter it feeds
_COUNTERS = {
    "click": "clicks",
    "touchstart": "clicks",
    "keydown": "keystrokes",
    "mousemove": "mouse_moves",
    "touchmove": "mouse_moves",
    "scroll": "scrolls",
    "focus": "focus",
    "blur": "blur",
}

INTERACTION_KINDS = 6


@dataclass
class ActivityCounts:
    clicks: int = 0
    keystrokes: int = 0
    mouse_moves: int = 0
    scrolls: int = 0
    focus: int = 0
    blur: int = 0

    @property
    def total(self) -> int:
        return self.clicks + self.keystrokes + self.mouse_moves + self.scrolls + self.focus + self.blur

    @property
    def variety(self) -> int:
        return sum(1 for v in asdict(self).values() if v > 0)


@dataclass
class ActivityStats:
    """Snapshot handed to stats subscribers."""

    is_active: bool = True
    last_activity_at: float = 0.0
    time_since_last_activity: float = 0.0
    total_active_time: float = 0.0
    total_inactive_time: float = 0.0
    inactivity_count: int = 0
    counts: ActivityCounts = field(default_factory=ActivityCounts)
    engagement_score: int = 0
    interaction_score: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def compute_engagement_score(active_time: float, inactive_time: float) -> int:
    total = active_time + inactive_time
    if total <= 0:
        return 0
    return round(active_time / total * 100)


def compute_interaction_score(counts: ActivityCounts, observed_seconds: float) -> int:
    """Blend of interactions per minute and how many kinds of interaction occurred."""
    if observed_seconds <= 0:
        return 0
    density = counts.total / (observed_seconds / 60)
    variety = counts.variety / INTERACTION_KINDS
    return round(min(100.0, density * 20 + variety * 50))


class ActivityMonitor:
    """Watches page signals and tracks whether the user is still engaged.

    Any accepted signal makes the user active and restarts the idle timer.
    After ``inactivity_timeout`` seconds of silence the monitor turns
    inactive and fires the inactivity callbacks. Stats are pushed to
    subscribers on every state change and every ``activity_update_interval``.
    """

    def __init__(self, hub: SignalHub, scheduler: Scheduler, config: Optional[TrackerConfig] = None):
        self.hub = hub
        self.scheduler = scheduler
        self.config = config or TrackerConfig()
        self.stats = ActivityStats(last_activity_at=scheduler.now())
        self.is_monitoring = False

        self._last_throttled: Dict[str, float] = {}
        self._unsubscribers: List[Callable[[], None]] = []
        self._inactivity_handle = None
        self._update_handle = None
        self._stats_callbacks: List[Callable[[ActivityStats], None]] = []
        self._inactivity_callbacks: List[Callable[[], None]] = []

    def on_stats(self, callback: Callable[[ActivityStats], None]):
        self._stats_callbacks.append(callback)

    def on_inactivity(self, callback: Callable[[], None]):
        self._inactivity_callbacks.append(callback)

    def start(self):
        if self.is_monitoring:
            logger.debug("Activity monitor already running")
            return

        for kind in ACTIVITY_SIGNALS:
            self._unsubscribers.append(self.hub.on_signal(kind, self._handle_signal))
        self.is_monitoring = True
        self.stats.is_active = True
        self.stats.last_activity_at = self.scheduler.now()
        self._reset_inactivity_timer()
        self._schedule_update()
        logger.debug("Activity monitor started")

    def stop(self):
        if not self.is_monitoring:
            return

        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []
        self.scheduler.cancel(self._inactivity_handle)
        self.scheduler.cancel(self._update_handle)
        self._inactivity_handle = None
        self._update_handle = None
        self.is_monitoring = False
        logger.debug("Activity monitor stopped")

    def reset(self):
        self.stop()
        self.stats = ActivityStats(last_activity_at=self.scheduler.now())
        self._last_throttled = {}

    def get_stats(self) -> ActivityStats:
        """Copy of the current stats; does not advance accumulated time."""
        snapshot = ActivityStats(**{k: v for k, v in vars(self.stats).items() if k != "counts"})
        snapshot.counts = ActivityCounts(**asdict(self.stats.counts))
        snapshot.time_since_last_activity = self.scheduler.now() - self.stats.last_activity_at
        return snapshot

    def is_user_active(self) -> bool:
        idle = self.scheduler.now() - self.stats.last_activity_at
        return self.stats.is_active and idle < self.config.inactivity_timeout

    # ---- signal handling ----

    def _handle_signal(self, kind: str, data: Dict[str, Any]):
        now = self.scheduler.now()

        if kind in THROTTLED_SIGNALS:
            last = self._last_throttled.get(kind)
            if last is not None and now - last < self.config.mouse_move_throttle:
                return
            self._last_throttled[kind] = now

        self.stats.last_activity_at = now
        self.stats.time_since_last_activity = 0.0
        counter = _COUNTERS[kind]
        setattr(self.stats.counts, counter, getattr(self.stats.counts, counter) + 1)
        self._recompute_scores()
        self._reset_inactivity_timer()

        if not self.stats.is_active:
            self.stats.is_active = True
            logger.debug("User active again")
            self._notify()

    def _reset_inactivity_timer(self):
        self.scheduler.cancel(self._inactivity_handle)
        self._inactivity_handle = self.scheduler.call_later(self.config.inactivity_timeout, self._handle_inactivity)

    def _handle_inactivity(self):
        self._inactivity_handle = None
        if not self.stats.is_active:
            return

        self.stats.is_active = False
        self.stats.inactivity_count += 1
        logger.debug(f"User inactive (count={self.stats.inactivity_count})")
        self._notify()
        for callback in list(self._inactivity_callbacks):
            try:
                callback()
            except Exception:
                logger.exception("Inactivity callback failed")

    # ---- periodic update ----

    def _schedule_update(self):
        self._update_handle = self.scheduler.call_later(self.config.activity_update_interval, self._periodic_update)

    def _periodic_update(self):
        interval = self.config.activity_update_interval
        if self.stats.is_active:
            self.stats.total_active_time += interval
        else:
            self.stats.total_inactive_time += interval
        self.stats.time_since_last_activity = self.scheduler.now() - self.stats.last_activity_at
        self._recompute_scores()
        self._notify()
        if self.is_monitoring:
            self._schedule_update()

    def _recompute_scores(self):
        active = self.stats.total_active_time
        inactive = self.stats.total_inactive_time
        self.stats.engagement_score = compute_engagement_score(active, inactive)
        self.stats.interaction_score = compute_interaction_score(self.stats.counts, active + inactive)

    def _notify(self):
        if not self._stats_callbacks:
            return
        snapshot = self.get_stats()
        for callback in list(self._stats_callbacks):
            try:
                callback(snapshot)
            except Exception:
                logger.exception("Activity stats callback failed")
