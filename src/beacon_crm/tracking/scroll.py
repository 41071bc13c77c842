"""Scroll depth, speed and per-zone attention tracking."""

import logging
import math
from collections import deque
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Deque, Dict, List, Optional

from ..core.config import TrackerConfig
from .host import SignalHub
from .scheduler import Scheduler

logger = logging.getLogger(__name__)

SPEED_SAMPLES = 5
DIRECTION_THRESHOLD_PX = 5


@dataclass
class ScrollZone:
    """Attention accumulated for one horizontal band of the page."""

    zone: int
    percentage: int
    time_spent: float = 0.0
    visits: int = 0
    first_visit: Optional[float] = None
    last_visit: Optional[float] = None


@dataclass
class ScrollStats:
    max_scroll_percentage: int = 0
    current_scroll_percentage: int = 0
    scroll_direction: str = "none"
    scroll_speed: float = 0.0
    total_scroll_distance: float = 0.0
    scroll_events: int = 0
    attention_map: Dict[str, ScrollZone] = field(default_factory=dict)
    visible_zones: List[int] = field(default_factory=list)
    average_time_per_zone: float = 0.0
    engagement_score: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def scroll_percentage(scroll_top: float, document_height: float, viewport_height: float) -> int:
    """Position as 0-100 of the scrollable range; 0 when the page cannot scroll."""
    max_scroll = document_height - viewport_height
    if max_scroll <= 0:
        return 0
    return max(0, min(100, round(scroll_top / max_scroll * 100)))


class ScrollTracker:
    """Turns raw scroll positions into depth, speed and an attention map.

    The page is split into ``ceil(100 / scroll_zone_size)`` equal zones.
    Entering a zone counts a visit; leaving it adds the dwell time.
    Scroll signals are coalesced so at most one sample is processed per
    ``scroll_update_interval``.
    """

    def __init__(self, hub: SignalHub, scheduler: Scheduler, config: Optional[TrackerConfig] = None):
        self.hub = hub
        self.scheduler = scheduler
        self.config = config or TrackerConfig()
        self.zone_size = self.config.scroll_zone_size
        self.total_zones = math.ceil(100 / self.zone_size)
        self.is_tracking = False

        self.stats = ScrollStats(attention_map=self._empty_zones())
        self._samples: Deque[float] = deque(maxlen=SPEED_SAMPLES)
        self._last_top: Optional[float] = None
        self._last_time: Optional[float] = None
        self._current_zone: Optional[int] = None
        self._zone_started: Optional[float] = None
        self._pending: Optional[Dict[str, Any]] = None
        self._throttle_handle = None
        self._unsubscribe: Optional[Callable[[], None]] = None

        self._stats_callbacks: List[Callable[[ScrollStats], None]] = []
        self._zone_callbacks: List[Callable[[int, ScrollZone], None]] = []

    def _empty_zones(self) -> Dict[str, ScrollZone]:
        return {
            f"zone_{i}": ScrollZone(zone=i, percentage=i * self.zone_size)
            for i in range(self.total_zones)
        }

    def on_stats(self, callback: Callable[[ScrollStats], None]):
        self._stats_callbacks.append(callback)

    def on_zone_change(self, callback: Callable[[int, ScrollZone], None]):
        self._zone_callbacks.append(callback)

    def start(self, scroll_top: float = 0, document_height: float = 0, viewport_height: float = 0):
        """Begin listening, seeding the current zone from the initial position."""
        if self.is_tracking:
            logger.debug("Scroll tracker already running")
            return

        self._unsubscribe = self.hub.on_signal("scroll", self._handle_signal)
        self.is_tracking = True

        percentage = scroll_percentage(scroll_top, document_height, viewport_height)
        self.stats.current_scroll_percentage = percentage
        self.stats.max_scroll_percentage = max(self.stats.max_scroll_percentage, percentage)
        self._enter_zone(self._zone_for(percentage))
        self._update_visible_zones(scroll_top, document_height, viewport_height)
        logger.debug("Scroll tracker started")

    def stop(self):
        if not self.is_tracking:
            return
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None
        self.scheduler.cancel(self._throttle_handle)
        self._throttle_handle = None
        self._pending = None
        self._leave_zone()
        self._recompute()
        self.is_tracking = False
        logger.debug("Scroll tracker stopped")

    def reset(self):
        self.stop()
        self.stats = ScrollStats(attention_map=self._empty_zones())
        self._samples.clear()
        self._last_top = None
        self._last_time = None
        self._current_zone = None
        self._zone_started = None

    def get_stats(self) -> ScrollStats:
        return ScrollStats(**{
            **vars(self.stats),
            "attention_map": {k: ScrollZone(**asdict(v)) for k, v in self.stats.attention_map.items()},
            "visible_zones": list(self.stats.visible_zones),
        })

    def get_attention_map(self) -> Dict[str, ScrollZone]:
        return self.get_stats().attention_map

    # ---- sampling ----

    def _handle_signal(self, kind: str, data: Dict[str, Any]):
        # Keep only the newest position; process it once the throttle window closes
        self._pending = data
        if self._throttle_handle is None:
            self._throttle_handle = self.scheduler.call_later(self.config.scroll_update_interval, self._flush_sample)

    def _flush_sample(self):
        self._throttle_handle = None
        data, self._pending = self._pending, None
        if data is None or not self.is_tracking:
            return
        self.process_sample(
            float(data.get("scroll_top", 0)),
            float(data.get("document_height", 0)),
            float(data.get("viewport_height", 0)),
        )

    def process_sample(self, scroll_top: float, document_height: float, viewport_height: float):
        """Apply one scroll position observed at the scheduler's current time."""
        now = self.scheduler.now()
        percentage = scroll_percentage(scroll_top, document_height, viewport_height)
        self.stats.current_scroll_percentage = percentage
        self.stats.max_scroll_percentage = max(self.stats.max_scroll_percentage, percentage)
        self.stats.scroll_events += 1

        self._update_motion(scroll_top, now)

        zone = self._zone_for(percentage)
        if zone != self._current_zone:
            self._leave_zone()
            self._enter_zone(zone)

        self._update_visible_zones(scroll_top, document_height, viewport_height)
        self._recompute()
        self._notify()

    def _update_motion(self, scroll_top: float, now: float):
        if self._last_time is not None and self._last_top is not None:
            elapsed = now - self._last_time
            delta = scroll_top - self._last_top
            if elapsed > 0:
                self._samples.append(abs(delta) / elapsed)
                self.stats.scroll_speed = sum(self._samples) / len(self._samples)
                if abs(delta) > DIRECTION_THRESHOLD_PX:
                    self.stats.scroll_direction = "down" if delta > 0 else "up"
                self.stats.total_scroll_distance += abs(delta)
        self._last_top = scroll_top
        self._last_time = now

    # ---- zones ----

    def _zone_for(self, percentage: int) -> int:
        # 100% falls into the last zone rather than one past it
        return min(self.total_zones - 1, percentage // self.zone_size)

    def _enter_zone(self, zone_number: int):
        now = self.scheduler.now()
        self._current_zone = zone_number
        self._zone_started = now

        zone = self.stats.attention_map[f"zone_{zone_number}"]
        zone.visits += 1
        zone.last_visit = now
        if zone.first_visit is None:
            zone.first_visit = now
        logger.debug(f"Entered scroll zone {zone_number} ({zone.percentage}%)")

        for callback in list(self._zone_callbacks):
            try:
                callback(zone_number, ScrollZone(**asdict(zone)))
            except Exception:
                logger.exception("Zone change callback failed")

    def _leave_zone(self):
        if self._zone_started is None or self._current_zone is None:
            return
        spent = self.scheduler.now() - self._zone_started
        self.stats.attention_map[f"zone_{self._current_zone}"].time_spent += spent
        self._zone_started = None

    def _update_visible_zones(self, scroll_top: float, document_height: float, viewport_height: float):
        if document_height <= 0:
            self.stats.visible_zones = [self._current_zone or 0]
            return
        top = scroll_top / document_height * 100
        bottom = (scroll_top + viewport_height) / document_height * 100
        self.stats.visible_zones = [
            i for i in range(self.total_zones)
            if i * self.zone_size < bottom and (i + 1) * self.zone_size > top
        ]

    def _recompute(self):
        zones = self.stats.attention_map.values()
        with_time = [z for z in zones if z.time_spent > 0]
        visited = [z for z in zones if z.visits > 0]

        self.stats.average_time_per_zone = (
            sum(z.time_spent for z in with_time) / len(with_time) if with_time else 0.0
        )
        # Weights: depth 40%, dwell 30%, coverage 30%
        depth_score = self.stats.max_scroll_percentage
        time_score = min(100.0, self.stats.average_time_per_zone * 10)
        variety_score = len(visited) / self.total_zones * 100
        self.stats.engagement_score = round(depth_score * 0.4 + time_score * 0.3 + variety_score * 0.3)

    def _notify(self):
        if not self._stats_callbacks:
            return
        snapshot = self.get_stats()
        for callback in list(self._stats_callbacks):
            try:
                callback(snapshot)
            except Exception:
                logger.exception("Scroll stats callback failed")
