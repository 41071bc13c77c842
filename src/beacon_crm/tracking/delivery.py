"""At-least-once delivery of tracking payloads with retry and persistence."""

import json
import logging
import uuid
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional

import requests

from ..core.config import TrackerConfig
from ..core.priority import EventPriority
from .host import MemoryStore, PersistentStore
from .scheduler import Scheduler

logger = logging.getLogger(__name__)

CLIENT_NAME = "beacon-crm-tracker/1.0"


class DeliveryError(Exception):
    """A payload could not be handed to the ingestion endpoint."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class RequestsTransport:
    """Blocking HTTP transport; runs off-loop through ``Scheduler.run_io``."""

    def __init__(self, business_id: str, timeout: float = 10.0,
                 session: Optional[requests.Session] = None, client_name: str = CLIENT_NAME):
        self.business_id = business_id
        self.timeout = timeout
        self.session = session or requests.Session()
        self.client_name = client_name

    @classmethod
    def from_config(cls, config: TrackerConfig) -> "RequestsTransport":
        return cls(business_id=config.business_id, timeout=config.request_timeout)

    def deliver(self, url: str, payload: Dict[str, Any]) -> bool:
        """POST the payload; True when the server accepted it.

        Raises ``DeliveryError`` on timeouts, connection failures and non-2xx.
        A 2xx body with ``"success": false`` is reported as False.
        """
        headers = {
            "Content-Type": "application/json",
            "X-Tracking-Client": self.client_name,
            "X-Business-ID": str(self.business_id),
        }
        try:
            response = self.session.post(url, json=payload, headers=headers, timeout=self.timeout)
        except requests.RequestException as e:
            raise DeliveryError(f"Request to {url} failed: {e}") from e

        if not response.ok:
            raise DeliveryError(f"HTTP {response.status_code}: {response.text[:200]}",
                                status_code=response.status_code)

        try:
            body = response.json()
        except ValueError:
            return True
        return not (isinstance(body, dict) and body.get("success") is False)


@dataclass
class QueueItem:
    """One payload waiting for delivery."""

    id: str
    payload: Dict[str, Any]
    priority: str
    endpoint: str
    attempts: int = 0
    created_at: float = 0.0
    last_attempt_at: Optional[float] = None
    # Monotonic time before which the item is not retried; never persisted
    not_before: float = field(default=0.0, repr=False)

    @property
    def rank(self) -> int:
        try:
            return EventPriority(self.priority).rank
        except ValueError:
            return EventPriority.NORMAL.rank

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data.pop("not_before")
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "QueueItem":
        return cls(
            id=str(data["id"]),
            payload=data["payload"],
            priority=data.get("priority", EventPriority.NORMAL.value),
            endpoint=data.get("endpoint", ""),
            attempts=int(data.get("attempts", 0)),
            created_at=float(data.get("created_at", 0.0)),
            last_attempt_at=data.get("last_attempt_at"),
        )


@dataclass
class DeliveryStats:
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    retried_requests: int = 0
    dropped_items: int = 0
    queued_items: int = 0
    last_successful_request: Optional[str] = None
    last_failed_request: Optional[str] = None


class DeliveryQueue:
    """Ordered queue of payloads delivered one at a time.

    ``send`` never blocks: it enqueues, persists and kicks delivery. A
    failed attempt schedules a retry after ``retry_delay * 2**attempts``
    (capped at ``max_retry_delay``). An item is tried at most
    ``1 + max_retries`` times and then dropped and reported through
    ``on_permanent_failure``. The queue is mirrored to the persistent store
    on every mutation so undelivered payloads survive a reload.
    """

    def __init__(self, transport, scheduler: Scheduler, store: Optional[PersistentStore] = None,
                 config: Optional[TrackerConfig] = None):
        self.transport = transport
        self.scheduler = scheduler
        self.store = store or MemoryStore()
        self.config = config or TrackerConfig()
        self.stats = DeliveryStats()
        self.is_online = True

        self._items: List[QueueItem] = []
        self._in_flight: Optional[QueueItem] = None
        self._retry_handle = None
        self._failure_callbacks: List[Callable[[QueueItem, Optional[BaseException]], None]] = []
        self._delivered_callbacks: List[Callable[[QueueItem], None]] = []

        self._load()
        if self._items:
            self._pump()

    def on_permanent_failure(self, callback: Callable[[QueueItem, Optional[BaseException]], None]):
        self._failure_callbacks.append(callback)

    def on_delivered(self, callback: Callable[[QueueItem], None]):
        self._delivered_callbacks.append(callback)

    # ---- public API ----

    def send(self, payload: Dict[str, Any], priority: EventPriority = EventPriority.NORMAL,
             endpoint: Optional[str] = None) -> str:
        """Queue a payload for delivery and return its queue id."""
        item = QueueItem(
            id=str(uuid.uuid4()),
            payload=payload,
            priority=priority.value,
            endpoint=endpoint or self.config.batch_endpoint,
            created_at=self.scheduler.wall_time().timestamp(),
        )
        self._items.append(item)
        self._sort()
        self._enforce_capacity()
        self._persist()
        logger.debug(f"Queued {payload.get('type', 'payload')} {item.id} ({item.priority})")
        self._pump()
        return item.id

    def flush_all(self):
        """Make every queued item due now; delivery stays one at a time."""
        if not self._items:
            logger.debug("No pending payloads to flush")
            return
        logger.info(f"Flushing {len(self._items)} pending payloads")
        for item in self._items:
            item.not_before = 0.0
        self.scheduler.cancel(self._retry_handle)
        self._retry_handle = None
        self._pump()

    def set_online(self, online: bool):
        self.is_online = online
        if online:
            logger.info("Network restored, resuming delivery")
            self._pump()

    def pending(self) -> List[QueueItem]:
        return list(self._items)

    def get_stats(self) -> Dict[str, Any]:
        self.stats.queued_items = len(self._items)
        return {
            **asdict(self.stats),
            "is_online": self.is_online,
            "in_flight": self._in_flight is not None,
            "config": {
                "base_url": self.config.base_url,
                "max_retries": self.config.max_retries,
                "retry_delay": self.config.retry_delay,
            },
        }

    def reset(self):
        self.scheduler.cancel(self._retry_handle)
        self._retry_handle = None
        self._items = []
        self.stats = DeliveryStats()
        self.store.remove_persistent_value(self.config.storage_key)

    # ---- delivery loop ----

    def _pump(self):
        """Start the next due attempt, or arm the single retry timer."""
        if self._in_flight is not None or not self._items or not self.is_online:
            return

        now = self.scheduler.now()
        ready = next((item for item in self._items if item.not_before <= now), None)
        if ready is not None:
            self.scheduler.cancel(self._retry_handle)
            self._retry_handle = None
            self._dispatch(ready)
            return

        if self._retry_handle is None:
            wake_at = min(item.not_before for item in self._items)
            self._retry_handle = self.scheduler.call_later(wake_at - now, self._on_retry_timer)

    def _on_retry_timer(self):
        self._retry_handle = None
        self._pump()

    def _dispatch(self, item: QueueItem):
        item.attempts += 1
        item.last_attempt_at = self.scheduler.wall_time().timestamp()
        self.stats.total_requests += 1
        if item.attempts > 1:
            self.stats.retried_requests += 1
        self._in_flight = item
        self._persist()

        url = self.config.url_for(item.endpoint or self.config.batch_endpoint)
        self.scheduler.run_io(
            lambda: self.transport.deliver(url, item.payload),
            lambda result, error: self._on_attempt_done(item, result, error),
        )

    def _on_attempt_done(self, item: QueueItem, result: Any, error: Optional[BaseException]):
        self._in_flight = None
        stamp = self.scheduler.wall_time().isoformat()

        if error is None and result:
            self.stats.successful_requests += 1
            self.stats.last_successful_request = stamp
            self._remove(item)
            logger.debug(f"Delivered {item.id} after {item.attempts} attempt(s)")
            for callback in list(self._delivered_callbacks):
                try:
                    callback(item)
                except Exception:
                    logger.exception("Delivery callback failed")
        else:
            self.stats.failed_requests += 1
            self.stats.last_failed_request = stamp
            reason = error or DeliveryError("Server rejected payload")
            if item.attempts > self.config.max_retries:
                logger.error(f"Dropping {item.id} after {item.attempts} attempts: {reason}")
                self._drop(item, reason)
            else:
                delay = self.retry_delay_for(item.attempts)
                item.not_before = self.scheduler.now() + delay
                self._persist()
                logger.warning(f"Delivery of {item.id} failed ({item.attempts}/{self.config.max_retries + 1}), "
                               f"retrying in {delay:.1f}s: {reason}")

        self._pump()

    def retry_delay_for(self, attempts: int) -> float:
        return min(self.config.max_retry_delay, self.config.retry_delay * (2 ** attempts))

    # ---- queue bookkeeping ----

    def _sort(self):
        # list.sort is stable, so insertion order holds within a priority
        self._items.sort(key=lambda item: item.rank)

    def _remove(self, item: QueueItem):
        self._items = [i for i in self._items if i.id != item.id]
        self._persist()

    def _drop(self, item: QueueItem, reason: Optional[BaseException]):
        self.stats.dropped_items += 1
        self._remove(item)
        for callback in list(self._failure_callbacks):
            try:
                callback(item, reason)
            except Exception:
                logger.exception("Permanent failure callback failed")

    def _enforce_capacity(self):
        while len(self._items) > self.config.storage_max_items:
            # Lowest priority, newest item goes first
            victim = next(i for i in reversed(self._items) if i is not self._in_flight)
            logger.warning(f"Delivery queue full, dropping {victim.id}")
            self._drop(victim, DeliveryError("Delivery queue full"))

    # ---- persistence ----

    def _persist(self):
        data = {
            "items": [item.to_dict() for item in self._items],
            "timestamp": self.scheduler.wall_time().timestamp(),
        }
        try:
            self.store.set_persistent_value(self.config.storage_key, json.dumps(data))
        except (OSError, TypeError, ValueError) as e:
            logger.error(f"Error saving delivery queue: {e}")

    def _load(self):
        raw = self.store.get_persistent_value(self.config.storage_key)
        if not raw:
            return
        try:
            data = json.loads(raw)
            items = [QueueItem.from_dict(entry) for entry in data.get("items", [])]
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            logger.error(f"Discarding unreadable delivery queue: {e}")
            self.store.remove_persistent_value(self.config.storage_key)
            return

        cutoff = self.scheduler.wall_time().timestamp() - self.config.storage_max_age
        fresh = [item for item in items if item.created_at >= cutoff]
        if len(fresh) < len(items):
            logger.info(f"Discarded {len(items) - len(fresh)} stale queued payloads")

        self._items = fresh
        self._sort()
        self._items = self._items[:self.config.storage_max_items]
        self._persist()
        logger.info(f"Loaded {len(self._items)} queued payloads from storage")
