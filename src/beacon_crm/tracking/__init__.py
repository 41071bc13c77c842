"""Client-side behavior collection, buffering and delivery."""

from .activity import ActivityMonitor, ActivityStats
from .delivery import DeliveryError, DeliveryQueue, QueueItem, RequestsTransport
from .device import DeviceInfo, IPLocation, PageInfo, get_device_info, get_page_info, parse_utm_params
from .events import SessionData, SessionEndReason, SessionState, TrackingEvent, UserBehavior
from .host import JsonFileStore, MemoryStore, PersistentStore, SignalHub
from .scheduler import AsyncioScheduler, ManualScheduler, Scheduler
from .scroll import ScrollStats, ScrollTracker, ScrollZone
from .session import SessionManager
from .tracker import Tracker, create_tracker

__all__ = [
    "ActivityMonitor",
    "ActivityStats",
    "DeliveryError",
    "DeliveryQueue",
    "QueueItem",
    "RequestsTransport",
    "DeviceInfo",
    "IPLocation",
    "PageInfo",
    "get_device_info",
    "get_page_info",
    "parse_utm_params",
    "SessionData",
    "SessionEndReason",
    "SessionState",
    "TrackingEvent",
    "UserBehavior",
    "JsonFileStore",
    "MemoryStore",
    "PersistentStore",
    "SignalHub",
    "AsyncioScheduler",
    "ManualScheduler",
    "Scheduler",
    "ScrollStats",
    "ScrollTracker",
    "ScrollZone",
    "SessionManager",
    "Tracker",
    "create_tracker",
]
