"""Storage layer for the tracking pipeline."""

from .database import TrackingDatabase
from .migrations import run_migrations
from .models import Activity, Business, Contact, EntityType, Lead, LeadStage, Session, StoredEvent, Visitor

__all__ = [
    "TrackingDatabase",
    "run_migrations",
    "Activity",
    "Business",
    "Contact",
    "EntityType",
    "Lead",
    "LeadStage",
    "Session",
    "StoredEvent",
    "Visitor",
]
