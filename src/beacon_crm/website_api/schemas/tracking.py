"""Pydantic models for the tracking endpoints."""

from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class EventPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    eventId: Optional[Union[str, int]] = None
    eventType: Optional[str] = None
    eventCategory: Optional[str] = None
    eventAction: Optional[str] = None
    pageUrl: Optional[str] = None
    pageTitle: Optional[str] = None
    timestamp: Optional[Union[str, int, float]] = None
    eventData: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, Any]] = None


class SessionDataPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    sessionId: Optional[Union[str, int]] = None
    visitorId: Optional[Union[str, int]] = None
    businessId: Optional[Union[int, str]] = None
    fingerprint: Optional[str] = None
    startedAt: Optional[str] = None
    lastActivityAt: Optional[str] = None
    deviceInfo: Dict[str, Any] = Field(default_factory=dict)
    pageInfo: Dict[str, Any] = Field(default_factory=dict)
    userBehavior: Dict[str, Any] = Field(default_factory=dict)


class BatchRequest(BaseModel):
    """One submission: a session snapshot plus its events."""

    model_config = ConfigDict(extra="allow")

    type: Optional[str] = None
    sessionData: Optional[SessionDataPayload] = None
    events: List[EventPayload] = Field(default_factory=list)


class BatchResponse(BaseModel):
    success: bool
    processed: int
    message: str


class AckResponse(BaseModel):
    success: bool = True
    message: str = "ok"


class ErrorResponse(BaseModel):
    success: bool = False
    message: str
