"""Tracking ingestion routes."""

import logging

from fastapi import APIRouter, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PayloadError

from ..errors import TrackingError
from ..schemas.tracking import AckResponse, BatchRequest, BatchResponse, ErrorResponse
from ..services.ingestion import ingest_batch

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["tracking"])


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "message": message})


async def _read_json(request: Request):
    try:
        return await request.json()
    except ValueError:
        return None


@router.post(
    "/batch-events",
    response_model=BatchResponse,
    responses={400: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
)
async def batch_events(request: Request):
    """Ingest one batch of tracking events.

    The whole batch is applied or rejected; re-sent events are ignored.
    """
    body = await _read_json(request)
    if not isinstance(body, dict):
        return _error(400, "Invalid JSON body")

    try:
        BatchRequest.model_validate(body)
    except PayloadError as e:
        return _error(400, f"Invalid batch: {e.errors()[0].get('msg', 'malformed payload')}")

    try:
        result = await run_in_threadpool(ingest_batch, body)
        return BatchResponse(**result)
    except TrackingError as e:
        logger.warning(f"Batch rejected: {e.message}")
        return _error(e.status_code, e.message)
    except Exception:
        logger.exception("Batch ingestion error")
        return _error(500, "Internal Server Error")


@router.post("/heartbeat", response_model=AckResponse)
async def heartbeat(request: Request):
    body = await _read_json(request)
    if isinstance(body, dict):
        logger.debug(f"Heartbeat from session {body.get('sessionId')}")
    return AckResponse(message="Heartbeat received")


@router.post("/end-session", response_model=AckResponse)
async def end_session(request: Request):
    body = await _read_json(request)
    if isinstance(body, dict):
        logger.debug(f"End-session beacon for {body.get('sessionId')}")
    return AckResponse(message="Session end received")
