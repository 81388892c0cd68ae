"""Inbound postback endpoint."""

import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from postback_tracker import metrics
from postback_tracker.api.deps import get_database
from postback_tracker.config import settings
from postback_tracker.errors import RejectionError, StorageError
from postback_tracker.ingest.gate import InboundRequest, ingestion_gate

logger = logging.getLogger(__name__)

router = APIRouter(tags=["postback"])

FORM_CONTENT_TYPES = ("application/x-www-form-urlencoded", "multipart/form-data")


class PostbackResponse(BaseModel):
    """Response model for an accepted postback."""
    success: bool = True
    message: str = "Postback received and queued for processing"
    queue_id: int


def collapse_items(items) -> dict:
    """Group (key, value) pairs; repeated keys become a list of strings."""
    params: dict = {}
    for key, value in items:
        if not isinstance(value, str):
            # Uploaded files carry no postback data
            continue
        if key in params:
            existing = params[key]
            if isinstance(existing, list):
                existing.append(value)
            else:
                params[key] = [existing, value]
        else:
            params[key] = value
    return params


async def read_body(request: Request) -> dict:
    """Form or JSON-object body; anything else is treated as empty."""
    content_type = request.headers.get("content-type", "").split(";")[0].strip().lower()

    if content_type in FORM_CONTENT_TYPES:
        form = await request.form()
        return collapse_items(form.multi_items())

    if content_type == "application/json" or content_type.endswith("+json"):
        raw = await request.body()
        if not raw:
            return {}
        try:
            body = json.loads(raw)
        except (ValueError, UnicodeDecodeError):
            logger.debug("Ignoring unparseable JSON postback body")
            return {}
        return body if isinstance(body, dict) else {}

    return {}


def client_ip(request: Request) -> str:
    """Source IP of the caller, optionally from X-Forwarded-For."""
    if settings.trust_forwarded_for:
        forwarded: Optional[str] = request.headers.get("x-forwarded-for")
        if forwarded:
            return forwarded.split(",")[0].strip()
    return request.client.host if request.client else ""


@router.api_route("/postback", methods=["GET", "POST"], response_model=PostbackResponse)
async def receive_postback(request: Request, db: AsyncSession = Depends(get_database)):
    """
    Accept a partner postback and enqueue it.

    Statistics, notifications and exports happen in the queue processor.
    """
    inbound = InboundRequest(
        method=request.method,
        url=str(request.url),
        client_ip=client_ip(request),
        user_agent=request.headers.get("user-agent", ""),
        query=collapse_items(request.query_params.multi_items()),
        body=await read_body(request) if request.method == "POST" else {},
    )

    try:
        queue_id = await ingestion_gate.ingest(db, inbound)
    except (RejectionError, StorageError) as e:
        metrics.record_postback_received(f"rejected_{e.status_code}")
        raise

    metrics.record_postback_received("queued")
    return PostbackResponse(queue_id=queue_id)
