"""Courier webhook receiver."""

from __future__ import annotations

import hashlib
import hmac
import json
import logging

from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException, Request, status
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storefront.common import ServiceSettings, lifespan_session

from ..courier import DelhiveryGateway
from ..dependencies import get_gateway, get_repository, get_settings
from ..repository import ShipmentRepository
from ..schemas import CourierEvent
from ..services import ShipmentService

_LOGGER = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def verify_signature(body: bytes, signature: str | None, secret: str | None) -> bool:
    """HMAC-SHA256 hex digest check; always passes when no secret is configured."""

    if not secret:
        return True
    if not signature:
        return False
    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature.strip().lower())


async def ingest_event(
    session_factory: async_sessionmaker[AsyncSession],
    gateway: DelhiveryGateway,
    settings: ServiceSettings,
    event: CourierEvent,
) -> None:
    try:
        async with lifespan_session(session_factory) as session:
            service = ShipmentService(ShipmentRepository(session), gateway, settings)
            outcome = await service.ingest_courier_event(event)
    except Exception:
        _LOGGER.exception("Failed to ingest webhook for AWB %s", event.waybill)
        return
    _LOGGER.info("Webhook for AWB %s (%s): %s", event.waybill, event.status, outcome)


@router.post("/delhivery", status_code=status.HTTP_200_OK)
async def receive_delhivery_event(
    request: Request,
    background_tasks: BackgroundTasks,
    signature: str | None = Header(default=None, alias="X-Delhivery-Signature"),
    settings: ServiceSettings = Depends(get_settings),
    gateway: DelhiveryGateway = Depends(get_gateway),
) -> dict[str, object]:
    body = await request.body()
    if not verify_signature(body, signature, settings.delhivery_webhook_secret):
        _LOGGER.warning("Rejected webhook with invalid signature")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid signature")

    try:
        payload = json.loads(body or b"{}")
    except json.JSONDecodeError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Body must be JSON") from exc
    if not isinstance(payload, dict) or not payload.get("waybill") or not payload.get("status"):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing required fields: waybill, status",
        )
    try:
        event = CourierEvent.model_validate(payload)
    except ValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid webhook payload") from exc

    background_tasks.add_task(ingest_event, request.app.state.session_factory, gateway, settings, event)
    return {"success": True, "message": "Webhook received"}


@router.get("/delhivery/health")
async def webhook_health(repository: ShipmentRepository = Depends(get_repository)) -> dict[str, object]:
    last_sync = await repository.latest_sync_at()
    return {
        "status": "ok",
        "lastSyncAt": last_sync.isoformat() if last_sync else None,
    }
