"""Cron trigger for bulk tracking reconciliation."""

from __future__ import annotations

import logging
import secrets

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status

from storefront.common import ServiceSettings

from ..courier import DelhiveryGateway
from ..dependencies import get_gateway, get_settings
from ..jobs import run_sync_once
from ..schemas import CronSyncResponse, SyncSummary

_LOGGER = logging.getLogger(__name__)

router = APIRouter(prefix="/cron", tags=["cron"])


def _presented_secret(cron_secret: str | None, authorization: str | None) -> str:
    if cron_secret:
        return cron_secret.strip()
    scheme, _, token = (authorization or "").partition(" ")
    return token.strip() if scheme.lower() == "bearer" else ""


def require_cron_secret(
    settings: ServiceSettings = Depends(get_settings),
    cron_secret: str | None = Header(default=None, alias="X-Cron-Secret"),
    authorization: str | None = Header(default=None),
) -> None:
    expected = settings.cron_secret
    if not expected:
        return
    if not secrets.compare_digest(_presented_secret(cron_secret, authorization), expected):
        _LOGGER.warning("Rejected cron trigger with invalid secret")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


@router.api_route(
    "/sync-shipments",
    methods=["GET", "POST"],
    response_model=CronSyncResponse,
    dependencies=[Depends(require_cron_secret)],
)
async def sync_shipments(
    request: Request,
    settings: ServiceSettings = Depends(get_settings),
    gateway: DelhiveryGateway = Depends(get_gateway),
) -> CronSyncResponse:
    """Run one sweep; failures are reported in a 200 body."""

    try:
        summary = await run_sync_once(request.app.state.session_factory, gateway, settings)
    except Exception as exc:
        _LOGGER.exception("Cron shipment sync failed")
        return CronSyncResponse(
            success=False,
            message="Shipment sync failed",
            error=str(exc) if settings.is_development else None,
        )
    return CronSyncResponse(
        success=True,
        message=f"Synced {summary['success']} of {summary['total']} shipments",
        summary=SyncSummary.model_validate(summary),
    )
