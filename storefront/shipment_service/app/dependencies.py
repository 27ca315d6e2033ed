"""Dependency helpers for the shipment service."""

from __future__ import annotations

import secrets
from collections.abc import AsyncIterator

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storefront.common import ServiceSettings, lifespan_session

from .courier import DelhiveryGateway
from .rate_limit import EditRateLimiter
from .repository import ShipmentRepository
from .services import ShipmentService


async def get_session(request: Request) -> AsyncIterator[AsyncSession]:
    session_factory: async_sessionmaker[AsyncSession] = request.app.state.session_factory
    async with lifespan_session(session_factory) as session:
        yield session


def get_repository(session: AsyncSession = Depends(get_session)) -> ShipmentRepository:
    return ShipmentRepository(session)


def get_settings(request: Request) -> ServiceSettings:
    return request.app.state.settings


def get_gateway(request: Request) -> DelhiveryGateway:
    gateway = getattr(request.app.state, "courier_gateway", None)
    if gateway is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Courier gateway is not configured",
        )
    return gateway


def get_rate_limiter(request: Request) -> EditRateLimiter:
    return request.app.state.edit_rate_limiter


def get_shipment_service(
    repository: ShipmentRepository = Depends(get_repository),
    gateway: DelhiveryGateway = Depends(get_gateway),
    settings: ServiceSettings = Depends(get_settings),
) -> ShipmentService:
    return ShipmentService(repository, gateway, settings)


def require_admin(
    settings: ServiceSettings = Depends(get_settings),
    authorization: str | None = Header(default=None),
    admin_id: str | None = Header(default=None, alias="X-Admin-Id"),
) -> str:
    """Authenticate the admin caller and return its identifier.

    Without a configured ``admin_api_token`` every caller is accepted.
    """

    expected = settings.admin_api_token
    if expected:
        scheme, _, token = (authorization or "").partition(" ")
        if scheme.lower() != "bearer" or not secrets.compare_digest(token.strip(), expected):
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Admin authentication required",
                headers={"WWW-Authenticate": "Bearer"},
            )
    return (admin_id or "").strip() or "admin"
