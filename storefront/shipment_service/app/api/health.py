from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from ..dependencies import get_repository
from ..repository import ShipmentRepository

router = APIRouter(prefix="/health", tags=["health"])


@router.get("", status_code=status.HTTP_200_OK)
async def healthcheck() -> dict[str, str]:
    """Liveness probe."""

    return {"status": "ok"}


@router.get("/ready")
async def readiness(request: Request, repository: ShipmentRepository = Depends(get_repository)) -> JSONResponse:
    """Readiness probe: database reachable and courier token present."""

    try:
        await repository.session.execute(text("SELECT 1"))
        database = "ok"
    except SQLAlchemyError:
        database = "unavailable"
    gateway = getattr(request.app.state, "courier_gateway", None)
    courier = "configured" if gateway is not None and gateway.configured else "not_configured"
    ready = database == "ok"
    return JSONResponse(
        status_code=status.HTTP_200_OK if ready else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"status": "ok" if ready else "degraded", "database": database, "courier": courier},
    )
