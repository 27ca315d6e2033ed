"""Public delivery lookups backed by the courier gateway."""

from __future__ import annotations

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse

from ..courier import DeliveryCheck, DelhiveryGateway, ServiceabilityResult, ServiceFeatures, TatEstimate
from ..dependencies import get_gateway

router = APIRouter(prefix="/delivery", tags=["delivery"])


def _features(features: ServiceFeatures) -> dict[str, bool]:
    return {
        "cod": features.cod,
        "prepaid": features.prepaid,
        "pickup": features.pickup,
        "reverse": features.reverse,
        "cash": features.cash,
    }


def _estimate(estimate: TatEstimate | None) -> dict[str, object] | None:
    if estimate is None:
        return None
    return {
        "estimatedDays": estimate.estimated_days,
        "expectedDeliveryDate": estimate.expected_delivery_date.isoformat(),
        "mode": estimate.mode,
        "source": estimate.source,
    }


def _serialize_serviceability(result: ServiceabilityResult) -> dict[str, object]:
    return {
        "pincode": result.pincode,
        "serviceable": result.serviceable,
        "status": result.status,
        "city": result.city,
        "state": result.state,
        "features": _features(result.features),
        "reason": result.reason,
    }


def _serialize_delivery(check: DeliveryCheck) -> dict[str, object]:
    return {
        "pincode": check.pincode,
        "serviceable": check.serviceable,
        "city": check.city,
        "state": check.state,
        "features": _features(check.features),
        "surface": _estimate(check.surface),
        "express": _estimate(check.express),
        "bestOption": _estimate(check.best_option),
        "reason": check.reason,
    }


@router.get("/check-pin/{pincode}")
async def check_pin(pincode: str, gateway: DelhiveryGateway = Depends(get_gateway)) -> dict[str, object]:
    return _serialize_serviceability(await gateway.check_serviceability(pincode))


@router.get("/check-delivery/{pincode}")
async def check_delivery(pincode: str, gateway: DelhiveryGateway = Depends(get_gateway)) -> dict[str, object]:
    return _serialize_delivery(await gateway.check_delivery(pincode))


@router.get("/health")
async def courier_health(gateway: DelhiveryGateway = Depends(get_gateway)) -> JSONResponse:
    report = await gateway.health_check()
    code = status.HTTP_200_OK if report["healthy"] else status.HTTP_503_SERVICE_UNAVAILABLE
    return JSONResponse(status_code=code, content=report)
