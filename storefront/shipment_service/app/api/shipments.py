"""Admin HTTP routes for shipment management."""

from __future__ import annotations

import math
from datetime import date
from typing import Any, NoReturn

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request, Response, status
from sqlalchemy import inspect

from ..dependencies import get_rate_limiter, get_repository, get_shipment_service, require_admin
from ..errors import (
    CourierValidationError,
    EditValidationError,
    OrderNotFound,
    ShipmentError,
    ShipmentNotFound,
    ShipmentPreconditionError,
)
from ..models import Shipment
from ..rate_limit import EditRateLimiter
from ..repository import ShipmentRepository, load_json_list, load_json_object
from ..schemas import (
    BulkResultResponse,
    CancelRequest,
    EditEligibilityResponse,
    EditHistoryResponse,
    PickupRequest,
    PickupResponse,
    ShipmentCreate,
    ShipmentIdsRequest,
    ShipmentListResponse,
    ShipmentResponse,
    ShipmentUpdate,
    StatsResponse,
    SyncSummary,
    ValidateEditResponse,
)
from ..services import EditEligibilityReport, ShipmentService, paise_to_rupees
from ..status import ShipmentStatus, status_display, valid_statuses

router = APIRouter(prefix="/admin/shipments", tags=["shipments"], dependencies=[Depends(require_admin)])


def _serialize_shipment(shipment: Shipment) -> dict[str, object]:
    order = None if "order" in inspect(shipment).unloaded else shipment.order
    return {
        "id": shipment.id,
        "orderId": shipment.order_id,
        "orderNumber": order.order_number if order is not None else None,
        "weightGrams": shipment.weight_grams,
        "dimensionsCm": {
            "length": shipment.length_cm,
            "width": shipment.width_cm,
            "height": shipment.height_cm,
        },
        "packageCount": shipment.package_count,
        "shippingMode": shipment.shipping_mode,
        "destinationPincode": shipment.destination_pincode,
        "destinationCity": shipment.destination_city,
        "destinationState": shipment.destination_state,
        "pickupLocation": shipment.pickup_location,
        "awb": shipment.awb,
        "courier": shipment.courier,
        "trackingUrl": shipment.tracking_url,
        "delhiveryOrderId": shipment.delhivery_order_id,
        "delhiveryPickupId": shipment.delhivery_pickup_id,
        "labelUrl": shipment.label_url,
        "invoiceUrl": shipment.invoice_url,
        "manifestUrl": shipment.manifest_url,
        "estimatedCost": paise_to_rupees(shipment.estimated_cost_paise),
        "actualCost": paise_to_rupees(shipment.actual_cost_paise),
        "costBreakdown": load_json_object(shipment.cost_breakdown_json),
        "estimatedDelivery": shipment.estimated_delivery,
        "pickupScheduledDate": shipment.pickup_scheduled_date,
        "pickupActualDate": shipment.pickup_actual_date,
        "placedAt": shipment.placed_at,
        "approvedAt": shipment.approved_at,
        "lastSyncAt": shipment.last_sync_at,
        "cancelledAt": shipment.cancelled_at,
        "status": shipment.status,
        "statusDisplay": status_display(shipment.status),
        "editable": shipment.editable,
        "trackingHistory": load_json_list(shipment.tracking_history_json),
        "failedReason": shipment.failed_reason,
        "retryCount": shipment.retry_count,
        "adminNotes": shipment.admin_notes,
        "editedBy": shipment.edited_by,
        "approvedBy": shipment.approved_by,
        "cancellationReason": shipment.cancellation_reason,
        "createdAt": shipment.created_at,
        "updatedAt": shipment.updated_at,
    }


def _to_response(shipment: Shipment) -> ShipmentResponse:
    return ShipmentResponse.model_validate(_serialize_shipment(shipment))


def _eligibility_response(report: EditEligibilityReport) -> EditEligibilityResponse:
    return EditEligibilityResponse.model_validate(
        {
            "eligible": report.eligible,
            "reason": report.reason,
            "internalStatus": report.internal_status,
            "courierStatus": report.courier_status,
            "paymentMode": report.payment_mode,
            "message": report.message,
        }
    )


def _raise_http(exc: ShipmentError) -> NoReturn:
    if isinstance(exc, (ShipmentNotFound, OrderNotFound)):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(exc, ShipmentPreconditionError):
        code = status.HTTP_409_CONFLICT
    elif isinstance(exc, (EditValidationError, CourierValidationError)):
        code = status.HTTP_400_BAD_REQUEST
    else:
        code = status.HTTP_502_BAD_GATEWAY
    raise HTTPException(status_code=code, detail=exc.to_detail()) from exc


async def _load(repository: ShipmentRepository, shipment_id: int) -> Shipment:
    shipment = await repository.get_shipment(shipment_id)
    if shipment is None:
        _raise_http(ShipmentNotFound(shipment_id))
    return shipment


def _pdf_response(filename: str, content: bytes) -> Response:
    return Response(
        content=content,
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.get("/stats", response_model=StatsResponse)
async def get_stats(service: ShipmentService = Depends(get_shipment_service)) -> StatsResponse:
    return StatsResponse.model_validate(await service.get_stats())


@router.get("/pending", response_model=list[ShipmentResponse])
async def list_pending(repository: ShipmentRepository = Depends(get_repository)) -> list[ShipmentResponse]:
    shipments = await repository.list_by_status(ShipmentStatus.PENDING_REVIEW.value)
    return [_to_response(shipment) for shipment in shipments]


@router.get("/eligible-for-pickup", response_model=list[ShipmentResponse])
async def list_eligible_for_pickup(
    repository: ShipmentRepository = Depends(get_repository),
) -> list[ShipmentResponse]:
    shipments = await repository.list_eligible_for_pickup()
    return [_to_response(shipment) for shipment in shipments]


@router.get("", response_model=ShipmentListResponse)
async def list_shipments(
    status_filter: str | None = Query(default=None, alias="status"),
    search: str | None = Query(default=None, max_length=64),
    from_date: date | None = Query(default=None, alias="fromDate"),
    to_date: date | None = Query(default=None, alias="toDate"),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    sort: str = Query(default="created_at"),
    order: str = Query(default="desc", pattern="^(asc|desc)$"),
    repository: ShipmentRepository = Depends(get_repository),
) -> ShipmentListResponse:
    if status_filter is not None and status_filter not in valid_statuses():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unknown status '{status_filter}'",
        )
    shipments, total = await repository.list_shipments(
        status=status_filter,
        search=search,
        from_date=from_date,
        to_date=to_date,
        sort=sort,
        descending=order == "desc",
        limit=limit,
        offset=(page - 1) * limit,
    )
    return ShipmentListResponse(
        items=[_to_response(shipment) for shipment in shipments],
        total=total,
        page=page,
        limit=limit,
        totalPages=math.ceil(total / limit) if total else 0,
    )


@router.post("", response_model=ShipmentResponse, status_code=status.HTTP_201_CREATED)
async def create_shipment(
    payload: ShipmentCreate,
    service: ShipmentService = Depends(get_shipment_service),
) -> ShipmentResponse:
    try:
        shipment = await service.create_for_order(payload)
    except ShipmentError as exc:
        _raise_http(exc)
    return _to_response(shipment)


@router.post("/bulk-approve", response_model=BulkResultResponse)
async def bulk_approve(
    payload: ShipmentIdsRequest,
    admin_id: str = Depends(require_admin),
    service: ShipmentService = Depends(get_shipment_service),
) -> BulkResultResponse:
    outcome = await service.bulk_approve_and_place(payload.shipment_ids, admin_id)
    return BulkResultResponse.model_validate(
        {
            "success": outcome.success,
            "failed": [{"shipmentId": item["shipment_id"], "error": item["error"]} for item in outcome.failed],
            "total": outcome.total,
        }
    )


@router.post("/bulk-sync", response_model=SyncSummary)
async def bulk_sync(service: ShipmentService = Depends(get_shipment_service)) -> SyncSummary:
    return SyncSummary.model_validate(await service.bulk_sync_active_shipments())


@router.post("/bulk-pickup", response_model=PickupResponse)
async def bulk_pickup(
    payload: PickupRequest,
    service: ShipmentService = Depends(get_shipment_service),
) -> PickupResponse:
    try:
        outcome = await service.schedule_bulk_pickup(
            payload.shipment_ids,
            pickup_date=payload.pickup_date,
            pickup_time=payload.pickup_time,
            pickup_location=payload.pickup_location,
        )
    except ShipmentError as exc:
        _raise_http(exc)
    pickup = outcome.pickup
    return PickupResponse.model_validate(
        {
            "pickupId": pickup.id,
            "delhiveryPickupId": pickup.delhivery_pickup_id,
            "pickupLocation": pickup.pickup_location,
            "pickupDate": pickup.pickup_date,
            "pickupTime": pickup.pickup_time,
            "expectedPackageCount": pickup.expected_package_count,
            "scheduled": outcome.scheduled,
            "skipped": [{"shipmentId": item["shipment_id"], "error": item["error"]} for item in outcome.skipped],
            "reusedExisting": outcome.reused_existing,
        }
    )


@router.get("/{shipment_id}", response_model=ShipmentResponse)
async def get_shipment(
    shipment_id: int,
    repository: ShipmentRepository = Depends(get_repository),
) -> ShipmentResponse:
    return _to_response(await _load(repository, shipment_id))


@router.put("/{shipment_id}", response_model=ShipmentResponse)
async def update_shipment(
    shipment_id: int,
    payload: ShipmentUpdate,
    admin_id: str = Depends(require_admin),
    service: ShipmentService = Depends(get_shipment_service),
) -> ShipmentResponse:
    shipment = await _load(service.repository, shipment_id)
    try:
        updated = await service.update_details(shipment, payload, admin_id)
    except ShipmentError as exc:
        _raise_http(exc)
    return _to_response(updated)


@router.post("/{shipment_id}/recalculate-cost", response_model=ShipmentResponse)
async def recalculate_cost(
    shipment_id: int,
    service: ShipmentService = Depends(get_shipment_service),
) -> ShipmentResponse:
    shipment = await _load(service.repository, shipment_id)
    try:
        updated = await service.recalculate_cost(shipment)
    except ShipmentError as exc:
        _raise_http(exc)
    return _to_response(updated)


@router.post("/{shipment_id}/approve-and-place", response_model=ShipmentResponse)
async def approve_and_place(
    shipment_id: int,
    admin_id: str = Depends(require_admin),
    service: ShipmentService = Depends(get_shipment_service),
) -> ShipmentResponse:
    try:
        shipment = await service.approve_and_place(shipment_id, admin_id)
    except ShipmentError as exc:
        _raise_http(exc)
    return _to_response(shipment)


@router.post("/{shipment_id}/sync", response_model=ShipmentResponse)
async def sync_shipment(
    shipment_id: int,
    service: ShipmentService = Depends(get_shipment_service),
) -> ShipmentResponse:
    try:
        shipment = await service.sync_shipment(shipment_id)
    except ShipmentError as exc:
        _raise_http(exc)
    return _to_response(shipment)


@router.post("/{shipment_id}/cancel", response_model=ShipmentResponse)
async def cancel_shipment(
    shipment_id: int,
    payload: CancelRequest | None = None,
    admin_id: str = Depends(require_admin),
    service: ShipmentService = Depends(get_shipment_service),
) -> ShipmentResponse:
    reason = payload.reason if payload is not None else None
    try:
        shipment = await service.cancel_shipment(shipment_id, reason, admin_id)
    except ShipmentError as exc:
        _raise_http(exc)
    return _to_response(shipment)


@router.get("/{shipment_id}/edit-eligibility", response_model=EditEligibilityResponse)
async def get_edit_eligibility(
    shipment_id: int,
    service: ShipmentService = Depends(get_shipment_service),
) -> EditEligibilityResponse:
    shipment = await _load(service.repository, shipment_id)
    return _eligibility_response(await service.check_edit_eligibility(shipment))


@router.get("/{shipment_id}/edit-history", response_model=EditHistoryResponse)
async def get_edit_history(
    shipment_id: int,
    repository: ShipmentRepository = Depends(get_repository),
) -> EditHistoryResponse:
    shipment = await _load(repository, shipment_id)
    history = load_json_list(shipment.edit_history_json)
    return EditHistoryResponse(shipmentId=shipment.id, items=list(reversed(history)))


@router.post("/{shipment_id}/validate-edit", response_model=ValidateEditResponse)
async def validate_edit(
    shipment_id: int,
    data: dict[str, Any] = Body(...),
    service: ShipmentService = Depends(get_shipment_service),
) -> ValidateEditResponse:
    shipment = await _load(service.repository, shipment_id)
    result = await service.validate_edit(shipment, data)
    return ValidateEditResponse(
        valid=result["valid"],
        errors=result["errors"],
        sanitized=result["sanitized"],
        eligibility=_eligibility_response(result["eligibility"]),
    )


@router.put("/{shipment_id}/edit", response_model=ShipmentResponse)
async def edit_via_courier(
    shipment_id: int,
    request: Request,
    data: dict[str, Any] = Body(...),
    admin_id: str = Depends(require_admin),
    limiter: EditRateLimiter = Depends(get_rate_limiter),
    service: ShipmentService = Depends(get_shipment_service),
) -> ShipmentResponse:
    client_key = request.client.host if request.client is not None else admin_id
    decision = await limiter.hit(client_key)
    if not decision.allowed:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many edit requests, please slow down",
            headers={"Retry-After": str(decision.retry_after_seconds)},
        )
    try:
        shipment = await service.edit_via_courier(shipment_id, data, admin_id)
    except ShipmentError as exc:
        _raise_http(exc)
    return _to_response(shipment)


@router.get("/{shipment_id}/label")
async def download_label(
    shipment_id: int,
    service: ShipmentService = Depends(get_shipment_service),
) -> Response:
    shipment = await _load(service.repository, shipment_id)
    try:
        document = await service.download_label(shipment)
    except ShipmentError as exc:
        _raise_http(exc)
    return _pdf_response(document.filename, document.content)


@router.get("/{shipment_id}/invoice")
async def download_invoice(
    shipment_id: int,
    service: ShipmentService = Depends(get_shipment_service),
) -> Response:
    shipment = await _load(service.repository, shipment_id)
    try:
        document = await service.download_invoice(shipment)
    except ShipmentError as exc:
        _raise_http(exc)
    return _pdf_response(document.filename, document.content)
