"""Pydantic schemas for the shipment service."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

ShippingMode = Literal["Surface", "Express"]


def _normalize_mode(value: str | None) -> str | None:
    if value is None:
        return None
    cleaned = value.strip().lower()
    if cleaned in {"e", "express"}:
        return "Express"
    if cleaned in {"s", "surface"}:
        return "Surface"
    return value


class Dimensions(BaseModel):
    length: float = Field(gt=0, le=200)
    width: float = Field(gt=0, le=200)
    height: float = Field(gt=0, le=200)


class ShipmentCreate(BaseModel):
    order_id: int = Field(alias="orderId", ge=1)
    weight_grams: int = Field(default=1000, alias="weightGrams", gt=0, le=50_000)
    dimensions_cm: Dimensions | None = Field(default=None, alias="dimensionsCm")
    package_count: int = Field(default=1, alias="packageCount", ge=1, le=50)
    shipping_mode: ShippingMode | None = Field(default=None, alias="shippingMode")
    pickup_location: str | None = Field(default=None, alias="pickupLocation", max_length=128)
    admin_notes: str | None = Field(default=None, alias="adminNotes", max_length=1000)

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("shipping_mode", mode="before")
    @classmethod
    def _mode(cls, value: str | None) -> str | None:
        return _normalize_mode(value)


class ShipmentUpdate(BaseModel):
    weight_grams: int | None = Field(default=None, alias="weightGrams", gt=0, le=50_000)
    dimensions_cm: Dimensions | None = Field(default=None, alias="dimensionsCm")
    package_count: int | None = Field(default=None, alias="packageCount", ge=1, le=50)
    shipping_mode: ShippingMode | None = Field(default=None, alias="shippingMode")
    pickup_location: str | None = Field(default=None, alias="pickupLocation", max_length=128)
    admin_notes: str | None = Field(default=None, alias="adminNotes", max_length=1000)

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("shipping_mode", mode="before")
    @classmethod
    def _mode(cls, value: str | None) -> str | None:
        return _normalize_mode(value)


class ShipmentResponse(BaseModel):
    id: int
    order_id: int = Field(alias="orderId")
    order_number: str | None = Field(default=None, alias="orderNumber")
    weight_grams: int = Field(alias="weightGrams")
    dimensions_cm: Dimensions = Field(alias="dimensionsCm")
    package_count: int = Field(alias="packageCount")
    shipping_mode: str = Field(alias="shippingMode")
    destination_pincode: str = Field(alias="destinationPincode")
    destination_city: str | None = Field(default=None, alias="destinationCity")
    destination_state: str | None = Field(default=None, alias="destinationState")
    pickup_location: str = Field(alias="pickupLocation")
    awb: str | None = None
    courier: str | None = None
    tracking_url: str | None = Field(default=None, alias="trackingUrl")
    delhivery_order_id: str | None = Field(default=None, alias="delhiveryOrderId")
    delhivery_pickup_id: str | None = Field(default=None, alias="delhiveryPickupId")
    label_url: str | None = Field(default=None, alias="labelUrl")
    invoice_url: str | None = Field(default=None, alias="invoiceUrl")
    manifest_url: str | None = Field(default=None, alias="manifestUrl")
    estimated_cost: Decimal = Field(alias="estimatedCost")
    actual_cost: Decimal | None = Field(default=None, alias="actualCost")
    cost_breakdown: dict[str, Any] = Field(default_factory=dict, alias="costBreakdown")
    estimated_delivery: date | None = Field(default=None, alias="estimatedDelivery")
    pickup_scheduled_date: date | None = Field(default=None, alias="pickupScheduledDate")
    pickup_actual_date: date | None = Field(default=None, alias="pickupActualDate")
    placed_at: datetime | None = Field(default=None, alias="placedAt")
    approved_at: datetime | None = Field(default=None, alias="approvedAt")
    last_sync_at: datetime | None = Field(default=None, alias="lastSyncAt")
    cancelled_at: datetime | None = Field(default=None, alias="cancelledAt")
    status: str
    status_display: dict[str, Any] = Field(default_factory=dict, alias="statusDisplay")
    editable: bool
    tracking_history: list[dict[str, Any]] = Field(default_factory=list, alias="trackingHistory")
    failed_reason: str | None = Field(default=None, alias="failedReason")
    retry_count: int = Field(alias="retryCount")
    admin_notes: str | None = Field(default=None, alias="adminNotes")
    edited_by: str | None = Field(default=None, alias="editedBy")
    approved_by: str | None = Field(default=None, alias="approvedBy")
    cancellation_reason: str | None = Field(default=None, alias="cancellationReason")
    created_at: datetime = Field(alias="createdAt")
    updated_at: datetime = Field(alias="updatedAt")

    model_config = ConfigDict(populate_by_name=True)


class ShipmentListResponse(BaseModel):
    items: list[ShipmentResponse]
    total: int
    page: int
    limit: int
    total_pages: int = Field(alias="totalPages")

    model_config = ConfigDict(populate_by_name=True)


class ShipmentIdsRequest(BaseModel):
    shipment_ids: list[int] = Field(alias="shipmentIds", min_length=1, max_length=100)

    model_config = ConfigDict(populate_by_name=True)


class BulkFailure(BaseModel):
    shipment_id: int = Field(alias="shipmentId")
    error: str

    model_config = ConfigDict(populate_by_name=True)


class BulkResultResponse(BaseModel):
    success: list[int]
    failed: list[BulkFailure]
    total: int


class PickupRequest(BaseModel):
    shipment_ids: list[int] = Field(alias="shipmentIds", min_length=1, max_length=100)
    pickup_date: date | None = Field(default=None, alias="pickupDate")
    pickup_time: str = Field(default="14:00:00", alias="pickupTime", pattern=r"^\d{2}:\d{2}(:\d{2})?$")
    pickup_location: str | None = Field(default=None, alias="pickupLocation", max_length=128)

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("pickup_time")
    @classmethod
    def _seconds(cls, value: str) -> str:
        return value if value.count(":") == 2 else f"{value}:00"


class PickupResponse(BaseModel):
    pickup_id: int = Field(alias="pickupId")
    delhivery_pickup_id: str | None = Field(default=None, alias="delhiveryPickupId")
    pickup_location: str = Field(alias="pickupLocation")
    pickup_date: date = Field(alias="pickupDate")
    pickup_time: str = Field(alias="pickupTime")
    expected_package_count: int = Field(alias="expectedPackageCount")
    scheduled: list[int]
    skipped: list[BulkFailure]
    reused_existing: bool = Field(alias="reusedExisting")

    model_config = ConfigDict(populate_by_name=True)


class CancelRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=500)


class EditEligibilityResponse(BaseModel):
    eligible: bool
    reason: str | None = None
    internal_status: str = Field(alias="internalStatus")
    courier_status: str | None = Field(default=None, alias="courierStatus")
    payment_mode: str = Field(alias="paymentMode")
    message: str

    model_config = ConfigDict(populate_by_name=True)


class EditHistoryResponse(BaseModel):
    shipment_id: int = Field(alias="shipmentId")
    items: list[dict[str, Any]]

    model_config = ConfigDict(populate_by_name=True)


class ValidateEditResponse(BaseModel):
    valid: bool
    errors: list[str]
    sanitized: dict[str, Any]
    eligibility: EditEligibilityResponse | None = None


class StatsResponse(BaseModel):
    total: int
    by_status: dict[str, int] = Field(alias="byStatus")
    pending_review: int = Field(alias="pendingReview")
    active: int
    estimated_cost_total: Decimal = Field(alias="estimatedCostTotal")
    actual_cost_total: Decimal = Field(alias="actualCostTotal")

    model_config = ConfigDict(populate_by_name=True)


class SyncSummary(BaseModel):
    success: int
    failed: int
    total: int
    results: list[dict[str, Any]] = Field(default_factory=list)


class CourierEvent(BaseModel):
    """Status push from the courier webhook."""

    waybill: str = Field(min_length=1, max_length=32)
    status: str = Field(min_length=1, max_length=64)
    status_datetime: str | None = None
    location: str | None = None
    expected_delivery_date: str | None = None
    remarks: str | None = None

    @field_validator("waybill", "status", mode="before")
    @classmethod
    def _strip(cls, value: object) -> str:
        return str(value).strip() if value is not None else ""


class CronSyncResponse(BaseModel):
    success: bool
    message: str
    summary: SyncSummary | None = None
    error: str | None = None
