"""Domain services for the shipment lifecycle."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Mapping

from sqlalchemy.exc import SQLAlchemyError

from storefront.common import ServiceSettings

from .courier import (
    COURIER_NAME,
    EXPRESS,
    SURFACE,
    BookingRequest,
    CostEstimate,
    DelhiveryGateway,
    TrackingInfo,
    normalize_mode,
)
from .errors import (
    CourierError,
    CourierUnavailableError,
    EditValidationError,
    OrderNotFound,
    ShipmentBookingError,
    ShipmentError,
    ShipmentNotFound,
    ShipmentPreconditionError,
)
from .metrics import SHIPMENT_BOOKINGS_TOTAL, SHIPMENT_SYNC_TOTAL, SHIPMENT_WEBHOOK_EVENTS_TOTAL
from .models import DailyPickup, Order, Shipment
from .repository import ShipmentRepository, dump_json, load_json_list, load_json_object
from .schemas import CourierEvent, ShipmentCreate, ShipmentUpdate
from .status import (
    COURIER_STATUS_MAPPING,
    COURIER_STATUS_MAPPING_VERSION,
    OrderStatus,
    ShipmentStatus,
    is_terminal,
    map_courier_status,
    order_status_for,
)
from .validators import (
    edit_restrictions_message,
    is_status_editable,
    normalize_payment_mode,
    sanitize_edit_data,
    validate_edit_fields,
    validate_payment_mode_change,
)

_LOGGER = logging.getLogger(__name__)

DEFAULT_DELIVERY_DAYS = 5
DEFAULT_DIMENSION_CM = 10.0
_PAISE = Decimal("100")
_PRE_BOOKING_STATUSES = {ShipmentStatus.PENDING_REVIEW.value, ShipmentStatus.APPROVED.value}


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _today() -> date:
    return _now_utc().date()


def to_paise(amount: Decimal) -> int:
    return int((amount * _PAISE).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def paise_to_rupees(paise: int | None) -> Decimal | None:
    if paise is None:
        return None
    return (Decimal(paise) / _PAISE).quantize(Decimal("0.01"))


def _parse_date(value: Any) -> date | None:
    if isinstance(value, date):
        return value
    if not isinstance(value, str) or len(value) < 10:
        return None
    try:
        return date.fromisoformat(value[:10])
    except ValueError:
        return None


def resolve_estimated_delivery(metadata: Mapping[str, Any], today: date | None = None) -> date:
    """Pick the delivery estimate: explicit order date, then estimated days, then a default."""

    today = today or _today()
    explicit = _parse_date(metadata.get("expected_delivery_date"))
    if explicit is not None:
        return explicit
    try:
        days = int(metadata.get("estimated_days") or 0)
    except (TypeError, ValueError):
        days = 0
    if days > 0:
        return today + timedelta(days=days)
    return today + timedelta(days=DEFAULT_DELIVERY_DAYS)


def _payment_type(order: Order) -> str:
    return "COD" if (order.payment_method or "").strip().lower() == "cod" else "Prepaid"


def _alternate_mode(mode: str) -> str:
    return SURFACE if mode == EXPRESS else EXPRESS


def _cost_breakdown(selected: CostEstimate, alternate: CostEstimate) -> dict[str, Any]:
    return {
        "mode": selected.mode,
        "currency": selected.currency,
        "source": selected.source,
        "base_charge": str(selected.base_charge),
        "cod_charge": str(selected.cod_charge),
        "other_charges": str(selected.other_charges),
        "taxes": str(selected.taxes),
        "total": str(selected.amount),
        "mode_comparison": {
            selected.mode: {"amount": str(selected.amount), "source": selected.source},
            alternate.mode: {"amount": str(alternate.amount), "source": alternate.source},
        },
    }


def _event_key(event: Mapping[str, Any]) -> tuple[Any, Any]:
    return event.get("status"), event.get("timestamp")


def _append_events(history: list[dict[str, Any]], events: list[dict[str, Any]]) -> list[dict[str, Any]]:
    seen = {_event_key(entry) for entry in history}
    merged = list(history)
    for event in events:
        key = _event_key(event)
        if key in seen:
            continue
        seen.add(key)
        merged.append(event)
    return merged


@dataclass(slots=True)
class BulkOutcome:
    success: list[int] = field(default_factory=list)
    failed: list[dict[str, Any]] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.success) + len(self.failed)


@dataclass(slots=True)
class PickupOutcome:
    pickup: DailyPickup
    scheduled: list[int]
    skipped: list[dict[str, Any]]
    reused_existing: bool


@dataclass(frozen=True, slots=True)
class EditEligibilityReport:
    eligible: bool
    reason: str | None
    internal_status: str
    courier_status: str | None
    payment_mode: str
    message: str


@dataclass(frozen=True, slots=True)
class DocumentPayload:
    filename: str
    content: bytes


class ShipmentService:
    """Application service orchestrating shipment creation, booking and reconciliation."""

    def __init__(
        self,
        repository: ShipmentRepository,
        gateway: DelhiveryGateway,
        settings: ServiceSettings,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.repository = repository
        self.gateway = gateway
        self.settings = settings
        self._sleep = sleep

    async def _require(self, shipment_id: int, *, fresh: bool = False) -> Shipment:
        shipment = await self.repository.get_shipment(shipment_id, fresh=fresh)
        if shipment is None:
            raise ShipmentNotFound(shipment_id)
        return shipment

    async def _estimate_costs(
        self, order: Order, *, mode: str, weight_grams: int
    ) -> tuple[CostEstimate, CostEstimate]:
        payment_type = _payment_type(order)
        selected, alternate = await asyncio.gather(
            self.gateway.estimate_cost(
                order.shipping_pincode, mode=mode, weight_grams=weight_grams, payment_type=payment_type
            ),
            self.gateway.estimate_cost(
                order.shipping_pincode,
                mode=_alternate_mode(mode),
                weight_grams=weight_grams,
                payment_type=payment_type,
            ),
        )
        return selected, alternate

    # Creation and pre-booking edits --------------------------------------------------------

    async def create_for_order(self, payload: ShipmentCreate) -> Shipment:
        order = await self.repository.get_order(payload.order_id)
        if order is None:
            raise OrderNotFound(payload.order_id)

        metadata = load_json_object(order.delivery_metadata_json)
        mode = normalize_mode(payload.shipping_mode or metadata.get("mode"))
        selected, alternate = await self._estimate_costs(order, mode=mode, weight_grams=payload.weight_grams)
        dimensions = payload.dimensions_cm

        shipment = await self.repository.create_shipment(
            order_id=order.id,
            weight_grams=payload.weight_grams,
            length_cm=dimensions.length if dimensions else DEFAULT_DIMENSION_CM,
            width_cm=dimensions.width if dimensions else DEFAULT_DIMENSION_CM,
            height_cm=dimensions.height if dimensions else DEFAULT_DIMENSION_CM,
            package_count=payload.package_count,
            shipping_mode=mode,
            destination_pincode=order.shipping_pincode,
            destination_city=order.shipping_city,
            destination_state=order.shipping_state,
            pickup_location=payload.pickup_location or self.settings.warehouse_name,
            estimated_cost_paise=to_paise(selected.amount),
            cost_breakdown_json=dump_json(_cost_breakdown(selected, alternate)),
            estimated_delivery=resolve_estimated_delivery(metadata),
            status=ShipmentStatus.PENDING_REVIEW.value,
            editable=True,
            edit_history_json="[]",
            tracking_history_json="[]",
            admin_notes=payload.admin_notes,
        )
        _LOGGER.info(
            "Created shipment %s for order %s (%s, estimate %s from %s)",
            shipment.id,
            order.order_number,
            mode,
            selected.amount,
            selected.source,
        )
        return shipment

    def _record_edit(self, shipment: Shipment, fields_changed: list[str], admin_id: str | None, **extra: Any) -> None:
        history = load_json_list(shipment.edit_history_json)
        history.append(
            {
                "fields_changed": fields_changed,
                "edited_at": _now_utc().isoformat(),
                "edited_by": admin_id,
                **extra,
            }
        )
        shipment.edit_history_json = dump_json(history)
        shipment.edited_by = admin_id

    async def update_details(self, shipment: Shipment, payload: ShipmentUpdate, admin_id: str | None) -> Shipment:
        if not shipment.editable or shipment.awb is not None or shipment.status not in _PRE_BOOKING_STATUSES:
            raise ShipmentPreconditionError("Shipment is locked and can no longer be edited")

        changed: list[str] = []
        if payload.weight_grams is not None and payload.weight_grams != shipment.weight_grams:
            shipment.weight_grams = payload.weight_grams
            changed.append("weight_grams")
        if payload.dimensions_cm is not None:
            dims = payload.dimensions_cm
            if (dims.length, dims.width, dims.height) != (shipment.length_cm, shipment.width_cm, shipment.height_cm):
                shipment.length_cm = dims.length
                shipment.width_cm = dims.width
                shipment.height_cm = dims.height
                changed.append("dimensions_cm")
        if payload.package_count is not None and payload.package_count != shipment.package_count:
            shipment.package_count = payload.package_count
            changed.append("package_count")
        if payload.shipping_mode is not None and payload.shipping_mode != shipment.shipping_mode:
            shipment.shipping_mode = payload.shipping_mode
            changed.append("shipping_mode")
        if payload.pickup_location is not None and payload.pickup_location != shipment.pickup_location:
            shipment.pickup_location = payload.pickup_location
            changed.append("pickup_location")
        if payload.admin_notes is not None and payload.admin_notes != shipment.admin_notes:
            shipment.admin_notes = payload.admin_notes
            changed.append("admin_notes")

        if not changed:
            return shipment
        if {"weight_grams", "shipping_mode"} & set(changed):
            await self._apply_cost_estimate(shipment)
        self._record_edit(shipment, changed, admin_id)
        return await self.repository.save(shipment)

    async def _apply_cost_estimate(self, shipment: Shipment) -> None:
        order = await self.repository.get_order(shipment.order_id)
        if order is None:
            raise OrderNotFound(shipment.order_id)
        selected, alternate = await self._estimate_costs(
            order, mode=normalize_mode(shipment.shipping_mode), weight_grams=shipment.weight_grams
        )
        shipment.estimated_cost_paise = to_paise(selected.amount)
        shipment.cost_breakdown_json = dump_json(_cost_breakdown(selected, alternate))

    async def recalculate_cost(self, shipment: Shipment) -> Shipment:
        """Refresh the estimate; booked shipments keep the cost fixed at booking."""

        if shipment.awb is not None or shipment.status not in _PRE_BOOKING_STATUSES:
            raise ShipmentPreconditionError("Cost is fixed once the shipment is booked")
        await self._apply_cost_estimate(shipment)
        return await self.repository.save(shipment)

    # Approval and booking ------------------------------------------------------------------

    def _booking_request(self, shipment: Shipment, order: Order) -> BookingRequest:
        return BookingRequest(
            order_number=order.order_number,
            customer_name=order.customer_name,
            customer_phone=order.customer_phone,
            address=order.shipping_address,
            city=shipment.destination_city or order.shipping_city,
            state=shipment.destination_state or order.shipping_state,
            pincode=shipment.destination_pincode,
            payment_mode=_payment_type(order),
            total_amount=paise_to_rupees(order.final_total_paise) or Decimal("0"),
            weight_grams=shipment.weight_grams,
            length_cm=shipment.length_cm,
            width_cm=shipment.width_cm,
            height_cm=shipment.height_cm,
            shipping_mode=shipment.shipping_mode,
            package_count=shipment.package_count,
            products_desc=order.items_description or f"Order {order.order_number}",
            pickup_location=shipment.pickup_location,
        )

    async def approve_and_place(self, shipment_id: int, admin_id: str | None) -> Shipment:
        shipment = await self._require(shipment_id)
        if shipment.status != ShipmentStatus.PENDING_REVIEW.value:
            raise ShipmentPreconditionError(
                f"Shipment must be pending_review to approve (current: {shipment.status})"
            )
        order = await self.repository.get_order(shipment.order_id)
        if order is None:
            raise OrderNotFound(shipment.order_id)
        order_id = order.id
        request = self._booking_request(shipment, order)

        shipment.status = ShipmentStatus.APPROVED.value
        shipment.approved_by = admin_id
        shipment.approved_at = _now_utc()
        await self.repository.save(shipment)
        await self.repository.commit()

        try:
            booking = await self.gateway.create_shipment(request)
        except Exception as exc:
            message = str(exc) or exc.__class__.__name__
            retry_count = await self._rollback_approval(shipment_id, message)
            SHIPMENT_BOOKINGS_TOTAL.labels(outcome="failed").inc()
            _LOGGER.warning(
                "Booking failed for shipment %s (attempt %s): %s", shipment_id, retry_count, message
            )
            raise ShipmentBookingError(message, retry_count=retry_count) from exc

        shipment.awb = booking.awb
        shipment.courier = COURIER_NAME
        shipment.tracking_url = booking.tracking_url
        shipment.label_url = booking.label_url
        shipment.invoice_url = booking.invoice_url
        shipment.manifest_url = booking.manifest_url
        shipment.delhivery_order_id = booking.delhivery_order_id
        shipment.actual_cost_paise = (
            to_paise(booking.cost) if booking.cost is not None else shipment.estimated_cost_paise
        )
        shipment.status = ShipmentStatus.PLACED.value
        shipment.editable = False
        shipment.placed_at = _now_utc()
        shipment.pickup_scheduled_date = _today() + timedelta(days=1)
        shipment.failed_reason = None
        await self.repository.save(shipment)
        await self.repository.commit()
        SHIPMENT_BOOKINGS_TOTAL.labels(outcome="placed").inc()
        _LOGGER.info("Shipment %s booked with AWB %s", shipment_id, booking.awb)

        try:
            await self.repository.update_order_status(order_id, status=OrderStatus.CONFIRMED.value)
            await self.repository.commit()
        except SQLAlchemyError:
            _LOGGER.exception("Shipment %s booked but order %s could not be confirmed", shipment_id, order_id)
            await self.repository.rollback()
            return await self._require(shipment_id)
        return shipment

    async def _rollback_approval(self, shipment_id: int, message: str) -> int:
        await self.repository.rollback()
        shipment = await self._require(shipment_id, fresh=True)
        shipment.status = ShipmentStatus.PENDING_REVIEW.value
        shipment.approved_by = None
        shipment.approved_at = None
        shipment.failed_reason = message
        shipment.retry_count = (shipment.retry_count or 0) + 1
        await self.repository.save(shipment)
        await self.repository.commit()
        return shipment.retry_count

    async def bulk_approve_and_place(self, shipment_ids: list[int], admin_id: str | None) -> BulkOutcome:
        outcome = BulkOutcome()
        for shipment_id in dict.fromkeys(shipment_ids):
            try:
                await self.approve_and_place(shipment_id, admin_id)
            except ShipmentError as exc:
                await self.repository.rollback()
                outcome.failed.append({"shipment_id": shipment_id, "error": exc.message})
            except Exception as exc:
                _LOGGER.exception("Unexpected failure approving shipment %s", shipment_id)
                await self.repository.rollback()
                outcome.failed.append({"shipment_id": shipment_id, "error": str(exc)})
            else:
                outcome.success.append(shipment_id)
        return outcome

    # Tracking ------------------------------------------------------------------------------

    async def _propagate_to_order(self, shipment: Shipment) -> None:
        order_status = order_status_for(shipment.status)
        if order_status is None:
            return
        delivered_at = _now_utc() if order_status is OrderStatus.DELIVERED else None
        order = await self.repository.update_order_status(
            shipment.order_id, status=order_status.value, delivered_at=delivered_at
        )
        if order is None:
            _LOGGER.warning("Shipment %s references missing order %s", shipment.id, shipment.order_id)

    async def _apply_status(
        self,
        shipment: Shipment,
        new_status: ShipmentStatus | None,
        events: list[dict[str, Any]],
        expected_delivery: date | None,
    ) -> Shipment:
        if new_status is not None:
            shipment.status = new_status.value
            if new_status is ShipmentStatus.PICKED_UP and shipment.pickup_actual_date is None:
                shipment.pickup_actual_date = _today()
            if new_status is ShipmentStatus.CANCELLED:
                shipment.editable = False
                shipment.cancelled_at = shipment.cancelled_at or _now_utc()
        shipment.tracking_history_json = dump_json(
            _append_events(load_json_list(shipment.tracking_history_json), events)
        )
        shipment.last_sync_at = _now_utc()
        if expected_delivery is not None:
            shipment.estimated_delivery = expected_delivery
        await self.repository.save(shipment)
        if new_status is not None:
            await self._propagate_to_order(shipment)
        return shipment

    async def update_tracking_status(self, shipment: Shipment, tracking: TrackingInfo) -> Shipment:
        """Single ingestion path for polled courier status."""

        if is_terminal(shipment.status):
            _LOGGER.debug("Shipment %s is terminal (%s); ignoring courier status", shipment.id, shipment.status)
            shipment.last_sync_at = _now_utc()
            return await self.repository.save(shipment)

        mapped = COURIER_STATUS_MAPPING.get(tracking.status)
        if mapped is None:
            _LOGGER.warning(
                "Unrecognised courier status %r for AWB %s (mapping v%s); keeping %s",
                tracking.raw_status,
                shipment.awb,
                COURIER_STATUS_MAPPING_VERSION,
                shipment.status,
            )

        events = [
            {
                "status": scan.get("status"),
                "mapped_status": (map_courier_status(scan.get("status")) or ShipmentStatus(shipment.status)).value,
                "timestamp": scan.get("timestamp"),
                "location": scan.get("location"),
                "remarks": scan.get("remarks"),
            }
            for scan in tracking.history
        ]
        history = load_json_list(shipment.tracking_history_json)
        # Without scans, only record the snapshot when the courier status moved.
        if not events and (not history or history[-1].get("status") != tracking.raw_status):
            events.append(
                {
                    "status": tracking.raw_status,
                    "mapped_status": (mapped or ShipmentStatus(shipment.status)).value,
                    "timestamp": tracking.status_at or _now_utc().isoformat(),
                    "location": tracking.current_location,
                    "remarks": None,
                }
            )
        return await self._apply_status(shipment, mapped, events, tracking.expected_delivery_date)

    async def sync_shipment(self, shipment_id: int) -> Shipment:
        shipment = await self._require(shipment_id)
        if not shipment.awb:
            raise ShipmentPreconditionError("Shipment has not been booked with the courier yet")
        tracking = await self.gateway.get_tracking_info(shipment.awb)
        if tracking is None:
            SHIPMENT_SYNC_TOTAL.labels(outcome="no_data").inc()
            raise CourierUnavailableError(f"No tracking data available for AWB {shipment.awb}")
        updated = await self.update_tracking_status(shipment, tracking)
        SHIPMENT_SYNC_TOTAL.labels(outcome="synced").inc()
        return updated

    async def bulk_sync_active_shipments(self) -> dict[str, Any]:
        """Poll every booked, non-final shipment one at a time."""

        shipment_ids = await self.repository.list_active_shipment_ids()
        results: list[dict[str, Any]] = []
        success = failed = 0
        for index, shipment_id in enumerate(shipment_ids):
            try:
                shipment = await self.sync_shipment(shipment_id)
                new_status = shipment.status
                await self.repository.commit()
            except Exception as exc:
                await self.repository.rollback()
                failed += 1
                if not isinstance(exc, ShipmentError):
                    SHIPMENT_SYNC_TOTAL.labels(outcome="error").inc()
                    _LOGGER.exception("Sync failed for shipment %s", shipment_id)
                else:
                    _LOGGER.warning("Sync failed for shipment %s: %s", shipment_id, exc)
                results.append({"shipmentId": shipment_id, "success": False, "error": str(exc)})
            else:
                success += 1
                results.append({"shipmentId": shipment_id, "success": True, "status": new_status})
            if index < len(shipment_ids) - 1 and self.settings.shipment_sync_delay_seconds > 0:
                await self._sleep(self.settings.shipment_sync_delay_seconds)

        _LOGGER.info("Bulk sync finished: %s synced, %s failed of %s", success, failed, len(shipment_ids))
        return {"success": success, "failed": failed, "total": len(shipment_ids), "results": results}

    async def ingest_courier_event(self, event: CourierEvent) -> str:
        """Apply one webhook status push. Returns the outcome label."""

        shipment = await self.repository.get_shipment_by_awb(event.waybill)
        if shipment is None:
            _LOGGER.warning("Webhook for unknown AWB %s", event.waybill)
            outcome = "not_found"
        elif is_terminal(shipment.status):
            outcome = "terminal"
        else:
            mapped = map_courier_status(event.status)
            if mapped is None:
                _LOGGER.warning("Webhook carried unrecognised status %r for AWB %s", event.status, event.waybill)
                outcome = "unknown_status"
            elif mapped.value == shipment.status:
                outcome = "unchanged"
            else:
                entry = {
                    "status": event.status,
                    "mapped_status": mapped.value,
                    "timestamp": event.status_datetime or _now_utc().isoformat(),
                    "location": event.location,
                    "remarks": event.remarks,
                }
                await self._apply_status(shipment, mapped, [entry], _parse_date(event.expected_delivery_date))
                outcome = "updated"
        SHIPMENT_WEBHOOK_EVENTS_TOTAL.labels(outcome=outcome).inc()
        return outcome

    # Cancellation --------------------------------------------------------------------------

    async def cancel_shipment(self, shipment_id: int, reason: str | None, admin_id: str | None = None) -> Shipment:
        shipment = await self._require(shipment_id)
        if is_terminal(shipment.status):
            raise ShipmentPreconditionError(f"Shipment is already {shipment.status} and cannot be cancelled")
        if shipment.awb:
            await self.gateway.cancel_shipment(shipment.awb)
            _LOGGER.info("Cancelled AWB %s with Delhivery", shipment.awb)

        shipment.cancellation_reason = reason
        if admin_id is not None:
            shipment.edited_by = admin_id
        entry = {
            "status": "Cancelled",
            "mapped_status": ShipmentStatus.CANCELLED.value,
            "timestamp": _now_utc().isoformat(),
            "location": None,
            "remarks": reason,
        }
        return await self._apply_status(shipment, ShipmentStatus.CANCELLED, [entry], None)

    # Pickups -------------------------------------------------------------------------------

    async def schedule_bulk_pickup(
        self,
        shipment_ids: list[int],
        *,
        pickup_date: date | None = None,
        pickup_time: str = "14:00:00",
        pickup_location: str | None = None,
    ) -> PickupOutcome:
        pickup_date = pickup_date or _today() + timedelta(days=1)
        location = pickup_location or self.settings.warehouse_name

        eligible: list[int] = []
        skipped: list[dict[str, Any]] = []
        package_count = 0
        for shipment_id in dict.fromkeys(shipment_ids):
            shipment = await self.repository.get_shipment(shipment_id)
            if shipment is None:
                skipped.append({"shipment_id": shipment_id, "error": "Shipment not found"})
            elif shipment.status != ShipmentStatus.PLACED.value or not shipment.awb:
                skipped.append(
                    {"shipment_id": shipment_id, "error": f"Not eligible for pickup (status: {shipment.status})"}
                )
            else:
                eligible.append(shipment_id)
                package_count += shipment.package_count or 1
        if not eligible:
            raise ShipmentPreconditionError("No shipments eligible for pickup")

        reused = False
        existing = await self.repository.get_active_pickup(location, pickup_date)
        if existing is not None:
            pickup = await self.repository.increment_pickup(existing.id, package_count)
            reused = True
        else:
            result = await self.gateway.schedule_pickup(
                pickup_date=pickup_date,
                pickup_time=pickup_time,
                package_count=package_count,
                pickup_location=location,
            )
            if not result.success:
                raise CourierError(result.error or "Delhivery pickup request failed")
            inserted = await self.repository.insert_pickup(
                pickup_location=location,
                pickup_date=pickup_date,
                pickup_time=pickup_time,
                delhivery_pickup_id=result.pickup_id,
                package_count=package_count,
            )
            if inserted is None:
                # Another request created the active row first.
                existing = await self.repository.get_active_pickup(location, pickup_date)
                if existing is None:
                    raise ShipmentPreconditionError("Pickup record changed concurrently; retry the request")
                pickup = await self.repository.increment_pickup(existing.id, package_count)
                reused = True
            else:
                pickup = inserted

        for shipment_id in eligible:
            shipment = await self._require(shipment_id)
            shipment.status = ShipmentStatus.PENDING_PICKUP.value
            shipment.delhivery_pickup_id = pickup.delhivery_pickup_id
            shipment.pickup_scheduled_date = pickup_date
            await self.repository.save(shipment)

        _LOGGER.info(
            "Pickup %s at %s on %s now expects %s packages",
            pickup.id,
            location,
            pickup_date,
            pickup.expected_package_count,
        )
        return PickupOutcome(pickup=pickup, scheduled=eligible, skipped=skipped, reused_existing=reused)

    # Courier edits -------------------------------------------------------------------------

    async def _payment_mode(self, shipment: Shipment) -> str:
        order = await self.repository.get_order(shipment.order_id)
        return normalize_payment_mode(_payment_type(order) if order is not None else "Prepaid")

    async def check_edit_eligibility(self, shipment: Shipment) -> EditEligibilityReport:
        """Both the internal status table and the live courier status must allow the edit."""

        payment_mode = await self._payment_mode(shipment)
        message = edit_restrictions_message(shipment.status, payment_mode)
        if not shipment.awb:
            return EditEligibilityReport(
                False,
                "Shipment has not been booked with the courier yet",
                shipment.status,
                None,
                payment_mode,
                message,
            )

        decision = is_status_editable(shipment.status, payment_mode)
        if not decision.allowed:
            return EditEligibilityReport(False, decision.reason, shipment.status, None, payment_mode, message)

        courier = await self.gateway.validate_edit_eligibility(shipment.awb)
        return EditEligibilityReport(
            courier.eligible,
            courier.reason,
            shipment.status,
            courier.current_status,
            payment_mode,
            message if courier.eligible else courier.reason or message,
        )

    async def validate_edit(self, shipment: Shipment, data: Mapping[str, Any]) -> dict[str, Any]:
        """Dry run of :meth:`edit_via_courier` without calling the edit API."""

        errors = list(validate_edit_fields(data).errors)
        sanitized: dict[str, Any] = {}
        try:
            sanitized = sanitize_edit_data(data)
        except EditValidationError as exc:
            errors.extend(error for error in exc.errors if error not in errors)
        eligibility = await self.check_edit_eligibility(shipment)
        if "pt" in sanitized:
            decision = validate_payment_mode_change(
                eligibility.payment_mode, sanitized["pt"], sanitized.get("cod_amount")
            )
            if not decision.valid and decision.reason:
                errors.append(decision.reason)
        if not eligibility.eligible and eligibility.reason:
            errors.append(eligibility.reason)
        return {"valid": not errors, "errors": errors, "sanitized": sanitized, "eligibility": eligibility}

    async def edit_via_courier(self, shipment_id: int, data: Mapping[str, Any], admin_id: str | None) -> Shipment:
        shipment = await self._require(shipment_id)
        if not shipment.awb:
            raise ShipmentPreconditionError("Shipment has not been booked with the courier yet")
        if not data:
            raise EditValidationError("At least one field must be provided for update")

        validation = validate_edit_fields(data)
        if not validation.valid:
            raise EditValidationError("Validation failed", validation.errors)
        sanitized = sanitize_edit_data(data)
        if not sanitized:
            raise EditValidationError("At least one field must be provided for update")

        eligibility = await self.check_edit_eligibility(shipment)
        if not eligibility.eligible:
            raise ShipmentPreconditionError(eligibility.reason or "Shipment cannot be edited")

        if "pt" in sanitized:
            decision = validate_payment_mode_change(
                eligibility.payment_mode, sanitized["pt"], sanitized.get("cod_amount")
            )
            if not decision.valid:
                raise EditValidationError(decision.reason or "Invalid payment mode change", [decision.reason or ""])

        courier_fields = {key: value for key, value in sanitized.items() if key != "admin_notes"}
        if courier_fields:
            await self.gateway.edit_shipment(shipment.awb, courier_fields)

        if "weight" in sanitized:
            shipment.weight_grams = int(round(sanitized["weight"]))
        if "shipment_length" in sanitized:
            shipment.length_cm = sanitized["shipment_length"]
        if "shipment_width" in sanitized:
            shipment.width_cm = sanitized["shipment_width"]
        if "shipment_height" in sanitized:
            shipment.height_cm = sanitized["shipment_height"]
        if "admin_notes" in sanitized:
            shipment.admin_notes = sanitized["admin_notes"]
        if "pt" in sanitized:
            await self.repository.update_order_payment_method(
                shipment.order_id, "cod" if sanitized["pt"] == "COD" else "prepaid"
            )

        self._record_edit(shipment, list(sanitized), admin_id, via="courier")
        _LOGGER.info("Edited AWB %s fields %s", shipment.awb, ", ".join(sanitized))
        return await self.repository.save(shipment)

    # Documents -----------------------------------------------------------------------------

    async def _download(self, shipment: Shipment, kind: str) -> DocumentPayload:
        if not shipment.awb:
            raise ShipmentPreconditionError(f"A {kind} is only available after booking")
        if kind == "label":
            result = await self.gateway.generate_label(shipment.awb)
        else:
            result = await self.gateway.generate_invoice(shipment.awb)
        if not result.success:
            raise CourierUnavailableError(result.error or f"Delhivery did not return a {kind}")
        content = result.pdf_bytes
        if content is None and result.document_url:
            content = await self.gateway.fetch_document(result.document_url)
        if not content:
            raise CourierUnavailableError(f"Delhivery returned an empty {kind}")
        return DocumentPayload(filename=f"{kind}-{shipment.awb}.pdf", content=content)

    async def download_label(self, shipment: Shipment) -> DocumentPayload:
        return await self._download(shipment, "label")

    async def download_invoice(self, shipment: Shipment) -> DocumentPayload:
        return await self._download(shipment, "invoice")

    # Reporting -----------------------------------------------------------------------------

    async def get_stats(self) -> dict[str, Any]:
        counts = await self.repository.status_counts()
        estimated, actual = await self.repository.cost_totals()
        by_status = {status.value: counts.get(status.value, 0) for status in ShipmentStatus}
        active = sum(
            count
            for status, count in by_status.items()
            if status not in _PRE_BOOKING_STATUSES and not is_terminal(status)
        )
        return {
            "total": sum(by_status.values()),
            "byStatus": by_status,
            "pendingReview": by_status[ShipmentStatus.PENDING_REVIEW.value],
            "active": active,
            "estimatedCostTotal": paise_to_rupees(estimated),
            "actualCostTotal": paise_to_rupees(actual),
        }
