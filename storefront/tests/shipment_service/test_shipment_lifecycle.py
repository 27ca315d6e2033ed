import json
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, cast

import pytest
from prometheus_client import REGISTRY
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storefront.common import ServiceSettings, create_schema, dispose_engines, get_session_factory, lifespan_session
from storefront.shipment_service.app.courier import TrackingInfo
from storefront.shipment_service.app.errors import (
    CourierBookingError,
    CourierUnavailableError,
    EditValidationError,
    OrderNotFound,
    ShipmentBookingError,
    ShipmentPreconditionError,
)
from storefront.shipment_service.app.models import Base, DailyPickup, Order, Shipment
from storefront.shipment_service.app.repository import ShipmentRepository, load_json_list, load_json_object
from storefront.shipment_service.app.schemas import CourierEvent, ShipmentCreate, ShipmentUpdate
from storefront.shipment_service.app.services import ShipmentService
from storefront.shipment_service.app.status import CourierStatus


class _MetricTracker:
    def __init__(self, name: str, labels: dict[str, str] | None = None) -> None:
        self.name = name
        self.labels = labels or {}
        baseline = REGISTRY.get_sample_value(name, self.labels)
        self._baseline = baseline if baseline is not None else 0.0

    def delta(self) -> float:
        current = REGISTRY.get_sample_value(self.name, self.labels)
        value = current if current is not None else 0.0
        return value - self._baseline


def _today():
    return datetime.now(timezone.utc).date()


async def _prepare(tmp_path) -> tuple[async_sessionmaker[AsyncSession], ServiceSettings]:
    database_url = f"sqlite+aiosqlite:///{tmp_path / 'shipments.db'}"
    await create_schema(database_url, Base.metadata)
    settings = ServiceSettings(
        enable_metrics=False,
        enable_tracing=False,
        database_url=database_url,
        shipment_sync_delay_seconds=0,
    )
    return get_session_factory(database_url), settings


async def _seed_order(session_factory: async_sessionmaker[AsyncSession], **overrides: Any) -> int:
    values: dict[str, Any] = {
        "order_number": "ORD-1001",
        "customer_name": "Asha Rao",
        "customer_phone": "9876543210",
        "shipping_address": "12 MG Road",
        "shipping_city": "Bengaluru",
        "shipping_state": "KA",
        "shipping_pincode": "560001",
        "payment_method": "cod",
        "final_total_paise": 149_900,
        "delivery_metadata_json": json.dumps({"estimated_days": 4}),
    }
    values.update(overrides)
    async with lifespan_session(session_factory) as session:
        order = Order(**values)
        session.add(order)
        await session.flush()
        return order.id


def _service(session: AsyncSession, gateway: Any, settings: ServiceSettings, **kwargs: Any) -> ShipmentService:
    return ShipmentService(ShipmentRepository(session), cast(Any, gateway), settings, **kwargs)


async def _create(session_factory, gateway, settings, order_id: int, **payload: Any) -> int:
    async with lifespan_session(session_factory) as session:
        shipment = await _service(session, gateway, settings).create_for_order(
            ShipmentCreate(orderId=order_id, **payload)
        )
        return shipment.id


async def _place(session_factory, gateway, settings, order_number: str = "ORD-1001") -> tuple[int, str]:
    order_id = await _seed_order(session_factory, order_number=order_number)
    shipment_id = await _create(session_factory, gateway, settings, order_id)
    async with lifespan_session(session_factory) as session:
        shipment = await _service(session, gateway, settings).approve_and_place(shipment_id, "admin-1")
        return shipment_id, cast(str, shipment.awb)


async def _load(session_factory, shipment_id: int) -> Shipment:
    async with lifespan_session(session_factory) as session:
        shipment = await ShipmentRepository(session).get_shipment(shipment_id)
        assert shipment is not None
        return shipment


async def _load_order(session_factory, order_id: int) -> Order:
    async with lifespan_session(session_factory) as session:
        order = await session.get(Order, order_id)
        assert order is not None
        return order


@pytest.mark.asyncio
async def test_create_for_order_estimates_cost_and_delivery(tmp_path, fake_gateway) -> None:
    session_factory, settings = await _prepare(tmp_path)
    try:
        order_id = await _seed_order(session_factory)
        shipment_id = await _create(session_factory, fake_gateway, settings, order_id, shippingMode="express")
        shipment = await _load(session_factory, shipment_id)

        assert shipment.status == "pending_review"
        assert shipment.editable is True
        assert shipment.shipping_mode == "Express"
        assert shipment.estimated_delivery == _today() + timedelta(days=4)
        assert shipment.estimated_cost_paise == 10_000
        assert shipment.destination_pincode == "560001"
        assert shipment.pickup_location == settings.warehouse_name
        breakdown = load_json_object(shipment.cost_breakdown_json)
        assert breakdown["mode_comparison"]["Surface"]["amount"] == "70.00"
        assert breakdown["mode_comparison"]["Express"]["amount"] == "100.00"
    finally:
        await dispose_engines()


@pytest.mark.asyncio
async def test_estimated_delivery_prefers_explicit_date_then_default(tmp_path, fake_gateway) -> None:
    session_factory, settings = await _prepare(tmp_path)
    try:
        explicit = await _seed_order(
            session_factory,
            order_number="ORD-EXPLICIT",
            delivery_metadata_json=json.dumps({"expected_delivery_date": "2030-01-15", "estimated_days": 2}),
        )
        bare = await _seed_order(session_factory, order_number="ORD-BARE", delivery_metadata_json=None)
        first = await _load(session_factory, await _create(session_factory, fake_gateway, settings, explicit))
        second = await _load(session_factory, await _create(session_factory, fake_gateway, settings, bare))

        assert first.estimated_delivery.isoformat() == "2030-01-15"
        assert second.estimated_delivery == _today() + timedelta(days=5)
    finally:
        await dispose_engines()


@pytest.mark.asyncio
async def test_create_for_missing_order(tmp_path, fake_gateway) -> None:
    session_factory, settings = await _prepare(tmp_path)
    try:
        with pytest.raises(OrderNotFound):
            await _create(session_factory, fake_gateway, settings, 404)
    finally:
        await dispose_engines()


@pytest.mark.asyncio
async def test_update_details_recalculates_and_locks_after_booking(tmp_path, fake_gateway) -> None:
    session_factory, settings = await _prepare(tmp_path)
    try:
        order_id = await _seed_order(session_factory)
        shipment_id = await _create(session_factory, fake_gateway, settings, order_id)
        async with lifespan_session(session_factory) as session:
            service = _service(session, fake_gateway, settings)
            shipment = await service.repository.get_shipment(shipment_id)
            updated = await service.update_details(
                shipment, ShipmentUpdate(shippingMode="Express", adminNotes="fragile"), "admin-7"
            )
            assert updated.estimated_cost_paise == 10_000
            history = load_json_list(updated.edit_history_json)
            assert history[-1]["fields_changed"] == ["shipping_mode", "admin_notes"]
            assert history[-1]["edited_by"] == "admin-7"

        async with lifespan_session(session_factory) as session:
            await _service(session, fake_gateway, settings).approve_and_place(shipment_id, "admin-1")

        async with lifespan_session(session_factory) as session:
            service = _service(session, fake_gateway, settings)
            shipment = await service.repository.get_shipment(shipment_id)
            with pytest.raises(ShipmentPreconditionError):
                await service.update_details(shipment, ShipmentUpdate(weightGrams=2000), "admin-7")
            with pytest.raises(ShipmentPreconditionError):
                await service.recalculate_cost(shipment)
    finally:
        await dispose_engines()


@pytest.mark.asyncio
async def test_approve_and_place_books_and_confirms_order(tmp_path, fake_gateway) -> None:
    session_factory, settings = await _prepare(tmp_path)
    placed = _MetricTracker("shipment_bookings_total", {"outcome": "placed"})
    try:
        shipment_id, awb = await _place(session_factory, fake_gateway, settings)
        shipment = await _load(session_factory, shipment_id)

        assert shipment.status == "placed"
        assert shipment.awb == awb
        assert shipment.courier == "Delhivery"
        assert shipment.editable is False
        assert shipment.approved_by == "admin-1"
        assert shipment.actual_cost_paise == 8_550
        assert shipment.pickup_scheduled_date == _today() + timedelta(days=1)
        assert (await _load_order(session_factory, shipment.order_id)).status == "confirmed"
        assert fake_gateway.bookings[0].payment_mode == "COD"
        assert fake_gateway.bookings[0].total_amount == Decimal("1499.00")
        assert placed.delta() == 1

        async with lifespan_session(session_factory) as session:
            with pytest.raises(ShipmentPreconditionError):
                await _service(session, fake_gateway, settings).approve_and_place(shipment_id, "admin-1")
    finally:
        await dispose_engines()


@pytest.mark.asyncio
async def test_booking_failure_rolls_back_and_counts_retries(tmp_path, fake_gateway) -> None:
    session_factory, settings = await _prepare(tmp_path)
    failed = _MetricTracker("shipment_bookings_total", {"outcome": "failed"})
    try:
        order_id = await _seed_order(session_factory)
        shipment_id = await _create(session_factory, fake_gateway, settings, order_id)
        fake_gateway.booking_error = CourierBookingError("No waybill returned by Delhivery: pincode blocked")

        for attempt in (1, 2):
            with pytest.raises(ShipmentBookingError) as excinfo:
                async with lifespan_session(session_factory) as session:
                    await _service(session, fake_gateway, settings).approve_and_place(shipment_id, "admin-1")
            assert excinfo.value.retry_count == attempt

        shipment = await _load(session_factory, shipment_id)
        assert shipment.status == "pending_review"
        assert shipment.retry_count == 2
        assert shipment.awb is None
        assert shipment.approved_by is None
        assert "pincode blocked" in (shipment.failed_reason or "")
        assert (await _load_order(session_factory, order_id)).status == "pending"
        assert failed.delta() == 2
    finally:
        await dispose_engines()


@pytest.mark.asyncio
async def test_bulk_approve_reports_each_failure(tmp_path, fake_gateway) -> None:
    session_factory, settings = await _prepare(tmp_path)
    try:
        order_id = await _seed_order(session_factory)
        good = await _create(session_factory, fake_gateway, settings, order_id)
        async with lifespan_session(session_factory) as session:
            outcome = await _service(session, fake_gateway, settings).bulk_approve_and_place([good, 999, good], "admin-1")

        assert outcome.success == [good]
        assert outcome.failed == [{"shipment_id": 999, "error": "Shipment 999 not found"}]
        assert outcome.total == 2
    finally:
        await dispose_engines()


def _tracking(status: CourierStatus, raw: str, *scans: tuple[str, str]) -> TrackingInfo:
    return TrackingInfo(
        status=status,
        raw_status=raw,
        history=[{"status": scan, "timestamp": at, "location": "Hub", "remarks": None} for scan, at in scans],
        status_at=scans[-1][1] if scans else None,
    )


@pytest.mark.asyncio
async def test_sync_to_delivered_updates_order_and_stops(tmp_path, fake_gateway) -> None:
    session_factory, settings = await _prepare(tmp_path)
    try:
        shipment_id, awb = await _place(session_factory, fake_gateway, settings)
        fake_gateway.tracking[awb] = _tracking(
            CourierStatus.DELIVERED,
            "Delivered",
            ("Manifested", "2025-03-01T09:00:00"),
            ("Delivered", "2025-03-03T15:30:00"),
        )
        async with lifespan_session(session_factory) as session:
            synced = await _service(session, fake_gateway, settings).sync_shipment(shipment_id)
            assert synced.status == "delivered"

        shipment = await _load(session_factory, shipment_id)
        order = await _load_order(session_factory, shipment.order_id)
        assert order.status == "delivered"
        assert order.delivered_at is not None
        history = load_json_list(shipment.tracking_history_json)
        assert [entry["mapped_status"] for entry in history] == ["placed", "delivered"]
        assert shipment.last_sync_at is not None

        fake_gateway.tracking[awb] = _tracking(CourierStatus.IN_TRANSIT, "In Transit", ("In Transit", "2025-03-04T08:00:00"))
        async with lifespan_session(session_factory) as session:
            again = await _service(session, fake_gateway, settings).sync_shipment(shipment_id)
            assert again.status == "delivered"
    finally:
        await dispose_engines()


@pytest.mark.asyncio
async def test_unknown_courier_status_keeps_current(tmp_path, fake_gateway) -> None:
    session_factory, settings = await _prepare(tmp_path)
    try:
        shipment_id, awb = await _place(session_factory, fake_gateway, settings)
        fake_gateway.tracking[awb] = _tracking(CourierStatus.UNKNOWN, "Held at customs")
        async with lifespan_session(session_factory) as session:
            shipment = await _service(session, fake_gateway, settings).sync_shipment(shipment_id)
            assert shipment.status == "placed"

        stored = await _load(session_factory, shipment_id)
        assert load_json_list(stored.tracking_history_json)[-1]["status"] == "Held at customs"
    finally:
        await dispose_engines()


@pytest.mark.asyncio
async def test_bulk_sync_continues_past_failures(tmp_path, fake_gateway) -> None:
    session_factory, settings = await _prepare(tmp_path)
    settings = settings.model_copy(update={"shipment_sync_delay_seconds": 0.25})
    pauses: list[float] = []

    async def _sleep(seconds: float) -> None:
        pauses.append(seconds)

    try:
        first_id, first_awb = await _place(session_factory, fake_gateway, settings, "ORD-1")
        second_id, second_awb = await _place(session_factory, fake_gateway, settings, "ORD-2")
        unbooked_order = await _seed_order(session_factory, order_number="ORD-3")
        await _create(session_factory, fake_gateway, settings, unbooked_order)
        fake_gateway.tracking[first_awb] = None
        fake_gateway.tracking[second_awb] = _tracking(
            CourierStatus.PICKED_UP, "Picked Up", ("Picked Up", "2025-03-02T11:00:00")
        )

        async with lifespan_session(session_factory) as session:
            summary = await _service(session, fake_gateway, settings, sleep=_sleep).bulk_sync_active_shipments()

        assert summary["total"] == 2
        assert summary["success"] == 1
        assert summary["failed"] == 1
        assert pauses == [0.25]
        failure = next(item for item in summary["results"] if not item["success"])
        assert failure["shipmentId"] == first_id
        second = await _load(session_factory, second_id)
        assert second.status == "picked_up"
        assert second.pickup_actual_date == _today()
        assert (await _load_order(session_factory, second.order_id)).status == "shipped"
    finally:
        await dispose_engines()


@pytest.mark.asyncio
async def test_sync_requires_tracking_data(tmp_path, fake_gateway) -> None:
    session_factory, settings = await _prepare(tmp_path)
    try:
        shipment_id, _ = await _place(session_factory, fake_gateway, settings)
        with pytest.raises(CourierUnavailableError):
            async with lifespan_session(session_factory) as session:
                await _service(session, fake_gateway, settings).sync_shipment(shipment_id)
    finally:
        await dispose_engines()


@pytest.mark.asyncio
async def test_courier_events_are_deduplicated(tmp_path, fake_gateway) -> None:
    session_factory, settings = await _prepare(tmp_path)
    try:
        shipment_id, awb = await _place(session_factory, fake_gateway, settings)
        event = CourierEvent(
            waybill=awb,
            status="In Transit",
            status_datetime="2025-03-02T10:00:00",
            location="Nagpur Hub",
            expected_delivery_date="2025-03-05",
        )
        outcomes = []
        for _ in range(2):
            async with lifespan_session(session_factory) as session:
                outcomes.append(await _service(session, fake_gateway, settings).ingest_courier_event(event))
        async with lifespan_session(session_factory) as session:
            outcomes.append(
                await _service(session, fake_gateway, settings).ingest_courier_event(
                    CourierEvent(waybill="0000000000", status="Delivered")
                )
            )

        assert outcomes == ["updated", "unchanged", "not_found"]
        shipment = await _load(session_factory, shipment_id)
        assert shipment.status == "in_transit"
        assert shipment.estimated_delivery.isoformat() == "2025-03-05"
        assert len(load_json_list(shipment.tracking_history_json)) == 1
    finally:
        await dispose_engines()


@pytest.mark.asyncio
async def test_repeated_sync_without_scans_records_status_once(tmp_path, fake_gateway) -> None:
    session_factory, settings = await _prepare(tmp_path)
    try:
        shipment_id, awb = await _place(session_factory, fake_gateway, settings)
        before = len(load_json_list((await _load(session_factory, shipment_id)).tracking_history_json))
        fake_gateway.tracking[awb] = _tracking(CourierStatus.IN_TRANSIT, "In Transit")
        for _ in range(3):
            async with lifespan_session(session_factory) as session:
                await _service(session, fake_gateway, settings).sync_shipment(shipment_id)

        history = load_json_list((await _load(session_factory, shipment_id)).tracking_history_json)
        assert len(history) == before + 1
        assert history[-1]["status"] == "In Transit"
        assert history[-1]["mapped_status"] == "in_transit"

        fake_gateway.tracking[awb] = _tracking(CourierStatus.PENDING, "Pending")
        async with lifespan_session(session_factory) as session:
            await _service(session, fake_gateway, settings).sync_shipment(shipment_id)
        history = load_json_list((await _load(session_factory, shipment_id)).tracking_history_json)
        assert len(history) == before + 2
    finally:
        await dispose_engines()


@pytest.mark.asyncio
async def test_pickup_reuses_active_daily_record(tmp_path, fake_gateway) -> None:
    session_factory, settings = await _prepare(tmp_path)
    try:
        first_id, _ = await _place(session_factory, fake_gateway, settings, "ORD-1")
        second_id, _ = await _place(session_factory, fake_gateway, settings, "ORD-2")
        pending_order = await _seed_order(session_factory, order_number="ORD-3")
        pending_id = await _create(session_factory, fake_gateway, settings, pending_order)

        async with lifespan_session(session_factory) as session:
            first = await _service(session, fake_gateway, settings).schedule_bulk_pickup([first_id, pending_id])
            assert first.reused_existing is False
            assert first.scheduled == [first_id]
            assert first.skipped[0]["shipment_id"] == pending_id
            assert first.pickup.expected_package_count == 1

        async with lifespan_session(session_factory) as session:
            second = await _service(session, fake_gateway, settings).schedule_bulk_pickup([second_id])
            assert second.reused_existing is True
            assert second.pickup.expected_package_count == 2
            assert second.pickup.delhivery_pickup_id == "PK-1"

        assert len(fake_gateway.pickup_calls) == 1
        assert fake_gateway.pickup_calls[0]["pickup_date"] == _today() + timedelta(days=1)
        async with lifespan_session(session_factory) as session:
            rows = (await session.execute(select(func.count(DailyPickup.id)))).scalar_one()
        assert rows == 1
        assert (await _load(session_factory, second_id)).status == "pending_pickup"

        async with lifespan_session(session_factory) as session:
            with pytest.raises(ShipmentPreconditionError):
                await _service(session, fake_gateway, settings).schedule_bulk_pickup([pending_id])
    finally:
        await dispose_engines()


@pytest.mark.asyncio
async def test_cancel_booked_shipment(tmp_path, fake_gateway) -> None:
    session_factory, settings = await _prepare(tmp_path)
    try:
        shipment_id, awb = await _place(session_factory, fake_gateway, settings)
        async with lifespan_session(session_factory) as session:
            shipment = await _service(session, fake_gateway, settings).cancel_shipment(
                shipment_id, "Customer changed mind", "admin-2"
            )
            assert shipment.status == "cancelled"

        assert fake_gateway.cancelled == [awb]
        stored = await _load(session_factory, shipment_id)
        assert stored.cancellation_reason == "Customer changed mind"
        assert stored.cancelled_at is not None
        assert (await _load_order(session_factory, stored.order_id)).status == "cancelled"

        async with lifespan_session(session_factory) as session:
            with pytest.raises(ShipmentPreconditionError):
                await _service(session, fake_gateway, settings).cancel_shipment(shipment_id, None)
    finally:
        await dispose_engines()


@pytest.mark.asyncio
async def test_edit_via_courier_applies_and_records(tmp_path, fake_gateway) -> None:
    session_factory, settings = await _prepare(tmp_path)
    try:
        shipment_id, awb = await _place(session_factory, fake_gateway, settings)
        async with lifespan_session(session_factory) as session:
            shipment = await _service(session, fake_gateway, settings).edit_via_courier(
                shipment_id,
                {"weight": "1500", "address": " 221B Baker Street ", "pt": "prepaid", "admin_notes": "call first"},
                "admin-3",
            )
            assert shipment.weight_grams == 1500

        assert fake_gateway.edits == [(awb, {"weight": 1500.0, "add": "221B Baker Street", "pt": "Prepaid"})]
        stored = await _load(session_factory, shipment_id)
        assert stored.admin_notes == "call first"
        assert stored.edited_by == "admin-3"
        history = load_json_list(stored.edit_history_json)
        assert history[-1]["via"] == "courier"
        assert (await _load_order(session_factory, stored.order_id)).payment_method == "prepaid"
    finally:
        await dispose_engines()


@pytest.mark.asyncio
async def test_edit_via_courier_refusals(tmp_path, fake_gateway) -> None:
    session_factory, settings = await _prepare(tmp_path)
    try:
        shipment_id, _ = await _place(session_factory, fake_gateway, settings)
        async with lifespan_session(session_factory) as session:
            service = _service(session, fake_gateway, settings)
            with pytest.raises(EditValidationError) as excinfo:
                await service.edit_via_courier(shipment_id, {"phone": "123"}, "admin-3")
            assert excinfo.value.errors == ["Phone must be a valid 10-digit number"]

            with pytest.raises(EditValidationError):
                await service.edit_via_courier(shipment_id, {"pt": "COD"}, "admin-3")

            fake_gateway.courier_status = "Dispatched"
            with pytest.raises(ShipmentPreconditionError):
                await service.edit_via_courier(shipment_id, {"name": "Asha R"}, "admin-3")

            report = await service.validate_edit(await service.repository.get_shipment(shipment_id), {"name": "Asha R"})
            assert report["valid"] is False
            assert report["eligibility"].courier_status == "Dispatched"
        assert fake_gateway.edits == []
    finally:
        await dispose_engines()


@pytest.mark.asyncio
async def test_documents_and_stats(tmp_path, fake_gateway) -> None:
    session_factory, settings = await _prepare(tmp_path)
    try:
        shipment_id, awb = await _place(session_factory, fake_gateway, settings)
        pending_order = await _seed_order(session_factory, order_number="ORD-2")
        await _create(session_factory, fake_gateway, settings, pending_order)

        async with lifespan_session(session_factory) as session:
            service = _service(session, fake_gateway, settings)
            shipment = await service.repository.get_shipment(shipment_id)
            label = await service.download_label(shipment)
            invoice = await service.download_invoice(shipment)
            stats = await service.get_stats()

        assert label.filename == f"label-{awb}.pdf"
        assert label.content.startswith(b"%PDF")
        assert invoice.content == b"%PDF-1.4 invoice"
        assert stats["total"] == 2
        assert stats["pendingReview"] == 1
        assert stats["active"] == 1
        assert stats["byStatus"]["placed"] == 1
        assert stats["estimatedCostTotal"] == Decimal("140.00")
        assert stats["actualCostTotal"] == Decimal("85.50")
    finally:
        await dispose_engines()
