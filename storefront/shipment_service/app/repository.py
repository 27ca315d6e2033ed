"""Database helpers for the shipment service."""

from __future__ import annotations

import json
from datetime import date, datetime, time, timedelta
from typing import Any

from sqlalchemy import Select, and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .models import DailyPickup, Order, Shipment
from .status import ShipmentStatus, SYNC_EXCLUDED_STATUSES

_SORTABLE_COLUMNS = {
    "created_at": Shipment.created_at,
    "updated_at": Shipment.updated_at,
    "status": Shipment.status,
    "estimated_delivery": Shipment.estimated_delivery,
    "estimated_cost": Shipment.estimated_cost_paise,
    "placed_at": Shipment.placed_at,
}


def load_json_list(raw: str | None) -> list[dict[str, Any]]:
    if not raw:
        return []
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return []
    if not isinstance(parsed, list):
        return []
    return [entry for entry in parsed if isinstance(entry, dict)]


def load_json_object(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return {}
    return parsed if isinstance(parsed, dict) else {}


def dump_json(value: Any) -> str:
    return json.dumps(value, default=str)


class ShipmentRepository:
    """Persistence helpers for shipments, their orders and daily pickups."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def commit(self) -> None:
        await self.session.commit()

    async def rollback(self) -> None:
        await self.session.rollback()

    # Orders ------------------------------------------------------------------------------------

    async def get_order(self, order_id: int) -> Order | None:
        return await self.session.get(Order, order_id)

    async def add_order(self, order: Order) -> Order:
        self.session.add(order)
        await self.session.flush()
        await self.session.refresh(order)
        return order

    async def update_order_status(
        self,
        order_id: int,
        *,
        status: str,
        delivered_at: datetime | None = None,
    ) -> Order | None:
        order = await self.get_order(order_id)
        if order is None:
            return None
        order.status = status
        if delivered_at is not None:
            order.delivered_at = delivered_at
        await self.session.flush()
        await self.session.refresh(order, attribute_names=["updated_at", "status", "delivered_at"])
        return order

    async def update_order_payment_method(self, order_id: int, payment_method: str) -> None:
        await self.session.execute(
            update(Order).where(Order.id == order_id).values(payment_method=payment_method)
        )

    # Shipments ---------------------------------------------------------------------------------

    async def create_shipment(self, **values: Any) -> Shipment:
        shipment = Shipment(**values)
        self.session.add(shipment)
        await self.session.flush()
        await self.session.refresh(shipment)
        return shipment

    async def save(self, shipment: Shipment) -> Shipment:
        """Flush pending changes on ``shipment`` and reload server-side columns."""

        await self.session.flush()
        await self.session.refresh(shipment)
        return shipment

    async def get_shipment(self, shipment_id: int, *, fresh: bool = False) -> Shipment | None:
        stmt = select(Shipment).where(Shipment.id == shipment_id)
        if fresh:
            stmt = stmt.execution_options(populate_existing=True)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_shipment_by_awb(self, awb: str) -> Shipment | None:
        result = await self.session.execute(select(Shipment).where(Shipment.awb == awb))
        return result.scalar_one_or_none()

    async def list_shipments(
        self,
        *,
        status: str | None,
        search: str | None,
        from_date: date | None,
        to_date: date | None,
        sort: str,
        descending: bool,
        limit: int,
        offset: int,
    ) -> tuple[list[Shipment], int]:
        filters = []
        if status is not None:
            filters.append(Shipment.status == status)
        if search:
            pattern = f"%{search.strip()}%"
            filters.append(
                or_(
                    Shipment.awb.ilike(pattern),
                    Shipment.order_id.in_(select(Order.id).where(Order.order_number.ilike(pattern))),
                )
            )
        if from_date is not None:
            filters.append(Shipment.created_at >= datetime.combine(from_date, time.min))
        if to_date is not None:
            filters.append(Shipment.created_at < datetime.combine(to_date + timedelta(days=1), time.min))

        column = _SORTABLE_COLUMNS.get(sort, Shipment.created_at)
        ordering = column.desc() if descending else column.asc()
        base: Select[tuple[Shipment]] = select(Shipment).order_by(ordering, Shipment.id.desc())
        count: Select[tuple[int]] = select(func.count(Shipment.id))

        if filters:
            clause = and_(*filters)
            base = base.where(clause)
            count = count.where(clause)

        total = (await self.session.execute(count)).scalar_one()
        result = await self.session.execute(base.offset(offset).limit(limit))
        return list(result.scalars().unique()), total

    async def list_by_status(self, status: str) -> list[Shipment]:
        result = await self.session.execute(
            select(Shipment).where(Shipment.status == status).order_by(Shipment.created_at.asc(), Shipment.id.asc())
        )
        return list(result.scalars())

    async def list_eligible_for_pickup(self) -> list[Shipment]:
        result = await self.session.execute(
            select(Shipment)
            .where(Shipment.status == ShipmentStatus.PLACED.value, Shipment.awb.is_not(None))
            .order_by(Shipment.placed_at.asc(), Shipment.id.asc())
        )
        return list(result.scalars())

    async def list_active_shipment_ids(self) -> list[int]:
        """Ids of booked shipments that reconciliation still needs to poll."""

        excluded = [status.value for status in SYNC_EXCLUDED_STATUSES]
        result = await self.session.execute(
            select(Shipment.id)
            .where(Shipment.awb.is_not(None), Shipment.status.not_in(excluded))
            .order_by(Shipment.id.asc())
        )
        return list(result.scalars())

    async def latest_sync_at(self) -> datetime | None:
        result = await self.session.execute(select(func.max(Shipment.last_sync_at)))
        return result.scalar_one_or_none()

    async def status_counts(self) -> dict[str, int]:
        result = await self.session.execute(
            select(Shipment.status, func.count(Shipment.id)).group_by(Shipment.status)
        )
        return {status: count for status, count in result.all()}

    async def cost_totals(self) -> tuple[int, int]:
        result = await self.session.execute(
            select(
                func.coalesce(func.sum(Shipment.estimated_cost_paise), 0),
                func.coalesce(func.sum(Shipment.actual_cost_paise), 0),
            )
        )
        estimated, actual = result.one()
        return int(estimated), int(actual)

    # Daily pickups -----------------------------------------------------------------------------

    async def get_active_pickup(self, pickup_location: str, pickup_date: date) -> DailyPickup | None:
        result = await self.session.execute(
            select(DailyPickup).where(
                DailyPickup.pickup_location == pickup_location,
                DailyPickup.pickup_date == pickup_date,
                DailyPickup.status == "active",
            )
        )
        return result.scalar_one_or_none()

    async def increment_pickup(self, pickup_id: int, package_count: int) -> DailyPickup:
        """Atomically add ``package_count`` to an active pickup and return the fresh row."""

        await self.session.execute(
            update(DailyPickup)
            .where(DailyPickup.id == pickup_id)
            .values(expected_package_count=DailyPickup.expected_package_count + package_count)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(
            select(DailyPickup)
            .where(DailyPickup.id == pickup_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one()

    async def insert_pickup(
        self,
        *,
        pickup_location: str,
        pickup_date: date,
        pickup_time: str,
        delhivery_pickup_id: str | None,
        package_count: int,
    ) -> DailyPickup | None:
        """Insert an active pickup; returns None if a concurrent insert won the unique key.

        A conflict rolls back the whole session transaction, so callers must
        run this before writing anything else in the same unit of work.
        """

        pickup = DailyPickup(
            pickup_location=pickup_location,
            pickup_date=pickup_date,
            pickup_time=pickup_time,
            delhivery_pickup_id=delhivery_pickup_id,
            expected_package_count=package_count,
            status="active",
        )
        self.session.add(pickup)
        try:
            await self.session.flush()
        except IntegrityError:
            await self.session.rollback()
            return None
        await self.session.refresh(pickup)
        return pickup

    async def count_pickups(self, pickup_location: str, pickup_date: date) -> int:
        result = await self.session.execute(
            select(func.count(DailyPickup.id)).where(
                DailyPickup.pickup_location == pickup_location,
                DailyPickup.pickup_date == pickup_date,
            )
        )
        return result.scalar_one()
