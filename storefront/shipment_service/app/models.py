"""SQLAlchemy models for the shipment service."""

from __future__ import annotations

from datetime import date, datetime

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for shipment ORM models."""


class Order(Base):
    """Checkout-owned order record; only the shipping fields are used here."""

    __tablename__ = "orders"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_number: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    customer_name: Mapped[str] = mapped_column(String(128), nullable=False)
    customer_phone: Mapped[str] = mapped_column(String(20), nullable=False)
    customer_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    shipping_address: Mapped[str] = mapped_column(Text, nullable=False)
    shipping_city: Mapped[str] = mapped_column(String(64), nullable=False)
    shipping_state: Mapped[str] = mapped_column(String(64), nullable=False)
    shipping_pincode: Mapped[str] = mapped_column(String(6), nullable=False)
    payment_method: Mapped[str] = mapped_column(String(16), nullable=False, default="prepaid", server_default="prepaid")
    final_total_paise: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    items_description: Mapped[str | None] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending", server_default="pending")
    delivery_metadata_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )

    shipments: Mapped[list[Shipment]] = relationship(back_populates="order")


class Shipment(Base):
    __tablename__ = "shipments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[int] = mapped_column(
        ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True
    )

    weight_grams: Mapped[int] = mapped_column(Integer, nullable=False, default=1000, server_default="1000")
    length_cm: Mapped[float] = mapped_column(Float, nullable=False, default=10.0, server_default="10")
    width_cm: Mapped[float] = mapped_column(Float, nullable=False, default=10.0, server_default="10")
    height_cm: Mapped[float] = mapped_column(Float, nullable=False, default=10.0, server_default="10")
    package_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")
    shipping_mode: Mapped[str] = mapped_column(String(16), nullable=False, default="Surface", server_default="Surface")

    destination_pincode: Mapped[str] = mapped_column(String(6), nullable=False)
    destination_city: Mapped[str | None] = mapped_column(String(64), nullable=True)
    destination_state: Mapped[str | None] = mapped_column(String(64), nullable=True)
    pickup_location: Mapped[str] = mapped_column(String(128), nullable=False)

    awb: Mapped[str | None] = mapped_column(String(32), nullable=True, unique=True)
    courier: Mapped[str | None] = mapped_column(String(32), nullable=True)
    tracking_url: Mapped[str | None] = mapped_column(String(255), nullable=True)
    delhivery_order_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    delhivery_pickup_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    label_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    invoice_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    manifest_url: Mapped[str | None] = mapped_column(Text, nullable=True)

    estimated_cost_paise: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    actual_cost_paise: Mapped[int | None] = mapped_column(Integer, nullable=True)
    cost_breakdown_json: Mapped[str | None] = mapped_column(Text, nullable=True)

    estimated_delivery: Mapped[date | None] = mapped_column(Date, nullable=True)
    pickup_scheduled_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    pickup_actual_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    placed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_sync_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    status: Mapped[str] = mapped_column(
        String(24), nullable=False, default="pending_review", server_default="pending_review", index=True
    )
    editable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="1")
    edit_history_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]", server_default="[]")
    tracking_history_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]", server_default="[]")

    failed_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    admin_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    edited_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    approved_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )

    order: Mapped[Order] = relationship(back_populates="shipments", lazy="selectin")


class DailyPickup(Base):
    __tablename__ = "daily_pickups"
    __table_args__ = (
        UniqueConstraint("pickup_location", "pickup_date", "status", name="uq_daily_pickup_location_date_status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    pickup_location: Mapped[str] = mapped_column(String(128), nullable=False)
    pickup_date: Mapped[date] = mapped_column(Date, nullable=False)
    pickup_time: Mapped[str] = mapped_column(String(8), nullable=False, default="14:00:00", server_default="14:00:00")
    delhivery_pickup_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    expected_package_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="active", server_default="active")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )
