"""Shipment status vocabulary and courier status mapping."""

from __future__ import annotations

from enum import Enum
from typing import Final


class ShipmentStatus(str, Enum):
    PENDING_REVIEW = "pending_review"
    APPROVED = "approved"
    PLACED = "placed"
    PENDING_PICKUP = "pending_pickup"
    PICKED_UP = "picked_up"
    IN_TRANSIT = "in_transit"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    FAILED = "failed"
    RTO_INITIATED = "rto_initiated"
    RTO_DELIVERED = "rto_delivered"
    CANCELLED = "cancelled"


class CourierStatus(str, Enum):
    """Status strings reported by Delhivery tracking, webhooks and edit checks."""

    MANIFESTED = "Manifested"
    BOOKED = "Booked"
    NOT_PICKED = "Not Picked"
    PICKUP_SCHEDULED = "Pickup Scheduled"
    PICKED_UP = "Picked Up"
    IN_TRANSIT = "In Transit"
    PENDING = "Pending"
    DISPATCHED = "Dispatched"
    OUT_FOR_DELIVERY = "Out for Delivery"
    DELIVERED = "Delivered"
    RTO_INITIATED = "RTO Initiated"
    RTO = "RTO"
    RTO_DELIVERED = "RTO Delivered"
    UNDELIVERED = "Undelivered"
    OPEN = "Open"
    SCHEDULED = "Scheduled"
    DTO = "DTO"
    CANCELLED = "Cancelled"
    CANCELED = "Canceled"
    CLOSED = "Closed"
    LOST = "LOST"
    UNKNOWN = "Unknown"


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


# Bump whenever COURIER_STATUS_MAPPING changes so stored tracking history can be re-derived.
COURIER_STATUS_MAPPING_VERSION: Final = 2

COURIER_STATUS_MAPPING: Final[dict[CourierStatus, ShipmentStatus]] = {
    CourierStatus.MANIFESTED: ShipmentStatus.PLACED,
    CourierStatus.BOOKED: ShipmentStatus.PLACED,
    CourierStatus.NOT_PICKED: ShipmentStatus.PENDING_PICKUP,
    CourierStatus.PICKUP_SCHEDULED: ShipmentStatus.PENDING_PICKUP,
    CourierStatus.OPEN: ShipmentStatus.PENDING_PICKUP,
    CourierStatus.SCHEDULED: ShipmentStatus.PENDING_PICKUP,
    CourierStatus.PICKED_UP: ShipmentStatus.PICKED_UP,
    CourierStatus.IN_TRANSIT: ShipmentStatus.IN_TRANSIT,
    CourierStatus.PENDING: ShipmentStatus.IN_TRANSIT,
    CourierStatus.DISPATCHED: ShipmentStatus.OUT_FOR_DELIVERY,
    CourierStatus.OUT_FOR_DELIVERY: ShipmentStatus.OUT_FOR_DELIVERY,
    CourierStatus.DELIVERED: ShipmentStatus.DELIVERED,
    CourierStatus.DTO: ShipmentStatus.DELIVERED,
    CourierStatus.RTO_INITIATED: ShipmentStatus.RTO_INITIATED,
    CourierStatus.RTO: ShipmentStatus.RTO_DELIVERED,
    CourierStatus.RTO_DELIVERED: ShipmentStatus.RTO_DELIVERED,
    CourierStatus.UNDELIVERED: ShipmentStatus.FAILED,
    CourierStatus.LOST: ShipmentStatus.FAILED,
    CourierStatus.CANCELLED: ShipmentStatus.CANCELLED,
    CourierStatus.CANCELED: ShipmentStatus.CANCELLED,
    CourierStatus.CLOSED: ShipmentStatus.CANCELLED,
}

# Statuses the sync path never moves a shipment out of.
TERMINAL_STATUSES: Final = frozenset(
    {
        ShipmentStatus.DELIVERED,
        ShipmentStatus.CANCELLED,
        ShipmentStatus.RTO_DELIVERED,
        ShipmentStatus.FAILED,
    }
)

# Statuses excluded from bulk reconciliation.
SYNC_EXCLUDED_STATUSES: Final = frozenset(
    {ShipmentStatus.DELIVERED, ShipmentStatus.CANCELLED, ShipmentStatus.RTO_DELIVERED}
)

BOOKED_STATUSES: Final = frozenset(
    {
        ShipmentStatus.PLACED,
        ShipmentStatus.PENDING_PICKUP,
        ShipmentStatus.PICKED_UP,
        ShipmentStatus.IN_TRANSIT,
        ShipmentStatus.OUT_FOR_DELIVERY,
        ShipmentStatus.DELIVERED,
        ShipmentStatus.FAILED,
        ShipmentStatus.RTO_INITIATED,
        ShipmentStatus.RTO_DELIVERED,
    }
)

_ORDER_STATUS_FOR_SHIPMENT: Final[dict[ShipmentStatus, OrderStatus]] = {
    ShipmentStatus.PLACED: OrderStatus.CONFIRMED,
    ShipmentStatus.PENDING_PICKUP: OrderStatus.CONFIRMED,
    ShipmentStatus.PICKED_UP: OrderStatus.SHIPPED,
    ShipmentStatus.IN_TRANSIT: OrderStatus.SHIPPED,
    ShipmentStatus.OUT_FOR_DELIVERY: OrderStatus.SHIPPED,
    ShipmentStatus.DELIVERED: OrderStatus.DELIVERED,
    ShipmentStatus.RTO_INITIATED: OrderStatus.CANCELLED,
    ShipmentStatus.RTO_DELIVERED: OrderStatus.CANCELLED,
    ShipmentStatus.FAILED: OrderStatus.CANCELLED,
    ShipmentStatus.CANCELLED: OrderStatus.CANCELLED,
}

_COURIER_LOOKUP: Final = {member.value.lower(): member for member in CourierStatus}

_STATUS_DISPLAY: Final[dict[ShipmentStatus, dict[str, object]]] = {
    ShipmentStatus.PENDING_REVIEW: {
        "label": "Pending Review",
        "description": "Waiting for admin approval",
        "color": "orange",
        "progress": 10,
    },
    ShipmentStatus.APPROVED: {
        "label": "Approved",
        "description": "Approved, booking with courier",
        "color": "blue",
        "progress": 20,
    },
    ShipmentStatus.PLACED: {
        "label": "Placed",
        "description": "Booked with the courier",
        "color": "purple",
        "progress": 30,
    },
    ShipmentStatus.PENDING_PICKUP: {
        "label": "Pending Pickup",
        "description": "Waiting for courier pickup",
        "color": "yellow",
        "progress": 40,
    },
    ShipmentStatus.PICKED_UP: {
        "label": "Picked Up",
        "description": "Collected by the courier",
        "color": "cyan",
        "progress": 50,
    },
    ShipmentStatus.IN_TRANSIT: {
        "label": "In Transit",
        "description": "On the way to the customer",
        "color": "blue",
        "progress": 70,
    },
    ShipmentStatus.OUT_FOR_DELIVERY: {
        "label": "Out for Delivery",
        "description": "Out for delivery today",
        "color": "indigo",
        "progress": 90,
    },
    ShipmentStatus.DELIVERED: {
        "label": "Delivered",
        "description": "Delivered to the customer",
        "color": "green",
        "progress": 100,
    },
    ShipmentStatus.FAILED: {
        "label": "Failed",
        "description": "Delivery failed",
        "color": "red",
        "progress": 0,
    },
    ShipmentStatus.RTO_INITIATED: {
        "label": "RTO Initiated",
        "description": "Returning to origin",
        "color": "orange",
        "progress": 60,
    },
    ShipmentStatus.RTO_DELIVERED: {
        "label": "RTO Delivered",
        "description": "Returned to the warehouse",
        "color": "gray",
        "progress": 100,
    },
    ShipmentStatus.CANCELLED: {
        "label": "Cancelled",
        "description": "Shipment cancelled",
        "color": "gray",
        "progress": 0,
    },
}


def parse_courier_status(raw: str | None) -> CourierStatus:
    """Return the courier vocabulary member for ``raw`` or ``CourierStatus.UNKNOWN``."""

    if not raw:
        return CourierStatus.UNKNOWN
    return _COURIER_LOOKUP.get(raw.strip().lower(), CourierStatus.UNKNOWN)


def map_courier_status(raw: str | None) -> ShipmentStatus | None:
    """Translate a courier status string into an internal status, None when unrecognised."""

    return COURIER_STATUS_MAPPING.get(parse_courier_status(raw))


def order_status_for(status: ShipmentStatus | str) -> OrderStatus | None:
    try:
        resolved = ShipmentStatus(status)
    except ValueError:
        return None
    return _ORDER_STATUS_FOR_SHIPMENT.get(resolved)


def is_terminal(status: ShipmentStatus | str) -> bool:
    return status in {member.value for member in TERMINAL_STATUSES}


def status_display(status: ShipmentStatus | str) -> dict[str, object]:
    try:
        resolved = ShipmentStatus(status)
    except ValueError:
        return {"label": str(status), "description": "", "color": "gray", "progress": 0}
    return dict(_STATUS_DISPLAY[resolved])


def valid_statuses() -> list[str]:
    return [member.value for member in ShipmentStatus]
