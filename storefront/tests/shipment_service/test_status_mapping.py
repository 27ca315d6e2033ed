import pytest

from storefront.shipment_service.app.status import (
    COURIER_STATUS_MAPPING,
    CourierStatus,
    OrderStatus,
    ShipmentStatus,
    is_terminal,
    map_courier_status,
    order_status_for,
    parse_courier_status,
    status_display,
    valid_statuses,
)


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("Manifested", ShipmentStatus.PLACED),
        ("Pickup Scheduled", ShipmentStatus.PENDING_PICKUP),
        ("picked up", ShipmentStatus.PICKED_UP),
        ("Pending", ShipmentStatus.IN_TRANSIT),
        ("Dispatched", ShipmentStatus.OUT_FOR_DELIVERY),
        ("DTO", ShipmentStatus.DELIVERED),
        ("RTO", ShipmentStatus.RTO_DELIVERED),
        ("LOST", ShipmentStatus.FAILED),
        ("Canceled", ShipmentStatus.CANCELLED),
        ("Closed", ShipmentStatus.CANCELLED),
    ],
)
def test_courier_status_mapping(raw: str, expected: ShipmentStatus) -> None:
    assert map_courier_status(raw) is expected


def test_unrecognised_courier_status() -> None:
    assert parse_courier_status("Shipment teleported") is CourierStatus.UNKNOWN
    assert parse_courier_status(None) is CourierStatus.UNKNOWN
    assert map_courier_status("Shipment teleported") is None


def test_every_known_courier_status_is_mapped() -> None:
    known = {member for member in CourierStatus if member is not CourierStatus.UNKNOWN}
    assert known == set(COURIER_STATUS_MAPPING)


def test_order_propagation() -> None:
    assert order_status_for("pending_pickup") is OrderStatus.CONFIRMED
    assert order_status_for(ShipmentStatus.OUT_FOR_DELIVERY) is OrderStatus.SHIPPED
    assert order_status_for("delivered") is OrderStatus.DELIVERED
    assert order_status_for("rto_initiated") is OrderStatus.CANCELLED
    assert order_status_for("pending_review") is None
    assert order_status_for("bogus") is None


def test_terminal_and_display() -> None:
    assert is_terminal("failed")
    assert not is_terminal("rto_initiated")
    assert status_display("in_transit")["progress"] == 70
    assert status_display("bogus")["label"] == "bogus"
    assert len(valid_statuses()) == len(ShipmentStatus)
