"""Domain errors raised by the shipment service and courier gateway."""

from __future__ import annotations

from typing import Any


class ShipmentError(Exception):
    """Base class for shipment domain failures."""

    code = "shipment_error"

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    def to_detail(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message}


class ShipmentNotFound(ShipmentError):
    code = "shipment_not_found"

    def __init__(self, shipment_id: int | str) -> None:
        super().__init__(f"Shipment {shipment_id} not found")
        self.shipment_id = shipment_id


class OrderNotFound(ShipmentError):
    code = "order_not_found"

    def __init__(self, order_id: int) -> None:
        super().__init__(f"Order {order_id} not found")
        self.order_id = order_id


class ShipmentPreconditionError(ShipmentError):
    """The shipment is not in a state that permits the requested action."""

    code = "precondition_failed"


class EditValidationError(ShipmentError):
    code = "validation_failed"

    def __init__(self, message: str, errors: list[str] | None = None) -> None:
        super().__init__(message)
        self.errors = list(errors or [])

    def to_detail(self) -> dict[str, Any]:
        detail = super().to_detail()
        detail["errors"] = self.errors
        return detail


class ShipmentBookingError(ShipmentError):
    """Courier booking failed and the shipment was rolled back to review."""

    code = "booking_failed"

    def __init__(self, message: str, *, retry_count: int) -> None:
        super().__init__(message)
        self.retry_count = retry_count

    def to_detail(self) -> dict[str, Any]:
        detail = super().to_detail()
        detail["retryCount"] = self.retry_count
        return detail


class CourierError(ShipmentError):
    """The courier API could not complete an irreversible action."""

    code = "courier_error"

    def __init__(self, message: str, *, status_code: int | None = None, payload: Any = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload


class CourierBookingError(CourierError):
    code = "courier_booking_failed"


class CourierValidationError(CourierError):
    code = "courier_validation_error"


class CourierAuthError(CourierError):
    code = "courier_auth_error"


class CourierUnavailableError(CourierError):
    code = "courier_unavailable"
