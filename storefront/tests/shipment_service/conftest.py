from datetime import date
from decimal import Decimal
from typing import Any, Mapping

import pytest

from storefront.shipment_service.app.courier import (
    BookingRequest,
    BookingResult,
    CostEstimate,
    DocumentResult,
    EditEligibility,
    PickupResult,
    TrackingInfo,
)


class FakeGateway:
    """In-memory stand-in for the Delhivery gateway used by service and API tests."""

    configured = True

    def __init__(self) -> None:
        self.booking_error: Exception | None = None
        self.booking_cost: Decimal | None = Decimal("85.50")
        self.tracking: dict[str, TrackingInfo | None] = {}
        self.courier_status = "Manifested"
        self.bookings: list[BookingRequest] = []
        self.cancelled: list[str] = []
        self.edits: list[tuple[str, dict[str, Any]]] = []
        self.pickup_calls: list[dict[str, Any]] = []
        self._next_awb = 9000000000

    async def estimate_cost(
        self,
        pincode: str,
        *,
        origin_pincode: str | None = None,
        mode: str = "Surface",
        weight_grams: int = 1000,
        payment_type: str = "Prepaid",
    ) -> CostEstimate:
        amount = Decimal("70.00") if mode == "Surface" else Decimal("100.00")
        return CostEstimate(amount=amount, mode=mode, source="api", base_charge=amount)

    async def create_shipment(self, request: BookingRequest) -> BookingResult:
        self.bookings.append(request)
        if self.booking_error is not None:
            raise self.booking_error
        self._next_awb += 1
        awb = str(self._next_awb)
        return BookingResult(
            awb=awb,
            tracking_url=f"https://www.delhivery.com/track/package/{awb}",
            label_url=f"https://delhivery.test/api/p/packing_slip?wbns={awb}",
            cost=self.booking_cost,
            delhivery_order_id=request.order_number,
        )

    async def get_tracking_info(self, awb: str) -> TrackingInfo | None:
        return self.tracking.get(awb)

    async def cancel_shipment(self, awb: str) -> dict[str, Any]:
        self.cancelled.append(awb)
        return {"status": True}

    async def schedule_pickup(
        self,
        *,
        pickup_date: date,
        pickup_time: str,
        package_count: int,
        pickup_location: str | None = None,
    ) -> PickupResult:
        self.pickup_calls.append(
            {
                "pickup_date": pickup_date,
                "pickup_time": pickup_time,
                "package_count": package_count,
                "pickup_location": pickup_location,
            }
        )
        return PickupResult(success=True, pickup_id=f"PK-{len(self.pickup_calls)}")

    async def validate_edit_eligibility(self, awb: str) -> EditEligibility:
        if self.courier_status == "Manifested":
            return EditEligibility(True, None, self.courier_status)
        return EditEligibility(False, f"Courier status '{self.courier_status}' does not allow edits", self.courier_status)

    async def edit_shipment(self, awb: str, fields: Mapping[str, Any]) -> dict[str, Any]:
        self.edits.append((awb, dict(fields)))
        return {"status": True}

    async def generate_label(self, awb: str, *, pdf_size: str = "4R") -> DocumentResult:
        return DocumentResult(success=True, pdf_bytes=b"%PDF-1.4 label " + awb.encode())

    async def generate_invoice(self, awb: str) -> DocumentResult:
        return DocumentResult(success=True, document_url=f"https://cdn.delhivery.test/invoice/{awb}.pdf")

    async def fetch_document(self, url: str) -> bytes:
        return b"%PDF-1.4 invoice"

    async def close(self) -> None:
        return None


@pytest.fixture
def fake_gateway() -> FakeGateway:
    return FakeGateway()
