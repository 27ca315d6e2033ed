import asyncio
import hashlib
import hmac
import json
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from storefront.common import ServiceSettings, dispose_engines, lifespan_session
from storefront.shipment_service.app.courier import TrackingInfo
from storefront.shipment_service.app.errors import CourierBookingError
from storefront.shipment_service.app.main import create_app
from storefront.shipment_service.app.models import Order
from storefront.shipment_service.app.status import CourierStatus

ADMIN_TOKEN = "admin-secret"
CRON_SECRET = "cron-secret"
WEBHOOK_SECRET = "hook-secret"
ADMIN_HEADERS = {"Authorization": f"Bearer {ADMIN_TOKEN}", "X-Admin-Id": "ops-1"}


def _run(coro):
    return asyncio.run(coro)


def _prepare_app(tmp_path, **overrides: Any) -> FastAPI:
    database_url = f"sqlite+aiosqlite:///{tmp_path / 'shipments.db'}"
    values: dict[str, Any] = {
        "app_name": "Shipment Service Test",
        "enable_metrics": False,
        "enable_tracing": False,
        "database_url": database_url,
        "admin_api_token": ADMIN_TOKEN,
        "cron_secret": CRON_SECRET,
        "delhivery_webhook_secret": WEBHOOK_SECRET,
        "edit_rate_limit": 1,
        "shipment_sync_delay_seconds": 0,
    }
    values.update(overrides)
    return create_app(ServiceSettings(**values))


@asynccontextmanager
async def lifespan(app: FastAPI):
    async with app.router.lifespan_context(app):
        yield


async def _seed_order(app: FastAPI, order_number: str = "ORD-2001") -> int:
    async with lifespan_session(app.state.session_factory) as session:
        order = Order(
            order_number=order_number,
            customer_name="Ravi Kumar",
            customer_phone="9123456780",
            shipping_address="4 Park Street",
            shipping_city="Kolkata",
            shipping_state="WB",
            shipping_pincode="700016",
            payment_method="prepaid",
            final_total_paise=89_900,
        )
        session.add(order)
        await session.flush()
        return order.id


async def _booked_shipment(client: AsyncClient, app: FastAPI) -> dict[str, Any]:
    order_id = await _seed_order(app)
    created = await client.post("/admin/shipments", json={"orderId": order_id}, headers=ADMIN_HEADERS)
    assert created.status_code == 201
    placed = await client.post(f"/admin/shipments/{created.json()['id']}/approve-and-place", headers=ADMIN_HEADERS)
    assert placed.status_code == 200
    return placed.json()


def _signed(payload: dict[str, Any], secret: str = WEBHOOK_SECRET) -> tuple[bytes, dict[str, str]]:
    body = json.dumps(payload).encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return body, {"X-Delhivery-Signature": signature, "Content-Type": "application/json"}


def test_admin_routes_require_token(tmp_path, fake_gateway) -> None:
    app = _prepare_app(tmp_path)

    async def body() -> None:
        async with lifespan(app):
            app.state.courier_gateway = fake_gateway
            transport = ASGITransport(app=app)
            async with AsyncClient(transport=transport, base_url="http://test") as client:
                missing = await client.get("/admin/shipments")
                assert missing.status_code == 401
                assert missing.headers["WWW-Authenticate"] == "Bearer"

                wrong = await client.get("/admin/shipments", headers={"Authorization": "Bearer nope"})
                assert wrong.status_code == 401

                ok = await client.get("/admin/shipments", headers=ADMIN_HEADERS)
                assert ok.status_code == 200
                assert ok.json()["total"] == 0

    _run(body())
    _run(dispose_engines())


def test_create_approve_and_download_label(tmp_path, fake_gateway) -> None:
    app = _prepare_app(tmp_path)

    async def body() -> None:
        async with lifespan(app):
            app.state.courier_gateway = fake_gateway
            transport = ASGITransport(app=app)
            async with AsyncClient(transport=transport, base_url="http://test") as client:
                order_id = await _seed_order(app)
                created = await client.post(
                    "/admin/shipments",
                    json={"orderId": order_id, "shippingMode": "surface", "weightGrams": 800},
                    headers=ADMIN_HEADERS,
                )
                assert created.status_code == 201
                shipment = created.json()
                assert shipment["status"] == "pending_review"
                assert shipment["shippingMode"] == "Surface"

                pending = await client.get("/admin/shipments/pending", headers=ADMIN_HEADERS)
                assert [item["id"] for item in pending.json()] == [shipment["id"]]

                placed = await client.post(
                    f"/admin/shipments/{shipment['id']}/approve-and-place", headers=ADMIN_HEADERS
                )
                assert placed.status_code == 200
                booked = placed.json()
                assert booked["status"] == "placed"
                assert booked["awb"] == "9000000001"
                assert booked["approvedBy"] == "ops-1"

                again = await client.post(
                    f"/admin/shipments/{shipment['id']}/approve-and-place", headers=ADMIN_HEADERS
                )
                assert again.status_code == 409
                assert again.json()["detail"]["code"] == "precondition_failed"

                locked = await client.put(
                    f"/admin/shipments/{shipment['id']}", json={"weightGrams": 900}, headers=ADMIN_HEADERS
                )
                assert locked.status_code == 409

                label = await client.get(f"/admin/shipments/{shipment['id']}/label", headers=ADMIN_HEADERS)
                assert label.status_code == 200
                assert label.headers["content-type"] == "application/pdf"
                assert 'filename="label-9000000001.pdf"' in label.headers["content-disposition"]

                stats = await client.get("/admin/shipments/stats", headers=ADMIN_HEADERS)
                assert stats.json()["byStatus"]["placed"] == 1

                missing = await client.get("/admin/shipments/999", headers=ADMIN_HEADERS)
                assert missing.status_code == 404

    _run(body())
    _run(dispose_engines())


def test_booking_failure_returns_bad_gateway(tmp_path, fake_gateway) -> None:
    app = _prepare_app(tmp_path)
    fake_gateway.booking_error = CourierBookingError("Delhivery request timed out")

    async def body() -> None:
        async with lifespan(app):
            app.state.courier_gateway = fake_gateway
            transport = ASGITransport(app=app)
            async with AsyncClient(transport=transport, base_url="http://test") as client:
                order_id = await _seed_order(app)
                created = await client.post("/admin/shipments", json={"orderId": order_id}, headers=ADMIN_HEADERS)
                shipment_id = created.json()["id"]

                failed = await client.post(
                    f"/admin/shipments/{shipment_id}/approve-and-place", headers=ADMIN_HEADERS
                )
                assert failed.status_code == 502
                assert failed.json()["detail"]["retryCount"] == 1

                current = await client.get(f"/admin/shipments/{shipment_id}", headers=ADMIN_HEADERS)
                assert current.json()["status"] == "pending_review"
                assert current.json()["failedReason"] == "Delhivery request timed out"

    _run(body())
    _run(dispose_engines())


def test_courier_edit_is_rate_limited(tmp_path, fake_gateway) -> None:
    app = _prepare_app(tmp_path)

    async def body() -> None:
        async with lifespan(app):
            app.state.courier_gateway = fake_gateway
            transport = ASGITransport(app=app)
            async with AsyncClient(transport=transport, base_url="http://test") as client:
                booked = await _booked_shipment(client, app)
                shipment_id = booked["id"]

                eligibility = await client.get(
                    f"/admin/shipments/{shipment_id}/edit-eligibility", headers=ADMIN_HEADERS
                )
                assert eligibility.json()["eligible"] is True
                assert eligibility.json()["paymentMode"] == "Prepaid"

                dry_run = await client.post(
                    f"/admin/shipments/{shipment_id}/validate-edit",
                    json={"phone": "12"},
                    headers=ADMIN_HEADERS,
                )
                assert dry_run.status_code == 200
                assert dry_run.json()["valid"] is False

                edited = await client.put(
                    f"/admin/shipments/{shipment_id}/edit",
                    json={"name": "Ravi K", "weight": 1200},
                    headers=ADMIN_HEADERS,
                )
                assert edited.status_code == 200
                assert edited.json()["weightGrams"] == 1200

                limited = await client.put(
                    f"/admin/shipments/{shipment_id}/edit",
                    json={"name": "Ravi Kumar"},
                    headers=ADMIN_HEADERS,
                )
                assert limited.status_code == 429
                assert int(limited.headers["Retry-After"]) >= 1

                history = await client.get(f"/admin/shipments/{shipment_id}/edit-history", headers=ADMIN_HEADERS)
                items = history.json()["items"]
                assert items[0]["via"] == "courier"
                assert items[0]["edited_by"] == "ops-1"

    _run(body())
    _run(dispose_engines())


def test_cron_sync_requires_secret(tmp_path, fake_gateway) -> None:
    app = _prepare_app(tmp_path)

    async def body() -> None:
        async with lifespan(app):
            app.state.courier_gateway = fake_gateway
            transport = ASGITransport(app=app)
            async with AsyncClient(transport=transport, base_url="http://test") as client:
                booked = await _booked_shipment(client, app)
                fake_gateway.tracking[booked["awb"]] = TrackingInfo(
                    status=CourierStatus.IN_TRANSIT, raw_status="In Transit", status_at="2025-03-02T10:00:00"
                )

                denied = await client.post("/cron/sync-shipments", headers={"X-Cron-Secret": "wrong"})
                assert denied.status_code == 401

                response = await client.get(
                    "/cron/sync-shipments", headers={"Authorization": f"Bearer {CRON_SECRET}"}
                )
                assert response.status_code == 200
                payload = response.json()
                assert payload["success"] is True
                assert payload["message"] == "Synced 1 of 1 shipments"
                assert payload["summary"]["results"][0]["status"] == "in_transit"

    _run(body())
    _run(dispose_engines())


def test_webhook_signature_and_ingestion(tmp_path, fake_gateway) -> None:
    app = _prepare_app(tmp_path)

    async def body() -> None:
        async with lifespan(app):
            app.state.courier_gateway = fake_gateway
            transport = ASGITransport(app=app)
            async with AsyncClient(transport=transport, base_url="http://test") as client:
                booked = await _booked_shipment(client, app)
                event = {"waybill": booked["awb"], "status": "Picked Up", "location": "Kolkata Hub"}

                raw, headers = _signed(event, secret="not-the-secret")
                rejected = await client.post("/webhooks/delhivery", content=raw, headers=headers)
                assert rejected.status_code == 401

                raw, headers = _signed({"waybill": booked["awb"]})
                incomplete = await client.post("/webhooks/delhivery", content=raw, headers=headers)
                assert incomplete.status_code == 400

                raw, headers = _signed(event)
                accepted = await client.post("/webhooks/delhivery", content=raw, headers=headers)
                assert accepted.status_code == 200
                assert accepted.json() == {"success": True, "message": "Webhook received"}

                current = await client.get(f"/admin/shipments/{booked['id']}", headers=ADMIN_HEADERS)
                assert current.json()["status"] == "picked_up"
                assert current.json()["pickupActualDate"] is not None

                health = await client.get("/webhooks/delhivery/health")
                assert health.status_code == 200
                assert health.json()["lastSyncAt"] is not None

    _run(body())
    _run(dispose_engines())


def test_readiness_and_courier_health_without_token(tmp_path) -> None:
    app = _prepare_app(tmp_path, delhivery_api_token=None)

    async def body() -> None:
        async with lifespan(app):
            transport = ASGITransport(app=app)
            async with AsyncClient(transport=transport, base_url="http://test") as client:
                ready = await client.get("/health/ready")
                assert ready.status_code == 200
                assert ready.json() == {"status": "ok", "database": "ok", "courier": "not_configured"}

                courier = await client.get("/delivery/health")
                assert courier.status_code == 503
                assert courier.json()["message"] == "API token not configured"

                estimate = await client.get("/delivery/check-delivery/110001")
                assert estimate.status_code == 200
                assert estimate.json()["serviceable"] is False

    _run(body())
    _run(dispose_engines())
