"""Delhivery REST API gateway.

Estimation calls (serviceability, cost, TAT) never raise: transport or API
failures degrade to structured "not available" results or to local
heuristics tagged with their ``source``. Booking, cancellation and edits are
irreversible and raise :class:`CourierError` subclasses instead.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import json
import logging
import math
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from time import perf_counter
from typing import Any, Final, Mapping

import httpx

from storefront.common import ServiceSettings, cache_get_json, cache_set_json
from storefront.common.cache import RedisType

from .errors import (
    CourierAuthError,
    CourierBookingError,
    CourierError,
    CourierUnavailableError,
    CourierValidationError,
)
from .metrics import (
    COURIER_FALLBACK_TOTAL,
    COURIER_REQUEST_LATENCY_SECONDS,
    COURIER_REQUESTS_TOTAL,
    SERVICEABILITY_CACHE_EVENTS_TOTAL,
)
from .status import CourierStatus, parse_courier_status

_LOGGER = logging.getLogger(__name__)

COURIER_NAME: Final = "Delhivery"
TRACKING_URL_TEMPLATE: Final = "https://www.delhivery.com/track/package/{awb}"
HEALTH_CHECK_PINCODE: Final = "110001"

_PINCODE_RE = re.compile(r"^\d{6}$")
_TWO_PLACES = Decimal("0.01")

SURFACE: Final = "Surface"
EXPRESS: Final = "Express"
_MODE_CODES: Final = {SURFACE: "S", EXPRESS: "E"}

# Fallback pricing in rupees: base rate for the first 500 g, increment per further started slab.
_WEIGHT_SLAB_GRAMS: Final = 500
_FALLBACK_RATES: Final[dict[str, tuple[Decimal, Decimal]]] = {
    SURFACE: (Decimal("50"), Decimal("20")),
    EXPRESS: (Decimal("80"), Decimal("35")),
}
_FALLBACK_COD_CHARGE: Final = Decimal("40")

_EMERGENCY_TAT_DAYS: Final = {SURFACE: 5, EXPRESS: 2}

_METRO_CITIES: Final = frozenset(
    city.lower()
    for city in (
        "Mumbai", "Delhi", "Bangalore", "Bengaluru", "Chennai", "Kolkata",
        "Hyderabad", "Pune", "Ahmedabad", "Gurgaon", "Noida", "New Delhi",
    )
)
_TIER2_CITIES: Final = frozenset(
    city.lower()
    for city in (
        "Jaipur", "Lucknow", "Kanpur", "Nagpur", "Indore", "Thane", "Bhopal",
        "Visakhapatnam", "Vadodara", "Coimbatore", "Kochi", "Chandigarh",
        "Mysore", "Surat", "Nashik",
    )
)
_ZONE_STATES: Final[dict[str, tuple[str, ...]]] = {
    "North": ("DL", "HR", "UP", "UK", "PB", "HP", "JK", "CH", "RJ"),
    "South": ("KA", "TN", "KL", "AP", "TS", "PY"),
    "East": ("WB", "OR", "JH", "BR", "AS", "SK", "NL", "MN", "TR", "MZ", "AR"),
    "West": ("MH", "GJ", "GA", "DD", "DN"),
    "Central": ("MP", "CG"),
}
_STATE_ZONE: Final = {state: zone for zone, states in _ZONE_STATES.items() for state in states}
_ADJACENT_ZONES: Final = frozenset(
    frozenset(pair)
    for pair in (("North", "West"), ("North", "Central"), ("West", "Central"), ("West", "South"))
)
# (metro, tier-2, other) days for (Express, Surface).
_TAT_TABLE: Final[dict[str, tuple[tuple[int, int], tuple[int, int], tuple[int, int]]]] = {
    "same_state": ((1, 2), (2, 3), (2, 3)),
    "same_zone": ((2, 3), (3, 4), (3, 5)),
    "adjacent_zone": ((3, 4), (4, 5), (4, 6)),
    "far_zone": ((3, 5), (4, 6), (5, 7)),
}

_EDITABLE_COURIER_STATUSES: Final = frozenset(
    {
        CourierStatus.MANIFESTED,
        CourierStatus.IN_TRANSIT,
        CourierStatus.PENDING,
        CourierStatus.SCHEDULED,
        CourierStatus.PICKUP_SCHEDULED,
    }
)
_TERMINAL_COURIER_STATUSES: Final = frozenset(
    {
        CourierStatus.DELIVERED,
        CourierStatus.RTO,
        CourierStatus.RTO_INITIATED,
        CourierStatus.RTO_DELIVERED,
        CourierStatus.LOST,
        CourierStatus.CLOSED,
        CourierStatus.CANCELLED,
        CourierStatus.CANCELED,
    }
)


@dataclass(frozen=True, slots=True)
class ServiceFeatures:
    cod: bool = False
    prepaid: bool = False
    pickup: bool = False
    reverse: bool = False
    cash: bool = False


@dataclass(frozen=True, slots=True)
class ServiceabilityResult:
    pincode: str
    serviceable: bool
    status: str
    city: str | None = None
    state: str | None = None
    features: ServiceFeatures = field(default_factory=ServiceFeatures)
    reason: str | None = None


@dataclass(frozen=True, slots=True)
class CostEstimate:
    amount: Decimal
    mode: str
    source: str
    currency: str = "INR"
    base_charge: Decimal = Decimal("0.00")
    cod_charge: Decimal = Decimal("0.00")
    other_charges: Decimal = Decimal("0.00")
    taxes: Decimal = Decimal("0.00")


@dataclass(frozen=True, slots=True)
class TatEstimate:
    estimated_days: int
    expected_delivery_date: date
    mode: str
    source: str


@dataclass(frozen=True, slots=True)
class DeliveryCheck:
    pincode: str
    serviceable: bool
    city: str | None
    state: str | None
    features: ServiceFeatures
    surface: TatEstimate | None = None
    express: TatEstimate | None = None
    reason: str | None = None

    @property
    def best_option(self) -> TatEstimate | None:
        return self.express or self.surface


@dataclass(frozen=True, slots=True)
class BookingRequest:
    """Everything Delhivery needs to manifest one package."""

    order_number: str
    customer_name: str
    customer_phone: str
    address: str
    city: str
    state: str
    pincode: str
    payment_mode: str
    total_amount: Decimal
    weight_grams: int
    length_cm: float
    width_cm: float
    height_cm: float
    shipping_mode: str
    package_count: int = 1
    products_desc: str = ""
    pickup_location: str | None = None

    @property
    def cod_amount(self) -> Decimal:
        return self.total_amount if self.payment_mode == "COD" else Decimal("0")


@dataclass(frozen=True, slots=True)
class BookingResult:
    awb: str
    tracking_url: str
    label_url: str | None = None
    invoice_url: str | None = None
    manifest_url: str | None = None
    cost: Decimal | None = None
    delhivery_order_id: str | None = None


@dataclass(frozen=True, slots=True)
class TrackingInfo:
    status: CourierStatus
    raw_status: str
    history: list[dict[str, Any]] = field(default_factory=list)
    expected_delivery_date: date | None = None
    current_location: str | None = None
    status_at: str | None = None


@dataclass(frozen=True, slots=True)
class PickupResult:
    success: bool
    pickup_id: str | None = None
    already_exists: bool = False
    error: str | None = None


@dataclass(frozen=True, slots=True)
class DocumentResult:
    success: bool
    document_url: str | None = None
    pdf_bytes: bytes | None = None
    error: str | None = None


@dataclass(frozen=True, slots=True)
class EditEligibility:
    eligible: bool
    reason: str | None
    current_status: str | None = None


def _money(value: Any) -> Decimal:
    try:
        return Decimal(str(value)).quantize(_TWO_PLACES, rounding=ROUND_HALF_UP)
    except (ArithmeticError, ValueError):
        return Decimal("0.00")


def _parse_yes(value: Any) -> bool:
    return value is True or (isinstance(value, str) and value.strip().upper() == "Y")


def _parse_date(value: Any) -> date | None:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str) or len(value) < 10:
        return None
    try:
        return date.fromisoformat(value[:10])
    except ValueError:
        return None


def _today() -> date:
    return datetime.now(timezone.utc).date()


def normalize_mode(mode: str | None) -> str:
    """Return ``Surface`` or ``Express`` for any of the accepted spellings."""

    if mode and mode.strip().upper() in {"E", "EXPRESS"}:
        return EXPRESS
    return SURFACE


def is_valid_pincode(pincode: Any) -> bool:
    return bool(_PINCODE_RE.match(str(pincode or "").strip()))


def fallback_cost(mode: str, weight_grams: int, payment_type: str) -> CostEstimate:
    """Deterministic price used whenever the cost API yields nothing usable."""

    resolved_mode = normalize_mode(mode)
    base_rate, slab_rate = _FALLBACK_RATES[resolved_mode]
    slabs = max(1, math.ceil(max(weight_grams, 0) / _WEIGHT_SLAB_GRAMS))
    base = base_rate + slab_rate * (slabs - 1)
    cod = _FALLBACK_COD_CHARGE if payment_type.strip().upper() == "COD" else Decimal("0")
    return CostEstimate(
        amount=_money(base + cod),
        mode=resolved_mode,
        source="estimated",
        base_charge=_money(base),
        cod_charge=_money(cod),
    )


def _zone_for(state: str | None) -> str | None:
    if not state:
        return None
    return _STATE_ZONE.get(state.strip().upper())


def static_tat_days(origin_state: str, destination_state: str | None, destination_city: str | None, mode: str) -> int:
    """Coarse zone-based transit estimate used when the TAT API is unavailable."""

    origin = origin_state.strip().upper()
    destination = (destination_state or "").strip().upper()
    origin_zone = _zone_for(origin)
    destination_zone = _zone_for(destination)

    if destination and origin == destination:
        band = "same_state"
    elif origin_zone is not None and origin_zone == destination_zone:
        band = "same_zone"
    elif frozenset((origin_zone, destination_zone)) in _ADJACENT_ZONES:
        band = "adjacent_zone"
    else:
        band = "far_zone"

    city = (destination_city or "").strip().lower()
    metro, tier2, other = _TAT_TABLE[band]
    if city in _METRO_CITIES:
        days = metro
    elif city in _TIER2_CITIES:
        days = tier2
    else:
        days = other
    return days[0] if normalize_mode(mode) == EXPRESS else days[1]


class DelhiveryGateway:
    """Async client for the Delhivery B2C API."""

    def __init__(
        self,
        *,
        client: httpx.AsyncClient,
        api_token: str | None,
        base_url: str,
        warehouse_pincode: str,
        warehouse_state: str,
        warehouse_name: str,
        redis: RedisType | None = None,
        cache_ttl: int = 0,
    ) -> None:
        self._client = client
        self._api_token = api_token
        self.base_url = base_url.rstrip("/")
        self.warehouse_pincode = warehouse_pincode
        self.warehouse_state = warehouse_state.upper()
        self.warehouse_name = warehouse_name
        self._redis = redis
        self._cache_ttl = cache_ttl

    @classmethod
    def from_settings(
        cls,
        settings: ServiceSettings,
        *,
        client: httpx.AsyncClient | None = None,
        redis: RedisType | None = None,
    ) -> DelhiveryGateway:
        return cls(
            client=client or httpx.AsyncClient(timeout=settings.delhivery_timeout_seconds),
            api_token=settings.delhivery_api_token,
            base_url=settings.delhivery_api_url,
            warehouse_pincode=settings.warehouse_pincode,
            warehouse_state=settings.warehouse_state,
            warehouse_name=settings.warehouse_name,
            redis=redis,
            cache_ttl=settings.serviceability_cache_ttl_seconds,
        )

    @property
    def configured(self) -> bool:
        return bool(self._api_token)

    async def close(self) -> None:
        await self._client.aclose()

    def _headers(self, url: str) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        # The API token is only sent to the configured Delhivery host.
        if httpx.URL(url).host == httpx.URL(self.base_url).host:
            headers["Authorization"] = f"Token {self._api_token}"
        return headers

    async def _send(self, operation: str, method: str, path: str, **kwargs: Any) -> httpx.Response:
        url = path if path.startswith("http") else f"{self.base_url}{path}"
        headers = {**self._headers(url), **kwargs.pop("headers", {})}
        start = perf_counter()
        try:
            response = await self._client.request(method, url, headers=headers, **kwargs)
        except httpx.HTTPError:
            COURIER_REQUESTS_TOTAL.labels(operation=operation, outcome="error").inc()
            raise
        finally:
            COURIER_REQUEST_LATENCY_SECONDS.labels(operation=operation).observe(perf_counter() - start)
        outcome = "ok" if response.is_success else "http_error"
        COURIER_REQUESTS_TOTAL.labels(operation=operation, outcome=outcome).inc()
        return response

    # Serviceability ------------------------------------------------------------------------

    def _cache_key(self, pincode: str) -> str:
        return f"delhivery:serviceability:{pincode}"

    async def _cached_serviceability(self, pincode: str) -> ServiceabilityResult | None:
        if self._redis is None or self._cache_ttl <= 0:
            return None
        cached = await cache_get_json(self._redis, self._cache_key(pincode))
        if not isinstance(cached, dict):
            SERVICEABILITY_CACHE_EVENTS_TOTAL.labels(event="miss").inc()
            return None
        try:
            features = ServiceFeatures(**cached.pop("features", {}))
            result = ServiceabilityResult(features=features, **cached)
        except TypeError:
            SERVICEABILITY_CACHE_EVENTS_TOTAL.labels(event="error").inc()
            return None
        SERVICEABILITY_CACHE_EVENTS_TOTAL.labels(event="hit").inc()
        return result

    async def _store_serviceability(self, result: ServiceabilityResult) -> None:
        if self._redis is None or self._cache_ttl <= 0:
            return
        payload = {
            "pincode": result.pincode,
            "serviceable": result.serviceable,
            "status": result.status,
            "city": result.city,
            "state": result.state,
            "reason": result.reason,
            "features": {
                "cod": result.features.cod,
                "prepaid": result.features.prepaid,
                "pickup": result.features.pickup,
                "reverse": result.features.reverse,
                "cash": result.features.cash,
            },
        }
        stored = await cache_set_json(self._redis, self._cache_key(result.pincode), payload, ttl_seconds=self._cache_ttl)
        SERVICEABILITY_CACHE_EVENTS_TOTAL.labels(event="write" if stored else "error").inc()

    async def check_serviceability(self, pincode: str) -> ServiceabilityResult:
        pincode = str(pincode or "").strip()
        if not is_valid_pincode(pincode):
            return ServiceabilityResult(pincode, False, "Invalid", reason="Pincode must be exactly 6 digits")
        if not self.configured:
            return ServiceabilityResult(
                pincode, False, "Configuration Error", reason="Delhivery API token not configured"
            )

        cached = await self._cached_serviceability(pincode)
        if cached is not None:
            return cached

        try:
            response = await self._send(
                "serviceability", "GET", "/c/api/pin-codes/json/", params={"filter_codes": pincode}
            )
        except httpx.TimeoutException:
            _LOGGER.warning("Serviceability check for %s timed out", pincode)
            return ServiceabilityResult(pincode, False, "Timeout", reason="Delhivery API request timed out")
        except httpx.ConnectError as exc:
            _LOGGER.warning("Cannot reach Delhivery for serviceability of %s: %s", pincode, exc)
            return ServiceabilityResult(
                pincode, False, "Connection Failed", reason="Cannot connect to Delhivery API"
            )
        except httpx.HTTPError as exc:
            _LOGGER.warning("Serviceability check for %s failed: %s", pincode, exc)
            return ServiceabilityResult(pincode, False, "API Error", reason=str(exc))

        if response.status_code == 401:
            _LOGGER.error("Delhivery rejected the API token (401)")
            return ServiceabilityResult(
                pincode, False, "Authentication Failed", reason="Invalid Delhivery API token"
            )
        if response.status_code == 403:
            return ServiceabilityResult(
                pincode, False, "Permission Denied", reason="Token lacks the required permissions"
            )
        if response.status_code == 404:
            return ServiceabilityResult(pincode, False, "Endpoint Error", reason="API endpoint not found")
        if response.status_code != 200:
            return ServiceabilityResult(
                pincode, False, "API Error", reason=f"API returned status {response.status_code}"
            )

        try:
            data = response.json()
        except ValueError:
            return ServiceabilityResult(pincode, False, "API Error", reason="Undecodable serviceability response")

        codes = data.get("delivery_codes") if isinstance(data, dict) else None
        if not codes:
            return ServiceabilityResult(pincode, False, "NSZ", reason="Non-Serviceable Zone (NSZ)")

        entry = codes[0] if isinstance(codes[0], dict) else {}
        postal = entry.get("postal_code") or {}
        if postal.get("remark") == "Embargo":
            return ServiceabilityResult(
                pincode,
                False,
                "Embargo",
                city=postal.get("city"),
                state=postal.get("state_code"),
                reason="Temporary embargo on this pincode",
            )

        result = ServiceabilityResult(
            pincode,
            True,
            "Serviceable",
            city=postal.get("city") or None,
            state=postal.get("state_code") or None,
            features=ServiceFeatures(
                cod=_parse_yes(postal.get("cod", entry.get("cod"))),
                prepaid=_parse_yes(postal.get("pre_paid", entry.get("pre_paid"))),
                pickup=_parse_yes(postal.get("pickup", entry.get("pickup"))),
                reverse=_parse_yes(postal.get("repl", entry.get("repl"))),
                cash=_parse_yes(postal.get("cash", entry.get("cash"))),
            ),
        )
        await self._store_serviceability(result)
        return result

    # Estimates -----------------------------------------------------------------------------

    async def estimate_cost(
        self,
        pincode: str,
        *,
        origin_pincode: str | None = None,
        mode: str = SURFACE,
        weight_grams: int = 1000,
        payment_type: str = "Prepaid",
    ) -> CostEstimate:
        resolved_mode = normalize_mode(mode)
        is_cod = payment_type.strip().upper() == "COD"
        if not is_valid_pincode(pincode) or not self.configured:
            COURIER_FALLBACK_TOTAL.labels(operation="cost").inc()
            return fallback_cost(resolved_mode, weight_grams, payment_type)

        try:
            response = await self._send(
                "cost",
                "GET",
                "/api/kinko/v1/invoice/charges/.json",
                params={
                    "md": _MODE_CODES[resolved_mode],
                    "ss": "Delivered",
                    "d_pin": str(pincode).strip(),
                    "o_pin": origin_pincode or self.warehouse_pincode,
                    "cgm": max(int(weight_grams), 1),
                    "pt": "COD" if is_cod else "Pre-paid",
                },
            )
            data = response.json() if response.status_code == 200 else None
        except (httpx.HTTPError, ValueError) as exc:
            _LOGGER.info("Cost API unavailable for %s, using estimate: %s", pincode, exc)
            data = None

        if isinstance(data, list):
            data = data[0] if data else None
        if not isinstance(data, dict) or data.get("total_amount") in (None, ""):
            COURIER_FALLBACK_TOTAL.labels(operation="cost").inc()
            return fallback_cost(resolved_mode, weight_grams, payment_type)

        total = _money(data["total_amount"])
        base = _money(data.get("charge_DL", 0))
        cod = _money(data.get("charge_COD", 0))
        tax_data = data.get("tax_data") or {}
        taxes = _money(sum((_money(value) for value in tax_data.values()), Decimal("0")))
        other = max(total - base - cod - taxes, Decimal("0.00"))
        return CostEstimate(
            amount=total,
            mode=resolved_mode,
            source="api",
            base_charge=base,
            cod_charge=cod,
            other_charges=_money(other),
            taxes=taxes,
        )

    async def estimate_tat(
        self,
        pincode: str,
        *,
        origin_pincode: str | None = None,
        mode: str = SURFACE,
        pickup_date: date | None = None,
        destination_city: str | None = None,
        destination_state: str | None = None,
    ) -> TatEstimate:
        resolved_mode = normalize_mode(mode)
        try:
            return await self._estimate_tat(
                str(pincode or "").strip(),
                origin_pincode=origin_pincode or self.warehouse_pincode,
                mode=resolved_mode,
                pickup_date=pickup_date or _today(),
                destination_city=destination_city,
                destination_state=destination_state,
            )
        except Exception:
            _LOGGER.exception("TAT estimation failed for %s, using default", pincode)
            COURIER_FALLBACK_TOTAL.labels(operation="tat_default").inc()
            days = _EMERGENCY_TAT_DAYS[resolved_mode]
            return TatEstimate(days, _today() + timedelta(days=days), resolved_mode, "default_fallback")

    async def _estimate_tat(
        self,
        pincode: str,
        *,
        origin_pincode: str,
        mode: str,
        pickup_date: date,
        destination_city: str | None,
        destination_state: str | None,
    ) -> TatEstimate:
        if is_valid_pincode(pincode) and self.configured:
            try:
                response = await self._send(
                    "tat",
                    "GET",
                    "/api/kinko/v1/invoice/charges/tat",
                    params={
                        "origin_pin": origin_pincode,
                        "destination_pin": pincode,
                        "mot": _MODE_CODES[mode],
                        "pdt": "B2C",
                        "expected_pickup_date": pickup_date.isoformat(),
                    },
                )
                data = response.json() if response.status_code == 200 else None
            except (httpx.HTTPError, ValueError) as exc:
                _LOGGER.info("TAT API unavailable for %s, using zone table: %s", pincode, exc)
                data = None
            if isinstance(data, dict):
                raw_days = data.get("tat") or data.get("estimated_days")
                try:
                    days = int(raw_days) if raw_days else 0
                except (TypeError, ValueError):
                    _LOGGER.warning("Unparseable TAT %r for %s, using zone table", raw_days, pincode)
                    days = 0
                if days > 0:
                    expected = _parse_date(data.get("expected_delivery_date")) or _today() + timedelta(days=days)
                    return TatEstimate(days, expected, mode, "api")

        COURIER_FALLBACK_TOTAL.labels(operation="tat").inc()
        days = static_tat_days(self.warehouse_state, destination_state, destination_city, mode)
        return TatEstimate(days, _today() + timedelta(days=days), mode, "fallback")

    async def check_delivery(self, pincode: str) -> DeliveryCheck:
        """Serviceability plus Surface and Express delivery estimates."""

        serviceability = await self.check_serviceability(pincode)
        if not serviceability.serviceable:
            return DeliveryCheck(
                pincode=serviceability.pincode,
                serviceable=False,
                city=serviceability.city,
                state=serviceability.state,
                features=serviceability.features,
                reason=serviceability.reason or "This PIN code is not serviceable",
            )

        surface, express = await asyncio.gather(
            self.estimate_tat(
                pincode,
                mode=SURFACE,
                destination_city=serviceability.city,
                destination_state=serviceability.state,
            ),
            self.estimate_tat(
                pincode,
                mode=EXPRESS,
                destination_city=serviceability.city,
                destination_state=serviceability.state,
            ),
            return_exceptions=True,
        )
        return DeliveryCheck(
            pincode=serviceability.pincode,
            serviceable=True,
            city=serviceability.city,
            state=serviceability.state,
            features=serviceability.features,
            surface=surface if isinstance(surface, TatEstimate) else None,
            express=express if isinstance(express, TatEstimate) else None,
        )

    async def health_check(self) -> dict[str, Any]:
        checked_at = datetime.now(timezone.utc).isoformat()
        if not self.configured:
            healthy, message = False, "API token not configured"
        else:
            result = await self.check_serviceability(HEALTH_CHECK_PINCODE)
            if result.status == "Authentication Failed":
                healthy, message = False, "Invalid API token"
            elif result.status in {"Connection Failed", "Timeout"}:
                healthy, message = False, "API is unreachable"
            else:
                healthy, message = True, "API is responsive"
        return {
            "healthy": healthy,
            "service": "Delhivery API",
            "message": message,
            "apiUrl": self.base_url,
            "checkedAt": checked_at,
        }

    # Booking -------------------------------------------------------------------------------

    def _shipment_payload(self, request: BookingRequest) -> dict[str, Any]:
        return {
            "name": request.customer_name,
            "add": request.address,
            "pin": request.pincode,
            "city": request.city,
            "state": request.state,
            "country": "India",
            "phone": request.customer_phone,
            "order": request.order_number,
            "payment_mode": request.payment_mode,
            "products_desc": request.products_desc,
            "cod_amount": str(request.cod_amount),
            "total_amount": str(request.total_amount),
            "quantity": str(request.package_count),
            "weight": str(request.weight_grams),
            "shipment_length": str(request.length_cm),
            "shipment_width": str(request.width_cm),
            "shipment_height": str(request.height_cm),
            "shipping_mode": normalize_mode(request.shipping_mode),
        }

    def document_url(self, kind: str, awb: str) -> str:
        path = "packing_slip" if kind == "label" else "invoice"
        return f"{self.base_url}/api/p/{path}?wbns={awb}&pdf=true"

    async def create_shipment(self, request: BookingRequest) -> BookingResult:
        """Manifest a package. Raises unless Delhivery returns a waybill."""

        if not self.configured:
            raise CourierAuthError("Delhivery API token not configured")

        body = {
            "shipments": [self._shipment_payload(request)],
            "pickup_location": {"name": request.pickup_location or self.warehouse_name},
        }
        try:
            response = await self._send(
                "create",
                "POST",
                "/api/cmu/create.json",
                data={"format": "json", "data": json.dumps(body)},
            )
        except httpx.TimeoutException as exc:
            raise CourierUnavailableError("Delhivery booking timed out") from exc
        except httpx.HTTPError as exc:
            raise CourierUnavailableError(f"Cannot reach Delhivery: {exc}") from exc

        if response.status_code in (401, 403):
            raise CourierAuthError("Delhivery rejected the API token", status_code=response.status_code)
        try:
            data = response.json()
        except ValueError as exc:
            raise CourierBookingError(
                f"Undecodable booking response (HTTP {response.status_code})", status_code=response.status_code
            ) from exc

        packages = data.get("packages") if isinstance(data, dict) else None
        package = packages[0] if packages and isinstance(packages[0], dict) else {}
        awb = str(package.get("waybill") or "").strip()
        if not awb:
            remarks = package.get("remarks") or (data.get("rmk") if isinstance(data, dict) else None)
            if isinstance(remarks, list):
                remarks = "; ".join(str(item) for item in remarks if item)
            raise CourierBookingError(
                f"No waybill returned by Delhivery: {remarks or 'unknown error'}",
                status_code=response.status_code,
                payload=data,
            )

        _LOGGER.info("Delhivery manifested order %s as AWB %s", request.order_number, awb)
        cost = package.get("charges") or package.get("total_amount")
        upload_wbn = data.get("upload_wbn")
        return BookingResult(
            awb=awb,
            tracking_url=TRACKING_URL_TEMPLATE.format(awb=awb),
            label_url=self.document_url("label", awb),
            invoice_url=self.document_url("invoice", awb),
            manifest_url=f"{self.base_url}/api/p/manifest?upload_wbn={upload_wbn}" if upload_wbn else None,
            cost=_money(cost) if cost not in (None, "") else None,
            delhivery_order_id=package.get("refnum") or request.order_number,
        )

    # Tracking ------------------------------------------------------------------------------

    async def get_tracking_info(self, awb: str) -> TrackingInfo | None:
        """Current courier status for ``awb``; None when unknown or unavailable."""

        if not awb or not self.configured:
            return None
        try:
            response = await self._send("tracking", "GET", "/api/v1/packages/json/", params={"waybill": awb})
            if response.status_code != 200:
                _LOGGER.warning("Tracking for %s returned HTTP %s", awb, response.status_code)
                return None
            data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            _LOGGER.warning("Tracking lookup for %s failed: %s", awb, exc)
            return None

        shipments = data.get("ShipmentData") if isinstance(data, dict) else None
        if not shipments:
            return None
        shipment = (shipments[0] or {}).get("Shipment") or {}
        current = shipment.get("Status") or {}
        raw_status = str(current.get("Status") or "").strip()
        if not raw_status:
            return None

        history: list[dict[str, Any]] = []
        for scan in shipment.get("Scans") or []:
            detail = scan.get("ScanDetail") if isinstance(scan, dict) else None
            if not detail:
                continue
            history.append(
                {
                    "status": detail.get("Scan"),
                    "timestamp": detail.get("ScanDateTime"),
                    "location": detail.get("ScannedLocation"),
                    "remarks": detail.get("Instructions"),
                }
            )
        return TrackingInfo(
            status=parse_courier_status(raw_status),
            raw_status=raw_status,
            history=history,
            expected_delivery_date=_parse_date(
                shipment.get("ExpectedDeliveryDate") or shipment.get("PromisedDeliveryDate")
            ),
            current_location=current.get("StatusLocation"),
            status_at=current.get("StatusDateTime"),
        )

    # Pickups -------------------------------------------------------------------------------

    async def schedule_pickup(
        self,
        *,
        pickup_date: date,
        pickup_time: str,
        package_count: int,
        pickup_location: str | None = None,
    ) -> PickupResult:
        if not self.configured:
            return PickupResult(success=False, error="Delhivery API token not configured")
        try:
            response = await self._send(
                "pickup",
                "POST",
                "/fm/request/new/",
                json={
                    "pickup_location": pickup_location or self.warehouse_name,
                    "pickup_date": pickup_date.isoformat(),
                    "pickup_time": pickup_time,
                    "expected_package_count": package_count,
                },
            )
        except httpx.HTTPError as exc:
            _LOGGER.warning("Pickup request failed: %s", exc)
            return PickupResult(success=False, error=f"Cannot reach Delhivery: {exc}")

        try:
            data = response.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}

        pickup_id = data.get("pickup_id") or data.get("pickupId")
        if response.is_success and pickup_id:
            return PickupResult(success=True, pickup_id=str(pickup_id))

        message = json.dumps(data) if data else response.text
        if data.get("pr_exist") or "already" in message.lower():
            _LOGGER.info("Pickup already requested for %s on %s", pickup_location, pickup_date)
            return PickupResult(
                success=True,
                pickup_id=str(pickup_id) if pickup_id else None,
                already_exists=True,
            )
        return PickupResult(success=False, error=data.get("error") or message or f"HTTP {response.status_code}")

    # Documents -----------------------------------------------------------------------------

    async def _document(self, operation: str, path: str, params: dict[str, Any]) -> DocumentResult:
        if not self.configured:
            return DocumentResult(success=False, error="Delhivery API token not configured")
        try:
            response = await self._send(operation, "GET", path, params=params)
        except httpx.HTTPError as exc:
            return DocumentResult(success=False, error=f"Cannot reach Delhivery: {exc}")
        if response.status_code != 200:
            return DocumentResult(success=False, error=f"Delhivery returned HTTP {response.status_code}")
        if response.headers.get("content-type", "").startswith("application/pdf"):
            return DocumentResult(success=True, pdf_bytes=response.content)

        try:
            data = response.json()
        except ValueError:
            return DocumentResult(success=False, error="Undecodable document response")
        packages = data.get("packages") if isinstance(data, dict) else None
        package = packages[0] if packages and isinstance(packages[0], dict) else {}

        encoded = package.get("pdf_encoding")
        if encoded:
            try:
                return DocumentResult(success=True, pdf_bytes=base64.b64decode(encoded))
            except (binascii.Error, ValueError):
                _LOGGER.warning("Discarding malformed inline PDF for %s", operation)
        link = package.get("pdf_download_link")
        if link:
            return DocumentResult(success=True, document_url=link)
        return DocumentResult(success=False, error="No document returned by Delhivery")

    async def generate_label(self, awb: str, *, pdf_size: str = "4R") -> DocumentResult:
        return await self._document(
            "label", "/api/p/packing_slip", {"wbns": awb, "pdf": "true", "pdf_size": pdf_size}
        )

    async def generate_invoice(self, awb: str) -> DocumentResult:
        return await self._document("invoice", "/api/p/invoice", {"wbns": awb, "pdf": "true"})

    async def fetch_document(self, url: str) -> bytes:
        """Download a PDF from a (possibly signed, short-lived) document URL."""

        try:
            response = await self._send("document_download", "GET", url)
        except httpx.HTTPError as exc:
            raise CourierUnavailableError(f"Document download failed: {exc}") from exc
        if response.status_code != 200:
            raise CourierUnavailableError(
                f"Document download returned HTTP {response.status_code}", status_code=response.status_code
            )
        return response.content

    # Mutations -----------------------------------------------------------------------------

    async def _mutate(self, operation: str, payload: Mapping[str, Any]) -> dict[str, Any]:
        if not self.configured:
            raise CourierAuthError("Delhivery API token not configured")
        try:
            response = await self._send(operation, "POST", "/api/p/edit", json=dict(payload))
        except httpx.TimeoutException as exc:
            raise CourierUnavailableError(f"Delhivery {operation} timed out") from exc
        except httpx.HTTPError as exc:
            raise CourierUnavailableError(f"Cannot reach Delhivery: {exc}") from exc

        try:
            data = response.json()
        except ValueError:
            data = {"raw": response.text}
        if not isinstance(data, dict):
            data = {"data": data}

        if response.status_code in (401, 403):
            raise CourierAuthError(
                "Delhivery rejected the API token", status_code=response.status_code, payload=data
            )
        if response.status_code == 400:
            raise CourierValidationError(
                str(data.get("error") or data.get("message") or "Delhivery rejected the request"),
                status_code=400,
                payload=data,
            )
        if response.status_code >= 500:
            raise CourierUnavailableError(
                f"Delhivery returned HTTP {response.status_code}", status_code=response.status_code, payload=data
            )
        if not response.is_success:
            raise CourierError(
                f"Delhivery returned HTTP {response.status_code}", status_code=response.status_code, payload=data
            )
        if data.get("status") is False or (data.get("error") and not data.get("status")):
            raise CourierValidationError(
                str(data.get("error") or data.get("remark") or "Delhivery rejected the request"),
                status_code=response.status_code,
                payload=data,
            )
        return data

    async def cancel_shipment(self, awb: str) -> dict[str, Any]:
        return await self._mutate("cancel", {"waybill": awb, "cancellation": "true"})

    async def edit_shipment(self, awb: str, fields: Mapping[str, Any]) -> dict[str, Any]:
        payload = {key: value for key, value in fields.items() if key != "admin_notes"}
        return await self._mutate("edit", {"waybill": awb, **payload})

    async def validate_edit_eligibility(self, awb: str) -> EditEligibility:
        """Check the courier-side status; anything not known to be editable is refused."""

        tracking = await self.get_tracking_info(awb)
        if tracking is None:
            return EditEligibility(False, "Unable to fetch current status from Delhivery")

        status = tracking.status
        if status in _TERMINAL_COURIER_STATUSES:
            return EditEligibility(
                False, f"Shipment is in terminal status '{tracking.raw_status}'", tracking.raw_status
            )
        if status in _EDITABLE_COURIER_STATUSES:
            return EditEligibility(True, None, tracking.raw_status)
        if status is CourierStatus.UNKNOWN:
            _LOGGER.warning("Unrecognised Delhivery status %r for %s", tracking.raw_status, awb)
            return EditEligibility(
                False, f"Unrecognised courier status '{tracking.raw_status}'", tracking.raw_status
            )
        return EditEligibility(
            False, f"Courier status '{tracking.raw_status}' does not allow edits", tracking.raw_status
        )
