"""Edit eligibility rules for booked shipments.

Delhivery only accepts edits for a subset of statuses per payment mode and
only converts between COD and Prepaid. These helpers are pure; callers
combine them with the courier-side status check before editing.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Final, Mapping

from .errors import EditValidationError
from .status import ShipmentStatus

EDITABLE_FIELDS: Final = (
    "name",
    "phone",
    "add",
    "products_desc",
    "weight",
    "shipment_height",
    "shipment_width",
    "shipment_length",
    "pt",
    "cod_amount",
    "admin_notes",
)
_FIELD_ALIASES: Final = {"address": "add"}
_DIMENSION_FIELDS: Final = ("shipment_height", "shipment_width", "shipment_length")
_NUMERIC_FIELDS: Final = frozenset({"weight", "cod_amount", *_DIMENSION_FIELDS})

MAX_WEIGHT_GRAMS: Final = 50_000
MAX_DIMENSION_CM: Final = 200

_EDITABLE_STATUSES: Final[dict[str, tuple[ShipmentStatus, ...]]] = {
    "COD": (ShipmentStatus.PLACED, ShipmentStatus.PENDING_PICKUP, ShipmentStatus.PICKED_UP),
    "Prepaid": (ShipmentStatus.PLACED, ShipmentStatus.PENDING_PICKUP, ShipmentStatus.PICKED_UP),
    "Pickup": (ShipmentStatus.PENDING_PICKUP,),
    "REPL": (ShipmentStatus.PLACED, ShipmentStatus.PENDING_PICKUP, ShipmentStatus.PICKED_UP),
}
_NON_EDITABLE_TERMINAL: Final = frozenset(
    {
        ShipmentStatus.DELIVERED.value,
        ShipmentStatus.FAILED.value,
        ShipmentStatus.RTO_DELIVERED.value,
        ShipmentStatus.CANCELLED.value,
    }
)
_ALLOWED_CONVERSIONS: Final[dict[str, frozenset[str]]] = {
    "COD": frozenset({"Prepaid"}),
    "Prepaid": frozenset({"COD"}),
    "Pickup": frozenset(),
    "REPL": frozenset(),
}
_PAYMENT_MODES: Final = {
    "COD": "COD",
    "PREPAID": "Prepaid",
    "PRE-PAID": "Prepaid",
    "PICKUP": "Pickup",
    "REPL": "REPL",
}
_NON_DIGITS = re.compile(r"\D")


@dataclass(frozen=True, slots=True)
class EditDecision:
    allowed: bool
    reason: str | None = None


@dataclass(frozen=True, slots=True)
class PaymentModeDecision:
    valid: bool
    reason: str | None = None


@dataclass(frozen=True, slots=True)
class FieldValidation:
    valid: bool
    errors: list[str] = field(default_factory=list)


def normalize_payment_mode(mode: Any) -> str:
    """Map free-form payment mode input onto Delhivery's spelling."""

    normalized = str(mode).strip().upper()
    return _PAYMENT_MODES.get(normalized, normalized)


def is_status_editable(status: ShipmentStatus | str, payment_mode: str) -> EditDecision:
    value = status.value if isinstance(status, ShipmentStatus) else str(status)
    mode = normalize_payment_mode(payment_mode)
    allowed_statuses = [item.value for item in _EDITABLE_STATUSES.get(mode, ())]

    if value not in allowed_statuses:
        return EditDecision(
            allowed=False,
            reason=(
                f"Editing not allowed for status '{value}' with payment mode '{mode}'. "
                f"Allowed statuses: {', '.join(allowed_statuses) or 'none'}"
            ),
        )
    # Applied after the table so a future table entry can never unlock a terminal status.
    if value in _NON_EDITABLE_TERMINAL:
        return EditDecision(
            allowed=False,
            reason=f"Shipment is in terminal status '{value}' and cannot be edited",
        )
    return EditDecision(allowed=True)


def validate_payment_mode_change(
    current_mode: str,
    new_mode: str,
    cod_amount: float | None = 0,
) -> PaymentModeDecision:
    current = normalize_payment_mode(current_mode)
    target = normalize_payment_mode(new_mode)

    if current == target:
        return PaymentModeDecision(valid=False, reason="Payment mode is already set to this value")
    if target not in _ALLOWED_CONVERSIONS.get(current, frozenset()):
        return PaymentModeDecision(
            valid=False,
            reason=f"Payment mode conversion from '{current}' to '{target}' is not allowed by Delhivery",
        )
    if target == "COD" and (not cod_amount or cod_amount <= 0):
        return PaymentModeDecision(valid=False, reason="COD amount must be provided when converting to COD")
    return PaymentModeDecision(valid=True)


def _as_float(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def validate_edit_fields(update_data: Mapping[str, Any]) -> FieldValidation:
    errors: list[str] = []

    invalid = [key for key in update_data if key not in EDITABLE_FIELDS and key not in _FIELD_ALIASES]
    if invalid:
        errors.append(f"These fields cannot be edited: {', '.join(invalid)}")

    name = update_data.get("name")
    if name is not None and len(str(name).strip()) < 2:
        errors.append("Name must be at least 2 characters")

    phone = update_data.get("phone")
    if phone:
        if len(_NON_DIGITS.sub("", str(phone))) != 10:
            errors.append("Phone must be a valid 10-digit number")

    if update_data.get("weight") not in (None, ""):
        weight = _as_float(update_data["weight"])
        if weight is None or weight <= 0:
            errors.append("Weight must be a positive number")
        elif weight > MAX_WEIGHT_GRAMS:
            errors.append("Weight cannot exceed 50kg (50000g)")

    for field_name in _DIMENSION_FIELDS:
        if update_data.get(field_name) in (None, ""):
            continue
        value = _as_float(update_data[field_name])
        if value is None or value <= 0:
            errors.append(f"{field_name} must be a positive number")
        elif value > MAX_DIMENSION_CM:
            errors.append(f"{field_name} cannot exceed {MAX_DIMENSION_CM}cm")

    return FieldValidation(valid=not errors, errors=errors)


def sanitize_edit_data(update_data: Mapping[str, Any]) -> dict[str, Any]:
    """Return a cleaned copy of ``update_data`` limited to editable fields.

    Strings are trimmed, the ``address`` alias becomes ``add``, phone numbers
    lose non-digits and numeric fields are coerced to floats. A non-numeric
    value for a numeric field raises :class:`EditValidationError`.
    """

    sanitized: dict[str, Any] = {}
    for key, value in update_data.items():
        target = _FIELD_ALIASES.get(key, key)
        if target not in EDITABLE_FIELDS:
            continue
        if isinstance(value, str):
            value = value.strip()
        if target in _NUMERIC_FIELDS:
            number = _as_float(value)
            if number is None:
                raise EditValidationError(
                    f"Invalid numeric value for field: {key}",
                    [f"Invalid numeric value for field: {key}"],
                )
            value = number
        if target == "phone":
            value = _NON_DIGITS.sub("", str(value))
        if target == "pt":
            value = normalize_payment_mode(value)
        sanitized[target] = value
    return sanitized


def edit_restrictions_message(status: ShipmentStatus | str, payment_mode: str) -> str:
    decision = is_status_editable(status, payment_mode)
    if not decision.allowed:
        return decision.reason or "Editing is not allowed"
    return (
        "You can edit customer details, package dimensions, and weight. "
        "Payment mode can be converted between COD and Prepaid. "
        "Pickup details cannot be changed here."
    )
