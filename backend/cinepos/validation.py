from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any

from sqlalchemy import Boolean, Integer, String, Text
from sqlalchemy.orm import DeclarativeMeta

from .errors import ValidationFailedError


# Maximum price: Rs 9,999,999.99 (999,999,999 paise)
MAX_PRICE_CENTS = 999_999_999

# 100% in basis points
MAX_BPS = 10_000

_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")


def snake_case(key: str) -> str:
    """"productId" -> "product_id"; snake_case keys pass through."""
    return _CAMEL_BOUNDARY.sub("_", key).lower()


def snake_case_keys(payload: Any) -> Any:
    """Recursively convert camelCase dict keys to snake_case."""
    if isinstance(payload, dict):
        return {snake_case(str(k)): snake_case_keys(v) for k, v in payload.items()}
    if isinstance(payload, list):
        return [snake_case_keys(v) for v in payload]
    return payload


@dataclass(frozen=True)
class ModelValidationPolicy:
    """
    Central policy layer:
    - writable_fields: what clients are allowed to set (security boundary)
    - required_on_create: fields required for POST
    """
    writable_fields: set[str]
    required_on_create: set[str] = None  # type: ignore


def _columns_by_key(model: DeclarativeMeta) -> dict[str, Any]:
    mapper = model.__mapper__
    return {c.key: c for c in mapper.columns}


def parse_int(value: Any, field: str) -> int:
    """Strict integer: rejects floats, decimals, booleans and scientific notation."""
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise ValidationFailedError(f"{field} must be an integer")
        if "e" in stripped.lower():
            raise ValidationFailedError(f"{field} must be a plain integer (scientific notation not allowed)")
        if "." in stripped:
            raise ValidationFailedError(f"{field} must be an integer (no decimals)")
        try:
            return int(stripped)
        except ValueError:
            raise ValidationFailedError(f"{field} must be an integer")
    if isinstance(value, float):
        raise ValidationFailedError(f"{field} must be an integer, not a decimal")
    raise ValidationFailedError(f"{field} must be an integer")


def parse_positive_int(value: Any, field: str) -> int:
    number = parse_int(value, field)
    if number < 1:
        raise ValidationFailedError(f"{field} must be >= 1")
    return number


def _coerce_value(col, value: Any):
    coltype = col.type

    if value is None:
        return None

    if isinstance(coltype, Integer):
        return parse_int(value, col.key)

    if isinstance(coltype, Boolean):
        if isinstance(value, bool):
            return value
        raise ValidationFailedError(f"{col.key} must be true or false")

    if isinstance(coltype, (String, Text)):
        return str(value).strip()

    return value


def validate_payload(
    *,
    model: DeclarativeMeta,
    payload: dict,
    policy: ModelValidationPolicy,
    partial: bool,
) -> dict:
    """
    Validates + normalizes incoming JSON against:
    - SQLAlchemy column metadata (nullable, type, String length)
    - a policy allowlist (writable_fields)
    - required_on_create (if partial=False)
    Returns a cleaned patch dict with only writable fields.

    partial=False: create semantics (enforce required_on_create)
    partial=True: patch semantics (validate only provided keys)
    """
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationFailedError("Invalid JSON payload")

    required = policy.required_on_create or set()
    if not partial:
        missing = sorted(f for f in required if f not in payload)
        if missing:
            raise ValidationFailedError(f"Missing required fields: {', '.join(missing)}")

    cols = _columns_by_key(model)

    for k in payload.keys():
        if k not in policy.writable_fields:
            raise ValidationFailedError(f"Field not allowed: {k}")
        if k not in cols:
            raise ValidationFailedError(f"Unknown field: {k}")

    patch: dict = {}

    for k, raw in payload.items():
        col = cols[k]

        if raw is None:
            if not col.nullable:
                raise ValidationFailedError(f"{k} cannot be null")
            patch[k] = None
            continue

        val = _coerce_value(col, raw)

        # Blank string check for non-nullable text fields
        if isinstance(col.type, (String, Text)) and not col.nullable:
            if isinstance(val, str) and val == "":
                raise ValidationFailedError(f"{k} cannot be blank")

        if isinstance(col.type, String) and col.type.length and isinstance(val, str):
            if len(val) > col.type.length:
                raise ValidationFailedError(f"{k} exceeds max length {col.type.length}")

        patch[k] = val

    return patch


def _check_cents(patch: dict, field: str) -> None:
    if field in patch and patch[field] is not None:
        price = patch[field]
        if price < 0:
            raise ValidationFailedError(f"{field} must be >= 0")
        if price > MAX_PRICE_CENTS:
            raise ValidationFailedError(f"{field} cannot exceed {MAX_PRICE_CENTS}")


def _check_bps(patch: dict, field: str) -> None:
    if field in patch and patch[field] is not None:
        if not 0 <= patch[field] <= MAX_BPS:
            raise ValidationFailedError(f"{field} must be between 0 and {MAX_BPS}")


def enforce_rules_pricing(patch: dict, price_field: str) -> None:
    """
    Business rules that are not captured by SQLAlchemy metadata alone.
    Shared by products (selling_price_cents) and combos (offer_price_cents).
    """
    _check_cents(patch, price_field)
    _check_bps(patch, "tax_rate_bps")
    _check_bps(patch, "discount_bps")
    if "no_qty" in patch and patch["no_qty"] is not None and patch["no_qty"] < 1:
        raise ValidationFailedError("no_qty must be >= 1")


def json_body() -> dict:
    """Request JSON with camelCase keys converted to snake_case."""
    from flask import request

    payload = request.get_json(silent=True)
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ValidationFailedError("Invalid JSON payload")
    return snake_case_keys(payload)


def query_arg(name: str, default=None):
    """Query parameter by camelCase or snake_case name."""
    from flask import request

    value = request.args.get(name)
    if value is None:
        value = request.args.get(snake_case(name))
    return default if value is None else value
