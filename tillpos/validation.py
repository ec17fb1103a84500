"""
Canonical input schema for sale and stock operations.

One snake_case shape per operation; no camelCase or legacy aliases. The
service layer only ever sees the dataclasses produced here.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from .errors import ValidationError


# Maximum money amount: 9,999,999.99 (999,999,999 cents)
MAX_AMOUNT_CENTS = 999_999_999


@dataclass(frozen=True)
class SaleLineInput:
    product_id: str
    quantity: int
    price_cents: int
    is_service: bool = False
    name: str | None = None

    @property
    def line_total_cents(self) -> int:
        return self.quantity * self.price_cents


@dataclass(frozen=True)
class SaleHeaderInput:
    """Header fields; None means "not supplied" (computed or left unchanged)."""
    subtotal_cents: int | None = None
    vat_cents: int | None = None
    total_cents: int | None = None
    delivery_fee_cents: int | None = None
    customer_id: str | None = None
    payment_method: str | None = None
    particulars: str | None = None


def parse_int(value: Any, field: str, *, minimum: int | None = None, code: str | None = None) -> int:
    """
    Strict integer coercion: accepts ints and plain-digit strings, rejects
    bools, floats, decimals and scientific notation.
    """
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be an integer", code=code, details={field: value})
    if isinstance(value, int):
        result = value
    elif isinstance(value, str):
        stripped = value.strip()
        if not stripped or "e" in stripped.lower() or "." in stripped:
            raise ValidationError(f"{field} must be a plain integer", code=code, details={field: value})
        try:
            result = int(stripped)
        except ValueError:
            raise ValidationError(f"{field} must be an integer", code=code, details={field: value})
    else:
        raise ValidationError(f"{field} must be an integer", code=code, details={field: value})

    if minimum is not None and result < minimum:
        raise ValidationError(f"{field} must be >= {minimum}", code=code, details={field: value})
    return result


def parse_optional_int(payload: dict, field: str, *, minimum: int | None = 0) -> int | None:
    value = payload.get(field)
    if value is None:
        return None
    result = parse_int(value, field, minimum=minimum)
    if result > MAX_AMOUNT_CENTS:
        raise ValidationError(f"{field} exceeds maximum", details={field: value})
    return result


def parse_bool(value: Any, field: str) -> bool:
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if value in (0, 1):
        return bool(value)
    raise ValidationError(f"{field} must be a boolean", details={field: value})


def _optional_str(value: Any, field: str, max_length: int) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    if len(text) > max_length:
        raise ValidationError(f"{field} must be at most {max_length} characters", details={field: value})
    return text


def parse_sale_line(raw: Any) -> SaleLineInput:
    """Validate one sale line. Raises ValidationError naming the bad field."""
    if not isinstance(raw, dict):
        raise ValidationError("item must be an object")

    product_id = _optional_str(raw.get("product_id"), "product_id", 64)
    if product_id is None:
        raise ValidationError("product_id is required", details={"product_id": raw.get("product_id")})

    if raw.get("quantity") is None:
        raise ValidationError("quantity is required", code="INVALID_QUANTITY")
    quantity = parse_int(raw.get("quantity"), "quantity", minimum=1, code="INVALID_QUANTITY")

    if raw.get("price_cents") is None:
        raise ValidationError("price_cents is required")
    price_cents = parse_int(raw.get("price_cents"), "price_cents", minimum=0)
    if price_cents > MAX_AMOUNT_CENTS:
        raise ValidationError("price_cents exceeds maximum", details={"price_cents": price_cents})

    return SaleLineInput(
        product_id=product_id,
        quantity=quantity,
        price_cents=price_cents,
        is_service=parse_bool(raw.get("is_service"), "is_service"),
        name=_optional_str(raw.get("name"), "name", 255),
    )


def parse_sale_lines(raw_items: Any) -> list[SaleLineInput]:
    """All-or-nothing: the first invalid line rejects the whole list."""
    if not isinstance(raw_items, list) or not raw_items:
        raise ValidationError("items must be a non-empty list")
    lines = []
    for index, raw in enumerate(raw_items):
        try:
            lines.append(parse_sale_line(raw))
        except ValidationError as e:
            e.details = {**e.details, "index": index}
            raise
    return lines


def partition_sale_lines(raw_items: Any) -> tuple[list[tuple[int, SaleLineInput]], list[dict]]:
    """
    Batch-shaped validation: returns (valid, rejected) where valid holds
    (index, line) pairs and rejected holds one dict per bad line with its
    index, id, reason and the values attempted.
    """
    if not isinstance(raw_items, list):
        raise ValidationError("items must be a list")
    valid = []
    rejected = []
    for index, raw in enumerate(raw_items):
        try:
            valid.append((index, parse_sale_line(raw)))
        except ValidationError as e:
            rejected.append({
                "index": index,
                "product_id": raw.get("product_id") if isinstance(raw, dict) else None,
                "reason": str(e),
                "code": e.code,
                "values": raw if isinstance(raw, dict) else None,
            })
    return valid, rejected


def parse_sale_header(payload: dict) -> SaleHeaderInput:
    return SaleHeaderInput(
        subtotal_cents=parse_optional_int(payload, "subtotal_cents"),
        vat_cents=parse_optional_int(payload, "vat_cents"),
        total_cents=parse_optional_int(payload, "total_cents"),
        delivery_fee_cents=parse_optional_int(payload, "delivery_fee_cents"),
        customer_id=_optional_str(payload.get("customer_id"), "customer_id", 64),
        payment_method=_optional_str(payload.get("payment_method"), "payment_method", 32),
        particulars=_optional_str(payload.get("particulars"), "particulars", 4000),
    )
