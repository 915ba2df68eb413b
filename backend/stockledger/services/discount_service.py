# Overview: Turns order-level discount references into concrete amounts.

from __future__ import annotations

from collections import namedtuple
from datetime import datetime

from ..errors import ValidationError
from ..models import Discount
from ..models.orders import DISCOUNT_FIXED, DISCOUNT_PERCENTAGE
from .tenant_service import TenantScope
"""
Discount rules

- A reference is {discount_id?, kind, value}. With a discount_id, kind and value
  come from the stored Discount, which must be active and inside its
  validity window at `now`.
- percentage: value in basis points (0..10000) of the pre-discount subtotal,
  rounded half-up to the cent.
- fixed: value in cents.
- The running total is capped at `cap_cents`, so the order total never goes negative.
- Scope (all/selected) eligibility is resolved upstream and not re-derived here.
"""


ResolvedDiscount = namedtuple("ResolvedDiscount", ["discount_id", "kind", "value", "amount_cents"])

BASIS_POINTS = 10000


def _percentage_of(subtotal_cents: int, bps: int) -> int:
    return (subtotal_cents * bps + BASIS_POINTS // 2) // BASIS_POINTS


def _validate_value(kind: str, value, index: int) -> int:
    if kind not in (DISCOUNT_PERCENTAGE, DISCOUNT_FIXED):
        raise ValidationError(
            "Unknown discount kind",
            {"index": index, "kind": kind, "allowed": [DISCOUNT_PERCENTAGE, DISCOUNT_FIXED]},
        )
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValidationError("discount value must be a non-negative integer", {"index": index, "value": value})
    if kind == DISCOUNT_PERCENTAGE and value > BASIS_POINTS:
        raise ValidationError("percentage discount exceeds 100%", {"index": index, "value": value})
    return value


def _stored_discount(scope: TenantScope, discount_id: int, now: datetime, index: int) -> Discount:
    discount = scope.get(Discount, discount_id)
    if not discount.is_active:
        raise ValidationError("Discount is not active", {"index": index, "discount_id": discount.id})
    if now < discount.start_date or now > discount.end_date:
        raise ValidationError(
            "Discount is outside its validity window",
            {"index": index, "discount_id": discount.id},
        )
    return discount


def resolve_discounts(
    scope: TenantScope,
    references,
    *,
    subtotal_cents: int,
    cap_cents: int,
    now: datetime,
) -> tuple[list[ResolvedDiscount], int]:
    """
    Resolve references in order; returns (resolved list, total amount).

    Runs inside the caller's transaction.
    """
    resolved = []
    total = 0
    for index, ref in enumerate(references or []):
        discount_id = ref.get("discount_id")
        if discount_id is not None:
            stored = _stored_discount(scope, discount_id, now, index)
            kind, value = stored.discount_type, stored.discount_value
        else:
            kind, value = ref.get("kind"), ref.get("value")
        value = _validate_value(kind, value, index)

        if kind == DISCOUNT_PERCENTAGE:
            amount = _percentage_of(subtotal_cents, value)
        else:
            amount = value
        amount = min(amount, max(cap_cents - total, 0))

        resolved.append(ResolvedDiscount(discount_id, kind, value, amount))
        total += amount
    return resolved, total
