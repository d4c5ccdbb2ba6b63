"""Shared service utilities: UUID coercion, time, money, public ids."""
from __future__ import annotations

import secrets
import uuid
from datetime import UTC, datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from dateutil.relativedelta import relativedelta

from harbor_billing.models.billing import BillingCycle

CENT = Decimal("0.01")


def coerce_uuid(value: Any) -> uuid.UUID | None:
    """Convert a string or UUID to UUID, or return None."""
    if value is None:
        return None
    if isinstance(value, uuid.UUID):
        return value
    return uuid.UUID(str(value))


def utcnow() -> datetime:
    return datetime.now(UTC)


def as_utc(dt: datetime | None) -> datetime | None:
    """Ensure datetime is timezone-aware (UTC). SQLite doesn't preserve tz info."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt


def to_money(value: Any) -> Decimal:
    """Round to cents, half-up."""
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def advance_billing_date(start: datetime, cycle: BillingCycle | str) -> datetime:
    """Move a billing date forward by one calendar month or year."""
    if BillingCycle(cycle) == BillingCycle.yearly:
        return start + relativedelta(years=1)
    return start + relativedelta(months=1)


def generate_public_id(prefix: str) -> str:
    return f"{prefix}_{secrets.token_hex(12)}"
