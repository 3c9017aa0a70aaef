"""Dynamic credit pricing.

The unit price is the base price scaled by independent multiplicative
factors. All arithmetic is done in ``Decimal`` and rounded half-up to cents,
so that a unit price of 28.875 is quoted as 28.88 rather than the 28.87 a
binary float would produce. The total is rounded separately from the rounded
unit price.
"""

import datetime
import math
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Callable, Mapping

import pandas as pd
from pydantic import BaseModel

from h2_registry.core.models.base import utc_datetime_now
from h2_registry.credit.schemas import CreditRead
from h2_registry.settings import settings

CENT = Decimal("0.01")
MULTIPLIER_PRECISION = Decimal("0.0001")

LARGE_VOLUME_THRESHOLD = Decimal("100")
LARGE_VOLUME_MULTIPLIER = Decimal("0.90")
MEDIUM_VOLUME_THRESHOLD = Decimal("50")
MEDIUM_VOLUME_MULTIPLIER = Decimal("0.95")

BLOCKCHAIN_PREMIUM_MULTIPLIER = Decimal("1.10")

FRESH_CREDIT_MAX_DAYS = 7
FRESH_CREDIT_MULTIPLIER = Decimal("1.05")
STALE_CREDIT_MIN_DAYS = 30
STALE_CREDIT_MULTIPLIER = Decimal("0.95")

PRODUCTION_METHOD_MULTIPLIERS: dict[str, Decimal] = {
    "solar": Decimal("1.08"),
    "wind": Decimal("1.06"),
    "hydro": Decimal("1.04"),
}

SECONDS_PER_DAY = 60 * 60 * 24


class PricingFactors(BaseModel):
    base_price: float
    price_multiplier: float
    volume_discount: bool
    volume_multiplier: float
    blockchain_premium: bool
    age_days: float | None
    age_multiplier: float
    production_method: str
    production_method_multiplier: float


class PricingResult(BaseModel):
    unit_price: float
    total_price: float
    volume: float
    factors: PricingFactors


def round_half_up(value: Decimal, exponent: Decimal = CENT) -> Decimal:
    return value.quantize(exponent, rounding=ROUND_HALF_UP)


def parse_volume(raw_volume: Any) -> Decimal:
    """Coerce a stored volume to a Decimal, treating anything unusable as 0."""
    if raw_volume is None or isinstance(raw_volume, bool):
        return Decimal("0")
    try:
        volume = float(raw_volume)
    except (TypeError, ValueError):
        return Decimal("0")
    if not math.isfinite(volume):
        return Decimal("0")
    return Decimal(str(volume))


def volume_multiplier(volume: Decimal) -> Decimal:
    # Exclusive thresholds, only the highest matching tier applies
    if volume > LARGE_VOLUME_THRESHOLD:
        return LARGE_VOLUME_MULTIPLIER
    if volume > MEDIUM_VOLUME_THRESHOLD:
        return MEDIUM_VOLUME_MULTIPLIER
    return Decimal("1")


def age_in_days(
    created_at: datetime.datetime | str | None, now: datetime.datetime
) -> float | None:
    if created_at is None or created_at == "":
        return None
    try:
        created = pd.to_datetime(created_at, utc=True)
    except (ValueError, TypeError):
        return None
    if pd.isna(created):
        return None
    now_ts = pd.Timestamp(now)
    if now_ts.tzinfo is None:
        now_ts = now_ts.tz_localize("UTC")
    return (now_ts - created).total_seconds() / SECONDS_PER_DAY


def age_multiplier(days: float | None) -> Decimal:
    if days is None:
        return Decimal("1")
    if days < FRESH_CREDIT_MAX_DAYS:
        return FRESH_CREDIT_MULTIPLIER
    if days > STALE_CREDIT_MIN_DAYS:
        return STALE_CREDIT_MULTIPLIER
    return Decimal("1")


def production_method_of(production_method: Any, metadata: Mapping[str, Any] | None) -> str:
    method = production_method or (metadata or {}).get("productionMethod") or ""
    return str(method).strip().lower()


class PricingCalculator:
    """Prices a credit from its volume, verification status, age and
    production method. ``clock`` returns the current UTC time and may be
    replaced for deterministic pricing."""

    def __init__(
        self,
        base_price: float | None = None,
        clock: Callable[[], datetime.datetime] = utc_datetime_now,
    ):
        self.base_price = Decimal(
            str(settings.CREDIT_BASE_PRICE if base_price is None else base_price)
        )
        self.clock = clock

    def calculate_price(self, credit: CreditRead | Mapping[str, Any]) -> PricingResult:
        if isinstance(credit, Mapping):
            fields: Mapping[str, Any] = credit
        else:
            fields = credit.model_dump()

        volume = parse_volume(fields.get("volume"))
        metadata = fields.get("metadata") or fields.get("credit_metadata") or {}

        volume_factor = volume_multiplier(volume)
        is_verified = bool(fields.get("blockchain_reference"))
        blockchain_factor = BLOCKCHAIN_PREMIUM_MULTIPLIER if is_verified else Decimal("1")
        days = age_in_days(fields.get("created_at"), self.clock())
        age_factor = age_multiplier(days)
        method = production_method_of(fields.get("production_method"), metadata)
        method_factor = PRODUCTION_METHOD_MULTIPLIERS.get(method, Decimal("1"))

        multiplier = volume_factor * blockchain_factor * age_factor * method_factor
        unit_price = round_half_up(self.base_price * multiplier)
        total_price = round_half_up(unit_price * volume)

        return PricingResult(
            unit_price=float(unit_price),
            total_price=float(total_price),
            volume=float(volume),
            factors=PricingFactors(
                base_price=float(self.base_price),
                price_multiplier=float(round_half_up(multiplier, MULTIPLIER_PRECISION)),
                volume_discount=volume_factor != Decimal("1"),
                volume_multiplier=float(volume_factor),
                blockchain_premium=is_verified,
                age_days=days,
                age_multiplier=float(age_factor),
                production_method=method,
                production_method_multiplier=float(method_factor),
            ),
        )
