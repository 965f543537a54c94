"""Pricing inputs and outputs.

The PricingContext is a read-only snapshot handed over by the rate/catalog
collaborator.  It is frozen so the engine cannot mutate it and so two
snapshots with the same values compare (and fingerprint) equal.
"""

import enum
from datetime import date, datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, model_validator


class RateTier(str, enum.Enum):
    HOURLY = "HOURLY"
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"
    PANEL_OVERRIDE = "PANEL_OVERRIDE"


class OccupantRole(str, enum.Enum):
    PRIMARY = "PRIMARY"
    ADDITIONAL = "ADDITIONAL"


# ── Line inputs ─────────────────────────────────────────────

class DateRange(BaseModel):
    model_config = ConfigDict(frozen=True)

    start: datetime
    end: datetime

    @model_validator(mode="after")
    def _ordered(self):
        if self.start >= self.end:
            raise ValueError("Date range start must be before end")
        return self


class Occupant(BaseModel):
    """A driver or custodian attached to a line."""
    model_config = ConfigDict(frozen=True)

    ref: str
    role: OccupantRole = OccupantRole.PRIMARY
    date_of_birth: date | None = None
    # Overrides the policy's additional-driver fee for this occupant
    additional_driver_fee: Decimal | None = Field(default=None, ge=0)


class AddOn(BaseModel):
    model_config = ConfigDict(frozen=True)

    code: str
    unit_price: Decimal = Field(ge=0)
    quantity: int = Field(default=1, ge=1)
    per_day: bool = False


# ── Context snapshot ────────────────────────────────────────

class RateTable(BaseModel):
    """Unit prices per tier.  None or zero means the tier is not offered."""
    model_config = ConfigDict(frozen=True)

    hourly: Decimal | None = None
    daily: Decimal | None = None
    weekly: Decimal | None = None
    monthly: Decimal | None = None
    # Largest quantity a tier may be billed at, e.g. {"MONTHLY": 3}
    quantity_caps: dict[RateTier, int] = Field(default_factory=dict)

    def rate_for(self, tier: RateTier) -> Decimal | None:
        rate = {
            RateTier.HOURLY: self.hourly,
            RateTier.DAILY: self.daily,
            RateTier.WEEKLY: self.weekly,
            RateTier.MONTHLY: self.monthly,
        }.get(tier)
        if rate is None or rate <= 0:
            return None
        return rate


class ManualQuantities(BaseModel):
    """Explicit per-unit quantities entered on the rate override panel."""
    model_config = ConfigDict(frozen=True)

    hourly: int = Field(default=0, ge=0)
    daily: int = Field(default=0, ge=0)
    weekly: int = Field(default=0, ge=0)
    monthly: int = Field(default=0, ge=0)

    @property
    def is_set(self) -> bool:
        return any((self.hourly, self.daily, self.weekly, self.monthly))

    def items(self) -> list[tuple[RateTier, int]]:
        return [
            (RateTier.MONTHLY, self.monthly),
            (RateTier.WEEKLY, self.weekly),
            (RateTier.DAILY, self.daily),
            (RateTier.HOURLY, self.hourly),
        ]


class PricingContext(BaseModel):
    model_config = ConfigDict(frozen=True)

    rate_table: RateTable = Field(default_factory=RateTable)
    promotion_code: str | None = None
    kilometer_allowance: int | None = Field(default=None, ge=0)
    kilometer_charge_rate: Decimal | None = Field(default=None, ge=0)
    manual_quantities: ManualQuantities | None = None


class PricingPolicy(BaseModel):
    """Program-wide fee and tax configuration."""
    model_config = ConfigDict(frozen=True)

    tax_rate: Decimal = Decimal("0.10")
    additional_driver_fee: Decimal = Decimal("15.00")
    underage_fee: Decimal = Decimal("20.00")
    minimum_driver_age: int = 25

    @classmethod
    def from_settings(cls) -> "PricingPolicy":
        from fleetwizard.config import settings

        return cls(
            tax_rate=settings.tax_rate,
            additional_driver_fee=settings.additional_driver_fee,
            underage_fee=settings.underage_fee,
            minimum_driver_age=settings.minimum_driver_age,
        )


# ── Output ──────────────────────────────────────────────────

class PricingResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    net_price: Decimal
    tax_amount: Decimal
    total: Decimal
    rate_tier_used: RateTier
    # Units billed at rate_tier_used; None for panel overrides (mixed units)
    quantity: int | None = None
    base_amount: Decimal
    discount_amount: Decimal = Decimal("0.00")
    driver_fees: Decimal = Decimal("0.00")
    underage_fees: Decimal = Decimal("0.00")
    addons_amount: Decimal = Decimal("0.00")
