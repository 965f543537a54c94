"""Line pricing engine.

price_line() is a pure function of its arguments: no clock, no I/O, no
mutation of the context.  The staleness check relies on that: two calls
with the same inputs produce equal results.

Tier selection:
  1. Manual quantities on the context (override panel) win outright and
     are billed unit-by-unit; the tier is tagged PANEL_OVERRIDE.
  2. Otherwise the span is measured in whole hours (partial hours round up)
     and the coarsest offered tier that divides it exactly, within that
     tier's quantity cap, is used (MONTHLY → WEEKLY → DAILY → HOURLY).
  3. With no exact fit the span is billed hourly; if the table has no
     hourly rate, the finest offered tier is billed with the quantity
     rounded up.

Composition:
  base      = quantity × unit rate
  discount  = base × line discount %
  net       = base − discount + add-ons + additional-driver fees + underage fees
  tax       = net × policy.tax_rate
  total     = net + tax
All money is Decimal, rounded half-up to cents at each component.
"""

import math
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable

from fleetwizard.middleware.exceptions import PricingError
from fleetwizard.schemas.pricing import (
    AddOn,
    DateRange,
    Occupant,
    OccupantRole,
    PricingContext,
    PricingPolicy,
    PricingResult,
    RateTier,
)

CENT = Decimal("0.01")
HUNDRED = Decimal("100")

TIER_HOURS: dict[RateTier, int] = {
    RateTier.HOURLY: 1,
    RateTier.DAILY: 24,
    RateTier.WEEKLY: 24 * 7,
    RateTier.MONTHLY: 24 * 30,
}

# Coarsest first
TIER_ORDER = (RateTier.MONTHLY, RateTier.WEEKLY, RateTier.DAILY, RateTier.HOURLY)


def _money(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def span_hours(date_range: DateRange) -> int:
    """Whole hours covered by the range; a started hour counts."""
    seconds = (date_range.end - date_range.start).total_seconds()
    return max(1, math.ceil(seconds / 3600))


def billable_days(date_range: DateRange) -> int:
    return max(1, math.ceil(span_hours(date_range) / 24))


def age_on(date_of_birth: date, on: date) -> int:
    """Age in completed years at the given date."""
    had_birthday = (on.month, on.day) >= (date_of_birth.month, date_of_birth.day)
    return on.year - date_of_birth.year - (0 if had_birthday else 1)


# ── Tier selection ──────────────────────────────────────────

def select_tier(
    date_range: DateRange, context: PricingContext
) -> tuple[RateTier, int | None, Decimal]:
    """Return (tier, quantity, base amount) for the range."""
    table = context.rate_table
    manual = context.manual_quantities

    if manual is not None and manual.is_set:
        base = Decimal("0")
        for tier, qty in manual.items():
            if not qty:
                continue
            rate = table.rate_for(tier)
            if rate is None:
                raise PricingError(
                    f"Override quantity given for {tier.value} but no {tier.value.lower()} rate"
                )
            base += rate * qty
        return RateTier.PANEL_OVERRIDE, None, base

    hours = span_hours(date_range)

    for tier in TIER_ORDER:
        rate = table.rate_for(tier)
        if rate is None:
            continue
        unit = TIER_HOURS[tier]
        if hours % unit:
            continue
        qty = hours // unit
        cap = table.quantity_caps.get(tier)
        if cap is not None and qty > cap:
            continue
        return tier, qty, rate * qty

    hourly = table.rate_for(RateTier.HOURLY)
    if hourly is not None:
        return RateTier.HOURLY, hours, hourly * hours

    for tier in reversed(TIER_ORDER):
        rate = table.rate_for(tier)
        if rate is not None:
            qty = math.ceil(hours / TIER_HOURS[tier])
            return tier, qty, rate * qty

    raise PricingError("Rate table has no unit prices")


# ── Fees ────────────────────────────────────────────────────

def additional_driver_fees(
    occupants: Iterable[Occupant], policy: PricingPolicy
) -> Decimal:
    total = Decimal("0")
    for occupant in occupants:
        if occupant.role is not OccupantRole.ADDITIONAL:
            continue
        fee = occupant.additional_driver_fee
        total += policy.additional_driver_fee if fee is None else fee
    return total


def underage_fees(
    occupants: Iterable[Occupant], policy: PricingPolicy, on: date
) -> Decimal:
    total = Decimal("0")
    for occupant in occupants:
        if occupant.date_of_birth is None:
            continue
        if age_on(occupant.date_of_birth, on) < policy.minimum_driver_age:
            total += policy.underage_fee
    return total


def addons_amount(addons: Iterable[AddOn], date_range: DateRange) -> Decimal:
    days = billable_days(date_range)
    total = Decimal("0")
    for addon in addons:
        amount = addon.unit_price * addon.quantity
        if addon.per_day:
            amount *= days
        total += amount
    return total


# ── Entry point ─────────────────────────────────────────────

def price_line(
    date_range: DateRange,
    context: PricingContext,
    occupants: Iterable[Occupant] = (),
    *,
    addons: Iterable[AddOn] = (),
    discount_percent: Decimal = Decimal("0"),
    policy: PricingPolicy | None = None,
) -> PricingResult:
    policy = policy or PricingPolicy()
    occupants = tuple(occupants)

    tier, quantity, base = select_tier(date_range, context)
    base = _money(base)
    discount = _money(base * Decimal(discount_percent) / HUNDRED)
    drivers = _money(additional_driver_fees(occupants, policy))
    underage = _money(underage_fees(occupants, policy, date_range.start.date()))
    extras = _money(addons_amount(addons, date_range))

    net = base - discount + extras + drivers + underage
    tax = _money(net * policy.tax_rate)

    return PricingResult(
        net_price=net,
        tax_amount=tax,
        total=net + tax,
        rate_tier_used=tier,
        quantity=quantity,
        base_amount=base,
        discount_amount=discount,
        driver_fees=drivers,
        underage_fees=underage,
        addons_amount=extras,
    )
