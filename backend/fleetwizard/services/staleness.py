"""Structural fingerprints for pricing inputs and stale-line detection.

A line remembers the fingerprint of the context it was priced under.
When the context changes, lines whose fingerprint no longer matches are
reported as stale; their totals are left alone until an explicit reprice.

Numbers are compared by value: Decimal("50") and Decimal("50.00")
fingerprint identically.  There is no tolerance beyond that.
"""

import enum
import hashlib
import json
from decimal import Decimal
from typing import Any, Iterable

from fleetwizard.schemas.pricing import PricingContext, PricingPolicy
from fleetwizard.schemas.wizard import LineItem


def _canonical(value: Any) -> Any:
    if isinstance(value, Decimal):
        return format(value.normalize(), "f")
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, dict):
        return {str(_canonical(k)): _canonical(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_canonical(v) for v in value]
    if isinstance(value, float):
        return format(Decimal(repr(value)).normalize(), "f")
    return value


def context_fingerprint(context: PricingContext, policy: PricingPolicy) -> str:
    """Deterministic hash of everything that feeds price_line() besides the
    line's own fields."""
    key_data = {
        "context": _canonical(context.model_dump()),
        "policy": _canonical(policy.model_dump()),
    }
    key_str = json.dumps(key_data, sort_keys=True)
    return hashlib.sha256(key_str.encode()).hexdigest()


def stale_lines(lines: Iterable[LineItem], fingerprint: str) -> list[LineItem]:
    return [line for line in lines if line.pricing_fingerprint != fingerprint]
