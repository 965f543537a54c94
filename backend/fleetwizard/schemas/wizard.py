"""Pydantic schemas for wizard sessions and their lines.

A WizardSession is the whole recoverable state of one transaction-creation
flow; it is what the draft store serializes.  Lines are embedded so a draft
restores with its priced lines intact.
"""

import enum
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, Field

from fleetwizard.schemas.pricing import (
    AddOn,
    DateRange,
    Occupant,
    PricingContext,
    RateTier,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_provisional_id() -> str:
    """Identity used before the backing store assigns a transaction id."""
    return f"draft-{uuid.uuid4()}"


class WizardStatus(str, enum.Enum):
    EDITING = "EDITING"
    SUBMITTING = "SUBMITTING"
    COMMITTED = "COMMITTED"
    FAILED = "FAILED"


# ── Lines ───────────────────────────────────────────────────

class LineItem(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    line_no: int = Field(ge=1)
    subject_ref: str | None = None
    occupant_refs: list[Occupant] = Field(default_factory=list)
    date_range: DateRange
    addons: list[AddOn] = Field(default_factory=list)
    discount_percent: Decimal = Field(default=Decimal("0"), ge=0, le=100)

    # Computed by the pricing engine
    net_price: Decimal
    tax_amount: Decimal
    total: Decimal
    rate_tier_used: RateTier
    quantity: int | None = None
    pricing_fingerprint: str


class LinePrefill(BaseModel):
    """Editor state used to create a line.  Fields are optional so the
    controller can report exactly which ones are missing."""
    subject_ref: str | None = None
    occupant_refs: list[Occupant] = Field(default_factory=list)
    start: datetime | None = None
    end: datetime | None = None
    addons: list[AddOn] = Field(default_factory=list)
    discount_percent: Decimal = Field(default=Decimal("0"), ge=0, le=100)


class LineUpdate(BaseModel):
    """Partial line update; only fields explicitly set are applied."""
    subject_ref: str | None = None
    occupant_refs: list[Occupant] | None = None
    start: datetime | None = None
    end: datetime | None = None
    addons: list[AddOn] | None = None
    discount_percent: Decimal | None = Field(default=None, ge=0, le=100)


# ── Session ─────────────────────────────────────────────────

class WizardSession(BaseModel):
    id: str = Field(default_factory=new_provisional_id)
    # fresh per created session; a reused id never reuses its keys
    nonce: str = Field(default_factory=lambda: uuid.uuid4().hex)
    flow: str
    current_step: int = Field(default=1, ge=1)
    # step id → that step's payload
    step_data: dict[str, dict[str, Any]] = Field(default_factory=dict)
    # step id → {field: message}, as last reported by the validation gate
    step_errors: dict[str, dict[str, str]] = Field(default_factory=dict)
    completed_steps: list[int] = Field(default_factory=list)
    visited_steps: list[int] = Field(default_factory=lambda: [1])
    lines: list[LineItem] = Field(default_factory=list)
    pricing_context: PricingContext = Field(default_factory=PricingContext)
    reprice_recommended: bool = False

    status: WizardStatus = WizardStatus.EDITING
    submission_attempt: int = Field(default=0, ge=0)
    idempotency_key: str | None = None
    transaction_id: str | None = None
    last_error: str | None = None

    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class DraftEnvelope(BaseModel):
    """Versioned wrapper persisted by every draft store backend."""
    session_id: str
    schema_version: int
    saved_at: datetime = Field(default_factory=_utcnow)
    state: WizardSession


# ── Progress / summary views ────────────────────────────────

class WizardProgress(BaseModel):
    current_step: int
    step_id: str
    total_steps: int
    completed: int
    visited: int
    percentage: int
    has_errors: bool
    is_complete: bool


class SessionSummary(BaseModel):
    line_count: int
    net_total: Decimal
    tax_total: Decimal
    grand_total: Decimal


class StalenessReport(BaseModel):
    reprice_recommended: bool
    stale_line_ids: list[str]
    context_fingerprint: str


# ── Bulk line operations ────────────────────────────────────

class BulkOperationKind(str, enum.Enum):
    REMOVE = "remove"
    DUPLICATE = "duplicate"
    UPDATE = "update"
    APPLY_DISCOUNT = "apply_discount"


class BulkOperation(BaseModel):
    kind: BulkOperationKind
    update: LineUpdate | None = None
    discount_percent: Decimal | None = Field(default=None, ge=0, le=100)
