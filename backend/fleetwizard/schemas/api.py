"""Request / response bodies for the wizard HTTP surface."""

from typing import Literal

from pydantic import BaseModel, Field

from fleetwizard.schemas.pricing import PricingContext
from fleetwizard.schemas.wizard import (
    BulkOperation,
    SessionSummary,
    StalenessReport,
    WizardProgress,
    WizardSession,
)


class CreateSessionRequest(BaseModel):
    flow: str = "reservation"
    # Pass an existing id to resume its draft (falls back to a fresh session)
    session_id: str | None = None
    pricing_context: PricingContext | None = None


class SessionView(BaseModel):
    session: WizardSession
    progress: WizardProgress
    summary: SessionSummary
    staleness: StalenessReport


class StepResponse(BaseModel):
    ok: bool
    current_step: int
    step_id: str
    errors: dict[str, str] = Field(default_factory=dict)
    warnings: dict[str, str] = Field(default_factory=dict)


class BulkApplyRequest(BaseModel):
    line_ids: list[str]
    operation: BulkOperation


class BulkApplyResponse(BaseModel):
    succeeded: list[str]
    failed: dict[str, str]


class SubmitResponse(BaseModel):
    outcome: Literal["committed", "failed", "validation_failed"]
    transaction_id: str | None = None
    idempotency_key: str | None = None
    replayed: bool = False
    reason: str | None = None
    retryable: bool | None = None
    step: int | None = None
    step_id: str | None = None
    errors: dict[str, str] = Field(default_factory=dict)
