"""Wizard sessions: step navigation, line editing, repricing and submit.

Endpoints (all under /api/wizard/sessions):
  POST   /                          → start (or resume) a session
  GET    /{id}                      → session + progress + totals
  DELETE /{id}                      → cancel and discard the draft
  POST   /{id}/advance              → validate current step, move forward
  POST   /{id}/retreat              → move back one step
  POST   /{id}/jump/{step}          → go to a reachable step
  PATCH  /{id}/steps/{step_id}      → merge partial step data
  POST   /{id}/lines                → add a line from prefill
  PATCH  /{id}/lines/{line_id}      → edit a line (reprices when needed)
  DELETE /{id}/lines/{line_id}      → remove a line
  POST   /{id}/lines/{line_id}/duplicate
  POST   /{id}/lines/bulk           → one operation over many lines
  PUT    /{id}/pricing-context      → swap pricing snapshot, report staleness
  POST   /{id}/reprice              → recompute all lines
  POST   /{id}/submit               → commit once

Design:
  - The draft store is the source of truth between requests; each request
    resumes a controller from it.
  - Mutations of one session run one at a time within the process
    (SessionLocks); a mutation arriving while a commit is in flight is
    refused with SessionLocked instead of waiting for it.
  - Validation and commit failures are outcomes, returned with 200.
    Refusals (locked session, unknown line, incomplete prefill) are
    raised and rendered by the exception handlers.
"""

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from fastapi import APIRouter, Body, Depends, status

from fleetwizard.deps import SessionLocks, get_coordinator, get_draft_store, get_session_locks
from fleetwizard.middleware.exceptions import AlreadySubmitting, SessionLocked
from fleetwizard.schemas.api import (
    BulkApplyRequest,
    BulkApplyResponse,
    CreateSessionRequest,
    SessionView,
    StepResponse,
    SubmitResponse,
)
from fleetwizard.schemas.pricing import PricingContext
from fleetwizard.schemas.wizard import LineItem, LinePrefill, LineUpdate, StalenessReport, WizardStatus
from fleetwizard.services.controller import WizardController
from fleetwizard.services.drafts import DraftStore
from fleetwizard.services.flows import get_flow
from fleetwizard.services.outcomes import Committed, Failed, Transition
from fleetwizard.services.submission import SubmissionCoordinator

router = APIRouter()


# ── Helpers ──────────────────────────────────────────────────

async def _load(
    session_id: str,
    store: DraftStore,
    coordinator: SubmissionCoordinator,
) -> WizardController:
    return await WizardController.resume(
        session_id, store, in_flight=coordinator.is_submitting(session_id)
    )


@asynccontextmanager
async def _editing(
    session_id: str,
    store: DraftStore,
    coordinator: SubmissionCoordinator,
    locks: SessionLocks,
) -> AsyncIterator[WizardController]:
    if coordinator.is_submitting(session_id):
        raise SessionLocked(WizardStatus.SUBMITTING.value)
    async with locks.get(session_id):
        yield await _load(session_id, store, coordinator)


def _view(wizard: WizardController) -> SessionView:
    return SessionView(
        session=wizard.session,
        progress=wizard.progress(),
        summary=wizard.summary(),
        staleness=wizard.staleness(),
    )


def _step_response(outcome) -> StepResponse:
    if isinstance(outcome, Transition):
        return StepResponse(
            ok=True,
            current_step=outcome.current_step,
            step_id=outcome.step_id,
            warnings=outcome.warnings,
        )
    return StepResponse(
        ok=False,
        current_step=outcome.step,
        step_id=outcome.step_id,
        errors=outcome.errors,
        warnings=outcome.warnings,
    )


# ── Session lifecycle ────────────────────────────────────────

@router.post("/", response_model=SessionView, status_code=status.HTTP_201_CREATED)
async def create_session(
    body: CreateSessionRequest,
    store: DraftStore = Depends(get_draft_store),
):
    """Start a session, or restore its draft when `session_id` names one."""
    wizard = await WizardController.start(
        get_flow(body.flow),
        store,
        session_id=body.session_id,
        pricing_context=body.pricing_context,
    )
    return _view(wizard)


@router.get("/{session_id}", response_model=SessionView)
async def get_session(
    session_id: str,
    store: DraftStore = Depends(get_draft_store),
    coordinator: SubmissionCoordinator = Depends(get_coordinator),
):
    wizard = await _load(session_id, store, coordinator)
    return _view(wizard)


@router.delete("/{session_id}", status_code=status.HTTP_204_NO_CONTENT)
async def cancel_session(
    session_id: str,
    store: DraftStore = Depends(get_draft_store),
    coordinator: SubmissionCoordinator = Depends(get_coordinator),
    locks: SessionLocks = Depends(get_session_locks),
):
    async with _editing(session_id, store, coordinator, locks) as wizard:
        await wizard.cancel()


# ── Navigation ───────────────────────────────────────────────

@router.post("/{session_id}/advance", response_model=StepResponse)
async def advance(
    session_id: str,
    store: DraftStore = Depends(get_draft_store),
    coordinator: SubmissionCoordinator = Depends(get_coordinator),
    locks: SessionLocks = Depends(get_session_locks),
):
    async with _editing(session_id, store, coordinator, locks) as wizard:
        return _step_response(await wizard.advance())


@router.post("/{session_id}/retreat", response_model=StepResponse)
async def retreat(
    session_id: str,
    store: DraftStore = Depends(get_draft_store),
    coordinator: SubmissionCoordinator = Depends(get_coordinator),
    locks: SessionLocks = Depends(get_session_locks),
):
    async with _editing(session_id, store, coordinator, locks) as wizard:
        return _step_response(await wizard.retreat())


@router.post("/{session_id}/jump/{step}", response_model=StepResponse)
async def jump(
    session_id: str,
    step: int,
    store: DraftStore = Depends(get_draft_store),
    coordinator: SubmissionCoordinator = Depends(get_coordinator),
    locks: SessionLocks = Depends(get_session_locks),
):
    async with _editing(session_id, store, coordinator, locks) as wizard:
        return _step_response(await wizard.jump_to(step))


@router.patch("/{session_id}/steps/{step_id}")
async def update_step(
    session_id: str,
    step_id: str,
    body: dict[str, Any] = Body(...),
    store: DraftStore = Depends(get_draft_store),
    coordinator: SubmissionCoordinator = Depends(get_coordinator),
    locks: SessionLocks = Depends(get_session_locks),
):
    """Merge `body` into the step's data; returns the merged payload."""
    async with _editing(session_id, store, coordinator, locks) as wizard:
        return await wizard.update_step(step_id, body)


# ── Lines ────────────────────────────────────────────────────

@router.post("/{session_id}/lines", response_model=LineItem, status_code=status.HTTP_201_CREATED)
async def add_line(
    session_id: str,
    body: LinePrefill,
    store: DraftStore = Depends(get_draft_store),
    coordinator: SubmissionCoordinator = Depends(get_coordinator),
    locks: SessionLocks = Depends(get_session_locks),
):
    async with _editing(session_id, store, coordinator, locks) as wizard:
        return await wizard.add_line(body)


@router.post("/{session_id}/lines/bulk", response_model=BulkApplyResponse)
async def bulk_apply(
    session_id: str,
    body: BulkApplyRequest,
    store: DraftStore = Depends(get_draft_store),
    coordinator: SubmissionCoordinator = Depends(get_coordinator),
    locks: SessionLocks = Depends(get_session_locks),
):
    async with _editing(session_id, store, coordinator, locks) as wizard:
        result = await wizard.bulk_apply(body.line_ids, body.operation)
    return BulkApplyResponse(succeeded=result.succeeded, failed=result.failed)


@router.patch("/{session_id}/lines/{line_id}", response_model=LineItem)
async def update_line(
    session_id: str,
    line_id: str,
    body: LineUpdate,
    store: DraftStore = Depends(get_draft_store),
    coordinator: SubmissionCoordinator = Depends(get_coordinator),
    locks: SessionLocks = Depends(get_session_locks),
):
    async with _editing(session_id, store, coordinator, locks) as wizard:
        return await wizard.update_line(line_id, body)


@router.delete("/{session_id}/lines/{line_id}", response_model=SessionView)
async def remove_line(
    session_id: str,
    line_id: str,
    store: DraftStore = Depends(get_draft_store),
    coordinator: SubmissionCoordinator = Depends(get_coordinator),
    locks: SessionLocks = Depends(get_session_locks),
):
    async with _editing(session_id, store, coordinator, locks) as wizard:
        await wizard.remove_line(line_id)
    return _view(wizard)


@router.post(
    "/{session_id}/lines/{line_id}/duplicate",
    response_model=LineItem,
    status_code=status.HTTP_201_CREATED,
)
async def duplicate_line(
    session_id: str,
    line_id: str,
    store: DraftStore = Depends(get_draft_store),
    coordinator: SubmissionCoordinator = Depends(get_coordinator),
    locks: SessionLocks = Depends(get_session_locks),
):
    async with _editing(session_id, store, coordinator, locks) as wizard:
        return await wizard.duplicate_line(line_id)


# ── Pricing ──────────────────────────────────────────────────

@router.put("/{session_id}/pricing-context", response_model=StalenessReport)
async def change_pricing_context(
    session_id: str,
    body: PricingContext,
    store: DraftStore = Depends(get_draft_store),
    coordinator: SubmissionCoordinator = Depends(get_coordinator),
    locks: SessionLocks = Depends(get_session_locks),
):
    """Line totals are left as they are; the report says which are stale."""
    async with _editing(session_id, store, coordinator, locks) as wizard:
        return await wizard.on_context_change(body)


@router.post("/{session_id}/reprice", response_model=SessionView)
async def reprice(
    session_id: str,
    store: DraftStore = Depends(get_draft_store),
    coordinator: SubmissionCoordinator = Depends(get_coordinator),
    locks: SessionLocks = Depends(get_session_locks),
):
    async with _editing(session_id, store, coordinator, locks) as wizard:
        await wizard.reprice()
    return _view(wizard)


# ── Submit ───────────────────────────────────────────────────

@router.post("/{session_id}/submit", response_model=SubmitResponse)
async def submit(
    session_id: str,
    store: DraftStore = Depends(get_draft_store),
    coordinator: SubmissionCoordinator = Depends(get_coordinator),
    locks: SessionLocks = Depends(get_session_locks),
):
    """Commit the session; the session lock is held until the commit settles."""
    if coordinator.is_submitting(session_id):
        raise AlreadySubmitting(session_id)
    async with locks.get(session_id):
        wizard = await _load(session_id, store, coordinator)
        outcome = await coordinator.submit(wizard)

    if isinstance(outcome, Committed):
        return SubmitResponse(
            outcome="committed",
            transaction_id=outcome.transaction_id,
            idempotency_key=outcome.idempotency_key,
            replayed=outcome.replayed,
        )
    if isinstance(outcome, Failed):
        return SubmitResponse(
            outcome="failed",
            idempotency_key=outcome.idempotency_key,
            reason=outcome.reason,
            retryable=outcome.retryable,
        )
    return SubmitResponse(
        outcome="validation_failed",
        step=outcome.step,
        step_id=outcome.step_id,
        errors=outcome.errors,
    )
