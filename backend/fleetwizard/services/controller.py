"""Wizard controller: step navigation, the line editor and repricing.

One controller owns one WizardSession.  Every command either returns a
result value or raises a refusal (PrefillIncomplete, LineNotFound,
SessionLocked, ...) that leaves the session untouched.  Successful
mutations are persisted through the injected DraftStore before the
command returns.

States:
  EDITING ──advance/retreat──▶ EDITING
  EDITING ──submit──▶ SUBMITTING ──▶ COMMITTED
                                 └──▶ FAILED (editable, same step, data intact)

Only the SubmissionCoordinator moves a session out of EDITING/FAILED.
Mutations are serialized with an asyncio.Lock so a persisted draft always
reflects the latest in-memory state at the time of the write.
"""

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Iterable, Mapping, Optional

from fleetwizard.middleware.exceptions import (
    BusinessLogicError,
    FleetWizardException,
    LineNotFound,
    PrefillIncomplete,
    SessionLocked,
    SessionNotFound,
)
from fleetwizard.schemas.pricing import (
    AddOn,
    DateRange,
    Occupant,
    PricingContext,
    PricingPolicy,
    PricingResult,
)
from fleetwizard.schemas.submission import SubmissionRequest
from fleetwizard.schemas.wizard import (
    BulkOperation,
    BulkOperationKind,
    LineItem,
    LinePrefill,
    LineUpdate,
    SessionSummary,
    StalenessReport,
    WizardProgress,
    WizardSession,
    WizardStatus,
)
from fleetwizard.services.drafts import DraftStore
from fleetwizard.services.flows import Flow, get_flow
from fleetwizard.services.outcomes import BulkResult, Transition, ValidationFailed
from fleetwizard.services.pricing import price_line
from fleetwizard.services.staleness import context_fingerprint, stale_lines
from fleetwizard.services.validation import StepDefinition, validate_step

logger = logging.getLogger(__name__)

EDITABLE = (WizardStatus.EDITING, WizardStatus.FAILED)

# Line fields whose change alters the line's price
PRICED_LINE_FIELDS = {"start", "end", "occupant_refs", "addons", "discount_percent"}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _ordered(start: datetime, end: datetime) -> bool:
    try:
        return start < end
    except TypeError:
        # naive vs aware timestamps cannot be ordered
        return False


class WizardController:
    def __init__(
        self,
        session: WizardSession,
        store: DraftStore,
        flow: Flow | None = None,
        policy: PricingPolicy | None = None,
    ):
        self.session = session
        self.store = store
        self.flow = flow or get_flow(session.flow)
        self.policy = policy or PricingPolicy.from_settings()
        self._lock = asyncio.Lock()
        self._closed = False
        self._ensure_step_entries()

    # ── Lifecycle ───────────────────────────────────────────

    @classmethod
    async def start(
        cls,
        flow: Flow,
        store: DraftStore,
        *,
        session_id: str | None = None,
        pricing_context: PricingContext | None = None,
        policy: PricingPolicy | None = None,
    ) -> "WizardController":
        """Restore the session's draft when a usable one exists, otherwise
        start fresh at step 1 and persist the new draft."""
        if session_id:
            restored = await cls._restore(flow, store, session_id, policy)
            if restored is not None:
                return restored

        kwargs: dict[str, Any] = {"flow": flow.name}
        if session_id:
            kwargs["id"] = session_id
        if pricing_context is not None:
            kwargs["pricing_context"] = pricing_context
        controller = cls(WizardSession(**kwargs), store, flow=flow, policy=policy)
        await controller._persist()
        logger.info(f"Wizard session started: {controller.session.id} ({flow.name})")
        return controller

    @classmethod
    async def resume(
        cls,
        session_id: str,
        store: DraftStore,
        policy: PricingPolicy | None = None,
        *,
        in_flight: bool = False,
    ) -> "WizardController":
        """Load an existing session; SessionNotFound when no usable draft.

        `in_flight` tells the loader a commit for this session is still
        outstanding in this process, so a SUBMITTING draft is left as is.
        """
        state = await store.load(session_id)
        if state is None:
            raise SessionNotFound(session_id)
        try:
            flow = get_flow(state.flow)
        except FleetWizardException:
            raise SessionNotFound(session_id) from None
        controller = await cls._from_state(state, flow, store, policy, in_flight=in_flight)
        if controller is None:
            raise SessionNotFound(session_id)
        return controller

    @classmethod
    async def _restore(cls, flow, store, session_id, policy) -> Optional["WizardController"]:
        state = await store.load(session_id)
        if state is None:
            return None
        if state.flow != flow.name:
            logger.warning(
                f"Draft {session_id} belongs to flow {state.flow!r}, not {flow.name!r}; starting fresh"
            )
            return None
        return await cls._from_state(state, flow, store, policy)

    @classmethod
    async def _from_state(cls, state, flow, store, policy, in_flight=False) -> Optional["WizardController"]:
        if not 1 <= state.current_step <= flow.step_count:
            logger.warning(f"Draft {state.id}: step {state.current_step} out of range, starting fresh")
            return None
        if state.status is WizardStatus.COMMITTED:
            return None

        controller = cls(state, store, flow=flow, policy=policy)
        if state.status is WizardStatus.SUBMITTING and not in_flight:
            # The process that issued the commit is gone; its outcome is
            # unknown.  Keep the key so a retry is deduplicated.
            state.status = WizardStatus.FAILED
            state.last_error = "Submission was interrupted; retry to confirm"
            await controller._persist()
            logger.warning(f"Draft {state.id}: reconciled interrupted submission to FAILED")
        logger.info(f"Wizard session restored: {state.id} at step {state.current_step}")
        return controller

    async def cancel(self) -> None:
        """Explicitly abandon the session and delete its draft."""
        async with self._lock:
            if self.session.status is WizardStatus.SUBMITTING:
                raise SessionLocked(self.session.status.value)
            await self.store.discard(self.session.id)
            self._closed = True
        logger.info(f"Wizard session cancelled: {self.session.id}")

    # ── Internals ───────────────────────────────────────────

    @property
    def current_step(self) -> StepDefinition:
        return self.flow.step(self.session.current_step)

    @property
    def fingerprint(self) -> str:
        return context_fingerprint(self.session.pricing_context, self.policy)

    def _ensure_editable(self) -> None:
        if self._closed:
            raise SessionLocked("CANCELLED")
        if self.session.status not in EDITABLE:
            raise SessionLocked(self.session.status.value)

    def _ensure_step_entries(self) -> None:
        highest = max(self.session.visited_steps or [1])
        for number in range(1, min(highest, self.flow.step_count) + 1):
            self.session.step_data.setdefault(self.flow.step(number).id, {})

    def _visit(self, number: int) -> None:
        if number not in self.session.visited_steps:
            self.session.visited_steps = sorted(self.session.visited_steps + [number])
        self._ensure_step_entries()

    async def _persist(self) -> None:
        self.session.updated_at = _now()
        await self.store.save(self.session.id, self.session)

    def _find_line(self, line_id: str) -> LineItem:
        for line in self.session.lines:
            if line.id == line_id:
                return line
        raise LineNotFound(line_id)

    def _renumber(self) -> None:
        self.session.lines = [
            line.model_copy(update={"line_no": index})
            for index, line in enumerate(self.session.lines, start=1)
        ]

    def _replace_line(self, updated: LineItem) -> None:
        self.session.lines = [
            updated if line.id == updated.id else line for line in self.session.lines
        ]

    def _price(
        self,
        date_range: DateRange,
        occupants: Iterable[Occupant],
        addons: Iterable[AddOn],
        discount_percent: Decimal,
    ) -> PricingResult:
        return price_line(
            date_range,
            self.session.pricing_context,
            occupants,
            addons=addons,
            discount_percent=discount_percent,
            policy=self.policy,
        )

    def _priced_fields(self, result: PricingResult) -> dict:
        return {
            "net_price": result.net_price,
            "tax_amount": result.tax_amount,
            "total": result.total,
            "rate_tier_used": result.rate_tier_used,
            "quantity": result.quantity,
            "pricing_fingerprint": self.fingerprint,
        }

    def _refresh_staleness(self) -> StalenessReport:
        fingerprint = self.fingerprint
        stale = stale_lines(self.session.lines, fingerprint)
        self.session.reprice_recommended = bool(stale)
        return StalenessReport(
            reprice_recommended=self.session.reprice_recommended,
            stale_line_ids=[line.id for line in stale],
            context_fingerprint=fingerprint,
        )

    # ── Step navigation ─────────────────────────────────────

    async def advance(self) -> Transition | ValidationFailed:
        """Gate on the current step's rules; move forward only when clean.

        A failed gate leaves the step and its data untouched.  The draft
        is still saved with the reported errors and a new `updated_at`, so
        a reload can show them again.
        """
        async with self._lock:
            self._ensure_editable()
            step = self.current_step
            number = self.session.current_step
            result = validate_step(step, self.session.step_data.get(step.id), self.session.lines)

            if not result.is_valid:
                self.session.step_errors[step.id] = dict(result.errors)
                await self._persist()
                return ValidationFailed(
                    step=number,
                    step_id=step.id,
                    errors=dict(result.errors),
                    warnings=dict(result.warnings),
                )

            self.session.step_errors.pop(step.id, None)
            if number not in self.session.completed_steps:
                self.session.completed_steps = sorted(self.session.completed_steps + [number])
            self.session.current_step = min(number + 1, self.flow.step_count)
            self._visit(self.session.current_step)
            await self._persist()
            return Transition(
                current_step=self.session.current_step,
                step_id=self.current_step.id,
                warnings=dict(result.warnings),
            )

    async def retreat(self) -> Transition:
        """Step back without validation; floored at step 1."""
        async with self._lock:
            self._ensure_editable()
            self.session.current_step = max(1, self.session.current_step - 1)
            await self._persist()
            return Transition(current_step=self.session.current_step, step_id=self.current_step.id)

    async def jump_to(self, number: int) -> Transition:
        """Go to any earlier step, or forward while every step in between
        has been completed."""
        async with self._lock:
            self._ensure_editable()
            self.flow.step(number)
            if number > self.session.current_step:
                blocking = [
                    n for n in range(1, number)
                    if n not in self.session.completed_steps
                ]
                if blocking:
                    first = self.flow.step(blocking[0])
                    raise BusinessLogicError(
                        f"Complete step {blocking[0]} ({first.title or first.id}) first",
                        error_code="STEP_LOCKED",
                    )
            self.session.current_step = number
            self._visit(number)
            await self._persist()
            return Transition(current_step=number, step_id=self.current_step.id)

    async def update_step(self, step_id: str, partial: Mapping[str, Any]) -> dict[str, Any]:
        """Merge `partial` into the step's payload and clear the reported
        errors for the fields it touches."""
        async with self._lock:
            self._ensure_editable()
            self.flow.number_of(step_id)

            payload = dict(self.session.step_data.get(step_id, {}))
            payload.update(partial)
            self.session.step_data[step_id] = payload

            errors = self.session.step_errors.get(step_id)
            if errors:
                remaining = {k: v for k, v in errors.items() if k not in partial}
                if remaining:
                    self.session.step_errors[step_id] = remaining
                else:
                    self.session.step_errors.pop(step_id)

            await self._persist()
            return dict(payload)

    def progress(self) -> WizardProgress:
        total = self.flow.step_count
        completed = len(self.session.completed_steps)
        return WizardProgress(
            current_step=self.session.current_step,
            step_id=self.current_step.id,
            total_steps=total,
            completed=completed,
            visited=len(self.session.visited_steps),
            percentage=round(completed / total * 100),
            has_errors=any(self.session.step_errors.values()),
            is_complete=completed == total,
        )

    # ── Lines ───────────────────────────────────────────────

    def _add_line(self, prefill: LinePrefill) -> LineItem:
        missing = []
        if not prefill.subject_ref:
            missing.append("subject_ref")
        if prefill.start is None:
            missing.append("start")
        if prefill.end is None:
            missing.append("end")
        if missing:
            raise PrefillIncomplete(missing)
        if not _ordered(prefill.start, prefill.end):
            raise PrefillIncomplete(["date_range"])

        date_range = DateRange(start=prefill.start, end=prefill.end)
        result = self._price(
            date_range, prefill.occupant_refs, prefill.addons, prefill.discount_percent
        )
        line = LineItem(
            line_no=len(self.session.lines) + 1,
            subject_ref=prefill.subject_ref,
            occupant_refs=list(prefill.occupant_refs),
            date_range=date_range,
            addons=list(prefill.addons),
            discount_percent=prefill.discount_percent,
            **self._priced_fields(result),
        )
        self.session.lines = self.session.lines + [line]
        return line

    def _update_line(self, line_id: str, update: LineUpdate) -> LineItem:
        line = self._find_line(line_id)
        fields = update.model_fields_set
        changes: dict[str, Any] = {}

        if "subject_ref" in fields:
            changes["subject_ref"] = update.subject_ref
        if "occupant_refs" in fields:
            changes["occupant_refs"] = list(update.occupant_refs or [])
        if "addons" in fields:
            changes["addons"] = list(update.addons or [])
        if "discount_percent" in fields:
            changes["discount_percent"] = update.discount_percent or Decimal("0")
        if fields & {"start", "end"}:
            start = update.start if update.start is not None else line.date_range.start
            end = update.end if update.end is not None else line.date_range.end
            if not _ordered(start, end):
                raise BusinessLogicError(
                    "Date range start must be before end", error_code="INVALID_DATE_RANGE"
                )
            changes["date_range"] = DateRange(start=start, end=end)

        updated = line.model_copy(update=changes)
        if fields & PRICED_LINE_FIELDS:
            result = self._price(
                updated.date_range,
                updated.occupant_refs,
                updated.addons,
                updated.discount_percent,
            )
            updated = updated.model_copy(update=self._priced_fields(result))

        self._replace_line(updated)
        return updated

    def _remove_line(self, line_id: str) -> LineItem:
        line = self._find_line(line_id)
        self.session.lines = [l for l in self.session.lines if l.id != line_id]
        self._renumber()
        return line

    def _duplicate_line(self, line_id: str) -> LineItem:
        source = self._find_line(line_id)
        copy = source.model_copy(update={
            "id": uuid.uuid4().hex,
            "line_no": len(self.session.lines) + 1,
            # Vehicle and drivers must be picked again for the copy
            "subject_ref": None,
            "occupant_refs": [],
        })
        self.session.lines = self.session.lines + [copy]
        return copy

    async def add_line(self, prefill: LinePrefill | Mapping[str, Any]) -> LineItem:
        if not isinstance(prefill, LinePrefill):
            prefill = LinePrefill.model_validate(prefill)
        async with self._lock:
            self._ensure_editable()
            line = self._add_line(prefill)
            self._refresh_staleness()
            await self._persist()
        logger.info(f"Line #{line.line_no} added to {self.session.id} ({line.rate_tier_used.value}, total {line.total})")
        return line

    async def update_line(self, line_id: str, update: LineUpdate | Mapping[str, Any]) -> LineItem:
        if not isinstance(update, LineUpdate):
            update = LineUpdate.model_validate(update)
        async with self._lock:
            self._ensure_editable()
            line = self._update_line(line_id, update)
            self._refresh_staleness()
            await self._persist()
            return line

    async def remove_line(self, line_id: str) -> LineItem:
        async with self._lock:
            self._ensure_editable()
            line = self._remove_line(line_id)
            self._refresh_staleness()
            await self._persist()
        logger.info(f"Line #{line.line_no} removed from {self.session.id}")
        return line

    async def duplicate_line(self, line_id: str) -> LineItem:
        async with self._lock:
            self._ensure_editable()
            line = self._duplicate_line(line_id)
            await self._persist()
            return line

    async def bulk_apply(
        self, line_ids: Iterable[str], operation: BulkOperation | Mapping[str, Any]
    ) -> BulkResult:
        """Apply one operation to each line independently.  A failure on one
        line is reported and does not undo the others."""
        if not isinstance(operation, BulkOperation):
            operation = BulkOperation.model_validate(operation)
        apply = self._bulk_action(operation)

        async with self._lock:
            self._ensure_editable()
            outcome = BulkResult()
            for line_id in line_ids:
                try:
                    apply(line_id)
                except FleetWizardException as e:
                    outcome.failed[line_id] = e.message
                else:
                    outcome.succeeded.append(line_id)
            self._refresh_staleness()
            await self._persist()
        logger.info(
            f"Bulk {operation.kind.value} on {self.session.id}: "
            f"{len(outcome.succeeded)} ok, {len(outcome.failed)} failed"
        )
        return outcome

    def _bulk_action(self, operation: BulkOperation) -> Callable[[str], Any]:
        kind = operation.kind
        if kind is BulkOperationKind.REMOVE:
            return self._remove_line
        if kind is BulkOperationKind.DUPLICATE:
            return self._duplicate_line
        if kind is BulkOperationKind.UPDATE:
            if operation.update is None:
                raise BusinessLogicError("Bulk update needs an update payload", error_code="BULK_INVALID")
            update = operation.update
            return lambda line_id: self._update_line(line_id, update)
        if kind is BulkOperationKind.APPLY_DISCOUNT:
            if operation.discount_percent is None:
                raise BusinessLogicError("Bulk discount needs discount_percent", error_code="BULK_INVALID")
            update = LineUpdate(discount_percent=operation.discount_percent)
            return lambda line_id: self._update_line(line_id, update)
        raise BusinessLogicError(f"Unsupported bulk operation: {kind}", error_code="BULK_INVALID")

    # ── Pricing context / staleness ─────────────────────────

    async def on_context_change(self, context: PricingContext) -> StalenessReport:
        """Swap in a new pricing snapshot and flag lines priced under an
        older one.  Line totals are not touched."""
        async with self._lock:
            self._ensure_editable()
            self.session.pricing_context = context
            report = self._refresh_staleness()
            await self._persist()
        if report.reprice_recommended:
            logger.info(f"Reprice recommended for {self.session.id}: {len(report.stale_line_ids)} stale line(s)")
        return report

    def staleness(self) -> StalenessReport:
        fingerprint = self.fingerprint
        stale = stale_lines(self.session.lines, fingerprint)
        return StalenessReport(
            reprice_recommended=self.session.reprice_recommended,
            stale_line_ids=[line.id for line in stale],
            context_fingerprint=fingerprint,
        )

    async def reprice(self) -> list[LineItem]:
        """Recompute every line against the current context."""
        async with self._lock:
            self._ensure_editable()
            repriced = []
            for line in self.session.lines:
                result = self._price(
                    line.date_range, line.occupant_refs, line.addons, line.discount_percent
                )
                repriced.append(line.model_copy(update=self._priced_fields(result)))
            self.session.lines = repriced
            self.session.reprice_recommended = False
            await self._persist()
        logger.info(f"Repriced {len(repriced)} line(s) on {self.session.id}")
        return list(repriced)

    def summary(self) -> SessionSummary:
        net = sum((line.net_price for line in self.session.lines), Decimal("0.00"))
        tax = sum((line.tax_amount for line in self.session.lines), Decimal("0.00"))
        return SessionSummary(
            line_count=len(self.session.lines),
            net_total=net,
            tax_total=tax,
            grand_total=net + tax,
        )

    # ── Submission hooks (driven by SubmissionCoordinator) ──

    def _first_invalid_step(self) -> ValidationFailed | None:
        for number, step in enumerate(self.flow.steps, start=1):
            result = validate_step(step, self.session.step_data.get(step.id), self.session.lines)
            if not result.is_valid:
                return ValidationFailed(
                    step=number,
                    step_id=step.id,
                    errors=dict(result.errors),
                    warnings=dict(result.warnings),
                )
        return None

    def build_payload(self) -> dict[str, Any]:
        session = self.session
        return {
            "session_id": session.id,
            "flow": session.flow,
            "step_data": session.model_dump(mode="json")["step_data"],
            "lines": [line.model_dump(mode="json") for line in session.lines],
            "pricing_context": session.pricing_context.model_dump(mode="json"),
            "summary": self.summary().model_dump(mode="json"),
        }

    async def begin_submission(
        self, key_factory: Callable[[str, str, int], str]
    ) -> SubmissionRequest | ValidationFailed:
        """Validate every step; on success move to SUBMITTING and return the
        request to send.  The idempotency key is kept across retries and
        only derived anew for a new logical attempt."""
        async with self._lock:
            self._ensure_editable()
            invalid = self._first_invalid_step()
            if invalid is not None:
                self.session.step_errors[invalid.step_id] = dict(invalid.errors)
                await self._persist()
                return invalid

            if self.session.idempotency_key is None:
                self.session.submission_attempt += 1
                self.session.idempotency_key = key_factory(
                    self.session.id, self.session.nonce, self.session.submission_attempt
                )
            self.session.status = WizardStatus.SUBMITTING
            self.session.last_error = None
            await self._persist()
            return SubmissionRequest(
                idempotency_key=self.session.idempotency_key,
                payload=self.build_payload(),
            )

    async def mark_committed(self, transaction_id: str) -> None:
        async with self._lock:
            self.session.status = WizardStatus.COMMITTED
            self.session.transaction_id = transaction_id
            self.session.updated_at = _now()
            try:
                await self.store.discard(self.session.id)
            except Exception as e:
                # A leftover draft reloads as an interrupted submission and
                # its retry is deduplicated by the idempotency key.
                logger.warning(f"Failed to discard draft {self.session.id} after commit: {e}")
        logger.info(f"Wizard session committed: {self.session.id} → {transaction_id}")

    async def mark_failed(self, reason: str, *, retryable: bool) -> None:
        async with self._lock:
            self.session.status = WizardStatus.FAILED
            self.session.last_error = reason
            if not retryable:
                # Definitive rejection: nothing was created, so the next
                # submit is a new logical attempt with a new key.
                self.session.idempotency_key = None
            await self._persist()
