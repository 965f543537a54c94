"""Commit endpoint service: create a transaction once per idempotency key.

Handles:
  - Replaying the original result when the key has been seen before
  - Racing duplicates (two requests with the same key at once): the loser
    hits the unique constraint, rolls back, and replays the winner's row
"""

import logging
from decimal import Decimal, InvalidOperation

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from fleetwizard.middleware.exceptions import BusinessLogicError
from fleetwizard.models.transaction import CommittedTransaction
from fleetwizard.schemas.submission import CommitResponse, SubmissionRequest

logger = logging.getLogger(__name__)


async def _find_by_key(db: AsyncSession, key: str) -> CommittedTransaction | None:
    result = await db.execute(
        select(CommittedTransaction).where(CommittedTransaction.idempotency_key == key)
    )
    return result.scalar_one_or_none()


def _grand_total(payload: dict) -> Decimal:
    raw = (payload.get("summary") or {}).get("grand_total", "0")
    try:
        return Decimal(str(raw))
    except (InvalidOperation, ValueError):
        raise BusinessLogicError("summary.grand_total is not a number", error_code="COMMIT_INVALID")


async def commit_transaction(db: AsyncSession, request: SubmissionRequest) -> CommitResponse:
    """Create the transaction for this key, or return the one already created.

    Raises:
        BusinessLogicError if the payload lacks a session id or flow.
    """
    existing = await _find_by_key(db, request.idempotency_key)
    if existing:
        logger.info(f"Commit replayed for key {request.idempotency_key[:12]}… → {existing.id}")
        return CommitResponse(transaction_id=existing.id, replayed=True)

    payload = request.payload
    session_id, flow = payload.get("session_id"), payload.get("flow")
    if not session_id or not flow:
        raise BusinessLogicError("Payload needs session_id and flow", error_code="COMMIT_INVALID")

    row = CommittedTransaction(
        idempotency_key=request.idempotency_key,
        session_id=session_id,
        flow=flow,
        line_count=len(payload.get("lines") or []),
        grand_total=_grand_total(payload),
        payload=payload,
    )
    db.add(row)
    try:
        await db.flush()
    except IntegrityError:
        await db.rollback()
        existing = await _find_by_key(db, request.idempotency_key)
        if existing is None:
            raise
        logger.info(f"Commit race resolved for key {request.idempotency_key[:12]}… → {existing.id}")
        return CommitResponse(transaction_id=existing.id, replayed=True)

    logger.info(f"Transaction created: {row.id} ({flow}, session {session_id})")
    return CommitResponse(transaction_id=row.id)
