"""Submission coordinator: commits a session at most once.

Idempotency key:
    sha256 of {"operation": "wizard_submit", "session_id", "nonce", "attempt"}.
    The nonce is drawn when the session is created, so a new session
    started under a discarded id never replays the old transaction.
    The attempt counter only moves when a new logical attempt starts
    (first submit, or after a definitive rejection).  A retry after a
    timeout or network error sends the same key, so the backing store
    can replay its original result instead of creating a second record.

Only one commit request per session is in flight; a concurrent second
submit() is refused with AlreadySubmitting.
"""

import hashlib
import json
import logging
from abc import ABC, abstractmethod
from typing import Optional

import httpx
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fleetwizard.config import settings
from fleetwizard.middleware.exceptions import (
    AlreadySubmitting,
    BusinessLogicError,
    CommitRejected,
    CommitTransportError,
)
from fleetwizard.schemas.submission import CommitResponse, SubmissionRequest
from fleetwizard.schemas.wizard import WizardStatus
from fleetwizard.services.controller import WizardController
from fleetwizard.services.outcomes import Committed, Failed, ValidationFailed
from fleetwizard.services.transactions import commit_transaction

logger = logging.getLogger(__name__)


def submission_key(session_id: str, nonce: str, attempt: int) -> str:
    """Deterministic idempotency key for one logical submission attempt."""
    key_data = {
        "operation": "wizard_submit",
        "session_id": session_id,
        "nonce": nonce,
        "attempt": attempt,
    }
    key_str = json.dumps(key_data, sort_keys=True)
    return hashlib.sha256(key_str.encode()).hexdigest()


# ── Commit clients ──────────────────────────────────────────

class CommitClient(ABC):
    @abstractmethod
    async def commit(self, request: SubmissionRequest) -> CommitResponse:
        """Create the transaction.

        Raises:
            CommitTransportError: outcome unknown; retry with the same key
            CommitRejected: the store refused the request; nothing created
        """


class HttpCommitClient(CommitClient):
    """POSTs the payload to a remote commit endpoint with an
    Idempotency-Key header."""

    RETRYABLE_STATUS = {408, 425, 429}

    def __init__(
        self,
        url: str | None = None,
        timeout: float | None = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.url = url or settings.commit_endpoint_url
        self.timeout = timeout or settings.commit_timeout_seconds
        self._client = client

    async def commit(self, request: SubmissionRequest) -> CommitResponse:
        headers = {"Idempotency-Key": request.idempotency_key}
        try:
            if self._client is not None:
                resp = await self._client.post(
                    self.url, json=request.payload, headers=headers, timeout=self.timeout
                )
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    resp = await client.post(self.url, json=request.payload, headers=headers)
        except httpx.HTTPError as e:
            raise CommitTransportError(f"Commit request failed: {e}") from e

        if resp.status_code >= 500 or resp.status_code in self.RETRYABLE_STATUS:
            raise CommitTransportError(f"Commit endpoint returned HTTP {resp.status_code}")

        if resp.status_code >= 400:
            message, code = f"Commit rejected (HTTP {resp.status_code})", "COMMIT_REJECTED"
            try:
                error = resp.json().get("error", {})
                message = error.get("message", message)
                code = error.get("code", code)
            except (ValueError, AttributeError):
                pass
            raise CommitRejected(message, error_code=code)

        try:
            return CommitResponse.model_validate(resp.json())
        except ValueError as e:
            # The store answered 2xx but we cannot read the id; treat as
            # unknown so the retry replays the original result.
            raise CommitTransportError(f"Unreadable commit response: {e}") from e


class LocalCommitClient(CommitClient):
    """Commits into this service's own transactions table."""

    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None):
        if session_factory is None:
            from fleetwizard.database import async_session

            session_factory = async_session
        self._session_factory = session_factory

    async def commit(self, request: SubmissionRequest) -> CommitResponse:
        try:
            async with self._session_factory() as db:
                response = await commit_transaction(db, request)
                await db.commit()
                return response
        except BusinessLogicError as e:
            raise CommitRejected(e.message, error_code=e.error_code) from e
        except SQLAlchemyError as e:
            raise CommitTransportError(f"Transaction store unavailable: {e}") from e


def build_commit_client() -> CommitClient:
    if settings.commit_endpoint_url:
        return HttpCommitClient()
    return LocalCommitClient()


# ── Coordinator ─────────────────────────────────────────────

class SubmissionCoordinator:
    def __init__(self, client: CommitClient):
        self.client = client
        self._in_flight: set[str] = set()

    def is_submitting(self, session_id: str) -> bool:
        return session_id in self._in_flight

    async def submit(self, wizard: WizardController) -> Committed | Failed | ValidationFailed:
        session_id = wizard.session.id
        if session_id in self._in_flight or wizard.session.status is WizardStatus.SUBMITTING:
            raise AlreadySubmitting(session_id)

        self._in_flight.add(session_id)
        try:
            prepared = await wizard.begin_submission(submission_key)
            if isinstance(prepared, ValidationFailed):
                logger.info(
                    f"Submission blocked for {session_id}: step {prepared.step} "
                    f"({prepared.step_id}) has {len(prepared.errors)} error(s)"
                )
                return prepared

            key = prepared.idempotency_key
            try:
                response = await self.client.commit(prepared)
            except CommitTransportError as e:
                logger.warning(f"Commit for {session_id} failed (retryable, key {key[:12]}…): {e}")
                await wizard.mark_failed(str(e), retryable=True)
                return Failed(reason=str(e), idempotency_key=key, retryable=True)
            except CommitRejected as e:
                logger.warning(f"Commit for {session_id} rejected: {e.error_code} - {e.message}")
                await wizard.mark_failed(e.message, retryable=False)
                return Failed(reason=e.message, idempotency_key=key, retryable=False)
            except Exception:
                await wizard.mark_failed("Unexpected error during submission", retryable=True)
                raise

            await wizard.mark_committed(response.transaction_id)
            return Committed(
                transaction_id=response.transaction_id,
                idempotency_key=key,
                replayed=response.replayed,
            )
        finally:
            self._in_flight.discard(session_id)
