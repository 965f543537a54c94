"""Tests for the submission coordinator and commit clients."""

import asyncio
import json

import httpx
import pytest

from fleetwizard.middleware.exceptions import (
    AlreadySubmitting,
    CommitRejected,
    CommitTransportError,
    SessionLocked,
)
from fleetwizard.schemas.submission import SubmissionRequest
from fleetwizard.schemas.wizard import WizardStatus
from fleetwizard.services.controller import WizardController
from fleetwizard.services.outcomes import Committed, Failed, ValidationFailed
from fleetwizard.services.submission import HttpCommitClient, SubmissionCoordinator, submission_key


@pytest.fixture
def ready_wizard(simple_flow, store, daily_context, policy, monday, wednesday, extra_driver):
    """A session with every step valid, sitting on the confirmation step."""

    async def _build() -> WizardController:
        wizard = await WizardController.start(
            simple_flow, store, pricing_context=daily_context, policy=policy
        )
        await wizard.advance()
        await wizard.add_line({
            "subject_ref": "VEH-1",
            "start": monday,
            "end": wednesday,
            "occupant_refs": [extra_driver],
        })
        await wizard.advance()
        await wizard.update_step("confirm", {"terms_accepted": True})
        return wizard

    return _build


@pytest.mark.unit
def test_submission_key_is_deterministic():
    assert submission_key("draft-1", "n1", 1) == submission_key("draft-1", "n1", 1)
    assert submission_key("draft-1", "n1", 1) != submission_key("draft-1", "n1", 2)
    assert submission_key("draft-1", "n1", 1) != submission_key("draft-2", "n1", 1)
    assert submission_key("draft-1", "n1", 1) != submission_key("draft-1", "n2", 1)


@pytest.mark.unit
@pytest.mark.asyncio
class TestSubmissionCoordinator:
    """Commit-once behaviour across retries."""

    async def test_commit_success(self, ready_wizard, store, commit_client):
        wizard = await ready_wizard()
        coordinator = SubmissionCoordinator(commit_client)

        outcome = await coordinator.submit(wizard)

        assert isinstance(outcome, Committed)
        assert outcome.transaction_id == "txn-1"
        assert wizard.session.status is WizardStatus.COMMITTED
        assert wizard.session.transaction_id == "txn-1"
        assert wizard.session.id not in store
        payload = commit_client.payloads[0]
        assert payload["session_id"] == wizard.session.id
        assert payload["summary"]["grand_total"] == "126.50"

    async def test_retry_after_network_error_commits_once(self, ready_wizard, scripted):
        client = scripted("network")
        coordinator = SubmissionCoordinator(client)
        wizard = await ready_wizard()

        first = await coordinator.submit(wizard)

        assert isinstance(first, Failed)
        assert first.retryable
        assert wizard.session.status is WizardStatus.FAILED
        assert wizard.session.step_data["confirm"] == {"terms_accepted": True}

        second = await coordinator.submit(wizard)

        assert isinstance(second, Committed)
        assert second.idempotency_key == first.idempotency_key
        assert client.keys_seen == [first.idempotency_key, first.idempotency_key]
        assert len(client.created) == 1

    async def test_lost_response_is_replayed(self, ready_wizard, scripted):
        client = scripted("lost_response")
        coordinator = SubmissionCoordinator(client)
        wizard = await ready_wizard()

        first = await coordinator.submit(wizard)
        second = await coordinator.submit(wizard)

        assert isinstance(first, Failed)
        assert isinstance(second, Committed)
        assert second.replayed
        assert len(client.created) == 1

    async def test_rejection_starts_new_attempt(self, ready_wizard, scripted):
        client = scripted("reject")
        coordinator = SubmissionCoordinator(client)
        wizard = await ready_wizard()

        first = await coordinator.submit(wizard)

        assert isinstance(first, Failed)
        assert not first.retryable
        assert first.reason == "Customer is blocked"
        assert wizard.session.idempotency_key is None

        second = await coordinator.submit(wizard)

        assert isinstance(second, Committed)
        assert second.idempotency_key == submission_key(wizard.session.id, wizard.session.nonce, 2)
        assert second.idempotency_key != first.idempotency_key

    async def test_invalid_session_is_not_sent(self, simple_flow, store, daily_context, policy, commit_client):
        wizard = await WizardController.start(simple_flow, store, pricing_context=daily_context, policy=policy)
        coordinator = SubmissionCoordinator(commit_client)

        outcome = await coordinator.submit(wizard)

        assert isinstance(outcome, ValidationFailed)
        assert outcome.step == 2
        assert commit_client.keys_seen == []
        assert wizard.session.status is WizardStatus.EDITING
        assert wizard.session.idempotency_key is None

    async def test_unaccepted_terms_block_submit(self, ready_wizard, commit_client):
        wizard = await ready_wizard()
        await wizard.update_step("confirm", {"terms_accepted": False})

        outcome = await SubmissionCoordinator(commit_client).submit(wizard)

        assert isinstance(outcome, ValidationFailed)
        assert outcome.step_id == "confirm"
        assert "terms_accepted" in outcome.errors
        assert wizard.session.current_step == 3

    async def test_concurrent_submit_is_refused(self, ready_wizard, blocking_client):
        wizard = await ready_wizard()
        coordinator = SubmissionCoordinator(blocking_client)

        task = asyncio.create_task(coordinator.submit(wizard))
        await blocking_client.entered.wait()

        assert coordinator.is_submitting(wizard.session.id)
        with pytest.raises(AlreadySubmitting):
            await coordinator.submit(wizard)
        with pytest.raises(SessionLocked):
            await wizard.update_step("confirm", {"notes": "late edit"})

        blocking_client.release.set()
        outcome = await task

        assert isinstance(outcome, Committed)
        assert len(blocking_client.created) == 1
        assert not coordinator.is_submitting(wizard.session.id)

    async def test_committed_session_is_locked(self, ready_wizard, commit_client):
        wizard = await ready_wizard()
        await SubmissionCoordinator(commit_client).submit(wizard)

        with pytest.raises(SessionLocked):
            await wizard.retreat()

    async def test_reused_session_id_commits_new_transaction(
        self, simple_flow, store, daily_context, policy, monday, wednesday, commit_client
    ):
        coordinator = SubmissionCoordinator(commit_client)

        async def submit_with(subjects):
            wizard = await WizardController.start(
                simple_flow, store, session_id="s-1", pricing_context=daily_context, policy=policy
            )
            await wizard.advance()
            for subject in subjects:
                await wizard.add_line({"subject_ref": subject, "start": monday, "end": wednesday})
            await wizard.advance()
            await wizard.update_step("confirm", {"terms_accepted": True})
            return await coordinator.submit(wizard)

        first = await submit_with(["VEH-1"])
        second = await submit_with(["VEH-2", "VEH-3"])

        assert isinstance(second, Committed)
        assert not second.replayed
        assert second.transaction_id != first.transaction_id
        assert second.idempotency_key != first.idempotency_key
        assert len(commit_client.created) == 2
        assert [line["subject_ref"] for line in commit_client.payloads[1]["lines"]] == ["VEH-2", "VEH-3"]


def _request() -> SubmissionRequest:
    return SubmissionRequest(
        idempotency_key="a" * 64,
        payload={"session_id": "draft-1", "flow": "reservation"},
    )


def _http_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.mark.unit
@pytest.mark.asyncio
class TestHttpCommitClient:
    """Mapping of HTTP answers to commit outcomes."""

    async def test_created(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["key"] = request.headers["Idempotency-Key"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(201, json={"transaction_id": "T-1", "replayed": False})

        async with _http_client(handler) as http:
            response = await HttpCommitClient("http://store/api/transactions/", 5, http).commit(_request())

        assert response.transaction_id == "T-1"
        assert seen["key"] == "a" * 64
        assert seen["body"]["session_id"] == "draft-1"

    async def test_server_error_is_retryable(self):
        async with _http_client(lambda request: httpx.Response(503)) as http:
            with pytest.raises(CommitTransportError):
                await HttpCommitClient("http://store/", 5, http).commit(_request())

    async def test_connection_error_is_retryable(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        async with _http_client(handler) as http:
            with pytest.raises(CommitTransportError):
                await HttpCommitClient("http://store/", 5, http).commit(_request())

    async def test_client_error_is_rejection(self):
        body = {"error": {"code": "COMMIT_INVALID", "message": "Payload needs session_id and flow"}}

        async with _http_client(lambda request: httpx.Response(422, json=body)) as http:
            with pytest.raises(CommitRejected) as exc:
                await HttpCommitClient("http://store/", 5, http).commit(_request())

        assert exc.value.error_code == "COMMIT_INVALID"
        assert exc.value.message == "Payload needs session_id and flow"
