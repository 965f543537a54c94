"""Tests for draft envelopes and the draft store backends."""

import json

import pytest

from fleetwizard.schemas.wizard import WizardSession
from fleetwizard.services.drafts import (
    InMemoryDraftStore,
    RedisDraftStore,
    SqlDraftStore,
    decode_draft,
    draft_key,
    encode_draft,
)


def _session(**kwargs) -> WizardSession:
    return WizardSession(
        flow="reservation",
        current_step=2,
        step_data={"header": {"customer_id": "C-1"}},
        completed_steps=[1],
        visited_steps=[1, 2],
        **kwargs,
    )


@pytest.mark.unit
class TestEnvelope:
    """Versioned envelope codec."""

    def test_round_trip(self):
        state = _session()
        encoded = encode_draft(state, schema_version=1)

        assert encoded["session_id"] == state.id
        assert encoded["schema_version"] == 1
        assert "saved_at" in encoded
        assert decode_draft(json.dumps(encoded), state.id, 1) == state

    def test_unusable_payloads_load_as_none(self):
        state = _session()
        good = encode_draft(state, schema_version=1)

        assert decode_draft("{not json", state.id, 1) is None
        assert decode_draft("[1, 2]", state.id, 1) is None
        assert decode_draft(good, state.id, 2) is None
        assert decode_draft({**good, "state": {"flow": "reservation", "current_step": 0}}, state.id, 1) is None
        assert decode_draft(good, "draft-other", 1) is None

    def test_key_prefix(self):
        assert draft_key("draft-1", "test:wizard") == "test:wizard:draft-1"


@pytest.mark.unit
@pytest.mark.asyncio
class TestInMemoryDraftStore:
    async def test_save_load_discard(self, store):
        state = _session()
        await store.save(state.id, state)

        loaded = await store.load(state.id)
        assert loaded == state
        assert loaded is not state

        await store.discard(state.id)
        assert await store.load(state.id) is None

    async def test_loaded_copy_is_detached(self, store):
        state = _session()
        await store.save(state.id, state)

        loaded = await store.load(state.id)
        loaded.step_data["header"]["customer_id"] = "C-2"

        again = await store.load(state.id)
        assert again.step_data["header"]["customer_id"] == "C-1"

    async def test_version_bump_invalidates(self):
        old = InMemoryDraftStore(schema_version=1)
        state = _session()
        await old.save(state.id, state)

        new = InMemoryDraftStore(schema_version=2)
        new.put_raw(state.id, old._records[state.id])

        assert await new.load(state.id) is None


@pytest.mark.integration
@pytest.mark.asyncio
class TestRedisDraftStore:
    """Needs a live Redis server."""

    async def test_save_load_discard(self, redis_client):
        drafts = RedisDraftStore(redis_client, prefix="test:wizard", ttl_seconds=60, schema_version=1)
        state = _session()

        await drafts.save(state.id, state)
        assert await drafts.load(state.id) == state
        assert 0 < await redis_client.ttl(draft_key(state.id, "test:wizard")) <= 60

        await drafts.discard(state.id)
        assert await drafts.load(state.id) is None

    async def test_corrupt_value_loads_as_none(self, redis_client):
        drafts = RedisDraftStore(redis_client, prefix="test:wizard", ttl_seconds=0, schema_version=1)
        await redis_client.set(draft_key("draft-bad", "test:wizard"), "{truncated")

        assert await drafts.load("draft-bad") is None


@pytest.mark.integration
@pytest.mark.asyncio
class TestSqlDraftStore:
    """Needs a live PostgreSQL server."""

    async def test_save_overwrites_and_discard_deletes(self, session_factory):
        drafts = SqlDraftStore(session_factory, schema_version=1)
        state = _session()

        await drafts.save(state.id, state)
        state.current_step = 3
        await drafts.save(state.id, state)

        loaded = await drafts.load(state.id)
        assert loaded.current_step == 3

        await drafts.discard(state.id)
        assert await drafts.load(state.id) is None

    async def test_other_schema_version_is_ignored(self, session_factory):
        state = _session()
        await SqlDraftStore(session_factory, schema_version=1).save(state.id, state)

        assert await SqlDraftStore(session_factory, schema_version=2).load(state.id) is None
