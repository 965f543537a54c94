"""Draft persistence for wizard sessions.

Contract:
    save(session_id, state)   overwrite the session's draft
    load(session_id)          the stored state, or None (NotFound)
    discard(session_id)       delete the draft; the only deletion path

Every backend stores the same versioned envelope.  A draft with an
unknown schema version, unparseable JSON, or a payload that fails
structural validation loads as None: the caller starts fresh instead
of crashing on a corrupt draft.
"""

import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Optional

import redis.asyncio as redis
from pydantic import ValidationError
from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fleetwizard.config import settings
from fleetwizard.models.draft_record import DraftRecordRow
from fleetwizard.schemas.wizard import DraftEnvelope, WizardSession

logger = logging.getLogger(__name__)


# ── Envelope codec ──────────────────────────────────────────

def encode_draft(state: WizardSession, schema_version: int) -> dict:
    envelope = DraftEnvelope(
        session_id=state.id,
        schema_version=schema_version,
        state=state,
    )
    return envelope.model_dump(mode="json")


def decode_draft(
    raw: Any, session_id: str, schema_version: int
) -> Optional[WizardSession]:
    """Parse a stored envelope; None when it is not usable."""
    try:
        data = json.loads(raw) if isinstance(raw, (str, bytes)) else raw
    except ValueError:
        logger.warning(f"Draft {session_id}: payload is not valid JSON, ignoring")
        return None

    if not isinstance(data, dict):
        logger.warning(f"Draft {session_id}: payload is not an object, ignoring")
        return None

    version = data.get("schema_version")
    if version != schema_version:
        logger.warning(
            f"Draft {session_id}: schema version {version!r} "
            f"(expected {schema_version}), ignoring"
        )
        return None

    try:
        envelope = DraftEnvelope.model_validate(data)
    except ValidationError as e:
        logger.warning(f"Draft {session_id}: structural validation failed ({e.error_count()} errors), ignoring")
        return None

    if envelope.session_id != session_id or envelope.state.id != session_id:
        logger.warning(f"Draft {session_id}: stored under a different session id, ignoring")
        return None

    return envelope.state


def draft_key(session_id: str, prefix: str | None = None) -> str:
    return f"{prefix or settings.draft_key_prefix}:{session_id}"


# ── Interface ───────────────────────────────────────────────

class DraftStore(ABC):
    def __init__(self, schema_version: int | None = None):
        self.schema_version = schema_version or settings.draft_schema_version

    @abstractmethod
    async def save(self, session_id: str, state: WizardSession) -> None: ...

    @abstractmethod
    async def load(self, session_id: str) -> Optional[WizardSession]: ...

    @abstractmethod
    async def discard(self, session_id: str) -> None: ...


# ── Backends ────────────────────────────────────────────────

class InMemoryDraftStore(DraftStore):
    """Process-local store for tests and batch scripts.

    Keeps the encoded JSON rather than the object so a load never hands
    back an alias of live session state.
    """

    def __init__(self, schema_version: int | None = None):
        super().__init__(schema_version)
        self._records: dict[str, str] = {}

    async def save(self, session_id: str, state: WizardSession) -> None:
        self._records[session_id] = json.dumps(encode_draft(state, self.schema_version))

    async def load(self, session_id: str) -> Optional[WizardSession]:
        raw = self._records.get(session_id)
        if raw is None:
            return None
        return decode_draft(raw, session_id, self.schema_version)

    async def discard(self, session_id: str) -> None:
        self._records.pop(session_id, None)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._records

    def put_raw(self, session_id: str, raw: str) -> None:
        self._records[session_id] = raw


class RedisDraftStore(DraftStore):
    def __init__(
        self,
        client: Optional[redis.Redis] = None,
        prefix: str | None = None,
        ttl_seconds: int | None = None,
        schema_version: int | None = None,
    ):
        super().__init__(schema_version)
        self._client = client
        self.prefix = prefix or settings.draft_key_prefix
        self.ttl_seconds = settings.draft_ttl_seconds if ttl_seconds is None else ttl_seconds

    async def _redis(self) -> redis.Redis:
        if self._client is None:
            from fleetwizard.utils.redis_client import get_redis

            self._client = await get_redis()
        return self._client

    async def save(self, session_id: str, state: WizardSession) -> None:
        client = await self._redis()
        payload = json.dumps(encode_draft(state, self.schema_version))
        # Write failures propagate: losing a save silently would lose data
        await client.set(
            draft_key(session_id, self.prefix),
            payload,
            ex=self.ttl_seconds or None,
        )
        logger.debug(f"Draft saved: {session_id}")

    async def load(self, session_id: str) -> Optional[WizardSession]:
        try:
            client = await self._redis()
            raw = await client.get(draft_key(session_id, self.prefix))
        except redis.RedisError as e:
            logger.warning(f"Redis error loading draft {session_id} (starting fresh): {e}")
            return None
        if raw is None:
            return None
        return decode_draft(raw, session_id, self.schema_version)

    async def discard(self, session_id: str) -> None:
        client = await self._redis()
        await client.delete(draft_key(session_id, self.prefix))
        logger.debug(f"Draft discarded: {session_id}")


class SqlDraftStore(DraftStore):
    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        schema_version: int | None = None,
    ):
        super().__init__(schema_version)
        if session_factory is None:
            from fleetwizard.database import async_session

            session_factory = async_session
        self._session_factory = session_factory

    async def save(self, session_id: str, state: WizardSession) -> None:
        payload = encode_draft(state, self.schema_version)
        async with self._session_factory() as db:
            row = await db.get(DraftRecordRow, session_id)
            if row:
                row.flow = state.flow
                row.schema_version = self.schema_version
                row.payload = payload
            else:
                db.add(DraftRecordRow(
                    session_id=session_id,
                    flow=state.flow,
                    schema_version=self.schema_version,
                    payload=payload,
                ))
            await db.commit()
        logger.debug(f"Draft saved: {session_id}")

    async def load(self, session_id: str) -> Optional[WizardSession]:
        async with self._session_factory() as db:
            row = await db.get(DraftRecordRow, session_id)
            if row is None:
                return None
            if row.schema_version != self.schema_version:
                logger.warning(
                    f"Draft {session_id}: schema version {row.schema_version} "
                    f"(expected {self.schema_version}), ignoring"
                )
                return None
            return decode_draft(row.payload, session_id, self.schema_version)

    async def discard(self, session_id: str) -> None:
        async with self._session_factory() as db:
            await db.execute(
                delete(DraftRecordRow).where(DraftRecordRow.session_id == session_id)
            )
            await db.commit()
        logger.debug(f"Draft discarded: {session_id}")


def build_draft_store(backend: str | None = None) -> DraftStore:
    backend = backend or settings.draft_backend
    if backend == "redis":
        return RedisDraftStore()
    if backend == "database":
        return SqlDraftStore()
    if backend == "memory":
        return InMemoryDraftStore()
    raise ValueError(f"Unknown draft backend: {backend}")
