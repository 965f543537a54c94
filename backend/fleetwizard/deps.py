"""Process-wide collaborators for the HTTP layer.

The draft store and the submission coordinator are built once per
process; the coordinator's in-flight set is what refuses a second
concurrent submit for the same session.  SessionLocks serializes the
load-mutate-save cycle of concurrent requests on one session.
"""

import asyncio
import weakref
from typing import Optional

from fleetwizard.services.drafts import DraftStore, build_draft_store
from fleetwizard.services.submission import SubmissionCoordinator, build_commit_client


class SessionLocks:
    """One asyncio.Lock per session id, dropped once nobody holds it.

    Locks are per process.  Several workers sharing a Redis or SQL draft
    store still race each other; commits stay single through the
    idempotency key.
    """

    def __init__(self):
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    def get(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[session_id] = lock
        return lock


_draft_store: Optional[DraftStore] = None
_coordinator: Optional[SubmissionCoordinator] = None
_session_locks = SessionLocks()


def get_draft_store() -> DraftStore:
    global _draft_store
    if _draft_store is None:
        _draft_store = build_draft_store()
    return _draft_store


def get_coordinator() -> SubmissionCoordinator:
    global _coordinator
    if _coordinator is None:
        _coordinator = SubmissionCoordinator(build_commit_client())
    return _coordinator


def get_session_locks() -> SessionLocks:
    return _session_locks
