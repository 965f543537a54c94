"""Commit request / response contract with the backing store."""

from typing import Any

from pydantic import BaseModel


class SubmissionRequest(BaseModel):
    idempotency_key: str
    payload: dict[str, Any]


class CommitResponse(BaseModel):
    transaction_id: str
    # True when the backing store recognised the key and replayed the
    # original result rather than creating a new record
    replayed: bool = False
