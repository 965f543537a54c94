"""Commit endpoint backed by the local transactions table.

Endpoints:
    POST /    Create a transaction; requires an Idempotency-Key header.
              201 when created, 200 when the key was seen before and the
              original transaction is replayed.
"""

from typing import Any

from fastapi import APIRouter, Body, Depends, Header, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from fleetwizard.database import get_db
from fleetwizard.schemas.submission import CommitResponse, SubmissionRequest
from fleetwizard.services.transactions import commit_transaction

router = APIRouter()


@router.post("/", response_model=CommitResponse, status_code=status.HTTP_201_CREATED)
async def create_transaction(
    response: Response,
    payload: dict[str, Any] = Body(...),
    idempotency_key: str = Header(..., alias="Idempotency-Key", min_length=1, max_length=64),
    db: AsyncSession = Depends(get_db),
):
    result = await commit_transaction(
        db, SubmissionRequest(idempotency_key=idempotency_key, payload=payload)
    )
    if result.replayed:
        response.status_code = status.HTTP_200_OK
    return result
