"""Transactions created by the commit endpoint.

`idempotency_key` is unique: a replayed commit request finds the row it
created the first time instead of inserting a second one.
"""

import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import DateTime, Integer, JSON, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from fleetwizard.database import Base


class CommittedTransaction(Base):
    __tablename__ = "committed_transactions"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    idempotency_key: Mapped[str] = mapped_column(
        String(64), unique=True, nullable=False, index=True
    )
    session_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    flow: Mapped[str] = mapped_column(String(50), nullable=False)
    line_count: Mapped[int] = mapped_column(Integer, default=0)
    grand_total: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=0)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
