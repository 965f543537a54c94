"""Persisted wizard drafts.

One row per active session, overwritten on every save and deleted on
commit or explicit cancel.  `payload` holds the serialized session; the
schema version is kept in its own column so stale drafts can be told
apart without parsing the payload.
"""

from datetime import datetime

from sqlalchemy import DateTime, Integer, JSON, String
from sqlalchemy.orm import Mapped, mapped_column

from fleetwizard.database import Base


class DraftRecordRow(Base):
    __tablename__ = "draft_records"

    session_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    flow: Mapped[str] = mapped_column(String(50), nullable=False)
    schema_version: Mapped[int] = mapped_column(Integer, nullable=False)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )
