"""Aggregate model imports for Alembic auto-detection."""

from fleetwizard.models.draft_record import DraftRecordRow  # noqa: F401
from fleetwizard.models.transaction import CommittedTransaction  # noqa: F401
