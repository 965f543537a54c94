"""Result values returned by the controller and the submission coordinator.

These are data, not exceptions: a failed validation gate or a failed
commit leaves the session editable and the caller decides how to show it.
"""

from dataclasses import dataclass, field


@dataclass(frozen=True)
class Transition:
    current_step: int
    step_id: str
    warnings: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ValidationFailed:
    step: int
    step_id: str
    errors: dict[str, str]
    warnings: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class Committed:
    transaction_id: str
    idempotency_key: str
    replayed: bool = False


@dataclass(frozen=True)
class Failed:
    reason: str
    idempotency_key: str
    # True when the outcome was unknown and a retry reuses the same key
    retryable: bool = True


@dataclass
class BulkResult:
    succeeded: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
