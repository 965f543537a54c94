"""Step validation: rule sets are data, validate_step() is pure.

Each StepDefinition carries a tuple of rules.  A rule inspects the step
payload (and, for line-aware steps, the session's lines) and reports a
message for one field.  Severity "warning" is reported but never blocks
a transition.

Adding a step means adding a StepDefinition with its rules; the
controller's control flow does not change.
"""

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping, Sequence

from fleetwizard.schemas.wizard import LineItem

ERROR = "error"
WARNING = "warning"

EMAIL_REGEX = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

FieldErrorMap = dict[str, str]


def _is_blank(value: Any) -> bool:
    return value is None or value == "" or value == [] or value == {}


def _as_decimal(value: Any) -> Decimal | None:
    if isinstance(value, bool):
        return None
    try:
        number = Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        return None
    # NaN and Infinity do not compare against bounds
    return number if number.is_finite() else None


def _as_datetime(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    return None


class Rule(ABC):
    """Base for step rules.  Subclasses are frozen dataclasses exposing
    `field`, `message` and `severity`."""

    field: str
    message: str
    severity: str

    @abstractmethod
    def violated(self, data: Mapping[str, Any], lines: Sequence[LineItem]) -> bool:
        """True when the rule fails for this payload."""


@dataclass(frozen=True)
class Required(Rule):
    field: str
    message: str = "This field is required"
    severity: str = ERROR

    def violated(self, data, lines):
        return _is_blank(data.get(self.field))


@dataclass(frozen=True)
class RequiredWhen(Rule):
    """Required when `when_field` holds one of `values`."""
    field: str
    when_field: str
    values: tuple
    message: str = "This field is required"
    severity: str = ERROR

    def violated(self, data, lines):
        if data.get(self.when_field) not in self.values:
            return False
        return _is_blank(data.get(self.field))


@dataclass(frozen=True)
class RequiredUnless(Rule):
    """Required unless `when_field` holds one of `values`."""
    field: str
    when_field: str
    values: tuple
    message: str = "This field is required"
    severity: str = ERROR

    def violated(self, data, lines):
        if data.get(self.when_field) in self.values:
            return False
        return _is_blank(data.get(self.field))


@dataclass(frozen=True)
class Range(Rule):
    """Numeric value within [minimum, maximum]; absent values pass."""
    field: str
    minimum: Decimal | None = None
    maximum: Decimal | None = None
    exclusive_minimum: bool = False
    message: str = "Value is out of range"
    severity: str = ERROR

    def violated(self, data, lines):
        raw = data.get(self.field)
        if _is_blank(raw):
            return False
        value = _as_decimal(raw)
        if value is None:
            return True
        if self.minimum is not None:
            if value < self.minimum or (self.exclusive_minimum and value == self.minimum):
                return True
        if self.maximum is not None and value > self.maximum:
            return True
        return False


@dataclass(frozen=True)
class Percentage(Range):
    field: str
    minimum: Decimal | None = Decimal("0")
    maximum: Decimal | None = Decimal("100")
    exclusive_minimum: bool = False
    message: str = "Must be between 0 and 100"
    severity: str = ERROR


@dataclass(frozen=True)
class DateOrder(Rule):
    """`field` (the end) must fall strictly after `start_field`."""
    start_field: str
    field: str
    message: str = "End must be after start"
    severity: str = ERROR

    def violated(self, data, lines):
        start_raw, end_raw = data.get(self.start_field), data.get(self.field)
        if _is_blank(start_raw) or _is_blank(end_raw):
            return False
        start, end = _as_datetime(start_raw), _as_datetime(end_raw)
        if start is None or end is None:
            return True
        try:
            return end <= start
        except TypeError:
            # naive vs aware timestamps
            return True


@dataclass(frozen=True)
class Pattern(Rule):
    field: str
    regex: re.Pattern = EMAIL_REGEX
    message: str = "Enter a valid email address"
    severity: str = ERROR

    def violated(self, data, lines):
        value = data.get(self.field)
        if _is_blank(value):
            return False
        return not isinstance(value, str) or not self.regex.match(value)


@dataclass(frozen=True)
class MustBeTrue(Rule):
    field: str
    message: str = "Must be accepted"
    severity: str = ERROR

    def violated(self, data, lines):
        return data.get(self.field) is not True


@dataclass(frozen=True)
class RequiresTrue(Rule):
    """`field` may only be filled once `condition_field` is true."""
    field: str
    condition_field: str
    message: str = "Not accepted yet"
    severity: str = ERROR

    def violated(self, data, lines):
        if _is_blank(data.get(self.field)):
            return False
        return data.get(self.condition_field) is not True


@dataclass(frozen=True)
class MinLines(Rule):
    count: int = 1
    field: str = "lines"
    message: str = "Add at least one line"
    severity: str = ERROR

    def violated(self, data, lines):
        return len(lines) < self.count


@dataclass(frozen=True)
class LinesAssigned(Rule):
    """Every line has its subject selected (duplicates start without one)."""
    field: str = "lines"
    message: str = "Every line needs a vehicle"
    severity: str = ERROR

    def violated(self, data, lines):
        return any(not line.subject_ref for line in lines)


# ── Step definitions ────────────────────────────────────────

@dataclass(frozen=True)
class StepDefinition:
    id: str
    order: int
    title: str = ""
    rules: tuple[Rule, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class StepValidation:
    errors: FieldErrorMap
    warnings: FieldErrorMap

    @property
    def is_valid(self) -> bool:
        return not self.errors


def validate_step(
    step: StepDefinition,
    data: Mapping[str, Any] | None,
    lines: Sequence[LineItem] = (),
) -> StepValidation:
    """Run a step's rules against its payload.

    The first failing rule for a field wins, so messages are stable for a
    given rule order.
    """
    data = data or {}
    errors: FieldErrorMap = {}
    warnings: FieldErrorMap = {}
    for rule in step.rules:
        target = errors if rule.severity == ERROR else warnings
        if rule.field in target:
            continue
        if rule.violated(data, lines):
            target[rule.field] = rule.message
    return StepValidation(errors=errors, warnings=warnings)
