"""
Step matching rules.

A rule is a closed tagged variant (``page`` or ``event``). Rules are validated
once, when a funnel version is published (or previewed); evaluation afterwards
is a pure predicate that never raises on odd record data.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from functools import lru_cache
from typing import Annotated, Any, Dict, List, Literal, Optional, Pattern, Sequence, Union

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from .errors import FunnelValidationError


STEP_KINDS = ("start", "page", "event", "decision", "conversion")
PAGE_FIELDS = ("url", "path", "referrer", "title")
RECORD_KINDS = ("page_view", "event")

Operator = Literal["equals", "contains", "regex", "gt", "lt"]


@dataclass(frozen=True)
class Activity:
    """One activity record as seen by the matcher. ``seq`` is the arrival order."""

    identity: str
    timestamp: datetime
    kind: str = "event"
    event_name: Optional[str] = None
    url: Optional[str] = None
    path: Optional[str] = None
    referrer: Optional[str] = None
    title: Optional[str] = None
    properties: Dict[str, Any] = field(default_factory=dict)
    source: Optional[str] = None
    medium: Optional[str] = None
    campaign: Optional[str] = None
    device: Optional[str] = None
    seq: int = 0


def _check_operand(operator: str, value: Any, *, numeric_compare: bool) -> None:
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValueError("value is required")
    if operator == "regex":
        if not isinstance(value, str):
            raise ValueError("regex value must be a string")
        try:
            re.compile(value)
        except re.error as exc:
            raise ValueError(f"invalid regex {value!r}: {exc}") from exc
    if operator in ("gt", "lt") and numeric_compare:
        if isinstance(value, bool):
            raise ValueError(f"{operator} needs a numeric value")
        try:
            float(value)
        except (TypeError, ValueError) as exc:
            raise ValueError(f"{operator} needs a numeric value, got {value!r}") from exc


class PropertyFilter(BaseModel):
    key: str = Field(min_length=1, max_length=255)
    operator: Operator = "equals"
    value: Any = None

    @model_validator(mode="after")
    def _validate_value(self) -> "PropertyFilter":
        _check_operand(self.operator, self.value, numeric_compare=True)
        return self


class PageRule(BaseModel):
    type: Literal["page"]
    field: Literal["url", "path", "referrer", "title"] = "url"
    operator: Operator = "contains"
    value: str

    @model_validator(mode="after")
    def _validate_value(self) -> "PageRule":
        _check_operand(self.operator, self.value, numeric_compare=False)
        return self


class EventRule(BaseModel):
    type: Literal["event"]
    event_name: str = Field(min_length=1, max_length=255)
    filters: List[PropertyFilter] = Field(default_factory=list)

    @field_validator("event_name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("event_name must not be blank")
        return value


MatchingRule = Annotated[Union[PageRule, EventRule], Field(discriminator="type")]


class StepDefinition(BaseModel):
    order: int = Field(ge=0)
    kind: Literal["start", "page", "event", "decision", "conversion"]
    label: str = Field(min_length=1, max_length=255)
    rules: List[MatchingRule] = Field(default_factory=list)
    exit_rules: List[MatchingRule] = Field(default_factory=list)

    @model_validator(mode="after")
    def _exit_rules_only_on_decisions(self) -> "StepDefinition":
        if self.exit_rules and self.kind != "decision":
            raise ValueError(f"step {self.label!r}: exit_rules are only allowed on decision steps")
        return self


class FunnelSnapshot(BaseModel):
    """The publishable part of a funnel version."""

    window_days: int = Field(ge=1, le=365)
    steps: List[StepDefinition]

    @model_validator(mode="after")
    def _validate_structure(self) -> "FunnelSnapshot":
        problems: List[str] = []
        starts = [s for s in self.steps if s.kind == "start"]
        if len(starts) != 1:
            problems.append(f"funnel must have exactly one start step (found {len(starts)})")
        elif self.steps[0].kind != "start":
            problems.append("the start step must be the first step")
        if not any(s.kind == "conversion" for s in self.steps):
            problems.append("funnel must have at least one conversion step")
        orders = [s.order for s in self.steps]
        dupes = sorted({o for o in orders if orders.count(o) > 1})
        if dupes:
            problems.append(f"duplicate step order(s): {dupes}")
        elif any(b <= a for a, b in zip(orders, orders[1:])):
            problems.append("step order must be strictly increasing")
        if problems:
            raise ValueError("; ".join(problems))
        return self


def _format_validation_error(exc: ValidationError) -> List[str]:
    messages: List[str] = []
    for err in exc.errors():
        loc = ".".join(str(part) for part in err.get("loc", ()) if part != "__root__")
        msg = str(err.get("msg", "invalid value"))
        if msg.startswith("Value error, "):
            msg = msg[len("Value error, "):]
        messages.append(f"{loc}: {msg}" if loc else msg)
    return messages


def validate_definition(steps: Sequence[Dict[str, Any]], window_days: Any) -> List[str]:
    """Return a list of human-readable problems; empty when the definition is publishable."""
    try:
        FunnelSnapshot.model_validate({"steps": list(steps or []), "window_days": window_days})
    except ValidationError as exc:
        return _format_validation_error(exc)
    return []


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------


@lru_cache(maxsize=2048)
def _regex(pattern: str) -> Pattern[str]:
    return re.compile(pattern)


@lru_cache(maxsize=1024)
def _glob(pattern: str) -> Pattern[str]:
    return re.compile(".*".join(re.escape(part) for part in pattern.split("*")))


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def _match_page_value(operator: str, actual: Optional[str], expected: str) -> bool:
    if not actual:
        return False
    if operator == "equals":
        if "*" in expected:
            return _glob(expected).fullmatch(actual) is not None
        return actual == expected
    if operator == "contains":
        return expected.lower() in actual.lower()
    if operator == "regex":
        return _regex(expected).search(actual) is not None
    if operator == "gt":
        return actual > expected
    if operator == "lt":
        return actual < expected
    return False


def _match_property(flt: PropertyFilter, properties: Dict[str, Any]) -> bool:
    if flt.key not in properties:
        return False
    actual = properties[flt.key]
    if actual is None:
        return False
    op = flt.operator
    if op == "equals":
        return actual == flt.value or str(actual) == str(flt.value)
    if op == "contains":
        if isinstance(actual, (list, tuple, set)):
            return flt.value in actual
        return str(flt.value).lower() in str(actual).lower()
    if op == "regex":
        return _regex(str(flt.value)).search(str(actual)) is not None
    number = _as_number(actual)
    if number is None:
        return False
    if op == "gt":
        return number > float(flt.value)
    if op == "lt":
        return number < float(flt.value)
    return False


def matches(rule: Union[PageRule, EventRule], record: Activity) -> bool:
    if isinstance(rule, PageRule):
        if record.kind != "page_view":
            return False
        return _match_page_value(rule.operator, getattr(record, rule.field), rule.value)
    if isinstance(rule, EventRule):
        if record.kind != "event" or record.event_name != rule.event_name:
            return False
        props = record.properties or {}
        return all(_match_property(f, props) for f in rule.filters)
    return False


def step_matches(step: StepDefinition, record: Activity) -> bool:
    """Any rule matching is enough; a step without rules never matches."""
    return any(matches(rule, record) for rule in step.rules)


def step_exit_matches(step: StepDefinition, record: Activity) -> bool:
    return any(matches(rule, record) for rule in step.exit_rules)


@dataclass
class CompiledFunnel:
    funnel_id: str
    version_id: str
    window: timedelta
    steps: List[StepDefinition]

    @property
    def conversion_indices(self) -> List[int]:
        return [i for i, s in enumerate(self.steps) if s.kind == "conversion"]

    def is_conversion(self, index: int) -> bool:
        return self.steps[index].kind == "conversion"

    def touches(self, record: Activity) -> bool:
        """True when the record can matter to this funnel at all."""
        return any(step_matches(s, record) or step_exit_matches(s, record) for s in self.steps)


def compile_funnel(
    steps: Sequence[Dict[str, Any]],
    window_days: Any,
    *,
    funnel_id: str = "",
    version_id: str = "",
) -> CompiledFunnel:
    """Validate a stored definition and turn it into an evaluable funnel."""
    try:
        snapshot = FunnelSnapshot.model_validate({"steps": list(steps or []), "window_days": window_days})
    except ValidationError as exc:
        raise FunnelValidationError(_format_validation_error(exc)) from exc
    return CompiledFunnel(
        funnel_id=funnel_id,
        version_id=version_id,
        window=timedelta(days=snapshot.window_days),
        steps=list(snapshot.steps),
    )
