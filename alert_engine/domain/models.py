"""
Domain models for clinical observation alerting.

These models represent the core business concepts and are framework-agnostic.
Rules are plain configuration-as-data, so everything that can be checked about
a rule is checked here, once, when the rule is constructed.
"""

import math
import re
import uuid
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import (
    BaseModel,
    ConfigDict,
    Discriminator,
    Field,
    Tag,
    field_validator,
    model_validator,
)

DEFAULT_DEDUPE_KEY_TEMPLATE = "{rule_id}:{patient_id}"

_DURATION_PATTERN = re.compile(
    r"^\s*(\d+(?:\.\d+)?)\s*(s|secs?|seconds?|m|mins?|minutes?|h|hrs?|hours?|d|days?|w|weeks?)\s*$",
    re.IGNORECASE,
)
_DURATION_UNITS = {"s": "seconds", "m": "minutes", "h": "hours", "d": "days", "w": "weeks"}


def parse_duration(value: Any) -> Any:
    """
    Parse shorthand durations such as "30m", "24h", "7d" or "3 days".

    Numbers are taken as seconds. Anything else is returned untouched so that
    pydantic can still parse ISO 8601 durations and "HH:MM:SS" strings.
    """
    if isinstance(value, timedelta) or isinstance(value, bool):
        return value
    if isinstance(value, int | float):
        return timedelta(seconds=value)
    if isinstance(value, str):
        match = _DURATION_PATTERN.match(value)
        if match:
            amount, unit = match.groups()
            return timedelta(**{_DURATION_UNITS[unit[0].lower()]: float(amount)})
    return value


class Severity(str, Enum):
    """Alert severity levels, lowest first."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {Severity.LOW: 1, Severity.MEDIUM: 2, Severity.HIGH: 3, Severity.CRITICAL: 4}


class RuleScope(str, Enum):
    """Platform rules apply to every organization; organization rules to one."""

    PLATFORM = "platform"
    ORGANIZATION = "organization"


class ObservationSource(str, Enum):
    DEVICE = "device"
    MANUAL = "manual"
    STAFF = "staff"


class ComparisonOperator(str, Enum):
    """Leaf condition operators."""

    GTE = "gte"
    LTE = "lte"
    GT = "gt"
    LT = "lt"
    EQ = "eq"
    AVERAGE_GT = "average_gt"
    AVERAGE_LT = "average_lt"
    TREND_INCREASING = "trend_increasing"
    TREND_DECREASING = "trend_decreasing"

    @property
    def is_average(self) -> bool:
        return self in (ComparisonOperator.AVERAGE_GT, ComparisonOperator.AVERAGE_LT)

    @property
    def is_trend(self) -> bool:
        return self in (ComparisonOperator.TREND_INCREASING, ComparisonOperator.TREND_DECREASING)


class LogicalOperator(str, Enum):
    AND = "AND"
    OR = "OR"


class CodedValue(BaseModel):
    """A categorical answer, e.g. a questionnaire choice."""

    model_config = ConfigDict(frozen=True)

    code: str
    display: str | None = None
    system: str | None = None


class Observation(BaseModel):
    """A single patient measurement. Read-only to the engine."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    patient_id: str
    organization_id: str
    metric_key: str
    value: float | str | CodedValue
    recorded_at: datetime
    source: ObservationSource = ObservationSource.DEVICE
    context: dict[str, str] = Field(default_factory=dict)

    @field_validator("recorded_at")
    @classmethod
    def assume_utc(cls, v: datetime) -> datetime:
        # Naive timestamps come from devices that report UTC
        return v if v.tzinfo else v.replace(tzinfo=UTC)

    @property
    def numeric_value(self) -> float | None:
        """The value as a number, or None for coded and free-text answers."""
        if isinstance(self.value, CodedValue):
            return None
        try:
            number = float(self.value)
        except ValueError:
            return None
        return None if math.isnan(number) else number

    @property
    def comparable_value(self) -> float | str:
        if isinstance(self.value, CodedValue):
            return self.value.code
        return self.value


class ConditionLeaf(BaseModel):
    """A single comparison against one metric's observations in the window."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["leaf"] = "leaf"
    metric_key: str = Field(min_length=1)
    operator: ComparisonOperator
    threshold: float | str | None = None
    occurrences: int = Field(default=1, ge=1)
    consecutive_days: int | None = Field(default=None, ge=1)
    minimum_readings: int = Field(default=1, ge=1)

    @model_validator(mode="after")
    def check_threshold(self) -> "ConditionLeaf":
        if self.operator.is_trend:
            if self.threshold is not None and (
                not isinstance(self.threshold, float) or self.threshold < 0
            ):
                raise ValueError("trend threshold must be a non-negative number")
        elif self.operator == ComparisonOperator.EQ:
            if self.threshold is None:
                raise ValueError("eq condition requires a threshold")
        elif not isinstance(self.threshold, float):
            raise ValueError(f"{self.operator.value} condition requires a numeric threshold")
        return self

    @property
    def trend_threshold(self) -> float:
        return float(self.threshold) if self.threshold is not None else 0.0


def _expression_kind(value: Any) -> str | None:
    if isinstance(value, dict):
        return value.get("kind") or ("composite" if "children" in value else "leaf")
    return getattr(value, "kind", None)


class CompositeCondition(BaseModel):
    """AND/OR over child expressions."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["composite"] = "composite"
    operator: LogicalOperator
    children: list["Expression"] = Field(min_length=1)

    @field_validator("operator", mode="before")
    @classmethod
    def upper_operator(cls, v: Any) -> Any:
        return v.upper() if isinstance(v, str) else v


Expression = Annotated[
    Annotated[ConditionLeaf, Tag("leaf")] | Annotated[CompositeCondition, Tag("composite")],
    Discriminator(_expression_kind),
]

CompositeCondition.model_rebuild()


def referenced_metric_keys(expression: ConditionLeaf | CompositeCondition) -> frozenset[str]:
    """All metric keys an expression tree reads."""
    if isinstance(expression, ConditionLeaf):
        return frozenset({expression.metric_key})
    keys: set[str] = set()
    for child in expression.children:
        keys |= referenced_metric_keys(child)
    return frozenset(keys)


class AlertActions(BaseModel):
    model_config = ConfigDict(frozen=True)

    notify_targets: list[str] = Field(default_factory=list)
    escalate: bool = False
    auto_resolve: bool = False


class AlertRule(BaseModel):
    """A configured condition plus the metadata needed to turn a match into an alert."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    description: str | None = None
    severity: Severity
    scope: RuleScope = RuleScope.PLATFORM
    organization_id: str | None = None
    priority: int = 0
    window: timedelta
    expression: Expression
    dedupe_key_template: str = DEFAULT_DEDUPE_KEY_TEMPLATE
    cooldown: timedelta = timedelta(0)
    actions: AlertActions = Field(default_factory=AlertActions)
    is_active: bool = True

    @field_validator("severity", "scope", mode="before")
    @classmethod
    def lower_enum_values(cls, v: Any) -> Any:
        return v.lower() if isinstance(v, str) else v

    @field_validator("window", "cooldown", mode="before")
    @classmethod
    def parse_durations(cls, v: Any) -> Any:
        return parse_duration(v)

    @field_validator("window", "cooldown")
    @classmethod
    def non_negative(cls, v: timedelta) -> timedelta:
        if v < timedelta(0):
            raise ValueError("durations must be non-negative")
        return v

    @field_validator("dedupe_key_template")
    @classmethod
    def check_dedupe_template(cls, v: str) -> str:
        if "{patient_id}" not in v:
            raise ValueError("dedupe_key_template must contain {patient_id}")
        try:
            v.format(patient_id="p", metric_key="m", rule_id="r")
        except (KeyError, IndexError, ValueError) as e:
            raise ValueError(f"dedupe_key_template has unsupported placeholders: {e}") from e
        return v

    @model_validator(mode="after")
    def check_scope(self) -> "AlertRule":
        if self.scope == RuleScope.ORGANIZATION and not self.organization_id:
            raise ValueError("organization-scoped rules require organization_id")
        if self.scope == RuleScope.PLATFORM and self.organization_id:
            raise ValueError("platform rules cannot carry an organization_id")
        return self

    @property
    def metric_keys(self) -> frozenset[str]:
        return referenced_metric_keys(self.expression)

    def applies_to(self, organization_id: str) -> bool:
        return self.scope == RuleScope.PLATFORM or self.organization_id == organization_id

    def dedupe_key(self, patient_id: str, metric_key: str) -> str:
        return self.dedupe_key_template.format(
            patient_id=patient_id, metric_key=metric_key, rule_id=self.id
        )


class LeafEvidence(BaseModel):
    """What a leaf condition saw and why it did or did not match."""

    kind: Literal["leaf"] = "leaf"
    metric_key: str
    operator: ComparisonOperator
    threshold: float | str | None
    matched: bool
    observation_count: int = 0
    qualifying_count: int = 0
    matched_values: list[float | str] = Field(default_factory=list)
    matched_observation_ids: list[str] = Field(default_factory=list)
    average: float | None = None
    change: float | None = None
    slope: float | None = None
    streak_days: int | None = None
    reason: str | None = None


class CompositeEvidence(BaseModel):
    """Evidence for an AND/OR node; only children that were evaluated appear."""

    kind: Literal["composite"] = "composite"
    operator: LogicalOperator
    matched: bool
    children: list["Evidence"] = Field(default_factory=list)
    short_circuited: bool = False


Evidence = Annotated[LeafEvidence | CompositeEvidence, Field(discriminator="kind")]

CompositeEvidence.model_rebuild()
