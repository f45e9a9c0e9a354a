"""
Rule catalog: load, validate and cache alert rule definitions.

Rules arrive as configuration-as-data. They are validated once here; a rule
that fails validation is rejected, reported through ``catalog_errors`` and a
``rule_rejected`` log event, and never evaluated. The validated set is cached
and reloaded once it is older than the configured refresh interval, so a rule
edit takes effect within one interval.
"""

import asyncio
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import structlog
from pydantic import BaseModel, Field, ValidationError

from alert_engine.config import CatalogConfig
from alert_engine.domain.errors import RuleValidationError
from alert_engine.domain.models import AlertRule, Observation, RuleScope, parse_duration
from alert_engine.services.ports import RuleRepository

logger = structlog.get_logger(__name__)

# Operator spellings used by older rule templates
OPERATOR_ALIASES = {
    ">=": "gte",
    "greater_than_or_equal": "gte",
    "<=": "lte",
    "less_than_or_equal": "lte",
    ">": "gt",
    "greater_than": "gt",
    "<": "lt",
    "less_than": "lt",
    "=": "eq",
    "==": "eq",
    "equals": "eq",
    "equal": "eq",
    "average_greater_than": "average_gt",
    "average_less_than": "average_lt",
    "increase": "trend_increasing",
    "increasing": "trend_increasing",
    "decrease": "trend_decreasing",
    "decreasing": "trend_decreasing",
}

_TEMPLATE_PLACEHOLDERS = {
    "{patientId}": "{patient_id}",
    "{metricKey}": "{metric_key}",
    "{ruleId}": "{rule_id}",
}


class CatalogError(BaseModel):
    """A rule definition the catalog refused to load."""

    rule_id: str | None
    rule_name: str | None
    message: str
    detected_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


def _first(raw: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if raw.get(key) is not None:
            return raw[key]
    return None


def _numeric_if_possible(value: Any) -> Any:
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return value
    return value


def normalize_expression(raw: Any) -> dict[str, Any]:
    """Map a loosely-shaped condition dict onto the expression tree schema."""
    if not isinstance(raw, dict):
        raise TypeError(f"expression must be a mapping, got {type(raw).__name__}")

    children = _first(raw, "children", "conditions")
    if isinstance(children, list):
        return {
            "kind": "composite",
            "operator": raw.get("operator"),
            "children": [normalize_expression(child) for child in children],
        }

    operator = raw.get("operator")
    if isinstance(operator, str):
        operator = OPERATOR_ALIASES.get(operator.strip().lower(), operator.strip().lower())

    threshold = _first(raw, "threshold", "value")
    if operator != "eq":
        threshold = _numeric_if_possible(threshold)

    consecutive_days = _first(raw, "consecutive_days", "consecutiveDays")
    if consecutive_days is None and raw.get("consecutive") is True:
        # "consecutive" flag: every day of the evaluation window must qualify
        window = parse_duration(_first(raw, "evaluationWindow", "timeWindow"))
        if isinstance(window, timedelta) and window.days >= 1:
            consecutive_days = window.days

    leaf = {
        "kind": "leaf",
        "metric_key": _first(raw, "metric_key", "metricKey", "metric", "condition"),
        "operator": operator,
        "threshold": threshold,
        "occurrences": _first(raw, "occurrences"),
        "consecutive_days": consecutive_days,
        "minimum_readings": _first(raw, "minimum_readings", "minimumReadings"),
    }
    return {key: value for key, value in leaf.items() if value is not None}


def normalize_rule_definition(raw: dict[str, Any]) -> dict[str, Any]:
    """Map a rule definition (snake_case or legacy camelCase) onto AlertRule fields."""
    organization_id = _first(raw, "organization_id", "organizationId")
    scope = _first(raw, "scope") or (
        RuleScope.ORGANIZATION.value if organization_id else RuleScope.PLATFORM.value
    )

    template = _first(raw, "dedupe_key_template", "dedupeKeyTemplate", "dedupeKey")
    if isinstance(template, str):
        for legacy, current in _TEMPLATE_PLACEHOLDERS.items():
            template = template.replace(legacy, current)

    raw_actions = _first(raw, "actions") or {}
    targets = _first(raw_actions, "notify_targets", "notifyTargets", "notify", "notifications") or []
    if isinstance(targets, str):
        targets = [targets]
    actions = {
        "notify_targets": [str(target).lower() for target in targets],
        "escalate": bool(raw_actions.get("escalate", False))
        or str(raw_actions.get("escalation", "")).upper() == "IMMEDIATE",
        "auto_resolve": bool(_first(raw_actions, "auto_resolve", "autoResolve") or False),
    }

    raw_expression = _first(raw, "expression", "conditions")
    window = _first(raw, "window", "timeWindow", "evaluationWindow")
    if window is None and isinstance(raw_expression, dict):
        window = _first(raw_expression, "evaluationWindow", "timeWindow")

    definition = {
        "id": _first(raw, "id"),
        "name": _first(raw, "name"),
        "description": _first(raw, "description"),
        "severity": _first(raw, "severity"),
        "scope": scope,
        "organization_id": organization_id,
        "priority": _first(raw, "priority"),
        "window": window,
        "expression": normalize_expression(raw_expression),
        "dedupe_key_template": template,
        "cooldown": _first(raw, "cooldown"),
        "actions": actions,
        "is_active": _first(raw, "is_active", "isActive"),
    }
    return {key: value for key, value in definition.items() if value is not None}


def load_rule(raw: dict[str, Any]) -> AlertRule:
    """Validate one raw definition. Raises RuleValidationError if it is malformed."""
    rule_id = raw.get("id") if isinstance(raw, dict) else None
    try:
        return AlertRule.model_validate(normalize_rule_definition(raw))
    except ValidationError as e:
        raise RuleValidationError(rule_id, str(e)) from e
    except (TypeError, AttributeError) as e:
        raise RuleValidationError(rule_id, f"malformed definition: {e}") from e


class RuleCatalog:
    """Cached, validated view of the rule repository."""

    def __init__(
        self,
        repository: RuleRepository,
        config: CatalogConfig | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.repository = repository
        self.config = config or CatalogConfig()
        self._clock = clock or (lambda: datetime.now(UTC))
        self._rules: dict[str, AlertRule] = {}
        self._loaded_at: datetime | None = None
        self._invalidated = False
        self._refresh_lock = asyncio.Lock()
        self.catalog_errors: list[CatalogError] = []
        self.logger = logger.bind(component="rule_catalog")

    @property
    def is_stale(self) -> bool:
        if self._loaded_at is None or self._invalidated:
            return True
        age = self._clock() - self._loaded_at
        return age >= timedelta(seconds=self.config.refresh_interval_seconds)

    async def refresh(self) -> None:
        """Reload and revalidate every rule definition."""
        definitions = await self.repository.fetch_rule_definitions()

        rules: dict[str, AlertRule] = {}
        errors: list[CatalogError] = []
        for raw in definitions:
            try:
                rule = load_rule(raw)
            except RuleValidationError as e:
                name = raw.get("name") if isinstance(raw, dict) else None
                errors.append(CatalogError(rule_id=e.rule_id, rule_name=name, message=e.reason))
                self.logger.warning("rule_rejected", rule_id=e.rule_id, rule_name=name, error=e.reason)
                continue

            if rule.id in rules:
                message = "duplicate rule id"
                errors.append(CatalogError(rule_id=rule.id, rule_name=rule.name, message=message))
                self.logger.warning("rule_rejected", rule_id=rule.id, error=message)
                continue
            rules[rule.id] = rule

        self._rules = rules
        self.catalog_errors = errors
        self._loaded_at = self._clock()
        self._invalidated = False
        self.logger.info("rule_catalog_refreshed", rules_loaded=len(rules), rules_rejected=len(errors))

    async def ensure_fresh(self) -> None:
        """Refresh when stale. A failed refresh keeps serving the previous rule set."""
        async with self._refresh_lock:
            if not self.is_stale:
                return
            try:
                await self.refresh()
            except Exception as e:
                if self._loaded_at is None:
                    raise
                self.logger.error("rule_catalog_refresh_failed", error=str(e))

    def invalidate(self) -> None:
        """Force a reload on next access."""
        self._invalidated = True

    async def list_active_rules(self, organization_id: str) -> list[AlertRule]:
        """Active platform rules plus the organization's own, most severe first, then by priority."""
        await self.ensure_fresh()
        rules = [
            rule
            for rule in self._rules.values()
            if rule.is_active and rule.applies_to(organization_id)
        ]
        return sorted(rules, key=lambda r: (-r.severity.rank, r.priority, r.id))

    async def candidate_rules(self, observation: Observation) -> list[AlertRule]:
        """Active rules in scope whose expression reads the observation's metric."""
        rules = await self.list_active_rules(observation.organization_id)
        return [rule for rule in rules if observation.metric_key in rule.metric_keys]

    async def get_rule(self, rule_id: str) -> AlertRule | None:
        await self.ensure_fresh()
        return self._rules.get(rule_id)
