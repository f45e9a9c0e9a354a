"""
Process-local implementations of the engine's storage and delivery protocols.

Used by the demo and the tests, and as a reference for real adapters: every
method here has the same contract a database-backed version must honour.
"""

from collections.abc import Iterable
from datetime import datetime
from typing import Any

import structlog

from alert_engine.domain.alerts import ActionDirective, AlertInstance, AlertStatus, TimeLogEntry
from alert_engine.domain.errors import AlertNotFoundError
from alert_engine.domain.models import Observation

logger = structlog.get_logger(__name__)


class InMemoryObservationStore:
    """Append-only observation log."""

    def __init__(self, observations: Iterable[Observation] = ()) -> None:
        self._observations: list[Observation] = list(observations)

    def append(self, observation: Observation) -> None:
        self._observations.append(observation)

    def extend(self, observations: Iterable[Observation]) -> None:
        self._observations.extend(observations)

    def __len__(self) -> int:
        return len(self._observations)

    async def get_observations(
        self,
        patient_id: str,
        metric_keys: frozenset[str] | set[str],
        since: datetime,
        until: datetime,
    ) -> list[Observation]:
        matching = [
            obs
            for obs in self._observations
            if obs.patient_id == patient_id
            and obs.metric_key in metric_keys
            and since <= obs.recorded_at <= until
        ]
        return sorted(matching, key=lambda o: o.recorded_at)


class InMemoryRuleRepository:
    """Rule definitions held as raw dicts, exactly as an admin UI would save them."""

    def __init__(self, definitions: Iterable[dict[str, Any]] = ()) -> None:
        self._definitions: dict[str, dict[str, Any]] = {}
        self._unkeyed: list[dict[str, Any]] = []
        for definition in definitions:
            self.upsert(definition)

    def upsert(self, definition: dict[str, Any]) -> None:
        rule_id = definition.get("id") if isinstance(definition, dict) else None
        if isinstance(rule_id, str):
            self._definitions[rule_id] = definition
        else:
            # kept so the catalog can report it as rejected
            self._unkeyed.append(definition)

    def remove(self, rule_id: str) -> None:
        self._definitions.pop(rule_id, None)

    async def fetch_rule_definitions(self) -> list[dict[str, Any]]:
        return [*self._definitions.values(), *self._unkeyed]


class InMemoryAlertStore:
    def __init__(self) -> None:
        self._alerts: dict[str, AlertInstance] = {}

    def __len__(self) -> int:
        return len(self._alerts)

    async def create_alert(self, alert: AlertInstance) -> AlertInstance:
        if alert.id in self._alerts:
            raise ValueError(f"Alert {alert.id} already exists")
        self._alerts[alert.id] = alert
        return alert

    async def get_alert(self, alert_id: str) -> AlertInstance | None:
        return self._alerts.get(alert_id)

    async def save_alert(self, alert: AlertInstance) -> AlertInstance:
        if alert.id not in self._alerts:
            raise AlertNotFoundError(f"Alert {alert.id} not found")
        self._alerts[alert.id] = alert
        return alert

    async def list_alerts(
        self,
        *,
        organization_id: str | None = None,
        patient_id: str | None = None,
        rule_id: str | None = None,
        dedupe_key: str | None = None,
        statuses: set[AlertStatus] | None = None,
    ) -> list[AlertInstance]:
        return [
            alert
            for alert in self._alerts.values()
            if (organization_id is None or alert.organization_id == organization_id)
            and (patient_id is None or alert.patient_id == patient_id)
            and (rule_id is None or alert.rule_id == rule_id)
            and (dedupe_key is None or alert.dedupe_key == dedupe_key)
            and (statuses is None or alert.status in statuses)
        ]


class RecordingNotificationSink:
    """Collects directives instead of delivering them."""

    def __init__(self) -> None:
        self.directives: list[ActionDirective] = []

    async def dispatch(self, directive: ActionDirective) -> None:
        self.directives.append(directive)
        logger.debug(
            "directive_recorded",
            alert_id=directive.alert_id,
            reason=directive.reason,
            notify_targets=directive.notify_targets,
        )


class InMemoryBillingLedger:
    """Time log entries handed over by alert resolution."""

    def __init__(self) -> None:
        self.entries: list[TimeLogEntry] = []

    async def record_time(self, entry: TimeLogEntry) -> None:
        self.entries.append(entry)

    def total_minutes(self, patient_id: str, billing_code: str | None = None) -> int:
        return sum(
            entry.duration_minutes
            for entry in self.entries
            if entry.patient_id == patient_id
            and entry.billable
            and (billing_code is None or entry.billing_code == billing_code)
        )
