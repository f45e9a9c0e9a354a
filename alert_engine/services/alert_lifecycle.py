"""
Alert instance lifecycle: acknowledgement, claims, resolution, SLA escalation, triage.

PENDING -> ACKNOWLEDGED -> RESOLVED, or PENDING -> RESOLVED directly. RESOLVED
is terminal. Resolution with time spent and a billing code hands a TimeLogEntry
to the billing collaborator; a billing failure is logged and does not undo the
resolution.
"""

from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

import structlog

from alert_engine.config import EngineConfig
from alert_engine.domain.alerts import (
    SYSTEM_ACTOR,
    ActionDirective,
    ActionTaken,
    AlertInstance,
    AlertStatus,
    ResolutionPayload,
    TimeLogEntry,
)
from alert_engine.domain.errors import AlertNotFoundError
from alert_engine.domain.models import Severity
from alert_engine.services.locks import KeyedLocks
from alert_engine.services.ports import AlertStore, BillingCollaborator, NotificationSink

logger = structlog.get_logger(__name__)

OPEN_STATUSES = {AlertStatus.PENDING, AlertStatus.ACKNOWLEDGED}


@dataclass
class ResolutionOutcome:
    """A resolved alert plus whatever was handed to billing."""

    alert: AlertInstance
    time_log: TimeLogEntry | None = None
    billing_error: str | None = None


class AlertLifecycleService:
    """Clinician-facing transitions and time-based escalation of alert instances."""

    def __init__(
        self,
        alert_store: AlertStore,
        notification_sink: NotificationSink | None = None,
        billing: BillingCollaborator | None = None,
        config: EngineConfig | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.alert_store = alert_store
        self.notification_sink = notification_sink
        self.billing = billing
        self.config = config or EngineConfig()
        self._clock = clock or (lambda: datetime.now(UTC))
        self._locks: KeyedLocks[str] = KeyedLocks()
        self.logger = logger.bind(component="alert_lifecycle")

    def sla_deadline(self, severity: Severity, triggered_at: datetime) -> datetime:
        return triggered_at + timedelta(minutes=self.config.sla_minutes[severity])

    async def get_alert(self, alert_id: str) -> AlertInstance:
        alert = await self.alert_store.get_alert(alert_id)
        if alert is None:
            raise AlertNotFoundError(f"Alert {alert_id} not found")
        return alert

    async def acknowledge_alert(
        self, alert_id: str, clinician_id: str, now: datetime | None = None
    ) -> AlertInstance:
        async with self._locks.hold(alert_id):
            alert = await self.get_alert(alert_id)
            acknowledged = alert.acknowledge(clinician_id, now or self._clock())
            await self.alert_store.save_alert(acknowledged)

        self.logger.info("alert_acknowledged", alert_id=alert_id, clinician_id=clinician_id)
        return acknowledged

    async def claim_alert(
        self, alert_id: str, clinician_id: str, now: datetime | None = None
    ) -> AlertInstance:
        """Take ownership of an open alert. Raises AlertClaimConflictError if someone else has it."""
        async with self._locks.hold(alert_id):
            alert = await self.get_alert(alert_id)
            claimed = alert.claim(clinician_id, now or self._clock())
            await self.alert_store.save_alert(claimed)

        self.logger.info("alert_claimed", alert_id=alert_id, clinician_id=clinician_id)
        return claimed

    async def unclaim_alert(
        self, alert_id: str, clinician_id: str, now: datetime | None = None
    ) -> AlertInstance:
        async with self._locks.hold(alert_id):
            alert = await self.get_alert(alert_id)
            released = alert.unclaim(clinician_id, now or self._clock())
            await self.alert_store.save_alert(released)

        self.logger.info("alert_unclaimed", alert_id=alert_id, clinician_id=clinician_id)
        return released

    async def release_stale_claims(self, now: datetime | None = None) -> list[AlertInstance]:
        """Release claims on open alerts held longer than ``claim_timeout_minutes``."""
        at = now or self._clock()
        cutoff = at - timedelta(minutes=self.config.claim_timeout_minutes)
        released: list[AlertInstance] = []

        for alert in await self.alert_store.list_alerts(statuses=OPEN_STATUSES):
            if alert.claimed_at is None or alert.claimed_at >= cutoff:
                continue
            async with self._locks.hold(alert.id):
                current = await self.get_alert(alert.id)
                if not current.is_open or current.claimed_at is None or current.claimed_at >= cutoff:
                    continue
                updated = current.release_claim(at)
                await self.alert_store.save_alert(updated)

            released.append(updated)
            self.logger.warning(
                "alert_claim_auto_released",
                alert_id=updated.id,
                claimed_by=current.claimed_by,
                claimed_minutes=int((at - current.claimed_at).total_seconds() // 60),
            )

        return released

    async def resolve_alert(
        self, alert_id: str, payload: ResolutionPayload, now: datetime | None = None
    ) -> ResolutionOutcome:
        """Close an alert with clinical documentation. Raises InvalidTransitionError if closed."""
        at = now or self._clock()
        async with self._locks.hold(alert_id):
            alert = await self.get_alert(alert_id)
            resolved = alert.resolve(payload, at)
            await self.alert_store.save_alert(resolved)

        self.logger.info(
            "alert_resolved",
            alert_id=alert_id,
            resolved_by=payload.resolved_by,
            action_taken=payload.action_taken.value,
            time_spent_minutes=payload.time_spent_minutes,
        )

        outcome = ResolutionOutcome(alert=resolved)
        if payload.is_billable and self.billing is not None:
            entry = TimeLogEntry(
                alert_id=resolved.id,
                patient_id=resolved.patient_id,
                clinician_id=payload.resolved_by,
                activity=f"Alert Resolution - {payload.action_taken.value.replace('_', ' ').title()}",
                duration_minutes=payload.time_spent_minutes,  # type: ignore[arg-type]
                billing_code=payload.billing_code,  # type: ignore[arg-type]
                notes=payload.resolution_notes,
                logged_at=at,
            )
            try:
                await self.billing.record_time(entry)
                outcome.time_log = entry
            except Exception as e:
                self.logger.error("billing_handoff_failed", alert_id=alert_id, error=str(e))
                outcome.billing_error = str(e)
        return outcome

    async def auto_resolve(self, alert: AlertInstance, now: datetime) -> AlertInstance:
        """Resolve on behalf of the system when the rule no longer matches."""
        payload = ResolutionPayload(
            resolved_by=SYSTEM_ACTOR,
            resolution_notes="Auto-resolved: alert condition no longer met",
            action_taken=ActionTaken.NO_PATIENT_CONTACT,
        )
        outcome = await self.resolve_alert(alert.id, payload, now)
        return outcome.alert

    async def escalate_overdue(self, now: datetime | None = None) -> list[AlertInstance]:
        """
        Escalate open alerts whose SLA breach is older than the severity's delay.

        Each alert is escalated at most once by this sweep.
        """
        at = now or self._clock()
        escalated: list[AlertInstance] = []

        for alert in await self.alert_store.list_alerts(statuses=OPEN_STATUSES):
            if alert.escalated_at is not None:
                continue
            delay = self.config.escalation_delay_minutes.get(alert.severity)
            if delay is None or at < alert.sla_breach_at + timedelta(minutes=delay):
                continue

            minutes_overdue = int((at - alert.sla_breach_at).total_seconds() // 60)
            reason = f"Automatic escalation: SLA breach ({minutes_overdue} minutes overdue)"
            async with self._locks.hold(alert.id):
                current = await self.get_alert(alert.id)
                if not current.is_open or current.escalated_at is not None:
                    continue
                updated = current.escalate(reason, at)
                await self.alert_store.save_alert(updated)

            escalated.append(updated)
            self.logger.warning(
                "alert_escalated",
                alert_id=updated.id,
                severity=updated.severity.value,
                minutes_overdue=minutes_overdue,
            )
            await self._dispatch(
                ActionDirective(
                    alert_id=updated.id,
                    rule_id=updated.rule_id,
                    patient_id=updated.patient_id,
                    organization_id=updated.organization_id,
                    severity=updated.severity,
                    notify_targets=list(self.config.escalation_targets),
                    escalate=True,
                    reason="sla_breach",
                )
            )

        return escalated

    async def triage_queue(self, organization_id: str | None = None) -> list[AlertInstance]:
        """Open alerts: most severe first, then highest risk, earliest SLA deadline, oldest."""
        alerts = await self.alert_store.list_alerts(
            organization_id=organization_id, statuses=OPEN_STATUSES
        )
        return sorted(
            alerts,
            key=lambda a: (-a.severity.rank, -a.risk_score, a.sla_breach_at, a.triggered_at),
        )

    async def _dispatch(self, directive: ActionDirective) -> None:
        if self.notification_sink is None:
            return
        try:
            await self.notification_sink.dispatch(directive)
        except Exception as e:
            self.logger.error(
                "directive_dispatch_failed",
                alert_id=directive.alert_id,
                reason=directive.reason,
                error=str(e),
            )
