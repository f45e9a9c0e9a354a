"""
Alert instances, their resolution workflow, and evaluation outcomes.

Status transitions return new instances (``model_copy``) instead of mutating in
place, so a store only ever sees complete versions of an alert.
"""

import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator

from alert_engine.domain.errors import AlertClaimConflictError, InvalidTransitionError
from alert_engine.domain.models import CompositeEvidence, Evidence, LeafEvidence, Severity

SYSTEM_ACTOR = "system"

# Base risk per severity; deviation beyond the threshold adds to it, capped at 10
SEVERITY_RISK_WEIGHTS = {
    Severity.CRITICAL: 10.0,
    Severity.HIGH: 8.0,
    Severity.MEDIUM: 5.0,
    Severity.LOW: 2.0,
}
MAX_RISK_SCORE = 10.0


class AlertStatus(str, Enum):
    PENDING = "pending"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"


class ActionTaken(str, Enum):
    """Clinical follow-up recorded when an alert is resolved."""

    PHONE_CALL = "phone_call"
    VIDEO_CALL = "video_call"
    IN_PERSON_VISIT = "in_person_visit"
    SECURE_MESSAGE = "secure_message"
    MEDICATION_ADJUSTMENT = "medication_adjustment"
    REFERRAL = "referral"
    PATIENT_EDUCATION = "patient_education"
    CARE_COORDINATION = "care_coordination"
    MEDICATION_RECONCILIATION = "medication_reconciliation"
    NO_PATIENT_CONTACT = "no_patient_contact"


class PatientOutcome(str, Enum):
    IMPROVED = "improved"
    STABLE = "stable"
    DECLINED = "declined"
    NO_CHANGE = "no_change"
    PATIENT_UNREACHABLE = "patient_unreachable"


class AuditEntry(BaseModel):
    """Append-only record of something that happened to an alert."""

    action: str
    actor: str
    at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    details: dict[str, Any] = Field(default_factory=dict)


class ResolutionPayload(BaseModel):
    """Clinical documentation required to close an alert."""

    resolved_by: str = Field(min_length=1)
    resolution_notes: str = Field(min_length=10)
    action_taken: ActionTaken
    patient_outcome: PatientOutcome | None = None
    time_spent_minutes: int | None = Field(default=None, ge=1)
    billing_code: str | None = None

    @field_validator("resolution_notes", mode="before")
    @classmethod
    def strip_notes(cls, v: Any) -> Any:
        return v.strip() if isinstance(v, str) else v

    @field_validator("action_taken", "patient_outcome", mode="before")
    @classmethod
    def lower_enum_values(cls, v: Any) -> Any:
        return v.lower() if isinstance(v, str) else v

    @property
    def is_billable(self) -> bool:
        return self.time_spent_minutes is not None and bool(self.billing_code)


class AlertInstance(BaseModel):
    """A triggered alert and everything that has happened to it since."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    rule_id: str
    rule_name: str
    patient_id: str
    organization_id: str
    severity: Severity
    status: AlertStatus = AlertStatus.PENDING
    triggered_at: datetime
    dedupe_key: str
    metric_key: str
    message: str
    evidence: Evidence
    sla_breach_at: datetime
    risk_score: float = Field(default=0.0, ge=0.0, le=MAX_RISK_SCORE)

    claimed_by: str | None = None
    claimed_at: datetime | None = None

    acknowledged_at: datetime | None = None
    acknowledged_by: str | None = None

    resolved_at: datetime | None = None
    resolved_by: str | None = None
    resolution_notes: str | None = None
    action_taken: ActionTaken | None = None
    patient_outcome: PatientOutcome | None = None
    time_spent_minutes: int | None = None
    billing_code: str | None = None

    escalated_at: datetime | None = None
    escalation_level: int = 0
    escalation_reason: str | None = None

    audit_trail: list[AuditEntry] = Field(default_factory=list)

    @property
    def is_open(self) -> bool:
        return self.status != AlertStatus.RESOLVED

    def with_audit(self, entry: AuditEntry) -> "AlertInstance":
        """Audit append is the only change allowed after resolution."""
        return self.model_copy(update={"audit_trail": [*self.audit_trail, entry]})

    def acknowledge(self, clinician_id: str, at: datetime) -> "AlertInstance":
        if self.status != AlertStatus.PENDING:
            raise InvalidTransitionError(
                f"Alert {self.id} is {self.status.value}; only pending alerts can be acknowledged"
            )
        acknowledged = self.model_copy(
            update={
                "status": AlertStatus.ACKNOWLEDGED,
                "acknowledged_at": at,
                "acknowledged_by": clinician_id,
            }
        )
        return acknowledged.with_audit(AuditEntry(action="acknowledged", actor=clinician_id, at=at))

    def resolve(self, payload: ResolutionPayload, at: datetime) -> "AlertInstance":
        if self.status == AlertStatus.RESOLVED:
            raise InvalidTransitionError(f"Alert {self.id} is already resolved")
        resolved = self.model_copy(
            update={
                "status": AlertStatus.RESOLVED,
                "resolved_at": at,
                "resolved_by": payload.resolved_by,
                "resolution_notes": payload.resolution_notes,
                "action_taken": payload.action_taken,
                "patient_outcome": payload.patient_outcome,
                "time_spent_minutes": payload.time_spent_minutes,
                "billing_code": payload.billing_code,
            }
        )
        return resolved.with_audit(
            AuditEntry(
                action="resolved",
                actor=payload.resolved_by,
                at=at,
                details={
                    "previous_status": self.status.value,
                    "action_taken": payload.action_taken.value,
                    "time_spent_minutes": payload.time_spent_minutes,
                },
            )
        )

    def escalate(self, reason: str, at: datetime) -> "AlertInstance":
        if self.status == AlertStatus.RESOLVED:
            raise InvalidTransitionError(f"Alert {self.id} is resolved and cannot be escalated")
        escalated = self.model_copy(
            update={
                "escalated_at": at,
                "escalation_level": self.escalation_level + 1,
                "escalation_reason": reason,
            }
        )
        return escalated.with_audit(
            AuditEntry(action="escalated", actor=SYSTEM_ACTOR, at=at, details={"reason": reason})
        )

    def claim(self, clinician_id: str, at: datetime) -> "AlertInstance":
        """Mark the alert as being worked on by one clinician."""
        if self.status == AlertStatus.RESOLVED:
            raise InvalidTransitionError(f"Alert {self.id} is resolved and cannot be claimed")
        if self.claimed_by == clinician_id:
            raise InvalidTransitionError(f"Alert {self.id} is already claimed by {clinician_id}")
        if self.claimed_by is not None:
            raise AlertClaimConflictError(self.id, self.claimed_by)
        claimed = self.model_copy(update={"claimed_by": clinician_id, "claimed_at": at})
        return claimed.with_audit(AuditEntry(action="claimed", actor=clinician_id, at=at))

    def unclaim(self, clinician_id: str, at: datetime) -> "AlertInstance":
        """Give the alert back to the queue. Only the claiming clinician may do this."""
        if self.claimed_by is None:
            raise InvalidTransitionError(f"Alert {self.id} is not claimed")
        if self.claimed_by != clinician_id:
            raise AlertClaimConflictError(self.id, self.claimed_by)
        return self._release(clinician_id, "unclaimed", at)

    def release_claim(self, at: datetime) -> "AlertInstance":
        """System release of a claim that was held too long."""
        if self.claimed_by is None or self.claimed_at is None:
            raise InvalidTransitionError(f"Alert {self.id} is not claimed")
        return self._release(SYSTEM_ACTOR, "claim_auto_released", at)

    def _release(self, actor: str, action: str, at: datetime) -> "AlertInstance":
        held_minutes = int((at - self.claimed_at).total_seconds() // 60) if self.claimed_at else 0
        released = self.model_copy(update={"claimed_by": None, "claimed_at": None})
        return released.with_audit(
            AuditEntry(
                action=action,
                actor=actor,
                at=at,
                details={"claimed_by": self.claimed_by, "claimed_minutes": held_minutes},
            )
        )


def _leaf_deviation(evidence: LeafEvidence) -> float:
    if not evidence.matched or evidence.operator.is_trend:
        return 0.0
    threshold = evidence.threshold
    if not isinstance(threshold, float) or threshold == 0:
        return 0.0
    if evidence.operator.is_average:
        values = [evidence.average] if evidence.average is not None else []
    else:
        values = [v for v in evidence.matched_values if isinstance(v, float)]
    return max((abs(value - threshold) / abs(threshold) for value in values), default=0.0)


def _max_deviation(evidence: LeafEvidence | CompositeEvidence) -> float:
    if isinstance(evidence, LeafEvidence):
        return _leaf_deviation(evidence)
    return max((_max_deviation(child) for child in evidence.children if child.matched), default=0.0)


def calculate_risk_score(severity: Severity, evidence: LeafEvidence | CompositeEvidence) -> float:
    """
    Severity weight plus twice the relative deviation beyond the threshold.

    For a composite match the most deviant matched leaf counts. Trend and
    coded-value conditions contribute no deviation. The result is capped at 10.
    """
    score = SEVERITY_RISK_WEIGHTS[severity] + 2 * _max_deviation(evidence)
    return round(min(MAX_RISK_SCORE, score), 2)


class TimeLogEntry(BaseModel):
    """Billable clinician time handed to the billing collaborator."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    alert_id: str
    patient_id: str
    clinician_id: str
    activity: str
    duration_minutes: int = Field(ge=1)
    billing_code: str
    notes: str
    billable: bool = True
    logged_at: datetime


class ActionDirective(BaseModel):
    """A notify/escalate instruction for the external notification sink."""

    alert_id: str
    rule_id: str
    patient_id: str
    organization_id: str
    severity: Severity
    notify_targets: list[str] = Field(default_factory=list)
    escalate: bool = False
    reason: str = "triggered"


class EvaluationState(BaseModel):
    """Last unsuppressed trigger for one (rule, dedupe key) pair."""

    rule_id: str
    dedupe_key: str
    last_triggered_at: datetime
    trigger_count: int = 1


class SuppressedTrigger(BaseModel):
    rule_id: str
    dedupe_key: str
    last_triggered_at: datetime
    suppressed_at: datetime


class RuleEvaluationError(BaseModel):
    """A rule that could not be evaluated for one observation."""

    rule_id: str
    stage: str
    message: str


class EvaluationResult(BaseModel):
    """Outcome of evaluating one observation against every candidate rule."""

    observation_id: str
    patient_id: str
    evaluated_at: datetime
    rules_evaluated: int = 0
    alerts_triggered: list[AlertInstance] = Field(default_factory=list)
    suppressed: list[SuppressedTrigger] = Field(default_factory=list)
    errors: list[RuleEvaluationError] = Field(default_factory=list)
    auto_resolved: list[AlertInstance] = Field(default_factory=list)
    out_of_order: bool = False
    cancelled: bool = False


class BatchEvaluationResult(BaseModel):
    results: list[EvaluationResult] = Field(default_factory=list)
    observations_processed: int = 0
    cancelled: bool = False

    @property
    def alerts_triggered(self) -> list[AlertInstance]:
        return [alert for result in self.results for alert in result.alerts_triggered]
