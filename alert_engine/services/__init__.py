"""
Engine services.

This package contains the rule catalog, the pure condition evaluator, the
cooldown tracker, the alert lifecycle service and the evaluation orchestrator
that ties them together.
"""

from .alert_lifecycle import AlertLifecycleService, ResolutionOutcome
from .condition_evaluator import ConditionEvaluator
from .cooldown_tracker import CooldownTracker, InMemoryEvaluationStateStore
from .orchestrator import EvaluationOrchestrator
from .ports import (
    AlertStore,
    BillingCollaborator,
    EvaluationStateStore,
    NotificationSink,
    ObservationStore,
    Result,
    RuleRepository,
)
from .rule_catalog import RuleCatalog, load_rule

__all__ = [
    "AlertLifecycleService",
    "AlertStore",
    "BillingCollaborator",
    "ConditionEvaluator",
    "CooldownTracker",
    "EvaluationOrchestrator",
    "EvaluationStateStore",
    "InMemoryEvaluationStateStore",
    "NotificationSink",
    "ObservationStore",
    "ResolutionOutcome",
    "Result",
    "RuleCatalog",
    "RuleRepository",
    "load_rule",
]
