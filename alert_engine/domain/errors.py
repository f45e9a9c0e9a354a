"""
Domain exceptions for the alert rule engine.

Data insufficiency and cooldown suppression are normal outcomes and have no
exception type here.
"""


class AlertEngineError(Exception):
    """Base class for all engine errors."""


class RuleValidationError(AlertEngineError, ValueError):
    """A rule definition is malformed and must not be evaluated."""

    def __init__(self, rule_id: str | None, message: str) -> None:
        super().__init__(f"Rule {rule_id or '<unknown>'} rejected: {message}")
        self.rule_id = rule_id
        self.reason = message


class TransientStorageError(AlertEngineError):
    """A storage call failed in a way that may succeed on retry."""


class RetriesExhaustedError(AlertEngineError):
    """A retried operation kept failing."""

    def __init__(self, operation: str, attempts: int, last_error: BaseException) -> None:
        super().__init__(f"{operation} failed after {attempts} attempts: {last_error}")
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error


class AlertNotFoundError(AlertEngineError, LookupError):
    """No alert instance exists with the given id."""


class InvalidTransitionError(AlertEngineError):
    """The requested status change is not allowed from the alert's current status."""


class AlertClaimConflictError(InvalidTransitionError):
    """The alert is claimed by a different clinician."""

    def __init__(self, alert_id: str, claimed_by: str) -> None:
        super().__init__(f"Alert {alert_id} is already claimed by {claimed_by}")
        self.alert_id = alert_id
        self.claimed_by = claimed_by
