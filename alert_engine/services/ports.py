"""
Collaborator protocols and shared plumbing for the engine services.

Key patterns:
- Protocol-based dependency injection (stores and sinks are swappable)
- Generic Result type for failures that are expected outcomes
- Bounded retries with exponential backoff at storage seams
"""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any, Generic, Protocol, TypeVar

import structlog

from alert_engine.domain.alerts import (
    ActionDirective,
    AlertInstance,
    AlertStatus,
    EvaluationState,
    TimeLogEntry,
)
from alert_engine.domain.errors import RetriesExhaustedError, TransientStorageError
from alert_engine.domain.models import Observation

logger = structlog.get_logger(__name__)

ValueT = TypeVar("ValueT")
ErrorT = TypeVar("ErrorT", bound=BaseException)

TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    TransientStorageError,
    ConnectionError,
    TimeoutError,
)


class Result(Generic[ValueT, ErrorT]):
    """
    Explicit error handling without exceptions for expected failures.

    Used where a failed storage call is a business outcome to record rather
    than a reason to abort the caller.
    """

    def __init__(self, value: ValueT | None = None, error: ErrorT | None = None) -> None:
        if value is not None and error is not None:
            raise ValueError("Result cannot have both value and error")
        self._value: ValueT | None = value
        self._error: ErrorT | None = error

    @classmethod
    def ok(cls, value: ValueT) -> "Result[ValueT, ErrorT]":
        return cls(value=value)

    @classmethod
    def err(cls, error: ErrorT) -> "Result[ValueT, ErrorT]":
        return cls(error=error)

    def is_ok(self) -> bool:
        return self._error is None

    def is_err(self) -> bool:
        return self._error is not None

    def unwrap(self) -> ValueT:
        if self._error is not None:
            raise self._error
        return self._value  # type: ignore[return-value]

    def unwrap_or(self, default: ValueT) -> ValueT:
        return self._value if self._error is None else default  # type: ignore[return-value]

    def unwrap_err(self) -> ErrorT:
        if self._error is None:
            raise ValueError("Called unwrap_err() on an Ok value")
        return self._error


async def call_with_retries(
    operation: str,
    call: Callable[[], Awaitable[ValueT]],
    *,
    attempts: int,
    backoff_seconds: float,
) -> Result[ValueT, RetriesExhaustedError]:
    """
    Run ``call`` until it succeeds or ``attempts`` transient failures occur.

    Non-transient exceptions propagate immediately.
    """
    if attempts < 1:
        raise ValueError(f"attempts must be at least 1, got {attempts}")

    failures: list[BaseException] = []
    for attempt in range(1, attempts + 1):
        try:
            return Result.ok(await call())
        except TRANSIENT_ERRORS as e:
            failures.append(e)
            logger.warning(
                "storage_call_failed",
                operation=operation,
                attempt=attempt,
                max_attempts=attempts,
                error=str(e),
            )
            if attempt < attempts and backoff_seconds > 0:
                await asyncio.sleep(backoff_seconds * 2 ** (attempt - 1))

    return Result.err(RetriesExhaustedError(operation, attempts, failures[-1]))


class RuleRepository(Protocol):
    """Authoritative source of raw rule definitions (configuration-as-data)."""

    async def fetch_rule_definitions(self) -> list[dict[str, Any]]: ...


class ObservationStore(Protocol):
    """Append-only observation record. The engine only reads from it."""

    async def get_observations(
        self,
        patient_id: str,
        metric_keys: frozenset[str] | set[str],
        since: datetime,
        until: datetime,
    ) -> list[Observation]:
        """Observations for the patient and metrics in [since, until], oldest first."""
        ...


class AlertStore(Protocol):
    async def create_alert(self, alert: AlertInstance) -> AlertInstance: ...

    async def get_alert(self, alert_id: str) -> AlertInstance | None: ...

    async def save_alert(self, alert: AlertInstance) -> AlertInstance: ...

    async def list_alerts(
        self,
        *,
        organization_id: str | None = None,
        patient_id: str | None = None,
        rule_id: str | None = None,
        dedupe_key: str | None = None,
        statuses: set[AlertStatus] | None = None,
    ) -> list[AlertInstance]: ...


class EvaluationStateStore(Protocol):
    """Persistence for the cooldown tracker's last-triggered timestamps."""

    async def get_state(self, rule_id: str, dedupe_key: str) -> EvaluationState | None: ...

    async def put_state(self, state: EvaluationState) -> None: ...

    async def delete_states(
        self, rule_id: str | None = None, dedupe_key: str | None = None
    ) -> int: ...


class NotificationSink(Protocol):
    """External notify/escalate delivery. Fire-and-forget from the engine's view."""

    async def dispatch(self, directive: ActionDirective) -> None: ...


class BillingCollaborator(Protocol):
    """External time-tracking/billing system."""

    async def record_time(self, entry: TimeLogEntry) -> None: ...
