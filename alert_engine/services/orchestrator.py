"""
Evaluation orchestrator: the engine's entry point for new observations.

Pipeline per observation:
1. Resolve candidate rules (scope + referenced metric)
2. Fetch each rule's observation window
3. Evaluate the expression (pure, CPU-only)
4. Pass the cooldown gate for the rule's dedupe key
5. Persist the alert instance, record the trigger, dispatch directives

Architecture pattern: per-patient serialization with full parallelism across
patients. One rule failing never stops the others; failures are collected in
the EvaluationResult instead of raised.
"""

import asyncio
from collections import defaultdict
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable
from datetime import UTC, datetime
from typing import TypeVar

import structlog

from alert_engine.config import EngineConfig
from alert_engine.domain.alerts import (
    SYSTEM_ACTOR,
    ActionDirective,
    AlertInstance,
    AlertStatus,
    AuditEntry,
    BatchEvaluationResult,
    EvaluationResult,
    RuleEvaluationError,
    SuppressedTrigger,
    calculate_risk_score,
)
from alert_engine.domain.errors import InvalidTransitionError, RetriesExhaustedError
from alert_engine.domain.models import AlertRule, Evidence, Observation
from alert_engine.services.alert_lifecycle import AlertLifecycleService
from alert_engine.services.condition_evaluator import ConditionEvaluator
from alert_engine.services.cooldown_tracker import CooldownTracker
from alert_engine.services.locks import KeyedLocks
from alert_engine.services.ports import (
    AlertStore,
    NotificationSink,
    ObservationStore,
    Result,
    call_with_retries,
)
from alert_engine.services.rule_catalog import RuleCatalog

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class EvaluationOrchestrator:
    """
    Evaluates observations against the rule catalog and produces alert instances.

    Streaming callers use ``evaluate_observation`` or ``evaluate_stream``;
    historical replays use ``evaluate_batch``.
    """

    def __init__(
        self,
        catalog: RuleCatalog,
        observation_store: ObservationStore,
        alert_store: AlertStore,
        *,
        notification_sink: NotificationSink | None = None,
        cooldown_tracker: CooldownTracker | None = None,
        lifecycle: AlertLifecycleService | None = None,
        config: EngineConfig | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.config = config or EngineConfig()
        self.catalog = catalog
        self.observation_store = observation_store
        self.alert_store = alert_store
        self.notification_sink = notification_sink
        self.cooldown_tracker = cooldown_tracker or CooldownTracker()
        self._clock = clock or (lambda: datetime.now(UTC))
        self.lifecycle = lifecycle or AlertLifecycleService(
            alert_store, notification_sink, config=self.config, clock=self._clock
        )
        self.evaluator = ConditionEvaluator(use_regression_slope=self.config.trend_uses_regression)

        self._patient_locks: KeyedLocks[str] = KeyedLocks()
        self._watermarks: dict[str, datetime] = {}
        self.logger = logger.bind(component="evaluation_orchestrator")

    async def evaluate_observation(
        self,
        observation: Observation,
        now: datetime | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> EvaluationResult:
        """
        Evaluate one newly recorded observation.

        Evaluation time defaults to the clock, and never precedes the
        observation itself. Observations older than one already evaluated for
        the same patient are flagged ``out_of_order``; trend and consecutive-day
        results for them are undefined.
        """
        at = now or max(self._clock(), observation.recorded_at)
        async with self._patient_locks.hold(observation.patient_id):
            out_of_order = self._advance_watermark(observation)
            return await self._evaluate(observation, at, cancel_event, out_of_order)

    async def evaluate_stream(
        self, observations: AsyncIterator[Observation]
    ) -> AsyncIterator[EvaluationResult]:
        """Evaluate observations as they arrive, yielding each result."""
        async for observation in observations:
            yield await self.evaluate_observation(observation)

    async def evaluate_batch(
        self,
        observations: Iterable[Observation],
        cancel_event: asyncio.Event | None = None,
    ) -> BatchEvaluationResult:
        """
        Replay a set of observations.

        Each patient's observations run in ascending ``recorded_at`` order, each
        evaluated as of its own timestamp; patients run in parallel up to
        ``max_concurrent_patients``. Setting ``cancel_event`` stops work before
        the next observation or rule, never in the middle of one rule.
        """
        by_patient: defaultdict[str, list[Observation]] = defaultdict(list)
        total = 0
        for observation in observations:
            by_patient[observation.patient_id].append(observation)
            total += 1

        semaphore = asyncio.Semaphore(self.config.max_concurrent_patients)
        results_by_patient: dict[str, list[EvaluationResult]] = {}

        async def replay_patient(patient_id: str, history: list[Observation]) -> None:
            async with semaphore:
                patient_results: list[EvaluationResult] = []
                for observation in sorted(history, key=lambda o: o.recorded_at):
                    if cancel_event is not None and cancel_event.is_set():
                        break
                    async with self._patient_locks.hold(patient_id):
                        result = await self._evaluate(
                            observation, observation.recorded_at, cancel_event, out_of_order=False
                        )
                    patient_results.append(result)
                results_by_patient[patient_id] = patient_results

        self.logger.info("batch_replay_started", observations=total, patients=len(by_patient))

        async with asyncio.TaskGroup() as task_group:
            for patient_id, history in by_patient.items():
                task_group.create_task(replay_patient(patient_id, history))

        batch = BatchEvaluationResult(
            results=[
                result
                for patient_id in by_patient
                for result in results_by_patient.get(patient_id, [])
            ]
        )
        batch.observations_processed = sum(1 for r in batch.results if not r.cancelled)
        batch.cancelled = batch.observations_processed < total

        self.logger.info(
            "batch_replay_completed",
            observations=total,
            processed=batch.observations_processed,
            alerts_triggered=len(batch.alerts_triggered),
            cancelled=batch.cancelled,
        )
        return batch

    def _advance_watermark(self, observation: Observation) -> bool:
        last_seen = self._watermarks.get(observation.patient_id)
        if last_seen is not None and observation.recorded_at < last_seen:
            self.logger.warning(
                "out_of_order_observation",
                patient_id=observation.patient_id,
                observation_id=observation.id,
                recorded_at=observation.recorded_at.isoformat(),
                watermark=last_seen.isoformat(),
            )
            return True
        self._watermarks[observation.patient_id] = observation.recorded_at
        return False

    async def _evaluate(
        self,
        observation: Observation,
        now: datetime,
        cancel_event: asyncio.Event | None,
        out_of_order: bool,
    ) -> EvaluationResult:
        result = EvaluationResult(
            observation_id=observation.id,
            patient_id=observation.patient_id,
            evaluated_at=now,
            out_of_order=out_of_order,
        )

        try:
            rules = await self.catalog.candidate_rules(observation)
        except Exception as e:
            self.logger.exception("candidate_rule_lookup_failed", observation_id=observation.id)
            result.errors.append(RuleEvaluationError(rule_id="*", stage="rule_lookup", message=str(e)))
            return result

        for rule in rules:
            if cancel_event is not None and cancel_event.is_set():
                result.cancelled = True
                break
            result.rules_evaluated += 1
            try:
                await self._evaluate_rule(rule, observation, now, result)
            except Exception as e:
                self.logger.exception(
                    "rule_evaluation_failed", rule_id=rule.id, observation_id=observation.id
                )
                result.errors.append(
                    RuleEvaluationError(rule_id=rule.id, stage="evaluate", message=str(e))
                )

        self.logger.info(
            "observation_evaluated",
            observation_id=observation.id,
            patient_id=observation.patient_id,
            metric_key=observation.metric_key,
            rules_evaluated=result.rules_evaluated,
            alerts_triggered=len(result.alerts_triggered),
            suppressed=len(result.suppressed),
            errors=len(result.errors),
        )
        return result

    async def _evaluate_rule(
        self,
        rule: AlertRule,
        observation: Observation,
        now: datetime,
        result: EvaluationResult,
    ) -> None:
        window = await self._with_retries(
            "fetch_observations",
            lambda: self.observation_store.get_observations(
                observation.patient_id, rule.metric_keys, now - rule.window, now
            ),
        )
        if window.is_err():
            result.errors.append(self._storage_error(rule, window.unwrap_err()))
            return

        observations = self._merge_trigger(window.unwrap(), observation, rule, now)
        matched, evidence = self.evaluator.evaluate(rule.expression, observations)
        dedupe_key = rule.dedupe_key(observation.patient_id, observation.metric_key)

        if not matched:
            if rule.actions.auto_resolve:
                await self._auto_resolve(rule, observation, dedupe_key, now, result)
            return

        async with self.cooldown_tracker.hold(rule.id, dedupe_key):
            if await self.cooldown_tracker.should_suppress(rule, dedupe_key, now):
                last = await self.cooldown_tracker.last_triggered_at(rule.id, dedupe_key)
                result.suppressed.append(
                    SuppressedTrigger(
                        rule_id=rule.id,
                        dedupe_key=dedupe_key,
                        last_triggered_at=last or now,
                        suppressed_at=now,
                    )
                )
                self.logger.info(
                    "alert_suppressed",
                    rule_id=rule.id,
                    patient_id=observation.patient_id,
                    dedupe_key=dedupe_key,
                )
                return

            alert = self._build_alert(rule, observation, dedupe_key, evidence, now)
            created = await self._with_retries(
                "create_alert", lambda: self.alert_store.create_alert(alert)
            )
            if created.is_err():
                result.errors.append(self._storage_error(rule, created.unwrap_err()))
                return

            recorded = await self._with_retries(
                "record_trigger",
                lambda: self.cooldown_tracker.record_trigger(rule.id, dedupe_key, now),
            )
            if recorded.is_err():
                # the alert exists; only its suppression bookkeeping is missing
                result.errors.append(self._storage_error(rule, recorded.unwrap_err()))

        alert = created.unwrap()
        result.alerts_triggered.append(alert)
        self.logger.info(
            "alert_triggered",
            alert_id=alert.id,
            rule_id=rule.id,
            patient_id=alert.patient_id,
            severity=alert.severity.value,
            dedupe_key=dedupe_key,
        )
        await self._dispatch_actions(rule, alert)

    def _merge_trigger(
        self,
        window: list[Observation],
        observation: Observation,
        rule: AlertRule,
        now: datetime,
    ) -> list[Observation]:
        """Include the triggering observation even if the store has not surfaced it yet."""
        in_window = now - rule.window <= observation.recorded_at <= now
        if (
            not in_window
            or observation.metric_key not in rule.metric_keys
            or any(o.id == observation.id for o in window)
        ):
            return window
        return sorted([*window, observation], key=lambda o: o.recorded_at)

    def _build_alert(
        self,
        rule: AlertRule,
        observation: Observation,
        dedupe_key: str,
        evidence: Evidence,
        now: datetime,
    ) -> AlertInstance:
        return AlertInstance(
            rule_id=rule.id,
            rule_name=rule.name,
            patient_id=observation.patient_id,
            organization_id=observation.organization_id,
            severity=rule.severity,
            status=AlertStatus.PENDING,
            triggered_at=now,
            dedupe_key=dedupe_key,
            metric_key=observation.metric_key,
            message=(
                f"{rule.description or rule.name}: "
                f"{observation.metric_key} is {observation.comparable_value}"
            ),
            evidence=evidence,
            sla_breach_at=self.lifecycle.sla_deadline(rule.severity, now),
            risk_score=calculate_risk_score(rule.severity, evidence),
            audit_trail=[
                AuditEntry(
                    action="triggered",
                    actor=SYSTEM_ACTOR,
                    at=now,
                    details={"observation_id": observation.id, "source": observation.source.value},
                )
            ],
        )

    async def _dispatch_actions(self, rule: AlertRule, alert: AlertInstance) -> None:
        """Hand directives to the sink. Failures are logged; the alert stands."""
        if self.notification_sink is None:
            return
        if not rule.actions.notify_targets and not rule.actions.escalate:
            return

        directive = ActionDirective(
            alert_id=alert.id,
            rule_id=rule.id,
            patient_id=alert.patient_id,
            organization_id=alert.organization_id,
            severity=alert.severity,
            notify_targets=list(rule.actions.notify_targets),
            escalate=rule.actions.escalate,
        )
        try:
            await self.notification_sink.dispatch(directive)
        except Exception as e:
            self.logger.error("directive_dispatch_failed", alert_id=alert.id, error=str(e))

    async def _auto_resolve(
        self,
        rule: AlertRule,
        observation: Observation,
        dedupe_key: str,
        now: datetime,
        result: EvaluationResult,
    ) -> None:
        open_alerts = await self.alert_store.list_alerts(
            patient_id=observation.patient_id,
            rule_id=rule.id,
            dedupe_key=dedupe_key,
            statuses={AlertStatus.PENDING, AlertStatus.ACKNOWLEDGED},
        )
        for alert in open_alerts:
            try:
                result.auto_resolved.append(await self.lifecycle.auto_resolve(alert, now))
            except InvalidTransitionError:
                # resolved by a clinician in the meantime
                continue
            self.logger.info("alert_auto_resolved", alert_id=alert.id, rule_id=rule.id)

    async def _with_retries(
        self, operation: str, call: Callable[[], Awaitable[T]]
    ) -> Result[T, RetriesExhaustedError]:
        return await call_with_retries(
            operation,
            call,
            attempts=self.config.retry_attempts,
            backoff_seconds=self.config.retry_backoff_seconds,
        )

    def _storage_error(self, rule: AlertRule, error: RetriesExhaustedError) -> RuleEvaluationError:
        self.logger.error(
            "rule_storage_retries_exhausted",
            rule_id=rule.id,
            operation=error.operation,
            attempts=error.attempts,
            error=str(error.last_error),
        )
        return RuleEvaluationError(rule_id=rule.id, stage=error.operation, message=str(error))
