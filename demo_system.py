"""
End-to-end walkthrough of the alert rule engine with in-memory adapters.

This script exercises:
1. Configuration loading and validation
2. Rule catalog loading (standard library plus an organization rule)
3. Streaming evaluation with deduplication and cooldown
4. Batch replay of a week of pain scores
5. Clinician workflow: triage, acknowledge, resolve, SLA escalation

Run with: uv run python demo_system.py
"""

import asyncio
from datetime import UTC, datetime, timedelta

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from adapters.clinical.rule_library import ClinicalMetric, customize_rule, platform_rule_definitions
from adapters.memory import (
    InMemoryAlertStore,
    InMemoryBillingLedger,
    InMemoryObservationStore,
    InMemoryRuleRepository,
    RecordingNotificationSink,
)
from alert_engine.config import configure_logging, get_config, print_config_summary
from alert_engine.domain.alerts import ResolutionPayload
from alert_engine.domain.models import Observation, ObservationSource
from alert_engine.services import (
    AlertLifecycleService,
    EvaluationOrchestrator,
    RuleCatalog,
)

console = Console()

ORGANIZATION = "org-riverside"
START = datetime(2026, 3, 2, 8, 0, tzinfo=UTC)


class DemoClock:
    """Manually advanced clock so cooldowns and SLAs play out instantly."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now += delta


def observation(patient_id: str, metric: ClinicalMetric, value: float, at: datetime) -> Observation:
    return Observation(
        patient_id=patient_id,
        organization_id=ORGANIZATION,
        metric_key=metric.value,
        value=value,
        recorded_at=at,
        source=ObservationSource.MANUAL,
    )


def build_engine(clock: DemoClock):
    config = get_config()
    observations = InMemoryObservationStore()
    alerts = InMemoryAlertStore()
    sink = RecordingNotificationSink()
    ledger = InMemoryBillingLedger()

    definitions = platform_rule_definitions()
    definitions.append(
        customize_rule(
            "high_pain_threshold",
            ORGANIZATION,
            name="High Pain Alert (Riverside)",
            conditions={"condition": ClinicalMetric.PAIN_SCALE.value, "operator": ">=", "value": 7},
        )
    )

    catalog = RuleCatalog(InMemoryRuleRepository(definitions), config.catalog, clock=clock)
    lifecycle = AlertLifecycleService(alerts, sink, ledger, config.engine, clock=clock)
    orchestrator = EvaluationOrchestrator(
        catalog,
        observations,
        alerts,
        notification_sink=sink,
        lifecycle=lifecycle,
        config=config.engine,
        clock=clock,
    )
    return orchestrator, lifecycle, observations, sink, ledger


def test_configuration() -> bool:
    console.print(Panel("🔧 Configuration", style="blue"))
    try:
        config = get_config()
        configure_logging(config.logging)
        console.print("✅ Configuration loaded successfully", style="green")
        print_config_summary()
        return True
    except Exception as e:
        console.print(f"❌ Configuration failed: {e}", style="red")
        return False


async def test_rule_catalog(orchestrator: EvaluationOrchestrator) -> bool:
    console.print(Panel("📚 Rule Catalog", style="blue"))

    rules = await orchestrator.catalog.list_active_rules(ORGANIZATION)
    table = Table(title=f"Active rules for {ORGANIZATION}")
    table.add_column("Rule", style="cyan")
    table.add_column("Severity", style="magenta")
    table.add_column("Window", style="yellow")
    table.add_column("Cooldown", style="yellow")
    table.add_column("Metrics", style="white")

    for rule in rules:
        table.add_row(
            rule.name,
            rule.severity.value.upper(),
            str(rule.window),
            str(rule.cooldown),
            ", ".join(sorted(rule.metric_keys)),
        )
    console.print(table)

    for error in orchestrator.catalog.catalog_errors:
        console.print(f"⚠️  Rejected {error.rule_id}: {error.message}", style="yellow")
    return bool(rules)


async def test_streaming(
    orchestrator: EvaluationOrchestrator, observations: InMemoryObservationStore, clock: DemoClock
) -> bool:
    console.print(Panel("📡 Streaming Evaluation", style="blue"))

    readings = [
        observation("patient-ana", ClinicalMetric.PAIN_SCALE, 9, clock.now),
        observation("patient-ana", ClinicalMetric.PAIN_SCALE, 9, clock.now + timedelta(minutes=30)),
        observation("patient-ben", ClinicalMetric.SYSTOLIC_BP, 186, clock.now),
        observation("patient-ben", ClinicalMetric.OXYGEN_SATURATION, 95, clock.now),
    ]

    table = Table(title="Evaluation results")
    table.add_column("Patient", style="cyan")
    table.add_column("Metric", style="magenta")
    table.add_column("Value", style="green")
    table.add_column("Triggered", style="red")
    table.add_column("Suppressed", style="yellow")

    for reading in readings:
        clock.now = max(clock.now, reading.recorded_at)
        observations.append(reading)
        result = await orchestrator.evaluate_observation(reading)
        table.add_row(
            reading.patient_id,
            reading.metric_key,
            str(reading.value),
            ", ".join(alert.rule_id for alert in result.alerts_triggered) or "-",
            ", ".join(s.rule_id for s in result.suppressed) or "-",
        )
    console.print(table)
    return True


async def test_batch_replay(
    orchestrator: EvaluationOrchestrator, observations: InMemoryObservationStore
) -> bool:
    console.print(Panel("⏪ Batch Replay", style="blue"))

    week = [
        observation("patient-cara", ClinicalMetric.PAIN_SCALE, value, START + timedelta(days=day))
        for day, value in enumerate([3, 4, 6, 6, 7])
    ]
    observations.extend(week)
    batch = await orchestrator.evaluate_batch(week)

    console.print(
        f"✅ Replayed {batch.observations_processed} observations, "
        f"{len(batch.alerts_triggered)} alerts",
        style="green",
    )
    for alert in batch.alerts_triggered:
        console.print(f"  🚨 {alert.triggered_at:%a %d %b}: {alert.message}")
    return batch.observations_processed == len(week)


async def test_clinician_workflow(
    lifecycle: AlertLifecycleService,
    sink: RecordingNotificationSink,
    ledger: InMemoryBillingLedger,
    clock: DemoClock,
) -> bool:
    console.print(Panel("🩺 Clinician Workflow", style="blue"))

    queue = await lifecycle.triage_queue(ORGANIZATION)
    table = Table(title="Triage queue")
    table.add_column("Severity", style="magenta")
    table.add_column("Patient", style="cyan")
    table.add_column("Message", style="white")
    table.add_column("Risk", style="red")
    table.add_column("SLA", style="yellow")
    for alert in queue:
        table.add_row(
            alert.severity.value.upper(),
            alert.patient_id,
            alert.message,
            f"{alert.risk_score:.1f}",
            f"{alert.sla_breach_at:%H:%M}",
        )
    console.print(table)
    if not queue:
        return False

    first = queue[0]
    await lifecycle.claim_alert(first.id, "dr-okafor")
    for other in queue[1:2]:
        await lifecycle.claim_alert(other.id, "nurse-lee")
    await lifecycle.acknowledge_alert(first.id, "dr-okafor")
    outcome = await lifecycle.resolve_alert(
        first.id,
        ResolutionPayload(
            resolved_by="dr-okafor",
            resolution_notes="Called patient, advised ER visit for BP recheck",
            action_taken="phone_call",
            patient_outcome="stable",
            time_spent_minutes=22,
            billing_code="99457",
        ),
    )
    console.print(f"✅ Resolved {outcome.alert.rule_name} for {outcome.alert.patient_id}", style="green")
    if outcome.time_log:
        console.print(f"  ⏱️  Logged {outcome.time_log.duration_minutes} min as {outcome.time_log.billing_code}")

    clock.advance(timedelta(hours=8))
    escalated = await lifecycle.escalate_overdue()
    console.print(f"⏰ Escalated {len(escalated)} overdue alerts", style="yellow")
    for alert in escalated:
        console.print(f"  ⬆️  {alert.rule_name}: {alert.escalation_reason}")

    released = await lifecycle.release_stale_claims()
    console.print(f"🔓 Released {len(released)} stale claims", style="yellow")

    console.print(f"📨 {len(sink.directives)} directives dispatched")
    return ledger.total_minutes(first.patient_id) == 22


async def run_demo() -> None:
    console.print(Panel("🏥 Clinical Alert Rule Engine - Demo", style="bold blue"))

    clock = DemoClock(START)
    results = [("Configuration", test_configuration())]
    orchestrator, lifecycle, observations, sink, ledger = build_engine(clock)

    steps = [
        ("Rule Catalog", lambda: test_rule_catalog(orchestrator)),
        ("Streaming", lambda: test_streaming(orchestrator, observations, clock)),
        ("Batch Replay", lambda: test_batch_replay(orchestrator, observations)),
        ("Clinician Workflow", lambda: test_clinician_workflow(lifecycle, sink, ledger, clock)),
    ]

    for step_name, step in steps:
        console.print(f"\n{'=' * 60}")
        try:
            results.append((step_name, await step()))
        except Exception as e:
            console.print(f"❌ {step_name} failed with exception: {e}", style="red")
            results.append((step_name, False))

    console.print(f"\n{'=' * 60}")
    summary_table = Table(title="📋 Demo Summary")
    summary_table.add_column("Step", style="cyan")
    summary_table.add_column("Result", style="white")
    for step_name, ok in results:
        summary_table.add_row(step_name, "✅ OK" if ok else "❌ FAILED")
    console.print(summary_table)


if __name__ == "__main__":
    try:
        asyncio.run(run_demo())
    except KeyboardInterrupt:
        console.print("\n👋 Demo stopped by user", style="yellow")
