"""Shared fixtures: a controllable clock and factories for observations and rules."""

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from alert_engine.domain.models import AlertRule, Observation
from alert_engine.services.rule_catalog import load_rule

BASE_TIME = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)


class FixedClock:
    """Clock that only moves when a test moves it."""

    def __init__(self, now: datetime = BASE_TIME) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now += delta


@pytest.fixture
def base_time() -> datetime:
    return BASE_TIME


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def make_observation() -> Callable[..., Observation]:
    def factory(
        value: Any,
        recorded_at: datetime = BASE_TIME,
        metric_key: str = "pain_scale",
        patient_id: str = "patient-1",
        organization_id: str = "org-1",
        **kwargs: Any,
    ) -> Observation:
        return Observation(
            patient_id=patient_id,
            organization_id=organization_id,
            metric_key=metric_key,
            value=value,
            recorded_at=recorded_at,
            **kwargs,
        )

    return factory


@pytest.fixture
def rule_definition() -> Callable[..., dict[str, Any]]:
    """Raw rule definition with sensible defaults, overridable per test."""

    def factory(**overrides: Any) -> dict[str, Any]:
        definition: dict[str, Any] = {
            "id": "high-pain",
            "name": "High Pain",
            "severity": "high",
            "window": "7d",
            "expression": {"metric_key": "pain_scale", "operator": "gte", "threshold": 8},
            "cooldown": "4h",
            "actions": {"notify_targets": ["clinician"]},
        }
        definition.update(overrides)
        return definition

    return factory


@pytest.fixture
def make_rule(rule_definition: Callable[..., dict[str, Any]]) -> Callable[..., AlertRule]:
    def factory(**overrides: Any) -> AlertRule:
        return load_rule(rule_definition(**overrides))

    return factory
