"""
Tests for domain models and shared plumbing.

Covers duration parsing, observation normalization, dedupe keys, the Result
type, the bounded retry helper and alert risk scoring.
"""

from datetime import UTC, datetime, timedelta, timezone

import pytest
from hypothesis import given
from hypothesis import strategies as st
from pydantic import ValidationError

from alert_engine.domain.alerts import calculate_risk_score
from alert_engine.domain.errors import RetriesExhaustedError, TransientStorageError
from alert_engine.domain.models import (
    CodedValue,
    ComparisonOperator,
    CompositeEvidence,
    LeafEvidence,
    LogicalOperator,
    Observation,
    Severity,
    parse_duration,
)
from alert_engine.services.ports import Result, call_with_retries


class TestParseDuration:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("30m", timedelta(minutes=30)),
            ("24h", timedelta(hours=24)),
            ("7d", timedelta(days=7)),
            ("3 days", timedelta(days=3)),
            ("1 Week", timedelta(weeks=1)),
            ("90 secs", timedelta(seconds=90)),
            ("1.5h", timedelta(minutes=90)),
            (3600, timedelta(hours=1)),
        ],
    )
    def test_shorthand(self, raw, expected: timedelta) -> None:
        assert parse_duration(raw) == expected

    def test_unrecognized_values_pass_through(self) -> None:
        assert parse_duration("PT4H") == "PT4H"
        assert parse_duration(None) is None
        assert parse_duration(True) is True

    @given(st.integers(min_value=0, max_value=10_000))
    def test_day_counts(self, days: int) -> None:
        assert parse_duration(f"{days}d") == timedelta(days=days)


class TestObservation:
    def test_naive_timestamp_is_utc(self) -> None:
        observation = Observation(
            patient_id="p", organization_id="o", metric_key="pain_scale",
            value=5, recorded_at=datetime(2026, 3, 2, 9, 0),
        )

        assert observation.recorded_at.tzinfo is UTC

    def test_offset_timestamp_is_kept(self) -> None:
        eastern = timezone(timedelta(hours=-5))
        observation = Observation(
            patient_id="p", organization_id="o", metric_key="pain_scale",
            value=5, recorded_at=datetime(2026, 3, 2, 23, 30, tzinfo=eastern),
        )

        assert observation.recorded_at.utcoffset() == timedelta(hours=-5)

    @pytest.mark.parametrize(
        "value,expected",
        [(7, 7.0), ("7.5", 7.5), ("severe", None), ("nan", None)],
    )
    def test_numeric_value(self, make_observation, value, expected) -> None:
        assert make_observation(value).numeric_value == expected

    def test_coded_value(self, make_observation) -> None:
        observation = make_observation(CodedValue(code="LA6751-7", display="Moderate"))

        assert observation.numeric_value is None
        assert observation.comparable_value == "LA6751-7"

    def test_observations_are_immutable(self, make_observation) -> None:
        observation = make_observation(5)

        with pytest.raises(ValidationError):
            observation.value = 6


class TestAlertRule:
    def test_default_dedupe_key(self, make_rule) -> None:
        assert make_rule().dedupe_key("patient-1", "pain_scale") == "high-pain:patient-1"

    def test_metric_placeholder(self, make_rule) -> None:
        rule = make_rule(dedupe_key_template="{rule_id}:{patient_id}:{metric_key}")

        assert rule.dedupe_key("p", "systolic_bp") == "high-pain:p:systolic_bp"

    def test_severity_rank_orders_levels(self) -> None:
        assert sorted(Severity, key=lambda s: s.rank) == [
            Severity.LOW, Severity.MEDIUM, Severity.HIGH, Severity.CRITICAL,
        ]


class TestResult:
    def test_ok(self) -> None:
        result: Result[int, ValueError] = Result.ok(3)

        assert result.is_ok() and not result.is_err()
        assert result.unwrap() == 3

    def test_err(self) -> None:
        result: Result[int, ValueError] = Result.err(ValueError("boom"))

        assert result.is_err()
        assert result.unwrap_or(0) == 0
        assert str(result.unwrap_err()) == "boom"
        with pytest.raises(ValueError, match="boom"):
            result.unwrap()

    def test_cannot_hold_both(self) -> None:
        with pytest.raises(ValueError):
            Result(value=1, error=ValueError("boom"))


class TestCallWithRetries:
    async def test_recovers_from_transient_failures(self) -> None:
        calls = 0

        async def flaky() -> str:
            nonlocal calls
            calls += 1
            if calls < 3:
                raise TransientStorageError("timeout")
            return "rows"

        result = await call_with_retries("fetch", flaky, attempts=3, backoff_seconds=0)

        assert result.unwrap() == "rows"
        assert calls == 3

    async def test_exhaustion_is_an_error_result(self) -> None:
        async def down() -> str:
            raise ConnectionError("refused")

        result = await call_with_retries("fetch", down, attempts=2, backoff_seconds=0)

        error = result.unwrap_err()
        assert isinstance(error, RetriesExhaustedError)
        assert error.operation == "fetch"
        assert error.attempts == 2
        assert str(error) == "fetch failed after 2 attempts: refused"

    async def test_non_transient_errors_propagate(self) -> None:
        calls = 0

        async def broken() -> str:
            nonlocal calls
            calls += 1
            raise KeyError("schema mismatch")

        with pytest.raises(KeyError):
            await call_with_retries("fetch", broken, attempts=3, backoff_seconds=0)
        assert calls == 1

    async def test_at_least_one_attempt_is_required(self) -> None:
        async def never_called() -> str:
            raise AssertionError("should not run")

        with pytest.raises(ValueError, match="at least 1"):
            await call_with_retries("fetch", never_called, attempts=0, backoff_seconds=0)


def leaf(operator: str, threshold, matched: bool = True, **evidence) -> LeafEvidence:
    return LeafEvidence(
        metric_key="pain_scale",
        operator=ComparisonOperator(operator),
        threshold=threshold,
        matched=matched,
        **evidence,
    )


class TestRiskScore:
    @pytest.mark.parametrize(
        "severity,expected",
        [
            (Severity.CRITICAL, 10.0),
            (Severity.HIGH, 8.0),
            (Severity.MEDIUM, 5.0),
            (Severity.LOW, 2.0),
        ],
    )
    def test_severity_weight_without_deviation(self, severity: Severity, expected: float) -> None:
        assert calculate_risk_score(severity, leaf("gte", 8.0, matched_values=[8.0])) == expected

    def test_most_deviant_value_counts(self) -> None:
        evidence = leaf("gte", 8.0, matched_values=[9.0, 10.0])

        assert calculate_risk_score(Severity.MEDIUM, evidence) == 5.5

    def test_below_threshold_direction(self) -> None:
        evidence = leaf("lt", 90.0, matched_values=[81.0])

        assert calculate_risk_score(Severity.LOW, evidence) == 2.2

    def test_average_uses_the_window_average(self) -> None:
        evidence = leaf("average_gt", 5.0, matched_values=[9.0, 4.0], average=6.0)

        assert calculate_risk_score(Severity.MEDIUM, evidence) == 5.4

    def test_trends_and_coded_values_add_nothing(self) -> None:
        trend = leaf("trend_increasing", None, streak_days=3)
        coded = leaf("eq", "Y", matched_values=["Y"])

        assert calculate_risk_score(Severity.MEDIUM, trend) == 5.0
        assert calculate_risk_score(Severity.MEDIUM, coded) == 5.0

    def test_composite_takes_the_largest_matched_child(self) -> None:
        evidence = CompositeEvidence(
            operator=LogicalOperator.OR,
            matched=True,
            children=[
                leaf("gte", 180.0, matched_values=[198.0]),
                leaf("gte", 120.0, matched=False, matched_values=[]),
                leaf("gte", 100.0, matched_values=[105.0]),
            ],
        )

        assert calculate_risk_score(Severity.MEDIUM, evidence) == 5.2

    def test_score_is_capped(self) -> None:
        evidence = leaf("gte", 2.0, matched_values=[20.0])

        assert calculate_risk_score(Severity.HIGH, evidence) == 10.0
