"""
Tests for the pure condition evaluator.

Covers threshold, occurrence, average, trend and consecutive-day semantics,
composite short-circuiting, and the never-throw policy for missing data.
"""

from collections.abc import Callable
from datetime import datetime, timedelta

import pytest
from hypothesis import given
from hypothesis import strategies as st

from alert_engine.domain.models import (
    CodedValue,
    CompositeCondition,
    CompositeEvidence,
    ConditionLeaf,
    LeafEvidence,
    Observation,
)
from alert_engine.services.condition_evaluator import ConditionEvaluator

MakeObservation = Callable[..., Observation]


def leaf(**kwargs) -> ConditionLeaf:
    kwargs.setdefault("metric_key", "pain_scale")
    return ConditionLeaf(**kwargs)


def daily(
    make_observation: MakeObservation, base_time: datetime, values_by_day: dict[int, float], **kwargs
) -> list[Observation]:
    return [
        make_observation(value, recorded_at=base_time + timedelta(days=day), **kwargs)
        for day, value in values_by_day.items()
    ]


@pytest.fixture
def evaluator() -> ConditionEvaluator:
    return ConditionEvaluator()


class TestThresholds:
    """Single-reading comparisons."""

    @pytest.mark.parametrize("value,expected", [(8, True), (9.5, True), (7.99, False)])
    def test_gte_threshold(
        self, evaluator: ConditionEvaluator, make_observation: MakeObservation, value: float, expected: bool
    ) -> None:
        matched, evidence = evaluator.evaluate(
            leaf(operator="gte", threshold=8), [make_observation(value)]
        )

        assert matched is expected
        assert isinstance(evidence, LeafEvidence)
        assert evidence.qualifying_count == (1 if expected else 0)

    @given(value=st.floats(min_value=0.0, max_value=10.0, allow_nan=False))
    def test_gte_matches_exactly_at_or_above_threshold(self, value: float) -> None:
        """Property-based test: a single reading matches iff it is >= threshold."""
        observation = Observation(
            patient_id="p",
            organization_id="o",
            metric_key="pain_scale",
            value=value,
            recorded_at=datetime(2026, 3, 2, 9, 0),
        )

        matched, _ = ConditionEvaluator().evaluate(leaf(operator="gte", threshold=8), [observation])

        assert matched is (value >= 8)

    def test_reading_for_other_metric_never_matches(
        self, evaluator: ConditionEvaluator, make_observation: MakeObservation
    ) -> None:
        matched, evidence = evaluator.evaluate(
            leaf(operator="gte", threshold=8), [make_observation(10, metric_key="mood_scale")]
        )

        assert matched is False
        assert evidence.reason == "no_observations"

    @pytest.mark.parametrize(
        "operator,value,expected",
        [("lte", 3, True), ("lte", 3.5, False), ("gt", 3, False), ("gt", 3.1, True), ("lt", 2.9, True)],
    )
    def test_other_comparisons(
        self,
        evaluator: ConditionEvaluator,
        make_observation: MakeObservation,
        operator: str,
        value: float,
        expected: bool,
    ) -> None:
        matched, _ = evaluator.evaluate(leaf(operator=operator, threshold=3), [make_observation(value)])
        assert matched is expected

    def test_non_numeric_value_is_a_non_match(
        self, evaluator: ConditionEvaluator, make_observation: MakeObservation
    ) -> None:
        matched, _ = evaluator.evaluate(leaf(operator="gte", threshold=8), [make_observation("n/a")])
        assert matched is False

    def test_numeric_string_values_are_compared_as_numbers(
        self, evaluator: ConditionEvaluator, make_observation: MakeObservation
    ) -> None:
        matched, _ = evaluator.evaluate(leaf(operator="gte", threshold=8), [make_observation("9")])
        assert matched is True


class TestEquality:
    def test_coded_value_matches_on_code(
        self, evaluator: ConditionEvaluator, make_observation: MakeObservation
    ) -> None:
        answer = CodedValue(code="yes", display="Yes", system="urn:questionnaire")
        observations = [make_observation(answer, metric_key="chest_pain_present")]

        matched, evidence = evaluator.evaluate(
            leaf(metric_key="chest_pain_present", operator="eq", threshold="yes"), observations
        )

        assert matched is True
        assert evidence.matched_values == ["yes"]

    def test_coded_value_with_other_code_does_not_match(
        self, evaluator: ConditionEvaluator, make_observation: MakeObservation
    ) -> None:
        observations = [make_observation(CodedValue(code="no"), metric_key="chest_pain_present")]

        matched, _ = evaluator.evaluate(
            leaf(metric_key="chest_pain_present", operator="eq", threshold="yes"), observations
        )

        assert matched is False

    def test_numeric_equality(self, evaluator: ConditionEvaluator, make_observation: MakeObservation) -> None:
        matched, _ = evaluator.evaluate(leaf(operator="eq", threshold=3), [make_observation(3)])
        assert matched is True


class TestOccurrences:
    def test_three_qualifying_readings_required(
        self, evaluator: ConditionEvaluator, make_observation: MakeObservation, base_time: datetime
    ) -> None:
        condition = leaf(operator="gte", threshold=8, occurrences=3)
        readings = daily(make_observation, base_time, {0: 9, 1: 8, 2: 4, 3: 10})

        matched, evidence = evaluator.evaluate(condition, readings)

        assert matched is True
        assert evidence.qualifying_count == 3
        assert evidence.observation_count == 4

    def test_two_qualifying_readings_are_not_enough(
        self, evaluator: ConditionEvaluator, make_observation: MakeObservation, base_time: datetime
    ) -> None:
        condition = leaf(operator="gte", threshold=8, occurrences=3)
        readings = daily(make_observation, base_time, {0: 9, 1: 8, 2: 4})

        matched, evidence = evaluator.evaluate(condition, readings)

        assert matched is False
        assert evidence.reason == "below_occurrences"


class TestAverages:
    def test_average_above_threshold(
        self, evaluator: ConditionEvaluator, make_observation: MakeObservation, base_time: datetime
    ) -> None:
        condition = leaf(operator="average_gt", threshold=7, minimum_readings=3)
        readings = daily(make_observation, base_time, {0: 8, 1: 9, 2: 7})

        matched, evidence = evaluator.evaluate(condition, readings)

        assert matched is True
        assert evidence.average == pytest.approx(8.0)

    def test_average_equal_to_threshold_does_not_match(
        self, evaluator: ConditionEvaluator, make_observation: MakeObservation, base_time: datetime
    ) -> None:
        condition = leaf(operator="average_gt", threshold=7)
        readings = daily(make_observation, base_time, {0: 6, 1: 7, 2: 8})

        matched, _ = evaluator.evaluate(condition, readings)

        assert matched is False

    def test_insufficient_readings_fail_closed(
        self, evaluator: ConditionEvaluator, make_observation: MakeObservation, base_time: datetime
    ) -> None:
        condition = leaf(operator="average_gt", threshold=7, minimum_readings=3)
        readings = daily(make_observation, base_time, {0: 10, 1: 10})

        matched, evidence = evaluator.evaluate(condition, readings)

        assert matched is False
        assert evidence.reason == "insufficient_readings"

    def test_average_below_ignores_non_numeric_readings(
        self, evaluator: ConditionEvaluator, make_observation: MakeObservation, base_time: datetime
    ) -> None:
        condition = leaf(metric_key="adherence", operator="average_lt", threshold=0.8, minimum_readings=2)
        readings = daily(
            make_observation, base_time, {0: 0.5, 1: "skipped", 2: 0.7}, metric_key="adherence"
        )

        matched, evidence = evaluator.evaluate(condition, readings)

        assert matched is True
        assert evidence.qualifying_count == 2


class TestTrends:
    def test_decreasing_series_beyond_threshold_matches(
        self, evaluator: ConditionEvaluator, make_observation: MakeObservation, base_time: datetime
    ) -> None:
        condition = leaf(metric_key="peak_flow", operator="trend_decreasing", threshold=10)
        readings = daily(
            make_observation, base_time, {0: 100, 1: 95, 2: 90, 3: 85}, metric_key="peak_flow"
        )

        matched, evidence = evaluator.evaluate(condition, readings)

        assert matched is True
        assert evidence.change == pytest.approx(-15)
        assert evidence.slope is not None and evidence.slope < 0

    def test_small_drop_does_not_match(
        self, evaluator: ConditionEvaluator, make_observation: MakeObservation, base_time: datetime
    ) -> None:
        condition = leaf(metric_key="peak_flow", operator="trend_decreasing", threshold=10)
        readings = daily(make_observation, base_time, {0: 100, 1: 98}, metric_key="peak_flow")

        matched, evidence = evaluator.evaluate(condition, readings)

        assert matched is False
        assert evidence.reason == "no_trend"

    def test_flat_series_never_matches(
        self, evaluator: ConditionEvaluator, make_observation: MakeObservation, base_time: datetime
    ) -> None:
        readings = daily(make_observation, base_time, {0: 5, 1: 5, 2: 5})

        for operator in ("trend_increasing", "trend_decreasing"):
            matched, _ = evaluator.evaluate(leaf(operator=operator), readings)
            assert matched is False

    def test_single_reading_is_insufficient(
        self, evaluator: ConditionEvaluator, make_observation: MakeObservation
    ) -> None:
        matched, evidence = evaluator.evaluate(leaf(operator="trend_increasing"), [make_observation(9)])

        assert matched is False
        assert evidence.reason == "insufficient_readings"

    def test_regression_slope_must_agree_with_endpoints(
        self, make_observation: MakeObservation, base_time: datetime
    ) -> None:
        """Endpoints drop by 1 but the series as a whole rises."""
        readings = daily(make_observation, base_time, {0: 100, 1: 150, 2: 160, 3: 99})
        condition = leaf(operator="trend_decreasing")

        with_regression, evidence = ConditionEvaluator(use_regression_slope=True).evaluate(
            condition, readings
        )
        endpoints_only, _ = ConditionEvaluator(use_regression_slope=False).evaluate(
            condition, readings
        )

        assert with_regression is False
        assert evidence.slope is not None and evidence.slope > 0
        assert endpoints_only is True

    def test_daily_trend_requires_strict_day_over_day_change(
        self, evaluator: ConditionEvaluator, make_observation: MakeObservation, base_time: datetime
    ) -> None:
        condition = leaf(operator="trend_increasing", consecutive_days=3)

        rising, evidence = evaluator.evaluate(
            condition, daily(make_observation, base_time, {0: 3, 1: 4, 2: 6})
        )
        stalled, _ = evaluator.evaluate(
            condition, daily(make_observation, base_time, {0: 3, 1: 4, 2: 4})
        )

        assert rising is True
        assert evidence.streak_days == 3
        assert stalled is False


class TestConsecutiveDays:
    """Calendar-day streaks must end on the most recent day with a reading."""

    @pytest.fixture
    def condition(self) -> ConditionLeaf:
        return leaf(operator="gte", threshold=5, consecutive_days=3)

    def test_days_three_four_five_match(
        self,
        evaluator: ConditionEvaluator,
        make_observation: MakeObservation,
        base_time: datetime,
        condition: ConditionLeaf,
    ) -> None:
        matched, evidence = evaluator.evaluate(
            condition, daily(make_observation, base_time, {2: 6, 3: 7, 4: 5})
        )

        assert matched is True
        assert evidence.streak_days == 3

    def test_days_one_two_three_five_do_not_match(
        self,
        evaluator: ConditionEvaluator,
        make_observation: MakeObservation,
        base_time: datetime,
        condition: ConditionLeaf,
    ) -> None:
        matched, evidence = evaluator.evaluate(
            condition, daily(make_observation, base_time, {0: 6, 1: 6, 2: 6, 4: 6})
        )

        assert matched is False
        assert evidence.streak_days == 1
        assert evidence.reason == "streak_too_short"

    def test_gapped_days_do_not_match(
        self,
        evaluator: ConditionEvaluator,
        make_observation: MakeObservation,
        base_time: datetime,
        condition: ConditionLeaf,
    ) -> None:
        matched, evidence = evaluator.evaluate(
            condition, daily(make_observation, base_time, {0: 6, 1: 6, 3: 6, 4: 6})
        )

        assert matched is False
        assert evidence.streak_days == 2

    def test_non_qualifying_reading_on_latest_day_breaks_streak(
        self,
        evaluator: ConditionEvaluator,
        make_observation: MakeObservation,
        base_time: datetime,
        condition: ConditionLeaf,
    ) -> None:
        matched, _ = evaluator.evaluate(
            condition, daily(make_observation, base_time, {0: 6, 1: 6, 2: 6, 3: 2})
        )
        assert matched is False

    def test_several_readings_on_one_day_count_once(
        self,
        evaluator: ConditionEvaluator,
        make_observation: MakeObservation,
        base_time: datetime,
        condition: ConditionLeaf,
    ) -> None:
        same_day = [
            make_observation(9, recorded_at=base_time + timedelta(hours=hour)) for hour in range(4)
        ]

        matched, evidence = evaluator.evaluate(condition, same_day)

        assert matched is False
        assert evidence.qualifying_count == 4
        assert evidence.streak_days == 1


class TestComposites:
    @pytest.fixture
    def blood_pressure_leaves(self) -> list[ConditionLeaf]:
        return [
            leaf(metric_key="systolic_bp", operator="gte", threshold=180),
            leaf(metric_key="diastolic_bp", operator="gte", threshold=120),
        ]

    def readings(
        self, make_observation: MakeObservation, systolic: float, diastolic: float
    ) -> list[Observation]:
        return [
            make_observation(systolic, metric_key="systolic_bp"),
            make_observation(diastolic, metric_key="diastolic_bp"),
        ]

    @pytest.mark.parametrize(
        "systolic,diastolic,expected",
        [(185, 125, True), (185, 110, False), (170, 125, False), (170, 110, False)],
    )
    def test_and_requires_both(
        self,
        evaluator: ConditionEvaluator,
        make_observation: MakeObservation,
        blood_pressure_leaves: list[ConditionLeaf],
        systolic: float,
        diastolic: float,
        expected: bool,
    ) -> None:
        expression = CompositeCondition(operator="AND", children=blood_pressure_leaves)
        matched, _ = evaluator.evaluate(expression, self.readings(make_observation, systolic, diastolic))
        assert matched is expected

    @pytest.mark.parametrize(
        "systolic,diastolic,expected",
        [(185, 125, True), (185, 110, True), (170, 125, True), (170, 110, False)],
    )
    def test_or_requires_either(
        self,
        evaluator: ConditionEvaluator,
        make_observation: MakeObservation,
        blood_pressure_leaves: list[ConditionLeaf],
        systolic: float,
        diastolic: float,
        expected: bool,
    ) -> None:
        expression = CompositeCondition(operator="OR", children=blood_pressure_leaves)
        matched, _ = evaluator.evaluate(expression, self.readings(make_observation, systolic, diastolic))
        assert matched is expected

    def test_and_short_circuits_on_first_false_child(
        self,
        evaluator: ConditionEvaluator,
        make_observation: MakeObservation,
        blood_pressure_leaves: list[ConditionLeaf],
    ) -> None:
        expression = CompositeCondition(operator="AND", children=blood_pressure_leaves)

        _, evidence = evaluator.evaluate(expression, self.readings(make_observation, 150, 125))

        assert isinstance(evidence, CompositeEvidence)
        assert evidence.short_circuited is True
        assert [child.metric_key for child in evidence.children] == ["systolic_bp"]

    def test_or_short_circuits_on_first_true_child(
        self,
        evaluator: ConditionEvaluator,
        make_observation: MakeObservation,
        blood_pressure_leaves: list[ConditionLeaf],
    ) -> None:
        expression = CompositeCondition(operator="OR", children=blood_pressure_leaves)

        _, evidence = evaluator.evaluate(expression, self.readings(make_observation, 190, 80))

        assert evidence.short_circuited is True
        assert len(evidence.children) == 1

    def test_nested_composite(
        self,
        evaluator: ConditionEvaluator,
        make_observation: MakeObservation,
        blood_pressure_leaves: list[ConditionLeaf],
    ) -> None:
        expression = CompositeCondition(
            operator="AND",
            children=[
                CompositeCondition(operator="OR", children=blood_pressure_leaves),
                leaf(metric_key="headache", operator="eq", threshold="yes"),
            ],
        )
        observations = [
            *self.readings(make_observation, 185, 90),
            make_observation(CodedValue(code="yes"), metric_key="headache"),
        ]

        matched, evidence = evaluator.evaluate(expression, observations)

        assert matched is True
        assert evidence.short_circuited is False
        assert isinstance(evidence.children[0], CompositeEvidence)


class TestMissingData:
    def test_empty_window_is_a_non_match(self, evaluator: ConditionEvaluator) -> None:
        for operator, threshold in [("gte", 8), ("average_gt", 8), ("trend_increasing", None)]:
            matched, evidence = evaluator.evaluate(leaf(operator=operator, threshold=threshold), [])
            assert matched is False
            assert evidence.reason == "no_observations"

    def test_unknown_metric_in_composite_is_a_non_match(
        self, evaluator: ConditionEvaluator, make_observation: MakeObservation
    ) -> None:
        expression = CompositeCondition(
            operator="AND",
            children=[
                leaf(operator="gte", threshold=8),
                leaf(metric_key="not_a_metric", operator="gte", threshold=1),
            ],
        )

        matched, _ = evaluator.evaluate(expression, [make_observation(9)])

        assert matched is False
