"""
Pure evaluation of rule expression trees over an observation window.

Nothing in this module touches storage or the clock: the caller fetches the
window, this module decides whether it matches and records why. Missing or
insufficient data is a non-match, never an exception.

Calendar days come from each observation's own ``recorded_at`` offset, so a
device reporting in the patient's local time groups readings by the patient's
day.
"""

import operator
import statistics
from collections import defaultdict
from collections.abc import Sequence
from datetime import date, timedelta

from alert_engine.domain.models import (
    ComparisonOperator,
    CompositeCondition,
    CompositeEvidence,
    ConditionLeaf,
    LeafEvidence,
    LogicalOperator,
    Observation,
)

Node = ConditionLeaf | CompositeCondition
NodeEvidence = LeafEvidence | CompositeEvidence

_COMPARISONS = {
    ComparisonOperator.GTE: operator.ge,
    ComparisonOperator.LTE: operator.le,
    ComparisonOperator.GT: operator.gt,
    ComparisonOperator.LT: operator.lt,
}


def _values_equal(value: float | str, threshold: float | str | None) -> bool:
    if threshold is None:
        return False
    if isinstance(value, float) or isinstance(threshold, float):
        try:
            return float(value) == float(threshold)
        except ValueError:
            return False
    return str(value) == str(threshold)


def _satisfies(leaf: ConditionLeaf, observation: Observation) -> bool:
    if leaf.operator == ComparisonOperator.EQ:
        return _values_equal(observation.comparable_value, leaf.threshold)

    value = observation.numeric_value
    if value is None:
        return False
    compare = _COMPARISONS.get(leaf.operator)
    return compare is not None and compare(value, float(leaf.threshold))  # type: ignore[arg-type]


def _current_streak(days: set[date], latest_day: date) -> int:
    """Length of the run of consecutive days in ``days`` ending at ``latest_day``."""
    streak = 0
    day = latest_day
    while day in days:
        streak += 1
        day -= timedelta(days=1)
    return streak


def _regression_slope(points: Sequence[tuple[Observation, float]]) -> float | None:
    origin = points[0][0].recorded_at
    xs = [(obs.recorded_at - origin).total_seconds() for obs, _ in points]
    ys = [value for _, value in points]
    try:
        return statistics.linear_regression(xs, ys).slope
    except statistics.StatisticsError:
        # every reading shares one timestamp
        return None


class ConditionEvaluator:
    """
    Evaluates expression trees against observation windows.

    AND stops at the first false child and OR at the first true child; the
    evidence keeps only the children that were actually evaluated.
    """

    def __init__(self, use_regression_slope: bool = True) -> None:
        self.use_regression_slope = use_regression_slope

    def evaluate(
        self, expression: Node, observations: Sequence[Observation]
    ) -> tuple[bool, NodeEvidence]:
        by_metric: defaultdict[str, list[Observation]] = defaultdict(list)
        for observation in sorted(observations, key=lambda o: o.recorded_at):
            by_metric[observation.metric_key].append(observation)

        evidence = self._evaluate_node(expression, by_metric)
        return evidence.matched, evidence

    def _evaluate_node(
        self, node: Node, by_metric: dict[str, list[Observation]]
    ) -> NodeEvidence:
        if isinstance(node, ConditionLeaf):
            return self._evaluate_leaf(node, by_metric.get(node.metric_key, []))

        evaluated: list[NodeEvidence] = []
        for child in node.children:
            child_evidence = self._evaluate_node(child, by_metric)
            evaluated.append(child_evidence)
            if node.operator == LogicalOperator.AND and not child_evidence.matched:
                break
            if node.operator == LogicalOperator.OR and child_evidence.matched:
                break

        if node.operator == LogicalOperator.AND:
            matched = all(child.matched for child in evaluated)
        else:
            matched = any(child.matched for child in evaluated)

        return CompositeEvidence(
            operator=node.operator,
            matched=matched,
            children=evaluated,
            short_circuited=len(evaluated) < len(node.children),
        )

    def _evaluate_leaf(self, leaf: ConditionLeaf, observations: list[Observation]) -> LeafEvidence:
        if not observations:
            return self._evidence(leaf, matched=False, reason="no_observations")
        if leaf.operator.is_average:
            return self._evaluate_average(leaf, observations)
        if leaf.operator.is_trend:
            return self._evaluate_trend(leaf, observations)
        return self._evaluate_comparison(leaf, observations)

    def _evaluate_comparison(
        self, leaf: ConditionLeaf, observations: list[Observation]
    ) -> LeafEvidence:
        qualifying = [obs for obs in observations if _satisfies(leaf, obs)]
        matched = len(qualifying) >= leaf.occurrences
        reason = None if matched else "below_occurrences"

        streak = None
        if leaf.consecutive_days:
            latest_day = observations[-1].recorded_at.date()
            streak = _current_streak({obs.recorded_at.date() for obs in qualifying}, latest_day)
            if matched and streak < leaf.consecutive_days:
                matched, reason = False, "streak_too_short"

        return self._evidence(
            leaf,
            matched=matched,
            observation_count=len(observations),
            qualifying=qualifying,
            streak_days=streak,
            reason=reason,
        )

    def _evaluate_average(
        self, leaf: ConditionLeaf, observations: list[Observation]
    ) -> LeafEvidence:
        readings = [(obs, obs.numeric_value) for obs in observations]
        numeric = [(obs, value) for obs, value in readings if value is not None]

        if not numeric or len(numeric) < leaf.minimum_readings:
            return self._evidence(
                leaf,
                matched=False,
                observation_count=len(observations),
                reason="insufficient_readings",
            )

        average = statistics.fmean(value for _, value in numeric)
        threshold = float(leaf.threshold)  # type: ignore[arg-type]
        if leaf.operator == ComparisonOperator.AVERAGE_GT:
            matched = average > threshold
        else:
            matched = average < threshold

        return self._evidence(
            leaf,
            matched=matched,
            observation_count=len(observations),
            qualifying=[obs for obs, _ in numeric],
            average=average,
            reason=None if matched else "threshold_not_met",
        )

    def _evaluate_trend(self, leaf: ConditionLeaf, observations: list[Observation]) -> LeafEvidence:
        readings = [(obs, obs.numeric_value) for obs in observations]
        points = [(obs, value) for obs, value in readings if value is not None]

        if len(points) < 2:
            return self._evidence(
                leaf,
                matched=False,
                observation_count=len(observations),
                reason="insufficient_readings",
            )

        if leaf.consecutive_days:
            return self._evaluate_daily_trend(leaf, observations, points)

        increasing = leaf.operator == ComparisonOperator.TREND_INCREASING
        change = points[-1][1] - points[0][1]
        matched = (change > 0 if increasing else change < 0) and abs(change) >= leaf.trend_threshold

        slope = None
        if self.use_regression_slope and len(points) > 2:
            slope = _regression_slope(points)
            if slope is not None and not (slope > 0 if increasing else slope < 0):
                matched = False

        return self._evidence(
            leaf,
            matched=matched,
            observation_count=len(observations),
            qualifying=[points[0][0], points[-1][0]],
            change=change,
            slope=slope,
            reason=None if matched else "no_trend",
        )

    def _evaluate_daily_trend(
        self,
        leaf: ConditionLeaf,
        observations: list[Observation],
        points: list[tuple[Observation, float]],
    ) -> LeafEvidence:
        """Trend that must hold day over day for the last N consecutive days."""
        increasing = leaf.operator == ComparisonOperator.TREND_INCREASING
        required_days = leaf.consecutive_days or 1

        # last reading of each day stands for that day
        daily: dict[date, tuple[Observation, float]] = {}
        for obs, value in points:
            daily[obs.recorded_at.date()] = (obs, value)

        day = max(daily)
        streak = 1
        while streak < required_days:
            previous = day - timedelta(days=1)
            if previous not in daily:
                break
            later, earlier = daily[day][1], daily[previous][1]
            if not (later > earlier if increasing else later < earlier):
                break
            streak += 1
            day = previous

        first_day = max(daily) - timedelta(days=streak - 1)
        run = [daily[first_day], daily[max(daily)]]
        change = run[-1][1] - run[0][1]
        matched = (
            streak >= required_days
            and (change > 0 if increasing else change < 0)
            and abs(change) >= leaf.trend_threshold
        )

        return self._evidence(
            leaf,
            matched=matched,
            observation_count=len(observations),
            qualifying=[obs for obs, _ in run],
            change=change,
            streak_days=streak,
            reason=None if matched else "no_trend",
        )

    @staticmethod
    def _evidence(
        leaf: ConditionLeaf,
        *,
        matched: bool,
        observation_count: int = 0,
        qualifying: Sequence[Observation] = (),
        average: float | None = None,
        change: float | None = None,
        slope: float | None = None,
        streak_days: int | None = None,
        reason: str | None = None,
    ) -> LeafEvidence:
        return LeafEvidence(
            metric_key=leaf.metric_key,
            operator=leaf.operator,
            threshold=leaf.threshold,
            matched=matched,
            observation_count=observation_count,
            qualifying_count=len(qualifying),
            matched_values=[obs.comparable_value for obs in qualifying],
            matched_observation_ids=[obs.id for obs in qualifying],
            average=average,
            change=change,
            slope=slope,
            streak_days=streak_days,
            reason=reason,
        )
