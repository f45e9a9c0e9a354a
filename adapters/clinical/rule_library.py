"""
Standard platform alert rules for remote patient monitoring.

These are the rule definitions every organization starts with. They are kept
in the template spelling the rule builder emits (``condition`` for the metric,
verbose operator names, ``notify`` targets, duration strings) and go through
the same normalization and validation as any other rule definition.

Key clinical metrics:
- NRS pain scale (0-10): patient-reported pain intensity
- Adherence rate (0.0-1.0): fraction of scheduled doses taken
- Mood scale (0-10): patient-reported mood, lower is worse
- SpO2: peripheral oxygen saturation in percent
"""

import copy
from enum import Enum
from typing import Any


class ClinicalMetric(str, Enum):
    """Metric keys referenced by the standard rule library."""

    # Pain
    PAIN_SCALE = "pain_scale_0_10"

    # Medication
    MEDICATION_ADHERENCE_RATE = "medication_adherence_rate"
    SIDE_EFFECTS_SEVERITY = "side_effects_severity"

    # Mood
    MOOD_SCALE = "mood_scale"

    # Vitals
    SYSTOLIC_BP = "systolic_blood_pressure"
    DIASTOLIC_BP = "diastolic_blood_pressure"
    OXYGEN_SATURATION = "oxygen_saturation"


class RuleCategory(str, Enum):
    PAIN_MANAGEMENT = "Pain Management"
    MEDICATION_MANAGEMENT = "Medication Management"
    SIDE_EFFECTS = "Side Effects & Safety"
    MOOD = "Mood & Mental Health"
    VITAL_SIGNS = "Vital Signs"


PLATFORM_RULE_TEMPLATES: list[dict[str, Any]] = [
    {
        "id": "high_pain_threshold",
        "name": "High Pain Alert",
        "description": "Pain scale 8 or higher",
        "category": RuleCategory.PAIN_MANAGEMENT.value,
        "severity": "high",
        "window": "1d",
        "conditions": {
            "condition": ClinicalMetric.PAIN_SCALE.value,
            "operator": "greater_than_or_equal",
            "threshold": 8,
        },
        "actions": {"notify": ["clinician"], "escalate": True},
        "cooldown": "4h",
    },
    {
        "id": "moderate_pain_persistent",
        "name": "Persistent Moderate Pain",
        "description": "Pain 5+ for 3 consecutive days",
        "category": RuleCategory.PAIN_MANAGEMENT.value,
        "severity": "medium",
        "window": "5d",
        "conditions": {
            "condition": ClinicalMetric.PAIN_SCALE.value,
            "operator": "greater_than_or_equal",
            "threshold": 5,
            "consecutiveDays": 3,
        },
        "actions": {"notify": ["clinician"], "escalate": False},
        "cooldown": "24h",
    },
    {
        "id": "pain_trend_increasing",
        "name": "Increasing Pain Trend",
        "description": "Pain increasing for 3 consecutive days",
        "category": RuleCategory.PAIN_MANAGEMENT.value,
        "severity": "medium",
        "window": "7d",
        "conditions": {
            "condition": ClinicalMetric.PAIN_SCALE.value,
            "operator": "trend_increasing",
            "consecutiveDays": 3,
        },
        "actions": {"notify": ["clinician"], "escalate": False},
        "cooldown": "48h",
    },
    {
        "id": "medication_adherence_low",
        "name": "Low Medication Adherence",
        "description": "Less than 80% adherence",
        "category": RuleCategory.MEDICATION_MANAGEMENT.value,
        "severity": "medium",
        "window": "3d",
        "conditions": {
            "condition": ClinicalMetric.MEDICATION_ADHERENCE_RATE.value,
            "operator": "average_less_than",
            "threshold": 0.8,
            "minimumReadings": 2,
        },
        "actions": {"notify": ["clinician", "care_team"], "autoResolve": True},
        "cooldown": "24h",
    },
    {
        "id": "severe_side_effects",
        "name": "Severe Side Effects",
        "description": "Side effects severity 7 or higher",
        "category": RuleCategory.SIDE_EFFECTS.value,
        "severity": "high",
        "window": "1d",
        "conditions": {
            "condition": ClinicalMetric.SIDE_EFFECTS_SEVERITY.value,
            "operator": "greater_than_or_equal",
            "threshold": 7,
        },
        "actions": {"notify": ["clinician", "patient"], "escalate": True},
        "cooldown": "12h",
    },
    {
        "id": "low_mood_persistent",
        "name": "Persistent Low Mood",
        "description": "Mood 3 or lower for 3 consecutive days",
        "category": RuleCategory.MOOD.value,
        "severity": "high",
        "window": "7d",
        "conditions": {
            "condition": ClinicalMetric.MOOD_SCALE.value,
            "operator": "less_than_or_equal",
            "threshold": 3,
            "consecutiveDays": 3,
        },
        "actions": {"notify": ["clinician", "mental_health_specialist"], "escalate": True},
        "cooldown": "24h",
    },
    {
        "id": "mood_declining",
        "name": "Declining Mood",
        "description": "Mood declining for 4 consecutive days",
        "category": RuleCategory.MOOD.value,
        "severity": "medium",
        "window": "10d",
        "conditions": {
            "condition": ClinicalMetric.MOOD_SCALE.value,
            "operator": "trend_decreasing",
            "consecutiveDays": 4,
        },
        "actions": {"notify": ["clinician"], "escalate": False},
        "cooldown": "48h",
    },
    {
        # Seeded vitals rules use the nested "conditions" list form
        "id": "alert-critical-high-bp",
        "name": "Critical High Blood Pressure",
        "description": "Hypertensive crisis requiring immediate medical attention",
        "category": RuleCategory.VITAL_SIGNS.value,
        "severity": "CRITICAL",
        "priority": 1,
        "window": "24h",
        "conditions": {
            "operator": "or",
            "conditions": [
                {"metric": ClinicalMetric.SYSTOLIC_BP.value, "operator": "gte", "value": 180},
                {"metric": ClinicalMetric.DIASTOLIC_BP.value, "operator": "gte", "value": 120},
            ],
        },
        "actions": {
            "notifications": ["CLINICIAN", "SUPERVISING_PHYSICIAN"],
            "escalation": "IMMEDIATE",
        },
        "cooldown": "1h",
    },
    {
        "id": "alert-hypoxia",
        "name": "Hypoxia",
        "description": "Low oxygen saturation requiring immediate intervention",
        "category": RuleCategory.VITAL_SIGNS.value,
        "severity": "CRITICAL",
        "priority": 1,
        "window": "1h",
        "conditions": {"metric": ClinicalMetric.OXYGEN_SATURATION.value, "operator": "lt", "value": 90},
        "actions": {
            "notifications": ["CLINICIAN", "SUPERVISING_PHYSICIAN"],
            "escalation": "IMMEDIATE",
        },
        "cooldown": "1h",
    },
]


def platform_rule_definitions(category: RuleCategory | None = None) -> list[dict[str, Any]]:
    """Copies of the standard rule definitions, optionally for one category."""
    return [
        copy.deepcopy(template)
        for template in PLATFORM_RULE_TEMPLATES
        if category is None or template["category"] == category.value
    ]


def customize_rule(rule_id: str, organization_id: str, **overrides: Any) -> dict[str, Any]:
    """
    Derive an organization-scoped copy of a platform rule.

    The copy gets its own id so that it is deduplicated and cooled down
    independently of the platform rule it came from.
    """
    for template in PLATFORM_RULE_TEMPLATES:
        if template["id"] == rule_id:
            break
    else:
        raise KeyError(f"No platform rule template {rule_id!r}")

    definition = copy.deepcopy(template)
    definition.update(overrides)
    definition["id"] = overrides.get("id", f"{organization_id}:{rule_id}")
    definition["organization_id"] = organization_id
    definition["scope"] = "organization"
    return definition
