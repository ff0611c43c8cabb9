"""Field-level change analysis.

Compares one field's previous and current value and produces a
``FieldChange`` carrying type, severity, confidence and significance, or
``None`` when the values are considered equal or the change is not
significant. Everything here is pure and deterministic for a given rule set.
"""

import json
from dataclasses import dataclass
from datetime import date, datetime, time
from typing import Any, Callable, Iterable, Mapping

from roster_changes.detection.scoring import DEFAULT_SCORING_POLICY, ScoringPolicy
from roster_changes.models.changes import FieldChange, FieldType, Severity, ensure_utc


@dataclass(frozen=True)
class FieldChangeRule:
    """Per-field override of the default heuristics.

    Any callable left as None falls back to the analyzer default. With
    ``recurse`` set, dict values are compared key by key and reported as
    dotted field names (``address.city``).
    """

    field_name: str
    is_significant_change: Callable[[Any, Any], bool] | None = None
    calculate_severity: Callable[[Any, Any], Severity] | None = None
    calculate_confidence: Callable[[Any, Any], float] | None = None
    custom_metadata: Callable[[Any, Any], dict[str, Any]] | None = None
    recurse: bool = False


def _as_datetime(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, date):
        return ensure_utc(datetime.combine(value, time.min))
    if isinstance(value, str):
        try:
            return ensure_utc(datetime.fromisoformat(value.strip().replace("Z", "+00:00")))
        except ValueError:
            return None
    return None


def values_equal(value1: Any, value2: Any, deep: bool = True) -> bool:
    """Loose equality used by every comparison path.

    Equal when identical, both None, the same instant in time, structurally
    equal (or, with ``deep=False``, identical when serialized in order), or
    strings that match after trimming and lower-casing.
    """
    if value1 is value2:
        return True
    if value1 is None or value2 is None:
        return False

    # True == 1 in Python; a type flip is a change
    if isinstance(value1, bool) != isinstance(value2, bool):
        return False

    if isinstance(value1, (datetime, date)) or isinstance(value2, (datetime, date)):
        ts1, ts2 = _as_datetime(value1), _as_datetime(value2)
        if ts1 is not None and ts2 is not None:
            return ts1 == ts2
        return False

    if isinstance(value1, (dict, list, tuple)) and isinstance(value2, (dict, list, tuple)):
        if deep:
            if isinstance(value1, tuple) or isinstance(value2, tuple):
                return list(value1) == list(value2)
            return value1 == value2
        return json.dumps(value1, default=str) == json.dumps(value2, default=str)

    if isinstance(value1, str) and isinstance(value2, str):
        return value1.strip().lower() == value2.strip().lower()

    return value1 == value2


def determine_field_type(value: Any) -> FieldType:
    if value is None:
        return "string"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, (datetime, date)):
        return "date"
    if isinstance(value, (list, tuple)):
        return "array"
    if isinstance(value, dict):
        return "object"
    return "string"


def normalize_value(value: Any) -> Any:
    if isinstance(value, str):
        return value.strip().lower()
    return value


def classify_change(old_value: Any, new_value: Any) -> str:
    if old_value is None and new_value is not None:
        return "created"
    if old_value is not None and new_value is None:
        return "deleted"
    return "updated"


def _text(value: Any) -> str:
    return str(value if value is not None else "").strip()


def default_field_rules() -> dict[str, FieldChangeRule]:
    """Rules applied to every roster entity type unless overridden."""
    return {
        "email": FieldChangeRule(
            field_name="email",
            is_significant_change=lambda old, new: _text(old).lower() != _text(new).lower(),
            calculate_severity=lambda old, new: "high",
            calculate_confidence=lambda old, new: 0.95,
        ),
        "name": FieldChangeRule(
            field_name="name",
            is_significant_change=lambda old, new: _text(old) != _text(new)
            and (len(_text(old)) > 0 or len(_text(new)) > 0),
            calculate_severity=lambda old, new: (
                "high" if abs(len(str(new or "")) - len(str(old or ""))) > 20 else "medium"
            ),
            calculate_confidence=lambda old, new: 0.9,
        ),
        "is_active": FieldChangeRule(
            field_name="is_active",
            is_significant_change=lambda old, new: old != new,
            calculate_severity=lambda old, new: "high",
            calculate_confidence=lambda old, new: 0.99,
        ),
    }


class FieldChangeAnalyzer:
    """Grades individual field transitions."""

    def __init__(
        self,
        policy: ScoringPolicy = DEFAULT_SCORING_POLICY,
        default_confidence: float = 0.7,
    ):
        """
        Initialize the analyzer.

        Args:
            policy: Scoring policy providing the default severity heuristics
            default_confidence: Confidence used when no rule supplies one
        """
        self._policy = policy
        self._default_confidence = default_confidence

    @property
    def policy(self) -> ScoringPolicy:
        return self._policy

    def assess(
        self,
        old_value: Any,
        new_value: Any,
        field_type: str,
        rule: FieldChangeRule | None = None,
        default_confidence: float | None = None,
    ) -> tuple[Severity, float, bool]:
        """
        Grade a transition that is already known to be a change.

        Returns:
            Tuple of (severity, confidence, is_significant)
        """
        if rule is not None and rule.is_significant_change is not None:
            significant = bool(rule.is_significant_change(old_value, new_value))
        else:
            significant = self.is_significant_change(old_value, new_value, field_type)

        if rule is not None and rule.calculate_severity is not None:
            severity = rule.calculate_severity(old_value, new_value)
        else:
            severity = self._policy.field_severity(old_value, new_value, field_type)

        if rule is not None and rule.calculate_confidence is not None:
            confidence = float(rule.calculate_confidence(old_value, new_value))
        elif default_confidence is not None:
            confidence = default_confidence
        else:
            confidence = self._default_confidence

        return severity, min(1.0, max(0.0, confidence)), significant

    def is_significant_change(self, old_value: Any, new_value: Any, field_type: str) -> bool:
        if old_value is None and new_value is not None:
            return True
        if old_value is not None and new_value is None:
            return True

        if field_type == "string":
            old_str = _text(old_value)
            new_str = _text(new_value)
            return old_str != new_str and (len(new_str) > 0 or len(old_str) > 0)

        return not values_equal(old_value, new_value)

    def analyze(
        self,
        field_name: str,
        old_value: Any,
        new_value: Any,
        rule: FieldChangeRule | None = None,
        force_significant: bool = False,
        default_confidence: float | None = None,
    ) -> FieldChange | None:
        """
        Compare one field's old and new value.

        Args:
            field_name: Name of the field
            old_value: Previous value (None when absent)
            new_value: Current value (None when absent)
            rule: Optional per-field override
            force_significant: Skip the significance gate (used for created entities)
            default_confidence: Confidence override when the rule has none

        Returns:
            FieldChange, or None when equal or not significant
        """
        if values_equal(old_value, new_value):
            return None

        field_type = determine_field_type(new_value if new_value is not None else old_value)
        severity, confidence, significant = self.assess(
            old_value, new_value, field_type, rule, default_confidence
        )

        if force_significant:
            significant = True
        if not significant:
            return None

        metadata = None
        if rule is not None and rule.custom_metadata is not None:
            metadata = rule.custom_metadata(old_value, new_value)

        return FieldChange(
            field_name=field_name,
            field_type=field_type,
            old_value=old_value,
            new_value=new_value,
            change_type=classify_change(old_value, new_value),
            severity=severity,
            confidence=confidence,
            is_significant=significant,
            metadata=metadata,
        )

    def analyze_fields(
        self,
        previous: Mapping[str, Any] | None,
        current: Mapping[str, Any] | None,
        ignore_fields: Iterable[str] = (),
        rules: Mapping[str, FieldChangeRule] | None = None,
        force_significant: bool = False,
        default_confidence: float | None = None,
        prefix: str = "",
    ) -> list[FieldChange]:
        """Analyze the union of both mappings' keys, minus ignored fields."""
        previous = previous or {}
        current = current or {}
        rules = rules or {}
        ignored = set(ignore_fields)

        changes: list[FieldChange] = []
        for key in _ordered_union(previous, current):
            field_name = f"{prefix}{key}"
            if key in ignored or field_name in ignored:
                continue

            old_value = previous.get(key)
            new_value = current.get(key)
            rule = rules.get(field_name)

            if rule is not None and rule.recurse and (
                isinstance(old_value, dict) or isinstance(new_value, dict)
            ):
                changes.extend(
                    self.analyze_fields(
                        old_value if isinstance(old_value, dict) else None,
                        new_value if isinstance(new_value, dict) else None,
                        ignored,
                        rules,
                        force_significant,
                        default_confidence,
                        prefix=f"{field_name}.",
                    )
                )
                continue

            change = self.analyze(
                field_name, old_value, new_value, rule, force_significant, default_confidence
            )
            if change is not None:
                changes.append(change)

        return changes


def _ordered_union(first: Mapping[str, Any], second: Mapping[str, Any]) -> list[str]:
    keys = list(first.keys())
    keys.extend(k for k in second.keys() if k not in first)
    return keys
