"""Property-based tests for entity-level change detection.

**Feature: roster-change-tracking, Property 3: Detection idempotence**
**Feature: roster-change-tracking, Property 4: Monotonic severity aggregation**
**Feature: roster-change-tracking, Property 5: Deletion invariant**
**Feature: roster-change-tracking, Property 6: Order-independent content hash**
"""

import pytest
import structlog
from hypothesis import given, settings
from hypothesis import strategies as st

from roster_changes.detection.change_detector import (
    DetectionRules,
    EntityChangeDetector,
    entity_hash,
)
from roster_changes.detection.field_analyzer import FieldChangeRule
from roster_changes.detection.scoring import SEVERITY_RANK
from roster_changes.errors import ChangeValidationError, ComparisonError
from roster_changes.models.config import DetectionConfig, EntityDetectionSettings

log = structlog.stdlib.get_logger()

field_names = st.sampled_from(["name", "email", "grade", "is_active", "title", "school", "role"])
field_values = st.one_of(
    st.none(),
    st.booleans(),
    st.integers(min_value=0, max_value=50),
    st.text(max_size=40),
)


@st.composite
def entity_strategy(draw: st.DrawFn, entity_id: str = "u1") -> dict:
    """Generate a user entity with a fixed id and random attributes."""
    attributes = draw(st.dictionaries(field_names, field_values, max_size=6))
    return {"id": entity_id, **attributes}


@given(entity_strategy(), entity_strategy())
@settings(max_examples=100)
def test_property_3_detection_is_idempotent(previous: dict, current: dict):
    """Property 3: Detection idempotence.

    Detecting twice over the same pair yields the same change, and a pair with
    identical states yields no change at all.

    **Feature: roster-change-tracking, Property 3: Detection idempotence**
    """
    detector = EntityChangeDetector()

    first = detector.detect("user", current, previous)
    second = detector.detect("user", current, previous)

    if first is None:
        assert second is None
    else:
        assert second is not None
        assert first.change_type == second.change_type
        assert first.field_changes == second.field_changes
        assert first.change_score == second.change_score

    assert detector.detect("user", current, dict(current)) is None


@given(entity_strategy(), entity_strategy())
@settings(max_examples=100)
def test_property_4_significance_is_max_field_severity(previous: dict, current: dict):
    """Property 4: Monotonic severity aggregation.

    **Feature: roster-change-tracking, Property 4: Monotonic severity aggregation**
    """
    change = EntityChangeDetector().detect("user", current, previous)
    if change is None:
        return

    assert change.field_changes
    highest = max(SEVERITY_RANK[fc.severity] for fc in change.field_changes)
    assert SEVERITY_RANK[change.significance] == highest
    assert 0.0 <= change.change_score <= 100.0


@given(entity_strategy())
@settings(max_examples=100)
def test_property_5_deletion_invariant(previous: dict):
    """Property 5: Deletion invariant.

    **Feature: roster-change-tracking, Property 5: Deletion invariant**
    """
    change = EntityChangeDetector().detect("user", None, previous)

    assert change is not None
    assert change.change_type == "deleted"
    assert change.change_score == 100.0
    assert change.significance == "high"


@given(st.dictionaries(field_names, st.integers(), min_size=1, max_size=6))
@settings(max_examples=50)
def test_property_6_hash_ignores_key_order(attributes: dict):
    """Property 6: Order-independent content hash.

    **Feature: roster-change-tracking, Property 6: Order-independent content hash**
    """
    forward = {"id": "u1", **attributes}
    backward = dict(reversed(list(forward.items())))

    assert entity_hash(forward) == entity_hash(backward)
    assert entity_hash(None) is None


def test_name_edit_scenario():
    """Ann -> Anne is one medium name change; the unchanged email is not reported."""
    previous = {"id": "u1", "email": "a@x.com", "name": "Ann"}
    current = {"id": "u1", "email": "a@x.com", "name": "Anne"}

    change = EntityChangeDetector().detect("user", current, previous)

    assert change.change_type == "updated"
    assert [fc.field_name for fc in change.field_changes] == ["name"]
    assert change.field_changes[0].change_type == "updated"
    assert change.field_changes[0].severity == "medium"
    assert 0.0 < change.change_score <= 100.0


def test_new_entity_scenario():
    """A new user reports every non-ignored field as created."""
    change = EntityChangeDetector().detect("user", {"id": "u2", "email": "b@x.com"}, None)

    assert change.change_type == "created"
    assert [fc.field_name for fc in change.field_changes] == ["email"]
    assert change.field_changes[0].change_type == "created"


def test_created_entity_reports_fields_a_rule_would_skip():
    rules = DetectionRules().with_field_rule(
        "user", FieldChangeRule(field_name="nickname", is_significant_change=lambda o, n: False)
    )

    change = EntityChangeDetector(rules).detect("user", {"id": "u3", "nickname": "Al"}, None)

    assert [fc.field_name for fc in change.field_changes] == ["nickname"]


def test_ignored_fields_never_appear():
    previous = {"id": "u1", "updated_at": "2024-01-01", "sync_version": 1}
    current = {"id": "u1", "updated_at": "2024-02-01", "sync_version": 2}

    assert EntityChangeDetector().detect("user", current, previous) is None


def test_unknown_entity_type_is_rejected():
    with pytest.raises(ChangeValidationError):
        EntityChangeDetector().detect("guardian_badge", {"id": "x"}, None)


def test_configured_override_type_is_known():
    config = DetectionConfig(entity_overrides={"section": EntityDetectionSettings()})

    change = EntityChangeDetector(DetectionRules(config)).detect(
        "section", {"id": "s1", "period": 3}, None
    )

    assert change.entity_type == "section"


def test_entity_without_identity_raises_comparison_error():
    with pytest.raises(ComparisonError):
        EntityChangeDetector().detect("user", {"name": "No Id"}, None)


def test_disabled_change_type_is_not_reported():
    config = DetectionConfig(
        entity_overrides={"user": EntityDetectionSettings(enabled_change_types=["updated"])}
    )
    detector = EntityChangeDetector(DetectionRules(config))

    assert detector.detect("user", {"id": "u1", "name": "A"}, None) is None
    assert detector.detect("user", None, {"id": "u1", "name": "A"}) is None


def test_external_id_used_when_internal_id_missing():
    change = EntityChangeDetector().detect(
        "user", {"external_id": "ext-9", "name": "Zed"}, {"external_id": "ext-9", "name": "Zee"}
    )

    assert change.entity_id == "ext-9"
    assert change.external_id == "ext-9"


@pytest.mark.parametrize(
    ("current", "expected_id", "expected_external"),
    [
        ({"id": 0, "name": "Zero"}, "0", None),
        ({"internal_id": 0, "external_id": 0, "name": "Zero"}, "0", "0"),
        ({"id": "", "external_id": "ext-1", "name": "Blank"}, "", "ext-1"),
    ],
)
def test_falsy_ids_still_identify_the_entity(current, expected_id, expected_external):
    change = EntityChangeDetector().detect("user", current, None)

    assert change.entity_id == expected_id
    assert change.external_id == expected_external


def test_detect_batch_isolates_bad_entities():
    """One entity without identity is captured as an error; the rest are detected."""
    pairs = [
        ({"id": "u1", "name": "Ann"}, None),
        ({"name": "ghost"}, None),
        ({"id": "u3", "name": "Cy"}, {"id": "u3", "name": "Cy"}),
    ]

    changes, errors = EntityChangeDetector().detect_batch("user", pairs)

    assert [c.entity_id for c in changes] == ["u1"]
    assert len(errors) == 1
    assert errors[0].entity_id == "unknown"
    log.info("detect_batch_isolation_checked", errors=[e.error for e in errors])
