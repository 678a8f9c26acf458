"""
Unit tests for the condition model helpers.

Covers insertion order, transition time bookkeeping and the no-op detection
the reconcilers rely on for idempotent status writes.
"""

from datetime import datetime, timedelta, timezone

from workplane.models.conditions import (
    Condition,
    ConditionStatus,
    condition_status,
    find_status_condition,
    is_status_condition_false,
    is_status_condition_true,
    remove_status_condition,
    set_status_condition,
)

T0 = datetime(2025, 1, 1, tzinfo=timezone.utc)
T1 = T0 + timedelta(minutes=5)


class TestSetStatusCondition:
    def test_appends_new_condition_with_transition_time(self):
        conditions = []
        changed = set_status_condition(conditions, Condition(type="Ready", status=ConditionStatus.FALSE), now=T0)

        assert changed is True
        assert len(conditions) == 1
        assert conditions[0].last_transition_time == T0

    def test_keeps_first_set_order(self):
        conditions = []
        set_status_condition(conditions, Condition(type="Initialized", status=ConditionStatus.TRUE), now=T0)
        set_status_condition(conditions, Condition(type="Started", status=ConditionStatus.TRUE), now=T0)
        set_status_condition(conditions, Condition(type="Initialized", status=ConditionStatus.FALSE), now=T1)

        assert [c.type for c in conditions] == ["Initialized", "Started"]

    def test_same_status_keeps_transition_time(self):
        conditions = []
        set_status_condition(conditions, Condition(type="Ready", status=ConditionStatus.FALSE, reason="A"), now=T0)
        changed = set_status_condition(
            conditions, Condition(type="Ready", status=ConditionStatus.FALSE, reason="B"), now=T1
        )

        assert changed is True
        assert conditions[0].reason == "B"
        assert conditions[0].last_transition_time == T0

    def test_status_change_moves_transition_time(self):
        conditions = []
        set_status_condition(conditions, Condition(type="Ready", status=ConditionStatus.FALSE), now=T0)
        set_status_condition(conditions, Condition(type="Ready", status=ConditionStatus.TRUE), now=T1)

        assert conditions[0].status == ConditionStatus.TRUE
        assert conditions[0].last_transition_time == T1

    def test_identical_condition_is_a_no_op(self):
        conditions = []
        condition = Condition(type="Ready", status=ConditionStatus.TRUE, reason="Ready", observed_generation=2)
        set_status_condition(conditions, condition, now=T0)

        assert set_status_condition(conditions, condition, now=T1) is False
        assert conditions[0].last_transition_time == T0


class TestConditionQueries:
    def test_queries_on_missing_condition(self):
        assert find_status_condition([], "Ready") is None
        assert not is_status_condition_true([], "Ready")
        assert not is_status_condition_false([], "Ready")
        assert condition_status([], "Ready") == ConditionStatus.UNKNOWN

    def test_queries_on_present_condition(self):
        conditions = [Condition(type="Ready", status=ConditionStatus.FALSE)]

        assert is_status_condition_false(conditions, "Ready")
        assert not is_status_condition_true(conditions, "Ready")
        assert condition_status(conditions, "Ready") == ConditionStatus.FALSE

    def test_remove(self):
        conditions = [Condition(type="Ready"), Condition(type="Other")]

        assert remove_status_condition(conditions, "Ready") is True
        assert remove_status_condition(conditions, "Ready") is False
        assert [c.type for c in conditions] == ["Other"]

    def test_wire_format_is_camel_case(self):
        condition = Condition(type="Ready", status=ConditionStatus.TRUE, observed_generation=3)
        data = condition.model_dump(by_alias=True, mode="json", exclude_none=True)

        assert data == {"type": "Ready", "status": "True", "reason": "", "message": "", "observedGeneration": 3}
