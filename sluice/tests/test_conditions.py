"""
Unit tests for sluice.conditions module.
"""
import datetime

import pytest
from pydantic import BaseModel

from sluice.conditions import MISSING, evaluate, is_eligible, resolve_path
from sluice.model import ConditionGroup, ConditionLeaf, Transition


def leaf(field, operator, value=None):
    return ConditionLeaf(field=field, operator=operator, value=value)


class Applicant(BaseModel):
    gpa: float
    country: str


class TestResolvePath:
    """Tests for dotted path lookup."""

    def test_nested_mapping(self):
        ctx = {"applicant": {"address": {"country": "CA"}}}
        assert resolve_path(ctx, "applicant.address.country") == "CA"

    def test_list_index(self):
        ctx = {"documents": [{"type": "transcript"}, {"type": "resume"}]}
        assert resolve_path(ctx, "documents.1.type") == "resume"

    def test_missing_segment(self):
        assert resolve_path({"a": {}}, "a.b") is MISSING
        assert resolve_path({"a": [1]}, "a.5") is MISSING
        assert resolve_path({"a": [1]}, "a.first") is MISSING
        assert resolve_path({"a": 3}, "a.b") is MISSING

    def test_pydantic_model_attributes(self):
        ctx = {"applicant": Applicant(gpa=3.7, country="FR")}
        assert resolve_path(ctx, "applicant.gpa") == 3.7
        assert resolve_path(ctx, "applicant.missing") is MISSING

    def test_falsy_values_are_found(self):
        ctx = {"paid": False, "count": 0, "note": None}
        assert resolve_path(ctx, "paid") is False
        assert resolve_path(ctx, "count") == 0
        assert resolve_path(ctx, "note") is None


class TestEquality:
    """Tests for = and != operators."""

    def test_boolean_flag(self):
        assert evaluate(leaf("paid", "=", True), {"paid": True})
        assert not evaluate(leaf("paid", "=", True), {"paid": False})

    def test_boolean_is_not_a_number(self):
        assert not evaluate(leaf("paid", "=", True), {"paid": 1})
        assert not evaluate(leaf("count", "=", 0), {"count": False})

    def test_numbers_compare_across_int_and_float(self):
        assert evaluate(leaf("score", "=", 70), {"score": 70.0})

    def test_number_never_equals_string(self):
        assert not evaluate(leaf("score", "=", 70), {"score": "70"})

    def test_aliases(self):
        assert evaluate(leaf("status", "==", "open"), {"status": "open"})
        assert evaluate(leaf("status", "<>", "open"), {"status": "closed"})

    def test_not_equals(self):
        assert evaluate(leaf("status", "!=", "open"), {"status": "closed"})
        assert not evaluate(leaf("status", "!=", "open"), {"status": "open"})

    def test_none_value(self):
        assert evaluate(leaf("note", "=", None), {"note": None})


class TestOrdering:
    """Tests for >, >=, <, <= operators."""

    def test_numbers(self):
        ctx = {"gpa": 3.5}
        assert evaluate(leaf("gpa", ">", 3), ctx)
        assert evaluate(leaf("gpa", ">=", 3.5), ctx)
        assert evaluate(leaf("gpa", "<", 4), ctx)
        assert not evaluate(leaf("gpa", "<=", 3.4), ctx)

    def test_incompatible_types_are_false(self):
        assert not evaluate(leaf("gpa", ">", 3), {"gpa": "high"})
        assert not evaluate(leaf("gpa", ">", "a"), {"gpa": "b"})
        assert not evaluate(leaf("gpa", ">", 0), {"gpa": True})
        assert not evaluate(leaf("gpa", ">", 0), {"gpa": [1]})

    def test_iso_dates(self):
        ctx = {"submitted_at": "2024-01-15T10:00:00+00:00"}
        assert evaluate(leaf("submitted_at", "<", "2024-02-01"), ctx)
        assert not evaluate(leaf("submitted_at", ">", "2024-02-01"), ctx)

    def test_datetime_against_iso_string(self):
        ctx = {"deadline": datetime.datetime(2024, 3, 1, tzinfo=datetime.timezone.utc)}
        assert evaluate(leaf("deadline", ">=", "2024-03-01T00:00:00"), ctx)

    def test_date_objects(self):
        ctx = {"dob": datetime.date(2005, 6, 1)}
        assert evaluate(leaf("dob", "<", "2006-01-01"), ctx)


class TestMembership:
    """Tests for contains / in / string operators."""

    def test_contains_substring(self):
        assert evaluate(leaf("program", "contains", "Science"), {"program": "Computer Science"})

    def test_contains_list_item(self):
        ctx = {"completed_actions": ["submit_application", "pay_application_fee"]}
        assert evaluate(leaf("completed_actions", "contains", "pay_application_fee"), ctx)
        assert not evaluate(leaf("completed_actions", "contains", "interview"), ctx)

    def test_contains_on_scalar_is_false(self):
        assert not evaluate(leaf("score", "contains", 7), {"score": 70})

    def test_not_contains(self):
        ctx = {"flags": ["late"]}
        assert evaluate(leaf("flags", "not_contains", "fraud"), ctx)
        assert not evaluate(leaf("flags", "not_contains", "late"), ctx)
        assert not evaluate(leaf("score", "not_contains", 1), {"score": 10})

    def test_in_and_not_in(self):
        ctx = {"country": "CA"}
        assert evaluate(leaf("country", "in", ["CA", "US"]), ctx)
        assert not evaluate(leaf("country", "in", ["FR"]), ctx)
        assert evaluate(leaf("country", "not_in", ["FR"]), ctx)
        assert not evaluate(leaf("country", "not_in", ["CA"]), ctx)

    def test_in_requires_array_value(self):
        assert not evaluate(leaf("country", "in", "CA"), {"country": "CA"})
        assert not evaluate(leaf("country", "not_in", "FR"), {"country": "CA"})

    def test_starts_and_ends_with(self):
        ctx = {"email": "ada@uni.edu"}
        assert evaluate(leaf("email", "starts_with", "ada"), ctx)
        assert evaluate(leaf("email", "ends_with", ".edu"), ctx)
        assert not evaluate(leaf("email", "ends_with", ".com"), ctx)
        assert not evaluate(leaf("zip", "starts_with", "1"), {"zip": 12345})


class TestGroups:
    """Tests for ALL / ANY groups."""

    def test_all(self):
        tree = ConditionGroup(
            combinator="all",
            children=(leaf("a", "=", True), leaf("b", "=", True)),
        )
        assert evaluate(tree, {"a": True, "b": True})
        assert not evaluate(tree, {"a": True, "b": False})

    def test_any(self):
        tree = ConditionGroup(
            combinator="ANY",
            children=(leaf("a", "=", True), leaf("b", "=", True)),
        )
        assert evaluate(tree, {"a": False, "b": True})
        assert not evaluate(tree, {"a": False})

    def test_empty_groups(self):
        assert evaluate(ConditionGroup(combinator="all"), {})
        assert not evaluate(ConditionGroup(combinator="any"), {})

    def test_nested(self):
        tree = ConditionGroup(
            combinator="all",
            children=(
                leaf("fee_paid", "=", True),
                ConditionGroup(
                    combinator="any",
                    children=(leaf("gpa", ">=", 3.5), leaf("waiver", "=", True)),
                ),
            ),
        )
        assert evaluate(tree, {"fee_paid": True, "gpa": 3.9})
        assert evaluate(tree, {"fee_paid": True, "gpa": 2.0, "waiver": True})
        assert not evaluate(tree, {"fee_paid": True, "gpa": 2.0})


class TestMissingData:
    """Missing fields evaluate to False and never raise."""

    def test_missing_key_is_false(self):
        assert not evaluate(leaf("enrollment_deposit_paid", "=", True), {})

    def test_missing_key_is_false_for_negative_operators(self):
        assert not evaluate(leaf("status", "!=", "open"), {})
        assert not evaluate(leaf("country", "not_in", ["CA"]), {})

    def test_evaluate_is_deterministic(self):
        tree = leaf("gpa", ">", 3)
        ctx = {"gpa": 3.2}
        assert [evaluate(tree, ctx) for _ in range(5)] == [True] * 5


class TestIsEligible:
    def test_unconditional_transition(self):
        t = Transition(source="a", target="b", name="Go")
        assert is_eligible(t, {})

    def test_conditional_transition(self):
        t = Transition(
            source="a", target="b", name="Go", condition=leaf("ok", "=", True)
        )
        assert is_eligible(t, {"ok": True})
        assert not is_eligible(t, {"ok": False})

    def test_unknown_operator_is_rejected_at_parse_time(self):
        with pytest.raises(ValueError):
            leaf("a", "matches", "x")
