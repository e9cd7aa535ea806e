"""
Unit tests for sluice.loader and sluice.defaults modules.
"""
import json

import pytest

from sluice.defaults import (
    GRADUATE_TEMPLATE,
    NOTIFICATION_TEMPLATES,
    default_templates,
    permissions_for_roles,
)
from sluice.graph import MalformedTemplate
from sluice.loader import load_template, load_template_file, parse_condition, slugify
from sluice.model import Combinator, ConditionGroup, ConditionLeaf


class TestParseCondition:
    def test_flat_list_is_implicit_all(self):
        tree = parse_condition(
            [
                {"field": "a", "operator": "=", "value": True},
                {"field": "b", "operator": ">", "value": 2},
            ]
        )
        assert isinstance(tree, ConditionGroup)
        assert tree.combinator is Combinator.ALL
        assert len(tree.children) == 2

    def test_single_item_list_is_a_leaf(self):
        tree = parse_condition([{"field": "a", "operator": "=", "value": True}])
        assert isinstance(tree, ConditionLeaf)

    def test_empty_list_means_no_condition(self):
        assert parse_condition([]) is None
        assert parse_condition(None) is None

    def test_any_shorthand(self):
        tree = parse_condition(
            {"any": [{"field": "a", "operator": "=", "value": 1}, {"all": []}]}
        )
        assert tree.combinator is Combinator.ANY
        assert isinstance(tree.children[1], ConditionGroup)

    def test_tree_form(self):
        tree = parse_condition(
            {
                "kind": "group",
                "combinator": "any",
                "children": [{"kind": "leaf", "field": "x", "operator": "in", "value": [1]}],
            }
        )
        assert tree.children[0].field == "x"

    def test_garbage(self):
        with pytest.raises(ValueError):
            parse_condition("a = 1")


class TestLoadTemplate:
    def test_stage_names_resolve_to_ids(self):
        template = load_template(
            {
                "name": "Small Flow",
                "application_type": "x",
                "stages": [
                    {"id": "s1", "name": "First", "sequence": 1},
                    {"id": "s2", "name": "Second", "sequence": 2},
                ],
                "transitions": [{"source": "First", "target": "s2", "name": "Go"}],
            }
        )
        assert template.id == "small-flow"
        assert template.transitions[0].source == "s1"
        assert template.transitions[0].target == "s2"

    def test_flat_condition_list_shape(self):
        template = load_template(GRADUATE_TEMPLATE)
        screening = next(t for t in template.transitions if t.name == "Initial Screening Passed")
        assert screening.is_automatic
        assert screening.condition == ConditionLeaf(
            field="application_fee_paid", operator="=", value=True
        )
        accept = next(t for t in template.transitions if t.name == "Accept")
        assert accept.required_permissions == frozenset({"make_admission_decision"})

    def test_missing_application_type(self):
        with pytest.raises(MalformedTemplate) as exc_info:
            load_template({"name": "Broken", "stages": []})
        assert exc_info.value.template_id == "broken"

    def test_bad_operator(self):
        data = {
            "name": "Bad",
            "application_type": "x",
            "stages": [{"name": "A"}],
            "transitions": [
                {
                    "source": "A",
                    "target": "A",
                    "name": "Loop",
                    "conditions": [{"field": "f", "operator": "~", "value": 1}],
                }
            ],
        }
        with pytest.raises(MalformedTemplate):
            load_template(data)

    def test_overrides(self):
        template = load_template(GRADUATE_TEMPLATE, is_active=True, version=3)
        assert template.is_active
        assert template.version == 3


class TestTemplateFiles:
    def test_json_round_trip_of_defaults(self, tmp_path):
        templates = default_templates()
        path = tmp_path / "defaults.json"
        path.write_text(
            json.dumps({"templates": [t.model_dump(mode="json") for t in templates]})
        )
        loaded = load_template_file(path)
        assert loaded == templates

    def test_toml_file(self, tmp_path):
        path = tmp_path / "flow.toml"
        path.write_text(
            """
id = "flow"
name = "Flow"
application_type = "exchange"

[[stages]]
name = "Open"
sequence = 1

[[stages]]
name = "Closed"
sequence = 2

[[transitions]]
source = "Open"
target = "Closed"
name = "Close"
is_automatic = true
conditions = [{ field = "done", operator = "=", value = true }]
"""
        )
        [template] = load_template_file(path)
        assert template.ref == ("flow", 1)
        assert template.transitions[0].condition.field == "done"


class TestDefaults:
    def test_slugified_ids(self):
        ids = {t.id for t in default_templates()}
        assert ids == {"undergraduate-admissions", "graduate-admissions"}
        assert slugify("Graduate Admissions") == "graduate-admissions"

    def test_every_trigger_uses_a_known_notification_template(self):
        for template in default_templates():
            for stage in template.stages:
                for trigger in stage.notification_triggers:
                    assert trigger.template in NOTIFICATION_TEMPLATES

    def test_permissions_for_roles(self):
        perms = permissions_for_roles(["admissions_director"])
        assert perms == frozenset({"make_admission_decision"})
        assert "activate_workflow" in permissions_for_roles(["admin"])
        assert permissions_for_roles([]) == frozenset()
