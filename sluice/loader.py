"""Build WorkflowTemplate objects from structured data.

Two shapes are accepted for conditions:

- tree form: ``{"kind": "leaf", ...}`` / ``{"kind": "group", "combinator": ..., "children": [...]}``
  or the shorthand ``{"all": [...]}`` / ``{"any": [...]}``;
- the flat list form used by the admissions configuration
  (``"conditions": [{"field": ..., "operator": ..., "value": ...}, ...]``),
  which is read as an implicit ALL group.

Transitions may refer to stages by id or by name.
"""

import json
import re
import tomllib
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from sluice.graph import MalformedTemplate
from sluice.model import ConditionGroup, ConditionLeaf, WorkflowTemplate


def slugify(value: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", value.lower()).strip("-")


def parse_condition(raw: Any) -> ConditionLeaf | ConditionGroup | None:
    if raw is None:
        return None
    if isinstance(raw, (ConditionLeaf, ConditionGroup)):
        return raw
    if isinstance(raw, list):
        if not raw:
            return None
        if len(raw) == 1:
            return parse_condition(raw[0])
        return ConditionGroup(children=tuple(parse_condition(c) for c in raw))
    if not isinstance(raw, Mapping):
        raise ValueError(f"Cannot parse condition from {type(raw).__name__}")

    kind = raw.get("kind")
    if kind == "group" or "children" in raw:
        return ConditionGroup(
            combinator=raw.get("combinator", "all"),
            children=tuple(parse_condition(c) for c in raw.get("children", ())),
        )
    for combinator in ("all", "any"):
        if combinator in raw and "field" not in raw:
            return ConditionGroup(
                combinator=combinator,
                children=tuple(parse_condition(c) for c in raw[combinator]),
            )
    return ConditionLeaf(
        field=raw["field"],
        operator=raw["operator"],
        value=raw.get("value"),
    )


def load_template(data: Mapping[str, Any], **overrides: Any) -> WorkflowTemplate:
    """Turn a template mapping into a WorkflowTemplate.

    Raises MalformedTemplate when the data cannot be parsed at all; structural
    checks (reachability etc.) are left to TransitionGraph.validate().
    """
    raw = {**data, **overrides}
    template_id = raw.get("id") or slugify(raw.get("name", ""))
    try:
        stages = [dict(s) for s in raw.get("stages", ())]
        name_to_id = {}
        for stage in stages:
            stage.setdefault("id", stage.get("name"))
            name_to_id[stage["name"]] = stage["id"]
            triggers = stage.get("notification_triggers") or []
            stage["notification_triggers"] = [dict(t) for t in triggers]

        transitions = []
        for t in raw.get("transitions", ()):
            t = dict(t)
            t["source"] = name_to_id.get(t["source"], t["source"])
            t["target"] = name_to_id.get(t["target"], t["target"])
            condition = t.pop("conditions", None)
            if "condition" in t:
                condition = t.pop("condition")
            t["condition"] = parse_condition(condition)
            t["required_permissions"] = t.get("required_permissions") or []
            transitions.append(t)

        start = raw.get("start_stage_id") or raw.get("start_stage")
        return WorkflowTemplate(
            id=template_id,
            version=raw.get("version", 1),
            name=raw.get("name", template_id),
            description=raw.get("description", ""),
            application_type=raw["application_type"],
            stages=stages,
            transitions=transitions,
            is_active=raw.get("is_active", False),
            start_stage_id=name_to_id.get(start, start) if start else None,
        )
    except (KeyError, TypeError, ValueError, ValidationError) as e:
        raise MalformedTemplate(template_id or "<unnamed>", [f"{type(e).__name__}: {e}"])


def read_template_file(path: str | Path) -> list[dict[str, Any]]:
    """Read raw template mappings from a ``.json`` or ``.toml`` file.

    The file may hold a single template, a list of templates, or a mapping
    with a ``templates`` key.
    """
    path = Path(path)
    if path.suffix == ".toml":
        with open(path, "rb") as fh:
            data: Any = tomllib.load(fh)
    else:
        with open(path, encoding="utf-8") as fh:
            data = json.load(fh)
    if isinstance(data, Mapping) and "templates" in data:
        data = data["templates"]
    if isinstance(data, Mapping):
        data = [data]
    return list(data)


def load_template_file(path: str | Path) -> list[WorkflowTemplate]:
    return [load_template(raw) for raw in read_template_file(path)]
