"""In-memory transition graph built from a WorkflowTemplate.

The graph is a general directed graph: cycles such as
``Additional Information -> Under Review -> Additional Information`` are
legal. Once built and validated it is never mutated, so a single instance is
shared by every scheduler worker and gateway call.

Example::

    graph = TransitionGraph(template)
    graph.validate()  # raises MalformedTemplate
    for t in graph.automatic_from("Submitted"):
        ...
"""

import logging
from collections import defaultdict, deque

from sluice.model import Stage, Transition, WorkflowTemplate

logger = logging.getLogger(__name__)


class MalformedTemplate(Exception):
    def __init__(self, template_id: str, issues: list[str]) -> None:
        self.template_id = template_id
        self.issues = list(issues)
        super().__init__(
            f"Workflow template {template_id} is malformed: " + "; ".join(issues)
        )


class TransitionGraph:
    def __init__(self, template: WorkflowTemplate) -> None:
        self.template = template
        self._stages: dict[str, Stage] = {}
        for stage in template.stages:
            self._stages.setdefault(stage.id, stage)
        self._outgoing: dict[str, list[Transition]] = defaultdict(list)
        self._incoming: dict[str, list[Transition]] = defaultdict(list)
        for t in template.transitions:
            self._outgoing[t.source].append(t)
            self._incoming[t.target].append(t)

    @property
    def ref(self) -> tuple[str, int]:
        return self.template.ref

    @property
    def start_stage_id(self) -> str | None:
        return self.template.resolve_start_stage_id()

    @property
    def start_stage(self) -> Stage:
        return self.stage(self.start_stage_id)

    @property
    def stages(self) -> list[Stage]:
        return list(self.template.stages)

    def stage(self, stage_id: str) -> Stage:
        return self._stages[stage_id]

    def has_stage(self, stage_id: str) -> bool:
        return stage_id in self._stages

    def transitions_from(self, stage_id: str) -> list[Transition]:
        """Outgoing transitions in declaration order."""
        return list(self._outgoing.get(stage_id, ()))

    def transitions_into(self, stage_id: str) -> list[Transition]:
        return list(self._incoming.get(stage_id, ()))

    def automatic_from(self, stage_id: str) -> list[Transition]:
        return [t for t in self._outgoing.get(stage_id, ()) if t.is_automatic]

    def manual_from(self, stage_id: str) -> list[Transition]:
        return [t for t in self._outgoing.get(stage_id, ()) if not t.is_automatic]

    def find(self, stage_id: str, name: str) -> Transition | None:
        for t in self._outgoing.get(stage_id, ()):
            if t.name == name:
                return t
        return None

    def stages_with_automatic_exits(self) -> list[str]:
        return [s.id for s in self.template.stages if self.automatic_from(s.id)]

    def final_stages(self) -> list[Stage]:
        return [s for s in self.template.stages if not self._outgoing.get(s.id)]

    def reachable_from(self, stage_id: str) -> set[str]:
        seen = {stage_id}
        queue = deque([stage_id])
        while queue:
            current = queue.popleft()
            for t in self._outgoing.get(current, ()):
                if t.target not in seen:
                    seen.add(t.target)
                    queue.append(t.target)
        return seen

    def issues(self) -> list[str]:
        """Return the list of structural problems; empty means valid."""
        template = self.template
        errors: list[str] = []

        if not template.stages:
            return ["Workflow must have at least one stage"]

        seen: set[str] = set()
        for stage in template.stages:
            if stage.id in seen:
                errors.append(f"Duplicate stage id {stage.id!r}")
            seen.add(stage.id)

        for t in template.transitions:
            for end, stage_id in (("source", t.source), ("target", t.target)):
                if stage_id not in self._stages:
                    errors.append(
                        f"Transition {t.name!r} references undeclared {end} stage {stage_id!r}"
                    )

        for source, transitions in self._outgoing.items():
            names = [t.name for t in transitions]
            for name in sorted({n for n in names if names.count(n) > 1}):
                errors.append(
                    f"Stage {source!r} has more than one outgoing transition named {name!r}"
                )

        start = self.start_stage_id
        if start not in self._stages:
            errors.append(f"Start stage {start!r} is not a declared stage")
        else:
            reachable = self.reachable_from(start)
            unreachable = [s.id for s in template.stages if s.id not in reachable]
            if unreachable:
                errors.append(
                    "Stages unreachable from start stage "
                    f"{start!r}: {', '.join(unreachable)}"
                )
        return errors

    def validate(self) -> "TransitionGraph":
        errors = self.issues()
        if errors:
            raise MalformedTemplate(self.template.id, errors)
        return self


class GraphRegistry:
    """Validated graphs keyed by ``(template_id, version)``.

    Applications keep resolving the exact version they were started on, even
    after a newer version of the same template has been activated.
    """

    def __init__(self) -> None:
        self._graphs: dict[tuple[str, int], TransitionGraph] = {}
        self._active: dict[str, tuple[str, int]] = {}

    def register(self, template: WorkflowTemplate) -> TransitionGraph:
        """Load and validate a template; activates it when ``is_active`` is set."""
        existing = self._graphs.get(template.ref)
        if existing is not None:
            if existing.template.model_dump(exclude={"is_active"}) != template.model_dump(
                exclude={"is_active"}
            ):
                raise MalformedTemplate(
                    template.id,
                    [
                        f"Version {template.version} is already published with "
                        "different content; publish a new version instead"
                    ],
                )
            graph = existing
        else:
            graph = TransitionGraph(template).validate()
            self._graphs[template.ref] = graph
            logger.info(
                f"Loaded workflow template {template.id} v{template.version} "
                f"({len(template.stages)} stages, {len(template.transitions)} transitions)"
            )
        if template.is_active:
            self.activate(template.id, template.version)
        return graph

    def activate(self, template_id: str, version: int) -> TransitionGraph:
        graph = self._graphs.get((template_id, version))
        if graph is None:
            raise KeyError(f"Template {template_id} v{version} is not registered")
        application_type = graph.template.application_type
        self._active[application_type] = graph.ref
        logger.info(
            f"Activated template {template_id} v{version} for application type {application_type}"
        )
        return graph

    def get(self, template_id: str, version: int) -> TransitionGraph:
        return self._graphs[(template_id, version)]

    def active_for(self, application_type: str) -> TransitionGraph | None:
        ref = self._active.get(application_type)
        if ref is None:
            return None
        return self._graphs[ref]

    def graphs(self) -> list[TransitionGraph]:
        return list(self._graphs.values())
