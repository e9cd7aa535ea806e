import logging
from collections.abc import Sequence
from typing import Any

from sluice.defaults import NOTIFICATION_DEFAULT_CHANNELS
from sluice.graph import GraphRegistry, TransitionGraph
from sluice.model import (
    AUTOMATIC,
    STAGE_ENTRY,
    AlreadyExists,
    ApplicationWorkflowState,
    LeaseNotHeld,
    StaleTransition,
    Transition,
    TransitionApplied,
)
from sluice.notifications import DedupeKey, NotificationDispatcher
from sluice.store import WorkflowStateStore
from sluice.tracing import _NoopTracer

logger = logging.getLogger(__name__)


class TransitionExecutor:
    """Commits a chosen transition and fires the target stage's entry notifications.

    Callers must already hold the application's lease. Notifications are
    submitted after the state change is durable; a failed submission is logged
    and never rolls the transition back.
    """

    def __init__(
        self,
        registry: GraphRegistry,
        store: WorkflowStateStore,
        dispatcher: NotificationDispatcher,
        metrics: Any = None,
        tracer: Any = None,
        default_channels: Sequence[str] = NOTIFICATION_DEFAULT_CHANNELS,
    ) -> None:
        self._registry = registry
        self._store = store
        self._dispatcher = dispatcher
        self._metrics = metrics
        self._tracer = tracer or _NoopTracer()
        self._default_channels = tuple(default_channels)

    async def apply(
        self,
        application_id: str,
        transition: Transition,
        triggered_by: str,
        holder: str,
    ) -> TransitionApplied | LeaseNotHeld | StaleTransition:
        with self._tracer.span(
            "apply_transition",
            {
                "sluice.application_id": application_id,
                "sluice.transition": transition.name,
            },
        ):
            return await self._apply(application_id, transition, triggered_by, holder)

    async def _apply(
        self,
        application_id: str,
        transition: Transition,
        triggered_by: str,
        holder: str,
    ) -> TransitionApplied | LeaseNotHeld | StaleTransition:
        if not await self._store.holds_lease(application_id, holder):
            return LeaseNotHeld(
                application_id=application_id,
                msg=f"Lease for {application_id} is not held by {holder}",
            )

        state = await self._store.get(application_id)
        if state.current_stage_id != transition.source:
            logger.warning(
                f"Stale transition {transition.name!r} for {application_id}: "
                f"expected stage {transition.source}, found {state.current_stage_id}"
            )
            return StaleTransition(
                expected_stage_id=transition.source,
                actual_stage_id=state.current_stage_id,
                msg=f"Application {application_id} is no longer in {transition.source}",
            )

        result = await self._store.append_transition(
            application_id,
            transition.target,
            transition.name,
            triggered_by,
            holder,
            expected_stage_id=transition.source,
        )
        if isinstance(result, (LeaseNotHeld, StaleTransition)):
            return result

        logger.info(
            f"Application {application_id}: {transition.source} -> {transition.target} "
            f"via {transition.name!r} (triggered by {triggered_by})"
        )
        if self._metrics:
            self._metrics.record_transition_applied(
                result.template_id, automatic=triggered_by == AUTOMATIC
            )

        graph = self._registry.get(result.template_id, result.template_version)
        submitted = await self._fire_triggers(graph, result, STAGE_ENTRY)
        return TransitionApplied(
            state=result, transition=transition, notifications_submitted=submitted
        )

    async def initialize(
        self, application_id: str, graph: TransitionGraph, actor: str = AUTOMATIC
    ) -> ApplicationWorkflowState | AlreadyExists:
        """Place a new application in the template's start stage."""
        template_id, version = graph.ref
        result = await self._store.create(
            application_id, template_id, version, graph.start_stage_id, actor
        )
        if isinstance(result, AlreadyExists):
            return result
        logger.info(
            f"Application {application_id} started {template_id} v{version} "
            f"in {graph.start_stage_id}"
        )
        await self._fire_triggers(graph, result, STAGE_ENTRY)
        return result

    async def emit_event(
        self, application_id: str, event_key: str, event_id: str | None = None
    ) -> int:
        """Fire the current stage's triggers for a named domain event.

        ``event_id`` identifies the occurrence (e.g. which document was
        verified); repeating the same occurrence is deduplicated.
        """
        state = await self._store.get(application_id)
        graph = self._registry.get(state.template_id, state.template_version)
        return await self._fire_triggers(graph, state, event_key, event_id)

    async def _fire_triggers(
        self,
        graph: TransitionGraph,
        state: ApplicationWorkflowState,
        event: str,
        event_id: str | None = None,
    ) -> int:
        stage = graph.stage(state.current_stage_id)
        submitted = 0
        for trigger in stage.triggers_for(event):
            key = DedupeKey(
                application_id=state.application_id,
                stage_id=state.current_stage_id,
                entered_at=state.entered_at,
                template_key=trigger.template,
                event=event,
                event_id=event_id,
            )
            try:
                if await self._dispatcher.dispatch(
                    state.application_id,
                    trigger.template,
                    trigger.channels or self._default_channels,
                    key,
                ):
                    submitted += 1
            except Exception as e:
                logger.exception(
                    f"Failed to submit notification {trigger.template} "
                    f"for {state.application_id}: {e}"
                )
        return submitted
