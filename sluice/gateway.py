"""Entry point for user-initiated stage transitions.

Permission sets arrive already resolved; the gateway never looks up roles.
Rejections are ordinary results for the caller to present, so they are
logged at INFO and counted, never raised.
"""

import datetime
import logging
from collections.abc import Iterable
from typing import Any

from sluice.collaborators import ContextProvider
from sluice.conditions import is_eligible
from sluice.executor import TransitionExecutor
from sluice.graph import GraphRegistry
from sluice.model import (
    AUTOMATIC,
    AlreadyExists,
    ApplicationWorkflowState,
    Busy,
    ConditionNotMet,
    LeaseHeld,
    NoActiveTemplate,
    NoSuchTransition,
    PermissionDenied,
    Rejection,
    Stage,
    Transition,
    TransitionApplied,
    WorkflowNotInitialized,
)
from sluice.requirements import RequirementsReport, evaluate_stage_requirements
from sluice.store import WorkflowStateStore, new_holder_token

logger = logging.getLogger(__name__)


class ManualTransitionGateway:
    def __init__(
        self,
        registry: GraphRegistry,
        store: WorkflowStateStore,
        executor: TransitionExecutor,
        context_provider: ContextProvider,
        lease_ttl: datetime.timedelta = datetime.timedelta(seconds=60),
        metrics: Any = None,
    ) -> None:
        self._registry = registry
        self._store = store
        self._executor = executor
        self._context_provider = context_provider
        self._lease_ttl = lease_ttl
        self._metrics = metrics

    async def start_workflow(
        self, application_id: str, application_type: str, actor_id: str = AUTOMATIC
    ) -> ApplicationWorkflowState | AlreadyExists | NoActiveTemplate:
        """Start an application on the active template for its type."""
        graph = self._registry.active_for(application_type)
        if graph is None:
            return NoActiveTemplate(
                application_type=application_type,
                msg=f"No active workflow template for {application_type}",
            )
        return await self._executor.initialize(application_id, graph, actor_id)

    async def request_transition(
        self,
        application_id: str,
        transition_name: str,
        actor_permissions: Iterable[str],
        *,
        actor_id: str,
    ) -> (
        TransitionApplied
        | Busy
        | WorkflowNotInitialized
        | NoSuchTransition
        | PermissionDenied
        | ConditionNotMet
        | Rejection
    ):
        lease = await self._store.acquire_lease(
            application_id, self._lease_ttl, holder=new_holder_token("gateway")
        )
        if isinstance(lease, LeaseHeld):
            if self._metrics:
                self._metrics.record_lease_contention("gateway")
            return self._rejected(
                Busy(
                    application_id=application_id,
                    msg=f"Application {application_id} is being processed, try again later",
                )
            )

        try:
            result = await self._request(
                application_id,
                transition_name,
                frozenset(actor_permissions),
                actor_id,
                lease.holder,
            )
        finally:
            await self._store.release_lease(lease)

        if isinstance(result, Rejection):
            return self._rejected(result)
        return result

    async def _request(
        self,
        application_id: str,
        transition_name: str,
        permissions: frozenset[str],
        actor_id: str,
        holder: str,
    ) -> TransitionApplied | Rejection:
        state = await self._store.find(application_id)
        if state is None:
            return WorkflowNotInitialized(
                application_id=application_id,
                msg=f"Application {application_id} has no workflow",
            )

        graph = self._registry.get(state.template_id, state.template_version)
        transition = graph.find(state.current_stage_id, transition_name)
        if transition is None:
            return NoSuchTransition(
                stage_id=state.current_stage_id,
                transition_name=transition_name,
                msg=f"No transition {transition_name!r} from {state.current_stage_id}",
            )

        missing = transition.required_permissions - permissions
        if missing:
            return PermissionDenied(
                transition_name=transition_name,
                missing_permissions=missing,
                msg=f"Missing permissions for {transition_name!r}: {', '.join(sorted(missing))}",
            )

        if transition.condition is not None:
            context = await self._context_provider.fetch(application_id)
            if not is_eligible(transition, context):
                return ConditionNotMet(
                    transition_name=transition_name,
                    msg=f"Conditions for {transition_name!r} are not met",
                )

        return await self._executor.apply(application_id, transition, actor_id, holder)

    def _rejected(self, rejection: Rejection) -> Rejection:
        logger.info(f"Transition request rejected ({rejection.kind}): {rejection.msg}")
        if self._metrics:
            self._metrics.record_rejection(rejection.kind)
        return rejection

    async def available_transitions(
        self, application_id: str, actor_permissions: Iterable[str]
    ) -> list[Transition]:
        """Manual transitions the actor could request right now, in declaration order."""
        state = await self._store.find(application_id)
        if state is None:
            return []
        permissions = frozenset(actor_permissions)
        graph = self._registry.get(state.template_id, state.template_version)
        candidates = [
            t
            for t in graph.manual_from(state.current_stage_id)
            if t.required_permissions <= permissions
        ]
        if not any(t.condition is not None for t in candidates):
            return candidates
        context = await self._context_provider.fetch(application_id)
        return [t for t in candidates if is_eligible(t, context)]

    async def next_stages(
        self, application_id: str, actor_permissions: Iterable[str]
    ) -> list[Stage]:
        state = await self._store.find(application_id)
        if state is None:
            return []
        graph = self._registry.get(state.template_id, state.template_version)
        targets = dict.fromkeys(
            t.target
            for t in await self.available_transitions(application_id, actor_permissions)
        )
        return [graph.stage(stage_id) for stage_id in targets]

    async def stage_requirements(self, application_id: str) -> RequirementsReport | None:
        """Outstanding documents and actions for the application's current stage."""
        state = await self._store.find(application_id)
        if state is None:
            return None
        graph = self._registry.get(state.template_id, state.template_version)
        context = await self._context_provider.fetch(application_id)
        return evaluate_stage_requirements(graph.stage(state.current_stage_id), context)
