"""In-memory test helpers for the admission workflow engine.

``EngineTestHarness`` wires the whole engine (registry, in-memory store,
dispatcher, executor, scheduler, gateway) without a database, with a
controllable clock and a sender that records what it was asked to deliver.

Example::

    harness = EngineTestHarness()
    await harness.start_workflow("app-1", "undergraduate")
    harness.set_context("app-1", is_submitted=True)
    result = await harness.request("app-1", "Submit Application", actor_id="u1")
    harness.context.update("app-1", application_fee_paid=True)
    report = await harness.tick()
    await harness.drain()
    assert harness.sender.templates_for("app-1") == [...]
"""

from __future__ import annotations

import datetime
from collections.abc import Iterable, Sequence
from typing import Any

from sluice.collaborators import NotificationSender, StaticContextProvider
from sluice.defaults import default_templates, permissions_for_roles
from sluice.executor import TransitionExecutor
from sluice.gateway import ManualTransitionGateway
from sluice.graph import GraphRegistry
from sluice.model import (
    ApplicationWorkflowState,
    RetryPolicy,
    WorkflowTemplate,
    utcnow,
)
from sluice.notifications import InMemoryDedupeStore, NotificationDispatcher
from sluice.scheduler import AutomaticEvaluationScheduler, TickReport
from sluice.store import InMemoryStateStore


class ManualClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime.datetime | None = None) -> None:
        self.now = start or utcnow()

    def __call__(self) -> datetime.datetime:
        return self.now

    def advance(self, delta: datetime.timedelta) -> datetime.datetime:
        self.now = self.now + delta
        return self.now


class RecordingSender(NotificationSender):
    """Records deliveries; fails the first ``fail_times`` attempts per template key."""

    def __init__(self, fail_times: int = 0, fail_templates: Iterable[str] | None = None) -> None:
        self.fail_times = fail_times
        self.fail_templates = set(fail_templates) if fail_templates is not None else None
        self.attempts: list[tuple[str, tuple[str, ...], str]] = []
        self.sent: list[tuple[str, tuple[str, ...], str]] = []
        self._failures: dict[tuple[str, str], int] = {}

    async def send(
        self, template_key: str, channels: Sequence[str], application_id: str
    ) -> None:
        record = (template_key, tuple(channels), application_id)
        self.attempts.append(record)
        if self.fail_templates is None or template_key in self.fail_templates:
            key = (application_id, template_key)
            failed = self._failures.get(key, 0)
            if failed < self.fail_times:
                self._failures[key] = failed + 1
                raise ConnectionError(f"Simulated delivery failure for {template_key}")
        self.sent.append(record)

    def templates_for(self, application_id: str) -> list[str]:
        return [t for t, _, a in self.sent if a == application_id]


async def _no_sleep(_: float) -> None:
    return None


class EngineTestHarness:
    def __init__(
        self,
        templates: Iterable[WorkflowTemplate] | None = None,
        sender: NotificationSender | None = None,
        clock: ManualClock | None = None,
        retry_policy: RetryPolicy | None = None,
        lease_ttl: datetime.timedelta = datetime.timedelta(seconds=60),
        max_workers: int = 4,
        metrics: Any = None,
    ) -> None:
        self.clock = clock or ManualClock()
        self.registry = GraphRegistry()
        for template in templates if templates is not None else default_templates():
            self.registry.register(template)
        self.store = InMemoryStateStore(clock=self.clock)
        self.context = StaticContextProvider()
        self.sender = sender or RecordingSender()
        self.dedupe_store = InMemoryDedupeStore()
        self.dispatcher = NotificationDispatcher(
            self.sender,
            dedupe_store=self.dedupe_store,
            retry_policy=retry_policy or RetryPolicy(max_retries=3),
            metrics=metrics,
            sleep=_no_sleep,
        )
        self.executor = TransitionExecutor(
            self.registry, self.store, self.dispatcher, metrics=metrics
        )
        self.scheduler = AutomaticEvaluationScheduler(
            self.registry,
            self.store,
            self.executor,
            self.context,
            lease_ttl=lease_ttl,
            max_workers=max_workers,
            metrics=metrics,
        )
        self.gateway = ManualTransitionGateway(
            self.registry,
            self.store,
            self.executor,
            self.context,
            lease_ttl=lease_ttl,
            metrics=metrics,
        )

    async def start_workflow(
        self, application_id: str, application_type: str, actor_id: str = "applicant"
    ) -> Any:
        return await self.gateway.start_workflow(application_id, application_type, actor_id)

    def set_context(self, application_id: str, **values: Any) -> None:
        self.context.set(application_id, values)

    async def tick(self) -> TickReport:
        return await self.scheduler.tick()

    async def request(
        self,
        application_id: str,
        transition_name: str,
        permissions: Iterable[str] = (),
        roles: Iterable[str] = (),
        actor_id: str = "staff",
    ) -> Any:
        """Request a manual transition with explicit permissions and/or role grants."""
        granted = frozenset(permissions) | permissions_for_roles(roles)
        return await self.gateway.request_transition(
            application_id, transition_name, granted, actor_id=actor_id
        )

    async def drain(self) -> None:
        await self.dispatcher.drain()

    async def state(self, application_id: str) -> ApplicationWorkflowState:
        return await self.store.get(application_id)

    async def stage_of(self, application_id: str) -> str:
        return (await self.store.get(application_id)).current_stage_id

    async def stage_path(self, application_id: str) -> list[str]:
        return [h.stage_id for h in (await self.store.get(application_id)).history]
