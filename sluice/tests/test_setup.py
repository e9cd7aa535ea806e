"""
Tests for sluice.setup against a real database (TEST_DATABASE_URL).
"""
import os

import pytest
from prometheus_client import CollectorRegistry

from sluice.collaborators import StaticContextProvider
from sluice.config import EngineConfig
from sluice.model import AlreadyExists, TransitionApplied
from sluice.setup import create_engine_resources
from sluice.store import SqlTemplateStore
from sluice.testing import RecordingSender


@pytest.fixture
def config(test_engine):
    return EngineConfig(
        database_url=os.environ["TEST_DATABASE_URL"],
        auto_process_transitions=False,
        enable_prometheus=True,
    )


class TestSqlTemplateStore:
    @pytest.mark.asyncio
    async def test_publish_and_activate(self, test_session_maker, review_template):
        store = SqlTemplateStore(test_session_maker)
        assert await store.publish(review_template) == review_template
        assert isinstance(await store.publish(review_template), AlreadyExists)

        v2 = review_template.new_version()
        await store.publish(v2)
        assert await store.activate("review", 2)
        assert not await store.activate("review", 9)

        loaded = {(t.id, t.version): t.is_active for t in await store.load_all()}
        assert loaded == {("review", 1): False, ("review", 2): True}


class TestCreateEngineResources:
    """End-to-end wiring on the SQL stores."""

    @pytest.mark.asyncio
    async def test_full_flow(self, config):
        context = StaticContextProvider()
        sender = RecordingSender()

        async with create_engine_resources(
            config, context, sender, metrics_registry=CollectorRegistry()
        ) as resources:
            assert resources.registry.active_for("undergraduate") is not None
            await resources.gateway.start_workflow("app-1", "undergraduate", "applicant")
            context.set("app-1", {"is_submitted": True, "application_fee_paid": True})
            result = await resources.gateway.request_transition(
                "app-1", "Submit Application", set(), actor_id="applicant"
            )
            assert isinstance(result, TransitionApplied)

            report = await resources.scheduler.tick()
            assert report.applied == ["app-1"]
            await resources.dispatcher.drain()

            state = await resources.store.get("app-1")
            assert state.current_stage_id == "Document Verification"

        assert sender.templates_for("app-1") == [
            "welcome_to_application",
            "application_received",
            "documents_required",
        ]

    @pytest.mark.asyncio
    async def test_templates_survive_restart(self, config):
        async with create_engine_resources(
            config, StaticContextProvider(), RecordingSender(),
            metrics_registry=CollectorRegistry(),
        ) as first:
            refs = sorted(g.ref for g in first.registry.graphs())
        async with create_engine_resources(
            config, StaticContextProvider(), RecordingSender(),
            metrics_registry=CollectorRegistry(),
        ) as second:
            assert sorted(g.ref for g in second.registry.graphs()) == refs
