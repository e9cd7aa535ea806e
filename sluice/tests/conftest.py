"""
Pytest configuration and shared fixtures for sluice tests.
"""

import datetime
import os
from typing import AsyncGenerator

import pytest
from prometheus_client import CollectorRegistry
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from sluice.collaborators import StaticContextProvider
from sluice.defaults import default_templates
from sluice.executor import TransitionExecutor
from sluice.graph import GraphRegistry
from sluice.loader import load_template
from sluice.metrics import SluiceMetrics
from sluice.model import RetryPolicy, WorkflowTemplate
from sluice.notifications import InMemoryDedupeStore, NotificationDispatcher
from sluice.postgres import Base
from sluice.store import InMemoryStateStore
from sluice.testing import EngineTestHarness, ManualClock, RecordingSender

# SQL-backed tests only run when this is set.
TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL")


async def no_sleep(_: float) -> None:
    return None


# Small cyclic template used where the full admissions templates would be noise:
# intake -> review <-> clarification, review -> done
REVIEW_TEMPLATE = {
    "id": "review",
    "name": "Review",
    "application_type": "review",
    "stages": [
        {
            "id": "intake",
            "name": "Intake",
            "sequence": 1,
            "notification_triggers": [
                {"event": "stage_entry", "template": "intake_opened", "channels": ["email"]}
            ],
        },
        {
            "id": "review",
            "name": "Review",
            "sequence": 2,
            "notification_triggers": [
                {"event": "stage_entry", "template": "review_started", "channels": ["email"]},
                {"event": "stage_entry", "template": "reviewer_assigned", "channels": ["in_app"]},
                {"event": "document_verified", "template": "document_verified", "channels": ["in_app"]},
            ],
        },
        {
            "id": "clarification",
            "name": "Clarification",
            "sequence": 3,
            "notification_triggers": [
                {"event": "stage_entry", "template": "clarification_needed", "channels": []}
            ],
        },
        {"id": "done", "name": "Done", "sequence": 4},
    ],
    "transitions": [
        {
            "source": "intake",
            "target": "review",
            "name": "Fee Paid",
            "is_automatic": True,
            "conditions": [{"field": "fee_paid", "operator": "=", "value": True}],
        },
        {
            "source": "review",
            "target": "clarification",
            "name": "Ask",
            "required_permissions": ["review"],
        },
        {
            "source": "clarification",
            "target": "review",
            "name": "Answered",
            "is_automatic": True,
            "conditions": [{"field": "answered", "operator": "=", "value": True}],
        },
        {
            "source": "review",
            "target": "done",
            "name": "Approve",
            "required_permissions": ["review", "approve"],
            "condition": {"field": "score", "operator": ">=", "value": 70},
        },
    ],
    "is_active": True,
}


@pytest.fixture
def review_template() -> WorkflowTemplate:
    return load_template(REVIEW_TEMPLATE)


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock(datetime.datetime(2024, 9, 1, 9, 0, tzinfo=datetime.timezone.utc))


@pytest.fixture
def registry(review_template) -> GraphRegistry:
    registry = GraphRegistry()
    registry.register(review_template)
    for template in default_templates():
        registry.register(template)
    return registry


@pytest.fixture
def store(clock) -> InMemoryStateStore:
    return InMemoryStateStore(clock=clock)


@pytest.fixture
def sender() -> RecordingSender:
    return RecordingSender()


@pytest.fixture
def context() -> StaticContextProvider:
    return StaticContextProvider()


@pytest.fixture
def retry_policy() -> RetryPolicy:
    return RetryPolicy(
        max_retries=3,
        backoff_strategy="exponential",
        backoff_factor=2.0,
        backoff_max=datetime.timedelta(seconds=60),
        backoff_min=datetime.timedelta(seconds=1),
    )


@pytest.fixture
def metrics() -> SluiceMetrics:
    return SluiceMetrics(enable_prometheus=True, registry=CollectorRegistry())


@pytest.fixture
def dispatcher(sender, retry_policy, metrics) -> NotificationDispatcher:
    return NotificationDispatcher(
        sender,
        dedupe_store=InMemoryDedupeStore(),
        retry_policy=retry_policy,
        metrics=metrics,
        sleep=no_sleep,
    )


@pytest.fixture
def executor(registry, store, dispatcher, metrics) -> TransitionExecutor:
    return TransitionExecutor(registry, store, dispatcher, metrics=metrics)


@pytest.fixture
def harness(metrics) -> EngineTestHarness:
    return EngineTestHarness(metrics=metrics)


# Database fixtures
@pytest.fixture(scope="function")
async def test_engine() -> AsyncGenerator[AsyncEngine, None]:
    """Create a test database engine and recreate tables for each test."""
    if TEST_DATABASE_URL is None:
        pytest.skip("TEST_DATABASE_URL is not set")
    engine = create_async_engine(TEST_DATABASE_URL, echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def test_session_maker(
    test_engine: AsyncEngine,
) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)
