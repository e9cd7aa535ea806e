"""Contracts for the systems the engine talks to but does not own."""

import logging
from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from sluice.graph import GraphRegistry
    from sluice.store import WorkflowStateStore

logger = logging.getLogger(__name__)


class ContextProvider(ABC):
    @abstractmethod
    async def fetch(self, application_id: str) -> Mapping[str, Any]:
        """Return a read-only snapshot of the application's data."""


class NotificationSender(ABC):
    @abstractmethod
    async def send(
        self, template_key: str, channels: Sequence[str], application_id: str
    ) -> None:
        """Deliver a notification; raising signals a (possibly transient) failure."""


class CandidateSource(ABC):
    @abstractmethod
    async def candidates(self, registry: "GraphRegistry") -> list[str]:
        """Application ids currently in a stage with an automatic exit."""


class StaticContextProvider(ContextProvider):
    """Serves snapshots from an in-process dict; unknown ids get an empty mapping."""

    def __init__(self, data: Mapping[str, Mapping[str, Any]] | None = None) -> None:
        self._data: dict[str, dict[str, Any]] = {
            k: dict(v) for k, v in (data or {}).items()
        }

    def set(self, application_id: str, data: Mapping[str, Any]) -> None:
        self._data[application_id] = dict(data)

    def update(self, application_id: str, **values: Any) -> None:
        self._data.setdefault(application_id, {}).update(values)

    async def fetch(self, application_id: str) -> Mapping[str, Any]:
        return dict(self._data.get(application_id, {}))


class StoreCandidateSource(CandidateSource):
    """Candidate index backed by the state store's current-stage lookup."""

    def __init__(self, store: "WorkflowStateStore") -> None:
        self._store = store

    async def candidates(self, registry: "GraphRegistry") -> list[str]:
        ids: list[str] = []
        for graph in registry.graphs():
            stage_ids = graph.stages_with_automatic_exits()
            if not stage_ids:
                continue
            template_id, version = graph.ref
            ids.extend(await self._store.list_in_stages(template_id, version, stage_ids))
        return ids


class LoggingNotificationSender(NotificationSender):
    """Logs each notification instead of delivering it; for dry runs and local use."""

    async def send(
        self, template_key: str, channels: Sequence[str], application_id: str
    ) -> None:
        logger.info(
            f"Notification {template_key} for {application_id} via {', '.join(channels)}"
        )
