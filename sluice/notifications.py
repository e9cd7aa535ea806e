import asyncio
import datetime
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Sequence
from enum import Enum
from typing import Any, Callable

from pydantic import BaseModel, ConfigDict
from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from sluice.collaborators import NotificationSender
from sluice.model import STAGE_ENTRY, RetryPolicy
from sluice.postgres import NotificationDedupeRecord
from sluice.tracing import _NoopTracer

logger = logging.getLogger(__name__)


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    DELIVERED = "delivered"
    FAILED = "failed"


class DedupeKey(BaseModel):
    """Identity of one notification for one stage entry.

    ``(application_id, stage_id, entered_at)`` names the stage entry; the event
    and template key keep several triggers of the same entry apart.
    """

    model_config = ConfigDict(frozen=True)

    application_id: str
    stage_id: str
    entered_at: datetime.datetime
    template_key: str
    event: str = STAGE_ENTRY
    event_id: str | None = None

    def __str__(self) -> str:
        parts = [
            self.application_id,
            self.stage_id,
            self.entered_at.isoformat(),
            self.event,
            self.template_key,
        ]
        if self.event_id is not None:
            parts.append(self.event_id)
        return "|".join(parts)


class DedupeStore(ABC):
    @abstractmethod
    async def claim(self, key: str, application_id: str, template_key: str) -> bool:
        """Atomically record ``key``; False if it was already claimed."""

    @abstractmethod
    async def record_outcome(
        self,
        key: str,
        status: DeliveryStatus,
        attempts: int,
        error: str | None = None,
    ) -> None:
        pass

    @abstractmethod
    async def status(self, key: str) -> DeliveryStatus | None:
        pass


class InMemoryDedupeStore(DedupeStore):
    def __init__(self) -> None:
        self._records: dict[str, dict[str, Any]] = {}

    async def claim(self, key: str, application_id: str, template_key: str) -> bool:
        # No await between check and insert, so this is atomic on the event loop.
        if key in self._records:
            return False
        self._records[key] = {
            "application_id": application_id,
            "template_key": template_key,
            "status": DeliveryStatus.PENDING,
            "attempts": 0,
            "error": None,
        }
        return True

    async def record_outcome(
        self,
        key: str,
        status: DeliveryStatus,
        attempts: int,
        error: str | None = None,
    ) -> None:
        record = self._records.get(key)
        if record is not None:
            record.update(status=status, attempts=attempts, error=error)

    async def status(self, key: str) -> DeliveryStatus | None:
        record = self._records.get(key)
        return record["status"] if record else None

    def keys(self) -> list[str]:
        return list(self._records)


class SqlDedupeStore(DedupeStore):
    def __init__(self, session_maker: async_sessionmaker[AsyncSession]) -> None:
        self._session_maker = session_maker

    async def claim(self, key: str, application_id: str, template_key: str) -> bool:
        async with self._session_maker() as s:
            try:
                await s.execute(
                    insert(NotificationDedupeRecord).values(
                        dedupe_key=key,
                        application_id=application_id,
                        template_key=template_key,
                        status=DeliveryStatus.PENDING.value,
                        attempts=0,
                    )
                )
                await s.commit()
            except IntegrityError:
                await s.rollback()
                return False
        return True

    async def record_outcome(
        self,
        key: str,
        status: DeliveryStatus,
        attempts: int,
        error: str | None = None,
    ) -> None:
        async with self._session_maker() as s:
            await s.execute(
                update(NotificationDedupeRecord)
                .where(NotificationDedupeRecord.dedupe_key == key)
                .values(status=status.value, attempts=attempts, error_message=error)
            )
            await s.commit()

    async def status(self, key: str) -> DeliveryStatus | None:
        async with self._session_maker() as s:
            value = await s.scalar(
                select(NotificationDedupeRecord.status).where(
                    NotificationDedupeRecord.dedupe_key == key
                )
            )
        return DeliveryStatus(value) if value is not None else None


class NotificationDispatcher:
    """Deduplicated, fire-and-forget notification delivery with retries.

    ``dispatch`` only claims the dedupe key and schedules a background task;
    the engine never waits for, or sees failures from, the sender.
    """

    def __init__(
        self,
        sender: NotificationSender,
        dedupe_store: DedupeStore | None = None,
        retry_policy: RetryPolicy | None = None,
        on_delivery_failed: (
            Callable[[str, str, Exception], Awaitable[None]] | None
        ) = None,
        metrics: Any = None,
        tracer: Any = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        shutdown_timeout: float = 30.0,
    ) -> None:
        self._sender = sender
        self._dedupe = dedupe_store or InMemoryDedupeStore()
        self._retry_policy = retry_policy or RetryPolicy()
        self._on_delivery_failed = on_delivery_failed
        self._metrics = metrics
        self._tracer = tracer or _NoopTracer()
        self._sleep = sleep
        self._shutdown_timeout = shutdown_timeout
        self._inflight: dict[str, asyncio.Task] = {}

    @property
    def dedupe_store(self) -> DedupeStore:
        return self._dedupe

    @property
    def inflight(self) -> int:
        return len(self._inflight)

    async def dispatch(
        self,
        application_id: str,
        template_key: str,
        channels: Sequence[str],
        dedupe_key: DedupeKey | str,
    ) -> bool:
        """Schedule delivery; returns False when ``dedupe_key`` was already used."""
        key = str(dedupe_key)
        if not await self._dedupe.claim(key, application_id, template_key):
            logger.debug(f"Notification {key} already dispatched, skipping")
            if self._metrics:
                self._metrics.record_notification_deduplicated(template_key)
            return False

        task = asyncio.create_task(
            self._deliver(key, application_id, template_key, tuple(channels)),
            name=f"notify-{key}",
        )
        self._inflight[key] = task

        def _on_task_done(t: asyncio.Task) -> None:
            self._inflight.pop(key, None)
            try:
                t.result()
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.exception(f"Unhandled exception in notification task {key}: {e}")

        task.add_done_callback(_on_task_done)
        return True

    async def _deliver(
        self,
        key: str,
        application_id: str,
        template_key: str,
        channels: tuple[str, ...],
    ) -> None:
        with self._tracer.span(
            "deliver_notification",
            {
                "sluice.application_id": application_id,
                "sluice.template_key": template_key,
            },
        ):
            await self._deliver_with_retry(key, application_id, template_key, channels)

    async def _deliver_with_retry(
        self,
        key: str,
        application_id: str,
        template_key: str,
        channels: tuple[str, ...],
    ) -> None:
        policy = self._retry_policy
        attempts = 0
        last_exception: Exception | None = None

        while attempts <= policy.max_retries:
            try:
                await self._sender.send(template_key, channels, application_id)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                last_exception = e
                attempts += 1
                logger.warning(
                    f"Notification {template_key} for {application_id} failed "
                    f"(attempt {attempts}/{policy.max_retries + 1}): {e}"
                )
            else:
                attempts += 1
                await self._dedupe.record_outcome(key, DeliveryStatus.DELIVERED, attempts)
                if self._metrics:
                    self._metrics.record_notification_delivered(template_key)
                logger.debug(f"Delivered {template_key} for {application_id} via {channels}")
                return

            if attempts <= policy.max_retries:
                delay = policy.delay_for(attempts)
                if self._metrics:
                    self._metrics.record_notification_retry(template_key)
                logger.info(
                    f"Retrying notification {template_key} for {application_id} "
                    f"after {delay}s (attempt {attempts + 1}/{policy.max_retries + 1})"
                )
                await self._sleep(delay)

        error_type = type(last_exception).__name__ if last_exception else "unknown"
        await self._dedupe.record_outcome(
            key, DeliveryStatus.FAILED, attempts, str(last_exception)
        )
        logger.error(
            f"Notification {template_key} for {application_id} failed permanently "
            f"after {attempts} attempts: {last_exception}"
        )
        if self._metrics:
            self._metrics.record_notification_failed(template_key, error_type)
        if self._on_delivery_failed and last_exception is not None:
            try:
                await self._on_delivery_failed(application_id, template_key, last_exception)
            except Exception as e:
                logger.exception(
                    f"on_delivery_failed callback failed for {application_id}: {e}"
                )

    async def drain(self) -> None:
        """Wait for every delivery scheduled so far, including its retries."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight.values()), return_exceptions=True)

    async def stop(self) -> None:
        if self._inflight:
            try:
                await asyncio.wait_for(self.drain(), timeout=self._shutdown_timeout)
            except asyncio.TimeoutError:
                logger.warning(
                    f"Cancelling {len(self._inflight)} notification deliveries on shutdown"
                )
                tasks = list(self._inflight.values())
                for task in tasks:
                    task.cancel()
                await asyncio.gather(*tasks, return_exceptions=True)

    async def __aenter__(self) -> "NotificationDispatcher":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop()
        return False
