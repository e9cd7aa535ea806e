"""Workflow state persistence and per-application leases.

Every mutation of an ApplicationWorkflowState goes through
``append_transition`` and requires the caller to hold the application's live
lease. Two concurrent ``acquire_lease`` calls for the same application never
both succeed.
"""

import asyncio
import datetime
import logging
import uuid
from abc import ABC, abstractmethod
from typing import Callable, Iterable

from sqlalchemy import delete, insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from sluice.model import (
    AlreadyExists,
    ApplicationWorkflowState,
    HistoryEntry,
    Lease,
    LeaseHeld,
    LeaseNotHeld,
    StaleTransition,
    WorkflowTemplate,
    utcnow,
)
from sluice.postgres import (
    ApplicationStateRecord,
    LeaseRecord,
    StageHistoryRecord,
    WorkflowTemplateRecord,
)

logger = logging.getLogger(__name__)

_TICK = datetime.timedelta(microseconds=1)


def new_holder_token(prefix: str = "holder") -> str:
    return f"{prefix}-{uuid.uuid4().hex}"


def _aware(dt: datetime.datetime) -> datetime.datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=datetime.timezone.utc)
    return dt


def _entry_time(now: datetime.datetime, previous: datetime.datetime) -> datetime.datetime:
    # Entry timestamps are strictly increasing per application so that
    # (application, stage, entered_at) identifies one stage entry.
    return now if now > previous else previous + _TICK


def _check_stage(
    application_id: str, current_stage_id: str, expected_stage_id: str | None
) -> StaleTransition | None:
    if expected_stage_id is None or expected_stage_id == current_stage_id:
        return None
    return StaleTransition(
        expected_stage_id=expected_stage_id,
        actual_stage_id=current_stage_id,
        msg=f"Application {application_id} is no longer in {expected_stage_id}",
    )


class WorkflowNotFound(Exception):
    def __init__(self, application_id: str, *args: object) -> None:
        super().__init__(*args)
        self.application_id = application_id

    def __str__(self) -> str:
        return f"No workflow state for application {self.application_id}"


class WorkflowStateStore(ABC):
    @abstractmethod
    async def find(self, application_id: str) -> ApplicationWorkflowState | None:
        pass

    async def get(self, application_id: str) -> ApplicationWorkflowState:
        state = await self.find(application_id)
        if state is None:
            raise WorkflowNotFound(application_id)
        return state

    @abstractmethod
    async def create(
        self,
        application_id: str,
        template_id: str,
        template_version: int,
        stage_id: str,
        triggered_by: str,
    ) -> ApplicationWorkflowState | AlreadyExists:
        """Open the first history entry for a new application."""

    @abstractmethod
    async def append_transition(
        self,
        application_id: str,
        new_stage_id: str,
        transition_name: str,
        triggered_by: str,
        holder: str,
        expected_stage_id: str | None = None,
    ) -> ApplicationWorkflowState | LeaseNotHeld | StaleTransition:
        """Atomically close the open history entry and open one for ``new_stage_id``.

        When ``expected_stage_id`` is given the append is refused with
        ``StaleTransition`` unless the application is still in that stage.
        """

    @abstractmethod
    async def acquire_lease(
        self,
        application_id: str,
        ttl: datetime.timedelta,
        holder: str | None = None,
    ) -> Lease | LeaseHeld:
        pass

    @abstractmethod
    async def renew_lease(
        self, lease: Lease, ttl: datetime.timedelta
    ) -> Lease | LeaseNotHeld:
        pass

    @abstractmethod
    async def release_lease(self, lease: Lease) -> bool:
        """Release a lease; returns False if it had already expired or been taken over."""

    @abstractmethod
    async def current_lease(self, application_id: str) -> Lease | None:
        """The live lease for an application, if any."""

    async def holds_lease(self, application_id: str, holder: str) -> bool:
        lease = await self.current_lease(application_id)
        return lease is not None and lease.holder == holder

    @abstractmethod
    async def list_in_stages(
        self, template_id: str, template_version: int, stage_ids: Iterable[str]
    ) -> list[str]:
        """Ids of applications on the given template version whose current stage is in ``stage_ids``."""


class InMemoryStateStore(WorkflowStateStore):
    """Process-local store guarded by a single asyncio lock."""

    def __init__(self, clock: Callable[[], datetime.datetime] = utcnow) -> None:
        self._clock = clock
        self._states: dict[str, ApplicationWorkflowState] = {}
        self._leases: dict[str, Lease] = {}
        self._lock = asyncio.Lock()

    async def find(self, application_id: str) -> ApplicationWorkflowState | None:
        return self._states.get(application_id)

    async def create(
        self,
        application_id: str,
        template_id: str,
        template_version: int,
        stage_id: str,
        triggered_by: str,
    ) -> ApplicationWorkflowState | AlreadyExists:
        async with self._lock:
            if application_id in self._states:
                return AlreadyExists(msg=f"Application {application_id} already has a workflow")
            now = self._clock()
            state = ApplicationWorkflowState(
                application_id=application_id,
                template_id=template_id,
                template_version=template_version,
                current_stage_id=stage_id,
                entered_at=now,
                history=(
                    HistoryEntry(stage_id=stage_id, entered_at=now, triggered_by=triggered_by),
                ),
            )
            self._states[application_id] = state
            return state

    def _live_lease(self, application_id: str) -> Lease | None:
        lease = self._leases.get(application_id)
        if lease is not None and lease.is_live(self._clock()):
            return lease
        return None

    async def append_transition(
        self,
        application_id: str,
        new_stage_id: str,
        transition_name: str,
        triggered_by: str,
        holder: str,
        expected_stage_id: str | None = None,
    ) -> ApplicationWorkflowState | LeaseNotHeld | StaleTransition:
        async with self._lock:
            lease = self._live_lease(application_id)
            if lease is None or lease.holder != holder:
                return LeaseNotHeld(
                    application_id=application_id,
                    msg=f"Lease for {application_id} is not held by {holder}",
                )
            state = self._states.get(application_id)
            if state is None:
                raise WorkflowNotFound(application_id)
            stale = _check_stage(application_id, state.current_stage_id, expected_stage_id)
            if stale is not None:
                return stale
            now = _entry_time(self._clock(), state.entered_at)
            closed = state.history[-1].model_copy(update={"exited_at": now})
            opened = HistoryEntry(
                stage_id=new_stage_id,
                entered_at=now,
                transition_name=transition_name,
                triggered_by=triggered_by,
            )
            new_state = state.model_copy(
                update={
                    "current_stage_id": new_stage_id,
                    "entered_at": now,
                    "history": state.history[:-1] + (closed, opened),
                }
            )
            new_state.check_invariants()
            self._states[application_id] = new_state
            return new_state

    async def acquire_lease(
        self,
        application_id: str,
        ttl: datetime.timedelta,
        holder: str | None = None,
    ) -> Lease | LeaseHeld:
        async with self._lock:
            current = self._live_lease(application_id)
            if current is not None:
                return LeaseHeld(
                    application_id=application_id,
                    holder=current.holder,
                    expires_at=current.expires_at,
                    msg=f"Application {application_id} is leased by {current.holder}",
                )
            lease = Lease(
                application_id=application_id,
                holder=holder or new_holder_token(),
                expires_at=self._clock() + ttl,
            )
            self._leases[application_id] = lease
            return lease

    async def renew_lease(
        self, lease: Lease, ttl: datetime.timedelta
    ) -> Lease | LeaseNotHeld:
        async with self._lock:
            current = self._live_lease(lease.application_id)
            if current is None or current.holder != lease.holder:
                return LeaseNotHeld(application_id=lease.application_id)
            renewed = current.model_copy(update={"expires_at": self._clock() + ttl})
            self._leases[lease.application_id] = renewed
            return renewed

    async def release_lease(self, lease: Lease) -> bool:
        async with self._lock:
            current = self._live_lease(lease.application_id)
            if current is None or current.holder != lease.holder:
                return False
            del self._leases[lease.application_id]
            return True

    async def current_lease(self, application_id: str) -> Lease | None:
        return self._live_lease(application_id)

    async def list_in_stages(
        self, template_id: str, template_version: int, stage_ids: Iterable[str]
    ) -> list[str]:
        wanted = set(stage_ids)
        return [
            s.application_id
            for s in self._states.values()
            if s.template_ref == (template_id, template_version)
            and s.current_stage_id in wanted
        ]


class SqlStateStore(WorkflowStateStore):
    """SQLAlchemy-backed store.

    Lease acquisition is a conditional UPDATE of an expired row followed by an
    INSERT that relies on the primary key: whichever of two racing callers
    loses gets an IntegrityError (or a zero rowcount) and sees LeaseHeld.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        clock: Callable[[], datetime.datetime] = utcnow,
    ) -> None:
        self._session_maker = session_maker
        self._clock = clock

    async def find(self, application_id: str) -> ApplicationWorkflowState | None:
        async with self._session_maker() as s:
            return await self._load(s, application_id)

    async def _load(
        self, s: AsyncSession, application_id: str
    ) -> ApplicationWorkflowState | None:
        row = await s.scalar(
            select(ApplicationStateRecord).where(
                ApplicationStateRecord.application_id == application_id
            )
        )
        if row is None:
            return None
        result = await s.execute(
            select(StageHistoryRecord)
            .where(StageHistoryRecord.application_id == application_id)
            .order_by(StageHistoryRecord.position)
        )
        history = tuple(
            HistoryEntry(
                stage_id=h.stage_id,
                entered_at=_aware(h.entered_at),
                exited_at=_aware(h.exited_at) if h.exited_at else None,
                transition_name=h.transition_name,
                triggered_by=h.triggered_by,
            )
            for h in result.scalars().all()
        )
        state = ApplicationWorkflowState(
            application_id=row.application_id,
            template_id=row.template_id,
            template_version=row.template_version,
            current_stage_id=row.current_stage_id,
            entered_at=_aware(row.entered_at),
            history=history,
        )
        state.check_invariants()
        return state

    async def create(
        self,
        application_id: str,
        template_id: str,
        template_version: int,
        stage_id: str,
        triggered_by: str,
    ) -> ApplicationWorkflowState | AlreadyExists:
        now = self._clock()
        async with self._session_maker() as s:
            try:
                await s.execute(
                    insert(ApplicationStateRecord).values(
                        application_id=application_id,
                        template_id=template_id,
                        template_version=template_version,
                        current_stage_id=stage_id,
                        entered_at=now,
                        history_length=1,
                    )
                )
                await s.execute(
                    insert(StageHistoryRecord).values(
                        application_id=application_id,
                        position=1,
                        stage_id=stage_id,
                        entered_at=now,
                        triggered_by=triggered_by,
                    )
                )
                await s.commit()
            except IntegrityError:
                await s.rollback()
                return AlreadyExists(msg=f"Application {application_id} already has a workflow")
        return await self.get(application_id)

    async def append_transition(
        self,
        application_id: str,
        new_stage_id: str,
        transition_name: str,
        triggered_by: str,
        holder: str,
        expected_stage_id: str | None = None,
    ) -> ApplicationWorkflowState | LeaseNotHeld | StaleTransition:
        async with self._session_maker() as s:
            now = self._clock()
            # Locking the lease row blocks a competing acquire until commit.
            lease = await s.scalar(
                select(LeaseRecord)
                .where(LeaseRecord.application_id == application_id)
                .where(LeaseRecord.holder == holder)
                .where(LeaseRecord.expires_at > now)
                .with_for_update()
            )
            if lease is None:
                return LeaseNotHeld(
                    application_id=application_id,
                    msg=f"Lease for {application_id} is not held by {holder}",
                )
            row = await s.scalar(
                select(ApplicationStateRecord)
                .where(ApplicationStateRecord.application_id == application_id)
                .with_for_update()
            )
            if row is None:
                raise WorkflowNotFound(application_id)
            stale = _check_stage(application_id, row.current_stage_id, expected_stage_id)
            if stale is not None:
                await s.rollback()
                return stale

            entered_at = _entry_time(now, _aware(row.entered_at))
            await s.execute(
                update(StageHistoryRecord)
                .where(StageHistoryRecord.application_id == application_id)
                .where(StageHistoryRecord.exited_at.is_(None))
                .values(exited_at=entered_at)
            )
            await s.execute(
                insert(StageHistoryRecord).values(
                    application_id=application_id,
                    position=row.history_length + 1,
                    stage_id=new_stage_id,
                    entered_at=entered_at,
                    transition_name=transition_name,
                    triggered_by=triggered_by,
                )
            )
            await s.execute(
                update(ApplicationStateRecord)
                .where(ApplicationStateRecord.application_id == application_id)
                .values(
                    current_stage_id=new_stage_id,
                    entered_at=entered_at,
                    history_length=row.history_length + 1,
                )
            )
            await s.commit()
        return await self.get(application_id)

    async def acquire_lease(
        self,
        application_id: str,
        ttl: datetime.timedelta,
        holder: str | None = None,
    ) -> Lease | LeaseHeld:
        holder = holder or new_holder_token()
        now = self._clock()
        expires_at = now + ttl
        async with self._session_maker() as s:
            result = await s.execute(
                update(LeaseRecord)
                .where(LeaseRecord.application_id == application_id)
                .where(LeaseRecord.expires_at <= now)
                .values(holder=holder, expires_at=expires_at)
            )
            if result.rowcount != 1:
                try:
                    await s.execute(
                        insert(LeaseRecord).values(
                            application_id=application_id,
                            holder=holder,
                            expires_at=expires_at,
                        )
                    )
                except IntegrityError:
                    await s.rollback()
                    current = await s.scalar(
                        select(LeaseRecord).where(
                            LeaseRecord.application_id == application_id
                        )
                    )
                    return LeaseHeld(
                        application_id=application_id,
                        holder=current.holder if current else None,
                        expires_at=_aware(current.expires_at) if current else None,
                        msg=f"Application {application_id} is leased",
                    )
            await s.commit()
        return Lease(application_id=application_id, holder=holder, expires_at=expires_at)

    async def renew_lease(
        self, lease: Lease, ttl: datetime.timedelta
    ) -> Lease | LeaseNotHeld:
        now = self._clock()
        expires_at = now + ttl
        async with self._session_maker() as s:
            result = await s.execute(
                update(LeaseRecord)
                .where(LeaseRecord.application_id == lease.application_id)
                .where(LeaseRecord.holder == lease.holder)
                .where(LeaseRecord.expires_at > now)
                .values(expires_at=expires_at)
            )
            await s.commit()
        if result.rowcount != 1:
            return LeaseNotHeld(application_id=lease.application_id)
        return lease.model_copy(update={"expires_at": expires_at})

    async def release_lease(self, lease: Lease) -> bool:
        async with self._session_maker() as s:
            result = await s.execute(
                delete(LeaseRecord)
                .where(LeaseRecord.application_id == lease.application_id)
                .where(LeaseRecord.holder == lease.holder)
                .where(LeaseRecord.expires_at > self._clock())
            )
            await s.commit()
        return result.rowcount == 1

    async def current_lease(self, application_id: str) -> Lease | None:
        async with self._session_maker() as s:
            row = await s.scalar(
                select(LeaseRecord)
                .where(LeaseRecord.application_id == application_id)
                .where(LeaseRecord.expires_at > self._clock())
            )
        if row is None:
            return None
        return Lease(
            application_id=row.application_id,
            holder=row.holder,
            expires_at=_aware(row.expires_at),
        )

    async def list_in_stages(
        self, template_id: str, template_version: int, stage_ids: Iterable[str]
    ) -> list[str]:
        async with self._session_maker() as s:
            result = await s.execute(
                select(ApplicationStateRecord.application_id)
                .where(ApplicationStateRecord.template_id == template_id)
                .where(ApplicationStateRecord.template_version == template_version)
                .where(ApplicationStateRecord.current_stage_id.in_(list(stage_ids)))
                .order_by(ApplicationStateRecord.application_id)
            )
            return list(result.scalars().all())


class SqlTemplateStore:
    """Published template versions, so every worker loads the same graphs."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]) -> None:
        self._session_maker = session_maker

    async def publish(self, template: WorkflowTemplate) -> WorkflowTemplate | AlreadyExists:
        async with self._session_maker() as s:
            try:
                await s.execute(
                    insert(WorkflowTemplateRecord).values(
                        template_id=template.id,
                        version=template.version,
                        application_type=template.application_type,
                        is_active=False,
                        body=template,
                    )
                )
                await s.commit()
            except IntegrityError:
                await s.rollback()
                return AlreadyExists(
                    msg=f"Template {template.id} v{template.version} is already published"
                )
        logger.info(f"Published template {template.id} v{template.version}")
        if template.is_active:
            await self.activate(template.id, template.version)
        return template

    async def activate(self, template_id: str, version: int) -> bool:
        """Make one version the active template for its application type."""
        async with self._session_maker() as s:
            row = await s.scalar(
                select(WorkflowTemplateRecord)
                .where(WorkflowTemplateRecord.template_id == template_id)
                .where(WorkflowTemplateRecord.version == version)
            )
            if row is None:
                return False
            await s.execute(
                update(WorkflowTemplateRecord)
                .where(WorkflowTemplateRecord.application_type == row.application_type)
                .values(is_active=False)
            )
            await s.execute(
                update(WorkflowTemplateRecord)
                .where(WorkflowTemplateRecord.template_id == template_id)
                .where(WorkflowTemplateRecord.version == version)
                .values(is_active=True)
            )
            await s.commit()
        return True

    async def load_all(self) -> list[WorkflowTemplate]:
        async with self._session_maker() as s:
            result = await s.execute(
                select(WorkflowTemplateRecord).order_by(
                    WorkflowTemplateRecord.template_id, WorkflowTemplateRecord.version
                )
            )
            return [
                row.body.model_copy(update={"is_active": row.is_active})
                for row in result.scalars().all()
            ]
