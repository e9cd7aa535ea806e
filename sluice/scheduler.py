import asyncio
import datetime
import logging
from contextlib import nullcontext
from typing import Any

from croniter import croniter
from pydantic import BaseModel

from sluice.collaborators import CandidateSource, ContextProvider, StoreCandidateSource
from sluice.conditions import is_eligible
from sluice.executor import TransitionExecutor
from sluice.graph import GraphRegistry
from sluice.model import AUTOMATIC, LeaseHeld, Rejection, TransitionApplied
from sluice.store import WorkflowStateStore, new_holder_token
from sluice.tracing import _NoopTracer

logger = logging.getLogger(__name__)


class TickReport(BaseModel):
    applied: list[str] = []
    skipped_busy: list[str] = []
    no_transition: list[str] = []
    errors: list[str] = []

    @property
    def processed(self) -> int:
        return (
            len(self.applied)
            + len(self.skipped_busy)
            + len(self.no_transition)
            + len(self.errors)
        )


class AutomaticEvaluationScheduler:
    """Periodically moves applications along their automatic transitions.

    Each tick processes every candidate at most once and takes at most one
    hop per application, so a chain of automatic transitions advances one
    stage per tick. Candidates whose lease is held elsewhere are skipped and
    picked up on a later tick.
    """

    def __init__(
        self,
        registry: GraphRegistry,
        store: WorkflowStateStore,
        executor: TransitionExecutor,
        context_provider: ContextProvider,
        candidate_source: CandidateSource | None = None,
        interval: datetime.timedelta = datetime.timedelta(minutes=5),
        lease_ttl: datetime.timedelta = datetime.timedelta(seconds=60),
        max_workers: int = 8,
        cron_expression: str | None = None,
        metrics: Any = None,
        tracer: Any = None,
        name: str = "scheduler",
    ) -> None:
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        if cron_expression is not None and not croniter.is_valid(cron_expression):
            raise ValueError(f"Invalid cron expression: {cron_expression!r}")
        self._registry = registry
        self._store = store
        self._executor = executor
        self._context_provider = context_provider
        self._candidate_source = candidate_source or StoreCandidateSource(store)
        self._interval = interval
        self._lease_ttl = lease_ttl
        self._max_workers = max_workers
        self._cron_expression = cron_expression
        self._metrics = metrics
        self._tracer = tracer or _NoopTracer()
        self._name = name
        self._running = False
        self._task: asyncio.Task | None = None

    async def start(self):
        """Start the periodic evaluation loop."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop(), name=f"sluice-{self._name}")

    async def stop(self):
        """Stop the loop; an in-progress tick is cancelled and its leases expire."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop()
        return False

    def next_delay(self, now: datetime.datetime | None = None) -> float:
        """Seconds until the next tick."""
        if self._cron_expression is None:
            return self._interval.total_seconds()
        now = now or datetime.datetime.now(datetime.timezone.utc)
        next_fire: datetime.datetime = croniter(self._cron_expression, now).get_next(
            datetime.datetime
        )
        if next_fire.tzinfo is None:
            next_fire = next_fire.replace(tzinfo=datetime.timezone.utc)
        return max(0.0, (next_fire - now).total_seconds())

    async def _run_loop(self):
        while self._running:
            try:
                report = await self.tick()
                if report.processed:
                    logger.info(
                        f"Automatic evaluation: {len(report.applied)} applied, "
                        f"{len(report.skipped_busy)} busy, "
                        f"{len(report.no_transition)} unchanged, {len(report.errors)} errors"
                    )
            except Exception as e:
                logger.exception(f"Error in automatic evaluation loop: {e}")

            await asyncio.sleep(self.next_delay())

    async def tick(self) -> TickReport:
        """Run one evaluation pass over the current candidates."""
        report = TickReport()
        timer = self._metrics.time_tick() if self._metrics else nullcontext()
        with timer, self._tracer.span("scheduler_tick"):
            candidates = list(
                dict.fromkeys(await self._candidate_source.candidates(self._registry))
            )
            semaphore = asyncio.Semaphore(self._max_workers)

            async def run(application_id: str) -> None:
                async with semaphore:
                    await self._process(application_id, report)

            results = await asyncio.gather(
                *(run(a) for a in candidates), return_exceptions=True
            )
            for application_id, result in zip(candidates, results):
                if isinstance(result, BaseException):
                    logger.error(f"Worker for {application_id} failed: {result!r}")
                    if application_id not in report.errors:
                        report.errors.append(application_id)
        return report

    async def _process(self, application_id: str, report: TickReport) -> None:
        try:
            lease = await self._store.acquire_lease(
                application_id, self._lease_ttl, holder=new_holder_token(self._name)
            )
        except Exception as e:
            logger.exception(f"Failed to acquire lease for {application_id}: {e}")
            report.errors.append(application_id)
            return
        if isinstance(lease, LeaseHeld):
            logger.debug(f"Skipping {application_id}: leased by {lease.holder}")
            report.skipped_busy.append(application_id)
            if self._metrics:
                self._metrics.record_lease_contention(self._name)
            return

        try:
            result = await self._advance(application_id, lease.holder)
        except Exception as e:
            logger.exception(f"Automatic evaluation failed for {application_id}: {e}")
            report.errors.append(application_id)
            return
        finally:
            try:
                await self._store.release_lease(lease)
            except Exception as e:
                logger.exception(f"Failed to release lease for {application_id}: {e}")

        if result is None:
            report.no_transition.append(application_id)
        elif isinstance(result, TransitionApplied):
            report.applied.append(application_id)
        else:
            logger.warning(
                f"Automatic transition for {application_id} not applied: {result.msg}"
            )
            report.errors.append(application_id)

    async def _advance(
        self, application_id: str, holder: str
    ) -> TransitionApplied | Rejection | None:
        state = await self._store.find(application_id)
        if state is None:
            return None
        graph = self._registry.get(state.template_id, state.template_version)
        automatic = graph.automatic_from(state.current_stage_id)
        if not automatic:
            return None
        context = await self._context_provider.fetch(application_id)
        for transition in automatic:
            if is_eligible(transition, context):
                return await self._executor.apply(
                    application_id, transition, AUTOMATIC, holder
                )
        return None
