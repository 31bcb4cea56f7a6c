"""
In-memory job queue with runner assignment.

The queue owns every Job and is the only place job state changes. All
mutations happen under one asyncio.Condition, which also wakes runners
waiting for work. Observers receive every transition through a watch
queue, and terminal output is buffered per job once it starts running.
"""

import asyncio
import contextlib
import itertools
import secrets
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from waypost.errors import Code, FailedPreconditionError, NotFoundError
from waypost.jobs.state import TERMINAL_STATES, State, transition_job, utc_now
from waypost.logging_config import get_logger
from waypost.protocol.entities import Runner
from waypost.protocol.jobs import Job, JobResult
from waypost.protocol.refs import RunnerId
from waypost.protocol.status import RpcStatus
from waypost.protocol.terminal import TerminalEvent
from waypost.runners.registry import RunnerRegistry

logger = get_logger(__name__)


def _generate_job_id() -> str:
    """Generate a job ID in the format 'job-{random}'."""
    return f"job-{secrets.token_hex(8)}"


@dataclass
class JobEvent:
    """A change delivered to job watchers."""

    kind: str  # "state", "terminal" or "closed"
    job: Job | None = None
    previous: State = State.UNKNOWN
    current: State = State.UNKNOWN
    events: list[TerminalEvent] = field(default_factory=list)


@dataclass
class _JobRecord:
    job: Job
    seq: int
    output: list[TerminalEvent] | None = None
    watchers: list[asyncio.Queue[JobEvent]] = field(default_factory=list)
    ack_timer: asyncio.Task | None = None
    expiry_timer: asyncio.Task | None = None
    cancels: int = 0
    force_cancel: bool = False


@dataclass
class JobWatch:
    """A subscription to one job, opened by JobQueue.watch()."""

    job: Job
    output: list[TerminalEvent] | None
    events: asyncio.Queue[JobEvent]

    async def next(self) -> JobEvent:
        return await self.events.get()


class JobQueue:
    """Queue of jobs waiting for, assigned to, or run by runners."""

    def __init__(self, runners: RunnerRegistry, waiting_timeout: float = 120) -> None:
        self._runners = runners
        self._waiting_timeout = waiting_timeout
        self._jobs: dict[str, _JobRecord] = {}
        self._seq = itertools.count()
        self._cond = asyncio.Condition()
        self._tasks: set[asyncio.Task] = set()

    # --- Creation and lookup ---

    async def create(self, job: Job, expires_in: timedelta | None = None) -> Job:
        """Queue a job. The caller's object is not retained.

        Server-owned fields are reset, expire_time included: a job expires
        only when expires_in is given, counted from now.
        """
        job = job.model_copy(
            deep=True,
            update={
                "state": State.UNKNOWN,
                "assigned_runner": None,
                "queue_time": None,
                "assign_time": None,
                "ack_time": None,
                "complete_time": None,
                "cancel_time": None,
                "error": None,
                "result": None,
                "expire_time": utc_now() + expires_in if expires_in is not None else None,
            },
        )
        if not job.id:
            job.id = _generate_job_id()

        async with self._cond:
            if job.id in self._jobs:
                raise FailedPreconditionError(f"job {job.id} already exists")
            record = _JobRecord(job=job, seq=next(self._seq))
            self._jobs[job.id] = record
            self._transition(record, State.QUEUED)
            if job.expire_time is not None:
                record.expiry_timer = self._spawn(self._expire_at(job.id, job.expire_time))
            self._cond.notify_all()

        logger.info("Job queued", job_id=job.id, operation=job.which("operation"))
        return job.model_copy(deep=True)

    async def get(self, job_id: str) -> Job:
        async with self._cond:
            return self._record(job_id).job.model_copy(deep=True)

    async def list_jobs(self, states: list[State] | None = None) -> list[Job]:
        async with self._cond:
            records = sorted(self._jobs.values(), key=lambda r: r.seq)
            return [
                r.job.model_copy(deep=True)
                for r in records
                if not states or r.job.state in states
            ]

    def is_assignable(self, job: Job) -> bool:
        """Whether some online runner could pick up the job right now."""
        online = self._runners.online()
        if not online:
            return False
        target = job.target_runner.target if job.target_runner else None
        match target:
            case RunnerId(id=runner_id):
                return any(r.id == runner_id for r in online)
            case _:
                return any(not r.by_id_only for r in online)

    # --- Assignment ---

    async def assign_for_runner(self, runner: Runner) -> Job:
        """Block until a job is available for the runner, then assign it.

        The job moves to WAITING and is requeued if it is not acked within
        the waiting timeout.
        """
        async with self._cond:
            while True:
                record = self._next_for(runner)
                if record is not None:
                    break
                await self._cond.wait()

            self._transition(record, State.WAITING, runner_id=runner.id)
            record.ack_timer = self._spawn(
                self._nack_after(record.job.id, self._waiting_timeout, record.job.assign_time)
            )
            self._cond.notify_all()
            job = record.job.model_copy(deep=True)

        logger.info("Job assigned", job_id=job.id, runner_id=runner.id)
        return job

    async def ack(self, job_id: str, ack: bool) -> Job:
        """Accept (RUNNING) or reject (back to QUEUED) a WAITING job."""
        async with self._cond:
            record = self._record(job_id)
            if record.job.state != State.WAITING:
                raise FailedPreconditionError(
                    f"job {job_id} can't be acked from state {record.job.state.name}"
                )
            self._cancel_ack_timer(record)
            if ack:
                self._transition(record, State.RUNNING)
                record.output = []
            else:
                self._transition(record, State.QUEUED)
            self._cond.notify_all()
            job = record.job.model_copy(deep=True)

        logger.info("Job acked" if ack else "Job nacked", job_id=job_id)
        return job

    async def complete(
        self,
        job_id: str,
        result: JobResult | None = None,
        error: RpcStatus | None = None,
    ) -> Job:
        """Finish a RUNNING job: ERROR when an error is given, else SUCCESS."""
        async with self._cond:
            record = self._record(job_id)
            if record.job.state != State.RUNNING:
                raise FailedPreconditionError(
                    f"job {job_id} can't be completed from state {record.job.state.name}"
                )
            if error is not None:
                self._transition(record, State.ERROR, error=error)
            else:
                self._transition(record, State.SUCCESS, result=result)
            self._cond.notify_all()
            job = record.job.model_copy(deep=True)

        logger.info("Job completed", job_id=job_id, state=job.state.name)
        return job

    async def cancel(self, job_id: str, force: bool = False) -> Job:
        """Cancel a job.

        Queued or waiting jobs fail immediately. A running job is flagged
        and its runner told to stop; force fails it without waiting.
        Cancelling a finished job does nothing.
        """
        async with self._cond:
            record = self._record(job_id)
            job = record.job
            if job.state in TERMINAL_STATES:
                return job.model_copy(deep=True)

            job.cancel_time = utc_now()
            record.force_cancel = record.force_cancel or force
            record.cancels += 1
            if job.state != State.RUNNING or force:
                self._cancel_ack_timer(record)
                status = RpcStatus(code=int(Code.CANCELLED), message="canceled")
                self._transition(record, State.ERROR, error=status)
            else:
                self._publish(record, JobEvent(
                    kind="state",
                    job=job.model_copy(deep=True),
                    previous=job.state,
                    current=job.state,
                ))
            self._cond.notify_all()
            job = job.model_copy(deep=True)

        logger.info("Job canceled", job_id=job_id, force=force, state=job.state.name)
        return job

    def cancel_state(self, job_id: str) -> tuple[int, bool]:
        """Return how many times the job was canceled and whether it was forced."""
        record = self._record(job_id)
        return record.cancels, record.force_cancel

    async def wait_for_cancel(self, job_id: str, seen: int = 0) -> tuple[int, bool]:
        """Wait until the job has been canceled more than `seen` times.

        Returns the new cancel count and whether the job is force-canceled.
        """
        async with self._cond:
            record = self._record(job_id)
            await self._cond.wait_for(lambda: record.cancels > seen)
            return record.cancels, record.force_cancel

    # --- Terminal output ---

    async def append_terminal(self, job_id: str, events: list[TerminalEvent]) -> None:
        """Buffer terminal events of a running job and fan them out live."""
        async with self._cond:
            record = self._record(job_id)
            if record.output is None or record.job.state != State.RUNNING:
                raise FailedPreconditionError(f"job {job_id} is not running")
            record.output.extend(events)
            self._publish(record, JobEvent(kind="terminal", events=list(events)))

    # --- Watching ---

    @contextlib.asynccontextmanager
    async def watch(self, job_id: str) -> AsyncIterator[JobWatch]:
        """Subscribe to a job's transitions and terminal output.

        The watch carries a snapshot of the job and of its buffered output
        taken atomically with the subscription, so no event is missed or
        duplicated.
        """
        events: asyncio.Queue[JobEvent] = asyncio.Queue()
        async with self._cond:
            record = self._record(job_id)
            record.watchers.append(events)
            snapshot = JobWatch(
                job=record.job.model_copy(deep=True),
                output=list(record.output) if record.output is not None else None,
                events=events,
            )
        try:
            yield snapshot
        finally:
            with contextlib.suppress(ValueError):
                record.watchers.remove(events)

    # --- Lifecycle ---

    async def close(self) -> None:
        """Stop timers and release every watcher."""
        for record in self._jobs.values():
            self._publish(record, JobEvent(kind="closed"))
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)

    # --- Internals ---

    def _record(self, job_id: str) -> _JobRecord:
        try:
            return self._jobs[job_id]
        except KeyError:
            raise NotFoundError(f"job {job_id} not found") from None

    def _transition(self, record: _JobRecord, target: State, **kwargs) -> None:
        previous = transition_job(record.job, target, **kwargs)
        self._publish(record, JobEvent(
            kind="state",
            job=record.job.model_copy(deep=True),
            previous=previous,
            current=target,
        ))

    def _publish(self, record: _JobRecord, event: JobEvent) -> None:
        for watcher in record.watchers:
            watcher.put_nowait(event)

    def _targets(self, job: Job, runner: Runner) -> bool:
        target = job.target_runner.target if job.target_runner else None
        match target:
            case RunnerId(id=runner_id):
                return runner_id == runner.id
            case _:
                return not runner.by_id_only

    def _next_for(self, runner: Runner) -> _JobRecord | None:
        """Oldest queued job this runner may take, expiring stale jobs on the way."""
        now = utc_now()
        best: _JobRecord | None = None
        for record in list(self._jobs.values()):
            job = record.job
            if job.state != State.QUEUED:
                continue
            if job.expire_time is not None and job.expire_time <= now:
                self._expire(record)
                continue
            if not self._targets(job, runner):
                continue
            if best is None or (job.queue_time, record.seq) < (best.job.queue_time, best.seq):
                best = record
        return best

    def _expire(self, record: _JobRecord) -> None:
        status = RpcStatus(
            code=int(Code.DEADLINE_EXCEEDED), message="job expired before assignment"
        )
        self._transition(record, State.ERROR, error=status)
        logger.info("Job expired", job_id=record.job.id)

    def _cancel_ack_timer(self, record: _JobRecord) -> None:
        if record.ack_timer is not None and record.ack_timer is not asyncio.current_task():
            record.ack_timer.cancel()
        record.ack_timer = None

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _nack_after(self, job_id: str, timeout: float, assign_time: datetime | None) -> None:
        await asyncio.sleep(timeout)
        async with self._cond:
            record = self._jobs.get(job_id)
            if record is None or record.job.state != State.WAITING:
                return
            if record.job.assign_time != assign_time:
                return
            record.ack_timer = None
            self._transition(record, State.QUEUED)
            self._cond.notify_all()
        logger.warning("Job ack timed out, requeued", job_id=job_id)

    async def _expire_at(self, job_id: str, deadline: datetime) -> None:
        delay = (deadline - utc_now()).total_seconds()
        if delay > 0:
            await asyncio.sleep(delay)
        async with self._cond:
            record = self._jobs.get(job_id)
            if record is None or record.job.state != State.QUEUED:
                return
            record.expiry_timer = None
            self._expire(record)
            self._cond.notify_all()
