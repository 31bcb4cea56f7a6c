"""
Tests for the in-memory job queue.
"""

import asyncio
from datetime import datetime, timedelta

import pytest

from waypost.errors import Code, FailedPreconditionError, NotFoundError
from waypost.jobs.queue import JobQueue
from waypost.jobs.state import State, utc_now
from waypost.protocol.entities import Runner
from waypost.protocol.jobs import BuildOp, BuildResult, Job, JobResult
from waypost.protocol.refs import RunnerRef
from waypost.protocol.status import RpcStatus
from waypost.protocol.terminal import TerminalEvent
from waypost.runners.registry import RunnerRegistry


def line(msg: str) -> TerminalEvent:
    return TerminalEvent(event=TerminalEvent.Line(msg=msg))


async def assign_now(queue: JobQueue, runner: Runner) -> Job:
    return await asyncio.wait_for(queue.assign_for_runner(runner), timeout=1)


async def start(queue: JobQueue, runner: Runner, job: Job) -> Job:
    """Queue a job and drive it to RUNNING on the runner."""
    created = await queue.create(job)
    assigned = await assign_now(queue, runner)
    assert assigned.id == created.id
    return await queue.ack(assigned.id, ack=True)


class TestCreate:
    async def test_assigns_id_and_queues(self, queue: JobQueue, make_job) -> None:
        job = await queue.create(make_job())
        assert job.id.startswith("job-")
        assert job.state == State.QUEUED
        assert job.queue_time is not None

    async def test_keeps_caller_id(self, queue: JobQueue, make_job) -> None:
        job = await queue.create(make_job(id="job-fixed"))
        assert job.id == "job-fixed"

    async def test_duplicate_id(self, queue: JobQueue, make_job) -> None:
        await queue.create(make_job(id="job-dup"))
        with pytest.raises(FailedPreconditionError, match="already exists"):
            await queue.create(make_job(id="job-dup"))

    async def test_resets_server_owned_fields(self, queue: JobQueue, make_job) -> None:
        job = await queue.create(
            make_job(state=Job.State.SUCCESS, complete_time=utc_now(), result=JobResult())
        )
        assert job.state == State.QUEUED
        assert job.complete_time is None
        assert job.result is None

    async def test_get_unknown(self, queue: JobQueue) -> None:
        with pytest.raises(NotFoundError):
            await queue.get("job-missing")

    async def test_list_filters_by_state(self, queue: JobQueue, make_job) -> None:
        first = await queue.create(make_job())
        second = await queue.create(make_job())
        await queue.cancel(first.id)

        queued = await queue.list_jobs(states=[State.QUEUED])
        assert [j.id for j in queued] == [second.id]
        assert len(await queue.list_jobs()) == 2


class TestAssignment:
    async def test_fifo(self, queue: JobQueue, make_job) -> None:
        first = await queue.create(make_job())
        second = await queue.create(make_job())

        runner = Runner(id="r1")
        assert (await assign_now(queue, runner)).id == first.id
        assert (await assign_now(queue, runner)).id == second.id

    async def test_assignment_moves_to_waiting(self, queue: JobQueue, make_job) -> None:
        await queue.create(make_job())
        job = await assign_now(queue, Runner(id="r1"))
        assert job.state == State.WAITING
        assert job.assigned_runner.id == "r1"

    async def test_targeted_job_goes_to_its_runner(self, queue: JobQueue, make_job) -> None:
        targeted = await queue.create(make_job(target_runner=RunnerRef.for_id("r2")))
        untargeted = await queue.create(make_job())

        assert (await assign_now(queue, Runner(id="r1"))).id == untargeted.id
        assert (await assign_now(queue, Runner(id="r2", by_id_only=True))).id == targeted.id

    async def test_by_id_only_runner_skips_untargeted_work(self, queue: JobQueue, make_job) -> None:
        await queue.create(make_job())
        with pytest.raises(TimeoutError):
            await asyncio.wait_for(
                queue.assign_for_runner(Runner(id="r2", by_id_only=True)), timeout=0.05
            )

    async def test_assignment_waits_for_work(self, queue: JobQueue, make_job) -> None:
        pending = asyncio.create_task(queue.assign_for_runner(Runner(id="r1")))
        await asyncio.sleep(0.01)
        assert not pending.done()

        created = await queue.create(make_job())
        job = await asyncio.wait_for(pending, timeout=1)
        assert job.id == created.id

    async def test_no_second_assignment_of_waiting_job(self, queue: JobQueue, make_job) -> None:
        await queue.create(make_job())
        await assign_now(queue, Runner(id="r1"))
        with pytest.raises(TimeoutError):
            await asyncio.wait_for(queue.assign_for_runner(Runner(id="r1")), timeout=0.05)

    async def test_is_assignable(self, queue: JobQueue, runners: RunnerRegistry, make_job) -> None:
        runners.register(Runner(id="r2", by_id_only=True))
        assert queue.is_assignable(make_job())
        assert queue.is_assignable(make_job(target_runner=RunnerRef.for_id("r2")))
        assert not queue.is_assignable(make_job(target_runner=RunnerRef.for_id("r9")))

        runners.offline("r1")
        assert not queue.is_assignable(make_job())


class TestAck:
    async def test_ack_starts_running(self, queue: JobQueue, make_job) -> None:
        job = await start(queue, Runner(id="r1"), make_job())
        assert job.state == State.RUNNING
        assert job.ack_time is not None

    async def test_nack_requeues(self, queue: JobQueue, make_job) -> None:
        created = await queue.create(make_job())
        await assign_now(queue, Runner(id="r1"))
        job = await queue.ack(created.id, ack=False)
        assert job.state == State.QUEUED
        assert job.assigned_runner is None

        again = await assign_now(queue, Runner(id="r1"))
        assert again.id == created.id

    async def test_ack_requires_waiting(self, queue: JobQueue, make_job) -> None:
        created = await queue.create(make_job())
        with pytest.raises(FailedPreconditionError):
            await queue.ack(created.id, ack=True)

    async def test_unacked_job_is_requeued_after_timeout(
        self, runners: RunnerRegistry, make_job
    ) -> None:
        queue = JobQueue(runners, waiting_timeout=0.05)
        try:
            created = await queue.create(make_job())
            await assign_now(queue, Runner(id="r1"))
            await asyncio.sleep(0.2)
            assert (await queue.get(created.id)).state == State.QUEUED
        finally:
            await queue.close()


class TestComplete:
    async def test_success(self, queue: JobQueue, make_job) -> None:
        job = await start(queue, Runner(id="r1"), make_job(operation=BuildOp()))
        done = await queue.complete(job.id, result=JobResult(build=BuildResult()))
        assert done.state == State.SUCCESS
        assert done.result.build is not None

    async def test_error(self, queue: JobQueue, make_job) -> None:
        job = await start(queue, Runner(id="r1"), make_job())
        status = RpcStatus(code=int(Code.INTERNAL), message="boom")
        done = await queue.complete(job.id, error=status)
        assert done.state == State.ERROR
        assert done.error.message == "boom"

    async def test_complete_requires_running(self, queue: JobQueue, make_job) -> None:
        created = await queue.create(make_job())
        with pytest.raises(FailedPreconditionError):
            await queue.complete(created.id)

    async def test_no_double_completion(self, queue: JobQueue, make_job) -> None:
        job = await start(queue, Runner(id="r1"), make_job())
        await queue.complete(job.id)
        with pytest.raises(FailedPreconditionError):
            await queue.complete(job.id)


class TestCancel:
    async def test_cancel_queued(self, queue: JobQueue, make_job) -> None:
        created = await queue.create(make_job())
        job = await queue.cancel(created.id)
        assert job.state == State.ERROR
        assert job.error.code == Code.CANCELLED
        assert job.cancel_time is not None

    async def test_cancel_running_waits_for_runner(self, queue: JobQueue, make_job) -> None:
        job = await start(queue, Runner(id="r1"), make_job())
        canceled = await queue.cancel(job.id)
        assert canceled.state == State.RUNNING
        assert canceled.cancel_time is not None

        assert queue.cancel_state(job.id) == (1, False)

    async def test_force_cancel_running(self, queue: JobQueue, make_job) -> None:
        job = await start(queue, Runner(id="r1"), make_job())
        canceled = await queue.cancel(job.id, force=True)
        assert canceled.state == State.ERROR
        assert queue.cancel_state(job.id) == (1, True)

    async def test_wait_for_cancel_sees_each_cancel(self, queue: JobQueue, make_job) -> None:
        job = await start(queue, Runner(id="r1"), make_job())
        waiter = asyncio.create_task(queue.wait_for_cancel(job.id))
        await asyncio.sleep(0.01)
        assert not waiter.done()

        await queue.cancel(job.id)
        seen, force = await asyncio.wait_for(waiter, timeout=1)
        assert (seen, force) == (1, False)

        waiter = asyncio.create_task(queue.wait_for_cancel(job.id, seen))
        await asyncio.sleep(0.01)
        assert not waiter.done()

        await queue.cancel(job.id, force=True)
        assert await asyncio.wait_for(waiter, timeout=1) == (2, True)

    async def test_cancel_finished_is_noop(self, queue: JobQueue, make_job) -> None:
        job = await start(queue, Runner(id="r1"), make_job())
        await queue.complete(job.id)
        canceled = await queue.cancel(job.id)
        assert canceled.state == State.SUCCESS
        assert canceled.cancel_time is None


class TestExpiry:
    async def test_expired_job_is_never_assigned(self, queue: JobQueue, make_job) -> None:
        created = await queue.create(make_job(), expires_in=timedelta(seconds=-1))
        await asyncio.sleep(0.01)

        job = await queue.get(created.id)
        assert job.state == State.ERROR
        assert job.error.code == Code.DEADLINE_EXCEEDED

    async def test_expiry_fires_while_queued(self, queue: JobQueue, make_job) -> None:
        created = await queue.create(make_job(), expires_in=timedelta(seconds=0.05))
        assert created.expire_time is not None
        assert (await queue.get(created.id)).state == State.QUEUED
        await asyncio.sleep(0.2)
        assert (await queue.get(created.id)).state == State.ERROR

    async def test_caller_expire_time_is_discarded(self, queue: JobQueue, make_job) -> None:
        stale = await queue.create(make_job(expire_time=utc_now() - timedelta(hours=1)))
        assert stale.expire_time is None
        await asyncio.sleep(0.01)
        assert (await queue.get(stale.id)).state == State.QUEUED

    async def test_naive_expire_time_does_not_block_assignment(
        self, queue: JobQueue, make_job
    ) -> None:
        naive = await queue.create(make_job(expire_time=datetime(2099, 1, 1)))
        other = await queue.create(make_job())
        assert naive.expire_time is None

        assert (await assign_now(queue, Runner(id="r1"))).id == naive.id
        await queue.ack(naive.id, ack=True)
        assert (await assign_now(queue, Runner(id="r1"))).id == other.id


class TestTerminalAndWatch:
    async def test_terminal_requires_running(self, queue: JobQueue, make_job) -> None:
        created = await queue.create(make_job())
        with pytest.raises(FailedPreconditionError, match="not running"):
            await queue.append_terminal(created.id, [line("hi")])

    async def test_watch_sees_transitions_and_output(self, queue: JobQueue, make_job) -> None:
        created = await queue.create(make_job())
        async with queue.watch(created.id) as watch:
            assert watch.job.state == State.QUEUED
            assert watch.output is None

            await assign_now(queue, Runner(id="r1"))
            await queue.ack(created.id, ack=True)
            await queue.append_terminal(created.id, [line("building")])
            await queue.complete(created.id)

            kinds = []
            for _ in range(4):
                change = await asyncio.wait_for(watch.next(), timeout=1)
                kinds.append((change.kind, change.current))

        assert kinds == [
            ("state", State.WAITING),
            ("state", State.RUNNING),
            ("terminal", State.UNKNOWN),
            ("state", State.SUCCESS),
        ]

    async def test_watch_snapshot_includes_buffered_output(self, queue: JobQueue, make_job) -> None:
        job = await start(queue, Runner(id="r1"), make_job())
        await queue.append_terminal(job.id, [line("one"), line("two")])

        async with queue.watch(job.id) as watch:
            assert [e.event.msg for e in watch.output] == ["one", "two"]

    async def test_close_releases_watchers(self, runners: RunnerRegistry, make_job) -> None:
        queue = JobQueue(runners)
        created = await queue.create(make_job())
        async with queue.watch(created.id) as watch:
            await queue.close()
            change = await asyncio.wait_for(watch.next(), timeout=1)
        assert change.kind == "closed"
