"""
Runner-facing RPCs.

RunnerConfig registers a runner and pushes its configuration whenever it
changes. RunnerJobStream hands a runner one job at a time:

1. The runner sends Request{runner_id}
2. The server blocks until a job is available and sends JobAssignment
3. The runner replies Ack (job RUNNING) or Error (job requeued)
4. The runner streams Terminal events and Heartbeats, then Complete or Error
5. Back to step 2 for the next job

A second assignment is never sent before the previous job has been acked
or rejected, and the previous job has finished.
"""

import asyncio

from waypost.config import ServerConfig
from waypost.config_vars import ConfigVarStore
from waypost.errors import (
    Code,
    FailedPreconditionError,
    InvalidArgumentError,
    NotFoundError,
    StreamClosedError,
)
from waypost.jobs.queue import JobQueue
from waypost.jobs.state import TERMINAL_STATES, State
from waypost.logging_config import get_logger
from waypost.protocol.entities import Runner
from waypost.protocol.jobs import GetJobStreamResponse, Job
from waypost.protocol.runner import (
    RunnerConfig,
    RunnerConfigRequest,
    RunnerConfigResponse,
    RunnerGetDeploymentConfigResponse,
    RunnerJobStreamRequest,
    RunnerJobStreamResponse,
)
from waypost.protocol.status import RpcStatus
from waypost.runners.registry import RunnerRegistry
from waypost.streams import Inbox, Stream, discard, first_done

logger = get_logger(__name__)

JobStream = Stream[RunnerJobStreamRequest, RunnerJobStreamResponse]
ConfigStream = Stream[RunnerConfigRequest, RunnerConfigResponse]


class RunnerService:
    """Implements RunnerConfig, RunnerJobStream and RunnerGetDeploymentConfig."""

    def __init__(
        self,
        queue: JobQueue,
        runners: RunnerRegistry,
        config_vars: ConfigVarStore,
        server_config: ServerConfig | None = None,
    ) -> None:
        self._queue = queue
        self._runners = runners
        self._config_vars = config_vars
        self._server_config = server_config or ServerConfig()

    # --- RunnerConfig ---

    async def runner_config(self, stream: ConfigStream) -> None:
        """Register the runner and push its config until the stream ends."""
        first = await stream.recv()
        if not isinstance(first.event, RunnerConfigRequest.Open):
            raise FailedPreconditionError("first message must be an Open event")
        runner = first.event.runner
        if runner is None or not runner.id:
            raise InvalidArgumentError("runner with an id is required")

        self._runners.register(runner)
        try:
            async with Inbox(stream) as inbox:
                await self._push_config(stream, inbox, runner)
        except StreamClosedError:
            pass
        finally:
            self._runners.offline(runner.id)

    async def _push_config(self, stream: ConfigStream, inbox: Inbox, runner: Runner) -> None:
        version = self._config_vars.version
        while True:
            config = RunnerConfig(config_vars=self._config_vars.for_runner(runner))
            await stream.send(RunnerConfigResponse(config=config))
            logger.debug("Runner config sent", runner_id=runner.id, version=version)

            changed = asyncio.create_task(self._config_vars.wait_for_change(version))
            frame = asyncio.create_task(inbox.recv())
            done = await first_done(changed, frame)
            if frame in done:
                await discard(changed)
                frame.result()  # raises StreamClosedError at end of stream
                raise FailedPreconditionError("runner config stream accepts only Open")
            await discard(frame)
            version = changed.result()

    # --- RunnerJobStream ---

    async def runner_job_stream(self, stream: JobStream) -> None:
        """Serve jobs to one runner connection until it closes."""
        first = await stream.recv()
        if not isinstance(first.event, RunnerJobStreamRequest.Request):
            raise FailedPreconditionError("first message must be a Request event")
        runner = self._runners.get(first.event.runner_id)
        if runner is None:
            raise NotFoundError(f"runner {first.event.runner_id} is not registered")

        log = logger.bind(runner_id=runner.id)
        log.info("Runner job stream opened")
        try:
            async with Inbox(stream) as inbox:
                while True:
                    job = await self._await_assignment(runner, inbox)
                    await stream.send(
                        RunnerJobStreamResponse(
                            event=RunnerJobStreamResponse.JobAssignment(job=job)
                        )
                    )
                    if await self._await_ack(stream, inbox, job):
                        await self._run(stream, inbox, job)
        except StreamClosedError:
            log.info("Runner job stream closed")

    async def _await_assignment(self, runner: Runner, inbox: Inbox) -> Job:
        """Wait for a job while watching the stream for disconnects."""
        assign = asyncio.create_task(self._queue.assign_for_runner(runner))
        try:
            while True:
                frame = asyncio.create_task(inbox.recv())
                done = await first_done(assign, frame)
                if frame not in done:
                    await discard(frame)
                    return assign.result()
                frame.result()  # raises StreamClosedError at end of stream
                if assign in done:
                    return assign.result()
        except BaseException:
            await discard(assign)
            if not assign.cancelled() and assign.exception() is None:
                await self._nack(assign.result().id, "runner disconnected before assignment")
            raise

    async def _await_ack(self, stream: JobStream, inbox: Inbox, job: Job) -> bool:
        """Wait for the runner to accept or reject the assignment.

        Returns True once the job is RUNNING. Anything but Ack requeues it.
        """
        while True:
            try:
                frame = await inbox.recv()
            except StreamClosedError:
                await self._nack(job.id, "runner disconnected before ack")
                raise

            match frame.event:
                case RunnerJobStreamRequest.Heartbeat():
                    continue
                case RunnerJobStreamRequest.Ack():
                    break
                case RunnerJobStreamRequest.Error(error=error):
                    await self._nack(job.id, error.message if error else "runner rejected job")
                    return False
                case _:
                    await self._nack(job.id, "unexpected message before ack")
                    raise FailedPreconditionError("expected an Ack or Error event")

        try:
            await self._queue.ack(job.id, ack=True)
        except FailedPreconditionError:
            current = await self._queue.get(job.id)
            if current.state not in TERMINAL_STATES:
                raise
            # Canceled while waiting for the ack.
            await stream.send(
                RunnerJobStreamResponse(event=RunnerJobStreamResponse.JobCancel(force=True))
            )
            return False
        return True

    async def _nack(self, job_id: str, reason: str) -> None:
        current = await self._queue.get(job_id)
        if current.state == State.WAITING:
            await self._queue.ack(job_id, ack=False)
        logger.info("Runner rejected job", job_id=job_id, reason=reason)

    async def _run(self, stream: JobStream, inbox: Inbox, job: Job) -> None:
        """Relay a running job's events until Complete or Error.

        Every cancel of the job is forwarded as JobCancel. After a forced
        cancel the job is already failed and the stream moves on to the
        next assignment.
        """
        cancels_seen = 0
        while True:
            frame = asyncio.create_task(inbox.recv())
            canceled = asyncio.create_task(self._queue.wait_for_cancel(job.id, cancels_seen))
            done = await first_done(frame, canceled)
            if canceled not in done:
                await discard(canceled)

            if frame not in done:
                await discard(frame)
                cancels_seen, force = canceled.result()
                await stream.send(
                    RunnerJobStreamResponse(event=RunnerJobStreamResponse.JobCancel(force=force))
                )
                if force:
                    logger.info("Running job force-canceled", job_id=job.id)
                    return
                continue

            try:
                request = frame.result()
            except StreamClosedError:
                await self._abort(job.id, "runner disconnected")
                raise

            match request.event:
                case GetJobStreamResponse.Terminal(events=events):
                    if not await self._finished(job.id):
                        await self._queue.append_terminal(job.id, events)
                case RunnerJobStreamRequest.Heartbeat():
                    pass
                case RunnerJobStreamRequest.Complete(result=result):
                    if not await self._finished(job.id):
                        try:
                            await self._queue.complete(job.id, result=result)
                        except FailedPreconditionError as e:
                            await self._abort(job.id, e.message)
                            raise
                    return
                case RunnerJobStreamRequest.Error(error=error):
                    if not await self._finished(job.id):
                        await self._queue.complete(
                            job.id, error=error or RpcStatus(code=int(Code.UNKNOWN))
                        )
                    return
                case _:
                    await self._abort(job.id, "unexpected message while running")
                    raise FailedPreconditionError("unexpected event on a running job")

    async def _finished(self, job_id: str) -> bool:
        return (await self._queue.get(job_id)).state in TERMINAL_STATES

    async def _abort(self, job_id: str, reason: str) -> None:
        if await self._finished(job_id):
            return
        status = RpcStatus(code=int(Code.ABORTED), message=reason)
        await self._queue.complete(job_id, error=status)
        logger.warning("Running job aborted", job_id=job_id, reason=reason)

    # --- RunnerGetDeploymentConfig ---

    def runner_get_deployment_config(self) -> RunnerGetDeploymentConfigResponse:
        """Tell runners which server address deployments should dial."""
        addrs = self._server_config.advertise_addrs
        if not addrs:
            return RunnerGetDeploymentConfigResponse()
        addr = addrs[0]
        return RunnerGetDeploymentConfigResponse(
            server_addr=addr.addr,
            server_tls=addr.tls,
            server_tls_skip_verify=addr.tls_skip_verify,
        )
