"""Client-facing job RPCs: queueing, validation, lookup and observation."""

from collections.abc import AsyncIterator

from waypost.durations import parse_duration
from waypost.errors import Code, InvalidArgumentError, RPCError, UnimplementedError
from waypost.jobs.queue import JobQueue
from waypost.jobs.state import TERMINAL_STATES, State
from waypost.jobs.validation import validate_job
from waypost.logging_config import get_logger
from waypost.protocol.jobs import (
    CancelJobRequest,
    DataSource,
    GetJobRequest,
    GetJobStreamRequest,
    GetJobStreamResponse,
    Job,
    ListJobsRequest,
    ListJobsResponse,
    LocalSource,
    QueueJobRequest,
    QueueJobResponse,
    ValidateJobRequest,
    ValidateJobResponse,
)
from waypost.protocol.status import RpcStatus
from waypost.protocol.terminal import TerminalEvent

logger = get_logger(__name__)


def _terminal_batches(
    events: list[TerminalEvent], size: int
) -> list[GetJobStreamResponse.Terminal]:
    return [
        GetJobStreamResponse.Terminal(events=events[i : i + size], buffered=True)
        for i in range(0, len(events), size)
    ]


def _state_event(previous: State, job: Job) -> GetJobStreamResponse:
    return GetJobStreamResponse(
        event=GetJobStreamResponse.State(
            previous=previous,
            current=job.state,
            job=job,
            canceling=job.cancel_time is not None,
        )
    )


def _complete_event(job: Job) -> GetJobStreamResponse:
    return GetJobStreamResponse(
        event=GetJobStreamResponse.Complete(error=job.error, result=job.result)
    )


class JobService:
    """Implements QueueJob, ValidateJob, GetJob, ListJobs, CancelJob and GetJobStream."""

    def __init__(
        self,
        queue: JobQueue,
        terminal_batch_size: int = 64,
        default_expires_in: str = "",
    ) -> None:
        self._queue = queue
        self._batch_size = max(1, terminal_batch_size)
        self._default_expires_in = default_expires_in

    async def queue_job(self, request: QueueJobRequest) -> QueueJobResponse:
        if request.job is None:
            raise InvalidArgumentError("job is required")
        job = request.job
        if job.operation is None:
            raise UnimplementedError("operation is nil or unknown")

        validate_job(job)

        updates: dict = {}
        if job.data_source is None:
            updates["data_source"] = DataSource(source=LocalSource())
        ttl = None
        expires_in = request.expires_in or self._default_expires_in
        if expires_in:
            try:
                ttl = parse_duration(expires_in)
            except ValueError as e:
                raise InvalidArgumentError(f"expires_in: {e}") from e

        created = await self._queue.create(job.model_copy(update=updates), expires_in=ttl)
        return QueueJobResponse(job_id=created.id)

    async def validate_job(self, request: ValidateJobRequest) -> ValidateJobResponse:
        if request.job is None:
            raise InvalidArgumentError("job is required")

        response = ValidateJobResponse(valid=True)
        try:
            validate_job(request.job)
        except RPCError as e:
            response.valid = False
            response.validation_error = e.to_status()

        if not request.disable_assign:
            response.assignable = self._queue.is_assignable(request.job)
        return response

    async def get_job(self, request: GetJobRequest) -> Job:
        return await self._queue.get(request.job_id)

    async def list_jobs(self, request: ListJobsRequest) -> ListJobsResponse:
        jobs = await self._queue.list_jobs(states=request.states or None)
        if request.application is not None:
            jobs = [j for j in jobs if j.application == request.application]
        if request.workspace is not None:
            jobs = [j for j in jobs if j.workspace == request.workspace]
        return ListJobsResponse(jobs=jobs)

    async def cancel_job(self, request: CancelJobRequest) -> None:
        await self._queue.cancel(request.job_id, force=request.force)

    async def get_job_stream(
        self, request: GetJobStreamRequest
    ) -> AsyncIterator[GetJobStreamResponse]:
        """Stream a job's progress until it finishes.

        Order: Open, the current State, a buffered Terminal replay once the
        job has output, then live State and Terminal events, and finally
        Complete when the job reaches SUCCESS or ERROR.
        """
        async with self._queue.watch(request.job_id) as watch:
            yield GetJobStreamResponse(event=GetJobStreamResponse.Open())

            job = watch.job
            yield _state_event(State.UNKNOWN, job)

            if watch.output:
                for batch in _terminal_batches(watch.output, self._batch_size):
                    yield GetJobStreamResponse(event=batch)

            if job.state in TERMINAL_STATES:
                yield _complete_event(job)
                return

            while True:
                change = await watch.next()
                if change.kind == "terminal":
                    yield GetJobStreamResponse(
                        event=GetJobStreamResponse.Terminal(events=change.events)
                    )
                    continue
                if change.kind == "closed":
                    logger.warning("Job stream interrupted", job_id=request.job_id)
                    status = RpcStatus(code=int(Code.UNAVAILABLE), message="job queue closed")
                    yield GetJobStreamResponse(event=GetJobStreamResponse.Error(error=status))
                    return

                yield _state_event(change.previous, change.job)
                if change.current in TERMINAL_STATES:
                    yield _complete_event(change.job)
                    return
