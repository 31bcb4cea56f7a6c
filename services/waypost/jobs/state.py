"""Job state machine."""

from datetime import UTC, datetime

from waypost.errors import FailedPreconditionError, InvalidTransitionError
from waypost.logging_config import get_logger
from waypost.protocol.jobs import RESULT_FOR_OPERATION, Job, JobResult
from waypost.protocol.refs import RunnerId
from waypost.protocol.status import RpcStatus

logger = get_logger(__name__)

State = Job.State

# Valid state transitions. WAITING -> QUEUED is the nack edge; QUEUED and
# WAITING -> ERROR cover cancellation and expiry.
VALID_TRANSITIONS: dict[State, set[State]] = {
    State.UNKNOWN: {State.QUEUED},
    State.QUEUED: {State.WAITING, State.ERROR},
    State.WAITING: {State.RUNNING, State.QUEUED, State.ERROR},
    State.RUNNING: {State.SUCCESS, State.ERROR},
}

TERMINAL_STATES = {State.SUCCESS, State.ERROR}


def utc_now() -> datetime:
    return datetime.now(UTC)


def can_transition(current: State, target: State) -> bool:
    """Check if a state transition is valid."""
    if current in TERMINAL_STATES:
        return False
    return target in VALID_TRANSITIONS.get(current, set())


def check_result(job: Job, result: JobResult | None) -> None:
    """Ensure a completion result matches the job's operation.

    Raises:
        FailedPreconditionError: If the result carries a field other than
            the one the operation produces.
    """
    if result is None:
        return
    kinds = result.kinds()
    if not kinds:
        return
    expected = RESULT_FOR_OPERATION.get(job.which("operation") or "")
    if kinds != {expected}:
        raise FailedPreconditionError(
            f"result {sorted(kinds)} does not match operation {job.which('operation')!r}"
        )


def transition_job(
    job: Job,
    target: State,
    *,
    runner_id: str | None = None,
    result: JobResult | None = None,
    error: RpcStatus | None = None,
) -> State:
    """Move a job to a new state, stamping the matching timestamp.

    Returns the previous state.
    """
    if not can_transition(job.state, target):
        raise InvalidTransitionError(job.state.name, target.name)

    now = utc_now()
    previous = job.state

    if target == State.QUEUED:
        if previous == State.UNKNOWN:
            job.queue_time = now
        job.assign_time = None
        job.assigned_runner = None
    elif target == State.WAITING:
        job.assign_time = now
        if runner_id is not None:
            job.assigned_runner = RunnerId(id=runner_id)
    elif target == State.RUNNING:
        job.ack_time = now
    elif target in TERMINAL_STATES:
        if target == State.SUCCESS:
            check_result(job, result)
            job.result = result
        else:
            job.error = error
        job.complete_time = now

    job.state = target

    logger.info(
        "Job transitioned",
        job_id=job.id,
        from_state=previous.name,
        to_state=target.name,
    )
    return previous
