"""
Job model and the job-facing request/response messages.

A Job is the unit of work handed to runners. Business fields occupy
numbers 1-20, the operation oneof 50-55 and server-owned fields 100 and
up, so the two groups can grow independently.
"""

from datetime import datetime
from enum import IntEnum

from waypost.protocol.base import ProtoModel, tag
from waypost.protocol.entities import Build, Deployment, PushedArtifact, Release
from waypost.protocol.refs import ApplicationRef, RunnerId, RunnerRef, WorkspaceRef
from waypost.protocol.status import RpcStatus
from waypost.protocol.terminal import TerminalEvent

# --- Data sources ---


class LocalSource(ProtoModel):
    """The runner uses the files it already has."""


class DataSource(ProtoModel):
    source: LocalSource | None = None

    __oneofs__ = {"source": {"local": (LocalSource, 1)}}


# --- Operations and their results ---


class Noop(ProtoModel):
    """Does nothing; used to exercise the queue."""


class BuildOp(ProtoModel):
    disable_push: bool = tag(1, False)


class BuildResult(ProtoModel):
    build: Build | None = tag(1)
    push: PushedArtifact | None = tag(2)


class PushOp(ProtoModel):
    build: Build | None = tag(1)


class PushResult(ProtoModel):
    artifact: PushedArtifact | None = tag(1)


class DeployOp(ProtoModel):
    artifact: PushedArtifact | None = tag(1)


class DeployResult(ProtoModel):
    deployment: Deployment | None = tag(1)


class DestroyDeployOp(ProtoModel):
    deployment: Deployment | None = tag(1)


class ReleaseOp(ProtoModel):
    traffic_split: Release.Split | None = tag(1)
    prune: bool = tag(2, False)


class ReleaseResult(ProtoModel):
    release: Release | None = tag(1)


class JobResult(ProtoModel):
    """Operation output; at most the field matching the operation is set."""

    build: BuildResult | None = tag(1)
    push: PushResult | None = tag(2)
    deploy: DeployResult | None = tag(3)
    release: ReleaseResult | None = tag(4)

    def kinds(self) -> set[str]:
        """Names of the result fields that are populated."""
        return {
            name
            for name in ("build", "push", "deploy", "release")
            if getattr(self, name) is not None
        }


# Operation variant key -> result field that may accompany it.
RESULT_FOR_OPERATION: dict[str, str | None] = {
    "noop": None,
    "build": "build",
    "push": "push",
    "deploy": "deploy",
    "destroy_deploy": None,
    "release": "release",
}


class Job(ProtoModel):
    class State(IntEnum):
        UNKNOWN = 0
        QUEUED = 1
        WAITING = 2
        RUNNING = 3
        ERROR = 4
        SUCCESS = 5

    id: str = tag(1, "")
    application: ApplicationRef | None = tag(2)
    workspace: WorkspaceRef | None = tag(3)
    target_runner: RunnerRef | None = tag(4)
    labels: dict[str, str] = tag(5, default_factory=dict)
    data_source: DataSource | None = tag(6)

    operation: Noop | BuildOp | PushOp | DeployOp | DestroyDeployOp | ReleaseOp | None = None

    state: State = tag(100, State.UNKNOWN)
    assigned_runner: RunnerId | None = tag(101)
    queue_time: datetime | None = tag(102)
    assign_time: datetime | None = tag(103)
    ack_time: datetime | None = tag(104)
    complete_time: datetime | None = tag(105)
    error: RpcStatus | None = tag(106)
    result: JobResult | None = tag(107)
    expire_time: datetime | None = tag(108)
    cancel_time: datetime | None = tag(109)

    __oneofs__ = {
        "operation": {
            "noop": (Noop, 50),
            "build": (BuildOp, 51),
            "push": (PushOp, 52),
            "deploy": (DeployOp, 53),
            "destroy_deploy": (DestroyDeployOp, 54),
            "release": (ReleaseOp, 55),
        }
    }


# --- Requests and responses ---


class QueueJobRequest(ProtoModel):
    job: Job | None = tag(1)
    expires_in: str = tag(2, "")


class QueueJobResponse(ProtoModel):
    job_id: str = tag(1, "")


class ValidateJobRequest(ProtoModel):
    job: Job | None = tag(1)
    disable_assign: bool = tag(2, False)


class ValidateJobResponse(ProtoModel):
    valid: bool = tag(1, False)
    validation_error: RpcStatus | None = tag(2)
    assignable: bool = tag(3, False)


class GetJobRequest(ProtoModel):
    job_id: str = tag(1, "")


class ListJobsRequest(ProtoModel):
    application: ApplicationRef | None = tag(1)
    workspace: WorkspaceRef | None = tag(2)
    states: list[Job.State] = tag(3, default_factory=list)


class ListJobsResponse(ProtoModel):
    jobs: list[Job] = tag(1, default_factory=list)


class CancelJobRequest(ProtoModel):
    job_id: str = tag(1, "")
    force: bool = tag(2, False)


class GetJobStreamRequest(ProtoModel):
    job_id: str = tag(1, "")


class GetJobStreamResponse(ProtoModel):
    """One event on a job observer's stream."""

    class Open(ProtoModel):
        """The subscription is established."""

    class State(ProtoModel):
        previous: Job.State = tag(1, Job.State.UNKNOWN)
        current: Job.State = tag(2, Job.State.UNKNOWN)
        job: Job | None = tag(3)
        canceling: bool = tag(4, False)

    class Terminal(ProtoModel):
        events: list[TerminalEvent] = tag(1, default_factory=list)
        buffered: bool = tag(2, False)

    class Error(ProtoModel):
        error: RpcStatus | None = tag(1)

    class Complete(ProtoModel):
        error: RpcStatus | None = tag(1)
        result: JobResult | None = tag(2)

    event: Open | State | Terminal | Error | Complete | None = None

    __oneofs__ = {
        "event": {
            "open": (Open, 1),
            "state": (State, 2),
            "terminal": (Terminal, 3),
            "error": (Error, 4),
            "complete": (Complete, 5),
        }
    }
