"""Messages exchanged between the server and runners."""

from waypost.protocol.base import ProtoModel, tag
from waypost.protocol.entities import ConfigVar, Runner
from waypost.protocol.jobs import GetJobStreamResponse, Job, JobResult
from waypost.protocol.status import RpcStatus

# --- RunnerConfig stream ---


class RunnerConfig(ProtoModel):
    config_vars: list[ConfigVar] = tag(1, default_factory=list)


class RunnerConfigRequest(ProtoModel):
    class Open(ProtoModel):
        runner: Runner | None = tag(1)

    event: Open | None = None

    __oneofs__ = {"event": {"open": (Open, 1)}}


class RunnerConfigResponse(ProtoModel):
    config: RunnerConfig | None = tag(2)


# --- RunnerJobStream ---


class RunnerJobStreamRequest(ProtoModel):
    """Runner to server frames on a job stream."""

    class Request(ProtoModel):
        runner_id: str = tag(1, "")

    class Ack(ProtoModel):
        pass

    class Complete(ProtoModel):
        result: JobResult | None = tag(1)

    class Error(ProtoModel):
        error: RpcStatus | None = tag(1)

    class Heartbeat(ProtoModel):
        pass

    event: (
        Request | Ack | Complete | Error | GetJobStreamResponse.Terminal | Heartbeat | None
    ) = None

    __oneofs__ = {
        "event": {
            "request": (Request, 1),
            "ack": (Ack, 2),
            "complete": (Complete, 3),
            "error": (Error, 4),
            "terminal": (GetJobStreamResponse.Terminal, 5),
            "heartbeat": (Heartbeat, 6),
        }
    }


class RunnerJobStreamResponse(ProtoModel):
    """Server to runner frames on a job stream."""

    class JobAssignment(ProtoModel):
        job: Job | None = tag(1)

    class JobCancel(ProtoModel):
        force: bool = tag(1, False)

    event: JobAssignment | JobCancel | None = None

    __oneofs__ = {"event": {"assignment": (JobAssignment, 1), "cancel": (JobCancel, 2)}}


# --- Deployment config ---


class RunnerGetDeploymentConfigRequest(ProtoModel):
    pass


class RunnerGetDeploymentConfigResponse(ProtoModel):
    server_addr: str = tag(1, "")
    server_tls: bool = tag(2, False)
    server_tls_skip_verify: bool = tag(3, False)
