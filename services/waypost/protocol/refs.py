"""Reference types: identity keys used by every other message."""

from waypost.protocol.base import ProtoModel, tag


class ApplicationRef(ProtoModel):
    application: str = tag(1, "")
    project: str = tag(2, "")


class ProjectRef(ProtoModel):
    project: str = tag(1, "")


class WorkspaceRef(ProtoModel):
    workspace: str = tag(1, "")


class RunnerAny(ProtoModel):
    """Matches any runner that accepts untargeted work."""


class RunnerId(ProtoModel):
    id: str = tag(1, "")


class RunnerRef(ProtoModel):
    """Selects the runner a job may execute on."""

    target: RunnerAny | RunnerId | None = None

    __oneofs__ = {"target": {"any": (RunnerAny, 1), "id": (RunnerId, 2)}}

    @classmethod
    def any_runner(cls) -> "RunnerRef":
        return cls(target=RunnerAny())

    @classmethod
    def for_id(cls, runner_id: str) -> "RunnerRef":
        return cls(target=RunnerId(id=runner_id))
