"""Entity records produced by operations, plus runners and instances."""

from enum import IntEnum

from waypost.protocol.base import AnyPayload, ProtoModel, tag
from waypost.protocol.refs import ApplicationRef, ProjectRef, RunnerRef, WorkspaceRef
from waypost.protocol.status import Component, Status


class Artifact(ProtoModel):
    """Plugin-specific build output."""

    artifact: AnyPayload | None = tag(1)
    artifact_json: str = tag(2, "")


class Build(ProtoModel):
    id: str = tag(1, "")
    application: ApplicationRef | None = tag(2)
    workspace: WorkspaceRef | None = tag(3)
    status: Status | None = tag(4)
    component: Component | None = tag(5)
    artifact: Artifact | None = tag(6)
    labels: dict[str, str] = tag(7, default_factory=dict)


class PushedArtifact(ProtoModel):
    id: str = tag(1, "")
    application: ApplicationRef | None = tag(2)
    workspace: WorkspaceRef | None = tag(3)
    status: Status | None = tag(4)
    component: Component | None = tag(5)
    artifact: Artifact | None = tag(6)
    build_id: str = tag(7, "")
    labels: dict[str, str] = tag(8, default_factory=dict)


class Deployment(ProtoModel):
    class State(IntEnum):
        UNKNOWN = 0
        PENDING = 1
        DEPLOY = 2
        DESTROY = 3

    id: str = tag(1, "")
    application: ApplicationRef | None = tag(2)
    workspace: WorkspaceRef | None = tag(3)
    state: State = tag(4, State.UNKNOWN)
    status: Status | None = tag(5)
    component: Component | None = tag(6)
    artifact_id: str = tag(7, "")
    deployment: AnyPayload | None = tag(8)
    labels: dict[str, str] = tag(9, default_factory=dict)


class Release(ProtoModel):
    class Split(ProtoModel):
        """Weighted routing across deployments."""

        class Target(ProtoModel):
            deployment_id: str = tag(1, "")
            percent: int = tag(2, 0)

        targets: list[Target] = tag(1, default_factory=list)

        def validate_split(self) -> None:
            """Check the split is routable.

            Raises:
                ValueError: If a percent is outside 0-100, a deployment is
                    listed twice, or the percents do not sum to 100.
            """
            seen: set[str] = set()
            for target in self.targets:
                if not 0 <= target.percent <= 100:
                    raise ValueError(
                        f"percent for deployment {target.deployment_id!r} must be between 0 and 100"
                    )
                if target.deployment_id in seen:
                    raise ValueError(f"deployment {target.deployment_id!r} listed more than once")
                seen.add(target.deployment_id)
            total = sum(t.percent for t in self.targets)
            if self.targets and total != 100:
                raise ValueError(f"traffic split percentages must sum to 100, got {total}")

    id: str = tag(1, "")
    application: ApplicationRef | None = tag(2)
    workspace: WorkspaceRef | None = tag(3)
    status: Status | None = tag(4)
    component: Component | None = tag(5)
    traffic_split: Split | None = tag(6)
    release: AnyPayload | None = tag(7)
    url: str = tag(8, "")
    labels: dict[str, str] = tag(9, default_factory=dict)


class ConfigVar(ProtoModel):
    """A named configuration value visible within its scope."""

    name: str = tag(1, "")
    value: str = tag(2, "")
    scope: ApplicationRef | ProjectRef | RunnerRef | None = None

    __oneofs__ = {
        "scope": {
            "application": (ApplicationRef, 3),
            "project": (ProjectRef, 4),
            "runner": (RunnerRef, 5),
        }
    }


class Runner(ProtoModel):
    """A worker process that claims and executes jobs."""

    id: str = tag(1, "")
    by_id_only: bool = tag(2, False)
    components: list[Component] = tag(3, default_factory=list)


class Instance(ProtoModel):
    """A running copy of a deployment with a connected entrypoint."""

    class Type(IntEnum):
        LONG_RUNNING = 0
        ON_DEMAND = 1
        VIRTUAL = 2

    id: str = tag(1, "")
    deployment_id: str = tag(2, "")
    application: ApplicationRef | None = tag(3)
    workspace: WorkspaceRef | None = tag(4)
    type: Type = tag(5, Type.LONG_RUNNING)
