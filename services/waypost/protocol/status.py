"""Cross-cutting status and ordering descriptors."""

from datetime import datetime
from enum import IntEnum

from waypost.protocol.base import AnyPayload, ProtoModel, tag


class RpcStatus(ProtoModel):
    """A google.rpc.Status: code, developer message and typed details."""

    code: int = tag(1, 0)
    message: str = tag(2, "")
    details: list[AnyPayload] = tag(3, default_factory=list)


class Status(ProtoModel):
    """Sub-lifecycle of an entity, independent of the job that produced it."""

    class State(IntEnum):
        UNKNOWN = 0
        RUNNING = 1
        SUCCESS = 2
        ERROR = 3

    state: State = tag(1, State.UNKNOWN)
    details: str = tag(2, "")
    error: RpcStatus | None = tag(3)
    start_time: datetime | None = tag(4)
    complete_time: datetime | None = tag(5)


class StatusFilter(ProtoModel):
    """A disjunction of filters over Status values."""

    class Filter(ProtoModel):
        state: Status.State = tag(2, Status.State.UNKNOWN)

    filters: list[Filter] = tag(1, default_factory=list)

    def matches(self, status: Status | None) -> bool:
        if not self.filters:
            return True
        if status is None:
            return False
        return any(f.state == status.state for f in self.filters)


class OperationOrder(ProtoModel):
    """Ordering and limit applied to operation listings."""

    class Order(IntEnum):
        UNSET = 0
        START_TIME = 1
        COMPLETE_TIME = 2

    order: Order = tag(2, Order.UNSET)
    desc: bool = tag(3, False)
    limit: int = tag(4, 0)


class Component(ProtoModel):
    """The plugin that produced an entity."""

    class Type(IntEnum):
        UNKNOWN = 0
        BUILDER = 1
        REGISTRY = 2
        PLATFORM = 3
        RELEASEMANAGER = 4

    type: Type = tag(1, Type.UNKNOWN)
    name: str = tag(2, "")
