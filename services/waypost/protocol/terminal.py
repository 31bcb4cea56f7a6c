"""
Structured terminal events and batched instance logs.

Terminal events are the renderer-agnostic progress primitives a running
operation streams to job observers. Log batches carry the stdout/stderr
lines of deployed instances.
"""

from datetime import datetime

from waypost.protocol.base import ProtoModel, tag


class NamedValue(ProtoModel):
    name: str = tag(1, "")
    value: str = tag(2, "")


class TableEntry(ProtoModel):
    value: str = tag(1, "")
    color: str = tag(2, "")


class TableRow(ProtoModel):
    entries: list[TableEntry] = tag(1, default_factory=list)


class TerminalEvent(ProtoModel):
    """One progress primitive, stamped with the time it was produced."""

    class Line(ProtoModel):
        msg: str = tag(1, "")
        style: str = tag(2, "")

    class Status(ProtoModel):
        status: str = tag(1, "")
        msg: str = tag(2, "")
        step: bool = tag(3, False)

    class NamedValues(ProtoModel):
        values: list[NamedValue] = tag(1, default_factory=list)

    class Raw(ProtoModel):
        data: bytes = tag(1, b"")
        stderr: bool = tag(2, False)

    class Table(ProtoModel):
        headers: list[str] = tag(1, default_factory=list)
        rows: list[TableRow] = tag(2, default_factory=list)

    timestamp: datetime | None = tag(1)
    event: Line | Status | NamedValues | Raw | Table | None = None

    __oneofs__ = {
        "event": {
            "line": (Line, 2),
            "status": (Status, 3),
            "named_values": (NamedValues, 4),
            "raw": (Raw, 5),
            "table": (Table, 6),
        }
    }


class LogLine(ProtoModel):
    timestamp: datetime | None = tag(1)
    line: str = tag(2, "")


class LogBatch(ProtoModel):
    """Log lines of one instance of a deployment, as delivered to readers."""

    deployment_id: str = tag(1, "")
    instance_id: str = tag(2, "")
    lines: list[LogLine] = tag(3, default_factory=list)


class EntrypointLogBatch(ProtoModel):
    """Log lines shipped by an instance's entrypoint."""

    instance_id: str = tag(1, "")
    lines: list[LogLine] = tag(2, default_factory=list)


class GetLogStreamRequest(ProtoModel):
    deployment_id: str = tag(1, "")
