"""
Exec session messages.

A client runs an interactive command against a deployment over an exec
stream. The server dispatches the command to one instance's entrypoint
through EntrypointConfig.Exec, and the entrypoint answers on an
entrypoint exec stream keyed by the same index.
"""

from enum import IntEnum

from waypost.protocol.base import ProtoModel, tag
from waypost.protocol.entities import ConfigVar, Instance
from waypost.protocol.refs import ApplicationRef
from waypost.protocol.status import RpcStatus


class OutputChannel(IntEnum):
    UNKNOWN = 0
    STDOUT = 1
    STDERR = 2


class WindowSize(ProtoModel):
    rows: int = tag(1, 0)
    cols: int = tag(2, 0)
    width: int = tag(3, 0)
    height: int = tag(4, 0)


class PTY(ProtoModel):
    enable: bool = tag(1, False)
    term: str = tag(2, "")
    window_size: WindowSize | None = tag(3)


# --- Client <-> server ---


class ExecStreamRequest(ProtoModel):
    class Start(ProtoModel):
        deployment_id: str = tag(1, "")
        args: list[str] = tag(2, default_factory=list)
        pty: PTY | None = tag(3)

    class Input(ProtoModel):
        data: bytes = tag(1, b"")

    event: Start | Input | WindowSize | None = None

    __oneofs__ = {"event": {"start": (Start, 1), "input": (Input, 2), "winch": (WindowSize, 3)}}


class ExecStreamResponse(ProtoModel):
    class Open(ProtoModel):
        """The session is registered and dispatched to an instance."""

    class Output(ProtoModel):
        channel: OutputChannel = tag(1, OutputChannel.UNKNOWN)
        data: bytes = tag(2, b"")

    class Exit(ProtoModel):
        code: int = tag(1, 0)

    event: Open | Output | Exit | None = None

    __oneofs__ = {"event": {"open": (Open, 3), "output": (Output, 1), "exit": (Exit, 2)}}


# --- Entrypoint <-> server ---


class EntrypointExecRequest(ProtoModel):
    class Open(ProtoModel):
        instance_id: str = tag(1, "")
        index: int = tag(2, 0)

    class Exit(ProtoModel):
        code: int = tag(1, 0)

    class Output(ProtoModel):
        channel: OutputChannel = tag(1, OutputChannel.UNKNOWN)
        data: bytes = tag(2, b"")

    class Error(ProtoModel):
        error: RpcStatus | None = tag(1)

    event: Open | Exit | Output | Error | None = None

    __oneofs__ = {
        "event": {
            "open": (Open, 1),
            "exit": (Exit, 2),
            "output": (Output, 3),
            "error": (Error, 4),
        }
    }


class EntrypointExecResponse(ProtoModel):
    class Input(ProtoModel):
        data: bytes = tag(1, b"")

    class Winch(ProtoModel):
        size: WindowSize | None = tag(1)

    class Opened(ProtoModel):
        opened: bool = tag(1, False)

    event: Input | Winch | Opened | None = None

    __oneofs__ = {"event": {"input": (Input, 1), "winch": (Winch, 2), "opened": (Opened, 3)}}


# --- Entrypoint configuration ---


class EntrypointConfigRequest(ProtoModel):
    """First and only frame an entrypoint sends on its config stream."""

    instance_id: str = tag(1, "")
    deployment_id: str = tag(2, "")
    type: Instance.Type = tag(3, Instance.Type.LONG_RUNNING)
    application: ApplicationRef | None = tag(4)


class EntrypointConfig(ProtoModel):
    class Exec(ProtoModel):
        index: int = tag(1, 0)
        args: list[str] = tag(2, default_factory=list)
        pty: PTY | None = tag(3)

    exec: list[Exec] = tag(1, default_factory=list)
    env_vars: list[ConfigVar] = tag(2, default_factory=list)
    deployment_id: str = tag(3, "")


class EntrypointConfigResponse(ProtoModel):
    config: EntrypointConfig | None = tag(1)
