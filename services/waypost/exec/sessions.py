"""
Exec session registry.

Every session gets a process-wide index. The index is handed to the
instance in its entrypoint config, and the entrypoint quotes it when it
opens its exec stream, which is how the two halves of a session find
each other. Each session carries two queues, one per direction; None on
a queue means the other side has gone away.
"""

import asyncio
import itertools
from dataclasses import dataclass, field

from waypost.errors import NotFoundError
from waypost.logging_config import get_logger
from waypost.protocol.exec import PTY, EntrypointExecRequest, EntrypointExecResponse

logger = get_logger(__name__)

EntrypointEvent = (
    EntrypointExecRequest.Output | EntrypointExecRequest.Exit | EntrypointExecRequest.Error
)
ClientEvent = EntrypointExecResponse.Input | EntrypointExecResponse.Winch


@dataclass
class ExecSession:
    index: int
    instance_id: str
    deployment_id: str
    args: list[str]
    pty: PTY | None = None
    connected: bool = False
    # Entrypoint -> client: Output, Exit or Error events.
    from_entrypoint: asyncio.Queue[EntrypointEvent | None] = field(default_factory=asyncio.Queue)
    # Client -> entrypoint: Input or Winch events.
    to_entrypoint: asyncio.Queue[ClientEvent | None] = field(default_factory=asyncio.Queue)


class SessionRegistry:
    def __init__(self) -> None:
        self._sessions: dict[int, ExecSession] = {}
        self._index = itertools.count(1)

    def open(
        self,
        instance_id: str,
        deployment_id: str,
        args: list[str],
        pty: PTY | None = None,
    ) -> ExecSession:
        session = ExecSession(
            index=next(self._index),
            instance_id=instance_id,
            deployment_id=deployment_id,
            args=list(args),
            pty=pty,
        )
        self._sessions[session.index] = session
        logger.info(
            "Exec session opened",
            index=session.index,
            instance_id=instance_id,
            deployment_id=deployment_id,
        )
        return session

    def get(self, index: int) -> ExecSession:
        try:
            return self._sessions[index]
        except KeyError:
            raise NotFoundError(f"exec session {index} not found") from None

    def remove(self, index: int) -> ExecSession | None:
        session = self._sessions.pop(index, None)
        if session is not None:
            logger.info("Exec session removed", index=index, instance_id=session.instance_id)
        return session

    def for_instance(self, instance_id: str) -> list[ExecSession]:
        return [s for s in self._sessions.values() if s.instance_id == instance_id]

    def load(self, instance_id: str) -> int:
        return sum(1 for s in self._sessions.values() if s.instance_id == instance_id)

    def __len__(self) -> int:
        return len(self._sessions)
