"""
Exec RPCs: interactive commands against a running deployment.

A session is stitched together from three streams:

1. The client opens an exec stream with Start{deployment_id, args, pty}
2. The server picks the least-loaded long-running instance of the
   deployment, registers a session under a new index and lists it in that
   instance's entrypoint config
3. The entrypoint opens an entrypoint exec stream quoting the index
4. Input and window changes flow client -> entrypoint, output and the
   exit code flow entrypoint -> client, until either side ends

Sessions on the same instance share nothing but the instance, so their
traffic never crosses.
"""

import asyncio

from waypost.config_vars import ConfigVarStore
from waypost.errors import (
    AlreadyExistsError,
    Code,
    FailedPreconditionError,
    InvalidArgumentError,
    NotFoundError,
    ResourceExhaustedError,
    StreamClosedError,
)
from waypost.exec.instances import InstanceRecord, InstanceRegistry
from waypost.exec.sessions import EntrypointEvent, ExecSession, SessionRegistry
from waypost.logging_config import get_logger
from waypost.protocol.entities import Instance
from waypost.protocol.exec import (
    EntrypointConfig,
    EntrypointConfigRequest,
    EntrypointConfigResponse,
    EntrypointExecRequest,
    EntrypointExecResponse,
    ExecStreamRequest,
    ExecStreamResponse,
    WindowSize,
)
from waypost.protocol.status import RpcStatus
from waypost.streams import Inbox, Stream, discard, first_done

logger = get_logger(__name__)

ClientStream = Stream[ExecStreamRequest, ExecStreamResponse]
EntrypointStream = Stream[EntrypointExecRequest, EntrypointExecResponse]
ConfigStream = Stream[EntrypointConfigRequest, EntrypointConfigResponse]


async def _race(*tasks: asyncio.Task) -> set[asyncio.Future]:
    done = await first_done(*tasks)
    for task in tasks:
        if task not in done:
            await discard(task)
    return done


class ExecService:
    """Implements ExecStream, EntrypointConfig and EntrypointExecStream."""

    def __init__(
        self,
        instances: InstanceRegistry,
        sessions: SessionRegistry,
        config_vars: ConfigVarStore,
        max_sessions_per_instance: int = 0,
    ) -> None:
        self._instances = instances
        self._sessions = sessions
        self._config_vars = config_vars
        self._max_sessions = max_sessions_per_instance

    # --- EntrypointConfig ---

    async def entrypoint_config(self, stream: ConfigStream) -> None:
        """Register an instance and keep its entrypoint config current.

        The instance is known for as long as this stream is open. Sessions
        still waiting for it when it goes away end with exit code 1.
        """
        request = await stream.recv()
        if not request.instance_id:
            raise InvalidArgumentError("instance_id is required")

        record = await self._instances.register(
            Instance(
                id=request.instance_id,
                deployment_id=request.deployment_id,
                application=request.application,
                type=request.type,
            )
        )
        try:
            async with Inbox(stream) as inbox:
                await self._push_entrypoint_config(stream, inbox, record)
        except StreamClosedError:
            pass
        finally:
            await self._instances.unregister(request.instance_id)
            self._close_pending(request.instance_id)

    async def _push_entrypoint_config(
        self, stream: ConfigStream, inbox: Inbox, record: InstanceRecord
    ) -> None:
        version = self._config_vars.version
        while True:
            record.config_changed.clear()
            await stream.send(EntrypointConfigResponse(config=self._config_for(record)))

            changed = asyncio.create_task(record.config_changed.wait())
            vars_changed = asyncio.create_task(self._config_vars.wait_for_change(version))
            frame = asyncio.create_task(inbox.recv())
            done = await _race(changed, vars_changed, frame)
            if frame in done:
                frame.result()  # raises StreamClosedError at end of stream
                raise FailedPreconditionError("entrypoint config stream takes a single request")
            if vars_changed in done:
                version = vars_changed.result()

    def _config_for(self, record: InstanceRecord) -> EntrypointConfig:
        instance = record.instance
        pending = [s for s in self._sessions.for_instance(instance.id) if not s.connected]
        env_vars = (
            self._config_vars.for_application(instance.application)
            if instance.application is not None
            else []
        )
        return EntrypointConfig(
            exec=[EntrypointConfig.Exec(index=s.index, args=s.args, pty=s.pty) for s in pending],
            env_vars=env_vars,
            deployment_id=instance.deployment_id,
        )

    def _close_pending(self, instance_id: str) -> None:
        for session in self._sessions.for_instance(instance_id):
            if session.connected:
                continue
            self._sessions.remove(session.index)
            session.from_entrypoint.put_nowait(None)

    # --- ExecStream ---

    async def exec_stream(self, stream: ClientStream) -> None:
        """Run a client's exec session until it exits or disconnects."""
        first = await stream.recv()
        if not isinstance(first.event, ExecStreamRequest.Start):
            raise FailedPreconditionError("first message must be a Start event")
        start = first.event

        record = self._pick_instance(start.deployment_id)
        instance_id = record.instance.id
        session = self._sessions.open(instance_id, start.deployment_id, start.args, start.pty)
        self._instances.notify(instance_id)

        log = logger.bind(index=session.index, instance_id=instance_id)
        try:
            await stream.send(ExecStreamResponse(event=ExecStreamResponse.Open()))
            async with Inbox(stream) as inbox:
                await self._relay_client(stream, inbox, session)
        except StreamClosedError:
            log.info("Exec client disconnected")
        finally:
            self._sessions.remove(session.index)
            session.to_entrypoint.put_nowait(None)
            self._instances.notify(instance_id)

    def _pick_instance(self, deployment_id: str) -> InstanceRecord:
        candidates = [
            r
            for r in self._instances.for_deployment(deployment_id)
            if r.instance.type == Instance.Type.LONG_RUNNING
        ]
        if self._max_sessions > 0:
            candidates = [
                r for r in candidates if self._sessions.load(r.instance.id) < self._max_sessions
            ]
        if not candidates:
            raise ResourceExhaustedError("No available instances for exec")
        return min(candidates, key=lambda r: self._sessions.load(r.instance.id))

    async def _relay_client(self, stream: ClientStream, inbox: Inbox, session: ExecSession) -> None:
        while True:
            frame = asyncio.create_task(inbox.recv())
            event = asyncio.create_task(session.from_entrypoint.get())
            done = await _race(frame, event)

            if frame in done:
                request = frame.result()
                match request.event:
                    case ExecStreamRequest.Input(data=data):
                        session.to_entrypoint.put_nowait(EntrypointExecResponse.Input(data=data))
                    case WindowSize() as size:
                        session.to_entrypoint.put_nowait(EntrypointExecResponse.Winch(size=size))
                    case _:
                        raise FailedPreconditionError("unexpected event on an exec stream")

            if event in done and await self._deliver(stream, session, event.result()):
                return

    async def _deliver(
        self,
        stream: ClientStream,
        session: ExecSession,
        event: EntrypointEvent | None,
    ) -> bool:
        """Forward one entrypoint event to the client. True when the session is over."""
        match event:
            case EntrypointExecRequest.Output(channel=channel, data=data):
                await stream.send(
                    ExecStreamResponse(event=ExecStreamResponse.Output(channel=channel, data=data))
                )
                return False
            case EntrypointExecRequest.Exit(code=code):
                await stream.send(ExecStreamResponse(event=ExecStreamResponse.Exit(code=code)))
                logger.info("Exec session exited", index=session.index, code=code)
                return True
            case EntrypointExecRequest.Error(error=error):
                logger.warning(
                    "Exec session failed",
                    index=session.index,
                    error=error.message if error else "",
                )
            case None:
                logger.warning("Exec instance went away", index=session.index)
        await stream.send(ExecStreamResponse(event=ExecStreamResponse.Exit(code=1)))
        return True

    # --- EntrypointExecStream ---

    async def entrypoint_exec_stream(self, stream: EntrypointStream) -> None:
        """Attach an entrypoint to the exec session it was told about."""
        first = await stream.recv()
        if not isinstance(first.event, EntrypointExecRequest.Open):
            raise FailedPreconditionError("first message must be an Open event")
        index = first.event.index

        session = self._sessions.get(index)
        if session.instance_id != first.event.instance_id:
            raise NotFoundError(f"exec session {index} not found for this instance")
        if session.connected:
            raise AlreadyExistsError("exec session is already open for this index")
        session.connected = True
        self._instances.notify(session.instance_id)

        try:
            await stream.send(
                EntrypointExecResponse(event=EntrypointExecResponse.Opened(opened=True))
            )
            async with Inbox(stream) as inbox:
                await self._relay_entrypoint(stream, inbox, session)
        except StreamClosedError:
            status = RpcStatus(code=int(Code.ABORTED), message="entrypoint disconnected")
            session.from_entrypoint.put_nowait(EntrypointExecRequest.Error(error=status))
        finally:
            self._sessions.remove(index)
            # Ends the client side if nothing final was relayed.
            session.from_entrypoint.put_nowait(None)

    async def _relay_entrypoint(
        self, stream: EntrypointStream, inbox: Inbox, session: ExecSession
    ) -> None:
        while True:
            frame = asyncio.create_task(inbox.recv())
            pending = asyncio.create_task(session.to_entrypoint.get())
            done = await _race(frame, pending)

            if frame in done:
                request = frame.result()
                match request.event:
                    case EntrypointExecRequest.Output() as output:
                        session.from_entrypoint.put_nowait(output)
                    case EntrypointExecRequest.Exit() | EntrypointExecRequest.Error() as last:
                        session.from_entrypoint.put_nowait(last)
                        return
                    case _:
                        raise FailedPreconditionError(
                            "unexpected event on an entrypoint exec stream"
                        )

            if pending in done:
                item = pending.result()
                if item is None:
                    # Client is gone.
                    return
                await stream.send(EntrypointExecResponse(event=item))
