"""Instance log ingest and deployment log streaming."""

import asyncio
from collections.abc import AsyncIterator

from waypost.errors import NotFoundError, StreamClosedError
from waypost.exec.instances import InstanceRecord, InstanceRegistry
from waypost.logging_config import get_logger
from waypost.protocol.terminal import EntrypointLogBatch, GetLogStreamRequest, LogBatch
from waypost.streams import Stream, discard, first_done

logger = get_logger(__name__)


class LogService:
    """Implements EntrypointLogStream and GetLogStream."""

    def __init__(
        self, instances: InstanceRegistry, backlog: int = 100, chunk_size: int = 100
    ) -> None:
        self._instances = instances
        self._backlog = backlog
        self._chunk_size = max(1, chunk_size)

    async def entrypoint_log_stream(self, stream: Stream[EntrypointLogBatch, None]) -> None:
        """Append every batch an entrypoint sends to its instance's buffer."""
        received = 0
        while True:
            try:
                batch = await stream.recv()
            except StreamClosedError:
                logger.debug("Entrypoint log stream closed", lines=received)
                return

            record = self._instances.get(batch.instance_id)
            if record is None:
                raise NotFoundError(f"instance {batch.instance_id} not found")
            lines = [
                line.model_copy(update={"line": line.line.rstrip("\n")}) for line in batch.lines
            ]
            await record.logs.write(lines)
            received += len(lines)

    async def get_log_stream(self, request: GetLogStreamRequest) -> AsyncIterator[LogBatch]:
        """Follow the logs of every instance of a deployment.

        Each instance starts with its backlog; instances that connect later
        are picked up as they appear. The stream runs until the caller stops
        iterating.
        """
        batches: asyncio.Queue[LogBatch] = asyncio.Queue()
        followers: dict[str, tuple[InstanceRecord, asyncio.Task]] = {}
        try:
            while True:
                version = self._instances.version
                for record in self._instances.for_deployment(request.deployment_id):
                    current = followers.get(record.instance.id)
                    if current is None or current[0] is not record:
                        task = asyncio.create_task(
                            self._follow(request.deployment_id, record, batches)
                        )
                        followers[record.instance.id] = (record, task)

                membership = asyncio.create_task(self._instances.wait_for_change(version))
                batch = asyncio.create_task(batches.get())
                done = await first_done(membership, batch)
                if membership not in done:
                    await discard(membership)
                if batch not in done:
                    await discard(batch)
                    continue
                yield batch.result()
        finally:
            for _, task in followers.values():
                await discard(task)

    async def _follow(
        self, deployment_id: str, record: InstanceRecord, out: asyncio.Queue[LogBatch]
    ) -> None:
        reader = record.logs.reader(self._backlog)
        while (lines := await reader.read(self._chunk_size)) is not None:
            out.put_nowait(
                LogBatch(deployment_id=deployment_id, instance_id=record.instance.id, lines=lines)
            )
