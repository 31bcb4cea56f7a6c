"""Registry of deployment instances whose entrypoints are connected."""

import asyncio
from dataclasses import dataclass, field

from waypost.errors import AlreadyExistsError
from waypost.logging_config import get_logger
from waypost.logs.buffer import LogBuffer
from waypost.protocol.entities import Instance

logger = get_logger(__name__)


@dataclass
class InstanceRecord:
    instance: Instance
    logs: LogBuffer
    # Set when the instance's entrypoint config must be re-sent.
    config_changed: asyncio.Event = field(default_factory=asyncio.Event)


class InstanceRegistry:
    """Connected instances, indexed by id, with membership change notification."""

    def __init__(self, log_buffer_size: int = 1000) -> None:
        self._log_buffer_size = log_buffer_size
        self._records: dict[str, InstanceRecord] = {}
        self._version = 0
        self._cond = asyncio.Condition()

    @property
    def version(self) -> int:
        return self._version

    async def register(self, instance: Instance) -> InstanceRecord:
        async with self._cond:
            if instance.id in self._records:
                raise AlreadyExistsError(f"instance {instance.id} is already connected")
            record = InstanceRecord(
                instance=instance.model_copy(deep=True),
                logs=LogBuffer(self._log_buffer_size),
            )
            self._records[instance.id] = record
            self._version += 1
            self._cond.notify_all()

        logger.info(
            "Instance registered",
            instance_id=instance.id,
            deployment_id=instance.deployment_id,
            type=instance.type.name,
        )
        return record

    async def unregister(self, instance_id: str) -> None:
        async with self._cond:
            record = self._records.pop(instance_id, None)
            if record is None:
                return
            self._version += 1
            self._cond.notify_all()

        await record.logs.close()
        logger.info("Instance unregistered", instance_id=instance_id)

    def get(self, instance_id: str) -> InstanceRecord | None:
        return self._records.get(instance_id)

    def for_deployment(self, deployment_id: str) -> list[InstanceRecord]:
        return [r for r in self._records.values() if r.instance.deployment_id == deployment_id]

    def notify(self, instance_id: str) -> None:
        """Ask the instance's config stream to push a fresh config."""
        record = self._records.get(instance_id)
        if record is not None:
            record.config_changed.set()

    async def wait_for_change(self, since: int) -> int:
        """Block until an instance registers or unregisters after ``since``."""
        async with self._cond:
            await self._cond.wait_for(lambda: self._version != since)
            return self._version
