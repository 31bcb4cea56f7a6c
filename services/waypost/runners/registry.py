"""Registry of runners known to the server."""

from dataclasses import dataclass

from waypost.jobs.state import utc_now
from waypost.logging_config import get_logger
from waypost.protocol.entities import Runner

logger = get_logger(__name__)


@dataclass
class RunnerEntry:
    runner: Runner
    online: bool
    first_seen: str  # ISO 8601
    last_seen: str  # ISO 8601


class RunnerRegistry:
    """Runners that have opened a config stream.

    A runner stays known after it disconnects but is only considered for
    assignment while online.
    """

    def __init__(self) -> None:
        self._entries: dict[str, RunnerEntry] = {}

    def register(self, runner: Runner) -> None:
        now = utc_now().isoformat()
        entry = self._entries.get(runner.id)
        if entry is None:
            self._entries[runner.id] = RunnerEntry(
                runner=runner.model_copy(deep=True), online=True, first_seen=now, last_seen=now
            )
        else:
            entry.runner = runner.model_copy(deep=True)
            entry.online = True
            entry.last_seen = now
        logger.info("Runner registered", runner_id=runner.id, by_id_only=runner.by_id_only)

    def offline(self, runner_id: str) -> None:
        entry = self._entries.get(runner_id)
        if entry is None or not entry.online:
            return
        entry.online = False
        entry.last_seen = utc_now().isoformat()
        logger.info("Runner offline", runner_id=runner_id)

    def get(self, runner_id: str) -> Runner | None:
        entry = self._entries.get(runner_id)
        return entry.runner if entry is not None else None

    def is_online(self, runner_id: str) -> bool:
        entry = self._entries.get(runner_id)
        return entry is not None and entry.online

    def online(self) -> list[Runner]:
        return [e.runner for e in self._entries.values() if e.online]

    def all(self) -> list[Runner]:
        return [e.runner for e in self._entries.values()]

    def is_empty(self) -> bool:
        return not self._entries
