"""
Scoped configuration variables.

Variables are scoped to a project, an application or runners. Lookups
layer the scopes with the most specific winning:

Applications:
1. Project-scoped variables of the application's project
2. Application-scoped variables (override project ones)

Runners:
1. Variables scoped to any runner
2. Variables scoped to the runner's id (override the above)
"""

import asyncio

from waypost.errors import InvalidArgumentError
from waypost.logging_config import get_logger
from waypost.protocol.entities import ConfigVar, Runner
from waypost.protocol.refs import ApplicationRef, ProjectRef, RunnerId, RunnerRef

logger = get_logger(__name__)


# (kind, identity) of a variable's scope
ScopeKey = tuple[str, tuple[str, ...]]


def _scope_key(var: ConfigVar) -> ScopeKey:
    match var.scope:
        case ApplicationRef(application=app, project=project):
            return ("application", (project, app))
        case ProjectRef(project=project):
            return ("project", (project,))
        case RunnerRef(target=RunnerId(id=runner_id)):
            return ("runner", (runner_id,))
        case RunnerRef():
            return ("runner", ())
        case _:
            raise InvalidArgumentError(f"config variable {var.name!r} has no scope")


class ConfigVarStore:
    """In-memory variable store with change notification."""

    def __init__(self) -> None:
        self._vars: dict[tuple[str, tuple[str, ...], str], ConfigVar] = {}
        self._version = 0
        self._cond = asyncio.Condition()

    @property
    def version(self) -> int:
        return self._version

    async def set(self, variables: list[ConfigVar]) -> None:
        """Upsert variables; an empty value deletes the variable."""
        keys = [(*_scope_key(v), v.name) for v in variables]
        async with self._cond:
            for key, var in zip(keys, variables, strict=True):
                if var.value:
                    self._vars[key] = var.model_copy(deep=True)
                else:
                    self._vars.pop(key, None)
            self._version += 1
            self._cond.notify_all()
        logger.info("Config variables set", count=len(variables), version=self._version)

    def for_application(self, app: ApplicationRef) -> list[ConfigVar]:
        resolved: dict[str, ConfigVar] = {}
        for (kind, scope, name), var in self._vars.items():
            if kind == "project" and scope == (app.project,):
                resolved.setdefault(name, var)
        for (kind, scope, name), var in self._vars.items():
            if kind == "application" and scope == (app.project, app.application):
                resolved[name] = var
        return [v.model_copy(deep=True) for v in resolved.values()]

    def for_project(self, project: ProjectRef) -> list[ConfigVar]:
        return [
            v.model_copy(deep=True)
            for (kind, scope, _), v in self._vars.items()
            if kind == "project" and scope == (project.project,)
        ]

    def for_runner(self, runner: Runner) -> list[ConfigVar]:
        resolved: dict[str, ConfigVar] = {}
        for (kind, scope, name), var in self._vars.items():
            if kind == "runner" and scope == ():
                resolved.setdefault(name, var)
        for (kind, scope, name), var in self._vars.items():
            if kind == "runner" and scope == (runner.id,):
                resolved[name] = var
        return [v.model_copy(deep=True) for v in resolved.values()]

    def all(self) -> list[ConfigVar]:
        return [v.model_copy(deep=True) for v in self._vars.values()]

    async def wait_for_change(self, since: int) -> int:
        """Block until the store version moves past ``since``; return the new version."""
        async with self._cond:
            await self._cond.wait_for(lambda: self._version != since)
            return self._version

