"""
Waypost server core.

Wires the job queue, runner, exec, log and token services together and
exposes every RPC under its method name. A transport adapter (gRPC, HTTP)
maps its calls and streams onto these methods.

Lifecycle follows the usual module-level pattern:

    await init_server()
    server = get_server()
    ...
    await close_server()
"""

from collections.abc import AsyncIterator

from waypost.auth.tokens import Keyring, TokenService
from waypost.config import Settings, settings
from waypost.config_vars import ConfigVarStore
from waypost.exec.instances import InstanceRegistry
from waypost.exec.service import ClientStream, EntrypointStream, ExecService
from waypost.exec.service import ConfigStream as EntrypointConfigStream
from waypost.exec.sessions import SessionRegistry
from waypost.jobs.queue import JobQueue
from waypost.jobs.service import JobService
from waypost.logging_config import configure_logging, get_logger
from waypost.logs.service import LogService
from waypost.protocol.entities import ConfigVar, Runner
from waypost.protocol.jobs import (
    CancelJobRequest,
    GetJobRequest,
    GetJobStreamRequest,
    GetJobStreamResponse,
    Job,
    ListJobsRequest,
    ListJobsResponse,
    QueueJobRequest,
    QueueJobResponse,
    ValidateJobRequest,
    ValidateJobResponse,
)
from waypost.protocol.refs import ApplicationRef, ProjectRef
from waypost.protocol.runner import RunnerGetDeploymentConfigResponse
from waypost.protocol.terminal import EntrypointLogBatch, GetLogStreamRequest, LogBatch
from waypost.protocol.tokens import (
    ConvertInviteTokenRequest,
    DecodeTokenRequest,
    DecodeTokenResponse,
    InviteTokenRequest,
    LoginTokenRequest,
    NewTokenResponse,
)
from waypost.runners.registry import RunnerRegistry
from waypost.runners.service import ConfigStream as RunnerConfigStream
from waypost.runners.service import JobStream, RunnerService
from waypost.streams import Stream

logger = get_logger(__name__)


class Server:
    """All Waypost RPCs over shared in-memory state."""

    def __init__(self, config: Settings | None = None) -> None:
        config = config or settings
        self.config = config

        self.runners = RunnerRegistry()
        self.config_vars = ConfigVarStore()
        self.queue = JobQueue(self.runners, waiting_timeout=config.jobs.waiting_timeout_seconds)
        self.instances = InstanceRegistry(log_buffer_size=config.logs.buffer_size)
        self.sessions = SessionRegistry()

        self.jobs = JobService(
            self.queue,
            terminal_batch_size=config.jobs.terminal_batch_size,
            default_expires_in=config.jobs.default_expires_in,
        )
        self.runner_service = RunnerService(
            self.queue, self.runners, self.config_vars, server_config=config.server
        )
        self.exec = ExecService(
            self.instances,
            self.sessions,
            self.config_vars,
            max_sessions_per_instance=config.exec.max_sessions_per_instance,
        )
        self.logs = LogService(self.instances, backlog=config.logs.backlog)
        self.tokens = TokenService(Keyring(), config.tokens)

    async def close(self) -> None:
        await self.queue.close()

    # --- Jobs ---

    async def queue_job(self, request: QueueJobRequest) -> QueueJobResponse:
        return await self.jobs.queue_job(request)

    async def validate_job(self, request: ValidateJobRequest) -> ValidateJobResponse:
        return await self.jobs.validate_job(request)

    async def get_job(self, request: GetJobRequest) -> Job:
        return await self.jobs.get_job(request)

    async def list_jobs(self, request: ListJobsRequest) -> ListJobsResponse:
        return await self.jobs.list_jobs(request)

    async def cancel_job(self, request: CancelJobRequest) -> None:
        await self.jobs.cancel_job(request)

    def get_job_stream(self, request: GetJobStreamRequest) -> AsyncIterator[GetJobStreamResponse]:
        return self.jobs.get_job_stream(request)

    # --- Runners ---

    async def runner_config(self, stream: RunnerConfigStream) -> None:
        await self.runner_service.runner_config(stream)

    async def runner_job_stream(self, stream: JobStream) -> None:
        await self.runner_service.runner_job_stream(stream)

    def runner_get_deployment_config(self) -> RunnerGetDeploymentConfigResponse:
        return self.runner_service.runner_get_deployment_config()

    # --- Config variables ---

    async def set_config(self, variables: list[ConfigVar]) -> None:
        await self.config_vars.set(variables)

    def get_config(
        self,
        application: ApplicationRef | None = None,
        project: ProjectRef | None = None,
        runner_id: str | None = None,
    ) -> list[ConfigVar]:
        if application is not None:
            return self.config_vars.for_application(application)
        if project is not None:
            return self.config_vars.for_project(project)
        if runner_id is not None:
            runner = self.runners.get(runner_id) or Runner(id=runner_id)
            return self.config_vars.for_runner(runner)
        return self.config_vars.all()

    # --- Exec ---

    async def exec_stream(self, stream: ClientStream) -> None:
        await self.exec.exec_stream(stream)

    async def entrypoint_config(self, stream: EntrypointConfigStream) -> None:
        await self.exec.entrypoint_config(stream)

    async def entrypoint_exec_stream(self, stream: EntrypointStream) -> None:
        await self.exec.entrypoint_exec_stream(stream)

    # --- Logs ---

    async def entrypoint_log_stream(self, stream: Stream[EntrypointLogBatch, None]) -> None:
        await self.logs.entrypoint_log_stream(stream)

    def get_log_stream(self, request: GetLogStreamRequest) -> AsyncIterator[LogBatch]:
        return self.logs.get_log_stream(request)

    # --- Tokens ---

    def generate_login_token(self, request: LoginTokenRequest) -> NewTokenResponse:
        return self.tokens.login_token(request)

    def generate_invite_token(self, request: InviteTokenRequest) -> NewTokenResponse:
        return self.tokens.generate_invite_token(request)

    def convert_invite_token(self, request: ConvertInviteTokenRequest) -> NewTokenResponse:
        return self.tokens.convert_invite_token(request)

    def bootstrap_token(self) -> NewTokenResponse:
        return self.tokens.bootstrap_token()

    def decode_token(self, request: DecodeTokenRequest) -> DecodeTokenResponse:
        return self.tokens.decode(request)


# Module-level server reference, initialized at startup
_server: Server | None = None


async def init_server(config: Settings | None = None) -> Server:
    """Create the process-wide server."""
    global _server  # noqa: PLW0603
    config = config or settings
    configure_logging(json_logs=config.json_logs, log_level=config.log_level)
    logger.info("Initializing server", app_name=config.app_name)
    _server = Server(config)
    return _server


async def close_server() -> None:
    """Shut down the process-wide server."""
    global _server  # noqa: PLW0603
    if _server is not None:
        logger.info("Closing server")
        await _server.close()
        _server = None


def get_server() -> Server:
    """Return the server. Raises if not initialized."""
    if _server is None:
        raise RuntimeError("Server not initialized; call init_server() first")
    return _server
