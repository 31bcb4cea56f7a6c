"""Tests for the server facade and its module-level lifecycle."""

import asyncio
from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio

from waypost.config import AdvertiseAddr, ExecConfig, ServerConfig, Settings
from waypost.errors import FailedPreconditionError, ResourceExhaustedError
from waypost.jobs.state import State
from waypost.protocol.entities import ConfigVar, Runner
from waypost.protocol.exec import ExecStreamRequest
from waypost.protocol.jobs import GetJobRequest, Job, Noop, QueueJobRequest
from waypost.protocol.refs import ApplicationRef, ProjectRef, RunnerRef, WorkspaceRef
from waypost.protocol.runner import RunnerJobStreamRequest
from waypost.protocol.tokens import DecodeTokenRequest, LoginTokenRequest
from waypost.server import Server, close_server, get_server, init_server
from waypost.streams import MemoryStream

WEB = ApplicationRef(application="web", project="shop")


@pytest_asyncio.fixture
async def server() -> AsyncGenerator[Server]:
    s = Server(Settings())
    yield s
    await s.close()


class TestServer:
    async def test_job_round_trip_through_runner(self, server: Server):
        server.runners.register(Runner(id="r1"))
        job = Job(
            application=WEB,
            workspace=WorkspaceRef(workspace="default"),
            target_runner=RunnerRef.any_runner(),
            operation=Noop(),
        )
        queued = await server.queue_job(QueueJobRequest(job=job))

        server_end, runner = MemoryStream.pair()
        task = asyncio.create_task(server.runner_job_stream(server_end))
        await runner.send(
            RunnerJobStreamRequest(event=RunnerJobStreamRequest.Request(runner_id="r1"))
        )
        assignment = await asyncio.wait_for(runner.recv(), timeout=1)
        assert assignment.event.job.id == queued.job_id

        await runner.send(RunnerJobStreamRequest(event=RunnerJobStreamRequest.Ack()))
        await runner.send(RunnerJobStreamRequest(event=RunnerJobStreamRequest.Complete()))
        await runner.close()
        await asyncio.wait_for(task, timeout=1)

        done = await server.get_job(GetJobRequest(job_id=queued.job_id))
        assert done.state == State.SUCCESS

    async def test_get_config_scopes(self, server: Server):
        await server.set_config(
            [
                ConfigVar(name="REGION", value="eu", project=ProjectRef(project="shop")),
                ConfigVar(name="PORT", value="8080", application=WEB),
                ConfigVar(name="CACHE", value="/ssd", runner=RunnerRef.for_id("r1")),
            ]
        )
        assert {v.name for v in server.get_config(application=WEB)} == {"REGION", "PORT"}
        assert [v.name for v in server.get_config(project=ProjectRef(project="shop"))] == [
            "REGION"
        ]
        assert [v.name for v in server.get_config(runner_id="r1")] == ["CACHE"]
        assert len(server.get_config()) == 3

    async def test_tokens(self, server: Server):
        bootstrap = server.bootstrap_token()
        assert server.decode_token(DecodeTokenRequest(token=bootstrap.token)).token.login
        with pytest.raises(FailedPreconditionError):
            server.bootstrap_token()

        login = server.generate_login_token(LoginTokenRequest(user="alice"))
        decoded = server.decode_token(DecodeTokenRequest(token=login.token))
        assert decoded.token.user == "alice"

    def test_deployment_config_uses_settings(self):
        settings = Settings(
            server=ServerConfig(advertise_addrs=[AdvertiseAddr(addr="wp:9701", tls=False)])
        )
        response = Server(settings).runner_get_deployment_config()
        assert response.server_addr == "wp:9701"
        assert response.server_tls is False

    async def test_exec_without_instances(self):
        server = Server(Settings(exec=ExecConfig(max_sessions_per_instance=2)))
        server_end, client = MemoryStream.pair()
        await client.send(ExecStreamRequest(event=ExecStreamRequest.Start(deployment_id="d1")))
        with pytest.raises(ResourceExhaustedError):
            await server.exec_stream(server_end)
        await server.close()


class TestLifecycle:
    async def test_get_before_init(self):
        await close_server()
        with pytest.raises(RuntimeError, match="not initialized"):
            get_server()

    async def test_init_get_close(self):
        server = await init_server(Settings(json_logs=False))
        try:
            assert get_server() is server
        finally:
            await close_server()
        with pytest.raises(RuntimeError):
            get_server()
