"""
Unit Tests for the Docker-backed sandbox session
"""
import io
import tarfile
from unittest.mock import MagicMock

import pytest
from docker.errors import APIError, DockerException, NotFound

from appforge.core.config import settings
from appforge.core.exceptions import (
    SandboxCommandError,
    SandboxError,
    SandboxFileError,
    SandboxProvisioningError,
)
from appforge.modules.sandbox.sandbox_session import (
    DockerSandboxProvider,
    DockerSandboxSession,
    discard_sandbox,
)


def make_container(name="sandbox-abc"):
    container = MagicMock()
    container.name = name
    container.id = "c0ffee"
    container.attrs = {
        "NetworkSettings": {"Ports": {"3000/tcp": [{"HostIp": "0.0.0.0", "HostPort": "49153"}]}}
    }
    return container


def tar_bytes(name: str, content: str) -> bytes:
    stream = io.BytesIO()
    data = content.encode("utf-8")
    with tarfile.open(fileobj=stream, mode="w") as tar:
        info = tarfile.TarInfo(name=name)
        info.size = len(data)
        tar.addfile(info, io.BytesIO(data))
    return stream.getvalue()


class TestDockerSandboxSession:

    @pytest.mark.asyncio
    async def test_write_file_puts_archive_under_workdir(self):
        container = make_container()
        container.put_archive.return_value = True
        session = DockerSandboxSession(container, workdir="/home/user")

        await session.write_file("app/page.tsx", "page")

        path, archive = container.put_archive.call_args.args
        assert path == "/"
        with tarfile.open(fileobj=archive, mode="r") as tar:
            member = tar.getmembers()[0]
            assert member.name == "home/user/app/page.tsx"
            assert tar.extractfile(member).read() == b"page"

    @pytest.mark.asyncio
    async def test_read_file(self):
        container = make_container()
        container.get_archive.return_value = (iter([tar_bytes("page.tsx", "hello")]), {})
        session = DockerSandboxSession(container)

        assert await session.read_file("app/page.tsx") == "hello"

    @pytest.mark.asyncio
    async def test_read_missing_file(self):
        container = make_container()
        container.get_archive.side_effect = NotFound("no such file")
        session = DockerSandboxSession(container)

        with pytest.raises(SandboxFileError):
            await session.read_file("missing.ts")

    @pytest.mark.asyncio
    async def test_run_command_streams_output(self):
        container = make_container()
        api = container.client.api
        api.exec_create.return_value = {"Id": "exec-1"}
        api.exec_start.return_value = iter([(b"installed\n", None), (None, b"warn\n")])
        api.exec_inspect.return_value = {"ExitCode": 0}
        session = DockerSandboxSession(container)
        seen = []

        result = await session.run_command("npm install", on_stdout=seen.append)

        assert result.stdout == "installed\n"
        assert result.stderr == "warn\n"
        assert seen == ["installed\n"]
        assert api.exec_create.call_args.args[1] == ["sh", "-c", "npm install"]

    @pytest.mark.asyncio
    async def test_non_zero_exit_raises(self):
        container = make_container()
        api = container.client.api
        api.exec_create.return_value = {"Id": "exec-1"}
        api.exec_start.return_value = iter([(None, b"boom")])
        api.exec_inspect.return_value = {"ExitCode": 2}
        session = DockerSandboxSession(container)

        with pytest.raises(SandboxCommandError) as exc_info:
            await session.run_command("false")

        assert exc_info.value.exit_code == 2
        assert exc_info.value.stderr == "boom"

    @pytest.mark.asyncio
    async def test_background_command_detaches(self):
        container = make_container()
        session = DockerSandboxSession(container)

        result = await session.run_command("pnpm dev", background=True)

        assert result.exit_code == 0
        assert container.exec_run.call_args.kwargs["detach"] is True

    @pytest.mark.asyncio
    async def test_preview_url_from_port_binding(self):
        session = DockerSandboxSession(make_container())

        assert await session.preview_url() == "https://localhost:49153"

    @pytest.mark.asyncio
    async def test_close_stops_then_removes(self):
        container = make_container()
        calls = MagicMock()
        calls.attach_mock(container.stop, "stop")
        calls.attach_mock(container.remove, "remove")
        session = DockerSandboxSession(container)

        await session.close()

        assert [c[0] for c in calls.mock_calls] == ["stop", "remove"]
        assert container.remove.call_args.kwargs["force"] is True

    @pytest.mark.asyncio
    async def test_close_of_gone_container_is_noop(self):
        container = make_container()
        container.stop.side_effect = NotFound("no such container")
        session = DockerSandboxSession(container)

        await session.close()

        container.remove.assert_not_called()

    @pytest.mark.asyncio
    async def test_close_while_auto_removing_is_noop(self):
        container = make_container()
        response = MagicMock(status_code=409)
        container.remove.side_effect = APIError("removal in progress", response=response)
        session = DockerSandboxSession(container)

        await session.close()

    @pytest.mark.asyncio
    async def test_close_daemon_error_raises(self):
        container = make_container()
        response = MagicMock(status_code=500)
        container.stop.side_effect = APIError("daemon down", response=response)
        session = DockerSandboxSession(container)

        with pytest.raises(SandboxError):
            await session.close()

    @pytest.mark.asyncio
    async def test_discard_logs_close_failure(self):
        container = make_container()
        response = MagicMock(status_code=500)
        container.stop.side_effect = APIError("daemon down", response=response)

        await discard_sandbox(DockerSandboxSession(container))

        container.stop.assert_called_once_with(timeout=5)


class TestDockerSandboxProvider:

    @pytest.mark.asyncio
    async def test_create_runs_template_image(self):
        client = MagicMock()
        client.containers.run.return_value = make_container("sandbox-123")
        provider = DockerSandboxProvider(client=client)

        session = await provider.create("builder-2")

        assert session.sandbox_id == "sandbox-123"
        kwargs = client.containers.run.call_args.kwargs
        assert kwargs["image"] == "node:20-bookworm"
        assert kwargs["ports"] == {"3000/tcp": None}

    @pytest.mark.asyncio
    async def test_container_lifetime_is_bounded_by_ttl(self, monkeypatch):
        monkeypatch.setattr(settings, "SANDBOX_TTL_SECONDS", 900)
        client = MagicMock()
        client.containers.run.return_value = make_container("sandbox-123")

        await DockerSandboxProvider(client=client).create()

        kwargs = client.containers.run.call_args.kwargs
        assert kwargs["command"] == ["sleep", "900"]
        assert kwargs["auto_remove"] is True

    @pytest.mark.asyncio
    async def test_docker_failure_is_provisioning_error(self):
        client = MagicMock()
        client.containers.run.side_effect = DockerException("image not found")

        with pytest.raises(SandboxProvisioningError):
            await DockerSandboxProvider(client=client).create()
