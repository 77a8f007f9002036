"""
Sandbox Session - addressable handle to one ephemeral execution environment

A session exposes exactly what generation needs from a sandbox:
file write/read, shell commands and the public address of a port.
Sessions are created per run and never shared between concurrent runs.

The Docker provider backs each sandbox with one container started from the
image mapped to the requested template id. A container lives at most
SANDBOX_TTL_SECONDS unless closed earlier. The docker SDK is blocking, so
every call runs in a worker thread.
"""

import asyncio
import io
import os
import tarfile
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

import docker
from docker.errors import APIError, DockerException, NotFound

from appforge.core.config import settings
from appforge.core.exceptions import (
    SandboxCommandError,
    SandboxError,
    SandboxFileError,
    SandboxProvisioningError,
)
from appforge.core.logging_config import logger


OutputCallback = Callable[[str], None]


@dataclass
class CommandResult:
    stdout: str
    stderr: str
    exit_code: int = 0


class SandboxSession(ABC):
    """Handle to one provisioned sandbox"""

    sandbox_id: str

    @abstractmethod
    async def write_file(self, path: str, content: str) -> None:
        ...

    @abstractmethod
    async def read_file(self, path: str) -> str:
        """Raises SandboxFileError when the file does not exist"""

    @abstractmethod
    async def run_command(
        self,
        command: str,
        on_stdout: Optional[OutputCallback] = None,
        on_stderr: Optional[OutputCallback] = None,
        background: bool = False,
    ) -> CommandResult:
        """
        Run a shell command.

        Raises SandboxCommandError on a non-zero exit. A background command
        returns as soon as it is started, with empty output.
        """

    @abstractmethod
    async def exposed_host(self, port: int) -> str:
        """host:port under which `port` inside the sandbox is reachable"""

    @abstractmethod
    async def close(self) -> None:
        """Stop and discard the sandbox; closing an already gone sandbox is a no-op"""

    async def preview_url(self, port: Optional[int] = None) -> str:
        host = await self.exposed_host(port or settings.SANDBOX_PREVIEW_PORT)
        return f"{settings.SANDBOX_PREVIEW_SCHEME}://{host}"


async def discard_sandbox(sandbox: SandboxSession) -> None:
    """Close a sandbox left over from a failed run; a close failure is logged"""
    try:
        await sandbox.close()
    except SandboxError as e:
        logger.warning(f"[Sandbox:{sandbox.sandbox_id}] Close failed, left to its TTL: {e}")


class SandboxProvider(ABC):
    """Creates sandbox sessions from template ids"""

    @abstractmethod
    async def create(self, template_id: Optional[str] = None) -> SandboxSession:
        """Raises SandboxProvisioningError when no sandbox could be created"""


# ==========================================
# Docker implementation
# ==========================================

def _tar_single_file(name: str, data: bytes) -> io.BytesIO:
    stream = io.BytesIO()
    with tarfile.open(fileobj=stream, mode="w") as tar:
        info = tarfile.TarInfo(name=name)
        info.size = len(data)
        info.mtime = int(datetime.utcnow().timestamp())
        info.mode = 0o644
        tar.addfile(info, io.BytesIO(data))
    stream.seek(0)
    return stream


class DockerSandboxSession(SandboxSession):
    """Sandbox session backed by a running container"""

    def __init__(self, container, workdir: str = None, command_timeout: int = None):
        self.container = container
        self.sandbox_id: str = container.name
        self.workdir = workdir or settings.SANDBOX_WORKDIR
        self.command_timeout = command_timeout or settings.SANDBOX_COMMAND_TIMEOUT

    def _abs_path(self, path: str) -> str:
        if path.startswith("/"):
            return os.path.normpath(path)
        return os.path.normpath(os.path.join(self.workdir, path))

    async def write_file(self, path: str, content: str) -> None:
        target = self._abs_path(path)
        archive = _tar_single_file(target.lstrip("/"), content.encode("utf-8"))
        try:
            # Docker creates missing parent directories while extracting
            ok = await asyncio.to_thread(self.container.put_archive, "/", archive)
        except (APIError, NotFound) as e:
            raise SandboxFileError(path, str(e), sandbox_id=self.sandbox_id) from e
        if not ok:
            raise SandboxFileError(path, "write rejected by container", sandbox_id=self.sandbox_id)

    async def read_file(self, path: str) -> str:
        target = self._abs_path(path)
        try:
            bits, _stat = await asyncio.to_thread(self.container.get_archive, target)
            raw = await asyncio.to_thread(lambda: b"".join(bits))
        except NotFound as e:
            raise SandboxFileError(path, "file not found", sandbox_id=self.sandbox_id) from e
        except APIError as e:
            raise SandboxFileError(path, str(e), sandbox_id=self.sandbox_id) from e

        with tarfile.open(fileobj=io.BytesIO(raw), mode="r") as tar:
            member = next((m for m in tar.getmembers() if m.isfile()), None)
            if member is None:
                raise SandboxFileError(path, "not a regular file", sandbox_id=self.sandbox_id)
            extracted = tar.extractfile(member)
            return extracted.read().decode("utf-8", errors="replace")

    def _exec_streaming(self, command: str, on_stdout, on_stderr) -> CommandResult:
        api = self.container.client.api
        exec_id = api.exec_create(
            self.container.id, ["sh", "-c", command], workdir=self.workdir
        )["Id"]

        stdout_parts, stderr_parts = [], []
        for out_chunk, err_chunk in api.exec_start(exec_id, stream=True, demux=True):
            if out_chunk:
                text = out_chunk.decode("utf-8", errors="replace")
                stdout_parts.append(text)
                if on_stdout:
                    on_stdout(text)
            if err_chunk:
                text = err_chunk.decode("utf-8", errors="replace")
                stderr_parts.append(text)
                if on_stderr:
                    on_stderr(text)

        exit_code = api.exec_inspect(exec_id).get("ExitCode") or 0
        return CommandResult("".join(stdout_parts), "".join(stderr_parts), exit_code)

    async def run_command(
        self,
        command: str,
        on_stdout: Optional[OutputCallback] = None,
        on_stderr: Optional[OutputCallback] = None,
        background: bool = False,
    ) -> CommandResult:
        if background:
            try:
                await asyncio.to_thread(
                    self.container.exec_run,
                    ["sh", "-c", command],
                    workdir=self.workdir,
                    detach=True,
                )
            except APIError as e:
                raise SandboxCommandError(command, -1, stderr=str(e), sandbox_id=self.sandbox_id) from e
            logger.debug(f"[Sandbox:{self.sandbox_id}] Started in background: {command}")
            return CommandResult("", "", 0)

        try:
            result = await asyncio.wait_for(
                asyncio.to_thread(self._exec_streaming, command, on_stdout, on_stderr),
                timeout=self.command_timeout,
            )
        except asyncio.TimeoutError as e:
            raise SandboxCommandError(
                command, 124, stderr=f"Timed out after {self.command_timeout}s",
                sandbox_id=self.sandbox_id
            ) from e
        except APIError as e:
            raise SandboxCommandError(command, -1, stderr=str(e), sandbox_id=self.sandbox_id) from e

        if result.exit_code != 0:
            raise SandboxCommandError(
                command, result.exit_code, stdout=result.stdout, stderr=result.stderr,
                sandbox_id=self.sandbox_id
            )
        return result

    async def exposed_host(self, port: int) -> str:
        try:
            await asyncio.to_thread(self.container.reload)
        except (APIError, NotFound) as e:
            raise SandboxError(f"Cannot inspect sandbox: {e}", sandbox_id=self.sandbox_id) from e

        bindings = (self.container.attrs.get("NetworkSettings", {}).get("Ports") or {}).get(f"{port}/tcp")
        if not bindings:
            raise SandboxError(f"Port {port} is not exposed", sandbox_id=self.sandbox_id)
        return f"{settings.SANDBOX_PUBLIC_HOST}:{bindings[0]['HostPort']}"

    async def close(self) -> None:
        try:
            await asyncio.to_thread(self.container.stop, timeout=5)
            await asyncio.to_thread(self.container.remove, force=True)
        except NotFound:
            logger.debug(f"[Sandbox:{self.sandbox_id}] Already removed")
            return
        except APIError as e:
            # 409: auto_remove already started removing the stopped container
            if e.status_code == 409:
                logger.debug(f"[Sandbox:{self.sandbox_id}] Removal already in progress")
                return
            raise SandboxError(f"Cannot remove sandbox: {e}", sandbox_id=self.sandbox_id) from e
        logger.info(f"Stopped sandbox {self.sandbox_id}")


class DockerSandboxProvider(SandboxProvider):
    """Provisions sandbox containers on the local or a remote Docker daemon"""

    def __init__(self, client: Optional[docker.DockerClient] = None):
        self._client = client

    def _get_client(self) -> docker.DockerClient:
        """Lazy initialization of Docker client"""
        if self._client is None:
            if settings.SANDBOX_DOCKER_HOST:
                logger.info(f"Connecting to remote Docker host: {settings.SANDBOX_DOCKER_HOST}")
                self._client = docker.DockerClient(base_url=settings.SANDBOX_DOCKER_HOST)
            else:
                self._client = docker.from_env()
            self._ensure_network()
        return self._client

    def _ensure_network(self):
        """Create sandbox network if it doesn't exist"""
        try:
            self._client.networks.get(settings.SANDBOX_NETWORK)
        except NotFound:
            self._client.networks.create(settings.SANDBOX_NETWORK, driver="bridge", internal=False)
            logger.info(f"Created sandbox network: {settings.SANDBOX_NETWORK}")

    def _run_container(self, template_id: str):
        client = self._get_client()
        sandbox_id = f"sandbox-{uuid.uuid4().hex[:12]}"
        preview_port = settings.SANDBOX_PREVIEW_PORT
        return client.containers.run(
            image=settings.get_template_image(template_id),
            # The container exits on its own once the TTL lapses and is then removed
            command=["sleep", str(settings.SANDBOX_TTL_SECONDS)],
            auto_remove=True,
            name=sandbox_id,
            detach=True,
            working_dir=settings.SANDBOX_WORKDIR,
            environment={
                "NODE_ENV": "development",
                "PORT": str(preview_port),
                "HOST": "0.0.0.0",
            },
            # None lets the daemon pick a free host port
            ports={f"{preview_port}/tcp": None},
            network=settings.SANDBOX_NETWORK,
            mem_limit=settings.SANDBOX_MEMORY_LIMIT,
            labels={
                "appforge.sandbox": "true",
                "appforge.template": template_id,
                "appforge.created_at": datetime.utcnow().isoformat(),
            },
        )

    async def create(self, template_id: Optional[str] = None) -> SandboxSession:
        template_id = template_id or settings.SANDBOX_TEMPLATE
        try:
            container = await asyncio.to_thread(self._run_container, template_id)
        except DockerException as e:
            logger.error(f"Failed to create sandbox from template {template_id}: {e}")
            raise SandboxProvisioningError(f"Sandbox provisioning failed: {e}", template_id=template_id) from e

        logger.info(f"Created sandbox {container.name} from template {template_id}")
        return DockerSandboxSession(container)


_provider: Optional[SandboxProvider] = None


def get_sandbox_provider() -> SandboxProvider:
    global _provider
    if _provider is None:
        _provider = DockerSandboxProvider()
    return _provider
