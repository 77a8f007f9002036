"""
Mock Sandbox for Testing
In-memory filesystem with scripted command results
"""
import itertools
from typing import Dict, List, Optional, Tuple

from appforge.core.exceptions import SandboxCommandError, SandboxFileError, SandboxProvisioningError
from appforge.modules.sandbox.sandbox_session import CommandResult, SandboxProvider, SandboxSession

_ids = itertools.count(1)


class MockSandboxSession(SandboxSession):
    """
    Sandbox session over a dict.

    `commands` maps a command prefix to (stdout, stderr, exit_code);
    unknown commands succeed with empty output.
    """

    def __init__(self, sandbox_id: Optional[str] = None, host: Optional[str] = None):
        self.sandbox_id = sandbox_id or f"sbx-{next(_ids)}"
        self.host = host or f"3000-{self.sandbox_id}.sandbox.test"
        self.files: Dict[str, str] = {}
        self.commands: Dict[str, Tuple[str, str, int]] = {}
        self.command_log: List[Tuple[str, bool]] = []
        self.fail_writes_for: set = set()
        self.host_error: Optional[Exception] = None
        self.closed = False

    async def write_file(self, path: str, content: str) -> None:
        if path in self.fail_writes_for:
            raise SandboxFileError(path, "disk full", sandbox_id=self.sandbox_id)
        self.files[path] = content

    async def read_file(self, path: str) -> str:
        if path not in self.files:
            raise SandboxFileError(path, "file not found", sandbox_id=self.sandbox_id)
        return self.files[path]

    async def run_command(self, command, on_stdout=None, on_stderr=None, background=False) -> CommandResult:
        self.command_log.append((command, background))
        stdout, stderr, exit_code = next(
            (result for prefix, result in self.commands.items() if command.startswith(prefix)),
            ("", "", 0),
        )
        if on_stdout and stdout:
            on_stdout(stdout)
        if on_stderr and stderr:
            on_stderr(stderr)
        if exit_code != 0:
            raise SandboxCommandError(command, exit_code, stdout, stderr, sandbox_id=self.sandbox_id)
        return CommandResult(stdout=stdout, stderr=stderr, exit_code=exit_code)

    async def exposed_host(self, port: int) -> str:
        if self.host_error is not None:
            raise self.host_error
        return self.host

    async def close(self) -> None:
        self.closed = True


class MockSandboxProvider(SandboxProvider):
    """Hands out MockSandboxSessions and remembers them"""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sessions: List[MockSandboxSession] = []
        self.templates: List[Optional[str]] = []
        self.commands: Dict[str, Tuple[str, str, int]] = {}
        self.fail_writes_for: set = set()

    async def create(self, template_id: Optional[str] = None) -> MockSandboxSession:
        self.templates.append(template_id)
        if self.fail:
            raise SandboxProvisioningError("no capacity", template_id=template_id)
        session = MockSandboxSession()
        session.commands = dict(self.commands)
        session.fail_writes_for = set(self.fail_writes_for)
        self.sessions.append(session)
        return session
