"""
Sandbox Assembly

After the fan-out branches converge, the newest fragments are merged into a
single file map, written to a fresh sandbox, bootstrapped (schema generation,
dependency install, dev server) and the preview address is stored on the
project.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional

from sqlalchemy import update

from appforge.core.config import settings
from appforge.core.database import AsyncSessionLocal
from appforge.core.exceptions import NothingToAssembleError, ProjectNotFoundError
from appforge.core.logging_config import logger, set_project_id
from appforge.models.fragment import Fragment
from appforge.models.project import Project, ProjectStatus
from appforge.modules.sandbox.sandbox_session import (
    SandboxProvider,
    SandboxSession,
    discard_sandbox,
    get_sandbox_provider,
)
from appforge.services.message_service import MessageService


@dataclass
class AssemblyResult:
    project_id: str
    preview_url: Optional[str]
    sandbox_id: str
    file_count: int


def merge_fragment_files(fragments_newest_first: List[Fragment]) -> Dict[str, str]:
    """Merge fragment files; for a path present in several, the newest fragment wins"""
    merged: Dict[str, str] = {}
    for fragment in reversed(fragments_newest_first):
        merged.update(fragment.files or {})
    return merged


class SandboxAssembler:
    """Builds the combined preview sandbox of a project"""

    def __init__(
        self,
        session_factory=None,
        sandbox_provider: Optional[SandboxProvider] = None,
        fragment_count: Optional[int] = None,
    ):
        self.session_factory = session_factory or AsyncSessionLocal
        self._sandbox_provider = sandbox_provider
        self.fragment_count = fragment_count or len(settings.FANOUT_STEP_TYPES)

    @property
    def sandbox_provider(self) -> SandboxProvider:
        if self._sandbox_provider is None:
            self._sandbox_provider = get_sandbox_provider()
        return self._sandbox_provider

    async def _bootstrap(self, sandbox: SandboxSession, files: Dict[str, str], prefix: str):
        """Each command is best-effort; a failure does not skip the next one"""
        commands = []
        if settings.ASSEMBLY_SCHEMA_FILE in files:
            commands.append((settings.ASSEMBLY_SCHEMA_COMMAND, False))
        commands.append((settings.ASSEMBLY_INSTALL_COMMAND, False))
        commands.append((settings.ASSEMBLY_START_COMMAND, True))

        for command, background in commands:
            try:
                await sandbox.run_command(command, background=background)
                logger.info(f"{prefix} Ran '{command}'")
            except Exception as e:
                logger.error(f"{prefix} Bootstrap command '{command}' failed: {e}")

    async def assemble(self, project_id: str) -> AssemblyResult:
        """
        Raises ProjectNotFoundError, NothingToAssembleError or
        SandboxProvisioningError; all are fatal for the pipeline.
        """
        project_id = str(project_id)
        prefix = f"[SandboxAssembler:{project_id}]"
        set_project_id(project_id)

        async with self.session_factory() as db:
            project = await db.get(Project, project_id)
            if project is None:
                raise ProjectNotFoundError(project_id)
            fragments = await MessageService(db).get_latest_fragments(project_id, self.fragment_count)
            project.status = ProjectStatus.ASSEMBLING
            await db.commit()

        files = merge_fragment_files(fragments)
        if not files:
            raise NothingToAssembleError(project_id)

        logger.log_step("assemble", "started", fragments=len(fragments), files=len(files))
        sandbox = await self.sandbox_provider.create(settings.SANDBOX_TEMPLATE)

        try:
            for path, content in files.items():
                await sandbox.write_file(path, content)

            await self._bootstrap(sandbox, files, prefix)

            preview_url = await sandbox.preview_url()

            async with self.session_factory() as db:
                await db.execute(
                    update(Project)
                    .where(Project.id == project_id)
                    .values(
                        sandbox_id=sandbox.sandbox_id,
                        preview_url=preview_url,
                        status=ProjectStatus.READY,
                    )
                    .execution_options(synchronize_session=False)
                )
                await db.commit()
        except Exception:
            await discard_sandbox(sandbox)
            raise

        logger.info(f"{prefix} Sandbox {sandbox.sandbox_id} ready at {preview_url}")
        return AssemblyResult(
            project_id=project_id,
            preview_url=preview_url,
            sandbox_id=sandbox.sandbox_id,
            file_count=len(files),
        )
