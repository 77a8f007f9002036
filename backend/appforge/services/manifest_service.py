"""
Manifest Service - serialized persistence of the per-project rolling summary

Fan-out branches of one project finish concurrently and each one folds its
files into the same manifest. Writes are compare-and-swap on
projects.manifest_version, so a writer that read a stale manifest re-reads and
re-applies its files instead of overwriting the other branch's entries.
"""

import asyncio
import weakref
from typing import Dict, Optional, Tuple, Union
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from appforge.core.config import settings
from appforge.core.exceptions import ManifestConflictError, ProjectNotFoundError
from appforge.core.logging_config import logger
from appforge.models.project import Project
from appforge.modules.summary.rolling_summary import (
    ProjectManifest,
    SummariseFn,
    render_digest,
    update_rolling_summary,
)
from appforge.services.conversation_service import to_str


# loop -> {project_id: Lock}; asyncio locks must not cross event loops and
# every Celery task runs its own loop
_project_locks: "weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, Dict[str, asyncio.Lock]]" = (
    weakref.WeakKeyDictionary()
)


def _project_lock(project_id: str) -> asyncio.Lock:
    loop = asyncio.get_running_loop()
    locks = _project_locks.setdefault(loop, {})
    if project_id not in locks:
        locks[project_id] = asyncio.Lock()
    return locks[project_id]


class ManifestService:
    """Reads and updates a project's manifest and digest"""

    def __init__(self, db: AsyncSession, max_attempts: Optional[int] = None):
        self.db = db
        self.max_attempts = max_attempts or settings.MANIFEST_MAX_UPDATE_ATTEMPTS

    async def _read(self, project_id: str):
        result = await self.db.execute(
            select(Project.manifest, Project.manifest_version, Project.digest)
            .where(Project.id == project_id)
        )
        row = result.one_or_none()
        if row is None:
            raise ProjectNotFoundError(project_id)
        return row

    async def get_manifest(
        self, project_id: Union[UUID, str]
    ) -> Tuple[Optional[ProjectManifest], str]:
        """
        Current manifest and digest of a project.

        A project with no successful run yet has no manifest and an empty digest.
        """
        row = await self._read(to_str(project_id))
        manifest = ProjectManifest.from_dict(row.manifest)
        digest = row.digest or render_digest(manifest)
        return manifest, digest

    async def apply_update(
        self,
        project_id: Union[UUID, str],
        files: Dict[str, str],
        summarise_fn: Optional[SummariseFn] = None,
    ) -> Tuple[ProjectManifest, str]:
        """
        Fold files into the project's manifest and persist the new digest.

        Raises ManifestConflictError when every attempt lost the version race.
        """
        project_id = to_str(project_id)

        async with _project_lock(project_id):
            for attempt in range(1, self.max_attempts + 1):
                row = await self._read(project_id)
                read_version = row.manifest_version or 0

                manifest, digest = await update_rolling_summary(
                    ProjectManifest.from_dict(row.manifest),
                    files.items(),
                    summarise_fn=summarise_fn,
                )

                result = await self.db.execute(
                    update(Project)
                    .where(Project.id == project_id)
                    .where(Project.manifest_version == read_version)
                    .values(
                        manifest=manifest.to_dict(),
                        manifest_version=read_version + 1,
                        digest=digest,
                    )
                    .execution_options(synchronize_session=False)
                )
                await self.db.commit()

                if result.rowcount == 1:
                    logger.debug(
                        f"[ManifestService:{project_id}] v{read_version + 1}: "
                        f"{len(files)} changed, {len(manifest.files)} tracked"
                    )
                    return manifest, digest

                logger.warning(
                    f"[ManifestService:{project_id}] Version {read_version} was stale "
                    f"(attempt {attempt}/{self.max_attempts}), retrying"
                )

        raise ManifestConflictError(project_id, self.max_attempts)
