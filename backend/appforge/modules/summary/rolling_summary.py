"""
Rolling Summary - per-project file manifest and bounded digest

The manifest tracks the *current* metadata of every file a project has ever
produced (hash, size, kind). Routes, models and env vars are re-derived from
the whole file map on every update. The digest is a short text projection of
the manifest that is injected at the top of every generation prompt, so it is
capped at a fixed byte budget.

Usage:
    manifest, digest = await update_rolling_summary(
        ProjectManifest.from_dict(project.manifest),
        [("app/page.tsx", source)],
    )
"""

import copy
import hashlib
import inspect
import re
from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple, Union

from appforge.core.config import settings
from appforge.core.exceptions import DigestGenerationError
from appforge.core.logging_config import logger


TRUNCATION_MARKER = "\n…[digest truncated]"

FileKind = str  # "code" | "asset" | "doc"

_ASSET_RE = re.compile(r"\.(png|jpe?g|gif|svg)$")
_DOC_RE = re.compile(r"\.(md|txt)$")
_ROUTE_RE = re.compile(r"(page|route)\.[jt]sx?$")
_ROUTE_PREFIXES = ("app/", "src/app/")

SummariseFn = Callable[["ProjectManifest"], Union[str, Awaitable[str]]]


@dataclass
class FileMeta:
    """Metadata for one file; `hash` is the sha1 of its latest content"""
    path: str
    hash: str
    size: int
    kind: FileKind = "code"


@dataclass
class ProjectManifest:
    files: Dict[str, FileMeta] = field(default_factory=dict)
    routes: List[str] = field(default_factory=list)
    models: List[str] = field(default_factory=list)
    env: List[str] = field(default_factory=list)
    last_updated: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "files": {path: asdict(meta) for path, meta in self.files.items()},
            "routes": list(self.routes),
            "models": list(self.models),
            "env": list(self.env),
            "last_updated": self.last_updated,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["ProjectManifest"]:
        """Rebuild a manifest from its JSON column; None stays None"""
        if not data:
            return None
        return cls(
            files={
                path: FileMeta(**meta)
                for path, meta in (data.get("files") or {}).items()
            },
            routes=list(data.get("routes") or []),
            models=list(data.get("models") or []),
            env=list(data.get("env") or []),
            last_updated=data.get("last_updated", ""),
        )


def sha1(content: Union[str, bytes]) -> str:
    if isinstance(content, str):
        content = content.encode("utf-8")
    return hashlib.sha1(content).hexdigest()


def infer_kind(path: str) -> FileKind:
    """Classify a file by extension only"""
    if _ASSET_RE.search(path):
        return "asset"
    if _DOC_RE.search(path):
        return "doc"
    return "code"


def is_route(path: str) -> bool:
    return path.startswith(_ROUTE_PREFIXES) and bool(_ROUTE_RE.search(path))


def is_model(path: str) -> bool:
    return path.endswith(".prisma")


def guess_env_vars(files: Dict[str, FileMeta]) -> List[str]:
    env_vars: List[str] = []
    if any(".env" in path for path in files):
        env_vars.append("DATABASE_URL")
    return env_vars


def default_summarise(manifest: ProjectManifest) -> str:
    return "\n".join([
        "# Project Digest",
        f"Files: {len(manifest.files)}",
        f"Routes: {', '.join(manifest.routes) or '-'}",
        f"Models: {', '.join(manifest.models) or '-'}",
        f"Env: {', '.join(manifest.env) or '-'}",
    ])


def truncate_digest(digest: str, max_bytes: int) -> str:
    """
    Cap a digest at max_bytes of UTF-8, ending with TRUNCATION_MARKER when cut.

    Cuts on a byte boundary and drops any partial multi-byte character, so the
    result is always valid text within the budget.
    """
    encoded = digest.encode("utf-8")
    if len(encoded) <= max_bytes:
        return digest

    marker = TRUNCATION_MARKER.encode("utf-8")
    if max_bytes <= len(marker):
        return marker[:max_bytes].decode("utf-8", errors="ignore")

    head = encoded[:max_bytes - len(marker)].decode("utf-8", errors="ignore")
    return head + TRUNCATION_MARKER


async def update_rolling_summary(
    prev: Optional[ProjectManifest],
    changed_files: Iterable[Tuple[str, str]],
    max_digest_bytes: Optional[int] = None,
    summarise_fn: Optional[SummariseFn] = None,
) -> Tuple[ProjectManifest, str]:
    """
    Apply changed files to a manifest and regenerate its digest.

    `prev` is never mutated. Each (path, content) overwrites the prior entry
    for that path. A failing `summarise_fn` raises DigestGenerationError.
    """
    manifest = copy.deepcopy(prev) if prev is not None else ProjectManifest()

    for path, content in changed_files:
        manifest.files[path] = FileMeta(
            path=path,
            hash=sha1(content),
            size=len(content.encode("utf-8")),
            kind=infer_kind(path),
        )

    manifest.last_updated = datetime.utcnow().isoformat() + "Z"
    paths = list(manifest.files.keys())
    manifest.routes = [p for p in paths if is_route(p)]
    manifest.models = [p for p in paths if is_model(p)]
    manifest.env = guess_env_vars(manifest.files)

    summarise = summarise_fn or default_summarise
    try:
        digest = summarise(manifest)
        if inspect.isawaitable(digest):
            digest = await digest
    except Exception as e:
        logger.error(f"[RollingSummary] Summarizer failed: {e}")
        raise DigestGenerationError(f"Digest summarizer failed: {e}") from e

    if not isinstance(digest, str):
        raise DigestGenerationError(
            f"Digest summarizer returned {type(digest).__name__}, expected str"
        )

    max_bytes = settings.DIGEST_MAX_BYTES if max_digest_bytes is None else max_digest_bytes
    return manifest, truncate_digest(digest, max_bytes)


def render_digest(manifest: Optional[ProjectManifest], max_digest_bytes: Optional[int] = None) -> str:
    """Default digest for an existing manifest without applying any update"""
    if manifest is None:
        return ""
    max_bytes = settings.DIGEST_MAX_BYTES if max_digest_bytes is None else max_digest_bytes
    return truncate_digest(default_summarise(manifest), max_bytes)
