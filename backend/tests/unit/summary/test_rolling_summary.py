"""
Unit Tests for the Rolling Summary (manifest + digest)
"""
import pytest

from appforge.core.exceptions import DigestGenerationError
from appforge.modules.summary.rolling_summary import (
    TRUNCATION_MARKER,
    FileMeta,
    ProjectManifest,
    infer_kind,
    is_route,
    render_digest,
    sha1,
    truncate_digest,
    update_rolling_summary,
)


class TestClassification:
    """Tests for the path based helpers"""

    @pytest.mark.parametrize("path,kind", [
        ("public/logo.png", "asset"),
        ("public/hero.JPEG".lower(), "asset"),
        ("icons/a.svg", "asset"),
        ("README.md", "doc"),
        ("notes.txt", "doc"),
        ("app/page.tsx", "code"),
        ("prisma/schema.prisma", "code"),
    ])
    def test_infer_kind(self, path, kind):
        assert infer_kind(path) == kind

    def test_routes_under_app_and_src_app(self):
        assert is_route("app/page.tsx")
        assert is_route("app/api/todos/route.ts")
        assert is_route("src/app/dashboard/page.jsx")
        assert not is_route("components/page.tsx")
        assert not is_route("app/layout.tsx")


class TestUpdateRollingSummary:
    """Tests for update_rolling_summary"""

    @pytest.mark.asyncio
    async def test_routes_and_models_are_derived(self):
        """A page and a prisma schema land in routes and models"""
        manifest, digest = await update_rolling_summary(None, [
            ("app/page.tsx", "export default function Page() {}"),
            ("schema.prisma", "model Todo { id Int @id }"),
        ])

        assert manifest.routes == ["app/page.tsx"]
        assert manifest.models == ["schema.prisma"]
        assert manifest.files["app/page.tsx"].hash == sha1("export default function Page() {}")
        assert "Files: 2" in digest

    @pytest.mark.asyncio
    async def test_previous_manifest_is_not_mutated(self):
        prev = ProjectManifest(files={"a.ts": FileMeta(path="a.ts", hash="x", size=1)})

        manifest, _ = await update_rolling_summary(prev, [("b.ts", "b")])

        assert set(prev.files) == {"a.ts"}
        assert set(manifest.files) == {"a.ts", "b.ts"}

    @pytest.mark.asyncio
    async def test_last_write_wins_per_path(self):
        manifest, _ = await update_rolling_summary(None, [("a.ts", "one"), ("a.ts", "three")])

        assert manifest.files["a.ts"].hash == sha1("three")
        assert manifest.files["a.ts"].size == 5

    @pytest.mark.asyncio
    async def test_reapplying_same_files_gives_same_entries(self):
        files = [("app/page.tsx", "x"), ("lib/db.ts", "y")]
        first, first_digest = await update_rolling_summary(None, files)
        second, second_digest = await update_rolling_summary(first, files)

        assert first.files == second.files
        assert first.routes == second.routes
        assert first_digest == second_digest

    @pytest.mark.asyncio
    async def test_env_guess_from_dotenv(self):
        manifest, _ = await update_rolling_summary(None, [(".env", "DATABASE_URL=postgres://")])

        assert manifest.env == ["DATABASE_URL"]

    @pytest.mark.asyncio
    async def test_digest_is_bounded(self):
        manifest, digest = await update_rolling_summary(
            None,
            [("a.ts", "a")],
            max_digest_bytes=50,
            summarise_fn=lambda m: "x" * 500,
        )

        assert len(digest.encode("utf-8")) <= 50
        assert digest.endswith(TRUNCATION_MARKER)

    @pytest.mark.asyncio
    async def test_async_summariser_is_awaited(self):
        async def summarise(manifest):
            return f"{len(manifest.files)} files"

        _, digest = await update_rolling_summary(None, [("a.ts", "a")], summarise_fn=summarise)

        assert digest == "1 files"

    @pytest.mark.asyncio
    async def test_summariser_failure_raises(self):
        def broken(manifest):
            raise RuntimeError("model unavailable")

        with pytest.raises(DigestGenerationError):
            await update_rolling_summary(None, [("a.ts", "a")], summarise_fn=broken)

    @pytest.mark.asyncio
    async def test_non_text_summary_raises(self):
        with pytest.raises(DigestGenerationError):
            await update_rolling_summary(None, [("a.ts", "a")], summarise_fn=lambda m: None)


class TestTruncateDigest:
    """Tests for truncate_digest"""

    def test_short_digest_unchanged(self):
        assert truncate_digest("hello", 100) == "hello"

    def test_multibyte_characters_are_not_split(self):
        digest = truncate_digest("é" * 100, 41)

        assert len(digest.encode("utf-8")) <= 41
        assert digest.endswith(TRUNCATION_MARKER)
        digest.encode("utf-8").decode("utf-8")

    def test_tiny_budget(self):
        assert len(truncate_digest("abcdef", 2).encode("utf-8")) <= 2

    def test_digest_ending_in_ellipsis_is_not_marked(self):
        digest = truncate_digest("Pages: home, about, ...", 100)

        assert digest == "Pages: home, about, ..."
        assert not digest.endswith(TRUNCATION_MARKER)

    def test_marker_is_distinct_from_content(self):
        digest = truncate_digest("Routes: /a, /b, /c, ..." * 10, 60)

        assert digest.endswith("[digest truncated]")
        assert TRUNCATION_MARKER not in digest[:-len(TRUNCATION_MARKER)]


def test_manifest_dict_round_trip_keeps_metadata():
    manifest = ProjectManifest(
        files={"app/page.tsx": FileMeta(path="app/page.tsx", hash="h", size=3)},
        routes=["app/page.tsx"],
    )

    restored = ProjectManifest.from_dict(manifest.to_dict())

    assert restored.files["app/page.tsx"].hash == "h"
    assert restored.routes == ["app/page.tsx"]
    assert ProjectManifest.from_dict(None) is None


def test_render_digest_without_manifest_is_empty():
    assert render_digest(None) == ""
