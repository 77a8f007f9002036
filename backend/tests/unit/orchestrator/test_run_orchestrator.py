"""
Unit Tests for RunOrchestrator (single generation run)
"""
from unittest.mock import AsyncMock, patch

import pytest

from appforge.core.exceptions import (
    GitPushError,
    ManifestConflictError,
    ProjectNotFoundError,
    SandboxProvisioningError,
)
from appforge.models.conversation_turn import TurnRole
from appforge.models.project import Project
from appforge.models.project_message import MessageType
from appforge.modules.orchestrator.run_orchestrator import GenerationRequest, RunOrchestrator
from appforge.services.conversation_service import ConversationService
from appforge.services.message_service import ERROR_MESSAGE, MessageService

from mocks.mock_llm import MockLLMClient, summary_turn, text_turn, write_files_turn
from mocks.mock_sandbox import MockSandboxProvider


@pytest.fixture
def git_push():
    return AsyncMock(return_value="abc1234")


@pytest.fixture
def make_orchestrator(session_factory, sandbox_provider, git_push):
    def _make(llm, provider=None, max_iterations=15):
        return RunOrchestrator(
            session_factory=session_factory,
            sandbox_provider=provider or sandbox_provider,
            llm=llm,
            git_push=git_push,
            max_iterations=max_iterations,
        )
    return _make


def successful_llm(files=None, summary="Built a todo app"):
    return MockLLMClient([
        write_files_turn(files or {"app/page.tsx": "export default function Page() {}"}),
        summary_turn(summary),
    ])


async def _messages(session_factory, project_id):
    async with session_factory() as db:
        return await MessageService(db).get_messages(project_id)


async def _turns(session_factory, project_id):
    async with session_factory() as db:
        context = await ConversationService(db).get_context(project_id)
        return context.turns


async def _project(session_factory, project_id):
    async with session_factory() as db:
        return await db.get(Project, project_id)


class TestSuccessfulRun:

    @pytest.mark.asyncio
    async def test_result_is_persisted(self, make_orchestrator, session_factory, project, sandbox_provider):
        orchestrator = make_orchestrator(successful_llm())

        result = await orchestrator.execute_run(GenerationRequest(project.id, "build a todo app"))

        assert result.is_error is False
        assert result.status == "RESULT"
        assert result.title == "Fragment"
        assert result.url == f"https://{sandbox_provider.sessions[0].host}"
        assert result.files == {"app/page.tsx": "export default function Page() {}"}

        messages = await _messages(session_factory, project.id)
        assert len(messages) == 1
        assert messages[0].type == MessageType.RESULT.value
        assert messages[0].fragment.files == result.files
        assert messages[0].fragment.sandbox_url == result.url
        assert messages[0].fragment.step_type == "frontend"

        turns = await _turns(session_factory, project.id)
        assert [t.role for t in turns] == [TurnRole.USER.value, TurnRole.ASSISTANT.value]
        assert turns[0].content == "build a todo app"

    @pytest.mark.asyncio
    async def test_manifest_is_updated(self, make_orchestrator, session_factory, project):
        orchestrator = make_orchestrator(successful_llm({"app/page.tsx": "p", "prisma/schema.prisma": "m"}))

        await orchestrator.execute_run(GenerationRequest(project.id, "build"))

        stored = await _project(session_factory, project.id)
        assert stored.manifest_version == 1
        assert stored.manifest["routes"] == ["app/page.tsx"]
        assert stored.manifest["models"] == ["prisma/schema.prisma"]
        assert stored.digest

    @pytest.mark.asyncio
    async def test_sandbox_uses_configured_template(self, make_orchestrator, project, sandbox_provider):
        await make_orchestrator(successful_llm()).execute_run(GenerationRequest(project.id, "build"))

        assert sandbox_provider.templates == ["builder-2"]

    @pytest.mark.asyncio
    async def test_fixable_findings_are_applied_to_stored_files(self, make_orchestrator, session_factory, project):
        orchestrator = make_orchestrator(successful_llm({"app/page.tsx": 'console.log("debug");\nexport default 1'}))

        result = await orchestrator.execute_run(GenerationRequest(project.id, "build"))

        assert result.files == {"app/page.tsx": "export default 1"}
        assert result.analysis["score"] == 90
        messages = await _messages(session_factory, project.id)
        assert messages[0].fragment.analysis["issues"][0]["type"] == "best-practice"


class TestClassifiedErrors:

    @pytest.mark.asyncio
    async def test_no_completion_marker(self, make_orchestrator, session_factory, project):
        """Iteration budget spent: ERROR message, no assistant turn, manifest unchanged"""
        llm = MockLLMClient([write_files_turn({"app/page.tsx": "x"})], default=text_turn("thinking"))
        orchestrator = make_orchestrator(llm)

        result = await orchestrator.execute_run(GenerationRequest(project.id, "build"))

        assert result.is_error is True
        assert llm.call_count == 15

        messages = await _messages(session_factory, project.id)
        assert [m.type for m in messages] == [MessageType.ERROR.value]
        assert messages[0].content == ERROR_MESSAGE
        assert messages[0].fragment is None

        turns = await _turns(session_factory, project.id)
        assert [t.role for t in turns] == [TurnRole.USER.value]

        stored = await _project(session_factory, project.id)
        assert stored.manifest is None
        assert stored.manifest_version == 0

    @pytest.mark.asyncio
    async def test_summary_without_files(self, make_orchestrator, session_factory, project, git_push):
        orchestrator = make_orchestrator(MockLLMClient([summary_turn("Nothing to do")]))

        result = await orchestrator.execute_run(GenerationRequest(project.id, "build"))

        assert result.is_error is True
        assert result.to_dict()["summary"] == ERROR_MESSAGE
        messages = await _messages(session_factory, project.id)
        assert messages[0].type == MessageType.ERROR.value
        git_push.assert_not_called()


class TestFatalErrors:

    @pytest.mark.asyncio
    async def test_unknown_project(self, make_orchestrator, db_session):
        with pytest.raises(ProjectNotFoundError):
            await make_orchestrator(successful_llm()).execute_run(GenerationRequest("missing", "build"))

    @pytest.mark.asyncio
    async def test_provisioning_failure_persists_nothing(self, make_orchestrator, session_factory, project):
        llm = successful_llm()
        orchestrator = make_orchestrator(llm, provider=MockSandboxProvider(fail=True))

        with pytest.raises(SandboxProvisioningError):
            await orchestrator.execute_run(GenerationRequest(project.id, "build"))

        assert llm.call_count == 0
        assert await _messages(session_factory, project.id) == []
        assert await _turns(session_factory, project.id) == []

    @pytest.mark.asyncio
    async def test_crashed_run_closes_its_sandbox(self, make_orchestrator, project, sandbox_provider):
        orchestrator = make_orchestrator(MockLLMClient([RuntimeError("worker lost")]))

        with pytest.raises(RuntimeError):
            await orchestrator.execute_run(GenerationRequest(project.id, "build"))

        assert sandbox_provider.sessions[0].closed is True

    @pytest.mark.asyncio
    async def test_finished_runs_keep_their_preview(self, make_orchestrator, project, sandbox_provider):
        await make_orchestrator(successful_llm()).execute_run(GenerationRequest(project.id, "build"))
        await make_orchestrator(MockLLMClient([summary_turn("Nothing to do")])).execute_run(
            GenerationRequest(project.id, "build")
        )

        assert [s.closed for s in sandbox_provider.sessions] == [False, False]


class TestBestEffortSteps:

    @pytest.mark.asyncio
    async def test_git_push_failure_keeps_result(self, make_orchestrator, session_factory, db_session, project, git_push):
        project.repo_url = "https://github.com/acme/todo"
        await db_session.commit()
        git_push.side_effect = GitPushError("rejected")

        result = await make_orchestrator(successful_llm()).execute_run(GenerationRequest(project.id, "build"))

        assert result.is_error is False
        git_push.assert_awaited_once()
        assert git_push.await_args.kwargs["repo_url"] == "https://github.com/acme/todo"
        assert git_push.await_args.kwargs["files"] == result.files

    @pytest.mark.asyncio
    async def test_no_push_without_repo(self, make_orchestrator, project, git_push):
        await make_orchestrator(successful_llm()).execute_run(GenerationRequest(project.id, "build"))

        git_push.assert_not_called()

    @pytest.mark.asyncio
    async def test_manifest_failure_keeps_result(self, make_orchestrator, session_factory, project):
        with patch(
            "appforge.modules.orchestrator.run_orchestrator.ManifestService.apply_update",
            new_callable=AsyncMock,
            side_effect=ManifestConflictError(project.id, 5),
        ):
            result = await make_orchestrator(successful_llm()).execute_run(GenerationRequest(project.id, "build"))

        assert result.is_error is False
        messages = await _messages(session_factory, project.id)
        assert messages[0].type == MessageType.RESULT.value

    @pytest.mark.asyncio
    async def test_missing_preview_address(self, make_orchestrator, sandbox_provider, project):
        original_create = sandbox_provider.create

        async def create(template_id=None):
            session = await original_create(template_id)
            session.host_error = RuntimeError("port not exposed")
            return session

        sandbox_provider.create = create

        result = await make_orchestrator(successful_llm()).execute_run(GenerationRequest(project.id, "build"))

        assert result.is_error is False
        assert result.url is None


class TestFollowUpAndRetry:

    @pytest.mark.asyncio
    async def test_follow_up_uses_iterative_prompt(self, make_orchestrator, session_factory, project):
        """Scenario: a project with prior turns gets the iterative template"""
        async with session_factory() as db:
            conversation = ConversationService(db)
            await conversation.add_turn(project.id, TurnRole.USER, "build a todo app")
            await conversation.add_turn(project.id, TurnRole.ASSISTANT, "<task_summary>todo</task_summary>")
            await conversation.add_turn(project.id, TurnRole.USER, "add filters")

        llm = successful_llm()
        await make_orchestrator(llm).execute_run(GenerationRequest(project.id, "make the header blue"))

        system = llm.calls[0]["system"]
        assert "USER: build a todo app" in system
        assert "USER: add filters" in system
        assert "USER: make the header blue" not in system
        assert "NEW USER REQUEST: make the header blue" in system

    @pytest.mark.asyncio
    async def test_first_run_uses_step_prompt(self, make_orchestrator, project):
        llm = successful_llm()
        await make_orchestrator(llm).execute_run(GenerationRequest(project.id, "build", step_type="database"))

        system = llm.calls[0]["system"]
        assert "senior database engineer" in system
        assert "NEW USER REQUEST" not in system

    @pytest.mark.asyncio
    async def test_retried_run_does_not_duplicate_records(self, make_orchestrator, session_factory, project):
        llm = MockLLMClient([
            write_files_turn({"a.ts": "a"}), summary_turn(),
            write_files_turn({"a.ts": "a"}), summary_turn(),
        ])
        orchestrator = make_orchestrator(llm)

        first = await orchestrator.execute_run(GenerationRequest(project.id, "build", run_id="run-1"))
        second = await orchestrator.execute_run(GenerationRequest(project.id, "build", run_id="run-1"))

        assert first.message_id == second.message_id
        assert len(await _messages(session_factory, project.id)) == 1
        assert len(await _turns(session_factory, project.id)) == 2

    @pytest.mark.asyncio
    async def test_redelivered_first_run_keeps_step_prompt(self, make_orchestrator, session_factory, project):
        """The user turn saved by the crashed attempt does not make the retry a follow-up"""
        llm = MockLLMClient([
            RuntimeError("worker lost"),
            write_files_turn({"a.ts": "a"}),
            summary_turn(),
        ])
        orchestrator = make_orchestrator(llm)

        with pytest.raises(RuntimeError):
            await orchestrator.execute_run(GenerationRequest(project.id, "build a blog", run_id="run-7"))
        assert len(await _turns(session_factory, project.id)) == 1

        result = await orchestrator.execute_run(GenerationRequest(project.id, "build a blog", run_id="run-7"))

        first_system, retry_system = llm.calls[0]["system"], llm.calls[1]["system"]
        assert "NEW USER REQUEST" not in first_system
        assert retry_system == first_system
        assert result.status == "RESULT"
        assert len(await _turns(session_factory, project.id)) == 2

    @pytest.mark.asyncio
    async def test_redelivered_follow_up_sees_same_history(self, make_orchestrator, session_factory, project):
        async with session_factory() as db:
            conversation = ConversationService(db)
            await conversation.add_turn(project.id, TurnRole.USER, "build a todo app")
            await conversation.add_turn(project.id, TurnRole.ASSISTANT, "Built a todo app")

        llm = MockLLMClient([RuntimeError("worker lost"), write_files_turn({"a.ts": "a"}), summary_turn()])
        orchestrator = make_orchestrator(llm)

        with pytest.raises(RuntimeError):
            await orchestrator.execute_run(GenerationRequest(project.id, "add dark mode", run_id="run-8"))
        await orchestrator.execute_run(GenerationRequest(project.id, "add dark mode", run_id="run-8"))

        retry_system = llm.calls[1]["system"]
        assert retry_system == llm.calls[0]["system"]
        assert "USER: add dark mode" not in retry_system
        assert "NEW USER REQUEST: add dark mode" in retry_system

    @pytest.mark.asyncio
    async def test_explicit_follow_up_flag_wins(self, make_orchestrator, project):
        llm = successful_llm()
        await make_orchestrator(llm).execute_run(
            GenerationRequest(project.id, "tweak the footer", is_follow_up=True)
        )

        assert "NEW USER REQUEST: tweak the footer" in llm.calls[0]["system"]
