"""
Single-Run Orchestrator

Executes one generation request end to end:

    provision sandbox -> load digest -> build prompt -> save user turn
    -> agent loop -> classify -> preview url -> (manifest, quality pass,
    git push) -> save assistant turn -> save result

Error policy:
- Fatal: unknown project, sandbox provisioning. Propagates; nothing persisted
  past the failing step. Any exception after provisioning closes the sandbox.
- Classified: no completion summary or no files. Stored as an ERROR message.
- Best-effort: manifest update, code analysis, git push, preview lookup.
  Logged and skipped; never changes the classification.
"""

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional

from appforge.core.config import settings
from appforge.core.database import AsyncSessionLocal
from appforge.core.exceptions import ProjectNotFoundError
from appforge.core.logging_config import logger, set_project_id, set_run_id
from appforge.models.conversation_turn import TurnRole
from appforge.models.project import Project
from appforge.modules.agents.agent_tools import AgentToolbox
from appforge.modules.agents.code_agent import CodeAgent
from appforge.modules.agents.prompts import STEP_FRONTEND, build_iterative_prompt, get_prompt
from appforge.modules.agents.run_state import AgentRunState
from appforge.modules.integrations.github_adapter import push_files
from appforge.modules.sandbox.sandbox_session import (
    SandboxProvider,
    SandboxSession,
    discard_sandbox,
    get_sandbox_provider,
)
from appforge.services.code_analysis import analyze_code, auto_fix_issues
from appforge.services.conversation_service import ConversationService
from appforge.services.manifest_service import ManifestService
from appforge.services.message_service import ERROR_MESSAGE, MessageService
from appforge.services.step_keys import (
    STEP_ASSISTANT_TURN,
    STEP_SAVE_RESULT,
    STEP_USER_TURN,
    new_run_id,
    step_key,
)
from appforge.utils.llm_client import LLMClient, get_llm_client


GitPushFn = Callable[..., Awaitable[Any]]


@dataclass
class GenerationRequest:
    project_id: str
    user_request: str
    step_type: str = STEP_FRONTEND
    # None means "derive from the project's turn count"
    is_follow_up: Optional[bool] = None
    run_id: Optional[str] = None


@dataclass
class GenerationResult:
    """Outcome of one run, mirrored by the persisted message/fragment"""
    project_id: str
    run_id: str
    step_type: str
    is_error: bool
    url: Optional[str] = None
    title: str = "Fragment"
    files: Dict[str, str] = field(default_factory=dict)
    summary: Optional[str] = None
    message_id: Optional[str] = None
    analysis: Optional[Dict[str, Any]] = None

    @property
    def status(self) -> str:
        return "ERROR" if self.is_error else "RESULT"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "project_id": self.project_id,
            "run_id": self.run_id,
            "step_type": self.step_type,
            "status": self.status,
            "url": self.url,
            "title": self.title,
            "files": self.files,
            "summary": self.summary if not self.is_error else ERROR_MESSAGE,
            "message_id": self.message_id,
        }


def classify(state: AgentRunState) -> bool:
    """True when the run is an error: no summary OR no files"""
    return not state.summary or not state.files


class RunOrchestrator:
    """
    Runs generation requests. Holds only shared collaborators (session
    factory, providers, clients); everything run-scoped is created inside
    execute_run.
    """

    def __init__(
        self,
        session_factory=None,
        sandbox_provider: Optional[SandboxProvider] = None,
        llm: Optional[LLMClient] = None,
        git_push: Optional[GitPushFn] = None,
        max_iterations: Optional[int] = None,
    ):
        self.session_factory = session_factory or AsyncSessionLocal
        self._sandbox_provider = sandbox_provider
        self._llm = llm
        self.git_push = git_push or push_files
        self.max_iterations = max_iterations or settings.AGENT_MAX_ITERATIONS

    @property
    def sandbox_provider(self) -> SandboxProvider:
        if self._sandbox_provider is None:
            self._sandbox_provider = get_sandbox_provider()
        return self._sandbox_provider

    @property
    def llm(self) -> LLMClient:
        if self._llm is None:
            self._llm = get_llm_client()
        return self._llm

    async def _load_project(self, project_id: str) -> Dict[str, Any]:
        async with self.session_factory() as db:
            project = await db.get(Project, project_id)
            if project is None:
                raise ProjectNotFoundError(project_id)
            return {"id": project.id, "repo_url": project.repo_url}

    async def _prepare_prompt(self, request: GenerationRequest, run_id: str, is_follow_up: bool) -> str:
        async with self.session_factory() as db:
            _manifest, digest = await ManifestService(db).get_manifest(request.project_id)
            if not is_follow_up:
                return get_prompt(request.step_type, digest)
            context = await ConversationService(db).get_context(request.project_id, exclude_run_id=run_id)
            return build_iterative_prompt(context, digest, request.user_request, request.step_type)

    async def _resolve_follow_up(self, request: GenerationRequest, run_id: str) -> bool:
        if request.is_follow_up is not None:
            return request.is_follow_up
        async with self.session_factory() as db:
            return await ConversationService(db).is_follow_up(request.project_id, exclude_run_id=run_id)

    async def _preview_url(self, sandbox: SandboxSession, prefix: str) -> Optional[str]:
        try:
            return await sandbox.preview_url()
        except Exception as e:
            logger.warning(f"{prefix} Could not resolve preview address: {e}")
            return None

    async def execute_run(self, request: GenerationRequest) -> GenerationResult:
        run_id = request.run_id or new_run_id()
        project_id = str(request.project_id)
        step_type = request.step_type or STEP_FRONTEND
        set_project_id(project_id)
        set_run_id(run_id)

        # 1. Project + sandbox (fatal)
        project = await self._load_project(project_id)
        logger.log_step("provision-sandbox", "started", step_type=step_type)
        sandbox = await self.sandbox_provider.create(settings.SANDBOX_TEMPLATE)

        # A run that raises leaves no preview behind; a redelivery provisions afresh
        try:
            return await self._run_in_sandbox(request, run_id, project, sandbox)
        except Exception:
            await discard_sandbox(sandbox)
            raise

    async def _run_in_sandbox(
        self,
        request: GenerationRequest,
        run_id: str,
        project: Dict[str, Any],
        sandbox: SandboxSession,
    ) -> GenerationResult:
        project_id = str(request.project_id)
        step_type = request.step_type or STEP_FRONTEND
        prefix = f"[RunOrchestrator:{project_id}:{step_type}]"

        # 2-3. Prompt (turns already saved under this run_id are excluded)
        is_follow_up = await self._resolve_follow_up(request, run_id)
        system_prompt = await self._prepare_prompt(request, run_id, is_follow_up)

        # 4. User turn
        async with self.session_factory() as db:
            await ConversationService(db).add_turn(
                project_id, TurnRole.USER, request.user_request,
                idempotency_key=step_key(run_id, STEP_USER_TURN)
            )

        # 5. Agent loop, fresh state and toolbox per run
        state = AgentRunState()
        toolbox = AgentToolbox(sandbox, state, log_prefix=f"[CodeAgent:{project_id}:{step_type}]")
        agent = CodeAgent(self.llm, toolbox, system_prompt, max_iterations=self.max_iterations)
        await agent.run(request.user_request)

        # 6. Classify
        is_error = classify(state)
        files = state.files
        summary = state.summary
        logger.log_step("classify", "error" if is_error else "result",
                        files=len(files), has_summary=bool(summary), iterations=state.iterations)

        # 7. Preview address, attempted on both paths
        url = await self._preview_url(sandbox, prefix)

        analysis: Optional[Dict[str, Any]] = None
        if not is_error:
            # 8a. Manifest (best-effort)
            try:
                async with self.session_factory() as db:
                    await ManifestService(db).apply_update(project_id, files)
            except Exception as e:
                logger.error(f"{prefix} Failed to update rolling summary: {e}", exc_info=True)

            # 8b. Quality pass; fixed files replace the run's files from here on
            try:
                report = await analyze_code(files, self.llm)
                files = auto_fix_issues(files, report.issues)
                analysis = report.model_dump()
            except Exception as e:
                logger.error(f"{prefix} Code analysis failed: {e}", exc_info=True)

            # 8c. Git push (fire-and-forget with respect to the outcome)
            if project["repo_url"]:
                try:
                    await self.git_push(repo_url=project["repo_url"], files=files)
                except Exception as e:
                    logger.error(f"{prefix} GitHub push failed: {e}")

        # 9-10. Persist turn and result
        async with self.session_factory() as db:
            if not is_error:
                await ConversationService(db).add_turn(
                    project_id, TurnRole.ASSISTANT, summary,
                    idempotency_key=step_key(run_id, STEP_ASSISTANT_TURN)
                )
            messages = MessageService(db)
            if is_error:
                message = await messages.save_error(
                    project_id, idempotency_key=step_key(run_id, STEP_SAVE_RESULT)
                )
            else:
                message = await messages.save_result(
                    project_id,
                    summary=summary,
                    files=files,
                    sandbox_url=url,
                    step_type=step_type,
                    analysis=analysis,
                    idempotency_key=step_key(run_id, STEP_SAVE_RESULT)
                )

        logger.info(f"{prefix} Run {run_id} finished as {'ERROR' if is_error else 'RESULT'}")
        return GenerationResult(
            project_id=project_id,
            run_id=run_id,
            step_type=step_type,
            is_error=is_error,
            url=url,
            files=files,
            summary=summary,
            message_id=message.id,
            analysis=analysis,
        )
