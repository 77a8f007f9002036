"""
Generation Pipeline

Wires the orchestrators to the event bus:

    project.generate  -> FanOutOrchestrator.generate
    code-agent/run    -> RunOrchestrator.execute_run -> code-agent/finished
                                                      | code-agent/failed
    sandbox.setup     -> SandboxAssembler.assemble   -> sandbox.ready

Runs are spawned as tasks so the three branches of a fan-out proceed
concurrently, each with its own sandbox and run state.
"""

import asyncio
from typing import Any, Dict, Optional, Set, Tuple

from sqlalchemy import update

from appforge.core.database import AsyncSessionLocal
from appforge.core.logging_config import logger
from appforge.models.project import Project, ProjectStatus
from appforge.modules.orchestrator.event_bus import EventBus, EventType, GenerationEvent
from appforge.modules.orchestrator.fanout_orchestrator import FanOutOrchestrator, FanOutResult
from appforge.modules.orchestrator.run_orchestrator import GenerationRequest, GenerationResult, RunOrchestrator
from appforge.modules.orchestrator.sandbox_assembly import AssemblyResult, SandboxAssembler
from appforge.services.step_keys import new_run_id


class GenerationPipeline:
    """Event-driven composition of run, fan-out and assembly"""

    def __init__(
        self,
        event_bus: Optional[EventBus] = None,
        run_orchestrator: Optional[RunOrchestrator] = None,
        assembler: Optional[SandboxAssembler] = None,
        session_factory=None,
        branch_timeout: Optional[float] = None,
    ):
        self.bus = event_bus or EventBus()
        self.session_factory = session_factory or AsyncSessionLocal
        self.runs = run_orchestrator or RunOrchestrator(session_factory=self.session_factory)
        self.assembler = assembler or SandboxAssembler(session_factory=self.session_factory)
        self.fanout = FanOutOrchestrator(
            self.bus, session_factory=self.session_factory, branch_timeout=branch_timeout
        )
        self._tasks: Set[asyncio.Task] = set()
        self._assemblies: Dict[Tuple[str, Optional[str]], Any] = {}
        self._registered = False

    def register(self) -> "GenerationPipeline":
        if not self._registered:
            self.bus.subscribe(EventType.PROJECT_GENERATE, self._on_project_generate)
            self.bus.subscribe(EventType.AGENT_RUN, self._on_agent_run)
            self.bus.subscribe(EventType.SANDBOX_SETUP, self._on_sandbox_setup)
            self._registered = True
        return self

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _set_status(self, project_id: str, status: ProjectStatus):
        async with self.session_factory() as db:
            await db.execute(
                update(Project)
                .where(Project.id == project_id)
                .values(status=status)
                .execution_options(synchronize_session=False)
            )
            await db.commit()

    # ---------------------------------------------------------------- runs

    async def run(
        self,
        request: GenerationRequest,
        correlation_id: Optional[str] = None,
    ) -> GenerationResult:
        """
        Execute one run and announce its outcome.

        Every completed run publishes code-agent/finished with its status;
        a fatal error publishes code-agent/failed and propagates.
        """
        request.run_id = request.run_id or new_run_id()
        try:
            result = await self.runs.execute_run(request)
        except Exception as e:
            logger.log_error_with_context(e, f"run {request.run_id}", step_type=request.step_type)
            await self.bus.emit(
                EventType.AGENT_FAILED,
                str(request.project_id),
                data={"step_type": request.step_type, "run_id": request.run_id, "error": str(e)},
                source="pipeline",
                correlation_id=correlation_id,
            )
            raise

        await self.bus.emit(
            EventType.AGENT_FINISHED,
            result.project_id,
            data={
                "step_type": result.step_type,
                "run_id": result.run_id,
                "status": result.status,
                "message_id": result.message_id,
                "url": result.url,
            },
            source="pipeline",
            correlation_id=correlation_id,
        )
        return result

    async def _run_branch(self, request: GenerationRequest, correlation_id: Optional[str]):
        try:
            await self.run(request, correlation_id)
        except Exception as e:
            logger.debug(f"[Pipeline:{request.project_id}] Branch {request.step_type} ended with {type(e).__name__}")

    def _on_agent_run(self, event: GenerationEvent):
        request = GenerationRequest(
            project_id=event.project_id,
            user_request=event.data.get("value", ""),
            step_type=event.data.get("step_type") or "frontend",
            run_id=event.data.get("run_id"),
            # fan-out branches always build from scratch
            is_follow_up=event.data.get("is_follow_up", False),
        )
        self._spawn(self._run_branch(request, event.correlation_id))

    # ------------------------------------------------------------ assembly

    async def assemble(self, project_id: str, correlation_id: Optional[str] = None) -> AssemblyResult:
        try:
            result = await self.assembler.assemble(project_id)
        except Exception as e:
            logger.error(f"[Pipeline:{project_id}] Sandbox assembly failed: {e}", exc_info=True)
            await self._set_status(project_id, ProjectStatus.FAILED)
            raise

        await self.bus.emit(
            EventType.SANDBOX_READY,
            project_id,
            data={"preview_url": result.preview_url, "sandbox_id": result.sandbox_id},
            source="pipeline",
            correlation_id=correlation_id,
        )
        return result

    async def _on_sandbox_setup(self, event: GenerationEvent):
        # Awaited inline: the emitter observes the outcome before emit() returns
        key = (event.project_id, event.correlation_id)
        try:
            self._assemblies[key] = await self.assemble(event.project_id, event.correlation_id)
        except Exception as e:
            self._assemblies[key] = e

    # ------------------------------------------------------------- fan-out

    def _on_project_generate(self, event: GenerationEvent):
        self._spawn(self.generate(event.project_id, event.data.get("value", ""), event.correlation_id))

    async def generate(
        self,
        project_id: str,
        user_request: str,
        generation_id: Optional[str] = None,
    ) -> Tuple[FanOutResult, AssemblyResult]:
        """
        Full generation of a new project: fan-out, join, assembly.

        Raises the convergence error when the join fails and the assembly
        error when the combined sandbox could not be built.
        """
        self.register()
        project_id = str(project_id)
        generation_id = generation_id or new_run_id()
        fanout = await self.fanout.generate(project_id, user_request, generation_id)

        outcome = self._assemblies.pop((project_id, generation_id), None)
        if isinstance(outcome, Exception):
            raise outcome
        if outcome is None:
            # no sandbox.setup subscriber ran the assembly
            outcome = await self.assemble(project_id, generation_id)
        return fanout, outcome

    async def drain(self):
        """Wait for every spawned task; used at shutdown and in tests"""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
