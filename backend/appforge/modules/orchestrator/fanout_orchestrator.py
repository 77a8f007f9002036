"""
Fan-out / Convergence Orchestrator

A new project is generated by three independent runs (frontend, backend,
database). The orchestrator dispatches them, waits until every branch has
reported code-agent/finished (AND-join, one timeout per branch) and then
emits exactly one sandbox.setup carrying only the project id.

A branch that never reports within its timeout, or that reports
code-agent/failed, aborts the join: no assembly, project marked failed.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from sqlalchemy import update

from appforge.core.config import settings
from appforge.core.database import AsyncSessionLocal
from appforge.core.exceptions import ConvergenceError, ConvergenceFailedError, ConvergenceTimeoutError
from appforge.core.logging_config import logger, set_project_id
from appforge.models.project import Project, ProjectStatus
from appforge.modules.orchestrator.event_bus import EventBus, EventType, GenerationEvent
from appforge.services.step_keys import branch_run_id, new_run_id


@dataclass
class FanOutResult:
    project_id: str
    generation_id: str
    finished: Dict[str, GenerationEvent] = field(default_factory=dict)

    @property
    def statuses(self) -> Dict[str, str]:
        return {step: event.data.get("status", "") for step, event in self.finished.items()}


class FanOutOrchestrator:
    """Dispatches the per-step runs of a new project and joins them"""

    def __init__(
        self,
        event_bus: EventBus,
        session_factory=None,
        step_types: Optional[List[str]] = None,
        branch_timeout: Optional[float] = None,
    ):
        self.bus = event_bus
        self.session_factory = session_factory or AsyncSessionLocal
        self.step_types = list(step_types or settings.FANOUT_STEP_TYPES)
        self.branch_timeout = branch_timeout or settings.FANOUT_BRANCH_TIMEOUT_SECONDS

    async def _set_status(self, project_id: str, status: ProjectStatus):
        async with self.session_factory() as db:
            await db.execute(
                update(Project)
                .where(Project.id == project_id)
                .values(status=status)
                .execution_options(synchronize_session=False)
            )
            await db.commit()

    async def _join(self, project_id: str, generation_id: str, waiters, failure_waiter) -> Dict[str, GenerationEvent]:
        branch_tasks = {
            asyncio.ensure_future(waiter.wait(self.branch_timeout)): step
            for step, waiter in waiters.items()
        }
        failure_task = asyncio.ensure_future(failure_waiter.wait())
        pending = set(branch_tasks)
        finished: Dict[str, GenerationEvent] = {}
        timed_out: List[str] = []

        try:
            while pending:
                done, _ = await asyncio.wait(pending | {failure_task}, return_when=asyncio.FIRST_COMPLETED)

                if failure_task in done:
                    event = failure_task.result()
                    raise ConvergenceFailedError(
                        project_id, event.data.get("step_type", "unknown"), event.data.get("error", "")
                    )

                for task in done:
                    pending.discard(task)
                    step = branch_tasks[task]
                    try:
                        finished[step] = task.result()
                        logger.info(f"[FanOut:{project_id}] Branch {step} finished "
                                    f"({finished[step].data.get('status')})")
                    except asyncio.TimeoutError:
                        timed_out.append(step)
        finally:
            for task in list(pending) + [failure_task]:
                task.cancel()
            for waiter in list(waiters.values()) + [failure_waiter]:
                waiter.cancel()

        if timed_out:
            raise ConvergenceTimeoutError(
                project_id,
                [s for s in self.step_types if s in timed_out],
                self.branch_timeout,
            )
        return finished

    async def generate(
        self,
        project_id: str,
        user_request: str,
        generation_id: Optional[str] = None,
    ) -> FanOutResult:
        """
        Fan out, join, and trigger assembly.

        Raises ConvergenceTimeoutError / ConvergenceFailedError when the join
        fails; in that case sandbox.setup is never emitted.
        """
        project_id = str(project_id)
        generation_id = generation_id or new_run_id()
        set_project_id(project_id)
        await self._set_status(project_id, ProjectStatus.GENERATING)

        # Register every wait before the first run is dispatched
        waiters = {
            step: self.bus.expect(
                EventType.AGENT_FINISHED,
                lambda e, step=step: (
                    e.project_id == project_id
                    and e.correlation_id == generation_id
                    and e.data.get("step_type") == step
                ),
            )
            for step in self.step_types
        }
        failure_waiter = self.bus.expect(
            EventType.AGENT_FAILED,
            lambda e: e.project_id == project_id and e.correlation_id == generation_id,
        )

        logger.log_step("fan-out", "started", generation_id=generation_id, branches=self.step_types)
        for step in self.step_types:
            await self.bus.emit(
                EventType.AGENT_RUN,
                project_id,
                data={
                    "value": user_request,
                    "step_type": step,
                    "run_id": branch_run_id(generation_id, step),
                },
                source="fanout",
                correlation_id=generation_id,
            )

        try:
            finished = await self._join(project_id, generation_id, waiters, failure_waiter)
        except ConvergenceError as e:
            logger.error(f"[FanOut:{project_id}] Join failed: {e.message}")
            await self._set_status(project_id, ProjectStatus.FAILED)
            raise

        logger.log_step("fan-out", "converged", generation_id=generation_id)
        await self.bus.emit(
            EventType.SANDBOX_SETUP,
            project_id,
            source="fanout",
            correlation_id=generation_id,
        )
        return FanOutResult(project_id=project_id, generation_id=generation_id, finished=finished)
