"""
Celery tasks for project generation

generate_project   new project: three concurrent runs, join, assembly
run_generation     a single run (follow-ups / iterations)
assemble_sandbox   rebuild the combined preview sandbox from stored fragments

Each task drives one event loop; the branches of a fan-out share it, which
keeps the in-process event bus authoritative for the join.
"""
import asyncio
from typing import Any, Dict, Optional

from celery import Task

from appforge.core.celery_app import celery_app
from appforge.core.exceptions import AppForgeError
from appforge.core.logging_config import logger, set_project_id
from appforge.modules.orchestrator.pipeline import GenerationPipeline
from appforge.modules.orchestrator.run_orchestrator import GenerationRequest


class GenerationTask(Task):
    """Custom Celery task with async support"""
    abstract = True

    def run_async(self, coro):
        """Run async coroutine in sync context"""
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        try:
            return loop.run_until_complete(coro)
        finally:
            loop.close()


async def _async_generate_project(project_id: str, user_request: str,
                                  generation_id: Optional[str]) -> Dict[str, Any]:
    pipeline = GenerationPipeline().register()
    try:
        fanout, assembly = await pipeline.generate(project_id, user_request, generation_id)
    finally:
        await pipeline.drain()
    return {
        "project_id": project_id,
        "generation_id": fanout.generation_id,
        "branches": fanout.statuses,
        "preview_url": assembly.preview_url,
        "sandbox_id": assembly.sandbox_id,
    }


async def _async_run_generation(project_id: str, user_request: str, step_type: str,
                                run_id: Optional[str], is_follow_up: Optional[bool]) -> Dict[str, Any]:
    pipeline = GenerationPipeline()
    result = await pipeline.run(GenerationRequest(
        project_id=project_id,
        user_request=user_request,
        step_type=step_type,
        run_id=run_id,
        is_follow_up=is_follow_up,
    ))
    return result.to_dict()


async def _async_assemble_sandbox(project_id: str) -> Dict[str, Any]:
    result = await GenerationPipeline().assemble(project_id)
    return {
        "project_id": result.project_id,
        "preview_url": result.preview_url,
        "sandbox_id": result.sandbox_id,
        "file_count": result.file_count,
    }


def _failure(project_id: str, error: AppForgeError) -> Dict[str, Any]:
    return {"project_id": project_id, "status": "failed", "error": error.to_dict()}


@celery_app.task(bind=True, base=GenerationTask)
def generate_project(self, project_id: str, user_request: str, generation_id: Optional[str] = None):
    """
    Generate a new project (Celery task)

    Args:
        project_id: UUID of the project
        user_request: the user's description of the app
        generation_id: shared id of the fan-out; reusing it on a retry makes
            every persisted step idempotent
    """
    set_project_id(project_id)
    logger.info(f"Starting project generation: {project_id}")
    try:
        return self.run_async(_async_generate_project(project_id, user_request, generation_id))
    except AppForgeError as e:
        logger.error(f"Project generation failed for {project_id}: {e.message}")
        return _failure(project_id, e)


@celery_app.task(bind=True, base=GenerationTask)
def run_generation(self, project_id: str, user_request: str, step_type: str = "frontend",
                   run_id: Optional[str] = None, is_follow_up: Optional[bool] = None):
    """
    Execute one generation run (Celery task)

    is_follow_up is decided when the request is accepted and travels with the
    payload, so a redelivered task builds the same prompt.
    """
    set_project_id(project_id)
    logger.info(f"Starting {step_type} run for project {project_id}")
    try:
        return self.run_async(_async_run_generation(project_id, user_request, step_type, run_id, is_follow_up))
    except AppForgeError as e:
        logger.error(f"Run failed for {project_id}: {e.message}")
        return _failure(project_id, e)


@celery_app.task(bind=True, base=GenerationTask)
def assemble_sandbox(self, project_id: str):
    """Assemble the combined preview sandbox (Celery task)"""
    set_project_id(project_id)
    try:
        return self.run_async(_async_assemble_sandbox(project_id))
    except AppForgeError as e:
        logger.error(f"Sandbox assembly failed for {project_id}: {e.message}")
        return _failure(project_id, e)
