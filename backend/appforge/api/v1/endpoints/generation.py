from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from appforge.core.config import settings
from appforge.core.database import get_db
from appforge.core.exceptions import ProjectNotFoundError
from appforge.core.logging_config import logger
from appforge.models.project import DeployMode, Project
from appforge.modules.projects.tasks import generate_project, run_generation
from appforge.schemas.generation import (
    ContextResponse,
    GenerateRequest,
    GenerateResponse,
    IterateRequest,
    IterateResponse,
    ProjectCreate,
    ProjectResponse,
    TurnResponse,
)
from appforge.services.conversation_service import ConversationService
from appforge.services.step_keys import new_run_id

router = APIRouter()


def _project_response(project: Project) -> ProjectResponse:
    return ProjectResponse(
        id=str(project.id),
        name=project.name,
        owner_id=project.owner_id,
        status=project.status.value,
        repo_url=project.repo_url,
        deploy_mode=project.deploy_mode.value,
        preview_url=project.preview_url,
        sandbox_id=project.sandbox_id,
        digest=project.digest,
        manifest_version=project.manifest_version or 0,
        created_at=project.created_at,
        updated_at=project.updated_at,
    )


async def _get_project(project_id: str, db: AsyncSession) -> Project:
    project = await db.get(Project, project_id)
    if project is None:
        raise ProjectNotFoundError(project_id)
    return project


@router.post("/", response_model=ProjectResponse, status_code=status.HTTP_201_CREATED)
async def create_project(payload: ProjectCreate, db: AsyncSession = Depends(get_db)):
    """Create an empty project; generation is started separately"""
    project = Project(
        name=payload.name,
        owner_id=payload.owner_id,
        repo_url=payload.repo_url,
        deploy_mode=DeployMode(payload.deploy_mode),
    )
    db.add(project)
    await db.commit()
    await db.refresh(project)
    logger.info(f"Created project {project.id}")
    return _project_response(project)


@router.get("/{project_id}", response_model=ProjectResponse)
async def get_project(project_id: str, db: AsyncSession = Depends(get_db)):
    return _project_response(await _get_project(project_id, db))


@router.post("/{project_id}/generate", response_model=GenerateResponse, status_code=status.HTTP_202_ACCEPTED)
async def generate(project_id: str, payload: GenerateRequest, db: AsyncSession = Depends(get_db)):
    """
    Start a full generation: one run per step type, then sandbox assembly.

    The generation id is allocated here so a redelivered task resumes the
    same steps instead of duplicating them.
    """
    await _get_project(project_id, db)
    generation_id = new_run_id()
    task = generate_project.delay(project_id, payload.value, generation_id)
    logger.info(f"Queued generation {generation_id} for project {project_id}")
    return GenerateResponse(
        project_id=project_id,
        generation_id=generation_id,
        task_id=getattr(task, "id", None),
        step_types=settings.FANOUT_STEP_TYPES,
    )


@router.post("/{project_id}/iterate", response_model=IterateResponse, status_code=status.HTTP_202_ACCEPTED)
async def iterate(project_id: str, payload: IterateRequest, db: AsyncSession = Depends(get_db)):
    """Apply a change request to an existing project"""
    if not payload.message or not payload.message.strip():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Message is required")

    await _get_project(project_id, db)
    is_follow_up = await ConversationService(db).is_follow_up(project_id)

    run_id = new_run_id()
    task = run_generation.delay(project_id, payload.message, payload.step_type, run_id, is_follow_up)
    logger.info(f"Queued {'follow-up' if is_follow_up else 'initial'} run {run_id} for project {project_id}")
    return IterateResponse(
        project_id=project_id,
        run_id=run_id,
        task_id=getattr(task, "id", None),
        is_follow_up=is_follow_up,
    )


@router.get("/{project_id}/context", response_model=ContextResponse)
async def get_context(project_id: str, db: AsyncSession = Depends(get_db)):
    """Recent conversation window, current files and digest"""
    project = await _get_project(project_id, db)
    conversation = ConversationService(db)
    context = await conversation.get_context(project_id)
    turn_count = await conversation.turn_count(project_id)

    return ContextResponse(
        project_id=project_id,
        turns=[TurnResponse(role=t.role, content=t.content, created_at=t.created_at) for t in context.turns],
        current_files=context.current_files,
        last_summary=context.last_summary,
        turn_count=turn_count,
        is_follow_up=turn_count > 0,
        digest=project.digest,
    )
