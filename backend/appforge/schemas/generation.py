from pydantic import BaseModel, Field, ConfigDict
from typing import Optional, Dict, List, Any
from datetime import datetime


class ProjectCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=500)
    owner_id: Optional[str] = None
    repo_url: Optional[str] = None
    deploy_mode: str = Field("sandbox", pattern="^(sandbox|github|cpanel)$")


class ProjectResponse(BaseModel):
    id: str
    name: str
    owner_id: Optional[str] = None
    status: str
    repo_url: Optional[str] = None
    deploy_mode: str
    preview_url: Optional[str] = None
    sandbox_id: Optional[str] = None
    digest: Optional[str] = None
    manifest_version: int = 0
    created_at: datetime
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class GenerateRequest(BaseModel):
    value: str = Field(..., min_length=1, description="Description of the app to build")


class GenerateResponse(BaseModel):
    project_id: str
    generation_id: str
    task_id: Optional[str] = None
    step_types: List[str]
    status: str = "queued"


class IterateRequest(BaseModel):
    message: Optional[str] = None
    step_type: str = "frontend"


class IterateResponse(BaseModel):
    project_id: str
    run_id: str
    task_id: Optional[str] = None
    is_follow_up: bool
    status: str = "queued"


class TurnResponse(BaseModel):
    role: str
    content: str
    created_at: Optional[datetime] = None


class ContextResponse(BaseModel):
    project_id: str
    turns: List[TurnResponse]
    current_files: Dict[str, str]
    last_summary: Optional[str] = None
    turn_count: int
    is_follow_up: bool
    digest: Optional[str] = None
