from sqlalchemy import Column, String, DateTime, Enum as SQLEnum, Integer, Text, JSON, Index
from sqlalchemy.orm import relationship
from datetime import datetime
import enum

from appforge.core.database import Base
from appforge.core.types import GUID, generate_uuid


class ProjectStatus(str, enum.Enum):
    """Project generation status"""
    DRAFT = "draft"
    GENERATING = "generating"
    ASSEMBLING = "assembling"
    READY = "ready"
    FAILED = "failed"


class DeployMode(str, enum.Enum):
    """Where generated code ends up besides the sandbox"""
    SANDBOX = "sandbox"
    GITHUB = "github"
    CPANEL = "cpanel"


class Project(Base):
    """Project model"""
    __tablename__ = "projects"

    __table_args__ = (
        Index('ix_projects_owner_id', 'owner_id'),
        Index('ix_projects_status', 'status'),
        Index('ix_projects_created_at', 'created_at'),
    )

    id = Column(GUID, primary_key=True, default=generate_uuid)
    owner_id = Column(String(255), nullable=True)
    name = Column(String(500), nullable=False)
    status = Column(SQLEnum(ProjectStatus), default=ProjectStatus.DRAFT, nullable=False)

    # Rolling summary: file metadata + derived digest
    manifest = Column(JSON, nullable=True)
    manifest_version = Column(Integer, default=0, nullable=False)  # compare-and-swap guard
    digest = Column(Text, nullable=True)

    # Integrations
    repo_url = Column(String(1000), nullable=True)
    deploy_mode = Column(SQLEnum(DeployMode), default=DeployMode.SANDBOX, nullable=False)

    # Assembled sandbox
    preview_url = Column(String(1000), nullable=True)
    sandbox_id = Column(String(255), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    messages = relationship("ProjectMessage", back_populates="project", cascade="all, delete-orphan")
    turns = relationship("ConversationTurn", back_populates="project", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<Project {self.name} ({self.status})>"
