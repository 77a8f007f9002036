"""
Fragment Model - generated files attached to a RESULT message
"""

from sqlalchemy import Column, String, DateTime, ForeignKey, JSON, Index
from sqlalchemy.orm import relationship
from datetime import datetime

from appforge.core.database import Base
from appforge.core.types import GUID, generate_uuid


class Fragment(Base):
    """Files, preview URL and code analysis produced by one successful run"""
    __tablename__ = "fragments"

    __table_args__ = (
        Index('ix_fragments_project_created', 'project_id', 'created_at'),
    )

    id = Column(GUID, primary_key=True, default=generate_uuid)
    message_id = Column(GUID, ForeignKey("project_messages.id", ondelete="CASCADE"),
                        nullable=False, unique=True)
    project_id = Column(GUID, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False)

    step_type = Column(String(50), nullable=True)  # frontend/backend/database
    title = Column(String(255), nullable=False, default="Fragment")
    sandbox_url = Column(String(1000), nullable=True)
    files = Column(JSON, nullable=False, default=dict)  # {path: content}
    analysis = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    message = relationship("ProjectMessage", back_populates="fragment")

    def __repr__(self):
        return f"<Fragment {self.step_type} ({len(self.files or {})} files)>"
