"""
Project Messages Model - the persisted outcome of each generation run
Used for: Chat history panel, fragment lookup during sandbox assembly
"""

from sqlalchemy import Column, String, DateTime, Text, ForeignKey, Index
from sqlalchemy.orm import relationship
from datetime import datetime
import enum

from appforge.core.database import Base
from appforge.core.types import GUID, generate_uuid


class MessageRole(str, enum.Enum):
    """Message sender role"""
    USER = "user"
    ASSISTANT = "assistant"


class MessageType(str, enum.Enum):
    """Run outcome carried by an assistant message"""
    RESULT = "RESULT"
    ERROR = "ERROR"


class ProjectMessage(Base):
    """
    One message per completed generation run.

    RESULT messages own a Fragment with the generated files; ERROR messages
    carry only the fixed user-facing text.
    """
    __tablename__ = "project_messages"

    __table_args__ = (
        Index('ix_project_messages_project_id', 'project_id'),
        Index('ix_project_messages_created_at', 'created_at'),
    )

    id = Column(GUID, primary_key=True, default=generate_uuid)
    project_id = Column(GUID, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False)

    # String columns rather than SQLEnum to keep migrations simple
    role = Column(String(50), nullable=False)
    type = Column(String(20), nullable=False)
    content = Column(Text, nullable=False)

    # "{run_id}:{step}" - a retried step finds the existing row instead of inserting
    idempotency_key = Column(String(255), nullable=True, unique=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    project = relationship("Project", back_populates="messages")
    fragment = relationship("Fragment", back_populates="message", uselist=False,
                            cascade="all, delete-orphan")

    def __repr__(self):
        return f"<ProjectMessage {self.role}/{self.type}: {self.content[:50]}...>"
