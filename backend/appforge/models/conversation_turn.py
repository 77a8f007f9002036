from sqlalchemy import Column, String, DateTime, Text, ForeignKey, Index
from sqlalchemy.orm import relationship
from datetime import datetime
import enum

from appforge.core.database import Base
from appforge.core.types import GUID, generate_uuid


class TurnRole(str, enum.Enum):
    """Conversation turn author"""
    USER = "USER"
    ASSISTANT = "ASSISTANT"


class ConversationTurn(Base):
    """Immutable user/assistant turn used to build follow-up prompts"""
    __tablename__ = "conversation_turns"

    __table_args__ = (
        Index('ix_conversation_turns_project_created', 'project_id', 'created_at'),
    )

    id = Column(GUID, primary_key=True, default=generate_uuid)
    project_id = Column(GUID, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False)
    role = Column(String(20), nullable=False)
    content = Column(Text, nullable=False)
    idempotency_key = Column(String(255), nullable=True, unique=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    project = relationship("Project", back_populates="turns")

    def __repr__(self):
        return f"<ConversationTurn {self.role}: {self.content[:50]}...>"
