# Re-export all models for convenient imports
from appforge.models.project import Project, ProjectStatus, DeployMode
from appforge.models.project_message import ProjectMessage, MessageRole, MessageType
from appforge.models.fragment import Fragment
from appforge.models.conversation_turn import ConversationTurn, TurnRole

__all__ = [
    # Project
    "Project",
    "ProjectStatus",
    "DeployMode",
    # Messages
    "ProjectMessage",
    "MessageRole",
    "MessageType",
    "Fragment",
    # Conversation
    "ConversationTurn",
    "TurnRole",
]
