"""
Message Service - persisted outcomes of generation runs (project_messages + fragments)
Every run that reaches classification stores exactly one assistant message:
RESULT with a fragment holding the files, or ERROR with the fixed text.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Union
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from appforge.core.logging_config import logger
from appforge.models.fragment import Fragment
from appforge.models.project_message import ProjectMessage, MessageRole, MessageType
from appforge.services.conversation_service import to_str


ERROR_MESSAGE = "Something went wrong. Please try again."


class MessageService:
    """
    Service for run result messages.

    Use cases:
    - Store RESULT/ERROR outcome of a run
    - Look up the newest fragments for sandbox assembly
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _get_by_key(self, idempotency_key: str) -> Optional[ProjectMessage]:
        result = await self.db.execute(
            select(ProjectMessage)
            .options(selectinload(ProjectMessage.fragment))
            .where(ProjectMessage.idempotency_key == idempotency_key)
        )
        return result.scalar_one_or_none()

    async def _create(self, message: ProjectMessage) -> ProjectMessage:
        """Insert a message (and its fragment), honouring its idempotency key"""
        key = message.idempotency_key
        if key:
            existing = await self._get_by_key(key)
            if existing is not None:
                logger.debug(f"Message {key} already stored, skipping")
                return existing

        self.db.add(message)
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            existing = await self._get_by_key(key) if key else None
            if existing is None:
                raise
            return existing

        return message

    async def save_error(
        self,
        project_id: Union[UUID, str],
        idempotency_key: Optional[str] = None
    ) -> ProjectMessage:
        """Store the fixed user-facing ERROR message"""
        message = ProjectMessage(
            project_id=to_str(project_id),
            role=MessageRole.ASSISTANT.value,
            type=MessageType.ERROR.value,
            content=ERROR_MESSAGE,
            idempotency_key=idempotency_key,
            created_at=datetime.utcnow()
        )
        return await self._create(message)

    async def save_result(
        self,
        project_id: Union[UUID, str],
        summary: str,
        files: Dict[str, str],
        sandbox_url: Optional[str],
        step_type: Optional[str] = None,
        analysis: Optional[Dict[str, Any]] = None,
        title: str = "Fragment",
        idempotency_key: Optional[str] = None
    ) -> ProjectMessage:
        """Store a RESULT message with its fragment"""
        project_id = to_str(project_id)
        now = datetime.utcnow()
        message = ProjectMessage(
            project_id=project_id,
            role=MessageRole.ASSISTANT.value,
            type=MessageType.RESULT.value,
            content=summary,
            idempotency_key=idempotency_key,
            created_at=now
        )
        message.fragment = Fragment(
            project_id=project_id,
            step_type=step_type,
            title=title,
            sandbox_url=sandbox_url,
            files=dict(files),
            analysis=analysis,
            created_at=now
        )
        return await self._create(message)

    async def get_latest_fragments(
        self,
        project_id: Union[UUID, str],
        limit: int
    ) -> List[Fragment]:
        """Newest-first fragments of a project"""
        result = await self.db.execute(
            select(Fragment)
            .where(Fragment.project_id == to_str(project_id))
            .order_by(Fragment.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def get_messages(
        self,
        project_id: Union[UUID, str],
        limit: Optional[int] = None
    ) -> List[ProjectMessage]:
        """Messages of a project in chronological order"""
        query = (
            select(ProjectMessage)
            .options(selectinload(ProjectMessage.fragment))
            .where(ProjectMessage.project_id == to_str(project_id))
            .order_by(ProjectMessage.created_at.asc())
        )
        if limit:
            query = query.limit(limit)
        result = await self.db.execute(query)
        return list(result.scalars().all())
