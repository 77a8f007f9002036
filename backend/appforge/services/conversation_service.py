"""
Conversation Service - ordered user/assistant turns per project
Builds the bounded context window used for follow-up prompts.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Union
from uuid import UUID

from sqlalchemy import select, func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from appforge.core.config import settings
from appforge.core.logging_config import logger
from appforge.models.conversation_turn import ConversationTurn, TurnRole
from appforge.models.fragment import Fragment


def to_str(value: Union[UUID, str, None]) -> Optional[str]:
    """Convert UUID to string if needed"""
    if value is None:
        return None
    return str(value) if isinstance(value, UUID) else value


def _not_from_run(run_id: Optional[str]) -> list:
    """Filter clauses dropping turns keyed by one run (see step_keys)"""
    if not run_id:
        return []
    return [or_(
        ConversationTurn.idempotency_key.is_(None),
        ConversationTurn.idempotency_key.not_like(f"{run_id}:%"),
    )]


@dataclass
class Turn:
    role: str
    content: str
    created_at: datetime


@dataclass
class ConversationContext:
    """Chronological window of recent turns plus the latest generated files"""
    project_id: str
    turns: List[Turn] = field(default_factory=list)
    current_files: Dict[str, str] = field(default_factory=dict)
    last_summary: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "project_id": self.project_id,
            "turns": [
                {
                    "role": t.role,
                    "content": t.content,
                    "created_at": t.created_at.isoformat() if t.created_at else None,
                }
                for t in self.turns
            ],
            "current_files": self.current_files,
            "last_summary": self.last_summary,
        }


class ConversationService:
    """
    Service for conversation turns.

    Use cases:
    - Record the user request of every run
    - Record the assistant summary of successful runs
    - Rebuild recent context for iterative prompts
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_context(
        self,
        project_id: Union[UUID, str],
        window: Optional[int] = None,
        exclude_run_id: Optional[str] = None
    ) -> ConversationContext:
        """
        Most recent `window` turns in chronological order, files of the latest
        fragment, and the newest assistant summary inside the window.

        Turns recorded by `exclude_run_id` are left out, so a retried run sees
        the same history as its first attempt.
        """
        project_id = to_str(project_id)
        window = window or settings.CONVERSATION_WINDOW

        result = await self.db.execute(
            select(ConversationTurn)
            .where(ConversationTurn.project_id == project_id)
            .where(*_not_from_run(exclude_run_id))
            .order_by(ConversationTurn.created_at.desc())
            .limit(window)
        )
        newest_first = list(result.scalars().all())

        fragment_result = await self.db.execute(
            select(Fragment.files)
            .where(Fragment.project_id == project_id)
            .order_by(Fragment.created_at.desc())
            .limit(1)
        )
        latest_files = fragment_result.scalar_one_or_none()

        last_summary = next(
            (t.content for t in newest_first if t.role == TurnRole.ASSISTANT.value),
            None
        )

        return ConversationContext(
            project_id=project_id,
            turns=[
                Turn(role=t.role, content=t.content, created_at=t.created_at)
                for t in reversed(newest_first)
            ],
            current_files=dict(latest_files or {}),
            last_summary=last_summary,
        )

    async def add_turn(
        self,
        project_id: Union[UUID, str],
        role: Union[TurnRole, str],
        content: str,
        idempotency_key: Optional[str] = None
    ) -> ConversationTurn:
        """
        Append a turn. With an idempotency key the turn is created at most once;
        a repeat call returns the existing row.
        """
        project_id = to_str(project_id)
        role_str = role.value if isinstance(role, TurnRole) else role

        if idempotency_key:
            existing = await self._get_by_key(idempotency_key)
            if existing is not None:
                logger.debug(f"Turn {idempotency_key} already recorded, skipping")
                return existing

        turn = ConversationTurn(
            project_id=project_id,
            role=role_str,
            content=content,
            idempotency_key=idempotency_key,
            created_at=datetime.utcnow()
        )
        self.db.add(turn)
        try:
            await self.db.commit()
        except IntegrityError:
            # Lost a race with a concurrent retry of the same step
            await self.db.rollback()
            existing = await self._get_by_key(idempotency_key) if idempotency_key else None
            if existing is None:
                raise
            return existing

        await self.db.refresh(turn)
        logger.debug(f"Added {role_str} turn for project {project_id}")
        return turn

    async def _get_by_key(self, idempotency_key: str) -> Optional[ConversationTurn]:
        result = await self.db.execute(
            select(ConversationTurn).where(ConversationTurn.idempotency_key == idempotency_key)
        )
        return result.scalar_one_or_none()

    async def turn_count(self, project_id: Union[UUID, str], exclude_run_id: Optional[str] = None) -> int:
        result = await self.db.execute(
            select(func.count(ConversationTurn.id))
            .where(ConversationTurn.project_id == to_str(project_id))
            .where(*_not_from_run(exclude_run_id))
        )
        return result.scalar() or 0

    async def is_follow_up(self, project_id: Union[UUID, str], exclude_run_id: Optional[str] = None) -> bool:
        """
        A project is in follow-up mode once it has any recorded turn. Turns of
        `exclude_run_id` do not count, which keeps the answer stable when that
        run is redelivered after saving its user turn.
        """
        return await self.turn_count(project_id, exclude_run_id) > 0
