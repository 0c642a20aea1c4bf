"""
Paper Repository

Read-only queries over the exam catalog and tutor conversations.
"""

from typing import List, Optional, Sequence
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.paper_access import RecentPaper
from app.infrastructure.db.models.catalog import (
    Conversation,
    ExamPaper,
    GradeLevel,
    Subject,
)


class PaperRepository:
    """Repository for exam papers and the conversation history behind them."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_paper(self, paper_id: UUID) -> Optional[ExamPaper]:
        return await self.session.get(ExamPaper, paper_id)

    async def list_papers(self) -> List[ExamPaper]:
        stmt = select(ExamPaper).order_by(
            ExamPaper.year.desc().nulls_last(),
            ExamPaper.title,
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def get_recent_papers(self, user_id: UUID, limit: int) -> List[RecentPaper]:
        """
        The user's most recently discussed papers.

        Ordered by MAX(conversations.updated_at) descending; ties are
        broken by paper id so the window is deterministic.
        """
        last_activity = func.max(Conversation.updated_at).label("last_accessed_at")
        stmt = (
            select(Conversation.exam_paper_id, last_activity)
            .where(
                Conversation.user_id == user_id,
                Conversation.exam_paper_id.is_not(None),
            )
            .group_by(Conversation.exam_paper_id)
            .order_by(last_activity.desc(), Conversation.exam_paper_id.asc())
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return [
            RecentPaper(paper_id=row.exam_paper_id, last_accessed_at=row.last_accessed_at)
            for row in result.all()
        ]

    async def grade_exists(self, grade_id: UUID) -> bool:
        return await self.session.get(GradeLevel, grade_id) is not None

    async def count_subjects(self, subject_ids: Sequence[UUID]) -> int:
        if not subject_ids:
            return 0
        stmt = select(func.count()).select_from(Subject).where(Subject.id.in_(list(subject_ids)))
        result = await self.session.execute(stmt)
        return result.scalar_one()
