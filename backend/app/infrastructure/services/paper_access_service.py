"""
Paper Access Service

Decides which exam papers a user may open, evaluated at read time:
- capped tiers (papers_limit set): recent-papers window over the
  user's conversation history
- selection tiers: grade/subject match against the subscription
- everything else: all papers
"""

import logging
from typing import Dict, List, Optional, Tuple
from uuid import UUID

from app.domain.paper_access import (
    AccessMode,
    AccessStatus,
    PaperAccessEntry,
    RecentPaper,
    access_mode_for_tier,
    selection_allows,
    window_allows,
)
from app.infrastructure.db.models.catalog import ExamPaper
from app.infrastructure.db.models.subscription import UserSubscription
from app.infrastructure.db.models.tier import SubscriptionTier
from app.infrastructure.db.repositories.paper_repository import PaperRepository
from app.infrastructure.db.repositories.subscription_repository import (
    SubscriptionRepository,
)
from app.infrastructure.services.tier_catalog import TierCatalog


logger = logging.getLogger(__name__)


class PaperAccessService:
    """Read-only paper access rules."""

    def __init__(
        self,
        subscriptions: SubscriptionRepository,
        catalog: TierCatalog,
        papers: PaperRepository,
        recent_papers_limit: int = 2,
    ):
        self._subscriptions = subscriptions
        self._catalog = catalog
        self._papers = papers
        self._recent_papers_limit = recent_papers_limit

    async def get_recent_papers(self, user_id: UUID, limit: Optional[int] = None) -> List[RecentPaper]:
        """Most recently discussed papers, newest first."""
        return await self._papers.get_recent_papers(
            user_id, self._recent_papers_limit if limit is None else limit
        )

    async def can_user_access_paper(self, user_id: UUID, paper_id: UUID) -> bool:
        context = await self._load_context(user_id)
        if context is None:
            return False
        subscription, tier = context

        paper = await self._papers.get_paper(paper_id)
        if paper is None:
            return False

        mode = access_mode_for_tier(tier)
        if mode == AccessMode.UNRESTRICTED:
            return True
        if mode == AccessMode.SELECTION:
            return self._matches_selection(paper, subscription)

        recent = await self._papers.get_recent_papers(user_id, tier.papers_limit)
        return window_allows(recent, tier.papers_limit, paper_id)

    async def get_paper_access_status(self, user_id: UUID) -> List[PaperAccessEntry]:
        """
        Access status of every paper for the user.

        For capped tiers the papers in the recent window come first, most
        recent first. Users without a subscription see everything locked.
        """
        papers = await self._papers.list_papers()
        context = await self._load_context(user_id)

        if context is None:
            return [self._entry(paper, False, None) for paper in papers]

        subscription, tier = context
        mode = access_mode_for_tier(tier)
        window_size = tier.papers_limit if mode == AccessMode.RECENT_WINDOW else self._recent_papers_limit
        recent = await self._papers.get_recent_papers(user_id, window_size)
        recent_at: Dict[UUID, object] = {r.paper_id: r.last_accessed_at for r in recent}

        entries = []
        for paper in papers:
            if mode == AccessMode.UNRESTRICTED:
                accessible = True
            elif mode == AccessMode.SELECTION:
                accessible = self._matches_selection(paper, subscription)
            else:
                accessible = window_allows(recent, window_size, paper.id)
            entries.append(self._entry(paper, accessible, recent_at.get(paper.id)))

        if mode == AccessMode.RECENT_WINDOW:
            rank = {r.paper_id: index for index, r in enumerate(recent)}
            entries.sort(key=lambda e: rank.get(e.paper_id, len(rank)))
        return entries

    async def _load_context(
        self,
        user_id: UUID,
    ) -> Optional[Tuple[UserSubscription, SubscriptionTier]]:
        subscription = await self._subscriptions.get_active_for_user(user_id)
        if subscription is None:
            return None
        tier = await self._catalog.get_by_id(subscription.tier_id)
        if tier is None:
            logger.error(f"Subscription {subscription.id} references missing tier {subscription.tier_id}")
            return None
        return subscription, tier

    @staticmethod
    def _matches_selection(paper: ExamPaper, subscription: UserSubscription) -> bool:
        return selection_allows(
            paper.grade_level_id,
            paper.subject_id,
            subscription.selected_grade_id,
            subscription.selected_subject_ids,
        )

    @staticmethod
    def _entry(paper: ExamPaper, accessible: bool, last_accessed_at) -> PaperAccessEntry:
        recently = last_accessed_at is not None
        if not accessible:
            status = AccessStatus.LOCKED
        elif recently:
            status = AccessStatus.RECENTLY_ACCESSED
        else:
            status = AccessStatus.ACCESSIBLE
        return PaperAccessEntry(
            paper_id=paper.id,
            title=paper.title,
            year=paper.year,
            month=paper.month,
            grade_level_id=paper.grade_level_id,
            subject_id=paper.subject_id,
            is_accessible=accessible,
            is_recently_accessed=recently,
            last_accessed_at=last_accessed_at,
            access_status=status,
        )
