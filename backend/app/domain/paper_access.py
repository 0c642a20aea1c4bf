"""
Paper Access Domain Models

Rules for which exam papers a subscriber may open.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import List, Optional, Sequence
from uuid import UUID

from pydantic import BaseModel


class AccessStatus(str, Enum):
    ACCESSIBLE = "accessible"
    RECENTLY_ACCESSED = "recently_accessed"
    LOCKED = "locked"


class AccessMode(str, Enum):
    """How a tier gates papers."""
    UNRESTRICTED = "unrestricted"
    RECENT_WINDOW = "recent_window"
    SELECTION = "selection"


@dataclass(frozen=True)
class RecentPaper:
    paper_id: UUID
    last_accessed_at: datetime


class PaperAccessEntry(BaseModel):
    """Per-paper access status returned to the client."""
    paper_id: UUID
    title: str
    year: Optional[int] = None
    month: Optional[str] = None
    grade_level_id: Optional[UUID] = None
    subject_id: Optional[UUID] = None
    is_accessible: bool
    is_recently_accessed: bool
    last_accessed_at: Optional[datetime] = None
    access_status: AccessStatus


class PaperAccessCheckResponse(BaseModel):
    paper_id: UUID
    can_access: bool


def access_mode_for_tier(tier) -> AccessMode:
    """
    Access mode from capability flags.

    A paper cap wins over selections; a tier with neither is unrestricted.
    """
    if tier.papers_limit is not None:
        return AccessMode.RECENT_WINDOW
    if tier.can_select_grade or tier.can_select_subjects:
        return AccessMode.SELECTION
    return AccessMode.UNRESTRICTED


def window_allows(recent: Sequence[RecentPaper], window_size: int, paper_id: UUID) -> bool:
    """
    Recent-papers window check.

    `recent` is the user's top `window_size` papers by last activity.
    Until the user has touched `window_size` distinct papers every paper
    is open; after that only the ones in the window are.
    """
    if len(recent) < window_size:
        return True
    return any(r.paper_id == paper_id for r in recent[:window_size])


def selection_allows(
    paper_grade_id: Optional[UUID],
    paper_subject_id: Optional[UUID],
    selected_grade_id: Optional[UUID],
    selected_subject_ids: Optional[List[UUID]],
) -> bool:
    """Static grade/subject rule for selection-capable tiers."""
    if selected_grade_id is not None and paper_grade_id != selected_grade_id:
        return False
    if selected_subject_ids and paper_subject_id not in selected_subject_ids:
        return False
    return True
