"""
Paper Access Routes

Which exam papers the signed-in user may open.
"""

import logging
from typing import List
from uuid import UUID

from fastapi import APIRouter, HTTPException, status

from app.api.dependencies import CurrentUserId, ServicesDep
from app.domain.paper_access import PaperAccessCheckResponse, PaperAccessEntry


logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/papers/access", response_model=List[PaperAccessEntry])
async def list_paper_access(user_id: CurrentUserId, services: ServicesDep):
    """Every paper with its access status for the user."""
    await services.subscriptions.ensure_subscription(user_id)
    return await services.paper_access.get_paper_access_status(user_id)


@router.get("/papers/{paper_id}/access", response_model=PaperAccessCheckResponse)
async def check_paper_access(paper_id: UUID, user_id: CurrentUserId, services: ServicesDep):
    await services.subscriptions.ensure_subscription(user_id)
    allowed = await services.paper_access.can_user_access_paper(user_id, paper_id)
    return PaperAccessCheckResponse(paper_id=paper_id, can_access=allowed)


@router.post("/papers/{paper_id}/open", response_model=PaperAccessCheckResponse)
async def open_paper(paper_id: UUID, user_id: CurrentUserId, services: ServicesDep):
    """
    Record that the user opened a paper.

    Counted once per period. Locked papers are refused with 403.
    """
    await services.subscriptions.ensure_subscription(user_id)
    if not await services.paper_access.can_user_access_paper(user_id, paper_id):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Paper is not available on your plan",
        )
    await services.subscriptions.record_paper_access(user_id, paper_id)
    return PaperAccessCheckResponse(paper_id=paper_id, can_access=True)
