"""
Dependency Injection Providers

FastAPI dependencies for the request session and the lifecycle services
built on it.
"""

from typing import Annotated

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.config.settings import get_settings
from app.infrastructure.db.database import get_session
from app.infrastructure.services.container import LifecycleServices, build_services


# Type alias for session dependency
SessionDep = Annotated[AsyncSession, Depends(get_session)]


async def get_services(session: SessionDep) -> LifecycleServices:
    """
    Lifecycle services bound to the request session.

    Usage:
        @router.get("/subscriptions/status")
        async def status(services: ServicesDep):
            ...
    """
    return build_services(session, get_settings())


ServicesDep = Annotated[LifecycleServices, Depends(get_services)]
