"""
Database Infrastructure Package

Exports session management and request dependencies.
"""

from app.infrastructure.db.database import (
    DatabaseManager,
    get_db_manager,
    get_session,
    get_session_context,
    init_db,
    close_db,
    resolve_database_url,
)

from app.infrastructure.db.dependencies import (
    SessionDep,
    ServicesDep,
    get_services,
)


__all__ = [
    # Database management
    "DatabaseManager",
    "get_db_manager",
    "get_session",
    "get_session_context",
    "init_db",
    "close_db",
    "resolve_database_url",
    # Dependencies
    "SessionDep",
    "ServicesDep",
    "get_services",
]
