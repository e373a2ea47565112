"""
Base Repository for NoteEarly Billing

Repositories here open one short-lived session per call. Each write is a
single statement that commits on its own, so callers compose independent,
separately failable steps rather than one long transaction.
"""

from typing import AsyncContextManager, Callable

from sqlalchemy.ext.asyncio import AsyncSession

from noteearly.infrastructure.db.database import get_session_context


SessionContextFactory = Callable[[], AsyncContextManager[AsyncSession]]


class SessionScopedRepository:
    """
    Base class holding the session factory.

    Args:
        session_context: Callable returning an async context manager that
            yields a session and commits on exit.
    """

    def __init__(self, session_context: SessionContextFactory = get_session_context):
        self._session_context = session_context
