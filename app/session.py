"""Explicit session context threaded into every store and engine call."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from event_bus import EventBus
from outbox import Outbox
from plank.errors import NotAuthenticatedError

from app import settings


logger = logging.getLogger("plank.session")


@dataclass
class Session:
    persistence: Any
    identity: Any
    storage: Any = None
    document_storage: Any = None
    bus: EventBus | None = field(default_factory=lambda: EventBus(outbox=Outbox()))

    async def current_user_id(self) -> str | None:
        if self.identity is None:
            return None
        return await self.identity.current_user_id()

    async def require_user_id(self) -> str:
        user_id = await self.current_user_id()
        if not user_id:
            raise NotAuthenticatedError(message="User not authenticated", path="identity")
        return user_id

    @property
    def outbox(self) -> Outbox | None:
        return self.bus.outbox if self.bus is not None else None


def session_from_env(token: str | None = None) -> Session:
    """Wire a session from USE_DB / SUPABASE_* settings."""
    from app.attachments import document_storage_from_env, storage_from_env
    from app.auth import SupabaseIdentity

    settings.load_env()
    if settings.use_db():
        from app.stores_db import DbPersistence

        persistence = DbPersistence()
    else:
        from app.stores import InMemoryPersistence

        persistence = InMemoryPersistence()
    logger.info("session_ready persistence=%s", type(persistence).__name__)
    return Session(
        persistence=persistence,
        identity=SupabaseIdentity(token),
        storage=storage_from_env(),
        document_storage=document_storage_from_env(),
    )
