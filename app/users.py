"""Read-only user profile lookups."""

from __future__ import annotations

import logging

from app.session import Session


logger = logging.getLogger("plank.users")


async def get_user_profile(session: Session, user_id: str | None) -> dict | None:
    if not user_id:
        logger.warning("users_lookup_missing_id")
        return None
    rows = await session.persistence.query("users", {"id": user_id}, limit=1)
    if not rows:
        logger.info("users_profile_not_found user_id=%s", user_id)
        return None
    return rows[0]


async def get_current_profile(session: Session) -> dict | None:
    return await get_user_profile(session, await session.current_user_id())
