"""Entry comments with the commenter's profile joined in."""

from __future__ import annotations

import logging

from plank.errors import RemoteError, ValidationError

from app.session import Session


logger = logging.getLogger("plank.comments")

USER_PUBLIC_KEYS = ("id", "name", "email")


def _public_user(comment: dict) -> dict:
    user = comment.get("user")
    if isinstance(user, dict):
        comment["user"] = {key: user.get(key) for key in USER_PUBLIC_KEYS}
    return comment


async def list_comments(session: Session, entry_id: str) -> list[dict]:
    if not entry_id:
        logger.warning("comments_list_missing_entry")
        return []
    rows = await session.persistence.query("comments", {"entry_id": entry_id}, order_by="created_at", embed=["user"])
    return [_public_user(row) for row in rows]


async def create_comment(session: Session, entry_id: str, content: str) -> dict:
    user_id = await session.require_user_id()
    if not entry_id:
        raise ValidationError(message="Entry ID is required to create a comment", path="entry_id")
    text = (content or "").strip()
    if not text:
        raise ValidationError(message="Comment content cannot be empty", code="EMPTY_COMMENT", path="content")
    created = await session.persistence.insert("comments", {"entry_id": entry_id, "user_id": user_id, "content": text})
    rows = await session.persistence.query("comments", {"id": created[0]["id"]}, embed=["user"])
    return _public_user(rows[0] if rows else created[0])


async def delete_comment(session: Session, comment_id: str) -> bool:
    if not comment_id:
        logger.warning("comments_delete_missing_id")
        return False
    try:
        return await session.persistence.delete("comments", comment_id)
    except RemoteError as exc:
        logger.warning("comments_delete_failed comment_id=%s code=%s message=%s", comment_id, exc.code, exc.message)
        return False
