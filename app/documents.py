"""Collection and entry documents: a blob in storage plus a `documents` row."""

from __future__ import annotations

import logging
from typing import Any

from plank.errors import RemoteError, ValidationError

from app.session import Session


logger = logging.getLogger("plank.documents")

COLLECTION_LEVEL = "collection_level"


def _storage(session: Session) -> Any:
    storage = session.document_storage or session.storage
    if storage is None:
        raise ValidationError(message="No document storage configured", code="STORAGE_UNAVAILABLE", path="storage")
    return storage


async def list_collection_documents(session: Session, collection_id: str) -> list[dict]:
    """Every document of a collection, newest first."""
    if not collection_id:
        logger.warning("documents_list_missing_collection")
        return []
    return await session.persistence.query("documents", {"collection_id": collection_id}, order_by="-created_at")


async def list_entry_documents(session: Session, collection_id: str, entry_id: str) -> list[dict]:
    if not collection_id or not entry_id:
        logger.warning("documents_list_missing_ids collection_id=%s entry_id=%s", collection_id, entry_id)
        return []
    return await session.persistence.query(
        "documents",
        {"collection_id": collection_id, "entry_id": entry_id},
        order_by="-created_at",
    )


async def upload_document(
    session: Session,
    collection_id: str,
    data: bytes,
    filename: str,
    content_type: str | None = None,
    name: str | None = None,
    doc_type: str | None = None,
    entry_id: str | None = None,
) -> dict:
    """Store the file, then record it.

    The blob lives under `<collection>/<entry or collection_level>/`. When the
    row cannot be written the blob is removed again and the error re-raised.
    """
    user_id = await session.require_user_id()
    if not collection_id:
        raise ValidationError(message="Collection ID is required", code="COLLECTION_REQUIRED", path="collection_id")
    if not filename:
        raise ValidationError(message="File name is required", code="FILENAME_REQUIRED", path="filename")
    storage = _storage(session)
    path = await storage.put(data, f"{collection_id}/{entry_id or COLLECTION_LEVEL}/{filename}", content_type)
    url = await storage.public_url(path)
    row = {
        "collection_id": collection_id,
        "entry_id": entry_id,
        "name": (name or "").strip() or filename,
        "type": doc_type,
        "url": url or path,
        "storage_path": path,
        "size": len(data),
        "content_type": content_type,
        "created_by": user_id,
    }
    try:
        created = (await session.persistence.insert("documents", row))[0]
    except RemoteError as exc:
        logger.warning("document_insert_failed path=%s code=%s", path, exc.code)
        if not await storage.remove(path):
            logger.warning("document_orphaned path=%s", path)
        raise
    logger.info("document_uploaded document_id=%s collection_id=%s entry_id=%s size=%s", created["id"], collection_id, entry_id, len(data))
    return created


async def delete_document(session: Session, document_id: str) -> bool:
    """Delete the row, then its blob. A blob left behind is logged, not fatal."""
    if not document_id:
        logger.warning("documents_delete_missing_id")
        return False
    rows = await session.persistence.query("documents", {"id": document_id})
    if not rows:
        logger.info("document_not_found document_id=%s", document_id)
        return False
    path = rows[0].get("storage_path")
    if not path:
        logger.warning("document_without_path document_id=%s", document_id)
        return False
    try:
        if not await session.persistence.delete("documents", document_id):
            return False
    except RemoteError as exc:
        logger.warning("document_delete_failed document_id=%s code=%s message=%s", document_id, exc.code, exc.message)
        return False
    if not await _storage(session).remove(path):
        logger.warning("document_blob_left document_id=%s path=%s", document_id, path)
    return True
