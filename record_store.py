"""Entries and their values, stored as (entry, field, value) rows."""

from __future__ import annotations

import copy
import logging
from typing import Any, Dict, List

from event_bus import RECORD_PARTIAL_WRITE, make_notice
from plank.errors import (
    InvalidFormatError,
    Issue,
    NotFoundError,
    PartialWriteFailure,
    RemoteError,
    SchemaError,
    ValidationError,
    make_issue,
)
from plank.field_types import FieldType, serialize_value, validate_value

from app.session import Session
from schema_model import CollectionSchema


logger = logging.getLogger("plank.records")

VALUE_CONFLICT_KEYS = ("entry_id", "field_id")


def entry_value_map(entry: dict) -> Dict[str, str | None]:
    """Map field id -> stored value for one entry; missing rows are absent."""
    return {row["field_id"]: row.get("value") for row in entry.get("entry_values") or []}


def drop_field_values(entries: List[dict], field_id: str) -> List[dict]:
    """Local mirror of the cascade applied when a field is deleted."""
    out = []
    for entry in entries:
        copied = copy.deepcopy(entry)
        copied["entry_values"] = [v for v in copied.get("entry_values") or [] if v.get("field_id") != field_id]
        out.append(copied)
    return out


def prepare_values(schema: CollectionSchema | None, values: Dict[str, Any], partial: bool = False) -> tuple[Dict[str, str | None], List[Issue]]:
    """Serialize typed values to stored strings and collect validation issues.

    Without a schema the values pass through as strings. With one, unknown
    field ids are reported and every value is checked by its field type;
    `partial=False` also checks required fields that were not supplied.
    """
    issues: List[Issue] = []
    out: Dict[str, str | None] = {}
    if schema is None:
        for field_id, value in values.items():
            out[field_id] = None if value is None else str(value)
        return out, issues

    by_id = {f["id"]: f for f in schema.fields}
    for field_id, value in values.items():
        field = by_id.get(field_id)
        if field is None:
            issues.append(make_issue("UNKNOWN_FIELD", f"Unknown field: {field_id}", field_id))
            continue
        try:
            out[field_id] = serialize_value(field, value)
        except (InvalidFormatError, SchemaError) as exc:
            issues.append(make_issue(exc.code, exc.message, field_id, exc.detail))
            continue
        if field.get("type") == FieldType.CHECKBOX.value and value is None:
            out[field_id] = None
    for field in schema.fields:
        if partial and field["id"] not in values:
            continue
        if field["id"] in values and any(i["path"] == field["id"] for i in issues):
            continue
        try:
            issues.extend(validate_value(field, out.get(field["id"])))
        except SchemaError as exc:
            issues.append(make_issue(exc.code, exc.message, field["id"], exc.detail))
    return out, issues


def _check_status(schema: CollectionSchema | None, status_id: str | None) -> List[Issue]:
    if schema is None or not schema.statuses:
        return []
    if not status_id:
        return [make_issue("STATUS_REQUIRED", "Entries in this collection need a status", "status_id")]
    if not schema.has_status(status_id):
        return [make_issue("INVALID_STATUS", f"Status {status_id} is not part of this collection", "status_id", {"status_id": status_id})]
    return []


async def list_entries(session: Session, collection_id: str) -> List[dict]:
    if not collection_id:
        logger.warning("entries_list_missing_collection")
        return []
    return await session.persistence.query("entries", {"collection_id": collection_id}, order_by="-created_at", embed=["entry_values"])


async def get_entry(session: Session, entry_id: str) -> dict:
    rows = await session.persistence.query("entries", {"id": entry_id}, embed=["entry_values"])
    if not rows:
        raise NotFoundError(message=f"Entry {entry_id} not found", path="entry_id", detail={"entry_id": entry_id})
    return rows[0]


async def _create_entry(
    session: Session,
    collection_id: str,
    status_id: str | None,
    values: Dict[str, Any],
    assignee: str | None,
    schema: CollectionSchema | None,
    created_by: str | None,
) -> dict:
    stored, issues = prepare_values(schema, values)
    issues.extend(_check_status(schema, status_id))
    if issues:
        raise ValidationError.from_issues(issues)

    entry = (
        await session.persistence.insert(
            "entries",
            {
                "collection_id": collection_id,
                "status_id": status_id,
                "created_by": created_by,
                "assigned_to": assignee or None,
            },
        )
    )[0]
    rows = [{"entry_id": entry["id"], "field_id": fid, "value": value} for fid, value in stored.items() if value is not None]
    try:
        written = await session.persistence.insert("entry_values", rows) if rows else []
    except RemoteError as exc:
        logger.warning("entry_values_failed entry_id=%s code=%s message=%s", entry["id"], exc.code, exc.message)
        entry["entry_values"] = []
        if session.bus is not None:
            session.bus.publish(
                make_notice(
                    RECORD_PARTIAL_WRITE,
                    "records",
                    {"message": "Entry was created but its values could not be saved", "code": exc.code},
                    entity_id=entry["id"],
                    actor_id=created_by,
                )
            )
        raise PartialWriteFailure(
            message="Entry was created but its values could not be saved",
            path="entry_values",
            detail={"entry_id": entry["id"], "cause": exc.code, "missing": sorted(stored)},
            entry=entry,
        ) from exc
    entry["entry_values"] = written
    logger.info("entry_created entry_id=%s collection_id=%s values=%s", entry["id"], collection_id, len(written))
    return entry


async def create_entry(
    session: Session,
    collection_id: str,
    status_id: str | None,
    values: Dict[str, Any],
    assignee: str | None = None,
    schema: CollectionSchema | None = None,
) -> dict:
    """Create an entry, then one value row per non-null value.

    Raises `PartialWriteFailure` (carrying the created entry) when the entry
    row was written but the value batch was not.
    """
    user_id = await session.require_user_id()
    return await _create_entry(session, collection_id, status_id, values, assignee, schema, user_id)


async def submit_form(session: Session, schema: CollectionSchema, values: Dict[str, Any]) -> dict:
    """Public form submission: lands in the first status, no sign-in needed."""
    first = schema.first_status
    if first is None:
        raise ValidationError(message="Collection has no statuses configured for submission.", code="STATUS_REQUIRED", path="status_id")
    return await _create_entry(session, schema.id, first["id"], values, None, schema, await session.current_user_id())


async def update_entry_values(
    session: Session,
    entry_id: str,
    values: Dict[str, Any],
    schema: CollectionSchema | None = None,
) -> List[dict]:
    """Upsert non-null values on (entry_id, field_id); nulls are left alone."""
    stored, issues = prepare_values(schema, values, partial=True)
    if issues:
        raise ValidationError.from_issues(issues)
    rows = [{"entry_id": entry_id, "field_id": fid, "value": value} for fid, value in stored.items() if value is not None]
    if not rows:
        return []
    written = await session.persistence.upsert("entry_values", rows, on_conflict=VALUE_CONFLICT_KEYS)
    logger.info("entry_values_upserted entry_id=%s count=%s", entry_id, len(written))
    return written


async def update_entry_status(session: Session, entry_id: str, status_id: str, schema: CollectionSchema | None = None) -> dict:
    issues = _check_status(schema, status_id)
    if not status_id and not issues:
        issues = [make_issue("STATUS_REQUIRED", "status_id is required", "status_id")]
    if issues:
        raise ValidationError.from_issues(issues)
    return (await session.persistence.update("entries", entry_id, {"status_id": status_id}))[0]


async def assign_entry(session: Session, entry_id: str, user_id: str | None) -> dict:
    return (await session.persistence.update("entries", entry_id, {"assigned_to": user_id or None}))[0]


async def delete_entry(session: Session, entry_id: str) -> bool:
    if not entry_id:
        logger.warning("entries_delete_missing_id")
        return False
    deleted = await session.persistence.delete("entries", entry_id)
    logger.info("entry_deleted entry_id=%s deleted=%s", entry_id, deleted)
    return deleted


async def upload_entry_files(session: Session, files: Dict[str, tuple], path_prefix: str) -> Dict[str, str]:
    """Upload `{field_id: (data, filename)}` and return stored values.

    Each value is the public URL when storage has one, otherwise the storage
    path.
    """
    if session.storage is None:
        raise ValidationError(message="No file storage configured", code="STORAGE_UNAVAILABLE", path="storage")
    out: Dict[str, str] = {}
    for field_id, (data, filename) in files.items():
        path = await session.storage.put(data, f"{path_prefix.strip('/')}/{filename}")
        url = await session.storage.public_url(path)
        if not url:
            logger.info("storage_public_url_missing path=%s", path)
        out[field_id] = url or path
    return out
