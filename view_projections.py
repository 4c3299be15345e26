"""Read-only board, table and calendar projections of a collection.

Every projection returns `{..., "issues": [...]}`. A field whose type tag is
unknown is left out of the output and reported once; it never fails the view.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Tuple

from plank.errors import InvalidFormatError, Issue, SchemaError, make_issue
from plank.field_types import EMPTY_DISPLAY, FieldType, InvalidFormat, display_value, field_type, parse_value

from record_store import entry_value_map
from schema_model import CollectionSchema


logger = logging.getLogger("plank.views")

UNTITLED = "Untitled"


def _renderable_fields(schema: CollectionSchema) -> Tuple[List[dict], List[Issue]]:
    fields: List[dict] = []
    issues: List[Issue] = []
    for row in schema.fields:
        try:
            field_type(row.get("type"))
        except SchemaError as exc:
            logger.warning("view_field_skipped field_id=%s type=%s", row.get("id"), row.get("type"))
            issues.append(make_issue(exc.code, exc.message, row.get("id"), exc.detail))
            continue
        fields.append(row)
    return fields, issues


def _display(field: dict, raw: Any) -> str:
    shown = display_value(field, raw)
    return str(shown) if isinstance(shown, InvalidFormat) else shown


def entry_title(schema: CollectionSchema, entry: dict) -> str:
    """Display text of the title field (order 0), or `Untitled`."""
    title_field = schema.title_field
    if title_field is None:
        return UNTITLED
    raw = entry_value_map(entry).get(title_field["id"])
    if raw is None or not str(raw).strip():
        return UNTITLED
    try:
        shown = _display(title_field, raw)
    except SchemaError:
        return str(raw)
    return shown if shown != EMPTY_DISPLAY else UNTITLED


def group_entries_by_status(schema: CollectionSchema, entries: List[dict]) -> Tuple[Dict[str, List[dict]], List[Issue]]:
    """Bucket entries per status id, in status order; orphans are reported."""
    groups: Dict[str, List[dict]] = {status["id"]: [] for status in schema.statuses}
    issues: List[Issue] = []
    for entry in entries:
        status_id = entry.get("status_id")
        if status_id in groups:
            groups[status_id].append(entry)
        else:
            issues.append(
                make_issue(
                    "ENTRY_WITHOUT_STATUS",
                    f"Entry {entry.get('id')} has no column on this board",
                    entry.get("id"),
                    {"status_id": status_id},
                )
            )
    return groups, issues


def _card(schema: CollectionSchema, fields: List[dict], entry: dict) -> dict:
    values = entry_value_map(entry)
    title_id = schema.title_field["id"] if schema.title_field else None
    details = []
    for row in fields:
        if row["id"] == title_id or values.get(row["id"]) is None:
            continue
        details.append({"field_id": row["id"], "name": row.get("name"), "value": _display(row, values[row["id"]])})
    return {
        "id": entry["id"],
        "title": entry_title(schema, entry),
        "status_id": entry.get("status_id"),
        "assigned_to": entry.get("assigned_to"),
        "details": details,
    }


def board_columns(schema: CollectionSchema, entries: List[dict]) -> dict:
    fields, issues = _renderable_fields(schema)
    groups, orphan_issues = group_entries_by_status(schema, entries)
    issues.extend(orphan_issues)
    columns = []
    for status in schema.statuses:
        cards = [_card(schema, fields, entry) for entry in groups[status["id"]]]
        columns.append(
            {
                "status_id": status["id"],
                "name": status.get("name"),
                "color": status.get("color"),
                "count": len(cards),
                "cards": cards,
            }
        )
    return {"columns": columns, "issues": issues}


def table_rows(schema: CollectionSchema, entries: List[dict]) -> dict:
    fields, issues = _renderable_fields(schema)
    status_names = {s["id"]: s.get("name") for s in schema.statuses}
    rows = []
    for entry in entries:
        values = entry_value_map(entry)
        rows.append(
            {
                "id": entry["id"],
                "title": entry_title(schema, entry),
                "status": status_names.get(entry.get("status_id")),
                "cells": {row["id"]: _display(row, values.get(row["id"])) for row in fields},
                "created_at": entry.get("created_at"),
            }
        )
    columns = [{"field_id": row["id"], "name": row.get("name"), "type": row.get("type")} for row in fields]
    return {"columns": columns, "rows": rows, "issues": issues}


def _date_field(schema: CollectionSchema, fields: List[dict], date_field_id: str | None) -> dict | None:
    for row in fields:
        if row.get("type") != FieldType.DATE.value:
            continue
        if date_field_id is None or row["id"] == date_field_id:
            return row
    return None


def calendar_events(schema: CollectionSchema, entries: List[dict], date_field_id: str | None = None) -> dict:
    """One all-day event per entry with a valid date, sorted by date.

    Uses `date_field_id` when given, otherwise the first date field.
    """
    fields, issues = _renderable_fields(schema)
    date_field = _date_field(schema, fields, date_field_id)
    if date_field is None:
        issues.append(
            make_issue(
                "NO_DATE_FIELD",
                "Calendar view needs a date field",
                date_field_id,
                {"date_field_id": date_field_id},
            )
        )
        return {"field_id": None, "events": [], "issues": issues}

    colors = {s["id"]: s.get("color") for s in schema.statuses}
    events = []
    for entry in entries:
        raw = entry_value_map(entry).get(date_field["id"])
        try:
            day = parse_value(date_field, raw)
        except InvalidFormatError as exc:
            issues.append(make_issue("INVALID_DATE", exc.message, entry.get("id"), {"value": raw}))
            continue
        if day is None:
            issues.append(make_issue("MISSING_DATE", f"Entry {entry.get('id')} has no date", entry.get("id")))
            continue
        events.append(
            {
                "id": entry["id"],
                "title": entry_title(schema, entry),
                "date": day.isoformat(),
                "status_id": entry.get("status_id"),
                "color": colors.get(entry.get("status_id")),
            }
        )
    events.sort(key=lambda event: (event["date"], event["title"]))
    return {"field_id": date_field["id"], "events": events, "issues": issues}
