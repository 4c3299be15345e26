"""Collection schema: ordered fields and ordered workflow statuses.

Local checks (names, types, protected title field) run before any remote call
and raise `ValidationError` subclasses. Remote writes go through the session's
persistence collaborator; server rows replace local rows once they succeed.
"""

from __future__ import annotations

import copy
import logging
from typing import Any, Iterable, List

from plank.errors import (
    DuplicateNameError,
    ForeignKeyConflict,
    NotFoundError,
    ProtectedFieldError,
    RemoteError,
    SchemaError,
    StatusInUseError,
    ValidationError,
    make_issue,
)
from plank.field_types import FieldType, field_type, normalize_options
from plank.reorder import ReorderResult, densify, reorder_to

from app.session import Session


logger = logging.getLogger("plank.schema")

VIEW_TYPES = ("board", "table", "calendar")
VIEW_TYPE_ALIASES = {"kanban": "board"}

STATUS_COLORS = ("#3B82F6", "#10B981", "#F59E0B", "#EF4444", "#8B5CF6", "#EC4899", "#6B7280")

FIELD_PATCH_KEYS = ("name", "type", "options", "required")
STATUS_PATCH_KEYS = ("name", "color")
COLLECTION_PATCH_KEYS = ("name", "description", "icon", "view_type")

STATUS_IN_USE_MESSAGE = "Cannot delete status: Entries are currently assigned to it."


def normalize_view_type(value: Any) -> str:
    view = VIEW_TYPE_ALIASES.get(value, value)
    if view not in VIEW_TYPES:
        raise ValidationError(
            message=f"view_type must be one of {list(VIEW_TYPES)}",
            code="INVALID_VIEW_TYPE",
            path="view_type",
            detail={"value": value},
        )
    return view


def clean_name(name: Any, path: str = "name") -> str:
    if not isinstance(name, str) or not name.strip():
        raise ValidationError(message="Name is required", code="NAME_REQUIRED", path=path)
    return name.strip()


def check_unique_name(name: str, rows: Iterable[dict], path: str = "name", exclude_id: str | None = None) -> None:
    key = name.strip().casefold()
    for row in rows:
        if row.get("id") == exclude_id:
            continue
        if (row.get("name") or "").strip().casefold() == key:
            raise DuplicateNameError(
                message=f"'{name}' is already used in this collection",
                path=path,
                detail={"name": name, "existing_id": row.get("id")},
            )


def validate_form_field(form_field: Any, index: int = 0) -> dict:
    """Check one builder-canvas field and return its normalized copy."""
    path = f"form_definition[{index}]"
    if not isinstance(form_field, dict):
        raise ValidationError(message="form field must be an object", path=path)
    if not isinstance(form_field.get("id"), str) or not form_field["id"]:
        raise ValidationError(message="form field id is required", path=f"{path}.id")
    ftype = field_type(form_field.get("type"))
    label = clean_name(form_field.get("label"), f"{path}.label")
    required = form_field.get("required", False)
    if not isinstance(required, bool):
        raise ValidationError(message="required must be a boolean", path=f"{path}.required")
    placeholder = form_field.get("placeholder")
    if placeholder is not None and not isinstance(placeholder, str):
        raise ValidationError(message="placeholder must be a string", path=f"{path}.placeholder")
    return {
        "id": form_field["id"],
        "type": ftype.value,
        "label": label,
        "placeholder": placeholder,
        "required": required,
        "options": normalize_options(ftype, form_field.get("options")) if ftype is FieldType.SELECT else [],
    }


def _order_ops(table: str, changes: List[dict]) -> List[dict]:
    return [
        {"op": "update", "table": table, "id": change["id"], "patch": {k: v for k, v in change.items() if k != "id"}}
        for change in changes
    ]


async def write_order_changes(session: Session, table: str, changes: List[dict]) -> List[dict]:
    """Persist reconciler changes as one atomic batch; returns the server rows."""
    if not changes:
        return []
    rows = await session.persistence.write_batch(_order_ops(table, changes))
    logger.info("order_changes_written table=%s count=%s", table, len(changes))
    return rows


async def remove_ordered_row(session: Session, table: str, row_id: str, changes: List[dict]) -> List[dict]:
    """Delete a field or status and close the order gap in the same batch."""
    ops = [{"op": "delete", "table": table, "id": row_id}] + _order_ops(table, changes)
    try:
        rows = await session.persistence.write_batch(ops)
    except ForeignKeyConflict as exc:
        if table != "statuses":
            raise
        logger.info("status_in_use status_id=%s", row_id)
        raise StatusInUseError(message=STATUS_IN_USE_MESSAGE, path="status_id", detail=exc.detail) from exc
    logger.info("ordered_row_removed table=%s id=%s reordered=%s", table, row_id, len(changes))
    return rows


def _merge_rows(local: List[dict], server: List[dict]) -> List[dict]:
    by_id = {row["id"]: row for row in server}
    merged = [copy.deepcopy(by_id.get(row["id"], row)) for row in local]
    return sorted(merged, key=lambda row: row.get("order", 0))


class CollectionSchema:
    def __init__(self, collection: dict, fields: List[dict] | None = None, statuses: List[dict] | None = None) -> None:
        self.collection = {k: copy.deepcopy(v) for k, v in collection.items() if k not in ("fields", "statuses")}
        self.fields = sorted((copy.deepcopy(f) for f in fields or []), key=lambda f: f.get("order", 0))
        self.statuses = sorted((copy.deepcopy(s) for s in statuses or []), key=lambda s: s.get("order", 0))

    @classmethod
    def from_row(cls, row: dict) -> "CollectionSchema":
        return cls(row, row.get("fields") or [], row.get("statuses") or [])

    @classmethod
    async def load(cls, session: Session, collection_id: str) -> "CollectionSchema":
        rows = await session.persistence.query("collections", {"id": collection_id}, embed=["fields", "statuses"])
        if not rows:
            raise NotFoundError(message=f"Collection with ID {collection_id} not found.", path="collection_id")
        return cls.from_row(rows[0])

    @property
    def id(self) -> str:
        return self.collection["id"]

    @property
    def view_type(self) -> str:
        return VIEW_TYPE_ALIASES.get(self.collection.get("view_type"), self.collection.get("view_type") or "board")

    @property
    def title_field(self) -> dict | None:
        for row in self.fields:
            if row.get("order") == 0:
                return row
        return None

    @property
    def first_status(self) -> dict | None:
        return self.statuses[0] if self.statuses else None

    def field(self, field_id: str) -> dict:
        for row in self.fields:
            if row["id"] == field_id:
                return row
        raise NotFoundError(message=f"Field {field_id} not found", path="field_id", detail={"field_id": field_id})

    def status(self, status_id: str) -> dict:
        for row in self.statuses:
            if row["id"] == status_id:
                return row
        raise NotFoundError(message=f"Status {status_id} not found", path="status_id", detail={"status_id": status_id})

    def has_status(self, status_id: str | None) -> bool:
        return any(row["id"] == status_id for row in self.statuses)

    def to_dict(self) -> dict:
        return {
            **copy.deepcopy(self.collection),
            "fields": copy.deepcopy(self.fields),
            "statuses": copy.deepcopy(self.statuses),
        }

    def replace_fields(self, rows: List[dict]) -> None:
        self.fields = sorted((copy.deepcopy(r) for r in rows), key=lambda f: f.get("order", 0))

    def replace_statuses(self, rows: List[dict]) -> None:
        self.statuses = sorted((copy.deepcopy(r) for r in rows), key=lambda s: s.get("order", 0))

    # fields

    def prepare_field(self, name: Any, type: Any, options: Any = None, required: bool = False) -> dict:
        clean = clean_name(name)
        check_unique_name(clean, self.fields)
        ftype = field_type(type)
        order = max((f.get("order", 0) for f in self.fields), default=-1) + 1
        return {
            "collection_id": self.id,
            "name": clean,
            "type": ftype.value,
            "options": normalize_options(ftype, options),
            "required": bool(required) or order == 0,
            "order": order,
        }

    async def add_field(self, session: Session, name: Any, type: Any, options: Any = None, required: bool = False) -> dict:
        row = self.prepare_field(name, type, options, required)
        created = (await session.persistence.insert("fields", row))[0]
        self.fields.append(copy.deepcopy(created))
        logger.info("field_added collection_id=%s field_id=%s order=%s", self.id, created["id"], created["order"])
        return created

    def prepare_field_patch(self, field_id: str, patch: dict) -> dict:
        current = self.field(field_id)
        unknown = sorted(set(patch) - set(FIELD_PATCH_KEYS))
        if unknown:
            raise ValidationError(message=f"Unsupported field keys: {unknown}", code="UNKNOWN_KEYS", path="patch", detail={"keys": unknown})
        out: dict = {}
        if "name" in patch:
            out["name"] = clean_name(patch["name"])
            check_unique_name(out["name"], self.fields, exclude_id=field_id)
        ftype = field_type(patch.get("type", current.get("type")))
        if "type" in patch:
            out["type"] = ftype.value
        if "options" in patch or "type" in patch:
            out["options"] = normalize_options(ftype, patch.get("options", current.get("options")))
        if "required" in patch:
            if current.get("order") == 0 and not patch["required"]:
                raise ProtectedFieldError(message="The title field must stay required", path="required", detail={"field_id": field_id})
            out["required"] = bool(patch["required"])
        return out

    async def update_field(self, session: Session, field_id: str, patch: dict) -> dict:
        clean = self.prepare_field_patch(field_id, patch)
        if not clean:
            return copy.deepcopy(self.field(field_id))
        updated = (await session.persistence.update("fields", field_id, clean))[0]
        self.fields = _merge_rows(self.fields, [updated])
        return updated

    def check_field_removable(self, field_id: str) -> dict:
        row = self.field(field_id)
        if row.get("order") == 0:
            raise ProtectedFieldError(
                message="The first field is the title field and cannot be removed",
                path="field_id",
                detail={"field_id": field_id},
            )
        return row

    def plan_field_removal(self, field_id: str) -> ReorderResult:
        self.check_field_removable(field_id)
        return densify([f for f in self.fields if f["id"] != field_id])

    async def remove_field(self, session: Session, field_id: str) -> ReorderResult:
        """Delete a field (its values cascade) and close the order gap."""
        plan = self.plan_field_removal(field_id)
        server = await remove_ordered_row(session, "fields", field_id, plan.changes)
        self.fields = _merge_rows(plan.items, server)
        logger.info("field_removed collection_id=%s field_id=%s reordered=%s", self.id, field_id, len(plan.changes))
        return plan

    def plan_field_reorder(self, sequence: Iterable[str]) -> ReorderResult:
        return reorder_to(self.fields, sequence)

    async def reorder_fields(self, session: Session, sequence: Iterable[str]) -> ReorderResult:
        plan = self.plan_field_reorder(sequence)
        server = await write_order_changes(session, "fields", plan.changes)
        self.fields = _merge_rows(plan.items, server)
        return plan

    # statuses

    def prepare_status(self, name: Any, color: str | None = None) -> dict:
        clean = clean_name(name)
        check_unique_name(clean, self.statuses)
        order = max((s.get("order", 0) for s in self.statuses), default=-1) + 1
        return {
            "collection_id": self.id,
            "name": clean,
            "color": color or STATUS_COLORS[order % len(STATUS_COLORS)],
            "order": order,
        }

    async def add_status(self, session: Session, name: Any, color: str | None = None) -> dict:
        row = self.prepare_status(name, color)
        created = (await session.persistence.insert("statuses", row))[0]
        self.statuses.append(copy.deepcopy(created))
        logger.info("status_added collection_id=%s status_id=%s order=%s", self.id, created["id"], created["order"])
        return created

    def prepare_status_patch(self, status_id: str, patch: dict) -> dict:
        self.status(status_id)
        unknown = sorted(set(patch) - set(STATUS_PATCH_KEYS))
        if unknown:
            raise ValidationError(message=f"Unsupported status keys: {unknown}", code="UNKNOWN_KEYS", path="patch", detail={"keys": unknown})
        out: dict = {}
        if "name" in patch:
            out["name"] = clean_name(patch["name"])
            check_unique_name(out["name"], self.statuses, exclude_id=status_id)
        if "color" in patch:
            out["color"] = patch["color"]
        return out

    async def update_status(self, session: Session, status_id: str, patch: dict) -> dict:
        clean = self.prepare_status_patch(status_id, patch)
        if not clean:
            return copy.deepcopy(self.status(status_id))
        updated = (await session.persistence.update("statuses", status_id, clean))[0]
        self.statuses = _merge_rows(self.statuses, [updated])
        return updated

    def plan_status_removal(self, status_id: str) -> ReorderResult:
        self.status(status_id)
        if self.view_type == "board" and len(self.statuses) <= 1:
            raise ValidationError(
                message="A board collection needs at least one status",
                code="LAST_STATUS",
                path="status_id",
                detail={"status_id": status_id},
            )
        return densify([s for s in self.statuses if s["id"] != status_id])

    async def remove_status(self, session: Session, status_id: str) -> ReorderResult:
        plan = self.plan_status_removal(status_id)
        server = await remove_ordered_row(session, "statuses", status_id, plan.changes)
        self.statuses = _merge_rows(plan.items, server)
        return plan

    def plan_status_reorder(self, sequence: Iterable[str]) -> ReorderResult:
        return reorder_to(self.statuses, sequence)

    async def reorder_statuses(self, session: Session, sequence: Iterable[str]) -> ReorderResult:
        plan = self.plan_status_reorder(sequence)
        server = await write_order_changes(session, "statuses", plan.changes)
        self.statuses = _merge_rows(plan.items, server)
        return plan


# collections


async def list_collections(session: Session) -> List[CollectionSchema]:
    rows = await session.persistence.query("collections", order_by="-created_at", embed=["fields", "statuses"])
    return [CollectionSchema.from_row(row) for row in rows]


def _validate_new_collection(name: Any, fields: List[dict], statuses: List[dict], view_type: str) -> tuple:
    issues = []
    clean_fields: List[dict] = []
    clean_statuses: List[dict] = []
    draft = CollectionSchema({"id": None, "view_type": view_type})
    try:
        clean_name(name)
    except ValidationError as exc:
        issues.append(exc.to_issue())
    if not fields:
        issues.append(make_issue("FIELDS_REQUIRED", "A collection needs at least one field", "fields"))
    for idx, field_def in enumerate(fields):
        try:
            row = draft.prepare_field(field_def.get("name"), field_def.get("type", "text"), field_def.get("options"), field_def.get("required", False))
        except (ValidationError, SchemaError) as exc:
            issue = exc.to_issue()
            issue["path"] = f"fields[{idx}].{exc.path or 'name'}"
            issues.append(issue)
            continue
        draft.fields.append(row)
        clean_fields.append(row)
    if view_type == "board" and not statuses:
        issues.append(make_issue("STATUSES_REQUIRED", "A board collection needs at least one status", "statuses"))
    for idx, status_def in enumerate(statuses):
        try:
            row = draft.prepare_status(status_def.get("name"), status_def.get("color"))
        except (ValidationError, SchemaError) as exc:
            issue = exc.to_issue()
            issue["path"] = f"statuses[{idx}].{exc.path or 'name'}"
            issues.append(issue)
            continue
        draft.statuses.append(row)
        clean_statuses.append(row)
    if issues:
        raise ValidationError.from_issues(issues)
    return clean_fields, clean_statuses


async def create_collection(
    session: Session,
    name: Any,
    fields: List[dict],
    statuses: List[dict] | None = None,
    view_type: str = "board",
    icon: str | None = None,
    description: str | None = None,
) -> CollectionSchema:
    """Create a collection with its initial fields and statuses.

    The first field becomes the required title field. Nothing is written when
    any name, type or option fails local validation.
    """
    view = normalize_view_type(view_type)
    clean_fields, clean_statuses = _validate_new_collection(name, list(fields or []), list(statuses or []), view)
    owner_id = await session.require_user_id()
    collection = (
        await session.persistence.insert(
            "collections",
            {
                "name": clean_name(name),
                "description": description,
                "icon": icon or "folder",
                "view_type": view,
                "owner_id": owner_id,
                "form_definition": [],
            },
        )
    )[0]
    try:
        created_fields = await session.persistence.insert("fields", [{**f, "collection_id": collection["id"]} for f in clean_fields])
        created_statuses = []
        if clean_statuses:
            created_statuses = await session.persistence.insert("statuses", [{**s, "collection_id": collection["id"]} for s in clean_statuses])
    except RemoteError:
        logger.warning("collection_create_incomplete collection_id=%s; removing", collection["id"])
        await session.persistence.delete("collections", collection["id"])
        raise
    logger.info(
        "collection_created collection_id=%s fields=%s statuses=%s",
        collection["id"],
        len(created_fields),
        len(created_statuses),
    )
    return CollectionSchema(collection, created_fields, created_statuses)


async def update_collection(session: Session, collection_id: str, patch: dict) -> dict:
    unknown = sorted(set(patch) - set(COLLECTION_PATCH_KEYS))
    if unknown:
        raise ValidationError(message=f"Unsupported collection keys: {unknown}", code="UNKNOWN_KEYS", path="patch", detail={"keys": unknown})
    clean = dict(patch)
    if "name" in clean:
        clean["name"] = clean_name(clean["name"])
    if "view_type" in clean:
        clean["view_type"] = normalize_view_type(clean["view_type"])
    if not clean:
        raise ValidationError(message="Nothing to update", code="EMPTY_PATCH", path="patch")
    return (await session.persistence.update("collections", collection_id, clean))[0]


async def delete_collection(session: Session, collection_id: str) -> bool:
    deleted = await session.persistence.delete("collections", collection_id)
    logger.info("collection_deleted collection_id=%s deleted=%s", collection_id, deleted)
    return deleted


async def save_form_definition(session: Session, collection_id: str, form_fields: List[dict]) -> List[dict]:
    definition = [validate_form_field(ff, idx) for idx, ff in enumerate(form_fields or [])]
    ids = [ff["id"] for ff in definition]
    if len(set(ids)) != len(ids):
        raise DuplicateNameError(message="Form field ids must be unique", path="form_definition")
    row = (await session.persistence.update("collections", collection_id, {"form_definition": definition}))[0]
    return row.get("form_definition") or []
