"""Optimistic, order-preserving sync for board, field, status and form surfaces.

A gesture goes through `OptimisticSurface.mutate`:

1. refuse it (`rejected`) when any entity it touches has a pending mutation;
2. plan it with the pure reconciler, locally, before any await;
3. apply the plan to a copy of the surface state and swap it in;
4. await the remote write;
5. on success merge server rows, but only into entities whose fingerprint
   still matches the one taken right after step 3;
6. on failure restore the pre-gesture snapshot (the whole state when nothing
   else changed meanwhile, otherwise only the touched entities) and publish a
   `sync.rolled_back` notice.

Results are envelopes: `{ok, status, mutation_id, errors, warnings, result}`.
"""

from __future__ import annotations

import asyncio
import copy
import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List

from event_bus import SYNC_REJECTED, SYNC_ROLLED_BACK, make_notice
from plank.errors import (
    ConcurrentMutationError,
    NotFoundError,
    PlankError,
    ReferentialConflict,
    ValidationError,
)
from plank.field_types import FieldType, field_type, normalize_options
from plank.reorder import ReorderResult, move_between_groups, reorder
from plank.snapshot_hash import snapshot_hash

import record_store
from app.session import Session
from schema_model import (
    CollectionSchema,
    remove_ordered_row,
    save_form_definition,
    validate_form_field,
    write_order_changes,
)


logger = logging.getLogger("plank.sync")


class SyncState(str, Enum):
    IDLE = "idle"
    PENDING = "pending"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"
    REJECTED = "rejected"
    DISCARDED = "discarded"


# envelope statuses that are not mutation states
STATUS_INVALID = "invalid"
STATUS_UNCHANGED = "unchanged"
STATUS_LOCAL = "local"


@dataclass
class Mutation:
    id: str
    label: str
    keys: List[Any]
    before: dict
    before_entities: Dict[Any, Any]
    after_hash: str = ""
    applied: Dict[Any, str] = field(default_factory=dict)
    state: SyncState = SyncState.PENDING
    error: Dict[str, Any] | None = None


def envelope(
    ok: bool,
    status: str,
    mutation_id: str | None = None,
    errors: List[dict] | None = None,
    warnings: List[dict] | None = None,
    result: Any = None,
) -> dict:
    return {
        "ok": ok,
        "status": status,
        "mutation_id": mutation_id,
        "errors": errors or [],
        "warnings": warnings or [],
        "result": result,
    }


def _failure_kind(exc: BaseException) -> str:
    return "conflict" if isinstance(exc, ReferentialConflict) else "transport"


PlanFn = Callable[[], Any]
ApplyFn = Callable[[dict, Any], None]
RemoteFn = Callable[[Any], Awaitable[Any]]
MergeFn = Callable[[dict, Any, Any], None]


class OptimisticSurface:
    """Local working copy of one UI surface plus its pending mutations."""

    surface = "surface"

    def __init__(self, session: Session, state: dict) -> None:
        self.session = session
        self._state = copy.deepcopy(state)
        self._pending: Dict[Any, Mutation] = {}
        self._closed = False
        self._last = SyncState.IDLE
        self.history: List[Mutation] = []

    @property
    def state(self) -> dict:
        return copy.deepcopy(self._state)

    @property
    def status(self) -> SyncState:
        if self._closed:
            return SyncState.DISCARDED
        return SyncState.PENDING if self._pending else self._last

    @property
    def closed(self) -> bool:
        return self._closed

    def fingerprint(self) -> str:
        return snapshot_hash(self._state)

    def is_pending(self, key: Any) -> bool:
        return key in self._pending

    def close(self) -> None:
        """Detach the surface; writes still in flight are discarded on arrival."""
        self._closed = True
        if self._pending:
            logger.info("surface_closed surface=%s pending=%s", self.surface, len({m.id for m in self._pending.values()}))

    # entity hooks

    def _entity(self, state: dict, key: Any) -> Any:
        return state.get(key)

    def _restore(self, state: dict, key: Any, value: Any) -> None:
        state[key] = copy.deepcopy(value)

    def _entity_id(self, key: Any) -> str | None:
        return None

    def _entity_hash(self, state: dict, key: Any) -> str:
        return snapshot_hash({"entity": self._entity(state, key)})

    def _settled(self) -> None:
        """Called after a mutation commits or rolls back."""

    # notices

    def _notify(self, name: str, payload: dict, key: Any = None) -> None:
        bus = self.session.bus
        if bus is None:
            return
        bus.publish(make_notice(name, self.surface, payload, entity_id=self._entity_id(key), state_hash=self.fingerprint()))

    # core

    def _reject(self, keys: List[Any], label: str) -> dict:
        busy = [k for k in keys if k in self._pending]
        err = ConcurrentMutationError(
            message="Another change to this item is still being saved",
            path=str(busy[0]),
            detail={"pending": [str(k) for k in busy], "label": label},
        )
        logger.info("mutation_rejected surface=%s label=%s keys=%s", self.surface, label, busy)
        self._last = SyncState.REJECTED
        self._notify(SYNC_REJECTED, {"code": err.code, "message": err.message, "label": label}, busy[0])
        return envelope(False, SyncState.REJECTED.value, errors=[err.to_issue()])

    async def mutate(
        self,
        keys: List[Any],
        plan_fn: PlanFn,
        apply_fn: ApplyFn,
        remote_fn: RemoteFn | None,
        merge_fn: MergeFn | None = None,
        label: str = "mutation",
    ) -> dict:
        if self._closed:
            return envelope(False, SyncState.DISCARDED.value, errors=[{"code": "SURFACE_CLOSED", "message": "Surface is closed", "path": None, "detail": None}])
        if any(k in self._pending for k in keys):
            return self._reject(keys, label)
        try:
            plan = plan_fn()
        except PlankError as exc:
            logger.info("mutation_invalid surface=%s label=%s code=%s", self.surface, label, exc.code)
            issues = getattr(exc, "issues", None) or [exc.to_issue()]
            return envelope(False, STATUS_INVALID, errors=issues)
        if isinstance(plan, ReorderResult) and plan.noop:
            return envelope(True, STATUS_UNCHANGED)

        draft = copy.deepcopy(self._state)
        apply_fn(draft, plan)
        if remote_fn is None or (isinstance(plan, ReorderResult) and not plan.changes):
            self._state = draft
            return envelope(True, STATUS_LOCAL)

        mutation = Mutation(
            id=str(uuid.uuid4()),
            label=label,
            keys=list(keys),
            before=self._state,
            before_entities={k: copy.deepcopy(self._entity(self._state, k)) for k in keys},
        )
        self._state = draft
        mutation.after_hash = self.fingerprint()
        mutation.applied = {k: self._entity_hash(self._state, k) for k in keys}
        for k in keys:
            self._pending[k] = mutation
        self.history.append(mutation)
        logger.info("mutation_pending surface=%s label=%s mutation_id=%s", self.surface, label, mutation.id)

        try:
            try:
                result = await remote_fn(plan)
            finally:
                self._release(mutation)
        except Exception as exc:
            env = self._discard(mutation) if self._closed else self._rollback(mutation, exc)
            if not isinstance(exc, PlankError):
                raise
            return env
        except BaseException as exc:
            # cancelled while awaiting the store
            if self._closed:
                self._discard(mutation)
            else:
                self._rollback(mutation, exc)
            raise
        if self._closed:
            return self._discard(mutation)
        return self._commit(mutation, plan, result, merge_fn)

    def _release(self, mutation: Mutation) -> None:
        for k in mutation.keys:
            if self._pending.get(k) is mutation:
                del self._pending[k]

    def _discard(self, mutation: Mutation) -> dict:
        mutation.state = SyncState.DISCARDED
        logger.info("mutation_discarded surface=%s mutation_id=%s", self.surface, mutation.id)
        return envelope(False, SyncState.DISCARDED.value, mutation.id)

    def _commit(self, mutation: Mutation, plan: Any, result: Any, merge_fn: MergeFn | None) -> dict:
        warnings: List[dict] = []
        if merge_fn is not None and result is not None:
            stale = [k for k in mutation.keys if self._entity_hash(self._state, k) != mutation.applied[k]]
            if stale:
                logger.warning(
                    "stale_confirmation_ignored surface=%s mutation_id=%s keys=%s",
                    self.surface,
                    mutation.id,
                    stale,
                )
                warnings.append({"code": "STALE_CONFIRMATION", "message": "Server response was older than local state", "path": None, "detail": {"keys": [str(k) for k in stale]}})
            else:
                draft = copy.deepcopy(self._state)
                merge_fn(draft, plan, result)
                self._state = draft
        mutation.state = SyncState.COMMITTED
        self._last = SyncState.COMMITTED
        self._settled()
        logger.info("mutation_committed surface=%s label=%s mutation_id=%s", self.surface, mutation.label, mutation.id)
        return envelope(True, SyncState.COMMITTED.value, mutation.id, warnings=warnings, result=result)

    def _rollback(self, mutation: Mutation, exc: BaseException) -> dict:
        if self.fingerprint() == mutation.after_hash:
            self._state = mutation.before
        else:
            draft = copy.deepcopy(self._state)
            for k, value in mutation.before_entities.items():
                self._restore(draft, k, value)
            self._state = draft
        if isinstance(exc, PlankError):
            issue = exc.to_issue()
        elif isinstance(exc, asyncio.CancelledError):
            issue = {"code": "CANCELLED", "message": "Save was cancelled before it finished", "path": None, "detail": None}
        else:
            issue = {"code": "UNEXPECTED_ERROR", "message": str(exc) or exc.__class__.__name__, "path": None, "detail": None}
        mutation.state = SyncState.ROLLED_BACK
        mutation.error = issue
        self._last = SyncState.ROLLED_BACK
        self._settled()
        kind = _failure_kind(exc)
        logger.warning(
            "mutation_rolled_back surface=%s label=%s mutation_id=%s kind=%s code=%s",
            self.surface,
            mutation.label,
            mutation.id,
            kind,
            issue["code"],
        )
        self._notify(
            SYNC_ROLLED_BACK,
            {"kind": kind, "code": issue["code"], "message": issue["message"], "label": mutation.label, "mutation_id": mutation.id},
            mutation.keys[0] if mutation.keys else None,
        )
        return envelope(False, SyncState.ROLLED_BACK.value, mutation.id, errors=[issue])


def _board_state(schema: CollectionSchema, entries: List[dict]) -> dict:
    columns: Dict[str, List[str]] = {s["id"]: [] for s in schema.statuses}
    by_id: Dict[str, dict] = {}
    for entry in entries:
        by_id[entry["id"]] = copy.deepcopy(entry)
        if entry.get("status_id") in columns:
            columns[entry["status_id"]].append(entry["id"])
    return {"entries": by_id, "columns": columns}


class BoardSurface(OptimisticSurface):
    """Cards grouped into status columns; a drag changes one entry's status."""

    surface = "board"

    def __init__(self, session: Session, schema: CollectionSchema, entries: List[dict]) -> None:
        super().__init__(session, _board_state(schema, entries))
        self.schema = schema

    def _entity_id(self, key: str) -> str:
        return key

    def _entity(self, state: dict, key: str) -> Any:
        for status_id, ids in state["columns"].items():
            if key in ids:
                return {"entry": state["entries"].get(key), "placement": [status_id, ids.index(key)]}
        return {"entry": state["entries"].get(key), "placement": None}

    def _restore(self, state: dict, key: str, value: Any) -> None:
        for ids in state["columns"].values():
            if key in ids:
                ids.remove(key)
        if value["entry"] is None:
            state["entries"].pop(key, None)
        else:
            state["entries"][key] = copy.deepcopy(value["entry"])
        if value["placement"]:
            status_id, index = value["placement"]
            column = state["columns"].setdefault(status_id, [])
            column.insert(min(index, len(column)), key)

    def entry(self, entry_id: str) -> dict:
        entry = self._state["entries"].get(entry_id)
        if entry is None:
            raise NotFoundError(message=f"Entry {entry_id} not found", path="entry_id")
        return copy.deepcopy(entry)

    def columns(self) -> List[dict]:
        out = []
        for status in self.schema.statuses:
            ids = self._state["columns"].get(status["id"], [])
            out.append({"status": copy.deepcopy(status), "entries": [copy.deepcopy(self._state["entries"][i]) for i in ids]})
        return out

    def column_ids(self, status_id: str) -> List[str]:
        return list(self._state["columns"].get(status_id, []))

    def replace_entries(self, entries: List[dict]) -> None:
        """Reload from the store; entries with pending writes keep local state."""
        fresh = _board_state(self.schema, entries)
        for key in self._pending:
            self._restore(fresh, key, self._entity(self._state, key))
        self._state = fresh

    def forget_field(self, field_id: str) -> None:
        """Drop a deleted field's values from every card."""
        entries = record_store.drop_field_values(list(self._state["entries"].values()), field_id)
        self._state["entries"] = {e["id"]: e for e in entries}

    async def move_card(self, entry_id: str, dest_status_id: str, dest_index: int | None = None) -> dict:
        def plan() -> ReorderResult:
            entry = self._state["entries"].get(entry_id)
            if entry is None:
                raise NotFoundError(message=f"Entry {entry_id} not found", path="entry_id")
            if dest_status_id not in self._state["columns"]:
                raise ValidationError(
                    message=f"Status {dest_status_id} is not part of this collection",
                    code="INVALID_STATUS",
                    path="status_id",
                )
            source_status = entry.get("status_id")
            if source_status not in self._state["columns"]:
                raise ValidationError(
                    message=f"Entry {entry_id} has no column on this board",
                    code="ENTRY_WITHOUT_STATUS",
                    path="status_id",
                    detail={"entry_id": entry_id, "status_id": source_status},
                )
            source_index = self._state["columns"][source_status].index(entry_id)
            index = dest_index
            if index is None:
                dest_len = len(self._state["columns"][dest_status_id])
                index = source_index if source_status == dest_status_id else dest_len
            groups = {
                sid: [self._state["entries"][i] for i in ids] for sid, ids in self._state["columns"].items()
            }
            return move_between_groups(groups, (source_status, source_index), (dest_status_id, index))

        def apply(draft: dict, result: ReorderResult) -> None:
            for status_id, members in result.groups.items():
                draft["columns"][status_id] = [m["id"] for m in members]
            for change in result.changes:
                draft["entries"][change["id"]]["status_id"] = change["status_id"]

        async def remote(result: ReorderResult) -> dict:
            return await record_store.update_entry_status(self.session, entry_id, dest_status_id)

        def merge(draft: dict, result: ReorderResult, row: dict) -> None:
            entry = draft["entries"][entry_id]
            entry.update({k: copy.deepcopy(v) for k, v in row.items() if k != "entry_values"})
            if row.get("status_id") != dest_status_id and row.get("status_id") in draft["columns"]:
                draft["columns"][dest_status_id].remove(entry_id)
                draft["columns"][row["status_id"]].append(entry_id)

        return await self.mutate([entry_id], plan, apply, remote, merge, label="move_card")


class _OrderedRowsSurface(OptimisticSurface):
    """Shared machinery for the field and status managers (one list key)."""

    table = ""
    key = ""

    def __init__(self, session: Session, schema: CollectionSchema, rows: List[dict]) -> None:
        super().__init__(session, {self.key: rows})
        self.schema = schema

    @property
    def rows(self) -> List[dict]:
        return copy.deepcopy(self._state[self.key])

    def _view(self) -> CollectionSchema:
        if self.key == "fields":
            return CollectionSchema(self.schema.collection, self._state["fields"], self.schema.statuses)
        return CollectionSchema(self.schema.collection, self.schema.fields, self._state["statuses"])

    def _set_rows(self, draft: dict, rows: List[dict]) -> None:
        draft[self.key] = copy.deepcopy(rows)

    def _merge_server_rows(self, draft: dict, rows: List[dict]) -> None:
        by_id = {row["id"]: row for row in rows}
        merged = [copy.deepcopy(by_id.get(row["id"], row)) for row in draft[self.key]]
        draft[self.key] = sorted(merged, key=lambda row: row.get("order", 0))

    def _settled(self) -> None:
        if self.key == "fields":
            self.schema.replace_fields(self._state["fields"])
        else:
            self.schema.replace_statuses(self._state["statuses"])

    async def _move(self, source_index: int, dest_index: int) -> dict:
        def plan() -> ReorderResult:
            return reorder(self._state[self.key], source_index, dest_index)

        def apply(draft: dict, result: ReorderResult) -> None:
            self._set_rows(draft, result.items)

        async def remote(result: ReorderResult) -> List[dict]:
            return await write_order_changes(self.session, self.table, result.changes)

        def merge(draft: dict, result: ReorderResult, rows: List[dict]) -> None:
            self._merge_server_rows(draft, rows)

        return await self.mutate([self.key], plan, apply, remote, merge, label=f"move_{self.table}")

    async def _add(self, prepare: Callable[[], dict]) -> dict:
        temp_id = f"tmp-{uuid.uuid4().hex[:12]}"

        def apply(draft: dict, row: dict) -> None:
            draft[self.key].append({**copy.deepcopy(row), "id": temp_id})

        async def remote(row: dict) -> dict:
            return (await self.session.persistence.insert(self.table, row))[0]

        def merge(draft: dict, row: dict, created: dict) -> None:
            draft[self.key] = [copy.deepcopy(created) if r["id"] == temp_id else r for r in draft[self.key]]

        return await self.mutate([self.key], prepare, apply, remote, merge, label=f"add_{self.table}")

    async def _update(self, row_id: str, prepare: Callable[[], dict]) -> dict:
        def apply(draft: dict, patch: dict) -> None:
            for row in draft[self.key]:
                if row["id"] == row_id:
                    row.update(copy.deepcopy(patch))

        async def remote(patch: dict) -> dict | None:
            if not patch:
                return None
            return (await self.session.persistence.update(self.table, row_id, patch))[0]

        def merge(draft: dict, patch: dict, row: dict) -> None:
            self._merge_server_rows(draft, [row])

        return await self.mutate([self.key], prepare, apply, remote, merge, label=f"update_{self.table}")

    async def _remove(self, row_id: str, plan_fn: Callable[[], ReorderResult]) -> dict:
        def apply(draft: dict, result: ReorderResult) -> None:
            self._set_rows(draft, result.items)

        async def remote(result: ReorderResult) -> List[dict]:
            return await remove_ordered_row(self.session, self.table, row_id, result.changes)

        def merge(draft: dict, result: ReorderResult, rows: List[dict]) -> None:
            self._merge_server_rows(draft, rows)

        return await self.mutate([self.key], plan_fn, apply, remote, merge, label=f"remove_{self.table}")


class FieldManagerSurface(_OrderedRowsSurface):
    surface = "field_manager"
    table = "fields"
    key = "fields"

    def __init__(self, session: Session, schema: CollectionSchema) -> None:
        super().__init__(session, schema, schema.fields)

    async def move_field(self, source_index: int, dest_index: int) -> dict:
        return await self._move(source_index, dest_index)

    async def add_field(self, name: str, type: str, options: List[str] | None = None, required: bool = False) -> dict:
        return await self._add(lambda: self._view().prepare_field(name, type, options, required))

    async def update_field(self, field_id: str, patch: dict) -> dict:
        return await self._update(field_id, lambda: self._view().prepare_field_patch(field_id, patch))

    async def remove_field(self, field_id: str) -> dict:
        """Remove a non-title field; its stored values cascade away."""
        return await self._remove(field_id, lambda: self._view().plan_field_removal(field_id))


class StatusManagerSurface(_OrderedRowsSurface):
    surface = "status_manager"
    table = "statuses"
    key = "statuses"

    def __init__(self, session: Session, schema: CollectionSchema) -> None:
        super().__init__(session, schema, schema.statuses)

    async def move_status(self, source_index: int, dest_index: int) -> dict:
        return await self._move(source_index, dest_index)

    async def add_status(self, name: str, color: str | None = None) -> dict:
        return await self._add(lambda: self._view().prepare_status(name, color))

    async def update_status(self, status_id: str, patch: dict) -> dict:
        return await self._update(status_id, lambda: self._view().prepare_status_patch(status_id, patch))

    async def remove_status(self, status_id: str) -> dict:
        return await self._remove(status_id, lambda: self._view().plan_status_removal(status_id))


class FormCanvasSurface(OptimisticSurface):
    """Form builder canvas. Edits stay local until `save` writes them."""

    surface = "form_canvas"

    def __init__(self, session: Session, schema: CollectionSchema) -> None:
        fields = copy.deepcopy(schema.collection.get("form_definition") or [])
        super().__init__(session, {"form": fields})
        self.schema = schema
        self._saved_hash = self.fingerprint()

    @property
    def form_fields(self) -> List[dict]:
        return copy.deepcopy(self._state["form"])

    @property
    def dirty(self) -> bool:
        return self.fingerprint() != self._saved_hash

    def _index_of(self, form_field_id: str) -> int:
        for idx, ff in enumerate(self._state["form"]):
            if ff["id"] == form_field_id:
                return idx
        raise NotFoundError(message=f"Form field {form_field_id} not found", path="form_field_id")

    async def add_form_field(self, type: str, label: str | None = None, index: int | None = None) -> dict:
        created: dict = {}

        def plan() -> tuple:
            ftype = field_type(type)
            size = len(self._state["form"])
            position = size if index is None else max(0, min(index, size))
            created.update(
                {
                    "id": f"field-{uuid.uuid4().hex[:12]}",
                    "type": ftype.value,
                    "label": label or f"New {ftype.value} field",
                    "placeholder": None,
                    "required": False,
                    "options": ["Option 1"] if ftype is FieldType.SELECT else [],
                }
            )
            return position, copy.deepcopy(created)

        def apply(draft: dict, result: tuple) -> None:
            position, ff = result
            draft["form"].insert(position, ff)

        env = await self.mutate(["form"], plan, apply, None, label="add_form_field")
        if env["ok"]:
            env["result"] = copy.deepcopy(created)
        return env

    async def move_form_field(self, source_index: int, dest_index: int) -> dict:
        def plan() -> ReorderResult:
            return reorder(self._state["form"], source_index, dest_index, order_key=None)

        def apply(draft: dict, result: ReorderResult) -> None:
            draft["form"] = copy.deepcopy(result.items)

        return await self.mutate(["form"], plan, apply, None, label="move_form_field")

    async def update_form_field(self, form_field_id: str, patch: dict) -> dict:
        def plan() -> tuple:
            idx = self._index_of(form_field_id)
            merged = {**self._state["form"][idx], **patch, "id": form_field_id}
            if "type" in patch and field_type(patch["type"]).value != "select":
                merged["options"] = []
            return idx, validate_form_field(merged, idx)

        def apply(draft: dict, result: tuple) -> None:
            idx, ff = result
            draft["form"][idx] = ff

        return await self.mutate(["form"], plan, apply, None, label="update_form_field")

    async def remove_form_field(self, form_field_id: str) -> dict:
        def plan() -> int:
            return self._index_of(form_field_id)

        def apply(draft: dict, idx: int) -> None:
            del draft["form"][idx]

        return await self.mutate(["form"], plan, apply, None, label="remove_form_field")

    async def save(self) -> dict:
        """Persist the canvas as the collection's form definition."""

        def plan() -> List[dict]:
            for idx, ff in enumerate(self._state["form"]):
                validate_form_field(ff, idx)
                if ff.get("type") == "select":
                    normalize_options("select", ff.get("options"))
            return copy.deepcopy(self._state["form"])

        def apply(draft: dict, definition: List[dict]) -> None:
            draft["form"] = definition

        async def remote(definition: List[dict]) -> List[dict]:
            return await save_form_definition(self.session, self.schema.id, definition)

        def merge(draft: dict, definition: List[dict], saved: List[dict]) -> None:
            draft["form"] = copy.deepcopy(saved)

        env = await self.mutate(["form"], plan, apply, remote, merge, label="save_form")
        if env["status"] == SyncState.COMMITTED.value:
            self._saved_hash = self.fingerprint()
            self.schema.collection["form_definition"] = copy.deepcopy(self._state["form"])
        return env


__all__ = [
    "BoardSurface",
    "FieldManagerSurface",
    "FormCanvasSurface",
    "Mutation",
    "OptimisticSurface",
    "StatusManagerSurface",
    "SyncState",
    "envelope",
]
