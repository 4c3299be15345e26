"""In-memory persistence, identity and blob storage for tests and local runs."""

from __future__ import annotations

import asyncio
import copy
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Tuple

from plank.errors import ForeignKeyConflict, NotFoundError, ReferentialConflict


logger = logging.getLogger("plank.store")


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


TABLES = ("collections", "fields", "statuses", "entries", "entry_values", "users", "comments", "documents")

# (child table, column, parent table, policy)
# cascades run in list order: entries before statuses, so deleting a
# collection never trips the entries.status_id restrict
FOREIGN_KEYS: List[Tuple[str, str, str, str]] = [
    ("fields", "collection_id", "collections", "cascade"),
    ("entries", "collection_id", "collections", "cascade"),
    ("statuses", "collection_id", "collections", "cascade"),
    ("entries", "status_id", "statuses", "restrict"),
    ("entry_values", "entry_id", "entries", "cascade"),
    ("entry_values", "field_id", "fields", "cascade"),
    ("comments", "entry_id", "entries", "cascade"),
    ("documents", "collection_id", "collections", "cascade"),
    ("documents", "entry_id", "entries", "cascade"),
]

UNIQUE_KEYS: Dict[str, List[Tuple[str, ...]]] = {
    "entry_values": [("entry_id", "field_id")],
}

# embed name -> (table, column, kind, order column)
# kind "many": child rows whose `column` equals this row's id
# kind "one": the row in `table` whose id equals this row's `column`
RELATIONS: Dict[str, Dict[str, Tuple[str, str, str, str | None]]] = {
    "collections": {
        "fields": ("fields", "collection_id", "many", "order"),
        "statuses": ("statuses", "collection_id", "many", "order"),
    },
    "entries": {
        "entry_values": ("entry_values", "entry_id", "many", None),
    },
    "comments": {
        "user": ("users", "user_id", "one", None),
    },
}

CREATED_AT = {"collections", "entries", "comments", "users", "documents"}
UPDATED_AT = {"collections", "entries"}

WRITE_OPS = ("insert", "update", "upsert", "delete")


def _check_table(table: str) -> None:
    if table not in TABLES:
        raise NotFoundError(message=f"Unknown table: {table}", path="table", detail={"table": table})


def _as_list(rows: dict | Iterable[dict]) -> List[dict]:
    if isinstance(rows, dict):
        return [rows]
    return list(rows)


def _sort_key(value: Any) -> Tuple[bool, Any]:
    return (value is None, value if value is not None else 0)


def sort_rows(rows: List[dict], order_by: str | List[str] | None) -> List[dict]:
    """Sort rows by one or more columns; a leading '-' sorts descending."""
    if not order_by:
        return rows
    keys = [order_by] if isinstance(order_by, str) else list(order_by)
    out = list(rows)
    for term in reversed(keys):
        desc = term.startswith("-")
        column = term[1:] if desc else term
        out.sort(key=lambda row: _sort_key(row.get(column)), reverse=desc)
    return out


def _matches(row: dict, filters: dict | None) -> bool:
    for column, expected in (filters or {}).items():
        actual = row.get(column)
        if isinstance(expected, (list, tuple, set)):
            if actual not in expected:
                return False
        elif actual != expected:
            return False
    return True


class InMemoryPersistence:
    """Dict-backed persistence collaborator with referential policies.

    Mirrors the Postgres store: cascades and restricts follow FOREIGN_KEYS,
    `entry_values` is unique on (entry_id, field_id). Tests can inject faults
    per operation and hold operations behind gates to reorder completions.
    """

    def __init__(self) -> None:
        self._tables: Dict[str, Dict[str, dict]] = {name: {} for name in TABLES}
        self._faults: List[dict] = []
        self._gates: List[dict] = []
        self.calls: List[Tuple[str, str]] = []

    # test hooks

    def inject_fault(self, op: str, table: str, error: Exception, times: int = 1, skip: int = 0) -> None:
        """Raise `error` from the next `times` matching calls after letting `skip` through."""
        self._faults.append({"op": op, "table": table, "error": error, "times": times, "skip": skip})

    def gate(self, op: str, table: str) -> asyncio.Event:
        """Hold the next matching operation until the returned event is set."""
        event = asyncio.Event()
        self._gates.append({"op": op, "table": table, "event": event})
        return event

    @property
    def writes(self) -> List[Tuple[str, str]]:
        return [call for call in self.calls if call[0] in WRITE_OPS]

    def seed(self, table: str, rows: dict | Iterable[dict]) -> List[dict]:
        _check_table(table)
        return [copy.deepcopy(row) for row in self._insert_rows(table, _as_list(rows))]

    def snapshot(self, table: str) -> List[dict]:
        _check_table(table)
        return [copy.deepcopy(row) for row in self._tables[table].values()]

    async def _before(self, op: str, table: str) -> None:
        _check_table(table)
        self.calls.append((op, table))
        for gate in self._gates:
            if gate["op"] == op and gate["table"] == table:
                self._gates.remove(gate)
                await gate["event"].wait()
                break
        for fault in self._faults:
            if fault["op"] == op and fault["table"] == table and fault["times"] > 0:
                if fault["skip"] > 0:
                    fault["skip"] -= 1
                    continue
                fault["times"] -= 1
                if fault["times"] <= 0:
                    self._faults.remove(fault)
                logger.info("store_fault_injected op=%s table=%s code=%s", op, table, getattr(fault["error"], "code", None))
                raise fault["error"]

    # referential checks

    def _check_parents(self, table: str, row: dict) -> None:
        for child, column, parent, _policy in FOREIGN_KEYS:
            if child != table:
                continue
            value = row.get(column)
            if value is not None and value not in self._tables[parent]:
                raise ForeignKeyConflict(
                    message=f"{table}.{column} references missing {parent} row",
                    path=f"{table}.{column}",
                    detail={"table": table, "column": column, "value": value},
                )

    def _unique_match(self, table: str, row: dict, columns: Tuple[str, ...]) -> dict | None:
        for existing in self._tables[table].values():
            if existing.get("id") == row.get("id"):
                continue
            if all(existing.get(col) == row.get(col) for col in columns):
                return existing
        return None

    def _check_unique(self, table: str, row: dict) -> None:
        for columns in UNIQUE_KEYS.get(table, []):
            if self._unique_match(table, row, columns) is not None:
                raise ReferentialConflict(
                    message=f"duplicate key on {table} ({', '.join(columns)})",
                    code="UNIQUE_VIOLATION",
                    path=table,
                    detail={"columns": list(columns)},
                )

    def _insert_rows(self, table: str, rows: List[dict]) -> List[dict]:
        staged: List[dict] = []
        now = _now()
        for row in rows:
            record = copy.deepcopy(row)
            record.setdefault("id", str(uuid.uuid4()))
            if table in CREATED_AT:
                record.setdefault("created_at", now)
            if table in UPDATED_AT:
                record.setdefault("updated_at", now)
            if record["id"] in self._tables[table]:
                raise ReferentialConflict(message=f"duplicate id on {table}", code="UNIQUE_VIOLATION", path=f"{table}.id")
            self._check_parents(table, record)
            self._check_unique(table, record)
            staged.append(record)
        for record in staged:
            self._tables[table][record["id"]] = record
        return staged

    def _delete_row(self, table: str, row_id: str) -> None:
        for child, column, parent, policy in FOREIGN_KEYS:
            if parent != table:
                continue
            children = [r for r in self._tables[child].values() if r.get(column) == row_id]
            if not children:
                continue
            if policy == "restrict":
                raise ForeignKeyConflict(
                    message=f"{table} row is still referenced by {child}.{column}",
                    path=f"{child}.{column}",
                    detail={"table": table, "id": row_id, "referenced_by": child, "count": len(children)},
                )
        for child, column, parent, policy in FOREIGN_KEYS:
            if parent != table or policy != "cascade":
                continue
            for child_row in [r for r in self._tables[child].values() if r.get(column) == row_id]:
                self._delete_row(child, child_row["id"])
        self._tables[table].pop(row_id, None)

    def _embed(self, table: str, row: dict, embed: Iterable[str]) -> dict:
        out = copy.deepcopy(row)
        relations = RELATIONS.get(table, {})
        for name in embed:
            if name not in relations:
                raise NotFoundError(message=f"No relation {name} on {table}", path="embed", detail={"table": table, "embed": name})
            target, column, kind, order_column = relations[name]
            if kind == "many":
                children = [copy.deepcopy(r) for r in self._tables[target].values() if r.get(column) == row["id"]]
                out[name] = sort_rows(children, order_column)
            else:
                parent = self._tables[target].get(row.get(column))
                out[name] = copy.deepcopy(parent) if parent else None
        return out

    def _update_rows(self, table: str, id_list: List[str], patch: dict) -> List[dict]:
        missing = [row_id for row_id in id_list if row_id not in self._tables[table]]
        if missing:
            raise NotFoundError(message=f"{table} row not found", path=f"{table}.id", detail={"ids": missing})
        staged = []
        for row_id in id_list:
            record = copy.deepcopy(self._tables[table][row_id])
            record.update(copy.deepcopy(patch))
            record["id"] = row_id
            if table in UPDATED_AT:
                record["updated_at"] = _now()
            self._check_parents(table, record)
            self._check_unique(table, record)
            staged.append(record)
        for record in staged:
            self._tables[table][record["id"]] = record
        return [copy.deepcopy(record) for record in staged]

    # persistence interface

    async def insert(self, table: str, rows: dict | Iterable[dict]) -> List[dict]:
        await self._before("insert", table)
        return [copy.deepcopy(row) for row in self._insert_rows(table, _as_list(rows))]

    async def update(self, table: str, ids: str | Iterable[str], patch: dict) -> List[dict]:
        await self._before("update", table)
        id_list = [ids] if isinstance(ids, str) else list(ids)
        return self._update_rows(table, id_list, patch)

    async def write_batch(self, ops: List[dict]) -> List[dict]:
        """Apply `delete` and `update` ops all-or-nothing; returns updated rows.

        Each op is `{"op", "table", "id"}` plus `"patch"` for updates. Any
        failure, cancellation included, restores every table.
        """
        saved = copy.deepcopy(self._tables)
        out: List[dict] = []
        try:
            for op in ops:
                table, row_id = op["table"], op["id"]
                await self._before(op["op"], table)
                if op["op"] == "delete":
                    if row_id not in self._tables[table]:
                        raise NotFoundError(message=f"{table} row not found", path=f"{table}.id", detail={"ids": [row_id]})
                    self._delete_row(table, row_id)
                elif op["op"] == "update":
                    out.extend(self._update_rows(table, [row_id], op["patch"]))
                else:
                    raise ValueError(f"unsupported batch op: {op['op']}")
        except BaseException:
            self._tables = saved
            raise
        return out

    async def upsert(self, table: str, rows: dict | Iterable[dict], on_conflict: Tuple[str, ...] | List[str]) -> List[dict]:
        await self._before("upsert", table)
        columns = tuple(on_conflict)
        out = []
        for row in _as_list(rows):
            existing = self._unique_match(table, {**row, "id": None}, columns)
            if existing is None:
                out.extend(self._insert_rows(table, [row]))
                continue
            record = copy.deepcopy(existing)
            record.update({k: copy.deepcopy(v) for k, v in row.items() if k != "id"})
            if table in UPDATED_AT:
                record["updated_at"] = _now()
            self._check_parents(table, record)
            self._tables[table][record["id"]] = record
            out.append(record)
        return [copy.deepcopy(record) for record in out]

    async def delete(self, table: str, row_id: str) -> bool:
        await self._before("delete", table)
        if row_id not in self._tables[table]:
            return False
        self._delete_row(table, row_id)
        return True

    async def query(
        self,
        table: str,
        filters: dict | None = None,
        order_by: str | List[str] | None = None,
        embed: Iterable[str] | None = None,
        limit: int | None = None,
    ) -> List[dict]:
        await self._before("query", table)
        rows = [row for row in self._tables[table].values() if _matches(row, filters)]
        rows = sort_rows(rows, order_by)
        if limit is not None:
            rows = rows[:limit]
        return [self._embed(table, row, embed or ()) for row in rows]


class StaticIdentity:
    def __init__(self, user_id: str | None = None) -> None:
        self.user_id = user_id

    async def current_user_id(self) -> str | None:
        return self.user_id


class MemoryStorage:
    """Blob storage kept in a dict; public URLs only when a base URL is set."""

    def __init__(self, base_url: str | None = None) -> None:
        self._blobs: Dict[str, bytes] = {}
        self.base_url = base_url.rstrip("/") if base_url else None

    async def put(self, data: bytes, path_hint: str, content_type: str | None = None) -> str:
        path = path_hint.lstrip("/")
        if path in self._blobs:
            stem, dot, ext = path.rpartition(".")
            path = f"{stem}-{uuid.uuid4().hex[:8]}.{ext}" if dot else f"{path}-{uuid.uuid4().hex[:8]}"
        self._blobs[path] = bytes(data)
        return path

    async def public_url(self, path: str) -> str | None:
        if not self.base_url or path not in self._blobs:
            return None
        return f"{self.base_url}/{path}"

    async def remove(self, path: str) -> bool:
        return self._blobs.pop(path, None) is not None

    def read(self, path: str) -> bytes | None:
        return self._blobs.get(path)
