"""Postgres-backed persistence collaborator.

Statements are built from a fixed table/column allowlist so identifiers never
come from callers unchecked. Blocking psycopg2 calls run on worker threads via
anyio; driver errors are mapped onto the plank error taxonomy.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from typing import Any, Dict, Iterable, List, Tuple

import anyio
import psycopg2
import psycopg2.errorcodes
import psycopg2.extras

from app.db import execute, fetch_all, get_conn
from app.stores import RELATIONS
from plank.errors import ForeignKeyConflict, NotFoundError, ReferentialConflict, RemoteError, TransportFailure


logger = logging.getLogger("plank.db")

COLUMNS: Dict[str, Tuple[str, ...]] = {
    "collections": ("id", "name", "description", "icon", "view_type", "owner_id", "form_definition", "created_at", "updated_at"),
    "fields": ("id", "collection_id", "name", "type", "options", "required", "order"),
    "statuses": ("id", "collection_id", "name", "color", "order"),
    "entries": ("id", "collection_id", "status_id", "created_by", "assigned_to", "created_at", "updated_at"),
    "entry_values": ("id", "entry_id", "field_id", "value"),
    "users": ("id", "email", "name", "role", "created_at"),
    "comments": ("id", "entry_id", "user_id", "content", "created_at"),
    "documents": (
        "id",
        "collection_id",
        "entry_id",
        "name",
        "type",
        "url",
        "storage_path",
        "size",
        "content_type",
        "created_by",
        "created_at",
    ),
}

JSON_COLUMNS = {("collections", "form_definition"), ("fields", "options")}
TOUCH_UPDATED_AT = {"collections", "entries"}

SCHEMA_SQL = """
create table if not exists users (
    id uuid primary key default gen_random_uuid(),
    email text,
    name text,
    role text,
    created_at timestamptz not null default now()
);
create table if not exists collections (
    id uuid primary key default gen_random_uuid(),
    name text not null,
    description text,
    icon text,
    view_type text not null default 'board',
    owner_id uuid,
    form_definition jsonb not null default '[]'::jsonb,
    created_at timestamptz not null default now(),
    updated_at timestamptz not null default now()
);
create table if not exists fields (
    id uuid primary key default gen_random_uuid(),
    collection_id uuid not null references collections(id) on delete cascade,
    name text not null,
    type text not null,
    options jsonb not null default '[]'::jsonb,
    required boolean not null default false,
    "order" integer not null
);
create table if not exists statuses (
    id uuid primary key default gen_random_uuid(),
    collection_id uuid not null references collections(id) on delete cascade,
    name text not null,
    color text,
    "order" integer not null
);
create table if not exists entries (
    id uuid primary key default gen_random_uuid(),
    collection_id uuid not null references collections(id) on delete cascade,
    status_id uuid references statuses(id) on delete no action,
    created_by uuid,
    assigned_to uuid,
    created_at timestamptz not null default now(),
    updated_at timestamptz not null default now()
);
create table if not exists entry_values (
    id uuid primary key default gen_random_uuid(),
    entry_id uuid not null references entries(id) on delete cascade,
    field_id uuid not null references fields(id) on delete cascade,
    value text,
    unique (entry_id, field_id)
);
create table if not exists comments (
    id uuid primary key default gen_random_uuid(),
    entry_id uuid not null references entries(id) on delete cascade,
    user_id uuid references users(id),
    content text not null,
    created_at timestamptz not null default now()
);
create table if not exists documents (
    id uuid primary key default gen_random_uuid(),
    collection_id uuid not null references collections(id) on delete cascade,
    entry_id uuid references entries(id) on delete cascade,
    name text not null,
    type text,
    url text,
    storage_path text not null,
    size bigint not null default 0,
    content_type text,
    created_by uuid,
    created_at timestamptz not null default now()
);
"""


def _to_iso(value):
    if isinstance(value, datetime):
        return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
    if isinstance(value, date):
        return value.isoformat()
    return value


def _check_table(table: str) -> None:
    if table not in COLUMNS:
        raise NotFoundError(message=f"Unknown table: {table}", path="table", detail={"table": table})


def _ident(table: str, column: str) -> str:
    if column not in COLUMNS[table]:
        raise NotFoundError(message=f"Unknown column {table}.{column}", path=f"{table}.{column}")
    return f'"{column}"'


def _param(table: str, column: str, value: Any) -> Any:
    if (table, column) in JSON_COLUMNS and value is not None:
        return psycopg2.extras.Json(value)
    return value


def _normalize_row(row: dict) -> dict:
    out = {}
    for key, value in row.items():
        if key == "id" or key.endswith("_id") or key in ("created_by", "assigned_to"):
            out[key] = str(value) if value is not None else None
        else:
            out[key] = _to_iso(value)
    return out


def build_insert(table: str, row: dict) -> Tuple[str, list]:
    _check_table(table)
    columns = [col for col in row if col in COLUMNS[table]]
    if not columns:
        return f'insert into "{table}" default values returning *', []
    names = ", ".join(_ident(table, col) for col in columns)
    marks = ", ".join(["%s"] * len(columns))
    params = [_param(table, col, row[col]) for col in columns]
    return f'insert into "{table}" ({names}) values ({marks}) returning *', params


def build_update(table: str, ids: List[str], patch: dict) -> Tuple[str, list]:
    _check_table(table)
    columns = [col for col in patch if col in COLUMNS[table] and col != "id"]
    if not columns:
        raise NotFoundError(message=f"No updatable columns for {table}", path="patch", detail={"keys": sorted(patch)})
    sets = [f"{_ident(table, col)} = %s" for col in columns]
    params = [_param(table, col, patch[col]) for col in columns]
    if table in TOUCH_UPDATED_AT and "updated_at" not in columns:
        sets.append('"updated_at" = now()')
    params.append(list(ids))
    return f'update "{table}" set {", ".join(sets)} where "id" = any(%s::uuid[]) returning *', params


def build_upsert(table: str, row: dict, on_conflict: Iterable[str]) -> Tuple[str, list]:
    sql, params = build_insert(table, row)
    conflict = [_ident(table, col) for col in on_conflict]
    updates = [col for col in row if col in COLUMNS[table] and col not in on_conflict and col != "id"]
    head = sql[: -len(" returning *")]
    if updates:
        action = "do update set " + ", ".join(f"{_ident(table, col)} = excluded.{_ident(table, col)}" for col in updates)
    else:
        action = "do nothing"
    return f"{head} on conflict ({', '.join(conflict)}) {action} returning *", params


def build_delete(table: str, row_id: str) -> Tuple[str, list]:
    _check_table(table)
    return f'delete from "{table}" where "id" = %s', [row_id]


def build_select(
    table: str,
    filters: dict | None = None,
    order_by: str | List[str] | None = None,
    limit: int | None = None,
) -> Tuple[str, list]:
    _check_table(table)
    clauses: List[str] = []
    params: list = []
    for column, expected in (filters or {}).items():
        ident = _ident(table, column)
        if expected is None:
            clauses.append(f"{ident} is null")
        elif isinstance(expected, (list, tuple, set)):
            cast = "::uuid[]" if column == "id" or column.endswith("_id") else ""
            clauses.append(f"{ident} = any(%s{cast})")
            params.append(list(expected))
        else:
            clauses.append(f"{ident} = %s")
            params.append(expected)
    sql = f'select * from "{table}"'
    if clauses:
        sql += " where " + " and ".join(clauses)
    keys = [order_by] if isinstance(order_by, str) else list(order_by or [])
    if keys:
        parts = []
        for term in keys:
            desc = term.startswith("-")
            column = term[1:] if desc else term
            parts.append(f"{_ident(table, column)} {'desc' if desc else 'asc'}")
        sql += " order by " + ", ".join(parts)
    if limit is not None:
        sql += " limit %s"
        params.append(int(limit))
    return sql, params


def map_db_error(exc: Exception) -> RemoteError:
    """Translate a psycopg2 error into a RemoteError subclass."""
    pgcode = getattr(exc, "pgcode", None)
    diag = getattr(exc, "diag", None)
    detail = {
        "pgcode": pgcode,
        "constraint": getattr(diag, "constraint_name", None),
        "table": getattr(diag, "table_name", None),
    }
    message = (getattr(diag, "message_primary", None) or str(exc) or exc.__class__.__name__).strip()
    if pgcode == psycopg2.errorcodes.FOREIGN_KEY_VIOLATION:
        return ForeignKeyConflict(message=message, detail=detail)
    if pgcode == psycopg2.errorcodes.UNIQUE_VIOLATION:
        return ReferentialConflict(message=message, code="UNIQUE_VIOLATION", detail=detail)
    if isinstance(exc, (psycopg2.OperationalError, psycopg2.InterfaceError)):
        return TransportFailure(message=message, detail=detail)
    return RemoteError(message=message, detail=detail)


def ensure_schema() -> None:
    with get_conn() as conn:
        execute(conn, SCHEMA_SQL, query_name="schema.ensure")
    logger.info("db_schema_ready")


class DbPersistence:
    async def _run(self, fn, *args):
        try:
            return await anyio.to_thread.run_sync(fn, *args)
        except psycopg2.Error as exc:
            mapped = map_db_error(exc)
            logger.warning("db_error code=%s pgcode=%s message=%s", mapped.code, getattr(exc, "pgcode", None), mapped.message)
            raise mapped from exc

    def _insert_sync(self, table: str, rows: List[dict]) -> List[dict]:
        out: List[dict] = []
        with get_conn() as conn:
            for row in rows:
                sql, params = build_insert(table, row)
                out.extend(fetch_all(conn, sql, params, query_name=f"{table}.insert"))
        return [_normalize_row(r) for r in out]

    def _update_sync(self, table: str, ids: List[str], patch: dict) -> List[dict]:
        sql, params = build_update(table, ids, patch)
        with get_conn() as conn:
            rows = fetch_all(conn, sql, params, query_name=f"{table}.update")
        if len(rows) != len(set(ids)):
            found = {str(r.get("id")) for r in rows}
            raise NotFoundError(message=f"{table} row not found", path=f"{table}.id", detail={"ids": [i for i in ids if i not in found]})
        return [_normalize_row(r) for r in rows]

    def _upsert_sync(self, table: str, rows: List[dict], on_conflict: Tuple[str, ...]) -> List[dict]:
        out: List[dict] = []
        with get_conn() as conn:
            for row in rows:
                sql, params = build_upsert(table, row, on_conflict)
                out.extend(fetch_all(conn, sql, params, query_name=f"{table}.upsert"))
        return [_normalize_row(r) for r in out]

    def _delete_sync(self, table: str, row_id: str) -> bool:
        sql, params = build_delete(table, row_id)
        with get_conn() as conn:
            return execute(conn, sql, params, query_name=f"{table}.delete") > 0

    def _batch_sync(self, ops: List[dict]) -> List[dict]:
        out: List[dict] = []
        with get_conn() as conn:
            for op in ops:
                table, row_id = op["table"], op["id"]
                if op["op"] == "delete":
                    sql, params = build_delete(table, row_id)
                    if execute(conn, sql, params, query_name=f"{table}.batch_delete") == 0:
                        raise NotFoundError(message=f"{table} row not found", path=f"{table}.id", detail={"ids": [row_id]})
                elif op["op"] == "update":
                    sql, params = build_update(table, [row_id], op["patch"])
                    rows = fetch_all(conn, sql, params, query_name=f"{table}.batch_update")
                    if not rows:
                        raise NotFoundError(message=f"{table} row not found", path=f"{table}.id", detail={"ids": [row_id]})
                    out.extend(rows)
                else:
                    raise ValueError(f"unsupported batch op: {op['op']}")
        return [_normalize_row(r) for r in out]

    def _query_sync(self, table: str, filters: dict | None, order_by, embed: List[str], limit: int | None) -> List[dict]:
        sql, params = build_select(table, filters, order_by, limit)
        with get_conn() as conn:
            rows = [_normalize_row(r) for r in fetch_all(conn, sql, params, query_name=f"{table}.query")]
            relations = RELATIONS.get(table, {})
            for name in embed:
                if name not in relations:
                    raise NotFoundError(message=f"No relation {name} on {table}", path="embed", detail={"table": table, "embed": name})
                target, column, kind, order_column = relations[name]
                if kind == "many":
                    keys = [r["id"] for r in rows]
                    child_sql, child_params = build_select(target, {column: keys}, order_column)
                    children = [_normalize_row(r) for r in fetch_all(conn, child_sql, child_params, query_name=f"{table}.embed.{name}")]
                    for row in rows:
                        row[name] = [c for c in children if c.get(column) == row["id"]]
                else:
                    keys = sorted({r[column] for r in rows if r.get(column)})
                    parent_sql, parent_params = build_select(target, {"id": keys})
                    parents = {p["id"]: p for p in (_normalize_row(r) for r in fetch_all(conn, parent_sql, parent_params, query_name=f"{table}.embed.{name}"))}
                    for row in rows:
                        row[name] = parents.get(row.get(column))
        return rows

    async def insert(self, table: str, rows: dict | Iterable[dict]) -> List[dict]:
        row_list = [rows] if isinstance(rows, dict) else list(rows)
        return await self._run(self._insert_sync, table, row_list)

    async def update(self, table: str, ids: str | Iterable[str], patch: dict) -> List[dict]:
        id_list = [ids] if isinstance(ids, str) else list(ids)
        return await self._run(self._update_sync, table, id_list, patch)

    async def upsert(self, table: str, rows: dict | Iterable[dict], on_conflict) -> List[dict]:
        row_list = [rows] if isinstance(rows, dict) else list(rows)
        return await self._run(self._upsert_sync, table, row_list, tuple(on_conflict))

    async def delete(self, table: str, row_id: str) -> bool:
        return await self._run(self._delete_sync, table, row_id)

    async def query(
        self,
        table: str,
        filters: dict | None = None,
        order_by: str | List[str] | None = None,
        embed: Iterable[str] | None = None,
        limit: int | None = None,
    ) -> List[dict]:
        return await self._run(self._query_sync, table, filters, order_by, list(embed or ()), limit)

    async def write_batch(self, ops: Iterable[dict]) -> List[dict]:
        """Run delete/update ops in one transaction; any failure rolls all back."""
        return await self._run(self._batch_sync, list(ops))
