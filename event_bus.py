"""User-visible sync notices: envelope construction, validation and fan-out.

A notice is `{"name", "payload", "meta"}`. `meta` always carries the surface
that raised it and may point at one entity plus the surface fingerprint taken
when the notice was published.
"""

from __future__ import annotations

import copy
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Tuple

from plank.canonical_json import canonical_dumps
from plank.errors import PlankError


logger = logging.getLogger("plank.events")

Event = Dict[str, Any]
Handler = Callable[[Event], None]

SYNC_ROLLED_BACK = "sync.rolled_back"
SYNC_REJECTED = "sync.rejected"
RECORD_PARTIAL_WRITE = "record.partial_write"

SCHEMA_VERSION = "1"


@dataclass(eq=False)
class EventValidationError(PlankError):
    code: str = "EVENT_INVALID"


def _fail(code: str, message: str, path: str | None = None) -> None:
    raise EventValidationError(message=message, code=code, path=path)


def _is_text(value: Any) -> bool:
    return isinstance(value, str) and bool(value)


def _is_optional_str(value: Any) -> bool:
    return value is None or isinstance(value, str)


def _is_fingerprint(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value.startswith("sha256:"))


def _is_actor(value: Any) -> bool:
    return value is None or (isinstance(value, dict) and isinstance(value.get("id"), str))


def _is_utc_timestamp(value: Any) -> bool:
    if not isinstance(value, str) or not value.endswith("Z"):
        return False
    try:
        datetime.fromisoformat(value[:-1] + "+00:00")
    except ValueError:
        return False
    return True


# meta key -> (check, error code, message)
_META_RULES: List[Tuple[str, Callable[[Any], bool], str, str]] = [
    ("event_id", _is_text, "META_EVENT_ID_INVALID", "event_id must be a non-empty string"),
    ("occurred_at", _is_utc_timestamp, "META_OCCURRED_AT_INVALID", "occurred_at must be an ISO8601 UTC time ending in 'Z'"),
    ("surface", _is_text, "META_SURFACE_INVALID", "surface must be a non-empty string"),
    ("entity_id", _is_optional_str, "META_ENTITY_ID_INVALID", "entity_id must be a string or null"),
    ("snapshot_hash", _is_fingerprint, "META_SNAPSHOT_HASH_INVALID", "snapshot_hash must start with 'sha256:'"),
    ("actor", _is_actor, "META_ACTOR_INVALID", "actor must be null or an object with a string id"),
    ("trace_id", _is_optional_str, "META_TRACE_ID_INVALID", "trace_id must be a string or null"),
    ("schema_version", lambda v: v == SCHEMA_VERSION, "META_SCHEMA_VERSION_INVALID", f"schema_version must be '{SCHEMA_VERSION}'"),
]


def validate_event(event: Any) -> None:
    if not isinstance(event, dict):
        _fail("EVENT_INVALID", "event must be an object")
    if not _is_text(event.get("name")):
        _fail("EVENT_NAME_INVALID", "name must be a non-empty string", "name")

    payload = event.get("payload")
    if not isinstance(payload, dict):
        _fail("PAYLOAD_INVALID", "payload must be an object", "payload")
    try:
        canonical_dumps(payload)
    except (TypeError, ValueError) as exc:
        _fail("PAYLOAD_INVALID", str(exc), "payload")

    meta = event.get("meta")
    if not isinstance(meta, dict):
        _fail("META_INVALID", "meta must be an object", "meta")
    for key, check, code, message in _META_RULES:
        if not check(meta.get(key)):
            _fail(code, message, f"meta.{key}")


def make_event(name: str, payload: dict, meta: dict) -> Event:
    """Fill in id, timestamp and version, then validate."""
    if not isinstance(meta, dict):
        _fail("META_INVALID", "meta must be an object", "meta")
    stamped = {
        "event_id": str(uuid.uuid4()),
        "occurred_at": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
        "schema_version": SCHEMA_VERSION,
        **copy.deepcopy(meta),
    }
    event = {"name": name, "payload": copy.deepcopy(payload), "meta": stamped}
    validate_event(event)
    return event


def make_notice(
    name: str,
    surface: str,
    payload: dict,
    entity_id: str | None = None,
    actor_id: str | None = None,
    state_hash: str | None = None,
    trace_id: str | None = None,
) -> Event:
    """Build a user-visible notice event for one surface."""
    meta = {
        "surface": surface,
        "entity_id": entity_id,
        "snapshot_hash": state_hash,
        "actor": {"id": actor_id} if actor_id else None,
        "trace_id": trace_id,
    }
    return make_event(name, payload, meta)


class EventBus:
    """Synchronous fan-out. Every published notice also lands in the outbox."""

    def __init__(self, outbox: "Outbox | None" = None) -> None:
        self._outbox = outbox
        self._handlers: Dict[str, List[Handler]] = {}

    @property
    def outbox(self) -> "Outbox | None":
        return self._outbox

    def subscribe(self, name: str, handler: Handler) -> None:
        self._handlers.setdefault(name, []).append(handler)

    def unsubscribe(self, name: str, handler: Handler) -> bool:
        handlers = self._handlers.get(name) or []
        if handler not in handlers:
            return False
        handlers.remove(handler)
        if not handlers:
            self._handlers.pop(name, None)
        return True

    def publish(self, event: dict) -> None:
        validate_event(event)
        if self._outbox is not None:
            self._outbox.enqueue(event)
        meta = event["meta"]
        logger.info("notice_published name=%s surface=%s entity_id=%s", event["name"], meta["surface"], meta.get("entity_id"))
        for handler in list(self._handlers.get(event["name"], [])):
            try:
                handler(event)
            except Exception:
                logger.exception("notice_handler_failed name=%s event_id=%s", event["name"], meta["event_id"])
