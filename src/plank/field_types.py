"""Field type registry.

Every field type tag maps to one `FieldTypeHandler` holding four rules:

- parse: stored string -> typed Python value
- serialize: typed value (or a raw string) -> canonical stored string
- display: stored string -> read-only text, or `InvalidFormat` when unparsable
- validate: (field, stored string) -> list of issues

The table is closed over `FieldType`; `_check_registry` fails the import when a
member has no handler.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Any, Callable, Dict, List

from .errors import InvalidFormatError, Issue, SchemaError, make_issue


class FieldType(str, Enum):
    TEXT = "text"
    SELECT = "select"
    DATE = "date"
    CHECKBOX = "checkbox"
    FILE = "file"
    NUMBER = "number"
    USER = "user"


FIELD_TYPES = tuple(t.value for t in FieldType)

EMPTY_DISPLAY = "-"

_INT_RE = re.compile(r"^[+-]?\d+$")


@dataclass(frozen=True)
class InvalidFormat:
    """Display result for a stored value that does not parse for its type."""

    raw: Any
    expected: str

    def __str__(self) -> str:
        return f"Invalid {self.expected}"


@dataclass(frozen=True)
class FieldTypeHandler:
    parse: Callable[[Any], Any]
    serialize: Callable[[Any], str | None]
    display: Callable[[Any], "str | InvalidFormat"]
    validate: Callable[[dict, Any], List[Issue]]


def _is_blank(raw: Any) -> bool:
    return raw is None or (isinstance(raw, str) and raw.strip() == "")


def _field_path(field: dict) -> str | None:
    return field.get("id") or field.get("name")


def _required_issue(field: dict) -> Issue:
    name = field.get("name") or field.get("id")
    return make_issue("REQUIRED_FIELD", f"Missing required field: {name}", path=_field_path(field))


def _check_required(field: dict, raw: Any) -> List[Issue]:
    if field.get("required") and _is_blank(raw):
        return [_required_issue(field)]
    return []


# text, user, file

def _parse_str(raw: Any) -> str | None:
    if raw is None:
        return None
    return str(raw)


def _serialize_str(value: Any) -> str | None:
    if value is None:
        return None
    return str(value)


def _display_str(raw: Any) -> str:
    if _is_blank(raw):
        return EMPTY_DISPLAY
    return str(raw)


def _display_file(raw: Any) -> str:
    if _is_blank(raw):
        return EMPTY_DISPLAY
    path = str(raw).split("?", 1)[0].rstrip("/")
    return path.rsplit("/", 1)[-1] or str(raw)


def _validate_str(field: dict, raw: Any) -> List[Issue]:
    return _check_required(field, raw)


# select

def _validate_select(field: dict, raw: Any) -> List[Issue]:
    issues = _check_required(field, raw)
    if _is_blank(raw):
        return issues
    options = field.get("options") or []
    if raw not in options:
        issues.append(
            make_issue(
                "INVALID_OPTION",
                f"{field.get('name') or field.get('id')} must be one of {options}",
                path=_field_path(field),
                detail={"value": raw, "options": list(options)},
            )
        )
    return issues


# checkbox

def _parse_checkbox(raw: Any) -> bool:
    if isinstance(raw, bool):
        return raw
    return raw == "true"


def _serialize_checkbox(value: Any) -> str:
    if value is None:
        return "false"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, str) and value.strip().lower() in ("true", "false"):
        return value.strip().lower()
    raise InvalidFormatError(message=f"Not a checkbox value: {value!r}", detail={"value": repr(value)})


def _display_checkbox(raw: Any) -> str:
    return "Yes" if _parse_checkbox(raw) else "No"


def _validate_checkbox(field: dict, raw: Any) -> List[Issue]:
    issues: List[Issue] = []
    if raw is not None and raw not in ("true", "false"):
        issues.append(
            make_issue("INVALID_CHECKBOX", "checkbox value must be 'true' or 'false'", path=_field_path(field), detail={"value": raw})
        )
    if field.get("required") and raw != "true":
        issues.append(_required_issue(field))
    return issues


# number

def _parse_number(raw: Any) -> int | float | None:
    if _is_blank(raw):
        return None
    if isinstance(raw, bool):
        raise InvalidFormatError(message=f"Not a number: {raw!r}")
    if isinstance(raw, (int, float)):
        value = raw
    else:
        text = str(raw).strip()
        try:
            value = int(text) if _INT_RE.match(text) else float(text)
        except ValueError as exc:
            raise InvalidFormatError(message=f"Not a number: {raw!r}", detail={"value": raw}) from exc
    if isinstance(value, float) and not math.isfinite(value):
        raise InvalidFormatError(message=f"Number must be finite: {raw!r}", detail={"value": str(raw)})
    return value


def _serialize_number(value: Any) -> str | None:
    number = _parse_number(value)
    if number is None:
        return None
    if isinstance(number, float):
        if number.is_integer():
            return str(int(number))
        return repr(number)
    return str(number)


def _display_number(raw: Any) -> "str | InvalidFormat":
    if _is_blank(raw):
        return EMPTY_DISPLAY
    try:
        return _serialize_number(raw) or EMPTY_DISPLAY
    except InvalidFormatError:
        return InvalidFormat(raw=raw, expected="number")


def _validate_number(field: dict, raw: Any) -> List[Issue]:
    issues = _check_required(field, raw)
    if _is_blank(raw):
        return issues
    try:
        _parse_number(raw)
    except InvalidFormatError as exc:
        issues.append(make_issue("INVALID_NUMBER", exc.message, path=_field_path(field), detail={"value": raw}))
    return issues


# date

def _parse_date(raw: Any) -> date | None:
    if _is_blank(raw):
        return None
    if isinstance(raw, datetime):
        return raw.date()
    if isinstance(raw, date):
        return raw
    text = str(raw).strip()
    try:
        if "T" in text or " " in text:
            return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
        return date.fromisoformat(text)
    except ValueError as exc:
        raise InvalidFormatError(message=f"Not a date (YYYY-MM-DD): {raw!r}", detail={"value": text}) from exc


def _serialize_date(value: Any) -> str | None:
    parsed = _parse_date(value)
    return parsed.isoformat() if parsed else None


def _display_date(raw: Any) -> "str | InvalidFormat":
    if _is_blank(raw):
        return EMPTY_DISPLAY
    try:
        parsed = _parse_date(raw)
    except InvalidFormatError:
        return InvalidFormat(raw=raw, expected="date")
    return f"{parsed:%b} {parsed.day}, {parsed.year}"


def _validate_date(field: dict, raw: Any) -> List[Issue]:
    issues = _check_required(field, raw)
    if _is_blank(raw):
        return issues
    try:
        _parse_date(raw)
    except InvalidFormatError as exc:
        issues.append(make_issue("INVALID_DATE", exc.message, path=_field_path(field), detail={"value": raw}))
    return issues


_TEXT = FieldTypeHandler(parse=_parse_str, serialize=_serialize_str, display=_display_str, validate=_validate_str)

_HANDLERS: Dict[FieldType, FieldTypeHandler] = {
    FieldType.TEXT: _TEXT,
    FieldType.SELECT: FieldTypeHandler(parse=_parse_str, serialize=_serialize_str, display=_display_str, validate=_validate_select),
    FieldType.DATE: FieldTypeHandler(parse=_parse_date, serialize=_serialize_date, display=_display_date, validate=_validate_date),
    FieldType.CHECKBOX: FieldTypeHandler(
        parse=_parse_checkbox, serialize=_serialize_checkbox, display=_display_checkbox, validate=_validate_checkbox
    ),
    FieldType.FILE: FieldTypeHandler(parse=_parse_str, serialize=_serialize_str, display=_display_file, validate=_validate_str),
    FieldType.NUMBER: FieldTypeHandler(parse=_parse_number, serialize=_serialize_number, display=_display_number, validate=_validate_number),
    FieldType.USER: _TEXT,
}


def _check_registry() -> None:
    missing = [t.value for t in FieldType if t not in _HANDLERS]
    if missing:
        raise SchemaError(message=f"Field types without handlers: {missing}", code="FIELD_TYPE_UNHANDLED")


_check_registry()


def field_type(tag: Any) -> FieldType:
    if isinstance(tag, FieldType):
        return tag
    try:
        return FieldType(tag)
    except ValueError as exc:
        raise SchemaError(
            message=f"Unknown field type: {tag!r}",
            code="UNKNOWN_FIELD_TYPE",
            detail={"type": tag, "allowed": list(FIELD_TYPES)},
        ) from exc


def handler_for(tag: Any) -> FieldTypeHandler:
    return _HANDLERS[field_type(tag)]


def parse_value(field: dict, raw: Any) -> Any:
    return handler_for(field.get("type")).parse(raw)


def serialize_value(field: dict, value: Any) -> str | None:
    return handler_for(field.get("type")).serialize(value)


def display_value(field: dict, raw: Any) -> "str | InvalidFormat":
    return handler_for(field.get("type")).display(raw)


def validate_value(field: dict, raw: Any) -> List[Issue]:
    return handler_for(field.get("type")).validate(field, raw)


def normalize_options(tag: Any, options: Any) -> List[str]:
    """Clean a field's option list; only `select` keeps options."""
    ftype = field_type(tag)
    if ftype is not FieldType.SELECT:
        return []
    if options is None:
        options = []
    if not isinstance(options, (list, tuple)):
        raise InvalidFormatError(message="options must be a list of strings", path="options")
    cleaned: List[str] = []
    for opt in options:
        if not isinstance(opt, str) or not opt.strip():
            raise InvalidFormatError(message="options must be non-empty strings", path="options", detail={"option": repr(opt)})
        value = opt.strip()
        if value in cleaned:
            raise InvalidFormatError(message=f"Duplicate option: {value}", path="options", detail={"option": value})
        cleaned.append(value)
    if not cleaned:
        raise InvalidFormatError(message="select fields need at least one option", path="options")
    return cleaned
