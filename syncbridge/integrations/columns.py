from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable

from syncbridge.core.errors import MalformedPayload

if TYPE_CHECKING:
    from syncbridge.integrations.webhook import WebhookRequest


class ColumnType(str, Enum):
    TEXT = "text"
    INTEGER = "integer"
    BIGINT = "bigint"
    FLOAT = "float"
    DOUBLE = "double"
    DECIMAL = "decimal"
    BOOLEAN = "boolean"
    DATE = "date"
    TIMESTAMP = "timestamp"
    OBJECT = "object"
    TEXT_ARRAY = "text_array"
    INTEGER_ARRAY = "integer_array"


class _Sentinel:
    def __init__(self, name: str) -> None:
        self._name = name

    def __repr__(self) -> str:
        return self._name


# Marks a value the row store must allocate from the integration's sequence.
SEQUENCE_NEXTVAL = _Sentinel("SEQUENCE_NEXTVAL")


@dataclass(frozen=True)
class ExtractionSource:
    resource: dict[str, Any]
    event: dict[str, Any] | None = None
    enrichment: dict[str, Any] | None = None
    request: WebhookRequest | None = None


Converter = Callable[[Any, ExtractionSource], Any]
Defaulter = Callable[[ExtractionSource], Any]
DataKey = str | tuple[str | int, ...]


def dig(document: Any, path: DataKey) -> Any:
    # Walk nested dicts/lists, returning None at the first missing hop.
    keys = (path,) if isinstance(path, str) else path
    current = document
    for key in keys:
        if isinstance(current, dict):
            current = current.get(key)
        elif isinstance(current, list) and isinstance(key, int) and -len(current) <= key < len(current):
            current = current[key]
        else:
            return None
        if current is None:
            return None
    return current


@dataclass(frozen=True)
class Column:
    name: str
    type: ColumnType
    data_key: DataKey | None = None
    event_key: DataKey | None = None
    from_enrichment: bool = False
    optional: bool = True
    converter: Converter | None = None
    defaulter: Defaulter | None = None
    index: bool = False
    unique: bool = False
    primary_key: bool = False
    # None leaves the stored column untouched instead of clearing it.
    skip_nil: bool = False

    def extract(self, source: ExtractionSource) -> Any:
        key = self.data_key if self.data_key is not None else self.name
        if self.from_enrichment:
            value = dig(source.enrichment, key)
        else:
            value = None
            if self.event_key is not None and source.event is not None:
                value = dig(source.event, self.event_key)
            if value is None:
                value = dig(source.resource, key)
        if self.converter is not None:
            value = self.converter(value, source)
        if value is None and self.defaulter is not None:
            value = self.defaulter(source)
        if value is None and not self.optional:
            raise MalformedPayload(f"payload has no value for required column {self.name}")
        return value


@dataclass(frozen=True)
class IndexDescriptor:
    name: str
    columns: tuple[str, ...]
    unique: bool = False


@dataclass(frozen=True)
class TableDescriptor:
    name: str
    columns: tuple[Column, ...]
    indices: tuple[IndexDescriptor, ...] = field(default_factory=tuple)

    def column(self, name: str) -> Column:
        for col in self.columns:
            if col.name == name:
                return col
        raise KeyError(name)


def to_timestamp(value: Any, source: ExtractionSource | None = None) -> datetime | None:
    # Accept ISO-8601 strings (including a trailing Z), datetimes and unix seconds.
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as exc:
            raise MalformedPayload(f"unparseable timestamp {value!r}") from exc
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    raise MalformedPayload(f"unparseable timestamp {value!r}")


def to_date(value: Any, source: ExtractionSource | None = None) -> date | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError as exc:
        raise MalformedPayload(f"unparseable date {value!r}") from exc


def to_int(value: Any, source: ExtractionSource | None = None) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise MalformedPayload(f"not an integer: {value!r}") from exc


def date_in_format(fmt: str) -> Converter:
    # For sources that send dates in a fixed non-ISO layout, such as "15-04-2024".
    def convert(value: Any, source: ExtractionSource | None = None) -> date | None:
        if value is None or value == "":
            return None
        try:
            return datetime.strptime(str(value), fmt).date()
        except ValueError as exc:
            raise MalformedPayload(f"date {value!r} does not match {fmt!r}") from exc

    return convert


def from_path_regex(pattern: str, *, cast: Callable[[str], Any] = str) -> Converter:
    # Read the value from the request path; payload values win when present.
    compiled = re.compile(pattern)

    def convert(value: Any, source: ExtractionSource) -> Any:
        if value is not None:
            return cast(value)
        if source.request is None:
            return None
        match = compiled.search(source.request.path)
        if match is None:
            return None
        return cast(match.group(1))

    return convert


def int_or_sequence_from_path(pattern: str) -> Converter:
    # Creates that carry no identifier get one from the integration's sequence.
    from_path = from_path_regex(pattern, cast=int)

    def convert(value: Any, source: ExtractionSource) -> Any:
        found = from_path(value, source)
        if found is not None:
            return found
        return SEQUENCE_NEXTVAL

    return convert


def now_defaulter(source: ExtractionSource) -> datetime:
    return datetime.now(timezone.utc)
