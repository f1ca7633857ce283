from __future__ import annotations

import json
import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Iterable, Mapping

from syncbridge.core.errors import MalformedPayload


logger = logging.getLogger(__name__)

# Replicated payloads are schema-less JSON objects.
Document = dict[str, Any]

HOUSEKEEPING_COLUMNS = frozenset({"pk"})


def parse_document_strict(raw: bytes | str | Mapping[str, Any] | None) -> Document:
    if raw is None:
        return {}
    if isinstance(raw, Mapping):
        return dict(raw)
    if isinstance(raw, bytes):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise MalformedPayload("body is not utf-8") from exc
    if not raw.strip():
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise MalformedPayload(f"body is not JSON: {exc.msg}") from exc
    if not isinstance(parsed, dict):
        raise MalformedPayload(f"body is a JSON {type(parsed).__name__}, not an object")
    return parsed


def parse_document(raw: bytes | str | Mapping[str, Any] | None) -> Document:
    # Webhook delivery must not fail on a bad body; store what we can.
    try:
        return parse_document_strict(raw)
    except MalformedPayload as exc:
        logger.warning("malformed_webhook_payload", extra={"reason": str(exc)})
        return {}


def merge_patch(stored: Mapping[str, Any] | None, incoming: Mapping[str, Any]) -> Document:
    # Shallow merge: incoming keys replace stored keys (explicit nulls included), absent keys survive.
    merged: Document = dict(stored or {})
    merged.update(incoming)
    return merged


def _json_default(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    raise TypeError(f"cannot serialize {type(value).__name__}")


def dumps(document: Any) -> str:
    return json.dumps(document, default=_json_default, separators=(",", ":"))


def json_safe(value: Any) -> Any:
    # Round-trip through JSON so datetimes and decimals become strings.
    return json.loads(dumps(value))


def canonical(document: Any) -> str:
    return json.dumps(document, default=_json_default, sort_keys=True, separators=(",", ":"))


def rows_differ(
    previous: Mapping[str, Any] | None,
    current: Mapping[str, Any] | None,
    *,
    ignore: Iterable[str] = HOUSEKEEPING_COLUMNS,
) -> bool:
    if previous is None or current is None:
        return previous is not current
    ignored = set(ignore)
    left = {k: v for k, v in previous.items() if k not in ignored}
    right = {k: v for k, v in current.items() if k not in ignored}
    return canonical(left) != canonical(right)
