from __future__ import annotations

from datetime import date, datetime, timezone

import pytest

from syncbridge.core.errors import MalformedPayload
from syncbridge.integrations.columns import (
    SEQUENCE_NEXTVAL,
    Column,
    ColumnType,
    ExtractionSource,
    date_in_format,
    dig,
    from_path_regex,
    int_or_sequence_from_path,
    to_timestamp,
)
from syncbridge.integrations.documents import (
    merge_patch,
    parse_document,
    parse_document_strict,
    rows_differ,
)
from syncbridge.integrations.webhook import WebhookRequest


def test_dig_walks_nested_documents() -> None:
    doc = {"a": {"b": [{"c": 1}]}}
    assert dig(doc, ("a", "b", 0, "c")) == 1
    assert dig(doc, ("a", "missing", "c")) is None
    assert dig(doc, ("a", "b", 5)) is None
    assert dig(doc, "a") == {"b": [{"c": 1}]}


def test_to_timestamp_accepts_common_shapes() -> None:
    expected = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
    assert to_timestamp("2024-01-02T03:04:05Z") == expected
    assert to_timestamp("2024-01-02T03:04:05") == expected
    assert to_timestamp(expected.timestamp()) == expected
    assert to_timestamp("") is None
    with pytest.raises(MalformedPayload):
        to_timestamp("yesterday")


def test_extract_prefers_event_then_resource_then_defaulter() -> None:
    column = Column("status", ColumnType.TEXT, event_key=("meta", "status"), defaulter=lambda source: "unknown")
    assert column.extract(ExtractionSource(resource={"status": "r"}, event={"meta": {"status": "e"}})) == "e"
    assert column.extract(ExtractionSource(resource={"status": "r"}, event={})) == "r"
    assert column.extract(ExtractionSource(resource={})) == "unknown"


def test_extract_reads_enrichment_columns() -> None:
    column = Column("extra", ColumnType.TEXT, from_enrichment=True)
    source = ExtractionSource(resource={"extra": "ignored"}, enrichment={"extra": "abc"})
    assert column.extract(source) == "abc"
    assert column.extract(ExtractionSource(resource={"extra": "ignored"})) is None


def test_required_column_without_value_is_malformed() -> None:
    column = Column("my_id", ColumnType.TEXT, optional=False)
    with pytest.raises(MalformedPayload):
        column.extract(ExtractionSource(resource={}))


def test_path_converters() -> None:
    request = WebhookRequest(path="/v1/service_integrations/svi_x/v2/listings/42", method="PUT")
    converter = from_path_regex(r"/v2/listings/(\d+)", cast=int)
    assert converter(None, ExtractionSource(resource={}, request=request)) == 42
    assert converter("7", ExtractionSource(resource={}, request=request)) == 7

    sequenced = int_or_sequence_from_path(r"/v2/listings/(\d+)")
    create = WebhookRequest(path="/v1/service_integrations/svi_x/v2/listings", method="POST")
    assert sequenced(None, ExtractionSource(resource={}, request=create)) is SEQUENCE_NEXTVAL
    assert sequenced(None, ExtractionSource(resource={}, request=request)) == 42


def test_parse_document_strict_rejects_non_objects() -> None:
    assert parse_document_strict(b'{"a": 1}') == {"a": 1}
    assert parse_document_strict(b"") == {}
    with pytest.raises(MalformedPayload):
        parse_document_strict(b"[1, 2]")
    with pytest.raises(MalformedPayload):
        parse_document_strict(b"\xff\xfe")
    assert parse_document(b"not json") == {}


def test_merge_patch_keeps_absent_keys_and_explicit_nulls() -> None:
    stored = {"name": "Casa Armadillo", "apt": "S123", "city": "Austin"}
    assert merge_patch(stored, {"apt": "X555", "city": None}) == {
        "name": "Casa Armadillo",
        "apt": "X555",
        "city": None,
    }


def test_rows_differ_ignores_housekeeping_columns() -> None:
    assert not rows_differ({"pk": 1, "a": date(2024, 1, 1)}, {"pk": 2, "a": date(2024, 1, 1)})
    assert rows_differ({"pk": 1, "a": 1}, {"pk": 1, "a": 2})
    assert rows_differ(None, {"a": 1})


def test_date_in_format_parses_the_layout_and_rejects_others() -> None:
    day_first = date_in_format("%d-%m-%Y")
    assert day_first("15-04-2024") == date(2024, 4, 15)
    assert day_first(None) is None
    with pytest.raises(MalformedPayload):
        day_first("2024-04-15")
