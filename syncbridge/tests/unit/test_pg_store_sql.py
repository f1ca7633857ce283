from __future__ import annotations

from datetime import datetime, timezone

from syncbridge.integrations.store import UpsertCommand
from syncbridge.persistence.replication import build_upsert_rows_sql, build_upsert_sql


def test_upsert_with_recency_guard() -> None:
    at = datetime(2024, 1, 1, tzinfo=timezone.utc)
    command = UpsertCommand(
        schema="public",
        table="fakes",
        key_column="my_id",
        key="a",
        values={"my_id": "a", "at": at},
        data={"my_id": "a", "n": 1},
        recency_column="at",
    )

    sql, params = build_upsert_sql(command)

    assert sql == (
        "INSERT INTO public.fakes AS t (my_id, at, data) VALUES (:v0, :v1, CAST(:data AS jsonb)) "
        "ON CONFLICT (my_id) DO UPDATE SET at = EXCLUDED.at, data = t.data || EXCLUDED.data "
        "WHERE (t.at IS NULL OR EXCLUDED.at >= t.at) "
        "AND ROW(t.at, t.data) IS DISTINCT FROM ROW(EXCLUDED.at, t.data || EXCLUDED.data) "
        "RETURNING t.*, (t.xmax = 0) AS _sb_inserted"
    )
    assert params == {"v0": "a", "v1": at, "data": '{"my_id":"a","n":1}'}


def test_upsert_without_recency_quotes_and_casts_objects() -> None:
    command = UpsertCommand(
        schema="Tenant",
        table="order",
        key_column="id",
        key=1,
        values={"id": 1, "enrichment": {"x": 1}},
        data={},
    )

    sql, params = build_upsert_sql(command)

    assert sql.startswith(
        'INSERT INTO "Tenant"."order" AS t (id, enrichment, data) '
        "VALUES (:v0, CAST(:v1 AS jsonb), CAST(:data AS jsonb))"
    )
    assert "IS NULL OR" not in sql
    assert params["v1"] == '{"x":1}'


def test_bulk_upsert_updates_non_key_columns() -> None:
    sql = build_upsert_rows_sql("public", "eps_stats", ("date", "episode_id"), ["date", "downloads", "episode_id"])
    assert sql == (
        "INSERT INTO public.eps_stats (date, downloads, episode_id) VALUES (:date, :downloads, :episode_id) "
        "ON CONFLICT (date, episode_id) DO UPDATE SET downloads = EXCLUDED.downloads"
    )


def test_bulk_upsert_of_key_only_rows_does_nothing_on_conflict() -> None:
    sql = build_upsert_rows_sql("public", "links", ("a", "b"), ["a", "b"])
    assert sql.endswith("ON CONFLICT (a, b) DO NOTHING")
