"""Unit tests for DB query instrumentation helpers."""

from __future__ import annotations

from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from typing import Any

import apps.backend.db as db_mod
import apps.backend.db_metrics as db_metrics
from apps.backend import catalog_store
from contracts.catalog import InstanceFamily
from infra.config import Settings


def _use_env(monkeypatch: Any, **env: str) -> None:
    """Point db_metrics at settings built from ``env`` only."""
    settings = Settings.from_env(env=env, env_file=".missing.env")
    monkeypatch.setattr(db_metrics, "get_settings", lambda: settings)


class _FakeCursor:
    """Minimal cursor implementation used for DB instrumentation tests."""

    def __init__(self) -> None:
        self.executed_sql: list[str] = []
        self.executed_many_sql: list[str] = []
        self.description = [("ok", None, None, None, None, None, None)]
        self.rows: list[tuple[Any, ...]] = [(1,)]

    def __enter__(self) -> _FakeCursor:
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:  # type: ignore[no-untyped-def]
        return False

    def execute(self, sql: str, params: Sequence[Any]) -> None:
        """Record execute SQL."""
        _ = params
        self.executed_sql.append(str(sql))

    def executemany(self, sql: str, seq_of_params: Sequence[Sequence[Any]]) -> None:
        """Record executemany SQL."""
        _ = seq_of_params
        self.executed_many_sql.append(str(sql))

    def fetchone(self) -> tuple[int]:
        """Return one fixed row."""
        return (1,)

    def fetchall(self) -> list[tuple[Any, ...]]:
        """Return fixed rows."""
        return list(self.rows)


class _FakeConn:
    """Minimal connection exposing cursor()."""

    def __init__(self, cursor: _FakeCursor) -> None:
        self._cursor = cursor

    def cursor(self) -> _FakeCursor:
        """Return shared fake cursor instance."""
        return self._cursor


def test_measure_query_emits_histogram(monkeypatch: Any) -> None:
    """measure_query should emit a histogram observation with query tag."""
    _use_env(monkeypatch, DB_QUERY_METRICS_ENABLED="1", DB_SLOW_QUERY_THRESHOLD_MS="9999")

    ticks = iter([1.0, 1.25])
    monkeypatch.setattr(db_metrics.time, "perf_counter", lambda: next(ticks))

    seen: list[tuple[str, float, list[str]]] = []

    def _emit(name: str, value: float, tags: Sequence[str]) -> None:
        seen.append((name, value, list(tags)))

    db_metrics.register_histogram_emitter(_emit)
    try:
        with db_metrics.measure_query("upsert_family_conn"):
            pass
    finally:
        db_metrics.register_histogram_emitter(None)

    assert len(seen) == 1
    metric_name, value, tags = seen[0]
    assert metric_name == "db_query_duration_ms"
    assert value == 250.0
    assert tags == ["query:upsert_family_conn"]


def test_measure_query_logs_slow_query(monkeypatch: Any, caplog: Any) -> None:
    """measure_query should emit warning logs when threshold is exceeded."""
    _use_env(monkeypatch, DB_QUERY_METRICS_ENABLED="1", DB_SLOW_QUERY_THRESHOLD_MS="10")

    ticks = iter([2.0, 2.05])  # 50ms
    monkeypatch.setattr(db_metrics.time, "perf_counter", lambda: next(ticks))

    caplog.set_level("WARNING")
    with db_metrics.measure_query("price_view_conn"):
        pass

    messages = [r.message for r in caplog.records]
    assert any("slow_query query_name=price_view_conn duration_ms=50.00" in m for m in messages)


def test_measure_query_disabled_skips_emission(monkeypatch: Any) -> None:
    """measure_query should not emit metrics when instrumentation is disabled."""
    _use_env(monkeypatch, DB_QUERY_METRICS_ENABLED="0", DB_SLOW_QUERY_THRESHOLD_MS="0")

    seen: list[tuple[str, float, list[str]]] = []

    def _emit(name: str, value: float, tags: Sequence[str]) -> None:
        seen.append((name, value, list(tags)))

    db_metrics.register_histogram_emitter(_emit)
    try:
        with db_metrics.measure_query("disabled_case"):
            pass
    finally:
        db_metrics.register_histogram_emitter(None)

    assert seen == []


def test_catalog_statements_are_labelled_by_primitive_and_verb(monkeypatch: Any) -> None:
    """Catalog SQL runs through the db primitives, which label each statement."""
    cursor = _FakeCursor()
    cursor.rows = [("m5.large", 2, 8.0, "General Purpose", "https://aws.amazon.com/ec2/instance-types/m5/", 0.096, None)]
    conn = _FakeConn(cursor)

    measured: list[str] = []

    @contextmanager
    def _capture(name: str) -> Iterator[None]:
        measured.append(name)
        yield

    monkeypatch.setattr(db_mod, "measure_query", _capture)

    catalog_store.upsert_family_conn(conn, InstanceFamily(family_name="m5", family_type="General Purpose"))
    (row,) = catalog_store.price_view_conn(conn)
    db_mod.execute_many_conn(conn, "DELETE FROM inbound_email WHERE id = %s", [("a",), ("b",)])
    db_mod.execute_many_conn(conn, "DELETE FROM inbound_email WHERE id = %s", [])

    assert measured == ["execute_conn:insert", "fetch_all_conn:select", "execute_many_conn:delete"]
    assert row["instance_type"] == "m5.large"
    assert row["ncpu"] == 2
    assert row["reserved_price"] is None
    assert cursor.executed_many_sql == ["DELETE FROM inbound_email WHERE id = %s"]
