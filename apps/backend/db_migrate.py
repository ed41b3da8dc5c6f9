"""
Schema migration runner for the catalog tables.

Migrations are plain ``NNN_name.sql`` files applied in name order; applied
versions are recorded in ``schema_migrations``.

Usage:
  awsapp migrate
  awsapp migrate --dry-run
  python -m apps.backend.db_migrate --migrations-dir migrations
"""

from __future__ import annotations

import argparse
from pathlib import Path

from apps.backend.db import db_conn
from infra.logging_config import StructuredLogger

log = StructuredLogger(__name__)

DEFAULT_MIGRATIONS_DIR = Path(__file__).resolve().parents[2] / "migrations"


def _ensure_migrations_table(conn) -> None:
    with conn.cursor() as cur:
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS schema_migrations (
              version TEXT PRIMARY KEY,
              applied_at TIMESTAMPTZ NOT NULL DEFAULT now()
            )
            """
        )
    conn.commit()


def _applied_versions(conn) -> set[str]:
    with conn.cursor() as cur:
        cur.execute("SELECT version FROM schema_migrations")
        rows = cur.fetchall() or []
    return {str(r[0]) for r in rows if r and r[0]}


def _split_sql(sql: str) -> list[str]:
    """Split a SQL file on ``;`` outside single quotes and ``--`` comments."""
    statements: list[str] = []
    buf: list[str] = []
    in_squote = False
    in_comment = False

    for i, ch in enumerate(sql):
        nxt = sql[i + 1] if i + 1 < len(sql) else ""
        if in_comment:
            if ch == "\n":
                in_comment = False
            continue
        if in_squote:
            buf.append(ch)
            if ch == "'":
                in_squote = False
            continue
        if ch == "-" and nxt == "-":
            in_comment = True
            continue
        if ch == "'":
            in_squote = True
            buf.append(ch)
            continue
        if ch == ";":
            stmt = "".join(buf).strip()
            if stmt:
                statements.append(stmt)
            buf = []
            continue
        buf.append(ch)

    tail = "".join(buf).strip()
    if tail:
        statements.append(tail)
    return statements


def _apply_sql_migration(conn, path: Path) -> None:
    """Run every statement of one file inside a single transaction."""
    with conn.cursor() as cur:
        for stmt in _split_sql(path.read_text(encoding="utf-8")):
            cur.execute(stmt)
        cur.execute("INSERT INTO schema_migrations (version) VALUES (%s)", (path.stem,))
    conn.commit()


def _iter_migration_files(migrations_dir: Path) -> list[Path]:
    if not migrations_dir.exists():
        return []
    return sorted((p for p in migrations_dir.iterdir() if p.is_file() and p.suffix == ".sql"), key=lambda p: p.name)


def pending_migration_versions(conn, *, migrations_dir: Path) -> list[str]:
    """Versions present on disk but not yet recorded in ``schema_migrations``."""
    _ensure_migrations_table(conn)
    applied = _applied_versions(conn)
    return [p.stem for p in _iter_migration_files(migrations_dir) if p.stem not in applied]


def ensure_schema_current(*, migrations_dir: Path = DEFAULT_MIGRATIONS_DIR) -> None:
    """Fail fast when the database is behind the local migrations."""
    with db_conn() as conn:
        pending = pending_migration_versions(conn, migrations_dir=migrations_dir)
    if pending:
        raise RuntimeError(
            f"Database schema is out of date. Pending migrations: {', '.join(pending)}. "
            "Run `awsapp migrate` before starting the API or the workers."
        )


def run_migrations(*, migrations_dir: Path = DEFAULT_MIGRATIONS_DIR, dry_run: bool = False) -> list[str]:
    """Apply pending migrations (or only report them with ``dry_run``); returns the versions."""
    with db_conn() as conn:
        pending_versions = set(pending_migration_versions(conn, migrations_dir=migrations_dir))
        pending = [p for p in _iter_migration_files(migrations_dir) if p.stem in pending_versions]

        if dry_run:
            for p in pending:
                print(f"PENDING: {p.name}")
            if not pending:
                print("No pending migrations.")
            return [p.stem for p in pending]

        for path in pending:
            print(f"Applying {path.name}...")
            try:
                _apply_sql_migration(conn, path)
            except Exception:
                conn.rollback()
                log.exception("migration_failed", migration=path.name)
                raise
            print(f"Applied {path.stem}")
        return [p.stem for p in pending]


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Apply database migrations.")
    parser.add_argument("--dry-run", action="store_true", help="Show pending migrations without applying.")
    parser.add_argument(
        "--migrations-dir",
        default=str(DEFAULT_MIGRATIONS_DIR),
        help="Path to migrations directory (default: ./migrations).",
    )
    args = parser.parse_args(argv)
    run_migrations(migrations_dir=Path(args.migrations_dir), dry_run=bool(args.dry_run))


if __name__ == "__main__":
    main()
