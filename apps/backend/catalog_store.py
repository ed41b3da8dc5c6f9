"""Catalog persistence: instance taxonomy, prices, authorized users, mail, DMARC.

Two layers:
- ``*_conn`` functions take a caller-held psycopg2 connection and never
  commit, so a caller decides the transaction boundary.
- ``CatalogStore`` is the async facade used by the services. Each call runs
  on a worker thread with a pooled connection; catalog upserts commit once
  per row, and ``psycopg2.Error`` surfaces as ``PersistenceError``.

Streaming reads use a named (server-side) cursor so large listings are
consumed in ``itersize`` batches instead of one ``fetchall``.
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Callable, Iterable, Iterator, Sequence
from datetime import datetime, timezone
from typing import Any, ContextManager, Optional, TypeVar

import psycopg2

from apps.backend.db import db_conn, execute_conn, fetch_all_conn, fetch_one_conn
from apps.backend.db_metrics import measure_query
from contracts.catalog import (
    PRICE_ONDEMAND,
    PRICE_RESERVED,
    AuthorizedUser,
    DmarcRecord,
    InboundEmail,
    InstanceFamily,
    InstanceListRow,
    InstancePricing,
)
from contracts.errors import PersistenceError
from infra.logging_config import StructuredLogger

log = StructuredLogger(__name__)

T = TypeVar("T")

STREAM_ITERSIZE = 500


# ---------------------------
# Instance families / types
# ---------------------------

_UPSERT_FAMILY_SQL = """
INSERT INTO instance_family (family_name, family_type, data_url, use_for_spot)
VALUES (%s, %s, %s, %s)
ON CONFLICT (family_name) DO UPDATE SET
  family_type = EXCLUDED.family_type,
  data_url = COALESCE(EXCLUDED.data_url, instance_family.data_url)
"""

_UPSERT_INSTANCE_SQL = """
INSERT INTO instance_list (instance_type, family_name, n_cpu, memory_gib, generation)
VALUES (%s, %s, %s, %s, %s)
ON CONFLICT (instance_type) DO UPDATE SET
  family_name = EXCLUDED.family_name,
  n_cpu = EXCLUDED.n_cpu,
  memory_gib = EXCLUDED.memory_gib,
  generation = EXCLUDED.generation
"""

_UPSERT_PRICING_SQL = """
INSERT INTO instance_pricing (instance_type, price, price_type, price_timestamp)
VALUES (%s, %s, %s, %s)
ON CONFLICT (instance_type, price_type) DO UPDATE SET
  price = EXCLUDED.price,
  price_timestamp = EXCLUDED.price_timestamp
WHERE instance_pricing.price_timestamp <= EXCLUDED.price_timestamp
"""


def upsert_family_conn(conn: Any, family: InstanceFamily) -> int:
    """Insert or update one family. ``use_for_spot`` is only set on insert."""
    return execute_conn(
        conn,
        _UPSERT_FAMILY_SQL,
        (family.family_name, family.family_type, family.data_url, family.use_for_spot),
    )


def upsert_instance_conn(conn: Any, row: InstanceListRow) -> int:
    return execute_conn(
        conn,
        _UPSERT_INSTANCE_SQL,
        (row.instance_type, row.family_name, row.n_cpu, row.memory_gib, row.generation),
    )


def upsert_pricing_conn(conn: Any, row: InstancePricing) -> int:
    """Returns 0 when the stored observation is newer than ``row``."""
    return execute_conn(
        conn,
        _UPSERT_PRICING_SQL,
        (row.instance_type, row.price, row.price_type, row.price_timestamp),
    )


def _family_from_row(r: Sequence[Any]) -> InstanceFamily:
    return InstanceFamily(family_name=r[0], family_type=r[1], data_url=r[2], use_for_spot=bool(r[3]))


def _instance_from_row(r: Sequence[Any]) -> InstanceListRow:
    return InstanceListRow(
        instance_type=r[0],
        family_name=r[1],
        n_cpu=int(r[2]),
        memory_gib=float(r[3]),
        generation=r[4],
    )


def _pricing_from_row(r: Sequence[Any]) -> InstancePricing:
    return InstancePricing(
        id=int(r[0]),
        instance_type=r[1],
        price=float(r[2]),
        price_type=r[3],
        price_timestamp=r[4],
    )


def stream_rows(conn: Any, sql: str, params: Sequence[Any] = (), *, itersize: int = STREAM_ITERSIZE) -> Iterator[tuple]:
    """Yield rows through a server-side cursor. Must run inside a transaction."""
    name = f"catalog_stream_{uuid.uuid4().hex[:12]}"
    with conn.cursor(name=name) as cur:
        cur.itersize = itersize
        with measure_query(f"stream_rows:{sql.split(None, 1)[0].lower()}"):
            cur.execute(sql, params)
        for row in cur:
            yield row


def iter_families_conn(conn: Any) -> Iterator[InstanceFamily]:
    sql = "SELECT family_name, family_type, data_url, use_for_spot FROM instance_family ORDER BY family_name"
    for r in stream_rows(conn, sql):
        yield _family_from_row(r)


def iter_instances_conn(conn: Any) -> Iterator[InstanceListRow]:
    sql = "SELECT instance_type, family_name, n_cpu, memory_gib, generation FROM instance_list ORDER BY instance_type"
    for r in stream_rows(conn, sql):
        yield _instance_from_row(r)


def iter_pricing_conn(conn: Any) -> Iterator[InstancePricing]:
    sql = (
        "SELECT id, instance_type, price, price_type, price_timestamp "
        "FROM instance_pricing ORDER BY instance_type, price_type"
    )
    for r in stream_rows(conn, sql):
        yield _pricing_from_row(r)


def get_family_conn(conn: Any, family_name: str) -> Optional[InstanceFamily]:
    row = fetch_one_conn(
        conn,
        "SELECT family_name, family_type, data_url, use_for_spot FROM instance_family WHERE family_name = %s",
        (family_name,),
    )
    return _family_from_row(row) if row else None


def get_instance_conn(conn: Any, instance_type: str) -> Optional[InstanceListRow]:
    row = fetch_one_conn(
        conn,
        "SELECT instance_type, family_name, n_cpu, memory_gib, generation FROM instance_list WHERE instance_type = %s",
        (instance_type,),
    )
    return _instance_from_row(row) if row else None


_PRICE_VIEW_SQL = """
SELECT l.instance_type, l.n_cpu, l.memory_gib, f.family_type, f.data_url,
       od.price AS ondemand_price, rs.price AS reserved_price
FROM instance_list l
JOIN instance_family f ON f.family_name = l.family_name
LEFT JOIN instance_pricing od ON od.instance_type = l.instance_type AND od.price_type = %s
LEFT JOIN instance_pricing rs ON rs.instance_type = l.instance_type AND rs.price_type = %s
ORDER BY l.n_cpu, l.memory_gib, l.instance_type
"""


def price_view_conn(conn: Any) -> list[dict[str, Any]]:
    """Type x family x ondemand/reserved price rows; spot is merged by the caller."""
    rows = fetch_all_conn(conn, _PRICE_VIEW_SQL, (PRICE_ONDEMAND, PRICE_RESERVED))
    return [
        {
            "instance_type": r[0],
            "ncpu": int(r[1]),
            "memory": float(r[2]),
            "instance_family": r[3],
            "data_url": r[4],
            "ondemand_price": r[5],
            "reserved_price": r[6],
        }
        for r in rows
    ]


# ---------------------------
# Authorized users
# ---------------------------

def list_authorized_users_conn(conn: Any) -> list[AuthorizedUser]:
    rows = fetch_all_conn(
        conn,
        "SELECT email, telegram_userid, created_at, deleted_at FROM authorized_users "
        "WHERE deleted_at IS NULL ORDER BY email",
    )
    return [AuthorizedUser(email=r[0], telegram_userid=r[1], created_at=r[2], deleted_at=r[3]) for r in rows]


def add_authorized_user_conn(conn: Any, email: str, telegram_userid: Optional[int] = None) -> int:
    """Insert, or revive a soft-deleted user."""
    return execute_conn(
        conn,
        """
        INSERT INTO authorized_users (email, telegram_userid, created_at, deleted_at)
        VALUES (%s, %s, now(), NULL)
        ON CONFLICT (email) DO UPDATE SET
          telegram_userid = COALESCE(EXCLUDED.telegram_userid, authorized_users.telegram_userid),
          deleted_at = NULL
        """,
        (email, telegram_userid),
    )


def remove_authorized_user_conn(conn: Any, email: str) -> int:
    return execute_conn(
        conn,
        "UPDATE authorized_users SET deleted_at = now() WHERE email = %s AND deleted_at IS NULL",
        (email,),
    )


# ---------------------------
# Inbound email
# ---------------------------

_EMAIL_COLUMNS = (
    "id, s3_bucket, s3_key, from_address, to_address, subject, date, text_content, html_content, raw_email"
)


def _email_from_row(r: Sequence[Any]) -> InboundEmail:
    return InboundEmail(
        id=r[0] if isinstance(r[0], uuid.UUID) else uuid.UUID(str(r[0])),
        s3_bucket=r[1],
        s3_key=r[2],
        from_address=r[3],
        to_address=r[4],
        subject=r[5],
        date=r[6],
        text_content=r[7],
        html_content=r[8],
        raw_email=r[9],
    )


def email_keys_conn(conn: Any, s3_bucket: str) -> dict[str, uuid.UUID]:
    """``{s3_key: id}`` for every stored email of a bucket."""
    rows = fetch_all_conn(conn, "SELECT id, s3_key FROM inbound_email WHERE s3_bucket = %s", (s3_bucket,))
    return {str(r[1]): (r[0] if isinstance(r[0], uuid.UUID) else uuid.UUID(str(r[0]))) for r in rows}


def insert_email_conn(conn: Any, email: InboundEmail) -> int:
    return execute_conn(
        conn,
        f"""
        INSERT INTO inbound_email ({_EMAIL_COLUMNS})
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
        ON CONFLICT (s3_bucket, s3_key) DO NOTHING
        """,
        (
            str(email.id),
            email.s3_bucket,
            email.s3_key,
            email.from_address,
            email.to_address,
            email.subject,
            email.date,
            email.text_content,
            email.html_content,
            email.raw_email,
        ),
    )


def delete_email_conn(conn: Any, email_id: uuid.UUID) -> int:
    return execute_conn(conn, "DELETE FROM inbound_email WHERE id = %s", (str(email_id),))


def get_email_conn(conn: Any, email_id: uuid.UUID) -> Optional[InboundEmail]:
    row = fetch_one_conn(conn, f"SELECT {_EMAIL_COLUMNS} FROM inbound_email WHERE id = %s", (str(email_id),))
    return _email_from_row(row) if row else None


def iter_emails_conn(conn: Any) -> Iterator[InboundEmail]:
    for r in stream_rows(conn, f"SELECT {_EMAIL_COLUMNS} FROM inbound_email ORDER BY date DESC"):
        yield _email_from_row(r)


# ---------------------------
# DMARC
# ---------------------------

_DMARC_COLUMNS = (
    "id",
    "s3_key",
    "org_name",
    "email",
    "report_id",
    "date_range_begin",
    "date_range_end",
    "policy_domain",
    "source_ip",
    "count",
    "auth_result_type",
    "auth_result_domain",
    "auth_result_result",
    "created_at",
)


def dmarc_keys_conn(conn: Any) -> set[str]:
    rows = fetch_all_conn(conn, "SELECT DISTINCT s3_key FROM dmarc_records WHERE s3_key IS NOT NULL")
    return {str(r[0]) for r in rows}


def insert_dmarc_records_conn(conn: Any, records: Iterable[DmarcRecord]) -> int:
    sql = (
        f"INSERT INTO dmarc_records ({', '.join(_DMARC_COLUMNS)}) "
        f"VALUES ({', '.join(['%s'] * len(_DMARC_COLUMNS))})"
    )
    count = 0
    for rec in records:
        values = [getattr(rec, col) for col in _DMARC_COLUMNS]
        values[0] = str(rec.id)
        if values[-1] is None:
            values[-1] = datetime.now(timezone.utc)
        count += execute_conn(conn, sql, values)
    return count


# ---------------------------
# Async facade
# ---------------------------

class CatalogStore:
    """Async catalog access; every call borrows a pooled connection on a worker thread."""

    def __init__(self, connect: Callable[[], ContextManager[Any]] = db_conn) -> None:
        self._connect = connect

    def _run(self, fn: Callable[..., T], *args: Any, commit: bool = False) -> T:
        try:
            with self._connect() as conn:
                result = fn(conn, *args)
                if commit:
                    conn.commit()
                return result
        except psycopg2.Error as exc:
            raise PersistenceError(f"{getattr(fn, '__name__', 'catalog')} failed: {exc}") from exc

    def _upsert_each(self, fn: Callable[[Any, Any], int], rows: Iterable[Any]) -> int:
        """One transaction per row; returns the number of rows written."""
        written = 0
        try:
            with self._connect() as conn:
                for row in rows:
                    try:
                        written += 1 if fn(conn, row) else 0
                        conn.commit()
                    except psycopg2.Error:
                        conn.rollback()
                        raise
        except psycopg2.Error as exc:
            raise PersistenceError(f"{fn.__name__} failed after {written} rows: {exc}") from exc
        return written

    async def _call(self, fn: Callable[..., T], *args: Any, commit: bool = False) -> T:
        return await asyncio.to_thread(self._run, fn, *args, commit=commit)

    # families / types / prices

    async def upsert_families(self, families: Iterable[InstanceFamily]) -> int:
        count = await asyncio.to_thread(self._upsert_each, upsert_family_conn, list(families))
        log.info("catalog_upsert", table="instance_family", rows=count)
        return count

    async def upsert_instances(self, rows: Iterable[InstanceListRow]) -> int:
        count = await asyncio.to_thread(self._upsert_each, upsert_instance_conn, list(rows))
        log.info("catalog_upsert", table="instance_list", rows=count)
        return count

    async def upsert_prices(self, rows: Iterable[InstancePricing]) -> int:
        count = await asyncio.to_thread(self._upsert_each, upsert_pricing_conn, list(rows))
        log.info("catalog_upsert", table="instance_pricing", rows=count)
        return count

    async def list_families(self) -> list[InstanceFamily]:
        return await self._call(lambda conn: list(iter_families_conn(conn)))

    async def list_instances(self) -> list[InstanceListRow]:
        return await self._call(lambda conn: list(iter_instances_conn(conn)))

    async def list_prices(self) -> list[InstancePricing]:
        return await self._call(lambda conn: list(iter_pricing_conn(conn)))

    async def get_family(self, family_name: str) -> Optional[InstanceFamily]:
        return await self._call(get_family_conn, family_name)

    async def get_instance(self, instance_type: str) -> Optional[InstanceListRow]:
        return await self._call(get_instance_conn, instance_type)

    async def price_view(self) -> list[dict[str, Any]]:
        return await self._call(price_view_conn)

    # authorized users

    async def list_authorized_users(self) -> list[AuthorizedUser]:
        return await self._call(list_authorized_users_conn)

    async def add_authorized_user(self, email: str, telegram_userid: Optional[int] = None) -> bool:
        return bool(await self._call(add_authorized_user_conn, email, telegram_userid, commit=True))

    async def remove_authorized_user(self, email: str) -> bool:
        return bool(await self._call(remove_authorized_user_conn, email, commit=True))

    # inbound email

    async def email_keys(self, s3_bucket: str) -> dict[str, uuid.UUID]:
        return await self._call(email_keys_conn, s3_bucket)

    async def insert_email(self, email: InboundEmail) -> bool:
        return bool(await self._call(insert_email_conn, email, commit=True))

    async def delete_email(self, email_id: uuid.UUID) -> bool:
        return bool(await self._call(delete_email_conn, email_id, commit=True))

    async def get_email(self, email_id: uuid.UUID) -> Optional[InboundEmail]:
        return await self._call(get_email_conn, email_id)

    async def list_emails(self) -> list[InboundEmail]:
        return await self._call(lambda conn: list(iter_emails_conn(conn)))

    # dmarc

    async def dmarc_keys(self) -> set[str]:
        return await self._call(dmarc_keys_conn)

    async def insert_dmarc_records(self, records: Iterable[DmarcRecord]) -> int:
        return await self._call(insert_dmarc_records_conn, list(records), commit=True)


__all__ = [
    "CatalogStore",
    "add_authorized_user_conn",
    "delete_email_conn",
    "dmarc_keys_conn",
    "email_keys_conn",
    "get_email_conn",
    "get_family_conn",
    "get_instance_conn",
    "insert_dmarc_records_conn",
    "insert_email_conn",
    "iter_emails_conn",
    "iter_families_conn",
    "iter_instances_conn",
    "iter_pricing_conn",
    "list_authorized_users_conn",
    "price_view_conn",
    "remove_authorized_user_conn",
    "stream_rows",
    "upsert_family_conn",
    "upsert_instance_conn",
    "upsert_pricing_conn",
]
