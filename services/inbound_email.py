"""
services/inbound_email.py

Inbound-email pipeline
======================

Mail lands in the configured bucket under ``inbound-email/`` (SES receipt
rule). ``InboundEmailSync.sync_db`` keeps the ``inbound_email`` table equal
to that key set and copies every attachment to ``attachments/<filename>``.

Pass 1 deletes rows whose key vanished and parses/inserts new keys.
Pass 2 re-parses every stored message and uploads attachments that are not
already present. Both passes are idempotent, so a failed run is simply
repeated.
"""

from __future__ import annotations

import asyncio
import email
import email.message
import tempfile
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from email.header import decode_header, make_header
from email.utils import collapse_rfc2231_value, getaddresses, parsedate_to_datetime
from pathlib import Path
from typing import Optional

from contracts.catalog import InboundEmail
from contracts.errors import ConfigError, ParseError
from infra.logging_config import StructuredLogger

log = StructuredLogger(__name__)

EMAIL_PREFIX = "inbound-email/"
ATTACHMENT_PREFIX = "attachments/"


@dataclass(frozen=True)
class SyncResult:
    deleted: int
    inserted: int
    attachments: int


def _header_text(value: Optional[str]) -> str:
    if value is None:
        return ""
    try:
        return str(make_header(decode_header(value))).strip()
    except (UnicodeDecodeError, LookupError, ValueError):
        return str(value).strip()


def _first_address(msg: email.message.Message, header: str) -> Optional[str]:
    for _name, addr in getaddresses(msg.get_all(header, [])):
        if addr:
            return addr
    return None


def _message_date(msg: email.message.Message, now: Optional[datetime] = None) -> datetime:
    """``Date`` header as an aware datetime; ``now`` when missing or unparseable."""
    raw = msg.get("Date")
    if raw:
        try:
            parsed = parsedate_to_datetime(raw)
        except (TypeError, ValueError, OverflowError):
            parsed = None
        if parsed is not None:
            return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return now or datetime.now(timezone.utc)


def _is_attachment(part: email.message.Message) -> bool:
    return part.get_content_disposition() == "attachment"


def _part_text(part: email.message.Message) -> Optional[str]:
    payload = part.get_payload(decode=True)
    if not isinstance(payload, bytes):
        return None
    charset = part.get_content_charset() or "utf-8"
    try:
        return payload.decode(charset, errors="replace")
    except LookupError:
        return payload.decode("utf-8", errors="replace")


def _bodies(msg: email.message.Message, subtype: str) -> list[str]:
    out: list[str] = []
    for part in msg.walk():
        if part.is_multipart() or _is_attachment(part):
            continue
        if part.get_content_type() != f"text/{subtype}":
            continue
        text = _part_text(part)
        if text is not None:
            out.append(text)
    return out


def parse_message(raw: bytes) -> email.message.Message:
    return email.message_from_bytes(raw)


def parse_inbound_email(raw: bytes, *, s3_bucket: str, s3_key: str, now: Optional[datetime] = None) -> InboundEmail:
    """Build an ``inbound_email`` row from a raw RFC822 message.

    Raises ``ParseError`` when the message is not UTF-8 or lacks a From
    address, a To address or a Subject.
    """
    try:
        raw_text = raw.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise ParseError(f"{s3_key}: message is not valid UTF-8") from exc
    msg = parse_message(raw)
    from_address = _first_address(msg, "From")
    if not from_address:
        raise ParseError(f"{s3_key}: No From Address")
    to_address = _first_address(msg, "To")
    if not to_address:
        raise ParseError(f"{s3_key}: No To Address")
    if msg.get("Subject") is None:
        raise ParseError(f"{s3_key}: No Subject Found")

    text_content = "".join(f"{t}\n" for t in _bodies(msg, "plain"))
    html_content = "".join(f"{h}\r\n" for h in _bodies(msg, "html"))
    return InboundEmail(
        s3_bucket=s3_bucket,
        s3_key=s3_key,
        from_address=from_address,
        to_address=to_address,
        subject=_header_text(msg.get("Subject")),
        date=_message_date(msg, now),
        text_content=text_content,
        html_content=html_content,
        raw_email=raw_text,
    )


def attachment_filename(part: email.message.Message) -> Optional[str]:
    """Content-disposition ``filename``, else the legacy ``name`` attribute."""
    for param in ("filename", "name"):
        value = part.get_param(param, header="content-disposition")
        if value:
            name = Path(collapse_rfc2231_value(value)).name
            if name:
                return name
    return None


def iter_attachments(msg: email.message.Message):
    """Yield ``(filename, payload)`` for binary parts carrying a filename."""
    for part in msg.walk():
        if part.is_multipart() or part.get_content_maintype() == "text":
            continue
        filename = attachment_filename(part)
        if filename is None:
            continue
        payload = part.get_payload(decode=True)
        if isinstance(payload, bytes):
            yield filename, payload


class InboundEmailSync:
    def __init__(self, s3, store, bucket: Optional[str]) -> None:
        self._s3 = s3
        self._store = store
        self._bucket = bucket

    @property
    def bucket(self) -> str:
        if not self._bucket:
            raise ConfigError("No Inbound Email Bucket")
        return self._bucket

    async def _reconcile(self, bucket: str) -> tuple[int, int]:
        db_keys = await self._store.email_keys(bucket)
        remote = await self._s3.list_keys(bucket, EMAIL_PREFIX)

        deleted = 0
        for key, email_id in db_keys.items():
            if key not in remote:
                deleted += int(await self._store.delete_email(email_id))

        inserted = 0
        for key in sorted(remote - set(db_keys)):
            raw = await self._s3.download_bytes(bucket, key)
            row = await asyncio.to_thread(parse_inbound_email, raw, s3_bucket=bucket, s3_key=key)
            inserted += int(await self._store.insert_email(row))
            log.info("inbound_email_inserted", key=key, subject=row.subject)
        return deleted, inserted

    async def _extract_attachments(self, bucket: str, row: InboundEmail, existing: set[str], workdir: Path) -> int:
        msg = await asyncio.to_thread(parse_message, row.raw_email.encode("utf-8"))
        uploaded = 0
        for filename, payload in iter_attachments(msg):
            key = f"{ATTACHMENT_PREFIX}{filename}"
            if key in existing:
                continue
            path = workdir / filename
            await asyncio.to_thread(path.write_bytes, payload)
            await self._s3.upload(path, bucket, key)
            existing.add(key)
            uploaded += 1
            log.info("inbound_email_attachment", email_id=str(row.id), key=key)
        return uploaded

    async def sync_db(self) -> SyncResult:
        bucket = self.bucket
        deleted, inserted = await self._reconcile(bucket)

        existing = await self._s3.list_keys(bucket, ATTACHMENT_PREFIX)
        attachments = 0
        with tempfile.TemporaryDirectory(prefix="inbound-email-") as tmp:
            for row in await self._store.list_emails():
                if row.s3_bucket != bucket:
                    continue
                attachments += await self._extract_attachments(bucket, row, existing, Path(tmp))

        result = SyncResult(deleted=deleted, inserted=inserted, attachments=attachments)
        log.info("inbound_email_synced", deleted=deleted, inserted=inserted, attachments=attachments)
        return result

    async def get_email(self, email_id: uuid.UUID) -> Optional[InboundEmail]:
        return await self._store.get_email(email_id)

    async def delete_email(self, email_id: uuid.UUID) -> bool:
        """Remove the stored object and its row; ``False`` when the id is unknown."""
        row = await self._store.get_email(email_id)
        if row is None:
            return False
        await self._s3.delete_key(row.s3_bucket, row.s3_key)
        deleted = await self._store.delete_email(email_id)
        log.info("inbound_email_deleted", email_id=str(email_id), key=row.s3_key)
        return deleted


__all__ = [
    "ATTACHMENT_PREFIX",
    "EMAIL_PREFIX",
    "InboundEmailSync",
    "SyncResult",
    "attachment_filename",
    "iter_attachments",
    "parse_inbound_email",
]
