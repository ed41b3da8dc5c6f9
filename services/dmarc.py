"""
DMARC aggregate-report ingestion.

Reports arrive as mail attachments (see ``services.inbound_email``) and are
stored under ``attachments/``. Each key is ingested at most once: keys
already present in ``dmarc_records.s3_key`` are skipped.

Payloads are sniffed, not trusted by extension: plain XML, gzip, or zip.
Zip archives are expanded by ``/usr/bin/unzip`` into a temporary directory;
without that binary ingestion fails with ``MissingUnzipError``.
"""

from __future__ import annotations

import asyncio
import gzip
import tempfile
import uuid
from collections.abc import Awaitable, Callable, Iterator, Sequence
from dataclasses import replace
from pathlib import Path
from typing import Optional
from xml.etree.ElementTree import Element

from defusedxml import ElementTree
from defusedxml.common import DefusedXmlException

from contracts.catalog import DmarcRecord
from contracts.errors import ConfigError, MissingUnzipError, ParseError
from infra.logging_config import StructuredLogger
from services.inbound_email import ATTACHMENT_PREFIX
from services.subprocess_runner import CommandResult, run

log = StructuredLogger(__name__)

UNZIP_PATH = "/usr/bin/unzip"

MEDIA_XML = "text/xml"
MEDIA_GZIP = "application/gzip"
MEDIA_ZIP = "application/zip"

AUTH_RESULT_TYPES = ("dkim", "spf")

Runner = Callable[[Sequence[str]], Awaitable[CommandResult]]


def sniff_media_type(data: bytes) -> Optional[str]:
    if data.startswith(b"\x1f\x8b"):
        return MEDIA_GZIP
    if data.startswith(b"PK\x03\x04"):
        return MEDIA_ZIP
    head = data.lstrip(b"\xef\xbb\xbf \t\r\n")
    if head.startswith(b"<"):
        return MEDIA_XML
    return None


def _local(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _child(node: Optional[Element], name: str) -> Optional[Element]:
    if node is None:
        return None
    for child in node:
        if _local(child.tag) == name:
            return child
    return None


def _path(node: Optional[Element], *names: str) -> Optional[Element]:
    for name in names:
        node = _child(node, name)
    return node


def _text(node: Optional[Element], *names: str) -> Optional[str]:
    found = _path(node, *names)
    if found is None or found.text is None:
        return None
    return found.text.strip() or None


def _int(node: Optional[Element], *names: str) -> Optional[int]:
    value = _text(node, *names)
    if value is None:
        return None
    try:
        return int(value)
    except ValueError as exc:
        raise ParseError(f"{'/'.join(names)}: not an integer: {value!r}") from exc


def _children(node: Optional[Element], name: str) -> Iterator[Element]:
    if node is None:
        return
    for child in node:
        if _local(child.tag) == name:
            yield child


def parse_dmarc_xml(data: bytes, *, s3_key: Optional[str] = None) -> list[DmarcRecord]:
    """One row per ``dkim``/``spf`` child of each record's ``auth_results``.

    Every row shares the report metadata and the record's source ip and
    count; each gets its own id.
    """
    try:
        root = ElementTree.fromstring(data)
    except (ElementTree.ParseError, DefusedXmlException) as exc:
        raise ParseError(f"invalid DMARC XML: {exc}") from exc

    meta = _child(root, "report_metadata")
    template = DmarcRecord(
        s3_key=s3_key,
        org_name=_text(meta, "org_name"),
        email=_text(meta, "email"),
        report_id=_text(meta, "report_id"),
        date_range_begin=_int(meta, "date_range", "begin"),
        date_range_end=_int(meta, "date_range", "end"),
        policy_domain=_text(root, "policy_published", "domain"),
    )

    rows: list[DmarcRecord] = []
    for record in _children(root, "record"):
        base = replace(
            template,
            source_ip=_text(record, "row", "source_ip"),
            count=_int(record, "row", "count"),
        )
        auth = _child(record, "auth_results")
        if auth is None:
            continue
        for result in auth:
            kind = _local(result.tag)
            if kind not in AUTH_RESULT_TYPES:
                continue
            rows.append(
                replace(
                    base,
                    auth_result_type=kind,
                    auth_result_domain=_text(result, "domain"),
                    auth_result_result=_text(result, "result"),
                    id=uuid.uuid4(),
                )
            )
    return rows


class DmarcIngestor:
    def __init__(
        self,
        s3,
        store,
        bucket: Optional[str],
        *,
        unzip_path: str = UNZIP_PATH,
        runner: Runner = run,
    ) -> None:
        self._s3 = s3
        self._store = store
        self._bucket = bucket
        self._unzip = unzip_path
        self._runner = runner

    async def _unzip_members(self, data: bytes) -> list[bytes]:
        if not Path(self._unzip).exists():
            raise MissingUnzipError(self._unzip)
        with tempfile.TemporaryDirectory(prefix="dmarc-") as tmp:
            archive = Path(tmp) / "report.zip"
            outdir = Path(tmp) / "out"
            outdir.mkdir()
            await asyncio.to_thread(archive.write_bytes, data)
            result = await self._runner([self._unzip, "-o", str(archive), "-d", str(outdir)])
            if not result.ok:
                raise ParseError(f"unzip failed ({result.returncode}): {result.stderr.strip()}")
            members = sorted(p for p in outdir.rglob("*") if p.is_file())
            return [await asyncio.to_thread(p.read_bytes) for p in members]

    async def xml_documents(self, data: bytes) -> list[bytes]:
        """XML buffers contained in one attachment; empty for other media types."""
        media = sniff_media_type(data)
        if media == MEDIA_XML:
            return [data]
        if media == MEDIA_GZIP:
            try:
                return [await asyncio.to_thread(gzip.decompress, data)]
            except (OSError, EOFError) as exc:
                raise ParseError(f"corrupt gzip payload: {exc}") from exc
        if media == MEDIA_ZIP:
            members = await self._unzip_members(data)
            return [m for m in members if sniff_media_type(m) == MEDIA_XML]
        return []

    async def parse_key(self, bucket: str, key: str) -> list[DmarcRecord]:
        data = await self._s3.download_bytes(bucket, key)
        rows: list[DmarcRecord] = []
        for doc in await self.xml_documents(data):
            rows.extend(await asyncio.to_thread(parse_dmarc_xml, doc, s3_key=key))
        return rows

    async def ingest(self) -> int:
        """Parse every unprocessed attachment; returns the number of rows inserted."""
        if not self._bucket:
            raise ConfigError("No Inbound Email Bucket")
        bucket = self._bucket
        done = await self._store.dmarc_keys()
        keys = sorted(await self._s3.list_keys(bucket, ATTACHMENT_PREFIX) - done)
        inserted = 0
        for key in keys:
            try:
                rows = await self.parse_key(bucket, key)
            except ParseError as exc:
                log.warning("dmarc_report_skipped", key=key, error=str(exc))
                continue
            if rows:
                inserted += await self._store.insert_dmarc_records(rows)
        log.info("dmarc_ingested", keys=len(keys), rows=inserted)
        return inserted


__all__ = [
    "MEDIA_GZIP",
    "MEDIA_XML",
    "MEDIA_ZIP",
    "UNZIP_PATH",
    "DmarcIngestor",
    "parse_dmarc_xml",
    "sniff_media_type",
]
