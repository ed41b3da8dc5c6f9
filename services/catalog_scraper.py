"""
services/catalog_scraper.py

Instance-type catalog scraper
=============================

Reads the vendor instance-type pages (current generation HVM, previous
generation PV) and upserts ``instance_family`` and ``instance_list`` rows.

HVM page
--------
- Each ``lb-grid`` block is one family type: its first ``lb-title`` node is
  the label and every ``lb-txt-none`` leaf is a candidate family name
  (lowercased; entries containing whitespace are prose, not names).
- Anchors pointing at ``instance-types/<family>/`` give the family's
  documentation URL.
- Every ``tbody`` is a sizing table. The header row picks the columns through
  ``HVM_HEADER_COLUMNS``. Some tables repeat the family in a leading column
  that only appears on the first row of a group, so a row whose "type" cell
  is an integer is shifted one column left.

PV page
-------
Tables carry an explicit "Instance Family" column; each row yields one
family (collapsed later) and one type.

Families always upsert before types so the ``instance_list`` foreign key
holds.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlparse

import httpx
from bs4 import BeautifulSoup

from contracts.catalog import (
    GENERATION_HVM,
    GENERATION_PV,
    InstanceFamily,
    InstanceListRow,
    family_of,
)
from contracts.errors import HtmlShapeError
from infra.logging_config import StructuredLogger

log = StructuredLogger(__name__)

VENDOR_HOST = "https://aws.amazon.com"
GENERATION_URLS = {
    GENERATION_HVM: f"{VENDOR_HOST}/ec2/instance-types/",
    GENERATION_PV: f"{VENDOR_HOST}/ec2/previous-generation/",
}
FETCH_TIMEOUT_SECONDS = 30.0

# (type, cpu, memory) header spellings seen across the HVM tables.
HVM_HEADER_COLUMNS: tuple[tuple[str, str, str], ...] = (
    ("Instance Type", "vCPU", "Mem (GiB)"),
    ("Instance Type", "vCPU", "Memory (GiB)"),
    ("Model", "vCPU", "Mem (GiB)"),
    ("Model", "vCPU*", "Mem (GiB)"),
    ("Model", "Logical Proc*", "Mem (TiB)"),
    ("Model", "vCPU", "Memory (GiB)"),
    ("Instance", "vCPU", "Mem (GiB)"),
    ("Instance", "vCPU*", "Mem (GiB)"),
    ("Instance", "vCPU", "Memory (GiB)"),
    ("Instance", "Logical Proc*", "Mem (TiB)"),
    ("Name", "Logical Processors*", "RAM (GiB)"),
    ("Instance", "vCPU", "Mem (GB)"),
    ("Instance Size", "vCPU", "Memory (GiB)"),
)
PV_HEADER_COLUMNS = ("Instance Family", "Instance Type", "vCPU", "Memory (GiB)")


@dataclass(frozen=True)
class _Columns:
    instance_type: int
    n_cpu: int
    memory: int
    instance_family: int = 0


@dataclass(frozen=True)
class ScrapeResult:
    generation: str
    families: tuple[InstanceFamily, ...]
    types: tuple[InstanceListRow, ...]


def _table_rows(tbody) -> list[list[str]]:
    """Cell texts per ``tr``: ``td`` cells, else ``th`` cells; blank rows dropped."""
    rows: list[list[str]] = []
    for tr in tbody.find_all("tr"):
        cells = [td.get_text().strip() for td in tr.find_all("td")]
        if cells and any(cells):
            rows.append(cells)
            continue
        cells = [th.get_text().strip() for th in tr.find_all("th")]
        if cells and any(cells):
            rows.append(cells)
    return rows


def _header_index(header: Sequence[str], name: str) -> Optional[int]:
    found = None
    for idx, col in enumerate(header):
        if col == name:
            found = idx
    return found


def _hvm_columns(header: Sequence[str]) -> Optional[_Columns]:
    for names in HVM_HEADER_COLUMNS:
        idx = [_header_index(header, name) for name in names]
        if all(i is not None for i in idx):
            return _Columns(instance_type=idx[0], n_cpu=idx[1], memory=idx[2])
    return None


def _pv_columns(header: Sequence[str]) -> Optional[_Columns]:
    idx = [_header_index(header, name) for name in PV_HEADER_COLUMNS]
    if any(i is None for i in idx):
        return None
    return _Columns(instance_family=idx[0], instance_type=idx[1], n_cpu=idx[2], memory=idx[3])


def _is_int(text: str) -> bool:
    try:
        int(text)
    except ValueError:
        return False
    return True


def _type_row(row: Sequence[str], cols: _Columns, generation: str, *, strip_star: bool) -> InstanceListRow:
    type_cell = row[cols.instance_type] if cols.instance_type < len(row) else ""
    if strip_star:
        type_cell = type_cell.replace("*", "")
    shift = 1 if _is_int(type_cell) else 0
    if min(cols.instance_type, cols.n_cpu, cols.memory) - shift < 0:
        raise HtmlShapeError(f"{generation} row {list(row)!r} cannot shift left of the first column")
    try:
        instance_type = row[cols.instance_type - shift].replace("*", "")
        n_cpu = int(row[cols.n_cpu - shift].replace("*", ""))
        memory_gib = float(row[cols.memory - shift].replace(",", ""))
    except (IndexError, ValueError) as exc:
        raise HtmlShapeError(f"unparseable {generation} row {list(row)!r}: {exc}") from exc
    return InstanceListRow(
        instance_type=instance_type,
        family_name=family_of(instance_type),
        n_cpu=n_cpu,
        memory_gib=memory_gib,
        generation=generation,
    )


def _dedup_families(families: Iterable[InstanceFamily]) -> list[InstanceFamily]:
    """Sort by name and keep the first row per ``family_name``."""
    out: list[InstanceFamily] = []
    for fam in sorted(families, key=lambda f: f.family_name):
        if out and out[-1].family_name == fam.family_name:
            continue
        out.append(fam)
    return out


def _attach_data_url(family: InstanceFamily, data_urls: dict[str, str]) -> InstanceFamily:
    url = data_urls.get(family.family_name)
    if url is None:
        for key, candidate in data_urls.items():
            if key in family.family_name:
                url = candidate
                break
    if url is None:
        return family
    return InstanceFamily(
        family_name=family.family_name,
        family_type=family.family_type,
        data_url=url,
        use_for_spot=family.use_for_spot,
    )


def _data_url_key(href: str) -> Optional[str]:
    """``https://aws.amazon.com/ec2/instance-types/m5/`` -> ``m5``."""
    path = urlparse(href).path if href.startswith("http") else href
    parts = path.split("/")
    if len(parts) > 3 and parts[3]:
        return parts[3]
    return None


def parse_hvm(text: str) -> tuple[list[InstanceFamily], list[InstanceListRow]]:
    soup = BeautifulSoup(text, "html.parser")
    families: list[InstanceFamily] = []
    data_urls: dict[str, str] = {}

    for grid in soup.find_all(class_="lb-grid"):
        title = grid.find(class_="lb-title")
        if title is None:
            continue
        family_type = title.get_text().strip()
        for leaf in grid.find_all(class_="lb-txt-none"):
            family_name = leaf.get_text().strip().lower()
            if not family_name or any(ch.isspace() for ch in family_name):
                continue
            families.append(InstanceFamily(family_name=family_name, family_type=family_type))
        for anchor in grid.find_all("a", href=True):
            href = str(anchor["href"])
            if "instance-types/" not in href:
                continue
            key = _data_url_key(href)
            if key:
                path = href.replace(VENDOR_HOST, "", 1)
                data_urls[key] = f"{VENDOR_HOST}{path}"

    types: list[InstanceListRow] = []
    for tbody in soup.find_all("tbody"):
        rows = _table_rows(tbody)
        if len(rows) < 2:
            continue
        cols = _hvm_columns(rows[0])
        if cols is None:
            log.debug("catalog_table_skipped", generation=GENERATION_HVM, header=rows[0])
            continue
        types.extend(_type_row(row, cols, GENERATION_HVM, strip_star=True) for row in rows[1:])

    families = [_attach_data_url(f, data_urls) for f in _dedup_families(families)]
    return families, types


def parse_pv(text: str) -> tuple[list[InstanceFamily], list[InstanceListRow]]:
    soup = BeautifulSoup(text, "html.parser")
    families: list[InstanceFamily] = []
    types: list[InstanceListRow] = []
    for tbody in soup.find_all("tbody"):
        rows = _table_rows(tbody)
        if len(rows) < 2:
            continue
        cols = _pv_columns(rows[0])
        if cols is None:
            continue
        for row in rows[1:]:
            try:
                family_type = row[cols.instance_family]
                family_name = family_of(row[cols.instance_type])
            except IndexError as exc:
                raise HtmlShapeError(f"short pv row {row!r}") from exc
            families.append(InstanceFamily(family_name=family_name, family_type=family_type))
            types.append(_type_row(row, cols, GENERATION_PV, strip_star=False))
    return _dedup_families(families), types


def parse_result(text: str, generation: str) -> tuple[list[InstanceFamily], list[InstanceListRow]]:
    if generation == GENERATION_HVM:
        return parse_hvm(text)
    if generation == GENERATION_PV:
        return parse_pv(text)
    raise ValueError(f"unknown generation: {generation!r}")


class CatalogScraper:
    """Fetch, parse and upsert one generation at a time."""

    def __init__(self, store, *, http_client: Optional[httpx.AsyncClient] = None) -> None:
        self._store = store
        self._http = http_client

    async def _fetch(self, url: str) -> str:
        if self._http is not None:
            resp = await self._http.get(url)
        else:
            async with httpx.AsyncClient(timeout=FETCH_TIMEOUT_SECONDS, follow_redirects=True) as client:
                resp = await client.get(url)
        resp.raise_for_status()
        return resp.text

    async def scrape(self, generation: str) -> ScrapeResult:
        body = await self._fetch(GENERATION_URLS[generation])
        families, types = await asyncio.to_thread(parse_result, body, generation)
        return ScrapeResult(generation=generation, families=tuple(families), types=tuple(types))

    async def store(self, result: ScrapeResult) -> tuple[int, int]:
        """Upsert families then types; types of unknown families are skipped."""
        n_families = await self._store.upsert_families(result.families)
        known = {f.family_name for f in await self._store.list_families()}
        types = [t for t in result.types if t.family_name in known]
        if len(types) != len(result.types):
            log.warning(
                "catalog_types_without_family",
                generation=result.generation,
                skipped=len(result.types) - len(types),
            )
        n_types = await self._store.upsert_instances(types)
        log.info("catalog_scraped", generation=result.generation, families=n_families, types=n_types)
        return n_families, n_types

    async def scrape_instance_info(self, generation: str) -> tuple[int, int]:
        return await self.store(await self.scrape(generation))

    async def update(self) -> dict[str, tuple[int, int]]:
        """HVM then PV; returns ``{generation: (families, types)}``."""
        out: dict[str, tuple[int, int]] = {}
        for generation in (GENERATION_HVM, GENERATION_PV):
            out[generation] = await self.scrape_instance_info(generation)
        return out


__all__ = [
    "GENERATION_URLS",
    "HVM_HEADER_COLUMNS",
    "CatalogScraper",
    "ScrapeResult",
    "parse_hvm",
    "parse_pv",
    "parse_result",
]
