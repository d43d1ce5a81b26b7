from __future__ import annotations

from typing import Any, Iterable

import pytest
from pymongo.errors import PyMongoError

from backend.idx.address import normalize_address
from backend.py_models.property import CatalogEntry, LinkableRecord


class FakeCatalog:
    """In-memory stand-in for PropertyCatalog; insertion order plays the role of _id order."""

    def __init__(self, entries: Iterable[CatalogEntry] = (), fail_reads: bool = False, fail_writes: bool = False):
        self.entries: list[CatalogEntry] = []
        self.calls: list[tuple[str, Any]] = []
        self.fail_reads = fail_reads
        self.fail_writes = fail_writes
        for e in entries:
            self.add(e)

    def add(self, entry: CatalogEntry) -> CatalogEntry:
        stored = entry.model_copy(update={"id": entry.id or f"p{len(self.entries) + 1}"})
        self.entries.append(stored)
        return stored

    def _read(self, op: str, arg: Any, pred) -> CatalogEntry | None:
        self.calls.append((op, arg))
        if self.fail_reads:
            raise PyMongoError("catalog unavailable")
        return next((e for e in self.entries if pred(e)), None)

    def get_by_key(self, mls_id: str) -> CatalogEntry | None:
        return self._read("key", mls_id, lambda e: e.mls_id == mls_id)

    def get_by_address(self, address: str) -> CatalogEntry | None:
        return self._read("address", address, lambda e: e.address == address)

    def find_by_normalized_address(self, normalized: str) -> CatalogEntry | None:
        return self._read("normalized", normalized, lambda e: normalize_address(e.address) == normalized)

    def find_address_containing(self, fragment: str) -> CatalogEntry | None:
        return self._read("contains", fragment, lambda e: fragment.lower() in e.address.lower())

    def upsert_by_key(self, entry: CatalogEntry) -> CatalogEntry:
        if self.fail_writes:
            raise PyMongoError("write failed")
        for i, e in enumerate(self.entries):
            if e.mls_id == entry.mls_id:
                self.entries[i] = entry.model_copy(update={"id": e.id})
                return self.entries[i]
        for i, e in enumerate(self.entries):
            if e.is_synthetic and e.address == entry.address:
                self.entries[i] = entry.model_copy(update={"id": e.id})
                return self.entries[i]
        return self.add(entry)

    def upsert_by_address(self, entry: CatalogEntry) -> CatalogEntry:
        if self.fail_writes:
            raise PyMongoError("write failed")
        existing = next((e for e in self.entries if e.address == entry.address), None)
        return existing or self.add(entry)


class FakeLinkableStore:
    def __init__(self, rows: list[dict[str, Any]], fail_on: Iterable[str] = (), fail_select: bool = False):
        self.rows = {r["id"]: dict(r) for r in rows}
        self.fail_on = set(fail_on)
        self.fail_select = fail_select
        self.writes: list[tuple[str, str, str | None]] = []

    def find_unlinked(self, owner_id: str) -> list[LinkableRecord]:
        if self.fail_select:
            raise PyMongoError("select failed")
        return [
            LinkableRecord(
                id=r["id"],
                property_address=r.get("property_address"),
                mls_id=r.get("mls_id"),
                idx_property_id=r.get("idx_property_id"),
            )
            for r in self.rows.values()
            if r["owner"] == owner_id and r.get("idx_property_id") is None
        ]

    def link(self, record_id: str, property_id: str, mls_id: str | None = None) -> bool:
        if record_id in self.fail_on:
            raise PyMongoError(f"update failed for {record_id}")
        row = self.rows[record_id]
        if row.get("idx_property_id") is not None:
            return False
        row["idx_property_id"] = property_id
        if mls_id:
            row["mls_id"] = mls_id
        self.writes.append((record_id, property_id, mls_id))
        return True


@pytest.fixture
def main_st_catalog() -> FakeCatalog:
    return FakeCatalog(
        [
            CatalogEntry(mls_id="X1", address="123 Main St", price=725000, beds=4),
            CatalogEntry(mls_id="X2", address="4821 Crystal Springs Dr, Folsom, CA 95630", price=910000),
            CatalogEntry(mls_id="X3", address="15 Stone Ridge Rd, Auburn, CA 95603"),
        ]
    )
