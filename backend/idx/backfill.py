"""
Link favorites and showing requests to catalog entries after the fact.

Records are created with only the address text the buyer typed; the catalog entry
for that home often shows up later (the widget page gets visited, enrichment runs).
The backfill walks a user's unlinked records and fills `idx_property_id` when the
resolver finds a match. A link, once written, is never touched again.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from bson import ObjectId
from pydantic import ValidationError
from pymongo import ASCENDING, MongoClient
from pymongo.collection import Collection
from pymongo.errors import PyMongoError

from backend.idx.config import AUTO_BACKFILL_DELAY_SEC, MONGO_DB, MONGO_URI
from backend.idx.resolver import IdentityResolver
from backend.py_models.property import LinkableRecord, ReconcileResult

log = logging.getLogger("idx.backfill")


@dataclass(frozen=True)
class LinkableCollection:
    name: str
    collection: str
    owner_field: str


LINKABLE_COLLECTIONS = (
    LinkableCollection("favorites", "property_favorites", "buyer_id"),
    LinkableCollection("showings", "showing_requests", "user_id"),
)


def _oid(record_id: str):
    return ObjectId(record_id) if ObjectId.is_valid(record_id) else record_id


class LinkableStore:
    """Reads unlinked rows of one collection and writes only their link fields."""

    def __init__(self, collection: Collection, owner_field: str):
        self.col = collection
        self.owner_field = owner_field

    def find_unlinked(self, owner_id: str) -> List[LinkableRecord]:
        cursor = self.col.find(
            {self.owner_field: owner_id, "idx_property_id": None},
            {"property_address": 1, "mls_id": 1, "idx_property_id": 1},
        ).sort("_id", ASCENDING)
        return [
            LinkableRecord(
                id=str(d["_id"]),
                property_address=d.get("property_address"),
                mls_id=d.get("mls_id"),
                idx_property_id=d.get("idx_property_id"),
            )
            for d in cursor
        ]

    def link(self, record_id: str, property_id: str, mls_id: Optional[str] = None) -> bool:
        fields = {"idx_property_id": property_id}
        if mls_id:
            fields["mls_id"] = mls_id
        # the null guard keeps a concurrent or earlier link from being overwritten
        res = self.col.update_one({"_id": _oid(record_id), "idx_property_id": None}, {"$set": fields})
        return res.modified_count == 1


class CatalogBackfillService:
    def __init__(self, resolver: IdentityResolver, stores: Dict[str, LinkableStore]):
        self.resolver = resolver
        self.stores = stores

    @classmethod
    def from_database(cls, db, resolver: IdentityResolver) -> "CatalogBackfillService":
        stores = {c.name: LinkableStore(db[c.collection], c.owner_field) for c in LINKABLE_COLLECTIONS}
        return cls(resolver, stores)

    @classmethod
    def from_uri(cls, resolver: IdentityResolver, uri: str = MONGO_URI, db: str = MONGO_DB):
        return cls.from_database(MongoClient(uri)[db], resolver)

    def reconcile_collection(self, name: str, owner_id: str) -> ReconcileResult:
        store = self.stores[name]
        try:
            records = store.find_unlinked(owner_id)
        except (PyMongoError, ValidationError) as e:
            log.error("BACKFILL SELECT FAILED | collection=%s owner=%s err=%s", name, owner_id, e)
            return ReconcileResult()

        result = ReconcileResult(scanned=len(records))
        if not records:
            log.info("BACKFILL | collection=%s owner=%s nothing to link", name, owner_id)
            return result

        for rec in records:
            if rec.idx_property_id:
                continue
            try:
                if self._link_one(name, store, rec):
                    result.linked += 1
            except Exception as e:
                # one bad record never stops the batch
                log.error("BACKFILL LINK FAILED | collection=%s record=%s err=%s", name, rec.id, e)

        log.info("BACKFILL DONE | collection=%s owner=%s scanned=%d linked=%d", name, owner_id, result.scanned, result.linked)
        return result

    def _link_one(self, name: str, store: LinkableStore, rec: LinkableRecord) -> bool:
        match = self.resolver.match(rec.property_address, rec.mls_id)
        if match is None:
            return False
        # generated entries carry an internal key, not an MLS number
        new_mls = match.mls_id if not rec.mls_id and not match.synthetic else None
        if not store.link(rec.id, match.property_id, new_mls):
            log.info("BACKFILL SKIP | collection=%s record=%s already linked", name, rec.id)
            return False
        log.info(
            "BACKFILL LINK | collection=%s record=%s property=%s tier=%s synthetic=%s",
            name,
            rec.id,
            match.property_id,
            match.tier,
            match.synthetic,
        )
        return True

    def reconcile_all(self, owner_id: str) -> Dict[str, ReconcileResult]:
        return {name: self.reconcile_collection(name, owner_id) for name in self.stores}

    def reconcile_user(self, owner_id: Optional[str]) -> Optional[Dict[str, ReconcileResult]]:
        """Manual entry point; no owner means no signed-in user and nothing to do."""
        if not owner_id:
            log.warning("BACKFILL | no owner id, skipping")
            return None
        return self.reconcile_all(owner_id)


async def auto_backfill_on_load(
    service: CatalogBackfillService,
    owner_id: Optional[str],
    delay: float = AUTO_BACKFILL_DELAY_SEC,
) -> Optional[Dict[str, ReconcileResult]]:
    """Delayed, non-critical pass. Never raises; failures are only logged."""
    try:
        await asyncio.sleep(delay)
        results = await asyncio.to_thread(service.reconcile_user, owner_id)
    except Exception as e:
        log.warning("BACKFILL AUTO FAILED (non-critical) | owner=%s err=%s", owner_id, e)
        return None
    if results and any(r.linked for r in results.values()):
        log.info("BACKFILL AUTO | owner=%s %s", owner_id, {k: v.model_dump() for k, v in results.items()})
    return results


def schedule_auto_backfill(
    service: CatalogBackfillService,
    owner_id: Optional[str],
    delay: float = AUTO_BACKFILL_DELAY_SEC,
) -> asyncio.Task:
    """Fire-and-forget; cancel the returned task on teardown."""
    return asyncio.get_running_loop().create_task(auto_backfill_on_load(service, owner_id, delay))
