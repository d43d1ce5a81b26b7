"""
MongoDB-backed property catalog (`idx_properties`).

Lookups sort by `_id` so the same snapshot always yields the same first match.
Methods let PyMongoError propagate; the resolver, backfill and enrichment entry
points decide what a failed read or write means for them.
"""

import logging
import re
from datetime import datetime, timezone
from typing import Optional

from pymongo import ASCENDING, MongoClient, ReturnDocument
from pymongo.collection import Collection

from backend.idx.address import normalize_address
from backend.idx.config import CATALOG_COLLECTION, MONGO_DB, MONGO_URI
from backend.py_models.property import SYNTHETIC_SOURCES, CatalogEntry, PropertyRecord

log = logging.getLogger("idx.catalog")

_STABLE_ORDER = [("_id", ASCENDING)]

# other writers sometimes store explicit nulls for these; the model defaults apply instead
_DEFAULTED_FIELDS = ("images", "status", "source")

# estimate-only fields cleared when a real listing takes over a generated entry
_ESTIMATE_FIELDS = ("price", "beds", "baths", "sqft", "property_type")


def _entry(doc: Optional[dict]) -> Optional[CatalogEntry]:
    """Map a stored document to a CatalogEntry; raises pydantic.ValidationError on malformed data."""
    if not doc:
        return None
    data = {
        k: v
        for k, v in doc.items()
        if k not in ("_id", "normalized_address") and not (v is None and k in _DEFAULTED_FIELDS)
    }
    data["id"] = str(doc["_id"])
    return CatalogEntry.model_validate(data)


def _doc(entry: CatalogEntry) -> dict:
    # unset fields stay absent: null mls_ids would collide on the sparse unique index
    d = entry.model_dump(exclude={"id", "created_at", "updated_at"}, exclude_none=True)
    d["normalized_address"] = normalize_address(entry.address)
    return d


class PropertyCatalog:
    def __init__(self, collection: Collection):
        self.col = collection

    @classmethod
    def from_uri(cls, uri: str = MONGO_URI, db: str = MONGO_DB, collection: str = CATALOG_COLLECTION):
        client = MongoClient(uri)
        return cls(client[db][collection])

    def ensure_indexes(self) -> None:
        self.col.create_index("mls_id", unique=True, sparse=True)
        self.col.create_index("address")
        self.col.create_index("normalized_address")

    # --- reads ----------------------------------------------------------------

    def get_by_key(self, mls_id: str) -> Optional[CatalogEntry]:
        if not mls_id:
            return None
        return _entry(self.col.find_one({"mls_id": mls_id}, sort=_STABLE_ORDER))

    def get_by_address(self, address: str) -> Optional[CatalogEntry]:
        if not address:
            return None
        return _entry(self.col.find_one({"address": address}, sort=_STABLE_ORDER))

    def find_by_normalized_address(self, normalized: str) -> Optional[CatalogEntry]:
        if not normalized:
            return None
        return _entry(self.col.find_one({"normalized_address": normalized}, sort=_STABLE_ORDER))

    def find_address_containing(self, fragment: str) -> Optional[CatalogEntry]:
        """Case-insensitive substring match on the stored address."""
        if not fragment:
            return None
        query = {"address": {"$regex": re.escape(fragment), "$options": "i"}}
        return _entry(self.col.find_one(query, sort=_STABLE_ORDER))

    # --- writes ---------------------------------------------------------------

    def _generated_at(self, address: str) -> Optional[dict]:
        return self.col.find_one(
            {"address": address, "source": {"$in": sorted(SYNTHETIC_SOURCES)}},
            {"_id": 1},
            sort=_STABLE_ORDER,
        )

    def upsert_by_key(self, entry: CatalogEntry) -> CatalogEntry:
        """
        Insert or refresh the entry keyed by mls_id (catalog-origin writes).

        When no document carries this mls_id yet but a generated estimate exists
        for the same address, the real listing takes that document over: same
        _id, real key and fields, estimate-only numbers dropped. Records already
        linked to the estimate thereby point at the real listing.
        """
        if not entry.mls_id:
            raise ValueError("upsert_by_key requires mls_id")
        now = datetime.now(timezone.utc)
        fields = _doc(entry)
        fields["updated_at"] = now
        update = {"$set": fields, "$setOnInsert": {"created_at": now}}

        query = {"mls_id": entry.mls_id}
        if self.col.find_one(query, {"_id": 1}) is None:
            generated = self._generated_at(entry.address)
            if generated is not None:
                query = {"_id": generated["_id"]}
                stale = {k: "" for k in _ESTIMATE_FIELDS if k not in fields}
                if stale:
                    update["$unset"] = stale
                log.info("DB TAKEOVER | address=%r id=%s mls_id=%s", entry.address, generated["_id"], entry.mls_id)

        doc = self.col.find_one_and_update(
            query,
            update,
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        log.info("DB UPSERT | key=mls_id value=%s id=%s", entry.mls_id, doc.get("_id"))
        return _entry(doc)

    def upsert_by_address(self, entry: CatalogEntry) -> CatalogEntry:
        """
        Insert the entry keyed by address unless one already exists. An existing
        document is never modified, so generated data cannot replace real data and
        repeated calls converge on the first stored values.
        """
        if not entry.address:
            raise ValueError("upsert_by_address requires address")
        now = datetime.now(timezone.utc)
        fields = _doc(entry)
        fields["created_at"] = now
        fields["updated_at"] = now
        doc = self.col.find_one_and_update(
            {"address": entry.address},
            {"$setOnInsert": fields},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        log.info("DB UPSERT | key=address value=%r id=%s source=%s", entry.address, doc.get("_id"), doc.get("source"))
        return _entry(doc)

    def upsert_extracted(self, record: PropertyRecord) -> Optional[CatalogEntry]:
        """Persist a scraped widget record; needs both an mls id and an address."""
        if not record.mls_id or not record.address:
            log.info("DB UPSERT SKIPPED | missing mls_id/address url=%s", record.page_url)
            return None
        return self.upsert_by_key(CatalogEntry.from_record(record))
