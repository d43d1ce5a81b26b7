import asyncio
from unittest.mock import MagicMock

import pytest
from bson import ObjectId
from pymongo import ASCENDING

from backend.idx.backfill import (
    CatalogBackfillService,
    LinkableStore,
    auto_backfill_on_load,
    schedule_auto_backfill,
)
from backend.idx.catalog import PropertyCatalog
from backend.idx.enrichment import GooglePlacesClient, PropertyEnrichmentService
from backend.idx.resolver import IdentityResolver
from backend.py_models.property import CatalogEntry, LinkableRecord, PropertyRecord, ReconcileResult

from tests.conftest import FakeCatalog, FakeLinkableStore


def _favorites():
    return [
        {"id": "f1", "owner": "b1", "property_address": "123 main street"},
        {"id": "f2", "owner": "b1", "property_address": "999 Nowhere Boulevard, Reno, NV 89501"},
        {"id": "f3", "owner": "b1", "property_address": "4821 Crystal Springs Drive"},
        {"id": "f4", "owner": "b2", "property_address": "123 Main St"},
        {"id": "f5", "owner": "b1", "property_address": "123 Main St", "idx_property_id": "p9"},
    ]


def _service(catalog, favorites=None, showings=None):
    stores = {
        "favorites": favorites if favorites is not None else FakeLinkableStore(_favorites()),
        "showings": showings if showings is not None else FakeLinkableStore([]),
    }
    return CatalogBackfillService(IdentityResolver(catalog), stores)


def test_links_what_resolves_and_is_idempotent(main_st_catalog):
    service = _service(main_st_catalog)
    store = service.stores["favorites"]

    first = service.reconcile_collection("favorites", "b1")
    assert first == ReconcileResult(scanned=3, linked=2)
    assert store.rows["f1"]["idx_property_id"] == "p1"
    assert store.rows["f3"]["idx_property_id"] == "p2"
    assert store.rows["f2"].get("idx_property_id") is None
    # other owners and already-linked rows are untouched
    assert store.rows["f4"].get("idx_property_id") is None
    assert store.rows["f5"]["idx_property_id"] == "p9"

    second = service.reconcile_collection("favorites", "b1")
    assert second == ReconcileResult(scanned=1, linked=0)
    assert len(store.writes) == 2


def test_existing_link_survives_later_catalog_additions(main_st_catalog):
    service = _service(main_st_catalog)
    service.reconcile_collection("favorites", "b1")

    main_st_catalog.add(CatalogEntry(mls_id="X9", address="123 main street"))
    service.reconcile_collection("favorites", "b1")

    assert service.stores["favorites"].rows["f1"]["idx_property_id"] == "p1"


def test_stale_read_does_not_overwrite_a_concurrent_link(main_st_catalog):
    store = FakeLinkableStore([{"id": "f1", "owner": "b1", "property_address": "123 Main St", "idx_property_id": "p9"}])
    # simulate a read taken before another writer linked the row
    store.find_unlinked = lambda owner: [LinkableRecord(id="f1", property_address="123 Main St")]
    service = _service(main_st_catalog, favorites=store)

    result = service.reconcile_collection("favorites", "b1")
    assert result == ReconcileResult(scanned=1, linked=0)
    assert store.rows["f1"]["idx_property_id"] == "p9"


def test_one_failed_write_does_not_stop_the_batch(main_st_catalog):
    store = FakeLinkableStore(_favorites(), fail_on={"f1"})
    service = _service(main_st_catalog, favorites=store)

    result = service.reconcile_collection("favorites", "b1")
    assert result == ReconcileResult(scanned=3, linked=1)
    assert store.rows["f1"].get("idx_property_id") is None
    assert store.rows["f3"]["idx_property_id"] == "p2"


def test_mls_id_copied_only_when_record_has_none(main_st_catalog):
    store = FakeLinkableStore(
        [
            {"id": "s1", "owner": "u1", "property_address": "123 Main St", "mls_id": "USER-ENTERED"},
            {"id": "s2", "owner": "u1", "property_address": "15 Stone Ridge Rd, Auburn, CA 95603"},
        ]
    )
    service = _service(main_st_catalog, showings=store)

    service.reconcile_collection("showings", "u1")
    assert store.rows["s1"] == {
        "id": "s1",
        "owner": "u1",
        "property_address": "123 Main St",
        "mls_id": "USER-ENTERED",
        "idx_property_id": "p1",
    }
    assert store.rows["s2"]["mls_id"] == "X3"
    assert ("s1", "p1", None) in store.writes


def test_select_failure_reports_zero(main_st_catalog):
    service = _service(main_st_catalog, favorites=FakeLinkableStore(_favorites(), fail_select=True))
    assert service.reconcile_collection("favorites", "b1") == ReconcileResult()


def test_reconcile_user(main_st_catalog):
    service = _service(main_st_catalog)
    assert service.reconcile_user(None) is None
    assert service.reconcile_user("") is None

    results = service.reconcile_user("b1")
    assert set(results) == {"favorites", "showings"}
    assert results["favorites"].linked == 2
    assert results["showings"] == ReconcileResult()


def test_auto_backfill_runs_after_delay(main_st_catalog):
    service = _service(main_st_catalog)
    results = asyncio.run(auto_backfill_on_load(service, "b1", delay=0))
    assert results["favorites"].linked == 2


def test_auto_backfill_never_raises():
    service = MagicMock()
    service.reconcile_user.side_effect = RuntimeError("db went away")
    assert asyncio.run(auto_backfill_on_load(service, "b1", delay=0)) is None


def test_scheduled_backfill_can_be_cancelled(main_st_catalog):
    service = _service(main_st_catalog)

    async def scenario():
        task = schedule_auto_backfill(service, "b1", delay=30)
        await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(scenario())
    assert service.stores["favorites"].writes == []


def test_linkable_store_queries_unlinked_rows_in_id_order():
    oid = ObjectId()
    col = MagicMock()
    col.find.return_value.sort.return_value = [{"_id": oid, "property_address": "123 Main St"}]
    store = LinkableStore(col, "buyer_id")

    records = store.find_unlinked("b1")

    filt, projection = col.find.call_args.args
    assert filt == {"buyer_id": "b1", "idx_property_id": None}
    assert "property_address" in projection
    col.find.return_value.sort.assert_called_once_with("_id", ASCENDING)
    assert records == [LinkableRecord(id=str(oid), property_address="123 Main St")]


def test_linkable_store_link_is_guarded_by_null_link():
    oid = ObjectId()
    col = MagicMock()
    col.update_one.return_value.modified_count = 1
    store = LinkableStore(col, "user_id")

    assert store.link(str(oid), "p1", "X1") is True
    col.update_one.assert_called_once_with(
        {"_id": oid, "idx_property_id": None},
        {"$set": {"idx_property_id": "p1", "mls_id": "X1"}},
    )

    col.update_one.return_value.modified_count = 0
    assert store.link(str(oid), "p2") is False
    assert col.update_one.call_args.args[1] == {"$set": {"idx_property_id": "p2"}}


OAK_AVE = "456 Oak Ave, Sacramento, CA"


def _enrich(catalog, address):
    places = GooglePlacesClient(api_key="")
    return asyncio.run(PropertyEnrichmentService(catalog, places=places).enrich(address))


def test_real_listing_replaces_estimate_before_reconcile():
    catalog = FakeCatalog()
    assert _enrich(catalog, OAK_AVE).source == "estimated"

    real = PropertyRecord(address=OAK_AVE, price="579000", beds="3", mlsId="225000111")
    catalog.upsert_by_key(CatalogEntry.from_record(real))

    store = FakeLinkableStore([{"id": "f1", "owner": "b1", "property_address": OAK_AVE}])
    service = _service(catalog, favorites=store)
    assert service.reconcile_all("b1")["favorites"] == ReconcileResult(scanned=1, linked=1)

    linked = next(e for e in catalog.entries if e.id == store.rows["f1"]["idx_property_id"])
    assert linked.source == "idx"
    assert linked.price == 579000
    assert store.rows["f1"]["mls_id"] == "225000111"
    assert len(catalog.entries) == 1

    again = _enrich(catalog, OAK_AVE)
    assert again.source == "existing"
    assert again.price == 579000


def test_link_to_estimate_never_copies_generated_key():
    catalog = FakeCatalog()
    estimate = _enrich(catalog, OAK_AVE)

    store = FakeLinkableStore([{"id": "f1", "owner": "b1", "property_address": OAK_AVE}])
    service = _service(catalog, favorites=store)
    assert service.reconcile_collection("favorites", "b1").linked == 1
    assert store.rows["f1"]["idx_property_id"] == estimate.property_id
    assert store.rows["f1"].get("mls_id") is None

    # the real listing later takes over the same entry, so the link now reaches real data
    catalog.upsert_by_key(CatalogEntry(mls_id="225000111", address=OAK_AVE, price=579000))
    linked = next(e for e in catalog.entries if e.id == store.rows["f1"]["idx_property_id"])
    assert linked.source == "idx"


def test_malformed_catalog_document_does_not_abort_reconcile_all():
    col = MagicMock()
    col.find_one.return_value = {"_id": ObjectId(), "mls_id": "X1", "address": "123 Main St", "price": "call agent"}
    favorites = FakeLinkableStore([{"id": "f1", "owner": "b1", "property_address": "123 Main St"}])
    showings = FakeLinkableStore([{"id": "s1", "owner": "b1", "property_address": "123 Main St", "mls_id": "X1"}])
    service = _service(PropertyCatalog(col), favorites=favorites, showings=showings)

    results = service.reconcile_all("b1")

    assert results["favorites"] == ReconcileResult(scanned=1, linked=0)
    assert results["showings"] == ReconcileResult(scanned=1, linked=0)
    assert favorites.writes == [] and showings.writes == []


def test_unexpected_error_on_one_record_skips_only_that_record(main_st_catalog):
    class FlakyResolver(IdentityResolver):
        def match(self, address=None, mls_id=None):
            if address == "123 main street":
                raise RuntimeError("resolver blew up")
            return super().match(address, mls_id)

    store = FakeLinkableStore(_favorites())
    service = CatalogBackfillService(FlakyResolver(main_st_catalog), {"favorites": store})

    assert service.reconcile_collection("favorites", "b1") == ReconcileResult(scanned=3, linked=1)
    assert store.rows["f3"]["idx_property_id"] == "p2"
    assert store.rows["f1"].get("idx_property_id") is None
