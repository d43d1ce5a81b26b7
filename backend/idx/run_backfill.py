import json
import logging
import sys

from backend.idx.backfill import LINKABLE_COLLECTIONS, CatalogBackfillService
from backend.idx.catalog import PropertyCatalog
from backend.idx.config import IDX_DEBUG, MONGO_DB, MONGO_URI
from backend.idx.resolver import IdentityResolver

log = logging.getLogger("idx")


def parse_args(argv=None):
    import argparse
    p = argparse.ArgumentParser(description="Link a user's favorites and showing requests to catalog entries")
    p.add_argument("owner_id", help="Buyer / user id whose records should be linked")
    p.add_argument(
        "--collection",
        choices=[c.name for c in LINKABLE_COLLECTIONS],
        help="Only reconcile one collection (default: all)",
    )
    p.add_argument("--mongo-uri", default=MONGO_URI)
    p.add_argument("--db", default=MONGO_DB)
    p.add_argument("--json", action="store_true", help="Print counts as JSON")
    p.add_argument("--verbose", action="store_true")
    return p.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(asctime)s | %(levelname)s | %(message)s")
    if args.verbose or IDX_DEBUG:
        logging.getLogger("idx").setLevel(logging.DEBUG)

    catalog = PropertyCatalog.from_uri(args.mongo_uri, args.db)
    service = CatalogBackfillService.from_uri(IdentityResolver(catalog), args.mongo_uri, args.db)

    if args.collection:
        results = {args.collection: service.reconcile_collection(args.collection, args.owner_id)}
    else:
        results = service.reconcile_all(args.owner_id)

    if args.json:
        print(json.dumps({k: v.model_dump() for k, v in results.items()}, indent=2))
    else:
        for name, r in results.items():
            print(f"🔗 {name}: linked {r.linked} of {r.scanned} unlinked record(s)")
    return 0


def cli():
    sys.exit(main())


if __name__ == "__main__":
    cli()
