import asyncio
import json
import logging
import sys
from pathlib import Path

from backend.idx.config import IDX_DEBUG, IMAGE_CAP, MAX_ATTEMPTS, RETRY_DELAY_MS, SETTLE_DELAY_MS
from backend.idx.parsing import PageSnapshot
from backend.idx.scheduler import ExtractionScheduler, Exhausted, StaticDomSource, Success

log = logging.getLogger("idx")


def parse_args(argv=None):
    import argparse
    p = argparse.ArgumentParser(description="Extract listing data from a rendered IHF widget page")
    p.add_argument("url", nargs="?", default=None, help="Widget page URL (opened in Chromium)")
    p.add_argument("--html-file", help="Extract from a saved HTML file instead of a live page")
    p.add_argument("--page-url", default="", help="Source URL to attribute to --html-file (mls id is read from it)")
    p.add_argument("--frame-url", default=None, help="Substring of the widget iframe URL, when the widget is framed")
    p.add_argument("--max-attempts", type=int, default=MAX_ATTEMPTS)
    p.add_argument("--delay-ms", type=int, default=RETRY_DELAY_MS)
    p.add_argument("--settle-ms", type=int, default=SETTLE_DELAY_MS)
    p.add_argument("--image-cap", type=int, default=IMAGE_CAP)
    p.add_argument("--headed", action="store_true", help="Show the browser window")
    p.add_argument("--persist", action="store_true", help="Upsert the record into the catalog (by mls id)")
    p.add_argument("--output", help="Optional path to save the record as .json")
    p.add_argument("--verbose", action="store_true")
    args = p.parse_args(argv)
    if not args.url and not args.html_file:
        p.error("give a URL or --html-file")
    return args


def _persist_sink():
    from backend.idx.catalog import PropertyCatalog
    from pymongo.errors import PyMongoError

    catalog = PropertyCatalog.from_uri()

    def _sink(record):
        try:
            entry = catalog.upsert_extracted(record)
            if entry:
                print(f"💾 catalog entry {entry.id} ({entry.mls_id})")
        except PyMongoError as e:
            log.error("DB UPSERT FAILED | mls_id=%s err=%s", record.mls_id, e)

    return _sink


async def _run_static(args, sinks):
    html = Path(args.html_file).read_text(encoding="utf-8", errors="ignore")
    source = StaticDomSource(PageSnapshot(html=html, url=args.page_url))
    scheduler = ExtractionScheduler(
        source,
        max_attempts=1,
        initial_delay=0,
        image_cap=args.image_cap,
        sinks=sinks,
    )
    try:
        await scheduler.run()
    finally:
        scheduler.close()
    return scheduler.state


async def _run_live(args, sinks):
    from playwright.async_api import Error as PWError

    from backend.idx.browser import PageBroadcaster, PlaywrightDomSource, close_browser, launch_browser, new_page

    browser = await launch_browser(headless=not args.headed)
    try:
        page = await new_page(browser)
        source = PlaywrightDomSource(page)
        await source.attach()
        try:
            await page.goto(args.url, wait_until="domcontentloaded")
        except PWError as nav_err:
            log.error("NAVIGATION FAILED | url=%s err=%s", args.url, nav_err)
            return None
        if args.frame_url:
            frame = next((f for f in page.frames if args.frame_url in f.url), None)
            if frame is None:
                log.warning("FRAME NOT FOUND | match=%s; using main page", args.frame_url)
            source.frame = frame

        scheduler = ExtractionScheduler(
            source,
            max_attempts=args.max_attempts,
            retry_delay=args.delay_ms / 1000,
            settle_delay=args.settle_ms / 1000,
            image_cap=args.image_cap,
            sinks=[PageBroadcaster(source.target), *sinks],
        )
        try:
            await scheduler.run()
        finally:
            scheduler.close()
            await source.detach()
        return scheduler.state
    finally:
        await close_browser(browser)


async def main(argv=None):
    args = parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(asctime)s | %(levelname)s | %(message)s")
    if args.verbose or IDX_DEBUG:
        logging.getLogger("idx").setLevel(logging.DEBUG)

    sinks = [_persist_sink()] if args.persist else []
    if args.html_file:
        state = await _run_static(args, sinks)
    else:
        state = await _run_live(args, sinks)

    if not isinstance(state, Success):
        attempts = state.count if isinstance(state, Exhausted) else 0
        print(f"❌ No property data available (attempts={attempts}).")
        return 1

    record = state.record
    price = f"${int(record.price):,}" if record.price else "N/A"
    print(
        f"✅ {record.address} | {price} | {record.beds or '--'} bd / {record.baths or '--'} ba"
        f" | {record.sqft or '--'} sqft | MLS {record.mls_id or '--'} | {len(record.images)} images"
    )
    if args.output:
        with open(args.output, "w", encoding="utf-8") as f:
            json.dump(record.to_payload(), f, indent=2, ensure_ascii=False)
        print(f"Saved record to {args.output}")
    return 0


def cli():
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    cli()
