"""
Last-resort property data for addresses the widget never gave us.

Strategies, weakest last:
  1. an existing catalog entry for the address (exact, then street-part substring)
  2. a Google Places lookup
  3. market estimates keyed by city, with stock imagery, tagged source="estimated"

Whatever is produced is stored with an insert-only upsert keyed by address, so a
second call for the same address reads the stored values back instead of
generating new ones, and generated data never replaces a real entry.
"""

import hashlib
import logging
from dataclasses import dataclass
from typing import Dict, Optional

import httpx
from pydantic import ValidationError
from pymongo.errors import PyMongoError

from backend.idx.address import parse_city, parse_state, street_part
from backend.idx.client import new_client
from backend.idx.config import FUZZY_MIN_LENGTH, GOOGLE_PLACES_API_KEY
from backend.py_models.property import CatalogEntry, PropertyEnrichmentData

log = logging.getLogger("idx.enrichment")

SOURCE_EXISTING = "existing"
SOURCE_EXTERNAL = "external"
SOURCE_ESTIMATED = "estimated"

PLACES_URL = "https://maps.googleapis.com/maps/api/place/findplacefromtext/json"
PLACES_PHOTO_URL = "https://maps.googleapis.com/maps/api/place/photo"

DEFAULT_PROPERTY_TYPE = "Single Family Residential"
PLACEHOLDER_IMAGES = (
    "https://images.unsplash.com/photo-1568605114967-8130f3a36994?w=800&h=600&fit=crop&auto=format",
    "https://images.unsplash.com/photo-1570129477492-45c003edd2be?w=800&h=600&fit=crop&auto=format",
)


@dataclass(frozen=True)
class MarketEstimate:
    price: float
    beds: int
    baths: float
    sqft: int


MARKET_ESTIMATES: Dict[str, MarketEstimate] = {
    "San Francisco": MarketEstimate(1_500_000, 3, 2.5, 1800),
    "San Jose": MarketEstimate(1_300_000, 4, 2.5, 2000),
    "Oakland": MarketEstimate(900_000, 3, 2, 1600),
    "Sacramento": MarketEstimate(550_000, 4, 2.5, 2200),
    "Fresno": MarketEstimate(400_000, 4, 2, 2000),
    "Los Angeles": MarketEstimate(800_000, 3, 2, 1800),
    "San Diego": MarketEstimate(850_000, 3, 2.5, 1900),
    "Rocklin": MarketEstimate(750_000, 4, 2.5, 2100),
    "Auburn": MarketEstimate(650_000, 4, 2.5, 2000),
    "El Dorado Hills": MarketEstimate(950_000, 4, 3, 2500),
    "Folsom": MarketEstimate(850_000, 4, 2.5, 2200),
    "Elk Grove": MarketEstimate(650_000, 4, 2.5, 2100),
}

# Suburban profile for cities missing from the table
DEFAULT_MARKET = MarketEstimate(700_000, 4, 2.5, 2100)


def market_for_city(city: Optional[str]) -> MarketEstimate:
    c = (city or "").strip().lower()
    if not c:
        return DEFAULT_MARKET
    for name, est in MARKET_ESTIMATES.items():
        n = name.lower()
        if n in c or c in n:
            return est
    return DEFAULT_MARKET


def enrichment_key(address: str) -> str:
    """Stable catalog key for entries created here; same address, same key."""
    digest = hashlib.sha1(address.strip().lower().encode("utf-8")).hexdigest()[:12]
    return f"ENRICHED-{digest}"


class GooglePlacesClient:
    """Find Place From Text lookup. Without an API key the strategy is unavailable."""

    def __init__(
        self,
        api_key: str = GOOGLE_PLACES_API_KEY,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        max_photos: int = 3,
    ):
        self.api_key = api_key
        self.transport = transport
        self.max_photos = max_photos

    @property
    def available(self) -> bool:
        return bool(self.api_key)

    def _photo_url(self, ref: str) -> str:
        return f"{PLACES_PHOTO_URL}?maxwidth=800&photo_reference={ref}&key={self.api_key}"

    async def lookup(self, address: str) -> Optional[PropertyEnrichmentData]:
        if not self.available or not address:
            return None
        params = {
            "input": address,
            "inputtype": "textquery",
            "fields": "formatted_address,photos,place_id",
            "key": self.api_key,
        }
        async with new_client(transport=self.transport) as client:
            r = await client.get(PLACES_URL, params=params)
            r.raise_for_status()
            payload = r.json()

        if payload.get("status") != "OK":
            log.info("PLACES MISS | address=%r status=%s", address, payload.get("status"))
            return None
        candidates = payload.get("candidates") or []
        cand = candidates[0] if candidates else None
        if not cand or not cand.get("formatted_address"):
            return None
        refs = [p.get("photo_reference") for p in cand.get("photos") or [] if p.get("photo_reference")]
        return PropertyEnrichmentData(
            address=address,
            images=[self._photo_url(r) for r in refs[: self.max_photos]],
            source=SOURCE_EXTERNAL,
        )


class PropertyEnrichmentService:
    def __init__(self, catalog, places: Optional[GooglePlacesClient] = None, min_fragment_length: int = FUZZY_MIN_LENGTH):
        self.catalog = catalog
        self.places = places if places is not None else GooglePlacesClient()
        self.min_fragment_length = min_fragment_length

    async def enrich(self, address: str) -> PropertyEnrichmentData:
        """Always returns data; check `.source` / `.is_synthetic` before trusting numbers."""
        address = (address or "").strip()
        try:
            existing = self._find_existing(address)
            if existing:
                log.info("ENRICH | address=%r source=%s id=%s", address, existing.source, existing.property_id)
                return existing

            data = await self._try_external(address)
            if data is None:
                data = self.estimate(address)
            result = self._store(data)
            log.info("ENRICH | address=%r source=%s id=%s", address, result.source, result.property_id)
            return result
        except Exception:
            log.exception("ENRICH FAILED | address=%r; returning estimate", address)
            return self.estimate(address)

    def estimate(self, address: str) -> PropertyEnrichmentData:
        market = market_for_city(parse_city(address))
        return PropertyEnrichmentData(
            address=address,
            price=market.price,
            beds=market.beds,
            baths=market.baths,
            sqft=market.sqft,
            images=list(PLACEHOLDER_IMAGES),
            property_type=DEFAULT_PROPERTY_TYPE,
            source=SOURCE_ESTIMATED,
        )

    # --- strategies -----------------------------------------------------------

    def _find_existing(self, address: str) -> Optional[PropertyEnrichmentData]:
        if not address:
            return None
        try:
            entry = self.catalog.get_by_address(address)
            if entry is None:
                street = street_part(address)
                if len(street) >= self.min_fragment_length:
                    entry = self.catalog.find_address_containing(street)
        except (PyMongoError, ValidationError) as e:
            log.warning("ENRICH EXISTING UNAVAILABLE | err=%s", e)
            return None
        return self._from_entry(entry) if entry else None

    async def _try_external(self, address: str) -> Optional[PropertyEnrichmentData]:
        try:
            return await self.places.lookup(address)
        except (httpx.HTTPError, ValueError) as e:
            log.warning("ENRICH EXTERNAL UNAVAILABLE | address=%r err=%s", address, e)
            return None

    def _store(self, data: PropertyEnrichmentData) -> PropertyEnrichmentData:
        if not data.address:
            return data
        entry = CatalogEntry(
            mls_id=enrichment_key(data.address),
            address=data.address,
            city=parse_city(data.address),
            state=parse_state(data.address),
            price=data.price,
            beds=data.beds,
            baths=data.baths,
            sqft=data.sqft,
            images=list(data.images),
            property_type=data.property_type or DEFAULT_PROPERTY_TYPE,
            source=data.source,
        )
        try:
            stored = self.catalog.upsert_by_address(entry)
        except PyMongoError as e:
            log.warning("ENRICH STORE FAILED | address=%r err=%s", data.address, e)
            return data
        result = self._from_entry(stored)
        if stored.source == data.source:
            result.source = data.source
        return result

    @staticmethod
    def _from_entry(entry: CatalogEntry) -> PropertyEnrichmentData:
        return PropertyEnrichmentData(
            address=entry.address,
            price=entry.price,
            beds=entry.beds,
            baths=entry.baths,
            sqft=entry.sqft,
            images=[str(i) for i in entry.images],
            property_type=entry.property_type,
            # generated entries keep their tag so callers can still tell them apart
            source=entry.source if entry.is_synthetic else SOURCE_EXISTING,
            property_id=entry.id,
        )
