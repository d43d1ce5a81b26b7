import re
from datetime import datetime, timezone
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

SYNTHETIC_SOURCES = {"estimated"}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_float(raw) -> Optional[float]:
    if raw is None or raw == "":
        return None
    try:
        return float(re.sub(r"[^0-9.]", "", str(raw)))
    except ValueError:
        return None


def _to_int(raw) -> Optional[int]:
    if raw is None or raw == "":
        return None
    m = re.match(r"\s*(\d+)", str(raw).replace(",", ""))
    return int(m.group(1)) if m else None


class PropertyRecord(BaseModel):
    """Property fields scraped from a rendered IDX widget page."""

    model_config = ConfigDict(populate_by_name=True)

    address: str = ""
    price: Optional[str] = Field(None, description="Currency-stripped digits")
    beds: Optional[str] = None
    baths: Optional[str] = None
    sqft: Optional[str] = None
    mls_id: Optional[str] = Field(None, alias="mlsId")
    images: List[str] = Field(default_factory=list)
    extracted_at: datetime = Field(default_factory=_utcnow, alias="extractedAt")
    page_url: Optional[str] = Field(None, alias="pageUrl")

    @property
    def is_valid(self) -> bool:
        if not self.address.strip():
            return False
        return bool(self.price or self.mls_id or self.beds)

    def to_payload(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class CatalogEntry(BaseModel):
    id: Optional[str] = None
    mls_id: Optional[str] = None
    listing_id: Optional[str] = None
    address: str
    city: Optional[str] = None
    state: Optional[str] = None
    zip: Optional[str] = None
    price: Optional[float] = Field(None, description="Numeric USD price")
    beds: Optional[int] = None
    baths: Optional[float] = None
    sqft: Optional[int] = None
    images: List[str] = Field(default_factory=list)
    page_url: Optional[str] = None
    property_type: Optional[str] = None
    status: str = "active"
    source: str = "idx"
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_synthetic(self) -> bool:
        return self.source in SYNTHETIC_SOURCES

    @classmethod
    def from_record(cls, record: PropertyRecord) -> "CatalogEntry":
        """Clean an extracted record into catalog shape. Unparsable numbers become None."""
        return cls(
            mls_id=record.mls_id,
            address=record.address.strip(),
            price=_to_float(record.price),
            beds=_to_int(record.beds),
            baths=_to_float(record.baths),
            sqft=_to_int(record.sqft),
            images=list(record.images),
            page_url=record.page_url,
            source="idx",
        )


class PropertyEnrichmentData(BaseModel):
    address: str
    price: Optional[float] = None
    beds: Optional[int] = None
    baths: Optional[float] = None
    sqft: Optional[int] = None
    images: List[str] = Field(default_factory=list)
    property_type: Optional[str] = None
    year_built: Optional[int] = None
    lot_size: Optional[str] = None
    source: str
    property_id: Optional[str] = None

    @property
    def is_synthetic(self) -> bool:
        return self.source in SYNTHETIC_SOURCES


class LinkableRecord(BaseModel):
    """A favorite or showing request that references a property by free text."""

    id: str
    property_address: Optional[str] = None
    mls_id: Optional[str] = None
    idx_property_id: Optional[str] = None


class ReconcileResult(BaseModel):
    scanned: int = 0
    linked: int = 0
