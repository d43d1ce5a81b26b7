import logging
from dataclasses import dataclass
from typing import Optional

from pydantic import ValidationError
from pymongo.errors import PyMongoError

from backend.idx.address import normalize_address
from backend.idx.config import FUZZY_MIN_LENGTH

log = logging.getLogger("idx.resolver")

TIER_MLS_ID = "mls_id"
TIER_ADDRESS = "address"
TIER_FUZZY = "fuzzy_address"


@dataclass(frozen=True)
class Resolution:
    property_id: str
    tier: str
    mls_id: Optional[str] = None
    address: Optional[str] = None
    synthetic: bool = False


class IdentityResolver:
    """
    Map a (free-text address, mls id) pair onto a catalog entry.

    Tiers, each tried only when the previous one found nothing:
      1. exact mls id
      2. exact address
      3. fuzzy address: normalized equality, then a substring lookup when the
         normalized address is at least `min_fuzzy_length` characters
    No match is a normal outcome and returns None.
    """

    def __init__(self, catalog, min_fuzzy_length: int = FUZZY_MIN_LENGTH):
        self.catalog = catalog
        self.min_fuzzy_length = min_fuzzy_length

    def resolve(self, address: Optional[str] = None, mls_id: Optional[str] = None) -> Optional[str]:
        match = self.match(address, mls_id)
        return match.property_id if match else None

    def match(self, address: Optional[str] = None, mls_id: Optional[str] = None) -> Optional[Resolution]:
        address = (address or "").strip()
        mls_id = (mls_id or "").strip()
        if not address and not mls_id:
            return None
        try:
            return self._match(address, mls_id)
        except (PyMongoError, ValidationError) as e:
            log.error("RESOLVE FAILED | address=%r mls_id=%s err=%s", address, mls_id, e)
            return None

    def _match(self, address: str, mls_id: str) -> Optional[Resolution]:
        if mls_id:
            entry = self.catalog.get_by_key(mls_id)
            if entry:
                return self._hit(TIER_MLS_ID, entry, address, mls_id)

        if address:
            entry = self.catalog.get_by_address(address)
            if entry:
                return self._hit(TIER_ADDRESS, entry, address, mls_id)

            cleaned = normalize_address(address)
            entry = self.catalog.find_by_normalized_address(cleaned) if cleaned else None
            if entry is None and len(cleaned) >= self.min_fuzzy_length:
                entry = self.catalog.find_address_containing(cleaned)
            if entry:
                return self._hit(TIER_FUZZY, entry, address, mls_id)

        log.info("RESOLVE MISS | address=%r mls_id=%s", address, mls_id or None)
        return None

    @staticmethod
    def _hit(tier: str, entry, address: str, mls_id: str) -> Resolution:
        log.info("RESOLVE HIT | tier=%s address=%r mls_id=%s → %s (%r)", tier, address, mls_id or None, entry.id, entry.address)
        return Resolution(
            property_id=entry.id,
            tier=tier,
            mls_id=entry.mls_id,
            address=entry.address,
            synthetic=entry.is_synthetic,
        )
