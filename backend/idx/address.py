"""
Address helpers shared by the resolver and the enrichment generator.

`normalize_address` applies its rules in a fixed order:
  1. trim + lowercase
  2. drop a leading "the "
  3. drop a trailing street-suffix token (dr, drive, st, street, ...)
  4. drop a unit / apt / "#" suffix and everything after it
  5. collapse whitespace
"""

import re
from typing import Optional

__all__ = ["normalize_address", "street_part", "parse_city", "parse_state"]

_LEADING_THE = re.compile(r"^the\s+", re.I)
_STREET_SUFFIX = re.compile(
    r"\s+(?:dr|drive|st|street|ave|avenue|rd|road|ln|lane|ct|court|blvd|boulevard"
    r"|way|pl|place|cir|circle)\.?$",
    re.I,
)
_UNIT_SUFFIX = re.compile(r"\s+(?:(?:unit|apt|apartment|ste|suite)\b|#).*$", re.I)
_WS = re.compile(r"\s+")

STATE_TO_ABBR = {
    "alabama": "AL", "alaska": "AK", "arizona": "AZ", "arkansas": "AR",
    "california": "CA", "colorado": "CO", "connecticut": "CT",
    "delaware": "DE", "florida": "FL", "georgia": "GA", "hawaii": "HI",
    "idaho": "ID", "illinois": "IL", "indiana": "IN", "iowa": "IA",
    "kansas": "KS", "kentucky": "KY", "louisiana": "LA", "maine": "ME",
    "maryland": "MD", "massachusetts": "MA", "michigan": "MI",
    "minnesota": "MN", "mississippi": "MS", "missouri": "MO",
    "montana": "MT", "nebraska": "NE", "nevada": "NV", "new hampshire": "NH",
    "new jersey": "NJ", "new mexico": "NM", "new york": "NY",
    "north carolina": "NC", "north dakota": "ND", "ohio": "OH",
    "oklahoma": "OK", "oregon": "OR", "pennsylvania": "PA",
    "rhode island": "RI", "south carolina": "SC", "south dakota": "SD",
    "tennessee": "TN", "texas": "TX", "utah": "UT", "vermont": "VT",
    "virginia": "VA", "washington": "WA", "west virginia": "WV",
    "wisconsin": "WI", "wyoming": "WY", "district of columbia": "DC",
}


def normalize_address(address: Optional[str]) -> str:
    if not address:
        return ""
    s = address.strip().lower()
    s = _LEADING_THE.sub("", s)
    s = _STREET_SUFFIX.sub("", s)
    s = _UNIT_SUFFIX.sub("", s)
    return _WS.sub(" ", s).strip()


def street_part(address: Optional[str]) -> str:
    """'456 Oak Ave, Sacramento, CA' → '456 Oak Ave'."""
    if not address:
        return ""
    return address.split(",")[0].strip()


def parse_city(address: Optional[str]) -> Optional[str]:
    parts = [p.strip() for p in (address or "").split(",")]
    if len(parts) > 1 and parts[1]:
        return parts[1]
    return None


def parse_state(address: Optional[str]) -> Optional[str]:
    """Return a 2-letter state code from 'street, city, ST 12345' style addresses."""
    parts = [p.strip() for p in (address or "").split(",")]
    if len(parts) < 3:
        return None
    token = re.sub(r"\s*\d{5}(?:-\d{4})?\s*$", "", parts[2]).strip()
    if len(token) == 2 and token.isalpha():
        return token.upper()
    return STATE_TO_ABBR.get(token.lower())
