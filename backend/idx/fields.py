"""
Selector configuration for the iHomeFinder widget.

Each field maps to an ordered list of (css selector, validator) pairs. A validator
takes the element's trimmed text and returns the cleaned value, or None when the
text does not look like that field.
"""

import re
from typing import Callable, Dict, List, Optional, Tuple

Validator = Callable[[str], Optional[str]]
FieldRule = Tuple[str, Validator]

ADDRESS_MIN_LENGTH = 6
TITLE_MIN_LENGTH = 6
PRICE_TEXT_MIN = 50_000
PRICE_TEXT_MAX = 50_000_000
SQFT_MIN, SQFT_MAX = 200, 50_000
ROOMS_MAX = 20

# Widget chrome that shows up in headers and titles before the listing renders
BOILERPLATE = re.compile(
    r"^\s*(?:welcome|sign\s*in|log\s*in|login|register|home\b|search|listings?\b"
    r"|property\s+(?:search|details|listing)|ihome|menu|loading)",
    re.I,
)

_PRICE = re.compile(r"\$\s*(\d[\d,]*)")
_PLAIN_PRICE = re.compile(r"^\s*(\d{1,3}(?:,\d{3})+)\s*$")
_NUM = re.compile(r"(\d+(?:\.\d+)?)")
_INT_TOKEN = re.compile(r"(\d[\d,]*)")
_MLS_PREFIX = re.compile(r"^\s*(?:mls|listing|idx)?\s*(?:#|id|number|no\.?)?\s*:?\s*", re.I)
_MLS_TOKEN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9\-]{3,}$")


def clean_ws(text: Optional[str]) -> str:
    return re.sub(r"\s+", " ", text or "").strip()


def valid_price(text: str) -> Optional[str]:
    m = _PRICE.search(text) or _PLAIN_PRICE.match(text)
    if not m:
        return None
    digits = m.group(1).replace(",", "")
    if not digits or int(digits) <= 0:
        return None
    return digits


def _rooms(text: str) -> Optional[str]:
    m = _NUM.search(text)
    if not m:
        return None
    val = float(m.group(1))
    if not 0 < val <= ROOMS_MAX:
        return None
    return m.group(1)


def valid_beds(text: str) -> Optional[str]:
    val = _rooms(text)
    if not val:
        return None
    beds = int(float(val))
    return str(beds) if beds >= 1 else None


def valid_baths(text: str) -> Optional[str]:
    return _rooms(text)


def valid_sqft(text: str) -> Optional[str]:
    m = _INT_TOKEN.search(text)
    if not m:
        return None
    digits = m.group(1).replace(",", "")
    if not digits.isdigit() or not SQFT_MIN <= int(digits) <= SQFT_MAX:
        return None
    return digits


def is_boilerplate(text: str) -> bool:
    return bool(BOILERPLATE.match(text))


def valid_address(text: str) -> Optional[str]:
    s = clean_ws(text)
    if len(s) < ADDRESS_MIN_LENGTH or is_boilerplate(s):
        return None
    # a street address carries a house number and a street name
    if not re.search(r"\d", s) or not re.search(r"[A-Za-z]{2,}", s):
        return None
    return s


def valid_mls_id(text: str) -> Optional[str]:
    s = _MLS_PREFIX.sub("", clean_ws(text))
    return s if _MLS_TOKEN.match(s) else None


def _rules(selectors: List[str], validator: Validator) -> List[FieldRule]:
    return [(sel, validator) for sel in selectors]


FIELD_RULES: Dict[str, List[FieldRule]] = {
    "address": _rules(
        [
            ".ihf-detail-address",
            ".ihf-listing-address",
            ".ihf-address",
            ".ihf-property-address",
            "[data-testid='property-address']",
            ".listing-address",
            ".property-address",
            ".detail-address",
            "h1[class*='address']",
            "[class*='property'][class*='address']",
            ".address-line",
            ".full-address",
            "span[itemprop='streetAddress']",
            ".property-title",
            ".listing-title",
            "h1",
            "h2",
        ],
        valid_address,
    ),
    "price": _rules(
        [
            ".ihf-detail-price",
            ".ihf-listing-price",
            ".ihf-price",
            "[data-testid='property-price']",
            ".listing-price",
            ".property-price",
            ".detail-price",
            ".price-display",
            ".current-price",
            "[itemprop='price']",
            "span[class*='price']",
            "[class*='price']",
        ],
        valid_price,
    ),
    "beds": _rules(
        [
            ".ihf-detail-beds",
            ".ihf-beds",
            ".ihf-bedrooms",
            "[data-testid='beds']",
            ".property-beds",
            ".bedrooms",
            ".beds",
            ".bed-count",
            ".bedroom-count",
            "span[class*='bed']",
        ],
        valid_beds,
    ),
    "baths": _rules(
        [
            ".ihf-detail-baths",
            ".ihf-baths",
            ".ihf-bathrooms",
            "[data-testid='baths']",
            ".property-baths",
            ".bathrooms",
            ".baths",
            ".bath-count",
            ".bathroom-count",
            "span[class*='bath']",
        ],
        valid_baths,
    ),
    "sqft": _rules(
        [
            ".ihf-detail-sqft",
            ".ihf-sqft",
            ".ihf-square-feet",
            "[data-testid='sqft']",
            ".property-sqft",
            ".square-feet",
            ".sqft",
            ".sq-ft",
            ".square-footage",
            "span[class*='sqft']",
            "span[class*='square']",
        ],
        valid_sqft,
    ),
    "mls_id": _rules(
        [
            ".ihf-detail-mls",
            ".ihf-mls-number",
            ".ihf-listing-id",
            "[data-testid='mls-id']",
            ".mls-number",
            ".mls-id",
            ".listing-id",
        ],
        valid_mls_id,
    ),
}

# Query-string keys that carry the listing id, in priority order
MLS_QUERY_KEYS = ("id", "mlsId", "listingId")
MLS_PATH_MARKERS = ("listing", "property", "detail")

# Text-scan fallbacks over visible page text
TEXT_PATTERNS = {
    "price": re.compile(r"\$\s*(\d[\d,]*)"),
    "beds": re.compile(r"(?<![\d.])(\d+)\s*(?:bed(?:room)?s?|bd|br)\b", re.I),
    "baths": re.compile(r"(\d+(?:\.\d+)?)\s*(?:bath(?:room)?s?|ba)\b", re.I),
    "sqft": re.compile(r"(\d[\d,]*)\s*(?:sq\.?\s*ft|sqft|square\s*f(?:ee)?t)\b", re.I),
    "address": re.compile(r"\d+[^,\n]*,\s*[A-Za-z .'-]+,\s*[A-Z]{2}\s*\d{5}"),
    "mls_id": re.compile(r"MLS\s*(?:#|ID|Number)?\s*:?\s*#?\s*([A-Za-z0-9][A-Za-z0-9\-]{3,})", re.I),
}

IMAGE_REJECT = re.compile(r"logo|icon|avatar|spacer|sprite|pixel|badge", re.I)
IMAGE_URL_HINT = re.compile(r"listing|property|photo|image|mls|gallery|media", re.I)
IMAGE_ALT_HINT = re.compile(r"property|home|house|listing|photo|bedroom|kitchen|exterior", re.I)
IMAGE_ANCESTOR_HINT = re.compile(r"gallery|photo|slider|carousel|slideshow|listing|property", re.I)
