# backend/idx/parsing.py
import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple
from urllib.parse import parse_qs, urljoin, urlparse

from bs4 import BeautifulSoup, Comment, Tag

from backend.idx.config import IMAGE_CAP
from backend.idx.fields import (
    FIELD_RULES,
    IMAGE_ALT_HINT,
    IMAGE_ANCESTOR_HINT,
    IMAGE_REJECT,
    IMAGE_URL_HINT,
    MLS_PATH_MARKERS,
    MLS_QUERY_KEYS,
    PRICE_TEXT_MAX,
    PRICE_TEXT_MIN,
    TEXT_PATTERNS,
    TITLE_MIN_LENGTH,
    FieldRule,
    clean_ws,
    is_boilerplate,
    valid_address,
    valid_baths,
    valid_beds,
    valid_mls_id,
    valid_sqft,
)
from backend.py_models.property import PropertyRecord

__all__ = ["PageSnapshot", "extract_property", "mls_id_from_url", "extract_images"]

log = logging.getLogger("idx.parsing")

_INVISIBLE = {"script", "style", "noscript", "template", "head", "title", "meta"}


@dataclass(frozen=True)
class PageSnapshot:
    html: str
    url: str = ""
    title: Optional[str] = None


# --- tiny utils -------------------------------------------------------------

def _text(el):
    if not el:
        return None
    try:
        return el.get_text(" ", strip=True)
    except Exception:
        return None


def _pick(soup, rules: List[FieldRule]) -> Tuple[Optional[str], Optional[str]]:
    """First (value, selector) whose element text passes the rule's validator."""
    for sel, validator in rules:
        try:
            el = soup.select_one(sel)
        except Exception:
            # selector unsupported by soupsieve; treat as absent
            continue
        txt = _text(el)
        if not txt:
            continue
        value = validator(txt)
        if value:
            return value, sel
    return None, None


def _strip_extension_ui(root):
    """Remove nodes injected by browser extensions that pollute widget text."""
    for node in root.select("plasmo-csui, #jobright-helper-plugin, [id^='jobright-helper'], grammarly-extension"):
        node.decompose()
    return root


def _visible_text(soup) -> str:
    parts = []
    for s in soup.find_all(string=True):
        if isinstance(s, Comment):
            continue
        if s.parent is not None and s.parent.name in _INVISIBLE:
            continue
        t = s.strip()
        if t:
            parts.append(t)
    return "\n".join(parts)


# --- url --------------------------------------------------------------------

def mls_id_from_url(url: Optional[str]) -> Optional[str]:
    """
    Listing id from the page URL: query keys id → mlsId → listingId, then the
    path segment that follows a listing/property/detail marker.
    """
    if not url:
        return None
    parsed = urlparse(url)
    qs = parse_qs(parsed.query)
    for key in MLS_QUERY_KEYS:
        vals = [v.strip() for v in qs.get(key, []) if v.strip()]
        if vals:
            return vals[0]
    segments = [s for s in parsed.path.split("/") if s]
    for i, seg in enumerate(segments[:-1]):
        if any(m in seg.lower() for m in MLS_PATH_MARKERS):
            candidate = valid_mls_id(segments[i + 1])
            if candidate:
                return candidate
    return None


# --- text fallbacks ---------------------------------------------------------

def _price_from_text(text: str) -> Optional[str]:
    # Listing pages also show HOA dues, taxes and payment estimates; the list price is the largest
    best = None
    for m in TEXT_PATTERNS["price"].finditer(text):
        digits = m.group(1).replace(",", "")
        if not digits.isdigit():
            continue
        val = int(digits)
        if PRICE_TEXT_MIN <= val <= PRICE_TEXT_MAX and (best is None or val > best):
            best = val
    return str(best) if best is not None else None


def _first_valid(pattern, text: str, validator) -> Optional[str]:
    for m in pattern.finditer(text):
        value = validator(m.group(1) if m.groups() else m.group(0))
        if value:
            return value
    return None


def _address_from_text(text: str) -> Optional[str]:
    for m in TEXT_PATTERNS["address"].finditer(text):
        addr = clean_ws(m.group(0))
        if 10 < len(addr) < 200 and not is_boilerplate(addr):
            return addr
    return None


def _address_from_title(title: Optional[str]) -> Optional[str]:
    t = clean_ws(title)
    if len(t) < TITLE_MIN_LENGTH or is_boilerplate(t):
        return None
    return t


# --- images -----------------------------------------------------------------

def _ancestor_classes(img: Tag, depth: int = 4) -> str:
    out = []
    for p in list(img.parents)[:depth]:
        if isinstance(p, Tag):
            out.append(" ".join(p.get("class", [])))
            out.append(p.get("id") or "")
    return " ".join(out)


def extract_images(soup, base_url: str = "", cap: int = IMAGE_CAP) -> List[str]:
    images: List[str] = []
    for img in soup.find_all("img"):
        src = (img.get("src") or img.get("data-src") or "").strip()
        if not src or src.startswith("data:"):
            continue
        if IMAGE_REJECT.search(src):
            continue
        alt = img.get("alt") or ""
        if not (
            IMAGE_URL_HINT.search(src)
            or IMAGE_ALT_HINT.search(alt)
            or IMAGE_ANCESTOR_HINT.search(_ancestor_classes(img))
        ):
            continue
        absolute = urljoin(base_url, src) if base_url else src
        if absolute not in images:
            images.append(absolute)
        if len(images) >= cap:
            break
    return images


# --- main -------------------------------------------------------------------

def extract_property(snapshot: PageSnapshot, image_cap: int = IMAGE_CAP) -> Optional[PropertyRecord]:
    """
    Pull a PropertyRecord out of a rendered widget page.

    Every field walks its selector list first and falls back to a regex scan of
    the visible page text. Returns None when the result is not valid (no address,
    or none of price / mls id / beds); the scheduler retries in that case.
    """
    soup = BeautifulSoup(snapshot.html or "", "lxml")
    _strip_extension_ui(soup)
    page_text = _visible_text(soup)
    found = {}
    via = {}

    for field in ("address", "price", "beds", "baths", "sqft"):
        value, sel = _pick(soup, FIELD_RULES[field])
        found[field], via[field] = value, sel

    if not found["price"]:
        found["price"] = _price_from_text(page_text)
        via["price"] = "text" if found["price"] else None
    if not found["beds"]:
        found["beds"] = _first_valid(TEXT_PATTERNS["beds"], page_text, valid_beds)
        via["beds"] = "text" if found["beds"] else None
    if not found["baths"]:
        found["baths"] = _first_valid(TEXT_PATTERNS["baths"], page_text, valid_baths)
        via["baths"] = "text" if found["baths"] else None
    if not found["sqft"]:
        found["sqft"] = _first_valid(TEXT_PATTERNS["sqft"], page_text, valid_sqft)
        via["sqft"] = "text" if found["sqft"] else None

    if not found["address"]:
        found["address"] = _address_from_text(page_text)
        via["address"] = "text" if found["address"] else None
    if not found["address"]:
        title = snapshot.title if snapshot.title is not None else _text(soup.title)
        found["address"] = _address_from_title(title)
        via["address"] = "title" if found["address"] else None

    mls_id = mls_id_from_url(snapshot.url)
    via["mls_id"] = "url" if mls_id else None
    if not mls_id:
        mls_id, via["mls_id"] = _pick(soup, FIELD_RULES["mls_id"])
    if not mls_id:
        mls_id = _first_valid(TEXT_PATTERNS["mls_id"], page_text, valid_mls_id)
        via["mls_id"] = "text" if mls_id else None

    record = PropertyRecord(
        address=found["address"] or "",
        price=found["price"],
        beds=found["beds"],
        baths=found["baths"],
        sqft=found["sqft"],
        mls_id=mls_id,
        images=extract_images(soup, snapshot.url, image_cap),
        page_url=snapshot.url or None,
    )

    log.debug(
        "EXTRACT FIELDS | url=%s %s images=%d",
        snapshot.url,
        " ".join(f"{k}={via.get(k) or '-'}" for k in ("address", "price", "beds", "baths", "sqft", "mls_id")),
        len(record.images),
    )
    if not record.is_valid:
        return None
    return record
