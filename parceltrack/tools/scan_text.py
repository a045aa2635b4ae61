import re
from typing import Dict, List, Optional

from parceltrack.models import TrackingCandidate
from parceltrack.tools.carrier_detect import classify, extract_all

# Looser second pass for human-written text (SMS, forwarded messages).
# Keyword (English / Hebrew) + optional separator + an 8-30 char alphanumeric token.
SMS_KEYWORD_RE = re.compile(
    r"(?:tracking|shipment|parcel|package|delivery|מעקב|משלוח|המשלוח)"
    r"\s*(?:#|number|no\.?|:)?\s*[:.]?\s*([A-Z0-9]{8,30})",
    re.IGNORECASE,
)

# Short all-digit runs are phone numbers or codes, not tracking numbers
SHORT_DIGITS_RE = re.compile(r"^\d{8,9}$")

# Pickup-point SMS shapes (courier store drop-off and post-office branch)
STORE_WITH_ADDRESS_RE = re.compile(r"בחנות\s+(.+?),\s*\*?([^,*]+)\*?\s*(\d+)\s+([^,]+)")
STORE_RE = re.compile(r"בחנות\s+([^,\n]+)")
STARRED_ADDRESS_RE = re.compile(r"\*([^*]+)\*\s*(\d+)\s+([^,\n.]+)")
HOURS_RE = re.compile(r"ימים\s+([^ו]+(?:וערבי חג\s+\S+)?)")
SHELF_RE = re.compile(r"מדף\s+(\d+)")
URL_RE = re.compile(r"(https?://\S+)")
POST_BRANCH_RE = re.compile(r"לסניף\s+([^ו\n]+)")
ENGLISH_PICKUP_RE = re.compile(
    r"(?:pick\s?up|collect(?:ion)?)\s+(?:point|location|at)\s*:?\s*([^\n.]{3,120})",
    re.IGNORECASE,
)


def _secondary_ok(token: str, seen: set) -> bool:
    if token in seen or len(token) < 8:
        return False
    if SHORT_DIGITS_RE.match(token):
        return False
    # plain words ("delivered", "shipments") are not tracking numbers
    return any(ch.isdigit() for ch in token)


def scan_text(text: Optional[str]) -> List[TrackingCandidate]:
    """
    Two-tier scan. The structured carrier patterns go first; the keyword-anchored pass
    only adds numbers the first pass missed.
    """
    text = text or ""
    found = extract_all(text)
    seen = {c.tracking_number for c in found}

    for m in SMS_KEYWORD_RE.finditer(text):
        tn = m.group(1).upper()
        if not _secondary_ok(tn, seen):
            continue
        seen.add(tn)
        found.append(TrackingCandidate(tracking_number=tn, carrier=classify(tn)))

    return found


def parse_pickup_info(text: Optional[str]) -> Optional[Dict[str, str]]:
    """Pull pickup-point details (store, address, hours, shelf, url) out of a delivery SMS."""
    text = text or ""
    info: Dict[str, str] = {}

    m = STORE_WITH_ADDRESS_RE.search(text)
    if m:
        info["name"] = m.group(1).strip()
        info["address"] = f"{m.group(2).strip()} {m.group(3)}, {m.group(4).strip()}"

    if "name" not in info:
        m = STORE_RE.search(text)
        if m:
            info["name"] = m.group(1).strip()

    if "address" not in info:
        m = STARRED_ADDRESS_RE.search(text)
        if m:
            info["address"] = f"{m.group(1).strip()} {m.group(2)}, {m.group(3).strip()}"

    m = HOURS_RE.search(text)
    if m:
        info["hours"] = m.group(1).strip()

    m = SHELF_RE.search(text)
    if m:
        info["shelf"] = m.group(1)

    m = URL_RE.search(text)
    if m:
        info["url"] = m.group(1)

    if "name" not in info:
        m = POST_BRANCH_RE.search(text)
        if m:
            info["name"] = f"דואר ישראל - {m.group(1).strip()}"

    if "name" not in info:
        m = ENGLISH_PICKUP_RE.search(text)
        if m:
            info["name"] = m.group(1).strip()

    return info or None
