import re
from typing import List, Optional, Tuple

from parceltrack.models import Carrier, TrackingCandidate

# Ordered rules: specific, structured shapes first, generic numeric lengths last. First hit wins.
# Structured shapes are searched word-bounded, so "Your UPS number is 1Z..." still classifies.
CLASSIFY_SEARCH_RULES: List[Tuple[re.Pattern, Carrier]] = [
    (re.compile(r"\b1Z[A-Z0-9]{16}\b"), Carrier.UPS),
    (re.compile(r"\b(?:9\d{19,25}|[A-Z]{2}\d{9}US)\b"), Carrier.USPS),
    (re.compile(r"\b[A-Z]{2}\d{9}GB\b"), Carrier.ROYAL_MAIL),
    (re.compile(r"\bY[A-Z]\d{9}[A-Z]{2}\b"), Carrier.YANWEN),
    (re.compile(r"\b(?:LP|CAINIAO)\d{12,20}\b"), Carrier.CAINIAO),
]

# Generic lengths only count when they are the whole string.
CLASSIFY_RULES: List[Tuple[re.Pattern, Carrier]] = [
    (re.compile(r"\d{12}|\d{15}|\d{20}"), Carrier.FEDEX),
    (re.compile(r"\d{10}|[A-Z]{3}\d{7,20}"), Carrier.DHL),
    (re.compile(r"\d{14}"), Carrier.DPD),
    # marketplace-standard shape, e.g. "RS1300705226Y"; classifier-only, too broad for body text
    (re.compile(r"[A-Z]{2}\d{9,13}[A-Z]?"), Carrier.ALIEXPRESS_STANDARD),
]

# Same shapes, word-bounded, for scanning free text. Order mirrors the classify rules.
SCAN_PATTERNS: List[Tuple[re.Pattern, Carrier]] = [
    (re.compile(r"\b1Z[A-Z0-9]{16}\b", re.IGNORECASE), Carrier.UPS),
    (re.compile(r"\b(?:9\d{19,25}|[A-Z]{2}\d{9}US)\b", re.IGNORECASE), Carrier.USPS),
    (re.compile(r"\b[A-Z]{2}\d{9}GB\b", re.IGNORECASE), Carrier.ROYAL_MAIL),
    (re.compile(r"\bY[A-Z]\d{9}[A-Z]{2}\b", re.IGNORECASE), Carrier.YANWEN),
    (re.compile(r"\b(?:LP|CAINIAO)\d{12,20}\b", re.IGNORECASE), Carrier.CAINIAO),
    (re.compile(r"\b(?:\d{12}|\d{15}|\d{20})\b"), Carrier.FEDEX),
    (re.compile(r"\b(?:\d{10,11}|[A-Z]{3}\d{7,20}|JJD\d{18})\b", re.IGNORECASE), Carrier.DHL),
    (re.compile(r"\b\d{14}\b"), Carrier.DPD),
]

# Words that precede phone numbers; a hit right after one of these is skipped
PHONE_CONTEXT = re.compile(r"(?:phone|tel|mobile|fax|call|whatsapp|\(\+?\d{1,3}\))\s*", re.IGNORECASE)
PHONE_LOOKBEHIND = 30
BARE_TEN_DIGITS = re.compile(r"^\d{10}$")

# Templated subject lines: "Package RS1300705226Y has been delivered"
SUBJECT_RE = re.compile(r"\bPackage\s+([A-Z]{2}\d{9,17}[A-Z]{0,2})\b", re.IGNORECASE)

CARRIER_URLS = {
    Carrier.UPS: "https://www.ups.com/track?tracknum={tn}",
    Carrier.USPS: "https://tools.usps.com/go/TrackConfirmAction?tLabels={tn}",
    Carrier.FEDEX: "https://www.fedex.com/fedextrack/?trknbr={tn}",
    Carrier.DHL: "https://www.dhl.com/global-en/home/tracking/tracking-global-forwarding.html?submit=1&tracking-id={tn}",
    Carrier.DPD: "https://track.dpd.co.uk/parcels/{tn}",
    Carrier.ROYAL_MAIL: "https://www.royalmail.com/track-your-item#/tracking-results/{tn}",
    Carrier.CAINIAO: "https://global.cainiao.com/detail.htm?mailNoList={tn}",
    Carrier.YANWEN: "https://track.yw56.com.cn/en/querydel?nums={tn}",
    Carrier.ALIEXPRESS_STANDARD: "https://global.cainiao.com/detail.htm?mailNoList={tn}",
}


def _normalize(token: Optional[str]) -> str:
    return (token or "").strip().upper()


def classify(text: Optional[str]) -> Carrier:
    """Map a tracking number, or a short string carrying one, to a carrier. Never raises."""
    n = _normalize(text)
    if not n:
        return Carrier.UNKNOWN
    for pattern, carrier in CLASSIFY_SEARCH_RULES:
        if pattern.search(n):
            return carrier
    for pattern, carrier in CLASSIFY_RULES:
        if pattern.fullmatch(n):
            return carrier
    return Carrier.UNKNOWN


def _preceded_by_phone_context(text: str, start: int) -> bool:
    before = text[max(0, start - PHONE_LOOKBEHIND):start]
    return bool(PHONE_CONTEXT.search(before))


def extract_all(text: Optional[str]) -> List[TrackingCandidate]:
    """
    Scan free text with every carrier pattern (priority order) and return each distinct
    number once. Dedup key is the upper-cased number; first occurrence wins.
    """
    text = text or ""
    results: List[TrackingCandidate] = []
    seen = set()

    for pattern, carrier in SCAN_PATTERNS:
        for m in pattern.finditer(text):
            tn = m.group(0).upper()
            if tn in seen:
                continue
            if _preceded_by_phone_context(text, m.start()):
                continue
            if BARE_TEN_DIGITS.match(tn):
                continue
            seen.add(tn)
            results.append(TrackingCandidate(tracking_number=tn, carrier=carrier))

    return results


def extract_from_subject(subject: Optional[str]) -> Optional[TrackingCandidate]:
    m = SUBJECT_RE.search(subject or "")
    if not m:
        return None
    tn = m.group(1).upper()
    return TrackingCandidate(tracking_number=tn, carrier=classify(tn))


def tracking_url(tracking_number: str, carrier: Carrier) -> Optional[str]:
    tmpl = CARRIER_URLS.get(carrier)
    return tmpl.format(tn=_normalize(tracking_number)) if tmpl else None
