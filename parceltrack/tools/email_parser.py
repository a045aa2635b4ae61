"""
Multi-layer merchant/shipment email parser.

parse_email(html, from_address, subject) -> ParsedEmailFacts

Layers, in order (later layers read what earlier ones produced):
  1. strip non-content markup, flatten to text, build one search corpus (from + subject + text)
  2. merchant detection (ordered domain patterns, first match wins; else From display name)
  3. tracking / order id / items, via the marketplace deep parser or the generic one
  4. price + currency
  5. order date
  6. status phrase
  7. confidence score

Nothing here raises on bad input: a missing signal is a None field and a lower score.
"""
from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import List, Optional, Tuple

from bs4 import BeautifulSoup

from parceltrack.models import ParsedEmailFacts, Platform, ShipmentStatus, TrackingCandidate
from parceltrack.tools.carrier_detect import classify, extract_from_subject
from parceltrack.tools.scan_text import scan_text

log = logging.getLogger(__name__)

MAX_ITEMS = 10

# -------- Merchants --------
MERCHANT_PATTERNS: List[Tuple[re.Pattern, Platform, str]] = [
    (re.compile(r"amazon\.(?:com\.au|co\.uk|co\.jp|com|de|fr|it|es|ca)", re.I), Platform.AMAZON, "Amazon"),
    (re.compile(r"aliexpress\.com", re.I), Platform.ALIEXPRESS, "AliExpress"),
    (re.compile(r"ebay\.(?:com|co\.uk|de|fr)", re.I), Platform.EBAY, "eBay"),
    (re.compile(r"etsy\.com", re.I), Platform.ETSY, "Etsy"),
    (re.compile(r"shein\.com", re.I), Platform.SHEIN, "Shein"),
    (re.compile(r"temu\.com", re.I), Platform.TEMU, "Temu"),
    (re.compile(r"walmart\.com", re.I), Platform.WALMART, "Walmart"),
    (re.compile(r"iherb\.com", re.I), Platform.IHERB, "iHerb"),
]
FROM_NAME_RE = re.compile(r"(?:from\s+)?([^<@]+)", re.I)
UNKNOWN_MERCHANT = "Unknown Merchant"

# Marketplace that gets the template-aware deep parser
DEEP_PARSE_PLATFORM = Platform.ALIEXPRESS

# -------- Order ids --------
ORDER_ID_PATTERNS: List[re.Pattern] = [
    re.compile(r"order\s*#?\s*:?\s*([A-Z0-9-]{5,30})", re.I),
    re.compile(r"order\s+number\s*:?\s*([A-Z0-9-]{5,30})", re.I),
    re.compile(r"confirmation\s*#?\s*:?\s*([A-Z0-9-]{5,30})", re.I),
    re.compile(r"(?:order|ref|reference)\s*(?:id|number|#)\s*:?\s*(\d{3}-\d{7}-\d{7})", re.I),
]
# "Order number: 8012345678901234" style ids of the deep-parse marketplace
MARKETPLACE_ORDER_ID_RE = re.compile(r"order\s*(?:number|ID|#|no\.?)\s*:?\s*(\d{15,20})", re.I)

# -------- Deep path: tracking fallback + item window --------
NARROW_TRACKING_RE = re.compile(r"\b([A-Z]{2}\d{9,17}[A-Z]{0,2})\b")
NARROW_MAX_LEN = 18

ITEM_WINDOW_START_RE = re.compile(r"package\s+details", re.I)
ITEM_WINDOW_END_RES: List[re.Pattern] = [
    re.compile(r"ship\s+to", re.I),
    re.compile(r"download", re.I),
    re.compile(r"prices?\s+(?:shown|displayed|are)\s", re.I),
]
ITEM_WINDOW_CAP = 2000
ITEM_SPLIT_RE = re.compile(r"\.(?=\s|$)|\n")
ITEM_BOILERPLATE_RE = re.compile(
    r"\b(?:package details|orders?|tracking|track|shipped|delivered|delivery|in transit|view|click|"
    r"help|unsubscribe|privacy|copyright|download|ship to|app|customer service|qty|"
    r"quantity|price|total|subtotal|items? in this package|dear|hello|hi|thanks?)\b",
    re.I,
)
QTY_SUFFIX_RE = re.compile(r"\s*(?:[x×]\s*\d{1,3}|qty\s*:?\s*\d{1,3})\s*$", re.I)
COUNTRY_SUFFIX_RE = re.compile(
    r"[\s,;-]*(?:ships?\s+from\s*:?\s*)?\b(?:china|cn|israel|il|united states|usa|us|"
    r"united kingdom|uk|germany|de|france|fr|spain|es|poland|pl)\s*$",
    re.I,
)
QTY_LINE_RE = re.compile(r"([A-Za-z0-9][^\n]{5,150}?)\s+[x×]\s?\d{1,3}\b")

ITEM_SELECTORS = [
    'td[class*="item"]',
    'td[class*="product"]',
    'div[class*="item-name"]',
    'span[class*="product-name"]',
    'a[class*="item"]',
]

# -------- Price --------
# The currency-code form captures the code in group 2
PRICE_PATTERNS: List[re.Pattern] = [
    re.compile(r"(?:grand total|total|amount)\s*:?\s*\$\s*([\d,]+\.?\d*)", re.I),
    re.compile(r"(?:grand total|total|amount)\s*:?\s*€\s*([\d,]+\.?\d*)", re.I),
    re.compile(r"(?:grand total|total|amount)\s*:?\s*£\s*([\d,]+\.?\d*)", re.I),
    re.compile(r"(?:total|amount)\s*:?\s*([\d,]+\.?\d*)\s*(USD|EUR|GBP)", re.I),
]

# -------- Dates --------
DATE_PATTERNS: List[Tuple[re.Pattern, Tuple[str, ...]]] = [
    (re.compile(r"(?:order|placed|date)\s*:?\s*([A-Za-z]+\s+\d{1,2},?\s+\d{4})", re.I),
     ("%B %d, %Y", "%B %d %Y", "%b %d, %Y", "%b %d %Y")),
    (re.compile(r"(?:order|placed|date)\s*:?\s*(\d{1,2}/\d{1,2}/\d{2,4})", re.I),
     ("%m/%d/%Y", "%m/%d/%y")),
    (re.compile(r"(?:order|placed|date)\s*:?\s*(\d{4}-\d{2}-\d{2})", re.I),
     ("%Y-%m-%d",)),
]

# -------- Status phrases --------
# Order matters: terminal / specific phrases before generic ones. Failed deliveries come first so a
# negated "delivered" never reads as a completed one.
STATUS_PHRASES: List[Tuple[re.Pattern, ShipmentStatus]] = [
    (re.compile(r"\b(?:(?:(?:could|can|was|were|has|have)(?:\s*not|n't)|can't)\s+(?:been\s+|be\s+)?delivered|"
                r"failed to be delivered|not been delivered|delivery (?:attempt )?failed|failed delivery|"
                r"delivery exception|unable to deliver)\b", re.I), ShipmentStatus.EXCEPTION),
    # completed forms only; "will be delivered" / "to be delivered" are promises, not facts
    (re.compile(r"\b(?:(?:has|have) been delivered|(?:was|were) delivered|successfully delivered|"
                r"(?<!be )(?<!not )delivered (?:on|today|yesterday|at)\b|delivery (?:is )?complete)", re.I),
     ShipmentStatus.DELIVERED),
    (re.compile(r"\b(?:ready for (?:pick\s?up|collection)|awaiting collection|available for pick\s?up|"
                r"ready to be picked up)\b", re.I), ShipmentStatus.OUT_FOR_DELIVERY),
    (re.compile(r"\bout for delivery\b", re.I), ShipmentStatus.OUT_FOR_DELIVERY),
    (re.compile(r"\b(?:returned to sender|return to sender|being returned|has been returned)\b", re.I),
     ShipmentStatus.RETURNED),
    (re.compile(r"\b(?:in transit|on its way|on the way|arrived at|departed)\b", re.I), ShipmentStatus.IN_TRANSIT),
    (re.compile(r"\b(?:has shipped|has been shipped|shipped|dispatched)\b", re.I), ShipmentStatus.SHIPPED),
    (re.compile(r"\b(?:being processed|processing|preparing your order)\b", re.I), ShipmentStatus.PROCESSING),
    (re.compile(r"\b(?:order confirmed|order confirmation|thank you for your order|order received|"
                r"order placed)\b", re.I), ShipmentStatus.ORDERED),
]

CONFIDENCE_WEIGHTS = {"merchant": 0.3, "tracking": 0.3, "order_id": 0.2, "items": 0.2}


# -------- Helpers --------
def _soup(html: str) -> BeautifulSoup:
    soup = BeautifulSoup(html or "", "html.parser")
    for tag in soup(["style", "script", "head"]):
        tag.decompose()
    return soup


def _flatten(soup: BeautifulSoup) -> str:
    # keep line breaks for the item window, collapse runs of blanks
    text = soup.get_text("\n")
    lines = [re.sub(r"\s+", " ", ln).strip() for ln in text.splitlines()]
    return "\n".join(ln for ln in lines if ln)


def detect_merchant(corpus: str, from_address: str) -> Tuple[Platform, str]:
    for pattern, platform, name in MERCHANT_PATTERNS:
        if pattern.search(corpus):
            return platform, name
    m = FROM_NAME_RE.match((from_address or "").strip())
    name = m.group(1).strip().strip('"') if m else ""
    return Platform.UNKNOWN, name or UNKNOWN_MERCHANT


def extract_order_id(text: str, platform: Platform = Platform.UNKNOWN) -> Optional[str]:
    patterns = list(ORDER_ID_PATTERNS)
    if platform == DEEP_PARSE_PLATFORM:
        patterns.insert(0, MARKETPLACE_ORDER_ID_RE)
    for pattern in patterns:
        for m in pattern.finditer(text):
            candidate = m.group(1).strip("-")
            # labels like "order shipped" capture a word, not an id
            if any(ch.isdigit() for ch in candidate):
                return candidate
    return None


def _digit_heavy(token: str) -> bool:
    digits = sum(ch.isdigit() for ch in token)
    return digits >= 10 and digits / len(token) >= 0.8


def _narrow_tracking(corpus: str) -> Optional[TrackingCandidate]:
    for m in NARROW_TRACKING_RE.finditer(corpus.upper()):
        tn = m.group(1)
        if len(tn) > NARROW_MAX_LEN or _digit_heavy(tn):
            continue
        return TrackingCandidate(tracking_number=tn, carrier=classify(tn))
    return None


def _clean_item(line: str) -> str:
    line = line.strip(" -•*|:\t")
    line = QTY_SUFFIX_RE.sub("", line)
    line = COUNTRY_SUFFIX_RE.sub("", line)
    return line.strip(" -•*|:,\t")


def _dedup_items(candidates: List[str]) -> List[str]:
    out: List[str] = []
    seen = set()
    for c in candidates:
        key = c.lower()
        if key in seen:
            continue
        seen.add(key)
        out.append(c)
        if len(out) >= MAX_ITEMS:
            break
    return out


def _window_items(text: str) -> List[str]:
    start = ITEM_WINDOW_START_RE.search(text)
    if not start:
        return []
    body = text[start.end():start.end() + ITEM_WINDOW_CAP]
    end = len(body)
    for pattern in ITEM_WINDOW_END_RES:
        m = pattern.search(body)
        if m and m.start() < end:
            end = m.start()
    window = body[:end]

    candidates: List[str] = []
    for raw in ITEM_SPLIT_RE.split(window):
        line = _clean_item(raw)
        if len(line) < 4 or len(line) > 200:
            continue
        if ITEM_BOILERPLATE_RE.search(line):
            continue
        if not re.search(r"[A-Za-z]", line):
            continue
        candidates.append(line)
    return _dedup_items(candidates)


def _quantity_items(text: str) -> List[str]:
    candidates = []
    for m in QTY_LINE_RE.finditer(text):
        line = _clean_item(m.group(1))
        if len(line) >= 4 and not ITEM_BOILERPLATE_RE.search(line):
            candidates.append(line)
    return _dedup_items(candidates)


def _selector_items(soup: BeautifulSoup) -> List[str]:
    for selector in ITEM_SELECTORS:
        items = []
        for el in soup.select(selector):
            text = el.get_text(" ", strip=True)
            if text and 2 < len(text) < 200:
                items.append(text)
        if items:
            return items[:MAX_ITEMS]
    return []


def extract_price(text: str) -> Tuple[Optional[Decimal], Optional[str]]:
    for pattern in PRICE_PATTERNS:
        m = pattern.search(text)
        if not m:
            continue
        try:
            amount = Decimal(m.group(1).replace(",", ""))
        except InvalidOperation:
            log.debug(f"unparseable amount {m.group(1)!r}")
            return None, None
        currency = m.group(2).upper() if m.lastindex and m.lastindex >= 2 else "USD"
        if "€" in text:
            currency = "EUR"
        if "£" in text:
            currency = "GBP"
        return amount, currency
    return None, None


def extract_date(text: str) -> Optional[datetime]:
    for pattern, formats in DATE_PATTERNS:
        for m in pattern.finditer(text):
            token = m.group(1).strip()
            for fmt in formats:
                try:
                    return datetime.strptime(token, fmt).replace(tzinfo=timezone.utc)
                except ValueError:
                    continue
    return None


def detect_status(text: str) -> Optional[ShipmentStatus]:
    for pattern, status in STATUS_PHRASES:
        if pattern.search(text):
            return status
    return None


def confidence_score(has_merchant: bool, has_tracking: bool, has_order_id: bool, has_items: bool) -> float:
    score = 0.0
    if has_merchant:
        score += CONFIDENCE_WEIGHTS["merchant"]
    if has_tracking:
        score += CONFIDENCE_WEIGHTS["tracking"]
    if has_order_id:
        score += CONFIDENCE_WEIGHTS["order_id"]
    if has_items:
        score += CONFIDENCE_WEIGHTS["items"]
    return round(score, 2)


# -------- Paths --------
def _deep_parse(text: str, corpus: str, subject: str):
    # Subject first: body text carries an order id shaped like a tracking number.
    tracking = extract_from_subject(subject)
    if tracking is None:
        hits = scan_text(text)
        tracking = hits[0] if hits else None
    if tracking is None:
        tracking = _narrow_tracking(corpus)

    order_id = extract_order_id(corpus, DEEP_PARSE_PLATFORM)
    items = _window_items(text) or _quantity_items(text)
    return tracking, order_id, items


def _generic_parse(soup: BeautifulSoup, corpus: str):
    hits = scan_text(corpus)
    tracking = hits[0] if hits else None
    order_id = extract_order_id(corpus)
    items = _selector_items(soup)
    return tracking, order_id, items


def parse_email(html: str, from_address: str, subject: str) -> ParsedEmailFacts:
    from_address = from_address or ""
    subject = subject or ""

    soup = _soup(html)
    text = _flatten(soup)
    corpus = f"{from_address} {subject} {text}"

    platform, merchant = detect_merchant(corpus, from_address)

    if platform == DEEP_PARSE_PLATFORM:
        tracking, order_id, items = _deep_parse(text, corpus, subject)
    else:
        tracking, order_id, items = _generic_parse(soup, corpus)

    amount, currency = extract_price(corpus)
    order_date = extract_date(corpus)
    status = detect_status(f"{subject} {text}")

    confidence = confidence_score(
        has_merchant=platform != Platform.UNKNOWN,
        has_tracking=tracking is not None,
        has_order_id=order_id is not None,
        has_items=bool(items),
    )

    return ParsedEmailFacts(
        merchant=merchant,
        platform=platform,
        order_id=order_id,
        tracking_number=tracking.tracking_number if tracking else None,
        carrier=tracking.carrier if tracking else None,
        items=tuple(items),
        order_date=order_date,
        total_amount=amount,
        currency=currency,
        status=status,
        confidence=confidence,
    )
