"""
Aggregator adapter: drive a headless browser against a multi-carrier tracking site and read the
JSON its own front-end fetches, for a batch of tracking numbers per page load.

The browser is an explicit resource handle (BrowserSession): lazily launched, reused across
batches, closed by the owner. One batch at a time per session.
"""
from __future__ import annotations

import logging
import threading
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

from parceltrack.models import Carrier, CarrierEvent, CarrierFetchResult, ShipmentStatus
from parceltrack.settings import Settings, settings as default_settings

log = logging.getLogger(__name__)

USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36"
)
BLOCKED_RESOURCE_TYPES = {"image", "media", "font"}
BLOCKED_HOST_HINTS = (
    "google-analytics", "googlesyndication", "doubleclick", "adnxs", "facebook",
    "oneadtag", "smaato", "aidemsrv", "adsense", "adservice", "tracker", "rtb",
)
POLL_STEP_S = 1.5

# stage / sub_status substrings, first hit wins
STAGE_STATUS = [
    ("delivered", ShipmentStatus.DELIVERED),
    ("availableforpickup", ShipmentStatus.OUT_FOR_DELIVERY),
    ("pickup", ShipmentStatus.OUT_FOR_DELIVERY),
    ("outfordelivery", ShipmentStatus.OUT_FOR_DELIVERY),
    ("arrival", ShipmentStatus.IN_TRANSIT),
    ("intransit", ShipmentStatus.IN_TRANSIT),
    ("departure", ShipmentStatus.IN_TRANSIT),
    ("pickedup", ShipmentStatus.IN_TRANSIT),
    ("inforeceived", ShipmentStatus.PROCESSING),
    ("returning", ShipmentStatus.RETURNED),
    ("returned", ShipmentStatus.RETURNED),
    ("exception", ShipmentStatus.EXCEPTION),
    ("expired", ShipmentStatus.EXCEPTION),
]

PICKUP_HINTS = ("מרכז מסירה", "pickup", "pick up", "נמסר", "הגיע ליחידה")


# -------- Mapping --------
def map_stage(stage: Optional[str], sub_status: Optional[str]) -> ShipmentStatus:
    s = (stage or sub_status or "").lower()
    for needle, status in STAGE_STATUS:
        if needle in s:
            return status
    return ShipmentStatus.IN_TRANSIT


def split_location(description: str) -> Optional[str]:
    """'<location> - <status text>': location is everything before the LAST ' - '."""
    parts = (description or "").split(" - ")
    if len(parts) < 2:
        return None
    location = " - ".join(parts[:-1]).strip().rstrip(",").strip()
    if 2 < len(location) < 200:
        return location
    return None


def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def convert_shipment(shipment: Dict[str, Any], carrier: Carrier) -> Optional[CarrierFetchResult]:
    s = shipment.get("shipment") or {}
    if not s:
        return None

    events: List[CarrierEvent] = []
    for provider in (s.get("tracking") or {}).get("providers") or []:
        for e in provider.get("events") or []:
            ts = _parse_iso(e.get("time_iso")) or _parse_iso(e.get("time_utc"))
            if ts is None:
                continue
            description = e.get("description") or ""
            events.append(
                CarrierEvent(
                    timestamp=ts,
                    location=e.get("location") or split_location(description),
                    status=map_stage(e.get("stage"), e.get("sub_status")),
                    description=description,
                )
            )

    latest = s.get("latest_status") or {}
    status = map_stage(latest.get("status"), latest.get("sub_status"))
    last_location = next((e.location for e in events if e.location), None)

    est = (s.get("time_metrics") or {}).get("estimated_delivery_date") or {}
    eta = _parse_iso(est.get("from")) or _parse_iso(est.get("to"))

    pickup = None
    pickup_event = next((e for e in events if any(h in e.description for h in PICKUP_HINTS)), None)
    if pickup_event is not None and pickup_event.location:
        pickup = {"name": pickup_event.location, "address": pickup_event.location}

    return CarrierFetchResult(
        tracking_number=shipment.get("number", ""),
        carrier=carrier,
        status=status,
        estimated_delivery=eta,
        last_location=last_location,
        events=tuple(events),
        pickup_location=pickup,
        source="aggregator",
    )


# -------- Browser handle --------
class BrowserSession:
    """Long-lived headless Chromium. Started on first use; call close() when done."""

    def __init__(self, cfg: Optional[Settings] = None, clock: Callable[[], float] = time.monotonic):
        self.cfg = cfg or default_settings
        self.clock = clock
        self._pw = None
        self._browser = None
        self._lock = threading.Lock()

    def _ensure_browser(self):
        if self._browser is not None and self._browser.is_connected():
            return self._browser
        from playwright.sync_api import sync_playwright

        if self._pw is None:
            self._pw = sync_playwright().start()
        self._browser = self._pw.chromium.launch(headless=True)
        return self._browser

    @staticmethod
    def _route(route):
        req = route.request
        url = req.url
        if req.resource_type in BLOCKED_RESOURCE_TYPES or any(h in url for h in BLOCKED_HOST_HINTS):
            return route.abort()
        return route.continue_()

    def capture_json(
        self,
        url: str,
        url_fragment: str,
        on_payload: Callable[[Dict[str, Any]], None],
        should_stop: Callable[[float], bool],
        timeout_s: float,
    ) -> None:
        """
        Load `url`, hand every JSON response whose URL contains `url_fragment` to `on_payload`,
        and poll until should_stop(elapsed_s) or the timeout. Browser errors end the call early.
        """
        from playwright.sync_api import Error as PlaywrightError

        with self._lock:
            try:
                browser = self._ensure_browser()
            except PlaywrightError as e:
                log.error(f"[aggregator] browser launch failed: {e}")
                return

            ctx = browser.new_context(
                user_agent=USER_AGENT,
                locale="en-US",
                viewport={"width": 1440, "height": 900},
            )
            pending: List[Any] = []
            try:
                page = ctx.new_page()
                page.route("**/*", self._route)
                page.on("response", lambda r: pending.append(r) if url_fragment in r.url else None)
                # one deadline for navigation and polling together
                started = self.clock()
                page.goto(url, timeout=int(timeout_s * 1000), wait_until="domcontentloaded")

                while True:
                    page.wait_for_timeout(int(POLL_STEP_S * 1000))
                    while pending:
                        response = pending.pop(0)
                        try:
                            on_payload(response.json())
                        except (PlaywrightError, ValueError):
                            continue
                    elapsed = self.clock() - started
                    if should_stop(elapsed) or elapsed >= timeout_s:
                        break
                page.close()
            except PlaywrightError as e:
                log.error(f"[aggregator] scraping error: {e}")
            finally:
                ctx.close()

    def close(self):
        with self._lock:
            if self._browser is not None:
                try:
                    if self._browser.is_connected():
                        self._browser.close()
                finally:
                    self._browser = None
            if self._pw is not None:
                self._pw.stop()
                self._pw = None

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


# -------- Adapter --------
class AggregatorTracker:
    name = "aggregator"

    def __init__(self, session: BrowserSession, cfg: Optional[Settings] = None):
        self.session = session
        self.cfg = cfg or default_settings

    def _chunks(self, numbers: List[str]) -> Iterable[List[str]]:
        size = max(1, self.cfg.aggregator_batch_size)
        for i in range(0, len(numbers), size):
            yield numbers[i:i + size]

    def fetch_raw(self, tracking_numbers: Iterable[str]) -> Dict[str, Dict[str, Any]]:
        numbers: List[str] = []
        for n in tracking_numbers:
            tn = (n or "").strip().upper()
            if tn and tn not in numbers:
                numbers.append(tn)

        results: Dict[str, Dict[str, Any]] = {}
        for batch in self._chunks(numbers):
            wanted = set(batch)

            def on_payload(payload: Dict[str, Any]):
                for s in (payload or {}).get("shipments") or []:
                    if s.get("shipment") and s.get("state") == "Success" and s.get("number") in wanted:
                        results[s["number"]] = s

            def should_stop(elapsed: float) -> bool:
                found = sum(1 for n in batch if n in results)
                if found >= len(batch):
                    return True
                # past the partial deadline: settle for what resolved
                return elapsed >= self.cfg.aggregator_partial_after_s and found > 0

            self.session.capture_json(
                url=f"{self.cfg.aggregator_url}#nums={','.join(batch)}",
                url_fragment=self.cfg.aggregator_api_fragment,
                on_payload=on_payload,
                should_stop=should_stop,
                timeout_s=self.cfg.aggregator_timeout_s,
            )
            missing = [n for n in batch if n not in results]
            if missing:
                log.info(f"[aggregator] no data for {len(missing)}/{len(batch)}: {missing}")
        return results

    def fetch_batch(self, items: Dict[str, Carrier]) -> Dict[str, CarrierFetchResult]:
        """tracking number -> carrier in, tracking number -> result out (missing = no data)."""
        normalized = {(k or "").strip().upper(): v for k, v in items.items()}
        raw = self.fetch_raw(normalized.keys())
        out: Dict[str, CarrierFetchResult] = {}
        for tn, shipment in raw.items():
            result = convert_shipment(shipment, normalized.get(tn, Carrier.UNKNOWN))
            if result is not None:
                out[tn] = result
        return out

    def fetch(self, tracking_number: str, carrier: Carrier = Carrier.UNKNOWN) -> Optional[CarrierFetchResult]:
        tn = (tracking_number or "").strip().upper()
        if not tn:
            return None
        return self.fetch_batch({tn: carrier}).get(tn)
