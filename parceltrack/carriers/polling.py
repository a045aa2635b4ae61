"""
Polling adapter: one GET against a public, keyless tracking endpoint per tracking number.

The upstream reports a coarse shipment status plus a finer action code per event. The action
code is read first, so a final hand-off event maps to DELIVERED even while the coarse status
still says "in transit". Any failure (rate-limited, network, non-JSON, empty) is a soft None.
"""
from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import requests

from parceltrack.carriers.rate_limit import RateLimitStore, default_store, try_acquire
from parceltrack.models import Carrier, CarrierEvent, CarrierFetchResult, ShipmentStatus
from parceltrack.settings import Settings, settings as default_settings

log = logging.getLogger(__name__)

# coarse shipment status -> internal
COARSE_STATUS = {
    "ORDER_NOT_EXISTS": ShipmentStatus.ORDERED,
    "NOT_FOUND": ShipmentStatus.ORDERED,
    "WAIT_ACCEPT": ShipmentStatus.PROCESSING,
    "ACCEPT": ShipmentStatus.PROCESSING,
    "WAIT4PICKUP": ShipmentStatus.PROCESSING,
    "PICKEDUP": ShipmentStatus.SHIPPED,
    "SHIPPING": ShipmentStatus.IN_TRANSIT,
    "DEPART": ShipmentStatus.IN_TRANSIT,
    "ARRIVED": ShipmentStatus.IN_TRANSIT,
    "CLEARANCE": ShipmentStatus.IN_TRANSIT,
    "TRANSIT": ShipmentStatus.IN_TRANSIT,
    "DELIVERING": ShipmentStatus.OUT_FOR_DELIVERY,
    "WAIT4SIGNIN": ShipmentStatus.OUT_FOR_DELIVERY,
    "SIGN": ShipmentStatus.DELIVERED,
    "DELIVERED": ShipmentStatus.DELIVERED,
    "RETURN": ShipmentStatus.RETURNED,
    "RETURNED": ShipmentStatus.RETURNED,
    "FAILED": ShipmentStatus.EXCEPTION,
    "EXCEPTION": ShipmentStatus.EXCEPTION,
}

# per-event action code -> internal (wins over the coarse status)
ACTION_STATUS = {
    "GWMS_ACCEPT": ShipmentStatus.PROCESSING,
    "GWMS_PACKAGE": ShipmentStatus.PROCESSING,
    "CONSO_WAREHOUSE_CONSIGN": ShipmentStatus.PROCESSING,
    "PU_PICKUP_SUCCESS": ShipmentStatus.SHIPPED,
    "GWMS_OUTBOUND": ShipmentStatus.SHIPPED,
    "SC_INBOUND_SUCCESS": ShipmentStatus.IN_TRANSIT,
    "SC_OUTBOUND_SUCCESS": ShipmentStatus.IN_TRANSIT,
    "LH_HO_IN_SUCCESS": ShipmentStatus.IN_TRANSIT,
    "LH_DEPART": ShipmentStatus.IN_TRANSIT,
    "LH_ARRIVE": ShipmentStatus.IN_TRANSIT,
    "CC_EX_START": ShipmentStatus.IN_TRANSIT,
    "CC_IM_SUCCESS": ShipmentStatus.IN_TRANSIT,
    "GTMS_ACCEPT": ShipmentStatus.IN_TRANSIT,
    "GTMS_DO_DEPART": ShipmentStatus.OUT_FOR_DELIVERY,
    "GTMS_DELIVERING": ShipmentStatus.OUT_FOR_DELIVERY,
    "GTMS_WAIT_SELF_PICK": ShipmentStatus.OUT_FOR_DELIVERY,
    "GTMS_SIGNED": ShipmentStatus.DELIVERED,
    "GTMS_STA_SIGNED": ShipmentStatus.DELIVERED,
    "SIGNED": ShipmentStatus.DELIVERED,
    "GTMS_SIGN_FAILED": ShipmentStatus.EXCEPTION,
    "DELIVERY_FAILED": ShipmentStatus.EXCEPTION,
    "CC_HO_FAILED": ShipmentStatus.EXCEPTION,
    "RETURN_TO_SENDER": ShipmentStatus.RETURNED,
}

BRACKET_LOCATION_RE = re.compile(r"\[([^\]]+)\]")
TIME_FORMATS = ("%Y-%m-%d %H:%M:%S", "%Y-%m-%dT%H:%M:%S", "%Y-%m-%d %H:%M")


def _text(value: Any) -> str:
    return value if isinstance(value, str) else ""


def _from_millis(value: Any) -> Optional[datetime]:
    try:
        return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return None


def _parse_time(detail: Dict[str, Any]) -> Optional[datetime]:
    ts = _from_millis(detail.get("time")) if detail.get("time") is not None else None
    if ts is not None:
        return ts
    raw = _text(detail.get("timeStr")).strip()
    for fmt in TIME_FORMATS:
        try:
            return datetime.strptime(raw, fmt).replace(tzinfo=timezone.utc)
        except ValueError:
            continue
    return None


def extract_location(description: str) -> Optional[str]:
    m = BRACKET_LOCATION_RE.search(description or "")
    if not m:
        return None
    loc = m.group(1).strip()
    return loc or None


def map_event_status(action_code: Optional[str], coarse: ShipmentStatus) -> ShipmentStatus:
    return ACTION_STATUS.get((action_code or "").upper(), coarse)


def convert_module(module: Dict[str, Any], tracking_number: str, carrier: Carrier) -> Optional[CarrierFetchResult]:
    """Map one upstream result block onto CarrierFetchResult. None if it carries nothing usable."""
    if not isinstance(module, dict):
        return None
    coarse = COARSE_STATUS.get(_text(module.get("status")).upper())
    details = module.get("detailList")
    if not isinstance(details, list):
        details = []

    events: List[CarrierEvent] = []
    for d in details:
        if not isinstance(d, dict):
            continue
        ts = _parse_time(d)
        if ts is None:
            log.warning(f"[polling] {tracking_number}: dropping event without a usable time")
            continue
        description = _text(d.get("desc")) or _text(d.get("standerdDesc"))
        events.append(
            CarrierEvent(
                timestamp=ts,
                location=extract_location(description),
                status=map_event_status(_text(d.get("actionCode")), coarse or ShipmentStatus.IN_TRANSIT),
                description=description,
            )
        )

    if coarse is None and not events:
        return None

    newest = max(events, key=lambda e: e.timestamp) if events else None
    if coarse is not None:
        status = coarse
    elif newest is not None:
        status = newest.status
    else:
        status = ShipmentStatus.IN_TRANSIT

    located = [e for e in sorted(events, key=lambda e: e.timestamp, reverse=True) if e.location]
    eta_block = module.get("globalEtaInfo")
    if not isinstance(eta_block, dict):
        eta_block = {}
    eta = _from_millis(eta_block.get("deliveryMinTime")) if eta_block.get("deliveryMinTime") else None

    return CarrierFetchResult(
        tracking_number=tracking_number,
        carrier=carrier,
        status=status,
        estimated_delivery=eta,
        last_location=located[0].location if located else None,
        events=tuple(events),
        source="polling",
    )


class PollingTracker:
    name = "polling"

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        rate_store: Optional[RateLimitStore] = None,
        cfg: Optional[Settings] = None,
    ):
        self.cfg = cfg or default_settings
        self.session = session or requests.Session()
        self.rate_store = rate_store if rate_store is not None else default_store()

    def fetch(self, tracking_number: str, carrier: Carrier = Carrier.UNKNOWN) -> Optional[CarrierFetchResult]:
        tn = (tracking_number or "").strip().upper()
        if not tn:
            return None

        if not try_acquire(self.rate_store, tn, self.cfg.rate_limit_window_s):
            log.info(f"[polling] {tn}: fetched within the last {self.cfg.rate_limit_window_s}s, skipping")
            return None

        try:
            resp = self.session.get(
                self.cfg.polling_url,
                params={"mailNos": tn, "lang": "en-US"},
                timeout=self.cfg.polling_timeout_s,
            )
        except requests.RequestException as e:
            log.warning(f"[polling] {tn}: request failed: {e}")
            return None

        if not resp.ok:
            log.warning(f"[polling] {tn}: upstream returned {resp.status_code}")
            return None

        try:
            data = resp.json()
        except ValueError:
            log.warning(f"[polling] {tn}: non-JSON response")
            return None

        modules = data.get("module") if isinstance(data, dict) else None
        modules = [m for m in modules if isinstance(m, dict)] if isinstance(modules, list) else []
        if not modules:
            log.info(f"[polling] {tn}: empty result")
            return None

        module = next((m for m in modules if _text(m.get("mailNo")).upper() == tn), modules[0])
        return convert_module(module, tn, carrier)
