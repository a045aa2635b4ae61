"""
Ingestion service: turns raw signals (emails, SMS text, CSV rows, manual entries, carrier refreshes)
into reconciled package state.

Every read-reconcile-write for one (user, tracking number) runs under that key's lock. Carrier
fetches happen outside the lock so a slow upstream never blocks other writers to the same package.
"""
from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Protocol, Sequence, Tuple

from parceltrack.models import (
    Carrier,
    CarrierFetchResult,
    OrderState,
    PackageState,
    ParsedEmailFacts,
    Platform,
    ShipmentStatus,
    TrackingSighting,
)
from parceltrack.notify import Notifier
from parceltrack.reconcile import (
    EffectKind,
    Evidence,
    ReconcileOutcome,
    merge_order,
    passes_confidence_gate,
    reconcile,
)
from parceltrack.settings import Settings, settings as default_settings
from parceltrack.store import PackageStore
from parceltrack.tools.carrier_detect import classify
from parceltrack.tools.email_parser import parse_email
from parceltrack.tools.scan_text import parse_pickup_info, scan_text

log = logging.getLogger(__name__)

POLL_INTERVALS = {
    ShipmentStatus.ORDERED: timedelta(hours=12),
    ShipmentStatus.PROCESSING: timedelta(hours=12),
    ShipmentStatus.SHIPPED: timedelta(hours=4),
    ShipmentStatus.IN_TRANSIT: timedelta(hours=4),
    ShipmentStatus.EXCEPTION: timedelta(hours=4),
    ShipmentStatus.RETURNED: timedelta(hours=12),
    ShipmentStatus.OUT_FOR_DELIVERY: timedelta(minutes=30),
    ShipmentStatus.DELIVERED: timedelta(hours=12),
}
DELIVERED_GRACE = timedelta(days=7)

SMS_MERCHANT = "SMS Auto-Forward"
CSV_MERCHANT = "CSV Import"
MANUAL_MERCHANT = "Manual Entry"


class PackageNotFound(LookupError):
    pass


class Tracker(Protocol):
    name: str

    def fetch(self, tracking_number: str, carrier: Carrier = ...) -> Optional[CarrierFetchResult]: ...


@dataclass
class IngestItem:
    tracking_number: str
    carrier: Carrier
    result: str  # added | updated | updated_pickup | already_tracked | skipped | discarded
    status: Optional[ShipmentStatus] = None


@dataclass
class IngestSummary:
    added: int = 0
    updated: int = 0
    skipped: int = 0
    total: int = 0
    items: List[IngestItem] = field(default_factory=list)


@dataclass
class EmailIngestResult:
    accepted: bool
    confidence: float
    order: Optional[OrderState] = None
    outcome: Optional[ReconcileOutcome] = None


@dataclass
class ResyncSummary:
    total: int = 0
    updated: int = 0
    unchanged: int = 0
    no_data: int = 0
    failed: int = 0


# -------- Helpers --------
def normalize_tracking(tracking_number: Optional[str]) -> str:
    return (tracking_number or "").strip().upper()


def detect_platform(store_name: Optional[str]) -> Platform:
    s = (store_name or "").upper()
    for p in Platform:
        if p != Platform.UNKNOWN and p.value in s:
            return p
    return Platform.UNKNOWN


def _parse_row_date(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        log.warning(f"[ingest] unparseable CSV date: {value!r}")
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def poll_interval(status: ShipmentStatus) -> timedelta:
    return POLL_INTERVALS.get(status, timedelta(hours=12))


def _delivered_at(pkg: PackageState) -> Optional[datetime]:
    stamps = [e.timestamp for e in pkg.events if e.status == ShipmentStatus.DELIVERED]
    return max(stamps) if stamps else pkg.last_checked_at


def is_due(pkg: PackageState, now: datetime) -> bool:
    """Status-driven polling schedule; delivered packages stop being polled after a grace period."""
    if pkg.status == ShipmentStatus.DELIVERED:
        delivered = _delivered_at(pkg)
        if delivered is not None and now - delivered > DELIVERED_GRACE:
            return False
    if pkg.last_checked_at is None:
        return True
    return now - pkg.last_checked_at >= poll_interval(pkg.status)


class KeyedLocks:
    """One lock per key, created on demand."""

    def __init__(self):
        self._locks: Dict[Tuple[str, str], threading.Lock] = {}
        self._guard = threading.Lock()

    @contextmanager
    def hold(self, *key: str):
        with self._guard:
            lock = self._locks.setdefault(tuple(key), threading.Lock())
        with lock:
            yield


# -------- Service --------
class IngestService:
    def __init__(
        self,
        store: PackageStore,
        notifier: Optional[Notifier] = None,
        trackers: Sequence[Tracker] = (),
        cfg: Optional[Settings] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.store = store
        self.notifier = notifier
        self.trackers = list(trackers)
        self.cfg = cfg or default_settings
        self.sleep = sleep
        self.clock = clock
        self._locks = KeyedLocks()

    # ---- core write path ----
    def apply(
        self,
        user_id: str,
        evidence: Evidence,
        new_order: Optional[Callable[[], OrderState]] = None,
        create_only: bool = False,
        order_ref: Optional[str] = None,
    ) -> ReconcileOutcome:
        """
        Reconcile one piece of evidence against the stored package and persist the result.
        A package created here is linked to `order_ref` (an order the caller already saved) or to
        the order `new_order` builds and saves. With `create_only` an existing package is left untouched.
        """
        tn = normalize_tracking(evidence.tracking_number)
        with self._locks.hold(user_id, tn):
            current = self.store.find_package(user_id, tn)
            if create_only and current is not None:
                return ReconcileOutcome(state=current, previous_status=current.status)

            outcome = reconcile(
                current,
                evidence,
                confidence_threshold=self.cfg.email_confidence_threshold,
                dedup_window_s=self.cfg.event_dedup_window_s,
            )
            if outcome.discarded or outcome.state is None:
                return outcome

            state = outcome.state
            if outcome.created and order_ref is not None:
                state.order_ref = order_ref
            elif outcome.created and new_order is not None:
                order = new_order()
                self.store.save_order(order)
                state.order_ref = order.ref
            if isinstance(evidence, CarrierFetchResult):
                state.last_checked_at = self.clock()
            self.store.save_package(user_id, state)

        if outcome.created:
            log.info(f"[ingest] {user_id}: new package {tn} ({state.carrier.value}, {state.status.value})")
        for effect in outcome.effects:
            if effect.kind == EffectKind.SEND_NOTIFICATION and self.notifier is not None:
                self.notifier.notify(user_id, effect.old_status, effect.new_status, tn)
        return outcome

    def fetch_carrier(self, tracking_number: str, carrier: Carrier) -> Optional[CarrierFetchResult]:
        """Try the configured trackers in order; the first non-None result wins."""
        for tracker in self.trackers:
            result = tracker.fetch(tracking_number, carrier)
            if result is not None:
                log.info(f"[ingest] {tracking_number}: {result.status.value} via {getattr(tracker, 'name', tracker)}")
                return result
        return None

    def _refresh_after_create(self, user_id: str, tn: str, carrier: Carrier):
        try:
            result = self.fetch_carrier(tn, carrier)
        except Exception as e:
            log.error(f"[ingest] {tn}: carrier fetch failed: {e}")
            return
        if result is not None:
            self.apply(user_id, result)

    # ---- operations ----
    def ingest_email(
        self,
        user_id: str,
        html: str,
        from_address: str,
        subject: str,
        fetch_carrier: bool = False,
        facts: Optional[ParsedEmailFacts] = None,
    ) -> EmailIngestResult:
        """`facts` skips parsing when the caller already extracted them from this email."""
        if facts is None:
            facts = parse_email(html, from_address, subject)
        if not passes_confidence_gate(facts, self.cfg.email_confidence_threshold):
            log.info(f"[ingest] {user_id}: email from {from_address!r} below confidence gate ({facts.confidence})")
            return EmailIngestResult(accepted=False, confidence=facts.confidence)

        tn = normalize_tracking(facts.tracking_number)
        external_id = facts.order_id or (f"email-{tn}" if tn else None)
        if external_id is None:
            return EmailIngestResult(accepted=False, confidence=facts.confidence)

        with self._locks.hold(user_id, f"order:{external_id}"):
            order = self.store.find_order_by_external_id(user_id, external_id)
            if order is None:
                order = OrderState(
                    ref=self.store.new_order_ref(),
                    user_id=user_id,
                    external_id=external_id,
                    merchant=facts.merchant,
                    platform=facts.platform,
                    status=facts.status or ShipmentStatus.ORDERED,
                    items=list(facts.items),
                    total_amount=facts.total_amount,
                    currency=facts.currency,
                    order_date=facts.order_date,
                )
            else:
                order = merge_order(order, facts)
            self.store.save_order(order)

        outcome = None
        if tn:
            outcome = self.apply(user_id, facts, order_ref=order.ref)
            if fetch_carrier:
                carrier = outcome.state.carrier if outcome.state else classify(tn)
                self._refresh_after_create(user_id, tn, carrier)
                outcome.state = self.store.find_package(user_id, tn)

        return EmailIngestResult(accepted=True, confidence=facts.confidence, order=order, outcome=outcome)

    def ingest_text(self, user_id: str, text: str, source: Optional[str] = None) -> IngestSummary:
        """Free text / forwarded SMS: every tracking number found becomes or updates a package."""
        found = scan_text(text)
        summary = IngestSummary(total=len(found))
        if not found:
            return summary

        pickup = parse_pickup_info(text)
        if pickup:
            pickup = {**pickup, "sms_source": True}

        for cand in found:
            tn = cand.tracking_number
            sighting = TrackingSighting(tracking_number=tn, carrier=cand.carrier, source="sms", pickup_location=pickup)

            def new_order(tn=tn):
                return OrderState(
                    ref=self.store.new_order_ref(),
                    user_id=user_id,
                    external_id=f"sms-{tn}",
                    merchant=source or SMS_MERCHANT,
                    status=ShipmentStatus.PROCESSING,
                )

            outcome = self.apply(user_id, sighting, new_order=new_order, create_only=pickup is None)
            if outcome.created:
                self._refresh_after_create(user_id, tn, cand.carrier)
                summary.added += 1
                result = "added"
            elif pickup:
                summary.updated += 1
                result = "updated_pickup"
            else:
                result = "already_tracked"
            pkg = self.store.find_package(user_id, tn)
            summary.items.append(IngestItem(tn, cand.carrier, result, pkg.status if pkg else None))
        return summary

    def ingest_csv(self, user_id: str, rows: Iterable[Mapping[str, Any]]) -> IngestSummary:
        """Rows with orderId / trackingNumber / store / items / date. Already-tracked numbers are skipped."""
        summary = IngestSummary()
        for row in rows:
            summary.total += 1
            tn = normalize_tracking(row.get("trackingNumber"))
            if not tn:
                summary.skipped += 1
                continue

            carrier = classify(tn)
            item = (row.get("items") or "").strip()
            store_name = row.get("store")

            def new_order(row=row, tn=tn, item=item, store_name=store_name):
                return OrderState(
                    ref=self.store.new_order_ref(),
                    user_id=user_id,
                    external_id=row.get("orderId") or f"csv-{tn}",
                    merchant=store_name or CSV_MERCHANT,
                    platform=detect_platform(store_name),
                    status=ShipmentStatus.PROCESSING,
                    items=[item] if item else [],
                    order_date=_parse_row_date(row.get("date")),
                )

            sighting = TrackingSighting(tn, carrier, source="csv", items=(item,) if item else ())
            outcome = self.apply(user_id, sighting, new_order=new_order, create_only=True)
            if not outcome.created:
                summary.skipped += 1
                summary.items.append(IngestItem(tn, carrier, "skipped", outcome.state.status if outcome.state else None))
                continue

            self._refresh_after_create(user_id, tn, carrier)
            summary.added += 1
            pkg = self.store.find_package(user_id, tn)
            summary.items.append(IngestItem(tn, carrier, "added", pkg.status if pkg else None))
        return summary

    def add_package(self, user_id: str, tracking_number: str, carrier: Optional[Carrier] = None) -> ReconcileOutcome:
        tn = normalize_tracking(tracking_number)
        if not tn:
            raise ValueError("tracking number is empty")
        carrier = carrier or classify(tn)

        def new_order():
            return OrderState(
                ref=self.store.new_order_ref(),
                user_id=user_id,
                external_id=f"manual-{tn}",
                merchant=MANUAL_MERCHANT,
                status=ShipmentStatus.PROCESSING,
            )

        outcome = self.apply(user_id, TrackingSighting(tn, carrier, source="manual"), new_order=new_order,
                             create_only=True)
        if outcome.created:
            self._refresh_after_create(user_id, tn, carrier)
            outcome.state = self.store.find_package(user_id, tn)
        return outcome

    def refresh(self, user_id: str, tracking_number: str) -> Optional[ReconcileOutcome]:
        """Fetch live carrier data for one stored package. None when no tracker had data."""
        tn = normalize_tracking(tracking_number)
        pkg = self.store.find_package(user_id, tn)
        if pkg is None:
            raise PackageNotFound(tn)
        result = self.fetch_carrier(tn, pkg.carrier)
        if result is None:
            return None
        return self.apply(user_id, result)

    def resync_all(self, user_id: str, only_due: bool = False) -> ResyncSummary:
        """Refresh every package of a user, one at a time with a fixed delay between fetches."""
        now = self.clock()
        packages = [p for p in self.store.list_packages(user_id) if not only_due or is_due(p, now)]
        summary = ResyncSummary(total=len(packages))

        for i, pkg in enumerate(packages):
            if i:
                self.sleep(self.cfg.resync_delay_s)
            try:
                outcome = self.refresh(user_id, pkg.tracking_number)
            except Exception as e:
                log.error(f"[resync] {user_id} {pkg.tracking_number}: {e}")
                summary.failed += 1
                continue
            if outcome is None:
                summary.no_data += 1
            elif outcome.notify or outcome.new_events:
                summary.updated += 1
            else:
                summary.unchanged += 1

        log.info(
            f"[resync] {user_id}: {summary.total} packages, {summary.updated} updated, "
            f"{summary.no_data} without data, {summary.failed} failed"
        )
        return summary

    def list_packages(self, user_id: str) -> List[PackageState]:
        return self.store.list_packages(user_id)
