"""
Reconciliation engine: fold one piece of evidence into the current package state.

Pure functions. Inputs are never mutated; callers persist `outcome.state` and act on
`outcome.effects`. Callers must serialize calls per tracking number.
"""
from __future__ import annotations

from copy import deepcopy
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Iterable, List, Optional, Union

from parceltrack.models import (
    STATUS_ORDER,
    SIDE_STATUSES,
    Carrier,
    CarrierEvent,
    CarrierFetchResult,
    OrderState,
    PackageState,
    ParsedEmailFacts,
    ShipmentStatus,
    TrackingEvent,
    TrackingSighting,
)
from parceltrack.settings import settings

Evidence = Union[ParsedEmailFacts, CarrierFetchResult, TrackingSighting]


class EffectKind(str, Enum):
    CREATE_PACKAGE = "create_package"
    APPEND_EVENT = "append_event"
    SEND_NOTIFICATION = "send_notification"


@dataclass(frozen=True)
class Effect:
    kind: EffectKind
    tracking_number: str
    event: Optional[TrackingEvent] = None
    old_status: Optional[ShipmentStatus] = None
    new_status: Optional[ShipmentStatus] = None


@dataclass
class ReconcileOutcome:
    state: Optional[PackageState]
    effects: List[Effect] = field(default_factory=list)
    notify: bool = False
    previous_status: Optional[ShipmentStatus] = None
    discarded: bool = False

    @property
    def created(self) -> bool:
        return any(e.kind == EffectKind.CREATE_PACKAGE for e in self.effects)

    @property
    def new_events(self) -> List[TrackingEvent]:
        return [e.event for e in self.effects if e.kind == EffectKind.APPEND_EVENT and e.event]


# -------- Rules --------
def status_index(status: Optional[ShipmentStatus]) -> int:
    """Position in the forward order; -1 for side states and None."""
    try:
        return STATUS_ORDER.index(status)
    except ValueError:
        return -1


def advance_status(current: Optional[ShipmentStatus], new: Optional[ShipmentStatus]) -> Optional[ShipmentStatus]:
    """
    Forward-only progression for non-carrier evidence.
    EXCEPTION / RETURNED are a side branch reachable from any status; from a side state any
    forward status is accepted again.
    """
    if new is None or new == current:
        return current
    if current is None:
        return new
    if new in SIDE_STATUSES:
        return new
    if status_index(new) > status_index(current):
        return new
    return current


def merge_items(existing: Iterable[str], incoming: Iterable[str]) -> List[str]:
    out = list(existing)
    for item in incoming:
        if item and item not in out:
            out.append(item)
    return out


def _as_utc(ts: datetime) -> datetime:
    return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)


def is_duplicate_event(existing: Iterable[TrackingEvent], candidate: CarrierEvent, window_s: float) -> bool:
    window = timedelta(seconds=window_s)
    ts = _as_utc(candidate.timestamp)
    for e in existing:
        if e.description == candidate.description and abs(_as_utc(e.timestamp) - ts) <= window:
            return True
    return False


def merge_events(existing: List[TrackingEvent], incoming: Iterable[CarrierEvent], window_s: float):
    """Returns (merged list, newly appended events)."""
    merged = list(existing)
    added: List[TrackingEvent] = []
    for ev in incoming:
        if is_duplicate_event(merged, ev, window_s):
            continue
        stored = TrackingEvent(
            timestamp=_as_utc(ev.timestamp),
            location=ev.location,
            status=ev.status,
            description=ev.description,
        )
        merged.append(stored)
        added.append(stored)
    return merged, added


def passes_confidence_gate(facts: ParsedEmailFacts, threshold: Optional[float] = None) -> bool:
    limit = settings.email_confidence_threshold if threshold is None else threshold
    return facts.confidence >= limit


# -------- Per-evidence transitions --------
def _new_package(evidence: Evidence) -> PackageState:
    if isinstance(evidence, TrackingSighting):
        return PackageState(
            tracking_number=evidence.tracking_number,
            carrier=evidence.carrier,
            status=ShipmentStatus.PROCESSING,
        )
    if isinstance(evidence, CarrierFetchResult):
        return PackageState(tracking_number=evidence.tracking_number, carrier=evidence.carrier,
                            status=evidence.status)
    return PackageState(
        tracking_number=evidence.tracking_number,
        carrier=evidence.carrier or Carrier.UNKNOWN,
        status=evidence.status or ShipmentStatus.ORDERED,
    )


def _apply_email(state: PackageState, facts: ParsedEmailFacts):
    state.status = advance_status(state.status, facts.status)
    state.items = merge_items(state.items, facts.items)
    return []


def _apply_carrier(state: PackageState, result: CarrierFetchResult, window_s: float):
    # carrier is ground truth: overwrite, no ordinal check
    state.status = result.status
    if result.estimated_delivery is not None:
        state.estimated_delivery = result.estimated_delivery
    if result.last_location:
        state.last_location = result.last_location
    if result.pickup_location:
        state.pickup_location = {**(state.pickup_location or {}), **result.pickup_location}
    state.events, added = merge_events(state.events, result.events, window_s)
    return added


def _apply_sighting(state: PackageState, sighting: TrackingSighting):
    if sighting.pickup_location:
        state.pickup_location = {**(state.pickup_location or {}), **sighting.pickup_location}
        state.status = advance_status(state.status, ShipmentStatus.OUT_FOR_DELIVERY)
    state.items = merge_items(state.items, sighting.items)
    return []


def reconcile(
    current: Optional[PackageState],
    evidence: Evidence,
    confidence_threshold: Optional[float] = None,
    dedup_window_s: Optional[float] = None,
) -> ReconcileOutcome:
    window_s = settings.event_dedup_window_s if dedup_window_s is None else dedup_window_s

    if isinstance(evidence, ParsedEmailFacts):
        if not passes_confidence_gate(evidence, confidence_threshold) or not evidence.tracking_number:
            return ReconcileOutcome(state=current, discarded=True,
                                    previous_status=current.status if current else None)

    effects: List[Effect] = []
    if current is None:
        state = _new_package(evidence)
        previous = None
        effects.append(Effect(EffectKind.CREATE_PACKAGE, state.tracking_number, new_status=state.status))
    else:
        state = deepcopy(current)
        previous = current.status

    if isinstance(evidence, CarrierFetchResult):
        added = _apply_carrier(state, evidence, window_s)
    elif isinstance(evidence, ParsedEmailFacts):
        added = _apply_email(state, evidence)
    else:
        added = _apply_sighting(state, evidence)

    for ev in added:
        effects.append(Effect(EffectKind.APPEND_EVENT, state.tracking_number, event=ev))

    # a brand-new package has no prior status to compare against
    notify = previous is not None and state.status != previous
    if notify:
        effects.append(Effect(EffectKind.SEND_NOTIFICATION, state.tracking_number,
                              old_status=previous, new_status=state.status))

    return ReconcileOutcome(state=state, effects=effects, notify=notify, previous_status=previous)


def merge_order(order: OrderState, facts: ParsedEmailFacts) -> OrderState:
    """Order-level merge: items append-only, money/date first-writer-wins, status forward-only."""
    return replace(
        order,
        items=merge_items(order.items, facts.items),
        total_amount=order.total_amount if order.total_amount is not None else facts.total_amount,
        currency=order.currency if order.currency is not None else facts.currency,
        order_date=order.order_date if order.order_date is not None else facts.order_date,
        status=advance_status(order.status, facts.status) or order.status,
    )
