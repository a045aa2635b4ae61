"""
In-memory types shared by the scanners, the carrier adapters and the reconciliation engine.
Nothing here is persisted directly; storage is a caller concern (see parceltrack/store.py).
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class Carrier(str, Enum):
    UPS = "UPS"
    USPS = "USPS"
    FEDEX = "FEDEX"
    DHL = "DHL"
    DPD = "DPD"
    ROYAL_MAIL = "ROYAL_MAIL"
    CAINIAO = "CAINIAO"
    YANWEN = "YANWEN"
    ALIEXPRESS_STANDARD = "ALIEXPRESS_STANDARD"
    UNKNOWN = "UNKNOWN"


class ShipmentStatus(str, Enum):
    ORDERED = "ORDERED"
    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    IN_TRANSIT = "IN_TRANSIT"
    OUT_FOR_DELIVERY = "OUT_FOR_DELIVERY"
    DELIVERED = "DELIVERED"
    EXCEPTION = "EXCEPTION"
    RETURNED = "RETURNED"


# Forward progression. Side states are deliberately not members.
STATUS_ORDER: Tuple[ShipmentStatus, ...] = (
    ShipmentStatus.ORDERED,
    ShipmentStatus.PROCESSING,
    ShipmentStatus.SHIPPED,
    ShipmentStatus.IN_TRANSIT,
    ShipmentStatus.OUT_FOR_DELIVERY,
    ShipmentStatus.DELIVERED,
)
SIDE_STATUSES = frozenset({ShipmentStatus.EXCEPTION, ShipmentStatus.RETURNED})

STATUS_LABELS: Dict[ShipmentStatus, str] = {
    ShipmentStatus.ORDERED: "Ordered",
    ShipmentStatus.PROCESSING: "Processing",
    ShipmentStatus.SHIPPED: "Shipped",
    ShipmentStatus.IN_TRANSIT: "In Transit",
    ShipmentStatus.OUT_FOR_DELIVERY: "Out for Delivery",
    ShipmentStatus.DELIVERED: "Delivered",
    ShipmentStatus.EXCEPTION: "Exception",
    ShipmentStatus.RETURNED: "Returned",
}


class Platform(str, Enum):
    AMAZON = "AMAZON"
    ALIEXPRESS = "ALIEXPRESS"
    EBAY = "EBAY"
    ETSY = "ETSY"
    SHEIN = "SHEIN"
    TEMU = "TEMU"
    WALMART = "WALMART"
    IHERB = "IHERB"
    UNKNOWN = "UNKNOWN"


# -------- Evidence --------
@dataclass(frozen=True)
class TrackingCandidate:
    tracking_number: str
    carrier: Carrier


@dataclass(frozen=True)
class ParsedEmailFacts:
    merchant: str
    platform: Platform
    order_id: Optional[str] = None
    tracking_number: Optional[str] = None
    carrier: Optional[Carrier] = None
    items: Tuple[str, ...] = ()
    order_date: Optional[datetime] = None
    total_amount: Optional[Decimal] = None
    currency: Optional[str] = None
    status: Optional[ShipmentStatus] = None
    confidence: float = 0.0


@dataclass(frozen=True)
class CarrierEvent:
    timestamp: datetime
    location: Optional[str]
    status: ShipmentStatus
    description: str


@dataclass(frozen=True)
class CarrierFetchResult:
    tracking_number: str
    carrier: Carrier
    status: ShipmentStatus
    estimated_delivery: Optional[datetime] = None
    last_location: Optional[str] = None
    events: Tuple[CarrierEvent, ...] = ()
    pickup_location: Optional[Dict[str, Any]] = None
    source: str = "carrier"


@dataclass(frozen=True)
class TrackingSighting:
    """A tracking number seen without carrier data: manual entry, SMS scan or CSV row."""
    tracking_number: str
    carrier: Carrier
    source: str = "manual"
    pickup_location: Optional[Dict[str, Any]] = None
    items: Tuple[str, ...] = ()


# -------- State --------
@dataclass(frozen=True)
class TrackingEvent:
    timestamp: datetime
    location: Optional[str]
    status: ShipmentStatus
    description: str


@dataclass
class PackageState:
    tracking_number: str
    carrier: Carrier
    status: ShipmentStatus = ShipmentStatus.ORDERED
    estimated_delivery: Optional[datetime] = None
    last_location: Optional[str] = None
    events: List[TrackingEvent] = field(default_factory=list)
    items: List[str] = field(default_factory=list)
    order_ref: Optional[str] = None
    pickup_location: Optional[Dict[str, Any]] = None
    last_checked_at: Optional[datetime] = None


@dataclass
class OrderState:
    ref: str
    user_id: str
    external_id: Optional[str] = None
    merchant: str = "Unknown Merchant"
    platform: Platform = Platform.UNKNOWN
    status: ShipmentStatus = ShipmentStatus.ORDERED
    items: List[str] = field(default_factory=list)
    total_amount: Optional[Decimal] = None
    currency: Optional[str] = None
    order_date: Optional[datetime] = None
