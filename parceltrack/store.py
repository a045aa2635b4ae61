"""
Storage seam for the ingestion service. The reconciliation core never touches storage; the service
reads a PackageState, reconciles, and writes the new state back through this protocol.
"""
from __future__ import annotations

import itertools
import threading
from copy import deepcopy
from typing import Dict, List, Optional, Protocol, Tuple

from parceltrack.models import OrderState, PackageState


class PackageStore(Protocol):
    def find_package(self, user_id: str, tracking_number: str) -> Optional[PackageState]: ...
    def save_package(self, user_id: str, state: PackageState) -> None: ...
    def list_packages(self, user_id: str) -> List[PackageState]: ...
    def find_order_by_external_id(self, user_id: str, external_id: str) -> Optional[OrderState]: ...
    def get_order(self, ref: str) -> Optional[OrderState]: ...
    def save_order(self, order: OrderState) -> None: ...
    def new_order_ref(self) -> str: ...


class InMemoryStore:
    """Dict-backed store. Hands out copies so callers can't mutate stored state in place."""

    def __init__(self):
        self._packages: Dict[Tuple[str, str], PackageState] = {}
        self._orders: Dict[str, OrderState] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def find_package(self, user_id: str, tracking_number: str) -> Optional[PackageState]:
        with self._lock:
            pkg = self._packages.get((user_id, tracking_number.upper()))
            return deepcopy(pkg) if pkg else None

    def save_package(self, user_id: str, state: PackageState) -> None:
        with self._lock:
            self._packages[(user_id, state.tracking_number.upper())] = deepcopy(state)

    def list_packages(self, user_id: str) -> List[PackageState]:
        with self._lock:
            return [deepcopy(p) for (uid, _), p in self._packages.items() if uid == user_id]

    def find_order_by_external_id(self, user_id: str, external_id: str) -> Optional[OrderState]:
        with self._lock:
            for order in self._orders.values():
                if order.user_id == user_id and order.external_id == external_id:
                    return deepcopy(order)
            return None

    def get_order(self, ref: str) -> Optional[OrderState]:
        with self._lock:
            order = self._orders.get(ref)
            return deepcopy(order) if order else None

    def save_order(self, order: OrderState) -> None:
        with self._lock:
            self._orders[order.ref] = deepcopy(order)

    def new_order_ref(self) -> str:
        return f"ord-{next(self._ids)}"
