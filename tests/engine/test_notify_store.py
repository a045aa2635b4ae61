from parceltrack.models import Carrier, OrderState, PackageState, ShipmentStatus
from parceltrack.notify import LoggingNotifier, format_status_notification
from parceltrack.store import InMemoryStore

UPS = "1Z999AA10123456784"

def test_delivered_notification():
    n = format_status_notification("u1", UPS, ShipmentStatus.DELIVERED)
    assert n.title == "📦 Package Delivered!"
    assert n.body == f"{UPS}: Delivered 🎉"
    assert n.tag == f"pkg-{UPS}"
    assert n.url == f"https://www.ups.com/track?tracknum={UPS}"

def test_update_notification_uses_status_label():
    n = format_status_notification("u1", "NOTANUMBER", ShipmentStatus.OUT_FOR_DELIVERY)
    assert n.title == "📦 Tracking Update"
    assert n.body == "NOTANUMBER: Out for Delivery"
    assert n.url is None

def test_logging_notifier_keeps_recent():
    notifier = LoggingNotifier(keep=2)
    for status in (ShipmentStatus.SHIPPED, ShipmentStatus.IN_TRANSIT, ShipmentStatus.DELIVERED):
        notifier.notify("u1", None, status, UPS)
    assert [n.body for n in notifier.sent] == [f"{UPS}: In Transit", f"{UPS}: Delivered 🎉"]

def test_store_hands_out_copies():
    store = InMemoryStore()
    store.save_package("u1", PackageState(UPS, Carrier.UPS, ShipmentStatus.SHIPPED))
    pkg = store.find_package("u1", UPS.lower())
    pkg.status = ShipmentStatus.DELIVERED
    assert store.find_package("u1", UPS).status == ShipmentStatus.SHIPPED

def test_store_orders_by_external_id():
    store = InMemoryStore()
    ref = store.new_order_ref()
    store.save_order(OrderState(ref=ref, user_id="u1", external_id="A-1"))
    assert store.find_order_by_external_id("u1", "A-1").ref == ref
    assert store.find_order_by_external_id("u2", "A-1") is None
    assert store.new_order_ref() != ref

def test_logging_notifier_keep_zero_stores_nothing():
    notifier = LoggingNotifier(keep=0)
    notifier.notify("u1", ShipmentStatus.SHIPPED, ShipmentStatus.DELIVERED, UPS)
    assert notifier.sent == []
