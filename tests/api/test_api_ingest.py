from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

import parceltrack.main as appmod
from parceltrack.ingest import IngestService
from parceltrack.models import Carrier, CarrierEvent, CarrierFetchResult, ShipmentStatus
from parceltrack.pipeline.graph import build_graph

UPS = "1Z999AA10123456784"
AMAZON_HTML = """
<p>Your order #123-4567890-1234567 has shipped</p>
<table><tr><td class="item-name">Wireless Mouse</td></tr></table>
<p>Tracking: 1Z999AA10123456784</p>
"""

def _result(tn, status, now, desc="Arrived at facility"):
    event = CarrierEvent(timestamp=now - timedelta(hours=1), location="Memphis", status=status, description=desc)
    return CarrierFetchResult(tracking_number=tn, carrier=Carrier.UPS, status=status, events=(event,))

@pytest.fixture(scope="module")
def client():
    return TestClient(appmod.app)

@pytest.fixture(autouse=True)
def offline_service(monkeypatch, store, notifier, tracker, cfg, now):
    # Swap the live trackers for a fake one and rebuild the pipeline around it
    svc = IngestService(store, notifier, [tracker], cfg, sleep=lambda s: None, clock=lambda: now)
    monkeypatch.setattr(appmod, "service", svc, raising=True)
    monkeypatch.setattr(appmod, "pipeline_app", build_graph(svc), raising=True)
    return svc

def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    data = r.json()
    assert data["status"] == "ok"
    assert data["trackers"] == ["fake"]
    assert data["pipeline_loaded"] is True

def test_classify(client):
    r = client.post("/classify", json={"text": "1Z999AA10123456784"})
    assert r.status_code == 200, r.text
    data = r.json()
    assert data["carrier"] == "UPS"
    assert "1Z999AA10123456784" in data["tracking_url"]

def test_ingest_email(client, store):
    payload = {"user_id": "u1", "html": AMAZON_HTML, "from_address": "shipment-tracking@amazon.com",
               "subject": "Your order has shipped!"}
    r = client.post("/ingest/email", json=payload)
    assert r.status_code == 200, r.text
    data = r.json()
    assert data["accepted"] is True
    assert data["packages"][0]["tracking_number"] == UPS
    assert store.find_package("u1", UPS) is not None

def test_ingest_email_rejected(client):
    r = client.post("/ingest/email", json={"user_id": "u1", "html": "<p>hello</p>", "subject": "Hi"})
    assert r.status_code == 200
    data = r.json()
    assert data["accepted"] is False
    assert data["reason"].startswith("low confidence")

def test_ingest_sms(client, tracker, now):
    tracker.results[UPS] = _result(UPS, ShipmentStatus.IN_TRANSIT, now)
    r = client.post("/ingest/sms", json={"user_id": "u1", "text": f"Your parcel {UPS} is on its way"})
    assert r.status_code == 200, r.text
    pkg = r.json()["packages"][0]
    assert pkg["result"] == "added"
    assert pkg["status"] == "IN_TRANSIT"

def test_ingest_sms_empty(client):
    r = client.post("/ingest/sms", json={"user_id": "u1", "text": "   "})
    assert r.status_code == 400

def test_ingest_csv(client):
    rows = [{"orderId": "A-100", "trackingNumber": "AB123456789GB", "store": "AliExpress"},
            {"orderId": "A-101"}]
    r = client.post("/ingest/csv", json={"user_id": "u1", "rows": rows})
    assert r.status_code == 200, r.text
    assert r.json() == {"imported": 1, "skipped": 1, "total": 2}

def test_add_and_list_packages(client):
    r = client.post("/packages", json={"user_id": "u1", "tracking_number": UPS})
    assert r.status_code == 200, r.text
    assert r.json()["carrier"] == "UPS"
    assert r.json()["status"] == "PROCESSING"

    r = client.get("/packages/u1")
    assert [p["tracking_number"] for p in r.json()] == [UPS]
    assert client.get("/packages/u1", params={"status": "delivered"}).json() == []
    assert client.get("/packages/u2").json() == []

def test_add_package_empty(client):
    r = client.post("/packages", json={"user_id": "u1", "tracking_number": "  "})
    assert r.status_code == 400

def test_refresh(client, tracker, notifier, now):
    client.post("/packages", json={"user_id": "u1", "tracking_number": UPS})
    tracker.results[UPS] = _result(UPS, ShipmentStatus.DELIVERED, now, desc="Delivered")
    r = client.post(f"/packages/u1/{UPS}/refresh")
    assert r.status_code == 200, r.text
    data = r.json()
    assert data["updated"] is True
    assert data["notified"] is True
    assert data["new_events"] == 1
    assert data["package"]["status"] == "DELIVERED"
    assert notifier.calls[-1][2] == ShipmentStatus.DELIVERED

def test_refresh_without_data(client):
    client.post("/packages", json={"user_id": "u1", "tracking_number": UPS})
    r = client.post(f"/packages/u1/{UPS}/refresh")
    assert r.status_code == 200
    assert r.json()["updated"] is False

def test_refresh_unknown(client):
    r = client.post(f"/packages/u1/{UPS}/refresh")
    assert r.status_code == 404

def test_resync(client, tracker, now):
    client.post("/packages", json={"user_id": "u1", "tracking_number": UPS})
    client.post("/packages", json={"user_id": "u1", "tracking_number": "AB123456789GB"})
    tracker.results[UPS] = _result(UPS, ShipmentStatus.IN_TRANSIT, now)
    r = client.post("/packages/u1/resync")
    assert r.status_code == 200, r.text
    data = r.json()
    assert data["total"] == 2
    assert data["updated"] == 1
    assert data["no_data"] == 1
