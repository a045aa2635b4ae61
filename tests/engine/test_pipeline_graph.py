from parceltrack.models import ShipmentStatus
from parceltrack.pipeline.graph import build_graph, run_pipeline

AMAZON_HTML = """
<p>Your order #123-4567890-1234567 has shipped</p>
<table><tr><td class="item-name">Wireless Mouse</td></tr></table>
<p>Tracking: 1Z999AA10123456784</p>
"""

def test_email_signal_is_persisted(service, store):
    app = build_graph(service)
    out = run_pipeline(app, "u1", html=AMAZON_HTML, from_address="shipment-tracking@amazon.com",
                       subject="Your order has shipped!")
    assert out["kind"] == "email"
    assert out["accepted"]
    assert out["packages"][0]["tracking_number"] == "1Z999AA10123456784"
    assert out["packages"][0]["result"] == "added"
    assert "Shipped" in out["summary"]
    assert store.find_package("u1", "1Z999AA10123456784").status == ShipmentStatus.SHIPPED

def test_low_confidence_email_stops_at_gate(service, store):
    app = build_graph(service)
    out = run_pipeline(app, "u1", html="<p>Big sale this weekend</p>", from_address="deals@example.com",
                       subject="Deals")
    assert not out["accepted"]
    assert out["reason"].startswith("low confidence")
    assert out["summary"].startswith("Nothing ingested")
    assert store.list_packages("u1") == []

def test_text_signal(service, store):
    app = build_graph(service)
    out = run_pipeline(app, "u1", text="Package 1: 1Z1234567890123456 (UPS), Package 2: AB123456789GB")
    assert out["kind"] == "text"
    assert [c["tracking_number"] for c in out["candidates"]] == ["1Z1234567890123456", "AB123456789GB"]
    assert {p["result"] for p in out["packages"]} == {"added"}
    assert len(store.list_packages("u1")) == 2

def test_text_without_numbers(service):
    app = build_graph(service)
    out = run_pipeline(app, "u1", text="see you at 5")
    assert not out["accepted"]
    assert out["reason"] == "no tracking numbers found"
    assert out["packages"] == []

def test_email_is_parsed_once(service, monkeypatch):
    import parceltrack.ingest as ingest_mod

    def second_parse(*args, **kwargs):
        raise AssertionError("email parsed again in persist")

    monkeypatch.setattr(ingest_mod, "parse_email", second_parse)
    out = run_pipeline(build_graph(service), "u1", html=AMAZON_HTML, from_address="shipment-tracking@amazon.com",
                       subject="Your order has shipped!")
    assert out["accepted"]
    assert out["packages"][0]["result"] == "added"
