# tests/smoke/smoke.py
import os, sys, json, uuid
import requests

BASE = os.getenv("PARCELTRACK_API_BASE", "http://127.0.0.1:8000")
USER = f"smoke-{uuid.uuid4().hex[:8]}"
UPS = "1Z999AA10123456784"

EMAIL_HTML = f"""
<p>Your order #123-4567890-1234567 has shipped</p>
<table><tr><td class="item-name">Wireless Mouse</td></tr></table>
<p>Tracking: {UPS}</p>
"""

def health():
    r = requests.get(f"{BASE}/health", timeout=10)
    r.raise_for_status()
    data = r.json()
    assert data.get("status") == "ok", data
    print("✓ /health OK:", json.dumps(data))

def post(path, payload, timeout=60):
    r = requests.post(f"{BASE}{path}", json=payload, timeout=timeout)
    r.raise_for_status()
    out = r.json()
    print(f"\nPOST {path}\n---\n{json.dumps(out, indent=2, default=str)}")
    return out

def main():
    print(f"Target API: {BASE} (user {USER})")
    health()

    # 1) Classification is local and deterministic
    c = post("/classify", {"text": UPS})
    assert c["carrier"] == "UPS", c

    # 2) Shipping email -> order + package
    e = post("/ingest/email", {"user_id": USER, "html": EMAIL_HTML,
                               "from_address": "shipment-tracking@amazon.com",
                               "subject": "Your order has shipped!"})
    assert e["accepted"], e
    assert e["packages"][0]["tracking_number"] == UPS

    # 3) Same email again must not create a second package
    post("/ingest/email", {"user_id": USER, "html": EMAIL_HTML,
                           "from_address": "shipment-tracking@amazon.com",
                           "subject": "Your order has shipped!"})
    pkgs = requests.get(f"{BASE}/packages/{USER}", timeout=10).json()
    assert len(pkgs) == 1, pkgs

    # 4) Marketing mail is rejected before anything is written
    m = post("/ingest/email", {"user_id": USER, "html": "<p>Big sale!</p>", "subject": "Deals"})
    assert not m["accepted"], m

    # 5) SMS with a second number
    s = post("/ingest/sms", {"user_id": USER, "text": "Your parcel AB123456789GB is on its way"})
    assert s["packages"], s

    # 6) Live refresh may or may not find data; it must not fail
    r = post(f"/packages/{USER}/{UPS}/refresh", {})
    assert "updated" in r

    print("\n✓ Smoke tests passed")

if __name__ == "__main__":
    try:
        main()
    except Exception as e:
        print("\n✗ Smoke tests failed:", e)
        sys.exit(1)
