from parceltrack.models import Carrier
from parceltrack.tools.scan_text import parse_pickup_info, scan_text

def test_structured_hits_come_first():
    out = scan_text("Your parcel 1Z999AA10123456784 is on its way")
    assert [c.tracking_number for c in out] == ["1Z999AA10123456784"]
    assert out[0].carrier == Carrier.UPS

def test_keyword_anchored_secondary_hit():
    out = scan_text("Shipment number: ZX9876543210AB will arrive tomorrow")
    assert [c.tracking_number for c in out] == ["ZX9876543210AB"]
    assert out[0].carrier == Carrier.UNKNOWN

def test_hebrew_keyword():
    out = scan_text("המשלוח KP123456789IL בדרך אליך")
    assert "KP123456789IL" in [c.tracking_number for c in out]

def test_secondary_filters():
    # short all-digit codes, plain words and tokens under 8 chars are not tracking numbers
    assert scan_text("delivery: 12345678") == []
    assert scan_text("Tracking information for your parcel") == []
    assert scan_text("parcel AB12") == []

def test_secondary_does_not_duplicate_primary():
    out = scan_text("tracking 1Z999AA10123456784")
    assert len(out) == 1

def test_empty_text():
    assert scan_text("") == []
    assert scan_text(None) == []

def test_pickup_store_sms():
    sms = ("החבילה שלך ממתינה בחנות סופר כהן, *הרצל* 12 תל אביב, פרטים: מדף 4. "
           "ימים א-ה 09:00-20:00 והמשלוח יישמר 7 ימים https://pickup.example/x1")
    info = parse_pickup_info(sms)
    assert info["name"] == "סופר כהן"
    assert info["address"] == "הרצל 12, תל אביב"
    assert info["shelf"] == "4"
    assert info["url"] == "https://pickup.example/x1"
    assert "hours" in info

def test_pickup_post_branch_sms():
    info = parse_pickup_info("החבילה הגיעה לסניף הרצליה ומחכה לאיסוף")
    assert info["name"] == "דואר ישראל - הרצליה"

def test_pickup_english_form():
    info = parse_pickup_info("Your parcel is ready. Pickup point: Corner Shop, 5 High Street")
    assert info["name"] == "Corner Shop, 5 High Street"

def test_pickup_none_when_nothing_found():
    assert parse_pickup_info("Your order has shipped") is None
    assert parse_pickup_info(None) is None
