# parceltrack/main.py
from typing import Any, Dict, List, Optional
from contextlib import asynccontextmanager
from datetime import datetime
import logging

from fastapi import FastAPI, HTTPException, Query
from pydantic import BaseModel

from parceltrack.carriers.aggregator import AggregatorTracker, BrowserSession
from parceltrack.carriers.polling import PollingTracker
from parceltrack.ingest import IngestService, PackageNotFound
from parceltrack.models import Carrier, PackageState
from parceltrack.notify import LoggingNotifier
from parceltrack.pipeline.graph import build_graph, run_pipeline
from parceltrack.reconcile import ReconcileOutcome
from parceltrack.settings import settings
from parceltrack.store import InMemoryStore
from parceltrack.tools.carrier_detect import classify, extract_all, tracking_url
from dotenv import load_dotenv

load_dotenv()  # loads variables from .env at repo root

log = logging.getLogger("uvicorn")
logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))

# ========= Service wiring =========
browser_session: Optional[BrowserSession] = None

def _build_service() -> IngestService:
    global browser_session
    trackers: List[Any] = [PollingTracker()]
    if settings.aggregator_enable:
        browser_session = BrowserSession(settings)
        trackers.append(AggregatorTracker(browser_session, settings))
        log.info("Aggregator tracker enabled")
    return IngestService(store=InMemoryStore(), notifier=LoggingNotifier(), trackers=trackers)

service = _build_service()
pipeline_app = build_graph(service)
log.info(f"Ingest pipeline compiled ({len(service.trackers)} tracker(s))")

@asynccontextmanager
async def lifespan(_app: FastAPI):
    yield
    if browser_session is not None:
        browser_session.close()
        log.info("Browser session closed")

# ========= FastAPI app =========
app = FastAPI(title="Parcel Tracking Ingest", version="0.1", lifespan=lifespan)

# ========= Schemas =========
class ClassifyRequest(BaseModel):
    text: str

class ClassifyResponse(BaseModel):
    carrier: str
    tracking_url: Optional[str] = None
    found: List[Dict[str, str]] = []

class EmailIngestRequest(BaseModel):
    user_id: str
    html: str = ""
    from_address: str = ""
    subject: str = ""
    fetch_carrier: bool = False

class TextIngestRequest(BaseModel):
    user_id: str
    text: str
    source: Optional[str] = None

class IngestResponse(BaseModel):
    accepted: bool
    summary: str
    packages: List[Dict[str, Any]] = []
    reason: Optional[str] = None

class CsvRow(BaseModel):
    orderId: Optional[str] = None
    trackingNumber: Optional[str] = None
    store: Optional[str] = None
    items: Optional[str] = None
    date: Optional[str] = None

class CsvIngestRequest(BaseModel):
    user_id: str
    rows: List[CsvRow] = []

class CsvIngestResponse(BaseModel):
    imported: int
    skipped: int
    total: int

class AddPackageRequest(BaseModel):
    user_id: str
    tracking_number: str
    carrier: Optional[Carrier] = None

class EventOut(BaseModel):
    timestamp: datetime
    location: Optional[str] = None
    status: str
    description: str

class PackageOut(BaseModel):
    tracking_number: str
    carrier: str
    status: str
    estimated_delivery: Optional[datetime] = None
    last_location: Optional[str] = None
    items: List[str] = []
    order_ref: Optional[str] = None
    pickup_location: Optional[Dict[str, Any]] = None
    last_checked_at: Optional[datetime] = None
    tracking_url: Optional[str] = None
    events: List[EventOut] = []

class RefreshResponse(BaseModel):
    updated: bool
    notified: bool = False
    new_events: int = 0
    package: PackageOut

class ResyncResponse(BaseModel):
    total: int
    updated: int
    unchanged: int
    no_data: int
    failed: int

def _package_out(pkg: PackageState) -> PackageOut:
    return PackageOut(
        tracking_number=pkg.tracking_number,
        carrier=pkg.carrier.value,
        status=pkg.status.value,
        estimated_delivery=pkg.estimated_delivery,
        last_location=pkg.last_location,
        items=list(pkg.items),
        order_ref=pkg.order_ref,
        pickup_location=pkg.pickup_location,
        last_checked_at=pkg.last_checked_at,
        tracking_url=tracking_url(pkg.tracking_number, pkg.carrier),
        events=[
            EventOut(timestamp=e.timestamp, location=e.location, status=e.status.value, description=e.description)
            for e in sorted(pkg.events, key=lambda e: e.timestamp, reverse=True)
        ],
    )

def _pipeline_response(final_state: Dict[str, Any]) -> IngestResponse:
    return IngestResponse(
        accepted=bool(final_state.get("accepted")),
        summary=final_state.get("summary", ""),
        packages=final_state.get("packages", []),
        reason=final_state.get("reason"),
    )

# ========= Endpoints =========
@app.get("/health")
def health():
    return {
        "status": "ok",
        "trackers": [getattr(t, "name", type(t).__name__) for t in service.trackers],
        "aggregator_enabled": bool(settings.aggregator_enable),
        "pipeline_loaded": bool(pipeline_app is not None),
    }

@app.post("/classify", response_model=ClassifyResponse)
def classify_api(req: ClassifyRequest):
    carrier = classify(req.text)
    found = [{"tracking_number": c.tracking_number, "carrier": c.carrier.value} for c in extract_all(req.text)]
    return ClassifyResponse(carrier=carrier.value, tracking_url=tracking_url(req.text, carrier), found=found)

@app.post("/ingest/email", response_model=IngestResponse)
def ingest_email(req: EmailIngestRequest):
    final_state = run_pipeline(
        pipeline_app,
        req.user_id,
        html=req.html,
        from_address=req.from_address,
        subject=req.subject,
        fetch_carrier=req.fetch_carrier,
    )
    return _pipeline_response(final_state)

@app.post("/ingest/sms", response_model=IngestResponse)
def ingest_sms(req: TextIngestRequest):
    if not req.text.strip():
        raise HTTPException(status_code=400, detail="Missing SMS text")
    final_state = run_pipeline(pipeline_app, req.user_id, text=req.text, source=req.source)
    return _pipeline_response(final_state)

@app.post("/ingest/csv", response_model=CsvIngestResponse)
def ingest_csv(req: CsvIngestRequest):
    summary = service.ingest_csv(req.user_id, [r.model_dump() for r in req.rows])
    return CsvIngestResponse(imported=summary.added, skipped=summary.skipped, total=summary.total)

@app.post("/packages", response_model=PackageOut)
def add_package(req: AddPackageRequest):
    try:
        outcome = service.add_package(req.user_id, req.tracking_number, req.carrier)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _package_out(outcome.state)

@app.get("/packages/{user_id}", response_model=List[PackageOut])
def list_packages(user_id: str, status: Optional[str] = Query(default=None, description="Filter by status")):
    pkgs = service.list_packages(user_id)
    if status:
        pkgs = [p for p in pkgs if p.status.value == status.upper()]
    return [_package_out(p) for p in pkgs]

@app.post("/packages/{user_id}/{tracking_number}/refresh", response_model=RefreshResponse)
def refresh_package(user_id: str, tracking_number: str):
    try:
        outcome: Optional[ReconcileOutcome] = service.refresh(user_id, tracking_number)
    except PackageNotFound:
        raise HTTPException(status_code=404, detail="Package not found")

    if outcome is None:
        # no tracker had data (rate-limited, upstream down or unknown number)
        pkg = service.store.find_package(user_id, tracking_number.strip().upper())
        return RefreshResponse(updated=False, package=_package_out(pkg))
    return RefreshResponse(
        updated=True,
        notified=outcome.notify,
        new_events=len(outcome.new_events),
        package=_package_out(outcome.state),
    )

@app.post("/packages/{user_id}/resync", response_model=ResyncResponse)
def resync(user_id: str, only_due: bool = Query(default=False)):
    s = service.resync_all(user_id, only_due=only_due)
    return ResyncResponse(total=s.total, updated=s.updated, unchanged=s.unchanged, no_data=s.no_data, failed=s.failed)
