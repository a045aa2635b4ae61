from __future__ import annotations
from typing import List, Dict, Any, Literal
from typing_extensions import TypedDict
from dataclasses import asdict

from langgraph.graph import StateGraph, START, END

from parceltrack.ingest import IngestService
from parceltrack.models import STATUS_LABELS, ParsedEmailFacts
from parceltrack.tools.email_parser import parse_email
from parceltrack.tools.scan_text import scan_text

# -------- Pipeline State --------
class PipelineState(TypedDict, total=False):
    # input signal
    user_id: str
    html: str
    text: str
    from_address: str
    subject: str
    source: str
    fetch_carrier: bool
    # control
    kind: str                          # "email" | "text"
    confidence: float
    accepted: bool
    reason: str
    # extraction
    facts: Dict[str, Any]              # parsed email facts, plain dict for the response
    parsed: ParsedEmailFacts           # same facts as a record, so persist does not parse twice
    candidates: List[Dict[str, str]]   # scanned tracking numbers
    # persistence
    packages: List[Dict[str, Any]]
    # final
    summary: str

# -------- Nodes --------
def node_understand(state: PipelineState) -> PipelineState:
    """Email if there is HTML or an email header, otherwise free text."""
    is_email = bool(state.get("html") or state.get("from_address") or state.get("subject"))
    state["kind"] = "email" if is_email else "text"
    state["packages"] = []
    return state

def node_extract(state: PipelineState) -> PipelineState:
    if state["kind"] == "email":
        facts = parse_email(state.get("html", ""), state.get("from_address", ""), state.get("subject", ""))
        state["parsed"] = facts
        state["facts"] = asdict(facts)
        state["confidence"] = facts.confidence
    else:
        found = scan_text(state.get("text", ""))
        state["candidates"] = [{"tracking_number": c.tracking_number, "carrier": c.carrier.value} for c in found]
    return state

def node_gate(state: PipelineState, threshold: float) -> PipelineState:
    """Drop low-confidence emails and texts without any tracking number before anything is written."""
    if state["kind"] == "email":
        facts = state.get("facts") or {}
        confidence = state.get("confidence", 0.0)
        if confidence < threshold:
            state["accepted"], state["reason"] = False, f"low confidence ({confidence})"
        elif not (facts.get("tracking_number") or facts.get("order_id")):
            state["accepted"], state["reason"] = False, "no tracking number or order id"
        else:
            state["accepted"] = True
    else:
        state["accepted"] = bool(state.get("candidates"))
        if not state["accepted"]:
            state["reason"] = "no tracking numbers found"
    return state

def route_gate(state: PipelineState) -> Literal["persist", "respond"]:
    return "persist" if state.get("accepted") else "respond"

def _package_row(pkg) -> Dict[str, Any]:
    return {
        "tracking_number": pkg.tracking_number,
        "carrier": pkg.carrier.value,
        "status": pkg.status.value,
        "order_ref": pkg.order_ref,
    }

def node_persist(state: PipelineState, service: IngestService) -> PipelineState:
    user_id = state["user_id"]
    rows: List[Dict[str, Any]] = []

    if state["kind"] == "email":
        res = service.ingest_email(
            user_id,
            state.get("html", ""),
            state.get("from_address", ""),
            state.get("subject", ""),
            fetch_carrier=bool(state.get("fetch_carrier")),
            facts=state.get("parsed"),
        )
        if res.outcome is not None and res.outcome.state is not None:
            row = _package_row(res.outcome.state)
            row["result"] = "added" if res.outcome.created else "updated"
            rows.append(row)
        state["accepted"] = res.accepted
    else:
        summary = service.ingest_text(user_id, state.get("text", ""), state.get("source"))
        for item in summary.items:
            rows.append({
                "tracking_number": item.tracking_number,
                "carrier": item.carrier.value,
                "status": item.status.value if item.status else None,
                "result": item.result,
            })

    state["packages"] = rows
    return state

def node_respond(state: PipelineState) -> PipelineState:
    if not state.get("accepted"):
        state["summary"] = f"Nothing ingested: {state.get('reason') or 'rejected'}."
        return state

    parts: List[str] = []
    for p in state.get("packages", []):
        label = STATUS_LABELS.get(p.get("status"), p.get("status") or "unknown")
        parts.append(f"- {p['tracking_number']} ({p['carrier']}): {label} [{p.get('result', '')}]")
    if not parts:
        facts = state.get("facts") or {}
        parts.append(f"- Order {facts.get('order_id')} from {facts.get('merchant')} recorded (no tracking number yet).")
    state["summary"] = "\n".join(parts)
    return state

# -------- Builder --------
def build_graph(service: IngestService):
    """
    Build and return a compiled LangGraph app. The ingest service is injected so the
    graph writes through the same store, locks and notifier as the HTTP API.
    """
    g = StateGraph(PipelineState)

    # Wrap gate and persist to inject the service and its threshold
    def _gate(state: PipelineState) -> PipelineState:
        return node_gate(state, service.cfg.email_confidence_threshold)

    def _persist(state: PipelineState) -> PipelineState:
        return node_persist(state, service)

    g.add_node("understand", node_understand)
    g.add_node("extract", node_extract)
    g.add_node("gate", _gate)
    g.add_node("persist", _persist)
    g.add_node("respond", node_respond)

    g.add_edge(START, "understand")
    g.add_edge("understand", "extract")
    g.add_edge("extract", "gate")
    g.add_conditional_edges("gate", route_gate, {"persist": "persist", "respond": "respond"})
    g.add_edge("persist", "respond")
    g.add_edge("respond", END)

    return g.compile()

# -------- Runner convenience --------
def run_pipeline(app, user_id: str, **signal: Any) -> Dict[str, Any]:
    """Run the compiled graph for one raw signal and return the final state."""
    init: PipelineState = {"user_id": user_id, **signal}
    return app.invoke(init)
