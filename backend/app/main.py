from __future__ import annotations

import base64
import binascii
from dataclasses import fields
from typing import Any, Literal, Optional
from urllib.parse import quote

from fastapi import Body, Depends, FastAPI, File, HTTPException, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse, Response
from pydantic import BaseModel, ConfigDict, Field

from backend.services.excel_export import ExcelExportService
from backend.services.llm_client import AnthropicClient
from backend.services.receipt_pipeline import (
    AnalysisOutcome,
    AnthropicExtractionProvider,
    ReceiptPipeline,
    UploadedDocument,
)
from yeobi.clarification import ChatOutcome, ChatProvider, ChatTurn, chat_about_receipt
from yeobi.config import Settings, get_settings
from yeobi.core import Trip
from yeobi.ledger import Ledger, LedgerBuilder
from yeobi.logging import RequestContextMiddleware, configure_logging, get_logger, log_event
from yeobi.receipts import ReceiptNormalizer
from yeobi.regions import RegionalMatcher
from yeobi.rules import ReimbursementCalculator
from yeobi.session import SettlementSession, TripNotFoundError
from yeobi.ui import render_settlement_table

configure_logging()
logger = get_logger(__name__)

app = FastAPI(title="Yeobi Settlement API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RequestContextMiddleware)

XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


# -----------------------------
# Payloads
# -----------------------------


class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class AnalyzeRequest(CamelModel):
    file_name: str = Field(alias="fileName")
    media_type: str = Field(alias="mediaType")
    data: str


class ChatTurnPayload(BaseModel):
    role: Literal["user", "assistant"]
    content: str


class QARequest(CamelModel):
    receipt_data: dict[str, Any] = Field(alias="receiptData")
    history: list[ChatTurnPayload] = Field(default_factory=list)
    message: str


class LedgerRequest(CamelModel):
    trips: list[dict[str, Any]]
    role: Literal["staff", "executive"] = "staff"
    user_name: str = Field(default="", alias="userName")
    organization: Optional[str] = None


class RevisionRequest(CamelModel):
    receipt_data: dict[str, Any] = Field(alias="receiptData")


# -----------------------------
# Dependencies
# -----------------------------


def get_pipeline(settings: Settings = Depends(get_settings)) -> ReceiptPipeline:
    policy = settings.load_policy()
    provider = AnthropicExtractionProvider(AnthropicClient(settings))
    return ReceiptPipeline(provider, ReceiptNormalizer(RegionalMatcher(policy)))


def get_chat_provider(settings: Settings = Depends(get_settings)) -> ChatProvider:
    return AnthropicClient(settings)


def get_export_service() -> ExcelExportService:
    return ExcelExportService()


sessions: dict[str, SettlementSession] = {}


def get_session(session_id: str) -> SettlementSession:
    session = sessions.get(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return session


def _parse_trips(items: list[dict[str, Any]]) -> list[Trip]:
    try:
        return [Trip.from_dict(item) for item in items]
    except (ValueError, TypeError) as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc


def _build_ledger(payload: LedgerRequest, settings: Settings) -> Ledger:
    builder = LedgerBuilder(ReimbursementCalculator(settings.load_policy()), origin_name=settings.origin_name)
    return builder.build(_parse_trips(payload.trips), payload.role)


def _outcome_response(outcome: AnalysisOutcome) -> JSONResponse:
    if outcome.error == "unparseable_response":
        return JSONResponse(status_code=422, content={"error": outcome.error, "raw": outcome.raw_excerpt})
    if outcome.error:
        return JSONResponse(status_code=400, content={"error": outcome.error, "detail": outcome.warning})
    return JSONResponse(
        content={
            "receipts": [receipt.to_dict() for receipt in outcome.receipts],
            "simulated": outcome.simulated,
            "warning": outcome.warning,
        }
    )


async def _read_upload(file: UploadFile) -> UploadedDocument:
    content = await file.read()
    return UploadedDocument(
        filename=file.filename or "upload",
        content_type=file.content_type or "application/octet-stream",
        content=content,
    )


# -----------------------------
# Stateless endpoints
# -----------------------------


@app.post("/api/analyze")
async def analyze(payload: AnalyzeRequest, pipeline: ReceiptPipeline = Depends(get_pipeline)):
    try:
        content = base64.b64decode(payload.data, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise HTTPException(status_code=400, detail="data must be base64 encoded") from exc

    document = UploadedDocument(filename=payload.file_name, content_type=payload.media_type, content=content)
    return _outcome_response(await pipeline.analyze(document))


@app.post("/api/qa")
async def qa(
    payload: QARequest,
    chat: ChatProvider = Depends(get_chat_provider),
    settings: Settings = Depends(get_settings),
):
    normalizer = ReceiptNormalizer(RegionalMatcher(settings.load_policy()))
    receipt = normalizer.normalize_item(payload.receipt_data)
    history = [ChatTurn(turn.role, turn.content) for turn in payload.history]
    rounds = sum(1 for turn in history if turn.role == "user")
    if rounds >= settings.clarification_max_rounds:
        log_event(logger, "clarification.abandoned", file_name=receipt.file_name, rounds=rounds)
        receipt.questions = []
        return {**ChatOutcome(status="resolved", receipt=receipt).to_dict(), "abandoned": True}

    outcome = await chat_about_receipt(chat, receipt, history, payload.message, normalizer)
    return outcome.to_dict()


@app.post("/api/ledger")
def ledger(payload: LedgerRequest, settings: Settings = Depends(get_settings)):
    return _build_ledger(payload, settings).to_dict()


@app.post("/api/ledger/html", response_class=HTMLResponse)
def ledger_html(payload: LedgerRequest, settings: Settings = Depends(get_settings)):
    result = _build_ledger(payload, settings)
    return render_settlement_table(result, payload.user_name, payload.organization or settings.origin_name)


@app.post("/api/ledger/export.xlsx")
def ledger_export(
    payload: LedgerRequest,
    settings: Settings = Depends(get_settings),
    exporter: ExcelExportService = Depends(get_export_service),
):
    result = _build_ledger(payload, settings)
    content = exporter.to_bytes(result, payload.user_name, payload.organization or settings.origin_name)
    filename = quote("여비정산.xlsx")
    return Response(
        content=content,
        media_type=XLSX_MEDIA_TYPE,
        headers={"Content-Disposition": f"attachment; filename*=UTF-8''{filename}"},
    )


# -----------------------------
# Sessions
# -----------------------------


@app.post("/sessions")
async def create_session(
    pipeline: ReceiptPipeline = Depends(get_pipeline),
    settings: Settings = Depends(get_settings),
):
    session = SettlementSession(
        pipeline,
        policy=settings.load_policy(),
        origin_name=settings.origin_name,
        clarification_threshold=settings.clarification_threshold,
    )
    sessions[session.session_id] = session
    log_event(logger, "session.created", session_id=session.session_id)
    return {"id": session.session_id, "trips": [trip.to_dict() for trip in session.trips]}


@app.get("/sessions/{session_id}/trips")
def list_trips(session: SettlementSession = Depends(get_session)):
    return {"trips": [trip.to_dict() for trip in session.trips]}


@app.post("/sessions/{session_id}/trips")
async def add_trip(
    payload: Optional[dict[str, Any]] = Body(default=None),
    session: SettlementSession = Depends(get_session),
):
    trip = _parse_trips([payload])[0] if payload else None
    created = await session.add_trip(trip)
    return created.to_dict()


@app.patch("/sessions/{session_id}/trips/{trip_id}")
async def update_trip(
    trip_id: str,
    payload: dict[str, Any] = Body(...),
    session: SettlementSession = Depends(get_session),
):
    try:
        current = session.get_trip(trip_id)
    except TripNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Trip not found") from exc

    merged = {**current.to_dict(), **payload, "id": trip_id}
    if "destination" in payload and "destinationMetro" not in payload:
        merged.pop("destinationMetro")
    revised = _parse_trips([merged])[0]
    changes = {f.name: getattr(revised, f.name) for f in fields(Trip) if f.name != "trip_id"}
    updated = await session.update_trip(trip_id, **changes)
    return updated.to_dict()


@app.delete("/sessions/{session_id}/trips/{trip_id}")
async def remove_trip(trip_id: str, session: SettlementSession = Depends(get_session)):
    try:
        removed = await session.remove_trip(trip_id)
    except TripNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Trip not found") from exc
    return {"removed": removed, "trips": [trip.to_dict() for trip in session.trips]}


@app.post("/sessions/{session_id}/trips/{trip_id}/receipts")
async def upload_receipts(
    trip_id: str,
    files: list[UploadFile] = File(...),
    session: SettlementSession = Depends(get_session),
):
    outcomes = []
    for file in files:
        document = await _read_upload(file)
        try:
            outcome = await session.attach_file(trip_id, document)
        except TripNotFoundError as exc:
            raise HTTPException(status_code=404, detail="Trip not found") from exc
        outcomes.append(outcome.to_dict())

    return {"trip": session.get_trip(trip_id).to_dict(), "results": outcomes}


@app.post("/sessions/{session_id}/bulk")
async def bulk_upload(files: list[UploadFile] = File(...), session: SettlementSession = Depends(get_session)):
    documents = [await _read_upload(file) for file in files]

    def progress(done: int, total: int, file_name: str) -> None:
        log_event(logger, "session.bulk.progress", done=done, total=total, file_name=file_name)

    result = await session.bulk_import(documents, progress=progress)
    return {**result.to_dict(), "allTrips": [trip.to_dict() for trip in session.trips]}


@app.post("/sessions/{session_id}/revisions")
async def apply_revision(
    payload: RevisionRequest,
    session: SettlementSession = Depends(get_session),
    settings: Settings = Depends(get_settings),
):
    normalizer = ReceiptNormalizer(RegionalMatcher(settings.load_policy()))
    trip = await session.apply_revision(normalizer.normalize_item(payload.receipt_data))
    return trip.to_dict()


@app.get("/sessions/{session_id}/ledger")
def session_ledger(
    role: Literal["staff", "executive"] = "staff",
    session: SettlementSession = Depends(get_session),
):
    return session.ledger(role).to_dict()


@app.get("/health")
def health():
    return {"status": "ok"}
