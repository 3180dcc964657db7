"""Receipt analysis pipeline.

This module turns one uploaded image/PDF into normalized receipts:
- validates the media type
- sends the document to a pluggable extraction provider
- normalizes whatever JSON the provider answered with
- falls back to a filename guess when the provider is unreachable
- reports unparseable answers as a per-file error instead of raising
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Tuple

from yeobi.logging import get_logger, log_event, monotonic_ms
from yeobi.models import Receipt
from yeobi.receipts import ReceiptNormalizer, UnparseableResponseError

from backend.services.llm_client import AnthropicClient, UpstreamUnavailableError

logger = get_logger(__name__)

SIMULATED_CONFIDENCE = 0.3
UPSTREAM_WARNING = "AI 분석 서버에 연결하지 못해 파일명으로 추정했습니다. 내용을 확인해 주세요."
SIMULATED_QUESTION = "자동 분석에 실패했습니다. 영수증 종류와 금액을 확인해 주세요."


# -----------------------------
# Data contracts
# -----------------------------


SUPPORTED_MEDIA_TYPES = frozenset(
    {
        "application/pdf",
        "image/jpeg",
        "image/jpg",
        "image/png",
        "image/webp",
        "image/gif",
    }
)


@dataclass(frozen=True)
class UploadedDocument:
    """Input payload for receipt analysis."""

    filename: str
    content_type: str
    content: bytes

    @property
    def media_type(self) -> str:
        media_type = self.content_type.lower()
        return "image/jpeg" if media_type == "image/jpg" else media_type

    def validate(self) -> None:
        if self.content_type.lower() not in SUPPORTED_MEDIA_TYPES:
            raise ValueError(
                f"Unsupported content type '{self.content_type}'. "
                f"Supported values: {sorted(SUPPORTED_MEDIA_TYPES)}"
            )
        if not self.content:
            raise ValueError(f"Uploaded file '{self.filename}' is empty")


@dataclass
class AnalysisOutcome:
    file_name: str
    receipts: List[Receipt] = field(default_factory=list)
    simulated: bool = False
    warning: Optional[str] = None
    error: Optional[str] = None
    raw_excerpt: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fileName": self.file_name,
            "receipts": [receipt.to_dict() for receipt in self.receipts],
            "simulated": self.simulated,
            "warning": self.warning,
            "error": self.error,
            "raw": self.raw_excerpt,
        }


# -----------------------------
# Extraction provider abstraction
# -----------------------------


class ExtractionProvider(Protocol):
    """Vision model call that returns the raw answer text for one document."""

    async def extract(self, document: UploadedDocument) -> str:
        ...


class AnthropicExtractionProvider:
    def __init__(self, client: Optional[AnthropicClient] = None) -> None:
        self.client = client or AnthropicClient()

    async def extract(self, document: UploadedDocument) -> str:
        return await self.client.extract(document.content, document.media_type)


class MockExtractionProvider:
    """Provider useful for tests and local development."""

    def __init__(self, text: str):
        self._text = text

    async def extract(self, document: UploadedDocument) -> str:
        _ = document
        return self._text


class UnavailableExtractionProvider:
    """Provider that behaves like an unreachable model."""

    async def extract(self, document: UploadedDocument) -> str:
        raise UpstreamUnavailableError(f"No extraction backend configured for {document.filename}")


# -----------------------------
# Filename heuristic
# -----------------------------


FILENAME_HINTS: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    ("rail_receipt", ("ktx", "srt", "코레일", "열차", "승차권", "rail")),
    ("lodging_receipt", ("숙박", "호텔", "모텔", "hotel", "lodging")),
    ("toll_receipt", ("톨", "toll", "하이패스", "고속도로")),
    ("local_receipt", ("편의점", "식당", "카페", "마트", "영수증")),
    ("map_capture", ("지도", "map", "네이버")),
)


def guess_kind(file_name: str) -> str:
    lowered = file_name.lower()
    for kind, hints in FILENAME_HINTS:
        if any(hint in lowered for hint in hints):
            return kind
    return "unknown"


def simulate_from_filename(
    file_name: str, normalizer: Optional[ReceiptNormalizer] = None
) -> Receipt:
    """Low-trust receipt guessed from the file name alone; fields are left empty for review."""
    normalizer = normalizer or ReceiptNormalizer()
    receipt = normalizer.normalize_item(
        {
            "type": guess_kind(file_name),
            "data": {},
            "confidence": SIMULATED_CONFIDENCE,
            "questions": [SIMULATED_QUESTION],
            "simulated": True,
        },
        file_name,
    )
    return receipt


# -----------------------------
# Pipeline
# -----------------------------


class ReceiptPipeline:
    """Coordinates validation, extraction, normalization and fallbacks for one file."""

    def __init__(
        self,
        provider: ExtractionProvider,
        normalizer: Optional[ReceiptNormalizer] = None,
    ) -> None:
        self.provider = provider
        self.normalizer = normalizer or ReceiptNormalizer()

    async def analyze(self, document: UploadedDocument) -> AnalysisOutcome:
        try:
            document.validate()
        except ValueError as exc:
            log_event(logger, "receipt.analyze.rejected", file_name=document.filename, reason=str(exc))
            return AnalysisOutcome(file_name=document.filename, error="unsupported_document", warning=str(exc))

        start = time.monotonic()
        try:
            raw_text = await self.provider.extract(document)
        except UpstreamUnavailableError as exc:
            log_event(
                logger,
                "receipt.analyze.fallback",
                file_name=document.filename,
                status=exc.status,
                reason=str(exc)[:200],
            )
            return AnalysisOutcome(
                file_name=document.filename,
                receipts=[simulate_from_filename(document.filename, self.normalizer)],
                simulated=True,
                warning=UPSTREAM_WARNING,
            )

        try:
            receipts = self.normalizer.normalize(raw_text, document.filename)
        except UnparseableResponseError as exc:
            log_event(
                logger,
                "receipt.normalize.unparseable",
                file_name=document.filename,
                raw_chars=len(raw_text or ""),
            )
            return AnalysisOutcome(file_name=document.filename, error=exc.code, raw_excerpt=exc.raw_excerpt)

        log_event(
            logger,
            "receipt.analyze.done",
            file_name=document.filename,
            receipts=len(receipts),
            duration_ms=monotonic_ms(start),
        )
        return AnalysisOutcome(file_name=document.filename, receipts=receipts)
