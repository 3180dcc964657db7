import json

import pytest

from backend.services.llm_client import UpstreamUnavailableError
from backend.services.receipt_pipeline import (
    MockExtractionProvider,
    ReceiptPipeline,
    UnavailableExtractionProvider,
    UploadedDocument,
    guess_kind,
    simulate_from_filename,
)


class FailingProvider:
    def __init__(self):
        self.calls = 0

    async def extract(self, document):
        self.calls += 1
        raise UpstreamUnavailableError("Model API error: 529", status=529)


def document(filename="ktx.jpg", content_type="image/jpeg"):
    return UploadedDocument(filename=filename, content_type=content_type, content=b"\xff\xd8\xff")


@pytest.mark.asyncio
async def test_pipeline_normalizes_provider_answer():
    answer = "```json\n" + json.dumps(
        [
            {"type": "rail_receipt", "data": {"date": "2025-03-05", "from": "서울", "to": "오송", "amount": 23700}, "confidence": 0.95},
            {"type": "local_receipt", "data": {"date": "2025-03-05", "address": "충북 청주시 오송읍"}, "confidence": 0.9},
        ],
        ensure_ascii=False,
    ) + "\n```"
    pipeline = ReceiptPipeline(MockExtractionProvider(answer))

    outcome = await pipeline.analyze(document("scan.pdf", "application/pdf"))

    assert outcome.ok
    assert outcome.simulated is False
    assert [r.type for r in outcome.receipts] == ["rail_receipt", "local_receipt"]
    assert outcome.receipts[1].proof_metro == "충북"
    assert all(r.file_name == "scan.pdf" for r in outcome.receipts)


@pytest.mark.asyncio
async def test_upstream_failure_falls_back_to_filename_guess():
    pipeline = ReceiptPipeline(FailingProvider())

    outcome = await pipeline.analyze(document("KTX_승차권_0305.jpg"))

    assert outcome.ok
    assert outcome.simulated is True
    assert outcome.warning
    receipt = outcome.receipts[0]
    assert receipt.type == "rail_receipt"
    assert receipt.simulated is True
    assert receipt.confidence == 0.3
    assert receipt.questions


@pytest.mark.asyncio
async def test_missing_backend_behaves_as_unavailable():
    outcome = await ReceiptPipeline(UnavailableExtractionProvider()).analyze(document("호텔.png", "image/png"))

    assert outcome.simulated is True
    assert outcome.receipts[0].type == "lodging_receipt"


@pytest.mark.asyncio
async def test_unparseable_answer_is_reported_not_raised():
    raw = "영수증이 아닌 것 같습니다. " * 60
    outcome = await ReceiptPipeline(MockExtractionProvider(raw)).analyze(document())

    assert not outcome.ok
    assert outcome.error == "unparseable_response"
    assert outcome.raw_excerpt == raw[:500]
    assert outcome.receipts == []
    assert outcome.to_dict()["raw"] == raw[:500]


@pytest.mark.asyncio
async def test_unsupported_media_type_is_rejected_before_extraction():
    provider = FailingProvider()

    outcome = await ReceiptPipeline(provider).analyze(document("notes.txt", "text/plain"))

    assert outcome.error == "unsupported_document"
    assert provider.calls == 0


@pytest.mark.parametrize(
    "filename, kind",
    [
        ("코레일_영수증.jpg", "rail_receipt"),
        ("Hotel-invoice.pdf", "lodging_receipt"),
        ("하이패스.png", "toll_receipt"),
        ("편의점.jpg", "local_receipt"),
        ("naver_map.png", "map_capture"),
        ("IMG_0001.jpg", "unknown"),
    ],
)
def test_guess_kind_from_filename(filename, kind):
    assert guess_kind(filename) == kind


def test_simulated_receipt_has_no_invented_values():
    receipt = simulate_from_filename("톨게이트.jpg")

    assert receipt.type == "toll_receipt"
    assert receipt.data.amount == 0
    assert receipt.is_proof is True
    assert receipt.to_attachment().simulated is True
