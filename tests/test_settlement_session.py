import asyncio
import json

import pytest

from backend.services.receipt_pipeline import ReceiptPipeline, UploadedDocument
from yeobi.core import Trip
from yeobi.receipts import ReceiptNormalizer
from yeobi.session import SettlementSession, TripNotFoundError

ANSWERS = {
    "ktx.jpg": {
        "type": "rail_receipt",
        "data": {"date": "2025-03-05", "from": "서울", "to": "세종", "amount": 23700},
        "confidence": 0.95,
    },
    "store.jpg": {
        "type": "local_receipt",
        "data": {"date": "2025-03-05", "amount": 3500, "address": "세종특별자치시 도움6로"},
        "confidence": 0.9,
    },
    "toll.jpg": {
        "type": "toll_receipt",
        "data": {"date": "2025-03-05", "amount": 4800},
        "confidence": 0.6,
        "questions": ["자가차량인가요, 공용차량인가요?"],
    },
}


class FileNameProvider:
    """Answers with the canned JSON for the file name, or prose when unknown."""

    async def extract(self, document):
        answer = ANSWERS.get(document.filename)
        if answer is None:
            return "이 파일은 분석할 수 없습니다."
        return json.dumps(answer, ensure_ascii=False)


def upload(filename):
    return UploadedDocument(filename=filename, content_type="image/jpeg", content=b"\xff\xd8")


@pytest.fixture
def session():
    return SettlementSession(ReceiptPipeline(FileNameProvider()))


@pytest.mark.asyncio
async def test_bulk_import_groups_confident_receipts_and_reports_the_rest(session):
    progress = []

    result = await session.bulk_import(
        [upload("ktx.jpg"), upload("store.jpg"), upload("toll.jpg"), upload("broken.jpg")],
        progress=lambda done, total, name: progress.append((done, total, name)),
    )

    assert progress == [(1, 4, "ktx.jpg"), (2, 4, "store.jpg"), (3, 4, "toll.jpg"), (4, 4, "broken.jpg")]
    assert len(result.trips) == 1
    trip = result.trips[0]
    assert trip.destination_metro == "세종"
    assert [a.file_name for a in trip.attachments] == ["ktx.jpg", "store.jpg"]
    assert [r.file_name for r in result.needs_review] == ["toll.jpg"]
    assert [(f.file_name, f.error) for f in result.failures] == [("broken.jpg", "unparseable_response")]
    # The untouched starter trip is replaced by the imported ones.
    assert session.trips == result.trips


@pytest.mark.asyncio
async def test_bulk_import_accepts_async_progress_and_keeps_existing_trips(session):
    session.trips[0].destination = "대전"
    seen = []

    async def progress(done, total, name):
        seen.append(done)

    await session.bulk_import([upload("ktx.jpg")], progress=progress)

    assert seen == [1]
    assert len(session.trips) == 2
    assert session.trips[0].destination == "대전"


@pytest.mark.asyncio
async def test_revision_is_folded_into_trip_with_same_date(session):
    result = await session.bulk_import([upload("ktx.jpg"), upload("toll.jpg")])
    pending = result.needs_review[0]
    revised = ReceiptNormalizer().normalize_item(
        {**pending.to_dict(), "data": {**pending.data.to_dict(), "vehicleType": "official_car"}, "confidence": 1.0}
    )

    trip = await session.apply_revision(revised)

    assert trip is session.trips[0]
    assert [leg.transport for leg in trip.legs] == ["rail", "official_car"]
    assert trip.legs[1].toll_fee == 4800
    assert "toll.jpg" in [a.file_name for a in trip.attachments]


@pytest.mark.asyncio
async def test_revision_for_new_date_creates_auto_trip(session):
    await session.bulk_import([upload("ktx.jpg")])
    receipt = ReceiptNormalizer().normalize_item(
        {"type": "rail_receipt", "data": {"date": "2025-03-09", "from": "서울", "to": "부산"}, "confidence": 1.0},
        "later.jpg",
    )

    trip = await session.apply_revision(receipt)

    assert len(session.trips) == 2
    assert trip.date == "2025-03-09"
    assert trip.auto_generated is True


@pytest.mark.asyncio
async def test_attach_file_fills_the_selected_trip(session):
    trip_id = session.trips[0].trip_id

    outcome = await session.attach_file(trip_id, upload("ktx.jpg"))

    trip = session.get_trip(trip_id)
    assert outcome.ok
    assert trip.legs[0].transport == "rail"
    assert trip.legs[0].amount == 23700
    assert trip.destination == "세종"


@pytest.mark.asyncio
async def test_attach_file_to_unknown_trip(session):
    with pytest.raises(TripNotFoundError):
        await session.attach_file("missing", upload("ktx.jpg"))


@pytest.mark.asyncio
async def test_last_trip_is_never_removed(session):
    only = session.trips[0].trip_id
    assert await session.remove_trip(only) is False

    extra = await session.add_trip()
    assert await session.remove_trip(extra.trip_id) is True
    assert [trip.trip_id for trip in session.trips] == [only]

    with pytest.raises(TripNotFoundError):
        await session.remove_trip("missing")


@pytest.mark.asyncio
async def test_update_trip_validates_fields(session):
    trip_id = session.trips[0].trip_id

    updated = await session.update_trip(trip_id, trip_type="domestic_short", destination="양재")
    assert updated.is_flat_rate

    with pytest.raises(ValueError):
        await session.update_trip(trip_id, nickname="x")
    with pytest.raises(ValueError):
        await session.update_trip(trip_id, trip_type="abroad")
    with pytest.raises(ValueError):
        await session.update_trip(trip_id, fare_pay_method="cash")


@pytest.mark.asyncio
async def test_concurrent_mutations_are_serialized(session):
    await asyncio.gather(*(session.add_trip(Trip(destination=f"trip-{i}")) for i in range(10)))

    assert len(session.trips) == 11
    assert len({trip.trip_id for trip in session.trips}) == 11


@pytest.mark.asyncio
async def test_session_ledger_uses_current_trips(session):
    await session.bulk_import([upload("ktx.jpg"), upload("store.jpg")])

    ledger = session.ledger("staff")

    # Auto trips start without daily allowance or lodging.
    assert ledger.totals.total == 23700 + 25000
    assert ledger.proof_missing_trips == []


class RawTextProvider:
    def __init__(self, answers):
        self.answers = answers

    async def extract(self, document):
        return self.answers[document.filename]


@pytest.mark.asyncio
async def test_malformed_item_does_not_stop_the_batch():
    session = SettlementSession(
        ReceiptPipeline(
            RawTextProvider(
                {
                    "bad.jpg": '{"type": {"k": 1}, "data": {"amount": NaN}}',
                    "ktx.jpg": json.dumps(ANSWERS["ktx.jpg"], ensure_ascii=False),
                }
            )
        )
    )

    result = await session.bulk_import([upload("bad.jpg"), upload("ktx.jpg")])

    assert result.failures == []
    assert len(result.trips) == 1
    assert result.trips[0].legs[0].amount == 23700
    assert [(r.file_name, r.type) for r in result.needs_review] == [("bad.jpg", "unknown")]


@pytest.mark.asyncio
async def test_changing_destination_recomputes_region(session):
    trip_id = session.trips[0].trip_id

    trip = await session.update_trip(trip_id, destination="부산역")
    assert trip.destination_metro == "부산"

    trip = await session.update_trip(trip_id, destination="세종청사", destination_metro="세종")
    assert trip.destination_metro == "세종"
