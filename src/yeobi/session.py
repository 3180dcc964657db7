from __future__ import annotations

import asyncio
import inspect
from dataclasses import dataclass, field, fields
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence

from .core import PAY_METHODS, TRIP_TYPES, Leg, Role, Trip, new_id
from .grouping import DEFAULT_ORIGIN, TripGrouper, split_by_confidence
from .ledger import Ledger, LedgerBuilder
from .logging import get_logger, log_event, reset_session_context, set_session_context
from .models import Receipt
from .policy import PolicyTables
from .rules import ReimbursementCalculator

logger = get_logger(__name__)

ProgressCallback = Callable[[int, int, str], Any]

_READ_ONLY_FIELDS = frozenset({"trip_id"})


class TripNotFoundError(KeyError):
    """No trip with the given id exists in the session."""


class AnalysisResult(Protocol):
    file_name: str
    receipts: List[Receipt]
    error: Optional[str]
    raw_excerpt: Optional[str]
    warning: Optional[str]


class ReceiptAnalyzer(Protocol):
    async def analyze(self, document: Any) -> AnalysisResult:
        ...


@dataclass(frozen=True)
class FileFailure:
    file_name: str
    error: str
    raw_excerpt: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"fileName": self.file_name, "error": self.error, "raw": self.raw_excerpt}


@dataclass
class BulkImportResult:
    trips: List[Trip] = field(default_factory=list)
    needs_review: List[Receipt] = field(default_factory=list)
    failures: List[FileFailure] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "trips": [trip.to_dict() for trip in self.trips],
            "needsReview": [receipt.to_dict() for receipt in self.needs_review],
            "failures": [failure.to_dict() for failure in self.failures],
            "warnings": list(self.warnings),
        }


class SettlementSession:
    """In-memory trip list for one settlement, with every mutation serialized."""

    def __init__(
        self,
        analyzer: ReceiptAnalyzer,
        *,
        policy: Optional[PolicyTables] = None,
        origin_name: str = DEFAULT_ORIGIN,
        clarification_threshold: float = 0.8,
        session_id: Optional[str] = None,
    ) -> None:
        self.session_id = session_id or new_id()
        self.analyzer = analyzer
        self.clarification_threshold = clarification_threshold
        self.grouper = TripGrouper(policy, origin_name=origin_name)
        self.builder = LedgerBuilder(ReimbursementCalculator(policy), origin_name=origin_name)
        self.trips: List[Trip] = [Trip()]
        self._lock = asyncio.Lock()

    def get_trip(self, trip_id: str) -> Trip:
        for trip in self.trips:
            if trip.trip_id == trip_id:
                return trip
        raise TripNotFoundError(trip_id)

    async def add_trip(self, trip: Optional[Trip] = None) -> Trip:
        async with self._lock:
            trip = trip or Trip()
            self.trips.append(trip)
            log_event(logger, "session.trip.added", session_id=self.session_id, trip_id=trip.trip_id)
            return trip

    async def update_trip(self, trip_id: str, **changes: Any) -> Trip:
        known = {f.name for f in fields(Trip)} - _READ_ONLY_FIELDS
        unknown = sorted(set(changes) - known)
        if unknown:
            raise ValueError(f"Unknown trip fields: {unknown}")
        if "trip_type" in changes and changes["trip_type"] not in TRIP_TYPES:
            raise ValueError(f"Unknown trip type: {changes['trip_type']}")
        for key in ("fare_pay_method", "lodging_pay_method"):
            if key in changes and changes[key] not in PAY_METHODS:
                raise ValueError(f"Unknown payment method for {key}: {changes[key]}")

        async with self._lock:
            trip = self.get_trip(trip_id)
            for key, value in changes.items():
                setattr(trip, key, value)
            if "destination" in changes and "destination_metro" not in changes:
                trip.destination_metro = self.grouper.matcher.detect_metro(trip.destination)
            if not trip.legs:
                trip.legs = [Leg()]
            log_event(logger, "session.trip.updated", session_id=self.session_id, trip_id=trip_id, fields=sorted(changes))
            return trip

    async def remove_trip(self, trip_id: str) -> bool:
        """Remove a trip; the last remaining trip is kept and ``False`` returned."""
        async with self._lock:
            trip = self.get_trip(trip_id)
            if len(self.trips) == 1:
                return False
            self.trips.remove(trip)
            log_event(logger, "session.trip.removed", session_id=self.session_id, trip_id=trip_id)
            return True

    async def attach_file(self, trip_id: str, document: Any) -> AnalysisResult:
        self.get_trip(trip_id)
        outcome = await self.analyzer.analyze(document)
        async with self._lock:
            trip = self.get_trip(trip_id)
            for receipt in outcome.receipts:
                self.grouper.attach(trip, receipt)
        return outcome

    async def bulk_import(
        self, documents: Sequence[Any], progress: Optional[ProgressCallback] = None
    ) -> BulkImportResult:
        """Analyze files one at a time, then fold the confident receipts into new trips.

        A file that cannot be analyzed is reported in ``failures`` and does not
        stop the batch. Receipts below the clarification threshold are left out
        of grouping and returned in ``needs_review``.
        """
        token = set_session_context(self.session_id)
        try:
            return await self._bulk_import(documents, progress)
        finally:
            reset_session_context(token)

    async def _bulk_import(
        self, documents: Sequence[Any], progress: Optional[ProgressCallback]
    ) -> BulkImportResult:
        result = BulkImportResult()
        receipts: List[Receipt] = []
        total = len(documents)
        for done, document in enumerate(documents, start=1):
            outcome = await self.analyzer.analyze(document)
            if outcome.error:
                result.failures.append(FileFailure(outcome.file_name, outcome.error, outcome.raw_excerpt))
            else:
                receipts.extend(outcome.receipts)
            if outcome.warning:
                result.warnings.append(f"{outcome.file_name}: {outcome.warning}")
            if progress is not None:
                ack = progress(done, total, outcome.file_name)
                if inspect.isawaitable(ack):
                    await ack

        confident, result.needs_review = split_by_confidence(receipts, self.clarification_threshold)
        result.trips = self.grouper.group(confident) if confident else []

        async with self._lock:
            if result.trips and self._is_pristine():
                self.trips = list(result.trips)
            else:
                self.trips.extend(result.trips)

        log_event(
            logger,
            "session.bulk.done",
            files=total,
            trips=len(result.trips),
            needs_review=len(result.needs_review),
            failures=len(result.failures),
        )
        return result

    async def apply_revision(self, receipt: Receipt) -> Trip:
        """Fold a clarified receipt into the trip with its date, or a new auto trip."""
        async with self._lock:
            for trip in self.trips:
                if trip.date == receipt.date:
                    return self.grouper.attach(trip, receipt)
            trip = self.grouper.group([receipt])[0]
            if self._is_pristine():
                self.trips = [trip]
            else:
                self.trips.append(trip)
            return trip

    def ledger(self, role: Role = "staff") -> Ledger:
        return self.builder.build(self.trips, role)

    def _is_pristine(self) -> bool:
        if len(self.trips) != 1:
            return False
        trip = self.trips[0]
        return (
            not trip.auto_generated
            and not trip.attachments
            and not trip.date
            and not trip.destination
            and all(leg.is_blank() for leg in trip.legs)
        )
