from __future__ import annotations

from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .core import Leg, Trip
from .logging import get_logger, log_event
from .models import (
    LodgingReceiptData,
    MapCaptureData,
    RailReceiptData,
    Receipt,
    TollReceiptData,
)
from .policy import DEFAULT_POLICY, PolicyTables
from .regions import RegionalMatcher

logger = get_logger(__name__)

DEFAULT_ORIGIN = "식품안전정보원"


def split_by_confidence(
    receipts: Iterable[Receipt], threshold: float
) -> Tuple[List[Receipt], List[Receipt]]:
    confident: List[Receipt] = []
    needs_review: List[Receipt] = []
    for receipt in receipts:
        (confident if receipt.confidence >= threshold else needs_review).append(receipt)
    return confident, needs_review


class TripGrouper:
    """Folds normalized receipts into trips, either one at a time or as a dated batch."""

    def __init__(
        self,
        policy: Optional[PolicyTables] = None,
        matcher: Optional[RegionalMatcher] = None,
        origin_name: str = DEFAULT_ORIGIN,
    ) -> None:
        self.policy = policy or DEFAULT_POLICY
        self.matcher = matcher or RegionalMatcher(self.policy)
        self.origin_name = origin_name
        self._hubs = frozenset(self.policy.hub_stations)

    # -----------------------------
    # Bulk path
    # -----------------------------

    def group(self, receipts: Sequence[Receipt]) -> List[Trip]:
        groups: Dict[str, List[Receipt]] = {}
        for receipt in receipts:
            # Receipts without a date share one unknown-date group.
            groups.setdefault(receipt.date or "", []).append(receipt)

        trips = [self._trip_for_group(day, members) for day, members in sorted(groups.items())]
        log_event(logger, "grouping.done", receipts=len(receipts), trips=len(trips))
        return trips

    def _trip_for_group(self, day: str, receipts: List[Receipt]) -> Trip:
        destination, destination_metro = self.infer_destination(receipts)
        trip = Trip(
            date=day,
            destination=destination,
            destination_metro=destination_metro,
            legs=[],
            no_daily=True,
            no_lodging=True,
            auto_generated=True,
        )

        map_captures: List[MapCaptureData] = []
        for receipt in receipts:
            data = receipt.data
            if isinstance(data, RailReceiptData):
                trip.legs.append(self._rail_leg(data))
            elif isinstance(data, LodgingReceiptData):
                if data.date == day:
                    self._apply_lodging(trip, data)
                else:
                    log_event(
                        logger,
                        "grouping.lodging.date_mismatch",
                        file_name=receipt.file_name,
                        receipt_date=data.date,
                        trip_date=day,
                    )
            elif isinstance(data, TollReceiptData):
                self._apply_toll(trip, data)
            elif isinstance(data, MapCaptureData):
                map_captures.append(data)
            trip.add_attachment(receipt.to_attachment())

        for data in map_captures:
            self._apply_map(trip, data)

        if not trip.legs:
            trip.legs.append(Leg(from_=self.origin_name, to=destination))
        return trip

    def infer_destination(self, receipts: Sequence[Receipt]) -> Tuple[str, Optional[str]]:
        rails = [r.data for r in receipts if isinstance(r.data, RailReceiptData)]
        proof_metros = [
            r.proof_metro
            for r in receipts
            if r.type in ("lodging_receipt", "local_receipt") and r.proof_metro
        ]

        candidates = [data.to for data in rails if data.to and not self.is_hub(data.to)]
        candidates += [data.from_ for data in rails if data.from_ and not self.is_hub(data.from_)]
        if candidates:
            destination = candidates[0]
        elif proof_metros:
            destination = proof_metros[0]
        else:
            destination = next((data.to for data in rails if data.to), "")

        metro = self.matcher.detect_metro(destination)
        if metro is None and proof_metros:
            metro = proof_metros[0]
        return destination, metro

    def is_hub(self, station: str) -> bool:
        name = station.strip()
        if name.endswith("역"):
            name = name[:-1]
        return name in self._hubs

    # -----------------------------
    # Single-file path
    # -----------------------------

    def attach(self, trip: Trip, receipt: Receipt) -> Trip:
        """Merge one receipt into an existing trip in place."""
        trip.add_attachment(receipt.to_attachment())
        data = receipt.data

        if isinstance(data, RailReceiptData):
            leg = self._rail_leg(data)
            if len(trip.legs) == 1 and self._is_placeholder(trip.legs[0]):
                leg.leg_id = trip.legs[0].leg_id
                trip.legs[0] = leg
            else:
                trip.legs.append(leg)
            if not trip.destination and data.to and not self.is_hub(data.to):
                trip.destination = data.to
                trip.destination_metro = self.matcher.detect_metro(data.to)
        elif isinstance(data, LodgingReceiptData):
            self._apply_lodging(trip, data)
        elif isinstance(data, TollReceiptData):
            self._apply_toll(trip, data)
        elif isinstance(data, MapCaptureData):
            self._apply_map(trip, data)

        log_event(logger, "grouping.attach", trip_id=trip.trip_id, kind=receipt.type, file_name=receipt.file_name)
        return trip

    def _is_placeholder(self, leg: Leg) -> bool:
        return (
            not leg.to
            and not leg.amount
            and not leg.km
            and not leg.toll_fee
            and leg.from_ in ("", self.origin_name)
        )

    # -----------------------------
    # Field merges shared by both paths
    # -----------------------------

    @staticmethod
    def _rail_leg(data: RailReceiptData) -> Leg:
        return Leg(
            from_=data.from_,
            to=data.to,
            transport="rail",
            amount=data.amount,
            train_no=data.train_no,
            card_last4=data.card_last4,
            approval_last4=data.approval_last4,
        )

    def _apply_lodging(self, trip: Trip, data: LodgingReceiptData) -> None:
        trip.lodging_amount = data.amount or trip.lodging_amount
        trip.no_lodging = False
        metro = self.matcher.detect_metro(data.address)
        if metro:
            trip.lodging_region = self.matcher.lodging_region(metro)

    def _apply_toll(self, trip: Trip, data: TollReceiptData) -> None:
        leg = trip.vehicle_leg()
        if leg is not None:
            leg.toll_fee = (leg.toll_fee or 0) + data.amount
            return
        trip.legs.append(
            Leg(
                from_=self.origin_name,
                to=trip.destination,
                transport=data.vehicle_type or "personal_car",
                toll_fee=data.amount,
            )
        )

    @staticmethod
    def _apply_map(trip: Trip, data: MapCaptureData) -> None:
        leg = trip.vehicle_leg("personal_car")
        if leg is None:
            return
        leg.km = data.distance_km or leg.km
        leg.from_ = data.from_ or leg.from_
        leg.to = data.to or leg.to
