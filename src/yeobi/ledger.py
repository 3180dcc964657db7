from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from .core import Leg, Role, ROLES, Trip
from .logging import get_logger, log_event
from .policy import PolicyTables
from .rules import ReimbursementCalculator, TRANSPORT_LABELS, TripCalculation

logger = get_logger(__name__)

TRIP_TYPE_LABELS = {
    "outside": "관외",
    "domestic_long": "관내(4h이상)",
    "domestic_short": "관내(4h미만)",
}

_DIGITS = ("", "일", "이", "삼", "사", "오", "육", "칠", "팔", "구")
_PLACES = ((1000, "천"), (100, "백"), (10, "십"), (1, ""))
_GROUPS = ((10**12, "조"), (10**8, "억"), (10**4, "만"), (1, ""))


def amount_to_korean(amount: int) -> str:
    """Korean numerals with 만/억 grouping, e.g. 170000 -> 일십칠만."""
    if amount <= 0:
        return "영"
    words: List[str] = []
    for size, unit in _GROUPS:
        chunk, amount = divmod(amount, size)
        if not chunk:
            continue
        part = ""
        for place, name in _PLACES:
            digit, chunk = divmod(chunk, place)
            if digit:
                part += _DIGITS[digit] + name
        words.append(part + unit)
    return "".join(words)


def total_in_words(total: int) -> str:
    return f"금 {total:,}원정 ({amount_to_korean(total)}원)"


@dataclass
class LedgerRow:
    trip_index: int
    trip_id: str
    leg_index: int
    date: str
    trip_type: str
    route: str
    transport: str
    daily: int = 0
    meal: int = 0
    fare: int = 0
    lodging: int = 0
    fixed: int = 0
    corp_card: int = 0
    personal: int = 0
    proof_missing: bool = False
    advisories: List[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.daily + self.meal + self.fare + self.lodging + self.fixed

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["total"] = self.total
        return payload


@dataclass
class LedgerTotals:
    daily: int = 0
    meal: int = 0
    fare: int = 0
    lodging: int = 0
    fixed: int = 0
    total: int = 0
    corp_card: int = 0
    personal: int = 0

    def add(self, row: LedgerRow) -> None:
        self.daily += row.daily
        self.meal += row.meal
        self.fare += row.fare
        self.lodging += row.lodging
        self.fixed += row.fixed
        self.total += row.total
        self.corp_card += row.corp_card
        self.personal += row.personal


@dataclass(frozen=True)
class AttachmentEntry:
    trip_index: int
    file_name: str
    category: str


@dataclass
class Ledger:
    role: Role
    rule_version: str
    rows: List[LedgerRow]
    totals: LedgerTotals
    total_in_words: str
    attachments: List[AttachmentEntry] = field(default_factory=list)

    @property
    def proof_missing_trips(self) -> List[int]:
        return sorted({row.trip_index for row in self.rows if row.proof_missing})

    def to_dict(self) -> Dict[str, Any]:
        return {
            "role": self.role,
            "ruleVersion": self.rule_version,
            "rows": [row.to_dict() for row in self.rows],
            "totals": asdict(self.totals),
            "totalInWords": self.total_in_words,
            "attachments": [asdict(entry) for entry in self.attachments],
        }


class LedgerBuilder:
    """Walks the trip list and produces the reimbursement table.

    Outside trips yield one row per leg; the first leg carries the trip-level
    daily allowance, meal subsidy and lodging. Flat-rate trips yield one row.
    """

    def __init__(
        self,
        calculator: Optional[ReimbursementCalculator] = None,
        origin_name: str = "식품안전정보원",
    ) -> None:
        self.calculator = calculator or ReimbursementCalculator()
        self.origin_name = origin_name

    def build(self, trips: Sequence[Trip], role: Role = "staff") -> Ledger:
        if role not in ROLES:
            raise ValueError(f"Unknown role: {role}")

        rows: List[LedgerRow] = []
        attachments: List[AttachmentEntry] = []
        for index, trip in enumerate(trips, start=1):
            calculation = self.calculator.calculate(trip, role)
            if trip.is_flat_rate:
                rows.append(self._flat_row(index, trip, calculation))
            else:
                rows.extend(self._leg_rows(index, trip, calculation))
            attachments.extend(
                AttachmentEntry(index, attachment.file_name, attachment.category)
                for attachment in trip.attachments
            )

        totals = LedgerTotals()
        for row in rows:
            totals.add(row)

        ledger = Ledger(
            role=role,
            rule_version=self.calculator.rule_version,
            rows=rows,
            totals=totals,
            total_in_words=total_in_words(totals.total),
            attachments=attachments,
        )
        log_event(
            logger,
            "ledger.built",
            role=role,
            trips=len(trips),
            rows=len(rows),
            total=totals.total,
            proof_missing=len(ledger.proof_missing_trips),
        )
        return ledger

    def _flat_row(self, index: int, trip: Trip, calculation: TripCalculation) -> LedgerRow:
        route = f"{self.origin_name}→{trip.destination}" if trip.destination else "-"
        return LedgerRow(
            trip_index=index,
            trip_id=trip.trip_id,
            leg_index=0,
            date=trip.date,
            trip_type=TRIP_TYPE_LABELS[trip.trip_type],
            route=route,
            transport="-",
            fixed=calculation.flat_rate,
            personal=calculation.flat_rate,
        )

    def _leg_rows(self, index: int, trip: Trip, calculation: TripCalculation) -> List[LedgerRow]:
        proof_missing = not trip.has_proof()
        rows: List[LedgerRow] = []
        legs = list(zip(trip.legs, calculation.fares)) or [(Leg(), 0)]
        for leg_index, (leg, fare) in enumerate(legs):
            row = LedgerRow(
                trip_index=index,
                trip_id=trip.trip_id,
                leg_index=leg_index,
                date=trip.date,
                trip_type=TRIP_TYPE_LABELS[trip.trip_type],
                route=_route(leg),
                transport=_transport_label(leg),
                fare=fare,
                proof_missing=proof_missing,
            )
            _assign(row, fare, trip.fare_pay_method)
            if leg_index == 0:
                row.daily = calculation.daily
                row.meal = calculation.meal
                row.lodging = calculation.lodging_amount
                row.personal += calculation.daily + calculation.meal
                _assign(row, calculation.lodging_amount, trip.lodging_pay_method)
                row.advisories.extend(_advisories(trip, calculation, proof_missing))
            rows.append(row)
        return rows


def _assign(row: LedgerRow, amount: int, pay_method: str) -> None:
    if pay_method == "corp_card":
        row.corp_card += amount
    else:
        row.personal += amount


def _route(leg: Leg) -> str:
    return "→".join(part for part in (leg.from_, leg.to) if part) or "-"


def _transport_label(leg: Leg) -> str:
    if leg.transport == "rail":
        return leg.train_no or TRANSPORT_LABELS["rail"]
    if leg.transport == "personal_car":
        km = leg.km or 0
        km_text = f"{int(km)}" if float(km).is_integer() else f"{km}"
        return f"자가용({km_text}km)"
    return TRANSPORT_LABELS.get(leg.transport, leg.transport)


def _advisories(trip: Trip, calculation: TripCalculation, proof_missing: bool) -> List[str]:
    notes: List[str] = []
    if trip.has_official_car() and not trip.no_daily:
        notes.append("공용차량(일비50%)")
    lodging = calculation.lodging
    if lodging is not None and lodging.over_cap:
        notes.append(f"숙박비 상한초과({lodging.claimed:,}→{lodging.amount:,})")
    if proof_missing:
        notes.append("⚠️증빙 미확인")
    return notes


def build_ledger(
    trips: Sequence[Trip], role: Role = "staff", policy: Optional[PolicyTables] = None
) -> Ledger:
    return LedgerBuilder(ReimbursementCalculator(policy)).build(trips, role)
