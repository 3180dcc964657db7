from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal, ROUND_DOWN, ROUND_HALF_UP
from typing import List, Optional

from .core import Leg, Role, Trip
from .policy import DEFAULT_POLICY, PolicyTables


TRANSPORT_LABELS = {
    "rail": "철도",
    "personal_car": "자가차량",
    "official_car": "공용차량",
    "public_transit": "대중교통",
}


@dataclass(frozen=True)
class LodgingResult:
    claimed: int
    amount: int
    cap: Optional[int]
    over_cap: bool


@dataclass
class TripCalculation:
    trip_id: str
    flat_rate: int = 0
    fares: List[int] = field(default_factory=list)
    daily: int = 0
    meal: int = 0
    lodging: Optional[LodgingResult] = None
    calculation_steps: List[str] = field(default_factory=list)

    @property
    def fare_total(self) -> int:
        return sum(self.fares)

    @property
    def lodging_amount(self) -> int:
        return self.lodging.amount if self.lodging else 0

    @property
    def total(self) -> int:
        if self.flat_rate:
            return self.flat_rate
        return self.fare_total + self.daily + self.meal + self.lodging_amount


class ReimbursementCalculator:
    """Table-driven fare, allowance and lodging calculation with traceable steps."""

    def __init__(self, policy: Optional[PolicyTables] = None) -> None:
        self.policy = policy or DEFAULT_POLICY

    @property
    def rule_version(self) -> str:
        return self.policy.rule_version

    def leg_fare(self, leg: Leg) -> int:
        if leg.transport == "personal_car":
            fuel = _won(Decimal(str(leg.km or 0)) * self.policy.fuel_rate_per_km)
            return fuel + (leg.toll_fee or 0)
        if leg.transport == "official_car":
            return (leg.fuel_fee or 0) + (leg.toll_fee or 0)
        if leg.transport == "rail":
            return leg.amount or 0
        if leg.transport == "public_transit":
            # Covered by the daily allowance.
            return 0
        raise ValueError(f"Unknown transport: {leg.transport}")

    def daily_allowance(self, trip: Trip) -> int:
        if trip.no_daily:
            return 0
        if trip.has_official_car():
            return self.policy.daily_allowance_official_car
        return self.policy.daily_allowance

    def meal_subsidy(self, trip: Trip) -> int:
        deductions = self.policy.meal_deduction * trip.meals_provided()
        amount = max(0, self.policy.meal_allowance - deductions)
        unit = self.policy.meal_rounding_unit or 1
        return _floor_to_unit(amount, unit)

    def lodging(self, trip: Trip, role: Role) -> LodgingResult:
        if trip.no_lodging:
            return LodgingResult(claimed=0, amount=0, cap=None, over_cap=False)
        claimed = trip.lodging_amount or 0
        if role == "executive":
            return LodgingResult(claimed=claimed, amount=claimed, cap=None, over_cap=False)
        cap = self.policy.lodging_cap(trip.lodging_region)
        return LodgingResult(claimed=claimed, amount=min(claimed, cap), cap=cap, over_cap=claimed > cap)

    def flat_rate(self, trip: Trip) -> int:
        if trip.trip_type == "domestic_short":
            return self.policy.domestic_short
        if trip.trip_type == "domestic_long":
            return self.policy.domestic_long
        return 0

    def calculate(self, trip: Trip, role: Role) -> TripCalculation:
        result = TripCalculation(trip_id=trip.trip_id)
        steps = result.calculation_steps
        steps.append(f"Applying rule version: {self.rule_version}")

        if trip.is_flat_rate:
            result.flat_rate = self.flat_rate(trip)
            steps.append(f"Trip {trip.trip_id}: {trip.trip_type} flat rate {result.flat_rate}.")
            return result

        for index, leg in enumerate(trip.legs, start=1):
            fare = self.leg_fare(leg)
            result.fares.append(fare)
            steps.append(f"Leg {index} ({leg.transport}): fare {fare}.")

        result.daily = self.daily_allowance(trip)
        if trip.no_daily:
            steps.append("Daily allowance suppressed.")
        elif trip.has_official_car():
            steps.append(f"Official vehicle used, half daily allowance {result.daily}.")
        else:
            steps.append(f"Daily allowance {result.daily}.")

        result.meal = self.meal_subsidy(trip)
        steps.append(
            f"Meal subsidy {self.policy.meal_allowance} - {trip.meals_provided()} x "
            f"{self.policy.meal_deduction} = {result.meal}."
        )

        result.lodging = self.lodging(trip, role)
        if result.lodging.over_cap:
            steps.append(
                f"Lodging claim {result.lodging.claimed} capped at {result.lodging.cap} "
                f"({trip.lodging_region})."
            )
        elif not trip.no_lodging:
            steps.append(f"Lodging {result.lodging.amount}.")

        steps.append(f"Trip {trip.trip_id} subtotal = {result.total}.")
        return result


def _won(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _floor_to_unit(amount: int, unit: int) -> int:
    return int((Decimal(amount) / unit).quantize(Decimal("1"), rounding=ROUND_DOWN)) * unit


__all__ = [
    "LodgingResult",
    "ReimbursementCalculator",
    "TRANSPORT_LABELS",
    "TripCalculation",
]
