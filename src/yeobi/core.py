from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Literal, Optional
from uuid import uuid4

from .regions import detect_metro


TripType = Literal["outside", "domestic_long", "domestic_short"]
Transport = Literal["rail", "personal_car", "official_car", "public_transit"]
PayMethod = Literal["corp_card", "personal"]
Role = Literal["staff", "executive"]

TRIP_TYPES = ("outside", "domestic_long", "domestic_short")
TRANSPORTS = ("rail", "personal_car", "official_car", "public_transit")
VEHICLE_TRANSPORTS = ("personal_car", "official_car")
PAY_METHODS = ("corp_card", "personal")
ROLES = ("staff", "executive")


def new_id() -> str:
    return uuid4().hex[:8]


def _distance(value: Any) -> float:
    km = float(value or 0)
    if not math.isfinite(km) or km < 0:
        raise ValueError(f"Invalid distance: {value}")
    return km


@dataclass
class Leg:
    from_: str = ""
    to: str = ""
    transport: Transport = "rail"
    amount: int = 0
    km: float = 0
    toll_fee: int = 0
    fuel_fee: int = 0
    train_no: str = ""
    card_last4: str = ""
    approval_last4: str = ""
    leg_id: str = field(default_factory=new_id)

    def is_blank(self) -> bool:
        return not self.from_ and not self.to

    def is_vehicle(self) -> bool:
        return self.transport in VEHICLE_TRANSPORTS

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.leg_id,
            "from": self.from_,
            "to": self.to,
            "transport": self.transport,
            "amount": self.amount,
            "km": self.km,
            "tollFee": self.toll_fee,
            "fuelFee": self.fuel_fee,
            "trainNo": self.train_no,
            "cardLast4": self.card_last4,
            "approvalLast4": self.approval_last4,
        }

    @classmethod
    def from_dict(cls, values: dict[str, Any]) -> "Leg":
        transport = values.get("transport") or "rail"
        if transport not in TRANSPORTS:
            raise ValueError(f"Unknown transport: {transport}")
        return cls(
            from_=values.get("from") or "",
            to=values.get("to") or "",
            transport=transport,
            amount=int(values.get("amount") or 0),
            km=_distance(values.get("km")),
            toll_fee=int(values.get("tollFee") or 0),
            fuel_fee=int(values.get("fuelFee") or 0),
            train_no=values.get("trainNo") or "",
            card_last4=values.get("cardLast4") or "",
            approval_last4=values.get("approvalLast4") or "",
            leg_id=values.get("id") or new_id(),
        )


@dataclass(frozen=True)
class Attachment:
    file_name: str
    category: str
    type: str
    proof_metro: Optional[str] = None
    is_proof: bool = False
    confidence: float = 0.5
    expense_category: str = "local-proof"
    simulated: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "fileName": self.file_name,
            "category": self.category,
            "type": self.type,
            "proofMetro": self.proof_metro,
            "isProof": self.is_proof,
            "confidence": self.confidence,
            "expenseCategory": self.expense_category,
            "simulated": self.simulated,
        }

    @classmethod
    def from_dict(cls, values: dict[str, Any]) -> "Attachment":
        return cls(
            file_name=values.get("fileName") or "",
            category=values.get("category") or "",
            type=values.get("type") or "unknown",
            proof_metro=values.get("proofMetro"),
            is_proof=bool(values.get("isProof")),
            confidence=float(values.get("confidence", 0.5)),
            expense_category=values.get("expenseCategory") or "local-proof",
            simulated=bool(values.get("simulated")),
        )


@dataclass
class Trip:
    date: str = ""
    trip_type: TripType = "outside"
    destination: str = ""
    destination_metro: Optional[str] = None
    legs: list[Leg] = field(default_factory=lambda: [Leg()])
    breakfast: bool = False
    lunch: bool = False
    dinner: bool = False
    no_meal: bool = False
    no_daily: bool = False
    lodging_region: str = "기타"
    lodging_amount: int = 0
    no_lodging: bool = True
    fare_pay_method: PayMethod = "corp_card"
    lodging_pay_method: PayMethod = "corp_card"
    attachments: list[Attachment] = field(default_factory=list)
    auto_generated: bool = False
    trip_id: str = field(default_factory=new_id)

    @property
    def is_flat_rate(self) -> bool:
        return self.trip_type != "outside"

    def has_official_car(self) -> bool:
        return any(leg.transport == "official_car" for leg in self.legs)

    def meals_provided(self) -> int:
        if self.no_meal:
            return 0
        return sum(1 for provided in (self.breakfast, self.lunch, self.dinner) if provided)

    def vehicle_leg(self, transport: Optional[str] = None) -> Optional[Leg]:
        for leg in self.legs:
            if transport is None and leg.is_vehicle():
                return leg
            if transport is not None and leg.transport == transport:
                return leg
        return None

    def add_attachment(self, attachment: Attachment) -> bool:
        """Append unless an attachment with the same file name is already present."""
        if any(existing.file_name == attachment.file_name for existing in self.attachments):
            return False
        self.attachments.append(attachment)
        return True

    def has_proof(self) -> bool:
        for attachment in self.attachments:
            if attachment.type in ("rail_receipt", "toll_receipt"):
                return True
            if attachment.type in ("lodging_receipt", "local_receipt"):
                if (
                    attachment.proof_metro
                    and self.destination_metro
                    and attachment.proof_metro == self.destination_metro
                ):
                    return True
        return False

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.trip_id,
            "date": self.date,
            "tripType": self.trip_type,
            "destination": self.destination,
            "destinationMetro": self.destination_metro,
            "legs": [leg.to_dict() for leg in self.legs],
            "breakfast": self.breakfast,
            "lunch": self.lunch,
            "dinner": self.dinner,
            "noMeal": self.no_meal,
            "noDaily": self.no_daily,
            "lodgingRegion": self.lodging_region,
            "lodgingAmount": self.lodging_amount,
            "noLodging": self.no_lodging,
            "farePayMethod": self.fare_pay_method,
            "lodgingPayMethod": self.lodging_pay_method,
            "attachments": [attachment.to_dict() for attachment in self.attachments],
            "autoGenerated": self.auto_generated,
        }

    @classmethod
    def from_dict(cls, values: dict[str, Any]) -> "Trip":
        trip_type = values.get("tripType") or "outside"
        if trip_type not in TRIP_TYPES:
            raise ValueError(f"Unknown trip type: {trip_type}")
        for key in ("farePayMethod", "lodgingPayMethod"):
            if (values.get(key) or "corp_card") not in PAY_METHODS:
                raise ValueError(f"Unknown payment method for {key}: {values[key]}")

        legs = [Leg.from_dict(leg) for leg in values.get("legs") or []] or [Leg()]
        destination = values.get("destination") or ""
        return cls(
            date=values.get("date") or "",
            trip_type=trip_type,
            destination=destination,
            destination_metro=values.get("destinationMetro") or detect_metro(destination),
            legs=legs,
            breakfast=bool(values.get("breakfast")),
            lunch=bool(values.get("lunch")),
            dinner=bool(values.get("dinner")),
            no_meal=bool(values.get("noMeal")),
            no_daily=bool(values.get("noDaily")),
            lodging_region=values.get("lodgingRegion") or "기타",
            lodging_amount=int(values.get("lodgingAmount") or 0),
            no_lodging=bool(values.get("noLodging", True)),
            fare_pay_method=values.get("farePayMethod") or "corp_card",
            lodging_pay_method=values.get("lodgingPayMethod") or "corp_card",
            attachments=[Attachment.from_dict(item) for item in values.get("attachments") or []],
            auto_generated=bool(values.get("autoGenerated")),
            trip_id=values.get("id") or new_id(),
        )
