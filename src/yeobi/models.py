from __future__ import annotations

import math
import re
from dataclasses import dataclass, field, fields
from datetime import date as date_type
from typing import Any, Callable, ClassVar, Dict, Literal, Optional, Type

from .core import Attachment

ReceiptKind = Literal[
    "rail_receipt",
    "lodging_receipt",
    "toll_receipt",
    "local_receipt",
    "map_capture",
    "unknown",
]

PROOF_KINDS = ("rail_receipt", "toll_receipt", "lodging_receipt", "local_receipt")

DEFAULT_CATEGORY_LABELS: Dict[str, str] = {
    "rail_receipt": "철도영수증",
    "lodging_receipt": "숙박영수증",
    "toll_receipt": "톨게이트영수증",
    "local_receipt": "현지영수증",
    "map_capture": "지도캡처",
    "unknown": "기타첨부",
}

_DATE_RE = re.compile(r"(\d{4})\s*[-./년]\s*(\d{1,2})\s*[-./월]\s*(\d{1,2})")


def coerce_text(value: Any) -> str:
    if value is None or isinstance(value, (dict, list)):
        return ""
    return str(value).strip()


def coerce_amount(value: Any) -> int:
    """Whole-won amount from ints, floats or strings such as "23,700원"; 0 when unreadable."""
    if isinstance(value, bool) or value is None:
        return 0
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(round(value)) if math.isfinite(value) else 0
    digits = re.sub(r"[^\d.\-]", "", str(value))
    try:
        number = float(digits)
    except ValueError:
        return 0
    return int(round(number)) if math.isfinite(number) else 0


def coerce_number(value: Any) -> float:
    if isinstance(value, bool) or value is None:
        return 0.0
    raw = value if isinstance(value, (int, float)) else re.sub(r"[^\d.\-]", "", str(value))
    try:
        number = float(raw)
    except (OverflowError, ValueError):
        return 0.0
    return number if math.isfinite(number) else 0.0


def coerce_date(value: Any) -> str:
    """ISO date string, or "" when the value is empty or not a real calendar date."""
    text = coerce_text(value)
    match = _DATE_RE.search(text)
    if not match:
        return ""
    year, month, day = (int(part) for part in match.groups())
    try:
        return date_type(year, month, day).isoformat()
    except ValueError:
        return ""


def coerce_last4(value: Any) -> str:
    digits = re.sub(r"\D", "", coerce_text(value))
    return digits[-4:]


def coerce_vehicle_type(value: Any) -> Optional[str]:
    text = coerce_text(value)
    if text in ("personal_car", "official_car"):
        return text
    return None


def _wire(name: str, coerce: Callable[[Any], Any], default: Any) -> Any:
    return field(default=default, metadata={"wire": name, "coerce": coerce})


@dataclass(frozen=True)
class ReceiptData:
    """Base of the per-kind payloads; subclasses declare wire names and coercions per field."""

    kind: ClassVar[str] = "unknown"

    @classmethod
    def from_raw(cls, raw: Any) -> "ReceiptData":
        values = raw if isinstance(raw, dict) else {}
        kwargs = {}
        for f in fields(cls):
            wire = f.metadata["wire"]
            if wire in values:
                kwargs[f.name] = f.metadata["coerce"](values[wire])
        return cls(**kwargs)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if value is None:
                continue
            out[f.metadata["wire"]] = value
        return out


@dataclass(frozen=True)
class RailReceiptData(ReceiptData):
    kind: ClassVar[str] = "rail_receipt"

    date: str = _wire("date", coerce_date, "")
    from_: str = _wire("from", coerce_text, "")
    to: str = _wire("to", coerce_text, "")
    train_no: str = _wire("trainNo", coerce_text, "")
    seat_class: str = _wire("seatClass", coerce_text, "")
    amount: int = _wire("amount", coerce_amount, 0)
    card_last4: str = _wire("cardLast4", coerce_last4, "")
    approval_last4: str = _wire("approvalLast4", coerce_last4, "")


@dataclass(frozen=True)
class LodgingReceiptData(ReceiptData):
    kind: ClassVar[str] = "lodging_receipt"

    hotel_name: str = _wire("hotelName", coerce_text, "")
    date: str = _wire("date", coerce_date, "")
    amount: int = _wire("amount", coerce_amount, 0)
    address: str = _wire("address", coerce_text, "")
    card_last4: str = _wire("cardLast4", coerce_last4, "")


@dataclass(frozen=True)
class TollReceiptData(ReceiptData):
    kind: ClassVar[str] = "toll_receipt"

    toll_gate: str = _wire("tollGate", coerce_text, "")
    amount: int = _wire("amount", coerce_amount, 0)
    date: str = _wire("date", coerce_date, "")
    card_last4: str = _wire("cardLast4", coerce_last4, "")
    vehicle_type: Optional[str] = _wire("vehicleType", coerce_vehicle_type, None)


@dataclass(frozen=True)
class LocalReceiptData(ReceiptData):
    kind: ClassVar[str] = "local_receipt"

    store_name: str = _wire("storeName", coerce_text, "")
    amount: int = _wire("amount", coerce_amount, 0)
    date: str = _wire("date", coerce_date, "")
    address: str = _wire("address", coerce_text, "")
    card_last4: str = _wire("cardLast4", coerce_last4, "")


@dataclass(frozen=True)
class MapCaptureData(ReceiptData):
    kind: ClassVar[str] = "map_capture"

    from_: str = _wire("from", coerce_text, "")
    to: str = _wire("to", coerce_text, "")
    distance_km: float = _wire("distanceKm", coerce_number, 0.0)
    estimated_minutes: float = _wire("estimatedMinutes", coerce_number, 0.0)


@dataclass(frozen=True)
class UnknownData(ReceiptData):
    kind: ClassVar[str] = "unknown"


RECEIPT_DATA_TYPES: Dict[str, Type[ReceiptData]] = {
    cls.kind: cls
    for cls in (
        RailReceiptData,
        LodgingReceiptData,
        TollReceiptData,
        LocalReceiptData,
        MapCaptureData,
        UnknownData,
    )
}


@dataclass
class Receipt:
    """A normalized extraction result for one receipt found in an uploaded file."""

    type: ReceiptKind
    category: str
    data: ReceiptData
    proof_metro: Optional[str] = None
    is_proof: bool = False
    confidence: float = 0.5
    expense_category: str = "local-proof"
    questions: list[str] = field(default_factory=list)
    file_name: str = ""
    simulated: bool = False

    @property
    def date(self) -> str:
        return getattr(self.data, "date", "")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "category": self.category,
            "data": self.data.to_dict(),
            "proofMetro": self.proof_metro,
            "isProof": self.is_proof,
            "confidence": self.confidence,
            "expenseCategory": self.expense_category,
            "questions": list(self.questions),
            "fileName": self.file_name,
            "simulated": self.simulated,
        }

    def to_attachment(self) -> Attachment:
        return Attachment(
            file_name=self.file_name,
            category=self.category,
            type=self.type,
            proof_metro=self.proof_metro,
            is_proof=self.is_proof,
            confidence=self.confidence,
            expense_category=self.expense_category,
            simulated=self.simulated,
        )
