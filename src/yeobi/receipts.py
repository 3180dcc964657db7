"""Receipt normalization.

Turns the free-text answer of the extraction model into a uniform list of
``Receipt`` records:
- recovers a JSON value from fenced, bare or truncated responses
- flattens single objects, arrays and numerically keyed objects into item order
- derives proof eligibility, proof region, expense category and confidence
"""

from __future__ import annotations

import json
import math
import re
from typing import Any, Callable, Iterator, List, Optional, Tuple

from .logging import get_logger, log_event
from .models import (
    DEFAULT_CATEGORY_LABELS,
    PROOF_KINDS,
    RECEIPT_DATA_TYPES,
    Receipt,
    coerce_text,
)
from .regions import RegionalMatcher

logger = get_logger(__name__)

RAW_EXCERPT_CHARS = 500
DEFAULT_CONFIDENCE = 0.5

EXPENSE_CATEGORY_ALIASES = {
    "transport": "transport",
    "교통비": "transport",
    "lodging": "lodging",
    "숙박비": "lodging",
    "local-proof": "local-proof",
    "현지인증": "local-proof",
}

_FENCED_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```", re.IGNORECASE)
_OPEN_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*)$", re.IGNORECASE)


class UnparseableResponseError(ValueError):
    """No JSON value could be recovered from a model response."""

    code = "unparseable_response"

    def __init__(self, raw_text: str, file_name: str = "") -> None:
        self.raw_excerpt = (raw_text or "")[:RAW_EXCERPT_CHARS]
        self.file_name = file_name
        super().__init__(f"Could not recover JSON from model response for '{file_name or '-'}'")


# -----------------------------
# JSON recovery
# -----------------------------


def _loads(candidate: Optional[str]) -> Any:
    if candidate is None:
        return None
    candidate = candidate.strip()
    if not candidate:
        return None
    try:
        value = json.loads(candidate)
    except ValueError:
        return None
    return value if isinstance(value, (dict, list)) else None


def _scan(text: str, start: int) -> Iterator[Tuple[int, str]]:
    """Yield (index, char) for structural characters outside JSON strings."""
    in_string = False
    escaped = False
    for index in range(start, len(text)):
        char = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char in "{}[]":
            yield index, char


def _balanced_literal(text: str, opener: str) -> Optional[str]:
    closer = "]" if opener == "[" else "}"
    start = text.find(opener)
    if start < 0:
        return None
    depth = 0
    for index, char in _scan(text, start):
        if char == opener:
            depth += 1
        elif char == closer:
            depth -= 1
            if depth == 0:
                return text[start : index + 1]
    return None


def _complete_objects(text: str) -> Optional[List[Any]]:
    """Collect every syntactically complete top-level object, dropping a truncated tail."""
    start = text.find("[")
    if start < 0:
        start = text.find("{")
    if start < 0:
        return None

    objects: List[Any] = []
    depth = 0
    object_start = -1
    for index, char in _scan(text, start):
        if char == "{":
            if depth == 0:
                object_start = index
            depth += 1
        elif char == "}" and depth > 0:
            depth -= 1
            if depth == 0:
                parsed = _loads(text[object_start : index + 1])
                if isinstance(parsed, dict):
                    objects.append(parsed)
    return objects or None


def _first_object(text: str) -> Any:
    array_start = text.find("[")
    object_start = text.find("{")
    if 0 <= array_start < object_start:
        # Objects inside an unterminated array are left to the recovery pass.
        return None
    return _loads(_balanced_literal(text, "{"))


def _fenced(text: str) -> Any:
    match = _FENCED_RE.search(text)
    return _loads(match.group(1)) if match else None


def _open_fence(text: str) -> Any:
    match = _OPEN_FENCE_RE.search(text)
    return _loads(match.group(1)) if match else None


_STRATEGIES: Tuple[Tuple[str, Callable[[str], Any]], ...] = (
    ("fenced", _fenced),
    ("open_fence", _open_fence),
    ("whole", _loads),
    ("array", lambda text: _loads(_balanced_literal(text, "["))),
    ("object", _first_object),
    ("recovered_objects", _complete_objects),
)


def extract_json(raw_text: str, file_name: str = "") -> Any:
    """Run the recovery strategies in order and return the first parsed dict or list."""
    text = raw_text or ""
    for name, strategy in _STRATEGIES:
        value = strategy(text)
        if value is not None:
            if name not in ("fenced", "whole"):
                log_event(logger, "receipt.normalize.recovered", strategy=name, file_name=file_name)
            return value
    log_event(logger, "receipt.normalize.unparseable", file_name=file_name, raw_chars=len(text))
    raise UnparseableResponseError(text, file_name=file_name)


def flatten_items(parsed: Any) -> List[dict]:
    if isinstance(parsed, list):
        return [item for item in parsed if isinstance(item, dict)]
    if isinstance(parsed, dict):
        if parsed and all(isinstance(key, str) and key.isdigit() for key in parsed):
            ordered = sorted(parsed.items(), key=lambda kv: int(kv[0]))
            return [value for _, value in ordered if isinstance(value, dict)]
        return [parsed]
    return []


# -----------------------------
# Item normalization
# -----------------------------


def default_expense_category(kind: str) -> str:
    if kind in ("rail_receipt", "toll_receipt"):
        return "transport"
    if kind == "lodging_receipt":
        return "lodging"
    return "local-proof"


def _confidence(value: Any) -> float:
    if value is None or isinstance(value, bool):
        return DEFAULT_CONFIDENCE
    try:
        confidence = float(value)
    except (TypeError, ValueError):
        return DEFAULT_CONFIDENCE
    if not math.isfinite(confidence):
        return DEFAULT_CONFIDENCE
    return min(1.0, max(0.0, confidence))


def _questions(value: Any) -> List[str]:
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list):
        return []
    return [text for text in (coerce_text(item) for item in value) if text]


class ReceiptNormalizer:
    def __init__(self, matcher: Optional[RegionalMatcher] = None) -> None:
        self.matcher = matcher or RegionalMatcher()

    def normalize_item(self, raw: Any, file_name: str = "") -> Receipt:
        values = raw if isinstance(raw, dict) else {}
        kind = values.get("type")
        if not isinstance(kind, str) or kind not in RECEIPT_DATA_TYPES:
            kind = "unknown"
        data = RECEIPT_DATA_TYPES[kind].from_raw(values.get("data"))

        proof_metro = None
        if kind in ("lodging_receipt", "local_receipt"):
            proof_metro = self.matcher.detect_metro(data.address)
        elif kind == "map_capture":
            proof_metro = self.matcher.detect_metro(data.to)

        supplied_category = coerce_text(values.get("expenseCategory"))
        expense_category = EXPENSE_CATEGORY_ALIASES.get(supplied_category) or default_expense_category(kind)

        return Receipt(
            type=kind,
            category=coerce_text(values.get("category")) or DEFAULT_CATEGORY_LABELS[kind],
            data=data,
            proof_metro=proof_metro,
            is_proof=kind in PROOF_KINDS,
            confidence=_confidence(values.get("confidence")),
            expense_category=expense_category,
            questions=_questions(values.get("questions")),
            file_name=coerce_text(values.get("fileName")) or file_name,
            simulated=bool(values.get("simulated")),
        )

    def normalize(self, raw_text: str, file_name: str = "") -> List[Receipt]:
        """Normalize a full model response; raises ``UnparseableResponseError``."""
        items = flatten_items(extract_json(raw_text, file_name=file_name))
        if not items:
            items = [{"type": "unknown"}]
        receipts = [self.normalize_item(item, file_name) for item in items]
        log_event(
            logger,
            "receipt.normalize.done",
            file_name=file_name,
            count=len(receipts),
            kinds=",".join(receipt.type for receipt in receipts),
        )
        return receipts


_default_normalizer = ReceiptNormalizer()


def normalize(raw_text: str, file_name: str = "") -> List[Receipt]:
    return _default_normalizer.normalize(raw_text, file_name)


def normalize_item(raw: Any, file_name: str = "") -> Receipt:
    return _default_normalizer.normalize_item(raw, file_name)
