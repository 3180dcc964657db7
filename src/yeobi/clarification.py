from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Literal, Optional, Protocol, Sequence

from .logging import get_logger, log_event, log_exception
from .models import Receipt
from .receipts import ReceiptNormalizer, UnparseableResponseError, extract_json

logger = get_logger(__name__)

DialogueState = Literal["needs_review", "follow_up", "resolved"]
ChatStatus = Literal["resolved", "follow_up"]

SKIP = "skip"
APPLY = "apply"

VEHICLE_QUICK_REPLIES = ("자가차량", "공용차량")
CATEGORY_QUICK_REPLIES = ("교통비", "숙박비", "현지인증")

_VEHICLE_MARKERS = ("자가", "공용", "차량", "vehicle")
_CATEGORY_MARKERS = ("카테고리", "분류", "category")


class ClarificationClosedError(RuntimeError):
    """Raised when a resolved dialogue is resumed again."""


@dataclass(frozen=True)
class ChatTurn:
    role: Literal["user", "assistant"]
    content: str

    def to_dict(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}


class ChatProvider(Protocol):
    """Conversational endpoint of the external model; returns the raw response text."""

    async def chat(self, receipt: Dict[str, Any], history: Sequence[ChatTurn], message: str) -> str:
        ...


@dataclass
class ChatOutcome:
    status: ChatStatus
    receipt: Receipt
    questions: List[str] = field(default_factory=list)
    failed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "receiptData": self.receipt.to_dict(),
            "questions": list(self.questions),
        }


@dataclass(frozen=True)
class ClarificationPrompt:
    summary: str
    questions: List[str]
    quick_replies: List[str]
    round: int


def needs_clarification(receipt: Receipt, threshold: float = 0.8) -> bool:
    return receipt.confidence < threshold


def quick_replies_for(question: str) -> List[str]:
    lowered = question.lower()
    if any(marker in lowered for marker in _VEHICLE_MARKERS):
        return list(VEHICLE_QUICK_REPLIES)
    if any(marker in lowered for marker in _CATEGORY_MARKERS):
        return list(CATEGORY_QUICK_REPLIES)
    return []


def summarize(receipt: Receipt) -> str:
    data = receipt.data.to_dict()
    parts = [receipt.category]
    for key in ("date", "from", "to", "hotelName", "storeName", "tollGate", "amount", "distanceKm"):
        value = data.get(key)
        if value not in (None, "", 0, 0.0):
            parts.append(f"{key}={value}")
    parts.append(f"confidence={receipt.confidence:.2f}")
    return " | ".join(parts)


def merge_receipt_data(base: Dict[str, Any], update: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in update.items():
        if key == "data":
            if isinstance(value, dict):
                merged["data"] = {**(merged.get("data") or {}), **value}
        else:
            merged[key] = value
    return merged


async def chat_about_receipt(
    chat: ChatProvider,
    receipt: Receipt,
    history: Sequence[ChatTurn],
    message: str,
    normalizer: Optional[ReceiptNormalizer] = None,
) -> ChatOutcome:
    """One clarification round-trip.

    Fails open: a failed call or an unparseable answer resolves with the receipt unchanged.
    """
    normalizer = normalizer or ReceiptNormalizer()
    try:
        raw_text = await chat.chat(receipt.to_dict(), history, message)
        parsed = extract_json(raw_text, file_name=receipt.file_name)
    except UnparseableResponseError as exc:
        log_event(logger, "clarification.unparseable", file_name=receipt.file_name, raw=exc.raw_excerpt[:200])
        return ChatOutcome(status="resolved", receipt=receipt, failed=True)
    except Exception:
        log_exception(logger, "clarification.chat_failed", file_name=receipt.file_name)
        return ChatOutcome(status="resolved", receipt=receipt, failed=True)

    if not isinstance(parsed, dict):
        return ChatOutcome(status="resolved", receipt=receipt, failed=True)

    status: ChatStatus = "follow_up" if parsed.get("status") == "follow_up" else "resolved"
    revised_data = parsed.get("receiptData")
    merged = receipt.to_dict()
    if isinstance(revised_data, dict):
        merged = merge_receipt_data(merged, revised_data)
    revised = normalizer.normalize_item(merged, receipt.file_name)
    revised.simulated = receipt.simulated
    if status == "resolved":
        revised.confidence = 1.0
    questions = parsed.get("questions") if status == "follow_up" else []
    if not isinstance(questions, list):
        questions = []
    questions = [str(question) for question in questions if str(question).strip()]
    revised.questions = questions
    return ChatOutcome(status=status, receipt=revised, questions=questions)


class ClarificationDialogue:
    """Bounded review loop over one low-confidence receipt.

    The caller reads ``prompt()``, collects the user's answer and resumes the
    dialogue with ``reply()``, ``skip()`` or ``apply()``. Once ``state`` is
    ``resolved`` the revised receipt is available as ``result``.
    """

    def __init__(
        self,
        receipt: Receipt,
        chat: ChatProvider,
        *,
        max_rounds: int = 5,
        normalizer: Optional[ReceiptNormalizer] = None,
    ) -> None:
        if max_rounds < 1:
            raise ValueError("max_rounds must be at least 1")
        self.original = receipt
        self.working = copy.deepcopy(receipt)
        self.chat = chat
        self.max_rounds = max_rounds
        self.normalizer = normalizer or ReceiptNormalizer()
        self.state: DialogueState = "needs_review"
        self.rounds = 0
        self.abandoned = False
        self.history: List[ChatTurn] = []
        self.questions: List[str] = list(receipt.questions)
        if self.questions:
            self.history.append(ChatTurn("assistant", "\n".join(self.questions)))

    @property
    def result(self) -> Receipt:
        if self.state != "resolved":
            raise ClarificationClosedError("Dialogue has not been resolved yet")
        return self.working

    def prompt(self) -> ClarificationPrompt:
        quick: List[str] = []
        for question in self.questions:
            for choice in quick_replies_for(question):
                if choice not in quick:
                    quick.append(choice)
        return ClarificationPrompt(
            summary=summarize(self.working),
            questions=list(self.questions),
            quick_replies=quick,
            round=self.rounds,
        )

    async def reply(self, message: str) -> Optional[ClarificationPrompt]:
        self._ensure_open()
        outcome = await chat_about_receipt(self.chat, self.working, self.history, message, self.normalizer)
        self.rounds += 1
        self.history.append(ChatTurn("user", message))
        self.working = outcome.receipt
        log_event(
            logger,
            "clarification.round",
            file_name=self.working.file_name,
            round=self.rounds,
            status=outcome.status,
            failed=outcome.failed or None,
        )

        if outcome.status == "resolved":
            self._close()
            return None

        self.questions = outcome.questions
        if outcome.questions:
            self.history.append(ChatTurn("assistant", "\n".join(outcome.questions)))
        if self.rounds >= self.max_rounds:
            self.abandoned = True
            log_event(logger, "clarification.abandoned", file_name=self.working.file_name, rounds=self.rounds)
            self._close()
            return None
        self.state = "follow_up"
        return self.prompt()

    def edit(self, **fields: Any) -> Receipt:
        """Change data fields of the working copy (wire names, e.g. ``amount`` or ``trainNo``)."""
        self._ensure_open()
        merged = merge_receipt_data(self.working.to_dict(), {"data": fields})
        revised = self.normalizer.normalize_item(merged, self.working.file_name)
        revised.confidence = self.working.confidence
        revised.questions = self.working.questions
        revised.simulated = self.working.simulated
        self.working = revised
        return revised

    def skip(self) -> Receipt:
        self._ensure_open()
        self.working = copy.deepcopy(self.original)
        self._close()
        return self.working

    def apply(self) -> Receipt:
        self._ensure_open()
        self.working.confidence = 1.0
        self._close()
        return self.working

    def _close(self) -> None:
        self.state = "resolved"
        self.questions = []
        self.working.questions = []

    def _ensure_open(self) -> None:
        if self.state == "resolved":
            raise ClarificationClosedError("Dialogue is already resolved")


async def run_dialogue(
    dialogue: ClarificationDialogue,
    ask: Callable[[ClarificationPrompt], Awaitable[str]],
) -> Receipt:
    """Drive a dialogue to completion; ``ask`` suspends until the user answers."""
    while dialogue.state != "resolved":
        answer = (await ask(dialogue.prompt())).strip()
        if answer == SKIP:
            dialogue.skip()
        elif answer == APPLY:
            dialogue.apply()
        else:
            await dialogue.reply(answer)
    return dialogue.result
