import json

import pytest

from yeobi.clarification import (
    APPLY,
    SKIP,
    ChatTurn,
    ClarificationClosedError,
    ClarificationDialogue,
    chat_about_receipt,
    needs_clarification,
    quick_replies_for,
    run_dialogue,
)
from yeobi.receipts import ReceiptNormalizer

VEHICLE_QUESTION = "이 톨게이트 영수증은 자가차량인가요, 공용차량인가요?"


class ScriptedChat:
    """Answers with the queued responses; an Exception instance is raised instead."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    async def chat(self, receipt, history, message):
        self.calls.append({"receipt": receipt, "history": list(history), "message": message})
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return response


def answer(status, data=None, questions=None):
    payload = {"status": status, "receiptData": {"data": data or {}}, "questions": questions or []}
    return json.dumps(payload, ensure_ascii=False)


@pytest.fixture
def toll_receipt():
    return ReceiptNormalizer().normalize_item(
        {
            "type": "toll_receipt",
            "data": {"tollGate": "서울TG", "amount": 4800, "date": "2025-03-05"},
            "confidence": 0.6,
            "questions": [VEHICLE_QUESTION],
        },
        "toll.jpg",
    )


def test_needs_clarification_below_threshold(toll_receipt):
    assert needs_clarification(toll_receipt) is True
    toll_receipt.confidence = 0.8
    assert needs_clarification(toll_receipt) is False


def test_quick_replies_match_question_patterns():
    assert quick_replies_for(VEHICLE_QUESTION) == ["자가차량", "공용차량"]
    assert quick_replies_for("지출 분류를 선택해 주세요") == ["교통비", "숙박비", "현지인증"]
    assert quick_replies_for("금액이 맞나요?") == []


@pytest.mark.asyncio
async def test_resolved_answer_merges_data_and_raises_confidence(toll_receipt):
    chat = ScriptedChat(answer("resolved", {"vehicleType": "personal_car"}))
    dialogue = ClarificationDialogue(toll_receipt, chat)

    assert dialogue.prompt().quick_replies == ["자가차량", "공용차량"]
    assert await dialogue.reply("자가차량") is None

    assert dialogue.state == "resolved"
    assert dialogue.result.data.vehicle_type == "personal_car"
    assert dialogue.result.data.amount == 4800
    assert dialogue.result.confidence == 1.0
    assert dialogue.result.questions == []
    assert chat.calls[0]["history"] == [ChatTurn("assistant", VEHICLE_QUESTION)]


@pytest.mark.asyncio
async def test_null_data_in_answer_keeps_receipt_fields(toll_receipt):
    chat = ScriptedChat(json.dumps({"status": "resolved", "receiptData": {"data": None}, "questions": []}))

    outcome = await chat_about_receipt(chat, toll_receipt, [], "네 맞아요")

    assert outcome.status == "resolved"
    assert outcome.receipt.data.toll_gate == "서울TG"
    assert outcome.receipt.data.amount == 4800
    assert outcome.receipt.data.date == "2025-03-05"


@pytest.mark.asyncio
async def test_follow_up_loops_until_resolved(toll_receipt):
    chat = ScriptedChat(
        answer("follow_up", {"vehicleType": "official_car"}, ["카드 끝 4자리를 알려주세요."]),
        answer("resolved", {"cardLast4": "1234"}),
    )
    dialogue = ClarificationDialogue(toll_receipt, chat)

    prompt = await dialogue.reply("공용차량")
    assert dialogue.state == "follow_up"
    assert prompt.questions == ["카드 끝 4자리를 알려주세요."]
    assert prompt.round == 1

    await dialogue.reply("1234")

    assert dialogue.rounds == 2
    assert dialogue.result.data.vehicle_type == "official_car"
    assert dialogue.result.data.card_last4 == "1234"
    assert [turn.role for turn in chat.calls[1]["history"]] == ["assistant", "user", "assistant"]


@pytest.mark.asyncio
async def test_failed_call_resolves_with_receipt_unchanged(toll_receipt):
    chat = ScriptedChat(RuntimeError("connection reset"))

    outcome = await chat_about_receipt(chat, toll_receipt, [], "자가차량")

    assert outcome.status == "resolved"
    assert outcome.failed is True
    assert outcome.receipt is toll_receipt
    assert outcome.to_dict()["receiptData"]["data"]["amount"] == 4800


@pytest.mark.asyncio
async def test_unparseable_answer_resolves_with_receipt_unchanged(toll_receipt):
    dialogue = ClarificationDialogue(toll_receipt, ScriptedChat("잘 모르겠습니다."))

    await dialogue.reply("자가차량")

    assert dialogue.state == "resolved"
    assert dialogue.result.data == toll_receipt.data
    assert dialogue.result.confidence == toll_receipt.confidence


@pytest.mark.asyncio
async def test_dialogue_is_abandoned_after_max_rounds(toll_receipt):
    chat = ScriptedChat(answer("follow_up", {"amount": 5000}, ["다시 확인해 주세요."]))
    dialogue = ClarificationDialogue(toll_receipt, chat, max_rounds=3)

    for _ in range(3):
        if dialogue.state != "resolved":
            await dialogue.reply("모르겠어요")

    assert len(chat.calls) == 3
    assert dialogue.abandoned is True
    assert dialogue.state == "resolved"
    assert dialogue.result.data.amount == 5000
    assert dialogue.result.confidence == 0.6


@pytest.mark.asyncio
async def test_reply_after_resolution_is_rejected(toll_receipt):
    dialogue = ClarificationDialogue(toll_receipt, ScriptedChat(answer("resolved")))
    await dialogue.reply("자가차량")

    with pytest.raises(ClarificationClosedError):
        await dialogue.reply("again")


def test_skip_restores_original_data(toll_receipt):
    dialogue = ClarificationDialogue(toll_receipt, ScriptedChat(answer("resolved")))
    dialogue.edit(amount=9900)

    result = dialogue.skip()

    assert result.data.amount == 4800
    assert result.confidence == 0.6


def test_apply_commits_edits(toll_receipt):
    dialogue = ClarificationDialogue(toll_receipt, ScriptedChat(answer("resolved")))
    dialogue.edit(amount="9,900", vehicleType="official_car")

    result = dialogue.apply()

    assert result.data.amount == 9900
    assert result.data.vehicle_type == "official_car"
    assert result.confidence == 1.0
    assert toll_receipt.data.amount == 4800


def test_result_is_unavailable_before_resolution(toll_receipt):
    dialogue = ClarificationDialogue(toll_receipt, ScriptedChat(answer("resolved")))
    with pytest.raises(ClarificationClosedError):
        dialogue.result


@pytest.mark.asyncio
async def test_run_dialogue_suspends_on_each_prompt(toll_receipt):
    chat = ScriptedChat(answer("follow_up", {"vehicleType": "personal_car"}, ["금액이 맞나요?"]))
    answers = iter(["자가차량", APPLY])
    prompts = []

    async def ask(prompt):
        prompts.append(prompt)
        return next(answers)

    result = await run_dialogue(ClarificationDialogue(toll_receipt, chat), ask)

    assert len(prompts) == 2
    assert result.data.vehicle_type == "personal_car"
    assert result.confidence == 1.0


@pytest.mark.asyncio
async def test_run_dialogue_skip(toll_receipt):
    async def ask(prompt):
        return SKIP

    result = await run_dialogue(ClarificationDialogue(toll_receipt, ScriptedChat(answer("resolved"))), ask)

    assert result.confidence == 0.6
