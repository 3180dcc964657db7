"""HTTP client for the external vision/conversation model (Anthropic Messages API)."""

from __future__ import annotations

import base64
import json
import time
from typing import Any, Dict, List, Optional, Sequence

import httpx

from yeobi.clarification import ChatTurn
from yeobi.config import Settings, get_settings
from yeobi.logging import get_logger, log_event, monotonic_ms

logger = get_logger(__name__)


class UpstreamUnavailableError(RuntimeError):
    """The external model could not be reached or answered with a non-success status."""

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


ANALYSIS_PROMPT = """당신은 한국 공공기관의 출장 영수증 분석 전문가입니다.
업로드된 문서를 분석하여 아래 형식 중 하나로 JSON을 반환하세요.
문서에 영수증이 여러 장 있으면 각 영수증을 객체로 하는 JSON 배열을 반환하세요.
반드시 JSON만 출력하세요. 설명이나 마크다운 없이 순수 JSON만 출력하세요.

■ 철도 영수증 (KTX, SRT, ITX, 무궁화 등)
{"type": "rail_receipt", "category": "철도영수증",
 "data": {"date": "YYYY-MM-DD", "from": "출발역", "to": "도착역", "trainNo": "KTX 301",
          "seatClass": "일반실 또는 특실", "amount": 23700, "cardLast4": "", "approvalLast4": ""}}

■ 숙박 영수증
{"type": "lodging_receipt", "category": "숙박영수증",
 "data": {"hotelName": "숙소명", "date": "YYYY-MM-DD", "amount": 85000, "address": "전체 주소", "cardLast4": ""}}

■ 톨게이트 영수증 (하이패스 포함)
{"type": "toll_receipt", "category": "톨게이트영수증",
 "data": {"tollGate": "톨게이트명", "amount": 4800, "date": "YYYY-MM-DD", "cardLast4": ""}}

■ 현지 영수증 (편의점, 식당, 카페, 마트 등)
{"type": "local_receipt", "category": "현지영수증",
 "data": {"storeName": "가게명", "amount": 3500, "date": "YYYY-MM-DD", "address": "전체 주소", "cardLast4": ""}}

■ 지도 캡처 (네이버지도, 카카오맵 등)
{"type": "map_capture", "category": "지도캡처",
 "data": {"from": "출발지", "to": "도착지", "distanceKm": 148, "estimatedMinutes": 110}}

■ 위 어디에도 해당하지 않는 경우
{"type": "unknown", "category": "기타첨부", "data": {}}

모든 객체에 "confidence" (0~1)를 포함하고, 확인이 필요한 항목이 있으면 "questions" 배열에 질문을 넣으세요.
톨게이트 영수증은 차량 구분(자가차량/공용차량)을 알 수 없으면 questions에 질문을 넣으세요.
금액은 반드시 숫자(정수)로 반환하세요. 쉼표나 "원" 없이 숫자만.
포인트, 마일리지, 쿠폰으로 결제한 금액은 제외하세요.
날짜나 주소를 확인할 수 없으면 빈 문자열("")로."""


def chat_system_prompt(receipt: Dict[str, Any]) -> str:
    return (
        "당신은 한국 공공기관의 출장 영수증 분석 보조 전문가입니다.\n"
        "사용자가 업로드한 영수증의 AI 분석 결과에 대해 대화하고 있습니다.\n\n"
        "현재 분석된 영수증 데이터:\n"
        f"{json.dumps(receipt, ensure_ascii=False, indent=2)}\n\n"
        "사용자의 답변을 바탕으로 데이터를 수정하고, 반드시 아래 JSON 형식으로만 응답하세요.\n"
        '{"status": "resolved" 또는 "follow_up", '
        '"receiptData": {...수정된 영수증 데이터 (type, category, data 포함)...}, '
        '"questions": ["추가 질문"]}\n\n'
        "규칙:\n"
        '- "resolved": 모든 불확실한 항목이 해결됨. questions는 빈 배열.\n'
        '- "follow_up": 아직 확인 필요. questions에 추가 질문 포함.\n'
        "- 금액은 숫자(정수), 날짜는 YYYY-MM-DD.\n"
        '- 사용자가 "자가차량"이라고 하면 data.vehicleType = "personal_car", '
        '"공용차량"이면 "official_car".\n'
        '- expenseCategory는 "교통비"/"숙박비"/"현지인증" 중 하나.\n'
        "- data의 cardLast4, approvalLast4 값은 유지하고, 사용자가 알려주면 끝 4자리로 갱신."
    )


def alternate_turns(history: Sequence[ChatTurn], message: str) -> List[Dict[str, str]]:
    """Strictly alternating user/assistant messages that start with a user turn."""
    messages: List[Dict[str, str]] = []
    for turn in history:
        role = "user" if turn.role == "user" else "assistant"
        if messages and messages[-1]["role"] == role:
            messages[-1]["content"] += "\n\n" + turn.content
        else:
            messages.append({"role": role, "content": turn.content})

    if messages and messages[0]["role"] == "assistant":
        messages.insert(0, {"role": "user", "content": "영수증 분석 결과를 확인해주세요."})

    if messages and messages[-1]["role"] == "user":
        messages[-1]["content"] += "\n\n" + message
    else:
        messages.append({"role": "user", "content": message})
    return messages


def document_block(content: bytes, media_type: str) -> Dict[str, Any]:
    encoded = base64.b64encode(content).decode("ascii")
    block_type = "document" if media_type == "application/pdf" else "image"
    return {"type": block_type, "source": {"type": "base64", "media_type": media_type, "data": encoded}}


class AnthropicClient:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._transport = transport

    async def _post(self, model: str, body: Dict[str, Any]) -> str:
        if not self.settings.has_credentials:
            raise UpstreamUnavailableError("YEOBI_ANTHROPIC_API_KEY is not configured")

        headers = {
            "Content-Type": "application/json",
            "x-api-key": self.settings.anthropic_api_key or "",
            "anthropic-version": self.settings.anthropic_version,
        }
        payload = {"model": model, "max_tokens": self.settings.max_tokens, **body}
        start = time.monotonic()
        try:
            async with httpx.AsyncClient(
                base_url=self.settings.anthropic_base_url,
                timeout=self.settings.http_timeout_seconds,
                transport=self._transport,
            ) as client:
                resp = await client.post("/v1/messages", headers=headers, json=payload)
        except httpx.HTTPError as exc:
            raise UpstreamUnavailableError(f"Model request failed: {exc}") from exc

        log_event(
            logger,
            "llm.request",
            model=model,
            status=resp.status_code,
            duration_ms=monotonic_ms(start),
        )
        if resp.status_code >= 400:
            raise UpstreamUnavailableError(
                f"Model API error: {resp.status_code} {resp.text[:200]}", status=resp.status_code
            )

        try:
            body = resp.json()
        except ValueError as exc:
            raise UpstreamUnavailableError("Model API returned a non-JSON body") from exc
        if not isinstance(body, dict):
            raise UpstreamUnavailableError(f"Model API returned {type(body).__name__} instead of a message object")
        blocks = body.get("content")
        if not isinstance(blocks, list):
            blocks = []
        return "".join(
            block.get("text", "") for block in blocks if isinstance(block, dict) and block.get("type") == "text"
        )

    async def extract(self, content: bytes, media_type: str) -> str:
        body = {
            "messages": [
                {
                    "role": "user",
                    "content": [document_block(content, media_type), {"type": "text", "text": ANALYSIS_PROMPT}],
                }
            ]
        }
        return await self._post(self.settings.extraction_model, body)

    async def chat(self, receipt: Dict[str, Any], history: Sequence[ChatTurn], message: str) -> str:
        body = {"system": chat_system_prompt(receipt), "messages": alternate_turns(history, message)}
        try:
            return await self._post(self.settings.chat_model, body)
        except UpstreamUnavailableError as exc:
            if exc.status is None:
                raise
            log_event(logger, "llm.chat.fallback_model", status=exc.status, model=self.settings.chat_fallback_model)
            return await self._post(self.settings.chat_fallback_model, body)
