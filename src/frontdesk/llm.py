"""
OpenAI chat wrapper used for slot extraction and reply generation.

Provides:
- The front-desk system prompt built from the session's facts
- The extraction prompt (JSON mode)
- A thin async client that runs every request under a CallPolicy
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import structlog
from openai import AsyncOpenAI

from src.frontdesk.config import get_config
from src.frontdesk.resilience import CallPolicy, ResilientCaller

logger = structlog.get_logger(__name__)


@dataclass
class LLMResponse:
    """Response from the chat model."""
    text: str
    total_ms: float = 0.0
    tokens_generated: int = 0


EXTRACTION_PROMPT = """Extract patient information from the caller's latest utterance. Return a JSON object with:
{
  "patient_first": "string or null",
  "patient_last": "string or null",
  "phone": "phone number (E.164 if possible) or null",
  "payer": "insurance company or null",
  "plan": "insurance plan or null",
  "appointment_type": "cleaning|checkup|filling|root_canal|extraction|consultation or null",
  "time_pref": "time preference or null",
  "location_id": "clinic location or null",
  "slot_choice": "which offered slot the caller picked, e.g. '9am' or 'first', or null",
  "wants_booking": "true if the caller asked to book or accepted a slot, else null",
  "wants_sms": "true if the caller wants a text confirmation, else null"
}
Only extract what the caller explicitly said. Use null for anything not mentioned."""


def get_system_prompt(config: Optional[Any] = None, facts: Optional[Dict[str, Any]] = None, tool_calls: int = 0) -> str:
    """
    Get the system prompt for reply generation.

    Defines the front-desk persona and embeds what is known about the caller.
    """
    if config is None:
        config = get_config()
    facts = facts or {}

    patient = " ".join(p for p in (facts.get("patient_first"), facts.get("patient_last")) if p) or "unknown"
    insurance = " ".join(p for p in (facts.get("payer"), facts.get("plan")) if p) or "unknown"

    return f"""You are {config.agent_name}, a professional front-desk assistant at {config.clinic_name}. Be concise and helpful.

Current context:
- Patient: {patient}
- Phone: {facts.get("phone") or "unknown"}
- Insurance: {insurance}
- Appointment type: {facts.get("appointment_type") or "unknown"}
- Location: {facts.get("location_id") or "unknown"}
- Recent tool calls: {tool_calls} tools used

PHONE CALL GUIDELINES:
- This is spoken audio: keep responses under 2 sentences
- No lists, no markdown, no emojis
- Never invent coverage, appointment times or confirmation numbers; only repeat what the tool results below say
- Guide the conversation toward booking"""


class OpenAIChat:
    """Async chat completions client with retry/breaker policy."""

    def __init__(
        self,
        config: Optional[Any] = None,
        *,
        client: Optional[AsyncOpenAI] = None,
        caller: Optional[ResilientCaller] = None,
    ):
        if config is None:
            config = get_config()

        self.config = config
        self.model = config.openai_model
        self._client = client or AsyncOpenAI(api_key=config.openai_api_key)
        self._caller = caller or ResilientCaller(CallPolicy.from_config("llm", config, timeout_s=10.0))

    async def complete(
        self,
        messages: List[Dict[str, str]],
        *,
        json_mode: bool = False,
        max_tokens: int = 150,
        temperature: float = 0.7,
    ) -> LLMResponse:
        """
        Run one chat completion.

        Raises:
            ExternalCallError: the request failed after retries (or the breaker is open)
        """
        start_time = time.time()
        kwargs: Dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "max_tokens": max_tokens,
            "temperature": temperature,
        }
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}

        response = await self._caller.call(lambda: self._client.chat.completions.create(**kwargs))

        text = (response.choices[0].message.content or "") if response.choices else ""
        usage = getattr(response, "usage", None)
        total_ms = (time.time() - start_time) * 1000

        logger.debug(
            "LLM completion",
            model=self.model,
            json_mode=json_mode,
            total_ms=round(total_ms, 2),
            chars=len(text),
        )
        return LLMResponse(
            text=text.strip(),
            total_ms=total_ms,
            tokens_generated=getattr(usage, "completion_tokens", 0) or 0,
        )
