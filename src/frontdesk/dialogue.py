"""
Dialogue orchestration for the front desk.

One call to `DialogueOrchestrator.handle_utterance` is one caller turn:

1. extract facts from the utterance (untrusted, validated per field)
2. merge them into the session (identity fields are fixed once set)
3. run every tool whose required facts are present and whose intent has
   not yet been recorded, in policy order
4. compose the reply (LLM, or templates when the LLM is off/unavailable)

The orchestrator touches only the Session it is given; the pipeline owns
the session and runs one turn at a time.
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

import msgspec
import structlog

from src.frontdesk.extract import Extractor, redact
from src.frontdesk.llm import OpenAIChat, get_system_prompt
from src.frontdesk.resilience import ExternalCallError
from src.frontdesk.session import Session, ToolCallRecord
from src.frontdesk.tools import ToolInvoker, ToolResult

logger = structlog.get_logger(__name__)

IDENTITY_FIELDS = ("patient_first", "patient_last")

RETRY_PROMPT = "Sorry, I didn't catch that. Could you say that again?"
SMS_OFFER = "Would you like a text confirmation?"
TOOL_TROUBLE_PROMPT = "I'm having trouble checking that right now. Could you give me a moment and ask again?"

PROCEDURE_CODES = {
    "cleaning": "D1110",
    "checkup": "D0120",
    "filling": "D2391",
    "root_canal": "D3330",
    "extraction": "D7140",
    "consultation": "D9310",
}

_WEEKDAY_NAMES = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")
_AFFIRMATIVE = re.compile(r"^\W*(yes|yeah|yep|sure|please do|please|correct|ok(?:ay)?|go ahead|absolutely)\b", re.IGNORECASE)
_SLOT_TIME = re.compile(r"(\d{1,2})(?::(\d{2}))?\s*(a\.?m\.?|p\.?m\.?|o['’]?clock)?", re.IGNORECASE)
_ORDINALS = {"first": 0, "earliest": 0, "second": 1, "third": 2, "last": -1, "latest": -1}


def merge_facts(current: Dict[str, Any], incoming: Dict[str, Any]) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    """
    Merge newly extracted facts into the existing ones.

    Returns (merged, changed). Null never replaces a value; identity fields
    keep their first value; everything else is last-non-null-wins.
    """
    merged = dict(current)
    changed: Dict[str, Any] = {}
    for name, value in incoming.items():
        if value is None:
            continue
        if name in IDENTITY_FIELDS and merged.get(name) is not None:
            continue
        if merged.get(name) != value:
            merged[name] = value
            changed[name] = value
    return merged, changed


def parse_iso(value: str) -> datetime:
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return datetime.fromisoformat(value)


def resolve_date_range(time_pref: Optional[str], now: datetime) -> Tuple[datetime, datetime]:
    """
    Search window for availability: from 8am on the preferred day (default
    tomorrow) through one week later.
    """
    day = now + timedelta(days=1)
    pref = (time_pref or "").lower()
    if "today" in pref:
        day = now
    else:
        for index, weekday in enumerate(_WEEKDAY_NAMES):
            if weekday in pref:
                days_ahead = (index - now.weekday()) % 7 or 7
                day = now + timedelta(days=days_ahead)
                break
    start = day.replace(hour=8, minute=0, second=0, microsecond=0)
    return start, start + timedelta(days=7)


def select_slot(choice: Optional[str], slots: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Match a spoken choice ("9am", "the second one") against offered slots."""
    if not choice or not slots:
        return None
    choice = choice.strip().lower()

    for word, index in _ORDINALS.items():
        if word in choice:
            return slots[index] if -len(slots) <= index < len(slots) else None

    match = _SLOT_TIME.search(choice)
    if not match:
        return None
    hour = int(match.group(1))
    minute = int(match.group(2) or 0)
    meridiem = (match.group(3) or "").replace(".", "")
    if meridiem.startswith("p") and hour < 12:
        hour += 12
    elif meridiem.startswith("a") and hour == 12:
        hour = 0
    elif not meridiem.startswith(("a", "p")) and hour < 8:
        # Bare "1" or "1 o'clock" during office hours means the afternoon.
        hour += 12

    for slot in slots:
        start = parse_iso(slot["start"])
        if start.hour == hour and start.minute == minute:
            return slot
    return None


def booking_idempotency_key(session_id: str, slot_start: str) -> str:
    digest = hashlib.sha256(f"{session_id}|{slot_start}".encode("utf-8")).hexdigest()
    return f"bk_{digest[:32]}"


def speak_time(iso: str) -> str:
    """'2026-10-20T09:00:00-07:00' -> 'Tuesday at 9 AM'."""
    start = parse_iso(iso)
    hour12 = start.hour % 12 or 12
    minutes = f":{start.minute:02d}" if start.minute else ""
    return f"{start.strftime('%A')} at {hour12}{minutes} {'PM' if start.hour >= 12 else 'AM'}"


# =============================================================================
# Tool policies
# =============================================================================


@dataclass(frozen=True)
class ToolPolicy:
    tool: str
    intent: str
    required: Tuple[str, ...]
    build_input: Callable[[Session, datetime, str], Dict[str, Any]]

    def missing(self, facts: Dict[str, Any]) -> List[str]:
        return [name for name in self.required if not facts.get(name)]

    def is_eligible(self, session: Session) -> bool:
        return not session.has_intent(self.intent) and not self.missing(session.facts)


def _coverage_input(session: Session, now: datetime, clinic_name: str) -> Dict[str, Any]:
    facts = session.facts
    payload: Dict[str, Any] = {
        "payer": facts["payer"],
        "procedure_code": PROCEDURE_CODES.get(facts.get("appointment_type") or "", "D1110"),
    }
    if facts.get("plan"):
        payload["plan"] = facts["plan"]
    return payload


def _availability_input(session: Session, now: datetime, clinic_name: str) -> Dict[str, Any]:
    start, end = resolve_date_range(session.facts.get("time_pref"), now)
    return {
        "location_id": session.facts["location_id"],
        "date_range": {"start": start.isoformat(), "end": end.isoformat()},
        "appointment_type": session.facts.get("appointment_type") or "cleaning",
    }


def _booking_input(session: Session, now: datetime, clinic_name: str) -> Dict[str, Any]:
    facts = session.facts
    slot = facts["selected_slot"]
    patient: Dict[str, Any] = {"first": facts["patient_first"], "phone": facts["phone"]}
    if facts.get("patient_last"):
        patient["last"] = facts["patient_last"]
    payload: Dict[str, Any] = {
        "patient": patient,
        "slot": dict(slot),
        "appointment_type": facts.get("appointment_type") or "cleaning",
        "idempotency_key": booking_idempotency_key(session.session_id, slot["start"]),
    }
    if facts.get("location_id"):
        payload["location_id"] = facts["location_id"]
    return payload


def _sms_input(session: Session, now: datetime, clinic_name: str) -> Dict[str, Any]:
    facts = session.facts
    when = speak_time(facts["selected_slot"]["start"]) if facts.get("selected_slot") else "your appointment"
    kind = (facts.get("appointment_type") or "appointment").replace("_", " ")
    return {
        "to": facts["phone"],
        "message": f"{clinic_name}: your {kind} is booked for {when}. Confirmation {facts['confirmation_id']}.",
    }


TOOL_POLICIES: Tuple[ToolPolicy, ...] = (
    ToolPolicy("check_insurance_coverage", "coverage_check", ("payer",), _coverage_input),
    ToolPolicy("get_provider_availability", "availability", ("location_id",), _availability_input),
    ToolPolicy(
        "book_appointment",
        "book_appointment",
        ("patient_first", "phone", "selected_slot", "wants_booking"),
        _booking_input,
    ),
    ToolPolicy("send_sms", "send_sms", ("phone", "confirmation_id", "wants_sms"), _sms_input),
)


def eligible_tools(session: Session) -> List[ToolPolicy]:
    return [policy for policy in TOOL_POLICIES if policy.is_eligible(session)]


# =============================================================================
# Replies
# =============================================================================


class ReplyComposer:
    """Deterministic spoken replies from facts and this turn's tool results."""

    def __init__(self, clinic_name: str = "Neurality Health"):
        self.clinic_name = clinic_name

    def compose(self, session: Session, results: List[ToolResult]) -> str:
        facts = session.facts
        by_tool = {r.tool: r for r in results}
        name = facts.get("patient_first")
        addressed = f", {name}" if name else ""

        booking = by_tool.get("book_appointment")
        sms = by_tool.get("send_sms")
        if booking and booking.ok:
            output = booking.output or {}
            when = speak_time(facts["selected_slot"]["start"])
            kind = (facts.get("appointment_type") or "appointment").replace("_", " ")
            reply = (
                f"You're all set{addressed}. Your {kind} is booked for {when}, "
                f"and your confirmation number is {output.get('confirmation_id')}."
            )
            if sms and sms.ok:
                return reply + " I've texted the details to you as well."
            return f"{reply} {SMS_OFFER}"

        if sms and sms.ok:
            return "I've sent a text confirmation to your phone. Is there anything else I can help with?"

        availability = by_tool.get("get_provider_availability")
        if availability and availability.ok:
            slots = (availability.output or {}).get("slots", [])
            if not slots:
                return "I don't see any openings that week. Would another day work?"
            day = parse_iso(slots[0]["start"]).strftime("%A")
            times = [speak_time(s["start"]).split(" at ", 1)[1] for s in slots]
            spoken = ", ".join(times[:-1]) + f", or {times[-1]}" if len(times) > 1 else times[0]
            reply = f"I have openings on {day} at {spoken}. Which time works best?"
            if not facts.get("phone"):
                reply += " And what's the best number to reach you?"
            return reply

        coverage = by_tool.get("check_insurance_coverage")
        if coverage and coverage.ok:
            output = coverage.output or {}
            insurer = " ".join(p for p in (facts.get("payer"), facts.get("plan")) if p)
            if output.get("covered"):
                kind = (facts.get("appointment_type") or "visit").replace("_", " ")
                copay = output.get("copay_estimate", 0)
                return (
                    f"Good news{addressed}. We're in network with {insurer}, and the estimated copay "
                    f"for a {kind} is {int(copay) if float(copay).is_integer() else copay} dollars. "
                    "Which location and day work best for you?"
                )
            return (
                f"It looks like {insurer} is not in our network, but we do offer cash pay options. "
                "Is there anything else I can help with?"
            )

        if any(not r.ok for r in results):
            return TOOL_TROUBLE_PROMPT

        return self.next_question(session)

    def next_question(self, session: Session) -> str:
        facts = session.facts
        if facts.get("selected_slot") and not session.has_intent("book_appointment"):
            if not facts.get("patient_first"):
                return "Can I get your first and last name for the appointment?"
            if not facts.get("phone"):
                return "What's the best phone number for the appointment?"
            return f"Shall I book {speak_time(facts['selected_slot']['start'])} for you?"
        if session.has_intent("availability") and not facts.get("selected_slot"):
            return "Which of those times works for you?"
        if facts.get("payer") and not facts.get("location_id"):
            return "Which of our locations is most convenient for you?"
        if not facts.get("payer") and not session.intents:
            return f"Thanks for calling {self.clinic_name}. Which dental insurance do you have?"
        return "How else can I help you today?"


# =============================================================================
# Orchestrator
# =============================================================================


@dataclass
class TurnOutcome:
    reply: str
    tool_results: List[ToolResult] = field(default_factory=list)
    facts_changed: Dict[str, Any] = field(default_factory=dict)
    reply_source: str = "template"


def _local_now() -> datetime:
    return datetime.now().astimezone()


class DialogueOrchestrator:
    """Runs extraction, tool policy and reply generation for one call."""

    def __init__(
        self,
        extractor: Extractor,
        invoker: ToolInvoker,
        *,
        chat: Optional[OpenAIChat] = None,
        composer: Optional[ReplyComposer] = None,
        config: Optional[Any] = None,
        clock: Callable[[], datetime] = _local_now,
    ):
        self.extractor = extractor
        self.invoker = invoker
        self.chat = chat
        self.config = config
        self.clinic_name = getattr(config, "clinic_name", "Neurality Health")
        self.max_history_turns = getattr(config, "max_history_turns", 4)
        self.composer = composer or ReplyComposer(self.clinic_name)
        self._clock = clock
        self._awaiting_booking_confirmation = False
        self._awaiting_sms_confirmation = False

    def _history(self, session: Session) -> List[Dict[str, str]]:
        return [
            {"role": "user" if entry.speaker == "caller" else "assistant", "content": entry.text}
            for entry in session.recent_transcript(self.max_history_turns * 2)
        ]

    async def handle_utterance(self, session: Session, text: str) -> TurnOutcome:
        """Process one caller utterance and return the reply to speak."""
        history = self._history(session)
        session.add_transcript("caller", text)
        logger.info("Caller turn", session_id=session.session_id, text=redact(text))

        extraction = await self.extractor.extract(text, history)
        incoming = dict(extraction.facts)
        if _AFFIRMATIVE.search(text):
            if self._awaiting_booking_confirmation:
                incoming.setdefault("wants_booking", True)
            elif self._awaiting_sms_confirmation:
                incoming.setdefault("wants_sms", True)

        session.facts, changed = merge_facts(session.facts, incoming)
        if changed:
            logger.info("Facts updated", session_id=session.session_id, fields=sorted(changed))

        results = await self._run_tools(session)

        reply, source = await self._reply(session, results)
        self._awaiting_booking_confirmation = reply.startswith("Shall I book") or (
            source == "llm" and self._ready_to_confirm(session)
        )
        self._awaiting_sms_confirmation = reply.endswith(SMS_OFFER) or (
            source == "llm" and "text" in reply.lower() and self._ready_to_text(session)
        )
        session.add_transcript("agent", reply)
        return TurnOutcome(reply=reply, tool_results=results, facts_changed=changed, reply_source=source)

    @staticmethod
    def _ready_to_confirm(session: Session) -> bool:
        facts = session.facts
        return bool(
            facts.get("selected_slot")
            and facts.get("patient_first")
            and facts.get("phone")
            and not facts.get("wants_booking")
            and not session.has_intent("book_appointment")
        )

    @staticmethod
    def _ready_to_text(session: Session) -> bool:
        return (
            session.has_intent("book_appointment")
            and not session.has_intent("send_sms")
            and not session.facts.get("wants_sms")
        )

    def _refresh_selected_slot(self, session: Session) -> None:
        # The booked slot is fixed once the booking succeeds.
        if session.has_intent("book_appointment"):
            return
        availability = session.last_output("get_provider_availability")
        choice = session.facts.get("slot_choice")
        if not availability or not choice:
            return
        slot = select_slot(choice, availability.get("slots", []))
        if slot is not None:
            session.facts, _ = merge_facts(session.facts, {"selected_slot": slot})

    async def _run_tools(self, session: Session) -> List[ToolResult]:
        results: List[ToolResult] = []
        for policy in TOOL_POLICIES:
            self._refresh_selected_slot(session)
            if not policy.is_eligible(session):
                continue

            payload = policy.build_input(session, self._clock(), self.clinic_name)
            result = await self.invoker.invoke(policy.tool, payload)
            results.append(result)
            session.record_tool_call(
                ToolCallRecord(
                    tool=result.tool,
                    input=result.input,
                    output=result.output,
                    ok=result.ok,
                    idempotency_key=result.idempotency_key,
                    errors=list(result.errors),
                    replayed=result.replayed,
                )
            )
            if not result.ok:
                logger.warning("Tool call failed", tool=policy.tool, errors=result.errors)
                continue

            session.record_intent(policy.intent)
            if policy.tool == "book_appointment":
                session.facts, _ = merge_facts(
                    session.facts, {"confirmation_id": (result.output or {}).get("confirmation_id")}
                )
        return results

    async def _reply(self, session: Session, results: List[ToolResult]) -> Tuple[str, str]:
        if self.chat is None:
            return self.composer.compose(session, results), "template"

        messages = [
            {
                "role": "system",
                "content": get_system_prompt(self.config, session.facts, len(session.tool_trace)),
            }
        ]
        if results:
            summary = [
                {"tool": r.tool, "ok": r.ok, "output": r.output, "errors": r.errors} for r in results
            ]
            messages.append(
                {"role": "system", "content": "Tool results this turn: " + msgspec.json.encode(summary).decode("utf-8")}
            )
        messages.append({"role": "system", "content": "Suggested next question: " + self.composer.next_question(session)})
        messages.extend(self._history(session))

        try:
            response = await self.chat.complete(messages, max_tokens=150, temperature=0.7)
        except ExternalCallError as e:
            logger.warning("LLM reply unavailable, using template", error=str(e))
            return self.composer.compose(session, results), "template"

        if not response.text:
            return self.composer.compose(session, results), "template"
        return response.text, "llm"
