"""
Tests for dialogue orchestration: fact merging, tool policy and replies.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from src.frontdesk.dialogue import (
    DialogueOrchestrator,
    booking_idempotency_key,
    merge_facts,
    resolve_date_range,
    select_slot,
    speak_time,
)
from src.frontdesk.extract import RuleBasedExtractor
from src.frontdesk.llm import LLMResponse
from src.frontdesk.resilience import ExternalCallError
from src.frontdesk.session import Session
from src.frontdesk.tools import SimulatedClinicBackend, ToolInvoker

PACIFIC = timezone(timedelta(hours=-7))
# A Thursday morning.
NOW = datetime(2026, 10, 15, 10, 0, tzinfo=PACIFIC)

SLOTS = [
    {"start": "2026-10-20T09:00:00-07:00", "end": "2026-10-20T10:00:00-07:00", "provider_id": "DR001"},
    {"start": "2026-10-20T11:00:00-07:00", "end": "2026-10-20T12:00:00-07:00", "provider_id": "DR001"},
    {"start": "2026-10-20T13:00:00-07:00", "end": "2026-10-20T14:00:00-07:00", "provider_id": "DR001"},
]


def _orchestrator(chat=None, invoker=None):
    return DialogueOrchestrator(
        RuleBasedExtractor(),
        invoker or ToolInvoker(),
        chat=chat,
        clock=lambda: NOW,
    )


async def _book_nine_am(orchestrator, session):
    await orchestrator.handle_utterance(
        session, "Hi, I'm Maya Patel. Do you take Delta Dental PPO for a cleaning?"
    )
    await orchestrator.handle_utterance(
        session, "Next Tuesday morning in San Jose. My number is 408-555-1234."
    )
    booked = await orchestrator.handle_utterance(session, "The 9am works, please book it.")
    assert [r.tool for r in booked.tool_results] == ["book_appointment"]
    assert booked.reply.endswith("Would you like a text confirmation?")
    return booked


class TestMergeFacts:
    def test_null_never_overwrites(self):
        merged, changed = merge_facts({"payer": "Aetna"}, {"payer": None})

        assert merged == {"payer": "Aetna"}
        assert changed == {}

    def test_identity_fields_fixed_once_set(self):
        merged, changed = merge_facts(
            {"patient_first": "Maya", "patient_last": "Patel"},
            {"patient_first": "Bob", "patient_last": "Smith", "phone": "+14085551234"},
        )

        assert merged["patient_first"] == "Maya"
        assert merged["patient_last"] == "Patel"
        assert changed == {"phone": "+14085551234"}

    def test_last_non_null_wins_for_other_fields(self):
        merged, changed = merge_facts({"location_id": "San Jose"}, {"location_id": "Fremont"})

        assert merged["location_id"] == "Fremont"
        assert changed == {"location_id": "Fremont"}

    def test_keys_never_removed(self):
        current = {"payer": "Aetna", "plan": "PPO"}
        merged, _ = merge_facts(current, {"phone": "+14085551234"})

        assert set(current) <= set(merged)
        assert current == {"payer": "Aetna", "plan": "PPO"}


class TestHelpers:
    def test_next_weekday(self):
        start, end = resolve_date_range("next tuesday morning", NOW)

        assert start == datetime(2026, 10, 20, 8, 0, tzinfo=PACIFIC)
        assert end - start == timedelta(days=7)

    def test_same_weekday_means_next_week(self):
        start, _ = resolve_date_range("thursday", NOW)
        assert start.date() == datetime(2026, 10, 22).date()

    def test_default_is_tomorrow(self):
        start, _ = resolve_date_range(None, NOW)
        assert start == datetime(2026, 10, 16, 8, 0, tzinfo=PACIFIC)

    def test_today(self):
        start, _ = resolve_date_range("today afternoon", NOW)
        assert start.date() == NOW.date()

    @pytest.mark.parametrize(
        "choice,expected",
        [
            ("9am", 0),
            ("11 a.m.", 1),
            ("1pm", 2),
            ("1 o'clock", 2),
            ("first", 0),
            ("second", 1),
            ("last", 2),
        ],
    )
    def test_select_slot(self, choice, expected):
        assert select_slot(choice, SLOTS) == SLOTS[expected]

    def test_select_slot_no_match(self):
        assert select_slot("4pm", SLOTS) is None
        assert select_slot("9am", []) is None

    def test_idempotency_key_is_stable(self):
        key = booking_idempotency_key("abc", SLOTS[0]["start"])

        assert key == booking_idempotency_key("abc", SLOTS[0]["start"])
        assert key != booking_idempotency_key("abd", SLOTS[0]["start"])
        assert key.startswith("bk_") and len(key) == 35

    def test_speak_time(self):
        assert speak_time(SLOTS[0]["start"]) == "Tuesday at 9 AM"
        assert speak_time(SLOTS[2]["start"]) == "Tuesday at 1 PM"


class TestCoverageAndBookingFlow:
    @pytest.mark.asyncio
    async def test_in_network_booking_with_sms(self):
        session = Session(session_id="sess-a")
        orchestrator = _orchestrator()

        first = await orchestrator.handle_utterance(
            session, "Hi, I'm Maya Patel. Do you take Delta Dental PPO for a cleaning?"
        )
        assert [r.tool for r in first.tool_results] == ["check_insurance_coverage"]
        assert first.tool_results[0].input["procedure_code"] == "D1110"
        assert first.reply == (
            "Good news, Maya. We're in network with Delta Dental PPO, and the estimated copay "
            "for a cleaning is 25 dollars. Which location and day work best for you?"
        )

        second = await orchestrator.handle_utterance(
            session, "If yes, next Tuesday morning in San Jose. My number is 408-555-1234."
        )
        assert [r.tool for r in second.tool_results] == ["get_provider_availability"]
        assert second.tool_results[0].input["date_range"]["start"] == "2026-10-20T08:00:00-07:00"
        assert second.reply == "I have openings on Tuesday at 9 AM, 11 AM, or 1 PM. Which time works best?"

        third = await orchestrator.handle_utterance(session, "The 9am works, please book it.")
        assert [r.tool for r in third.tool_results] == ["book_appointment"]
        confirmation_id = session.facts["confirmation_id"]
        assert confirmation_id.startswith("CONF-")
        assert third.reply == (
            "You're all set, Maya. Your cleaning is booked for Tuesday at 9 AM, "
            f"and your confirmation number is {confirmation_id}. Would you like a text confirmation?"
        )

        fourth = await orchestrator.handle_utterance(session, "Yes, text me the confirmation.")
        assert [r.tool for r in fourth.tool_results] == ["send_sms"]
        assert confirmation_id in fourth.tool_results[0].input["message"]

        assert session.intents == ["coverage_check", "availability", "book_appointment", "send_sms"]
        assert session.facts["patient_first"] == "Maya"
        assert session.facts["phone"] == "+14085551234"
        assert session.outcome() == {
            "booked": True,
            "confirmation_id": confirmation_id,
            "next_steps": "SMS sent",
        }
        assert [e.speaker for e in session.transcript] == ["caller", "agent"] * 4

    @pytest.mark.asyncio
    async def test_out_of_network_does_not_book(self):
        orchestrator = _orchestrator()
        session = Session(session_id="sess-b")
        outcome = await orchestrator.handle_utterance(
            session, "Hi, do you take UnitedHealthcare for a root canal?"
        )

        assert outcome.tool_results[0].output["covered"] is False
        assert outcome.tool_results[0].input["procedure_code"] == "D3330"
        assert "not in our network" in outcome.reply

        await orchestrator.handle_utterance(session, "Okay, how much would it be cash pay?")
        await orchestrator.handle_utterance(session, "Let me think about it and call back.")

        assert "book_appointment" not in [r.tool for r in session.tool_trace]
        assert session.intents == ["coverage_check"]
        assert session.outcome()["booked"] is False
        assert session.outcome()["next_steps"] == "Pending"

    @pytest.mark.asyncio
    async def test_plain_yes_accepts_text_offer(self):
        session = Session(session_id="sess-sms-yes")
        orchestrator = _orchestrator()
        await _book_nine_am(orchestrator, session)

        accepted = await orchestrator.handle_utterance(session, "Yes please.")

        assert [r.tool for r in accepted.tool_results] == ["send_sms"]
        assert session.has_intent("send_sms")

    @pytest.mark.asyncio
    async def test_text_confirms_booked_slot_not_later_mention(self):
        session = Session(session_id="sess-sms-slot")
        orchestrator = _orchestrator()
        await _book_nine_am(orchestrator, session)

        outcome = await orchestrator.handle_utterance(
            session, "Is 11am open too? Anyway, text me the confirmation."
        )

        assert [r.tool for r in outcome.tool_results] == ["send_sms"]
        message = outcome.tool_results[0].input["message"]
        assert "Tuesday at 9 AM" in message
        assert "11 AM" not in message
        assert session.facts["selected_slot"]["start"] == SLOTS[0]["start"]

    @pytest.mark.asyncio
    async def test_spoken_confirmation_books(self):
        session = Session(session_id="sess-c")
        orchestrator = _orchestrator()
        await orchestrator.handle_utterance(session, "Hi, I'm Maya Patel. Do you take Delta Dental?")
        await orchestrator.handle_utterance(session, "Tuesday in San Jose, my number is 408-555-1234.")

        picked = await orchestrator.handle_utterance(session, "The 9am please.")
        assert picked.tool_results == []
        assert picked.reply == "Shall I book Tuesday at 9 AM for you?"

        confirmed = await orchestrator.handle_utterance(session, "Yes please.")
        assert [r.tool for r in confirmed.tool_results] == ["book_appointment"]
        assert session.has_intent("book_appointment")

    @pytest.mark.asyncio
    async def test_tools_run_once_per_intent(self):
        session = Session(session_id="sess-d")
        orchestrator = _orchestrator()

        await orchestrator.handle_utterance(session, "Do you take Aetna?")
        again = await orchestrator.handle_utterance(session, "I said Aetna.")

        assert again.tool_results == []
        assert len(session.tool_trace) == 1

    @pytest.mark.asyncio
    async def test_failed_tool_does_not_record_intent(self):
        backend = SimulatedClinicBackend()
        backend.check_insurance_coverage = AsyncMock(return_value={"covered": "maybe"})
        invoker = ToolInvoker(backend)
        session = Session(session_id="sess-e")

        outcome = await _orchestrator(invoker=invoker).handle_utterance(session, "Do you take Aetna?")

        assert outcome.tool_results[0].defect is True
        assert session.intents == []
        assert session.tool_trace[0].ok is False
        assert "trouble" in outcome.reply


class TestLLMReplies:
    @pytest.mark.asyncio
    async def test_llm_reply_used(self):
        chat = AsyncMock()
        chat.complete.return_value = LLMResponse(text="We do take Aetna. Which location works for you?")
        session = Session(session_id="sess-f")

        outcome = await _orchestrator(chat=chat).handle_utterance(session, "Do you take Aetna?")

        assert outcome.reply_source == "llm"
        assert outcome.reply.startswith("We do take Aetna")
        system_messages = [m["content"] for m in chat.complete.await_args.args[0] if m["role"] == "system"]
        assert any("check_insurance_coverage" in m for m in system_messages)

    @pytest.mark.asyncio
    async def test_llm_failure_falls_back_to_template(self):
        chat = AsyncMock()
        chat.complete.side_effect = ExternalCallError("llm")
        session = Session(session_id="sess-g")

        outcome = await _orchestrator(chat=chat).handle_utterance(session, "Do you take Aetna?")

        assert outcome.reply_source == "template"
        assert "Aetna" in outcome.reply
        assert session.transcript[-1].text == outcome.reply
