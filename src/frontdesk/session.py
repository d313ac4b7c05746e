"""
Per-call conversational state.

A Session is owned by exactly one VoicePipeline. Facts only ever grow (see
`dialogue.merge_facts`); transcript and tool trace are append-only; intents
keep their first-recorded order and are never duplicated.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class TranscriptEntry:
    speaker: str  # "caller" | "agent"
    text: str
    timestamp: str = field(default_factory=_utc_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return {"speaker": self.speaker, "text": self.text, "timestamp": self.timestamp}


@dataclass(frozen=True)
class ToolCallRecord:
    """One tool invocation as it appears in the audit trail."""
    tool: str
    input: Dict[str, Any]
    output: Optional[Dict[str, Any]]
    ok: bool
    idempotency_key: Optional[str] = None
    errors: List[Dict[str, Any]] = field(default_factory=list)
    replayed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        record: Dict[str, Any] = {
            "tool": self.tool,
            "input": copy.deepcopy(self.input),
            "output": copy.deepcopy(self.output),
            "ok": self.ok,
        }
        if self.idempotency_key:
            record["idempotency_key"] = self.idempotency_key
        if self.errors:
            record["errors"] = copy.deepcopy(self.errors)
        if self.replayed:
            record["replayed"] = True
        return record


@dataclass
class Session:
    session_id: str
    call_sid: str = ""
    room: Optional[Any] = None
    facts: Dict[str, Any] = field(default_factory=dict)
    transcript: List[TranscriptEntry] = field(default_factory=list)
    tool_trace: List[ToolCallRecord] = field(default_factory=list)
    started_at: str = field(default_factory=_utc_now_iso)
    _intents: Dict[str, None] = field(default_factory=dict, repr=False)

    @property
    def intents(self) -> List[str]:
        return list(self._intents)

    def has_intent(self, intent: str) -> bool:
        return intent in self._intents

    def record_intent(self, intent: str) -> bool:
        """Record an intent once. Returns False if it was already present."""
        if intent in self._intents:
            return False
        self._intents[intent] = None
        return True

    def add_transcript(self, speaker: str, text: str) -> TranscriptEntry:
        entry = TranscriptEntry(speaker=speaker, text=text)
        self.transcript.append(entry)
        return entry

    def record_tool_call(self, record: ToolCallRecord) -> None:
        self.tool_trace.append(record)

    def last_output(self, tool: str) -> Optional[Dict[str, Any]]:
        """Output of the most recent successful call to `tool`."""
        for record in reversed(self.tool_trace):
            if record.tool == tool and record.ok:
                return record.output
        return None

    def recent_transcript(self, limit: int) -> List[TranscriptEntry]:
        if limit <= 0:
            return []
        return self.transcript[-limit:]

    def outcome(self) -> Dict[str, Any]:
        booking = self.last_output("book_appointment")
        return {
            "booked": self.has_intent("book_appointment"),
            "confirmation_id": booking.get("confirmation_id") if booking else None,
            "next_steps": "SMS sent" if self.has_intent("send_sms") else "Pending",
        }

    def to_record(self, turn_state: str = "idle") -> Dict[str, Any]:
        """Snapshot handed to the audit sink at teardown."""
        room_name = getattr(self.room, "name", self.room)
        return {
            "session_id": self.session_id,
            "call_sid": self.call_sid,
            "room": room_name,
            "started_at": self.started_at,
            "ended_at": _utc_now_iso(),
            "turn_state": turn_state,
            "transcript": [entry.to_dict() for entry in self.transcript],
            "intents": self.intents,
            "facts": copy.deepcopy(self.facts),
            "tool_trace": [record.to_dict() for record in self.tool_trace],
            "outcome": self.outcome(),
        }
