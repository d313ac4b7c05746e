"""
Slot extraction from caller utterances.

Two extractors produce the same raw payload shape:
- LLMExtractor: OpenAI JSON mode (the default)
- RuleBasedExtractor: deterministic regex rules (offline mode, tests, and the
  fallback when the LLM is unavailable)

Extractor output is untrusted. `validate_extraction` checks every field on its
own against the `Extraction` model: invalid fields are dropped and logged, the
rest are kept. A payload that is not a JSON object raises
MalformedExtractionError and the caller leaves the facts untouched.
"""

import re
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import msgspec
import structlog
from pydantic import BaseModel, Field, ValidationError, field_validator

from src.frontdesk.llm import EXTRACTION_PROMPT, OpenAIChat
from src.frontdesk.resilience import ExternalCallError

logger = structlog.get_logger(__name__)

APPOINTMENT_TYPES = ("cleaning", "checkup", "filling", "root_canal", "extraction", "consultation")

_APPOINTMENT_SYNONYMS = {
    "clean": "cleaning",
    "teeth_cleaning": "cleaning",
    "hygiene": "cleaning",
    "check_up": "checkup",
    "exam": "checkup",
    "examination": "checkup",
    "rootcanal": "root_canal",
    "tooth_extraction": "extraction",
    "pull": "extraction",
    "consult": "consultation",
}

_EMPTY_MARKERS = {"", "null", "none", "unknown", "n/a", "na"}
_NAME_RE = re.compile(r"^[A-Za-z][A-Za-z'\-]{0,39}$")


class MalformedExtractionError(ValueError):
    """The extractor returned something that is not a JSON object."""


def _blank_to_none(value: Any) -> Any:
    if isinstance(value, str) and value.strip().lower() in _EMPTY_MARKERS:
        return None
    return value


def normalize_phone(value: str) -> str:
    """Normalize a North American or international number to E.164."""
    raw = str(value).strip()
    digits = re.sub(r"\D", "", raw)
    if raw.startswith("+") and 8 <= len(digits) <= 15 and not digits.startswith("0"):
        return f"+{digits}"
    if len(digits) == 10 and digits[0] not in "01":
        return f"+1{digits}"
    if len(digits) == 11 and digits.startswith("1"):
        return f"+{digits}"
    raise ValueError(f"not a dialable phone number: {value!r}")


class Extraction(BaseModel):
    """Facts that can be extracted from a single utterance."""

    patient_first: Optional[str] = Field(default=None, description="Caller's first name")
    patient_last: Optional[str] = Field(default=None, description="Caller's last name")
    phone: Optional[str] = Field(default=None, description="Callback number, E.164")
    payer: Optional[str] = Field(default=None, max_length=80, description="Insurance company")
    plan: Optional[str] = Field(default=None, max_length=40, description="Insurance plan")
    appointment_type: Optional[str] = Field(default=None, description="One of APPOINTMENT_TYPES")
    time_pref: Optional[str] = Field(default=None, max_length=80, description="Preferred day/time")
    location_id: Optional[str] = Field(default=None, max_length=80, description="Clinic location")
    slot_choice: Optional[str] = Field(default=None, max_length=40, description="Offered slot the caller picked")
    wants_booking: Optional[bool] = Field(default=None, description="Caller asked to book")
    wants_sms: Optional[bool] = Field(default=None, description="Caller wants an SMS confirmation")

    @field_validator("*", mode="before")
    @classmethod
    def _treat_placeholders_as_null(cls, value: Any) -> Any:
        return _blank_to_none(value)

    @field_validator("patient_first", "patient_last")
    @classmethod
    def _valid_name(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = value.strip()
        if not _NAME_RE.match(value):
            raise ValueError("name must be a single word of letters")
        return value[0].upper() + value[1:]

    @field_validator("phone")
    @classmethod
    def _valid_phone(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return normalize_phone(value)

    @field_validator("payer", "plan", "time_pref", "location_id", "slot_choice")
    @classmethod
    def _strip(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return " ".join(value.split())

    @field_validator("appointment_type")
    @classmethod
    def _valid_appointment_type(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        key = re.sub(r"[\s\-]+", "_", value.strip().lower())
        key = _APPOINTMENT_SYNONYMS.get(key, key)
        if key not in APPOINTMENT_TYPES:
            raise ValueError(f"unsupported appointment type: {value!r}")
        return key


@dataclass
class ExtractionResult:
    """Validated output of one extraction attempt."""
    facts: Dict[str, Any] = field(default_factory=dict)
    rejected: Dict[str, str] = field(default_factory=dict)
    source: str = "rules"
    latency_ms: float = 0.0
    error: Optional[str] = None


def validate_extraction(payload: Any, source: str = "rules") -> ExtractionResult:
    """
    Validate an untrusted extraction payload field by field.

    Raises:
        MalformedExtractionError: payload is not a dict
    """
    if not isinstance(payload, dict):
        raise MalformedExtractionError(f"expected a JSON object, got {type(payload).__name__}")

    result = ExtractionResult(source=source)
    for name, value in payload.items():
        if name not in Extraction.model_fields:
            result.rejected[str(name)] = "unknown field"
            continue
        try:
            partial = Extraction.model_validate({name: value})
        except ValidationError as e:
            errors = e.errors()
            result.rejected[name] = errors[0].get("msg", "invalid") if errors else "invalid"
            continue
        checked = getattr(partial, name)
        if checked is not None:
            result.facts[name] = checked

    if result.rejected:
        logger.info("Extraction fields dropped", source=source, rejected=result.rejected)
    return result


def parse_extraction_json(text: str, source: str = "llm") -> ExtractionResult:
    """Decode a JSON-mode completion and validate it."""
    try:
        payload = msgspec.json.decode(text.encode("utf-8") if isinstance(text, str) else text)
    except msgspec.DecodeError as e:
        raise MalformedExtractionError(f"invalid JSON: {e}")
    return validate_extraction(payload, source=source)


class Extractor(ABC):
    """Turns one caller utterance into validated facts."""

    @abstractmethod
    async def extract(self, text: str, history: Optional[List[Dict[str, str]]] = None) -> ExtractionResult:
        ...


# =============================================================================
# Rule-based extraction
# =============================================================================

_NAME_STOPWORDS = {
    "Calling", "Looking", "Just", "Not", "Sorry", "Interested", "Here", "Good",
    "Fine", "Trying", "Wondering", "Hoping", "Available", "Free", "Okay", "Ok",
}

_NAME_PATTERN = re.compile(
    r"(?i:\b(?:i['\u2019]?m|i am|my name is|this is|it's|name's))\s+"
    r"([A-Z][a-z'\-]+)(?:\s+([A-Z][a-z'\-]+))?"
)

_PHONE_PATTERN = re.compile(
    r"(\+\d{1,3}[\s.\-]?)?\(?\b(\d{3})\)?[\s.\-]?(\d{3})[\s.\-]?(\d{4})\b"
)

# Longest names first so "Blue Cross Blue Shield" wins over "Blue Cross".
_KNOWN_PAYERS = (
    "Blue Cross Blue Shield",
    "UnitedHealthcare",
    "United Healthcare",
    "Delta Dental",
    "Blue Cross",
    "Blue Shield",
    "Guardian",
    "Medicaid",
    "Medicare",
    "MetLife",
    "Humana",
    "Kaiser",
    "Aetna",
    "Cigna",
)
_PAYER_PATTERN = re.compile(
    r"\b(" + "|".join(re.escape(p) for p in _KNOWN_PAYERS) + r")\b", re.IGNORECASE
)
_PAYER_CANONICAL = {p.lower(): p for p in _KNOWN_PAYERS}

_PLAN_PATTERN = re.compile(r"\b(PPO|DHMO|HMO|EPO|POS|Medicare Advantage)\b", re.IGNORECASE)

_APPOINTMENT_PATTERNS = (
    ("root_canal", re.compile(r"\broot[\s\-]?canal\b", re.IGNORECASE)),
    ("cleaning", re.compile(r"\bclean(?:ing)?\b", re.IGNORECASE)),
    ("checkup", re.compile(r"\b(?:check[\s\-]?up|exam)\b", re.IGNORECASE)),
    ("filling", re.compile(r"\bfilling\b", re.IGNORECASE)),
    ("extraction", re.compile(r"\b(?:extraction|pull(?:ed)? (?:a|my) tooth)\b", re.IGNORECASE)),
    ("consultation", re.compile(r"\bconsult(?:ation)?\b", re.IGNORECASE)),
)

_WEEKDAYS = r"monday|tuesday|wednesday|thursday|friday|saturday|sunday"
_TIME_PREF_PATTERN = re.compile(
    r"\b((?:(?:next|this)\s+)?(?:" + _WEEKDAYS + r"|tomorrow|today)"
    r"(?:\s+(?:morning|afternoon|evening))?"
    r"|(?:in the\s+)?(?:morning|afternoon|evening))\b",
    re.IGNORECASE,
)

_LOCATION_PATTERN = re.compile(r"(?i:\b(?:in|at|near))\s+((?:[A-Z][a-z]+)(?:\s+[A-Z][a-z]+){0,2})")
_NOT_LOCATIONS = {
    "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday",
    "The", "January", "February", "March", "April", "May", "June", "July",
    "August", "September", "October", "November", "December",
}

_SLOT_TIME_PATTERN = re.compile(
    r"\b(\d{1,2})(?::(\d{2}))?\s*(a\.?m\.?|p\.?m\.?|o['\u2019]?clock)(?![a-z])",
    re.IGNORECASE,
)
_SLOT_ORDINAL_PATTERN = re.compile(r"\b(first|second|third|earliest|last|latest)\b(?:\s+(?:one|slot|option))?", re.IGNORECASE)

_BOOKING_PATTERN = re.compile(
    r"\b(book|schedule|reserve|lock (?:it|that) in|that works|sounds good|let['\u2019]?s do)\b",
    re.IGNORECASE,
)
_SMS_PATTERN = re.compile(
    r"\b(text me|send me a text|send (?:me )?a confirmation|text (?:it|the confirmation)|sms)\b",
    re.IGNORECASE,
)


class RuleBasedExtractor(Extractor):
    """Deterministic extractor over a fixed vocabulary of payers, plans and phrases."""

    def extract_raw(self, text: str) -> Dict[str, Any]:
        payload: Dict[str, Any] = {}

        name = _NAME_PATTERN.search(text)
        if name and name.group(1) not in _NAME_STOPWORDS:
            payload["patient_first"] = name.group(1)
            if name.group(2) and name.group(2) not in _NAME_STOPWORDS:
                payload["patient_last"] = name.group(2)

        phone = _PHONE_PATTERN.search(text)
        if phone:
            payload["phone"] = "".join(part for part in phone.groups() if part)

        payer = _PAYER_PATTERN.search(text)
        if payer:
            payload["payer"] = _PAYER_CANONICAL.get(payer.group(1).lower(), payer.group(1))

        plan = _PLAN_PATTERN.search(text)
        if plan:
            payload["plan"] = plan.group(1).upper() if len(plan.group(1)) <= 4 else plan.group(1).title()

        for appointment_type, pattern in _APPOINTMENT_PATTERNS:
            if pattern.search(text):
                payload["appointment_type"] = appointment_type
                break

        time_pref = _TIME_PREF_PATTERN.search(text)
        if time_pref:
            payload["time_pref"] = time_pref.group(1).lower()

        for match in _LOCATION_PATTERN.finditer(text):
            words = [w for w in match.group(1).split() if w not in _NOT_LOCATIONS]
            if words and words[0] == match.group(1).split()[0]:
                payload["location_id"] = " ".join(words)
                break

        slot_time = _SLOT_TIME_PATTERN.search(text)
        if slot_time:
            payload["slot_choice"] = slot_time.group(0).lower().replace(" ", "")
        else:
            ordinal = _SLOT_ORDINAL_PATTERN.search(text)
            if ordinal:
                payload["slot_choice"] = ordinal.group(1).lower()

        if _BOOKING_PATTERN.search(text):
            payload["wants_booking"] = True
        if _SMS_PATTERN.search(text):
            payload["wants_sms"] = True

        return payload

    async def extract(self, text: str, history: Optional[List[Dict[str, str]]] = None) -> ExtractionResult:
        start_time = time.time()
        result = validate_extraction(self.extract_raw(text), source="rules")
        result.latency_ms = (time.time() - start_time) * 1000
        return result


# =============================================================================
# LLM extraction
# =============================================================================


class LLMExtractor(Extractor):
    """OpenAI JSON-mode extractor with a rule-based fallback."""

    def __init__(self, chat: OpenAIChat, fallback: Optional[Extractor] = None):
        self.chat = chat
        self.fallback = fallback

    async def extract(self, text: str, history: Optional[List[Dict[str, str]]] = None) -> ExtractionResult:
        start_time = time.time()
        messages = [{"role": "system", "content": EXTRACTION_PROMPT}]
        if history:
            messages.extend(history[-4:])
        messages.append({"role": "user", "content": text})

        try:
            response = await self.chat.complete(messages, json_mode=True, max_tokens=300, temperature=0.0)
        except ExternalCallError as e:
            logger.warning("LLM extraction unavailable", error=str(e), fallback=self.fallback is not None)
            if self.fallback is not None:
                return await self.fallback.extract(text, history)
            return ExtractionResult(source="llm", error=str(e))

        latency_ms = (time.time() - start_time) * 1000
        try:
            result = parse_extraction_json(response.text, source="llm")
        except MalformedExtractionError as e:
            logger.warning("Malformed extraction payload, facts unchanged", error=str(e))
            return ExtractionResult(source="llm", error=str(e), latency_ms=latency_ms)

        result.latency_ms = latency_ms
        logger.info(
            "Extraction completed",
            fields=sorted(result.facts),
            rejected=sorted(result.rejected),
            latency_ms=round(latency_ms, 2),
        )
        return result


def redact(text: str) -> str:
    """Mask phone numbers before an utterance is written to the logs."""
    return _PHONE_PATTERN.sub(lambda m: "***-***-" + m.group(4)[-2:].rjust(4, "*"), text)
