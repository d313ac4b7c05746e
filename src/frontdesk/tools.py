"""
Clinic tool layer: schemas, registry, invoker and the simulated backend.

Every tool has a fixed pydantic input and output model, built once at import
time and shared read-only by all calls. The invoker validates the input
before any side effect happens, validates the output before it is returned
or stored, and makes booking idempotent per key.
"""

from __future__ import annotations

import asyncio
import secrets
import string
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Literal, Mapping, Optional, Type

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from src.frontdesk.resilience import ExternalCallError, ResilientCaller

logger = structlog.get_logger(__name__)

E164_PATTERN = r"^\+[1-9]\d{7,14}$"
DEFAULT_PROCEDURE_CODE = "D1110"
DEFAULT_PROVIDER_ID = "DR001"


class ToolNotFoundError(KeyError):
    """No tool is registered under this name."""

    def __init__(self, name: str):
        super().__init__(name)
        self.name = name

    def __str__(self) -> str:
        return f"Unknown tool: {self.name}"


class ToolDefectError(Exception):
    """A tool produced output that does not match its own output schema."""

    def __init__(self, tool: str, errors: list[dict[str, Any]]):
        super().__init__(f"{tool} returned invalid output")
        self.tool = tool
        self.errors = errors


# =============================================================================
# Schemas
# =============================================================================


class _ToolInput(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True, frozen=True)


class _ToolOutput(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)


class CoverageInput(_ToolInput):
    payer: str = Field(min_length=1, description="Insurance company")
    plan: Optional[str] = Field(default=None, description="Plan name, e.g. PPO")
    procedure_code: str = Field(default=DEFAULT_PROCEDURE_CODE, pattern=r"^D\d{4}$")


class CoverageOutput(_ToolOutput):
    covered: bool
    copay_estimate: float = Field(ge=0)
    notes: str


class DateRange(_ToolInput):
    start: datetime
    end: datetime

    @model_validator(mode="after")
    def _ordered(self) -> "DateRange":
        if self.end <= self.start:
            raise ValueError("date_range.end must be after date_range.start")
        return self


class AvailabilityInput(_ToolInput):
    location_id: str = Field(min_length=1)
    date_range: DateRange
    appointment_type: str = Field(default="cleaning", min_length=1)
    provider_id: Optional[str] = None


class Slot(_ToolInput):
    start: datetime
    end: datetime
    provider_id: str = Field(min_length=1)


class AvailabilityOutput(_ToolOutput):
    slots: list[Slot]


class PatientRef(_ToolInput):
    first: str = Field(min_length=1)
    last: Optional[str] = None
    phone: str = Field(pattern=E164_PATTERN)


class BookingInput(_ToolInput):
    patient: PatientRef
    slot: Slot
    appointment_type: str = Field(default="cleaning", min_length=1)
    location_id: Optional[str] = None
    idempotency_key: str = Field(min_length=8, max_length=128)


class BookingOutput(_ToolOutput):
    confirmation_id: str = Field(pattern=r"^CONF-[A-Z0-9]{8}$")
    status: Literal["booked"]


class SmsInput(_ToolInput):
    to: str = Field(pattern=E164_PATTERN)
    message: str = Field(min_length=1, max_length=480)


class SmsOutput(_ToolOutput):
    queued: bool
    message_id: str = Field(pattern=r"^SM[A-Z0-9]{10}$")

    @field_validator("queued")
    @classmethod
    def _must_queue(cls, value: bool) -> bool:
        if not value:
            raise ValueError("SMS must be queued")
        return value


@dataclass(frozen=True)
class ToolSchema:
    name: str
    intent: str
    description: str
    input_model: Type[BaseModel]
    output_model: Type[BaseModel]
    idempotent: bool = False
    aliases: tuple[str, ...] = ()


TOOL_SCHEMAS: Mapping[str, ToolSchema] = MappingProxyType(
    {
        schema.name: schema
        for schema in (
            ToolSchema(
                name="check_insurance_coverage",
                intent="coverage_check",
                description="Check whether a payer/plan covers a procedure and estimate the copay.",
                input_model=CoverageInput,
                output_model=CoverageOutput,
                aliases=("checkInsuranceCoverage",),
            ),
            ToolSchema(
                name="get_provider_availability",
                intent="availability",
                description="List open appointment slots at a location within a date range.",
                input_model=AvailabilityInput,
                output_model=AvailabilityOutput,
                aliases=("getProviderAvailability",),
            ),
            ToolSchema(
                name="book_appointment",
                intent="book_appointment",
                description="Book a slot for a patient. Repeats with the same idempotency_key return the first result.",
                input_model=BookingInput,
                output_model=BookingOutput,
                idempotent=True,
                aliases=("bookAppointment",),
            ),
            ToolSchema(
                name="send_sms",
                intent="send_sms",
                description="Queue an SMS to the patient.",
                input_model=SmsInput,
                output_model=SmsOutput,
                aliases=("sendSms",),
            ),
        )
    }
)

_ALIASES: Mapping[str, str] = MappingProxyType(
    {alias: schema.name for schema in TOOL_SCHEMAS.values() for alias in schema.aliases}
)


def resolve_tool(name: str) -> ToolSchema:
    canonical = _ALIASES.get(name, name)
    schema = TOOL_SCHEMAS.get(canonical)
    if schema is None:
        raise ToolNotFoundError(name)
    return schema


def tool_definitions() -> list[dict[str, Any]]:
    """Function-calling style descriptions of every tool."""
    return [
        {
            "type": "function",
            "name": schema.name,
            "description": schema.description,
            "parameters": schema.input_model.model_json_schema(),
        }
        for schema in TOOL_SCHEMAS.values()
    ]


def _format_errors(exc: ValidationError) -> list[dict[str, Any]]:
    return [
        {
            "field": ".".join(str(part) for part in err.get("loc", ())) or "(root)",
            "message": err.get("msg", ""),
            "type": err.get("type", ""),
        }
        for err in exc.errors()
    ]


# =============================================================================
# Simulated clinic backend
# =============================================================================


_ID_ALPHABET = string.ascii_uppercase + string.digits
_COVERED_PAYER_MARKERS = ("delta", "blue", "dental")


def _random_id(length: int) -> str:
    return "".join(secrets.choice(_ID_ALPHABET) for _ in range(length))


class SimulatedClinicBackend:
    """In-process stand-in for the practice-management system."""

    async def check_insurance_coverage(self, request: CoverageInput) -> dict[str, Any]:
        payer = request.payer.lower()
        covered = any(marker in payer for marker in _COVERED_PAYER_MARKERS)
        return {
            "covered": covered,
            "copay_estimate": 25 if covered else 0,
            "notes": "Covered under preventive care" if covered else "Not in network - cash pay available",
        }

    async def get_provider_availability(self, request: AvailabilityInput) -> dict[str, Any]:
        day = request.date_range.start
        provider_id = request.provider_id or DEFAULT_PROVIDER_ID
        slots = []
        for i in range(3):
            start = day.replace(hour=9 + i * 2, minute=0, second=0, microsecond=0)
            slots.append(
                {
                    "start": start.isoformat(),
                    "end": (start + timedelta(hours=1)).isoformat(),
                    "provider_id": provider_id,
                }
            )
        return {"slots": slots}

    async def book_appointment(self, request: BookingInput) -> dict[str, Any]:
        return {"confirmation_id": f"CONF-{_random_id(8)}", "status": "booked"}

    async def send_sms(self, request: SmsInput) -> dict[str, Any]:
        return {"queued": True, "message_id": f"SM{_random_id(10)}"}


# =============================================================================
# Idempotency
# =============================================================================


@dataclass
class _StoredResult:
    fingerprint: str
    output: dict[str, Any]
    stored_at: float = field(default_factory=time.monotonic)


class IdempotencyStore:
    """
    Per-key check-and-insert for side-effecting tools.

    Concurrent requests with the same key serialize on that key's lock; the
    first one to complete stores its result and the rest replay it. Distinct
    keys never contend.
    """

    def __init__(self) -> None:
        self._results: dict[str, _StoredResult] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def __contains__(self, key: str) -> bool:
        return key in self._results

    def __len__(self) -> int:
        return len(self._results)

    def get(self, key: str) -> Optional[dict[str, Any]]:
        stored = self._results.get(key)
        return dict(stored.output) if stored else None

    async def run(
        self,
        key: str,
        fingerprint: str,
        producer: Callable[[], Awaitable[dict[str, Any]]],
    ) -> tuple[dict[str, Any], bool]:
        """Return (output, replayed). `producer` runs at most once per key."""
        stored = self._results.get(key)
        if stored is None:
            lock = self._locks.setdefault(key, asyncio.Lock())
            async with lock:
                stored = self._results.get(key)
                if stored is None:
                    output = await producer()
                    self._results[key] = _StoredResult(fingerprint=fingerprint, output=output)
                    self._locks.pop(key, None)
                    return dict(output), False

        if stored.fingerprint != fingerprint:
            logger.warning(
                "Idempotency key reused with different input, replaying first result",
                idempotency_key=key,
            )
        return dict(stored.output), True


# =============================================================================
# Invoker
# =============================================================================


@dataclass(frozen=True)
class ToolResult:
    tool: str
    ok: bool
    input: dict[str, Any]
    output: Optional[dict[str, Any]] = None
    errors: list[dict[str, Any]] = field(default_factory=list)
    defect: bool = False
    replayed: bool = False
    idempotency_key: Optional[str] = None

    def to_response(self) -> dict[str, Any]:
        if self.ok:
            return dict(self.output or {})
        body: dict[str, Any] = {"ok": False, "errors": self.errors}
        if self.defect:
            body["defect"] = True
        return body


class ToolInvoker:
    """Validates, executes and records tool calls against a clinic backend."""

    def __init__(
        self,
        backend: Optional[SimulatedClinicBackend] = None,
        *,
        idempotency: Optional[IdempotencyStore] = None,
        caller: Optional[ResilientCaller] = None,
    ):
        self.backend = backend or SimulatedClinicBackend()
        self.idempotency = idempotency or IdempotencyStore()
        self.caller = caller
        self._handlers: Mapping[str, Callable[[Any], Awaitable[dict[str, Any]]]] = MappingProxyType(
            {
                "check_insurance_coverage": self.backend.check_insurance_coverage,
                "get_provider_availability": self.backend.get_provider_availability,
                "book_appointment": self.backend.book_appointment,
                "send_sms": self.backend.send_sms,
            }
        )

    async def invoke(self, name: str, payload: Any) -> ToolResult:
        """
        Run one tool call.

        Raises:
            ToolNotFoundError: `name` is not a registered tool
        """
        schema = resolve_tool(name)
        raw_input = payload if isinstance(payload, dict) else {}

        if not isinstance(payload, dict):
            errors = [{"field": "(root)", "message": "Input should be an object", "type": "dict_type"}]
            return self._rejected(schema, raw_input, errors)

        try:
            request = schema.input_model.model_validate(payload)
        except ValidationError as e:
            return self._rejected(schema, raw_input, _format_errors(e))

        clean_input = request.model_dump(mode="json")
        idempotency_key = getattr(request, "idempotency_key", None) if schema.idempotent else None

        async def produce() -> dict[str, Any]:
            output = await self._execute(schema, request)
            return self._validate_output(schema, output)

        started = time.time()
        try:
            if idempotency_key:
                fingerprint = repr(sorted((k, repr(v)) for k, v in clean_input.items() if k != "idempotency_key"))
                output, replayed = await self.idempotency.run(idempotency_key, fingerprint, produce)
            else:
                output, replayed = await produce(), False
        except ToolDefectError as e:
            logger.error("Tool output failed validation", tool=schema.name, errors=e.errors)
            return ToolResult(
                tool=schema.name,
                ok=False,
                input=clean_input,
                errors=e.errors,
                defect=True,
                idempotency_key=idempotency_key,
            )
        except ExternalCallError as e:
            logger.warning("Tool backend unavailable", tool=schema.name, error=str(e))
            return ToolResult(
                tool=schema.name,
                ok=False,
                input=clean_input,
                errors=[{"field": "(backend)", "message": str(e), "type": "unavailable"}],
                idempotency_key=idempotency_key,
            )

        logger.info(
            "Tool call completed",
            tool=schema.name,
            replayed=replayed,
            ms=int((time.time() - started) * 1000),
        )
        return ToolResult(
            tool=schema.name,
            ok=True,
            input=clean_input,
            output=output,
            replayed=replayed,
            idempotency_key=idempotency_key,
        )

    async def _execute(self, schema: ToolSchema, request: BaseModel) -> Any:
        handler = self._handlers[schema.name]
        if self.caller is None:
            return await handler(request)
        return await self.caller.call(lambda: handler(request))

    @staticmethod
    def _validate_output(schema: ToolSchema, output: Any) -> dict[str, Any]:
        try:
            return schema.output_model.model_validate(output).model_dump(mode="json")
        except ValidationError as e:
            raise ToolDefectError(schema.name, _format_errors(e))

    @staticmethod
    def _rejected(schema: ToolSchema, raw_input: dict[str, Any], errors: list[dict[str, Any]]) -> ToolResult:
        logger.warning("Tool input rejected", tool=schema.name, errors=errors)
        return ToolResult(tool=schema.name, ok=False, input=dict(raw_input), errors=errors)
