"""
Twilio Media Streams wire format.

Inbound frames are decoded straight into typed events, a union tagged on the
`event` field. `media.payload` is base64 on the wire and arrives here as raw
mu-law bytes. Twilio sends counters as strings, so decoding is lax.

Outbound frames:
- media: 20ms of base64 mu-law 8kHz
- mark: acknowledged by Twilio once everything queued before it has played
- clear: drop whatever Twilio still has buffered (barge-in)

`MediaStream` tracks one stream's start/stop window. Media outside that
window is discarded.
"""

import re
from enum import Enum
from typing import Any, Dict, List, Optional, Union

import msgspec
import structlog

from src.frontdesk.audio import TWILIO_FRAME_SIZE, chunk_audio

logger = structlog.get_logger(__name__)

_MARK_NAME = re.compile(r"^g(\d+)_m(\d+)$")
_INBOUND_TRACKS = ("inbound", "inbound_track", "")


class StartMetadata(msgspec.Struct, rename="camel"):
    stream_sid: str = ""
    call_sid: str = ""
    account_sid: str = ""
    tracks: List[str] = []
    custom_parameters: Dict[str, Any] = {}


class MediaChunk(msgspec.Struct):
    payload: bytes = b""
    track: str = "inbound"
    chunk: int = 0
    timestamp: str = ""


class MarkLabel(msgspec.Struct):
    name: str = ""


class Connected(msgspec.Struct, tag_field="event", tag="connected"):
    protocol: str = ""
    version: str = ""


class Start(msgspec.Struct, tag_field="event", tag="start", rename="camel"):
    start: StartMetadata
    stream_sid: str = ""
    sequence_number: int = 0

    @property
    def sid(self) -> str:
        return self.stream_sid or self.start.stream_sid


class Media(msgspec.Struct, tag_field="event", tag="media", rename="camel"):
    media: MediaChunk
    stream_sid: str = ""
    sequence_number: int = 0


class Mark(msgspec.Struct, tag_field="event", tag="mark", rename="camel"):
    mark: MarkLabel = msgspec.field(default_factory=MarkLabel)
    stream_sid: str = ""


class Stop(msgspec.Struct, tag_field="event", tag="stop", rename="camel"):
    stream_sid: str = ""


InboundEvent = Union[Connected, Start, Media, Mark, Stop]


class _OutboundPayload(msgspec.Struct):
    payload: bytes


class _OutboundMedia(msgspec.Struct, tag_field="event", tag="media", rename="camel"):
    stream_sid: str
    media: _OutboundPayload


class _OutboundMark(msgspec.Struct, tag_field="event", tag="mark", rename="camel"):
    stream_sid: str
    mark: MarkLabel


class _OutboundClear(msgspec.Struct, tag_field="event", tag="clear", rename="camel"):
    stream_sid: str


_decoder = msgspec.json.Decoder(InboundEvent, strict=False)
_encoder = msgspec.json.Encoder()


def parse_twilio_message(raw_message: Union[str, bytes]) -> InboundEvent:
    """
    Decode one Twilio WebSocket frame.

    Raises:
        ValueError: not JSON, an unknown event, or a malformed body
    """
    data = raw_message.encode("utf-8") if isinstance(raw_message, str) else raw_message
    try:
        return _decoder.decode(data)
    except msgspec.DecodeError as e:
        raise ValueError(f"Invalid Twilio message: {e}") from e


def encode_media(stream_sid: str, ulaw_audio: bytes) -> str:
    return _encoder.encode(_OutboundMedia(stream_sid, _OutboundPayload(ulaw_audio))).decode("utf-8")


def encode_mark(stream_sid: str, name: str) -> str:
    return _encoder.encode(_OutboundMark(stream_sid, MarkLabel(name))).decode("utf-8")


def encode_clear(stream_sid: str) -> str:
    return _encoder.encode(_OutboundClear(stream_sid)).decode("utf-8")


def mark_name(generation: int, sequence: int) -> str:
    return f"g{generation}_m{sequence}"


def mark_generation(name: str) -> Optional[int]:
    """Playback generation encoded in a mark name, or None for foreign marks."""
    match = _MARK_NAME.match(name or "")
    return int(match.group(1)) if match else None


class StreamPhase(str, Enum):
    AWAITING_START = "awaiting_start"
    STREAMING = "streaming"
    STOPPED = "stopped"


class MediaStream:
    """
    One Twilio media stream.

    Holds the sids from `start`, the start/stop phase, and the playback
    generation that outbound marks are tagged with. Outbound builders return
    nothing until the stream has started.
    """

    def __init__(self):
        self.phase = StreamPhase.AWAITING_START
        self.stream_sid = ""
        self.call_sid = ""
        self.account_sid = ""
        self.generation = 0
        self._mark_seq = 0

    @property
    def is_streaming(self) -> bool:
        return self.phase == StreamPhase.STREAMING

    def open(self, event: Start) -> bool:
        """Enter the streaming phase. A second `start` is ignored and returns False."""
        if self.phase != StreamPhase.AWAITING_START:
            logger.warning("Duplicate or late start ignored", stream_sid=event.sid, phase=self.phase.value)
            return False

        self.stream_sid = event.sid
        self.call_sid = event.start.call_sid
        self.account_sid = event.start.account_sid
        self.phase = StreamPhase.STREAMING
        logger.info("Stream started", stream_sid=self.stream_sid, call_sid=self.call_sid)
        return True

    def close(self) -> bool:
        if self.phase == StreamPhase.STOPPED:
            return False
        self.phase = StreamPhase.STOPPED
        logger.info("Stream stopped", stream_sid=self.stream_sid, call_sid=self.call_sid)
        return True

    def accepts(self, event: Media) -> bool:
        """Caller audio counts only while streaming and only from the inbound track."""
        return self.is_streaming and event.media.track in _INBOUND_TRACKS

    def media_frames(self, ulaw_audio: bytes) -> List[str]:
        if not self.stream_sid:
            return []
        return [encode_media(self.stream_sid, chunk) for chunk in chunk_audio(ulaw_audio, TWILIO_FRAME_SIZE)]

    def next_mark(self) -> str:
        if not self.stream_sid:
            return ""
        self._mark_seq += 1
        return encode_mark(self.stream_sid, mark_name(self.generation, self._mark_seq))

    def new_generation(self) -> int:
        """Start a new playback generation; marks from earlier ones become stale."""
        self.generation += 1
        self._mark_seq = 0
        return self.generation

    def clear(self) -> str:
        if not self.stream_sid:
            return ""
        logger.info("Clearing Twilio audio buffer", stream_sid=self.stream_sid)
        return encode_clear(self.stream_sid)
