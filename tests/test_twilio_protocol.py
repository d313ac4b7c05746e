"""
Tests for Twilio protocol handling.
"""

import pytest
import json
import base64

from src.frontdesk.twilio_protocol import (
    Connected,
    Mark,
    Media,
    MediaChunk,
    MediaStream,
    Start,
    StartMetadata,
    Stop,
    StreamPhase,
    encode_clear,
    encode_mark,
    encode_media,
    mark_generation,
    parse_twilio_message,
)


def _start_event(stream_sid="MZ123"):
    return Start(
        start=StartMetadata(call_sid="CA456", account_sid="AC789", tracks=["inbound"]),
        stream_sid=stream_sid,
    )


def _media_event(track="inbound"):
    return Media(media=MediaChunk(payload=b"\xff" * 160, track=track, chunk=1), stream_sid="MZ123")


class TestMessageParsing:
    """Tests for parsing Twilio messages."""

    def test_parse_connected_event(self):
        event = parse_twilio_message(json.dumps({"event": "connected", "protocol": "Call", "version": "1.0.0"}))

        assert isinstance(event, Connected)
        assert event.protocol == "Call"

    def test_parse_start_event(self, twilio_start_message):
        event = parse_twilio_message(twilio_start_message)

        assert isinstance(event, Start)
        assert event.sid == "MZ123456"
        assert event.start.call_sid == "CA789012"
        assert event.start.account_sid == "AC345678"
        assert event.start.tracks == ["inbound"]

    def test_start_falls_back_to_nested_stream_sid(self):
        event = parse_twilio_message(json.dumps({
            "event": "start",
            "start": {"streamSid": "MZ777", "callSid": "CA1"},
        }))

        assert event.sid == "MZ777"

    def test_parse_media_event(self, twilio_media_message, sample_ulaw_audio):
        event = parse_twilio_message(twilio_media_message)

        assert isinstance(event, Media)
        assert event.stream_sid == "MZ123456"
        assert event.media.track == "inbound"
        assert event.media.chunk == 1
        assert event.media.payload == sample_ulaw_audio

    def test_parse_media_accepts_bytes(self, twilio_media_message):
        assert isinstance(parse_twilio_message(twilio_media_message.encode("utf-8")), Media)

    def test_string_counters_accepted(self):
        event = parse_twilio_message(json.dumps({
            "event": "media",
            "sequenceNumber": "4",
            "streamSid": "MZ123",
            "media": {"track": "inbound", "chunk": "2", "timestamp": "40", "payload": ""},
        }))

        assert event.sequence_number == 4
        assert event.media.chunk == 2
        assert event.media.payload == b""

    def test_parse_mark_event(self):
        event = parse_twilio_message(json.dumps({
            "event": "mark",
            "streamSid": "MZ123",
            "mark": {"name": "g0_m1"},
        }))

        assert isinstance(event, Mark)
        assert event.mark.name == "g0_m1"

    def test_parse_stop_event(self, twilio_stop_message):
        assert isinstance(parse_twilio_message(twilio_stop_message), Stop)

    @pytest.mark.parametrize(
        "raw",
        [
            "not valid json",
            "[1, 2, 3]",
            json.dumps({"event": "dtmf"}),
            json.dumps({"protocol": "Call"}),
            json.dumps({"event": "media", "media": "oops"}),
            json.dumps({"event": "media", "streamSid": "MZ123"}),
            json.dumps({"event": "media", "media": {"payload": "***not base64***"}}),
        ],
    )
    def test_malformed_messages_raise_value_error(self, raw):
        with pytest.raises(ValueError, match="Invalid Twilio message"):
            parse_twilio_message(raw)


class TestMessageCreation:
    """Tests for creating Twilio messages."""

    def test_encode_media(self):
        audio_data = b"\xff" * 160
        parsed = json.loads(encode_media("MZ123", audio_data))

        assert parsed["event"] == "media"
        assert parsed["streamSid"] == "MZ123"
        assert base64.b64decode(parsed["media"]["payload"]) == audio_data

    def test_encode_mark(self):
        parsed = json.loads(encode_mark("MZ123", "g1_m2"))

        assert parsed == {"event": "mark", "streamSid": "MZ123", "mark": {"name": "g1_m2"}}

    def test_encode_clear(self):
        assert json.loads(encode_clear("MZ123")) == {"event": "clear", "streamSid": "MZ123"}

    def test_mark_generation(self):
        assert mark_generation("g12_m3") == 12
        assert mark_generation("mark_1") is None
        assert mark_generation("gx_m1") is None
        assert mark_generation("") is None


class TestMediaStream:
    def test_initial_state(self):
        stream = MediaStream()

        assert stream.stream_sid == ""
        assert stream.call_sid == ""
        assert stream.is_streaming is False
        assert stream.phase == StreamPhase.AWAITING_START

    def test_open(self):
        stream = MediaStream()

        assert stream.open(_start_event()) is True
        assert stream.stream_sid == "MZ123"
        assert stream.call_sid == "CA456"
        assert stream.is_streaming is True

    def test_duplicate_start_ignored(self):
        stream = MediaStream()
        stream.open(_start_event("MZ123"))

        assert stream.open(_start_event("MZ999")) is False
        assert stream.stream_sid == "MZ123"

    def test_start_after_stop_ignored(self):
        stream = MediaStream()
        stream.open(_start_event())
        assert stream.close() is True

        assert stream.open(_start_event("MZ999")) is False
        assert stream.phase == StreamPhase.STOPPED
        assert stream.close() is False

    def test_media_only_accepted_while_streaming(self):
        stream = MediaStream()
        media = _media_event()

        assert stream.accepts(media) is False

        stream.open(_start_event())
        assert stream.accepts(media) is True
        assert stream.accepts(_media_event(track="outbound")) is False

        stream.close()
        assert stream.accepts(media) is False

    def test_media_frames_are_chunked(self):
        stream = MediaStream()
        stream.open(_start_event())

        # 320 bytes = 2 chunks of 160
        messages = stream.media_frames(b"\xff" * 320)

        assert len(messages) == 2
        for msg in messages:
            parsed = json.loads(msg)
            assert parsed["event"] == "media"
            assert parsed["streamSid"] == "MZ123"

    def test_marks_carry_playback_generation(self):
        stream = MediaStream()
        stream.open(_start_event())

        first = json.loads(stream.next_mark())["mark"]["name"]
        assert first == "g0_m1"
        assert json.loads(stream.next_mark())["mark"]["name"] == "g0_m2"

        assert stream.new_generation() == 1
        second = json.loads(stream.next_mark())["mark"]["name"]
        assert second == "g1_m1"
        assert mark_generation(second) == stream.generation

    def test_no_messages_before_start(self):
        stream = MediaStream()

        assert stream.media_frames(b"\xff" * 160) == []
        assert stream.next_mark() == ""
        assert stream.clear() == ""
