"""
Pytest configuration and fixtures.
"""

import base64
import json
import os
from unittest.mock import patch

import pytest

STREAM_SID = "MZ123456"
CALL_SID = "CA789012"


@pytest.fixture(autouse=True)
def mock_env_vars(tmp_path):
    """Test configuration: no network, audit records under tmp_path."""
    env_vars = {
        "PUBLIC_HOST": "test.ngrok.io",
        "PORT": "7860",
        "LOG_LEVEL": "DEBUG",
        "TWILIO_AUTH_TOKEN": "test_auth_token",
        "VALIDATE_TWILIO_SIGNATURE": "false",
        "OPENAI_API_KEY": "test_openai_key",
        "EXTRACTOR": "rules",
        "ROOM_SERVICE_URL": "",
        "AUDIT_DIR": str(tmp_path / "audit"),
    }

    with patch.dict(os.environ, env_vars):
        from src.frontdesk.config import get_config
        get_config.cache_clear()
        yield
        get_config.cache_clear()


@pytest.fixture
def sample_ulaw_audio():
    """20ms of mu-law silence."""
    return b"\xff" * 160


@pytest.fixture
def twilio_start_message():
    return json.dumps({
        "event": "start",
        "sequenceNumber": "1",
        "streamSid": STREAM_SID,
        "start": {
            "streamSid": STREAM_SID,
            "callSid": CALL_SID,
            "accountSid": "AC345678",
            "tracks": ["inbound"],
            "customParameters": {},
            "mediaFormat": {"encoding": "audio/x-mulaw", "sampleRate": 8000, "channels": 1},
        },
    })


@pytest.fixture
def twilio_media_message(sample_ulaw_audio):
    return json.dumps({
        "event": "media",
        "sequenceNumber": "2",
        "streamSid": STREAM_SID,
        "media": {
            "track": "inbound",
            "chunk": 1,
            "timestamp": "12345",
            "payload": base64.b64encode(sample_ulaw_audio).decode(),
        },
    })


@pytest.fixture
def twilio_stop_message():
    return json.dumps({
        "event": "stop",
        "sequenceNumber": "3",
        "streamSid": STREAM_SID,
        "stop": {"accountSid": "AC345678", "callSid": CALL_SID},
    })
