"""
Tests for the HTTP surface: TwiML, health, metrics and the tool endpoints.
"""

import os
import xml.etree.ElementTree as ET
from unittest.mock import patch

import pytest
from fastapi import WebSocketDisconnect
from fastapi.testclient import TestClient
from twilio.request_validator import RequestValidator

from src.frontdesk.config import get_config


@pytest.fixture
def client():
    from server.app import app

    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client


class TestTwimlGeneration:
    """Tests for TwiML endpoint."""

    def test_twiml_contains_greeting_and_stream(self, client):
        response = client.post("/twiml")

        assert response.status_code == 200
        assert "application/xml" in response.headers.get("content-type", "")

        root = ET.fromstring(response.text)
        assert root.tag == "Response"
        assert root[0].tag == "Say"
        assert "Neurality Health" in root[0].text
        assert root[1].tag == "Connect"
        assert root[1][0].tag == "Stream"
        assert root[1][0].attrib["url"] == "wss://test.ngrok.io/ws"

    @pytest.mark.parametrize("path", ["/voice", "/incoming-call"])
    def test_webhook_aliases_return_stream_twiml(self, client, path):
        response = client.post(path)

        assert response.status_code == 200
        assert "<Stream" in response.text
        assert "wss://test.ngrok.io/ws" in response.text

    def test_twiml_uses_correct_host(self):
        test_host = "my-custom-domain.example.com"

        with patch.dict(os.environ, {"PUBLIC_HOST": test_host}):
            get_config.cache_clear()
            from server.app import app

            with TestClient(app, raise_server_exceptions=False) as test_client:
                response = test_client.get("/twiml")

        assert f"wss://{test_host}/ws" in response.text


class TestTwilioSignature:
    @pytest.fixture
    def signed_client(self):
        with patch.dict(os.environ, {"VALIDATE_TWILIO_SIGNATURE": "true"}):
            get_config.cache_clear()
            from server.app import app

            with TestClient(app, raise_server_exceptions=False) as test_client:
                yield test_client

    def test_missing_signature_rejected(self, signed_client):
        response = signed_client.post("/twiml", data={"CallSid": "CA123"})
        assert response.status_code == 403

    def test_valid_signature_accepted(self, signed_client):
        params = {"CallSid": "CA123", "From": "+14085551234"}
        signature = RequestValidator("test_auth_token").compute_signature(
            "https://test.ngrok.io/twiml", params
        )

        response = signed_client.post("/twiml", data=params, headers={"X-Twilio-Signature": signature})

        assert response.status_code == 200
        assert "<Stream" in response.text

    def test_wrong_signature_rejected(self, signed_client):
        response = signed_client.post(
            "/twiml", data={"CallSid": "CA123"}, headers={"X-Twilio-Signature": "bogus"}
        )
        assert response.status_code == 403


class TestHealthAndMetrics:
    def test_health_returns_ok(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert "timestamp" in data

    def test_metrics_returns_json(self, client):
        response = client.get("/metrics")

        assert response.status_code == 200
        data = response.json()
        for key in ("uptime_seconds", "total_calls", "active_calls", "tool_requests", "errors"):
            assert key in data


class TestToolEndpoints:
    def test_list_tools(self, client):
        response = client.get("/tools")

        names = {tool["name"] for tool in response.json()["tools"]}
        assert names == {"check_insurance_coverage", "get_provider_availability", "book_appointment", "send_sms"}

    def test_valid_call_returns_output(self, client):
        response = client.post("/tools/check_insurance_coverage", json={"payer": "Delta Dental", "plan": "PPO"})

        assert response.status_code == 200
        assert response.json()["covered"] is True

    def test_camel_case_alias(self, client):
        response = client.post("/tools/sendSms", json={"to": "+14085551234", "message": "See you Tuesday"})

        assert response.status_code == 200
        assert response.json()["queued"] is True

    def test_invalid_input_is_400(self, client):
        response = client.post("/tools/send_sms", json={"to": "555", "message": ""})

        assert response.status_code == 400
        body = response.json()
        assert body["ok"] is False
        assert {err["field"] for err in body["errors"]} == {"to", "message"}

    def test_invalid_json_is_400(self, client):
        response = client.post(
            "/tools/send_sms", content=b"not json", headers={"content-type": "application/json"}
        )

        assert response.status_code == 400
        assert response.json()["ok"] is False

    def test_unknown_tool_is_404(self, client):
        response = client.post("/tools/cancel_appointment", json={})
        assert response.status_code == 404

    def test_booking_is_idempotent_over_http(self, client):
        payload = {
            "patient": {"first": "Maya", "phone": "+14085551234"},
            "slot": {
                "start": "2026-10-20T09:00:00-07:00",
                "end": "2026-10-20T10:00:00-07:00",
                "provider_id": "DR001",
            },
            "idempotency_key": "bk_http_test_0001",
        }

        first = client.post("/tools/book_appointment", json=payload)
        second = client.post("/tools/book_appointment", json=payload)

        assert first.status_code == 200
        assert first.json()["status"] == "booked"
        assert second.json()["confirmation_id"] == first.json()["confirmation_id"]


class TestMediaStreamWebSocket:
    def test_call_lifecycle_writes_audit_record(
        self, client, twilio_start_message, twilio_media_message, twilio_stop_message
    ):
        with client.websocket_connect("/ws") as websocket:
            websocket.send_text(twilio_start_message)
            websocket.send_text(twilio_media_message)
            websocket.send_text(twilio_stop_message)

            with pytest.raises(WebSocketDisconnect):
                websocket.receive_text()

        audit_dir = get_config().audit_dir
        records = os.listdir(audit_dir)
        assert len(records) == 1
        assert records[0].endswith(".json")

        data = client.get("/metrics").json()
        assert data["active_calls"] == 0
        assert data["calls"] == []
        assert data["total_calls"] >= 1
