"""
Outbound SMS transports. The Clickatell client is exercised against
httpx.MockTransport; nothing leaves the process.
"""

import json

import httpx
import pytest

from biggbuzz.errors import TransportError
from biggbuzz.services.sms_service import (
    ClickatellTransport,
    ConsoleTransport,
    build_transport,
    otp_message,
)


@pytest.fixture(autouse=True)
def app_logger(app):
    """Transports log through the application logger."""
    return app


def _transport(handler, **kwargs):
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return ClickatellTransport("test-key", backoff_base=0, client=client, **kwargs)


def _accepted(request):
    return httpx.Response(202, json={"messages": [{"apiMessageId": "abc", "accepted": True, "to": "27821234567"}]})


class TestClickatellTransport:
    def test_posts_payload_without_plus(self):
        seen = []

        def handler(request):
            seen.append(request)
            return _accepted(request)

        _transport(handler).send("+27821234567", otp_message("123456"), channel="whatsapp")

        assert len(seen) == 1
        assert seen[0].headers["Authorization"] == "test-key"
        body = json.loads(seen[0].content)
        assert body == {
            "messages": [
                {
                    "channel": "whatsapp",
                    "to": "27821234567",
                    "content": "Your Bigg Buzz verification code is: 123456. Valid for 10 minutes.",
                }
            ]
        }

    def test_retries_server_errors_then_succeeds(self):
        responses = iter([httpx.Response(503), httpx.Response(500)])

        def handler(request):
            response = next(responses, None)
            return response if response is not None else _accepted(request)

        _transport(handler, max_attempts=3).send("+27821234567", "hello")

    def test_retries_network_errors(self, caplog):
        caplog.set_level("WARNING", logger="biggbuzz")
        calls = {"n": 0}

        def handler(request):
            calls["n"] += 1
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(TransportError) as exc:
            _transport(handler, max_attempts=3).send("+27821234567", "hello")

        assert calls["n"] == 3
        assert exc.value.details["attempts"] == 3
        assert caplog.text.count("Clickatell request failed") == 3

    @pytest.mark.parametrize("status", [400, 401, 403])
    def test_client_errors_fail_immediately(self, status):
        calls = {"n": 0}

        def handler(request):
            calls["n"] += 1
            return httpx.Response(status, json={"error": "rejected"})

        with pytest.raises(TransportError) as exc:
            _transport(handler, max_attempts=3).send("+27821234567", "hello")

        assert calls["n"] == 1
        assert exc.value.details["status"] == status

    def test_message_not_accepted(self):
        def handler(request):
            return httpx.Response(
                202,
                json={"messages": [{"accepted": False, "error": {"code": 114, "description": "Cannot route"}}]},
            )

        with pytest.raises(TransportError):
            _transport(handler).send("+27821234567", "hello")

    def test_unknown_channel(self):
        with pytest.raises(TransportError):
            _transport(_accepted).send("+27821234567", "hello", channel="pigeon")


class TestBuildTransport:
    def test_console_default(self):
        assert isinstance(build_transport({}), ConsoleTransport)

    def test_clickatell_requires_key(self):
        with pytest.raises(RuntimeError):
            build_transport({"SMS_PROVIDER": "clickatell"})

    def test_clickatell(self):
        transport = build_transport({"SMS_PROVIDER": "clickatell", "CLICKATELL_API_KEY": "k", "SMS_MAX_ATTEMPTS": 5})
        assert isinstance(transport, ClickatellTransport)
        assert transport.max_attempts == 5

    def test_unknown_provider(self):
        with pytest.raises(RuntimeError):
            build_transport({"SMS_PROVIDER": "carrier-pigeon"})


def test_console_transport_logs(caplog):
    caplog.set_level("INFO", logger="biggbuzz")
    ConsoleTransport().send("+27821234567", "hello")
    assert "+27821234567" in caplog.text
