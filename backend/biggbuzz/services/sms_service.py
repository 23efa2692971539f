# Overview: Outbound SMS/WhatsApp transports used to deliver one-time passcodes.

from __future__ import annotations

import time
from typing import Protocol

import httpx
from flask import current_app

from ..errors import TransportError


OTP_MESSAGE_TEMPLATE = "Your Bigg Buzz verification code is: {code}. Valid for {minutes} minutes."

CHANNELS = ("sms", "whatsapp")

# Provider rejections that retrying cannot fix
NON_RETRYABLE_STATUSES = frozenset({400, 401, 403})


def otp_message(code: str, minutes: int = 10) -> str:
    return OTP_MESSAGE_TEMPLATE.format(code=code, minutes=minutes)


class SmsTransport(Protocol):
    def send(self, to: str, body: str, *, channel: str = "sms") -> None:
        """Deliver body to the +27 number; raise TransportError on failure."""
        ...


class ConsoleTransport:
    """Development transport: writes messages to the application log."""

    def send(self, to: str, body: str, *, channel: str = "sms") -> None:
        current_app.logger.info("[%s -> %s] %s", channel.upper(), to, body)


class ClickatellTransport:
    """
    Clickatell platform API (https://platform.clickatell.com/v1/message).

    Transient failures (network errors, 5xx, 429) are retried with
    exponential backoff. Authentication and payload rejections, and
    messages the provider reports as not accepted, fail immediately.
    """

    def __init__(
        self,
        api_key: str,
        *,
        api_url: str = "https://platform.clickatell.com/v1/message",
        max_attempts: int = 3,
        backoff_base: float = 1.0,
        timeout: float = 10.0,
        client: httpx.Client | None = None,
    ):
        if not api_key:
            raise ValueError("Clickatell API key is required")
        self.api_key = api_key
        self.api_url = api_url
        self.max_attempts = max(1, max_attempts)
        self.backoff_base = backoff_base
        self.client = client or httpx.Client(timeout=timeout)

    def _payload(self, to: str, body: str, channel: str) -> dict:
        return {
            "messages": [
                {
                    "channel": channel,
                    # Clickatell expects the number without the leading "+"
                    "to": to.lstrip("+"),
                    "content": body,
                }
            ]
        }

    def send(self, to: str, body: str, *, channel: str = "sms") -> None:
        if channel not in CHANNELS:
            raise TransportError(f"Unsupported channel: {channel}", {"channel": channel})

        headers = {
            "Authorization": self.api_key,
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        payload = self._payload(to, body, channel)

        last_error = None
        for attempt in range(self.max_attempts):
            try:
                response = self.client.post(self.api_url, json=payload, headers=headers)
            except httpx.HTTPError as exc:
                last_error = f"network error: {exc.__class__.__name__}"
                current_app.logger.warning(
                    "Clickatell request failed (attempt %s/%s): %s", attempt + 1, self.max_attempts, exc
                )
            else:
                if response.status_code in NON_RETRYABLE_STATUSES:
                    current_app.logger.error("Clickatell rejected message with status %s", response.status_code)
                    raise TransportError(
                        "SMS provider rejected the message",
                        {"status": response.status_code, "channel": channel},
                    )
                if response.status_code >= 400:
                    last_error = f"status {response.status_code}"
                    current_app.logger.warning(
                        "Clickatell returned %s (attempt %s/%s)", response.status_code, attempt + 1, self.max_attempts
                    )
                else:
                    self._check_accepted(response, channel)
                    return

            if attempt < self.max_attempts - 1:
                time.sleep(self.backoff_base * (2 ** attempt))

        raise TransportError(
            "SMS provider unavailable",
            {"channel": channel, "attempts": self.max_attempts, "last_error": last_error},
        )

    def _check_accepted(self, response: httpx.Response, channel: str) -> None:
        try:
            data = response.json()
        except ValueError:
            return
        for message in data.get("messages") or []:
            if message.get("accepted") is False:
                current_app.logger.error("Clickatell did not accept message: %s", message.get("error"))
                raise TransportError(
                    "SMS provider did not accept the message",
                    {"channel": channel, "provider_error": message.get("error")},
                )


def build_transport(config) -> SmsTransport:
    """
    Build the transport for config["SMS_PROVIDER"].

    Raises RuntimeError for an unknown provider or missing credentials so
    that a misconfigured deployment fails at startup.
    """
    provider = (config.get("SMS_PROVIDER") or "console").lower()
    if provider == "console":
        return ConsoleTransport()
    if provider == "clickatell":
        api_key = config.get("CLICKATELL_API_KEY")
        if not api_key:
            raise RuntimeError("SMS_PROVIDER=clickatell requires CLICKATELL_API_KEY")
        return ClickatellTransport(
            api_key,
            api_url=config.get("CLICKATELL_API_URL") or "https://platform.clickatell.com/v1/message",
            max_attempts=int(config.get("SMS_MAX_ATTEMPTS", 3)),
            backoff_base=float(config.get("SMS_BACKOFF_BASE", 1.0)),
            timeout=float(config.get("SMS_TIMEOUT_SECONDS", 10)),
        )
    raise RuntimeError(f"Unknown SMS_PROVIDER: {provider}")
