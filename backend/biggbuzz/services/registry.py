# Overview: Per-application service instances built by create_app and looked up by routes and CLI.

from __future__ import annotations

from flask import current_app

EXTENSION_KEY = "biggbuzz"


def _services() -> dict:
    return current_app.extensions[EXTENSION_KEY]


def get_recorder():
    return _services()["recorder"]


def get_otp_ledger():
    return _services()["otp_ledger"]


def get_registration_machine():
    return _services()["registration_machine"]


def get_checkout_engine():
    return _services()["checkout_engine"]
