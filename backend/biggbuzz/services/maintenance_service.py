# Overview: Periodic cleanup of expired registration and OTP state.

from __future__ import annotations

from .registry import get_otp_ledger, get_registration_machine


def sweep_expired() -> dict:
    """
    Eager counterpart to the lazy expiry checks.

    Idempotent: rows are removed with a single DELETE each, so concurrent
    sweeps never fail.
    """
    return {
        "pending_registrations": get_registration_machine().sweep_expired(),
        "otp_entries": get_otp_ledger().cleanup_expired(),
    }
