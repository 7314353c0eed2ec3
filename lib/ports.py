"""Centralized port configuration for Meridian services."""

from __future__ import annotations

from lib.env_utils import env_int, env_str

HOST = env_str("MERIDIAN_HOST", "127.0.0.1")
BACKEND_PORT = env_int("MERIDIAN_BACKEND_PORT", 7777)
PULSE_PORT = env_int("MERIDIAN_PULSE_PORT", 8766)


def build_url(port: int, host: str | None = None) -> str:
    return f"http://{host or HOST}:{port}"


BACKEND_URL = build_url(BACKEND_PORT)
PULSE_URL = build_url(PULSE_PORT)
