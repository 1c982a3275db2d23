from __future__ import annotations

import json
from typing import Any, Optional

import httpx

GATEWAY_TIMEOUT = 504
TIMEOUT_MARKER = "timeout"
FALLBACK_ERROR = "An unexpected error occurred during generation"
INVALID_FORMAT = "Invalid response format from server"


def safe_json(resp: httpx.Response) -> Any:
    """Decode a response body, returning None for empty or non-JSON bodies."""
    try:
        return resp.json()
    except (json.JSONDecodeError, UnicodeDecodeError, ValueError):
        return None


def error_message(payload: Any) -> Optional[str]:
    """
    Pull a readable message out of a backend error body.

    Accepts {"error": {"message": "..."}} and {"error": "..."}; anything else
    yields None so the caller can fall back to the status line.
    """
    if not isinstance(payload, dict):
        return None
    err = payload.get("error")
    if isinstance(err, dict):
        msg = err.get("message")
        if msg:
            return str(msg)
        return None
    if isinstance(err, str) and err:
        return err
    return None


def is_timeout_signal(status_code: int, payload: Any) -> bool:
    if status_code == GATEWAY_TIMEOUT:
        return True
    msg = error_message(payload)
    return bool(msg) and TIMEOUT_MARKER in msg


def status_message(resp: httpx.Response, payload: Any) -> str:
    msg = error_message(payload)
    if msg:
        return msg
    return f"Failed to generate response: {resp.status_code} {resp.reason_phrase}".rstrip()


def extract_output(payload: Any) -> Optional[str]:
    if not isinstance(payload, dict):
        return None
    out = payload.get("output")
    if isinstance(out, str) and out:
        return out
    return None


def describe_exception(exc: BaseException) -> str:
    text = str(exc).strip()
    if text:
        return text
    msg = getattr(exc, "message", None)
    if msg:
        return str(msg)
    return FALLBACK_ERROR
