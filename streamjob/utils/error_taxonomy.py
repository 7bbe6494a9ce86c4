from __future__ import annotations

import json
import socket
import sqlite3
from typing import Any, Literal

ErrorCode = Literal[
    "JOB_PARSE_FAILED",
    "JOB_APPLICATION_ERROR",
    "JOB_STRUCTURE_INVALID",
    "LLM_API_ERROR",
    "LLM_AUTH_ERROR",
    "LLM_RATE_LIMITED",
    "LLM_TIMEOUT",
    "NETWORK_ERROR",
    "STORAGE_ERROR",
    "UNKNOWN_ERROR",
]

ERROR_FRIENDLY_MESSAGES: dict[ErrorCode, str] = {
    "JOB_PARSE_FAILED": "AI response format could not be parsed, please retry.",
    "JOB_APPLICATION_ERROR": "The model reported an error for this request.",
    "JOB_STRUCTURE_INVALID": "AI response has an unexpected structure, please retry.",
    "LLM_API_ERROR": "LLM provider request failed. Please retry or switch model.",
    "LLM_AUTH_ERROR": "API key is missing or invalid. Check the provider settings.",
    "LLM_RATE_LIMITED": "Too many requests. Wait a minute and try again.",
    "LLM_TIMEOUT": "The request timed out. Please try again.",
    "NETWORK_ERROR": "Network error. Check the connection and retry.",
    "STORAGE_ERROR": "Local storage operation failed.",
    "UNKNOWN_ERROR": "Unexpected error occurred, please retry.",
}

RETRYABLE_ERROR_CODES: frozenset[ErrorCode] = frozenset(
    {
        "JOB_PARSE_FAILED",
        "JOB_STRUCTURE_INVALID",
        "LLM_API_ERROR",
        "LLM_RATE_LIMITED",
        "LLM_TIMEOUT",
        "NETWORK_ERROR",
        "UNKNOWN_ERROR",
    }
)


class ResponseStructureError(ValueError):
    """Raised by a normalizer when the parsed payload is not usable."""


class StreamCancelledError(RuntimeError):
    """Raised by a streaming backend once it observes a cancelled token."""


def is_retryable_error_code(code: ErrorCode) -> bool:
    return code in RETRYABLE_ERROR_CODES


def classify_transport_error(error: Exception) -> ErrorCode:
    if isinstance(error, ResponseStructureError):
        return "JOB_STRUCTURE_INVALID"
    if isinstance(error, json.JSONDecodeError):
        return "JOB_PARSE_FAILED"

    status_code = extract_http_status_code(error)
    if status_code is not None:
        return _classify_status_code(status_code)

    if is_storage_error_exception(error):
        return "STORAGE_ERROR"
    if isinstance(error, (TimeoutError, socket.timeout)):
        return "LLM_TIMEOUT"
    if isinstance(error, ConnectionError):
        return "NETWORK_ERROR"

    return _classify_message(error)


def extract_http_status_code(error: Exception) -> int | None:
    for field_name in ("status_code", "status", "http_status"):
        value = getattr(error, field_name, None)
        parsed = _to_int_or_none(value)
        if parsed is not None:
            return parsed

    response = getattr(error, "response", None)
    if response is not None:
        parsed = _to_int_or_none(getattr(response, "status_code", None))
        if parsed is not None:
            return parsed

    return None


def build_error_details(error: Exception) -> str:
    details: list[str] = [f"{error.__class__.__name__}: {error}"]
    status_code = extract_http_status_code(error)
    if status_code is not None:
        details.append(f"status_code={status_code}")

    for field_name in ("body", "response_body", "payload"):
        value = getattr(error, field_name, None)
        if value is None:
            continue
        details.append(f"{field_name}={value}")
    return "\n".join(details)


def is_storage_error_exception(error: Exception) -> bool:
    if isinstance(error, sqlite3.Error):
        return True
    if isinstance(error, OSError) and not isinstance(
        error, (ConnectionError, TimeoutError, socket.timeout)
    ):
        return True
    return False


def _classify_status_code(status_code: int) -> ErrorCode:
    if status_code in (401, 403):
        return "LLM_AUTH_ERROR"
    if status_code == 429:
        return "LLM_RATE_LIMITED"
    if status_code in (408, 504):
        return "LLM_TIMEOUT"
    return "LLM_API_ERROR"


def _classify_message(error: Exception) -> ErrorCode:
    class_name = error.__class__.__name__.lower()
    message = str(error).lower()

    if "401" in message or "403" in message or "api key" in message:
        return "LLM_AUTH_ERROR"
    if "unauthorized" in message or "authentication" in class_name:
        return "LLM_AUTH_ERROR"
    if "429" in message or "rate limit" in message or "too many requests" in message:
        return "LLM_RATE_LIMITED"
    if "ratelimit" in class_name:
        return "LLM_RATE_LIMITED"
    if "timeout" in class_name or "timed out" in message or "timeout" in message:
        return "LLM_TIMEOUT"
    if "connection" in class_name or "network" in message or "connection" in message:
        return "NETWORK_ERROR"
    if isinstance(error, RuntimeError):
        return "LLM_API_ERROR"
    return "UNKNOWN_ERROR"


def _to_int_or_none(value: Any) -> int | None:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
