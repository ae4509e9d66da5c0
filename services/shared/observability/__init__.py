"""
Shared observability helpers (telemetry, request context, log privacy).

Services import from this package to get consistent instrumentation and
logging guardrails.
"""

from .privacy import FREE_TEXT_FIELDS, hash_payload, scrub_free_text
from .telemetry import (
    CORRELATION_ID_HEADER,
    USER_ID_HEADER,
    RequestContextToken,
    bind_request_context,
    current_request_id,
    ensure_request_id,
    reset_request_context,
    setup_telemetry,
)

__all__ = [
    "FREE_TEXT_FIELDS",
    "hash_payload",
    "scrub_free_text",
    "CORRELATION_ID_HEADER",
    "USER_ID_HEADER",
    "RequestContextToken",
    "bind_request_context",
    "current_request_id",
    "ensure_request_id",
    "reset_request_context",
    "setup_telemetry",
]
