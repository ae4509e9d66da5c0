import hashlib
import json
from collections.abc import Iterable, Mapping
from decimal import Decimal
from typing import Any

# User-authored text that must never reach the logs verbatim.
FREE_TEXT_FIELDS = frozenset({"description", "title", "details"})


def hash_payload(value: Any) -> str:
    """
    Return a stable SHA-256 hash for the provided payload without leaking contents.

    Decimals and dates are serialized via str() so equal amounts hash equally
    regardless of how they were parsed.
    """

    if value is None:
        normalized = b"null"
    elif isinstance(value, bytes):
        normalized = value
    elif isinstance(value, str):
        normalized = value.encode("utf-8")
    else:
        normalized = json.dumps(value, sort_keys=True, default=str).encode("utf-8")

    return hashlib.sha256(normalized).hexdigest()


def scrub_free_text(payload: Mapping[str, Any], extra_fields: Iterable[str] = ()) -> dict[str, Any]:
    """
    Copy `payload` for logging, replacing free-text values with a short digest.

    Amounts are rendered as strings so Decimal values stay JSON-friendly.
    Empty free-text values are kept as None so "was a description given" stays visible.
    """

    sensitive = FREE_TEXT_FIELDS | set(extra_fields)
    scrubbed: dict[str, Any] = {}
    for key, value in payload.items():
        if key in sensitive:
            scrubbed[key] = f"sha256:{hash_payload(value)[:12]}" if value else None
        elif isinstance(value, Decimal):
            scrubbed[key] = str(value)
        else:
            scrubbed[key] = value
    return scrubbed
