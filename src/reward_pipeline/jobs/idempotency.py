"""Deterministic idempotency keys for provider calls."""

from __future__ import annotations

import hashlib
import json
import re

MAX_IDEMPOTENCY_KEY_LENGTH = 45
_HASH_PREFIX_MAX_CHARS = 10
_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9:_\-]")


def build_idempotency_key(parts: list[object]) -> str:
    """Join sanitized parts with ``:``.

    Keys are hashed when they do not fit provider limits or when sanitizing
    changed any part, so distinct inputs do not share a key.
    """

    raw = [str(part) for part in parts if part not in (None, "")]
    normalized = [_safe_part(part).lower() for part in raw]
    joined = ":".join(normalized)
    if normalized == raw and len(joined) <= MAX_IDEMPOTENCY_KEY_LENGTH:
        return joined

    digest = hashlib.sha256(json.dumps(raw).encode("utf-8")).hexdigest()
    prefix = (normalized[0] if normalized else "idemp")[:_HASH_PREFIX_MAX_CHARS]
    return f"{prefix}:{digest[: MAX_IDEMPOTENCY_KEY_LENGTH - len(prefix) - 1]}"


def build_stage_key(correlation_id: str, stage: str | None, action: str | None) -> str:
    """Key for one side effect of one stage of one business event."""

    return build_idempotency_key([correlation_id, stage or "stage", action or "op"])


def _safe_part(value: object, fallback: str = "na") -> str:
    text = str(value).strip()
    if not text:
        return fallback
    return _UNSAFE_CHARS.sub("-", text)
