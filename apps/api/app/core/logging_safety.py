"""Utilities for safe structured logging fields."""

from __future__ import annotations

import hashlib
from typing import Any
from urllib.parse import urlsplit


def safe_log_identifier(value: Any, *, prefix: str) -> str:
    """Return a deterministic non-reversible token for log correlation fields."""
    text = str(value or "").strip()
    if not text:
        return f"{prefix}-missing"

    digest = hashlib.sha256(text.encode("utf-8")).hexdigest()[:12]
    return f"{prefix}-{digest}"


def redact_source(source: Any) -> str:
    """Reduce a media URL to ``scheme://host/path``.

    Credentials, query strings and fragments can carry signed tokens and are dropped.
    """
    text = str(source or "").strip()
    if not text:
        return "source-missing"
    try:
        parts = urlsplit(text)
        hostname = parts.hostname
        port = parts.port
    except ValueError:
        return safe_log_identifier(text, prefix="src")
    if not parts.scheme or not hostname:
        return safe_log_identifier(text, prefix="src")
    if ":" in hostname:
        hostname = f"[{hostname}]"
    host = hostname if port is None else f"{hostname}:{port}"
    return f"{parts.scheme}://{host}{parts.path}"
