"""
Log-safe identifiers and prompt sanitization for Haven.

- hash_principal(): short SHA-256 prefix so logs can correlate events for
  one principal without recording the raw user or anonymous id
- sanitize_for_llm(): strip control characters and cap length of text that
  leaves the device for the text-generation service
"""

from __future__ import annotations

import hashlib
import re
import unicodedata

# Longest prompt body sent to the text-generation endpoint
MAX_PROMPT_CHARS = 4000

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")


def hash_principal(principal_id: str | None) -> str:
    """Return a 12-char SHA-256 prefix for log-safe principal identification."""
    if not principal_id:
        return "none"
    return hashlib.sha256(principal_id.encode()).hexdigest()[:12]


def sanitize_for_llm(text: str, max_chars: int = MAX_PROMPT_CHARS) -> str:
    """
    Prepare text for inclusion in a text-generation prompt.

    Normalizes unicode (NFKC), removes control characters other than
    newline/tab/carriage return, and truncates to max_chars.

    Args:
        text: Prompt text
        max_chars: Maximum characters kept

    Returns:
        Sanitized text
    """
    normalized = unicodedata.normalize("NFKC", text)
    cleaned = _CONTROL_CHARS.sub("", normalized)
    if len(cleaned) > max_chars:
        cleaned = cleaned[:max_chars]
    return cleaned.strip()


__all__ = ["hash_principal", "sanitize_for_llm", "MAX_PROMPT_CHARS"]
