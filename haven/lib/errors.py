"""
Centralized Error Response Builder for Haven.

Provides consistent error codes and user-facing messages for the
`error` half of every ServiceResult. The UI renders these inline as
"something went wrong, try again" affordances, so the messages are
deliberately generic and never echo record content.

Error codes are constants that map to translatable message strings.
"""

from __future__ import annotations

from typing import Any

# =============================================================================
# Error Code Constants
# =============================================================================

NO_ACTIVE_PRINCIPAL = "NO_ACTIVE_PRINCIPAL"
KEY_NOT_INITIALIZED = "KEY_NOT_INITIALIZED"
DECRYPTION_FAILED = "DECRYPTION_FAILED"
STORE_ERROR = "STORE_ERROR"
NOT_FOUND = "NOT_FOUND"
VALIDATION_ERROR = "VALIDATION_ERROR"
CAPACITY_REACHED = "CAPACITY_REACHED"
NO_SUPPORTER_AVAILABLE = "NO_SUPPORTER_AVAILABLE"
INVALID_TRANSITION = "INVALID_TRANSITION"
ALREADY_EXISTS = "ALREADY_EXISTS"
INTERNAL_ERROR = "INTERNAL_ERROR"

# =============================================================================
# Message Registry
#
# Maps (error_code, language) -> message string. Falls back to "en" if a
# translation is missing for the requested language.
# =============================================================================

_ERROR_MESSAGES: dict[str, dict[str, str]] = {
    NO_ACTIVE_PRINCIPAL: {
        "en": "Start a session or continue anonymously to save data.",
        "de": "Bitte melde dich an oder fahre anonym fort, um Daten zu speichern.",
    },
    KEY_NOT_INITIALIZED: {
        "en": "Your session is not ready yet. Please try again.",
        "de": "Deine Sitzung ist noch nicht bereit. Bitte versuche es erneut.",
    },
    DECRYPTION_FAILED: {
        "en": "Some of your data could not be unlocked on this device.",
        "de": "Einige Daten konnten auf diesem Geraet nicht entschluesselt werden.",
    },
    STORE_ERROR: {
        "en": "Something went wrong. Please try again.",
        "de": "Etwas ist schiefgelaufen. Bitte versuche es erneut.",
    },
    NOT_FOUND: {
        "en": "The requested item was not found.",
        "de": "Der angeforderte Eintrag wurde nicht gefunden.",
    },
    VALIDATION_ERROR: {
        "en": "Invalid input. Please check your entry.",
        "de": "Ungueltige Eingabe. Bitte ueberpruefe deinen Eintrag.",
    },
    CAPACITY_REACHED: {
        "en": "This space is full right now.",
        "de": "Dieser Bereich ist gerade voll.",
    },
    NO_SUPPORTER_AVAILABLE: {
        "en": "No available supporters found. Please try again later.",
        "de": "Gerade ist niemand verfuegbar. Bitte versuche es spaeter erneut.",
    },
    INVALID_TRANSITION: {
        "en": "This action is not possible in the current state.",
        "de": "Diese Aktion ist im aktuellen Zustand nicht moeglich.",
    },
    ALREADY_EXISTS: {
        "en": "This already exists.",
        "de": "Das existiert bereits.",
    },
    INTERNAL_ERROR: {
        "en": "Something went wrong. Please try again.",
        "de": "Etwas ist schiefgelaufen. Bitte versuche es erneut.",
    },
}

_DEFAULT_LANG = "en"


# =============================================================================
# Error Response Builder
# =============================================================================


def get_error_message(code: str, lang: str = "en") -> str:
    """
    Get a translated error message for a given error code.

    Falls back to English if the requested language is not available,
    and to a generic message if the error code is unknown.

    Args:
        code: Error code constant (e.g. STORE_ERROR, NOT_FOUND)
        lang: ISO 639-1 language code

    Returns:
        Translated error message string
    """
    messages = _ERROR_MESSAGES.get(code, {})
    return messages.get(lang, messages.get(_DEFAULT_LANG, "An error occurred."))


def build_error_response(
    code: str,
    message: str | None = None,
    details: dict[str, Any] | None = None,
    lang: str = "en",
) -> dict[str, Any]:
    """
    Build a structured error dict: {"code": str, "message": str, "details"?: dict}.

    If no message is provided, the translated message for the error code
    and language is used.
    """
    resolved_message = message if message is not None else get_error_message(code, lang)
    error: dict[str, Any] = {
        "code": code,
        "message": resolved_message,
    }
    if details is not None:
        error["details"] = details
    return error


__all__ = [
    "NO_ACTIVE_PRINCIPAL",
    "KEY_NOT_INITIALIZED",
    "DECRYPTION_FAILED",
    "STORE_ERROR",
    "NOT_FOUND",
    "VALIDATION_ERROR",
    "CAPACITY_REACHED",
    "NO_SUPPORTER_AVAILABLE",
    "INVALID_TRANSITION",
    "ALREADY_EXISTS",
    "INTERNAL_ERROR",
    "get_error_message",
    "build_error_response",
]
