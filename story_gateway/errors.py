"""Error kinds shared by adapters, the validator, the router and the supervisor.

Provider-side failures never cross the gateway boundary as exceptions:
adapters raise AdapterError, the supervisor raises SupervisorError, and the
router turns both into a failed GenerationResult carrying one of the kinds
below.
"""

from __future__ import annotations

from typing import Literal, get_args

ErrorKind = Literal[
    "missing_config",
    "network_error",
    "http_error",
    "empty_response",
    "malformed_response",
    "validation_failed",
    "model_not_found",
    "binary_not_found",
    "process_start_timeout",
    "process_start_failed",
    "process_not_running",
    "quota_exceeded",
    "model_overloaded",
]

ERROR_KINDS: frozenset[str] = frozenset(get_args(ErrorKind))

# Kinds the caller may retry; output-shape failures are never in this set.
RETRYABLE_KINDS: frozenset[str] = frozenset({
    "network_error",
    "quota_exceeded",
    "model_overloaded",
})


class AdapterError(RuntimeError):
    """Raised by a backend adapter when a request cannot produce raw text."""

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        status: int | None = None,
        body: str = "",
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.status = status
        self.body = body


class SupervisorError(RuntimeError):
    """Raised by the process supervisor for lifecycle and proxy failures."""

    def __init__(self, kind: ErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind


# ---------------------------------------------------------------------------
# Quota / overload reclassification
# ---------------------------------------------------------------------------

def classify_provider_failure(status: int | None, body: str) -> ErrorKind | None:
    """Return quota_exceeded / model_overloaded when the failure looks like one.

    Checks the HTTP status first, then the provider's error text.
    """
    text = (body or "").lower()
    if status == 429 or "quota" in text:
        return "quota_exceeded"
    if status == 503 or "overloaded" in text:
        return "model_overloaded"
    return None


_LOCALIZED: dict[str, dict[str, str]] = {
    "quota_exceeded": {
        "fr": "Le quota de l'API a été dépassé. Veuillez réessayer plus tard.",
        "en": "The API quota has been exceeded. Please try again later.",
    },
    "model_overloaded": {
        "fr": "Le modèle d'IA est actuellement surchargé. Veuillez réessayer.",
        "en": "The AI model is currently overloaded. Please try again.",
    },
}


def localized_message(kind: ErrorKind, language: str) -> str | None:
    """User-facing text for kinds that have one, in the given language.

    Language tags such as "fr-FR" or "French" fall back on their first two
    letters; unknown languages get English.
    """
    messages = _LOCALIZED.get(kind)
    if messages is None:
        return None
    lang = (language or "").strip().lower()[:2]
    return messages.get(lang, messages["en"])
