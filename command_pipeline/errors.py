"""
Pipeline error taxonomy.

Maps recognition and backend failures to stable categories without crashing.
Nothing here is fatal to the process: every category ends in a retry schedule,
a fallback answer, or a status message for the user.
"""
import asyncio
from typing import Optional

import aiohttp

from observability.events import Component, EventEmitter, Severity
from .models import RecognitionErrorKind


class ErrorCategory:
    """Stable error categories."""

    # Device / recognition
    CONNECTIVITY_LOST = "connectivity.lost"
    RECOGNITION_DENIED = "recognition.denied"
    RECOGNITION_TRANSIENT = "recognition.transient"
    RECOGNITION_NETWORK = "recognition.network"
    RECOGNITION_OTHER = "recognition.other"

    # AI backend
    BACKEND_RATE_LIMITED = "backend.rate_limited"
    BACKEND_TRANSIENT = "backend.transient"
    BACKEND_MALFORMED = "backend.malformed"


class BackendError(Exception):
    """Failure talking to the AI backend."""

    category = ErrorCategory.BACKEND_TRANSIENT

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class BackendRateLimited(BackendError):
    """HTTP 429 or a backend-reported rate limit error."""

    category = ErrorCategory.BACKEND_RATE_LIMITED


class BackendTransient(BackendError):
    """Timeout, reset connection or 5xx."""

    category = ErrorCategory.BACKEND_TRANSIENT


class BackendMalformed(BackendTransient):
    """Initial response that cannot be parsed at all. Retried like a transient failure."""

    category = ErrorCategory.BACKEND_MALFORMED


_RATE_LIMIT_MARKERS = ("429", "rate limit", "rate_limit", "too many requests")
_SECRET_MARKERS = ("secret", "password", "key", "token")


class ErrorHandler:
    """Classifies failures and reports them as events."""

    emitter = EventEmitter(Component.AI_CLIENT)

    @staticmethod
    def classify_recognition_error(kind: RecognitionErrorKind) -> str:
        if kind is RecognitionErrorKind.NETWORK:
            return ErrorCategory.RECOGNITION_NETWORK
        if kind is RecognitionErrorKind.NOT_ALLOWED:
            return ErrorCategory.RECOGNITION_DENIED
        if kind is RecognitionErrorKind.NO_SPEECH:
            return ErrorCategory.RECOGNITION_TRANSIENT
        return ErrorCategory.RECOGNITION_OTHER

    @staticmethod
    def classify_backend_error(error: BaseException) -> str:
        """
        Classify a backend failure.

        Both returned classes are retried by the AI client; the category only
        changes what gets logged and reported.
        """
        if isinstance(error, BackendError):
            return error.category

        if isinstance(error, (asyncio.TimeoutError, aiohttp.ClientConnectionError)):
            return ErrorCategory.BACKEND_TRANSIENT

        if isinstance(error, aiohttp.ClientResponseError) and error.status == 429:
            return ErrorCategory.BACKEND_RATE_LIMITED

        error_str = str(error).lower()
        if any(marker in error_str for marker in _RATE_LIMIT_MARKERS):
            return ErrorCategory.BACKEND_RATE_LIMITED

        # Unknown failures are retried like transient ones
        return ErrorCategory.BACKEND_TRANSIENT

    @staticmethod
    def redact(detail: str) -> str:
        lowered = detail.lower()
        if any(marker in lowered for marker in _SECRET_MARKERS):
            return "[redacted: potential secret]"
        return detail

    @classmethod
    def report_backend_error(
        cls,
        error: BaseException,
        *,
        attempt: int,
        correlation_id: Optional[str] = None,
    ) -> str:
        """Emit an ai.error event and return the error category."""
        category = cls.classify_backend_error(error)
        cls.emitter.emit(
            "ai.error",
            severity=Severity.WARN,
            correlation_id=correlation_id,
            category=category,
            attempt=attempt,
            error_type=type(error).__name__,
            status=getattr(error, "status", None),
            detail=cls.redact(str(error)),
        )
        return category

    @staticmethod
    def get_user_message(category: str) -> str:
        """User-facing (French) status message for a category."""
        messages = {
            ErrorCategory.CONNECTIVITY_LOST: "Connexion Internet perdue",
            ErrorCategory.RECOGNITION_DENIED: (
                "Je n'ai pas accès au microphone. "
                "Veuillez vérifier les permissions de votre navigateur."
            ),
            ErrorCategory.RECOGNITION_TRANSIENT: "Aucune parole détectée, continuez à parler...",
            ErrorCategory.RECOGNITION_NETWORK: "Erreur de connexion réseau. Tentative de reconnexion...",
            ErrorCategory.BACKEND_RATE_LIMITED: (
                "Je suis désolé, j'ai atteint la limite de requêtes au service en ligne."
            ),
        }
        return messages.get(
            category,
            "Désolé, je n'ai pas pu traiter votre demande. Veuillez réessayer.",
        )
