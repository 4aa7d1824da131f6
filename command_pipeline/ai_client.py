"""
Retrying AI client.

send() always returns a usable AIResult and never raises (cancellation aside):
- offline (device or recognition offline mode): canned notice, no network call
- rate-limited / transient failures: up to 3 retries, 1s doubling, capped at 15s
- exhausted retries or a "service degraded" answer: keyword-selected fallback

State changes driven by the result (offline mode, recovery) are the caller's
job; the client only flags them on the result.
"""

from __future__ import annotations

import asyncio
import dataclasses
import time
from typing import Any, Callable, Optional

from logging_setup import Component as LogComponent, get_logger
from observability.events import Component as ObsComponent, EventEmitter, Severity, utterance_pii
from .backends import AIBackend
from .connectivity import ConnectivityMonitor
from .errors import ErrorCategory, ErrorHandler
from .models import AIRequest, AIResult, ResultSource
from .site_context import build_prompt

logger = get_logger(LogComponent.AI_CLIENT)


OFFLINE_NOTICE = (
    "Cette commande nécessite une connexion Internet. "
    "Je suis actuellement en mode hors ligne."
)

FALLBACK_RESPONSES = {
    "default": (
        "Je suis désolé, je ne peux pas accéder au service en ligne actuellement. "
        "Je fonctionne en mode limité."
    ),
    "aide": (
        "Je peux vous aider à naviguer sur le site, consulter les produits disponibles, "
        "et répondre à des questions simples même en mode hors ligne."
    ),
    "produits": (
        "Nous avons 6 produits disponibles, avec des prix allant de 79,99€ à 199,99€. "
        "Voulez-vous des informations sur un produit spécifique?"
    ),
}

HELP_TERMS = ("aide", "help")
PRODUCT_TERMS = ("produit", "article", "prix", "product", "price")

# Backend answers that mean "I could not really answer"
SERVICE_DEGRADED_MARKERS = ("je ne peux pas accéder",)
# Answers that mean the assistant should behave as offline
LIMITED_MODE_MARKERS = ("mode limité",)


def _contains_any(text: str, markers) -> bool:
    lowered = text.lower()
    return any(marker in lowered for marker in markers)


def is_service_degraded(text: str) -> bool:
    return _contains_any(text, SERVICE_DEGRADED_MARKERS)


def is_limited_mode(text: str) -> bool:
    return _contains_any(text, LIMITED_MODE_MARKERS)


def select_fallback(utterance: str) -> AIResult:
    """Canned answer chosen by keywords in what the user said. Never carries a directive."""
    if _contains_any(utterance, HELP_TERMS):
        text = FALLBACK_RESPONSES["aide"]
    elif _contains_any(utterance, PRODUCT_TERMS):
        text = FALLBACK_RESPONSES["produits"]
    else:
        text = FALLBACK_RESPONSES["default"]
    return AIResult(text=text, directive=None, degraded=is_limited_mode(text), source=ResultSource.FALLBACK)


def offline_notice() -> AIResult:
    return AIResult(text=OFFLINE_NOTICE, directive=None, source=ResultSource.OFFLINE)


class RetryingAIClient:
    def __init__(
        self,
        backend: AIBackend,
        connectivity: ConnectivityMonitor,
        *,
        max_retries: int = 3,
        initial_delay_ms: int = 1000,
        max_delay_ms: int = 15000,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ):
        self._backend = backend
        self._connectivity = connectivity
        self._max_retries = max_retries
        self._initial_delay_ms = initial_delay_ms
        self._max_delay_ms = max_delay_ms
        self._sleep = sleep
        self.emitter = EventEmitter(ObsComponent.AI_CLIENT)

    async def send(
        self,
        request: AIRequest,
        *,
        offline_mode: bool = False,
        correlation_id: Optional[str] = None,
    ) -> AIResult:
        log = logger.with_correlation(correlation_id) if correlation_id else logger

        if offline_mode or not self._connectivity.is_online:
            log.info(
                "Skipping backend call while offline",
                connectivity=self._connectivity.current_state().value,
                offline_mode=offline_mode,
            )
            return offline_notice()

        prompt = build_prompt(request)
        log.debug("Site context attached", site_context_length=len(request.site_context))
        self.emitter.emit(
            "ai.request",
            correlation_id=correlation_id,
            pii=utterance_pii("utterance"),
            utterance=request.utterance,
            backend=self._backend.name,
        )

        delay_ms = self._initial_delay_ms
        last_category: Optional[str] = None
        total_attempts = self._max_retries + 1

        for attempt in range(1, total_attempts + 1):
            t_start = time.perf_counter()
            try:
                log.debug("Backend call attempt", attempt=attempt, max_attempts=total_attempts)
                result = await self._backend.generate(prompt)
            except Exception as e:
                last_category = ErrorHandler.report_backend_error(
                    e, attempt=attempt, correlation_id=correlation_id
                )
                log.warning(
                    "Backend call failed",
                    attempt=attempt,
                    max_attempts=total_attempts,
                    category=last_category,
                    error=ErrorHandler.redact(str(e)),
                    error_type=type(e).__name__,
                )
                if attempt == total_attempts:
                    break

                log.info("Waiting before next backend attempt", delay_ms=delay_ms, attempt=attempt)
                self.emitter.emit(
                    "ai.retry",
                    severity=Severity.WARN,
                    correlation_id=correlation_id,
                    attempt=attempt,
                    delay_ms=delay_ms,
                    category=last_category,
                )
                await self._sleep(delay_ms / 1000.0)
                delay_ms = min(delay_ms * 2, self._max_delay_ms)
                continue

            latency_ms = int((time.perf_counter() - t_start) * 1000)
            if is_service_degraded(result.text):
                log.warning("Backend answered with a service-degraded message", attempt=attempt)
                return self._fallback(request, correlation_id, reason="service_degraded")

            result = dataclasses.replace(result, degraded=is_limited_mode(result.text))
            self.emitter.emit(
                "ai.response",
                correlation_id=correlation_id,
                attempt=attempt,
                latency_ms=latency_ms,
                text_length=len(result.text),
                has_directive=result.directive is not None,
                degraded=result.degraded,
            )
            return result

        log.warning(
            "Backend retries exhausted, using fallback response",
            max_retries=self._max_retries,
            category=last_category,
        )
        return self._fallback(
            request,
            correlation_id,
            reason="rate_limited" if last_category == ErrorCategory.BACKEND_RATE_LIMITED else "retries_exhausted",
        )

    def _fallback(self, request: AIRequest, correlation_id: Optional[str], *, reason: str) -> AIResult:
        result = select_fallback(request.utterance)
        self.emitter.emit(
            "ai.fallback",
            severity=Severity.WARN,
            correlation_id=correlation_id,
            reason=reason,
            degraded=result.degraded,
        )
        return result

    async def aclose(self) -> None:
        await self._backend.aclose()
