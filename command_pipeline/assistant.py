"""
Voice assistant: turns final transcripts into answers.

One command is processed at a time. Reconnect phrases ("reconnexion",
"réessayer", ...) are handled locally as a manual retry; everything else goes
through the AI client with the current site context.
"""

from __future__ import annotations

import asyncio
import itertools
import time
from typing import Any, Callable, Optional

from logging_setup import Component as LogComponent, get_logger
from observability.events import Component as ObsComponent, EventEmitter, utterance_pii
from .ai_client import RetryingAIClient
from .backends import AIBackend, create_backend
from .config import PipelineConfig
from .connectivity import ConnectivityMonitor, Probe, http_probe
from .coordinator import OutputSink, ReconnectCoordinator, RecognitionEngine
from .models import AIRequest, AIResult, ManualRetry, RecognitionState, ResultSource, StartRequested
from .site_context import SiteContextProvider

logger = get_logger(LogComponent.ASSISTANT)


WELCOME_MESSAGE = "Bonjour, je suis votre assistant vocal. Comment puis-je vous aider?"
RECONNECT_MESSAGE = "Je tente de me reconnecter au service de reconnaissance vocale"
APOLOGY_MESSAGE = "Désolé, une erreur s'est produite lors du traitement de votre demande."

RECONNECT_COMMANDS = ("reconnexion", "réessayer", "connecte-toi", "mode en ligne")

_command_counter = itertools.count(1)


def is_reconnect_command(command: str) -> bool:
    lowered = command.lower()
    return any(phrase in lowered for phrase in RECONNECT_COMMANDS)


def _new_correlation_id() -> str:
    return f"cmd_{int(time.time() * 1000)}_{next(_command_counter)}"


class VoiceAssistant:
    def __init__(
        self,
        coordinator: ReconnectCoordinator,
        client: RetryingAIClient,
        connectivity: ConnectivityMonitor,
        sink: OutputSink,
        *,
        site_context: Callable[[], str],
    ):
        self.coordinator = coordinator
        self.client = client
        self.connectivity = connectivity
        self._sink = sink
        self._site_context = site_context
        self._lock = asyncio.Lock()
        self.emitter = EventEmitter(ObsComponent.ASSISTANT)
        coordinator.set_utterance_handler(self.process_command)

    async def start(self) -> None:
        """Greet, start watching connectivity and start listening."""
        self._sink.display(WELCOME_MESSAGE)
        self.coordinator.attach()
        self.connectivity.start()
        self.coordinator.post(StartRequested())

    async def aclose(self) -> None:
        await self.coordinator.shutdown()
        await self.connectivity.stop()
        await self.client.aclose()

    async def process_command(self, command: str) -> Optional[AIResult]:
        """Handle one utterance; returns None for blank input."""
        command = command.strip()
        if not command:
            return None

        async with self._lock:
            correlation_id = _new_correlation_id()
            log = logger.with_correlation(correlation_id)
            log.info_pii("Command received", utterance=command)
            self.emitter.emit(
                "command.received",
                correlation_id=correlation_id,
                pii=utterance_pii("utterance"),
                utterance=command,
                recognition_state=self.coordinator.state.value,
            )
            self._sink.status(f"Commande reçue: {command.lower()}")

            t_start = time.perf_counter()
            try:
                result = await self._answer(command, correlation_id)
            except Exception as e:
                log.exception("Command processing failed", error_type=type(e).__name__)
                result = AIResult(text=APOLOGY_MESSAGE, source=ResultSource.LOCAL)
                self._sink.display(result.text)

            self.emitter.emit(
                "command.completed",
                correlation_id=correlation_id,
                source=result.source.value,
                degraded=result.degraded,
                has_directive=result.directive is not None,
                latency_ms=int((time.perf_counter() - t_start) * 1000),
            )
            return result

    async def _answer(self, command: str, correlation_id: str) -> AIResult:
        if is_reconnect_command(command):
            self._sink.display(RECONNECT_MESSAGE)
            self.coordinator.post(ManualRetry())
            return AIResult(text=RECONNECT_MESSAGE, source=ResultSource.LOCAL)

        self._sink.status("Traitement de votre demande...")
        request = AIRequest(utterance=command, site_context=self._site_context())
        result = await self.client.send(
            request,
            offline_mode=self.coordinator.state is RecognitionState.OFFLINE_MODE,
            correlation_id=correlation_id,
        )
        self.coordinator.observe_result(result)

        self._sink.display(result.text)
        if result.directive:
            self._sink.execute(result.directive)
        return result


def build_assistant(
    config: PipelineConfig,
    engine: RecognitionEngine,
    sink: OutputSink,
    *,
    backend: Optional[AIBackend] = None,
    probe: Optional[Probe] = None,
    sleep: Callable[[float], Any] = asyncio.sleep,
) -> VoiceAssistant:
    """Wire the pipeline components from configuration."""
    connectivity = ConnectivityMonitor(
        probe=probe if probe is not None else http_probe(config.probe_url),
        poll_interval_seconds=config.connectivity_poll_seconds,
        sleep=sleep,
    )
    if backend is None:
        backend = create_backend(
            config.ai_backend,
            base_url=config.ai_backend_url,
            model=config.ai_model,
            timeout_seconds=config.ai_request_timeout_seconds,
        )
    client = RetryingAIClient(
        backend,
        connectivity,
        max_retries=config.ai_max_retries,
        initial_delay_ms=config.ai_retry_initial_ms,
        max_delay_ms=config.ai_retry_max_ms,
        sleep=sleep,
    )
    coordinator = ReconnectCoordinator(
        engine,
        sink,
        connectivity,
        max_attempts=config.recognition_max_attempts,
        backoff_cap_ms=config.recognition_backoff_max_ms,
        sleep=sleep,
    )
    logger.info(
        "Assistant pipeline built",
        backend=backend.name,
        model=config.ai_model,
        language=config.recognition_language,
    )
    return VoiceAssistant(
        coordinator,
        client,
        connectivity,
        sink,
        site_context=SiteContextProvider(config.site_catalog_path),
    )
