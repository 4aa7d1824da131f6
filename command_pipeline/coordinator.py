"""
Reconnect coordinator: recognition engine lifecycle as one state machine.

States: IDLE -> LISTENING -> NETWORK_ERROR -> OFFLINE_MODE (see _on_* handlers).

All inputs arrive as typed event messages through post(): recognition source
callbacks, connectivity transitions, manual retries and backoff timer firings.
RecognitionState and RetryContext are owned here and only mutated by these
handlers.

Reconnect backoff after a recognition "network" error:
    delay(attempt) = min(2^(attempt-1) * 1000ms, 30000ms), attempt from 1
Reaching max_attempts (5) enters OFFLINE_MODE and freezes the retry context
until connectivity comes back or the user asks to retry.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, Set

from logging_setup import Component as LogComponent, get_logger
from observability.events import Component as ObsComponent, EventEmitter, Severity
from .connectivity import ConnectivityMonitor
from .errors import ErrorCategory, ErrorHandler
from .models import (
    AIResult,
    BackoffFired,
    BecameOffline,
    BecameOnline,
    CoordinatorEvent,
    ManualRetry,
    RecognitionEnded,
    RecognitionError,
    RecognitionErrorKind,
    RecognitionResult,
    RecognitionStarted,
    RecognitionState,
    ResultSource,
    RetryContext,
    StartRequested,
    backoff_delay_ms,
)

logger = get_logger(LogComponent.RECOGNITION)


OFFLINE_ANNOUNCEMENT = (
    "Je passe en mode hors ligne avec des fonctionnalités limitées. "
    "Certaines commandes ne seront pas disponibles."
)


class RecognitionEngine(Protocol):
    """Speech recognition source controlled by the coordinator."""

    def start(self) -> None:
        ...

    def stop(self) -> None:
        ...

    def abort(self) -> None:
        ...


class OutputSink(Protocol):
    """User-facing output: spoken/displayed text, status line, directive executor."""

    def display(self, text: str) -> None:
        ...

    def status(self, text: str) -> None:
        ...

    def execute(self, directive: str) -> None:
        ...


UtteranceHandler = Callable[[str], Awaitable[Any]]


class ReconnectCoordinator:
    def __init__(
        self,
        engine: RecognitionEngine,
        sink: OutputSink,
        connectivity: ConnectivityMonitor,
        *,
        max_attempts: int = 5,
        backoff_cap_ms: int = 30000,
        sleep: Callable[[float], Any] = asyncio.sleep,
        now: Callable[[], float] = time.time,
    ):
        self._engine = engine
        self._sink = sink
        self._connectivity = connectivity
        self._backoff_cap_ms = backoff_cap_ms
        self._sleep = sleep
        self._now = now
        self.emitter = EventEmitter(ObsComponent.RECOGNITION)

        self._state = RecognitionState.IDLE
        self._retry = RetryContext(max_attempts=max_attempts)
        self.last_network_error_ts: Optional[float] = None

        self._engine_active = False
        self._suspended_by_offline = False
        self._permission_denied = False
        self._offline_reason: Optional[str] = None  # "recognition" | "backend"

        # Only one backoff timer at a time; the generation makes stale firings harmless
        self._backoff_task: Optional[asyncio.Task] = None
        self._generation = 0

        self._on_utterance: Optional[UtteranceHandler] = None
        self._command_tasks: Set[asyncio.Task] = set()
        self._unsubscribe: Optional[Callable[[], None]] = None

        self._handlers: Dict[type, Callable[[Any], None]] = {
            StartRequested: self._on_start_requested,
            ManualRetry: self._on_manual_retry,
            RecognitionStarted: self._on_recognition_started,
            RecognitionResult: self._on_recognition_result,
            RecognitionError: self._on_recognition_error,
            RecognitionEnded: self._on_recognition_ended,
            BecameOffline: self._on_became_offline,
            BecameOnline: self._on_became_online,
            BackoffFired: self._on_backoff_fired,
        }

    # --- Read-only views ---

    @property
    def state(self) -> RecognitionState:
        return self._state

    @property
    def retry(self) -> RetryContext:
        """Snapshot copy; the live context is owned by the coordinator."""
        return RetryContext(**self._retry.snapshot())

    @property
    def engine_active(self) -> bool:
        return self._engine_active

    def snapshot(self) -> Dict[str, Any]:
        return {
            "recognition_state": self._state.value,
            "connectivity": self._connectivity.current_state().value,
            "engine_active": self._engine_active,
            "permission_denied": self._permission_denied,
            "offline_reason": self._offline_reason,
            "retry": self._retry.snapshot(),
        }

    # --- Wiring ---

    def set_utterance_handler(self, handler: UtteranceHandler) -> None:
        self._on_utterance = handler

    def attach(self) -> None:
        """Subscribe to connectivity transitions."""
        if self._unsubscribe is None:
            self._unsubscribe = self._connectivity.subscribe(self.post)

    def post(self, event: CoordinatorEvent) -> None:
        """Deliver one event to the state machine."""
        handler = self._handlers.get(type(event))
        if handler is None:
            raise TypeError(f"Unsupported coordinator event: {type(event).__name__}")
        handler(event)

    async def shutdown(self) -> None:
        self._cancel_backoff()
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        if self._engine_active:
            self._engine.abort()
            self._engine_active = False
        for task in list(self._command_tasks):
            task.cancel()
        if self._command_tasks:
            await asyncio.gather(*self._command_tasks, return_exceptions=True)
        self._command_tasks.clear()

    def observe_result(self, result: AIResult) -> None:
        """
        Apply the AI client's classification of a result.

        A degraded answer while LISTENING moves to OFFLINE_MODE without waiting
        for a hard failure; the engine keeps running. IDLE and NETWORK_ERROR own
        the engine lifecycle and are left alone. A normal backend answer while
        offline is implicit recovery.
        """
        if result.degraded:
            if self._state is RecognitionState.LISTENING:
                self._retry.frozen = True
                self._offline_reason = "backend"
                self._transition(RecognitionState.OFFLINE_MODE, reason="degraded_response")
                self._sink.status("Mode hors ligne activé - Fonctionnalités limitées")
                logger.warning("Offline mode entered after a degraded response")
            else:
                logger.info("Degraded response; recognition state unchanged", state=self._state.value)
            return

        if result.source is not ResultSource.BACKEND:
            return

        if self._state is RecognitionState.OFFLINE_MODE:
            self._retry.reset()
            self._offline_reason = None
            self._transition(RecognitionState.LISTENING, reason="implicit_recovery")
            self._sink.status("Mode en ligne rétabli")
            logger.info("Online mode restored after a normal response")
            if not self._engine_active and not self._start_engine():
                self._begin_network_error()
        elif self._state is RecognitionState.LISTENING:
            self._retry.reset()

    # --- Handlers ---

    def _on_start_requested(self, _event: StartRequested) -> None:
        if self._state is not RecognitionState.IDLE:
            logger.debug("Start requested while not idle", state=self._state.value)
            return
        self._permission_denied = False
        self._suspended_by_offline = False
        if self._start_engine():
            self._transition(RecognitionState.LISTENING, reason="start_requested")
        else:
            self._sink.status("Erreur lors du démarrage de la reconnaissance vocale")

    def _on_manual_retry(self, _event: ManualRetry) -> None:
        logger.info("Manual retry requested", state=self._state.value, attempt=self._retry.attempt)
        self._cancel_backoff()
        self._retry.reset()
        self._offline_reason = None
        self._permission_denied = False
        self._suspended_by_offline = False
        self._transition(RecognitionState.LISTENING, reason="manual_retry")
        if not self._engine_active and not self._start_engine():
            self._begin_network_error()

    def _on_recognition_started(self, _event: RecognitionStarted) -> None:
        self._engine_active = True
        if self._state is RecognitionState.LISTENING:
            self._sink.status("Écoute en cours...")

    def _on_recognition_result(self, event: RecognitionResult) -> None:
        if not event.is_final:
            return
        text = event.text.strip()
        if not text:
            return
        logger.debug_pii("Final transcript received", utterance=text)
        if self._on_utterance is None:
            logger.warning("Final transcript dropped: no utterance handler")
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("Final transcript dropped: no running event loop")
            return
        task = loop.create_task(self._on_utterance(text))
        self._command_tasks.add(task)
        task.add_done_callback(self._command_tasks.discard)

    def _on_recognition_error(self, event: RecognitionError) -> None:
        category = ErrorHandler.classify_recognition_error(event.kind)
        logger.info("Recognition engine error", kind=event.kind.value, category=category, state=self._state.value)

        if event.kind is RecognitionErrorKind.NETWORK:
            if self._state is RecognitionState.LISTENING:
                self._sink.status(ErrorHandler.get_user_message(category))
                self._begin_network_error()
            else:
                self._engine_active = False
            return

        if event.kind is RecognitionErrorKind.NOT_ALLOWED:
            # Not retried: only a manual retry or a new start leaves this
            self._cancel_backoff()
            self._permission_denied = True
            self._engine_active = False
            self._transition(RecognitionState.IDLE, reason="permission_denied")
            message = ErrorHandler.get_user_message(category)
            self._sink.status(f"Erreur: {message}")
            self._sink.display(message)
            return

        if event.kind is RecognitionErrorKind.NO_SPEECH:
            self._sink.status(ErrorHandler.get_user_message(category))
            return

        self._sink.status(f"Erreur: {event.kind.value}")
        logger.error("Unhandled recognition error", kind=event.kind.value)

    def _on_recognition_ended(self, _event: RecognitionEnded) -> None:
        self._engine_active = False
        keep_listening = self._state is RecognitionState.LISTENING or (
            self._state is RecognitionState.OFFLINE_MODE and self._offline_reason == "backend"
        )
        if not keep_listening:
            logger.debug("Recognition ended; not restarting", state=self._state.value)
            return
        # Continuous listening: restart right away
        if not self._start_engine():
            self._sink.status("Erreur lors du redémarrage de la reconnaissance")

    def _on_became_offline(self, _event: BecameOffline) -> None:
        self._sink.status(ErrorHandler.get_user_message(ErrorCategory.CONNECTIVITY_LOST))
        if self._state is not RecognitionState.LISTENING:
            return
        logger.info("Stopping recognition after connectivity loss")
        self._suspended_by_offline = True
        self._transition(RecognitionState.IDLE, reason="connectivity_lost")
        self._stop_engine()

    def _on_became_online(self, _event: BecameOnline) -> None:
        self._sink.status("Connexion Internet rétablie")
        if self._state in (RecognitionState.NETWORK_ERROR, RecognitionState.OFFLINE_MODE):
            reason = "connectivity_restored"
        elif self._state is RecognitionState.IDLE and self._suspended_by_offline:
            reason = "connectivity_resumed"
        else:
            return

        self._cancel_backoff()
        self._retry.reset()
        self._offline_reason = None
        self._suspended_by_offline = False
        self._transition(RecognitionState.LISTENING, reason=reason)
        if not self._engine_active and not self._start_engine():
            self._begin_network_error()

    def _on_backoff_fired(self, event: BackoffFired) -> None:
        if event.generation != self._generation or self._state is not RecognitionState.NETWORK_ERROR:
            logger.debug("Ignoring stale backoff timer", generation=event.generation, state=self._state.value)
            return

        if not self._connectivity.is_online:
            self._sink.status("Connexion Internet toujours indisponible")
            self._schedule_next_attempt()
            return

        self._sink.status("Tentative de reconnexion...")
        if self._start_engine():
            attempts = self._retry.attempt
            self._retry.reset()
            self._transition(RecognitionState.LISTENING, reason="reconnected", after_attempts=attempts)
            self._sink.status("Reconnexion réussie. Écoute en cours...")
        else:
            self._schedule_next_attempt()

    # --- Network error episode ---

    def _begin_network_error(self) -> None:
        self.last_network_error_ts = self._now()
        self._engine_active = False
        self._transition(RecognitionState.NETWORK_ERROR, reason="network_error")
        self._schedule_next_attempt()

    def _schedule_next_attempt(self) -> None:
        self._retry.attempt += 1
        attempt, max_attempts = self._retry.attempt, self._retry.max_attempts
        logger.info("Reconnect attempt", attempt=attempt, max_attempts=max_attempts)

        if self._retry.exhausted:
            self._enter_offline_mode()
            return

        delay_ms = backoff_delay_ms(attempt, cap_ms=self._backoff_cap_ms)
        self._retry.next_delay_ms = delay_ms
        self._sink.status(
            f"Erreur réseau. Nouvelle tentative dans {delay_ms / 1000:g} secondes... "
            f"({attempt}/{max_attempts})"
        )
        self.emitter.emit(
            "recognition.backoff_scheduled",
            severity=Severity.WARN,
            attempt=attempt,
            max_attempts=max_attempts,
            delay_ms=delay_ms,
        )
        self._arm_backoff(delay_ms)

    def _enter_offline_mode(self) -> None:
        self._cancel_backoff()
        self._retry.frozen = True
        self._retry.next_delay_ms = 0
        self._offline_reason = "recognition"
        self._transition(RecognitionState.OFFLINE_MODE, reason="reconnect_exhausted")
        self._sink.status("Mode hors ligne activé après plusieurs tentatives échouées")
        self._sink.display(OFFLINE_ANNOUNCEMENT)
        logger.warning("Offline mode entered after failed reconnect attempts", attempts=self._retry.attempt)
        self.emitter.emit(
            "recognition.offline_mode",
            severity=Severity.WARN,
            attempts=self._retry.attempt,
        )

    def _arm_backoff(self, delay_ms: int) -> None:
        self._cancel_backoff()
        generation = self._generation

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running loop; backoff timer not scheduled", delay_ms=delay_ms)
            return

        async def _timer():
            await self._sleep(delay_ms / 1000.0)
            if self._backoff_task is asyncio.current_task():
                self._backoff_task = None
            self.post(BackoffFired(generation=generation))

        self._backoff_task = loop.create_task(_timer())

    def _cancel_backoff(self) -> None:
        # Bumping the generation invalidates a timer that already fired but is queued
        self._generation += 1
        if self._backoff_task is not None:
            self._backoff_task.cancel()
            self._backoff_task = None

    # --- Engine control ---

    def _start_engine(self) -> bool:
        try:
            self._engine.start()
        except Exception as e:
            logger.warning("Recognition engine failed to start", error=str(e), error_type=type(e).__name__)
            return False
        self._engine_active = True
        return True

    def _stop_engine(self) -> None:
        if not self._engine_active:
            return
        self._engine_active = False
        self._engine.stop()

    def _transition(self, new_state: RecognitionState, *, reason: str, **extra: Any) -> None:
        old_state = self._state
        if old_state is new_state:
            return
        self._state = new_state
        logger.info(
            "Recognition state changed",
            from_state=old_state.value,
            to_state=new_state.value,
            reason=reason,
            attempt=self._retry.attempt,
        )
        self.emitter.emit(
            "recognition.state_changed",
            from_state=old_state.value,
            to_state=new_state.value,
            reason=reason,
            attempt=self._retry.attempt,
            **extra,
        )
