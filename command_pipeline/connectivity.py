"""
Connectivity monitor: the single source of truth for network reachability.

Two inputs feed it:
- platform notifications (the browser's online/offline events, forwarded by
  the assistant API through notify())
- a periodic poll (30s by default) that re-probes and catches missed
  notifications

Subscribers only ever see transitions: repeated reports of the same state are
dropped. The monitor does not start or stop recognition itself.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, List, Optional

import aiohttp

from logging_setup import Component as LogComponent, get_logger
from observability.events import Component as ObsComponent, EventEmitter, Severity
from .models import BecameOffline, BecameOnline, ConnectivityEvent, ConnectivityState

logger = get_logger(LogComponent.CONNECTIVITY)

Probe = Callable[[], Awaitable[bool]]
Listener = Callable[[ConnectivityEvent], None]


def http_probe(url: str, timeout_seconds: float = 3.0) -> Probe:
    """
    Build a probe that reports online when `url` answers at all.

    Any HTTP status counts as reachable; only transport failures mean offline.
    """

    async def _probe() -> bool:
        try:
            async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=timeout_seconds)) as s:
                async with s.head(url, allow_redirects=True):
                    return True
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.debug("Connectivity probe failed", url=url, error_type=type(e).__name__)
            return False

    return _probe


class ConnectivityMonitor:
    def __init__(
        self,
        *,
        probe: Optional[Probe] = None,
        poll_interval_seconds: float = 30.0,
        initial_state: ConnectivityState = ConnectivityState.ONLINE,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ):
        self._state = initial_state
        self._probe = probe
        self._poll_interval = poll_interval_seconds
        self._sleep = sleep
        self._listeners: List[Listener] = []
        self._poll_task: Optional[asyncio.Task] = None
        self.emitter = EventEmitter(ObsComponent.CONNECTIVITY)

    def current_state(self) -> ConnectivityState:
        return self._state

    @property
    def is_online(self) -> bool:
        return self._state is ConnectivityState.ONLINE

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener; returns a function that unregisters it."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def notify(self, online: bool, *, source: str = "notification") -> bool:
        """
        Record an observed state.

        Returns True when this was a transition (and listeners were told).
        """
        new_state = ConnectivityState.ONLINE if online else ConnectivityState.OFFLINE
        if new_state is self._state:
            return False

        old_state = self._state
        self._state = new_state

        logger.info(
            "Connexion Internet rétablie" if online else "Connexion Internet perdue",
            from_state=old_state.value,
            to_state=new_state.value,
            source=source,
        )
        self.emitter.emit(
            "connectivity.changed",
            severity=Severity.INFO if online else Severity.WARN,
            from_state=old_state.value,
            to_state=new_state.value,
            source=source,
        )

        event: ConnectivityEvent = BecameOnline(source=source) if online else BecameOffline(source=source)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.exception(
                    "Connectivity listener failed",
                    listener=getattr(listener, "__qualname__", repr(listener)),
                    error_type=type(e).__name__,
                )
        return True

    async def poll_once(self) -> ConnectivityState:
        """Re-probe and emit a transition only if the value changed."""
        if self._probe is None:
            return self._state
        try:
            online = await self._probe()
        except Exception as e:
            logger.warning(
                "Connectivity probe raised; keeping last known state",
                error=str(e),
                error_type=type(e).__name__,
            )
            return self._state
        self.notify(online, source="poll")
        return self._state

    def start(self) -> None:
        """Start the periodic poll (no-op without a probe or a running loop)."""
        if self._probe is None or self._poll_task is not None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return

        async def _poll_loop():
            while True:
                await self._sleep(self._poll_interval)
                await self.poll_once()

        self._poll_task = loop.create_task(_poll_loop())
        logger.debug("Connectivity polling started", interval_seconds=self._poll_interval)

    async def stop(self) -> None:
        if self._poll_task is None:
            return
        self._poll_task.cancel()
        try:
            await self._poll_task
        except asyncio.CancelledError:
            pass
        self._poll_task = None
        logger.debug("Connectivity polling stopped")
