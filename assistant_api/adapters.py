"""
HTTP-side adapters for the recognition engine and the output sink.

The browser owns the microphone, the speech synthesizer and the page. The
coordinator's engine commands and the assistant's output are queued here and
drained by the page through the assistant API.
"""

from __future__ import annotations

from collections import deque
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Optional

from command_pipeline.directives import interpret

ENGINE_COMMANDS = ("start", "stop", "abort")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class QueuedRecognitionEngine:
    """Records start/stop/abort requests for the browser recognizer."""

    def __init__(self, max_pending: int = 100):
        self._pending: Deque[str] = deque(maxlen=max_pending)

    def start(self) -> None:
        self._pending.append("start")

    def stop(self) -> None:
        self._pending.append("stop")

    def abort(self) -> None:
        self._pending.append("abort")

    def drain(self) -> List[str]:
        commands = list(self._pending)
        self._pending.clear()
        return commands


class BufferedOutputSink:
    """Keeps spoken text, status lines and directives until the page fetches them."""

    def __init__(self, max_messages: int = 500):
        self._messages: Deque[Dict[str, Any]] = deque(maxlen=max_messages)
        self.last_status: Optional[str] = None

    def display(self, text: str) -> None:
        self._messages.append({"kind": "speak", "text": text, "ts": _now_iso()})

    def status(self, text: str) -> None:
        self.last_status = text
        self._messages.append({"kind": "status", "text": text, "ts": _now_iso()})

    def execute(self, directive: str) -> None:
        parsed = interpret(directive)
        self._messages.append({
            "kind": "directive",
            "text": directive,
            "operations": [op.model_dump() for op in parsed.operations],
            "rejected": parsed.rejected,
            "ts": _now_iso(),
        })

    def drain(self) -> List[Dict[str, Any]]:
        messages = list(self._messages)
        self._messages.clear()
        return messages
