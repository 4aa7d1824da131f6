"""
Structured JSON event emission (shared).

Every pipeline component reports its observable transitions through this
envelope: connectivity changes, recognition state changes, AI requests,
retries and fallbacks. Events go to stdout (one JSON object per line) and
into the in-memory event store read by the assistant API.
"""

from __future__ import annotations

import json
import sys
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from .event_store import event_store


class Component(str, Enum):
    """Event-emitting components."""

    CONNECTIVITY = "connectivity"
    RECOGNITION = "recognition"
    AI_CLIENT = "ai_client"
    ASSISTANT = "assistant"
    API = "api"


class Severity(str, Enum):
    """Event severity levels."""

    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


DEFAULT_PII = {"contains_pii": False, "fields": [], "handling": "none"}

# One assistant process serves one user; events are correlated per process.
DEFAULT_INSTANCE_ID = "assistant"


def utterance_pii(*fields: str) -> Dict[str, Any]:
    """PII marker for events carrying what the user said."""
    return {"contains_pii": True, "fields": list(fields), "handling": "none"}


class EventEmitter:
    """Emits structured JSON events for one component."""

    def __init__(self, component: Component, instance_id: str = DEFAULT_INSTANCE_ID):
        self.component = component
        self.instance_id = instance_id

    def emit(
        self,
        event_type: str,
        severity: Severity = Severity.INFO,
        correlation_id: Optional[str] = None,
        pii: Optional[Dict[str, Any]] = None,
        **kwargs: Any,
    ) -> Dict[str, Any]:
        """
        Emit one event.

        Args:
            event_type: Stable event type string (e.g. "recognition.state_changed")
            severity: Event severity level
            correlation_id: Command id when the event belongs to one command
            pii: PII metadata dict with contains_pii, fields, handling
            **kwargs: Event-specific fields
        """
        event = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "instance_id": self.instance_id,
            "component": self.component.value,
            "event_type": event_type,
            "severity": severity.value,
            "correlation_id": correlation_id or self.instance_id,
            "pii": pii or DEFAULT_PII,
        }
        event.update(kwargs)

        sys.stdout.write(json.dumps(event, ensure_ascii=False, default=str))
        sys.stdout.write("\n")
        sys.stdout.flush()

        event_store.store(event)
        return event
