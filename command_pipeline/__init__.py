"""
Resilient voice command pipeline for the InteracIA assistant.

Finalized utterance -> AI backend (streamed, retried) -> text + optional UI directive.

Parts:
- ConnectivityMonitor: online/offline truth, deduplicated transitions
- ReconnectCoordinator: recognition engine lifecycle as one state machine
- RetryingAIClient: bounded retries, local fallbacks, never raises
- StreamResponseDecoder: NDJSON stream -> one AIResult
- VoiceAssistant: processes one command at a time and feeds the output sink

The pipeline never executes the directives it returns; it only hands them to
an external executor (see directives.py for the whitelisted vocabulary).
"""
