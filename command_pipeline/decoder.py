"""
Stream response decoder.

Reduces a backend NDJSON stream (one JSON object per line, each carrying a
partial `response` token span, the last one flagged `done: true`) to exactly
one AIResult. Nothing partial is ever handed to the caller.

The backend is asked to answer with an envelope:

    {response: '<text to say>', script: '<UI directive>'}

Models do not always honour that, so the envelope is matched tolerantly
(strict JSON, JSON5-ish unquoted keys, single quotes, missing closing brace);
anything that does not match is plain prose with no directive.
"""

from __future__ import annotations

import json
import re
from typing import AsyncIterable, Optional, Tuple

from logging_setup import Component, get_logger
from .errors import BackendMalformed, BackendRateLimited, BackendTransient
from .models import AIResult, ResultSource, StreamAccumulator

logger = get_logger(Component.DECODER)


ENVELOPE_PATTERN = re.compile(
    r"""\{\s*
        ["']?(?:response|content)["']?\s*:\s*
        (?P<q1>["'])(?P<text>.*?)(?P=q1)\s*,\s*
        ["']?script["']?\s*:\s*
        (?P<q2>["'])(?P<script>.*?)
        (?:(?P=q2)\s*\}|(?P=q2)?\s*$)
    """,
    re.DOTALL | re.VERBOSE,
)

_ESCAPES = {"\\n": "\n", "\\t": "\t", "\\'": "'", '\\"': '"', "\\\\": "\\"}
_ESCAPE_PATTERN = re.compile(r"\\[nt'\"\\]")


def _unescape(value: str) -> str:
    return _ESCAPE_PATTERN.sub(lambda m: _ESCAPES[m.group(0)], value)


def parse_envelope(text: str) -> Tuple[str, Optional[str]]:
    """
    Split accumulated backend text into (spoken text, directive).

    >>> parse_envelope("{response:'Hi there', script:'alert(1)'}")
    ('Hi there', 'alert(1)')
    >>> parse_envelope("Just prose.")
    ('Just prose.', None)
    """
    stripped = text.strip()

    # Strict JSON first: unambiguous when the model follows the format exactly
    if stripped.startswith("{"):
        try:
            parsed = json.loads(stripped)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, dict):
            body = parsed.get("response", parsed.get("content"))
            if isinstance(body, str):
                script = parsed.get("script")
                return body, script if isinstance(script, str) and script.strip() else None

    match = ENVELOPE_PATTERN.search(text)
    if match is None:
        return text, None

    script = _unescape(match.group("script")).strip()
    return _unescape(match.group("text")), script or None


class StreamResponseDecoder:
    """One-shot reducer from a chunked NDJSON stream to an AIResult."""

    async def decode(self, chunks: AsyncIterable[bytes]) -> AIResult:
        """
        Consume the stream until a `done` fragment or stream close.

        Transport errors raised by `chunks` propagate unchanged. A stream that
        yields no parseable fragment at all is a malformed response and raises
        BackendMalformed so the client retries it.
        """
        acc = StreamAccumulator()

        async for chunk in chunks:
            if not chunk:
                continue
            acc.pending += chunk
            *lines, acc.pending = acc.pending.split(b"\n")
            for line in lines:
                self._consume_line(acc, line)
                if acc.done:
                    break
            if acc.done:
                break

        if not acc.done and acc.pending.strip():
            # Stream closed without a trailing newline
            self._consume_line(acc, acc.pending)
        acc.pending = b""

        if acc.fragments == 0:
            raise BackendMalformed(
                f"malformed initial response ({acc.skipped} unparseable lines)"
            )

        text, directive = parse_envelope(acc.buffer)
        logger.debug(
            "Stream decoded",
            fragments=acc.fragments,
            skipped=acc.skipped,
            text_length=len(text),
            explicit_done=acc.done,
            has_directive=directive is not None,
        )
        return AIResult(text=text, directive=directive, source=ResultSource.BACKEND)

    def decode_text(self, text: str) -> AIResult:
        """Decode a complete (non-streamed) backend answer."""
        body, directive = parse_envelope(text)
        return AIResult(text=body, directive=directive, source=ResultSource.BACKEND)

    def _consume_line(self, acc: StreamAccumulator, raw: bytes) -> None:
        line = raw.strip()
        if not line:
            return
        try:
            fragment = json.loads(line.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            acc.skipped += 1
            logger.warning(
                "Skipping malformed stream fragment",
                error_type=type(e).__name__,
                fragment_snippet=line[:80].decode("utf-8", errors="replace"),
            )
            return
        if not isinstance(fragment, dict):
            acc.skipped += 1
            logger.warning("Skipping non-object stream fragment", fragment_type=type(fragment).__name__)
            return

        error = fragment.get("error")
        if error:
            message = error if isinstance(error, str) else json.dumps(error)
            if "rate" in message.lower() and "limit" in message.lower():
                raise BackendRateLimited(f"backend error fragment: {message}")
            raise BackendTransient(f"backend error fragment: {message}")

        acc.fragments += 1
        response = fragment.get("response")
        if isinstance(response, str):
            acc.parts.append(response)

        if fragment.get("done") is True:
            acc.terminal_envelope = fragment
