"""
AI backend transports.

Two deployments are supported behind one `generate(prompt) -> AIResult` call:
- StreamingGenerateBackend: `POST /api/generate` with `stream: true`, answer
  delivered as NDJSON and reduced by StreamResponseDecoder (default)
- ChatCompletionBackend: non-streaming chat completion; rate limits surface as
  HTTP 429 or an error object with `type: "rate_limit_exceeded"`

Transports raise; retry and fallback policy belongs to RetryingAIClient.
"""

from __future__ import annotations

import json
import time
from typing import Any, Dict, Optional, Protocol

import aiohttp

from logging_setup import Component, get_logger
from .decoder import StreamResponseDecoder
from .errors import BackendError, BackendMalformed, BackendRateLimited, BackendTransient
from .models import AIResult
from .site_context import Prompt

logger = get_logger(Component.AI_CLIENT)


class AIBackend(Protocol):
    name: str

    async def generate(self, prompt: Prompt) -> AIResult:
        ...

    async def aclose(self) -> None:
        ...


def _raise_for_status(status: int, body: str) -> None:
    if status == 429:
        raise BackendRateLimited(f"HTTP 429: {body[:200]}", status=status)
    if status >= 500:
        raise BackendTransient(f"HTTP {status}: {body[:200]}", status=status)
    raise BackendError(f"HTTP {status}: {body[:200]}", status=status)


class _PooledHTTPBackend:
    """Shared aiohttp session handling for backend transports."""

    name = "http"

    def __init__(
        self,
        *,
        base_url: str,
        model: str,
        timeout_seconds: float = 30.0,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._model = model
        self._timeout_seconds = timeout_seconds
        self._http_session = session
        self._owns_session = session is None
        self.decoder = StreamResponseDecoder()

    def _get_or_create_session(self) -> aiohttp.ClientSession:
        """
        Get or create the shared HTTP session.

        Reuses TCP connections between commands.
        """
        if self._http_session is None or self._http_session.closed:
            connector = aiohttp.TCPConnector(limit=4, ttl_dns_cache=300)
            timeout = aiohttp.ClientTimeout(
                total=self._timeout_seconds,
                connect=min(5.0, self._timeout_seconds),
            )
            self._http_session = aiohttp.ClientSession(connector=connector, timeout=timeout)
            self._owns_session = True
            logger.info(
                "Backend connection pool created",
                backend=self.name,
                base_url=self._base_url,
                total_timeout_ms=int(self._timeout_seconds * 1000),
            )
        return self._http_session

    async def aclose(self) -> None:
        """Close the pooled session. Safe to call multiple times."""
        if self._http_session is not None and self._owns_session:
            try:
                await self._http_session.close()
                logger.info("Backend connection pool closed", backend=self.name)
            finally:
                self._http_session = None


class StreamingGenerateBackend(_PooledHTTPBackend):
    name = "ollama"

    async def generate(self, prompt: Prompt) -> AIResult:
        url = f"{self._base_url}/api/generate"
        payload = {
            "model": self._model,
            "prompt": prompt.as_single_text(),
            "stream": True,
        }

        t_start = time.perf_counter()
        session = self._get_or_create_session()
        async with session.post(url, json=payload) as response:
            if response.status != 200:
                _raise_for_status(response.status, await response.text())
            result = await self.decoder.decode(response.content.iter_any())

        logger.info(
            "Backend stream completed",
            backend=self.name,
            model=self._model,
            text_length=len(result.text),
            has_directive=result.directive is not None,
            latency_ms=int((time.perf_counter() - t_start) * 1000),
        )
        return result


class ChatCompletionBackend(_PooledHTTPBackend):
    name = "chat"

    temperature = 0.7
    max_tokens = 500

    async def generate(self, prompt: Prompt) -> AIResult:
        url = f"{self._base_url}/v1/chat/completions"
        payload = {
            "model": self._model,
            "messages": [
                {"role": "system", "content": prompt.system},
                {"role": "user", "content": prompt.user},
            ],
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }

        t_start = time.perf_counter()
        session = self._get_or_create_session()
        async with session.post(url, json=payload) as response:
            body = await response.text()
            if response.status == 429:
                _raise_for_status(response.status, body)
            data = self._parse_body(body)
            self._raise_for_error_object(data, response.status)
            if response.status != 200:
                _raise_for_status(response.status, body)

        content = self._extract_content(data)
        usage = data.get("usage") or {}
        logger.info(
            "Backend completion received",
            backend=self.name,
            model=self._model,
            total_tokens=usage.get("total_tokens"),
            latency_ms=int((time.perf_counter() - t_start) * 1000),
        )
        return self.decoder.decode_text(content)

    @staticmethod
    def _parse_body(body: str) -> Dict[str, Any]:
        try:
            data = json.loads(body) if body else {}
        except json.JSONDecodeError as e:
            raise BackendMalformed(f"malformed initial response: {e}") from e
        if not isinstance(data, dict):
            raise BackendMalformed("malformed initial response: not a JSON object")
        return data

    @staticmethod
    def _raise_for_error_object(data: Dict[str, Any], status: int) -> None:
        error = data.get("error")
        if not error:
            return
        if isinstance(error, dict):
            error_type = error.get("type") or error.get("code")
            message = error.get("message") or str(error_type)
        else:
            error_type, message = None, str(error)
        if error_type == "rate_limit_exceeded" or status == 429:
            raise BackendRateLimited(f"rate limit: {message}", status=status)
        if status >= 500 or status == 200:
            raise BackendTransient(f"backend error: {message}", status=status)
        raise BackendError(f"backend error: {message}", status=status)

    @staticmethod
    def _extract_content(data: Dict[str, Any]) -> str:
        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise BackendMalformed("malformed initial response: no choices") from e
        if not content:
            raise BackendTransient("empty completion")
        return content


def create_backend(kind: str, *, base_url: str, model: str, timeout_seconds: float) -> AIBackend:
    if kind == "chat":
        return ChatCompletionBackend(base_url=base_url, model=model, timeout_seconds=timeout_seconds)
    return StreamingGenerateBackend(base_url=base_url, model=model, timeout_seconds=timeout_seconds)
