"""
Streaming proxy for OpenAI-compatible chat completions.

The upstream call always streams, so the connection never idles; the caller
still receives one non-streaming chat-completion document. While the
upstream stream is drained the proxy writes a single space every
``heartbeat_interval`` seconds. JSON parsers skip leading whitespace, so
the heartbeats and the final document form one valid JSON body.
"""

from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Mapping

import httpx
from loguru import logger

from brainlane.config import settings
from brainlane.utils.exceptions import ProxyError
from brainlane.utils.json_recovery import UnparseableJson, parse_json_content

HEARTBEAT = b" "
SSE_DATA_PREFIX = "data:"
SSE_DONE = "[DONE]"


def build_upstream_body(
    body: Mapping[str, Any],
    *,
    include_usage: bool | None = None,
    default_max_tokens: int | None = None,
    default_temperature: float | None = None,
) -> dict[str, Any]:
    """Copy the caller's body, force streaming and fill in defaults the caller left out."""
    upstream = dict(body)
    upstream["stream"] = True

    if settings.proxy_include_usage if include_usage is None else include_usage:
        stream_options = dict(upstream.get("stream_options") or {})
        stream_options["include_usage"] = True
        upstream["stream_options"] = stream_options

    if upstream.get("max_tokens") is None:
        upstream["max_tokens"] = default_max_tokens or settings.proxy_default_max_tokens
    if upstream.get("temperature") is None:
        upstream["temperature"] = (
            default_temperature if default_temperature is not None else settings.proxy_default_temperature
        )
    return upstream


@dataclass
class StreamAccumulator:
    full_content: str = ""
    usage: dict[str, Any] | None = None
    role: str = "assistant"
    finish_reason: str | None = None
    model: str | None = None
    _role_seen: bool = field(default=False, repr=False, compare=False)

    def feed_line(self, line: str) -> bool:
        """
        Consume one SSE line. Returns True when it carried a chunk.

        ``[DONE]``, blank lines, comments and malformed payloads are ignored.
        """
        line = line.strip()
        if not line.startswith(SSE_DATA_PREFIX):
            return False
        data = line[len(SSE_DATA_PREFIX):].strip()
        if not data or data == SSE_DONE:
            return False
        try:
            chunk = json.loads(data)
        except json.JSONDecodeError:
            logger.debug("Skipping malformed stream chunk: {!r:.80}", data)
            return False
        if not isinstance(chunk, dict):
            return False

        if self.model is None and chunk.get("model"):
            self.model = chunk["model"]
        if chunk.get("usage"):
            self.usage = chunk["usage"]

        choices = chunk.get("choices") or []
        choice = choices[0] if choices and isinstance(choices[0], dict) else {}
        delta = choice.get("delta") or {}
        if delta.get("role") and not self._role_seen:
            self.role = delta["role"]
            self._role_seen = True
        if delta.get("content"):
            self.full_content += delta["content"]
        if choice.get("finish_reason"):
            self.finish_reason = choice["finish_reason"]
        return True


def wants_json_object(body: Mapping[str, Any]) -> bool:
    response_format = body.get("response_format")
    return isinstance(response_format, Mapping) and response_format.get("type") == "json_object"


def finalize_content(content: str, body: Mapping[str, Any]) -> str:
    """
    Normalise the accumulated content of a JSON-object request.

    Valid or repairable JSON is re-serialised compactly; anything else is
    returned untouched so the client can try its own recovery.
    """
    if not wants_json_object(body):
        return content
    outcome = parse_json_content(content)
    if isinstance(outcome, UnparseableJson):
        logger.warning("Streamed JSON could not be repaired ({} chars), passing through", len(content))
        return content
    return json.dumps(outcome.value, ensure_ascii=False)


def assemble_completion(
    acc: StreamAccumulator,
    body: Mapping[str, Any],
    content: str | None = None,
) -> dict[str, Any]:
    now = time.time()
    return {
        "id": f"bl-{int(now * 1000)}",
        "object": "chat.completion",
        "created": int(now),
        "model": acc.model or body.get("model") or settings.proxy_default_model,
        "choices": [
            {
                "index": 0,
                "message": {
                    "role": acc.role,
                    "content": acc.full_content if content is None else content,
                },
                "finish_reason": acc.finish_reason or "stop",
            }
        ],
        "usage": acc.usage or {"prompt_tokens": 0, "completion_tokens": 0, "total_tokens": 0},
    }


def error_document(message: str, code: str | int) -> bytes:
    return json.dumps({"error": message, "code": code}).encode()


class StreamingProxy:
    """Drains an upstream SSE line stream into one chat-completion document."""

    def __init__(self, heartbeat_interval: float | None = None, deadline: float | None = None) -> None:
        self.heartbeat_interval = heartbeat_interval or settings.proxy_heartbeat_interval
        self.deadline = deadline or settings.proxy_deadline

    async def relay(self, lines: AsyncIterator[str], body: Mapping[str, Any]) -> AsyncIterator[bytes]:
        """
        Yield heartbeats while ``lines`` is drained, then exactly one JSON document.

        The document is the assembled completion, or ``{error, code}`` with
        ``TIMEOUT`` once the deadline passes and ``STREAM_ERROR`` when
        reading the upstream fails.
        """
        acc = StreamAccumulator()
        loop = asyncio.get_running_loop()
        deadline_at = loop.time() + self.deadline
        drain = asyncio.ensure_future(self._drain(lines, acc))

        try:
            while not drain.done():
                remaining = deadline_at - loop.time()
                if remaining <= 0:
                    logger.warning("⏱️ Upstream stream exceeded {}s deadline", self.deadline)
                    drain.cancel()
                    await asyncio.gather(drain, return_exceptions=True)
                    yield error_document(f"Upstream did not finish within {self.deadline}s", "TIMEOUT")
                    return
                await asyncio.wait({drain}, timeout=min(self.heartbeat_interval, remaining))
                if not drain.done():
                    yield HEARTBEAT

            exc = drain.exception()
            if exc is not None:
                logger.error("Upstream stream failed: {}", exc)
                yield error_document(str(exc) or "Upstream stream failed", "STREAM_ERROR")
                return

            content = finalize_content(acc.full_content, body)
            yield json.dumps(assemble_completion(acc, body, content), ensure_ascii=False).encode()
        finally:
            if not drain.done():
                drain.cancel()
                await asyncio.gather(drain, return_exceptions=True)

    @staticmethod
    async def _drain(lines: AsyncIterator[str], acc: StreamAccumulator) -> None:
        async for line in lines:
            acc.feed_line(line)


# ---------------------------------------------------------------------------
# Upstream HTTP
# ---------------------------------------------------------------------------

def upstream_error(status_code: int, payload: bytes) -> ProxyError:
    """Best-effort ``error.message`` / ``error.code`` from an upstream error body."""
    message: str = f"OpenAI API error: {status_code}"
    code: str | int = status_code
    try:
        data = json.loads(payload or b"{}")
    except (json.JSONDecodeError, UnicodeDecodeError):
        data = {}
    error = data.get("error") if isinstance(data, dict) else None
    if isinstance(error, dict):
        message = error.get("message") or message
        code = error.get("code") or code
    elif isinstance(error, str) and error:
        message = error
    return ProxyError(message, status_code=status_code, code=code)


async def open_upstream(client: httpx.AsyncClient, body: Mapping[str, Any], api_key: str) -> httpx.Response:
    """
    Send the streaming request and return the open response.

    Raises:
        ProxyError: non-2xx upstream (same status), timeout (504) or
            transport failure (502).
    """
    request = client.build_request(
        "POST",
        f"{settings.openai_base_url.rstrip('/')}/chat/completions",
        json=dict(body),
        headers={"Authorization": f"Bearer {api_key}"},
    )
    try:
        response = await client.send(request, stream=True)
    except httpx.TimeoutException as exc:
        raise ProxyError("Upstream request timed out", status_code=504, code="TIMEOUT") from exc
    except httpx.HTTPError as exc:
        raise ProxyError(f"Upstream request failed: {exc}", status_code=502, code="STREAM_ERROR") from exc

    if response.is_success:
        return response

    try:
        payload = await response.aread()
    except httpx.HTTPError:
        payload = b""
    finally:
        await response.aclose()
    logger.warning("Upstream returned {}", response.status_code)
    raise upstream_error(response.status_code, payload)


_upstream_client: httpx.AsyncClient | None = None


def get_upstream_client() -> httpx.AsyncClient:
    global _upstream_client
    if _upstream_client is None:
        _upstream_client = httpx.AsyncClient(
            timeout=httpx.Timeout(settings.proxy_deadline, connect=settings.proxy_connect_timeout),
        )
    return _upstream_client


async def close_upstream_client() -> None:
    global _upstream_client
    if _upstream_client is not None:
        await _upstream_client.aclose()
        _upstream_client = None
