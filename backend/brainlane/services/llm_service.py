"""
LLM Service - single entry point for structured LLM calls.

Two providers behind one ``invoke`` call:
- OpenAI-compatible chat completions over httpx (default)
- Anthropic Claude through the AsyncAnthropic SDK

Shared behaviour:
- Sliding-window rate limiter
- Retry with exponential back-off via tenacity (network, 429, 5xx only)
- Model routing by task type
- JSON outputs run through fence stripping, JSON repair and pydantic
- Token usage and cost tracking
"""

from __future__ import annotations

import asyncio
from collections import deque
from datetime import datetime, timedelta, timezone
from typing import Any, Protocol, TypeVar

import anthropic
import httpx
from anthropic import AsyncAnthropic
from loguru import logger
from pydantic import BaseModel, ValidationError
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from brainlane.config import settings
from brainlane.utils.exceptions import LLMError, RateLimitError, TransientLLMError
from brainlane.utils.json_recovery import RepairedJson, UnparseableJson, parse_json_content, strip_fences
from brainlane.utils.token_counter import count_tokens, estimate_cost

ModelT = TypeVar("ModelT", bound=BaseModel)


SYSTEM_PROMPTS: dict[str, str] = {
    "analysis": (
        "You are a senior software architect with 15+ years of experience.\n"
        "Analyze code thoroughly and provide actionable insights.\n"
        "Always respond with valid JSON matching the requested schema exactly.\n"
        "Be specific about files, line numbers, and issues found.\n"
        "Do not use placeholder or example data - analyze the actual code provided."
    ),
    "task_generation": (
        "You are a technical project manager and senior engineer.\n"
        "Generate concrete, actionable tasks based on the analysis provided.\n"
        "Each task should be specific, measurable, and have clear acceptance criteria.\n"
        "Prioritize tasks by impact and effort.\n"
        "Always respond with valid JSON."
    ),
    "code_review": (
        "You are a meticulous code reviewer focused on code quality, security "
        "vulnerabilities, performance and established best practices.\n"
        "Provide specific, constructive feedback with code examples when helpful."
    ),
    "refactoring": (
        "You are an expert in code refactoring and design patterns.\n"
        "Suggest refactoring strategies that improve code quality without changing behavior.\n"
        "Provide before/after code examples."
    ),
    "documentation": (
        "You are a technical writer who creates clear, concise documentation.\n"
        "Write documentation that is helpful for both new and experienced developers."
    ),
}

# task type -> OpenAI model; anything unlisted uses settings.openai_model
MODEL_ROUTING: dict[str, str] = {
    "analysis": "gpt-4o",
    "task_generation": "gpt-4o",
    "code_review": "gpt-4o",
    "refactoring": "gpt-4o",
    "documentation": "gpt-4o-mini",
    "chat": "gpt-4o-mini",
}

JSON_ONLY_SUFFIX = "\n\nRespond with ONLY valid JSON: no markdown fences, no prose."


class LLMInvoker(Protocol):
    """What the pipeline and the analysis ladder need from an LLM."""

    async def invoke(
        self,
        prompt: str,
        *,
        system_prompt: str | None = None,
        response_model: type[BaseModel] | None = None,
        max_tokens: int | None = None,
        task_type: str = "default",
        temperature: float | None = None,
    ) -> Any: ...


# ---------------------------------------------------------------------------
# Rate limiter
# ---------------------------------------------------------------------------

class SlidingWindowRateLimiter:
    """Sliding-window rate limiter shared by every call on one event loop."""

    def __init__(self, max_requests: int, period_seconds: int) -> None:
        self.max_requests = max_requests
        self.period = period_seconds
        self._timestamps: deque[datetime] = deque()
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        async with self._lock:
            now = datetime.now(timezone.utc)
            cutoff = now - timedelta(seconds=self.period)

            while self._timestamps and self._timestamps[0] <= cutoff:
                self._timestamps.popleft()

            if len(self._timestamps) >= self.max_requests:
                wait = (self._timestamps[0] - cutoff).total_seconds()
                raise RateLimitError(
                    f"Rate limit reached ({self.max_requests} req/{self.period}s). "
                    f"Retry in {wait:.1f}s."
                )

            self._timestamps.append(now)


# ---------------------------------------------------------------------------
# LLM service
# ---------------------------------------------------------------------------

class LLMService:
    """
    Managed LLM access.

    - Enforces rate limits
    - Retries transient errors (context-size errors are not retried here)
    - Tracks token usage and cost
    - Validates structured output against a pydantic model
    """

    def __init__(
        self,
        provider: str | None = None,
        *,
        http_client: httpx.AsyncClient | None = None,
        anthropic_client: AsyncAnthropic | None = None,
        retry_wait: Any = None,
    ) -> None:
        self.provider = provider or settings.llm_provider
        self.max_tokens = settings.llm_max_tokens
        self.temperature = settings.llm_temperature
        self.max_attempts = max(1, settings.llm_max_retries)
        self.retry_wait = retry_wait or wait_exponential(multiplier=1, min=1, max=10)

        self._http = http_client
        self._anthropic = anthropic_client

        self.rate_limiter = SlidingWindowRateLimiter(
            max_requests=settings.llm_rate_limit_requests,
            period_seconds=settings.llm_rate_limit_period,
        )

        # Usage tracking
        self.total_requests: int = 0
        self.failed_requests: int = 0
        self.total_input_tokens: int = 0
        self.total_output_tokens: int = 0
        self.estimated_cost_usd: float = 0.0

    # -----------------------------------------------------------------------
    # Clients
    # -----------------------------------------------------------------------

    @property
    def http(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=settings.llm_timeout)
        return self._http

    @property
    def anthropic_client(self) -> AsyncAnthropic:
        if self._anthropic is None:
            self._anthropic = AsyncAnthropic(
                api_key=settings.anthropic_api_key,
                timeout=settings.llm_timeout,
                max_retries=0,
            )
        return self._anthropic

    async def aclose(self) -> None:
        if self._http is not None:
            await self._http.aclose()
            self._http = None

    def model_for(self, task_type: str) -> str:
        if self.provider == "anthropic":
            return settings.anthropic_model
        return MODEL_ROUTING.get(task_type, settings.openai_model)

    # -----------------------------------------------------------------------
    # Public API
    # -----------------------------------------------------------------------

    async def invoke(
        self,
        prompt: str,
        *,
        system_prompt: str | None = None,
        response_model: type[ModelT] | None = None,
        max_tokens: int | None = None,
        task_type: str = "default",
        temperature: float | None = None,
    ) -> ModelT | str:
        """
        Run one LLM call.

        Returns the validated ``response_model`` instance when one is given,
        the raw text otherwise.

        Raises:
            RateLimitError: Local or provider rate limit, after retries.
            TransientLLMError: Network failure / timeout / 5xx, after retries.
            LLMError: Anything else, including invalid JSON. Check
                ``is_context_too_large`` to detect an oversized prompt.
        """
        system = system_prompt or SYSTEM_PROMPTS.get(task_type, SYSTEM_PROMPTS["analysis"])
        text = await self.generate(
            prompt,
            system_prompt=system,
            temperature=temperature,
            max_tokens=max_tokens,
            task_type=task_type,
            json_mode=response_model is not None,
        )
        if response_model is None:
            return text
        return self.parse_structured(text, response_model)

    async def generate(
        self,
        prompt: str,
        system_prompt: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        *,
        task_type: str = "default",
        json_mode: bool = False,
    ) -> str:
        await self.rate_limiter.acquire()

        model = self.model_for(task_type)
        params = {
            "model": model,
            "prompt": prompt,
            "system_prompt": system_prompt,
            "temperature": temperature if temperature is not None else self.temperature,
            "max_tokens": max_tokens or self.max_tokens,
            "json_mode": json_mode,
        }
        call = self._call_anthropic if self.provider == "anthropic" else self._call_openai

        logger.debug(
            "LLM request: {} chars (~{} tokens), provider={} model={} task={}",
            len(prompt), count_tokens(prompt), self.provider, model, task_type,
        )
        text = ""
        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type((TransientLLMError, RateLimitError)),
                stop=stop_after_attempt(self.max_attempts),
                wait=self.retry_wait,
                reraise=True,
                before_sleep=self._log_retry,
            ):
                with attempt:
                    text = await call(**params)
        except LLMError:
            self.failed_requests += 1
            raise
        return text

    def parse_structured(self, text: str, response_model: type[ModelT]) -> ModelT:
        """Recover JSON from ``text`` and validate it against ``response_model``."""
        candidate = strip_fences(text) if text.lstrip().startswith("```") else text
        outcome = parse_json_content(candidate)

        if isinstance(outcome, UnparseableJson):
            logger.error("Could not parse JSON: {!r:.200}", text)
            raise LLMError("AI returned invalid JSON", code="INVALID_JSON")
        if isinstance(outcome, RepairedJson):
            logger.warning("Repaired malformed JSON from LLM ({} chars)", len(text))

        try:
            return response_model.model_validate(outcome.value)
        except ValidationError as exc:
            logger.error("LLM JSON does not match {}: {}", response_model.__name__, exc)
            raise LLMError(
                f"AI returned invalid JSON for {response_model.__name__}: "
                f"{exc.error_count()} validation errors",
                code="INVALID_JSON",
            ) from exc

    def get_stats(self) -> dict[str, Any]:
        return {
            "provider": self.provider,
            "total_requests": self.total_requests,
            "failed_requests": self.failed_requests,
            "total_input_tokens": self.total_input_tokens,
            "total_output_tokens": self.total_output_tokens,
            "total_tokens": self.total_input_tokens + self.total_output_tokens,
            "estimated_cost_usd": round(self.estimated_cost_usd, 6),
            "model": self.model_for("default"),
        }

    # -----------------------------------------------------------------------
    # Providers
    # -----------------------------------------------------------------------

    async def _call_openai(
        self,
        *,
        model: str,
        prompt: str,
        system_prompt: str | None,
        temperature: float,
        max_tokens: int,
        json_mode: bool,
    ) -> str:
        if not settings.openai_api_key:
            raise LLMError("OpenAI API key not configured", code="NOT_CONFIGURED")

        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})

        payload: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        if json_mode:
            payload["response_format"] = {"type": "json_object"}

        try:
            response = await self.http.post(
                f"{settings.openai_base_url.rstrip('/')}/chat/completions",
                json=payload,
                headers={"Authorization": f"Bearer {settings.openai_api_key}"},
                timeout=settings.llm_timeout,
            )
        except httpx.TimeoutException as exc:
            raise TransientLLMError(
                f"OpenAI request timed out after {settings.llm_timeout}s", code="TIMEOUT",
            ) from exc
        except httpx.HTTPError as exc:
            raise TransientLLMError(f"OpenAI request failed: {exc}", code="NETWORK") from exc

        if response.status_code >= 400:
            raise _openai_error(response)

        try:
            data = response.json()
            content = data["choices"][0]["message"].get("content") or ""
        except (ValueError, KeyError, IndexError, TypeError, AttributeError) as exc:
            raise LLMError(f"Unexpected OpenAI response shape: {exc}", code="BAD_RESPONSE") from exc

        usage = data.get("usage") or {}
        self._track_usage(model, usage.get("prompt_tokens", 0), usage.get("completion_tokens", 0))
        return content

    async def _call_anthropic(
        self,
        *,
        model: str,
        prompt: str,
        system_prompt: str | None,
        temperature: float,
        max_tokens: int,
        json_mode: bool,
    ) -> str:
        params: dict[str, Any] = {
            "model": model,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "messages": [{"role": "user", "content": prompt + (JSON_ONLY_SUFFIX if json_mode else "")}],
        }
        if system_prompt:
            params["system"] = system_prompt

        try:
            response = await self.anthropic_client.messages.create(**params)
        except anthropic.RateLimitError as exc:
            logger.warning("Anthropic rate limit: {}", exc)
            raise RateLimitError("Anthropic rate limit exceeded", status_code=429) from exc
        except anthropic.InternalServerError as exc:
            raise TransientLLMError(
                f"Anthropic API error {exc.status_code}: {exc.message}", status_code=exc.status_code,
            ) from exc
        except anthropic.APIStatusError as exc:
            logger.error("Anthropic API error {}: {}", exc.status_code, exc.message)
            raise LLMError(
                f"Anthropic API error {exc.status_code}: {exc.message}", status_code=exc.status_code,
            ) from exc
        except anthropic.APIConnectionError as exc:
            raise TransientLLMError(f"Anthropic connection failed: {exc}", code="NETWORK") from exc

        text = "".join(
            getattr(block, "text", "") for block in response.content if getattr(block, "type", "text") == "text"
        )
        usage = response.usage
        self._track_usage(model, getattr(usage, "input_tokens", 0), getattr(usage, "output_tokens", 0))
        return text

    # -----------------------------------------------------------------------
    # Helpers
    # -----------------------------------------------------------------------

    def _track_usage(self, model: str, input_tokens: int, output_tokens: int) -> None:
        self.total_requests += 1
        self.total_input_tokens += input_tokens or 0
        self.total_output_tokens += output_tokens or 0
        self.estimated_cost_usd += estimate_cost(input_tokens or 0, output_tokens or 0, model)
        logger.debug("LLM response: tokens in={} out={}", input_tokens, output_tokens)

    @staticmethod
    def _log_retry(retry_state: Any) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning("LLM call failed (attempt {}), retrying: {}", retry_state.attempt_number, exc)


def _openai_error(response: httpx.Response) -> LLMError:
    """Translate a non-2xx OpenAI response, keeping its message inspectable."""
    message = response.text[:500] or f"HTTP {response.status_code}"
    code: str | None = None
    try:
        error = response.json().get("error")
        if isinstance(error, dict):
            message = error.get("message") or message
            code = error.get("code") or error.get("type")
        elif isinstance(error, str):
            message = error
    except (ValueError, AttributeError):
        pass

    text = f"OpenAI API error {response.status_code}: {message}"
    if response.status_code == 429:
        return RateLimitError(text, status_code=429, code=code)
    if response.status_code >= 500:
        return TransientLLMError(text, status_code=response.status_code, code=code)
    return LLMError(text, status_code=response.status_code, code=code)


# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_llm_service: LLMService | None = None


def get_llm_service() -> LLMService:
    """Return the process-level LLMService singleton."""
    global _llm_service
    if _llm_service is None:
        _llm_service = LLMService()
    return _llm_service


async def close_llm_service() -> None:
    global _llm_service
    if _llm_service is not None:
        await _llm_service.aclose()
        _llm_service = None
