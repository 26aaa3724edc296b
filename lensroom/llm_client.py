# lensroom/llm_client.py

import asyncio
import logging
import random
import threading
import time
import traceback
from typing import Any, Callable, Dict, Optional, Tuple, TypeVar

from langchain_google_vertexai import VertexAI
from openai import OpenAI

from lensroom.errors import ProviderError, ProviderInternalError
from lensroom.model_catalog import ModelDefinition
from lensroom.provider_base import InvocationResult, ProviderAdapter

logger = logging.getLogger("lensroom_infer")

T = TypeVar("T")


class MaxRetryErrorsException(Exception):
    """Raised once every attempt of a retried LLM call has failed; the last error is the cause."""


class _SharedBackoff:
    """
    Process-wide cool-down for rate-limited text models.

    A 429 or timeout from any caller pushes `wait_until` forward for every
    caller, and the step doubles on each hit (capped). A success halves it.
    """

    def __init__(self, initial: float = 30.0, ceiling: float = 600.0, floor: float = 1.0):
        self._lock = threading.Lock()
        self.wait_until = 0.0
        self.step = initial
        self.ceiling = ceiling
        self.floor = floor

    def wait(self) -> None:
        while True:
            with self._lock:
                remaining = self.wait_until - time.monotonic()
            if remaining <= 0:
                return
            time.sleep(min(remaining, 1.0))

    def penalize(self) -> float:
        with self._lock:
            delay = random.uniform(self.step * 0.95, self.step * 1.35)
            self.step = min(self.step * 2, self.ceiling)
            self.wait_until = max(self.wait_until, time.monotonic() + delay)
            return delay

    def relax(self) -> None:
        with self._lock:
            self.step = max(self.floor, self.step * 0.5)


_backoff = _SharedBackoff()


def _is_timeout_error(e: Exception) -> bool:
    if isinstance(e, (asyncio.TimeoutError, TimeoutError)):
        return True
    text = repr(e)
    return "TimeoutError" in text or "timed out" in text.lower()


def _is_rate_limited(e: Exception) -> bool:
    text = str(e)
    if "429" not in text:
        return False
    return any(marker in text for marker in ("RESOURCE_EXHAUSTED", "Resource has been exhausted", "Too Many Requests"))


def call_with_retries_sync(
    fn: Callable[[], T],
    *,
    retries: int = 3,
    log: Callable[[str], None] | None = None,
) -> T:
    """
    Call `fn` up to `retries` times, honouring the shared cool-down before each try.
    Rate limits and timeouts extend the cool-down unless no attempt is left.
    """
    last_error: Exception | None = None

    for attempt in range(1, retries + 1):
        _backoff.wait()
        started = time.time()
        try:
            result = fn()
        except Exception as e:
            last_error = e
            transient = _is_rate_limited(e) or _is_timeout_error(e)
            if transient and attempt < retries:
                note = f"attempt {attempt}/{retries} rate-limited or timed out, cooling down ~{_backoff.penalize():.1f}s"
            else:
                note = f"attempt {attempt}/{retries} failed"
            if log:
                log(f"{note} after {time.time() - started:.2f}s: {e}\n{traceback.format_exc()}")
            continue
        _backoff.relax()
        return result

    raise MaxRetryErrorsException(f"All {retries} retry attempts failed.") from last_error


def is_openai_model(model_name: str) -> bool:
    return model_name.startswith(("gpt-", "gpt4", "o3", "o4"))


class LlmClient:
    """
    One text model behind a single call:

        text, usage = LlmClient("gemini-2.5-flash-lite", vertex_project="p").invoke("prompt")

    Gemini names go to Vertex through langchain's VertexAI wrapper; gpt-*/o3/o4
    names go to the OpenAI Responses API. Retries happen here, never in the SDK.
    """

    def __init__(
        self,
        model_name: str,
        *,
        vertex_project: Optional[str] = None,
        vertex_region: str = "us-central1",
        timeout: float | None = None,
    ):
        self.model_name = model_name
        self.provider = "openai" if is_openai_model(model_name) else "vertex"
        self._timeout = timeout
        self._vertex_project = vertex_project
        self._vertex_region = vertex_region
        self._client: Optional[OpenAI] = None

        if self.provider == "openai":
            # max_retries=0: call_with_retries_sync owns the retry policy
            options: Dict[str, Any] = {"max_retries": 0}
            if timeout is not None:
                options["timeout"] = timeout
            self._client = OpenAI(**options)

    def _vertex(self, temperature: float, max_tokens: int) -> VertexAI:
        # generation settings are per call, so the wrapper is per call too
        return VertexAI(
            project=self._vertex_project,
            location=self._vertex_region,
            model_name=self.model_name,
            timeout=self._timeout,
            temperature=temperature,
            max_output_tokens=max_tokens,
        )

    @staticmethod
    def _vertex_usage(resp: Any) -> Dict[str, int]:
        # token counts sit on the message itself or inside response_metadata, depending on the wrapper
        meta = getattr(resp, "usage_metadata", None)
        if meta is None:
            extra = getattr(resp, "response_metadata", None)
            meta = extra.get("usage_metadata") if isinstance(extra, dict) else getattr(extra, "usage_metadata", None)
        if not meta:
            return {}

        def count(field: str) -> int:
            raw = meta.get(field) if isinstance(meta, dict) else getattr(meta, field, None)
            return int(raw or 0)

        return {
            "promptTokens": count("prompt_token_count"),
            "completionTokens": count("candidates_token_count"),
            "totalTokens": count("total_token_count"),
        }

    @staticmethod
    def _openai_usage(resp: Any) -> Dict[str, int]:
        usage = getattr(resp, "usage", None)
        if usage is None:
            return {}
        return {
            "promptTokens": int(getattr(usage, "input_tokens", 0) or 0),
            "completionTokens": int(getattr(usage, "output_tokens", 0) or 0),
            "totalTokens": int(getattr(usage, "total_tokens", 0) or 0),
        }

    def _invoke_once(self, prompt: str, temperature: float, max_tokens: int) -> Tuple[str, Dict[str, int]]:
        if self.provider == "openai":
            resp = self._client.responses.create(
                model=self.model_name,
                input=prompt,
                temperature=temperature,
                max_output_tokens=max_tokens,
            )
            return (getattr(resp, "output_text", None) or "").strip(), self._openai_usage(resp)

        resp = self._vertex(temperature, max_tokens).invoke(prompt)
        # the completion wrapper returns a str; chat-style wrappers return a message with .content
        text = resp if isinstance(resp, str) else str(getattr(resp, "content", resp))
        return text.strip(), self._vertex_usage(resp)

    def invoke(
        self, prompt: str, *, temperature: float = 0.7, max_tokens: int = 800, retries: int = 3
    ) -> Tuple[str, Dict[str, int]]:
        """Blocking; returns (text, usage). Raises MaxRetryErrorsException when every attempt fails."""
        return call_with_retries_sync(
            lambda: self._invoke_once(prompt, temperature, max_tokens),
            retries=retries,
            log=lambda msg: logger.warning(f"[LLM-RETRY] {self.model_name}: {msg}"),
        )


class TextProvider(ProviderAdapter):
    name = "LLM"

    def __init__(self, model: ModelDefinition, client: LlmClient, *, retries: int = 3):
        super().__init__(model)
        self.client = client
        self.retries = retries

    def invoke(self, prompt: str, image_url: Optional[str], params: Dict[str, Any]) -> InvocationResult:
        self.validate_inputs(prompt, image_url)

        start = time.monotonic()
        try:
            text, usage = self.client.invoke(
                prompt,
                temperature=float(params.get("temperature", 0.7)),
                max_tokens=int(params.get("max_tokens", 800)),
                retries=self.retries,
            )
        except MaxRetryErrorsException as e:
            cause = e.__cause__ or e
            raise ProviderError(f"Text generation failed: {cause}") from e

        if not text:
            raise ProviderInternalError("Text model returned an empty response")

        duration_ms = int((time.monotonic() - start) * 1000)
        logger.info("[%s] %s answered in %dms (%d chars)", self.name, self.client.model_name, duration_ms, len(text))
        return InvocationResult(
            provider_task_id=f"llm_{self.client.model_name}_{int(time.time() * 1000)}",
            duration_ms=duration_ms,
            text=text,
            usage=usage,
        )
