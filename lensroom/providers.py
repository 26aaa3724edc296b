# lensroom/providers.py

import logging
import os
import time
from typing import Any, Callable, Dict, Optional
from urllib.parse import quote

import requests

from lensroom.errors import ConfigurationError
from lensroom.kie_client import KieApiClient, KieMarketProvider, KieVeoProvider
from lensroom.llm_client import LlmClient, TextProvider, is_openai_model
from lensroom.model_catalog import ModelDefinition
from lensroom.provider_base import InvocationResult, ProviderAdapter
from lensroom.settings import Settings

logger = logging.getLogger("lensroom_infer")


class MockProvider(ProviderAdapter):
    """Synthetic output for USE_MOCK_INFERENCE; no network, no cost."""

    name = "Mock"

    def invoke(self, prompt: str, image_url: Optional[str], params: Dict[str, Any]) -> InvocationResult:
        self.validate_inputs(prompt, image_url)
        task_id = f"mock_{int(time.time() * 1000)}_{os.urandom(3).hex()}"
        logger.info("[%s] %s -> %s", self.name, self.model.id, task_id)

        if self.model.is_text:
            return InvocationResult(
                provider_task_id=task_id,
                duration_ms=0,
                text=f"[mock:{self.model.id}] {prompt[:200]}",
                usage={"promptTokens": 0, "completionTokens": 0, "totalTokens": 0},
            )

        size = "1280x720" if self.model.capability == "video" else "1024x1024"
        label = quote(f"{self.model.title} (mock)")
        return InvocationResult(
            provider_task_id=task_id,
            duration_ms=0,
            urls=[f"https://placehold.co/{size}/png?text={label}"],
        )


def build_provider(
    model: ModelDefinition,
    settings: Settings,
    *,
    session: Optional[requests.Session] = None,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> ProviderAdapter:
    """
    Pick the adapter for model.provider. Raises ConfigurationError when the
    provider's credentials are missing; callers do this before any debit.
    """
    if settings.use_mock_inference:
        return MockProvider(model)

    if model.provider in ("kie-market", "kie-veo"):
        if not settings.kie_api_key:
            raise ConfigurationError(f"KIE_API_KEY is not configured (required by {model.id})")
        client = KieApiClient(settings.kie_api_key, settings.kie_base_url, session=session)
        cls = KieMarketProvider if model.provider == "kie-market" else KieVeoProvider
        return cls(
            model,
            client,
            timeout_seconds=settings.provider_timeout_seconds,
            poll_interval_seconds=settings.provider_poll_interval_seconds,
            sleep=sleep,
            clock=clock,
        )

    if model.provider == "llm":
        client = build_llm_client(settings, model.provider_model or settings.llm_text_model, required_by=model.id)
        return TextProvider(model, client)

    raise ConfigurationError(f"No provider adapter for '{model.provider}'")


def build_llm_client(settings: Settings, model_name: Optional[str] = None, *, required_by: str = "text generation") -> LlmClient:
    """LlmClient for model_name (default LLM_TEXT_MODEL); ConfigurationError when its credentials are missing."""
    llm_model = model_name or settings.llm_text_model
    if is_openai_model(llm_model):
        if not os.getenv("OPENAI_API_KEY"):
            raise ConfigurationError(f"OPENAI_API_KEY is not configured (required by {required_by})")
    elif not settings.vertex_project:
        raise ConfigurationError(f"GOOGLE_CLOUD_PROJECT is not configured (required by {required_by})")
    return LlmClient(
        llm_model,
        vertex_project=settings.vertex_project,
        vertex_region=settings.vertex_region,
        timeout=settings.provider_timeout_seconds,
    )
