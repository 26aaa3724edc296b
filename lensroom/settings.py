# lensroom/settings.py

import os
import re
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

from lensroom.errors import ConfigurationError

UUID_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)


def _flag(name: str) -> bool:
    return (os.getenv(name) or "").strip().lower() == "true"


def _int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}")


def _float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}")


@dataclass(frozen=True)
class Settings:
    degraded_mode: bool = False
    use_mock_inference: bool = False
    allow_anon_infer: bool = False
    test_mode: bool = False
    test_user_id: Optional[str] = None

    kie_api_key: Optional[str] = None
    kie_base_url: str = "https://api.kie.ai"
    llm_text_model: str = "gemini-2.5-flash-lite"
    vertex_project: Optional[str] = None
    vertex_region: str = "us-central1"
    model_catalog_path: Optional[str] = None

    batch_concurrency: int = 3
    max_outputs_count: int = 8
    provider_timeout_seconds: float = 180.0
    provider_poll_interval_seconds: float = 2.0
    request_timeout_seconds: float = 300.0

    admin_api_token: Optional[str] = None

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv()
        return cls(
            degraded_mode=_flag("INFER_SUPABASE_OPTIONAL") or _flag("INFER_DEGRADED_MODE"),
            use_mock_inference=_flag("USE_MOCK_INFERENCE"),
            allow_anon_infer=_flag("ALLOW_ANON_INFER"),
            test_mode=_flag("TEST_MODE"),
            test_user_id=os.getenv("TEST_USER_ID") or None,
            kie_api_key=os.getenv("KIE_API_KEY") or None,
            kie_base_url=os.getenv("KIE_BASE_URL", "https://api.kie.ai").rstrip("/"),
            llm_text_model=os.getenv("LLM_TEXT_MODEL", "gemini-2.5-flash-lite"),
            vertex_project=os.getenv("GOOGLE_CLOUD_PROJECT") or None,
            vertex_region=os.getenv("GOOGLE_CLOUD_REGION", "us-central1"),
            model_catalog_path=os.getenv("MODEL_CATALOG_PATH") or None,
            batch_concurrency=max(1, _int("BATCH_CONCURRENCY", 3)),
            max_outputs_count=max(1, _int("MAX_OUTPUTS_COUNT", 8)),
            provider_timeout_seconds=_float("PROVIDER_TIMEOUT_SECONDS", 180.0),
            provider_poll_interval_seconds=_float("PROVIDER_POLL_INTERVAL_SECONDS", 2.0),
            request_timeout_seconds=_float("REQUEST_TIMEOUT_SECONDS", 300.0),
            admin_api_token=os.getenv("ADMIN_API_TOKEN") or None,
        )

    def anonymous_fallback_identity(self) -> Optional[str]:
        """
        TEST_USER_ID when ALLOW_ANON_INFER is on; None otherwise.
        A configured but malformed id is an environment error, not a silent miss.
        """
        if not (self.allow_anon_infer and self.test_user_id):
            return None
        if not UUID_RE.match(self.test_user_id):
            raise ConfigurationError(f"TEST_USER_ID is not a valid UUID: {self.test_user_id}")
        return self.test_user_id
