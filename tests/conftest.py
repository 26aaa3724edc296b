import threading
import time

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from lensroom.asset_store import upload_path_for
from lensroom.entities import Base
from lensroom.errors import ProviderError
from lensroom.generations import GenerationStore
from lensroom.ledger import LedgerClient
from lensroom.model_catalog import ModelCatalog
from lensroom.orchestrator import InferenceOrchestrator
from lensroom.provider_base import InvocationResult, ProviderAdapter
from lensroom.settings import Settings

USER = "11111111-2222-4333-8444-555555555555"
OTHER_USER = "99999999-8888-4777-8666-555555555555"


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
    engine.dispose()


@pytest.fixture
def ledger(session_factory):
    return LedgerClient(session_factory)


@pytest.fixture
def records(session_factory):
    return GenerationStore(session_factory)


class StaticIdentity:
    """Identity resolver stand-in: always the same caller (or anonymous)."""

    def __init__(self, identity):
        self.identity = identity

    def resolve(self, headers, cookies, guard=None):
        return self.identity


class ScriptedProvider(ProviderAdapter):
    """
    Provider stand-in. Calls whose 0-based index is in `failures` raise
    ProviderError; the rest succeed with one URL (or text for text models).
    """

    name = "Scripted"

    def __init__(self, model, failures=(), delay=0.0, error=None):
        super().__init__(model)
        self.failures = set(failures)
        self.delay = delay
        self.error = error
        self.calls = 0
        self.in_flight = 0
        self.max_in_flight = 0
        self._lock = threading.Lock()

    def invoke(self, prompt, image_url, params):
        self.validate_inputs(prompt, image_url)
        with self._lock:
            idx = self.calls
            self.calls += 1
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                time.sleep(self.delay)
            if idx in self.failures:
                raise self.error or ProviderError(f"variant {idx} rejected by provider")
            if self.model.is_text:
                return InvocationResult(
                    provider_task_id=f"task_{idx}",
                    duration_ms=5,
                    text="A short answer.",
                    usage={"promptTokens": 3, "completionTokens": 4, "totalTokens": 7},
                )
            return InvocationResult(
                provider_task_id=f"task_{idx}",
                duration_ms=5,
                urls=[f"https://provider.example/out_{idx}.png"],
            )
        finally:
            with self._lock:
                self.in_flight -= 1


class RecordingAssets:
    def __init__(self):
        self.calls = []

    def persist(self, identity, generation_id, source_url, kind):
        self.calls.append((identity, generation_id, source_url, kind))
        return f"https://storage.googleapis.com/test-bucket/{identity}/{kind}/{generation_id}.png"

    def persist_upload(self, identity, filename, data, content_type):
        path, content_type = upload_path_for(identity, filename, data, content_type)
        self.calls.append((identity, path, len(data), content_type))
        return f"https://storage.googleapis.com/test-bucket/{path}", path


@pytest.fixture
def build_orchestrator(ledger, records):
    """
    Factory: build_orchestrator(settings=..., identity=..., failures=..., ...)
    Returns (orchestrator, provider_holder) where provider_holder["provider"]
    is the ScriptedProvider created for the last request.
    """

    def _build(
        settings=None,
        identity=USER,
        failures=(),
        delay=0.0,
        error=None,
        ledger_client=None,
        record_store=None,
        assets=None,
        provider_factory=None,
    ):
        settings = settings or Settings()
        holder = {"provider": None}

        def _factory(model, _settings):
            holder["provider"] = ScriptedProvider(model, failures=failures, delay=delay, error=error)
            return holder["provider"]

        orchestrator = InferenceOrchestrator(
            settings,
            ModelCatalog(),
            ledger_client or ledger,
            record_store or records,
            assets or RecordingAssets(),
            StaticIdentity(identity),
            provider_factory=provider_factory or _factory,
        )
        return orchestrator, holder

    return _build
