# lensroom/orchestrator.py
"""
Single-request inference pipeline.

    ResolveIdentity -> LookupModel -> Validate -> CheckBalance -> CreateRecord
      -> DebitLedger -> InvokeProviders (windowed batch) -> PersistAssets
      -> FinalizeRecord -> Respond

Every ledger / record / storage call goes through a per-request
DegradedModeGuard. Business and validation failures are raised before any side
effect. Once a record exists, exactly one terminal transition is attempted for
it: mark_success on the happy path, or a best-effort mark_failed from handle()
that never masks the original error. Debited credits are not refunded here.
"""

import asyncio
import logging
import os
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from lensroom.asset_store import MockAssetStore
from lensroom.base_utils import BaseUtils
from lensroom.errors import (
    AuthError,
    InsufficientCreditsError,
    InferError,
    ModelNotFoundError,
    ProviderError,
    RequestTimeoutError,
    ValidationError,
)
from lensroom.fallback import DegradedModeGuard
from lensroom.model_catalog import ModelCatalog, ModelDefinition, validate_params
from lensroom.provider_base import InvocationResult, ProviderAdapter
from lensroom.providers import build_provider
from lensroom.settings import Settings

logger = logging.getLogger("lensroom_infer")

# record lifecycle as seen by one request
_RECORD_NONE = None
_RECORD_REQUESTED = "requested"
_RECORD_CREATED = "created"
_RECORD_SKIPPED = "skipped"
_RECORD_FINALIZED = "finalized"


@dataclass
class InferRequest:
    model_id: str
    prompt: str
    image_url: Optional[str] = None
    params: Dict[str, Any] = field(default_factory=dict)
    outputs_count: int = 1

    @classmethod
    def from_body(cls, body: Any) -> "InferRequest":
        if not isinstance(body, dict):
            raise ValidationError("Request body must be a JSON object")
        model_id = body.get("modelId")
        inputs = body.get("inputs") or {}
        if not isinstance(inputs, dict):
            raise ValidationError("inputs must be an object")
        prompt = inputs.get("prompt")
        if not isinstance(model_id, str) or not model_id or not isinstance(prompt, str) or not prompt.strip():
            raise ValidationError("modelId and inputs.prompt are required")

        image_url = inputs.get("imageUrl")
        if image_url is not None and not isinstance(image_url, str):
            raise ValidationError("inputs.imageUrl must be a string")

        params = body.get("params")
        if params is None:
            params = {}
        if not isinstance(params, dict):
            raise ValidationError("params must be an object")

        outputs_count = body.get("outputsCount", 1)
        if outputs_count is None:
            outputs_count = 1
        if isinstance(outputs_count, bool) or not isinstance(outputs_count, int):
            raise ValidationError("outputsCount must be an integer")

        return cls(
            model_id=model_id,
            prompt=prompt,
            image_url=image_url or None,
            params=params,
            outputs_count=outputs_count,
        )


@dataclass
class InferResponse:
    status_code: int
    body: Dict[str, Any]


@dataclass
class _Attempt:
    """Mutable per-request state shared between the pipeline and the failure path."""

    request_id: str
    guard: DegradedModeGuard
    generation_id: Optional[str] = None
    record: Optional[str] = _RECORD_NONE
    debited: bool = False
    # record write (create / mark_success) that may outlive a cancelled pipeline
    record_write: Optional["asyncio.Task"] = None


@dataclass
class _BatchOutcome:
    """Successful variants in request order; `variants[i]` is the 0-based variant index of `results[i]`."""

    results: List[InvocationResult]
    variants: List[int]
    errors: List[Dict[str, Any]]
    duration_ms: int

    @property
    def urls(self) -> List[str]:
        # one output per succeeded variant; extra URLs from a single task are kept in metadata only
        return [r.urls[0] for r in self.results]

    @property
    def variant_urls(self) -> List[List[str]]:
        return [list(r.urls) for r in self.results]

    @property
    def task_ids(self) -> List[str]:
        return [r.provider_task_id for r in self.results]

    def variant_ids(self, generation_id: str) -> List[str]:
        return [generation_id if v == 0 else f"{generation_id}_v{v}" for v in self.variants]


class InferenceOrchestrator(BaseUtils):
    def __init__(
        self,
        settings: Settings,
        catalog: ModelCatalog,
        ledger,
        records,
        assets,
        identity_resolver,
        provider_factory: Callable[[ModelDefinition, Settings], ProviderAdapter] = build_provider,
    ):
        self.settings = settings
        self.catalog = catalog
        self.ledger = ledger
        self.records = records
        self.assets = MockAssetStore() if settings.use_mock_inference else assets
        self.identity_resolver = identity_resolver
        self.provider_factory = provider_factory

    # -----------------------
    # Entry point
    # -----------------------

    async def handle(
        self,
        body: Any,
        headers: Optional[Dict[str, str]] = None,
        cookies: Optional[Dict[str, str]] = None,
    ) -> InferResponse:
        attempt = _Attempt(
            request_id=os.urandom(4).hex(),
            guard=DegradedModeGuard(self.settings.degraded_mode),
        )
        self._log(attempt, "========== NEW REQUEST ==========")

        try:
            out = await asyncio.wait_for(
                self._run(attempt, body, headers or {}, cookies or {}),
                timeout=self.settings.request_timeout_seconds,
            )
            return InferResponse(200, out)
        except asyncio.TimeoutError:
            error: Exception = RequestTimeoutError(
                f"Request timed out after {round(self.settings.request_timeout_seconds)}s. Please try again."
            )
        except InferError as e:
            error = e
        except Exception as e:
            logger.exception("[Infer:%s] Unexpected failure", attempt.request_id)
            error = e

        await self._finalize_failed(attempt, error)

        if isinstance(error, InferError):
            self.color_print(f"[Infer:{attempt.request_id}] {type(error).__name__} ({error.status_code}): {error}", color="red")
            return InferResponse(error.status_code, {"success": False, "error": str(error)})
        return InferResponse(500, {"success": False, "error": f"Inference failed: {error}"})

    # -----------------------
    # Pipeline
    # -----------------------

    async def _run(self, attempt: _Attempt, body: Any, headers: Dict[str, str], cookies: Dict[str, str]) -> Dict[str, Any]:
        guard = attempt.guard

        # 1. identity
        identity = await asyncio.to_thread(self.identity_resolver.resolve, headers, cookies, guard)
        if identity is None:
            identity = self.settings.anonymous_fallback_identity()
            if identity is not None:
                self._log(attempt, f"DEV MODE: using TEST_USER_ID {identity}", level=logging.WARNING)
        if identity is None:
            if not self.settings.degraded_mode:
                raise AuthError("Authentication required")
            guard.record("anonymous")
            self._log(attempt, "DEGRADED: anonymous request, ledger and records skipped", level=logging.WARNING)

        # 2. request + model
        req = InferRequest.from_body(body)
        model = self.catalog.get_enabled(req.model_id)
        if model is None:
            raise ModelNotFoundError(req.model_id)
        self._log(attempt, f"Model: {model.id} ({model.provider}) prompt={self.short(req.prompt)!r} outputs={req.outputs_count}")

        # 3. validation, all before any side effect
        params = self._validate(model, req)
        provider = self.provider_factory(model, self.settings)

        tracked = identity is not None and not self.settings.use_mock_inference
        attempt.generation_id = str(uuid.uuid4())

        # 4-6. balance, record, debit
        new_balance: Optional[int] = None
        if tracked:
            new_balance = await self._charge(attempt, identity, model, req, params)

        # 7. providers
        if model.is_text:
            return await self._run_text(attempt, model, req, params, provider, new_balance)

        outcome = await self._invoke_batch(attempt, provider, req, params)

        # 8. assets
        variant_ids = outcome.variant_ids(attempt.generation_id)
        public_urls = await self._persist(attempt, identity, model, outcome.urls, variant_ids)

        # 9. finalize
        meta_update = {
            "taskIds": outcome.task_ids,
            "duration": outcome.duration_ms,
            "outputsCount": req.outputs_count,
            "succeededCount": len(outcome.results),
            "failedCount": len(outcome.errors),
            "originalUrls": outcome.urls,
            "variantUrls": outcome.variant_urls,
            "variantIds": variant_ids,
            "variantErrors": outcome.errors,
            "degradedReasons": list(dict.fromkeys(guard.reasons)),
        }
        await self._finalize_success(attempt, public_urls, meta_update)

        meta = {
            "modelId": model.id,
            "providerTaskIds": outcome.task_ids,
            "durationMs": outcome.duration_ms,
            "outputsCount": req.outputs_count,
            "succeededCount": len(outcome.results),
            "failedCount": len(outcome.errors),
        }
        self._log(attempt, f"Complete: {len(public_urls)} URL(s), {len(outcome.errors)} failed variant(s)")
        return self._success_body(attempt, {"urls": public_urls}, meta, new_balance)

    def _validate(self, model: ModelDefinition, req: InferRequest) -> Dict[str, Any]:
        params = validate_params(model, req.params)
        if model.requires_image and not req.image_url:
            raise ValidationError(f"imageUrl is required for {model.id}")
        if model.is_text and req.outputs_count != 1:
            raise ValidationError(f"{model.id} supports outputsCount = 1 only")
        if not 1 <= req.outputs_count <= self.settings.max_outputs_count:
            raise ValidationError(f"outputsCount must be between 1 and {self.settings.max_outputs_count}")
        return params

    async def _charge(
        self, attempt: _Attempt, identity: str, model: ModelDefinition, req: InferRequest, params: Dict[str, Any]
    ) -> Optional[int]:
        guard = attempt.guard
        cost = model.credit_cost

        balance = await guard.acall("ledger.get_balance", self.ledger.get_balance, identity)
        if not balance.skipped:
            self._log(attempt, f"Cost: {cost}, Balance: {balance.value}")
            if balance.value < cost:
                raise InsufficientCreditsError(balance=balance.value, required=cost)

        attempt.record = _RECORD_REQUESTED

        async def _create() -> None:
            created = await guard.acall(
                "generations.create",
                self.records.create,
                identity,
                attempt.generation_id,
                model.generation_kind,
                model.id,
                req.prompt,
                cost,
                {
                    "params": params,
                    "requestId": attempt.request_id,
                    "imageUrl": req.image_url,
                    "outputsCount": req.outputs_count,
                },
            )
            attempt.record = _RECORD_SKIPPED if created.skipped else _RECORD_CREATED
            if not created.skipped:
                self._log(attempt, f"Generation created: {attempt.generation_id}")

        await self._write_record(attempt, _create())

        if cost <= 0:
            return None
        debit = await guard.acall(
            "ledger.adjust",
            self.ledger.adjust,
            identity,
            -cost,
            "generation",
            f"{model.title}: {req.prompt[:100]}",
            attempt.generation_id,
            {"requestId": attempt.request_id, "modelId": model.id},
        )
        if debit.skipped:
            return None
        attempt.debited = True
        self._log(attempt, f"Credits deducted. New balance: {debit.value}")
        return debit.value

    async def _run_text(
        self,
        attempt: _Attempt,
        model: ModelDefinition,
        req: InferRequest,
        params: Dict[str, Any],
        provider: ProviderAdapter,
        new_balance: Optional[int],
    ) -> Dict[str, Any]:
        result = await asyncio.to_thread(provider.invoke, req.prompt, req.image_url, params)
        await self._finalize_success(
            attempt,
            [],
            {
                "text": result.text,
                "usage": result.usage,
                "taskIds": [result.provider_task_id],
                "duration": result.duration_ms,
                "degradedReasons": list(dict.fromkeys(attempt.guard.reasons)),
            },
        )
        meta = {
            "modelId": model.id,
            "providerTaskIds": [result.provider_task_id],
            "durationMs": result.duration_ms,
            "usage": result.usage,
        }
        self._log(attempt, f"Text complete ({result.duration_ms}ms): {len(result.text or '')} chars")
        return self._success_body(attempt, {"text": result.text}, meta, new_balance)

    async def _invoke_batch(
        self, attempt: _Attempt, provider: ProviderAdapter, req: InferRequest, params: Dict[str, Any]
    ) -> _BatchOutcome:
        n = req.outputs_count
        start = time.monotonic()

        if n == 1:
            result = await asyncio.to_thread(provider.invoke, req.prompt, req.image_url, params)
            return _BatchOutcome([result], [0], [], result.duration_ms)

        window = max(1, self.settings.batch_concurrency)
        self._log(attempt, f"Batch generation: {n} variants, window={window}")
        results: List[InvocationResult] = []
        succeeded: List[int] = []
        errors: List[Dict[str, Any]] = []
        first_errors: List[Exception] = []

        for offset in range(0, n, window):
            size = min(window, n - offset)
            outcomes = await asyncio.gather(
                *[asyncio.to_thread(provider.invoke, req.prompt, req.image_url, params) for _ in range(size)],
                return_exceptions=True,
            )
            for idx, outcome in enumerate(outcomes):
                variant = offset + idx
                if isinstance(outcome, Exception):
                    errors.append({"variant": variant, "error": str(outcome)})
                    first_errors.append(outcome)
                    self._log(attempt, f"Variant {variant + 1} failed: {outcome}", level=logging.ERROR)
                elif isinstance(outcome, BaseException):
                    raise outcome
                else:
                    results.append(outcome)
                    succeeded.append(variant)
                    self._log(attempt, f"Variant {variant + 1} complete: {outcome.provider_task_id}")

        duration_ms = int((time.monotonic() - start) * 1000)
        self._log(attempt, f"Batch complete: {len(results)} succeeded, {len(errors)} failed in {duration_ms}ms")

        if not results:
            # uniform failures keep their own status (e.g. every variant timed out -> 504)
            kinds = {type(e) for e in first_errors}
            if len(kinds) == 1 and isinstance(first_errors[0], InferError):
                raise first_errors[0]
            raise ProviderError(f"All {n} generations failed", details={"variantErrors": errors})

        return _BatchOutcome(results, succeeded, errors, duration_ms)

    async def _persist(
        self,
        attempt: _Attempt,
        identity: Optional[str],
        model: ModelDefinition,
        urls: List[str],
        variant_ids: List[str],
    ) -> List[str]:
        if identity is None:
            return list(urls)

        public_urls: List[str] = []
        for i, (source_url, variant_id) in enumerate(zip(urls, variant_ids)):
            stored = await attempt.guard.acall(
                "storage.persist",
                self.assets.persist,
                identity,
                variant_id,
                source_url,
                model.generation_kind,
            )
            if stored.skipped:
                # the provider's own (short-lived) URL stands in
                public_urls.append(source_url)
            else:
                public_urls.append(stored.value)
                self._log(attempt, f"Uploaded {i + 1}/{len(urls)}: {stored.value}")
        return public_urls

    # -----------------------
    # Finalization
    # -----------------------

    async def _write_record(self, attempt: _Attempt, write) -> None:
        """
        Run a record write as its own task and wait on it through a shield.
        A request timeout cancels the waiter, not the write, and
        _finalize_failed picks the task up from attempt.record_write.
        """
        attempt.record_write = asyncio.create_task(write)
        await asyncio.shield(attempt.record_write)

    async def _finalize_success(self, attempt: _Attempt, urls: List[str], metadata: Dict[str, Any]) -> None:
        if attempt.record != _RECORD_CREATED:
            return

        async def _mark() -> None:
            await attempt.guard.acall(
                "generations.mark_success", self.records.mark_success, attempt.generation_id, urls, metadata
            )
            attempt.record = _RECORD_FINALIZED

        await self._write_record(attempt, _mark())

    async def _settle_record_write(self, attempt: _Attempt) -> None:
        pending = attempt.record_write
        if pending is None:
            return
        if not pending.done():
            self._log(attempt, "Waiting for in-flight record write before finalizing")
        try:
            await pending
        except Exception as e:
            # the pipeline already saw (or never waited for) this error; finalize decides from attempt.record
            self._log(attempt, f"Record write failed: {e}", level=logging.WARNING)

    async def _finalize_failed(self, attempt: _Attempt, error: Exception) -> None:
        """Best effort; a failure here is logged and never replaces the original error."""
        await self._settle_record_write(attempt)
        if attempt.record not in (_RECORD_REQUESTED, _RECORD_CREATED):
            # mark_success landed, the record was skipped, or nothing was ever requested
            return
        attempt.record = _RECORD_FINALIZED
        try:
            await attempt.guard.acall("generations.mark_failed", self.records.mark_failed, attempt.generation_id, str(error))
            self._log(attempt, f"Generation {attempt.generation_id} marked failed")
        except Exception as e:
            self._log(attempt, f"Failed to update generation {attempt.generation_id}: {e}", level=logging.ERROR)

    # -----------------------
    # Helpers
    # -----------------------

    def _success_body(
        self, attempt: _Attempt, payload: Dict[str, Any], meta: Dict[str, Any], new_balance: Optional[int]
    ) -> Dict[str, Any]:
        if attempt.record in (_RECORD_CREATED, _RECORD_FINALIZED) or attempt.debited:
            meta["generationId"] = attempt.generation_id
        if self.settings.use_mock_inference:
            meta["mock"] = True
        if attempt.guard.degraded:
            meta["degraded"] = True
            meta["degradedReason"] = attempt.guard.degraded_reason()
            self.color_print(f"[Infer:{attempt.request_id}] DEGRADED response: {meta['degradedReason']}", color="yellow")

        body: Dict[str, Any] = {"success": True, **payload, "meta": meta}
        if new_balance is not None:
            body["newBalance"] = new_balance
        return body

    def _log(self, attempt: _Attempt, message: str, level: int = logging.INFO) -> None:
        logger.log(level, "[Infer:%s] %s", attempt.request_id, message)
