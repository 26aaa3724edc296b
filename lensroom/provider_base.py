# lensroom/provider_base.py

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from lensroom.errors import ProviderError, ProviderInternalError, ProviderTimeoutError, ValidationError
from lensroom.model_catalog import ModelDefinition

logger = logging.getLogger("lensroom_infer")

# poll outcomes reported by check_task()
PENDING = "pending"
SUCCEEDED = "success"
FAILED = "failed"


@dataclass
class InvocationResult:
    provider_task_id: str
    duration_ms: int
    urls: List[str] = field(default_factory=list)
    text: Optional[str] = None
    usage: Dict[str, Any] = field(default_factory=dict)


class ProviderAdapter:
    """
    One operation: invoke(prompt, image_url, params) -> InvocationResult.

    Adapters are synchronous (blocking HTTP); the orchestrator runs them in
    worker threads when it fans out batch variants.
    """

    name = "base"

    def __init__(self, model: ModelDefinition):
        self.model = model

    def validate_inputs(self, prompt: str, image_url: Optional[str]) -> None:
        if not (prompt or "").strip():
            raise ValidationError("inputs.prompt is required")
        if self.model.requires_image and not image_url:
            raise ValidationError(f"imageUrl is required for {self.model.id}")

    def invoke(self, prompt: str, image_url: Optional[str], params: Dict[str, Any]) -> InvocationResult:
        raise NotImplementedError


class PollingProvider(ProviderAdapter):
    """
    create-task / poll-until-terminal protocol.

    Subclasses implement create_task() and check_task(); this class owns the
    timeout, the polling cadence and the mapping of terminal states:
      success -> InvocationResult
      failed  -> ProviderError (502)
      timeout -> ProviderTimeoutError (504)
    """

    def __init__(
        self,
        model: ModelDefinition,
        *,
        timeout_seconds: float = 180.0,
        poll_interval_seconds: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__(model)
        self.timeout_seconds = timeout_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self._sleep = sleep
        self._clock = clock

    def create_task(self, prompt: str, image_url: Optional[str], params: Dict[str, Any]) -> str:
        raise NotImplementedError

    def check_task(self, task_id: str) -> Tuple[str, List[str], Optional[str]]:
        """Returns (PENDING|SUCCEEDED|FAILED, result_urls, fail_message)."""
        raise NotImplementedError

    def invoke(self, prompt: str, image_url: Optional[str], params: Dict[str, Any]) -> InvocationResult:
        # fail fast: no task is created for invalid inputs
        self.validate_inputs(prompt, image_url)

        start = self._clock()
        task_id = self.create_task(prompt, image_url, params)
        logger.info("[%s] Task created: %s", self.name, task_id)

        attempts = 0
        while self._clock() - start < self.timeout_seconds:
            attempts += 1
            state, urls, fail_msg = self.check_task(task_id)
            logger.debug("[%s] Attempt %d: task=%s state=%s", self.name, attempts, task_id, state)

            if state == SUCCEEDED:
                if not urls:
                    raise ProviderInternalError("No result URLs in response", details={"taskId": task_id})
                duration_ms = int((self._clock() - start) * 1000)
                logger.info("[%s] Success after %dms: %d URL(s)", self.name, duration_ms, len(urls))
                return InvocationResult(provider_task_id=task_id, duration_ms=duration_ms, urls=list(urls))

            if state == FAILED:
                logger.error("[%s] Task failed: %s", self.name, fail_msg)
                raise ProviderError(fail_msg or "Task failed", details={"taskId": task_id})

            self._sleep(self.poll_interval_seconds)

        elapsed = self._clock() - start
        logger.error("[%s] Timeout after %.0fs (task=%s, attempts=%d)", self.name, elapsed, task_id, attempts)
        raise ProviderTimeoutError(
            f"Task timed out after {round(elapsed)}s. Please try again.",
            details={"taskId": task_id, "attempts": attempts},
        )
