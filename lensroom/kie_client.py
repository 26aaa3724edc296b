# lensroom/kie_client.py
"""
Kie.ai image/video providers.

Two upstream APIs, same create-then-poll shape:
  - Market API (Seedream, Nano Banana Edit, ...):
        POST /api/v1/jobs/createTask     {model, callBackUrl, input}
        GET  /api/v1/jobs/recordInfo?taskId=...
        state: waiting | queuing | generating | success | fail
        resultJson is a JSON *string* holding resultUrls
  - Veo API (Veo 3.1):
        POST /api/v1/veo/generate        {prompt, model, aspectRatio}
        GET  /api/v1/veo/record-info?taskId=...
        successFlag: 1 success, 0 running, -1 failed
"""

import json
import logging
from typing import Any, Dict, List, Optional, Tuple

import requests

from lensroom.errors import ProviderError, ProviderInternalError
from lensroom.model_catalog import ModelDefinition
from lensroom.provider_base import FAILED, PENDING, SUCCEEDED, PollingProvider

logger = logging.getLogger("lensroom_infer")

HTTP_TIMEOUT = 30


class KieApiClient:
    """Thin authenticated JSON client; every non-2xx or non-200 envelope is a ProviderError."""

    def __init__(self, api_key: str, base_url: str = "https://api.kie.ai", session: Optional[requests.Session] = None):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def _unwrap(self, resp: requests.Response, what: str) -> Dict[str, Any]:
        if not resp.ok:
            logger.error("[Kie] %s HTTP error: %s %s", what, resp.status_code, resp.text[:500])
            raise ProviderError(
                f"Kie.ai {what} returned {resp.status_code}",
                details={"status": resp.status_code, "body": resp.text[:500]},
            )
        try:
            data = resp.json()
        except ValueError:
            raise ProviderError(f"Kie.ai {what} returned a non-JSON body")
        if data.get("code") != 200:
            raise ProviderError(data.get("msg") or f"Kie.ai {what} failed", details=data)
        return data.get("data") or {}

    def _transport_error(self, what: str, error: requests.RequestException) -> ProviderInternalError:
        logger.error("[Kie] %s transport error: %s", what, error)
        return ProviderInternalError(f"Kie.ai {what} unreachable: {error}", details={"error": type(error).__name__})

    def post(self, path: str, payload: Dict[str, Any], what: str) -> Dict[str, Any]:
        try:
            resp = self.session.post(f"{self.base_url}{path}", headers=self._headers(), json=payload, timeout=HTTP_TIMEOUT)
        except (requests.ConnectionError, requests.Timeout) as e:
            raise self._transport_error(what, e) from e
        return self._unwrap(resp, what)

    def get(self, path: str, params: Dict[str, Any], what: str) -> Dict[str, Any]:
        try:
            resp = self.session.get(f"{self.base_url}{path}", headers=self._headers(), params=params, timeout=HTTP_TIMEOUT)
        except (requests.ConnectionError, requests.Timeout) as e:
            raise self._transport_error(what, e) from e
        return self._unwrap(resp, what)


class KieMarketProvider(PollingProvider):
    name = "Kie:Market"

    def __init__(self, model: ModelDefinition, client: KieApiClient, **kwargs):
        super().__init__(model, **kwargs)
        self.client = client

    def build_input(self, prompt: str, image_url: Optional[str], params: Dict[str, Any]) -> Dict[str, Any]:
        kie_input: Dict[str, Any] = {"prompt": prompt}

        if self.model.id == "seedream_image":
            kie_input["image_size"] = params.get("image_size") or "square_hd"
            kie_input["guidance_scale"] = 2.5
            kie_input["enable_safety_checker"] = True
        elif self.model.requires_image:
            kie_input["image_urls"] = [image_url]
            kie_input["image_size"] = params.get("image_size") or "1:1"
            kie_input["output_format"] = params.get("output_format") or "png"
        else:
            kie_input.update(params)
        return kie_input

    def create_task(self, prompt: str, image_url: Optional[str], params: Dict[str, Any]) -> str:
        payload = {
            "model": self.model.provider_model,
            "callBackUrl": None,
            "input": self.build_input(prompt, image_url, params),
        }
        data = self.client.post("/api/v1/jobs/createTask", payload, "createTask")
        task_id = data.get("taskId")
        if not task_id:
            raise ProviderError("Failed to create task: no taskId in response", details=data)
        return str(task_id)

    def check_task(self, task_id: str) -> Tuple[str, List[str], Optional[str]]:
        data = self.client.get("/api/v1/jobs/recordInfo", {"taskId": task_id}, "recordInfo")
        state = data.get("state")

        if state == "success":
            raw = data.get("resultJson")
            if not raw:
                raise ProviderInternalError("Task succeeded but no resultJson", details=data)
            try:
                result = json.loads(raw) if isinstance(raw, str) else raw
            except ValueError:
                raise ProviderInternalError("Task succeeded but resultJson is not valid JSON", details=data)
            urls = result.get("resultUrls") or result.get("result_urls") or []
            return SUCCEEDED, [u for u in urls if u], None

        if state == "fail":
            return FAILED, [], data.get("failMsg") or "Task failed"

        # waiting | queuing | generating
        return PENDING, [], None


class KieVeoProvider(PollingProvider):
    name = "Kie:Veo"

    def __init__(self, model: ModelDefinition, client: KieApiClient, **kwargs):
        super().__init__(model, **kwargs)
        self.client = client

    def create_task(self, prompt: str, image_url: Optional[str], params: Dict[str, Any]) -> str:
        payload = {
            "prompt": prompt,
            "model": self.model.provider_model or "veo3",
            "aspectRatio": params.get("aspectRatio") or "16:9",
        }
        data = self.client.post("/api/v1/veo/generate", payload, "veo/generate")
        task_id = data.get("taskId")
        if not task_id:
            raise ProviderError("Failed to create Veo task: no taskId in response", details=data)
        return str(task_id)

    def check_task(self, task_id: str) -> Tuple[str, List[str], Optional[str]]:
        data = self.client.get("/api/v1/veo/record-info", {"taskId": task_id}, "veo/record-info")
        flag = data.get("successFlag")

        if flag == 1:
            urls = (data.get("response") or {}).get("resultUrls") or []
            return SUCCEEDED, [u for u in urls if u], None
        if flag == -1:
            return FAILED, [], data.get("errorMsg") or "Veo task failed"
        return PENDING, [], None
