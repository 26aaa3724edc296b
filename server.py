import asyncio
import hmac
import logging
import os
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from fastapi import Depends, FastAPI, File, Header, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from lensroom.GCConnection_hlpr import GCConnection
from lensroom.asset_store import AssetStore
from lensroom.errors import AuthError, InferError
from lensroom.fallback import DegradedModeGuard
from lensroom.generations import GenerationStore
from lensroom.identity import IdentityResolver
from lensroom.ledger import LedgerClient
from lensroom.model_catalog import ModelCatalog
from lensroom.orchestrator import InferenceOrchestrator
from lensroom.prompt_variants import MAX_VARIANTS, PromptVariantGenerator
from lensroom.providers import build_llm_client, build_provider
from lensroom.settings import Settings

logging.basicConfig(
    level=logging.DEBUG if os.getenv("DEBUG", "").lower() == "true" else logging.INFO,
    format="%(asctime)s | %(levelname)s | %(name)s\n%(message)s\n"
)

logger = logging.getLogger("lensroom_infer")


class InferInputs(BaseModel):
    prompt: str
    imageUrl: Optional[str] = None


class InferBody(BaseModel):
    modelId: str
    inputs: InferInputs
    params: Optional[Dict[str, Any]] = None
    outputsCount: int = Field(default=1, ge=1)


class VariantsBody(BaseModel):
    basePrompt: str
    count: int = Field(ge=1, le=MAX_VARIANTS)


class RefundBody(BaseModel):
    generationId: str


class TopUpBody(BaseModel):
    userId: str
    amount: int = Field(gt=0)


class _AdminDisabled(Exception):
    """Admin endpoints are hidden when ADMIN_API_TOKEN is unset."""


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": message})


def create_app(
    settings: Optional[Settings] = None,
    orchestrator: Optional[InferenceOrchestrator] = None,
    *,
    connection: Optional[GCConnection] = None,
    session_factory: Optional[Callable] = None,
    catalog: Optional[ModelCatalog] = None,
    assets=None,
    provider_factory=build_provider,
    llm_client_factory=build_llm_client,
    db_ping: Optional[Callable[[], None]] = None,
) -> FastAPI:
    """
    Build the HTTP app with explicitly constructed collaborators.

    Nothing here touches the database or GCS: both connect on first use, so an
    unconfigured environment surfaces per request (and through the degraded-mode
    guard) rather than at startup.
    """
    settings = settings or Settings.from_env()
    connection = connection or GCConnection()
    session_factory = session_factory or connection.build_db_session_factory()
    catalog = catalog or ModelCatalog.from_settings(settings)

    ledger = LedgerClient(session_factory)
    records = GenerationStore(session_factory)
    identity = IdentityResolver(settings, session_factory)
    assets = assets or AssetStore(connection)
    if orchestrator is None:
        orchestrator = InferenceOrchestrator(
            settings,
            catalog,
            ledger,
            records,
            assets,
            identity,
            provider_factory=provider_factory,
        )

    app = FastAPI(title="lensroom-infer")

    # CORS configuration
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Allow all origins for dev
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.settings = settings
    app.state.connection = connection
    app.state.catalog = catalog
    app.state.ledger = ledger
    app.state.records = records
    app.state.identity = identity
    app.state.assets = assets
    app.state.orchestrator = orchestrator
    app.state.db_ping = db_ping or connection.ping_db

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError):
        first = (exc.errors() or [{}])[0]
        loc = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        msg = first.get("msg", "Invalid request")
        return _error(400, f"{loc}: {msg}" if loc else msg)

    @app.exception_handler(InferError)
    async def _infer_error(request: Request, exc: InferError):
        return _error(exc.status_code, str(exc))

    def require_admin(x_admin_token: Optional[str] = Header(default=None)) -> None:
        expected = settings.admin_api_token
        if not expected:
            raise _AdminDisabled()
        if not x_admin_token or not hmac.compare_digest(x_admin_token, expected):
            raise AuthError("Invalid admin token")

    @app.exception_handler(_AdminDisabled)
    async def _admin_disabled(request: Request, exc: _AdminDisabled):
        return _error(404, "Not found")

    # -----------------------
    # Inference
    # -----------------------

    @app.post("/api/infer")
    async def infer(body: InferBody, request: Request):
        result = await orchestrator.handle(
            body.model_dump(exclude_none=True),
            headers=dict(request.headers),
            cookies=dict(request.cookies),
        )
        return JSONResponse(status_code=result.status_code, content=result.body)

    @app.get("/api/models")
    async def list_models():
        return JSONResponse(
            content=[m.to_public_dict() for m in catalog.enabled_models()],
            headers={"Cache-Control": "public, s-maxage=3600, stale-while-revalidate=86400"},
        )

    @app.get("/api/generations/{generation_id}")
    async def get_generation(generation_id: str, request: Request):
        guard = DegradedModeGuard(degraded_mode=False)
        user_id = await asyncio.to_thread(
            identity.resolve, dict(request.headers), dict(request.cookies), guard
        )
        if user_id is None:
            raise AuthError("Authentication required")
        found = await guard.acall("generations.get", records.get, generation_id)
        view = found.value
        if view is None or view.user_id != user_id:
            return _error(404, f"Generation not found: {generation_id}")
        return {"success": True, "generation": view.to_dict()}

    # -----------------------
    # Uploads and prompt helpers
    # -----------------------

    @app.post("/api/upload")
    async def upload(request: Request, file: Optional[UploadFile] = File(default=None)):
        guard = DegradedModeGuard(degraded_mode=False)
        user_id = await asyncio.to_thread(
            identity.resolve, dict(request.headers), dict(request.cookies), guard
        )
        if user_id is None:
            raise AuthError("Unauthorized")
        data = await file.read() if file is not None else b""
        filename = file.filename if file is not None else None
        content_type = file.content_type if file is not None else None
        stored = await guard.acall("assets.upload", assets.persist_upload, user_id, filename, data, content_type)
        url, path = stored.value
        return {"success": True, "url": url, "path": path}

    @app.post("/api/generate-prompt-variants")
    async def generate_prompt_variants(body: VariantsBody):
        # a single variant is the base prompt itself and needs no text model
        generator = PromptVariantGenerator(llm_client_factory(settings) if body.count > 1 else None)
        variants, fallback = await asyncio.to_thread(generator.generate, body.basePrompt, body.count)
        logger.info("[Variants] Returned %d variants%s", len(variants), " (fallback)" if fallback else "")
        return {"success": True, "variants": variants, "fallback": fallback}

    # -----------------------
    # Health
    # -----------------------

    @app.get("/api/health")
    async def health():
        report: Dict[str, Any] = {
            "status": "ok",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "env": {
                "KIE_API_KEY": bool(settings.kie_api_key),
                "GOOGLE_CLOUD_PROJECT": bool(settings.vertex_project),
                "DATABASE": bool(connection.DATABASE_URL or connection.DB_HOST),
                "GCS_BUCKET_NAME": bool(connection.BUCKET_NAME),
                "INFER_DEGRADED_MODE": settings.degraded_mode,
                "ALLOW_ANON_INFER": settings.allow_anon_infer,
                "USE_MOCK_INFERENCE": settings.use_mock_inference,
            },
            "database": {"reachable": False, "error": None},
        }

        try:
            await asyncio.to_thread(app.state.db_ping)
            report["database"]["reachable"] = True
        except Exception as e:
            # health reports the failure instead of raising it
            report["database"]["error"] = str(e)
            logger.warning("[Health] Database unreachable: %s", e)
            if not settings.degraded_mode:
                report["status"] = "degraded"

        if not settings.kie_api_key and not settings.use_mock_inference:
            report["status"] = "degraded"
            report["error"] = "KIE_API_KEY not configured (required for real inference)"

        return JSONResponse(status_code=200 if report["status"] == "ok" else 503, content=report)

    # -----------------------
    # Admin: credits
    # -----------------------

    @app.post("/api/credits/refund", dependencies=[Depends(require_admin)])
    async def refund(body: RefundBody):
        guard = DegradedModeGuard(degraded_mode=False)
        result = await guard.acall("ledger.refund", ledger.refund_generation, body.generationId, records)
        logger.info("[Admin] Refunded generation %s", body.generationId)
        return {"success": True, "generationId": body.generationId, "newBalance": result.value}

    @app.post("/api/credits/topup", dependencies=[Depends(require_admin)])
    async def topup(body: TopUpBody):
        guard = DegradedModeGuard(degraded_mode=False)
        result = await guard.acall("ledger.topup", ledger.top_up, body.userId, body.amount, "Admin top-up")
        logger.info("[Admin] Top-up %s: +%d", body.userId, body.amount)
        return {"success": True, "userId": body.userId, "newBalance": result.value}

    return app


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(create_app(), host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
