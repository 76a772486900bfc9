"""
FastAPI entrypoint for the Guardian verification service.

This module is a thin transport shell. It parses multipart submissions,
hands them to the VerificationOrchestrator, and maps domain errors onto
HTTP status codes. Every trust decision is made by the orchestrator.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from guardian.app.config import GuardianConfig
from guardian.app.coordinator.orchestrator import VerificationOrchestrator
from guardian.app.engines import UnconfiguredEngine
from guardian.app.engines.azure_openai import AzureLogicEngine, AzureVisionEngine
from guardian.app.engines.http_forensic import HttpForensicEngine
from guardian.app.errors import (
    ConfigurationError,
    RequestValidationError,
    UpstreamEngineError,
)
from guardian.app.events import MemoryQueueEventEmitter
from guardian.app.schemas.audit_case import AuditCaseView, ReviewDecision
from guardian.app.schemas.proof import ProofVerification
from guardian.app.schemas.request import (
    CaptureMetadata,
    DocumentPayload,
    VerificationSubmission,
)
from guardian.app.schemas.verification_response import VerificationResponse
from guardian.app.utils.pii import redact_text

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------


class ResolveCaseBody(BaseModel):
    decision: ReviewDecision
    reviewer_id: str = Field(..., min_length=1)

    model_config = ConfigDict(extra="forbid")


class ProofVerifyBody(BaseModel):
    token: str = Field(..., min_length=1)

    model_config = ConfigDict(extra="forbid")


# ---------------------------------------------------------------------------
# Application setup
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Guardian Verification Service",
    description="Identity document verification orchestrator",
    version="0.1.0",
)


def build_orchestrator(config: GuardianConfig) -> VerificationOrchestrator:
    """
    Wire collaborators from configuration.

    Engines without a configured provider are replaced by stand-ins that
    raise ConfigurationError on use.
    """
    if config.ENGINE_PROVIDER == "azure_openai":
        vision_engine = AzureVisionEngine.from_config(config)
        logic_engine = AzureLogicEngine.from_config(config)
    else:
        vision_engine = UnconfiguredEngine("vision")
        logic_engine = UnconfiguredEngine("logic")

    if config.FORENSIC_ENGINE_URL:
        forensic_engine = HttpForensicEngine.from_config(config)
    else:
        forensic_engine = UnconfiguredEngine("forensic")

    app.state.engines = [vision_engine, forensic_engine, logic_engine]

    return VerificationOrchestrator.from_config(
        config,
        vision_engine=vision_engine,
        forensic_engine=forensic_engine,
        logic_engine=logic_engine,
    )


# ---------------------------------------------------------------------------
# Startup / Shutdown
# ---------------------------------------------------------------------------


@app.on_event("startup")
async def startup_event() -> None:
    """
    Application startup hook.

    Configuration is loaded once and treated as immutable for the lifetime
    of the process. An orchestrator already present on app.state (tests,
    embedding) is used as is.
    """
    if getattr(app.state, "orchestrator", None) is None:
        config = GuardianConfig.from_env()
        logging.basicConfig(
            level=config.LOG_LEVEL,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )
        app.state.config = config
        app.state.orchestrator = build_orchestrator(config)

    orchestrator: VerificationOrchestrator = app.state.orchestrator
    expiry = orchestrator.config.CASE_EXPIRY_SECONDS

    app.state.sweeper = None
    if expiry:
        app.state.sweeper = asyncio.create_task(
            orchestrator.run_expiry_sweeper(max(1.0, expiry / 10))
        )


@app.on_event("shutdown")
async def shutdown_event() -> None:
    """Application shutdown hook."""
    sweeper = getattr(app.state, "sweeper", None)
    if sweeper is not None:
        sweeper.cancel()
        await asyncio.gather(sweeper, return_exceptions=True)

    for engine in getattr(app.state, "engines", []):
        close = getattr(engine, "aclose", None)
        if close is not None:
            await close()


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------


@app.exception_handler(ConfigurationError)
async def configuration_error_handler(request: Request, exc: ConfigurationError):
    logger.error("Configuration error: %s", exc)
    return JSONResponse(
        status_code=503,
        content={"detail": "Verification service is not configured"},
    )


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(
    request: Request, exc: RequestValidationError
):
    return JSONResponse(
        status_code=400,
        content={"detail": redact_text(str(exc)), "field": exc.field},
    )


@app.exception_handler(UpstreamEngineError)
async def upstream_error_handler(request: Request, exc: UpstreamEngineError):
    return JSONResponse(
        status_code=502,
        content={"detail": "Evidence engine unavailable", "engine": exc.engine},
    )


# ---------------------------------------------------------------------------
# Submission parsing
# ---------------------------------------------------------------------------


def _parse_json_field(raw: Optional[str], name: str) -> Dict[str, Any]:
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise HTTPException(status_code=400, detail=f"{name} is not valid JSON") from exc
    if not isinstance(value, dict):
        raise HTTPException(status_code=400, detail=f"{name} must be a JSON object")
    return value


async def _read_submission(
    document: UploadFile,
    document_type: str,
    context_claims: Optional[str],
    capture: str,
) -> VerificationSubmission:
    try:
        content = await document.read()
    except Exception as exc:
        raise HTTPException(
            status_code=400,
            detail="Failed to read uploaded document",
        ) from exc

    if not content:
        raise HTTPException(status_code=400, detail="Uploaded document is empty")

    # ------------------------------------------------------------------
    # Hard resource safety limits (NOT trust decisions)
    # ------------------------------------------------------------------
    config: GuardianConfig = app.state.orchestrator.config
    max_size_bytes = config.MAX_PAYLOAD_SIZE_MB * 1024 * 1024

    if len(content) > max_size_bytes:
        raise HTTPException(
            status_code=413,
            detail=(
                f"Document exceeds maximum allowed size of "
                f"{config.MAX_PAYLOAD_SIZE_MB} MB"
            ),
        )

    try:
        return VerificationSubmission(
            payload=DocumentPayload(
                content=content,
                document_type=document_type,
                mime_type=document.content_type or "application/octet-stream",
            ),
            context_claims=_parse_json_field(context_claims, "context_claims"),
            capture=CaptureMetadata(**_parse_json_field(capture, "capture")),
        )
    except ValidationError as exc:
        fields = sorted({".".join(str(p) for p in e["loc"]) for e in exc.errors()})
        raise HTTPException(
            status_code=400,
            detail=f"Invalid submission fields: {', '.join(fields)}",
        ) from None


# ---------------------------------------------------------------------------
# API Routes
# ---------------------------------------------------------------------------


@app.post(
    "/verify",
    response_model=VerificationResponse,
    summary="Verify a captured identity document",
)
async def verify_document(
    document: UploadFile = File(..., description="Captured document image or PDF"),
    document_type: str = Form(...),
    capture: str = Form(..., description="Capture metadata as JSON"),
    context_claims: Optional[str] = Form(None, description="Claims as JSON"),
) -> VerificationResponse:
    submission = await _read_submission(
        document, document_type, context_claims, capture
    )
    orchestrator: VerificationOrchestrator = app.state.orchestrator
    return await orchestrator.verify(submission)


@app.post(
    "/verify/stream",
    summary="Verify a captured identity document (streaming progress)",
)
async def verify_document_stream(
    document: UploadFile = File(...),
    document_type: str = Form(...),
    capture: str = Form(...),
    context_claims: Optional[str] = Form(None),
):
    """
    Verify while streaming state transitions as Server-Sent Events.

    This endpoint is observational only:
    - Client disconnects do NOT cancel the verification
    - The final VERIFICATION_COMPLETED event carries the response
    """
    submission = await _read_submission(
        document, document_type, context_claims, capture
    )
    orchestrator: VerificationOrchestrator = app.state.orchestrator
    orchestrator.validate_submission(submission)

    emitter = MemoryQueueEventEmitter()

    async def run_verification_task() -> None:
        try:
            await orchestrator.verify(submission, emitter=emitter)
        except Exception:
            # Orchestrator already emitted VERIFICATION_FAILED
            logger.debug("Streaming verification ended with an error")
        finally:
            await emitter.close()

    app.state.background = getattr(app.state, "background", set())
    task = asyncio.create_task(run_verification_task())
    app.state.background.add(task)
    task.add_done_callback(app.state.background.discard)

    async def event_stream():
        try:
            async for frame in emitter.sse_frames():
                yield frame
        except asyncio.CancelledError:
            # Client disconnected; verification continues
            pass

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
        },
    )


@app.get(
    "/cases",
    response_model=List[AuditCaseView],
    summary="List open human review cases",
)
async def list_cases() -> List[AuditCaseView]:
    orchestrator: VerificationOrchestrator = app.state.orchestrator
    return orchestrator.list_open_cases()


@app.post(
    "/cases/{case_id}/resolve",
    response_model=VerificationResponse,
    summary="Approve or reject an open review case",
)
async def resolve_case(case_id: str, body: ResolveCaseBody) -> VerificationResponse:
    orchestrator: VerificationOrchestrator = app.state.orchestrator
    try:
        return await orchestrator.resolve_case(
            case_id, body.decision, body.reviewer_id
        )
    except KeyError:
        raise HTTPException(status_code=404, detail="Unknown audit case") from None


@app.post(
    "/proofs/verify",
    response_model=ProofVerification,
    summary="Check a compliance proof token",
)
async def verify_proof(body: ProofVerifyBody) -> ProofVerification:
    orchestrator: VerificationOrchestrator = app.state.orchestrator
    return orchestrator.verify_proof(body.token)


# ---------------------------------------------------------------------------
# Health Check
# ---------------------------------------------------------------------------


@app.get(
    "/health",
    summary="Service health check",
)
def health_check() -> JSONResponse:
    """Simple health check endpoint."""
    return JSONResponse(
        content={
            "status": "ok",
            "service": "guardian",
        }
    )
