"""
HTTP API Routes.

Endpoints:
    POST /api/tts       - Generate speech from text + voice description (audio/wav)
    GET  /api/health    - Liveness, engine, and selected compute backend
    GET  /api/debug     - Scheduler snapshot and process resources
    GET  /metrics       - Prometheus metrics

POST /api/tts form fields:
    text          required  what to say
    description   required  how it should sound
    temperature   optional  0.0-2.0 (clamped), default 1.0
    top_p         optional  (0.0, 1.0] (clamped), default 1.0
    seed          optional  0..2**64-1, random when omitted

Successful responses stream the WAV and report the effective parameters in
X-Seed, X-Temperature, X-Top-P and X-Clamped, so any result can be
reproduced by resending the same fields with the reported seed.

Error Handling:
    All errors are returned as JSON:
    {
        "ok": false,
        "error": "<ERROR_CODE>",
        "message": "<human readable message>",
        "field": "<offending form field, validation errors only>",
        "request_id": "<id also present in server logs>"
    }

    HTTP status codes are mapped from error codes:
        - INVALID_PARAMETER, TEXT_TOO_LONG -> 400 Bad Request
        - QUEUE_FULL, MODEL_NOT_READY      -> 503 Service Unavailable
        - TIMEOUT                          -> 504 Gateway Timeout
        - CANCELLED                        -> 499 Client Closed Request
        - ENGINE_FAILURE, ENCODING_FAILURE -> 500 Internal Server Error

Example:
    curl -X POST http://localhost:8039/api/tts \\
        -F text="Hey, how are you doing today?" \\
        -F description="A female speaker delivers a slightly expressive speech." \\
        -F seed=42 --output speech.wav
"""
from __future__ import annotations

import time
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Form, Request, Response
from fastapi.responses import JSONResponse, StreamingResponse

from parler_serve.api.dependencies import get_metrics, get_speech_service
from parler_serve.api.schemas import DebugResponse, ErrorResponse, HealthResponse
from parler_serve.core.errors import ErrorCode, ServiceError
from parler_serve.core.logging import error, fail, get_logger, info, set_request_id, warn
from parler_serve.core.metrics import ServiceMetrics
from parler_serve.services.speech_service import SpeechService

router = APIRouter()

_LOG = get_logger("parler-serve.api")

STATUS_MAP = {
    ErrorCode.INVALID_PARAMETER: 400,
    ErrorCode.TEXT_TOO_LONG: 400,
    ErrorCode.QUEUE_FULL: 503,
    ErrorCode.MODEL_NOT_READY: 503,
    ErrorCode.TIMEOUT: 504,
    ErrorCode.CANCELLED: 499,
    ErrorCode.ENGINE_FAILURE: 500,
    ErrorCode.ENCODING_FAILURE: 500,
}

# Server-side failures are reported without internal detail
_OPAQUE_MESSAGES = {
    ErrorCode.ENGINE_FAILURE: "Audio generation failed",
    ErrorCode.ENCODING_FAILURE: "Audio encoding failed",
}

_ERROR_RESPONSES = {
    400: {"model": ErrorResponse},
    499: {"model": ErrorResponse},
    500: {"model": ErrorResponse},
    503: {"model": ErrorResponse},
    504: {"model": ErrorResponse},
}


def status_for(code: str) -> int:
    return STATUS_MAP.get(code, 500)


def error_response(e: ServiceError, request_id: Optional[str] = None) -> JSONResponse:
    """Standard JSON error body for a ServiceError."""
    if e.code in _OPAQUE_MESSAGES:
        content = {"ok": False, "error": e.code, "message": _OPAQUE_MESSAGES[e.code]}
    else:
        content = e.to_dict()
        content.pop("details", None)
    if request_id is not None:
        content["request_id"] = request_id
    return JSONResponse(status_code=status_for(e.code), content=content)


def _attachment_name() -> str:
    return f"generated_audio_{int(time.time())}.wav"


@router.post(
    "/api/tts",
    response_class=Response,
    responses={200: {"content": {"audio/wav": {}}}, **_ERROR_RESPONSES},
)
async def generate_tts(
    request: Request,
    text: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    temperature: Optional[str] = Form(None),
    seed: Optional[str] = Form(None),
    top_p: Optional[str] = Form(None),
    service: SpeechService = Depends(get_speech_service),
):
    """
    Generate speech.

    The request waits in the scheduler queue for its turn; if the client
    disconnects meanwhile, the job is cancelled and never (or no longer)
    occupies the model.
    """
    rid = uuid.uuid4().hex[:12]
    set_request_id(rid)

    try:
        result = await service.synthesize(
            text,
            description,
            temperature=temperature,
            top_p=top_p,
            seed=seed,
            is_disconnected=request.is_disconnected,
        )
    except ServiceError as e:
        status = status_for(e.code)
        if status >= 500 and e.code not in (ErrorCode.QUEUE_FULL, ErrorCode.MODEL_NOT_READY):
            fail(_LOG, "request_failed", error=e.code, message=e.message, status=status)
        else:
            warn(_LOG, "request_rejected", error=e.code, message=e.message, status=status)
        return error_response(e, rid)
    except Exception as e:
        error(_LOG, "request_failed", error=type(e).__name__, message=str(e), exc_info=True)
        return JSONResponse(
            status_code=500,
            content={
                "ok": False,
                "error": ErrorCode.INTERNAL_ERROR,
                "message": "Internal server error",
                "request_id": rid,
            },
        )

    headers = result.headers()
    headers["Content-Disposition"] = f'attachment; filename="{_attachment_name()}"'
    info(_LOG, "streaming", seed=result.request.seed, sample_rate=result.audio.sample_rate)
    return StreamingResponse(service.stream(result), media_type="audio/wav", headers=headers)


@router.get("/api/health", response_model=HealthResponse, responses={503: {"model": ErrorResponse}})
def health(service: SpeechService = Depends(get_speech_service)):
    """
    Health check for load balancers and probes.

    Answers 503 MODEL_NOT_READY until startup (device init + model load)
    has finished.
    """
    return service.get_health_info()


@router.get("/api/debug", response_model=DebugResponse, responses={503: {"model": ErrorResponse}})
def debug_info(service: SpeechService = Depends(get_speech_service)):
    """Queue depth, running job, lifetime counters, and process resources."""
    return service.get_debug_info()


@router.get("/metrics")
def prometheus_metrics(registry: ServiceMetrics = Depends(get_metrics)):
    """Prometheus text exposition."""
    content, content_type = registry.get_metrics_response()
    return Response(content=content, media_type=content_type)
