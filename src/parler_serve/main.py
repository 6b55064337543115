"""
FastAPI Application Entry Point.

Startup order (lifespan):
    1. Configure structured logging
    2. Select the compute backend and initialize it (fatal on failure)
    3. Create the engine and load the model off the event loop
    4. Start the request scheduler

Only then does the server accept requests. Shutdown stops the scheduler,
cancelling any job still waiting.

Usage:
    # Run with uvicorn
    uvicorn parler_serve.main:app --host 0.0.0.0 --port 8039

    # Or through the CLI (adds --cpu)
    parler-serve --cpu --port 8039
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Callable, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from parler_serve.api.dependencies import get_settings
from parler_serve.api.routes import error_response, router
from parler_serve.core.config import Settings
from parler_serve.core.device import DeviceProbe, initialize_device, select_device
from parler_serve.core.errors import ServiceError
from parler_serve.core.logging import configure_logging, fail, get_logger, get_request_id, info
from parler_serve.core.metrics import ServiceMetrics, metrics as default_metrics
from parler_serve.services.speech_service import SpeechService
from parler_serve.services.validators import random_seed
from parler_serve.tts.engine import SynthesisEngine, create_engine

_LOG = get_logger("parler-serve.main")


def create_app(
    settings: Optional[Settings] = None,
    engine: Optional[SynthesisEngine] = None,
    probe: Optional[DeviceProbe] = None,
    metrics: Optional[ServiceMetrics] = None,
    seed_source: Callable[[], int] = random_seed,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        settings: Raw settings; loaded from config/settings.yaml when omitted.
        engine: Engine instance; built by create_engine() when omitted.
        probe: Device capability probe (tests pass a fake).
        metrics: Metrics registry; the process-wide one when omitted.
        seed_source: Seed generator for requests without a seed.

    Returns:
        FastAPI: Application whose lifespan performs device selection and
        model loading.
    """
    configure_logging()

    settings = settings if settings is not None else get_settings()
    config = settings.get_service_config()
    metrics = metrics or default_metrics

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        profile = select_device(force_cpu=config.device.force_cpu, probe=probe)
        try:
            initialize_device(profile, probe)
        except ServiceError as e:
            fail(_LOG, "device_init_failed", device=profile.kind.value, message=e.message)
            raise

        active_engine = engine if engine is not None else create_engine(settings)
        service = SpeechService.build(config, active_engine, profile, metrics=metrics, seed_source=seed_source)
        await service.start()
        app.state.speech_service = service
        info(_LOG, "startup_complete", host=config.server.host, port=config.server.port,
             device=profile.kind.value, capacity=config.scheduler.max_queue)
        try:
            yield
        finally:
            app.state.speech_service = None
            await service.stop()

    app = FastAPI(title="parler-serve", lifespan=lifespan)
    app.state.metrics = metrics
    app.state.speech_service = None

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.server.cors_allow_origins,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Seed", "X-Temperature", "X-Top-P", "X-Clamped", "X-Request-Id",
                        "X-Sample-Rate", "Content-Disposition"],
    )

    @app.exception_handler(ServiceError)
    async def service_error_handler(request: Request, exc: ServiceError):
        rid = get_request_id()
        return error_response(exc, None if rid == "-" else rid)

    app.include_router(router)
    return app


# Global application instance for ASGI servers (uvicorn, gunicorn, etc.)
app = create_app()
