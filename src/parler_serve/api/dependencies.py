"""
FastAPI Dependency Providers.

Lifecycle:
    1. create_app() (main.py) resolves Settings through get_settings()
    2. The lifespan handler selects the device, loads the model and stores
       the SpeechService on app.state
    3. Route handlers receive it through Depends(get_speech_service)

Settings are loaded once and never change while the process runs.
"""
from __future__ import annotations

from functools import lru_cache

from fastapi import Request

from parler_serve.core.config import Settings, load_settings, settings_path
from parler_serve.core.errors import ModelNotReadyError
from parler_serve.core.logging import get_logger, warn
from parler_serve.core.metrics import ServiceMetrics
from parler_serve.services.speech_service import SpeechService

_LOG = get_logger("parler-serve.api")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Load and cache application settings.

    A missing settings file is not an error: every value has a default.
    """
    path = settings_path()
    try:
        return load_settings(path)
    except FileNotFoundError:
        warn(_LOG, "settings_missing", path=path, fallback="defaults")
        return Settings(raw={})


def get_speech_service(request: Request) -> SpeechService:
    """
    The SpeechService created by the lifespan handler.

    Raises:
        ModelNotReadyError: If startup has not finished (or has failed).
    """
    service = getattr(request.app.state, "speech_service", None)
    if service is None:
        raise ModelNotReadyError("Service is starting")
    return service


def get_metrics(request: Request) -> ServiceMetrics:
    """The app's metrics registry (created with the app, available before startup ends)."""
    return request.app.state.metrics
