"""
Services Layer.

Sits between the API layer and the synthesis pipeline.

Components:
    - speech_service.py: SpeechService (validate, schedule, generate, encode)
    - validators.py: Generation parameter validation
"""
from .speech_service import SpeechResult, SpeechService
from .validators import validate_generation_params

__all__ = [
    "SpeechService",
    "SpeechResult",
    "validate_generation_params",
]
