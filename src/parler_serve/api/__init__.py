"""
FastAPI REST API Layer.

    - routes.py: /api/tts, /api/health, /api/debug, /metrics
    - schemas.py: Response Pydantic models
    - dependencies.py: Settings and service providers
"""
