"""
API Response Schemas.

Pydantic models for the JSON endpoints. /api/tts takes form fields (see
routes.py) and answers with audio/wav, so it has no request model; its error
body is ErrorResponse.

Models:
    DeviceInfo: Selected compute backend
    HealthResponse: GET /api/health
    SchedulerInfo: Queue and counter snapshot
    ResourceInfo: Process CPU/RAM snapshot
    DebugResponse: GET /api/debug
    ErrorResponse: Body of every non-2xx JSON response
"""
from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field


class DeviceInfo(BaseModel):
    kind: str = Field(..., description="gpu-cuda, gpu-metal, cpu-mkl, cpu-accelerate or cpu-generic")
    forced: bool = Field(..., description="True when the CPU-only override was in effect")
    torch_device: str


class HealthResponse(BaseModel):
    """
    Liveness plus the facts a client needs to interpret results.

    Example:
        {"ok": true, "status": "ready", "uptime_s": 12.3, "engine": "parler",
         "model_id": "parler-tts/parler-tts-large-v1", "loaded": true,
         "sample_rate": 44100,
         "device": {"kind": "gpu-cuda", "forced": false, "torch_device": "cuda"}}
    """
    ok: bool = True
    status: str
    uptime_s: float
    engine: str
    model_id: str
    loaded: bool
    sample_rate: Optional[int] = None
    device: DeviceInfo


class SchedulerInfo(BaseModel):
    queue_depth: int
    capacity: int
    state: str = Field(..., description="running or idle")
    running: bool
    running_job_id: Optional[int] = None
    completed: int
    failed: int
    timed_out: int
    cancelled: int
    rejected: int
    job_timeout_s: float


class ResourceInfo(BaseModel):
    cpu_percent: float
    ram_used_mb: float
    ram_available_mb: float
    threads: int
    gpu_vram_allocated_mb: Optional[float] = None


class DebugResponse(BaseModel):
    ok: bool = True
    engine: str
    device: DeviceInfo
    scheduler: SchedulerInfo
    resources: ResourceInfo


class ErrorResponse(BaseModel):
    """
    Example:
        {"ok": false, "error": "QUEUE_FULL", "message": "Queue full (8 waiting)",
         "request_id": "a1b2c3d4e5f6"}
    """
    ok: bool = False
    error: str
    message: str
    field: Optional[str] = None
    request_id: Optional[str] = None
