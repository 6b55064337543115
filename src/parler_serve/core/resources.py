"""
Process Resource Snapshot.

A point-in-time view of the serving process (CPU, resident memory, system
memory headroom, thread count) reported by GET /api/debug next to the
scheduler state. When the model lives on CUDA, allocated VRAM is included.
"""
from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any, Dict, Optional

import psutil

from parler_serve.core.device import DeviceKind, DeviceProfile


@dataclass
class ResourceSnapshot:
    """
    Attributes:
        cpu_percent: Process CPU since the previous sample (can exceed 100).
        ram_used_mb: Process RSS.
        ram_available_mb: System-wide available memory.
        threads: Process thread count.
        gpu_vram_allocated_mb: torch CUDA allocator usage, None off-GPU.
    """
    cpu_percent: float = 0.0
    ram_used_mb: float = 0.0
    ram_available_mb: float = 0.0
    threads: int = 0
    gpu_vram_allocated_mb: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "cpu_percent": round(self.cpu_percent, 1),
            "ram_used_mb": round(self.ram_used_mb, 1),
            "ram_available_mb": round(self.ram_available_mb, 1),
            "threads": self.threads,
        }
        if self.gpu_vram_allocated_mb is not None:
            result["gpu_vram_allocated_mb"] = round(self.gpu_vram_allocated_mb, 1)
        return result


class ResourceSampler:
    """
    Thread-safe sampler bound to the current process.

    psutil's cpu_percent(interval=None) measures since the previous call, so
    the sampler is primed once at construction.
    """

    def __init__(self, profile: Optional[DeviceProfile] = None):
        self._profile = profile
        self._process = psutil.Process()
        self._lock = threading.Lock()
        self._process.cpu_percent(interval=None)

    def sample(self) -> ResourceSnapshot:
        with self._lock:
            mem = self._process.memory_info()
            snapshot = ResourceSnapshot(
                cpu_percent=self._process.cpu_percent(interval=None),
                ram_used_mb=mem.rss / (1024 * 1024),
                ram_available_mb=psutil.virtual_memory().available / (1024 * 1024),
                threads=self._process.num_threads(),
            )
        if self._profile is not None and self._profile.kind is DeviceKind.GPU_CUDA:
            snapshot.gpu_vram_allocated_mb = _cuda_allocated_mb()
        return snapshot


def _cuda_allocated_mb() -> Optional[float]:
    try:
        import torch
    except ImportError:
        return None
    if not torch.cuda.is_available():
        return None
    return torch.cuda.memory_allocated() / (1024 * 1024)
