"""
Compute Backend Selection.

The backend is chosen exactly once, before the model is loaded, and never
changes afterwards. Selection walks a fixed priority list and takes the
first backend this build of torch/numpy can actually use:

    GPU_CUDA -> GPU_METAL -> CPU_MKL -> CPU_ACCELERATE -> CPU_GENERIC

With force_cpu the GPU entries are skipped, so the result is the best CPU
backend available (MKL, then Accelerate, then generic).

initialize_device() touches the chosen backend once. If that fails the
process must not start: there is no fallback to another backend at runtime,
because a half-initialized model on the wrong device is worse than no
service at all.

Usage:
    profile = select_device(force_cpu=False)
    initialize_device(profile)
    print(profile.kind.value, profile.torch_device)   # "gpu-cuda" "cuda"
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from parler_serve.core.errors import DeviceInitError
from parler_serve.core.logging import get_logger, info, success

_LOG = get_logger("parler-serve.device")


class DeviceKind(str, Enum):
    """Closed set of backends the service knows how to run on."""
    GPU_CUDA = "gpu-cuda"
    GPU_METAL = "gpu-metal"
    CPU_MKL = "cpu-mkl"
    CPU_ACCELERATE = "cpu-accelerate"
    CPU_GENERIC = "cpu-generic"

    @property
    def is_gpu(self) -> bool:
        return self in (DeviceKind.GPU_CUDA, DeviceKind.GPU_METAL)


PRIORITY = (
    DeviceKind.GPU_CUDA,
    DeviceKind.GPU_METAL,
    DeviceKind.CPU_MKL,
    DeviceKind.CPU_ACCELERATE,
    DeviceKind.CPU_GENERIC,
)

_TORCH_DEVICE = {
    DeviceKind.GPU_CUDA: "cuda",
    DeviceKind.GPU_METAL: "mps",
    DeviceKind.CPU_MKL: "cpu",
    DeviceKind.CPU_ACCELERATE: "cpu",
    DeviceKind.CPU_GENERIC: "cpu",
}


@dataclass(frozen=True)
class DeviceProfile:
    """
    The backend chosen at startup.

    Attributes:
        kind: Selected backend.
        forced: True when the CPU-only override was in effect.
    """
    kind: DeviceKind
    forced: bool = False

    @property
    def torch_device(self) -> str:
        """Device string to hand to torch (``cuda``, ``mps`` or ``cpu``)."""
        return _TORCH_DEVICE[self.kind]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "forced": self.forced,
            "torch_device": self.torch_device,
        }


class DeviceProbe:
    """
    Answers "is this backend usable?" for each DeviceKind.

    A build without torch can only run on the generic CPU backend. Tests
    substitute their own probe.
    """

    def available(self, kind: DeviceKind) -> bool:
        if kind is DeviceKind.CPU_GENERIC:
            return True
        if kind is DeviceKind.CPU_ACCELERATE:
            return _numpy_uses_accelerate()

        torch = _import_torch()
        if torch is None:
            return False
        if kind is DeviceKind.GPU_CUDA:
            return bool(torch.cuda.is_available())
        if kind is DeviceKind.GPU_METAL:
            mps = getattr(torch.backends, "mps", None)
            return bool(mps is not None and mps.is_available())
        if kind is DeviceKind.CPU_MKL:
            return bool(torch.backends.mkl.is_available())
        return False

    def initialize(self, profile: DeviceProfile) -> None:
        """Allocate a tiny tensor on the device to force backend init."""
        torch = _import_torch()
        if torch is None:
            if profile.kind is not DeviceKind.CPU_GENERIC and profile.kind is not DeviceKind.CPU_ACCELERATE:
                raise RuntimeError("torch is not installed")
            return
        if profile.kind is DeviceKind.GPU_CUDA:
            torch.cuda.init()
        torch.zeros(1, device=profile.torch_device).add_(1)


def _import_torch() -> Optional[Any]:
    try:
        import torch
    except ImportError:
        return None
    return torch


def _numpy_uses_accelerate() -> bool:
    """True when numpy's BLAS is Apple Accelerate."""
    import numpy as np

    try:
        blas = np.show_config(mode="dicts")["Build Dependencies"]["blas"]
    except (TypeError, KeyError):
        return False
    return "accelerate" in str(blas.get("name", "")).lower()


def select_device(force_cpu: bool = False, probe: Optional[DeviceProbe] = None) -> DeviceProfile:
    """
    Pick the backend for this process.

    Args:
        force_cpu: Skip GPU backends regardless of availability.
        probe: Capability probe (defaults to the torch/numpy one).

    Returns:
        Frozen DeviceProfile.
    """
    probe = probe or DeviceProbe()
    for kind in PRIORITY:
        if force_cpu and kind.is_gpu:
            continue
        if probe.available(kind):
            profile = DeviceProfile(kind=kind, forced=force_cpu)
            info(_LOG, "device_selected", device=kind.value, forced=force_cpu)
            return profile

    # CPU_GENERIC is always available; only a broken probe gets here
    return DeviceProfile(kind=DeviceKind.CPU_GENERIC, forced=force_cpu)


def initialize_device(profile: DeviceProfile, probe: Optional[DeviceProbe] = None) -> None:
    """
    Initialize the selected backend.

    Raises:
        DeviceInitError: If the backend cannot be brought up. Callers treat
            this as fatal to startup.
    """
    probe = probe or DeviceProbe()
    try:
        probe.initialize(profile)
    except Exception as e:
        raise DeviceInitError(
            f"Failed to initialize {profile.kind.value}: {e}",
            {"device": profile.kind.value, "error_type": type(e).__name__},
        ) from e
    success(_LOG, "device_ready", device=profile.kind.value)
