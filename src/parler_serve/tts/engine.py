"""
Synthesis Engine Interface, Exclusive Resource, and Factory.

This module provides:
    - GenerationRequest: validated, immutable parameters for one generation
    - AudioResult: raw waveform returned by an engine
    - SynthesisEngine: abstract base class for engines
    - SynthesisResource: exclusive handle around the one loaded engine
    - create_engine(): factory resolving the configured engine type

Engine Selection:
    The engine is selected via the PARLER_SERVE_ENGINE environment variable
    or settings.engine.type. Supported engines:
        - parler: Parler-TTS (text + voice description)

Exclusivity:
    Exactly one SynthesisResource exists per process and it is not safe for
    concurrent use. The scheduler guarantees one caller at a time; the
    resource additionally guards generate() with a non-blocking lock so a
    violation fails loudly (EngineFailure) instead of corrupting model state.

Implementing a New Engine:
    1. Create engines/<name>_engine.py
    2. Inherit from SynthesisEngine
    3. Implement load() and generate(), polling cancel_event where possible
    4. Register in create_engine()
"""
from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

import numpy as np

from parler_serve.core.config import EngineConfig, Settings
from parler_serve.core.device import DeviceProfile
from parler_serve.core.errors import (
    EngineFailure,
    GenerationCancelled,
    ModelNotReadyError,
    ServiceError,
)
from parler_serve.core.logging import error, get_logger, info, success, verbose

_LOG = get_logger("parler-serve.engine")


@dataclass(frozen=True)
class GenerationRequest:
    """
    Validated generation parameters.

    Attributes:
        text: Prompt to speak (trimmed, non-empty).
        description: Voice/style description (trimmed, non-empty).
        temperature: Sampling temperature in [0.0, 2.0].
        top_p: Nucleus sampling mass in (0.0, 1.0].
        seed: Unsigned 64-bit RNG seed.
        seed_generated: True when the seed was drawn server-side.
        clamped: Names of fields whose values were clamped.
    """
    text: str
    description: str
    temperature: float = 1.0
    top_p: float = 1.0
    seed: int = 0
    seed_generated: bool = False
    clamped: Tuple[str, ...] = ()


@dataclass
class AudioResult:
    """
    Raw waveform produced by one generate() call.

    Attributes:
        samples: float32 array, shape (frames,) or (frames, channels).
        sample_rate: Samples per second.
        channels: Channel count.
        timings_s: Per-stage timing breakdown in seconds.
    """
    samples: np.ndarray
    sample_rate: int
    channels: int = 1
    timings_s: Dict[str, float] = field(default_factory=dict)

    @property
    def frames(self) -> int:
        return int(self.samples.shape[0]) if self.samples.ndim else 0

    @property
    def duration_s(self) -> float:
        if self.sample_rate <= 0:
            return 0.0
        return self.frames / float(self.sample_rate)


class SynthesisEngine:
    """
    Abstract base class for synthesis engines.

    Subclasses implement:
        - load(profile): bring the model onto the selected device
        - generate(request, cancel_event): produce an AudioResult

    generate() runs on the scheduler's worker thread. It should poll
    cancel_event and raise GenerationCancelled when it is set.

    Example:
        class MyEngine(SynthesisEngine):
            name = "mine"

            def load(self, profile):
                self._model = load_my_model(profile.torch_device)
                self._loaded = True

            def generate(self, request, cancel_event):
                return AudioResult(samples=..., sample_rate=24000)
    """
    name: str = "base"

    def __init__(self, config: Optional[EngineConfig] = None):
        self.config = config or EngineConfig()
        self.model_id = self.config.model_id
        self.logger = get_logger(f"parler-serve.engine.{self.name}")
        self.sample_rate = 0
        self._loaded = False

    def load(self, profile: DeviceProfile) -> None:
        raise NotImplementedError

    def is_loaded(self) -> bool:
        return bool(self._loaded)

    def generate(self, request: GenerationRequest, cancel_event: threading.Event) -> AudioResult:
        raise NotImplementedError


class SynthesisResource:
    """
    The single, exclusive handle to the loaded engine.

    Usage:
        resource = SynthesisResource(engine, profile)
        resource.load()
        result = resource.generate(request, threading.Event())
    """

    def __init__(self, engine: SynthesisEngine, profile: DeviceProfile):
        self.engine = engine
        self.profile = profile
        self._load_lock = threading.Lock()
        self._busy = threading.Lock()
        self._loaded = False

    @property
    def loaded(self) -> bool:
        return self._loaded

    @property
    def busy(self) -> bool:
        return self._busy.locked()

    def load(self) -> None:
        """
        Load the model onto the selected device. Idempotent.

        Raises:
            EngineFailure: If the engine fails to load.
        """
        with self._load_lock:
            if self._loaded:
                return
            info(_LOG, "model_loading", engine=self.engine.name, model_id=self.engine.model_id,
                 device=self.profile.kind.value)
            t0 = time.perf_counter()
            try:
                self.engine.load(self.profile)
            except Exception as e:
                error(_LOG, "model_load_failed", engine=self.engine.name, error=str(e),
                      error_type=type(e).__name__)
                raise EngineFailure(
                    f"Failed to load {self.engine.name} model: {e}",
                    {"engine": self.engine.name, "error_type": type(e).__name__},
                ) from e
            self._loaded = True
            success(_LOG, "model_loaded", engine=self.engine.name, sample_rate=self.engine.sample_rate,
                    seconds=time.perf_counter() - t0)

    def generate(self, request: GenerationRequest, cancel_event: Optional[threading.Event] = None) -> AudioResult:
        """
        Run one generation.

        Raises:
            ModelNotReadyError: If load() has not completed.
            GenerationCancelled: If cancel_event was set before or during the run.
            EngineFailure: On backend errors, concurrent use, or bad output.
        """
        if not self._loaded:
            raise ModelNotReadyError()
        if not self._busy.acquire(blocking=False):
            raise EngineFailure("Synthesis resource is already in use", {"engine": self.engine.name})

        cancel_event = cancel_event or threading.Event()
        try:
            if cancel_event.is_set():
                raise GenerationCancelled()

            t0 = time.perf_counter()
            try:
                result = self.engine.generate(request, cancel_event)
            except ServiceError:
                raise
            except Exception as e:
                raise EngineFailure(
                    f"{self.engine.name} generation failed: {e}",
                    {"engine": self.engine.name, "error_type": type(e).__name__},
                ) from e

            _check_output(result, self.engine.name)
            result.timings_s.setdefault("generate", time.perf_counter() - t0)
            verbose(_LOG, "generated", frames=result.frames, sample_rate=result.sample_rate,
                    seconds=result.timings_s["generate"])
            return result
        finally:
            self._busy.release()


def _check_output(result: object, engine_name: str) -> None:
    if not isinstance(result, AudioResult):
        raise EngineFailure(f"{engine_name} returned {type(result).__name__}, expected AudioResult")
    if not isinstance(result.samples, np.ndarray) or result.samples.size == 0:
        raise EngineFailure(f"{engine_name} returned empty audio")
    if result.sample_rate <= 0:
        raise EngineFailure(f"{engine_name} returned invalid sample rate {result.sample_rate}")


# =============================================================================
# Engine Factory
# =============================================================================

def create_engine(settings: Settings) -> SynthesisEngine:
    """
    Create the configured engine.

    Uses lazy imports so heavy engine dependencies are only loaded when the
    engine is selected.

    Raises:
        ValueError: If the engine type is unknown.
    """
    config = settings.get_service_config().engine

    if config.type == "parler":
        from parler_serve.tts.engines.parler_engine import ParlerEngine
        return ParlerEngine(config)

    raise ValueError(f"Unknown engine type: {config.type}")
