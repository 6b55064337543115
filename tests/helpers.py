"""Fake engines, probes and small async helpers shared by the tests."""
from __future__ import annotations

import asyncio
import threading
import time
from typing import Iterable, List, Optional

import numpy as np

from parler_serve.core.config import EngineConfig
from parler_serve.core.device import DeviceKind, DeviceProbe, DeviceProfile
from parler_serve.core.errors import GenerationCancelled
from parler_serve.tts.engine import AudioResult, GenerationRequest, SynthesisEngine, SynthesisResource


class FakeEngine(SynthesisEngine):
    """
    Deterministic engine: noise seeded by the request seed.

    Texts containing ``fail_on`` raise, ``corrupt_on`` texts come back as NaN
    samples, and ``block_on`` texts wait until ``gate`` is set. With
    honor_cancel=False a blocked call ignores its cancel event, like a backend
    that cannot be interrupted.
    """

    name = "fake"

    def __init__(
        self,
        sample_rate: int = 16000,
        frames: int = 1600,
        delay_s: float = 0.0,
        gate: Optional[threading.Event] = None,
        block_on: str = "block",
        fail_on: str = "fail",
        corrupt_on: str = "corrupt",
        honor_cancel: bool = True,
    ):
        super().__init__(EngineConfig(type="fake", model_id="fake/noise"))
        self._sr = sample_rate
        self.frames = frames
        self.delay_s = delay_s
        self.gate = gate or threading.Event()
        self.block_on = block_on
        self.fail_on = fail_on
        self.corrupt_on = corrupt_on
        self.honor_cancel = honor_cancel

        self.calls: List[str] = []
        self.load_count = 0
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def load(self, profile: DeviceProfile) -> None:
        self.load_count += 1
        self.sample_rate = self._sr
        self._loaded = True

    def generate(self, request: GenerationRequest, cancel_event: threading.Event) -> AudioResult:
        with self._lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
            self.calls.append(request.text)
        try:
            if self.fail_on and self.fail_on in request.text:
                raise RuntimeError("backend exploded")

            if self.block_on and self.block_on in request.text:
                while not self.gate.is_set():
                    if self.honor_cancel and cancel_event.is_set():
                        raise GenerationCancelled()
                    time.sleep(0.005)
            elif self.delay_s:
                time.sleep(self.delay_s)

            rng = np.random.default_rng(request.seed)
            samples = (0.2 * rng.standard_normal(self.frames)).astype(np.float32)
            if self.corrupt_on and self.corrupt_on in request.text:
                samples[::2] = np.nan
            return AudioResult(samples=samples, sample_rate=self._sr, channels=1)
        finally:
            with self._lock:
                self.active -= 1


class FakeProbe(DeviceProbe):
    """Capability probe answering from a fixed set."""

    def __init__(self, available: Iterable[DeviceKind] = (), fail_init: bool = False):
        self._available = set(available) | {DeviceKind.CPU_GENERIC}
        self.fail_init = fail_init
        self.initialized: List[DeviceProfile] = []

    def available(self, kind: DeviceKind) -> bool:
        return kind in self._available

    def initialize(self, profile: DeviceProfile) -> None:
        if self.fail_init:
            raise RuntimeError("driver not responding")
        self.initialized.append(profile)


def make_request(text: str = "hello", seed: int = 1, **kwargs) -> GenerationRequest:
    return GenerationRequest(text=text, description="a calm voice", seed=seed, **kwargs)


def make_resource(engine: Optional[SynthesisEngine] = None) -> SynthesisResource:
    resource = SynthesisResource(engine or FakeEngine(), DeviceProfile(kind=DeviceKind.CPU_GENERIC))
    resource.load()
    return resource


async def wait_until(predicate, timeout: float = 5.0, interval: float = 0.01) -> None:
    """Poll predicate() on the event loop until it is true."""
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)


def wait_until_sync(predicate, timeout: float = 5.0, interval: float = 0.01) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        time.sleep(interval)
