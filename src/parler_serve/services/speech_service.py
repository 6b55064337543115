"""
SpeechService - the generation pipeline behind POST /api/tts.

Architecture:
    Form fields -> Validate -> Enqueue -> (wait for turn) -> Generate -> Encode -> Stream

Key Components:
    - SynthesisResource: the one loaded model (exclusive)
    - RequestScheduler: FIFO admission, timeout, cancellation
    - WavEncoder: PCM-16 WAV, chunked
    - ResourceSampler: process CPU/RAM for /api/debug

The service owns the startup order: the resource is loaded (off the event
loop) before the scheduler starts, so no request can be admitted against a
model that is not ready.

Encoding is the scheduler's finalize step: it runs on the generation thread
right after generate(), so the event loop never normalizes or packs audio
and an EncodingFailure is counted as a failed job.

Example:
    >>> service = SpeechService.build(config, engine, profile)
    >>> await service.start()
    >>> speech = await service.synthesize(text="Hi!", description="A warm male voice.")
    >>> wav = b"".join(speech.chunks)
"""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterator, Optional

from parler_serve.core.config import ServiceConfig
from parler_serve.core.device import DeviceProfile
from parler_serve.core.errors import ModelNotReadyError
from parler_serve.core.logging import get_logger, get_request_id, info, success, verbose, warn
from parler_serve.core.metrics import ServiceMetrics, metrics as default_metrics
from parler_serve.core.resources import ResourceSampler
from parler_serve.services.validators import random_seed, validate_generation_params
from parler_serve.tts.encoder import WavEncoder
from parler_serve.tts.engine import AudioResult, GenerationRequest, SynthesisEngine, SynthesisResource
from parler_serve.tts.scheduler import RequestScheduler, ScheduledJob
from parler_serve.utils.timeit import timeit

_LOG = get_logger("parler-serve.service")

DisconnectCheck = Callable[[], Awaitable[bool]]


@dataclass
class SpeechResult:
    """
    A finished generation, ready to stream.

    ``chunks`` is a one-shot iterator: RIFF header first, then sample data.
    """
    request: GenerationRequest
    audio: AudioResult
    chunks: Iterator[bytes]
    request_id: str
    total_seconds: float
    timings: Dict[str, float] = field(default_factory=dict)

    def headers(self) -> Dict[str, str]:
        """Response headers reporting the effective parameters."""
        headers = {
            "X-Request-Id": self.request_id,
            "X-Seed": str(self.request.seed),
            "X-Temperature": f"{self.request.temperature:g}",
            "X-Top-P": f"{self.request.top_p:g}",
            "X-Sample-Rate": str(self.audio.sample_rate),
        }
        if self.request.clamped:
            headers["X-Clamped"] = ",".join(self.request.clamped)
        return headers


class SpeechService:
    """
    Validates, schedules, generates and encodes.

    The single source of truth for the /api/tts pipeline and for the health
    and debug views.
    """

    def __init__(
        self,
        config: ServiceConfig,
        resource: SynthesisResource,
        scheduler: RequestScheduler,
        encoder: WavEncoder,
        sampler: Optional[ResourceSampler] = None,
        metrics: Optional[ServiceMetrics] = None,
        seed_source: Callable[[], int] = random_seed,
    ):
        self._config = config
        self._resource = resource
        self._scheduler = scheduler
        self._encoder = encoder
        self._scheduler.finalize = self._encode
        self._sampler = sampler or ResourceSampler(resource.profile)
        self._metrics = metrics or default_metrics
        self._seed_source = seed_source
        self._started_at = time.monotonic()
        self._text_preview_chars = config.logging.text_preview_chars

    @classmethod
    def build(
        cls,
        config: ServiceConfig,
        engine: SynthesisEngine,
        profile: DeviceProfile,
        metrics: Optional[ServiceMetrics] = None,
        seed_source: Callable[[], int] = random_seed,
    ) -> "SpeechService":
        """Wire resource, scheduler and encoder from configuration."""
        metrics = metrics or default_metrics
        resource = SynthesisResource(engine, profile)
        scheduler = RequestScheduler(
            resource,
            max_queue=config.scheduler.max_queue,
            job_timeout_s=config.scheduler.job_timeout_s,
            metrics=metrics,
        )
        return cls(
            config,
            resource,
            scheduler,
            WavEncoder.from_config(config.audio),
            metrics=metrics,
            seed_source=seed_source,
        )

    @property
    def resource(self) -> SynthesisResource:
        return self._resource

    @property
    def scheduler(self) -> RequestScheduler:
        return self._scheduler

    @property
    def profile(self) -> DeviceProfile:
        return self._resource.profile

    def is_ready(self) -> bool:
        return self._resource.loaded and self._scheduler.started

    async def start(self) -> None:
        """Load the model, then open the scheduler for admissions."""
        engine = self._resource.engine
        with timeit("load") as t:
            await asyncio.to_thread(self._resource.load)
        self._metrics.set_model_loaded(engine.name, self.profile.kind.value, True)
        await self._scheduler.start()
        success(_LOG, "service_ready", engine=engine.name, device=self.profile.kind.value, seconds=t.seconds)

    async def stop(self) -> None:
        await self._scheduler.stop()
        self._metrics.set_model_loaded(self._resource.engine.name, self.profile.kind.value, False)
        info(_LOG, "service_stopped")

    # =========================================================================
    # Public API: synthesize()
    # =========================================================================

    async def synthesize(
        self,
        text: Optional[str],
        description: Optional[str],
        temperature: Any = None,
        top_p: Any = None,
        seed: Any = None,
        is_disconnected: Optional[DisconnectCheck] = None,
    ) -> SpeechResult:
        """
        Run the full pipeline for one request.

        Args:
            text, description, temperature, top_p, seed: Raw form values.
            is_disconnected: Polled while waiting; when it returns True the
                job is cancelled.

        Raises:
            InvalidParameterError / TextTooLongError: Bad input.
            ModelNotReadyError: Service not started.
            QueueFullError: Admission queue at capacity.
            JobTimeoutError: Deadline exceeded.
            JobCancelledError: Client went away.
            EngineFailure / EncodingFailure: Server-side failure.
        """
        request = validate_generation_params(
            text,
            description,
            temperature=temperature,
            top_p=top_p,
            seed=seed,
            limits=self._config.generation,
            seed_source=self._seed_source,
        )

        preview = request.text[:self._text_preview_chars] if self._text_preview_chars > 0 else ""
        info(_LOG, "request", chars=len(request.text), text_preview=preview, seed=request.seed,
             temperature=request.temperature, top_p=request.top_p)

        if not self.is_ready():
            raise ModelNotReadyError()

        timings: Dict[str, float] = {}
        with timeit("request_total") as total_t:
            job = self._scheduler.enqueue(request)
            audio = await self._await_job(job, is_disconnected)
            chunks = job.output
            timings.update(audio.timings_s)
            if job.wait_s is not None:
                timings["queue_wait"] = job.wait_s

        success(_LOG, "done", job_id=job.id, audio_s=round(audio.duration_s, 2),
                seconds=round(total_t.seconds, 3))
        return SpeechResult(
            request=request,
            audio=audio,
            chunks=chunks,
            request_id=get_request_id(),
            total_seconds=total_t.seconds,
            timings=timings,
        )

    def _encode(self, audio: AudioResult) -> Iterator[bytes]:
        """Finalize step, called on the generation thread."""
        with timeit("encode") as t:
            chunks = self._encoder.encode(audio)
        audio.timings_s["encode"] = t.seconds
        verbose(_LOG, "stage", event="encode", seconds=round(t.seconds, 4))
        return chunks

    async def _await_job(self, job: ScheduledJob, is_disconnected: Optional[DisconnectCheck]) -> AudioResult:
        if is_disconnected is None:
            try:
                return await self._scheduler.wait(job)
            except asyncio.CancelledError:
                self._scheduler.cancel(job)
                raise

        waiter = asyncio.ensure_future(self._scheduler.wait(job))
        poll_s = self._config.server.disconnect_poll_s
        try:
            while True:
                done, _ = await asyncio.wait({waiter}, timeout=poll_s)
                if done:
                    return waiter.result()
                if await is_disconnected():
                    warn(_LOG, "client_disconnected", job_id=job.id, state=job.state.value)
                    self._scheduler.cancel(job)
                    return await waiter
        except asyncio.CancelledError:
            self._scheduler.cancel(job)
            waiter.cancel()
            raise

    def stream(self, result: SpeechResult) -> Iterator[bytes]:
        """Yield the WAV chunks, counting bytes for metrics."""
        sent = 0
        try:
            for chunk in result.chunks:
                sent += len(chunk)
                yield chunk
        finally:
            self._metrics.add_audio_bytes(sent)
            verbose(_LOG, "streamed", bytes=sent, request_id=result.request_id)

    # =========================================================================
    # Health / Debug
    # =========================================================================

    def get_health_info(self) -> Dict[str, Any]:
        engine = self._resource.engine
        loaded = self._resource.loaded
        return {
            "ok": True,
            "status": "ready" if self.is_ready() else "loading",
            "uptime_s": round(time.monotonic() - self._started_at, 3),
            "engine": engine.name,
            "model_id": engine.model_id,
            "loaded": loaded,
            "sample_rate": engine.sample_rate or None,
            "device": self.profile.to_dict(),
        }

    def get_debug_info(self) -> Dict[str, Any]:
        return {
            "ok": True,
            "scheduler": self._scheduler.stats().to_dict(),
            "resources": self._sampler.sample().to_dict(),
            "device": self.profile.to_dict(),
            "engine": self._resource.engine.name,
        }
