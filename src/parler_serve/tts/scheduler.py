"""
Request Scheduling for the Synthesis Resource.

The model can run one generation at a time, and a generation takes seconds
to minutes. The scheduler turns many concurrent HTTP requests into a strict
FIFO sequence of generate() calls with bounded waiting.

Architecture:
    - One asyncio worker task pulls jobs from a deque (FIFO).
    - generate() runs on a single-thread executor so the event loop stays
      responsive while the model works.
    - Every job state transition and every counter update happens under
      one threading.Lock, so stats() always sees a consistent snapshot.

Job lifecycle:
    QUEUED -> RUNNING -> COMPLETED | FAILED | TIMED_OUT | CANCELLED
    QUEUED -> TIMED_OUT | CANCELLED          (never started)

Finalize step:
    An optional finalize(result) callable runs right after generate() on the
    same executor thread, for post-processing such as WAV encoding. Its
    return value is stored on the job as ``output``, and an error it raises
    fails the job like a generation error would.

Backpressure Strategy:
    1. If fewer than max_queue jobs are waiting: admit
    2. Otherwise: reject immediately with QueueFullError (HTTP 503)

    The running job does not occupy a queue slot. A job admitted to an idle
    scheduler with an empty queue is about to run, so it does not count
    against max_queue either. Every other job does, including jobs admitted
    back to back before the worker has picked up the first one, so at most
    max_queue jobs are ever waiting.

Timeouts:
    Each job has a deadline of enqueue time + job_timeout_s covering both
    waiting and running. A job that expires while queued is removed and never
    runs. A job that expires while running gets its cancel event set and its
    waiter is released at once with JobTimeoutError; the resource slot is
    freed only when the underlying generate() call actually returns.

Usage:
    scheduler = RequestScheduler(resource, max_queue=8, job_timeout_s=180)
    await scheduler.start()

    result = await scheduler.submit(request)      # enqueue + wait

    job = scheduler.enqueue(request)              # or step by step
    result = await scheduler.wait(job)

    stats = scheduler.stats()
    print(f"Waiting: {stats.queue_depth}/{stats.capacity}")

    await scheduler.stop()
"""
from __future__ import annotations

import asyncio
import contextvars
import itertools
import threading
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Callable, Deque, Dict, Optional

from parler_serve.core.errors import (
    EngineFailure,
    GenerationCancelled,
    JobCancelledError,
    JobTimeoutError,
    ModelNotReadyError,
    QueueFullError,
    ServiceError,
)
from parler_serve.core.logging import (
    debug,
    error,
    get_logger,
    get_request_id,
    info,
    set_request_id,
    warn,
)
from parler_serve.core.metrics import ServiceMetrics, metrics as default_metrics
from parler_serve.tts.engine import AudioResult, GenerationRequest, SynthesisResource

_LOG = get_logger("parler-serve.scheduler")


class JobState(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self not in (JobState.QUEUED, JobState.RUNNING)


@dataclass(eq=False)
class ScheduledJob:
    """
    One admitted generation request.

    ``future`` only signals that the job reached a terminal state; the
    outcome itself is stored on the job (``result`` or ``error``).
    """
    id: int
    request: GenerationRequest
    enqueued_at: float
    deadline: float
    future: asyncio.Future
    cancel_event: threading.Event = field(default_factory=threading.Event)
    request_id: str = "-"
    state: JobState = JobState.QUEUED
    result: Optional[AudioResult] = None
    output: Any = None
    error: Optional[ServiceError] = None
    started_at: Optional[float] = None
    finished_at: Optional[float] = None

    @property
    def done(self) -> bool:
        return self.state.terminal

    @property
    def wait_s(self) -> Optional[float]:
        if self.started_at is None:
            return None
        return self.started_at - self.enqueued_at


@dataclass
class SchedulerStats:
    """Point-in-time scheduler snapshot."""
    queue_depth: int
    capacity: int
    running: bool
    running_job_id: Optional[int]
    completed: int
    failed: int
    timed_out: int
    cancelled: int
    rejected: int
    job_timeout_s: float

    @property
    def state(self) -> str:
        return "running" if self.running else "idle"

    def to_dict(self) -> Dict[str, Any]:
        result = asdict(self)
        result["state"] = self.state
        return result


class RequestScheduler:
    """
    Serializes access to the SynthesisResource.

    All public methods except stats() must be called from the event loop
    that ran start().
    """

    def __init__(
        self,
        resource: SynthesisResource,
        max_queue: int = 8,
        job_timeout_s: float = 180.0,
        metrics: Optional[ServiceMetrics] = None,
        finalize: Optional[Callable[[AudioResult], Any]] = None,
    ):
        if max_queue < 0:
            raise ValueError(f"max_queue must be non-negative, got {max_queue}")
        if job_timeout_s <= 0:
            raise ValueError(f"job_timeout_s must be positive, got {job_timeout_s}")

        self.resource = resource
        self.max_queue = max_queue
        self.job_timeout_s = job_timeout_s
        self._metrics = metrics or default_metrics
        self.finalize = finalize

        self._lock = threading.Lock()
        self._queue: Deque[ScheduledJob] = deque()
        self._running: Optional[ScheduledJob] = None
        self._ids = itertools.count(1)

        self._completed = 0
        self._failed = 0
        self._timed_out = 0
        self._cancelled = 0
        self._rejected = 0

        self._wakeup: Optional[asyncio.Event] = None
        self._worker: Optional[asyncio.Task] = None
        self._executor: Optional[ThreadPoolExecutor] = None

    @property
    def started(self) -> bool:
        return self._worker is not None

    # ─────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────────

    async def start(self) -> None:
        if self._worker is not None:
            return
        self._wakeup = asyncio.Event()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="parler-generate")
        self._worker = asyncio.create_task(self._run(), name="parler-scheduler")
        info(_LOG, "scheduler_started", capacity=self.max_queue, job_timeout_s=self.job_timeout_s)

    async def stop(self) -> None:
        """Cancel every queued job, signal the running one, and stop the worker."""
        if self._worker is None:
            return

        with self._lock:
            queued = list(self._queue)
            self._queue.clear()
            for job in queued:
                self._finish_locked(job, JobState.CANCELLED, error=JobCancelledError("Scheduler stopped"))
            running = self._running
        if running is not None:
            running.cancel_event.set()

        worker, self._worker = self._worker, None
        worker.cancel()
        try:
            await worker
        except asyncio.CancelledError:
            pass

        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None
        self._metrics.set_queue_depth(0)
        info(_LOG, "scheduler_stopped", dropped=len(queued))

    # ─────────────────────────────────────────────────────────────────────
    # Admission, waiting, cancellation
    # ─────────────────────────────────────────────────────────────────────

    def enqueue(self, request: GenerationRequest) -> ScheduledJob:
        """
        Admit a request. Never blocks.

        Raises:
            ModelNotReadyError: If the scheduler is not running.
            QueueFullError: If max_queue jobs are already waiting.
        """
        if self._worker is None:
            raise ModelNotReadyError("Scheduler is not running")

        loop = asyncio.get_running_loop()
        now = loop.time()
        with self._lock:
            waiting = len(self._queue)
            # only a job that will start right away skips the queue limit
            limit = self.max_queue + (1 if self._running is None and not self._queue else 0)
            if waiting >= limit:
                self._rejected += 1
                self._metrics.record_job("rejected")
                raise QueueFullError(
                    f"Queue full ({waiting} waiting)",
                    {"queue_depth": waiting, "capacity": self.max_queue},
                )
            job = ScheduledJob(
                id=next(self._ids),
                request=request,
                enqueued_at=now,
                deadline=now + self.job_timeout_s,
                future=loop.create_future(),
                request_id=get_request_id(),
            )
            self._queue.append(job)
            depth = len(self._queue)

        self._metrics.set_queue_depth(depth)
        self._wakeup.set()
        info(_LOG, "job_enqueued", job_id=job.id, queue_depth=depth, capacity=self.max_queue)
        return job

    async def wait(self, job: ScheduledJob) -> AudioResult:
        """
        Wait for a job's outcome, enforcing its deadline.

        Raises:
            JobTimeoutError: If the deadline passed first.
            JobCancelledError: If the job was cancelled.
            EngineFailure: If generation failed.
        """
        if not job.future.done():
            remaining = job.deadline - asyncio.get_running_loop().time()
            try:
                await asyncio.wait_for(asyncio.shield(job.future), timeout=max(remaining, 0.0))
            except asyncio.TimeoutError:
                self._expire(job)
        return self._outcome(job)

    async def submit(self, request: GenerationRequest) -> AudioResult:
        """enqueue() + wait(). Cancelling the calling task cancels the job."""
        job = self.enqueue(request)
        try:
            return await self.wait(job)
        except asyncio.CancelledError:
            self.cancel(job)
            raise

    def cancel(self, job: ScheduledJob) -> bool:
        """
        Cancel a job.

        A queued job is dropped and will never run. A running job gets its
        cancel event set; its waiter is released immediately.

        Returns:
            False if the job had already finished.
        """
        with self._lock:
            if job.done:
                return False
            was_running = job.state is JobState.RUNNING
            if not was_running:
                self._remove_locked(job)
            else:
                job.cancel_event.set()
            self._finish_locked(job, JobState.CANCELLED, error=JobCancelledError())
        info(_LOG, "job_cancelled", job_id=job.id, was_running=was_running)
        return True

    def stats(self) -> SchedulerStats:
        """Consistent snapshot. Safe from any thread."""
        with self._lock:
            running = self._running
            return SchedulerStats(
                queue_depth=len(self._queue),
                capacity=self.max_queue,
                running=running is not None,
                running_job_id=running.id if running is not None else None,
                completed=self._completed,
                failed=self._failed,
                timed_out=self._timed_out,
                cancelled=self._cancelled,
                rejected=self._rejected,
                job_timeout_s=self.job_timeout_s,
            )

    # ─────────────────────────────────────────────────────────────────────
    # Worker
    # ─────────────────────────────────────────────────────────────────────

    async def _run(self) -> None:
        while True:
            job = self._next_job()
            if job is None:
                self._wakeup.clear()
                await self._wakeup.wait()
                continue
            await self._execute(job)

    def _next_job(self) -> Optional[ScheduledJob]:
        """Pop the next live job, dropping any whose deadline already passed."""
        now = asyncio.get_running_loop().time()
        with self._lock:
            while self._queue:
                job = self._queue.popleft()
                if now >= job.deadline:
                    self._finish_locked(job, JobState.TIMED_OUT, error=self._timeout_error(job))
                    warn(_LOG, "job_expired_in_queue", job_id=job.id)
                    continue
                job.state = JobState.RUNNING
                job.started_at = now
                self._running = job
                depth = len(self._queue)
                break
            else:
                return None

        self._metrics.set_queue_depth(depth)
        self._metrics.set_running(True)
        debug(_LOG, "job_started", job_id=job.id, queue_depth=depth, wait_s=round(job.wait_s or 0.0, 3))
        return job

    async def _execute(self, job: ScheduledJob) -> None:
        loop = asyncio.get_running_loop()
        set_request_id(job.request_id)
        ctx = contextvars.copy_context()
        call: Optional[asyncio.Future] = None

        try:
            call = loop.run_in_executor(self._executor, ctx.run, self._work, job)
            # enforce the deadline even when nobody is waiting on the job
            done, _ = await asyncio.wait({call}, timeout=max(job.deadline - loop.time(), 0.0))
            if not done:
                self._expire(job)
            result = await call
        except GenerationCancelled:
            self._settle(job, JobState.CANCELLED, error=JobCancelledError("Generation aborted"))
        except ServiceError as e:
            error(_LOG, "job_failed", job_id=job.id, error=e.code, message=e.message)
            self._settle(job, JobState.FAILED, error=e)
        except asyncio.CancelledError:
            # scheduler shutdown while the thread is still working
            job.cancel_event.set()
            if call is not None:
                call.cancel()
            self._settle(job, JobState.CANCELLED, error=JobCancelledError("Scheduler stopped"))
            raise
        except Exception as e:
            error(_LOG, "job_failed", job_id=job.id, error=type(e).__name__, message=str(e), exc_info=True)
            self._settle(job, JobState.FAILED, error=EngineFailure(f"Unexpected error: {e}"))
        else:
            self._settle(job, JobState.COMPLETED, result=result)
        finally:
            with self._lock:
                self._running = None
            self._metrics.set_running(False)
            set_request_id("-")

    def _work(self, job: ScheduledJob) -> AudioResult:
        """Executor side: generate, then finalize unless the job was abandoned."""
        result = self.resource.generate(job.request, job.cancel_event)
        if self.finalize is not None and not job.cancel_event.is_set():
            job.output = self.finalize(result)
        return result

    def _settle(
        self,
        job: ScheduledJob,
        state: JobState,
        result: Optional[AudioResult] = None,
        error: Optional[ServiceError] = None,
    ) -> None:
        with self._lock:
            settled = self._finish_locked(job, state, result=result, error=error)
        if settled:
            info(_LOG, "job_done", job_id=job.id, state=state.value,
                 seconds=round((job.finished_at or 0.0) - (job.started_at or 0.0), 3))
        else:
            debug(_LOG, "job_returned_after_release", job_id=job.id, state=job.state.value,
                  outcome=state.value)

    # ─────────────────────────────────────────────────────────────────────
    # Internals (caller holds self._lock where noted)
    # ─────────────────────────────────────────────────────────────────────

    def _expire(self, job: ScheduledJob) -> None:
        with self._lock:
            if job.done:
                return
            was_running = job.state is JobState.RUNNING
            if was_running:
                job.cancel_event.set()
            else:
                self._remove_locked(job)
            self._finish_locked(job, JobState.TIMED_OUT, error=self._timeout_error(job))
        warn(_LOG, "job_timed_out", job_id=job.id, was_running=was_running, timeout_s=self.job_timeout_s)

    def _timeout_error(self, job: ScheduledJob) -> JobTimeoutError:
        return JobTimeoutError(
            f"Job {job.id} exceeded {self.job_timeout_s:g}s",
            {"job_id": job.id, "timeout_s": self.job_timeout_s},
        )

    def _remove_locked(self, job: ScheduledJob) -> None:
        try:
            self._queue.remove(job)
        except ValueError:
            pass
        self._metrics.set_queue_depth(len(self._queue))

    def _finish_locked(
        self,
        job: ScheduledJob,
        state: JobState,
        result: Optional[AudioResult] = None,
        error: Optional[ServiceError] = None,
    ) -> bool:
        if job.done:
            return False

        now = job.future.get_loop().time()
        job.state = state
        job.result = result
        job.error = error
        job.finished_at = now

        if state is JobState.COMPLETED:
            self._completed += 1
        elif state is JobState.FAILED:
            self._failed += 1
        elif state is JobState.TIMED_OUT:
            self._timed_out += 1
        elif state is JobState.CANCELLED:
            self._cancelled += 1

        generate_s = now - job.started_at if (state is JobState.COMPLETED and job.started_at is not None) else None
        self._metrics.record_job(state.value, wait_s=job.wait_s, generate_s=generate_s)

        if not job.future.done():
            job.future.set_result(None)
        return True

    @staticmethod
    def _outcome(job: ScheduledJob) -> AudioResult:
        if job.state is JobState.COMPLETED and job.result is not None:
            return job.result
        if job.error is not None:
            raise job.error
        raise EngineFailure(f"Job {job.id} finished as {job.state.value} without a result")
