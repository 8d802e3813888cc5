"""Delivery worker draining the ``queued`` directory.

Each poll cycle lists the whole queue and treats it as one batch: every job
takes a slot of a fixed-size semaphore for its entire attempt loop, and the
next listing happens only after the batch has finished. Attempt counters live
in memory, so a restart gives every queued job a fresh retry budget.
"""

from __future__ import annotations

import asyncio
from typing import Dict, List, Optional

from .errors import MalformedJobError, SpoolFilesystemError
from .logger import get_logger
from .prometheus import SpoolMetrics
from .spool import JobHandle, JobState, SpoolStore, resolve_request_id
from .transport import MailTransport, classify_error

DEFAULT_POLL_INTERVAL = 1.0
MIN_POLL_INTERVAL = 0.3
DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_MAX_PARALLEL = 4
DEFAULT_BACKOFF_BASE = 2.0
DEFAULT_BACKOFF_CAP = 60.0


def retry_delay(
    attempt: int,
    base: float = DEFAULT_BACKOFF_BASE,
    cap: float = DEFAULT_BACKOFF_CAP,
) -> float:
    """Seconds to wait after failed attempt number ``attempt`` (1-based)."""
    return min(cap, (2 ** attempt) * base)


class DeliveryWorker:
    """Poll the spool, deliver jobs concurrently and record their outcome."""

    def __init__(
        self,
        store: SpoolStore,
        transport: MailTransport,
        *,
        max_parallel: int = DEFAULT_MAX_PARALLEL,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        backoff_base: float = DEFAULT_BACKOFF_BASE,
        backoff_cap: float = DEFAULT_BACKOFF_CAP,
        metrics: SpoolMetrics | None = None,
        logger=None,
    ):
        self.store = store
        self.transport = transport
        self.max_parallel = max(1, int(max_parallel))
        self.poll_interval = max(MIN_POLL_INTERVAL, float(poll_interval))
        self.max_attempts = max(1, int(max_attempts))
        self.backoff_base = max(0.0, float(backoff_base))
        self.backoff_cap = max(0.0, float(backoff_cap))
        self.metrics = metrics or SpoolMetrics()
        self.logger = logger or get_logger("DeliveryWorker")

        self._slots = asyncio.Semaphore(self.max_parallel)
        self._stop = asyncio.Event()
        self._wake_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._stalled = False

    # ----------------------------------------------------------------- lifecycle
    def start(self) -> None:
        """Start the polling loop as a background task."""
        if self._task is not None and not self._task.done():
            return
        self._stop.clear()
        self._task = asyncio.create_task(self._run_loop(), name="spool-delivery-loop")

    async def stop(self) -> None:
        """Stop polling and wait for in-flight deliveries to settle.

        Idle waits, backoff sleeps and slot waits end at once; a transport
        call already running finishes and still moves its job.
        """
        self._stop.set()
        self._wake_event.set()
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None

    def wake(self) -> None:
        """Cut the current idle wait short so newly queued jobs are picked up."""
        self._wake_event.set()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    # ---------------------------------------------------------------- main loop
    async def _run_loop(self) -> None:
        self.logger.info(
            "DeliveryWorker started poll=%.2fs max_attempts=%d max_parallel=%d",
            self.poll_interval,
            self.max_attempts,
            self.max_parallel,
        )
        while not self._stop.is_set():
            try:
                processed = await self.run_cycle()
            except Exception as exc:
                self.logger.exception("Worker loop error: %s", exc)
                processed = 0
            # Jobs left queued by a filesystem error wait one poll before relisting.
            if not processed or self._stalled:
                await self._wait_for_wakeup(self.poll_interval)
        self.logger.info("DeliveryWorker stopping")

    async def run_cycle(self) -> int:
        """List the queue once and process the whole listing as one batch.

        Returns the number of jobs dispatched. Listing failures propagate to
        the caller. After the batch, ``_stalled`` tells whether any job was
        left in ``queued`` because it could not be read or moved.
        """
        self._stalled = False
        jobs = await asyncio.to_thread(self.store.list_queued)
        self.metrics.set_queued(len(jobs))
        if not jobs:
            return 0

        self.logger.debug("Dispatching batch of %d queued jobs", len(jobs))
        tasks: List[asyncio.Task] = []
        for job in jobs:
            if not await self._acquire_slot():
                break
            tasks.append(asyncio.create_task(self._run_in_slot(job), name=f"deliver-{job.name}"))

        results = await asyncio.gather(*tasks, return_exceptions=True)
        for job, result in zip(jobs, results):
            if isinstance(result, BaseException):
                self.logger.error("Unhandled error while processing %s: %r", job.name, result)
                self._stalled = True
            elif result is None:
                self._stalled = True

        stats = await asyncio.to_thread(self.store.stats)
        if stats.queued >= 0:
            self.metrics.set_queued(stats.queued)
        return len(tasks)

    async def _run_in_slot(self, job: JobHandle) -> Optional[JobState]:
        try:
            return await self.process_job(job)
        finally:
            self._slots.release()

    async def _acquire_slot(self) -> bool:
        """Wait for a free slot; return ``False`` if the worker is stopping."""
        if self._stop.is_set():
            return False
        acquire = asyncio.ensure_future(self._slots.acquire())
        stopping = asyncio.ensure_future(self._stop.wait())
        done, pending = await asyncio.wait({acquire, stopping}, return_when=asyncio.FIRST_COMPLETED)
        for fut in pending:
            fut.cancel()
        if acquire in done:
            if self._stop.is_set():
                self._slots.release()
                return False
            return True
        return False

    # ------------------------------------------------------------------ per job
    async def process_job(self, job: JobHandle) -> Optional[JobState]:
        """Drive one job to its next state.

        Returns the state the job ended in, ``JobState.QUEUED`` when the
        worker stopped during a backoff, or ``None`` when the job could not
        be read or moved.
        """
        try:
            payload = await asyncio.to_thread(self.store.load_job, job)
        except MalformedJobError as exc:
            self.logger.warning("%s -> failed", exc)
            return await self._finish(job, JobState.FAILED, "malformed")
        except SpoolFilesystemError as exc:
            self.logger.warning("Skipping %s: %s", job.name, exc)
            return None

        request_id = resolve_request_id(payload)
        for attempt in range(1, self.max_attempts + 1):
            try:
                await self.transport.deliver(payload)
            except Exception as exc:
                error = classify_error(exc)
                if error.permanent:
                    self.logger.warning(
                        "Permanent failure request_id=%s job=%s: %s -> failed",
                        request_id,
                        job.name,
                        error.detail,
                    )
                    return await self._finish(job, JobState.FAILED, "permanent")

                self.logger.warning(
                    "Send failed attempt=%d/%d request_id=%s job=%s: %s",
                    attempt,
                    self.max_attempts,
                    request_id,
                    job.name,
                    error.detail,
                )
                if attempt >= self.max_attempts:
                    return await self._finish(job, JobState.FAILED, "exhausted")

                self.metrics.inc_retry()
                delay = retry_delay(attempt, self.backoff_base, self.backoff_cap)
                if not await self._backoff(delay):
                    self.logger.info("Stopping during backoff; %s stays queued", job.name)
                    return JobState.QUEUED
                continue

            return await self._complete(job, request_id)
        return None

    async def _complete(self, job: JobHandle, request_id: str) -> Optional[JobState]:
        # The marker must exist before the job shows up in sent.
        try:
            await asyncio.to_thread(self.store.mark_delivered, request_id)
        except OSError as exc:
            self.logger.error(
                "Delivered %s but could not write its idempotency marker, job stays queued: %s",
                job.name,
                exc,
            )
            return None
        return await self._finish(job, JobState.SENT, "sent")

    async def _finish(self, job: JobHandle, target: JobState, reason: str) -> Optional[JobState]:
        try:
            if target is JobState.SENT:
                await asyncio.to_thread(self.store.move_to_sent, job)
            else:
                await asyncio.to_thread(self.store.move_to_failed, job)
        except SpoolFilesystemError as exc:
            self.logger.error("State transition failed for %s: %s", job.name, exc)
            return None
        if target is JobState.SENT:
            self.metrics.inc_sent()
            self.logger.info("Job %s sent", job.name)
        else:
            self.metrics.inc_failed(reason)
            self.logger.info("Job %s failed (%s)", job.name, reason)
        return target

    # -------------------------------------------------------------------- waits
    async def _backoff(self, delay: float) -> bool:
        """Sleep ``delay`` seconds; return ``False`` if the worker stopped meanwhile."""
        if self._stop.is_set():
            return False
        try:
            async with asyncio.timeout(max(0.0, delay)):
                await self._stop.wait()
        except TimeoutError:
            return True
        return False

    async def _wait_for_wakeup(self, timeout: float) -> None:
        """Pause the loop while allowing wake-ups from :meth:`wake` and :meth:`stop`."""
        if self._stop.is_set():
            return
        try:
            async with asyncio.timeout(max(0.0, timeout)):
                await self._wake_event.wait()
        except TimeoutError:
            return
        self._wake_event.clear()

    def snapshot(self) -> Dict[str, object]:
        return {
            "running": self.running,
            "max_parallel": self.max_parallel,
            "poll_interval": self.poll_interval,
            "max_attempts": self.max_attempts,
        }
