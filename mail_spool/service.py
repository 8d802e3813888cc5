"""Service object wiring the spool store to its background workers.

:class:`MailSpoolService` owns one :class:`SpoolStore` and runs the
:class:`DeliveryWorker` and :class:`RetentionSweeper` on the current event
loop. The HTTP API and the CLI only talk to this object.
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Mapping, Optional

from .config_loader import retention_policy
from .logger import get_logger
from .models import EmailRequest, Job
from .prometheus import SpoolMetrics
from .rate_limit import IpRateLimiter
from .retention import RetentionPolicy, RetentionSweeper, SweepReport
from .spool import EnqueueResult, JobHandle, JobState, SpoolStore
from .transport import MailTransport, SmtpTransport
from .worker import DEFAULT_MAX_ATTEMPTS, DEFAULT_MAX_PARALLEL, DeliveryWorker


class MailSpoolService:
    """Admission front end plus the delivery and retention loops."""

    def __init__(
        self,
        store: SpoolStore,
        transport: MailTransport,
        *,
        max_parallel: int = DEFAULT_MAX_PARALLEL,
        poll_interval: float = 1.0,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        policy: RetentionPolicy | None = None,
        rate_limiter: IpRateLimiter | None = None,
        metrics: SpoolMetrics | None = None,
        logger=None,
    ):
        self.logger = logger or get_logger("MailSpool")
        self.store = store
        self.transport = transport
        self.metrics = metrics or SpoolMetrics()
        self.rate_limiter = rate_limiter or IpRateLimiter()
        self.worker = DeliveryWorker(
            store,
            transport,
            max_parallel=max_parallel,
            poll_interval=poll_interval,
            max_attempts=max_attempts,
            metrics=self.metrics,
        )
        self.sweeper = RetentionSweeper(
            store,
            policy,
            metrics=self.metrics,
            after_sweep=self.rate_limiter.forget_idle,
        )

    @classmethod
    def from_settings(cls, settings: Mapping[str, Any]) -> "MailSpoolService":
        """Build a service from the dictionary returned by ``load_settings``."""
        store = SpoolStore(
            settings["spool_root"],
            idempotency_hours=int(settings.get("idempotency_hours") or 24),
            max_body_chars=int(settings.get("max_body_chars") or 200_000),
            max_subject_chars=int(settings.get("max_subject_chars") or 300),
        )
        transport = SmtpTransport(
            host=settings.get("smtp_host"),
            port=int(settings.get("smtp_port") or 25),
            user=settings.get("smtp_user"),
            password=settings.get("smtp_password"),
            default_from=settings.get("smtp_from"),
            start_tls=bool(settings.get("smtp_ssl")),
            timeout=float(settings.get("smtp_timeout") or 20),
        )
        limiter = IpRateLimiter(
            enabled=bool(settings.get("rate_limit_enabled")),
            requests_per_minute=int(settings.get("rate_limit_per_minute") or 0),
        )
        return cls(
            store,
            transport,
            max_parallel=int(settings.get("max_parallel_sends") or DEFAULT_MAX_PARALLEL),
            poll_interval=int(settings.get("poll_interval_ms") or 1000) / 1000.0,
            max_attempts=int(settings.get("max_attempts") or DEFAULT_MAX_ATTEMPTS),
            policy=retention_policy(settings),
            rate_limiter=limiter,
        )

    # ----------------------------------------------------------------- lifecycle
    async def start(self) -> None:
        """Start the delivery and retention loops."""
        self.logger.info("Mail spool starting root=%s", self.store.root)
        self.worker.start()
        self.sweeper.start()

    async def stop(self) -> None:
        """Stop both loops; deliveries already talking to the relay finish first."""
        await asyncio.gather(self.worker.stop(), self.sweeper.stop(), return_exceptions=True)
        self.logger.info("Mail spool stopped")

    # ----------------------------------------------------------------- admission
    def validation_error(self, request: EmailRequest) -> Optional[str]:
        return request.normalized().validation_error(
            max_subject_chars=self.store.max_subject_chars,
            max_body_chars=self.store.max_body_chars,
        )

    def allow(self, source_ip: Optional[str]) -> bool:
        return self.rate_limiter.allow(source_ip or "unknown")

    async def enqueue(self, request: EmailRequest, source_ip: Optional[str] = None) -> EnqueueResult:
        """Durably queue ``request`` and wake the worker.

        Callers validate first; the store does not reject malformed content.
        """
        result = await asyncio.to_thread(self.store.enqueue, request, source_ip)
        if result.duplicate:
            self.metrics.inc_duplicate()
        else:
            self.metrics.inc_enqueued()
            self.worker.wake()
        return result

    async def resubmit(self, name: str, source_ip: Optional[str] = None) -> EnqueueResult:
        result = await asyncio.to_thread(self.store.resubmit_failed, name, source_ip)
        if not result.duplicate:
            self.metrics.inc_enqueued()
            self.worker.wake()
        self.logger.info("Resubmitted failed job %s status=%s", name, result.status)
        return result

    # ------------------------------------------------------------------ queries
    def stats(self) -> Dict[str, Any]:
        return self.store.stats().as_dict()

    def list_jobs(self, state: JobState) -> List[JobHandle]:
        return self.store.list_jobs(state)

    def load_job(self, state: JobState, name: str) -> Job:
        return self.store.load_job(self.store.get_job(state, name))

    def run_sweep(self) -> SweepReport:
        """Run one retention pass right away, whatever the schedule says."""
        return self.sweeper.run_once()
