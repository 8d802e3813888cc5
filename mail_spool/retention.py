"""Retention sweeper bounding the size of the spool root.

One sweep removes ``sent`` and ``failed`` jobs past their age, whole
idempotency day buckets past the idempotency window, old log files, and,
when ``queued_max_age_days`` is set, demotes stale queued jobs to ``failed``.
Every file is handled on its own: a failure is counted and skipped.
"""

from __future__ import annotations

import asyncio
import shutil
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Dict, Optional

from .errors import SpoolFilesystemError
from .logger import get_logger
from .prometheus import SpoolMetrics
from .spool import JOB_SUFFIX, SpoolStore, parse_bucket_date

MIN_RUN_EVERY_MINUTES = 5


@dataclass
class RetentionPolicy:
    """Age thresholds, in days, for each category of durable state."""

    enabled: bool = True
    run_every_minutes: int = 60
    logs_days: int = 14
    logs_directory: Optional[str] = None
    sent_days: int = 14
    failed_days: int = 30
    idem_days: int = 7
    queued_max_age_days: int = 0  # 0 disables queued demotion

    @property
    def interval_seconds(self) -> float:
        return max(MIN_RUN_EVERY_MINUTES, int(self.run_every_minutes)) * 60.0


@dataclass
class SweepReport:
    deleted: Dict[str, int] = field(default_factory=lambda: {"sent": 0, "failed": 0, "idem": 0, "logs": 0})
    expired: int = 0
    skipped: int = 0

    @property
    def total(self) -> int:
        return sum(self.deleted.values()) + self.expired


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _mtime(path: Path) -> datetime:
    return datetime.fromtimestamp(path.stat().st_mtime, timezone.utc)


class RetentionSweeper:
    """Periodic garbage collector for terminal spool state."""

    def __init__(
        self,
        store: SpoolStore,
        policy: RetentionPolicy | None = None,
        *,
        metrics: SpoolMetrics | None = None,
        after_sweep: Optional[Callable[[], object]] = None,
        logger=None,
        clock: Callable[[], datetime] = _utc_now,
    ):
        self.store = store
        self.policy = policy or RetentionPolicy()
        self.metrics = metrics
        self.after_sweep = after_sweep
        self.logger = logger or get_logger("RetentionSweeper")
        self._clock = clock
        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    # ----------------------------------------------------------------- lifecycle
    def start(self) -> None:
        if not self.policy.enabled:
            self.logger.info("Retention disabled.")
            return
        if self._task is not None and not self._task.done():
            return
        self._stop.clear()
        self._task = asyncio.create_task(self._run_loop(), name="spool-retention-loop")

    async def stop(self) -> None:
        self._stop.set()
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None

    async def _run_loop(self) -> None:
        interval = self.policy.interval_seconds
        self.logger.info("RetentionSweeper started interval_min=%d", int(interval // 60))
        # Once right away, then on the interval.
        while not self._stop.is_set():
            try:
                await asyncio.to_thread(self.run_once)
            except Exception as exc:
                self.logger.warning("Retention cleanup failed: %s", exc, exc_info=True)
            try:
                async with asyncio.timeout(interval):
                    await self._stop.wait()
            except TimeoutError:
                continue

    # --------------------------------------------------------------------- sweep
    def run_once(self) -> SweepReport:
        """Run one full sweep and return what it did."""
        now = self._clock()
        policy = self.policy
        report = SweepReport()

        if policy.logs_directory:
            log_dir = Path(policy.logs_directory).expanduser()
            cutoff = now - timedelta(days=max(1, policy.logs_days))
            report.deleted["logs"] = self._delete_older(log_dir, "*.log", cutoff, "logs", report)

        sent_cutoff = now - timedelta(days=max(1, policy.sent_days))
        failed_cutoff = now - timedelta(days=max(1, policy.failed_days))
        report.deleted["sent"] = self._delete_older(self.store.sent_dir, f"*{JOB_SUFFIX}", sent_cutoff, "sent", report)
        report.deleted["failed"] = self._delete_older(
            self.store.failed_dir, f"*{JOB_SUFFIX}", failed_cutoff, "failed", report
        )
        report.deleted["idem"] = self._delete_idem_buckets(now - timedelta(days=max(1, policy.idem_days)), report)

        if policy.queued_max_age_days > 0:
            report.expired = self._expire_queued(now - timedelta(days=policy.queued_max_age_days), report)

        if self.after_sweep is not None:
            try:
                self.after_sweep()
            except Exception as exc:
                self.logger.warning("Post-sweep hook failed: %s", exc)
        return report

    def _delete_older(self, directory: Path, pattern: str, cutoff: datetime, tag: str, report: SweepReport) -> int:
        if not directory.is_dir():
            return 0
        deleted = 0
        for path in directory.glob(pattern):
            try:
                if path.is_file() and _mtime(path) < cutoff:
                    path.unlink()
                    deleted += 1
            except OSError as exc:
                report.skipped += 1
                self.logger.debug("Cannot delete %s file %s: %s", tag, path, exc)
        if deleted:
            self.logger.info(
                "Retention %s deleted=%d cutoff_utc=%s", tag, deleted, cutoff.isoformat()
            )
        return deleted

    def _delete_idem_buckets(self, cutoff: datetime, report: SweepReport) -> int:
        idem_root = self.store.idem_dir
        if not idem_root.is_dir():
            return 0
        cutoff_date = cutoff.date()
        deleted = 0
        for entry in idem_root.iterdir():
            if not entry.is_dir():
                continue
            try:
                bucket_day = parse_bucket_date(entry.name)
                if bucket_day is not None:
                    expired = bucket_day < cutoff_date
                else:
                    expired = _mtime(entry) < cutoff
                if expired:
                    shutil.rmtree(entry)
                    deleted += 1
            except OSError as exc:
                report.skipped += 1
                self.logger.debug("Cannot delete idempotency bucket %s: %s", entry, exc)
        if deleted:
            self.logger.info("Retention idem deleted_dirs=%d cutoff_utc=%s", deleted, cutoff.isoformat())
        return deleted

    def _expire_queued(self, cutoff: datetime, report: SweepReport) -> int:
        moved = 0
        try:
            queued = self.store.list_queued()
        except SpoolFilesystemError as exc:
            report.skipped += 1
            self.logger.debug("Cannot list queued jobs: %s", exc)
            return 0
        for handle in queued:
            try:
                if _mtime(handle.path) >= cutoff:
                    continue
                self.store.move_to_failed(handle, overwrite=False)
            except (OSError, SpoolFilesystemError) as exc:
                report.skipped += 1
                self.logger.debug("Cannot move queued job %s: %s", handle.name, exc)
                continue
            moved += 1
            if self.metrics is not None:
                self.metrics.inc_failed("expired")
        if moved:
            self.logger.warning(
                "Retention moved old queued->failed moved=%d cutoff_utc=%s", moved, cutoff.isoformat()
            )
        return moved
