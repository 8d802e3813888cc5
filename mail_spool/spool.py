"""Durable filesystem spool: job admission, idempotency and state directories.

A job is one JSON file and its state is the directory holding it::

    <root>/queued/20250101-120000123456_0123456789abcdef.json
    <root>/sent/...
    <root>/failed/...
    <root>/idem/20250101/0123456789abcdef.done

State transitions are ``os.replace`` calls between sibling directories, so a
job is never copied into two states and a failed move leaves it where it was.
"""

from __future__ import annotations

import contextlib
import hashlib
import json
import math
import os
import shutil
import tempfile
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Literal, Optional

from pydantic import ValidationError

from .errors import MalformedJobError, SpoolFilesystemError
from .logger import get_logger
from .models import EmailRequest, Job

JOB_SUFFIX = ".json"
MARKER_SUFFIX = ".done"
IDEM_KEY_CHARS = 16
BUCKET_FORMAT = "%Y%m%d"

DEFAULT_IDEMPOTENCY_HOURS = 24
DEFAULT_MAX_BODY_CHARS = 200_000
DEFAULT_MAX_SUBJECT_CHARS = 300


class JobState(str, Enum):
    """Directory a job file lives in."""

    QUEUED = "queued"
    SENT = "sent"
    FAILED = "failed"


@dataclass(frozen=True)
class JobHandle:
    """Reference to a job file in one of the state directories."""

    name: str
    state: JobState
    path: Path


@dataclass
class EnqueueResult:
    status: Literal["queued", "duplicate"]
    request_id: str
    job: Optional[JobHandle] = None

    @property
    def duplicate(self) -> bool:
        return self.status == "duplicate"


@dataclass
class SpoolStats:
    queued: int
    sent: int
    failed: int
    as_of: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def as_dict(self) -> Dict[str, Any]:
        return {
            "queued": self.queued,
            "sent": self.sent,
            "failed": self.failed,
            "timeUtc": self.as_of.isoformat().replace("+00:00", "Z"),
        }


def compute_stable_id(request: EmailRequest) -> str:
    """Derive a request id from the message content.

    Two content-identical anonymous submissions map to the same id.
    """
    canonical = "\n".join(
        [
            "|".join(request.to_emails).lower(),
            "|".join(request.cc_emails).lower(),
            request.subject or "",
            request.body or "",
        ]
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def compute_idem_key(request_id: str) -> str:
    """Return the truncated hash used for marker and job file names."""
    return hashlib.sha256(request_id.encode("utf-8")).hexdigest()[:IDEM_KEY_CHARS]


def resolve_request_id(request: EmailRequest) -> str:
    return request.request_id or compute_stable_id(request)


def parse_bucket_date(name: str) -> Optional[date]:
    """Parse an idempotency bucket directory name, ``None`` when it is not a date."""
    if len(name) != 8 or not name.isdigit():
        return None
    try:
        return datetime.strptime(name, BUCKET_FORMAT).date()
    except ValueError:
        return None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _write_atomic(target: Path, text: str) -> None:
    """Write ``text`` to a hidden temporary file next to ``target`` and rename it into place."""
    fd, tmp_name = tempfile.mkstemp(prefix=".", suffix=".tmp", dir=target.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(text)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp_name, target)
    except BaseException:
        with contextlib.suppress(FileNotFoundError):
            os.unlink(tmp_name)
        raise


class IdempotencyIndex:
    """Day-bucketed markers recording confirmed deliveries."""

    def __init__(self, root: Path, *, keep_days: int = 1, clock: Callable[[], datetime] = _utc_now):
        self.root = Path(root)
        self.keep_days = max(1, int(keep_days))
        self._clock = clock
        self.root.mkdir(parents=True, exist_ok=True)

    def bucket_dir(self, day: Optional[date] = None) -> Path:
        day = day or self._clock().date()
        return self.root / day.strftime(BUCKET_FORMAT)

    def marker_path(self, key: str, day: Optional[date] = None) -> Path:
        return self.bucket_dir(day) / f"{key}{MARKER_SUFFIX}"

    def contains(self, key: str) -> bool:
        """Return ``True`` when today's bucket holds a marker for ``key``."""
        return self.marker_path(key).exists()

    def mark(self, key: str) -> Path:
        """Write today's marker for ``key``; writing it twice is harmless."""
        marker = self.marker_path(key)
        marker.parent.mkdir(parents=True, exist_ok=True)
        stamp = self._clock().isoformat().replace("+00:00", "Z")
        _write_atomic(marker, stamp)
        return marker

    def prune(self) -> int:
        """Delete dated buckets older than ``keep_days``; undated names are left alone."""
        cutoff = self._clock().date() - timedelta(days=self.keep_days)
        removed = 0
        for entry in self.root.iterdir():
            bucket_day = parse_bucket_date(entry.name)
            if not entry.is_dir() or bucket_day is None or bucket_day >= cutoff:
                continue
            try:
                shutil.rmtree(entry)
                removed += 1
            except OSError:
                continue
        return removed


class SpoolStore:
    """Durable job admission and state management on top of a spool root."""

    def __init__(
        self,
        root: str | os.PathLike[str],
        *,
        idempotency_hours: int = DEFAULT_IDEMPOTENCY_HOURS,
        max_body_chars: int = DEFAULT_MAX_BODY_CHARS,
        max_subject_chars: int = DEFAULT_MAX_SUBJECT_CHARS,
        logger=None,
        clock: Callable[[], datetime] = _utc_now,
    ):
        self.root = Path(root).expanduser()
        self.idempotency_hours = int(idempotency_hours)
        self.max_body_chars = int(max_body_chars)
        self.max_subject_chars = int(max_subject_chars)
        self.logger = logger or get_logger("SpoolStore")
        self._clock = clock

        self.queued_dir = self.root / JobState.QUEUED.value
        self.sent_dir = self.root / JobState.SENT.value
        self.failed_dir = self.root / JobState.FAILED.value
        self.idem_dir = self.root / "idem"
        self._dirs = {
            JobState.QUEUED: self.queued_dir,
            JobState.SENT: self.sent_dir,
            JobState.FAILED: self.failed_dir,
        }
        for directory in self._dirs.values():
            directory.mkdir(parents=True, exist_ok=True)

        keep_days = max(1, math.ceil(self.idempotency_hours / 24.0))
        self.idempotency = IdempotencyIndex(self.idem_dir, keep_days=keep_days, clock=clock)

    def state_dir(self, state: JobState) -> Path:
        return self._dirs[JobState(state)]

    # ---------------------------------------------------------------- admission
    def enqueue(self, request: EmailRequest, source_ip: Optional[str]) -> EnqueueResult:
        """Persist ``request`` as a queued job unless it was already delivered today.

        Only deliveries confirmed by :meth:`mark_delivered` are detected; two
        identical submissions arriving before the first is sent both queue.
        """
        request = request.normalized()
        request_id = resolve_request_id(request)
        idem_key = compute_idem_key(request_id)

        if self.idempotency.contains(idem_key):
            self.logger.info("Duplicate request %s (key=%s) not queued", request_id, idem_key)
            return EnqueueResult("duplicate", request_id)

        now = self._clock()
        job = Job.from_request(
            request,
            received_utc=now.isoformat().replace("+00:00", "Z"),
            source_ip=source_ip,
        )
        text = json.dumps(job.to_record(), indent=2, ensure_ascii=False)
        target = self._free_name(self.queued_dir, f"{now:%Y%m%d-%H%M%S%f}_{idem_key}")
        try:
            _write_atomic(target, text)
        except OSError as exc:
            raise SpoolFilesystemError(f"cannot write job {target.name}: {exc}") from exc
        self.logger.debug("Queued job %s for request %s", target.name, request_id)
        return EnqueueResult("queued", request_id, JobHandle(target.name, JobState.QUEUED, target))

    @staticmethod
    def _free_name(directory: Path, stem: str) -> Path:
        candidate = directory / f"{stem}{JOB_SUFFIX}"
        counter = 1
        while candidate.exists():
            candidate = directory / f"{stem}-{counter}{JOB_SUFFIX}"
            counter += 1
        return candidate

    # ----------------------------------------------------------------- listing
    def list_jobs(self, state: JobState) -> List[JobHandle]:
        """Return job handles in ``state`` sorted by file name."""
        state = JobState(state)
        directory = self._dirs[state]
        try:
            paths = sorted(directory.glob(f"*{JOB_SUFFIX}"))
        except OSError as exc:
            raise SpoolFilesystemError(f"cannot list {directory}: {exc}") from exc
        return [JobHandle(path.name, state, path) for path in paths if path.is_file()]

    def list_queued(self) -> List[JobHandle]:
        return self.list_jobs(JobState.QUEUED)

    def get_job(self, state: JobState, name: str) -> JobHandle:
        """Return the handle for ``name`` in ``state``; raise ``FileNotFoundError`` if absent."""
        if not name or Path(name).name != name or not name.endswith(JOB_SUFFIX):
            raise FileNotFoundError(name)
        state = JobState(state)
        path = self._dirs[state] / name
        if not path.is_file():
            raise FileNotFoundError(name)
        return JobHandle(name, state, path)

    def load_job(self, handle: JobHandle) -> Job:
        """Read and parse a job file."""
        try:
            raw = handle.path.read_text(encoding="utf-8")
        except UnicodeDecodeError as exc:
            raise MalformedJobError(handle.name, f"not UTF-8: {exc}") from exc
        except OSError as exc:
            raise SpoolFilesystemError(f"cannot read {handle.name}: {exc}") from exc
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise MalformedJobError(handle.name, f"invalid JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise MalformedJobError(handle.name, "top-level value is not an object")
        try:
            return Job.model_validate(data).normalized()
        except ValidationError as exc:
            raise MalformedJobError(handle.name, str(exc)) from exc

    # ------------------------------------------------------------- transitions
    def mark_delivered(self, request_id: str) -> Path:
        """Record a confirmed delivery of ``request_id`` in today's bucket."""
        marker = self.idempotency.mark(compute_idem_key(request_id))
        try:
            self.idempotency.prune()
        except OSError as exc:
            self.logger.debug("Idempotency pruning skipped: %s", exc)
        return marker

    def is_delivered(self, request_id: str) -> bool:
        return self.idempotency.contains(compute_idem_key(request_id))

    def move_to_sent(self, job: JobHandle) -> JobHandle:
        return self._move(job, JobState.SENT)

    def move_to_failed(self, job: JobHandle, *, overwrite: bool = True) -> JobHandle:
        return self._move(job, JobState.FAILED, overwrite=overwrite)

    def _move(self, job: JobHandle, target: JobState, *, overwrite: bool = True) -> JobHandle:
        destination = self._dirs[target] / job.name
        if not overwrite and destination.exists():
            destination = self._dirs[target] / f"{job.path.stem}.expired{job.path.suffix}"
        try:
            os.replace(job.path, destination)
        except OSError as exc:
            raise SpoolFilesystemError(f"cannot move {job.name} to {target.value}: {exc}") from exc
        return JobHandle(destination.name, target, destination)

    def resubmit_failed(self, name: str, source_ip: Optional[str] = None) -> EnqueueResult:
        """Queue a failed job again as a fresh admission.

        The failed file is removed once the new job is durably queued; a
        duplicate result leaves it in place.
        """
        handle = self.get_job(JobState.FAILED, name)
        job = self.load_job(handle)
        result = self.enqueue(job.to_request(), source_ip or job.source_ip)
        if result.status == "queued":
            try:
                handle.path.unlink()
            except OSError as exc:
                self.logger.warning("Resubmitted %s but could not remove the failed copy: %s", name, exc)
        return result

    # ------------------------------------------------------------ observability
    def stats(self) -> SpoolStats:
        """Count jobs per state; a category that cannot be counted reports ``-1``."""
        return SpoolStats(
            queued=self._safe_count(self.queued_dir),
            sent=self._safe_count(self.sent_dir),
            failed=self._safe_count(self.failed_dir),
            as_of=self._clock(),
        )

    @staticmethod
    def _safe_count(directory: Path) -> int:
        try:
            return sum(1 for _ in directory.glob(f"*{JOB_SUFFIX}"))
        except OSError:
            return -1
