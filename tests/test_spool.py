import json
import re
from datetime import datetime, timedelta, timezone

import pytest

from mail_spool.errors import MalformedJobError, SpoolFilesystemError
from mail_spool.models import EmailRequest
from mail_spool.spool import (
    JobHandle,
    JobState,
    SpoolStore,
    compute_idem_key,
    compute_stable_id,
    parse_bucket_date,
)


class FrozenClock:
    def __init__(self, now: datetime | None = None):
        self.now = now or datetime(2025, 1, 10, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


class BrokenDir:
    def glob(self, pattern):
        raise PermissionError("denied")


def make_request(**overrides) -> EmailRequest:
    data = {"toEmails": ["alice@example.com"], "subject": "Hello", "body": "Hi there"}
    data.update(overrides)
    return EmailRequest.model_validate(data)


def make_store(tmp_path, clock=None, **kwargs) -> SpoolStore:
    return SpoolStore(tmp_path / "spool", clock=clock or FrozenClock(), **kwargs)


def test_store_creates_state_directories(tmp_path):
    store = make_store(tmp_path)
    for name in ("queued", "sent", "failed", "idem"):
        assert (tmp_path / "spool" / name).is_dir()
    assert store.state_dir(JobState.FAILED) == store.failed_dir


def test_enqueue_writes_job_file(tmp_path):
    store = make_store(tmp_path)

    result = store.enqueue(make_request(requestId="order-1", cc="bob@example.com"), "10.0.0.1")

    assert result.status == "queued"
    assert result.request_id == "order-1"
    assert result.job.state is JobState.QUEUED
    assert re.fullmatch(r"\d{8}-\d{12}_[0-9a-f]{16}\.json", result.job.name)
    assert result.job.name.startswith("20250110-120000000000_")
    assert result.job.name.endswith(f"_{compute_idem_key('order-1')}.json")

    record = json.loads(result.job.path.read_text(encoding="utf-8"))
    assert record["requestId"] == "order-1"
    assert record["receivedUtc"] == "2025-01-10T12:00:00Z"
    assert record["toEmails"] == ["alice@example.com"]
    assert record["ccEmails"] == ["bob@example.com"]
    assert record["meta"] == {"ip": "10.0.0.1"}


def test_enqueue_leaves_no_temporary_files(tmp_path):
    store = make_store(tmp_path)
    store.enqueue(make_request(requestId="a"), None)
    store.enqueue(make_request(requestId="b"), None)

    names = sorted(p.name for p in store.queued_dir.iterdir())
    assert len(names) == 2
    assert all(name.endswith(".json") and not name.startswith(".") for name in names)


def test_enqueue_after_delivery_is_duplicate(tmp_path):
    store = make_store(tmp_path)
    store.mark_delivered("order-1")

    result = store.enqueue(make_request(requestId="order-1"), None)

    assert result.status == "duplicate"
    assert result.duplicate is True
    assert result.job is None
    assert list(store.queued_dir.iterdir()) == []


def test_duplicate_check_only_looks_at_today(tmp_path):
    clock = FrozenClock()
    store = make_store(tmp_path, clock=clock)
    store.mark_delivered("order-1")

    clock.advance(days=1)
    result = store.enqueue(make_request(requestId="order-1"), None)

    assert result.status == "queued"


def test_identical_anonymous_payloads_queue_twice_before_delivery(tmp_path):
    store = make_store(tmp_path)

    first = store.enqueue(make_request(), None)
    second = store.enqueue(make_request(), None)

    assert first.status == second.status == "queued"
    assert first.request_id == second.request_id == compute_stable_id(make_request().normalized())
    assert first.job.name != second.job.name
    assert second.job.name.endswith("-1.json")
    assert len(store.list_queued()) == 2


def test_stable_id_ignores_recipient_case():
    upper = make_request(toEmails=["Alice@Example.COM"]).normalized()
    lower = make_request(toEmails=["alice@example.com"]).normalized()
    other = make_request(subject="Other").normalized()

    assert compute_stable_id(upper) == compute_stable_id(lower)
    assert compute_stable_id(upper) != compute_stable_id(other)


def test_list_jobs_sorted_and_ignores_other_files(tmp_path):
    clock = FrozenClock()
    store = make_store(tmp_path, clock=clock)
    first = store.enqueue(make_request(requestId="a"), None)
    clock.advance(seconds=1)
    second = store.enqueue(make_request(requestId="b"), None)
    (store.queued_dir / "notes.txt").write_text("x")

    names = [handle.name for handle in store.list_queued()]
    assert names == [first.job.name, second.job.name]


def test_load_job_round_trips_record(tmp_path):
    store = make_store(tmp_path)
    result = store.enqueue(make_request(requestId="r1", isHtml=True, body="<b>Hi</b>"), "1.2.3.4")

    job = store.load_job(result.job)

    assert job.request_id == "r1"
    assert job.body_html == "<b>Hi</b>"
    assert job.source_ip == "1.2.3.4"
    assert job.to_emails == ["alice@example.com"]


def test_load_job_accepts_legacy_field_names(tmp_path):
    store = make_store(tmp_path)
    path = store.queued_dir / "legacy.json"
    path.write_text(
        json.dumps({"RequestId": "old-1", "To": "carol@example.com", "Subject": "S", "Body": "B", "Meta": {"Ip": "9.9.9.9"}}),
        encoding="utf-8",
    )

    job = store.load_job(JobHandle(path.name, JobState.QUEUED, path))

    assert job.request_id == "old-1"
    assert job.to_emails == ["carol@example.com"]
    assert job.cc_emails == []
    assert job.source_ip == "9.9.9.9"


@pytest.mark.parametrize("content", ["{not json", "[1, 2, 3]"])
def test_load_job_rejects_malformed_files(tmp_path, content):
    store = make_store(tmp_path)
    path = store.queued_dir / "bad.json"
    path.write_text(content, encoding="utf-8")

    with pytest.raises(MalformedJobError) as excinfo:
        store.load_job(JobHandle(path.name, JobState.QUEUED, path))
    assert excinfo.value.name == "bad.json"


def test_load_job_missing_file_is_filesystem_error(tmp_path):
    store = make_store(tmp_path)
    path = store.queued_dir / "gone.json"

    with pytest.raises(SpoolFilesystemError):
        store.load_job(JobHandle(path.name, JobState.QUEUED, path))


def test_moves_leave_exactly_one_copy(tmp_path):
    store = make_store(tmp_path)
    a = store.enqueue(make_request(requestId="a"), None).job
    b = store.enqueue(make_request(requestId="b"), None).job

    sent = store.move_to_sent(a)
    failed = store.move_to_failed(b)

    assert sent.state is JobState.SENT and sent.path.exists()
    assert failed.state is JobState.FAILED and failed.path.exists()
    assert not a.path.exists() and not b.path.exists()
    assert store.stats().as_dict()["queued"] == 0


def test_move_without_overwrite_uses_expired_name(tmp_path):
    store = make_store(tmp_path)
    job = store.enqueue(make_request(requestId="a"), None).job
    (store.failed_dir / job.name).write_text("{}")

    moved = store.move_to_failed(job, overwrite=False)

    assert moved.name == job.name.replace(".json", ".expired.json")
    assert (store.failed_dir / job.name).read_text() == "{}"


def test_move_of_missing_job_raises(tmp_path):
    store = make_store(tmp_path)
    ghost = JobHandle("ghost.json", JobState.QUEUED, store.queued_dir / "ghost.json")

    with pytest.raises(SpoolFilesystemError):
        store.move_to_sent(ghost)


@pytest.mark.parametrize("name", ["../escape.json", "", "nested/x.json", "x.txt"])
def test_get_job_rejects_unsafe_names(tmp_path, name):
    store = make_store(tmp_path)
    with pytest.raises(FileNotFoundError):
        store.get_job(JobState.FAILED, name)


def test_mark_delivered_prunes_old_buckets(tmp_path):
    store = make_store(tmp_path, idempotency_hours=24)
    old = store.idem_dir / "20250107"
    yesterday = store.idem_dir / "20250109"
    other = store.idem_dir / "keep-me"
    for directory in (old, yesterday, other):
        directory.mkdir()
        (directory / "0000000000000000.done").write_text("x")

    marker = store.mark_delivered("order-1")

    assert marker == store.idem_dir / "20250110" / f"{compute_idem_key('order-1')}.done"
    assert marker.exists()
    assert not old.exists()
    assert yesterday.exists()
    assert other.exists()
    assert store.is_delivered("order-1")


def test_idempotency_window_rounds_up_to_days(tmp_path):
    store = make_store(tmp_path, idempotency_hours=49)
    assert store.idempotency.keep_days == 3


def test_resubmit_failed_requeues_and_removes_failed_copy(tmp_path):
    store = make_store(tmp_path)
    job = store.move_to_failed(store.enqueue(make_request(requestId="r1"), "5.5.5.5").job)

    result = store.resubmit_failed(job.name)

    assert result.status == "queued"
    assert result.request_id == "r1"
    assert not job.path.exists()
    assert store.load_job(result.job).source_ip == "5.5.5.5"


def test_resubmit_of_delivered_request_keeps_failed_copy(tmp_path):
    store = make_store(tmp_path)
    job = store.move_to_failed(store.enqueue(make_request(requestId="r1"), None).job)
    store.mark_delivered("r1")

    result = store.resubmit_failed(job.name)

    assert result.duplicate
    assert job.path.exists()


def test_stats_counts_and_reports_unreadable_categories(tmp_path):
    store = make_store(tmp_path)
    store.enqueue(make_request(requestId="a"), None)
    store.move_to_sent(store.enqueue(make_request(requestId="b"), None).job)
    store.sent_dir = BrokenDir()

    stats = store.stats().as_dict()

    assert stats["queued"] == 1
    assert stats["sent"] == -1
    assert stats["failed"] == 0
    assert stats["timeUtc"] == "2025-01-10T12:00:00Z"


def test_parse_bucket_date():
    assert parse_bucket_date("20250110").isoformat() == "2025-01-10"
    assert parse_bucket_date("20251340") is None
    assert parse_bucket_date("misc") is None
