import asyncio
import os
from datetime import datetime, timedelta, timezone

import pytest

from mail_spool.retention import RetentionPolicy, RetentionSweeper
from mail_spool.spool import SpoolStore

NOW = datetime(2025, 1, 10, 12, 0, 0, tzinfo=timezone.utc)


def clock():
    return NOW


def age(path, days: float):
    stamp = (NOW - timedelta(days=days)).timestamp()
    os.utime(path, (stamp, stamp))


def job_file(directory, name: str, days: float):
    path = directory / name
    path.write_text("{}", encoding="utf-8")
    age(path, days)
    return path


class DummyMetrics:
    def __init__(self):
        self.failed = []

    def inc_failed(self, reason):
        self.failed.append(reason)


def make_sweeper(tmp_path, **policy):
    store = SpoolStore(tmp_path / "spool", clock=clock)
    metrics = DummyMetrics()
    sweeper = RetentionSweeper(store, RetentionPolicy(**policy), metrics=metrics, clock=clock)
    return store, sweeper, metrics


def test_policy_defaults_and_minimum_interval():
    policy = RetentionPolicy()
    assert policy.enabled is True
    assert (policy.sent_days, policy.failed_days, policy.idem_days, policy.logs_days) == (14, 30, 7, 14)
    assert policy.queued_max_age_days == 0
    assert policy.interval_seconds == 3600
    assert RetentionPolicy(run_every_minutes=1).interval_seconds == 300


def test_sent_files_deleted_only_past_threshold(tmp_path):
    store, sweeper, _ = make_sweeper(tmp_path, sent_days=3)
    old = job_file(store.sent_dir, "old.json", 4)
    recent = job_file(store.sent_dir, "recent.json", 2)

    report = sweeper.run_once()

    assert not old.exists()
    assert recent.exists()
    assert report.deleted["sent"] == 1


def test_failed_files_use_their_own_threshold(tmp_path):
    store, sweeper, _ = make_sweeper(tmp_path, sent_days=1, failed_days=10)
    kept = job_file(store.failed_dir, "kept.json", 5)
    dropped = job_file(store.failed_dir, "dropped.json", 11)

    report = sweeper.run_once()

    assert kept.exists()
    assert not dropped.exists()
    assert report.deleted["failed"] == 1


def test_idem_buckets_removed_by_name_date(tmp_path):
    store, sweeper, _ = make_sweeper(tmp_path, idem_days=7)
    expired = store.idem_dir / "20250102"
    boundary = store.idem_dir / "20250103"
    fresh = store.idem_dir / "20250109"
    for bucket in (expired, boundary, fresh):
        bucket.mkdir()
        (bucket / "abcdef0123456789.done").write_text("x")
        # Bucket dates win over modification times.
        age(bucket, 30)

    report = sweeper.run_once()

    assert not expired.exists()
    assert boundary.exists()
    assert fresh.exists()
    assert report.deleted["idem"] == 1


def test_undated_idem_directories_fall_back_to_mtime(tmp_path):
    store, sweeper, _ = make_sweeper(tmp_path, idem_days=7)
    stale = store.idem_dir / "legacy"
    recent = store.idem_dir / "scratch"
    stale.mkdir()
    recent.mkdir()
    age(stale, 8)
    age(recent, 1)

    sweeper.run_once()

    assert not stale.exists()
    assert recent.exists()


def test_old_log_files_removed(tmp_path):
    logs = tmp_path / "logs"
    logs.mkdir()
    _, sweeper, _ = make_sweeper(tmp_path, logs_days=14, logs_directory=str(logs))
    old_log = job_file(logs, "mail-spool-20241201.log", 40)
    new_log = job_file(logs, "mail-spool-20250109.log", 1)
    other = job_file(logs, "notes.txt", 40)

    report = sweeper.run_once()

    assert not old_log.exists()
    assert new_log.exists()
    assert other.exists()
    assert report.deleted["logs"] == 1


def test_missing_log_directory_is_ignored(tmp_path):
    _, sweeper, _ = make_sweeper(tmp_path, logs_directory=str(tmp_path / "nope"))
    assert sweeper.run_once().deleted["logs"] == 0


def test_queued_jobs_untouched_when_max_age_disabled(tmp_path):
    store, sweeper, _ = make_sweeper(tmp_path)
    queued = job_file(store.queued_dir, "ancient.json", 365)

    report = sweeper.run_once()

    assert queued.exists()
    assert report.expired == 0


def test_old_queued_jobs_demoted_without_overwriting(tmp_path):
    store, sweeper, metrics = make_sweeper(tmp_path, queued_max_age_days=2)
    stale = job_file(store.queued_dir, "stale.json", 3)
    clash = job_file(store.queued_dir, "clash.json", 3)
    young = job_file(store.queued_dir, "young.json", 1)
    (store.failed_dir / "clash.json").write_text('{"original": true}')

    report = sweeper.run_once()

    assert report.expired == 2
    assert not stale.exists() and not clash.exists()
    assert young.exists()
    assert (store.failed_dir / "stale.json").exists()
    assert (store.failed_dir / "clash.expired.json").exists()
    assert (store.failed_dir / "clash.json").read_text() == '{"original": true}'
    assert metrics.failed == ["expired", "expired"]


def test_after_sweep_hook_runs_and_failures_are_contained(tmp_path):
    store = SpoolStore(tmp_path / "spool", clock=clock)
    calls = []

    def hook():
        calls.append(True)
        raise RuntimeError("hook broke")

    sweeper = RetentionSweeper(store, RetentionPolicy(), after_sweep=hook, clock=clock)
    report = sweeper.run_once()

    assert calls == [True]
    assert report.total == 0


def test_disabled_policy_does_not_start(tmp_path, caplog):
    _, sweeper, _ = make_sweeper(tmp_path, enabled=False)
    with caplog.at_level("INFO"):
        sweeper.start()
    assert sweeper._task is None
    assert "Retention disabled." in caplog.text


@pytest.mark.asyncio
async def test_sweeper_runs_immediately_when_started(tmp_path):
    store = SpoolStore(tmp_path / "spool")
    old = store.sent_dir / "old.json"
    old.write_text("{}")
    stamp = (datetime.now(timezone.utc) - timedelta(days=30)).timestamp()
    os.utime(old, (stamp, stamp))
    sweeper = RetentionSweeper(store, RetentionPolicy(sent_days=14))

    sweeper.start()
    try:
        for _ in range(100):
            if not old.exists():
                break
            await asyncio.sleep(0.02)
        assert not old.exists()
    finally:
        await asyncio.wait_for(sweeper.stop(), timeout=2)

