import asyncio

import pytest

from mail_spool.models import EmailRequest
from mail_spool.rate_limit import IpRateLimiter
from mail_spool.service import MailSpoolService
from mail_spool.spool import JobState, SpoolStore
from mail_spool.transport import SmtpTransport


class DummyTransport:
    def __init__(self):
        self.delivered = []

    async def deliver(self, job):
        self.delivered.append(job.request_id)


def make_request(**overrides) -> EmailRequest:
    data = {"requestId": "svc-1", "toEmails": ["alice@example.com"], "subject": "Hello", "body": "Hi"}
    data.update(overrides)
    return EmailRequest.model_validate(data)


def test_from_settings_wires_components(tmp_path):
    settings = {
        "spool_root": str(tmp_path / "spool"),
        "idempotency_hours": 72,
        "max_subject_chars": 50,
        "max_parallel_sends": 3,
        "poll_interval_ms": 2000,
        "max_attempts": 2,
        "retention_enabled": False,
        "retention_sent_days": 5,
        "smtp_host": "relay.local",
        "smtp_port": 465,
        "smtp_from": "noreply@example.com",
        "smtp_timeout": 30,
        "rate_limit_enabled": True,
        "rate_limit_per_minute": 10,
    }

    svc = MailSpoolService.from_settings(settings)

    assert svc.store.root == tmp_path / "spool"
    assert svc.store.idempotency.keep_days == 3
    assert svc.store.max_subject_chars == 50
    assert isinstance(svc.transport, SmtpTransport)
    assert svc.transport.use_tls is True
    assert svc.transport.default_from == "noreply@example.com"
    assert svc.worker.max_parallel == 3
    assert svc.worker.poll_interval == 2.0
    assert svc.worker.max_attempts == 2
    assert svc.sweeper.policy.enabled is False
    assert svc.sweeper.policy.sent_days == 5
    assert svc.rate_limiter.enabled is True
    assert svc.rate_limiter.requests_per_minute == 10


def test_validation_error_uses_store_limits(tmp_path):
    svc = MailSpoolService(SpoolStore(tmp_path, max_subject_chars=5), DummyTransport())
    assert svc.validation_error(make_request(subject="far too long")) == "Subject too long (max 5)."
    assert svc.validation_error(make_request(subject="ok")) is None


@pytest.mark.asyncio
async def test_enqueue_updates_metrics(tmp_path):
    svc = MailSpoolService(SpoolStore(tmp_path), DummyTransport())

    first = await svc.enqueue(make_request(), "10.0.0.1")
    svc.store.mark_delivered("svc-1")
    second = await svc.enqueue(make_request(), "10.0.0.1")

    assert first.status == "queued"
    assert second.status == "duplicate"
    output = svc.metrics.generate_latest()
    assert b"msp_enqueued_total 1.0" in output
    assert b"msp_duplicates_total 1.0" in output
    assert svc.stats()["queued"] == 1


@pytest.mark.asyncio
async def test_start_delivers_and_stop_is_clean(tmp_path):
    transport = DummyTransport()
    svc = MailSpoolService(SpoolStore(tmp_path), transport, poll_interval=5.0)

    await svc.start()
    try:
        result = await svc.enqueue(make_request(), None)
        for _ in range(100):
            if svc.stats()["sent"] == 1:
                break
            await asyncio.sleep(0.02)
    finally:
        await asyncio.wait_for(svc.stop(), timeout=2)

    assert transport.delivered == ["svc-1"]
    assert [h.name for h in svc.list_jobs(JobState.SENT)] == [result.job.name]
    assert svc.load_job(JobState.SENT, result.job.name).request_id == "svc-1"
    assert not svc.worker.running


@pytest.mark.asyncio
async def test_resubmit_wakes_worker_and_counts(tmp_path):
    svc = MailSpoolService(SpoolStore(tmp_path), DummyTransport())
    failed = svc.store.move_to_failed(svc.store.enqueue(make_request(), None).job)

    result = await svc.resubmit(failed.name)

    assert result.status == "queued"
    assert b"msp_enqueued_total 1.0" in svc.metrics.generate_latest()
    assert svc.worker._wake_event.is_set()


def test_run_sweep_forgets_idle_rate_limit_entries(tmp_path):
    now = [1000.0]
    limiter = IpRateLimiter(enabled=True, requests_per_minute=5, clock=lambda: now[0])
    svc = MailSpoolService(SpoolStore(tmp_path), DummyTransport(), rate_limiter=limiter)
    limiter.allow("1.1.1.1")
    now[0] += 120

    report = svc.run_sweep()

    assert report.total == 0
    assert limiter.forget_idle() == 0
    assert limiter.allow("1.1.1.1")
