"""Durable filesystem mail spool.

Requests are written as JSON files under a spool root and moved between the
``queued``, ``sent`` and ``failed`` directories by a delivery worker that
talks to an SMTP relay. Day-bucketed idempotency markers suppress repeated
deliveries and a retention sweeper keeps the root bounded.
"""
