"""Mail transport used by the delivery worker.

The worker only needs ``await transport.deliver(job)``: success returns,
failure raises :class:`PermanentDeliveryError` or
:class:`TransientDeliveryError`. :class:`SmtpTransport` implements it on top
of ``aiosmtplib`` and :func:`classify_error` maps raw exceptions onto the two
failure kinds.
"""

from __future__ import annotations

import asyncio
import html
import re
from email.message import EmailMessage
from email.utils import formatdate, make_msgid
from typing import Optional, Protocol

import aiosmtplib

from .errors import DeliveryError, PermanentDeliveryError, TransientDeliveryError
from .logger import get_logger
from .models import Job

DEFAULT_SMTP_TIMEOUT = 20

_BLOCK_BREAKS = (
    (re.compile(r"<br\s*/?>", re.IGNORECASE), "\n"),
    (re.compile(r"</p>", re.IGNORECASE), "\n\n"),
    (re.compile(r"</(div|tr)>", re.IGNORECASE), "\n"),
    (re.compile(r"</t[dh]>", re.IGNORECASE), " "),
)
_TAG_RE = re.compile(r"<[^>]*>")


class MailTransport(Protocol):
    async def deliver(self, job: Job) -> None:
        ...


def classify_error(exc: BaseException) -> DeliveryError:
    """Map an exception raised while sending into a classified delivery error.

    Network and timeout errors, authentication hiccups and 4xx replies are
    transient. 5xx replies, recipients refused with a 5xx code and malformed
    message data are permanent. Anything unrecognised is treated as transient.
    """
    if isinstance(exc, DeliveryError):
        return exc

    smtp_code = None
    if isinstance(exc, aiosmtplib.SMTPException):
        smtp_code = getattr(exc, "code", None)
    if not isinstance(smtp_code, int):
        smtp_code = None
    detail = str(exc) or exc.__class__.__name__
    if smtp_code:
        detail = f"{detail} (SMTP {smtp_code})"

    if isinstance(exc, aiosmtplib.SMTPRecipientsRefused):
        codes = [getattr(refused, "code", None) for refused in exc.recipients]
        # Greylisting and mailbox-busy replies (4xx on every RCPT) are retried.
        if codes and all(isinstance(code, int) and 400 <= code < 500 for code in codes):
            return TransientDeliveryError(detail, smtp_code=codes[0])
        return PermanentDeliveryError(detail)
    if isinstance(exc, aiosmtplib.SMTPAuthenticationError):
        return TransientDeliveryError(detail, smtp_code=smtp_code)
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, ConnectionError, OSError)):
        return TransientDeliveryError(detail, smtp_code=smtp_code)
    if smtp_code is not None:
        if 400 <= smtp_code < 500:
            return TransientDeliveryError(detail, smtp_code=smtp_code)
        if 500 <= smtp_code < 600:
            return PermanentDeliveryError(detail, smtp_code=smtp_code)
    if isinstance(exc, (ValueError, TypeError)):
        return PermanentDeliveryError(detail)

    return TransientDeliveryError(detail, smtp_code=smtp_code)


def html_to_text(markup: str) -> str:
    """Produce a readable plain-text fallback for an HTML body."""
    text = (markup or "").replace("\r", "").replace("\n", "")
    for pattern, replacement in _BLOCK_BREAKS:
        text = pattern.sub(replacement, text)
    text = html.unescape(_TAG_RE.sub("", text))
    return "\n".join(line.rstrip() for line in text.split("\n")).strip()


def build_message(job: Job, sender: str) -> EmailMessage:
    """Translate a job into an :class:`EmailMessage`.

    HTML content (``bodyHtml``, or ``body`` flagged with the legacy ``isHtml``)
    is sent as multipart/alternative with a plain-text part.
    """
    msg = EmailMessage()
    msg["From"] = sender
    msg["To"] = ", ".join(job.to_emails)
    if job.cc_emails:
        msg["Cc"] = ", ".join(job.cc_emails)
    msg["Subject"] = (job.subject or "").strip()
    msg["Date"] = formatdate(localtime=False, usegmt=True)
    msg["Message-ID"] = make_msgid()

    text = (job.body or "").strip()
    html_body = (job.body_html or "").strip() or None
    if html_body is None and job.is_html and text:
        html_body = text
    if html_body:
        body_is_markup = bool(job.is_html) and text == html_body
        plain = text if text and not body_is_markup else html_to_text(html_body)
        msg.set_content(plain)
        msg.add_alternative(html_body, subtype="html")
    else:
        msg.set_content(text)
    return msg


class SmtpTransport:
    """Deliver jobs through one SMTP relay, one connection per message."""

    def __init__(
        self,
        *,
        host: Optional[str],
        port: int = 25,
        user: Optional[str] = None,
        password: Optional[str] = None,
        default_from: Optional[str] = None,
        use_tls: Optional[bool] = None,
        start_tls: Optional[bool] = False,
        timeout: float = DEFAULT_SMTP_TIMEOUT,
        logger=None,
    ):
        self.host = (host or "").strip()
        self.port = int(port)
        self.user = (user or "").strip()
        self.password = password or ""
        self.default_from = (default_from or "").strip()
        # Direct TLS is the norm on 465; elsewhere TLS means STARTTLS.
        self.use_tls = self.port == 465 if use_tls is None else bool(use_tls)
        self.start_tls = start_tls
        self.timeout = max(5.0, float(timeout))
        self.logger = logger or get_logger("SmtpTransport")

    def resolve_sender(self, job: Job) -> str:
        sender = job.from_ or self.default_from or self.user
        if not sender:
            raise PermanentDeliveryError(
                "Missing sender: no 'from' in the job and neither smtp from nor smtp user configured"
            )
        return sender

    async def deliver(self, job: Job) -> None:
        if not self.host:
            raise PermanentDeliveryError("SMTP host is not configured")
        sender = self.resolve_sender(job)
        if not job.to_emails:
            raise PermanentDeliveryError("Job has no recipients")
        try:
            msg = build_message(job, sender)
        except (ValueError, TypeError) as exc:
            raise PermanentDeliveryError(f"Cannot build message: {exc}") from exc

        has_html = bool(job.body_html) or bool(job.is_html)
        self.logger.info(
            "SMTP send start to_count=%d cc_count=%d subject_len=%d has_html=%s host=%s:%d tls=%s",
            len(job.to_emails),
            len(job.cc_emails),
            len(job.subject or ""),
            has_html,
            self.host,
            self.port,
            self.use_tls or bool(self.start_tls),
        )

        smtp = aiosmtplib.SMTP(
            hostname=self.host,
            port=self.port,
            use_tls=self.use_tls,
            start_tls=False if self.use_tls else self.start_tls,
            timeout=self.timeout,
        )
        try:
            # aiosmtplib applies its timeout per command; this bounds the whole exchange.
            async with asyncio.timeout(self.timeout * 3):
                await smtp.connect()
                if self.user:
                    await smtp.login(self.user, self.password)
                errors, _ = await smtp.send_message(msg, sender=sender)
        except Exception as exc:
            raise classify_error(exc) from exc
        finally:
            if smtp.is_connected:
                try:
                    await smtp.quit()
                except Exception as exc:
                    self.logger.debug("SMTP quit failed: %s", exc)

        if errors:
            self.logger.warning("SMTP relay refused some recipients: %s", ", ".join(sorted(errors)))
        self.logger.info("SMTP send ok to_count=%d cc_count=%d", len(job.to_emails), len(job.cc_emails))
