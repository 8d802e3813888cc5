"""Pydantic models for mail requests and persisted spool jobs.

Models:
    - EmailRequest: an inbound send request, as accepted by the HTTP API
    - JobMeta: admission metadata stored alongside the request
    - Job: the record written to a spool file

Field names follow the on-disk JSON schema (``toEmails``, ``bodyHtml``...).
Older spool files used PascalCase names and the short ``to``/``cc`` keys, and
list fields may hold a single string; parsing accepts all of these.
"""

from __future__ import annotations

from email.utils import parseaddr
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

MAX_REQUEST_ID_CHARS = 120


def _aliases(*names: str) -> AliasChoices:
    return AliasChoices(*names)


def _string_list(value: Any) -> list[str]:
    """Coerce a string-or-array field into a list of non-blank strings."""
    if value is None:
        return []
    if isinstance(value, str):
        return [value] if value.strip() else []
    if isinstance(value, (list, tuple)):
        return [item for item in value if isinstance(item, str) and item.strip()]
    return []


def _blank_to_none(value: str | None) -> str | None:
    if value is None or not value.strip():
        return None
    return value.strip()


def is_valid_address(value: str) -> bool:
    """Return ``True`` when ``value`` looks like a usable mailbox address."""
    if not value or any(ch in value for ch in "\r\n"):
        return False
    _, addr = parseaddr(value)
    if not addr or "@" not in addr or any(ch.isspace() for ch in addr):
        return False
    local, _, domain = addr.rpartition("@")
    return bool(local) and bool(domain) and not domain.startswith(".") and not domain.endswith(".")


class EmailRequest(BaseModel):
    """A request to deliver one email."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    request_id: str | None = Field(
        default=None, validation_alias=_aliases("requestId", "RequestId", "request_id")
    )
    client: str | None = Field(default=None, validation_alias=_aliases("client", "Client"))
    from_: str | None = Field(default=None, validation_alias=_aliases("from", "From", "from_"))
    subject: str | None = Field(default=None, validation_alias=_aliases("subject", "Subject"))
    body: str | None = Field(default=None, validation_alias=_aliases("body", "Body"))
    body_html: str | None = Field(
        default=None, validation_alias=_aliases("bodyHtml", "BodyHtml", "body_html")
    )
    is_html: bool | None = Field(default=None, validation_alias=_aliases("isHtml", "IsHtml", "is_html"))
    to_emails: list[str] = Field(
        default_factory=list,
        validation_alias=_aliases("toEmails", "ToEmails", "to", "To", "to_emails"),
    )
    cc_emails: list[str] = Field(
        default_factory=list,
        validation_alias=_aliases("ccEmails", "CcEmails", "cc", "Cc", "cc_emails"),
    )

    @field_validator("to_emails", "cc_emails", mode="before")
    @classmethod
    def _coerce_address_list(cls, value: Any) -> list[str]:
        return _string_list(value)

    def normalized(self) -> "EmailRequest":
        """Return a trimmed copy with blank optional values collapsed to ``None``.

        A legacy client that sent HTML in ``body`` with ``isHtml`` set gets
        that body copied into ``bodyHtml``; ``body`` is kept as the fallback.
        """
        body = (self.body or "").strip()
        body_html = _blank_to_none(self.body_html)
        if self.is_html and body_html is None and body:
            body_html = body
        return self.model_copy(
            update={
                "request_id": _blank_to_none(self.request_id),
                "client": _blank_to_none(self.client),
                "from_": _blank_to_none(self.from_),
                "subject": (self.subject or "").strip(),
                "body": body,
                "body_html": body_html,
                "to_emails": [addr.strip() for addr in self.to_emails if addr.strip()],
                "cc_emails": [addr.strip() for addr in self.cc_emails if addr.strip()],
            }
        )

    def validation_error(self, *, max_subject_chars: int, max_body_chars: int) -> str | None:
        """Return the first validation problem of a normalized request, if any."""
        if not self.to_emails:
            return "Missing toEmails."
        if not self.subject or not self.subject.strip():
            return "Missing subject."
        has_text = bool(self.body and self.body.strip())
        has_html = bool(self.body_html and self.body_html.strip())
        if not has_text and not has_html:
            return "Missing content (body/bodyHtml)."
        if len(self.subject) > max_subject_chars:
            return f"Subject too long (max {max_subject_chars})."
        body_len = max(len(self.body or ""), len(self.body_html or ""))
        if body_len > max_body_chars:
            return f"Body too long (max {max_body_chars})."
        for address in [*self.to_emails, *self.cc_emails]:
            if not is_valid_address(address):
                return f"Invalid email: {address}"
        if self.from_ is not None and not is_valid_address(self.from_):
            return f"Invalid from: {self.from_}"
        if self.request_id is not None and len(self.request_id) > MAX_REQUEST_ID_CHARS:
            return "requestId too long."
        return None


class JobMeta(BaseModel):
    """Admission metadata stored with each job."""

    model_config = ConfigDict(extra="ignore")

    ip: str | None = Field(default=None, validation_alias=_aliases("ip", "Ip", "IP"))


class Job(EmailRequest):
    """A delivery request as persisted in a spool file."""

    received_utc: str | None = Field(
        default=None, validation_alias=_aliases("receivedUtc", "ReceivedUtc", "received_utc")
    )
    meta: JobMeta = Field(default_factory=JobMeta, validation_alias=_aliases("meta", "Meta"))

    @field_validator("meta", mode="before")
    @classmethod
    def _coerce_meta(cls, value: Any) -> Any:
        return value if isinstance(value, (dict, JobMeta)) else {}

    @classmethod
    def from_request(cls, request: EmailRequest, *, received_utc: str, source_ip: str | None) -> "Job":
        data = request.model_dump()
        data.update(received_utc=received_utc, meta=JobMeta(ip=source_ip))
        return cls.model_validate(data)

    @property
    def source_ip(self) -> str | None:
        return self.meta.ip

    def to_request(self) -> EmailRequest:
        return EmailRequest.model_validate(self.model_dump(exclude={"received_utc", "meta"}))

    def to_record(self) -> dict[str, Any]:
        """Return the JSON object written to disk."""
        return {
            "requestId": self.request_id,
            "receivedUtc": self.received_utc,
            "client": self.client,
            "from": self.from_,
            "subject": self.subject,
            "body": self.body,
            "bodyHtml": self.body_html,
            "isHtml": self.is_html,
            "toEmails": list(self.to_emails),
            "ccEmails": list(self.cc_emails),
            "meta": {"ip": self.meta.ip},
        }
