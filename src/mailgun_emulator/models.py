# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Pydantic models for the Mailgun emulator.

This module defines the data models used throughout the application for
validation, serialization, and type safety.

Models:
    - RecipientAddress: A parsed ``email``/``name`` pair
    - StoredAttachment: Descriptor of an upload copied into storage
    - UploadedFile: Inbound upload handed to storage
    - MessageOptions: Recognized Mailgun options from a request field bag
    - Message: Canonical, immutable record of one send request
    - RecipientResult / DeliveryOutcome: Result of one SMTP fan-out
    - MessageSummary / StorageStats: Listing and statistics projections
"""

from __future__ import annotations

import base64
from typing import Annotated, Any

from pydantic import BaseModel, ConfigDict, Field

# Raw request fields; repeated form keys arrive as lists.
FieldBag = dict[str, Any]


class RecipientAddress(BaseModel):
    """A single recipient parsed from a free-form address string."""

    model_config = ConfigDict(frozen=True)

    email: str
    name: Annotated[str, Field(default="")]


class StoredAttachment(BaseModel):
    """Email attachment copied into the attachment store.

    Attributes:
        id: Generated attachment identifier.
        filename: Stored filename (``id`` plus the original extension).
        original_name: Filename as uploaded by the client.
        size: Size in bytes.
        mime_type: MIME type declared by the client.
        path: Absolute path of the stored file.
    """

    model_config = ConfigDict(frozen=True)

    id: Annotated[str, Field(min_length=1, description="Attachment identifier")]
    filename: Annotated[str, Field(description="Stored filename")]
    original_name: Annotated[str, Field(description="Original upload filename")]
    size: Annotated[int, Field(ge=0, description="Size in bytes")]
    mime_type: Annotated[str, Field(default="application/octet-stream", description="MIME type")]
    path: Annotated[str, Field(description="Absolute storage path")]


class UploadedFile(BaseModel):
    """Upload received with a request, before it reaches storage."""

    filename: str
    content_type: Annotated[str, Field(default="application/octet-stream")]
    content: Annotated[bytes, Field(default=b"", repr=False)]

    @property
    def size(self) -> int:
        return len(self.content)


def field_value(value: Any) -> str | None:
    """Collapse a repeated form value to its last occurrence."""
    if value is None:
        return None
    if isinstance(value, (list, tuple)):
        return str(value[-1]) if value else None
    return str(value)


# Keys whose repeated occurrences are all meaningful.
MULTI_VALUE_FIELDS = frozenset({"to", "cc", "bcc", "o:tag"})


def collapse_fields(fields: FieldBag) -> FieldBag:
    """Reduce repeated form keys to the values a message is built from.

    ``to``, ``cc``, ``bcc`` and ``o:tag`` keep every occurrence; any other
    repeated key keeps its last occurrence (see :func:`field_value`).
    Validation and message building both work on the collapsed bag.
    """
    collapsed: FieldBag = {}
    for key, value in fields.items():
        if key in MULTI_VALUE_FIELDS or not isinstance(value, (list, tuple)):
            collapsed[key] = value
        else:
            collapsed[key] = field_value(value)
    return collapsed


class MessageOptions(BaseModel):
    """Recognized options of a Mailgun send request.

    The Mailgun API accepts an open set of prefixed keys (``o:``, ``h:``,
    ``t:``, ``v:``). Only the ones the emulator acts upon are lifted here;
    anything else is accepted and ignored.

    Attributes:
        tags: ``o:tag`` values joined by commas (repeated keys are merged).
        delivery_time: Raw ``o:deliverytime`` value.
        template: Template name.
        template_variables: Raw ``t:variables`` JSON string.
        recipient_variables: Raw ``recipient-variables`` JSON string.
        custom_headers: ``h:<Name>`` headers in request order.
    """

    model_config = ConfigDict(frozen=True)

    tags: Annotated[str, Field(default="")]
    delivery_time: Annotated[str | None, Field(default=None)]
    template: Annotated[str, Field(default="")]
    template_variables: Annotated[str, Field(default="{}")]
    recipient_variables: Annotated[str | None, Field(default=None)]
    custom_headers: Annotated[list[tuple[str, str]], Field(default_factory=list)]

    @classmethod
    def from_fields(cls, fields: FieldBag) -> MessageOptions:
        """Extract the recognized options from a raw request field bag."""
        raw_tags = fields.get("o:tag")
        if isinstance(raw_tags, (list, tuple)):
            tags = ",".join(str(tag) for tag in raw_tags)
        else:
            tags = raw_tags or ""

        headers: list[tuple[str, str]] = []
        for key, value in fields.items():
            if key.startswith("h:") and len(key) > 2:
                headers.append((key[2:], field_value(value) or ""))

        return cls(
            tags=tags,
            delivery_time=field_value(fields.get("o:deliverytime")),
            template=field_value(fields.get("template")) or "",
            template_variables=field_value(fields.get("t:variables")) or "{}",
            recipient_variables=field_value(fields.get("recipient-variables")) or None,
            custom_headers=headers,
        )

    @property
    def reply_to(self) -> str | None:
        for name, value in self.custom_headers:
            if name.lower() == "reply-to":
                return value
        return None


class Message(BaseModel):
    """Canonical record of a single send request.

    Instances are frozen: once stored a message is never mutated and a
    re-send produces a new record. Serialized with ``by_alias=True`` the
    sender appears under the Mailgun ``from`` key.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    id: Annotated[str, Field(description="Message-Id, <uuid@domain>")]
    domain: Annotated[str, Field(description="Sending domain")]
    from_addr: Annotated[str, Field(default="", alias="from", description="Raw From address")]
    to: Annotated[str, Field(description="Normalized comma-joined recipients")]
    cc: Annotated[str, Field(default="")]
    bcc: Annotated[str, Field(default="")]
    subject: Annotated[str, Field(default="")]
    text: Annotated[str, Field(default="")]
    html: Annotated[str, Field(default="")]
    sender: Annotated[str, Field(default="", description="Bare From email")]
    recipients: Annotated[str, Field(default="", description="Bare To emails joined by ', '")]
    timestamp: Annotated[int, Field(description="Creation time, seconds since epoch")]
    headers: Annotated[list[tuple[str, str]], Field(default_factory=list)]
    tags: Annotated[str, Field(default="")]
    template: Annotated[str, Field(default="")]
    template_variables: Annotated[str, Field(default="{}")]
    recipient_variables: Annotated[str, Field(default="{}")]
    attachments: Annotated[list[StoredAttachment], Field(default_factory=list)]
    content_type: Annotated[str, Field(default="multipart/form-data")]
    mime_content: Annotated[str | None, Field(default=None, description="Raw MIME bytes, base64-encoded (MIME sends)")]
    delivery_time: Annotated[str | None, Field(default=None)]
    reply_to: Annotated[str | None, Field(default=None)]

    def to_document(self) -> dict[str, Any]:
        """JSON-ready representation using Mailgun field names."""
        return self.model_dump(mode="json", by_alias=True)

    @property
    def mime_bytes(self) -> bytes | None:
        """The uploaded MIME message exactly as received."""
        if self.mime_content is None:
            return None
        return base64.b64decode(self.mime_content)


class RecipientResult(BaseModel):
    """Outcome of the send to one ``to`` recipient."""

    recipient: str
    success: bool
    error: Annotated[str | None, Field(default=None)]


class DeliveryOutcome(BaseModel):
    """Aggregate result of one per-recipient fan-out.

    ``successful_sends + failed_sends == total_recipients`` always holds and
    ``success`` is True only when no recipient failed.
    """

    success: bool
    total_recipients: Annotated[int, Field(default=0, ge=0)]
    successful_sends: Annotated[int, Field(default=0, ge=0)]
    failed_sends: Annotated[int, Field(default=0, ge=0)]
    results: Annotated[list[RecipientResult], Field(default_factory=list)]
    errors: Annotated[list[str], Field(default_factory=list)]
    message: Annotated[str, Field(default="")]

    @classmethod
    def from_results(cls, results: list[RecipientResult], errors: list[str], noun: str = "emails") -> DeliveryOutcome:
        failed = sum(1 for result in results if not result.success)
        success = failed == 0
        return cls(
            success=success,
            total_recipients=len(results),
            successful_sends=len(results) - failed,
            failed_sends=failed,
            results=results,
            errors=errors,
            message=f"All {noun} sent successfully via SMTP" if success else f"Some {noun} failed to send",
        )


class MessageSummary(BaseModel):
    """Message summary for list display."""

    model_config = ConfigDict(populate_by_name=True)

    storage_key: str
    stored_at: str
    id: str
    domain: str
    from_addr: Annotated[str, Field(default="", alias="from")]
    to: Annotated[str, Field(default="")]
    subject: Annotated[str, Field(default="")]
    timestamp: Annotated[int, Field(default=0)]


class StorageStats(BaseModel):
    """Aggregate figures over the message and attachment stores."""

    total_messages: int
    total_attachments: int
    total_size_bytes: int
    total_size_mb: float
    storage_path: str
