# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Request facade of the Mailgun emulator.

:class:`MailApiCore` ties the validator, the storage and the delivery engine
together and shapes results into Mailgun-compatible payloads. It knows
nothing about HTTP: the API layer hands it raw field bags and uploads and
maps the exceptions below to status codes.

Processing of a send request:

1. validate the fields, then the attachment sizes (nothing is stored on failure)
2. store the uploads and build an immutable :class:`~mailgun_emulator.models.Message`
3. persist the message
4. when the SMTP relay is configured, fan the message out per recipient
5. answer ``{"id", "message": "Queued. Thank you."}`` whatever the delivery outcome
"""

from __future__ import annotations

import base64
import email
import logging
import time
import uuid
from email import policy
from typing import Any

from .config_loader import Settings
from .delivery import DeliveryEngine
from .logger import get_logger
from .models import (
    DeliveryOutcome,
    FieldBag,
    Message,
    MessageOptions,
    StorageStats,
    UploadedFile,
    collapse_fields,
    field_value,
)
from .prometheus import MailMetrics
from .recipients import (
    extract_email,
    extract_emails,
    generate_recipient_variables,
    normalize_recipients,
    split_addresses,
)
from .storage import MessageStorage
from .validator import MessageValidator

QUEUED_MESSAGE = "Queued. Thank you."


class MessageValidationError(ValueError):
    """Raised when a send request is rejected before being stored."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason
        self.code = "invalid_message"


class MessageNotFoundError(LookupError):
    """Raised when a storage key does not resolve to a readable message."""

    def __init__(self, storage_key: str):
        super().__init__("Message not found")
        self.storage_key = storage_key


class AttachmentNotFoundError(LookupError):
    def __init__(self, attachment_id: str):
        super().__init__("Attachment not found")
        self.attachment_id = attachment_id


def generate_message_id(domain: str) -> str:
    return f"<{uuid.uuid4()}@{domain}>"


class MailApiCore:
    """Validate, store and relay Mailgun send requests.

    Args:
        settings: Loaded configuration. Defaults apply when omitted.
        storage: Message storage; built from ``settings.storage.path`` when omitted.
        delivery: Delivery engine; built from ``settings.smtp`` when omitted.
        validator: Request validator; built from ``settings.limits`` when omitted.
        metrics: Prometheus metrics collector.
        logger: Custom logger instance. If None, uses default logger.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        storage: MessageStorage | None = None,
        delivery: DeliveryEngine | None = None,
        validator: MessageValidator | None = None,
        metrics: MailMetrics | None = None,
        logger: logging.Logger | None = None,
    ):
        self.settings = settings or Settings()
        self.storage = storage or MessageStorage(self.settings.storage.path)
        self.delivery = delivery or DeliveryEngine(self.settings.smtp)
        self.validator = validator or MessageValidator(self.settings.limits)
        self.metrics = metrics or MailMetrics()
        self.logger = logger or get_logger()

    async def start(self) -> None:
        """Log the operating mode and seed the storage gauge."""
        smtp = self.delivery.config
        if self.delivery.is_enabled:
            self.logger.info(
                "SMTP relay enabled via %s:%s (encryption=%s)",
                smtp.host,
                smtp.port,
                smtp.encryption or "none",
            )
        elif smtp.enabled:
            self.logger.warning("SMTP relay enabled but host or username missing, running in simulation mode")
        else:
            self.logger.info("SMTP relay disabled, running in simulation mode")
        await self.refresh_stored_gauge()

    # ------------------------------------------------------------------ sending
    async def send_message(
        self,
        domain: str,
        fields: FieldBag,
        files: list[UploadedFile] | None = None,
    ) -> dict[str, Any]:
        """Accept a regular send request.

        Raises:
            MessageValidationError: If the fields or attachments are rejected.
            StorageError: If the message cannot be persisted.
        """
        fields = collapse_fields(fields)
        uploads = list(files or [])
        self._validate(domain, self.validator.validate_message(fields))
        self._validate(domain, self.validator.validate_attachments(uploads))

        message = await self.build_message(domain, fields, uploads)
        storage_key = await self.storage.store_message(message)
        self.metrics.inc_accepted(domain)
        self.metrics.inc_stored()

        outcome: DeliveryOutcome | None = None
        if self.delivery.is_enabled:
            outcome = await self.delivery.deliver(message)
            self._record_outcome(message, outcome, "SMTP")

        self.logger.info(
            "Message processed domain=%s message_id=%s to=%s subject=%s storage_key=%s smtp_enabled=%s",
            domain,
            message.id,
            message.to,
            message.subject or "no subject",
            storage_key,
            outcome is not None,
        )
        return self._queued_response(message.id, outcome)

    async def send_mime_message(
        self,
        domain: str,
        fields: FieldBag,
        mime_file: UploadedFile | None,
    ) -> dict[str, Any]:
        """Accept a pre-built MIME message (``to`` plus a ``message`` upload).

        Raises:
            MessageValidationError: If ``to`` or the upload is missing, or the
                upload exceeds ``limits.max_message_size``.
            StorageError: If the message cannot be persisted.
        """
        fields = collapse_fields(fields)
        if not split_addresses(fields.get("to")) or mime_file is None:
            self._validate(domain, (False, "Missing required fields: to, message"))
        self._validate(domain, self.validator.validate_message_size(mime_file.size))

        message = self.build_mime_message(domain, fields, mime_file.content)
        storage_key = await self.storage.store_message(message)
        self.metrics.inc_accepted(domain)
        self.metrics.inc_stored()

        outcome: DeliveryOutcome | None = None
        if self.delivery.is_enabled:
            outcome = await self.delivery.deliver_mime(message)
            self._record_outcome(message, outcome, "SMTP MIME")

        self.logger.info(
            "MIME message processed domain=%s message_id=%s to=%s storage_key=%s smtp_enabled=%s",
            domain,
            message.id,
            message.to,
            storage_key,
            outcome is not None,
        )
        return self._queued_response(message.id, outcome)

    async def build_message(self, domain: str, fields: FieldBag, uploads: list[UploadedFile]) -> Message:
        """Store the uploads and build the message record for a regular send."""
        options = MessageOptions.from_fields(fields)
        from_addr = field_value(fields.get("from")) or ""
        subject = field_value(fields.get("subject")) or ""
        to = normalize_recipients(fields.get("to"))

        attachments = []
        for upload in uploads:
            stored = await self.storage.store_attachment(upload)
            if stored is not None:
                attachments.append(stored)

        headers = [
            ("Mime-Version", "1.0"),
            ("Subject", subject),
            ("From", from_addr),
            ("To", to),
            ("Content-Transfer-Encoding", "7bit"),
        ]
        headers.extend(options.custom_headers)

        return Message(
            id=generate_message_id(domain),
            domain=domain,
            from_addr=from_addr,
            to=to,
            cc=normalize_recipients(fields.get("cc")),
            bcc=normalize_recipients(fields.get("bcc")),
            subject=subject,
            text=field_value(fields.get("text")) or "",
            html=field_value(fields.get("html")) or "",
            sender=extract_email(from_addr),
            recipients=extract_emails(to),
            timestamp=int(time.time()),
            headers=headers,
            tags=options.tags,
            template=options.template,
            template_variables=options.template_variables,
            recipient_variables=generate_recipient_variables(fields.get("to"), options.recipient_variables),
            attachments=attachments,
            content_type="multipart/form-data",
            delivery_time=options.delivery_time,
            reply_to=options.reply_to,
        )

    def build_mime_message(self, domain: str, fields: FieldBag, content: bytes) -> Message:
        """Build the message record for a MIME send.

        ``From`` and ``Subject`` are read from the MIME headers so that
        listings and retrieval show them.
        """
        options = MessageOptions.from_fields(fields)
        parsed = email.message_from_bytes(content, policy=policy.default)
        from_addr = str(parsed.get("From", "") or "")
        to = normalize_recipients(fields.get("to"))
        return Message(
            id=generate_message_id(domain),
            domain=domain,
            from_addr=from_addr,
            to=to,
            subject=str(parsed.get("Subject", "") or ""),
            sender=extract_email(from_addr),
            recipients=extract_emails(to),
            timestamp=int(time.time()),
            headers=[],
            tags=options.tags,
            template=options.template,
            template_variables=options.template_variables,
            content_type="message/rfc822",
            mime_content=base64.b64encode(content).decode("ascii"),
            delivery_time=options.delivery_time,
        )

    # ---------------------------------------------------------------- retrieval
    async def retrieve_message(self, domain: str, storage_key: str) -> dict[str, Any]:
        """Mailgun-shaped view of a stored message.

        Raises:
            MessageNotFoundError: If the key is unknown or the record unreadable.
        """
        message = await self.storage.retrieve_message(storage_key)
        if message is None:
            raise MessageNotFoundError(storage_key)

        payload: dict[str, Any] = {
            "Content-Transfer-Encoding": "7bit",
            "Content-Type": message.content_type or "text/plain",
            "From": message.from_addr,
            "Message-Id": message.id,
            "Mime-Version": "1.0",
            "Subject": message.subject,
            "To": message.to,
            "X-Mailgun-Tag": message.tags,
            "sender": message.sender,
            "recipients": message.recipients,
            "body-html": message.html,
            "body-plain": message.text,
            "stripped-html": message.html,
            "stripped-text": message.text,
            "stripped-signature": "",
            "message-headers": [[name, value] for name, value in message.headers],
            "X-Mailgun-Template-Name": message.template,
            "X-Mailgun-Template-Variables": message.template_variables or "{}",
        }
        if message.attachments:
            payload["attachments"] = [
                {
                    "url": f"/v3/domains/{domain}/attachments/{attachment.id}",
                    "content-type": attachment.mime_type,
                    "name": attachment.original_name,
                    "size": attachment.size,
                }
                for attachment in message.attachments
            ]
        if message.mime_content is not None:
            payload["body-mime"] = message.mime_bytes.decode("utf-8", errors="replace")
        return payload

    async def get_attachment(self, attachment_id: str) -> dict[str, Any]:
        """Stored attachment bytes with their size and MIME type.

        Raises:
            AttachmentNotFoundError: If no stored file matches ``attachment_id``.
        """
        attachment = await self.storage.get_attachment(attachment_id)
        if attachment is None:
            raise AttachmentNotFoundError(attachment_id)
        return attachment

    async def list_messages(self, domain: str | None, limit: int = 100, offset: int = 0) -> dict[str, Any]:
        summaries = await self.storage.list_messages(domain=domain, limit=limit, offset=offset)
        return {"items": [summary.model_dump(by_alias=True) for summary in summaries]}

    def queue_status(self, domain: str) -> dict[str, Any]:
        """Sending-queue status; the emulator never pauses its queues."""
        return {
            "regular": {"is_disabled": False, "disabled": None},
            "scheduled": {"is_disabled": False, "disabled": None},
        }

    def delete_envelopes(self, domain: str) -> dict[str, Any]:
        """Drop scheduled messages of ``domain``.

        Nothing is ever scheduled, so this only acknowledges the request.
        """
        self.logger.info("Deleted envelopes for domain: %s", domain)
        return {"message": "done"}

    # --------------------------------------------------------------------- SMTP
    def smtp_status(self) -> dict[str, Any]:
        smtp = self.delivery.config
        enabled = bool(smtp.enabled)
        return {
            "smtp_enabled": enabled,
            "smtp_configured": smtp.is_configured,
            "smtp_host": smtp.host or None,
            "smtp_port": smtp.port,
            "smtp_encryption": smtp.encryption or None,
            "smtp_username": smtp.username if enabled else None,
        }

    async def test_smtp_connection(self) -> tuple[bool, dict[str, Any]]:
        """Open and close a relay connection.

        Returns:
            ``(ok, payload)``. When the relay is not configured ``ok`` is False
            and ``payload["smtp_enabled"]`` is False.
        """
        if not self.delivery.is_enabled:
            return False, {"message": "SMTP is not enabled", "smtp_enabled": False}

        result = await self.delivery.test_connection()
        ok = bool(result.get("success"))
        smtp = self.delivery.config
        return ok, {
            "message": "SMTP connection successful" if ok else "SMTP connection failed",
            "smtp_enabled": True,
            "smtp_host": smtp.host,
            "smtp_port": smtp.port,
            "smtp_encryption": smtp.encryption or None,
            "success": ok,
            "error": result.get("error"),
        }

    # -------------------------------------------------------------- maintenance
    async def storage_stats(self) -> StorageStats:
        return await self.storage.stats()

    async def cleanup(self, retention_days: int | None = None) -> int:
        """Delete messages older than the retention window (config default)."""
        days = self.settings.storage.retention_days if retention_days is None else retention_days
        deleted = await self.storage.cleanup_older_than(days)
        self.logger.info("Cleanup removed %d messages older than %d days", deleted, days)
        await self.refresh_stored_gauge()
        return deleted

    async def clear_all(self) -> tuple[int, int]:
        messages, attachments = await self.storage.clear_all()
        self.logger.warning("Cleared storage: %d messages, %d attachments", messages, attachments)
        await self.refresh_stored_gauge()
        return messages, attachments

    async def refresh_stored_gauge(self) -> None:
        self.metrics.set_stored(await self.storage.count_messages())

    # ----------------------------------------------------------------- helpers
    def _validate(self, domain: str, result: tuple[bool, str | None]) -> None:
        ok, reason = result
        if ok:
            return
        self.metrics.inc_rejected(domain)
        self.logger.info("Rejected message for %s: %s", domain, reason)
        raise MessageValidationError(reason or "Invalid request")

    def _record_outcome(self, message: Message, outcome: DeliveryOutcome, label: str) -> None:
        self.metrics.inc_smtp_sent(message.domain, outcome.successful_sends)
        self.metrics.inc_smtp_failed(message.domain, outcome.failed_sends)
        if outcome.success:
            self.logger.info(
                "%s sending successful for all recipients message_id=%s total=%d",
                label,
                message.id,
                outcome.total_recipients,
            )
        else:
            self.logger.warning(
                "%s sending failed, message stored for simulation message_id=%s total=%d ok=%d failed=%d errors=%s",
                label,
                message.id,
                outcome.total_recipients,
                outcome.successful_sends,
                outcome.failed_sends,
                outcome.errors,
            )

    @staticmethod
    def _queued_response(message_id: str, outcome: DeliveryOutcome | None) -> dict[str, Any]:
        data: dict[str, Any] = {"id": message_id, "message": QUEUED_MESSAGE}
        if outcome is None:
            return data
        data["smtp_status"] = "sent" if outcome.success else "partial_or_failed"
        data["smtp_total_recipients"] = outcome.total_recipients
        data["smtp_successful_sends"] = outcome.successful_sends
        data["smtp_failed_sends"] = outcome.failed_sends
        if not outcome.success:
            data["smtp_errors"] = outcome.errors or ["Unknown error"]
        return data
