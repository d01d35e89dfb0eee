# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Per-recipient SMTP fan-out.

A stored message addressed to N ``to`` recipients becomes N physical emails,
each carrying exactly one ``To`` address. CC, BCC, custom headers and
attachments are identical for every copy; subject and bodies are
personalized from the message's recipient variables. A failing recipient
never stops the loop: every outcome is recorded and folded into a single
:class:`~mailgun_emulator.models.DeliveryOutcome` with
``successful_sends + failed_sends == total_recipients``.

The enclosing API request succeeds regardless of the outcome; delivery
problems only show up as diagnostic response fields and log lines.
"""

from __future__ import annotations

import asyncio
import email
import mimetypes
from collections.abc import Callable
from email import policy
from email.message import EmailMessage
from email.utils import formataddr, formatdate
from pathlib import Path
from typing import Any

import aiosmtplib

from .config_loader import SmtpConfig
from .logger import get_logger
from .models import DeliveryOutcome, Message, RecipientAddress, RecipientResult
from .recipients import (
    apply_recipient_variables,
    extract_email,
    extract_name,
    load_recipient_variables,
    parse_recipients,
)
from .transport import TRANSPORT_ERRORS, SmtpTransport

logger = get_logger("Delivery")

NO_RECIPIENTS_ERROR = 'No valid recipients found in "to" field'

# Headers set by the builder itself; custom copies are dropped.
SKIP_HEADERS = frozenset(
    {"mime-version", "subject", "from", "to", "content-transfer-encoding", "reply-to"}
)

# Headers allowed once per email; a custom value replaces the current one.
SINGLE_HEADERS = frozenset({"date", "sender", "cc", "bcc", "message-id", "in-reply-to", "references"})

# Attachment payload loaded once per delivery: (filename, mime type, bytes).
LoadedAttachment = tuple[str, str, bytes]

DELIVERY_ERRORS = TRANSPORT_ERRORS + (ValueError,)


def describe_error(exc: BaseException) -> str:
    """Short human description of a transport failure."""
    if isinstance(exc, aiosmtplib.SMTPRecipientsRefused):
        return "; ".join(f"{item.recipient}: {item.code} {item.message}" for item in exc.recipients)
    if isinstance(exc, aiosmtplib.SMTPResponseException):
        return f"{exc.code} {exc.message}"
    text = str(exc)
    if text:
        return text
    if isinstance(exc, asyncio.TimeoutError):
        return "Timed out"
    return exc.__class__.__name__


def _format_address(address: RecipientAddress) -> str:
    return formataddr((address.name, address.email)) if address.name else address.email


def _format_list(addresses: list[RecipientAddress]) -> str:
    return ", ".join(_format_address(address) for address in addresses)


def _split_mime_type(mime_type: str | None) -> tuple[str, str]:
    if mime_type and "/" in mime_type:
        maintype, subtype = mime_type.split("/", 1)
        return maintype.strip(), subtype.split(";", 1)[0].strip()
    return "application", "octet-stream"


class DeliveryEngine:
    """Relay stored messages through SMTP, one email per ``to`` recipient.

    Args:
        config: SMTP relay settings.
        transport: Transport to use; built from ``config`` when omitted.
    """

    def __init__(self, config: SmtpConfig, transport: SmtpTransport | None = None):
        self.config = config
        self.transport = transport or SmtpTransport(config)

    @property
    def is_enabled(self) -> bool:
        return self.config.is_configured

    # ------------------------------------------------------------------ public
    async def deliver(self, message: Message) -> DeliveryOutcome:
        """Send a regular (field-based) message to each of its ``to`` recipients."""
        attachments = await asyncio.to_thread(self._load_attachments, message)
        variables = load_recipient_variables(message.recipient_variables)

        def build(recipient: RecipientAddress) -> tuple[EmailMessage, str | None, list[str] | None]:
            personal = variables.get(recipient.email)
            return self.build_email(message, recipient, attachments, personal), None, None

        return await self._fan_out(message, build, noun="emails")

    async def deliver_mime(self, message: Message) -> DeliveryOutcome:
        """Send a raw MIME message, rewriting ``To`` for each recipient."""

        def build(recipient: RecipientAddress) -> tuple[EmailMessage, str | None, list[str] | None]:
            email_message, sender = self.build_mime_email(message, recipient)
            return email_message, sender, [recipient.email]

        return await self._fan_out(message, build, noun="MIME emails")

    async def test_connection(self) -> dict[str, Any]:
        try:
            await self.transport.test_connection()
        except TRANSPORT_ERRORS as exc:
            return {"success": False, "error": describe_error(exc)}
        return {"success": True, "message": "SMTP connection successful"}

    # ---------------------------------------------------------------- builders
    def sender_for(self, message: Message) -> tuple[str, str]:
        """Sender email and name, falling back to the configured identity."""
        sender_email = extract_email(message.from_addr) if message.from_addr else ""
        if not sender_email:
            return self.config.from_email, self.config.from_name
        return sender_email, extract_name(message.from_addr)

    def build_email(
        self,
        message: Message,
        recipient: RecipientAddress,
        attachments: list[LoadedAttachment] | None = None,
        variables: dict[str, Any] | None = None,
    ) -> EmailMessage:
        """Compose the email sent to ``recipient``.

        Args:
            message: Stored message.
            recipient: The single ``To`` address of this copy.
            attachments: Preloaded attachment payloads.
            variables: This recipient's personalization values, if any.
        """
        subject, html, text = message.subject, message.html, message.text
        if isinstance(variables, dict):
            subject = apply_recipient_variables(subject, variables)
            html = apply_recipient_variables(html, variables)
            text = apply_recipient_variables(text, variables)

        sender_email, sender_name = self.sender_for(message)
        email_message = EmailMessage()
        email_message["From"] = formataddr((sender_name, sender_email)) if sender_name else sender_email
        email_message["To"] = _format_address(recipient)
        cc = parse_recipients(message.cc)
        if cc:
            email_message["Cc"] = _format_list(cc)
        bcc = parse_recipients(message.bcc)
        if bcc:
            email_message["Bcc"] = _format_list(bcc)
        if message.reply_to:
            email_message["Reply-To"] = extract_email(message.reply_to)
        email_message["Subject"] = subject
        email_message["Date"] = formatdate(localtime=True)

        for name, value in message.headers:
            lowered = name.lower()
            if lowered in SKIP_HEADERS:
                continue
            if lowered in SINGLE_HEADERS:
                del email_message[name]
            email_message[name] = value
        if "Message-ID" not in email_message:
            email_message["Message-ID"] = message.id

        if html:
            if text:
                email_message.set_content(text)
                email_message.add_alternative(html, subtype="html")
            else:
                email_message.set_content(html, subtype="html")
        else:
            email_message.set_content(text or "")

        for filename, mime_type, content in attachments or []:
            maintype, subtype = _split_mime_type(mime_type)
            email_message.add_attachment(content, maintype=maintype, subtype=subtype, filename=filename)
        return email_message

    def build_mime_email(self, message: Message, recipient: RecipientAddress) -> tuple[EmailMessage, str]:
        """Parse the raw MIME body and address it to ``recipient`` only."""
        email_message = email.message_from_bytes(message.mime_bytes or b"", policy=policy.default)
        del email_message["To"]
        email_message["To"] = _format_address(recipient)

        sender = extract_email(email_message.get("From", "") or "")
        if not sender:
            sender = self.config.from_email
            del email_message["From"]
            email_message["From"] = (
                formataddr((self.config.from_name, sender)) if self.config.from_name else sender
            )
        return email_message, sender

    # ---------------------------------------------------------------- internals
    @staticmethod
    def _load_attachments(message: Message) -> list[LoadedAttachment]:
        loaded: list[LoadedAttachment] = []
        for attachment in message.attachments:
            path = Path(attachment.path)
            if not path.is_file():
                logger.debug("Attachment %s missing on disk, skipped", attachment.path)
                continue
            try:
                content = path.read_bytes()
            except OSError as exc:
                logger.debug("Attachment %s unreadable, skipped: %s", attachment.path, exc)
                continue
            mime_type = attachment.mime_type or mimetypes.guess_type(attachment.original_name)[0]
            loaded.append((attachment.original_name or path.name, mime_type or "application/octet-stream", content))
        return loaded

    async def _fan_out(
        self,
        message: Message,
        build: Callable[[RecipientAddress], tuple[EmailMessage, str | None, list[str] | None]],
        noun: str,
    ) -> DeliveryOutcome:
        recipients = parse_recipients(message.to)
        if not recipients:
            return DeliveryOutcome(success=False, errors=[NO_RECIPIENTS_ERROR], message=NO_RECIPIENTS_ERROR)

        total = len(recipients)
        results: list[RecipientResult] = []
        errors: list[str] = []
        async with self.transport.session() as session:
            for index, recipient in enumerate(recipients, start=1):
                try:
                    email_message, sender, envelope = build(recipient)
                    refused = await session.send(email_message, sender=sender, recipients=envelope)
                    if refused:
                        detail = "; ".join(f"{address}: {response}" for address, response in refused.items())
                        raise aiosmtplib.SMTPException(f"Recipients refused: {detail}")
                except DELIVERY_ERRORS as exc:
                    detail = describe_error(exc)
                    logger.error(
                        "Failed to send to %s (%d/%d) message_id=%s host=%s: %s",
                        recipient.email,
                        index,
                        total,
                        message.id,
                        self.config.host,
                        detail,
                    )
                    results.append(RecipientResult(recipient=recipient.email, success=False, error=detail))
                    errors.append(f"Failed to send to {recipient.email}: {detail}")
                    continue
                logger.info(
                    "Email sent via SMTP to %s (%d/%d) message_id=%s host=%s",
                    recipient.email,
                    index,
                    total,
                    message.id,
                    self.config.host,
                )
                results.append(RecipientResult(recipient=recipient.email, success=True))

        return DeliveryOutcome.from_results(results, errors, noun=noun)
