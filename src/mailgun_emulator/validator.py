# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Validation of Mailgun send requests.

:class:`MessageValidator` runs an ordered chain of rules over the raw request
field bag and stops at the first failure. Every check returns a
``(is_valid, reason)`` tuple; malformed input is a normal outcome and never
raises.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from datetime import datetime, timedelta, timezone
from email.utils import parsedate_to_datetime
from typing import Any

from .config_loader import LimitsConfig
from .models import FieldBag, UploadedFile, collapse_fields
from .recipients import extract_email, split_addresses

REQUIRED_FIELDS = ("from", "to", "subject")
CONTENT_FIELDS = ("text", "html", "template")
MAX_SCHEDULE_AHEAD = timedelta(days=7)
MAX_TAG_LENGTH = 128

_EMAIL_RE = re.compile(r"^[^\s@]+@[A-Za-z0-9-]+(\.[A-Za-z0-9-]+)+$")
_TAG_RE = re.compile(r"^[A-Za-z0-9_-]+$")

ValidationResult = tuple[bool, str | None]


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, (list, tuple)):
        return not any(str(item).strip() for item in value)
    return str(value) == ""


def _megabytes(size: int) -> str:
    return f"{size / (1024 * 1024):g}"


def parse_delivery_time(value: str) -> datetime | None:
    """Parse an RFC-2822 date (Mailgun's format), falling back to ISO-8601.

    Naive values are taken as UTC. Returns None when neither format matches.
    """
    value = value.strip()
    if not value:
        return None
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class MessageValidator:
    """Ordered rule chain over a send request.

    Args:
        limits: Recipient and size limits from configuration.
    """

    def __init__(self, limits: LimitsConfig | None = None):
        self.limits = limits or LimitsConfig()

    def validate_message(self, fields: FieldBag) -> ValidationResult:
        """Validate a request field bag; the first failing rule wins.

        Repeated keys are collapsed with :func:`~mailgun_emulator.models.collapse_fields`
        first, so the values checked are the values a message is built from.
        """
        fields = collapse_fields(fields)
        for name in REQUIRED_FIELDS:
            if _is_blank(fields.get(name)):
                return False, f"Missing required field: {name}"

        if not any(fields.get(name) is not None for name in CONTENT_FIELDS):
            return False, "Must provide at least one of: text, html, or template"

        ok, error = self.validate_email(str(fields["from"]))
        if not ok:
            return False, f"Invalid from email: {error}"

        for name in ("to", "cc", "bcc"):
            if fields.get(name) is None:
                continue
            ok, error = self.validate_email_list(fields[name])
            if not ok:
                return False, f"Invalid {name} email: {error}"

        total = self.count_recipients(fields)
        if total > self.limits.max_recipients:
            return False, f"Too many recipients. Maximum allowed: {self.limits.max_recipients}"

        if fields.get("o:deliverytime") is not None:
            ok, error = self.validate_delivery_time(str(fields["o:deliverytime"]))
            if not ok:
                return False, f"Invalid delivery time: {error}"

        if fields.get("o:tag") is not None:
            ok, error = self.validate_tags(fields["o:tag"])
            if not ok:
                return False, f"Invalid tags: {error}"

        return True, None

    def validate_email(self, address: str) -> ValidationResult:
        """Check one address, accepting the ``Name <email>`` form."""
        email = extract_email(address)
        if not _EMAIL_RE.match(email):
            return False, f"Invalid email format: {address}"
        return True, None

    def validate_email_list(self, addresses: str | list[str]) -> ValidationResult:
        for address in split_addresses(addresses):
            ok, error = self.validate_email(address)
            if not ok:
                return False, error
        return True, None

    def count_recipients(self, fields: FieldBag) -> int:
        return sum(len(split_addresses(fields.get(name))) for name in ("to", "cc", "bcc"))

    def validate_delivery_time(self, value: str, now: datetime | None = None) -> ValidationResult:
        when = parse_delivery_time(value)
        if when is None:
            return False, "Invalid date format. Use RFC-2822 format."
        now = now or datetime.now(timezone.utc)
        if when <= now:
            return False, "Delivery time must be in the future"
        if when > now + MAX_SCHEDULE_AHEAD:
            return False, "Delivery time cannot be more than 7 days in the future"
        return True, None

    def validate_tags(self, tags: str | list[str]) -> ValidationResult:
        tag_list = split_addresses(tags)
        for tag in tag_list:
            if not _TAG_RE.match(tag):
                return False, (
                    f"Invalid tag format: {tag}. "
                    "Use only alphanumeric characters, hyphens, and underscores."
                )
            if len(tag) > MAX_TAG_LENGTH:
                return False, f"Tag too long: {tag}. Maximum length is {MAX_TAG_LENGTH} characters."
        return True, None

    def validate_attachments(self, files: Iterable[UploadedFile]) -> ValidationResult:
        total = sum(upload.size for upload in files)
        if total > self.limits.max_attachment_size:
            return False, f"Total attachment size exceeds limit of {_megabytes(self.limits.max_attachment_size)}MB"
        return True, None

    def validate_message_size(self, size: int) -> ValidationResult:
        """Check a raw MIME upload against ``limits.max_message_size``."""
        if size > self.limits.max_message_size:
            return False, f"Message size exceeds limit of {_megabytes(self.limits.max_message_size)}MB"
        return True, None
