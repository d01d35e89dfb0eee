# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Parsing of free-form recipient strings.

Mailgun clients send addresses as ``"Name" <email>``, ``Name <email>`` or a
bare ``email``, either comma-joined in one field or as repeated ``to`` form
fields. Every consumer (validator, storage projections, delivery) goes
through the helpers in this module so the address heuristics live in one
place.

Splitting is a plain comma split: a display name that itself contains a
comma (``"Doe, John" <j@x.org>``) is not supported.
"""

from __future__ import annotations

import json
import re
from typing import Any

from .models import RecipientAddress

_BRACKET_RE = re.compile(r"<([^>]+)>")
_NAME_PREFIX_RE = re.compile(r"^([^<]+)<")
_QUOTED_RE = re.compile(r"""^["'](.+)["']$""", re.DOTALL)
_ESCAPE_RE = re.compile(r"\\(.)", re.DOTALL)
_LOCAL_PART_SEPARATORS = str.maketrans({".": " ", "_": " ", "-": " "})


def split_addresses(value: str | list[str] | None) -> list[str]:
    """Comma-split ``value`` (or each list entry) into trimmed, non-empty segments."""
    if not value:
        return []
    entries = value if isinstance(value, (list, tuple)) else [value]
    segments: list[str] = []
    for entry in entries:
        for part in str(entry).split(","):
            part = part.strip()
            if part:
                segments.append(part)
    return segments


def extract_email(value: str) -> str:
    """Return the address inside angle brackets, or the trimmed input."""
    match = _BRACKET_RE.search(value)
    if match:
        return match.group(1).strip()
    return value.strip()


def extract_emails(value: str) -> str:
    """Bare emails of a comma-joined address list, joined with ``", "``."""
    return ", ".join(extract_email(part.strip()) for part in value.split(","))


def _unquote(name: str) -> str:
    match = _QUOTED_RE.match(name)
    if not match:
        return name
    name = _ESCAPE_RE.sub(r"\1", match.group(1))
    inner = _QUOTED_RE.match(name)
    if inner:
        name = inner.group(1)
    return name


def extract_name(value: str) -> str:
    """Display name of ``Name <email>``, or ``""`` when none is given.

    One level of single or double quoting and one level of backslash
    escaping are removed, so ``"\\"Jane\\"" <j@x.org>`` yields ``Jane``.
    """
    match = _NAME_PREFIX_RE.match(value.strip())
    if not match:
        return ""
    return _unquote(match.group(1).strip())


def display_name_for(value: str) -> str:
    """Like :func:`extract_name`, but invent a name from the local part when missing.

    ``john.doe@x.org`` becomes ``John Doe``. Only used to fill template
    variables, never for routing.
    """
    name = extract_name(value)
    if name:
        return name
    email = extract_email(value)
    if "@" not in email:
        return ""
    local_part = email.split("@", 1)[0].translate(_LOCAL_PART_SEPARATORS)
    return " ".join(word[:1].upper() + word[1:] for word in local_part.split(" "))


def split_name(full_name: str) -> dict[str, str]:
    parts = full_name.split()
    if not parts:
        return {"first": "", "last": ""}
    return {"first": parts[0], "last": " ".join(parts[1:])}


def parse_recipients(raw: str | list[str] | None) -> list[RecipientAddress]:
    """Parse an address list into ordered :class:`RecipientAddress` values.

    Args:
        raw: Comma-joined address string, or a list of such strings.

    Returns:
        One entry per non-empty segment, in input order. Duplicates are kept.
    """
    return [
        RecipientAddress(email=extract_email(segment), name=extract_name(segment))
        for segment in split_addresses(raw)
    ]


def normalize_recipients(to: str | list[str] | None) -> str:
    """Canonical comma-joined form of a ``to`` field (string or repeated fields)."""
    if to is None:
        return ""
    if isinstance(to, (list, tuple)):
        return ",".join(str(entry).strip() for entry in to)
    return str(to).strip()


def generate_recipient_variables(to: str | list[str] | None, provided: str | None = None) -> str:
    """Build the ``recipient-variables`` JSON stored with a message.

    A client-supplied value wins verbatim. A single ``to`` string yields
    ``"{}"``. Repeated ``to`` fields yield one ``{first, last, id}`` entry per
    bare email, ``id`` being ``to_<n>`` over non-empty entries from 1.
    """
    if provided:
        return provided
    if not isinstance(to, (list, tuple)):
        return "{}"

    variables: dict[str, dict[str, str]] = {}
    index = 1
    for entry in to:
        entry = str(entry).strip()
        if not entry:
            continue
        names = split_name(display_name_for(entry))
        variables[extract_email(entry)] = {"first": names["first"], "last": names["last"], "id": f"to_{index}"}
        index += 1
    return json.dumps(variables)


def load_recipient_variables(raw: str | None) -> dict[str, Any]:
    """Decode stored recipient variables; anything but a JSON object reads as empty."""
    if not raw:
        return {}
    try:
        decoded = json.loads(raw)
    except (TypeError, ValueError):
        return {}
    return decoded if isinstance(decoded, dict) else {}


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (str, int, float)) and not isinstance(value, bool):
        return str(value)
    return json.dumps(value)


def apply_recipient_variables(content: str, variables: dict[str, Any] | None) -> str:
    """Substitute ``%recipient.<key>%`` and ``%<key>%`` placeholders.

    Placeholders without a matching key are left untouched.
    """
    if not content or not variables or not isinstance(variables, dict):
        return content
    for key, value in variables.items():
        text = _stringify(value)
        content = content.replace(f"%recipient.{key}%", text)
        content = content.replace(f"%{key}%", text)
    return content
