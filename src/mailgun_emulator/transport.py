# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""SMTP transport built on aiosmtplib.

The transport holds the relay configuration; each delivery call opens its
own :class:`SmtpSession` and reuses it for every recipient of that call.
The session connects lazily on the first send and reconnects when the
server dropped the connection after a previous send.

Encryption modes (``[smtp] encryption``):

- ``ssl``: implicit TLS from the first byte (typically port 465)
- ``tls``: plain connect upgraded with STARTTLS (typically port 587)
- anything else: plain SMTP

Example:
    Sending through a session::

        transport = SmtpTransport(settings.smtp)
        async with transport.session() as session:
            await session.send(email_message)
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from email.message import EmailMessage
from typing import Any

import aiosmtplib

from .config_loader import SmtpConfig
from .logger import get_logger

logger = get_logger("SmtpTransport")

# Errors a send or connect can raise; callers treat them as delivery failures.
TRANSPORT_ERRORS = (aiosmtplib.SMTPException, OSError, asyncio.TimeoutError)

# Grace added on top of the client timeout for the outer wait_for guard.
CONNECT_GRACE_SECONDS = 5.0


class SmtpTransport:
    """Factory of SMTP sessions for one relay configuration.

    Args:
        config: SMTP relay settings.
        smtp_factory: Callable building the aiosmtplib client. Tests replace
            it with a fake.
    """

    def __init__(self, config: SmtpConfig, smtp_factory: Callable[..., Any] | None = None):
        self.config = config
        self.smtp_factory = smtp_factory or aiosmtplib.SMTP

    def _client(self) -> Any:
        encryption = (self.config.encryption or "").lower()
        return self.smtp_factory(
            hostname=self.config.host,
            port=self.config.port,
            use_tls=encryption == "ssl",
            start_tls=encryption == "tls",
            validate_certs=self.config.verify_peer and not self.config.allow_self_signed,
            timeout=float(self.config.timeout),
        )

    async def connect(self) -> Any:
        """Open a connection and log in when authentication is configured.

        Raises:
            asyncio.TimeoutError: If the handshake outlasts the configured timeout.
            aiosmtplib.SMTPException: If connection or authentication fails.
        """
        smtp = self._client()

        async def _do_connect() -> None:
            await smtp.connect()
            if self.config.auth and self.config.username:
                await smtp.login(self.config.username, self.config.password)

        await asyncio.wait_for(_do_connect(), timeout=self.config.timeout + CONNECT_GRACE_SECONDS)
        logger.debug(
            "Connected to %s:%s (encryption=%s)",
            self.config.host,
            self.config.port,
            self.config.encryption or "none",
        )
        return smtp

    def session(self) -> SmtpSession:
        return SmtpSession(self)

    async def test_connection(self) -> None:
        """Connect, authenticate and quit without sending anything."""
        smtp = await self.connect()
        await smtp.quit()


class SmtpSession:
    """One SMTP conversation reused sequentially across recipients."""

    def __init__(self, transport: SmtpTransport):
        self.transport = transport
        self._smtp: Any | None = None

    async def __aenter__(self) -> SmtpSession:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    @property
    def connected(self) -> bool:
        return self._smtp is not None and bool(getattr(self._smtp, "is_connected", True))

    async def _ensure_connected(self) -> Any:
        if not self.connected:
            self._smtp = None
            self._smtp = await self.transport.connect()
        return self._smtp

    async def send(
        self,
        message: EmailMessage,
        sender: str | None = None,
        recipients: list[str] | None = None,
    ) -> dict[str, Any]:
        """Send ``message`` and return the recipients the server refused.

        When ``recipients`` is None they are taken from the To/Cc/Bcc headers
        and the Bcc header is not transmitted.
        """
        smtp = await self._ensure_connected()
        try:
            refused, _response = await smtp.send_message(message, sender=sender, recipients=recipients)
        except aiosmtplib.SMTPServerDisconnected:
            self._smtp = None
            raise
        return refused or {}

    async def close(self) -> None:
        smtp, self._smtp = self._smtp, None
        if smtp is None:
            return
        try:
            await smtp.quit()
        except TRANSPORT_ERRORS as exc:
            logger.debug("Ignoring error while closing SMTP session: %s", exc)
