# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Logging utilities for the Mailgun emulator.

Modules obtain their logger through :func:`get_logger`. Handlers, level and
format are configured exactly once by the entry point (``main.py``, the CLI
or ``server.py``) through :func:`configure_logging`, to avoid duplicate
handlers when the application is imported several times.

Example:
    Typical usage in a module::

        from mailgun_emulator.logger import get_logger

        logger = get_logger("Storage")
        logger.info("Message stored")
"""

from __future__ import annotations

import logging
from pathlib import Path

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def get_logger(name: str = "MailgunEmulator") -> logging.Logger:
    """Retrieve a logger instance.

    This function does not configure handlers or formatters; that
    responsibility lies with :func:`configure_logging`.

    Args:
        name: The logger name. Defaults to "MailgunEmulator".

    Returns:
        A ``logging.Logger`` instance bound to the given name.
    """
    return logging.getLogger(name)


def configure_logging(level: str = "INFO", log_file: str | None = None, smtp_debug: bool = False) -> None:
    """Configure root logging for the process.

    Args:
        level: Level name (DEBUG, INFO, WARNING...). Unknown names fall back to INFO.
        log_file: Optional path of a file that receives a copy of every record.
            Parent directories are created when missing.
        smtp_debug: When True, the ``aiosmtplib`` logger is lowered to DEBUG so
            the SMTP conversation shows up in the log.
    """
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        path = Path(log_file).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(path, encoding="utf-8"))

    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt=LOG_DATE_FORMAT,
        handlers=handlers,
        force=True,
    )
    if smtp_debug:
        logging.getLogger("aiosmtplib").setLevel(logging.DEBUG)
