# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Configuration loader for the Mailgun emulator.

Settings are read from an INI-style file and grouped into dataclasses, one
per section. Every key falls back to an environment variable named
``MGE_<SECTION>_<KEY>`` and then to a built-in default, so the service can
run with no configuration file at all.

Example:
    Configuration file format (config.ini)::

        [api]
        username = api
        password = key-test123456789

        [storage]
        path = /var/lib/mailgun-emulator
        retention_days = 30

        [limits]
        max_recipients = 1000
        max_attachment_size = 26214400

        [smtp]
        enabled = true
        host = smtp.example.org
        port = 587
        encryption = tls
        auth = true
        username = mailer@example.org
        password = secret
        from_email = mailer@example.org
        from_name = Mailer

        [logging]
        level = INFO
        file = /var/log/mailgun-emulator.log

    Loading it::

        settings = load_settings("/etc/mailgun-emulator/config.ini")
        if settings.smtp.is_configured:
            ...
"""

from __future__ import annotations

import configparser
import os
from dataclasses import dataclass, field
from pathlib import Path

from .logger import get_logger

logger = get_logger("ConfigLoader")

DEFAULT_CONFIG_PATH = "config.ini"
ENV_PREFIX = "MGE"

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


@dataclass
class ApiConfig:
    """HTTP API settings.

    Attributes:
        username: HTTP Basic username expected on every request.
        password: HTTP Basic password (the Mailgun "API key").
    """

    username: str = "api"
    password: str = "key-test123456789"


@dataclass
class StorageConfig:
    """Flat-file storage settings."""

    path: str = "./storage"
    retention_days: int = 30


@dataclass
class LimitsConfig:
    """Limits enforced by the message validator."""

    max_recipients: int = 1000
    max_attachment_size: int = 25 * 1024 * 1024
    max_message_size: int = 25 * 1024 * 1024


@dataclass
class SmtpConfig:
    """SMTP relay settings.

    Attributes:
        enabled: Relay accepted messages through SMTP. When False the service
            runs in simulation mode (validate and store only).
        host: SMTP server hostname.
        port: SMTP server port (587 for STARTTLS, 465 for implicit TLS).
        encryption: ``tls`` (STARTTLS), ``ssl`` (implicit TLS) or empty for plain.
        auth: Whether to log in with username/password.
        username: SMTP login.
        password: SMTP password.
        from_email: Sender used when a message carries no usable From address.
        from_name: Display name paired with ``from_email``.
        timeout: Connect/IO timeout in seconds.
        debug: Log the SMTP conversation at DEBUG level.
        verify_peer: Verify the server TLS certificate.
        allow_self_signed: Accept self-signed certificates; disables
            certificate validation even when ``verify_peer`` is True.
    """

    enabled: bool = False
    host: str = ""
    port: int = 587
    encryption: str = "tls"
    auth: bool = True
    username: str = ""
    password: str = ""
    from_email: str = ""
    from_name: str = "Mailgun Emulator"
    timeout: int = 30
    debug: bool = False
    verify_peer: bool = True
    allow_self_signed: bool = False

    @property
    def is_configured(self) -> bool:
        """True when the relay is enabled and host/username are both set."""
        return bool(self.enabled and self.host and self.username)


@dataclass
class ServerConfig:
    """Uvicorn binding."""

    host: str = "0.0.0.0"
    port: int = 8080


@dataclass
class LoggingConfig:
    """Logging settings."""

    level: str = "INFO"
    file: str | None = None


@dataclass
class Settings:
    """All configuration sections."""

    api: ApiConfig = field(default_factory=ApiConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    limits: LimitsConfig = field(default_factory=LimitsConfig)
    smtp: SmtpConfig = field(default_factory=SmtpConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    config_file: str | None = None


class SettingsReader:
    """Typed accessors over a parsed INI file with environment fallbacks."""

    def __init__(self, parser: configparser.ConfigParser, environ: dict[str, str] | None = None):
        self.parser = parser
        self.environ = os.environ if environ is None else environ

    def _raw(self, section: str, option: str) -> str | None:
        if self.parser.has_option(section, option):
            return self.parser.get(section, option)
        return self.environ.get(f"{ENV_PREFIX}_{section}_{option}".upper())

    def get_str(self, section: str, option: str, default: str | None = None) -> str | None:
        value = self._raw(section, option)
        if value is None:
            return default
        return value.strip()

    def get_int(self, section: str, option: str, default: int) -> int:
        value = self._raw(section, option)
        if value is None or not value.strip():
            return default
        try:
            return int(value)
        except ValueError:
            logger.warning(f"Invalid int for [{section}] {option}, using default {default}")
            return default

    def get_bool(self, section: str, option: str, default: bool) -> bool:
        value = self._raw(section, option)
        if value is None:
            return default
        normalized = value.strip().lower()
        if normalized in _TRUE_VALUES:
            return True
        if normalized in _FALSE_VALUES:
            return False
        logger.warning(f"Invalid boolean for [{section}] {option}, using default {default}")
        return default


def load_settings(config_path: str | None = None, environ: dict[str, str] | None = None) -> Settings:
    """Load settings from an INI file with environment variable fallbacks.

    Args:
        config_path: Path to the INI file. Defaults to ``$MGE_CONFIG`` or
            ``config.ini``. A missing file is not an error: environment
            variables and defaults are used instead.
        environ: Environment mapping, ``os.environ`` when omitted.

    Returns:
        A populated :class:`Settings` instance.
    """
    env = os.environ if environ is None else environ
    path = Path(config_path or env.get(f"{ENV_PREFIX}_CONFIG", DEFAULT_CONFIG_PATH)).expanduser()

    parser = configparser.ConfigParser(interpolation=None)
    config_file: str | None = None
    if path.exists():
        parser.read(path)
        config_file = str(path)
    else:
        logger.debug(f"Config file {path} not found, using environment and defaults")

    r = SettingsReader(parser, env)
    defaults = Settings()

    api = ApiConfig(
        username=r.get_str("api", "username", defaults.api.username),
        password=r.get_str("api", "password", defaults.api.password),
    )
    storage = StorageConfig(
        path=str(Path(r.get_str("storage", "path", defaults.storage.path)).expanduser()),
        retention_days=r.get_int("storage", "retention_days", defaults.storage.retention_days),
    )
    limits = LimitsConfig(
        max_recipients=r.get_int("limits", "max_recipients", defaults.limits.max_recipients),
        max_attachment_size=r.get_int("limits", "max_attachment_size", defaults.limits.max_attachment_size),
        max_message_size=r.get_int("limits", "max_message_size", defaults.limits.max_message_size),
    )
    smtp = SmtpConfig(
        enabled=r.get_bool("smtp", "enabled", defaults.smtp.enabled),
        host=r.get_str("smtp", "host", defaults.smtp.host) or "",
        port=r.get_int("smtp", "port", defaults.smtp.port),
        encryption=(r.get_str("smtp", "encryption", defaults.smtp.encryption) or "").lower(),
        auth=r.get_bool("smtp", "auth", defaults.smtp.auth),
        username=r.get_str("smtp", "username", defaults.smtp.username) or "",
        password=r.get_str("smtp", "password", defaults.smtp.password) or "",
        from_email=r.get_str("smtp", "from_email", defaults.smtp.from_email) or "",
        from_name=r.get_str("smtp", "from_name", defaults.smtp.from_name) or "",
        timeout=r.get_int("smtp", "timeout", defaults.smtp.timeout),
        debug=r.get_bool("smtp", "debug", defaults.smtp.debug),
        verify_peer=r.get_bool("smtp", "verify_peer", defaults.smtp.verify_peer),
        allow_self_signed=r.get_bool("smtp", "allow_self_signed", defaults.smtp.allow_self_signed),
    )
    server = ServerConfig(
        host=r.get_str("server", "host", defaults.server.host),
        port=r.get_int("server", "port", defaults.server.port),
    )
    log_cfg = LoggingConfig(
        level=(r.get_str("logging", "level", defaults.logging.level) or "INFO").upper(),
        file=r.get_str("logging", "file") or None,
    )

    if smtp.enabled and not smtp.is_configured:
        logger.warning("SMTP relay enabled but host or username missing: running in simulation mode")

    return Settings(
        api=api,
        storage=storage,
        limits=limits,
        smtp=smtp,
        server=server,
        logging=log_cfg,
        config_file=config_file,
    )
