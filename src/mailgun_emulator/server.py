# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""ASGI application entry point for uvicorn.

This module provides a pre-configured FastAPI application that loads the
INI configuration and builds the :class:`MailApiCore` service at import time.

Usage:
    uvicorn mailgun_emulator.server:app --host 0.0.0.0 --port 8080

Environment variables:
    MGE_CONFIG: Path to the INI configuration file (default: config.ini)
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from .api import create_app
from .config_loader import Settings, load_settings
from .core import MailApiCore
from .logger import configure_logging


def build_app(settings: Settings) -> FastAPI:
    """Create the service and wrap it in a FastAPI app with a lifespan."""
    core = MailApiCore(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan handler: logs the mode and seeds metrics."""
        await core.start()
        yield

    return create_app(
        core,
        username=settings.api.username,
        password=settings.api.password,
        lifespan=lifespan,
    )


_settings = load_settings()
configure_logging(_settings.logging.level, _settings.logging.file, smtp_debug=_settings.smtp.debug)

# Create the configured application
app = build_app(_settings)
