# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Mailgun-compatible transactional email emulator.

This package accepts Mailgun ``/v3`` send requests over HTTP and provides:

- Request validation with Mailgun-style error messages
- Flat-file JSON storage of messages and attachments
- Optional per-recipient relaying through a real SMTP server
- Retrieval, listing and retention cleanup of stored messages
- Prometheus metrics and a maintenance CLI

Example:
    Basic usage with the FastAPI application::

        from mailgun_emulator.config_loader import load_settings
        from mailgun_emulator.server import build_app

        app = build_app(load_settings("config.ini"))

Authors:
    Softwell S.r.l.
"""
