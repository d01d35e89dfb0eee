# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Run the Mailgun emulator with uvicorn.

Configuration is read from the INI file named by ``MGE_CONFIG``
(default: ``config.ini``); every key can also be set through an
``MGE_<SECTION>_<KEY>`` environment variable.
"""

import uvicorn

from mailgun_emulator.config_loader import load_settings
from mailgun_emulator.logger import configure_logging
from mailgun_emulator.server import build_app


def main() -> None:
    settings = load_settings()
    configure_logging(settings.logging.level, settings.logging.file, smtp_debug=settings.smtp.debug)
    uvicorn.run(build_app(settings), host=settings.server.host, port=settings.server.port)


if __name__ == "__main__":
    main()
