# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Logging utilities for the mail gateway.

Handlers, level and format are configured once with ``logging.basicConfig()``
by the process entry point (``main.py`` or ``mail-gateway serve``); modules
only ask for a named logger.

Example:
    Typical usage in a module::

        from mail_gateway.logger import get_logger

        logger = get_logger("RateGate")
        logger.info("Client %s throttled", client_ip)
"""

import logging

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def get_logger(name: str = "MailGateway") -> logging.Logger:
    """Retrieve a named logger without touching handler configuration.

    Args:
        name: The logger name. Defaults to "MailGateway".

    Returns:
        A ``logging.Logger`` instance bound to the given name.
    """
    return logging.getLogger(name)


def configure_logging(level: str = "INFO") -> None:
    """Install the process-wide handler with the gateway's log format.

    Args:
        level: Level name such as ``"DEBUG"`` or ``"INFO"``. Unknown names
            fall back to INFO.
    """
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt=LOG_DATE_FORMAT,
        force=True,
    )
