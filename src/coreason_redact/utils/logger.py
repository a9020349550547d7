# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_redact

"""Shared loguru logger.

Matched text is sensitive: callers log identifiers and counts, never spans.
"""

import sys

from loguru import logger

from coreason_redact.config import settings

__all__ = ["logger", "configure_logging"]

_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
)


def configure_logging(level: str = settings.log_level) -> None:
    """Replaces the default loguru sink with a stderr sink at `level`."""
    logger.remove()
    logger.add(sys.stderr, level=level, format=_FORMAT)


configure_logging()
