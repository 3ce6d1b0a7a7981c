"""Logging setup shared by applications embedding facenorm."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from facenorm.config import get_settings

if TYPE_CHECKING:
    from facenorm.config import Settings

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(settings: Settings | None = None) -> None:
    """Install the package log format at the configured level.

    Library modules only log at DEBUG; call this from the application entry
    point to see those records.
    """
    settings = settings or get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level),
        format=LOG_FORMAT,
    )
    logging.getLogger("facenorm").setLevel(settings.log_level)
