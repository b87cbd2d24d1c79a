"""
Persona - Logging
===================
Pre-configured logger factory for consistent log output across all
Persona modules.

Logging verbosity is driven by ``settings.ENV``:
  • ``"dev"``  → DEBUG level
  • ``"prod"`` → WARNING level

Usage:
    from persona.src.utils.logger import get_logger
    logger = get_logger(__name__)
    logger.info("[CHAT] Request accepted for user %s", user_id)
"""

import logging
import sys

from persona.config.settings import settings

_ENV_LEVEL_MAP = {
    "dev": logging.DEBUG,
    "prod": logging.WARNING,
}
_DEFAULT_LEVEL = _ENV_LEVEL_MAP.get(settings.ENV, logging.INFO)


def get_logger(name: str, level: int | None = None) -> logging.Logger:
    """
    Return a named logger with the standard Persona formatter.

    Args:
        name:  Typically ``__name__`` of the calling module.
        level: Explicit level override.  Derived from ``settings.ENV``
               when *None*.
    """
    resolved_level = level if level is not None else _DEFAULT_LEVEL
    logger = logging.getLogger(name)

    if not logger.handlers:
        logger.setLevel(resolved_level)

        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(resolved_level)
        console_handler.setFormatter(logging.Formatter(fmt="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s", datefmt="%Y-%m-%d %H:%M:%S"))
        logger.addHandler(console_handler)

        # Handler is attached here; the root logger would print twice
        logger.propagate = False

    return logger
