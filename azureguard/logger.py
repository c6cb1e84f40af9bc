"""Package logger."""

from __future__ import annotations

import logging

logger = logging.getLogger("azureguard")


def configure_logging(verbose: bool) -> None:
    """Route package logs to stderr; DEBUG when verbose, WARNING otherwise."""
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")
    logger.setLevel(level)
