#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""
Logging for connector_hub package.
"""

from __future__ import annotations

import logging

logger = logging.getLogger(__name__.rsplit('.', 1)[0])

def configure_debug_logging(enable_debug_log: bool) -> None:
    """Raise the package logger to DEBUG when the configuration asks for it.

    When disabled the level is left NOTSET so that the application's root
    logging configuration decides what is shown."""
    logger.setLevel(logging.DEBUG if enable_debug_log else logging.NOTSET)
