# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Logging helpers for the voicemail sync engine."""

import logging


def get_logger(name: str = "VvmSync") -> logging.Logger:
    """Return a configured :class:`logging.Logger` instance.

    Note: Logging configuration should be done via logging.basicConfig()
    in the entry point (cli.py) to avoid duplicate handlers.
    """
    return logging.getLogger(name)
