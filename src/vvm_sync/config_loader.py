# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Configuration loader for sync engine settings.

This module provides utilities for loading engine settings from
INI-style configuration files or environment variables.

Example:
    Configuration file format (config.ini)::

        [storage]
        db_path = /data/vvm_sync.db

        [sync]
        network_timeout_seconds = 60
        network_retry_count = 6
        base_retry_interval_ms = 5000
        imap_folder = INBOX

    Loading sync configuration::

        config = load_sync_config("/etc/vvm-sync/config.ini")
        # Returns SyncConfig dataclass
"""

from __future__ import annotations

import configparser
import os
from dataclasses import dataclass
from pathlib import Path

from vvm_sync.logger import get_logger
from vvm_sync.models import DEFAULT_BASE_RETRY_INTERVAL_MS


@dataclass
class SyncConfig:
    """Configuration for the sync engine.

    Attributes:
        db_path: SQLite database holding voicemails and accounts.
        network_timeout_seconds: How long to wait for the network request.
        network_retry_count: In-process retry budget per sync invocation.
        base_retry_interval_ms: First deferred retry delay after the budget
            is exhausted; doubled on every further failure.
        imap_folder: Mailbox folder holding voicemails.
    """

    db_path: str = "/data/vvm_sync.db"
    network_timeout_seconds: float = 60.0
    network_retry_count: int = 6
    base_retry_interval_ms: int = DEFAULT_BASE_RETRY_INTERVAL_MS
    imap_folder: str = "INBOX"


logger = get_logger("config_loader")


def load_sync_config(config_path: str | None = None) -> SyncConfig:
    """Load sync configuration from config file or environment.

    Priority: config file > environment variables > defaults.

    Environment variables:
        VVM_DB_PATH: SQLite database path
        VVM_NETWORK_TIMEOUT_SECONDS: Network request timeout
        VVM_NETWORK_RETRY_COUNT: In-process retry budget
        VVM_BASE_RETRY_INTERVAL_MS: Base deferred retry interval
        VVM_IMAP_FOLDER: Mailbox folder

    Args:
        config_path: Optional path to config.ini file

    Returns:
        SyncConfig with parsed settings, using defaults for missing values.
    """
    config_values: dict = {}

    env_mapping = {
        "db_path": ("VVM_DB_PATH", str, SyncConfig.db_path),
        "network_timeout_seconds": ("VVM_NETWORK_TIMEOUT_SECONDS", float, 60.0),
        "network_retry_count": ("VVM_NETWORK_RETRY_COUNT", int, 6),
        "base_retry_interval_ms": ("VVM_BASE_RETRY_INTERVAL_MS", int, DEFAULT_BASE_RETRY_INTERVAL_MS),
        "imap_folder": ("VVM_IMAP_FOLDER", str, "INBOX"),
    }

    for key, (env_var, type_fn, default) in env_mapping.items():
        env_value = os.environ.get(env_var)
        if env_value is not None:
            try:
                config_values[key] = type_fn(env_value)
            except (ValueError, TypeError):
                logger.warning("Invalid value for %s, using default", env_var)
                config_values[key] = default
        else:
            config_values[key] = default

    if config_path and Path(config_path).exists():
        config = configparser.ConfigParser()
        config.read(config_path)

        if config.has_section("storage"):
            db_path = config.get("storage", "db_path", fallback=None)
            if db_path and db_path.strip():
                config_values["db_path"] = db_path.strip()

        if config.has_section("sync"):
            def get_float(key: str, default: float) -> float:
                try:
                    return config.getfloat("sync", key, fallback=default)
                except ValueError:
                    return default

            def get_int(key: str, default: int) -> int:
                try:
                    return config.getint("sync", key, fallback=default)
                except ValueError:
                    return default

            config_values["network_timeout_seconds"] = get_float(
                "network_timeout_seconds", config_values["network_timeout_seconds"]
            )
            config_values["network_retry_count"] = get_int(
                "network_retry_count", config_values["network_retry_count"]
            )
            config_values["base_retry_interval_ms"] = get_int(
                "base_retry_interval_ms", config_values["base_retry_interval_ms"]
            )
            folder = config.get("sync", "imap_folder", fallback=None)
            if folder and folder.strip():
                config_values["imap_folder"] = folder.strip()

    config_values["network_retry_count"] = max(1, config_values["network_retry_count"])
    return SyncConfig(**config_values)
