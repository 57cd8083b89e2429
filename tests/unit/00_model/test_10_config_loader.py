# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Tests for sync configuration loading from config.ini and environment."""

from vvm_sync.config_loader import SyncConfig, load_sync_config


def test_defaults_without_file(monkeypatch):
    """Test defaults apply when no file and no environment is given."""
    for var in ("VVM_DB_PATH", "VVM_NETWORK_TIMEOUT_SECONDS", "VVM_NETWORK_RETRY_COUNT",
                "VVM_BASE_RETRY_INTERVAL_MS", "VVM_IMAP_FOLDER"):
        monkeypatch.delenv(var, raising=False)

    config = load_sync_config(None)

    assert config == SyncConfig()
    assert config.network_retry_count == 6
    assert config.network_timeout_seconds == 60.0


def test_environment_overrides_defaults(monkeypatch):
    """Test VVM_* variables override the defaults."""
    monkeypatch.setenv("VVM_DB_PATH", "/tmp/env.db")
    monkeypatch.setenv("VVM_NETWORK_RETRY_COUNT", "2")
    monkeypatch.setenv("VVM_BASE_RETRY_INTERVAL_MS", "1000")

    config = load_sync_config(None)

    assert config.db_path == "/tmp/env.db"
    assert config.network_retry_count == 2
    assert config.base_retry_interval_ms == 1000


def test_invalid_environment_value_falls_back(monkeypatch):
    """Test an unparseable variable is ignored."""
    monkeypatch.setenv("VVM_NETWORK_TIMEOUT_SECONDS", "soon")

    config = load_sync_config(None)

    assert config.network_timeout_seconds == 60.0


def test_file_wins_over_environment(tmp_path, monkeypatch):
    """Test config file values take priority over environment."""
    monkeypatch.setenv("VVM_DB_PATH", "/tmp/env.db")
    monkeypatch.setenv("VVM_IMAP_FOLDER", "Voicemail")
    config_file = tmp_path / "config.ini"
    config_file.write_text("""
[storage]
db_path = /data/file.db

[sync]
network_timeout_seconds = 15
network_retry_count = 3
imap_folder = INBOX
""")

    config = load_sync_config(str(config_file))

    assert config.db_path == "/data/file.db"
    assert config.network_timeout_seconds == 15.0
    assert config.network_retry_count == 3
    assert config.imap_folder == "INBOX"


def test_retry_count_at_least_one(tmp_path):
    """Test a zero retry budget is raised to one attempt."""
    config_file = tmp_path / "config.ini"
    config_file.write_text("[sync]\nnetwork_retry_count = 0\n")

    config = load_sync_config(str(config_file))

    assert config.network_retry_count == 1


def test_missing_file_is_ignored(tmp_path, monkeypatch):
    monkeypatch.delenv("VVM_DB_PATH", raising=False)

    config = load_sync_config(str(tmp_path / "missing.ini"))

    assert config.db_path == SyncConfig.db_path
