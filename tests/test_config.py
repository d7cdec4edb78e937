from __future__ import annotations

from pathlib import Path

import allure
import pytest

from db_sync.config import (
    RemoteSettings,
    Settings,
    SyncSettings,
    parse_database_list,
    parse_table_sync_config,
)
from db_sync.orchestrator.errors import ConfigurationError

pytestmark = [
    allure.epic("Configuration"),
    allure.feature("Settings Loading & Validation"),
]


def test_from_env_uses_defaults_when_unset() -> None:
    settings = Settings.from_env()

    assert settings.sync.max_threads == 4
    assert settings.sync.max_attempts == 3
    assert settings.sync.retry_delay_seconds == 10.0
    assert settings.sync.connect_timeout_seconds == 60
    assert settings.sync.progress_interval_seconds == 5.0
    assert settings.remote.port == 3306
    assert settings.local.host == "localhost"
    assert settings.local.drop_existing_table is True
    assert settings.backup_dir == Path("data") / "backups"


def test_from_env_reads_prefixed_variables(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DB_SYNC_REMOTE_HOST", "db.example")
    monkeypatch.setenv("DB_SYNC_REMOTE_PORT", "3307")
    monkeypatch.setenv("DB_SYNC_MAX_THREADS", "8")
    monkeypatch.setenv("DB_SYNC_RETRY_DELAY", "2.5")
    monkeypatch.setenv("DB_SYNC_DROP_EXISTING_TABLE", "no")
    monkeypatch.setenv("DB_SYNC_LOCAL_DB_PREFIX", "dev_")
    monkeypatch.setenv("DB_SYNC_DATABASES", "crm, billing,,")
    monkeypatch.setenv("DB_SYNC_TABLE_SYNC_CONFIG", "shop:orders|crm:copy:*")

    settings = Settings.from_env()

    assert settings.remote.host == "db.example"
    assert settings.remote.port == 3307
    assert settings.sync.max_threads == 8
    assert settings.sync.retry_delay_seconds == 2.5
    assert settings.local.drop_existing_table is False
    assert settings.local_database_name("crm") == "dev_crm"
    assert settings.sync.databases == ("crm", "billing")
    assert settings.sync.table_specs == ("shop:orders", "crm:copy:*")


def test_from_env_loads_env_file_without_overriding_process_env(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    env_file = tmp_path / "sync.env"
    env_file.write_text(
        "DB_SYNC_REMOTE_HOST=file-host\nDB_SYNC_MAX_RETRY_ATTEMPTS=5\n",
        encoding="utf-8",
    )
    monkeypatch.setenv("DB_SYNC_REMOTE_HOST", "env-host")

    settings = Settings.from_env(env_file=env_file)

    assert settings.remote.host == "env-host"
    assert settings.sync.max_attempts == 5


def test_from_env_rejects_missing_env_file(tmp_path: Path) -> None:
    with pytest.raises(ConfigurationError, match="not found"):
        Settings.from_env(env_file=tmp_path / "missing.env")


@pytest.mark.parametrize(
    ("name", "value"),
    [
        ("DB_SYNC_MAX_THREADS", "four"),
        ("DB_SYNC_RETRY_DELAY", "soon"),
        ("DB_SYNC_DROP_EXISTING_TABLE", "maybe"),
    ],
)
def test_from_env_rejects_malformed_values(
    monkeypatch: pytest.MonkeyPatch,
    name: str,
    value: str,
) -> None:
    monkeypatch.setenv(name, value)

    with pytest.raises(ConfigurationError, match=name):
        Settings.from_env()


def test_validate_lists_every_missing_credential() -> None:
    with pytest.raises(ConfigurationError) as caught:
        Settings().validate()

    message = str(caught.value)
    assert "5 error(s)" in message
    assert "DB_SYNC_REMOTE_HOST" in message
    assert "DB_SYNC_LOCAL_PASS" in message


def test_validate_accepts_complete_settings(settings: Settings) -> None:
    settings.validate()


@pytest.mark.parametrize(
    ("overrides", "message"),
    [
        ({"max_threads": 0}, "between 1 and 32"),
        ({"max_threads": 33}, "between 1 and 32"),
        ({"max_attempts": 0}, "MAX_RETRY_ATTEMPTS"),
        ({"retry_delay_seconds": -1.0}, "RETRY_DELAY"),
        ({"retry_backoff_multiplier": 0.5}, "BACKOFF_MULTIPLIER"),
        ({"stage_timeout_seconds": 0.0}, "STAGE_TIMEOUT"),
    ],
)
def test_validate_rejects_out_of_range_tunables(
    settings: Settings,
    overrides: dict[str, float],
    message: str,
) -> None:
    for name, value in overrides.items():
        setattr(settings.sync, name, value)

    with pytest.raises(ConfigurationError, match=message):
        settings.validate()


def test_validate_rejects_invalid_port(settings: Settings) -> None:
    settings.remote = RemoteSettings(host="h", port=70_000, user="u", password="p")

    with pytest.raises(ConfigurationError, match="DB_SYNC_REMOTE_PORT"):
        settings.validate()


def test_configuration_error_is_a_value_error() -> None:
    assert issubclass(ConfigurationError, ValueError)


def test_summary_masks_passwords(settings: Settings) -> None:
    summary = "\n".join(settings.summary_lines())

    assert "secret" not in summary
    assert "password=****" in summary
    assert "Max threads: 2" in summary


def test_multiline_table_config_wins_and_skips_comments() -> None:
    entries = parse_table_sync_config(
        single_line="ignored:t1",
        multiline="# nightly\nshop:orders\n\n  crm:copy:*  \n",
    )

    assert entries == ("shop:orders", "crm:copy:*")


def test_single_line_table_config_splits_on_pipe() -> None:
    assert parse_table_sync_config(single_line="a:t1| b:t2 |", multiline=" ") == (
        "a:t1",
        "b:t2",
    )


def test_parse_database_list_trims_blanks() -> None:
    assert parse_database_list(" a ,b,, ") == ("a", "b")
    assert parse_database_list("") == ()


def test_sync_settings_defaults_match_documented_values() -> None:
    sync = SyncSettings()

    assert (sync.max_threads, sync.max_attempts, sync.retry_delay_seconds) == (4, 3, 10.0)


def test_import_settings_from_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("DB_SYNC_IMPORT_BACKUP_DIR", str(tmp_path / "dumps"))
    monkeypatch.setenv("DB_SYNC_IMPORT_LOCAL_DB_PREFIX", "restored_")

    settings = Settings.from_env()

    assert settings.import_dir == tmp_path / "dumps"
    assert settings.import_database_name("crm") == "restored_crm"


def test_import_dir_defaults_to_database_dumps() -> None:
    settings = Settings.from_env()

    assert settings.import_dir == Path("data") / "backups" / "databases"
    assert settings.import_database_name("crm") == "imported_crm"


def test_validate_without_remote_still_requires_local_credentials() -> None:
    settings = Settings()
    settings.local.user = "root"
    settings.local.password = "secret"

    settings.validate(require_remote=False)

    settings.local.password = ""
    with pytest.raises(ConfigurationError, match="DB_SYNC_LOCAL_PASS"):
        settings.validate(require_remote=False)
