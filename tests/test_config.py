from __future__ import annotations

from pathlib import Path

import pytest

from stack_backup.config import CoreConfig, engines_for_scope, load_config, resolve_engine
from stack_backup.errors import ConfigurationError


def _write(path: Path, text: str) -> Path:
    path.write_text(text, encoding="utf-8")
    return path


def test_load_config_applies_overrides(tmp_path):
    path = _write(
        tmp_path / "stack-backup.yaml",
        f"""
registry_dir: {tmp_path}/registry
staging_dir: {tmp_path}/staging
restore_dir: {tmp_path}/restore
host: backup-01
retention:
  keep_daily: 14
  keep_yearly: 0
scheduler:
  cron: "30 3 * * *"
  timezone: Europe/Berlin
""",
    )

    config = load_config(path)

    assert config.host_label() == "backup-01"
    assert config.retention.keep_daily == 14
    assert config.retention.keep_yearly == 0
    assert config.retention.keep_hourly == 24
    assert config.scheduler is not None
    assert config.scheduler.timezone == "Europe/Berlin"
    assert config.staging_dir == tmp_path / "staging"


def test_empty_file_uses_defaults(tmp_path):
    config = load_config(_write(tmp_path / "empty.yaml", ""))

    assert config.retention.keep_monthly == 6
    assert config.log_retention_days == 30
    assert config.repository.password_env == "RESTIC_PASSWORD"
    assert config.scheduler is None


def test_missing_file_raises(tmp_path):
    with pytest.raises(ConfigurationError, match="not found"):
        load_config(tmp_path / "absent.yaml")


def test_non_mapping_root_raises(tmp_path):
    with pytest.raises(ConfigurationError, match="mapping"):
        load_config(_write(tmp_path / "list.yaml", "- a\n- b\n"))


def test_invalid_cron_is_rejected(tmp_path):
    path = _write(tmp_path / "bad.yaml", "scheduler:\n  cron: 'not a cron'\n")
    with pytest.raises(ConfigurationError, match="cron"):
        load_config(path)


def test_negative_retention_is_rejected(tmp_path):
    path = _write(tmp_path / "bad.yaml", "retention:\n  keep_daily: -1\n")
    with pytest.raises(ConfigurationError):
        load_config(path)


def test_staging_and_restore_dirs_must_differ(tmp_path):
    with pytest.raises(ValueError):
        CoreConfig(staging_dir=tmp_path / "same", restore_dir=tmp_path / "same")


@pytest.mark.parametrize(
    "alias, engine",
    [("pg", "postgres"), ("postgresql", "postgres"), ("mongodb", "mongo"), ("vol", "volumes"), ("redis", "redis")],
)
def test_resolve_engine_aliases(alias, engine):
    assert resolve_engine(alias) == engine


def test_resolve_engine_rejects_unknown():
    with pytest.raises(ConfigurationError, match="Unknown engine"):
        resolve_engine("oracle")


def test_database_scope_excludes_volumes_and_vector_store():
    engines = engines_for_scope("databases")

    assert "volumes" not in engines
    assert "qdrant" not in engines
    assert engines_for_scope("db") == engines
    assert engines_for_scope("volumes") == ["volumes"]
    assert len(engines_for_scope("all")) == 7
