"""Configuration loader tests."""
from __future__ import annotations

from pathlib import Path

import pytest

from snapctl.config import GIB, AppConfig, ConfigError, load_config


def test_load_config_defaults_when_file_missing(tmp_path: Path) -> None:
    """Defaults apply when no config file is present."""
    config = load_config(config_file=tmp_path / "missing.yml", env={})

    assert isinstance(config, AppConfig)
    assert config.repository.path == Path("/var/backups/restic-repo")
    assert config.repository.password_file == Path("/etc/restic/password")
    assert config.backup.paths == (Path("/"), Path("/boot"))
    assert config.backup.tags == ("manual-snapshot",)
    assert config.backup.min_free_space_bytes == 5 * GIB
    assert config.restore.staging_root == Path("/tmp")
    assert config.restore.runtime_data_dir == Path("/var/lib/docker")
    assert config.restore.confirmation_phrase == "PROCEED"
    assert Path("/usr") in config.restore.additive_paths
    assert config.runtime.units == ("docker.socket", "docker.service")
    assert config.lock_timeout == 30.0


def test_repository_path_always_leads_exclusions(tmp_path: Path) -> None:
    """The repository is excluded from backups and syncs, the runtime data from syncs."""
    cfg = tmp_path / "config.yml"
    cfg.write_text(
        "repository:\n"
        "  path: /srv/repo\n"
        "backup:\n"
        "  excludes: [/tmp]\n"
        "restore:\n"
        "  sync_excludes: [/proc, /srv/repo]\n"
    )

    config = load_config(config_file=cfg, env={})

    assert config.backup.excludes == ("/srv/repo", "/tmp")
    assert config.restore.sync_excludes == ("/srv/repo", "/var/lib/docker", "/proc")


def test_env_overrides_take_precedence(tmp_path: Path) -> None:
    """Environment variables override defaults and file settings."""
    cfg = tmp_path / "config.yml"
    cfg.write_text("backup:\n  min_free_space_gb: 7\n")
    env = {
        "SNAPCTL_BACKUP__MIN_FREE_SPACE_GB": "10",
        "SNAPCTL_BACKUP__PATHS": "/srv",
        "SNAPCTL_RESTORE__STAGING_ROOT": "/var/tmp",
        "SNAPCTL_LOCK_TIMEOUT": "45",
        "SNAPCTL_LOGS_DIR": str(tmp_path / "logs"),
    }

    config = load_config(config_file=cfg, env=env)

    assert config.backup.min_free_space_gb == 10
    assert config.backup.paths == (Path("/srv"),)
    assert config.restore.staging_root == Path("/var/tmp")
    assert config.lock_timeout == 45.0
    assert config.logs_dir == tmp_path / "logs"


def test_env_can_select_config_file(tmp_path: Path) -> None:
    """Environment variable selects an alternate config file."""
    cfg = tmp_path / "override.yml"
    cfg.write_text("restore:\n  confirmation_phrase: RESTORE-NOW\n")

    config = load_config(env={"SNAPCTL_CONFIG_FILE": str(cfg)})

    assert config.config_file == cfg
    assert config.restore.confirmation_phrase == "RESTORE-NOW"


def test_overrides_win_over_environment(tmp_path: Path) -> None:
    """Programmatic overrides (CLI flags) apply last."""
    config = load_config(
        config_file=tmp_path / "missing.yml",
        env={"SNAPCTL_LOCK_TIMEOUT": "45"},
        overrides={"lock_timeout": 2.5},
    )

    assert config.lock_timeout == 2.5


def test_invalid_config_file_raises(tmp_path: Path) -> None:
    """A YAML document that is not a mapping raises a ConfigError."""
    cfg = tmp_path / "bad.yml"
    cfg.write_text("- not-a-mapping\n")

    with pytest.raises(ConfigError):
        load_config(config_file=cfg, env={})


def test_unknown_top_level_key_raises(tmp_path: Path) -> None:
    """Unexpected top-level keys trigger ConfigError."""
    cfg = tmp_path / "config.yml"
    cfg.write_text("unknown: value\n")

    with pytest.raises(ConfigError, match="Unknown configuration keys"):
        load_config(config_file=cfg, env={})


def test_unknown_section_key_raises(tmp_path: Path) -> None:
    """Extra keys inside a section produce ConfigError."""
    cfg = tmp_path / "config.yml"
    cfg.write_text("restore:\n  extra: true\n")

    with pytest.raises(ConfigError, match="Unknown restore configuration keys"):
        load_config(config_file=cfg, env={})


def test_negative_free_space_floor_raises(tmp_path: Path) -> None:
    """The free-space floor cannot be negative."""
    with pytest.raises(ConfigError, match="min_free_space_gb"):
        load_config(
            config_file=tmp_path / "missing.yml",
            env={"SNAPCTL_BACKUP__MIN_FREE_SPACE_GB": "-1"},
        )


def test_blank_confirmation_phrase_raises(tmp_path: Path) -> None:
    """An empty confirmation phrase would make every restore pass unconfirmed."""
    cfg = tmp_path / "config.yml"
    cfg.write_text("restore:\n  confirmation_phrase: '  '\n")

    with pytest.raises(ConfigError, match="confirmation_phrase"):
        load_config(config_file=cfg, env={})


def test_relative_restore_path_raises(tmp_path: Path) -> None:
    """Restore locations must be absolute."""
    cfg = tmp_path / "config.yml"
    cfg.write_text("restore:\n  staging_root: tmp\n")

    with pytest.raises(ConfigError, match="absolute"):
        load_config(config_file=cfg, env={})
