from pathlib import Path

import pytest

import conductor.config as config_module
from conductor.config import Config
from conductor.exceptions import ConfigurationError


def test_load_prefers_local_conductor_yaml(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)

    home_cfg = tmp_path / "home_config.yaml"
    home_cfg.write_text("scheduler:\n  max_concurrent: 9\n", encoding="utf-8")
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", home_cfg)

    local_cfg = tmp_path / "conductor.yaml"
    local_cfg.write_text(
        (
            "scheduler:\n"
            "  max_concurrent: 2\n"
            "  retry_delay_seconds: 1.5\n"
            "execution:\n"
            "  binary: /opt/bin/claude\n"
            "  extra_args:\n"
            "    - --debug\n"
        ),
        encoding="utf-8",
    )

    cfg = Config.load()

    assert cfg.scheduler.max_concurrent == 2
    assert cfg.scheduler.retry_delay_seconds == 1.5
    assert cfg.execution.binary == "/opt/bin/claude"
    assert cfg.execution.extra_args == ["--debug"]


def test_load_falls_back_to_default_path_when_no_local(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)

    home_cfg = tmp_path / "home_config.yaml"
    home_cfg.write_text("liveness:\n  zombie_threshold_seconds: 30\n", encoding="utf-8")
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", home_cfg)

    cfg = Config.load()

    assert cfg.liveness.zombie_threshold_seconds == 30


def test_missing_file_gives_defaults(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", tmp_path / "absent.yaml")

    cfg = Config.load()

    assert cfg.scheduler.max_concurrent == 3
    assert cfg.scheduler.max_retries == 3
    assert cfg.execution.binary == "claude"
    assert cfg.logging.format == "console"


def test_environment_overrides_yaml(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    cfg_path = tmp_path / "custom.yaml"
    cfg_path.write_text("scheduler:\n  max_concurrent: 2\n  max_retries: 1\n", encoding="utf-8")
    monkeypatch.setenv("CONDUCTOR_SCHEDULER__MAX_CONCURRENT", "7")

    cfg = Config.load(cfg_path)

    assert cfg.scheduler.max_concurrent == 7
    assert cfg.scheduler.max_retries == 1


def test_invalid_yaml_raises_configuration_error(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    cfg_path = tmp_path / "broken.yaml"
    cfg_path.write_text("scheduler: [unclosed\n", encoding="utf-8")

    with pytest.raises(ConfigurationError):
        Config.load(cfg_path)


def test_non_mapping_yaml_raises_configuration_error(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    cfg_path = tmp_path / "list.yaml"
    cfg_path.write_text("- one\n- two\n", encoding="utf-8")

    with pytest.raises(ConfigurationError):
        Config.load(cfg_path)


def test_invalid_values_raise_configuration_error(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    cfg_path = tmp_path / "bad.yaml"
    cfg_path.write_text("logging:\n  format: xml\n", encoding="utf-8")

    with pytest.raises(ConfigurationError):
        Config.load(cfg_path)


def test_save_round_trips(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    cfg = Config()
    cfg.scheduler.max_concurrent = 5
    cfg.storage.path = str(tmp_path / "state.db")
    target = tmp_path / "saved" / "config.yaml"

    cfg.save(target)
    loaded = Config.load(target)

    assert loaded.scheduler.max_concurrent == 5
    assert loaded.resolved_db_path() == tmp_path / "state.db"
