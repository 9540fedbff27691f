import os
from pathlib import Path

import pytest
import yaml

from loopctl.config import LoopctlConfig, get_loopctl_home, load_config
from loopctl.errors import ConfigError


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for var in ("LOOPCTL_HOME", "LOOPCTL_STORE_DIR", "LOOPCTL_LOG_LEVEL"):
        monkeypatch.delenv(var, raising=False)


def test_get_loopctl_home_default():
    home = get_loopctl_home()
    assert home == Path("~/.config/loopctl").expanduser()


def test_get_loopctl_home_env_var(monkeypatch, tmp_path):
    custom_home = tmp_path / "custom_home"
    monkeypatch.setenv("LOOPCTL_HOME", str(custom_home))
    assert get_loopctl_home() == custom_home


def test_load_config_missing_file(monkeypatch, tmp_path):
    monkeypatch.setenv("LOOPCTL_HOME", str(tmp_path))
    with pytest.raises(FileNotFoundError, match="loopctl config.yaml not found"):
        load_config()


def test_load_config_valid(monkeypatch, tmp_path):
    monkeypatch.setenv("LOOPCTL_HOME", str(tmp_path))
    config_data = {
        "store_dir": str(tmp_path / "store"),
        "tick_interval_ms": 250,
        "max_parallel_executions": 5,
        "max_skill_retries": 1,
        "log_level": "debug",
    }
    (tmp_path / "config.yaml").write_text(yaml.dump(config_data))

    cfg = load_config()
    assert isinstance(cfg, LoopctlConfig)
    assert cfg.store_path == tmp_path / "store"
    assert cfg.tick_interval_ms == 250
    assert cfg.max_parallel_executions == 5
    assert cfg.max_skill_retries == 1
    assert cfg.log_level == "DEBUG"
    assert cfg.definitions_path is None


def test_load_config_empty_file_uses_defaults(monkeypatch, tmp_path):
    monkeypatch.setenv("LOOPCTL_HOME", str(tmp_path))
    (tmp_path / "config.yaml").write_text("")

    cfg = load_config()
    assert cfg.tick_interval_ms == 5000
    assert cfg.max_parallel_executions == 3
    assert cfg.max_skill_retries == 3
    assert cfg.reservation_timeout_ms == 3600000


def test_load_config_with_env_file(monkeypatch, tmp_path):
    monkeypatch.setenv("LOOPCTL_HOME", str(tmp_path))
    monkeypatch.delenv("LOOPCTL_TEST_VAR", raising=False)
    env_file = tmp_path / ".env.test"
    env_file.write_text("LOOPCTL_TEST_VAR=loaded_from_env")
    (tmp_path / "config.yaml").write_text(yaml.dump({"env_file": str(env_file)}))

    cfg = load_config()
    assert cfg.env_file == str(env_file)
    assert os.environ.get("LOOPCTL_TEST_VAR") == "loaded_from_env"
    monkeypatch.delenv("LOOPCTL_TEST_VAR", raising=False)


def test_env_overrides(monkeypatch, tmp_path):
    monkeypatch.setenv("LOOPCTL_HOME", str(tmp_path))
    monkeypatch.setenv("LOOPCTL_STORE_DIR", str(tmp_path / "override"))
    monkeypatch.setenv("LOOPCTL_LOG_LEVEL", "WARNING")
    (tmp_path / "config.yaml").write_text(yaml.dump({"store_dir": "/somewhere/else"}))

    cfg = load_config()
    assert cfg.store_dir == str(tmp_path / "override")
    assert cfg.log_level == "WARNING"


def test_invalid_yaml(monkeypatch, tmp_path):
    monkeypatch.setenv("LOOPCTL_HOME", str(tmp_path))
    (tmp_path / "config.yaml").write_text("store_dir: [unclosed")
    with pytest.raises(ConfigError, match="Invalid YAML"):
        load_config()


def test_non_mapping_config(monkeypatch, tmp_path):
    monkeypatch.setenv("LOOPCTL_HOME", str(tmp_path))
    (tmp_path / "config.yaml").write_text("- just\n- a list\n")
    with pytest.raises(ConfigError, match="must contain a mapping"):
        load_config()


def test_unknown_keys_rejected(monkeypatch, tmp_path):
    monkeypatch.setenv("LOOPCTL_HOME", str(tmp_path))
    (tmp_path / "config.yaml").write_text(yaml.dump({"dataset_raw": "raw"}))
    with pytest.raises(ConfigError, match="Unknown config keys: dataset_raw"):
        load_config()


class TestLoopctlConfigValidation:
    """Values are validated on construction."""

    @pytest.mark.parametrize("field,value", [
        ("tick_interval_ms", 0),
        ("max_parallel_executions", -1),
        ("reservation_timeout_ms", "soon"),
        ("max_skill_retries", -1),
        ("log_level", "LOUD"),
        ("log_format", "xml"),
    ])
    def test_invalid_values(self, field, value):
        with pytest.raises(ConfigError):
            LoopctlConfig(**{field: value})

    def test_zero_retries_allowed(self):
        assert LoopctlConfig(max_skill_retries=0).max_skill_retries == 0

    def test_round_trip(self):
        cfg = LoopctlConfig(store_dir="/tmp/store", definitions_dir="/tmp/defs", log_format="structured")
        assert LoopctlConfig.from_dict(cfg.to_dict()) == cfg
        assert cfg.definitions_path == Path("/tmp/defs")
