"""
Tests for configuration loading.
"""

import json

import pytest
import yaml

from park_engine.utils.config import ConfigLoader, ParkConfig, load_config, update_config
from park_engine.utils.errors import ConfigurationError


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    import os
    for key in list(os.environ):
        if key.startswith("PARK_"):
            monkeypatch.delenv(key)


class TestConfigLoader:
    """Test source merging and validation."""

    def test_defaults(self):
        config = load_config(search_defaults=False)

        assert isinstance(config, ParkConfig)
        assert config.server.host == "localhost"
        assert config.server.port == 3000
        assert config.shell.default_shell == "/bin/bash"
        assert config.session.buffer_capacity == 1000
        assert config.session.shutdown_timeout == 5.0
        assert config.database.path.name == "park.db"
        assert config.database.path.is_absolute()

    def test_json_file(self, temp_dir):
        path = temp_dir / "config.json"
        path.write_text(json.dumps({"server": {"port": 4100}}))

        config = load_config([path], search_defaults=False)
        assert config.server.port == 4100
        assert config.server.host == "localhost"

    def test_yaml_and_priority(self, temp_dir):
        low = temp_dir / "low.yaml"
        low.write_text(yaml.safe_dump({"server": {"port": 4100, "host": "0.0.0.0"}}))
        high = temp_dir / "high.toml"
        high.write_text('[server]\nport = 4200\n')

        config = load_config([low, high], search_defaults=False)
        assert config.server.port == 4200
        assert config.server.host == "0.0.0.0"

    def test_dict_override(self):
        config = load_config(extra_config={"session": {"buffer_capacity": 10}}, search_defaults=False)
        assert config.session.buffer_capacity == 10

    def test_environment_override(self, monkeypatch):
        monkeypatch.setenv("PARK_SERVER_PORT", "4300")
        monkeypatch.setenv("PARK_SESSION_SHUTDOWN_TIMEOUT", "2.5")
        monkeypatch.setenv("PARK_LOGGING_LEVEL", "debug")

        config = load_config(search_defaults=False)
        assert config.server.port == 4300
        assert config.session.shutdown_timeout == 2.5
        assert config.logging.level == "DEBUG"

    def test_invalid_value(self):
        with pytest.raises(ConfigurationError):
            load_config(extra_config={"server": {"port": 70000}}, search_defaults=False)

    def test_invalid_capacity(self):
        with pytest.raises(ConfigurationError):
            load_config(extra_config={"session": {"buffer_capacity": 0}}, search_defaults=False)

    def test_unknown_file_type(self, temp_dir):
        loader = ConfigLoader()
        with pytest.raises(ConfigurationError):
            loader.add_source(temp_dir / "config.ini")

    def test_broken_file(self, temp_dir):
        path = temp_dir / "config.json"
        path.write_text("{broken")

        with pytest.raises(ConfigurationError):
            load_config([path], search_defaults=False)

    def test_missing_file_is_skipped(self, temp_dir):
        config = load_config([temp_dir / "absent.yaml"], search_defaults=False)
        assert config.server.port == 3000

    def test_get_config_before_load(self):
        with pytest.raises(ConfigurationError):
            ConfigLoader().get_config()


class TestUpdateConfig:
    """Test partial updates of a loaded configuration."""

    def test_merges_into_section(self):
        config = ParkConfig(server={"host": "0.0.0.0", "port": 3000})

        updated = update_config(config, {"server": {"port": 4000}})

        assert updated.server.host == "0.0.0.0"
        assert updated.server.port == 4000
        assert config.server.port == 3000

    def test_paths_survive(self, temp_dir):
        config = ParkConfig(database={"path": temp_dir / "park.db"})

        updated = update_config(config, {"session": {"pty_cols": 120}})

        assert updated.database.path == temp_dir / "park.db"
        assert updated.session.pty_cols == 120

    def test_invalid_value(self):
        with pytest.raises(ConfigurationError, match="server.port"):
            update_config(ParkConfig(), {"server": {"port": -1}})

    def test_unknown_section(self):
        with pytest.raises(ConfigurationError, match="bogus"):
            update_config(ParkConfig(), {"bogus": 1})
