"""Unit tests for configuration loading and saving."""

import json
from pathlib import Path

import pytest
from pydantic import ValidationError

from ado_review.config import Config, ConfigManager, TransportConfig


class TestConfigDefaults:
    """Defaults match the service's documented behaviour."""

    def test_transport_defaults(self):
        config = TransportConfig()
        assert config.api_version == "7.0"
        assert config.max_attempts == 3
        assert config.max_pages == 50
        assert config.jitter_enabled is True

    def test_polling_and_token_defaults(self):
        config = Config()
        assert config.tokens.safety_margin_seconds == 60
        assert config.polling.comments_interval == 5.0
        assert config.polling.log_interval == 2.0
        assert config.polling.max_interval == 60.0

    def test_accounts_dir_lives_under_data_dir(self, tmp_path):
        config = Config(data_dir=str(tmp_path))
        assert config.data_dir == tmp_path
        assert config.accounts_dir == tmp_path / "accounts"

    def test_home_is_expanded(self):
        assert Config(data_dir="~/reviews").data_dir == Path.home() / "reviews"

    @pytest.mark.parametrize("field", ["max_attempts", "max_pages", "max_concurrent_requests"])
    def test_counts_must_be_positive(self, field):
        with pytest.raises(ValidationError):
            TransportConfig(**{field: 0})


class TestConfigManager:
    """Test ConfigManager file handling."""

    def test_missing_file_gives_defaults(self, tmp_path):
        manager = ConfigManager(tmp_path / "missing.json")

        assert manager.load() == Config()

    def test_save_and_reload(self, tmp_path):
        path = tmp_path / "nested" / "config.json"
        manager = ConfigManager(path)
        config = Config(data_dir=tmp_path, transport=TransportConfig(max_attempts=5))

        manager.save(config)
        reloaded = ConfigManager(path).load()

        assert reloaded.transport.max_attempts == 5
        assert reloaded.data_dir == tmp_path

    def test_partial_file_fills_defaults(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"polling": {"log_interval": 0.5}}))

        config = ConfigManager(path).load()

        assert config.polling.log_interval == 0.5
        assert config.polling.comments_interval == 5.0

    def test_invalid_file_raises_value_error(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text("{not json")

        with pytest.raises(ValueError, match="Failed to load config"):
            ConfigManager(path).load()

    def test_update_config_persists(self, tmp_path):
        path = tmp_path / "config.json"
        manager = ConfigManager(path)

        manager.update_config(data_dir=str(tmp_path / "state"))

        assert json.loads(path.read_text())["data_dir"] == str(tmp_path / "state")

    def test_save_without_config_raises(self, tmp_path):
        with pytest.raises(ValueError):
            ConfigManager(tmp_path / "config.json").save()
