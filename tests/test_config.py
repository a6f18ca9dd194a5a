"""
Tests for configuration loading and logging setup.
"""

import json
import logging

import pytest
from pydantic import ValidationError

from mcp_toolkit.core.exceptions import ConfigError
from mcp_toolkit.utils.config import ConfigManager, GatewayConfig, ToolkitConfig
from mcp_toolkit.utils.logging import JSONFormatter, ToolkitLogger


class TestToolkitConfig:
    """Test configuration defaults and validation."""

    def test_defaults(self):
        config = ToolkitConfig()
        assert config.environment == "production"
        assert config.test_mode is False
        assert config.gateway.default_protocol_version == "2024-11-05"
        assert config.gateway.max_noise_lines == 10
        assert config.gateway.call_timeout_seconds is None
        assert config.gateway.header_prefix == "header_"
        assert config.http.default_scope == "default"
        assert config.keyring.service == "mcp-toolkit"

    def test_test_mode_forbidden_in_production(self):
        with pytest.raises(ValidationError):
            ToolkitConfig(environment="production", test_mode=True)

    def test_test_key_allowed(self):
        assert ToolkitConfig(environment="test", test_mode=True).test_key_allowed
        assert not ToolkitConfig(environment="development").test_key_allowed

    def test_environment_variables(self, monkeypatch):
        monkeypatch.setenv("MCP_TOOLKIT_ENVIRONMENT", "development")
        monkeypatch.setenv("MCP_TOOLKIT_GATEWAY__CALL_TIMEOUT_SECONDS", "2.5")
        config = ToolkitConfig()
        assert config.environment == "development"
        assert config.gateway.call_timeout_seconds == 2.5

    def test_database_path_override(self, monkeypatch, tmp_path):
        monkeypatch.setenv("MCP_TOOLKIT_DB_PATH", str(tmp_path / "custom.db"))
        assert ToolkitConfig().database_path == tmp_path / "custom.db"

    def test_database_path_default(self, tmp_path):
        config = ToolkitConfig(data_dir=str(tmp_path))
        assert config.database_path == tmp_path / "mcp_toolkit.db"

    def test_invalid_gateway_values(self):
        with pytest.raises(ValidationError):
            GatewayConfig(max_noise_lines=0)
        with pytest.raises(ValidationError):
            GatewayConfig(call_timeout_seconds=-1)


class TestConfigManager:
    """Test TOML loading."""

    def test_files_merged_in_order(self, tmp_path):
        base = tmp_path / "base.toml"
        base.write_text('environment = "development"\n[gateway]\nmax_noise_lines = 3\nserver_name = "base"\n')
        local = tmp_path / "local.toml"
        local.write_text('[gateway]\nserver_name = "local"\n')

        config = ConfigManager().load_config([base, local, tmp_path / "missing.toml"])

        assert config.environment == "development"
        assert config.gateway.max_noise_lines == 3
        assert config.gateway.server_name == "local"

    def test_overrides_win(self, tmp_path):
        path = tmp_path / "config.toml"
        path.write_text("debug = false\n")
        assert ConfigManager().load_config([path], debug=True).debug is True

    def test_environment_overrides_files(self, tmp_path, monkeypatch):
        path = tmp_path / "config.toml"
        path.write_text('[gateway]\nmax_noise_lines = 3\nserver_name = "from-file"\n')
        monkeypatch.setenv("MCP_TOOLKIT_GATEWAY__MAX_NOISE_LINES", "7")

        config = ConfigManager().load_config([path])

        assert config.gateway.max_noise_lines == 7
        assert config.gateway.server_name == "from-file"

    def test_keyword_overrides_beat_environment(self, tmp_path, monkeypatch):
        monkeypatch.setenv("MCP_TOOLKIT_DEBUG", "false")
        assert ConfigManager().load_config([tmp_path / "missing.toml"], debug=True).debug is True

    def test_invalid_configuration(self, tmp_path):
        path = tmp_path / "config.toml"
        path.write_text('[http]\nport = 70000\n')
        with pytest.raises(ConfigError):
            ConfigManager().load_config([path])

    def test_reload(self, tmp_path):
        path = tmp_path / "config.toml"
        path.write_text('environment = "test"\n')
        manager = ConfigManager()
        first = manager.load_config([path])
        assert manager.get_config() is first

        path.write_text('environment = "development"\n')
        assert manager.reload_config(config_files=[path]).environment == "development"


class TestLogging:
    """Test logging setup."""

    def test_json_formatter_includes_extra(self):
        record = logging.LogRecord("mcp_toolkit.test", logging.INFO, __file__, 1, "hello", None, None)
        record.backend = "github"
        entry = json.loads(JSONFormatter().format(record))
        assert entry["message"] == "hello"
        assert entry["backend"] == "github"

    def test_file_logging(self, tmp_path):
        root = logging.getLogger()
        saved_handlers, saved_level = root.handlers[:], root.level
        log_file = tmp_path / "logs" / "toolkit.log"
        try:
            ToolkitLogger().setup_logging(level="DEBUG", log_file=log_file, format_type="json", enable_rich=False)
            logging.getLogger("mcp_toolkit.test").info("written", extra={"scope": "s"})
            for handler in root.handlers:
                handler.flush()
            entry = json.loads(log_file.read_text().strip().splitlines()[-1])
            assert entry["message"] == "written"
            assert entry["scope"] == "s"
        finally:
            for handler in root.handlers:
                handler.close()
            root.handlers = saved_handlers
            root.setLevel(saved_level)

    def test_http_loggers_suppressed(self):
        root = logging.getLogger()
        saved_handlers, saved_level = root.handlers[:], root.level
        try:
            ToolkitLogger().setup_logging(enable_rich=False)
            assert logging.getLogger("aiohttp.access").level == logging.WARNING
        finally:
            root.handlers = saved_handlers
            root.setLevel(saved_level)
