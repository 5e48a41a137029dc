"""Tests for the configuration system."""

from __future__ import annotations

import pytest
import yaml

from tenantauth.core.config import Config, get_config, reload_config


class TestConfig:
    """Test the Config class."""

    @pytest.fixture
    def yaml_config(self, temp_dir) -> str:
        """Create a temporary YAML config file."""
        config_data = {
            "logging": {"level": "DEBUG"},
            "auth": {"secret_key": "from-file", "session_ttl_hours": 12},
            "two_factor": {"issuer": "Acme"},
        }
        path = temp_dir / "tenantauth.yaml"
        path.write_text(yaml.dump(config_data))
        return str(path)

    @pytest.fixture
    def toml_config(self, temp_dir) -> str:
        path = temp_dir / "tenantauth.toml"
        path.write_text('[api_keys]\nprefix = "tk_"\n\n[organizations]\ninvite_ttl_days = 3\n')
        return str(path)

    def test_defaults(self, temp_dir, monkeypatch) -> None:
        """Test that config initializes with defaults."""
        monkeypatch.chdir(temp_dir)
        config = Config()

        assert config.get("logging.level") == "INFO"
        assert config.get("auth.session_ttl_hours") == 168
        assert config.get("two_factor.window") == 2
        assert config.get("api_keys.prefix") == "sk_"
        assert config.get("email.enabled") is False

    def test_load_yaml(self, yaml_config: str) -> None:
        config = Config(yaml_config)

        assert config.get("logging.level") == "DEBUG"
        assert config.get("auth.secret_key") == "from-file"
        assert config.get("auth.session_ttl_hours") == 12
        # Keys missing from the file fall back to defaults
        assert config.get("auth.algorithm") == "HS256"
        assert config.get("two_factor.backup_code_count") == 10

    def test_load_toml(self, toml_config: str) -> None:
        config = Config(toml_config)
        assert config.get("api_keys.prefix") == "tk_"
        assert config.get("organizations.invite_ttl_days") == 3

    def test_missing_file_uses_defaults(self, temp_dir) -> None:
        config = Config(str(temp_dir / "nope.yaml"))
        assert config.get("auth.algorithm") == "HS256"

    def test_get_with_default(self) -> None:
        config = Config()
        assert config.get("nonexistent.key", "fallback") == "fallback"
        assert config.get("nonexistent.key") is None

    def test_environment_overrides(self, yaml_config: str, monkeypatch) -> None:
        """Test that environment variables win over the file and are typed."""
        monkeypatch.setenv("AUTH_SESSION_TTL_HOURS", "48")
        monkeypatch.setenv("EMAIL_ENABLED", "true")
        monkeypatch.setenv("API_CORS_ORIGINS", "https://a.test, https://b.test")
        config = Config(yaml_config)

        assert config.get("auth.session_ttl_hours") == 48
        assert config.get("email.enabled") is True
        assert config.get("api.cors_origins") == ["https://a.test", "https://b.test"]

    def test_set_and_section(self) -> None:
        config = Config()
        config.set("two_factor.issuer", "Runtime")
        config.set("custom.nested.value", 1)

        assert config.get("two_factor.issuer") == "Runtime"
        assert config.get_section("two_factor")["issuer"] == "Runtime"
        assert config.get("custom.nested.value") == 1

    def test_reload(self, yaml_config: str) -> None:
        config = Config(yaml_config)
        config.set("logging.level", "ERROR")
        config.reload(yaml_config)
        assert config.get("logging.level") == "DEBUG"


class TestConfigValidation:
    """Validation of loaded configuration."""

    def test_defaults_are_valid_with_warning(self) -> None:
        result = Config().validate()
        assert result.is_valid
        assert any("secret_key" in w for w in result.warnings)

    def test_invalid_values(self) -> None:
        config = Config()
        config.set("logging.level", "LOUD")
        config.set("two_factor.window", -1)
        config.set("rate_limit.two_factor", {"max_attempts": 0})
        config.set("api_keys.prefix", "")

        result = config.validate()
        assert not result.is_valid
        messages = "\n".join(result.errors)
        assert "Invalid logging level" in messages
        assert "two_factor.window" in messages
        assert "rate_limit.two_factor.max_attempts" in messages
        assert "api_keys.prefix" in messages

    def test_validate_and_raise(self) -> None:
        config = Config()
        config.set("auth.session_ttl_hours", 0)
        with pytest.raises(ValueError, match="session_ttl_hours"):
            config.validate_and_raise()

    def test_result_str(self) -> None:
        config = Config()
        config.set("auth.secret_key", "set")
        config.set("database.path", ":memory:")
        assert str(config.validate()) == "Configuration is valid."


class TestGlobalConfig:
    """The process-wide config instance."""

    def test_get_config_is_cached(self) -> None:
        assert get_config() is get_config()

    def test_reload_config(self) -> None:
        config = get_config()
        config.set("logging.level", "ERROR")
        reload_config()
        assert get_config() is config
        assert config.get("logging.level") != "ERROR"
