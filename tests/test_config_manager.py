"""Test suite for configuration loading and validation.

This module tests PlatformConfig validation, YAML loading, environment
variable overrides and environment profiles.
"""

import pytest
import yaml
from pydantic import ValidationError

from clinical_platform.core.config_manager import ConfigManager, PlatformConfig


class TestPlatformConfigValidation:
    """Test PlatformConfig validation."""

    def test_valid_config(self):
        """Test creating a valid configuration."""
        config = PlatformConfig(
            environment="production",
            module_execution_timeout=12.5,
            max_concurrent_workflows=3
        )

        assert config.environment == "production"
        assert config.module_execution_timeout == 12.5
        assert config.max_concurrent_workflows == 3

    def test_invalid_environment(self):
        """Test that an unknown environment raises ValidationError."""
        with pytest.raises(ValidationError) as exc_info:
            PlatformConfig(environment="staging")

        assert "environment must be one of" in str(exc_info.value)

    def test_log_level_is_uppercased(self):
        """Test log level normalization."""
        config = PlatformConfig(log_level="debug")

        assert config.log_level == "DEBUG"

    def test_invalid_log_level(self):
        with pytest.raises(ValidationError):
            PlatformConfig(log_level="VERBOSE")

    def test_timeout_must_be_positive(self):
        """Test that a zero module timeout is rejected."""
        with pytest.raises(ValidationError):
            PlatformConfig(module_execution_timeout=0)

    def test_external_service_url(self):
        """Test URL scheme validation and trailing slash stripping."""
        config = PlatformConfig(external_service_url="https://edc.example.org/api/")

        assert config.external_service_url == "https://edc.example.org/api"

        with pytest.raises(ValidationError):
            PlatformConfig(external_service_url="ftp://edc.example.org")

    def test_validate_on_assignment(self):
        """Test that assignments are validated too."""
        config = PlatformConfig()

        with pytest.raises(ValidationError):
            config.max_concurrent_executions = 0

    def test_token_is_secret(self):
        """Test that the service token never shows up in repr."""
        config = PlatformConfig(external_service_token="s3cret")

        assert "s3cret" not in repr(config)
        assert config.external_service_token.get_secret_value() == "s3cret"


class TestConfigManager:
    """Test ConfigManager loading."""

    def test_defaults_without_file(self, tmp_path):
        """Test loading with no config file uses the development profile."""
        manager = ConfigManager(config_path=str(tmp_path / "missing.yaml"))

        config = manager.load_config()

        assert config.environment == "development"
        assert config.log_level == "DEBUG"

    def test_load_from_yaml(self, tmp_path):
        """Test values are read from the YAML file."""
        path = tmp_path / "config.yaml"
        path.write_text(yaml.dump({
            "environment": "production",
            "max_concurrent_executions": 8,
            "module_packages": ["clinical_modules"]
        }))

        config = ConfigManager(config_path=str(path)).load_config()

        assert config.environment == "production"
        assert config.max_concurrent_executions == 8
        assert config.module_packages == ["clinical_modules"]

    def test_env_overrides_yaml(self, tmp_path, monkeypatch):
        """Test CLINICAL_* variables take precedence over the file."""
        path = tmp_path / "config.yaml"
        path.write_text(yaml.dump({"max_concurrent_workflows": 4, "audit_enabled": True}))
        monkeypatch.setenv("CLINICAL_MAX_CONCURRENT_WORKFLOWS", "16")
        monkeypatch.setenv("CLINICAL_AUDIT_ENABLED", "false")
        monkeypatch.setenv("CLINICAL_MODULE_PACKAGES", "pkg_a, pkg_b")

        config = ConfigManager(config_path=str(path)).load_config()

        assert config.max_concurrent_workflows == 16
        assert config.audit_enabled is False
        assert config.module_packages == ["pkg_a", "pkg_b"]

    def test_invalid_env_value_is_ignored(self, tmp_path, monkeypatch):
        """Test an unconvertible env value falls back to the default."""
        monkeypatch.setenv("CLINICAL_MAX_CONCURRENT_EXECUTIONS", "many")

        config = ConfigManager(config_path=str(tmp_path / "none.yaml")).load_config()

        assert config.max_concurrent_executions == 5

    def test_token_from_env(self, tmp_path, monkeypatch):
        monkeypatch.setenv("CLINICAL_EXTERNAL_SERVICE_TOKEN", "abc123")

        config = ConfigManager(config_path=str(tmp_path / "none.yaml")).load_config()

        assert config.external_service_token.get_secret_value() == "abc123"

    def test_production_profile(self, tmp_path, monkeypatch):
        """Test production profile defaults."""
        monkeypatch.setenv("CLINICAL_ENV", "production")

        config = ConfigManager(config_path=str(tmp_path / "none.yaml")).load_config()

        assert config.log_level == "INFO"
        assert config.module_execution_timeout == 60.0

    def test_test_profile(self, tmp_path, monkeypatch):
        """Test the test profile disables log files and shortens timeouts."""
        monkeypatch.setenv("CLINICAL_ENV", "test")

        config = ConfigManager(config_path=str(tmp_path / "none.yaml")).load_config()

        assert config.enable_file_logging is False
        assert config.module_execution_timeout == 5.0
        assert config.workflow_execution_timeout == 30.0

    def test_profile_does_not_override_explicit_values(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(yaml.dump({"environment": "production", "log_level": "ERROR"}))

        config = ConfigManager(config_path=str(path)).load_config()

        assert config.log_level == "ERROR"

    def test_get_config_before_load(self):
        """Test get_config raises before load_config."""
        with pytest.raises(RuntimeError):
            ConfigManager().get_config()

    def test_save_config_excludes_token(self, tmp_path, monkeypatch):
        """Test the token never reaches the saved file."""
        monkeypatch.setenv("CLINICAL_EXTERNAL_SERVICE_TOKEN", "abc123")
        manager = ConfigManager(config_path=str(tmp_path / "none.yaml"))
        manager.load_config()

        target = tmp_path / "out" / "saved.yaml"
        manager.save_config(str(target))

        saved = yaml.safe_load(target.read_text())
        assert "external_service_token" not in saved
        assert saved["environment"] == "development"

    def test_update_config(self, tmp_path):
        manager = ConfigManager(config_path=str(tmp_path / "none.yaml"))
        manager.load_config()

        config = manager.update_config({"max_concurrent_workflows": 2})

        assert config.max_concurrent_workflows == 2
        assert manager.get_config() is config
