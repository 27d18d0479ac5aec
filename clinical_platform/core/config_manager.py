"""Configuration management for the clinical research platform.

This module handles loading, validation, and management of platform configuration
from YAML files and environment variables.
"""

import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator
from loguru import logger


class PlatformConfig(BaseModel):
    """Platform configuration model.

    This configuration can be loaded from config.yaml and overridden
    by environment variables prefixed with CLINICAL_.
    """

    model_config = ConfigDict(validate_assignment=True)

    # Platform identity
    name: str = Field(
        default="Clinical Research Management Platform",
        description="Display name of the platform"
    )
    version: str = Field(default="1.0.0", description="Platform version")
    environment: str = Field(
        default="development",
        description="Deployment environment: development, production, or test"
    )

    # Module settings
    module_execution_timeout: float = Field(
        default=30.0,
        gt=0.0,
        description="Default timeout guard for a single module execution in seconds"
    )
    max_concurrent_executions: int = Field(
        default=5,
        ge=1,
        le=100,
        description="Maximum number of module executions running at once"
    )
    module_packages: List[str] = Field(
        default_factory=list,
        description="Packages scanned for modules at startup"
    )

    # Workflow settings
    workflow_execution_timeout: Optional[float] = Field(
        default=300.0,
        gt=0.0,
        description="Default wall-clock limit for one workflow instance in seconds"
    )
    max_concurrent_workflows: int = Field(
        default=10,
        ge=1,
        le=1000,
        description="Maximum number of workflow instances running at once"
    )
    workflow_definitions_path: Optional[str] = Field(
        default=None,
        description="YAML file with workflow definitions registered at startup"
    )

    # Cache settings
    cache_dir: Optional[str] = Field(
        default=None,
        description="Directory for the disk cache (temporary directory if unset)"
    )
    cache_default_ttl: int = Field(
        default=3600,
        ge=1,
        description="Default cache entry lifetime in seconds"
    )

    # Audit settings
    audit_enabled: bool = Field(default=True, description="Record audit events")
    audit_retention_days: int = Field(
        default=90,
        ge=1,
        description="Days audit records are kept before purge"
    )

    # External service settings (sensitive token loaded from env only)
    external_service_url: Optional[str] = Field(
        default=None,
        description="Base URL of the external data service used by workflow steps"
    )
    external_service_timeout: float = Field(
        default=10.0,
        gt=0.0,
        le=300.0,
        description="HTTP timeout for the external data service in seconds"
    )
    external_service_token: Optional[SecretStr] = Field(
        default=None,
        description="Bearer token for the external data service (env: CLINICAL_EXTERNAL_SERVICE_TOKEN)"
    )

    # Logging settings
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR)"
    )
    log_dir: str = Field(default="logs", description="Directory for log files")
    enable_file_logging: bool = Field(
        default=True,
        description="Write application, error and structured logs to log_dir"
    )
    enable_pii_redaction: bool = Field(
        default=True,
        description="Redact personal data from file logs"
    )

    @field_validator('environment')
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Validate environment is one of the allowed values."""
        allowed = ["development", "production", "test"]
        if v not in allowed:
            raise ValueError(f"environment must be one of {allowed}, got '{v}'")
        return v

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is one of the allowed values."""
        allowed = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v_upper = v.upper()
        if v_upper not in allowed:
            raise ValueError(f"log_level must be one of {allowed}, got '{v}'")
        return v_upper

    @field_validator('external_service_url')
    @classmethod
    def validate_external_service_url(cls, v: Optional[str]) -> Optional[str]:
        """Require an http(s) scheme and strip the trailing slash."""
        if v is None:
            return v
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"external_service_url must start with http:// or https://, got '{v}'")
        return v.rstrip("/")


class ConfigManager:
    """Manages platform configuration with support for YAML files and environment variables.

    Configuration priority (highest to lowest):
    1. Environment variables (CLINICAL_*)
    2. config.yaml file
    3. Environment profile defaults
    4. Default values from PlatformConfig
    """

    ENV_PREFIX = "CLINICAL_"

    def __init__(self, config_path: Optional[str] = None):
        """Initialize the configuration manager.

        Args:
            config_path: Path to config.yaml file. If None, looks for config.yaml
                        in the current directory or uses defaults.
        """
        self.config_path = config_path or "config.yaml"
        self._config: Optional[PlatformConfig] = None

    def load_config(self) -> PlatformConfig:
        """Load configuration from file and environment variables.

        Returns:
            Loaded and validated PlatformConfig instance
        """
        config_dict: Dict[str, Any] = {}

        if os.path.exists(self.config_path):
            with open(self.config_path, 'r') as f:
                yaml_config = yaml.safe_load(f)
                if yaml_config:
                    config_dict.update(yaml_config)
            logger.debug(f"Loaded configuration file {self.config_path}")

        config_dict.update(self._load_from_env())
        config_dict = self._apply_profile_settings(config_dict)

        self._config = PlatformConfig(**config_dict)
        return self._config

    def _load_from_env(self) -> Dict[str, Any]:
        """Load configuration overrides from environment variables.

        Environment variables use the CLINICAL_ prefix and uppercase with
        underscores (e.g., CLINICAL_MODULE_EXECUTION_TIMEOUT).

        Returns:
            Dictionary of configuration overrides from environment
        """
        env_config: Dict[str, Any] = {}
        prefix = self.ENV_PREFIX

        env_environment = os.getenv(f"{prefix}ENV")
        if env_environment is not None:
            env_config["environment"] = env_environment

        to_bool = lambda x: x.lower() in ['true', '1', 'yes']
        env_mappings = {
            f"{prefix}NAME": "name",
            f"{prefix}MODULE_EXECUTION_TIMEOUT": ("module_execution_timeout", float),
            f"{prefix}MAX_CONCURRENT_EXECUTIONS": ("max_concurrent_executions", int),
            f"{prefix}MODULE_PACKAGES": ("module_packages", lambda x: [p.strip() for p in x.split(',') if p.strip()]),
            f"{prefix}WORKFLOW_EXECUTION_TIMEOUT": ("workflow_execution_timeout", float),
            f"{prefix}MAX_CONCURRENT_WORKFLOWS": ("max_concurrent_workflows", int),
            f"{prefix}WORKFLOW_DEFINITIONS_PATH": "workflow_definitions_path",
            f"{prefix}CACHE_DIR": "cache_dir",
            f"{prefix}CACHE_DEFAULT_TTL": ("cache_default_ttl", int),
            f"{prefix}AUDIT_ENABLED": ("audit_enabled", to_bool),
            f"{prefix}AUDIT_RETENTION_DAYS": ("audit_retention_days", int),
            f"{prefix}EXTERNAL_SERVICE_URL": "external_service_url",
            f"{prefix}EXTERNAL_SERVICE_TIMEOUT": ("external_service_timeout", float),
            f"{prefix}EXTERNAL_SERVICE_TOKEN": "external_service_token",  # Sensitive: env only
            f"{prefix}LOG_LEVEL": "log_level",
            f"{prefix}LOG_DIR": "log_dir",
            f"{prefix}ENABLE_FILE_LOGGING": ("enable_file_logging", to_bool),
            f"{prefix}ENABLE_PII_REDACTION": ("enable_pii_redaction", to_bool),
        }

        for env_var, mapping in env_mappings.items():
            value = os.getenv(env_var)
            if value is not None:
                if isinstance(mapping, tuple):
                    config_key, converter = mapping
                    try:
                        env_config[config_key] = converter(value)
                    except (ValueError, TypeError) as e:
                        logger.warning(f"Failed to convert {env_var}={value}: {e}")
                else:
                    env_config[mapping] = value

        return env_config

    def _apply_profile_settings(self, config_dict: Dict[str, Any]) -> Dict[str, Any]:
        """Apply environment-specific configuration defaults.

        Profiles:
        - development: verbose logging
        - production: INFO logging, longer module timeout
        - test: quiet logging, no log files, short timeouts

        Args:
            config_dict: Base configuration dictionary

        Returns:
            Configuration with profile-specific defaults applied
        """
        environment = config_dict.get("environment", "development")

        if environment == "production":
            config_dict.setdefault("log_level", "INFO")
            config_dict.setdefault("module_execution_timeout", 60.0)
            logger.info("Loaded PRODUCTION profile")

        elif environment == "test":
            config_dict.setdefault("log_level", "WARNING")
            config_dict.setdefault("enable_file_logging", False)
            config_dict.setdefault("module_execution_timeout", 5.0)
            config_dict.setdefault("workflow_execution_timeout", 30.0)
            logger.info("Loaded TEST profile")

        else:
            config_dict.setdefault("log_level", "DEBUG")
            logger.info("Loaded DEVELOPMENT profile: verbose logging enabled")

        return config_dict

    def get_config(self) -> PlatformConfig:
        """Get the current configuration.

        Returns:
            Current PlatformConfig instance

        Raises:
            RuntimeError: If configuration hasn't been loaded yet
        """
        if self._config is None:
            raise RuntimeError("Configuration not loaded. Call load_config() first.")
        return self._config

    def save_config(self, path: Optional[str] = None) -> None:
        """Save current configuration to YAML file.

        Secret values are never written.

        Args:
            path: Path to save config file. If None, uses self.config_path
        """
        if self._config is None:
            raise RuntimeError("No configuration to save. Load or create config first.")

        save_path = path or self.config_path
        config_dict = self._config.model_dump(exclude_none=True, exclude={"external_service_token"})

        Path(save_path).parent.mkdir(parents=True, exist_ok=True)

        with open(save_path, 'w') as f:
            yaml.dump(config_dict, f, default_flow_style=False, sort_keys=False)

    def update_config(self, updates: Dict[str, Any]) -> PlatformConfig:
        """Update configuration with new values.

        Args:
            updates: Dictionary of configuration updates

        Returns:
            Updated PlatformConfig instance
        """
        if self._config is None:
            self._config = PlatformConfig(**updates)
        else:
            current_dict = self._config.model_dump()
            current_dict.update(updates)
            self._config = PlatformConfig(**current_dict)

        return self._config
