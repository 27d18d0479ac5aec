"""Configuration service with dotted-key access.

Keys mirror PlatformConfig fields, grouped by prefix for readability:
``modules.execution_timeout`` maps to ``module_execution_timeout``,
``workflows.max_concurrent`` to ``max_concurrent_workflows`` and so on.
Unknown keys are kept in a free-form overlay so modules can store their
own settings.
"""

from typing import Any, Dict, Optional

from loguru import logger

from clinical_platform.core.config_manager import ConfigManager, PlatformConfig
from clinical_platform.services.base import ConfigurationService


KEY_ALIASES = {
    "platform.name": "name",
    "platform.version": "version",
    "platform.environment": "environment",
    "modules.execution_timeout": "module_execution_timeout",
    "modules.max_concurrent": "max_concurrent_executions",
    "workflows.execution_timeout": "workflow_execution_timeout",
    "workflows.max_concurrent": "max_concurrent_workflows",
    "cache.default_ttl": "cache_default_ttl",
    "cache.dir": "cache_dir",
    "audit.enabled": "audit_enabled",
    "audit.retention_days": "audit_retention_days",
    "logging.level": "log_level",
}


class PlatformConfigurationService(ConfigurationService):
    """Configuration service over a PlatformConfig."""

    def __init__(self, config: PlatformConfig, manager: Optional[ConfigManager] = None):
        self.config = config
        self.manager = manager
        self._overlay: Dict[str, Any] = {}

    def _field(self, key: str) -> Optional[str]:
        field_name = KEY_ALIASES.get(key, key)
        return field_name if field_name in PlatformConfig.model_fields else None

    def get(self, key: str, default: Any = None) -> Any:
        field_name = self._field(key)
        if field_name is not None:
            return getattr(self.config, field_name)

        if key in self._overlay:
            return self._overlay[key]

        # Nested lookup in the overlay, e.g. "study.sites" after set("study", {...})
        node: Any = self._overlay
        for part in key.split("."):
            if not isinstance(node, dict) or part not in node:
                return default
            node = node[part]
        return node

    def set(self, key: str, value: Any) -> None:
        field_name = self._field(key)
        if field_name is not None:
            # validate_assignment re-runs the field validators
            setattr(self.config, field_name, value)
        else:
            self._overlay[key] = value
        logger.debug(f"Config set: {key}")

    def get_all(self) -> Dict[str, Any]:
        return {**self.config.model_dump(exclude={"external_service_token"}), **self._overlay}

    async def reload(self) -> None:
        """Reload from the config manager's sources, keeping the overlay."""
        if self.manager is None:
            logger.warning("Config reload requested without a ConfigManager; keeping current values")
            return
        self.config = self.manager.load_config()
        logger.info("Configuration reloaded")
