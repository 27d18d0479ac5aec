"""Structured logging service backed by loguru.

``initialize`` installs the platform's log sinks and ``shutdown`` flushes
and removes them, giving logging a process-wide lifecycle owned by the
service registry.
"""

from typing import Any, Dict

from loguru import logger

from clinical_platform.core.config_manager import PlatformConfig
from clinical_platform.core.logging_setup import setup_logging, shutdown_logging
from clinical_platform.services.base import LoggingService


class LoguruLoggingService(LoggingService):
    """Logging service binding structured context onto loguru records."""

    def __init__(self, config: PlatformConfig, component: str = "platform", configure_sinks: bool = True):
        """Initialize the logging service.

        Args:
            config: Platform configuration with log settings
            component: Value bound to the ``component`` extra of every record
            configure_sinks: Install console/file sinks on initialize
        """
        self.config = config
        self.component = component
        self.configure_sinks = configure_sinks
        self._logger = logger.bind(component=component)

    async def initialize(self) -> None:
        if self.configure_sinks:
            setup_logging(
                log_level=self.config.log_level,
                log_dir=self.config.log_dir,
                enable_file_logging=self.config.enable_file_logging,
                enable_pii_redaction=self.config.enable_pii_redaction
            )

    async def shutdown(self) -> None:
        if self.configure_sinks:
            await shutdown_logging()

    def log(self, level: str, message: str, **context: Any) -> None:
        self._logger.bind(**context).log(level.upper(), message)

    def child(self, component: str) -> "LoguruLoggingService":
        """Logging service for a sub-component that shares this one's sinks."""
        return LoguruLoggingService(self.config, component=component, configure_sinks=False)

    async def health_check(self) -> Dict[str, Any]:
        return {"healthy": True, "level": self.config.log_level}
