"""Service registry supplying cross-cutting services to modules.

Features:
- One default in-memory implementation per service contract
- Replacement of any service before startup (register_service)
- Ordered initialization (logging, cache and config first)
- Reverse-order shutdown that continues through individual failures
- Aggregated health check
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from loguru import logger

from clinical_platform.core.config_manager import ConfigManager, PlatformConfig
from clinical_platform.core.exceptions import DependencyError, StartupError
from clinical_platform.services.audit import InMemoryAuditService
from clinical_platform.services.base import (
    AuditService,
    CacheService,
    ComplianceService,
    ConfigurationService,
    DataService,
    DocumentService,
    LoggingService,
    NotificationService,
    PlatformService,
    SharedDataService,
    UserService,
)
from clinical_platform.services.cache import DiskCacheService
from clinical_platform.services.compliance import InMemoryComplianceService
from clinical_platform.services.config import PlatformConfigurationService
from clinical_platform.services.data import InMemoryDataService
from clinical_platform.services.documents import InMemoryDocumentService
from clinical_platform.services.log_service import LoguruLoggingService
from clinical_platform.services.notifications import InMemoryNotificationService
from clinical_platform.services.shared import InMemorySharedDataService
from clinical_platform.services.users import InMemoryUserService


# Initialization order; shutdown runs in reverse
SERVICE_ORDER = [
    "logger",
    "cache",
    "config",
    "data",
    "users",
    "documents",
    "notifications",
    "audit",
    "compliance",
    "shared",
]


@dataclass
class PlatformServices:
    """Typed bundle of services handed to modules through their context."""
    logger: LoggingService
    cache: CacheService
    config: ConfigurationService
    data: DataService
    users: UserService
    documents: DocumentService
    notifications: NotificationService
    audit: AuditService
    compliance: ComplianceService
    shared: SharedDataService


class ServiceRegistry:
    """Owns the platform services and their lifecycle.

    Usage:
        registry = ServiceRegistry(config)
        registry.register_service("data", PostgresDataService(...))
        await registry.initialize()
        services = registry.get_services()
        ...
        await registry.shutdown()
    """

    def __init__(
        self,
        config: Optional[PlatformConfig] = None,
        config_manager: Optional[ConfigManager] = None,
        configure_logging: bool = True
    ):
        """Initialize the registry with default implementations.

        Args:
            config: Platform configuration (defaults are used when omitted)
            config_manager: Manager used by the config service to reload
            configure_logging: Let the logging service install log sinks
        """
        self.config = config or PlatformConfig()
        self._services: Dict[str, PlatformService] = {
            "logger": LoguruLoggingService(self.config, configure_sinks=configure_logging),
            "cache": DiskCacheService(
                cache_dir=self.config.cache_dir,
                default_ttl=self.config.cache_default_ttl
            ),
            "config": PlatformConfigurationService(self.config, config_manager),
            "data": InMemoryDataService(),
            "users": InMemoryUserService(),
            "documents": InMemoryDocumentService(),
            "notifications": InMemoryNotificationService(),
            "audit": InMemoryAuditService(retention_days=self.config.audit_retention_days),
            "compliance": InMemoryComplianceService(),
            "shared": InMemorySharedDataService(),
        }
        self._initialized: List[str] = []

    @property
    def is_initialized(self) -> bool:
        return bool(self._initialized)

    def _ordered_names(self) -> List[str]:
        extra = [name for name in self._services if name not in SERVICE_ORDER]
        return [name for name in SERVICE_ORDER if name in self._services] + extra

    async def initialize(self) -> None:
        """Initialize every service in dependency order.

        Raises:
            StartupError: If a service fails to initialize; services already
                initialized are shut down again first
        """
        if self._initialized:
            logger.warning("Service registry already initialized")
            return

        for name in self._ordered_names():
            try:
                await self._services[name].initialize()
            except Exception as e:
                logger.error(f"Service {name} failed to initialize: {e}")
                await self.shutdown()
                raise StartupError(f"Service '{name}' failed to initialize: {e}", component=name) from e
            self._initialized.append(name)

        logger.success(f"Service registry initialized ({len(self._initialized)} services)")

    async def shutdown(self) -> None:
        """Shut services down in reverse initialization order."""
        for name in reversed(self._initialized):
            service = self._services.get(name)
            if service is None:
                continue
            try:
                await service.shutdown()
            except Exception as e:
                logger.error(f"Service {name} failed to shut down: {e}")
        self._initialized = []
        logger.info("Service registry shut down")

    def get_service(self, name: str) -> PlatformService:
        """Get one service by name.

        Raises:
            DependencyError: If no service is registered under the name
        """
        service = self._services.get(name)
        if service is None:
            raise DependencyError(f"Service '{name}' is not registered", dependency=name)
        return service

    def get_services(self) -> PlatformServices:
        """Bundle of all standard services.

        Raises:
            DependencyError: If a standard service was unregistered
        """
        return PlatformServices(**{name: self.get_service(name) for name in SERVICE_ORDER})

    def register_service(self, name: str, service: PlatformService) -> None:
        """Register or replace a service.

        Replacements should happen before ``initialize``; a service registered
        afterwards is not initialized by the registry.
        """
        if name in self._services:
            logger.warning(f"Overriding service '{name}' with {type(service).__name__}")
        self._services[name] = service

    def unregister_service(self, name: str) -> Optional[PlatformService]:
        if name in self._initialized:
            self._initialized.remove(name)
        return self._services.pop(name, None)

    async def health_check(self) -> Dict[str, Dict[str, Any]]:
        """Health of every registered service.

        A service whose check raises is reported unhealthy with the error.
        """
        report: Dict[str, Dict[str, Any]] = {}
        for name in self._ordered_names():
            try:
                report[name] = await self._services[name].health_check()
            except Exception as e:
                logger.warning(f"Health check for {name} failed: {e}")
                report[name] = {"healthy": False, "error": str(e)}
        return report
