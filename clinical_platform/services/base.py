"""Service contracts supplied to modules through the service registry.

Each contract is an abstract base class. The platform ships one in-memory
implementation per contract; production backends implement the same
contract and are swapped in with ``ServiceRegistry.register_service``.
"""

from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional

from clinical_platform.core.datamodels import AuditEvent, AuditRecord, Notification


class PlatformService(ABC):
    """Lifecycle shared by every service."""

    name: str = "service"

    async def initialize(self) -> None:
        """Prepare the service for use."""

    async def shutdown(self) -> None:
        """Release resources held by the service."""

    async def health_check(self) -> Dict[str, Any]:
        """Report service health.

        Returns:
            Dictionary with at least a boolean ``healthy`` key
        """
        return {"healthy": True}


class AuditService(PlatformService):
    """Audit sink. The workflow engine depends on ``log`` only."""

    name = "audit"

    @abstractmethod
    async def log(self, event: AuditEvent) -> AuditRecord:
        """Record an audit event."""

    @abstractmethod
    async def get_audit_trail(self, entity_type: str, entity_id: str) -> List[AuditRecord]:
        """Records for one entity, newest first."""

    @abstractmethod
    async def search(self, **criteria: Any) -> List[AuditRecord]:
        """Records matching all given criteria."""


class CacheService(PlatformService):
    name = "cache"

    @abstractmethod
    async def get(self, key: str, default: Any = None) -> Any:
        ...

    @abstractmethod
    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        ...

    @abstractmethod
    async def delete(self, key: str) -> bool:
        ...

    @abstractmethod
    async def clear(self) -> None:
        ...


class ConfigurationService(PlatformService):
    """Dotted-key access to platform configuration."""

    name = "config"

    @abstractmethod
    def get(self, key: str, default: Any = None) -> Any:
        ...

    @abstractmethod
    def set(self, key: str, value: Any) -> None:
        ...

    @abstractmethod
    def get_all(self) -> Dict[str, Any]:
        ...

    @abstractmethod
    async def reload(self) -> None:
        ...


class LoggingService(PlatformService):
    """Structured logging handed to modules."""

    name = "logger"

    @abstractmethod
    def log(self, level: str, message: str, **context: Any) -> None:
        ...

    def debug(self, message: str, **context: Any) -> None:
        self.log("DEBUG", message, **context)

    def info(self, message: str, **context: Any) -> None:
        self.log("INFO", message, **context)

    def warning(self, message: str, **context: Any) -> None:
        self.log("WARNING", message, **context)

    def error(self, message: str, **context: Any) -> None:
        self.log("ERROR", message, **context)


class DataService(PlatformService):
    """Entity persistence."""

    name = "data"

    @abstractmethod
    async def save(self, entity: str, record: Dict[str, Any]) -> Dict[str, Any]:
        """Store a record, assigning an ``id`` when it has none."""

    @abstractmethod
    async def find_one(self, entity: str, record_id: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    async def find(self, entity: str, **filters: Any) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    async def update(self, entity: str, record_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        ...

    @abstractmethod
    async def delete(self, entity: str, record_id: str) -> bool:
        ...


class UserService(PlatformService):
    """Users, sessions and permissions."""

    name = "users"

    @abstractmethod
    async def get_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    async def create_session(self, user_id: str) -> Dict[str, Any]:
        ...

    @abstractmethod
    async def end_session(self, session_id: str) -> None:
        ...

    @abstractmethod
    async def has_permission(self, user_id: str, permission: str) -> bool:
        ...

    @abstractmethod
    async def has_role(self, user_id: str, role: str) -> bool:
        ...


class DocumentService(PlatformService):
    """Versioned document storage."""

    name = "documents"

    @abstractmethod
    async def store(self, name: str, content: Any, metadata: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Store a document and return its metadata (including ``id``)."""

    @abstractmethod
    async def retrieve(self, document_id: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    async def update(self, document_id: str, content: Any) -> Dict[str, Any]:
        """Replace the content, keeping the previous version."""

    @abstractmethod
    async def delete(self, document_id: str) -> bool:
        ...

    @abstractmethod
    async def get_versions(self, document_id: str) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    async def search(self, **criteria: Any) -> List[Dict[str, Any]]:
        ...


NotificationListener = Callable[[Notification], Any]


class NotificationService(PlatformService):
    name = "notifications"

    @abstractmethod
    async def send(self, notification: Notification) -> None:
        ...

    @abstractmethod
    async def subscribe(self, recipient: str, listener: NotificationListener) -> None:
        ...

    @abstractmethod
    async def get_notifications(self, recipient: str, unread_only: bool = False) -> List[Notification]:
        ...

    @abstractmethod
    async def mark_as_read(self, recipient: str, notification_id: str) -> bool:
        ...


class ComplianceService(PlatformService):
    """Regulatory checks and electronic signatures."""

    name = "compliance"

    @abstractmethod
    async def validate(self, framework: str, data: Dict[str, Any]) -> Dict[str, Any]:
        """Check data against a framework.

        Returns:
            Dictionary with ``is_compliant``, ``violations``,
            ``recommendations`` and ``score``
        """

    @abstractmethod
    async def create_electronic_signature(
        self,
        entity_id: str,
        signer: str,
        meaning: str
    ) -> Dict[str, Any]:
        ...

    @abstractmethod
    async def get_signatures(self, entity_id: str) -> List[Dict[str, Any]]:
        ...


class SharedDataService(PlatformService):
    """Namespaced key/value store shared between modules and workflows."""

    name = "shared"

    @abstractmethod
    async def get(self, namespace: str, key: str, default: Any = None) -> Any:
        ...

    @abstractmethod
    async def set(self, namespace: str, key: str, value: Any) -> None:
        ...

    @abstractmethod
    async def get_namespace(self, namespace: str) -> Dict[str, Any]:
        ...

    @abstractmethod
    async def clear_namespace(self, namespace: str) -> None:
        ...
