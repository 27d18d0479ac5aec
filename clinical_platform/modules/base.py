"""Base module interface for clinical processing modules.

This module defines the abstract base class every pluggable module
(protocol analyzers, validators, report generators, ...) must implement,
and the context object handed to a module when it executes.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Union

from clinical_platform.core.datamodels import (
    ModuleCategory,
    ModuleConfig,
    ModuleDescriptor,
    ModuleResult,
    ResultStatus,
)

if TYPE_CHECKING:
    from clinical_platform.orchestration.events import EventBus
    from clinical_platform.orchestration.registry import WorkflowRegistry
    from clinical_platform.services.registry import PlatformServices


@dataclass
class ExecutionMetadata:
    """Who invoked a module, when, and on behalf of which workflow step."""
    timestamp: datetime = field(default_factory=datetime.now)
    initiator: str = "system"
    environment: str = "production"
    workflow_id: Optional[str] = None
    instance_id: Optional[str] = None
    step_id: Optional[str] = None


@dataclass
class ModuleContext:
    """Everything a module sees when it executes.

    Attributes:
        inputs: Resolved step inputs by name
        services: Shared platform services (may be None outside the platform)
        metadata: Invocation metadata
        previous_results: Results of modules executed earlier in the same chain
    """
    inputs: Dict[str, Any] = field(default_factory=dict)
    services: Optional["PlatformServices"] = None
    metadata: ExecutionMetadata = field(default_factory=ExecutionMetadata)
    previous_results: List[ModuleResult] = field(default_factory=list)

    def get(self, name: str, default: Any = None) -> Any:
        """Shorthand for ``context.inputs.get``."""
        return self.inputs.get(name, default)


class BaseModule(ABC):
    """Abstract base class for all processing modules.

    Modules must be safe to retry and should report recoverable problems
    through the error list of their ModuleResult instead of raising.
    Exceptions that escape ``execute`` are caught by the ModuleManager and
    turned into an error result.
    """

    def __init__(
        self,
        module_id: str,
        name: str,
        category: ModuleCategory,
        config: Optional[Union[ModuleConfig, Dict[str, Any]]] = None,
        version: str = "1.0.0",
        description: str = "",
        author: str = ""
    ):
        """Initialize the base module.

        Args:
            module_id: Unique module identifier
            name: Display name
            category: Declared capability category
            config: ModuleConfig or a dictionary of its fields
            version: Module version
            description: Short description of what the module does
            author: Module author
        """
        self.id = module_id
        self.name = name
        self.category = category
        if isinstance(config, dict):
            config = ModuleConfig(**config)
        self.config = config or ModuleConfig()
        self.version = version
        self.description = description
        self.author = author

    @property
    def descriptor(self) -> ModuleDescriptor:
        """Catalog entry for this module."""
        return ModuleDescriptor(
            id=self.id,
            name=self.name,
            version=self.version,
            description=self.description,
            author=self.author,
            category=self.category,
            config=self.config
        )

    @property
    def critical(self) -> bool:
        return self.config.critical

    async def initialize(self) -> None:
        """Acquire resources. Called once before the first execution."""

    async def destroy(self) -> None:
        """Release resources. Called once at shutdown."""

    def is_enabled(self) -> bool:
        return self.config.enabled

    @abstractmethod
    async def execute(self, context: ModuleContext) -> ModuleResult:
        """Run the module against a context.

        Args:
            context: Resolved inputs, shared services and invocation metadata

        Returns:
            ModuleResult describing the outcome
        """
        raise NotImplementedError("Modules must implement the execute method")

    # Platform hooks, all optional

    async def on_platform_start(self) -> None:
        """Called after the platform finished starting."""

    async def on_platform_stop(self) -> None:
        """Called before the platform shuts down."""

    def register_workflows(self, registry: "WorkflowRegistry") -> None:
        """Register workflow definitions this module contributes."""

    def register_event_handlers(self, bus: "EventBus") -> None:
        """Subscribe to platform events."""

    # Helpers

    def get_setting(self, key: str, default: Any = None) -> Any:
        """Get a value from the module's settings.

        Args:
            key: Setting name
            default: Default value if the setting is absent

        Returns:
            Setting value or default
        """
        return self.config.settings.get(key, default)

    def success(
        self,
        data: Any = None,
        messages: Optional[List[str]] = None,
        warnings: Optional[List[str]] = None,
        recommendations: Optional[List[str]] = None
    ) -> ModuleResult:
        """Build a success result, or a warning result when warnings are given."""
        return ModuleResult(
            module_id=self.id,
            status=ResultStatus.WARNING if warnings else ResultStatus.SUCCESS,
            data=data,
            messages=messages or [],
            warnings=warnings or [],
            recommendations=recommendations or []
        )

    def error(self, *errors: str, data: Any = None) -> ModuleResult:
        """Build an error result from one or more error messages."""
        return ModuleResult(
            module_id=self.id,
            status=ResultStatus.ERROR,
            data=data,
            errors=list(errors)
        )

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(id={self.id}, category={self.category.value}, enabled={self.is_enabled()})"
