"""Platform engine wiring services, modules and workflows together.

Handles ordered startup of all platform components:
1. Services (logging, cache, config, data, ...)
2. Module discovery and initialization
3. Workflow definitions from YAML
4. Module platform hooks (workflows, event handlers, on_platform_start)

Shutdown runs in reverse order.
"""

from typing import Any, Dict, List, Optional

from loguru import logger

from clinical_platform.core.config_manager import ConfigManager, PlatformConfig
from clinical_platform.core.datamodels import (
    AuditEvent,
    InstanceStatus,
    ModuleResult,
    WorkflowInstance,
    WorkflowResult,
)
from clinical_platform.core.exceptions import StartupError
from clinical_platform.modules.base import BaseModule, ExecutionMetadata, ModuleContext
from clinical_platform.modules.manager import ModuleManager
from clinical_platform.orchestration.engine import WorkflowEngine
from clinical_platform.orchestration.events import EventBus
from clinical_platform.orchestration.registry import WorkflowRegistry
from clinical_platform.orchestration.resolvers import (
    DataServiceResolver,
    ExternalServiceResolver,
    HttpExternalServiceResolver,
)
from clinical_platform.services.registry import ServiceRegistry


class PlatformEngine:
    """Top-level entry point of the clinical research platform.

    Usage:
        platform = PlatformEngine(config)
        platform.register_module(ProtocolAnalyzer())
        await platform.initialize()
        result = await platform.execute_workflow("protocol-review", {"study_id": "S-1"})
        await platform.shutdown()
    """

    def __init__(
        self,
        config: Optional[PlatformConfig] = None,
        config_manager: Optional[ConfigManager] = None,
        configure_logging: bool = True
    ):
        """Initialize platform components without starting them.

        Args:
            config: Platform configuration (loaded through config_manager when omitted)
            config_manager: Manager to load and reload configuration from
            configure_logging: Let the logging service install log sinks
        """
        if config is None:
            config = config_manager.load_config() if config_manager else PlatformConfig()
        self.config = config

        self.services = ServiceRegistry(config, config_manager, configure_logging=configure_logging)
        self.modules = ModuleManager(config)
        self.workflows = WorkflowRegistry()
        self.event_bus = EventBus()
        self.engine: Optional[WorkflowEngine] = None
        self.startup_complete = False

    def register_module(self, module: BaseModule) -> None:
        """Register a module; modules registered before initialize() are started with it."""
        self.modules.register(module)

    def _build_resolver(self) -> ExternalServiceResolver:
        if self.config.external_service_url:
            logger.info(f"External service resolver: {self.config.external_service_url}")
            return HttpExternalServiceResolver.from_config(self.config)
        return DataServiceResolver(self.services.get_services().data)

    async def initialize(self) -> None:
        """Execute the complete platform startup sequence.

        Raises:
            StartupError: If a service or critical module fails to start
            ConfigurationError: If the workflow definitions file is invalid
        """
        if self.startup_complete:
            logger.info("Platform already initialized")
            return

        logger.info(f"Starting {self.config.name} v{self.config.version} ({self.config.environment})")

        try:
            logger.info("Step 1/4: Initializing services...")
            await self.services.initialize()

            logger.info("Step 2/4: Initializing modules...")
            for package_name in self.config.module_packages:
                self.modules.discover_modules(package_name)
            await self.modules.initialize_all()

            self.engine = WorkflowEngine(
                self.modules,
                registry=self.workflows,
                event_bus=self.event_bus,
                services=self.services.get_services(),
                config=self.config,
                external_resolver=self._build_resolver()
            )

            logger.info("Step 3/4: Loading workflow definitions...")
            if self.config.workflow_definitions_path:
                self.workflows.load_from_yaml(self.config.workflow_definitions_path)

            logger.info("Step 4/4: Running module platform hooks...")
            for module in self.modules.get_active_modules():
                module.register_workflows(self.workflows)
                module.register_event_handlers(self.event_bus)
                await module.on_platform_start()

        except Exception as e:
            logger.error(f"Platform startup failed: {e}")
            await self._teardown()
            if isinstance(e, StartupError):
                raise
            raise StartupError(f"Platform startup failed: {e}", component="platform") from e

        self.startup_complete = True
        logger.success(
            f"Platform started: {len(self.modules.get_active_modules())} active modules, "
            f"{len(self.workflows)} workflows"
        )

    def _require_engine(self) -> WorkflowEngine:
        if self.engine is None:
            raise RuntimeError("Platform not initialized. Call initialize() first.")
        return self.engine

    async def _audit(self, entity_type: str, entity_id: str, action: str, user_id: str, **changes: Any) -> None:
        if not self.config.audit_enabled:
            return
        try:
            await self.services.get_services().audit.log(AuditEvent(
                entity_type=entity_type,
                entity_id=entity_id,
                action=action,
                user_id=user_id,
                changes=changes
            ))
        except Exception as e:
            logger.error(f"Audit logging failed for {entity_type} {entity_id} ({action}): {e}")

    def _module_context(self, inputs: Optional[Dict[str, Any]], user_id: str) -> ModuleContext:
        return ModuleContext(
            inputs=dict(inputs or {}),
            services=self.services.get_services(),
            metadata=ExecutionMetadata(initiator=user_id, environment=self.config.environment)
        )

    async def execute_module(
        self,
        module_id: str,
        inputs: Optional[Dict[str, Any]] = None,
        user_id: str = "system"
    ) -> ModuleResult:
        """Execute a single module outside any workflow.

        Raises:
            UnknownModuleError: If the module is not registered
        """
        result = await self.modules.execute(module_id, self._module_context(inputs, user_id))
        await self._audit(
            "module", module_id, "module_executed", user_id,
            status=result.status.value,
            execution_time=result.metrics.execution_time,
            errors=result.errors
        )
        return result

    async def execute_module_chain(
        self,
        module_ids: List[str],
        inputs: Optional[Dict[str, Any]] = None,
        parallel: bool = False,
        continue_on_error: bool = True,
        user_id: str = "system"
    ) -> List[ModuleResult]:
        """Execute several modules against one shared context."""
        results = await self.modules.execute_modules(
            self._module_context(inputs, user_id),
            module_ids=module_ids,
            parallel=parallel,
            continue_on_error=continue_on_error
        )
        for result in results:
            await self._audit(
                "module", result.module_id, "module_executed", user_id,
                status=result.status.value,
                execution_time=result.metrics.execution_time,
                errors=result.errors
            )
        return results

    async def execute_workflow(
        self,
        workflow_id: str,
        parameters: Optional[Dict[str, Any]] = None,
        user_id: str = "system",
        timeout: Optional[float] = None
    ) -> WorkflowResult:
        """Run a workflow to completion.

        Raises:
            WorkflowNotFoundError: If the workflow is not registered
        """
        engine = self._require_engine()
        params = {"user_id": user_id, **(parameters or {})}

        await self._audit("workflow", workflow_id, "workflow_execution_requested", user_id, parameters=sorted(params))
        result = await engine.execute_workflow(workflow_id, params, timeout=timeout)
        await self._audit(
            "workflow", workflow_id, "workflow_execution_finished", user_id,
            instance_id=result.instance_id,
            status=result.status.value,
            errors=result.errors
        )
        return result

    async def trigger(self, event_name: str, data: Optional[Dict[str, Any]] = None, user_id: Optional[str] = None) -> List[WorkflowInstance]:
        return await self._require_engine().trigger(event_name, data, user_id=user_id)

    def get_workflow_status(self, instance_id: str) -> InstanceStatus:
        return self._require_engine().get_workflow_status(instance_id)

    def get_active_workflows(self, study_id: Optional[str] = None) -> List[WorkflowInstance]:
        return self._require_engine().get_active_workflows(study_id)

    async def health_check(self) -> Dict[str, Any]:
        """Aggregated health of services, modules and running workflows."""
        services = await self.services.health_check()
        modules = {
            module_id: {
                "status": self.modules.get_descriptor(module_id).status.value,
                "executions": stats.total_executions,
                "errors": stats.error_count,
            }
            for module_id, stats in self.modules.get_all_module_stats().items()
        }
        active = len(self.engine.get_active_workflows()) if self.engine else 0
        return {
            "healthy": self.startup_complete and all(s.get("healthy", False) for s in services.values()),
            "services": services,
            "modules": modules,
            "active_workflows": active,
        }

    async def _teardown(self) -> None:
        for module in reversed(self.modules.get_active_modules()):
            try:
                await module.on_platform_stop()
            except Exception as e:
                logger.error(f"Module {module.id} on_platform_stop failed: {e}")

        if self.engine is not None:
            await self.engine.shutdown()
            self.engine = None
        await self.modules.destroy_all()
        if self.services.is_initialized:
            await self.services.shutdown()

    async def shutdown(self) -> None:
        """Stop workflows, destroy modules and shut services down."""
        logger.info("Shutting down platform...")
        await self._teardown()
        self.startup_complete = False
        logger.success("Platform shut down")
