"""Module catalog, lifecycle and isolated execution.

Features:
- Registration with unique ids (DuplicateModuleError otherwise)
- Ordered initialization; critical module failures abort startup
- Priority ordering of active modules (lower value first)
- Execution under a timeout guard with errors converted into ModuleResults
- Per-module execution statistics and memory measurement
- Reverse-order destruction that continues through failures
- Package discovery of BaseModule subclasses
"""

import asyncio
import importlib
import inspect
import pkgutil
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

import psutil
from loguru import logger

from clinical_platform.core.config_manager import PlatformConfig
from clinical_platform.core.datamodels import (
    ModuleCategory,
    ModuleDescriptor,
    ModuleResult,
    ModuleStats,
    ModuleStatus,
)
from clinical_platform.core.exceptions import (
    DependencyError,
    DuplicateModuleError,
    ModuleExecutionTimeoutError,
    StartupError,
    UnknownModuleError,
)
from clinical_platform.modules.base import BaseModule, ModuleContext


# Statuses for which the init hook has run and destroy is owed
_INITIALIZED_STATES = (ModuleStatus.INITIALIZED, ModuleStatus.ACTIVE, ModuleStatus.DISABLED)


@dataclass
class ModuleRegistration:
    """Registry entry for one module."""
    module: BaseModule
    descriptor: ModuleDescriptor
    registered_at: datetime = field(default_factory=datetime.now)
    stats: ModuleStats = field(default_factory=ModuleStats)

    @property
    def status(self) -> ModuleStatus:
        return self.descriptor.status

    @status.setter
    def status(self, value: ModuleStatus) -> None:
        self.descriptor.status = value


class ModuleManager:
    """Catalogs modules and executes them with timeout and error isolation.

    Usage:
        manager = ModuleManager(config)
        manager.register(ProtocolAnalyzer())
        await manager.initialize_all()
        result = await manager.execute("protocol-analyzer", context)
        await manager.destroy_all()
    """

    def __init__(self, config: Optional[PlatformConfig] = None):
        """Initialize the module manager.

        Args:
            config: Platform configuration (defaults are used when omitted)
        """
        self.config = config or PlatformConfig()
        # Insertion order is registration order
        self._modules: Dict[str, ModuleRegistration] = {}
        self._semaphore = asyncio.Semaphore(self.config.max_concurrent_executions)
        self._process = psutil.Process()

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(self, module: BaseModule, descriptor: Optional[ModuleDescriptor] = None) -> ModuleDescriptor:
        """Register a module.

        Args:
            module: Module implementation
            descriptor: Catalog entry; defaults to the module's own descriptor

        Returns:
            The stored descriptor

        Raises:
            DuplicateModuleError: If a module with the same id is registered
        """
        descriptor = descriptor or module.descriptor
        if descriptor.id in self._modules:
            raise DuplicateModuleError(descriptor.id)

        descriptor.status = ModuleStatus.REGISTERED
        self._modules[descriptor.id] = ModuleRegistration(module=module, descriptor=descriptor)
        logger.info(f"Registered module {descriptor.id} v{descriptor.version} ({descriptor.category.value})")
        return descriptor

    async def unregister(self, module_id: str) -> None:
        """Remove a module, destroying it first if it was initialized.

        Raises:
            UnknownModuleError: If the module is not registered
        """
        registration = self._get_registration(module_id)
        if registration.status in _INITIALIZED_STATES:
            await self._destroy(registration)
        del self._modules[module_id]
        logger.info(f"Unregistered module {module_id}")

    def has_module(self, module_id: str) -> bool:
        return module_id in self._modules

    def _get_registration(self, module_id: str) -> ModuleRegistration:
        registration = self._modules.get(module_id)
        if registration is None:
            raise UnknownModuleError(module_id)
        return registration

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get_module(self, module_id: str) -> BaseModule:
        """Get a registered module.

        Raises:
            UnknownModuleError: If the module is not registered
        """
        return self._get_registration(module_id).module

    def get_descriptor(self, module_id: str) -> ModuleDescriptor:
        return self._get_registration(module_id).descriptor

    def get_all_modules(self) -> List[BaseModule]:
        """All registered modules in registration order."""
        return [registration.module for registration in self._modules.values()]

    def get_active_modules(self) -> List[BaseModule]:
        """Enabled, initialized modules in ascending priority order."""
        active = [
            registration for registration in self._modules.values()
            if registration.status == ModuleStatus.ACTIVE and self._is_enabled(registration)
        ]
        active.sort(key=lambda registration: registration.descriptor.config.priority)
        return [registration.module for registration in active]

    def get_modules_by_category(self, category: ModuleCategory) -> List[BaseModule]:
        return [
            registration.module for registration in self._modules.values()
            if registration.descriptor.category == category
        ]

    def get_module_stats(self, module_id: str) -> ModuleStats:
        return self._get_registration(module_id).stats

    def get_all_module_stats(self) -> Dict[str, ModuleStats]:
        return {module_id: registration.stats for module_id, registration in self._modules.items()}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @staticmethod
    def _is_enabled(registration: ModuleRegistration) -> bool:
        return registration.descriptor.config.enabled and registration.module.is_enabled()

    async def initialize_all(self) -> List[str]:
        """Run every registered module's init hook in registration order.

        Non-critical failures are logged and the module is marked as errored.

        Returns:
            Ids of modules that initialized successfully

        Raises:
            StartupError: If a critical module fails to initialize
        """
        initialized = []
        for registration in list(self._modules.values()):
            if registration.status != ModuleStatus.REGISTERED:
                continue
            if await self._initialize(registration, raise_on_critical=True):
                initialized.append(registration.descriptor.id)

        logger.success(f"Initialized {len(initialized)}/{len(self._modules)} modules")
        return initialized

    async def _initialize(self, registration: ModuleRegistration, raise_on_critical: bool) -> bool:
        descriptor = registration.descriptor
        try:
            missing = [dep for dep in descriptor.config.dependencies if dep not in self._modules]
            if missing:
                raise DependencyError(
                    f"Module '{descriptor.id}' depends on unregistered modules {missing}",
                    dependency=",".join(missing)
                )

            await registration.module.initialize()
            registration.status = ModuleStatus.INITIALIZED
            registration.status = (
                ModuleStatus.ACTIVE if self._is_enabled(registration) else ModuleStatus.DISABLED
            )
            logger.debug(f"Module {descriptor.id} initialized ({registration.status.value})")
            return True

        except Exception as e:
            registration.status = ModuleStatus.ERROR
            if descriptor.config.critical and raise_on_critical:
                logger.critical(f"Critical module {descriptor.id} failed to initialize: {e}")
                raise StartupError(
                    f"Critical module '{descriptor.id}' failed to initialize: {e}",
                    component=descriptor.id
                ) from e
            logger.error(f"Module {descriptor.id} failed to initialize, skipping: {e}")
            return False

    def set_module_enabled(self, module_id: str, enabled: bool) -> None:
        """Enable or disable a module without destroying it."""
        registration = self._get_registration(module_id)
        registration.descriptor.config.enabled = enabled
        registration.module.config.enabled = enabled

        if registration.status in (ModuleStatus.ACTIVE, ModuleStatus.DISABLED, ModuleStatus.INITIALIZED):
            registration.status = ModuleStatus.ACTIVE if enabled else ModuleStatus.DISABLED

        logger.info(f"Module {module_id} {'enabled' if enabled else 'disabled'}")

    async def destroy_all(self) -> None:
        """Call destroy hooks in reverse registration order.

        A failing destroy hook is logged and the remaining modules are still
        destroyed.
        """
        for registration in reversed(list(self._modules.values())):
            if registration.status in _INITIALIZED_STATES or registration.status == ModuleStatus.ERROR:
                await self._destroy(registration)
        logger.info("All modules destroyed")

    async def _destroy(self, registration: ModuleRegistration) -> None:
        module_id = registration.descriptor.id
        try:
            await registration.module.destroy()
            logger.debug(f"Module {module_id} destroyed")
        except Exception as e:
            logger.error(f"Failed to destroy module {module_id}: {e}")
        finally:
            registration.status = ModuleStatus.REGISTERED

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _memory_mb(self) -> float:
        return self._process.memory_info().rss / (1024 * 1024)

    async def execute(
        self,
        module_id: str,
        context: ModuleContext,
        timeout: Optional[float] = None
    ) -> ModuleResult:
        """Execute a module under a timeout guard.

        Exceptions and timeouts never propagate; they come back as a
        ModuleResult with status ``error``. A module that has not been
        initialized yet is initialized first.

        Args:
            module_id: Module to execute
            context: Execution context handed to the module
            timeout: Seconds before the execution is abandoned
                     (defaults to module_execution_timeout)

        Returns:
            The module's result, or an error result

        Raises:
            UnknownModuleError: If the module is not registered
        """
        registration = self._get_registration(module_id)

        if registration.status == ModuleStatus.REGISTERED:
            await self._initialize(registration, raise_on_critical=False)

        if registration.status == ModuleStatus.ERROR:
            return ModuleResult.failure(module_id, f"ModuleUnavailable: module '{module_id}' failed to initialize")
        if registration.status != ModuleStatus.ACTIVE or not self._is_enabled(registration):
            return ModuleResult.failure(module_id, f"ModuleDisabled: module '{module_id}' is disabled")

        timeout = timeout or self.config.module_execution_timeout

        async with self._semaphore:
            memory_before = self._memory_mb()
            start = time.perf_counter()
            try:
                result = await asyncio.wait_for(registration.module.execute(context), timeout=timeout)
                if not isinstance(result, ModuleResult):
                    result = ModuleResult.failure(
                        module_id,
                        f"InvalidResult: module returned {type(result).__name__} instead of ModuleResult"
                    )
            except asyncio.TimeoutError:
                error = ModuleExecutionTimeoutError(module_id, timeout)
                logger.warning(error.message)
                result = ModuleResult.failure(module_id, error.message)
            except Exception as e:
                logger.error(f"Module {module_id} raised {type(e).__name__}: {e}")
                result = ModuleResult.failure(module_id, f"{type(e).__name__}: {e}")

            result.metrics.execution_time = time.perf_counter() - start
            result.metrics.memory_usage = self._memory_mb() - memory_before

        registration.stats.record(result)
        logger.debug(
            f"Module {module_id} finished: {result.status.value} "
            f"in {result.metrics.execution_time:.3f}s"
        )
        return result

    async def execute_modules(
        self,
        context: ModuleContext,
        module_ids: Optional[List[str]] = None,
        parallel: bool = False,
        continue_on_error: bool = True
    ) -> List[ModuleResult]:
        """Execute a chain of modules against one context.

        Args:
            context: Shared execution context
            module_ids: Modules to run; defaults to all active modules by priority
            parallel: Run concurrently instead of one after another
            continue_on_error: Keep going after an error result (sequential only)

        Returns:
            Results in execution order
        """
        if module_ids is None:
            module_ids = [module.id for module in self.get_active_modules()]
        for module_id in module_ids:
            self._get_registration(module_id)

        if parallel:
            return list(await asyncio.gather(*(self.execute(module_id, context) for module_id in module_ids)))

        results = []
        for module_id in module_ids:
            result = await self.execute(module_id, context)
            results.append(result)
            context.previous_results.append(result)
            if not result.succeeded and not continue_on_error:
                logger.warning(f"Module chain stopped at {module_id}: {result.errors}")
                break
        return results

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    def discover_modules(self, package_name: str) -> int:
        """Import a package and register every concrete BaseModule subclass in it.

        Classes must be constructible without arguments. Modules whose id is
        already registered are skipped.

        Args:
            package_name: Dotted name of the package to scan

        Returns:
            Number of modules registered
        """
        package = importlib.import_module(package_name)
        module_names = [package_name]
        if hasattr(package, "__path__"):
            module_names += [
                info.name for info in pkgutil.iter_modules(package.__path__, prefix=f"{package_name}.")
            ]

        registered_count = 0
        for module_name in module_names:
            try:
                py_module = importlib.import_module(module_name)
            except ImportError as e:
                logger.warning(f"Skipping {module_name}: import failed ({e})")
                continue

            for _, obj in inspect.getmembers(py_module, inspect.isclass):
                if (issubclass(obj, BaseModule) and
                        obj is not BaseModule and
                        not inspect.isabstract(obj) and
                        obj.__module__ == py_module.__name__):
                    try:
                        instance = obj()
                    except TypeError as e:
                        logger.warning(f"Skipping {obj.__name__}: cannot instantiate without arguments ({e})")
                        continue
                    if instance.id in self._modules:
                        continue
                    self.register(instance)
                    registered_count += 1

        logger.info(f"Discovered {registered_count} modules in {package_name}")
        return registered_count
