"""Shared fixtures for the test suite."""

import pytest

from clinical_platform.core.config_manager import PlatformConfig
from clinical_platform.modules.manager import ModuleManager
from clinical_platform.orchestration.engine import WorkflowEngine
from tests.sample_modules import DoubleModule, EchoModule


@pytest.fixture
def config():
    """Platform configuration suited to tests: no log files, short timeouts."""
    return PlatformConfig(
        environment="test",
        log_level="WARNING",
        enable_file_logging=False,
        module_execution_timeout=5.0,
        workflow_execution_timeout=30.0
    )


@pytest.fixture
def manager(config):
    """Module manager preloaded with echo and double modules."""
    module_manager = ModuleManager(config)
    module_manager.register(EchoModule("echo"))
    module_manager.register(DoubleModule("double"))
    return module_manager


@pytest.fixture
def engine(manager, config):
    """Workflow engine without platform services."""
    return WorkflowEngine(manager, config=config)
