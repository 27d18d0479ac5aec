"""Tests for platform startup, module execution and shutdown."""

from typing import List

import pytest
import yaml

from clinical_platform.core.datamodels import (
    InstanceStatus,
    ModuleCategory,
    ModuleResult,
    PlatformEvent,
    ResultStatus,
)
from clinical_platform.core.exceptions import StartupError, WorkflowNotFoundError
from clinical_platform.modules.base import ModuleContext
from clinical_platform.orchestration.platform import PlatformEngine
from clinical_platform.orchestration.resolvers import DataServiceResolver, HttpExternalServiceResolver
from tests.sample_modules import CountingModule, DoubleModule, EchoModule, FailingModule


class HookedModule(CountingModule):
    """Module contributing a workflow and an event handler through the platform hooks."""

    def __init__(self, module_id: str = "site-monitor", **kwargs):
        super().__init__(module_id, category=ModuleCategory.RISK_ASSESSOR, **kwargs)
        self.journal: List[str] = []
        self.events: List[PlatformEvent] = []

    async def initialize(self):
        self.journal.append("initialize")

    async def destroy(self):
        self.journal.append("destroy")

    async def on_platform_start(self):
        self.journal.append("start")

    async def on_platform_stop(self):
        self.journal.append("stop")

    def register_workflows(self, registry):
        registry.register("site-review", {
            "name": "Site review",
            "steps": [{"id": "review", "module_id": self.id}],
        })

    def register_event_handlers(self, bus):
        bus.subscribe("site.flagged", self.events.append)

    async def execute(self, context: ModuleContext) -> ModuleResult:
        self.calls.append(context)
        return self.success(data={"reviewed": True})


class BrokenModule(CountingModule):
    """Module whose initialization always fails."""

    async def initialize(self):
        raise RuntimeError("license server unreachable")

    async def execute(self, context: ModuleContext) -> ModuleResult:
        return self.success()


@pytest.fixture
def platform(config, tmp_path):
    config.cache_dir = str(tmp_path / "cache")
    engine = PlatformEngine(config, configure_logging=False)
    engine.register_module(EchoModule("echo"))
    engine.register_module(DoubleModule("double"))
    return engine


class TestStartup:
    """Test the startup sequence."""

    @pytest.mark.asyncio
    async def test_initialize_and_shutdown(self, platform):
        """Test 1: hooks run after initialization and before destruction"""
        hooked = HookedModule()
        platform.register_module(hooked)

        await platform.initialize()

        assert platform.startup_complete
        assert platform.services.is_initialized
        assert hooked.journal == ["initialize", "start"]
        assert "site-review" in platform.workflows
        assert isinstance(platform.engine.external_resolver, DataServiceResolver)

        await platform.shutdown()

        assert hooked.journal == ["initialize", "start", "stop", "destroy"]
        assert platform.engine is None
        assert not platform.services.is_initialized
        assert not platform.startup_complete

    @pytest.mark.asyncio
    async def test_initialize_is_idempotent(self, platform):
        await platform.initialize()
        engine = platform.engine

        await platform.initialize()

        assert platform.engine is engine
        await platform.shutdown()

    @pytest.mark.asyncio
    async def test_critical_module_failure_aborts(self, platform):
        """Test 2: a failing critical module aborts startup and tears down"""
        platform.register_module(BrokenModule("ctms-bridge", config={"critical": True}))

        with pytest.raises(StartupError):
            await platform.initialize()

        assert not platform.startup_complete
        assert not platform.services.is_initialized

    @pytest.mark.asyncio
    async def test_non_critical_module_failure_is_tolerated(self, platform):
        platform.register_module(BrokenModule("ctms-bridge"))

        await platform.initialize()

        assert platform.startup_complete
        assert "ctms-bridge" not in [module.id for module in platform.modules.get_active_modules()]
        await platform.shutdown()

    @pytest.mark.asyncio
    async def test_loads_workflow_definitions(self, platform, config, tmp_path):
        """Test 3: definitions in the configured YAML file are registered"""
        path = tmp_path / "workflows.yaml"
        path.write_text(yaml.dump({"workflows": [
            {"id": "yaml-flow", "name": "From YAML", "steps": [{"id": "s", "module_id": "echo"}]},
        ]}))
        config.workflow_definitions_path = str(path)

        await platform.initialize()

        assert platform.workflows.get("yaml-flow") is not None
        await platform.shutdown()

    @pytest.mark.asyncio
    async def test_invalid_workflow_file(self, platform, config, tmp_path):
        config.workflow_definitions_path = str(tmp_path / "missing.yaml")

        with pytest.raises(StartupError):
            await platform.initialize()

        assert not platform.services.is_initialized

    @pytest.mark.asyncio
    async def test_http_resolver_when_url_configured(self, platform, config):
        config.external_service_url = "https://ctms.example.org"

        await platform.initialize()

        assert isinstance(platform.engine.external_resolver, HttpExternalServiceResolver)
        await platform.shutdown()

    def test_requires_initialize(self, platform):
        with pytest.raises(RuntimeError):
            platform.get_active_workflows()


class TestExecution:
    """Test module and workflow execution through the platform."""

    @pytest.mark.asyncio
    async def test_execute_module_is_audited(self, platform):
        """Test 1: direct module execution is recorded in the audit trail"""
        await platform.initialize()

        result = await platform.execute_module("double", {"value": 4}, user_id="alice")

        assert result.status == ResultStatus.SUCCESS
        assert result.data == {"value": 8}
        trail = await platform.services.get_services().audit.get_audit_trail("module", "double")
        assert trail[0].action == "module_executed"
        assert trail[0].user_id == "alice"
        await platform.shutdown()

    @pytest.mark.asyncio
    async def test_execute_module_chain(self, platform):
        platform.register_module(FailingModule("range-check"))
        await platform.initialize()

        results = await platform.execute_module_chain(["echo", "range-check", "double"], {"value": 1})

        assert [r.status for r in results] == [ResultStatus.SUCCESS, ResultStatus.ERROR, ResultStatus.SUCCESS]
        await platform.shutdown()

    @pytest.mark.asyncio
    async def test_execute_workflow(self, platform):
        """Test 2: a workflow runs end to end with the caller as initiator"""
        await platform.initialize()
        platform.workflows.register("double-it", {
            "name": "Double it",
            "steps": [{
                "id": "double",
                "module_id": "double",
                "inputs": [{"name": "value", "type": "number"}],
                "outputs": [{"name": "value", "target_key": "doubled"}],
            }],
        })

        result = await platform.execute_workflow("double-it", {"value": 21, "study_id": "S-1"}, user_id="alice")

        assert result.status == InstanceStatus.COMPLETED
        assert result.outputs == {"doubled": 42}
        actions = [record.action for record in await platform.services.get_services().audit.search(entity_type="workflow")]
        assert sorted(actions) == ["workflow_execution_finished", "workflow_execution_requested"]
        await platform.shutdown()

    @pytest.mark.asyncio
    async def test_unknown_workflow(self, platform):
        await platform.initialize()

        with pytest.raises(WorkflowNotFoundError):
            await platform.execute_workflow("nope")
        await platform.shutdown()

    @pytest.mark.asyncio
    async def test_trigger_reaches_module_handlers(self, platform):
        """Test 3: module event handlers receive triggered events"""
        hooked = HookedModule()
        platform.register_module(hooked)
        await platform.initialize()

        started = await platform.trigger("site.flagged", {"site": "Boston"}, user_id="alice")

        assert started == []
        assert hooked.events[0].data == {"site": "Boston"}
        await platform.shutdown()

    @pytest.mark.asyncio
    async def test_health_check(self, platform):
        await platform.initialize()
        await platform.execute_module("echo", {"x": 1})

        report = await platform.health_check()

        assert report["healthy"] is True
        assert report["modules"]["echo"]["executions"] == 1
        assert report["active_workflows"] == 0
        assert "audit" in report["services"]
        await platform.shutdown()

        assert (await platform.health_check())["healthy"] is False
