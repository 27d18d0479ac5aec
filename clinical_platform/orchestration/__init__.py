"""Workflow orchestration: definitions, instances, events and the platform engine."""

from clinical_platform.orchestration.engine import WorkflowEngine
from clinical_platform.orchestration.events import EventBus
from clinical_platform.orchestration.platform import PlatformEngine
from clinical_platform.orchestration.registry import WorkflowRegistry

__all__ = ["EventBus", "PlatformEngine", "WorkflowEngine", "WorkflowRegistry"]
