"""Core data models for the clinical research platform.

This module defines the Pydantic models for module descriptors and results,
workflow definitions, running workflow instances, platform events and audit
records used throughout the platform.

Workflow definitions and their parts are frozen: a definition is registered
once and never changes; a new version is registered under a new id.
"""

import time
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


# ---------------------------------------------------------------------------
# Modules
# ---------------------------------------------------------------------------

class ModuleCategory(str, Enum):
    """Capability categories a module can declare."""

    PROTOCOL_ANALYZER = "protocol-analyzer"
    DATA_VALIDATOR = "data-validator"
    REPORT_GENERATOR = "report-generator"
    COMPLIANCE_CHECKER = "compliance-checker"
    RISK_ASSESSOR = "risk-assessor"
    TIMELINE_PLANNER = "timeline-planner"
    ENDPOINT_ANALYZER = "endpoint-analyzer"
    SAFETY_MONITOR = "safety-monitor"
    QUALITY_CONTROLLER = "quality-controller"
    REGULATORY_REVIEWER = "regulatory-reviewer"
    DOCUMENT_PROCESSOR = "document-processor"


class ModuleStatus(str, Enum):
    """Lifecycle status of a registered module."""

    REGISTERED = "registered"
    INITIALIZED = "initialized"
    ACTIVE = "active"
    DISABLED = "disabled"
    ERROR = "error"


class ModuleConfig(BaseModel):
    """Per-module configuration."""

    enabled: bool = Field(default=True, description="Whether the module may be executed")
    priority: int = Field(default=999, description="Ordering among active modules (lower runs first)")
    settings: Dict[str, Any] = Field(default_factory=dict, description="Module specific settings")
    dependencies: List[str] = Field(default_factory=list, description="Ids of modules this one relies on")
    critical: bool = Field(default=False, description="Initialization failure aborts platform startup")
    therapeutic_areas: List[str] = Field(default_factory=list)
    study_phases: List[str] = Field(default_factory=list)


class ModuleDescriptor(BaseModel):
    """Catalog entry describing a module."""

    id: str = Field(..., min_length=1, description="Unique module identifier")
    name: str = Field(..., description="Display name")
    version: str = Field(default="1.0.0")
    description: str = Field(default="")
    author: str = Field(default="")
    category: ModuleCategory = Field(..., description="Declared capability category")
    config: ModuleConfig = Field(default_factory=ModuleConfig)
    status: ModuleStatus = Field(default=ModuleStatus.REGISTERED)


class ResultStatus(str, Enum):
    """Outcome of one module execution."""

    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


class ModuleMetrics(BaseModel):
    """Measurements collected for one module execution."""

    execution_time: float = Field(default=0.0, ge=0.0, description="Wall time in seconds")
    memory_usage: Optional[float] = Field(default=None, description="Resident memory delta in MB")
    custom: Dict[str, float] = Field(default_factory=dict)


class ModuleResult(BaseModel):
    """Result returned by a module's execute operation."""

    module_id: str
    status: ResultStatus
    data: Any = Field(default=None, description="Result payload")
    messages: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)
    metrics: ModuleMetrics = Field(default_factory=ModuleMetrics)
    recommendations: List[str] = Field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        """True for success and warning results."""
        return self.status != ResultStatus.ERROR

    @classmethod
    def failure(cls, module_id: str, error: str, execution_time: float = 0.0) -> "ModuleResult":
        """Build an error result carrying a single error message."""
        return cls(
            module_id=module_id,
            status=ResultStatus.ERROR,
            errors=[error],
            metrics=ModuleMetrics(execution_time=execution_time)
        )


class ModuleStats(BaseModel):
    """Running execution statistics for one module."""

    total_executions: int = 0
    success_count: int = 0
    error_count: int = 0
    avg_execution_time: float = 0.0
    last_executed: Optional[datetime] = None

    def record(self, result: ModuleResult) -> None:
        """Fold one execution result into the statistics."""
        self.total_executions += 1
        if result.succeeded:
            self.success_count += 1
        else:
            self.error_count += 1
        elapsed = result.metrics.execution_time
        self.avg_execution_time += (elapsed - self.avg_execution_time) / self.total_executions
        self.last_executed = datetime.now()


# ---------------------------------------------------------------------------
# Workflow definitions
# ---------------------------------------------------------------------------

class StepType(str, Enum):
    """Kinds of workflow steps."""

    MODULE = "module"
    APPROVAL = "approval"
    CONDITION = "condition"
    PARALLEL = "parallel"
    SEQUENTIAL = "sequential"


class InputSource(str, Enum):
    """Where a step input is read from."""

    CONTEXT = "context"
    PREVIOUS_STEP = "previous-step"
    USER_INPUT = "user-input"
    EXTERNAL_SERVICE = "external-service"


class OutputTarget(str, Enum):
    """Where a step output is written to."""

    CONTEXT = "context"
    EXTERNAL_SERVICE = "external-service"
    SHARED_NAMESPACE = "shared-namespace"


class OutputMode(str, Enum):
    """How an output value is extracted from a step's result payload.

    - AUTO: the named field when the payload has it, else the whole payload
    - FIELD: the named field, which must be present
    - PAYLOAD: the whole payload
    """

    AUTO = "auto"
    FIELD = "field"
    PAYLOAD = "payload"


class ConditionType(str, Enum):
    """Informational classification of a condition."""

    DATA = "data"
    USER = "user"
    TIME = "time"
    CUSTOM = "custom"


class BackoffStrategy(str, Enum):
    """Delay growth between retry attempts."""

    FIXED = "fixed"
    EXPONENTIAL = "exponential"


class TriggerType(str, Enum):
    """Ways a workflow can be started."""

    MANUAL = "manual"
    SCHEDULE = "schedule"
    EVENT = "event"


class RetryPolicy(BaseModel):
    """Retry behaviour for a failing step.

    ``max_retries`` counts retries, so a step is attempted at most
    ``max_retries + 1`` times. Delays are in seconds.
    """

    model_config = ConfigDict(frozen=True)

    max_retries: int = Field(default=3, ge=0, le=100)
    backoff_strategy: BackoffStrategy = Field(default=BackoffStrategy.FIXED)
    initial_delay: float = Field(default=1.0, ge=0.0)
    max_delay: Optional[float] = Field(default=None, ge=0.0)

    def compute_delay(self, failed_attempts: int) -> float:
        """Delay before the next attempt after ``failed_attempts`` failures.

        Args:
            failed_attempts: Number of failed attempts so far (1-based)

        Returns:
            Delay in seconds, capped at max_delay when set
        """
        if self.backoff_strategy == BackoffStrategy.EXPONENTIAL:
            delay = self.initial_delay * (2 ** max(failed_attempts - 1, 0))
        else:
            delay = self.initial_delay
        if self.max_delay is not None:
            delay = min(delay, self.max_delay)
        return delay


class WorkflowCondition(BaseModel):
    """A sandboxed expression gating a step, workflow or trigger.

    The expression is evaluated against the instance context. When ``value``
    is set the expression result must equal it, otherwise the result's
    truthiness decides.
    """

    model_config = ConfigDict(frozen=True)

    type: ConditionType = Field(default=ConditionType.DATA)
    expression: str = Field(..., min_length=1)
    value: Any = None


class WorkflowInput(BaseModel):
    """A typed step input."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1)
    type: str = Field(default="any", description="Declared type: string, number, integer, boolean, object, array or any")
    required: bool = True
    source: InputSource = InputSource.CONTEXT
    source_key: Optional[str] = None
    default: Any = None

    @property
    def key(self) -> str:
        """Lookup key in the source, defaults to the input name."""
        return self.source_key or self.name


class WorkflowOutput(BaseModel):
    """A typed step output."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1)
    type: str = Field(default="any")
    target: OutputTarget = OutputTarget.CONTEXT
    target_key: Optional[str] = None
    mode: OutputMode = OutputMode.AUTO

    @property
    def key(self) -> str:
        """Key written in the target, defaults to the output name."""
        return self.target_key or self.name


class WorkflowStep(BaseModel):
    """One node of a workflow."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1)
    name: str = Field(default="")
    type: StepType = StepType.MODULE
    module_id: Optional[str] = None
    inputs: List[WorkflowInput] = Field(default_factory=list)
    outputs: List[WorkflowOutput] = Field(default_factory=list)
    conditions: List[WorkflowCondition] = Field(default_factory=list)
    timeout: Optional[float] = Field(default=None, gt=0.0, description="Seconds")
    retry_policy: Optional[RetryPolicy] = None
    expression: Optional[str] = Field(default=None, description="Boolean expression of a condition step")
    skip_on_false: List[str] = Field(default_factory=list, description="Steps skipped when a condition step is false")
    steps: List["WorkflowStep"] = Field(default_factory=list, description="Sub-steps of parallel/sequential steps")
    permissions: List[str] = Field(default_factory=list, description="Roles allowed to decide an approval step")

    @model_validator(mode="after")
    def check_type_requirements(self) -> "WorkflowStep":
        """Reject steps missing the fields their type needs."""
        if self.type == StepType.MODULE and not self.module_id:
            raise ValueError(f"module step '{self.id}' requires module_id")
        if self.type == StepType.CONDITION and not self.expression:
            raise ValueError(f"condition step '{self.id}' requires expression")
        if self.type in (StepType.PARALLEL, StepType.SEQUENTIAL) and not self.steps:
            raise ValueError(f"{self.type.value} step '{self.id}' requires sub-steps")
        if self.skip_on_false and self.type != StepType.CONDITION:
            raise ValueError(f"skip_on_false is only valid on condition steps ('{self.id}')")
        return self

    def walk(self) -> Iterator["WorkflowStep"]:
        """Yield this step and all nested sub-steps depth first."""
        yield self
        for sub_step in self.steps:
            yield from sub_step.walk()


class WorkflowTrigger(BaseModel):
    """Declarative rule starting a workflow."""

    model_config = ConfigDict(frozen=True)

    type: TriggerType = TriggerType.MANUAL
    event: Optional[str] = None
    schedule: Optional[str] = None
    conditions: List[WorkflowCondition] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_trigger_fields(self) -> "WorkflowTrigger":
        if self.type == TriggerType.EVENT and not self.event:
            raise ValueError("event trigger requires an event name")
        if self.type == TriggerType.SCHEDULE and not self.schedule:
            raise ValueError("schedule trigger requires a schedule")
        return self

    def matches(self, event_name: str) -> bool:
        """True if this is an event trigger for ``event_name``."""
        return self.type == TriggerType.EVENT and self.event == event_name


class WorkflowDefinition(BaseModel):
    """Immutable, ordered definition of a workflow."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    version: str = Field(default="1.0.0")
    description: str = Field(default="")
    steps: List[WorkflowStep] = Field(..., min_length=1)
    triggers: List[WorkflowTrigger] = Field(default_factory=lambda: [WorkflowTrigger()])
    conditions: List[WorkflowCondition] = Field(default_factory=list, description="Global conditions checked at start")
    timeout: Optional[float] = Field(default=None, gt=0.0, description="Seconds")
    retry_policy: Optional[RetryPolicy] = Field(default=None, description="Default for steps without their own")

    @model_validator(mode="after")
    def check_step_references(self) -> "WorkflowDefinition":
        """Step ids must be unique and skip targets must exist."""
        seen = set()
        for step in self.iter_steps():
            if step.id in seen:
                raise ValueError(f"duplicate step id '{step.id}' in workflow '{self.id}'")
            seen.add(step.id)
        for step in self.iter_steps():
            unknown = [target for target in step.skip_on_false if target not in seen]
            if unknown:
                raise ValueError(f"step '{step.id}' skips unknown steps {unknown}")
        return self

    def iter_steps(self) -> Iterator[WorkflowStep]:
        """Yield every step including nested sub-steps."""
        for step in self.steps:
            yield from step.walk()

    def event_triggers(self, event_name: str) -> List[WorkflowTrigger]:
        return [trigger for trigger in self.triggers if trigger.matches(event_name)]


WorkflowStep.model_rebuild()


# ---------------------------------------------------------------------------
# Workflow instances
# ---------------------------------------------------------------------------

class InstanceStatus(str, Enum):
    """Workflow instance states."""

    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    AWAITING_APPROVAL = "awaiting_approval"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (InstanceStatus.COMPLETED, InstanceStatus.FAILED, InstanceStatus.CANCELLED)


class StepStatus(str, Enum):
    """Status of a history entry."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


def generate_instance_id() -> str:
    """Instance ids look like ``wf_<epoch millis>_<random>``."""
    return f"wf_{int(time.time() * 1000)}_{uuid4().hex[:9]}"


class ExecutionContext(BaseModel):
    """Per-instance data bag threaded through step inputs and outputs."""

    study_id: Optional[str] = None
    user_id: str = Field(default="system")
    environment: str = Field(default="production")
    data: Dict[str, Any] = Field(default_factory=dict, description="Context data map")
    step_outputs: Dict[str, Any] = Field(default_factory=dict, description="Outputs written by steps, by target key")
    step_results: Dict[str, Any] = Field(default_factory=dict, description="Raw result payload by step id")


class WorkflowHistoryEntry(BaseModel):
    """One attempt of one step."""

    step_id: str
    status: StepStatus = StepStatus.RUNNING
    attempt: int = Field(default=1, ge=1)
    start_time: datetime = Field(default_factory=datetime.now)
    end_time: Optional[datetime] = None
    duration: Optional[float] = Field(default=None, description="Seconds")
    inputs: Dict[str, Any] = Field(default_factory=dict)
    outputs: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None
    error_type: Optional[str] = None

    def finish(
        self,
        status: StepStatus,
        error: Optional[str] = None,
        error_type: Optional[str] = None
    ) -> None:
        """Close the entry with its final status and timing."""
        self.status = status
        self.end_time = datetime.now()
        self.duration = (self.end_time - self.start_time).total_seconds()
        self.error = error
        self.error_type = error_type


class ApprovalRequest(BaseModel):
    """An approval step waiting for a decision."""

    step_id: str
    permissions: List[str] = Field(default_factory=list)
    requested_at: datetime = Field(default_factory=datetime.now)


class ApprovalDecision(BaseModel):
    """Decision delivered to a waiting approval step."""

    approved: bool
    approver: Optional[str] = None
    comments: Optional[str] = None
    decided_at: datetime = Field(default_factory=datetime.now)


class WorkflowInstance(BaseModel):
    """One execution run of a workflow definition."""

    id: str = Field(default_factory=generate_instance_id)
    workflow_id: str
    status: InstanceStatus = InstanceStatus.PENDING
    parameters: Dict[str, Any] = Field(default_factory=dict)
    context: ExecutionContext = Field(default_factory=ExecutionContext)
    user_inputs: Dict[str, Any] = Field(default_factory=dict)
    history: List[WorkflowHistoryEntry] = Field(default_factory=list)
    cursor: int = Field(default=0, ge=0, description="Index of the next unexecuted top-level step")
    skipped_steps: List[str] = Field(default_factory=list, description="Steps disabled by false condition steps")
    pending_approval: Optional[ApprovalRequest] = None
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error: Optional[str] = None

    def touch(self) -> None:
        self.updated_at = datetime.now()

    def failed_attempts(self, step_id: str, since: int = 0) -> int:
        """Number of failed history entries recorded for a step.

        Args:
            step_id: Step to count
            since: History index to start counting from
        """
        return sum(
            1 for entry in self.history[since:]
            if entry.step_id == step_id and entry.status == StepStatus.FAILED
        )

    def attempts(self, step_id: str) -> int:
        """Number of history entries recorded for a step."""
        return sum(1 for entry in self.history if entry.step_id == step_id)

    def last_entry(self, step_id: str, since: int = 0) -> Optional["WorkflowHistoryEntry"]:
        for entry in reversed(self.history[since:]):
            if entry.step_id == step_id:
                return entry
        return None

    def first_index(self, step_id: str) -> Optional[int]:
        """History index of the first entry recorded for a step."""
        for index, entry in enumerate(self.history):
            if entry.step_id == step_id:
                return index
        return None

    def collect_errors(self) -> List[str]:
        return [
            f"{entry.step_id}: {entry.error}"
            for entry in self.history
            if entry.status == StepStatus.FAILED and entry.error
        ]

    @property
    def duration(self) -> float:
        """Seconds from start (or creation) to completion, or to now if still running."""
        start = self.started_at or self.created_at
        end = self.completed_at or datetime.now()
        return (end - start).total_seconds()


class WorkflowResult(BaseModel):
    """Outcome returned by execute_workflow."""

    instance_id: str
    workflow_id: str
    status: InstanceStatus
    outputs: Dict[str, Any] = Field(default_factory=dict)
    errors: List[str] = Field(default_factory=list)
    duration: float = 0.0

    @classmethod
    def from_instance(cls, instance: WorkflowInstance) -> "WorkflowResult":
        return cls(
            instance_id=instance.id,
            workflow_id=instance.workflow_id,
            status=instance.status,
            outputs=dict(instance.context.step_outputs),
            errors=instance.collect_errors(),
            duration=instance.duration
        )


# ---------------------------------------------------------------------------
# Events, audit and notifications
# ---------------------------------------------------------------------------

class PlatformEvent(BaseModel):
    """An event fired on the event bus."""

    type: str = Field(..., min_length=1)
    source: str = Field(default="workflow-engine")
    data: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=datetime.now)
    user_id: Optional[str] = None
    study_id: Optional[str] = None


class AuditEvent(BaseModel):
    """Something worth recording in the audit trail."""

    entity_type: str
    entity_id: str
    action: str
    user_id: str = Field(default="system")
    changes: Dict[str, Any] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class AuditRecord(AuditEvent):
    """A stored audit event."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    timestamp: datetime = Field(default_factory=datetime.now)


class NotificationPriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class Notification(BaseModel):
    """A message delivered to a user through the notification service."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    recipient: str
    subject: str
    message: str
    channel: str = Field(default="in-app")
    priority: NotificationPriority = NotificationPriority.NORMAL
    created_at: datetime = Field(default_factory=datetime.now)
    read: bool = False

    @field_validator('recipient')
    @classmethod
    def validate_recipient(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("recipient must not be blank")
        return v
