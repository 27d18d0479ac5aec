"""Workflow engine driving workflow instances through their steps.

Each instance runs as its own asyncio task and walks its definition's steps
in order over a private execution context.

Features:
- Instance state machine with pause/resume/stop and approval gates
- Typed input resolution (context, previous steps, user input, external service)
- Output extraction and routing (context, shared namespace, external service)
- Per-step retry with fixed or exponential backoff, counted per step id
- Sandboxed condition steps and per-step conditions
- Parallel fan-out and sequential sub-chains; a retried composite step
  re-runs only the sub-steps that have not succeeded yet
- Bounded concurrency; instances awaiting approval give their slot back
- Event triggers starting one instance per matching workflow
- Audit records for instance lifecycle changes

Step failures never escape the public API: they are retried per policy and
then fail the instance, with the error kept in its history. Only starting an
unknown workflow or addressing an unknown instance raises.
"""

import asyncio
import copy
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Set, Union

from loguru import logger

from clinical_platform.core.config_manager import PlatformConfig
from clinical_platform.core.datamodels import (
    ApprovalDecision,
    ApprovalRequest,
    AuditEvent,
    ExecutionContext,
    InputSource,
    InstanceStatus,
    Notification,
    NotificationPriority,
    OutputMode,
    OutputTarget,
    PlatformEvent,
    StepStatus,
    StepType,
    WorkflowDefinition,
    WorkflowHistoryEntry,
    WorkflowInput,
    WorkflowInstance,
    WorkflowOutput,
    WorkflowResult,
    WorkflowStep,
)
from clinical_platform.core.exceptions import (
    ConfigurationError,
    InputTypeMismatchError,
    InstanceNotFoundError,
    MissingRequiredInputError,
    ModuleExecutionTimeoutError,
    PermissionDeniedError,
    StepExecutionError,
)
from clinical_platform.modules.base import ExecutionMetadata, ModuleContext
from clinical_platform.modules.manager import ModuleManager
from clinical_platform.orchestration.conditions import (
    ConditionEvaluator,
    event_namespace,
    instance_namespace,
)
from clinical_platform.orchestration.events import EventBus, EventHandler
from clinical_platform.orchestration.registry import WorkflowRegistry
from clinical_platform.orchestration.resolvers import ExternalServiceResolver
from clinical_platform.orchestration.state import ACTIVE_STATUSES, transition
from clinical_platform.services.base import AuditService, SharedDataService
from clinical_platform.services.registry import PlatformServices
from clinical_platform.services.shared import InMemorySharedDataService


# Start parameters consumed by the engine instead of copied into context data
RESERVED_PARAMETERS = frozenset({"study_id", "user_id", "environment", "user_inputs", "triggered_by"})

# History entries not tied to a single step use this id
WORKFLOW_ENTRY = "workflow"

_TYPE_CHECKS = {
    "string": lambda v: isinstance(v, str),
    "number": lambda v: isinstance(v, (int, float)) and not isinstance(v, bool),
    "integer": lambda v: isinstance(v, int) and not isinstance(v, bool),
    "boolean": lambda v: isinstance(v, bool),
    "object": lambda v: isinstance(v, dict),
    "array": lambda v: isinstance(v, (list, tuple)),
}


def matches_type(type_name: str, value: Any) -> bool:
    """True if value fits a declared type; unknown type names accept anything."""
    check = _TYPE_CHECKS.get(type_name.lower())
    return check is None or check(value)


def lookup(mapping: Dict[str, Any], key: str) -> Any:
    """Value for ``key``, following dots into nested dictionaries when needed."""
    if key in mapping:
        return mapping[key]
    node: Any = mapping
    for part in key.split("."):
        if not isinstance(node, dict) or part not in node:
            return None
        node = node[part]
    return node


class StepOutcome(Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    # Instance paused or cancelled while the step was in progress
    HALTED = "halted"


class WorkflowEngine:
    """Creates and drives workflow instances.

    Usage:
        engine = WorkflowEngine(module_manager, services=registry.get_services())
        engine.register("two-step", definition)
        result = await engine.execute_workflow("two-step", {"study_id": "S-1"})
    """

    def __init__(
        self,
        module_manager: ModuleManager,
        registry: Optional[WorkflowRegistry] = None,
        event_bus: Optional[EventBus] = None,
        services: Optional[PlatformServices] = None,
        config: Optional[PlatformConfig] = None,
        audit: Optional[AuditService] = None,
        external_resolver: Optional[ExternalServiceResolver] = None,
        shared: Optional[SharedDataService] = None
    ):
        """Initialize the workflow engine.

        Args:
            module_manager: Executes module steps
            registry: Workflow definitions (a new registry when omitted)
            event_bus: Event bus for subscriptions (a new bus when omitted)
            services: Services threaded through to modules
            config: Platform configuration (the module manager's when omitted)
            audit: Audit sink (the services' audit service when omitted)
            external_resolver: Source/sink for external-service wiring
            shared: Store behind the shared-namespace output target
        """
        self.module_manager = module_manager
        self.registry = registry or WorkflowRegistry()
        self.event_bus = event_bus or EventBus()
        self.services = services
        self.config = config or module_manager.config
        if audit is None and services is not None:
            audit = services.audit
        self.audit = audit if self.config.audit_enabled else None
        if shared is None:
            shared = services.shared if services is not None else InMemorySharedDataService()
        self.shared = shared
        self.external_resolver = external_resolver
        self.conditions = ConditionEvaluator()

        self._instances: Dict[str, WorkflowInstance] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._done: Dict[str, asyncio.Event] = {}
        self._approvals: Dict[str, asyncio.Future] = {}
        self._slots = asyncio.Semaphore(self.config.max_concurrent_workflows)
        # Instances currently holding a slot; approval waits give theirs back
        self._slot_holders: Set[str] = set()

    # ------------------------------------------------------------------
    # Workflow registration
    # ------------------------------------------------------------------

    def register(
        self,
        workflow_id: str,
        definition: Union[WorkflowDefinition, Dict[str, Any]]
    ) -> WorkflowDefinition:
        return self.registry.register(workflow_id, definition)

    def unregister(self, workflow_id: str) -> None:
        self.registry.unregister(workflow_id)

    def get_workflow(self, workflow_id: str) -> Optional[WorkflowDefinition]:
        return self.registry.get(workflow_id)

    def get_registered_workflows(self) -> List[WorkflowDefinition]:
        return self.registry.get_all()

    # ------------------------------------------------------------------
    # Instance control
    # ------------------------------------------------------------------

    async def start(self, workflow_id: str, parameters: Optional[Dict[str, Any]] = None) -> WorkflowInstance:
        """Create an instance and schedule it to run.

        Args:
            workflow_id: Registered workflow to run
            parameters: Start parameters; ``study_id``, ``user_id``,
                ``environment`` and ``user_inputs`` are taken by the engine,
                everything else seeds the context data map

        Returns:
            The new instance (status ``pending`` until its task runs)

        Raises:
            WorkflowNotFoundError: If the workflow is not registered
        """
        self.registry.require(workflow_id)
        params = dict(parameters or {})

        context = ExecutionContext(
            study_id=params.get("study_id"),
            user_id=params.get("user_id") or "system",
            environment=params.get("environment") or self.config.environment,
            data={key: copy.deepcopy(value) for key, value in params.items() if key not in RESERVED_PARAMETERS}
        )
        instance = WorkflowInstance(
            workflow_id=workflow_id,
            parameters=params,
            context=context,
            user_inputs=dict(params.get("user_inputs") or {})
        )
        self._instances[instance.id] = instance
        self._done[instance.id] = asyncio.Event()

        logger.info(f"Starting workflow {workflow_id} as {instance.id}")
        await self._audit(instance, "workflow_started", {"parameters": sorted(params)})
        self._spawn(instance)
        return instance

    def _spawn(self, instance: WorkflowInstance) -> None:
        self._tasks[instance.id] = asyncio.create_task(self._run(instance), name=f"workflow-{instance.id}")

    async def stop(self, instance_id: str) -> bool:
        """Cancel an instance.

        A module already executing runs to completion and its result is
        discarded.

        Returns:
            False if the instance had already finished

        Raises:
            InstanceNotFoundError: If the instance is unknown
        """
        instance = self._require_instance(instance_id)
        if instance.status.is_terminal:
            return False

        await self._finish(instance, InstanceStatus.CANCELLED, "Cancelled by request")
        approval = self._approvals.get(instance_id)
        if approval is not None and not approval.done():
            approval.set_result(ApprovalDecision(approved=False, comments="Instance cancelled"))
        return True

    async def pause(self, instance_id: str) -> bool:
        """Pause a running instance before its next step.

        Returns:
            False if the instance was not running

        Raises:
            InstanceNotFoundError: If the instance is unknown
        """
        instance = self._require_instance(instance_id)
        if instance.status != InstanceStatus.RUNNING:
            logger.warning(f"Cannot pause {instance_id} in status {instance.status.value}")
            return False

        transition(instance, InstanceStatus.PAUSED)
        logger.info(f"Paused {instance_id} before step {instance.cursor}")
        await self._audit(instance, "workflow_paused")
        return True

    async def resume(self, instance_id: str) -> bool:
        """Resume a paused instance from its next unexecuted step.

        Returns:
            False if the instance was not paused

        Raises:
            InstanceNotFoundError: If the instance is unknown
        """
        instance = self._require_instance(instance_id)
        if instance.status != InstanceStatus.PAUSED:
            logger.warning(f"Cannot resume {instance_id} in status {instance.status.value}")
            return False

        transition(instance, InstanceStatus.RUNNING)
        task = self._tasks.get(instance_id)
        # A task still inside a step picks the running status up by itself
        if task is None or task.done():
            self._spawn(instance)
        logger.info(f"Resumed {instance_id} at step {instance.cursor}")
        await self._audit(instance, "workflow_resumed")
        return True

    async def submit_user_input(self, instance_id: str, name: str, value: Any) -> None:
        """Provide a value for ``user-input`` step inputs."""
        instance = self._require_instance(instance_id)
        instance.user_inputs[name] = value
        instance.touch()

    async def submit_approval(
        self,
        instance_id: str,
        approved: bool,
        approver: Optional[str] = None,
        comments: Optional[str] = None
    ) -> bool:
        """Deliver a decision to an instance awaiting approval.

        Returns:
            False if no approval is pending for the instance

        Raises:
            InstanceNotFoundError: If the instance is unknown
            PermissionDeniedError: If the approval step restricts approvers by
                role and the approver holds none of them
        """
        instance = self._require_instance(instance_id)
        waiter = self._approvals.get(instance_id)
        if waiter is None or waiter.done() or instance.pending_approval is None:
            logger.warning(f"No approval pending for {instance_id}")
            return False

        required = instance.pending_approval.permissions
        if required and self.services is not None:
            users = self.services.users
            allowed = False
            for role in required:
                if await users.has_role(approver or "", role) or await users.has_permission(approver or "", role):
                    allowed = True
                    break
            if not allowed:
                raise PermissionDeniedError(approver or "anonymous", "approve this step", required)

        waiter.set_result(ApprovalDecision(approved=approved, approver=approver, comments=comments))
        return True

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def _require_instance(self, instance_id: str) -> WorkflowInstance:
        instance = self._instances.get(instance_id)
        if instance is None:
            raise InstanceNotFoundError(instance_id)
        return instance

    def get_instance(self, instance_id: str) -> WorkflowInstance:
        return self._require_instance(instance_id)

    def get_workflow_status(self, instance_id: str) -> InstanceStatus:
        return self._require_instance(instance_id).status

    def get_workflow_history(self, instance_id: str) -> List[WorkflowHistoryEntry]:
        return [entry.model_copy() for entry in self._require_instance(instance_id).history]

    def get_active_workflows(self, study_id: Optional[str] = None) -> List[WorkflowInstance]:
        """Instances that have not finished, optionally for one study."""
        return [
            instance for instance in self._instances.values()
            if instance.status in ACTIVE_STATUSES
            and (study_id is None or instance.context.study_id == study_id)
        ]

    def release(self, instance_id: str) -> bool:
        """Forget a finished instance.

        Returns:
            False if the instance has not finished yet
        """
        instance = self._require_instance(instance_id)
        if not instance.status.is_terminal:
            return False
        for registry in (self._instances, self._tasks, self._done, self._approvals):
            registry.pop(instance_id, None)
        return True

    async def wait_for_completion(self, instance_id: str, timeout: Optional[float] = None) -> WorkflowResult:
        """Wait until an instance finishes.

        Args:
            instance_id: Instance to wait for
            timeout: Seconds to wait; on expiry the current, unfinished
                state is returned

        Returns:
            Result snapshot of the instance
        """
        instance = self._require_instance(instance_id)
        try:
            await asyncio.wait_for(self._done[instance_id].wait(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Instance {instance_id} still {instance.status.value} after {timeout}s")
        return WorkflowResult.from_instance(instance)

    async def execute_workflow(
        self,
        workflow_id: str,
        parameters: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None
    ) -> WorkflowResult:
        """Start an instance and wait for it to finish.

        Raises:
            WorkflowNotFoundError: If the workflow is not registered
        """
        instance = await self.start(workflow_id, parameters)
        return await self.wait_for_completion(instance.id, timeout=timeout)

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def subscribe(self, event_name: str, handler: EventHandler) -> None:
        self.event_bus.subscribe(event_name, handler)

    def unsubscribe(self, event_name: str, handler: EventHandler) -> bool:
        return self.event_bus.unsubscribe(event_name, handler)

    async def trigger(
        self,
        event_name: str,
        data: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None,
        study_id: Optional[str] = None
    ) -> List[WorkflowInstance]:
        """Fire an event.

        Subscribed handlers run first. Then every workflow with an event
        trigger for ``event_name`` whose conditions hold against the payload
        is started once. A workflow that fails to start is logged and the
        remaining ones are still attempted.

        Returns:
            Instances started by the event
        """
        payload = dict(data or {})
        event = PlatformEvent(
            type=event_name,
            data=payload,
            user_id=user_id or payload.get("user_id"),
            study_id=study_id or payload.get("study_id")
        )
        await self.event_bus.publish(event)

        namespace = event_namespace(event_name, payload)
        parameters = {**payload, "triggered_by": event_name}
        if event.user_id:
            parameters["user_id"] = event.user_id
        if event.study_id:
            parameters["study_id"] = event.study_id

        started: List[WorkflowInstance] = []
        seen = set()
        for definition, trigger in self.registry.find_event_triggers(event_name):
            if definition.id in seen:
                continue
            try:
                if trigger.conditions and not self.conditions.check_all(trigger.conditions, namespace):
                    continue
                seen.add(definition.id)
                started.append(await self.start(definition.id, parameters))
            except Exception as e:
                logger.error(f"Failed to start workflow {definition.id} for event '{event_name}': {e}")

        logger.info(f"Event '{event_name}' started {len(started)} workflow(s)")
        return started

    # ------------------------------------------------------------------
    # Instance execution
    # ------------------------------------------------------------------

    def _release_slot(self, instance: WorkflowInstance) -> None:
        if instance.id in self._slot_holders:
            self._slot_holders.discard(instance.id)
            self._slots.release()

    async def _acquire_slot(self, instance: WorkflowInstance) -> None:
        await self._slots.acquire()
        self._slot_holders.add(instance.id)

    async def _run(self, instance: WorkflowInstance) -> None:
        try:
            await self._acquire_slot(instance)
            try:
                definition = self.registry.require(instance.workflow_id)

                if instance.status == InstanceStatus.PENDING:
                    transition(instance, InstanceStatus.RUNNING)
                    if definition.conditions and not self.conditions.check_all(
                        definition.conditions, instance_namespace(instance)
                    ):
                        await self._skip_workflow(instance, definition)
                        return
                elif instance.status != InstanceStatus.RUNNING:
                    return

                await self._run_steps(instance, definition)
            finally:
                self._release_slot(instance)

        except asyncio.CancelledError:
            if not instance.status.is_terminal:
                await self._finish(instance, InstanceStatus.CANCELLED, "Engine shutdown")
            raise
        except Exception as e:
            logger.error(f"Workflow instance {instance.id} crashed: {type(e).__name__}: {e}")
            entry = WorkflowHistoryEntry(step_id=WORKFLOW_ENTRY)
            entry.finish(StepStatus.FAILED, error=str(e), error_type=type(e).__name__)
            instance.history.append(entry)
            await self._finish(instance, InstanceStatus.FAILED, str(e))

    async def _skip_workflow(self, instance: WorkflowInstance, definition: WorkflowDefinition) -> None:
        logger.info(f"Global conditions of {definition.id} not met; skipping all steps of {instance.id}")
        for step in definition.steps:
            entry = WorkflowHistoryEntry(step_id=step.id)
            entry.finish(StepStatus.SKIPPED)
            instance.history.append(entry)
        instance.cursor = len(definition.steps)
        await self._finish(instance, InstanceStatus.COMPLETED)

    def _timed_out(self, instance: WorkflowInstance, definition: WorkflowDefinition) -> Optional[float]:
        limit = definition.timeout or self.config.workflow_execution_timeout
        if limit is None or instance.started_at is None:
            return None
        elapsed = (datetime.now() - instance.started_at).total_seconds()
        return limit if elapsed > limit else None

    async def _run_steps(self, instance: WorkflowInstance, definition: WorkflowDefinition) -> None:
        steps = definition.steps
        while instance.cursor < len(steps):
            if instance.status != InstanceStatus.RUNNING:
                logger.info(f"Instance {instance.id} {instance.status.value}; halting before step {instance.cursor}")
                return

            limit = self._timed_out(instance, definition)
            if limit is not None:
                message = f"Workflow exceeded its {limit}s time limit"
                entry = WorkflowHistoryEntry(step_id=WORKFLOW_ENTRY)
                entry.finish(StepStatus.FAILED, error=message, error_type="WorkflowTimeout")
                instance.history.append(entry)
                await self._finish(instance, InstanceStatus.FAILED, message)
                return

            step = steps[instance.cursor]
            outcome = await self._run_step_with_retry(instance, definition, step)

            if instance.status.is_terminal or outcome == StepOutcome.HALTED:
                return
            if outcome == StepOutcome.FAILED:
                if instance.status == InstanceStatus.RUNNING:
                    last_error = instance.history[-1].error if instance.history else None
                    await self._finish(instance, InstanceStatus.FAILED, f"Step '{step.id}' failed: {last_error}")
                # A paused instance fails on resume, once the step's retries are found exhausted
                return

            instance.cursor += 1
            instance.touch()

        if instance.status == InstanceStatus.RUNNING:
            await self._finish(instance, InstanceStatus.COMPLETED)

    async def _run_step_with_retry(
        self,
        instance: WorkflowInstance,
        definition: WorkflowDefinition,
        step: WorkflowStep,
        nested: bool = False,
        since: int = 0
    ) -> StepOutcome:
        """Run a step, retrying failures per its retry policy.

        Sub-steps (``nested``) keep going while the instance is paused and
        only stop for cancellation. Failed attempts are counted from history
        index ``since``, so each attempt of a composite step gives its
        sub-steps a fresh retry budget.
        """
        policy = step.retry_policy or definition.retry_policy
        max_attempts = (policy.max_retries if policy else 0) + 1

        def halted() -> bool:
            if nested:
                return instance.status.is_terminal
            return instance.status != InstanceStatus.RUNNING

        # Resuming after a failure recorded while paused: finish its backoff first
        previous = instance.last_entry(step.id, since)
        if policy and previous is not None and previous.status == StepStatus.FAILED:
            failed = instance.failed_attempts(step.id, since)
            if failed < max_attempts:
                elapsed = (datetime.now() - (previous.end_time or previous.start_time)).total_seconds()
                remaining = policy.compute_delay(failed) - elapsed
                if remaining > 0:
                    logger.info(f"Resuming step {step.id} of {instance.id} after {remaining:.3f}s backoff")
                    await asyncio.sleep(remaining)
                    if halted():
                        return StepOutcome.HALTED

        while True:
            if instance.failed_attempts(step.id, since) >= max_attempts:
                return StepOutcome.FAILED

            entry = await self._execute_step(instance, definition, step)
            if entry.status in (StepStatus.COMPLETED, StepStatus.SKIPPED):
                return StepOutcome.SUCCEEDED
            if halted():
                return StepOutcome.HALTED

            failed = instance.failed_attempts(step.id, since)
            if failed >= max_attempts:
                logger.error(f"Step {step.id} of {instance.id} failed after {failed} attempt(s)")
                return StepOutcome.FAILED

            delay = policy.compute_delay(failed)
            logger.info(f"Retrying step {step.id} of {instance.id} in {delay:.3f}s (attempt {failed + 1}/{max_attempts})")
            await asyncio.sleep(delay)
            if halted():
                return StepOutcome.HALTED

    async def _execute_step(
        self,
        instance: WorkflowInstance,
        definition: WorkflowDefinition,
        step: WorkflowStep
    ) -> WorkflowHistoryEntry:
        """Execute one attempt of a step and record it in history."""
        entry = WorkflowHistoryEntry(step_id=step.id, attempt=instance.attempts(step.id) + 1)
        instance.history.append(entry)
        instance.touch()

        try:
            if step.id in instance.skipped_steps:
                entry.finish(StepStatus.SKIPPED)
                logger.info(f"Step {step.id} of {instance.id} skipped by an earlier condition step")
                return entry

            if step.conditions and not self.conditions.check_all(step.conditions, instance_namespace(instance)):
                entry.finish(StepStatus.SKIPPED)
                logger.info(f"Step {step.id} of {instance.id} skipped: conditions not met")
                return entry

            inputs = await self._resolve_inputs(instance, step)
            entry.inputs = inputs

            payload = await self._dispatch(instance, definition, step, inputs)

            if instance.status == InstanceStatus.CANCELLED:
                entry.finish(StepStatus.SKIPPED, error="Result discarded: instance cancelled")
                return entry

            entry.outputs = await self._write_outputs(instance, definition, step, payload)
            entry.finish(StepStatus.COMPLETED)
            logger.debug(f"Step {step.id} of {instance.id} completed in {entry.duration:.3f}s")

        except Exception as e:
            error = e if isinstance(e, StepExecutionError) else StepExecutionError(step.id, str(e), cause=e)
            entry.finish(StepStatus.FAILED, error=error.message, error_type=error.error_type)
            logger.warning(f"Step {step.id} of {instance.id} failed (attempt {entry.attempt}): {error.message}")

        return entry

    # ------------------------------------------------------------------
    # Inputs and outputs
    # ------------------------------------------------------------------

    async def _resolve_inputs(self, instance: WorkflowInstance, step: WorkflowStep) -> Dict[str, Any]:
        """Resolve every declared input of a step.

        Raises:
            MissingRequiredInputError: If a required input resolves to nothing
            InputTypeMismatchError: If a value contradicts its declared type
        """
        resolved: Dict[str, Any] = {}
        for declared in step.inputs:
            value = await self._read_input(instance, step, declared)
            if value is None and declared.default is not None:
                value = copy.deepcopy(declared.default)
            if value is None:
                if declared.required:
                    raise MissingRequiredInputError(step.id, declared.name, declared.source.value, declared.key)
                continue
            if not matches_type(declared.type, value):
                raise InputTypeMismatchError(step.id, declared.name, declared.type, type(value).__name__)
            resolved[declared.name] = value
        return resolved

    async def _read_input(self, instance: WorkflowInstance, step: WorkflowStep, declared: WorkflowInput) -> Any:
        context = instance.context
        if declared.source == InputSource.CONTEXT:
            return lookup(context.data, declared.key)
        if declared.source == InputSource.PREVIOUS_STEP:
            value = lookup(context.step_outputs, declared.key)
            if value is None:
                value = lookup(context.step_results, declared.key)
            return value
        if declared.source == InputSource.USER_INPUT:
            return lookup(instance.user_inputs, declared.key)
        return await self._require_resolver(step.id).fetch(declared.key, instance)

    def _require_resolver(self, step_id: str) -> ExternalServiceResolver:
        if self.external_resolver is None:
            raise ConfigurationError(
                f"Step '{step_id}' uses an external service but no resolver is configured",
                config_key="external_resolver"
            )
        return self.external_resolver

    @staticmethod
    def _extract_output(step_id: str, output: WorkflowOutput, payload: Any) -> Any:
        has_field = isinstance(payload, dict) and output.name in payload
        if output.mode == OutputMode.PAYLOAD:
            value = payload
        elif output.mode == OutputMode.FIELD:
            if not has_field:
                raise StepExecutionError(step_id, f"result has no field '{output.name}'")
            value = payload[output.name]
        else:
            value = payload[output.name] if has_field else payload

        if value is not None and not matches_type(output.type, value):
            raise StepExecutionError(
                step_id,
                f"output '{output.name}' expected {output.type}, got {type(value).__name__}"
            )
        return value

    async def _write_outputs(
        self,
        instance: WorkflowInstance,
        definition: WorkflowDefinition,
        step: WorkflowStep,
        payload: Any
    ) -> Dict[str, Any]:
        context = instance.context
        context.step_results[step.id] = payload

        written: Dict[str, Any] = {}
        for output in step.outputs:
            value = self._extract_output(step.id, output, payload)
            key = output.key

            if output.target == OutputTarget.CONTEXT:
                context.data[key] = value
                context.step_outputs[key] = value
            elif output.target == OutputTarget.SHARED_NAMESPACE:
                # "<namespace>:<key>" addresses another namespace than the workflow's own
                namespace, _, name = key.rpartition(":")
                await self.shared.set(namespace or definition.id, name, value)
            else:
                await self._require_resolver(step.id).publish(key, value, instance)

            written[key] = value
        return written

    # ------------------------------------------------------------------
    # Step types
    # ------------------------------------------------------------------

    async def _dispatch(
        self,
        instance: WorkflowInstance,
        definition: WorkflowDefinition,
        step: WorkflowStep,
        inputs: Dict[str, Any]
    ) -> Any:
        if step.type == StepType.MODULE:
            return await self._run_module_step(instance, step, inputs)
        if step.type == StepType.CONDITION:
            return self._run_condition_step(instance, step, inputs)
        if step.type == StepType.APPROVAL:
            return await self._run_approval_step(instance, step)
        if step.type == StepType.PARALLEL:
            return await self._run_parallel_step(instance, definition, step)
        return await self._run_sequential_step(instance, definition, step)

    async def _run_module_step(self, instance: WorkflowInstance, step: WorkflowStep, inputs: Dict[str, Any]) -> Any:
        context = ModuleContext(
            inputs=inputs,
            services=self.services,
            metadata=ExecutionMetadata(
                initiator=instance.context.user_id,
                environment=instance.context.environment,
                workflow_id=instance.workflow_id,
                instance_id=instance.id,
                step_id=step.id
            )
        )
        result = await self.module_manager.execute(step.module_id, context, timeout=step.timeout)

        for warning in result.warnings:
            logger.warning(f"Module {step.module_id} ({instance.id}/{step.id}): {warning}")

        if not result.succeeded:
            message = "; ".join(result.errors) or f"module '{step.module_id}' returned an error"
            cause = None
            if result.errors and result.errors[0].startswith("ModuleExecutionTimeout"):
                cause = ModuleExecutionTimeoutError(
                    step.module_id, step.timeout or self.module_manager.config.module_execution_timeout
                )
            raise StepExecutionError(step.id, message, cause=cause, module_id=step.module_id)

        return result.data

    def _run_condition_step(self, instance: WorkflowInstance, step: WorkflowStep, inputs: Dict[str, Any]) -> Dict[str, bool]:
        outcome = bool(self.conditions.evaluate(step.expression, instance_namespace(instance, inputs)))
        if not outcome and step.skip_on_false:
            instance.skipped_steps.extend(step.skip_on_false)
            logger.info(f"Condition step {step.id} is false; skipping {step.skip_on_false}")
        return {"result": outcome}

    async def _run_approval_step(self, instance: WorkflowInstance, step: WorkflowStep) -> Dict[str, Any]:
        if instance.id in self._approvals:
            raise StepExecutionError(step.id, "another approval is already pending for this instance")

        waiter = asyncio.get_running_loop().create_future()
        self._approvals[instance.id] = waiter
        instance.pending_approval = ApprovalRequest(step_id=step.id, permissions=step.permissions)
        transition(instance, InstanceStatus.AWAITING_APPROVAL)
        logger.info(f"Instance {instance.id} awaiting approval for step {step.id}")
        await self._audit(instance, "approval_requested", {"step_id": step.id})
        await self._notify_approval(instance, step)

        # Waiting for a person does not count against max_concurrent_workflows
        self._release_slot(instance)
        try:
            decision: ApprovalDecision = await asyncio.wait_for(waiter, timeout=step.timeout)
        except asyncio.TimeoutError:
            raise StepExecutionError(step.id, f"approval not received within {step.timeout}s") from None
        finally:
            self._approvals.pop(instance.id, None)
            instance.pending_approval = None
            if instance.status == InstanceStatus.AWAITING_APPROVAL:
                transition(instance, InstanceStatus.RUNNING)
            if not instance.status.is_terminal:
                await self._acquire_slot(instance)

        if instance.status.is_terminal:
            return {}

        await self._audit(instance, "approval_decided", {
            "step_id": step.id,
            "approved": decision.approved,
            "approver": decision.approver,
        })
        if not decision.approved:
            raise StepExecutionError(
                step.id,
                f"approval rejected by {decision.approver or 'unknown'}: {decision.comments or 'no comment'}"
            )
        return decision.model_dump()

    async def _notify_approval(self, instance: WorkflowInstance, step: WorkflowStep) -> None:
        if self.services is None:
            return
        try:
            await self.services.notifications.send(Notification(
                recipient=instance.context.user_id,
                subject=f"Approval required: {step.name or step.id}",
                message=f"Workflow {instance.workflow_id} ({instance.id}) is waiting for approval of step '{step.id}'",
                priority=NotificationPriority.HIGH
            ))
        except Exception as e:
            logger.error(f"Failed to send approval notification for {instance.id}: {e}")

    @staticmethod
    def _finished_sub_steps(instance: WorkflowInstance, step: WorkflowStep) -> List[str]:
        """Sub-steps that already succeeded in an earlier attempt of ``step``."""
        first = instance.first_index(step.id)
        if first is None:
            return []
        sub_ids = {sub_step.id for sub_step in step.steps}
        return [
            entry.step_id for entry in instance.history[first:]
            if entry.step_id in sub_ids and entry.status in (StepStatus.COMPLETED, StepStatus.SKIPPED)
        ]

    async def _run_sub_step(
        self,
        instance: WorkflowInstance,
        definition: WorkflowDefinition,
        sub_step: WorkflowStep,
        finished: List[str],
        since: int
    ) -> StepOutcome:
        if sub_step.id in finished:
            logger.debug(f"Sub-step {sub_step.id} of {instance.id} already succeeded; keeping its result")
            return StepOutcome.SUCCEEDED
        return await self._run_step_with_retry(instance, definition, sub_step, nested=True, since=since)

    async def _run_parallel_step(
        self,
        instance: WorkflowInstance,
        definition: WorkflowDefinition,
        step: WorkflowStep
    ) -> Dict[str, Any]:
        finished = self._finished_sub_steps(instance, step)
        since = len(instance.history)
        outcomes = await asyncio.gather(*(
            self._run_sub_step(instance, definition, sub_step, finished, since)
            for sub_step in step.steps
        ))
        failed = [
            sub_step.id for sub_step, outcome in zip(step.steps, outcomes)
            if outcome != StepOutcome.SUCCEEDED
        ]
        if failed and not instance.status.is_terminal:
            raise StepExecutionError(step.id, f"sub-steps failed: {', '.join(failed)}")
        return {sub_step.id: instance.context.step_results.get(sub_step.id) for sub_step in step.steps}

    async def _run_sequential_step(
        self,
        instance: WorkflowInstance,
        definition: WorkflowDefinition,
        step: WorkflowStep
    ) -> Dict[str, Any]:
        finished = self._finished_sub_steps(instance, step)
        since = len(instance.history)
        for sub_step in step.steps:
            outcome = await self._run_sub_step(instance, definition, sub_step, finished, since)
            if instance.status.is_terminal:
                break
            if outcome != StepOutcome.SUCCEEDED:
                raise StepExecutionError(step.id, f"sub-step '{sub_step.id}' failed")
        return {sub_step.id: instance.context.step_results.get(sub_step.id) for sub_step in step.steps}

    # ------------------------------------------------------------------
    # Completion and audit
    # ------------------------------------------------------------------

    async def _finish(self, instance: WorkflowInstance, status: InstanceStatus, error: Optional[str] = None) -> None:
        if instance.status.is_terminal:
            return

        transition(instance, status)
        instance.error = error
        instance.pending_approval = None
        self._done[instance.id].set()

        if status == InstanceStatus.COMPLETED:
            logger.success(f"Workflow {instance.workflow_id} instance {instance.id} completed in {instance.duration:.2f}s")
        elif status == InstanceStatus.FAILED:
            logger.error(f"Workflow {instance.workflow_id} instance {instance.id} failed: {error}")
        else:
            logger.info(f"Workflow {instance.workflow_id} instance {instance.id} cancelled: {error}")

        await self._audit(instance, f"workflow_{status.value}", {"status": status.value, "error": error})

    async def _audit(self, instance: WorkflowInstance, action: str, changes: Optional[Dict[str, Any]] = None) -> None:
        if self.audit is None:
            return
        try:
            await self.audit.log(AuditEvent(
                entity_type="workflow_instance",
                entity_id=instance.id,
                action=action,
                user_id=instance.context.user_id,
                changes=changes or {},
                metadata={
                    "workflow_id": instance.workflow_id,
                    "study_id": instance.context.study_id,
                    "status": instance.status.value,
                }
            ))
        except Exception as e:
            logger.error(f"Audit logging failed for {instance.id} ({action}): {e}")

    async def shutdown(self) -> None:
        """Cancel every unfinished instance and wait for their tasks to end."""
        for instance in list(self._instances.values()):
            if not instance.status.is_terminal:
                await self.stop(instance.id)

        pending = [task for task in self._tasks.values() if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        if self.external_resolver is not None:
            await self.external_resolver.close()
        logger.info(f"Workflow engine shut down ({len(pending)} task(s) cancelled)")
