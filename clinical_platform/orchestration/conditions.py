"""Sandboxed condition expressions.

Conditions are Jinja2 expressions compiled in a ``SandboxedEnvironment``,
so they can read the values handed to them but cannot reach attributes such
as ``__class__`` or call unsafe methods.

Names available to an expression evaluated against an instance:
- every key of the context data map
- ``data``: the context data map
- ``outputs``: values written by earlier steps, by target key
- ``results``: raw result payloads by step id
- ``params``: start parameters
- ``user_inputs``: submitted user inputs
- ``inputs``: the resolved inputs of the step being evaluated, which are
  also visible as top-level names
- ``user``, ``study_id``, ``environment``
- ``now()``: current datetime
"""

from datetime import datetime
from typing import Any, Callable, Dict, Iterable, Optional

from jinja2 import TemplateSyntaxError
from jinja2.sandbox import SandboxedEnvironment
from loguru import logger

from clinical_platform.core.datamodels import WorkflowCondition, WorkflowInstance
from clinical_platform.core.exceptions import ConditionEvaluationError


class ConditionEvaluator:
    """Compiles and evaluates condition expressions, caching compiled forms."""

    def __init__(self):
        self._env = SandboxedEnvironment()
        self._env.globals.update(now=datetime.now, min=min, max=max, abs=abs)
        self._compiled: Dict[str, Callable[..., Any]] = {}

    def compile(self, expression: str) -> Callable[..., Any]:
        """Compile an expression.

        Raises:
            ConditionEvaluationError: If the expression does not parse
        """
        compiled = self._compiled.get(expression)
        if compiled is None:
            try:
                compiled = self._env.compile_expression(expression)
            except TemplateSyntaxError as e:
                raise ConditionEvaluationError(expression, f"syntax error: {e}") from e
            self._compiled[expression] = compiled
        return compiled

    def evaluate(self, expression: str, namespace: Dict[str, Any]) -> Any:
        """Evaluate an expression against a namespace.

        Undefined names evaluate to None.

        Raises:
            ConditionEvaluationError: On syntax errors, sandbox violations or
                runtime errors inside the expression
        """
        compiled = self.compile(expression)
        try:
            return compiled(**namespace)
        except Exception as e:
            raise ConditionEvaluationError(expression, f"{type(e).__name__}: {e}") from e

    def check(self, condition: WorkflowCondition, namespace: Dict[str, Any]) -> bool:
        """True if the condition holds.

        With an expected ``value`` the result must equal it; otherwise the
        result's truthiness decides.
        """
        result = self.evaluate(condition.expression, namespace)
        if condition.value is not None:
            return result == condition.value
        return bool(result)

    def check_all(self, conditions: Iterable[WorkflowCondition], namespace: Dict[str, Any]) -> bool:
        for condition in conditions:
            if not self.check(condition, namespace):
                logger.debug(f"{condition.type.value.title()} condition not met: {condition.expression}")
                return False
        return True


def instance_namespace(instance: WorkflowInstance, extra: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Names visible to expressions evaluated for a workflow instance."""
    context = instance.context
    namespace: Dict[str, Any] = dict(context.data)
    namespace.update({
        "data": context.data,
        "outputs": context.step_outputs,
        "results": context.step_results,
        "params": instance.parameters,
        "user_inputs": instance.user_inputs,
        "user": {"id": context.user_id},
        "study_id": context.study_id,
        "environment": context.environment,
    })
    if extra:
        namespace.update(extra)
        namespace["inputs"] = extra
    return namespace


def event_namespace(event_name: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    """Names visible to trigger conditions: payload keys plus ``data`` and ``event``."""
    namespace: Dict[str, Any] = dict(payload)
    namespace.update({"data": payload, "event": event_name})
    return namespace
