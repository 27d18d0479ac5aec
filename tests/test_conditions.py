"""Tests for sandboxed condition evaluation."""

from datetime import datetime, timedelta

import pytest
from loguru import logger

from clinical_platform.core.datamodels import ConditionType, WorkflowCondition, WorkflowInstance
from clinical_platform.core.exceptions import ConditionEvaluationError
from clinical_platform.orchestration.conditions import (
    ConditionEvaluator,
    event_namespace,
    instance_namespace,
)


@pytest.fixture
def evaluator():
    return ConditionEvaluator()


@pytest.fixture
def instance():
    instance = WorkflowInstance(workflow_id="w", parameters={"study_id": "S-1", "site_count": 3})
    instance.context.study_id = "S-1"
    instance.context.data.update({"enrolled": 42, "phase": "II"})
    instance.context.step_outputs["risk"] = 0.7
    instance.context.step_results["analyze"] = {"risk": 0.7}
    return instance


class TestConditionEvaluator:
    """Test expression evaluation."""

    def test_simple_comparison(self, evaluator):
        """Test 1: expressions see the names they are given"""
        assert evaluator.evaluate("enrolled > 40", {"enrolled": 42}) is True
        assert evaluator.evaluate("enrolled > 40", {"enrolled": 10}) is False

    def test_undefined_names_are_none(self, evaluator):
        assert evaluator.evaluate("missing", {}) is None
        assert evaluator.evaluate("missing is none", {}) is True

    def test_syntax_error(self, evaluator):
        """Test 2: unparsable expressions raise ConditionEvaluationError"""
        with pytest.raises(ConditionEvaluationError, match="syntax error"):
            evaluator.evaluate("enrolled >", {})

    def test_sandbox_blocks_dunder_access(self, evaluator):
        """Test 3: the sandbox refuses attribute escapes"""
        with pytest.raises(ConditionEvaluationError):
            evaluator.evaluate("''.__class__.__mro__[1].__subclasses__()", {})

    def test_runtime_error_is_wrapped(self, evaluator):
        with pytest.raises(ConditionEvaluationError):
            evaluator.evaluate("1 / 0", {})

    def test_compiled_expressions_are_cached(self, evaluator):
        first = evaluator.compile("a == 1")

        assert evaluator.compile("a == 1") is first

    def test_check_with_expected_value(self, evaluator):
        """Test 4: a condition with a value compares the result for equality"""
        condition = WorkflowCondition(expression="phase", value="II")

        assert evaluator.check(condition, {"phase": "II"}) is True
        assert evaluator.check(condition, {"phase": "III"}) is False

    def test_check_all(self, evaluator):
        conditions = [
            WorkflowCondition(expression="a > 1"),
            WorkflowCondition(expression="b"),
        ]

        assert evaluator.check_all(conditions, {"a": 2, "b": True}) is True
        assert evaluator.check_all(conditions, {"a": 2, "b": False}) is False
        assert evaluator.check_all([], {}) is True

    def test_time_condition(self, evaluator):
        """Test 5: time conditions compare against now()"""
        condition = WorkflowCondition(type="time", expression="now() > deadline")

        assert condition.type == ConditionType.TIME
        assert evaluator.check(condition, {"deadline": datetime.now() - timedelta(days=1)}) is True
        assert evaluator.check(condition, {"deadline": datetime.now() + timedelta(days=1)}) is False

    def test_unmet_condition_is_logged_with_its_type(self, evaluator):
        messages = []
        sink = logger.add(messages.append, level="DEBUG", format="{message}")
        try:
            met = evaluator.check_all(
                [WorkflowCondition(type=ConditionType.USER, expression="user.id == 'alice'")],
                {"user": {"id": "bob"}}
            )
        finally:
            logger.remove(sink)

        assert met is False
        assert any("User condition not met: user.id == 'alice'" in message for message in messages)


class TestNamespaces:
    """Test the names exposed to expressions."""

    def test_instance_namespace(self, evaluator, instance):
        """Test 1: context data, outputs, results and parameters are visible"""
        namespace = instance_namespace(instance)

        assert evaluator.evaluate("enrolled == 42 and data.phase == 'II'", namespace)
        assert evaluator.evaluate("outputs.risk > 0.5", namespace)
        assert evaluator.evaluate("results.analyze.risk == 0.7", namespace)
        assert evaluator.evaluate("params.site_count == 3", namespace)
        assert evaluator.evaluate("study_id == 'S-1' and user.id == 'system'", namespace)

    def test_step_inputs_visible(self, evaluator, instance):
        namespace = instance_namespace(instance, {"threshold": 50})

        assert evaluator.evaluate("enrolled < threshold", namespace)
        assert evaluator.evaluate("inputs.threshold == 50", namespace)

    def test_event_namespace(self, evaluator):
        namespace = event_namespace("protocol.uploaded", {"phase": "III"})

        assert evaluator.evaluate("phase == 'III' and data.phase == 'III'", namespace)
        assert evaluator.evaluate("event == 'protocol.uploaded'", namespace)
