"""Tests for the platform exception hierarchy."""

from clinical_platform.core.exceptions import (
    ConfigurationError,
    InputTypeMismatchError,
    MissingRequiredInputError,
    ModuleExecutionTimeoutError,
    PermissionDeniedError,
    PlatformError,
    StepExecutionError,
    UnknownModuleError,
    WorkflowNotFoundError,
)


class TestPlatformError:
    """Test the base error."""

    def test_to_dict(self):
        """Test 1: to_dict carries type, message and details"""
        error = PlatformError("boom", details={"a": 1}, recoverable=False)

        data = error.to_dict()

        assert data == {
            "error_type": "PlatformError",
            "message": "boom",
            "recoverable": False,
            "details": {"a": 1}
        }

    def test_subclasses_are_platform_errors(self):
        """Test 2: every error can be caught as PlatformError"""
        for error in (
            UnknownModuleError("m"),
            WorkflowNotFoundError("w"),
            ConfigurationError("bad", config_key="x"),
            PermissionDeniedError("u", "approve"),
        ):
            assert isinstance(error, PlatformError)

    def test_details(self):
        """Test 3: constructor arguments land in details"""
        error = MissingRequiredInputError("s1", "value", source="context", source_key="v")

        assert error.details["step_id"] == "s1"
        assert error.details["source_key"] == "v"
        assert "value" in error.message


class TestStepExecutionError:
    """Test step error wrapping."""

    def test_error_type_of_unwrapped_error(self):
        """Test 1: without a cause the error type is the class itself"""
        error = StepExecutionError("s1", "oops")

        assert error.error_type == "StepExecutionError"
        assert error.message == "Step 's1' failed: oops"

    def test_error_type_of_wrapped_error(self):
        """Test 2: the cause's class name becomes the error type"""
        cause = InputTypeMismatchError("s1", "value", "number", "str")
        error = StepExecutionError("s1", cause.message, cause=cause)

        assert error.error_type == "InputTypeMismatchError"
        assert error.details["cause"]["error_type"] == "InputTypeMismatchError"

    def test_timeout_message_prefix(self):
        """Test 3: timeout messages are recognizable by their prefix"""
        error = ModuleExecutionTimeoutError("slow", 0.5)

        assert error.message.startswith("ModuleExecutionTimeout")
        assert error.timeout == 0.5
