"""Exception hierarchy; each class names its CLI result kind."""
from __future__ import annotations


class RepartitionError(Exception):
    result = "FAIL_GENERIC"

    def __init__(self, message: str, **details) -> None:
        super().__init__(message)
        self.details = details


# Input validation: nothing has touched the device yet.
class InputError(RepartitionError):
    result = "FAIL_INPUT"


class InvalidSizeFormat(InputError):
    result = "FAIL_INVALID_SIZE"


class ArithmeticOverflow(InputError):
    result = "FAIL_ARITHMETIC_OVERFLOW"


class PlanError(InputError):
    result = "FAIL_PLAN"


class RootSizeOutOfRange(PlanError):
    result = "FAIL_ROOT_SIZE"


class RootSizeExceedsDevice(PlanError):
    result = "FAIL_ROOT_SIZE"


class InsufficientHomeSpace(PlanError):
    result = "FAIL_HOME_SPACE"


class InvalidPlan(PlanError):
    result = "FAIL_PLAN"


# Safety gate: environment refuses the operation.
class SafetyError(RepartitionError):
    result = "FAIL_SAFETY_GUARD"


class PermissionDenied(SafetyError):
    result = "FAIL_PERMISSION"


class DeviceNotFound(SafetyError):
    result = "FAIL_INVALID_DEVICE"


class DeviceQueryFailed(SafetyError):
    result = "FAIL_DEVICE_QUERY"


class ActiveDiskRejected(SafetyError):
    result = "FAIL_LIVE_DISK_GUARD"


class MissingDependency(SafetyError):
    result = "FAIL_MISSING_DEPENDENCY"

    def __init__(self, tool: str, package: str | None = None) -> None:
        hint = f" (package: {package})" if package else ""
        super().__init__(f"required tool not found: {tool}{hint}", tool=tool, package=package)
        self.tool = tool
        self.package = package


class RemovableMediaPolicyViolation(PlanError, SafetyError):
    result = "FAIL_REMOVABLE_POLICY"


# Execution: an external tool failed mid-pipeline.
class ExecutionError(RepartitionError):
    result = "FAIL_EXECUTION"


class PipelineFailed(ExecutionError):
    def __init__(self, stage, cause: str, output: str = "") -> None:
        name = getattr(stage, "value", str(stage))
        super().__init__(f"{name} failed: {cause}", stage=name, cause=cause, output=output)
        self.stage = stage
        self.cause = cause
        self.output = output
