"""
Custom Exception Classes for Courseport

Every failure surfaced by a build or import job is one of these, so callers
always receive a machine-readable error code plus context instead of a raw
internal exception.
"""

import enum
from typing import Any

from fastapi import status


class ErrorCode(str, enum.Enum):
    """Machine-readable error codes returned in error responses."""

    STRUCTURAL_ERROR = "STRUCTURAL_ERROR"
    INVALID_PACKAGE = "INVALID_PACKAGE"
    INCOMPATIBLE_PACKAGE = "INCOMPATIBLE_PACKAGE"
    MISSING_DEPENDENCY = "MISSING_DEPENDENCY"
    INCOMPATIBLE_DEPENDENCY = "INCOMPATIBLE_DEPENDENCY"
    VALIDATION_FAILED = "VALIDATION_FAILED"
    EXTERNAL_TOOL_FAILED = "EXTERNAL_TOOL_FAILED"
    NOT_FOUND = "NOT_FOUND"
    UNAUTHORIZED = "UNAUTHORIZED"
    IO_ERROR = "IO_ERROR"
    JOB_FAILED = "JOB_FAILED"
    INTERNAL_ERROR = "INTERNAL_ERROR"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


class CourseportError(Exception):
    """Base exception class for all Courseport exceptions"""

    error_code: ErrorCode = ErrorCode.UNKNOWN_ERROR

    def __init__(
        self,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: dict[str, Any] | None = None,
        error_code: ErrorCode | None = None,
    ):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        if error_code is not None:
            self.error_code = error_code
        super().__init__(self.message)

    @property
    def kind(self) -> str:
        return self.error_code.value

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "message": self.message, "details": self.details}


# ============================================================================
# Content structure
# ============================================================================


class StructuralError(CourseportError):
    """Raised when a content hierarchy is broken, cyclic or missing its root"""

    error_code = ErrorCode.STRUCTURAL_ERROR

    def __init__(self, message: str, item_ids: list[str] | None = None):
        details = {"item_ids": item_ids} if item_ids else {}
        super().__init__(message=message, status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, details=details)


class ValidationError(CourseportError):
    """Raised when a content item fails its schema"""

    error_code = ErrorCode.VALIDATION_FAILED

    def __init__(
        self,
        message: str,
        item_id: str | None = None,
        schema_name: str | None = None,
        errors: list[dict[str, Any]] | None = None,
    ):
        self.item_id = item_id
        self.schema_name = schema_name
        details: dict[str, Any] = {"item_id": item_id, "schema_name": schema_name}
        if errors:
            details["errors"] = errors
        super().__init__(message=message, status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, details=details)


class ContentValidationError(CourseportError):
    """Raised when one or more items of a hierarchy level fail validation"""

    error_code = ErrorCode.VALIDATION_FAILED

    def __init__(self, errors: list[ValidationError], level: int | None = None):
        self.errors = errors
        super().__init__(
            message=f"{len(errors)} content item(s) failed validation",
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details={"level": level, "errors": [e.details | {"message": e.message} for e in errors]},
        )


# ============================================================================
# Packages
# ============================================================================


class InvalidPackageError(CourseportError):
    """Raised when an import package is missing required files"""

    error_code = ErrorCode.INVALID_PACKAGE

    def __init__(self, message: str = "Invalid course package provided", path: str | None = None):
        details = {"path": path} if path else {}
        super().__init__(message=message, status_code=status.HTTP_400_BAD_REQUEST, details=details)


class IncompatiblePackageError(CourseportError):
    """Raised when a package targets a different major framework version"""

    error_code = ErrorCode.INCOMPATIBLE_PACKAGE

    def __init__(self, package_version: str, framework_version: str):
        super().__init__(
            message=(
                f"Package framework version ({package_version}) is incompatible "
                f"with the installed framework ({framework_version})"
            ),
            status_code=status.HTTP_400_BAD_REQUEST,
            details={"package_version": package_version, "framework_version": framework_version},
        )


# ============================================================================
# Plugin dependencies
# ============================================================================


class MissingDependencyError(CourseportError):
    """Raised when a required plugin cannot be found or installed"""

    error_code = ErrorCode.MISSING_DEPENDENCY

    def __init__(self, name: str, required_by: str | None = None, reason: str | None = None):
        message = f"Missing plugin dependency '{name}'"
        if required_by:
            message += f" (required by '{required_by}')"
        if reason:
            message += f": {reason}"
        self.name = name
        super().__init__(
            message=message,
            status_code=status.HTTP_424_FAILED_DEPENDENCY,
            details={"name": name, "required_by": required_by},
        )


class IncompatibleDependencyError(CourseportError):
    """Raised when an installed plugin version cannot satisfy a version range"""

    error_code = ErrorCode.INCOMPATIBLE_DEPENDENCY

    def __init__(self, name: str, version: str, version_range: str, required_by: str | None = None):
        self.name = name
        super().__init__(
            message=f"Plugin '{name}' v{version} does not satisfy '{version_range}'",
            status_code=status.HTTP_424_FAILED_DEPENDENCY,
            details={"name": name, "version": version, "range": version_range, "required_by": required_by},
        )


# ============================================================================
# External tools, resources & IO
# ============================================================================


class ExternalToolError(CourseportError):
    """Raised when the external course compiler exits unsuccessfully"""

    error_code = ErrorCode.EXTERNAL_TOOL_FAILED

    def __init__(self, command: str, returncode: int | None = None, output: str = ""):
        super().__init__(
            message=f"Course compiler failed: {command}",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            details={"command": command, "returncode": returncode, "output": output},
        )


class NotFoundError(CourseportError):
    """Raised when a course, build or other resource does not exist"""

    error_code = ErrorCode.NOT_FOUND

    def __init__(self, resource_type: str, resource_id: Any | None = None):
        message = f"{resource_type} not found"
        if resource_id is not None:
            message = f"{resource_type} with id '{resource_id}' not found"
        super().__init__(
            message=message,
            status_code=status.HTTP_404_NOT_FOUND,
            details={"resource_type": resource_type, "resource_id": resource_id},
        )


class PackageIOError(CourseportError):
    """Raised when reading or writing package files fails"""

    error_code = ErrorCode.IO_ERROR

    def __init__(self, message: str, path: str | None = None):
        details = {"path": path} if path else {}
        super().__init__(message=message, status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, details=details)


class JobFailedError(CourseportError):
    """Raised when a build or import stage fails for an unexpected reason"""

    error_code = ErrorCode.JOB_FAILED

    def __init__(self, message: str, stage: str | None = None):
        details = {"stage": stage} if stage else {}
        super().__init__(message=message, status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, details=details)
