# errors.py
"""Exceptions raised inside the planning/execution core. Each one converts to a StandardizedError."""
from typing import Any, Dict, Optional

from models import ExecutionErrorType, StandardizedError


class AgentError(Exception):
    """Base exception carrying a classified error type."""
    error_type: ExecutionErrorType = ExecutionErrorType.UNKNOWN_ERROR

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        step: Optional[int] = None,
        original_error: Optional[BaseException] = None,
        error_type: Optional[ExecutionErrorType] = None,
    ):
        super().__init__(message)
        self.message = message
        self.details = details
        self.step = step
        self.original_error = original_error
        if error_type is not None:
            self.error_type = error_type

    def to_standardized(self) -> StandardizedError:
        details = dict(self.details or {})
        if self.original_error is not None:
            details.setdefault("original_error", f"{type(self.original_error).__name__}: {self.original_error}")
        return StandardizedError(type=self.error_type, message=self.message, details=details or None, step=self.step)

    def to_dict(self) -> Dict[str, Any]:
        return self.to_standardized().model_dump(mode="json")


class LLMCallError(AgentError):
    """The text-generation backend failed, timed out, or returned nothing."""
    pass


class PlanningError(AgentError):
    """Plan building failed as a whole."""
    pass


class SchemaFetchError(AgentError):
    """An interface document could not be fetched or parsed."""
    error_type = ExecutionErrorType.SWAGGER_ERROR


class ConfigurationError(AgentError):
    """Missing credentials or an unusable registry description."""
    pass
