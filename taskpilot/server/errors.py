"""
SOLE RESPONSIBILITY: Error taxonomy for the orchestration core and sandbox.
Every raised domain error carries a trackable ErrorCode and a broad ErrorCategory.
"""

from enum import Enum
from typing import Optional


class ErrorCategory(Enum):
    """High-level error classification for monitoring."""

    NOT_FOUND = "not_found"
    INVALID_STATE = "invalid_state"
    PROCESS = "process"
    FILESYSTEM = "filesystem"
    MODEL = "model"
    CANCELLED = "cancelled"
    SYSTEM = "system"


class ErrorCode(Enum):
    """Trackable error identifiers for consistent error handling."""

    # Task Errors (3xxx)
    TASK_PLANNING_FAILED = 3001
    TASK_EXECUTION_FAILED = 3002
    TASK_CANCELLED = 3004

    # Process Errors (4xxx)
    PROCESS_NOT_FOUND = 4001
    PROCESS_LAUNCH_FAILED = 4002
    PROCESS_ALREADY_TERMINAL = 4003

    # Sandbox Errors (5xxx)
    SESSION_NOT_FOUND = 5001
    DIRECTORY_CREATION_FAILED = 5002

    # Model Errors (6xxx)
    MODEL_UNAVAILABLE = 6001

    UNKNOWN_ERROR = 9999


class TaskPilotError(Exception):
    """Base class for every domain error raised by taskpilot."""

    code: ErrorCode = ErrorCode.UNKNOWN_ERROR
    category: ErrorCategory = ErrorCategory.SYSTEM

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.message = message
        self.cause = cause


class SessionNotFoundError(TaskPilotError):
    code = ErrorCode.SESSION_NOT_FOUND
    category = ErrorCategory.NOT_FOUND


class ProcessNotFoundError(TaskPilotError):
    code = ErrorCode.PROCESS_NOT_FOUND
    category = ErrorCategory.NOT_FOUND


class LaunchError(TaskPilotError):
    """Executable could not be resolved or spawned."""

    code = ErrorCode.PROCESS_LAUNCH_FAILED
    category = ErrorCategory.PROCESS


class AlreadyTerminalError(TaskPilotError):
    code = ErrorCode.PROCESS_ALREADY_TERMINAL
    category = ErrorCategory.INVALID_STATE


class DirectoryCreationError(TaskPilotError):
    code = ErrorCode.DIRECTORY_CREATION_FAILED
    category = ErrorCategory.FILESYSTEM


class PlanningError(TaskPilotError):
    """Model call for the plan failed or returned unusable content."""

    code = ErrorCode.TASK_PLANNING_FAILED
    category = ErrorCategory.MODEL


class ExecutionError(TaskPilotError):
    """A sub-task could not be carried out."""

    code = ErrorCode.TASK_EXECUTION_FAILED
    category = ErrorCategory.MODEL


class TaskCancelledError(TaskPilotError):
    """An in-flight operation was abandoned because its task was cancelled."""

    code = ErrorCode.TASK_CANCELLED
    category = ErrorCategory.CANCELLED


class ChatError(TaskPilotError):
    """Chat model request failed (transport error or non-2xx response)."""

    code = ErrorCode.MODEL_UNAVAILABLE
    category = ErrorCategory.MODEL


def error_code_for(error: BaseException) -> ErrorCode:
    if isinstance(error, TaskPilotError):
        return error.code
    return ErrorCode.UNKNOWN_ERROR


def format_error(error: BaseException) -> str:
    """Render an exception as a single line for TaskLog entries: [CODE] Type: message."""
    code = error_code_for(error)
    message = str(error) or repr(error)
    return f"[{code.name}] {type(error).__name__}: {message}"
