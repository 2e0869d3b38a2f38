# errors.py
# Error taxonomy for the debugger core.
#
# Request-level errors (ValidationError, CapacityError, NotFoundError) reach
# the caller and never touch session state. Step-level errors are caught by
# the evaluator and state machine and folded into ExecutionState.error_state.


class EntranError(Exception):
    """Base class for every error raised by the debugger core."""


# ---------------------------------------------------------------------------
# Request-level
# ---------------------------------------------------------------------------


class ValidationError(EntranError):
    """Raised when a Program, Step, option set or command is malformed."""


class CapacityError(EntranError):
    """Raised when the concurrent session ceiling has been reached."""


class NotFoundError(EntranError):
    """Raised when a session id is not in the registry."""


# ---------------------------------------------------------------------------
# Step-level
# ---------------------------------------------------------------------------


class RiskBlockedError(EntranError):
    """Raised when safe mode rejects a high-risk command. No process is spawned."""

    def __init__(self, command: str, risk_level: str) -> None:
        super().__init__(
            f"Command blocked in safe mode ({risk_level} risk): {command}"
        )
        self.command = command
        self.risk_level = risk_level


class ExecutionError(EntranError):
    """Raised when a step cannot be executed. Recoverable only via reset."""


class CommandTimeoutError(ExecutionError):
    """Raised when an external command outlives its timeout."""

    def __init__(self, command: str, timeout_ms: int) -> None:
        super().__init__(f"Command timed out after {timeout_ms}ms: {command}")
        self.command = command
        self.timeout_ms = timeout_ms


class OutputOverflowError(ExecutionError):
    """Raised when an external command writes more than the output limit."""

    def __init__(self, command: str, limit: int) -> None:
        super().__init__(f"Command output exceeded {limit} bytes: {command}")
        self.command = command
        self.limit = limit


class CommandFailedError(ExecutionError):
    """Raised when an external command cannot be spawned or exits non-zero."""

    def __init__(
        self,
        command: str,
        exit_code: int | None,
        stdout: str = "",
        stderr: str = "",
    ) -> None:
        detail = stderr.strip() or stdout.strip() or "no output"
        if exit_code is None:
            message = f"Command could not be started: {command} ({detail})"
        else:
            message = f"Command exited with status {exit_code}: {command} ({detail})"
        super().__init__(message)
        self.command = command
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr


class StepLimitExceeded(EntranError):
    """Raised when a session tries to run past its step ceiling."""

    def __init__(self, limit: int) -> None:
        super().__init__(f"Step limit exceeded: {limit} steps executed")
        self.limit = limit
