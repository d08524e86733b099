"""Error taxonomy for podbuild.

Every error carries a stable ``code`` for programmatic handling and an
``exit_code`` the CLI returns, so callers can triage failures without
parsing messages.
"""

from __future__ import annotations

# Exit codes returned by `podbuild run` and friends
EXIT_OK = 0
EXIT_TEMPLATE = 2
EXIT_BACKEND_UNAVAILABLE = 3
EXIT_SUBMISSION_REJECTED = 4
EXIT_NAME_COLLISION = 5
EXIT_READY_TIMEOUT = 6
EXIT_TRANSFER = 7
EXIT_STREAM = 8
EXIT_DEADLINE = 9
EXIT_ARCHIVE = 10
EXIT_DEPLOYMENT = 11
EXIT_INTERRUPTED = 130


class PodbuildError(Exception):
    """Base error for podbuild operations."""

    code = "podbuild_error"
    exit_code = 1

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code


class TemplateError(PodbuildError):
    """Raised when a manifest cannot be rendered from its template."""

    code = "template_error"
    exit_code = EXIT_TEMPLATE


class BackendUnavailable(PodbuildError):
    """Raised when the job backend cannot be reached or located."""

    code = "backend_unavailable"
    exit_code = EXIT_BACKEND_UNAVAILABLE


class SubmissionRejected(PodbuildError):
    """Raised when the backend refuses a manifest."""

    code = "submission_rejected"
    exit_code = EXIT_SUBMISSION_REJECTED


class NameCollision(SubmissionRejected):
    """Raised when a resource with the generated job name already exists."""

    code = "name_collision"
    exit_code = EXIT_NAME_COLLISION

    def __init__(self, name: str, namespace: str) -> None:
        super().__init__(f"Job {namespace}/{name} already exists")
        self.name = name
        self.namespace = namespace


class ReadyTimeoutError(PodbuildError):
    """Raised when a job does not become ready within the allowed time.

    Attributes:
        timeout: The wait budget in seconds.
        diagnostics: Best-effort text collected from the backend.
    """

    code = "ready_timeout"
    exit_code = EXIT_READY_TIMEOUT

    def __init__(
        self,
        message: str,
        timeout: float,
        diagnostics: str = "",
    ) -> None:
        super().__init__(message)
        self.timeout = timeout
        self.diagnostics = diagnostics


class TransferError(PodbuildError):
    """Raised when the build context cannot be copied into the job."""

    code = "transfer_failed"
    exit_code = EXIT_TRANSFER

    def __init__(self, message: str, attempts: list[str] | None = None) -> None:
        super().__init__(message)
        self.attempts = attempts or []


class StreamFailure(PodbuildError):
    """Raised when the job output stream errors or the job ends unsuccessfully."""

    code = "stream_failed"
    exit_code = EXIT_STREAM

    def __init__(self, message: str, phase: str | None = None) -> None:
        super().__init__(message)
        self.phase = phase


class DeadlineExceeded(PodbuildError):
    """Raised when the overall invocation deadline elapses.

    Attributes:
        diagnostics: Best-effort text collected from the backend, if the
            deadline struck while waiting for the job.
    """

    code = "deadline_exceeded"
    exit_code = EXIT_DEADLINE

    def __init__(self, message: str, diagnostics: str = "") -> None:
        super().__init__(message)
        self.diagnostics = diagnostics


class ArchiveError(PodbuildError):
    """Raised when the build context archive cannot be produced."""

    code = "archive_error"
    exit_code = EXIT_ARCHIVE


class DeploymentError(PodbuildError):
    """Raised when rolling a new image out to a deployment fails."""

    code = "deployment_failed"
    exit_code = EXIT_DEPLOYMENT


class DriverStateError(PodbuildError):
    """Raised when a driver operation is called out of order."""

    code = "driver_state_error"


class BackendCommandError(PodbuildError):
    """Raised when a backend command fails for a reason with no finer class.

    Attributes:
        returncode: Exit status of the backend command, if it ran.
        stderr: Captured error output.
    """

    code = "backend_command_error"

    def __init__(
        self,
        message: str,
        returncode: int | None = None,
        stderr: str = "",
        code: str | None = None,
    ) -> None:
        super().__init__(message, code=code)
        self.returncode = returncode
        self.stderr = stderr


__all__ = [
    "EXIT_ARCHIVE",
    "EXIT_BACKEND_UNAVAILABLE",
    "EXIT_DEADLINE",
    "EXIT_DEPLOYMENT",
    "EXIT_INTERRUPTED",
    "EXIT_NAME_COLLISION",
    "EXIT_OK",
    "EXIT_READY_TIMEOUT",
    "EXIT_STREAM",
    "EXIT_SUBMISSION_REJECTED",
    "EXIT_TEMPLATE",
    "EXIT_TRANSFER",
    "ArchiveError",
    "BackendCommandError",
    "BackendUnavailable",
    "DeadlineExceeded",
    "DeploymentError",
    "DriverStateError",
    "NameCollision",
    "PodbuildError",
    "ReadyTimeoutError",
    "StreamFailure",
    "SubmissionRejected",
    "TemplateError",
    "TransferError",
]
