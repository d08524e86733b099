"""Job backend contract.

The driver depends on exactly seven backend operations: create, get,
describe, list_events, copy_in, stream_logs and delete. Any system that
offers them (a container orchestrator, a remote job service) can run
build jobs.
"""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol, runtime_checkable

from podbuild.jobs.models import JobHandle
from podbuild.types import JobPhase


@dataclass(frozen=True)
class JobStatus:
    """Backend-reported state of a job.

    Attributes:
        phase: Lifecycle phase.
        ready: Whether the job can accept its build context.
        reason: Short machine-readable reason, if any.
        message: Human-readable detail, if any.
    """

    phase: JobPhase
    ready: bool = False
    reason: str | None = None
    message: str | None = None


@runtime_checkable
class JobBackend(Protocol):
    """Operations a job backend must provide."""

    def create(self, manifest: str) -> JobHandle:
        """Submit a manifest and return the handle of the created job.

        Raises:
            BackendUnavailable: The backend cannot be reached.
            NameCollision: A job with the same name already exists.
            SubmissionRejected: The manifest failed validation.
        """
        ...

    def get(self, handle: JobHandle) -> JobStatus:
        """Return the current status of a job."""
        ...

    def describe(self, handle: JobHandle) -> str:
        """Return a human-readable description of a job."""
        ...

    def list_events(self, handle: JobHandle, limit: int) -> list[str]:
        """Return the most recent ``limit`` events concerning a job."""
        ...

    def copy_in(
        self,
        handle: JobHandle,
        local_path: Path,
        remote_path: str,
        timeout: float | None = None,
    ) -> None:
        """Copy a local file into the job's storage within ``timeout`` seconds."""
        ...

    def stream_logs(
        self, handle: JobHandle, timeout: float | None = None
    ) -> Iterator[str]:
        """Yield output lines until the job's output stream closes.

        Raises:
            StreamFailure: The stream could not be opened or ended in error.
            DeadlineExceeded: ``timeout`` elapsed before the stream closed.
        """
        ...

    def delete(self, handle: JobHandle, timeout: float | None = None) -> bool:
        """Delete a job; return False if it did not exist."""
        ...


__all__ = ["JobBackend", "JobStatus"]
