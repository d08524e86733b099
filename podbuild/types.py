"""Shared type definitions for podbuild.

This module contains enums shared across subpackages to avoid circular
imports.
"""

from enum import Enum


class TlsPolicy(str, Enum):
    """TLS verification policy for registry or cluster connections."""

    STRICT = "strict"
    SKIP = "skip"


class JobPhase(str, Enum):
    """Phase of a build job as reported by the backend."""

    PENDING = "Pending"
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    UNKNOWN = "Unknown"

    @property
    def is_terminal(self) -> bool:
        """Whether the backend will not move the job out of this phase."""
        return self in (JobPhase.SUCCEEDED, JobPhase.FAILED)

    @classmethod
    def parse(cls, value: str | None) -> "JobPhase":
        """Map a backend phase string onto a JobPhase, defaulting to UNKNOWN."""
        for phase in cls:
            if phase.value == value:
                return phase
        return cls.UNKNOWN


class InvocationState(str, Enum):
    """States of one driver invocation."""

    INIT = "init"
    RENDERED = "rendered"
    SUBMITTED = "submitted"
    READY = "ready"
    TIMED_OUT = "timed_out"
    TRANSFERRED = "transferred"
    TRANSFER_FAILED = "transfer_failed"
    STREAMING = "streaming"
    DONE = "done"
    STREAM_FAILED = "stream_failed"
    CLEANED_UP = "cleaned_up"


__all__ = [
    "InvocationState",
    "JobPhase",
    "TlsPolicy",
]
