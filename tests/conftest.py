"""Shared fixtures for podbuild tests.

Provides a scripted in-memory job backend and a fake clock so driver
behaviour can be tested without a cluster or real sleeps.
"""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest

from podbuild.backend.base import JobStatus
from podbuild.config import Settings
from podbuild.errors import BackendCommandError, PodbuildError
from podbuild.jobs.archive import build_context_archive
from podbuild.jobs.models import ContextArchive, JobHandle, JobSpec
from podbuild.types import JobPhase

PENDING = JobStatus(phase=JobPhase.PENDING)
READY = JobStatus(phase=JobPhase.PENDING, ready=True)
RUNNING = JobStatus(phase=JobPhase.RUNNING, ready=True)
SUCCEEDED = JobStatus(phase=JobPhase.SUCCEEDED)
FAILED = JobStatus(phase=JobPhase.FAILED, reason="Error")


class FakeClock:
    """Monotonic clock advanced only by sleep()."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeBackend:
    """Scripted job backend recording every call.

    Attributes:
        ready_statuses: Statuses returned by get() before the context is
            transferred; the last one repeats.
        final_statuses: Statuses returned by get() after the output stream
            closed; the last one repeats.
        copy_failures: Number of copy_in calls that fail before one succeeds.
        log_lines: Lines yielded by stream_logs().
        log_error: Raised by stream_logs() after the lines.
        create_error: Raised by create().
        delete_error: Raised by delete().
    """

    def __init__(self) -> None:
        self.ready_statuses: list[JobStatus] = [READY]
        self.final_statuses: list[JobStatus] = [SUCCEEDED]
        self.copy_failures = 0
        self.log_lines: list[str] = ["step 1", "step 2"]
        self.log_error: PodbuildError | None = None
        self.create_error: PodbuildError | None = None
        self.delete_error: Exception | None = None
        self.describe_error: Exception | None = None

        self.calls: list[str] = []
        self.manifests: list[str] = []
        self.copies: list[tuple[Path, str]] = []
        self.copy_timeouts: list[float | None] = []
        self.delete_calls = 0
        self.get_calls = 0
        self.exists = False
        self._streamed = False

    def create(self, manifest: str) -> JobHandle:
        self.calls.append("create")
        self.manifests.append(manifest)
        if self.create_error is not None:
            raise self.create_error
        self.exists = True
        return JobHandle(name="build-42", namespace="ci", uid="uid-1")

    def get(self, handle: JobHandle) -> JobStatus:
        self.calls.append("get")
        self.get_calls += 1
        statuses = self.final_statuses if self._streamed else self.ready_statuses
        if len(statuses) > 1:
            return statuses.pop(0)
        return statuses[0]

    def describe(self, handle: JobHandle) -> str:
        self.calls.append("describe")
        if self.describe_error is not None:
            raise self.describe_error
        return f"Name: {handle.name}\nStatus: Pending"

    def list_events(self, handle: JobHandle, limit: int) -> list[str]:
        self.calls.append("list_events")
        return ["Warning FailedScheduling: 0/3 nodes are available"][:limit]

    def copy_in(
        self,
        handle: JobHandle,
        local_path: Path,
        remote_path: str,
        timeout: float | None = None,
    ) -> None:
        self.calls.append("copy_in")
        self.copies.append((local_path, remote_path))
        self.copy_timeouts.append(timeout)
        if self.copy_failures > 0:
            self.copy_failures -= 1
            raise BackendCommandError("error: unable to upgrade connection")

    def stream_logs(
        self, handle: JobHandle, timeout: float | None = None
    ) -> Iterator[str]:
        self.calls.append("stream_logs")
        yield from self.log_lines
        self._streamed = True
        if self.log_error is not None:
            raise self.log_error

    def delete(self, handle: JobHandle, timeout: float | None = None) -> bool:
        self.calls.append("delete")
        self.delete_calls += 1
        if self.delete_error is not None:
            raise self.delete_error
        existed = self.exists
        self.exists = False
        return existed


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings with short, deterministic timings."""
    return Settings(
        namespace="ci",
        poll_interval=1.0,
        ready_timeout=120.0,
        transfer_attempts=3,
        transfer_delay=2.0,
        terminal_phase_timeout=10.0,
        deadline=3600.0,
        cleanup_timeout=5.0,
        work_dir=tmp_path / "work",
    )


@pytest.fixture
def backend() -> FakeBackend:
    """Scripted backend that succeeds by default."""
    return FakeBackend()


@pytest.fixture
def clock() -> FakeClock:
    """Fake monotonic clock."""
    return FakeClock()


@pytest.fixture
def job_spec() -> JobSpec:
    """A valid job specification."""
    return JobSpec(
        name="build-42",
        namespace="ci",
        image="registry.example.com/web/frontend",
        tag="1.4.2",
    )


@pytest.fixture
def context_dir(tmp_path: Path) -> Path:
    """A build context with a descriptor and a pre-built output directory."""
    root = tmp_path / "src"
    root.mkdir()
    (root / "Dockerfile").write_text("FROM nginx:alpine\nCOPY dist /srv/www\n")
    dist = root / "dist"
    (dist / "assets").mkdir(parents=True)
    (dist / "index.html").write_text("<html></html>")
    (dist / "assets" / "app.js").write_text("console.log('hi')")
    return root


@pytest.fixture
def archive(context_dir: Path, tmp_path: Path) -> ContextArchive:
    """A packaged build context."""
    return build_context_archive(
        context_dir / "Dockerfile",
        context_dir / "dist",
        tmp_path / "out" / "context.tar.gz",
    )
