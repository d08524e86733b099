"""Build job driver.

This module provides BuildJobDriver, which takes one ephemeral build job
from manifest to deletion:

    render -> submit -> await ready -> transfer context -> stream output
    -> confirm terminal phase -> clean up

Each stage completes (or fails) before the next starts. Cleanup runs on
every exit path once a job exists, including interrupts, and its own
failures are logged and reported but never replace the primary error.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from collections.abc import Callable, Iterator
from datetime import datetime, timezone

import jinja2
from tenacity import (
    RetryError,
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from podbuild.backend.base import JobBackend, JobStatus
from podbuild.config import Settings
from podbuild.errors import (
    EXIT_INTERRUPTED,
    ArchiveError,
    BackendCommandError,
    DeadlineExceeded,
    DriverStateError,
    PodbuildError,
    ReadyTimeoutError,
    StreamFailure,
    TransferError,
)
from podbuild.jobs.manifest import compile_template, load_template, render_manifest
from podbuild.jobs.models import ContextArchive, InvocationResult, JobHandle, JobSpec
from podbuild.jobs.polling import poll_until
from podbuild.types import InvocationState, JobPhase

logger = logging.getLogger(__name__)


class BuildJobDriver:
    """Drive one build job at a time through an injected backend.

    Args:
        settings: Effective settings (timeouts, retry bounds, diagnostics).
        backend: Job backend offering the seven job operations.
        template: Compiled manifest template or template text; loaded from
            ``settings.template_path`` (or the bundled template) if omitted.
        clock: Monotonic clock.
        sleep: Sleep function.
    """

    def __init__(
        self,
        settings: Settings,
        backend: JobBackend,
        template: jinja2.Template | str | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = settings
        self.backend = backend
        if template is None:
            template = load_template(settings.template_path)
        elif isinstance(template, str):
            template = compile_template(template)
        self.template = template
        self._clock = clock
        self._sleep = sleep
        self.state = InvocationState.INIT
        self.cleanup_error: str | None = None
        self._handle: JobHandle | None = None
        self._streamed = False
        self._deadline_at: float | None = None
        self.last_result: InvocationResult | None = None

    @property
    def handle(self) -> JobHandle | None:
        """The live job handle, if a job has been submitted and not removed."""
        return self._handle

    # Deadline bookkeeping

    def _remaining(self) -> float | None:
        """Seconds left before the invocation deadline, or None if unbounded.

        Raises:
            DeadlineExceeded: If the deadline has already passed.
        """
        if self._deadline_at is None:
            return None
        remaining = self._deadline_at - self._clock()
        if remaining <= 0:
            raise DeadlineExceeded(
                f"Invocation exceeded its {self.settings.deadline:g}s deadline"
            )
        return remaining

    def _bounded(self, timeout: float) -> float:
        remaining = self._remaining()
        return timeout if remaining is None else min(timeout, remaining)

    # Stages

    def render_manifest(self, spec: JobSpec) -> str:
        """Render the job manifest for a spec.

        Raises:
            TemplateError: If the manifest cannot be rendered.
        """
        manifest = render_manifest(spec, self.template)
        self.state = InvocationState.RENDERED
        return manifest

    def submit(self, manifest: str) -> JobHandle:
        """Submit a manifest to the backend. Not retried.

        Raises:
            DriverStateError: If a previous job is still live.
            BackendUnavailable: If the backend cannot be reached.
            NameCollision: If the job name is already taken.
            SubmissionRejected: If the backend rejects the manifest.
        """
        if self._handle is not None:
            raise DriverStateError(
                f"Job {self._handle.name} is still live; clean it up first"
            )
        handle = self.backend.create(manifest)
        self._handle = handle
        self._streamed = False
        self.state = InvocationState.SUBMITTED
        logger.info("Submitted build job %s", handle)
        return handle

    def await_ready(self, handle: JobHandle, timeout: float | None = None) -> JobStatus:
        """Poll until the job is ready to receive its context.

        Args:
            handle: Submitted job.
            timeout: Wait budget; ``settings.ready_timeout`` when omitted.

        Returns:
            The ready status.

        Raises:
            ReadyTimeoutError: If the job is not ready in time or ends before
                becoming ready. Diagnostics are collected first.
            DeadlineExceeded: If the invocation deadline cut the wait short.
        """
        if timeout is None:
            timeout = self.settings.ready_timeout
        budget = self._bounded(timeout)
        deadline_bound = budget < timeout
        last: list[JobStatus] = []

        def ready_or_finished() -> JobStatus | None:
            status = self.backend.get(handle)
            last[:] = [status]
            if status.ready or status.phase.is_terminal:
                return status
            logger.debug(
                "Waiting for %s: phase=%s reason=%s",
                handle.name,
                status.phase.value,
                status.reason,
            )
            return None

        try:
            status = poll_until(
                ready_or_finished,
                timeout=budget,
                interval=self.settings.poll_interval,
                description=f"{handle.name} to become ready",
                clock=self._clock,
                sleep=self._sleep,
            )
        except TimeoutError:
            self.state = InvocationState.TIMED_OUT
            reason = last[0].reason if last else None
            detail = f" (last reason: {reason})" if reason else ""
            if deadline_bound:
                message = (
                    f"Invocation deadline of {self.settings.deadline:g}s reached "
                    f"while waiting for {handle.name}{detail}"
                )
                logger.error(message)
                raise DeadlineExceeded(
                    message, diagnostics=self.collect_diagnostics(handle)
                ) from None
            message = f"Job {handle.name} not ready after {budget:g}s{detail}"
            logger.error(message)
            raise ReadyTimeoutError(
                message, timeout=budget, diagnostics=self.collect_diagnostics(handle)
            ) from None

        if not status.ready:
            self.state = InvocationState.TIMED_OUT
            message = (
                f"Job {handle.name} reached phase {status.phase.value} "
                f"before becoming ready"
            )
            if status.reason:
                message += f" ({status.reason})"
            logger.error(message)
            raise ReadyTimeoutError(
                message, timeout=budget, diagnostics=self.collect_diagnostics(handle)
            )

        self.state = InvocationState.READY
        logger.info("Build job %s is ready", handle.name)
        return status

    def collect_diagnostics(self, handle: JobHandle) -> str:
        """Gather describe output, recent events and partial output.

        Best-effort: a failing source is noted in the text, never raised, so
        collecting diagnostics cannot replace the failure being diagnosed.
        """
        sections: list[str] = []

        try:
            sections.append("== describe ==\n" + self.backend.describe(handle).rstrip())
        except Exception as e:
            sections.append(f"== describe ==\n(unavailable: {e})")

        try:
            events = self.backend.list_events(
                handle, self.settings.diagnostic_event_count
            )
            sections.append("== events ==\n" + ("\n".join(events) or "(none)"))
        except Exception as e:
            sections.append(f"== events ==\n(unavailable: {e})")

        tail: deque[str] = deque(maxlen=self.settings.diagnostic_log_lines)
        note = ""
        try:
            tail.extend(
                self.backend.stream_logs(handle, timeout=self.settings.cleanup_timeout)
            )
        except Exception as e:
            note = f"\n(output incomplete: {e})"
        sections.append("== output ==\n" + ("\n".join(tail) or "(none)") + note)

        diagnostics = "\n\n".join(sections)
        logger.warning("Diagnostics for %s:\n%s", handle.name, diagnostics)
        return diagnostics

    def transfer_context(
        self,
        handle: JobHandle,
        archive: ContextArchive,
        remote_path: str | None = None,
    ) -> None:
        """Copy the context archive into the job, with bounded retries.

        Raises:
            ArchiveError: If the archive file is missing locally.
            TransferError: If every attempt failed.
        """
        target = remote_path or self.settings.context_path
        if not archive.path.is_file():
            self.state = InvocationState.TRANSFER_FAILED
            raise ArchiveError(f"Context archive missing: {archive.path}")

        errors: list[BackendCommandError] = []

        def attempt() -> None:
            # Each attempt gets the per-copy timeout, clipped to the deadline
            timeout = self._bounded(self.settings.transfer_timeout)
            try:
                self.backend.copy_in(handle, archive.path, target, timeout=timeout)
            except BackendCommandError as e:
                errors.append(e)
                raise

        retrying = Retrying(
            stop=stop_after_attempt(self.settings.transfer_attempts),
            wait=wait_fixed(self.settings.transfer_delay),
            retry=retry_if_exception_type(BackendCommandError),
            sleep=self._sleep,
            before_sleep=before_sleep_log(logger, logging.WARNING),
        )
        try:
            retrying(attempt)
        except RetryError as e:
            self.state = InvocationState.TRANSFER_FAILED
            last_error = e.last_attempt.exception()
            raise TransferError(
                f"Could not copy {archive.path.name} into {handle.name} after "
                f"{len(errors)} attempt(s): {last_error}",
                attempts=[str(err) for err in errors],
            ) from last_error
        except PodbuildError:
            self.state = InvocationState.TRANSFER_FAILED
            raise

        self.state = InvocationState.TRANSFERRED
        logger.info(
            "Transferred %s (%d bytes) to %s:%s",
            archive.path.name,
            archive.size_bytes,
            handle.name,
            target,
        )

    def stream_output(self, handle: JobHandle) -> Iterator[str]:
        """Return the job's output as a lazy, single-use line iterator.

        Raises:
            DriverStateError: If the output was already streamed.
        """
        if self._streamed:
            raise DriverStateError(f"Output of {handle.name} was already streamed")
        self._streamed = True
        self.state = InvocationState.STREAMING
        return self._stream(handle)

    def _stream(self, handle: JobHandle) -> Iterator[str]:
        try:
            yield from self.backend.stream_logs(handle, timeout=self._remaining())
        except BackendCommandError as e:
            self.state = InvocationState.STREAM_FAILED
            raise StreamFailure(f"Output stream of {handle.name} failed: {e}") from e
        except PodbuildError:
            self.state = InvocationState.STREAM_FAILED
            raise

    def confirm_terminal_phase(self, handle: JobHandle) -> JobPhase:
        """Check the backend's terminal phase after the output stream closed.

        A closed stream alone does not mean success.

        Raises:
            StreamFailure: If the job did not succeed or never reported a
                terminal phase.
        """
        def terminal() -> JobStatus | None:
            status = self.backend.get(handle)
            return status if status.phase.is_terminal else None

        try:
            budget = self._bounded(self.settings.terminal_phase_timeout)
            status = poll_until(
                terminal,
                timeout=budget,
                interval=self.settings.poll_interval,
                description=f"{handle.name} to finish",
                clock=self._clock,
                sleep=self._sleep,
            )
        except TimeoutError as e:
            self.state = InvocationState.STREAM_FAILED
            raise StreamFailure(
                f"Output of {handle.name} ended but the job reported no terminal phase"
            ) from e
        except PodbuildError:
            self.state = InvocationState.STREAM_FAILED
            raise

        if status.phase != JobPhase.SUCCEEDED:
            self.state = InvocationState.STREAM_FAILED
            message = f"Job {handle.name} finished with phase {status.phase.value}"
            if status.reason:
                message += f" ({status.reason})"
            raise StreamFailure(message, phase=status.phase.value)

        self.state = InvocationState.DONE
        logger.info("Build job %s succeeded", handle.name)
        return status.phase

    def cleanup(self, handle: JobHandle, timeout: float | None = None) -> bool:
        """Delete the job. Never raises.

        A job that is already gone counts as cleaned up.

        Returns:
            True if the job is gone, False if deletion failed (see
            ``cleanup_error``).
        """
        budget = timeout if timeout is not None else self.settings.cleanup_timeout
        self.cleanup_error = None
        try:
            existed = self.backend.delete(handle, timeout=budget)
        except Exception as e:
            self.cleanup_error = str(e)
            logger.warning("Failed to delete build job %s: %s", handle.name, e)
            return False

        if self._handle == handle:
            self._handle = None
        if existed:
            logger.info("Deleted build job %s", handle.name)
        else:
            logger.info("Build job %s was already gone", handle.name)
        return True

    # Full invocation

    def run(
        self,
        spec: JobSpec,
        archive: ContextArchive,
        on_line: Callable[[str], None] | None = None,
    ) -> InvocationResult:
        """Run one build job end to end.

        Args:
            spec: Job specification.
            archive: Packaged build context.
            on_line: Called with each output line as it arrives.

        Returns:
            InvocationResult with the last state before cleanup, the exit
            code of the primary failure (0 on success) and the cleanup
            outcome.

        Raises:
            KeyboardInterrupt: After best-effort cleanup, if interrupted.
        """
        self.state = InvocationState.INIT
        self._deadline_at = self._clock() + self.settings.deadline
        result = InvocationResult(
            state=self.state,
            job_name=spec.name,
            started_at=datetime.now(timezone.utc),
        )
        self.last_result = result
        handle: JobHandle | None = None

        try:
            manifest = self.render_manifest(spec)
            handle = self.submit(manifest)
            self.await_ready(handle)
            self.transfer_context(handle, archive, spec.context_path)
            for line in self.stream_output(handle):
                result.output_lines.append(line)
                if on_line is not None:
                    on_line(line)
            self.confirm_terminal_phase(handle)
        except PodbuildError as e:
            result.exit_code = e.exit_code
            result.error_code = e.code
            result.error_message = str(e)
            result.diagnostics = getattr(e, "diagnostics", "")
            logger.error("Build job %s failed [%s]: %s", spec.name, e.code, e)
        except KeyboardInterrupt:
            logger.warning("Interrupted; removing build job %s", spec.name)
            result.exit_code = EXIT_INTERRUPTED
            result.error_code = "interrupted"
            result.error_message = "Interrupted"
            raise
        finally:
            result.state = self.state
            if handle is not None:
                result.cleanup_attempted = True
                result.cleanup_ok = self.cleanup(handle)
                result.cleanup_error = self.cleanup_error
            self.state = InvocationState.CLEANED_UP
            self._deadline_at = None
            result.finished_at = datetime.now(timezone.utc)

        return result


__all__ = ["BuildJobDriver"]
