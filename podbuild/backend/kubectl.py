"""kubectl-backed job backend.

This module handles:
- Locating the kubectl binary once at startup
- Composing kubectl commands with cluster flags (kubeconfig, context,
  TLS policy)
- Running the seven job operations as kubectl subprocesses
- Classifying kubectl failures into the podbuild error taxonomy

Cluster TLS verification is relaxed with the per-call
``--insecure-skip-tls-verify`` flag; the credential file is never edited.
"""

from __future__ import annotations

import json
import logging
import shlex
import shutil
import subprocess
import tempfile
import threading
import time
from collections.abc import Callable, Iterator, Sequence
from pathlib import Path
from typing import Any

import yaml

from podbuild.backend.base import JobStatus
from podbuild.config import Settings
from podbuild.errors import (
    BackendCommandError,
    BackendUnavailable,
    DeadlineExceeded,
    NameCollision,
    StreamFailure,
    SubmissionRejected,
)
from podbuild.jobs.models import JobHandle
from podbuild.jobs.polling import poll_until
from podbuild.types import JobPhase, TlsPolicy

logger = logging.getLogger(__name__)

# Container that runs the image builder in the bundled template
BUILDER_CONTAINER = "builder"

# Default timeout for short kubectl calls (seconds)
COMMAND_TIMEOUT = 60

# stderr fragments that mean the API server could not be reached
UNREACHABLE_MARKERS = (
    "unable to connect to the server",
    "connection refused",
    "no such host",
    "i/o timeout",
    "tls handshake timeout",
    "x509:",
    "the connection to the server",
)


def locate_kubectl(
    explicit: Path | None = None,
    candidates: Sequence[Path] = (),
    which: Callable[[str], str | None] = shutil.which,
) -> Path:
    """Find the kubectl binary.

    Resolution order: explicit path, ``PATH`` lookup, then each candidate
    install location.

    Args:
        explicit: Configured kubectl path.
        candidates: Install locations to search.
        which: PATH lookup function.

    Returns:
        Path to an executable kubectl.

    Raises:
        BackendUnavailable: If no kubectl can be found.
    """
    if explicit is not None:
        if explicit.is_file():
            return explicit
        raise BackendUnavailable(f"Configured kubectl not found: {explicit}")

    found = which("kubectl")
    if found:
        return Path(found)

    for candidate in candidates:
        path = candidate.expanduser()
        if path.is_file():
            logger.debug("Using kubectl from %s", path)
            return path

    searched = ", ".join(str(c) for c in candidates) or "(none)"
    raise BackendUnavailable(f"kubectl not found on PATH or in: {searched}")


def _is_unreachable(stderr: str) -> bool:
    lowered = stderr.lower()
    return any(marker in lowered for marker in UNREACHABLE_MARKERS)


def _is_not_found(stderr: str) -> bool:
    return "notfound" in stderr.lower().replace(" ", "")


def parse_pod_status(pod: dict[str, Any], receiver_container: str) -> JobStatus:
    """Derive a JobStatus from a pod object.

    The job is ready when the context receiver is running, or when the pod
    as a whole reports the Ready condition.

    Args:
        pod: Pod object as returned by ``kubectl get pod -o json``.
        receiver_container: Name of the container that receives the context.

    Returns:
        JobStatus for the pod.
    """
    status = pod.get("status") or {}
    phase = JobPhase.parse(status.get("phase"))

    ready = False
    reason = status.get("reason")
    message = status.get("message")

    for container in status.get("initContainerStatuses") or []:
        state = container.get("state") or {}
        if container.get("name") == receiver_container and "running" in state:
            ready = True
        waiting = state.get("waiting")
        if waiting and not reason:
            reason = waiting.get("reason")
            message = waiting.get("message")

    for container in status.get("containerStatuses") or []:
        waiting = (container.get("state") or {}).get("waiting")
        if waiting and not reason and waiting.get("reason") != "PodInitializing":
            reason = waiting.get("reason")
            message = waiting.get("message")

    for condition in status.get("conditions") or []:
        if condition.get("type") == "Ready" and condition.get("status") == "True":
            ready = True

    return JobStatus(phase=phase, ready=ready, reason=reason, message=message)


def format_event(event: dict[str, Any]) -> str:
    """Format a Kubernetes event as a single line."""
    timestamp = (
        event.get("lastTimestamp")
        or event.get("eventTime")
        or (event.get("metadata") or {}).get("creationTimestamp")
        or "-"
    )
    return "{} {} {}: {}".format(
        timestamp,
        event.get("type", "Normal"),
        event.get("reason", ""),
        (event.get("message") or "").strip(),
    )


class KubectlBackend:
    """Job backend that drives pods through kubectl.

    Args:
        settings: Effective settings; cluster flags and the receiver
            container come from here.
        kubectl: kubectl binary; located from settings when omitted.
    """

    def __init__(self, settings: Settings, kubectl: Path | None = None) -> None:
        self.settings = settings
        self.kubectl = kubectl or locate_kubectl(
            settings.kubectl_path, settings.kubectl_candidates
        )

    # Command plumbing

    def base_command(self, namespace: str | None = None) -> list[str]:
        """Return kubectl plus the global flags for every call."""
        cmd = [str(self.kubectl)]
        if self.settings.kubeconfig is not None:
            cmd.append(f"--kubeconfig={self.settings.kubeconfig}")
        if self.settings.kube_context:
            cmd.append(f"--context={self.settings.kube_context}")
        if self.settings.cluster_tls_policy == TlsPolicy.SKIP:
            cmd.append("--insecure-skip-tls-verify=true")
        cmd.append(f"--namespace={namespace or self.settings.namespace}")
        return cmd

    def _run(
        self,
        args: list[str],
        namespace: str | None = None,
        input_text: str | None = None,
        timeout: float | None = COMMAND_TIMEOUT,
    ) -> subprocess.CompletedProcess[str]:
        cmd = self.base_command(namespace) + args
        logger.debug("Running: %s", shlex.join(cmd))
        try:
            result = subprocess.run(
                cmd,
                input=input_text,
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                timeout=timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            raise BackendCommandError(
                f"kubectl {args[0]} timed out after {timeout}s",
                code="backend_timeout",
            ) from e
        except OSError as e:
            raise BackendUnavailable(f"Failed to execute kubectl: {e}") from e

        if result.returncode != 0 and _is_unreachable(result.stderr):
            raise BackendUnavailable(
                f"Cluster unreachable: {result.stderr.strip()}"
            )
        return result

    @staticmethod
    def _fail(
        action: str, result: subprocess.CompletedProcess[str]
    ) -> BackendCommandError:
        return BackendCommandError(
            f"kubectl {action} failed: {result.stderr.strip()}",
            returncode=result.returncode,
            stderr=result.stderr,
        )

    # Job operations

    def create(self, manifest: str) -> JobHandle:
        """Create the job described by a manifest."""
        try:
            document = yaml.safe_load(manifest) or {}
        except yaml.YAMLError as e:
            raise SubmissionRejected(f"Manifest is not valid YAML: {e}") from e
        metadata = document.get("metadata") or {}
        name = metadata.get("name", "")
        namespace = metadata.get("namespace") or self.settings.namespace

        result = self._run(
            ["create", "-f", "-", "-o", "json"],
            namespace=namespace,
            input_text=manifest,
        )
        if result.returncode != 0:
            if "alreadyexists" in result.stderr.lower().replace(" ", ""):
                raise NameCollision(name, namespace)
            raise SubmissionRejected(
                f"Manifest rejected: {result.stderr.strip()}"
            )

        try:
            created = json.loads(result.stdout)
        except json.JSONDecodeError:
            created = {}
        created_meta = created.get("metadata") or {}
        handle = JobHandle(
            name=created_meta.get("name", name),
            namespace=created_meta.get("namespace", namespace),
            kind=str(created.get("kind", document.get("kind", "pod"))).lower(),
            uid=created_meta.get("uid"),
        )
        logger.info("Created %s", handle)
        return handle

    def get(self, handle: JobHandle) -> JobStatus:
        """Return the status of a job; a missing job reads as Failed."""
        result = self._run(
            ["get", handle.kind, handle.name, "-o", "json"],
            namespace=handle.namespace,
        )
        if result.returncode != 0:
            if _is_not_found(result.stderr):
                return JobStatus(
                    phase=JobPhase.FAILED,
                    reason="NotFound",
                    message=f"{handle.kind}/{handle.name} no longer exists",
                )
            raise self._fail("get", result)
        try:
            pod = json.loads(result.stdout)
        except json.JSONDecodeError as e:
            raise BackendCommandError(f"Unparseable kubectl get output: {e}") from e
        return parse_pod_status(pod, self.settings.receiver_container)

    def describe(self, handle: JobHandle) -> str:
        """Return ``kubectl describe`` output for a job."""
        result = self._run(
            ["describe", handle.kind, handle.name],
            namespace=handle.namespace,
        )
        if result.returncode != 0:
            raise self._fail("describe", result)
        return result.stdout

    def list_events(self, handle: JobHandle, limit: int) -> list[str]:
        """Return the most recent events for a job, oldest first."""
        if limit <= 0:
            return []
        result = self._run(
            [
                "get",
                "events",
                f"--field-selector=involvedObject.name={handle.name}",
                "--sort-by=.lastTimestamp",
                "-o",
                "json",
            ],
            namespace=handle.namespace,
        )
        if result.returncode != 0:
            raise self._fail("get events", result)
        try:
            items = json.loads(result.stdout).get("items") or []
        except json.JSONDecodeError as e:
            raise BackendCommandError(f"Unparseable event list: {e}") from e
        return [format_event(event) for event in items[-limit:]]

    def copy_in(
        self,
        handle: JobHandle,
        local_path: Path,
        remote_path: str,
        timeout: float | None = None,
    ) -> None:
        """Copy a file into the receiver container."""
        result = self._run(
            [
                "cp",
                str(local_path),
                f"{handle.namespace}/{handle.name}:{remote_path}",
                "-c",
                self.settings.receiver_container,
            ],
            namespace=handle.namespace,
            timeout=timeout,
        )
        if result.returncode != 0:
            raise self._fail("cp", result)

    def _wait_for_builder_start(self, handle: JobHandle, timeout: float) -> None:
        """Wait until the pod has left its init phase."""

        def started() -> JobStatus | None:
            status = self.get(handle)
            return status if status.phase != JobPhase.PENDING else None

        try:
            poll_until(
                started,
                timeout=timeout,
                interval=self.settings.poll_interval,
                description=f"{handle.name} to start building",
            )
        except TimeoutError as e:
            raise DeadlineExceeded(str(e)) from e

    def stream_logs(
        self, handle: JobHandle, timeout: float | None = None
    ) -> Iterator[str]:
        """Follow the builder container's output until it closes."""
        started_at = time.monotonic()
        self._wait_for_builder_start(
            handle, timeout if timeout is not None else self.settings.deadline
        )
        remaining = (
            None
            if timeout is None
            else max(0.0, timeout - (time.monotonic() - started_at))
        )

        cmd = self.base_command(handle.namespace) + [
            "logs",
            "-f",
            f"{handle.kind}/{handle.name}",
            "-c",
            BUILDER_CONTAINER,
        ]
        logger.debug("Streaming: %s", shlex.join(cmd))

        with tempfile.TemporaryFile(
            mode="w+", encoding="utf-8", errors="replace"
        ) as stderr_file:
            try:
                proc = subprocess.Popen(
                    cmd,
                    stdout=subprocess.PIPE,
                    stderr=stderr_file,
                    text=True,
                    encoding="utf-8",
                    errors="replace",
                    bufsize=1,
                )
            except OSError as e:
                raise BackendUnavailable(f"Failed to execute kubectl: {e}") from e

            expired = threading.Event()

            def kill_on_deadline() -> None:
                expired.set()
                proc.kill()

            timer: threading.Timer | None = None
            if remaining is not None:
                timer = threading.Timer(remaining, kill_on_deadline)
                timer.daemon = True
                timer.start()

            try:
                assert proc.stdout is not None
                for line in proc.stdout:
                    yield line.rstrip("\n")
                returncode = proc.wait()
            finally:
                if timer is not None:
                    timer.cancel()
                if proc.poll() is None:
                    proc.kill()
                    proc.wait()

            # A clean exit that raced the timer still counts as a closed stream
            if expired.is_set() and returncode < 0:
                raise DeadlineExceeded(
                    f"Output of {handle.name} still open after {timeout:g}s"
                )
            if returncode != 0:
                stderr_file.seek(0)
                stderr = stderr_file.read().strip()
                if _is_unreachable(stderr):
                    raise BackendUnavailable(f"Cluster unreachable: {stderr}")
                raise StreamFailure(
                    f"Log stream for {handle.name} ended with exit code "
                    f"{returncode}: {stderr}"
                )

    def delete(self, handle: JobHandle, timeout: float | None = None) -> bool:
        """Delete a job; already-absent jobs return False."""
        args = [
            "delete",
            handle.kind,
            handle.name,
            "--ignore-not-found",
            "--wait=false",
        ]
        if timeout is not None:
            args.append(f"--request-timeout={max(1, int(timeout))}s")
        result = self._run(args, namespace=handle.namespace, timeout=timeout)
        if result.returncode != 0:
            if _is_not_found(result.stderr):
                return False
            raise self._fail("delete", result)
        return bool(result.stdout.strip())

    # Deployment operations

    def set_image(
        self,
        deployment: str,
        container: str,
        image_ref: str,
        namespace: str | None = None,
    ) -> None:
        """Point a deployment's container at a new image."""
        result = self._run(
            ["set", "image", f"deployment/{deployment}", f"{container}={image_ref}"],
            namespace=namespace,
        )
        if result.returncode != 0:
            raise self._fail("set image", result)

    def rollout_status(
        self, deployment: str, timeout: float, namespace: str | None = None
    ) -> str:
        """Block until a deployment rollout completes."""
        result = self._run(
            [
                "rollout",
                "status",
                f"deployment/{deployment}",
                f"--timeout={int(timeout)}s",
            ],
            namespace=namespace,
            timeout=timeout + COMMAND_TIMEOUT,
        )
        if result.returncode != 0:
            raise self._fail("rollout status", result)
        return result.stdout


__all__ = [
    "BUILDER_CONTAINER",
    "KubectlBackend",
    "format_event",
    "locate_kubectl",
    "parse_pod_status",
]
