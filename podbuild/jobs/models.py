"""Models for build jobs.

This module defines:
- JobSpec: validated, immutable description of one build job
- JobHandle: backend identifier for a submitted job
- ContextArchive: packaged build context
- InvocationResult: outcome of one driver invocation
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, field_validator

from podbuild.errors import EXIT_OK
from podbuild.types import InvocationState, TlsPolicy

# Kubernetes object names and namespaces (RFC 1123 label)
DNS_LABEL_PATTERN = re.compile(r"^[a-z0-9]([-a-z0-9]{0,61}[a-z0-9])?$")
# Docker image tag grammar
IMAGE_TAG_PATTERN = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.\-]{0,127}$")


class JobSpec(BaseModel):
    """Specification for one ephemeral build job.

    Attributes:
        name: Job name, unique per invocation.
        namespace: Namespace the job runs in.
        image: Destination image repository (without tag).
        tag: Destination image tag.
        context_path: Where the context archive lands inside the job.
        tls_policy: Registry TLS verification policy.
        builder_image: Image running the container-image builder.
        dockerfile: Build descriptor path inside the context.
        registry_secret: Docker-config secret for registry auth; mounted
            optionally, so a missing secret means anonymous pushes.
        receiver_container: Init container that receives the context.
        receiver_image: Image of the receiver container.
        active_deadline_seconds: Backend-enforced lifetime of the job.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(description="Job name (DNS-1123 label)")
    namespace: str = Field(description="Namespace (DNS-1123 label)")
    image: str = Field(description="Destination image repository")
    tag: str = Field(description="Destination image tag")
    context_path: str = Field(
        default="/workspace/context.tar.gz",
        description="Archive location inside the job",
    )
    tls_policy: TlsPolicy = Field(default=TlsPolicy.STRICT)
    builder_image: str = Field(default="gcr.io/kaniko-project/executor:debug")
    dockerfile: str = Field(default="Dockerfile")
    registry_secret: str = Field(default="registry-credentials")
    receiver_container: str = Field(default="context-receiver")
    receiver_image: str = Field(default="busybox:1.36")
    active_deadline_seconds: int = Field(default=3600, gt=0)

    @field_validator("name", "namespace")
    @classmethod
    def validate_dns_label(cls, v: str) -> str:
        """Validate name and namespace are DNS-1123 labels."""
        if not DNS_LABEL_PATTERN.match(v):
            raise ValueError(
                f"must be a lowercase DNS-1123 label (max 63 chars), got '{v}'"
            )
        return v

    @field_validator("tag")
    @classmethod
    def validate_tag(cls, v: str) -> str:
        """Validate tag follows the image tag grammar."""
        if not IMAGE_TAG_PATTERN.match(v):
            raise ValueError(f"invalid image tag '{v}'")
        return v

    @field_validator("image", "builder_image", "receiver_image", "dockerfile")
    @classmethod
    def validate_no_whitespace(cls, v: str) -> str:
        """Validate references are non-empty and contain no whitespace."""
        if not v or any(c.isspace() for c in v):
            raise ValueError("must be non-empty and contain no whitespace")
        return v

    @field_validator("context_path")
    @classmethod
    def validate_context_path(cls, v: str) -> str:
        """Validate the context path is absolute inside the job."""
        if not v.startswith("/") or any(c.isspace() for c in v):
            raise ValueError("context_path must be an absolute path without spaces")
        return v

    @field_validator("registry_secret", "receiver_container")
    @classmethod
    def validate_object_name(cls, v: str) -> str:
        """Validate secret and container names."""
        if not DNS_LABEL_PATTERN.match(v):
            raise ValueError(f"invalid name '{v}'")
        return v

    @property
    def image_ref(self) -> str:
        """Full destination reference, ``image:tag``."""
        return f"{self.image}:{self.tag}"


@dataclass(frozen=True)
class JobHandle:
    """Backend identifier for a submitted job."""

    name: str
    namespace: str
    kind: str = "pod"
    uid: str | None = None

    def __str__(self) -> str:
        return f"{self.kind}/{self.name} (namespace {self.namespace})"


@dataclass(frozen=True)
class ContextArchive:
    """A packaged build context.

    Attributes:
        path: Local path of the gzip tar archive.
        sha256: Hex digest of the archive bytes.
        size_bytes: Archive size.
        members: Member names in archive order.
    """

    path: Path
    sha256: str
    size_bytes: int
    members: tuple[str, ...] = ()


@dataclass
class InvocationResult:
    """Outcome of one driver invocation.

    ``state`` is the last state reached before cleanup; cleanup is reported
    separately so a cleanup failure never hides the primary outcome.
    """

    state: InvocationState
    job_name: str
    exit_code: int = EXIT_OK
    output_lines: list[str] = field(default_factory=list)
    error_code: str | None = None
    error_message: str | None = None
    cleanup_attempted: bool = False
    cleanup_ok: bool = True
    cleanup_error: str | None = None
    diagnostics: str = ""
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def success(self) -> bool:
        """True when the build finished and the job reported success."""
        return self.state == InvocationState.DONE and self.exit_code == EXIT_OK

    def to_dict(self) -> dict[str, object]:
        """Convert to a JSON-serializable dictionary."""
        return {
            "state": self.state.value,
            "job_name": self.job_name,
            "success": self.success,
            "exit_code": self.exit_code,
            "error_code": self.error_code,
            "error_message": self.error_message,
            "cleanup_attempted": self.cleanup_attempted,
            "cleanup_ok": self.cleanup_ok,
            "cleanup_error": self.cleanup_error,
            "diagnostics": self.diagnostics,
            "output_line_count": len(self.output_lines),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


__all__ = [
    "DNS_LABEL_PATTERN",
    "IMAGE_TAG_PATTERN",
    "ContextArchive",
    "InvocationResult",
    "JobHandle",
    "JobSpec",
]
