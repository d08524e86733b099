"""Configuration settings for podbuild.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.
The resulting Settings object is passed explicitly into the driver and
backend; nothing reads the environment after startup.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from podbuild.types import TlsPolicy


def _default_kubectl_candidates() -> list[Path]:
    """Return install locations searched when kubectl is not on PATH."""
    return [
        Path("/usr/local/bin/kubectl"),
        Path("/usr/bin/kubectl"),
        Path.home() / "bin" / "kubectl",
        Path("/snap/bin/kubectl"),
    ]


def _default_work_dir() -> Path:
    """Return the default directory for packaged build contexts."""
    return Path.home() / ".cache" / "podbuild"


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the PODBUILD_ prefix.
    CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="PODBUILD_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Cluster client
    kubectl_path: Path | None = Field(
        default=None,
        description="Explicit kubectl binary (skips discovery when set)",
    )
    kubectl_candidates: list[Path] = Field(
        default_factory=_default_kubectl_candidates,
        description="Install paths searched when kubectl is not on PATH",
    )
    kubeconfig: Path | None = Field(
        default=None,
        description="Credential file passed via --kubeconfig",
    )
    kube_context: str | None = Field(
        default=None,
        description="Context name passed via --context",
    )
    namespace: str = Field(
        default="default",
        description="Namespace the build pod runs in",
    )
    cluster_tls_policy: TlsPolicy = Field(
        default=TlsPolicy.STRICT,
        description="Pass --insecure-skip-tls-verify to kubectl when 'skip'",
    )

    # Build job
    tls_policy: TlsPolicy = Field(
        default=TlsPolicy.STRICT,
        description="Registry TLS verification policy for the image builder",
    )
    builder_image: str = Field(
        default="gcr.io/kaniko-project/executor:debug",
        description="Image running the container-image builder",
    )
    receiver_container: str = Field(
        default="context-receiver",
        description="Container that receives the build context",
    )
    context_path: str = Field(
        default="/workspace/context.tar.gz",
        description="Archive location inside the build pod",
    )
    registry_secret: str = Field(
        default="registry-credentials",
        description="Docker-config secret mounted into the builder (optional)",
    )
    receiver_image: str = Field(
        default="busybox:1.36",
        description="Image of the container that receives the build context",
    )
    template_path: Path | None = Field(
        default=None,
        description="Manifest template (uses the bundled kaniko pod if not set)",
    )
    job_prefix: str = Field(
        default="podbuild",
        description="Prefix for generated job names",
    )
    work_dir: Path = Field(
        default_factory=_default_work_dir,
        description="Directory for packaged build contexts",
    )

    # Timing (in seconds)
    poll_interval: float = Field(
        default=1.0,
        gt=0,
        description="Interval between readiness polls",
    )
    ready_timeout: float = Field(
        default=120.0,
        gt=0,
        description="Maximum wait for the build pod to become ready",
    )
    transfer_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Attempts at copying the build context",
    )
    transfer_delay: float = Field(
        default=2.0,
        ge=0,
        description="Fixed delay between context copy attempts",
    )
    transfer_timeout: float = Field(
        default=300.0,
        gt=0,
        description="Time budget for one context copy attempt",
    )
    terminal_phase_timeout: float = Field(
        default=30.0,
        gt=0,
        description="Wait for a terminal phase after the output stream ends",
    )
    deadline: float = Field(
        default=3600.0,
        gt=0,
        description="Overall deadline for one invocation",
    )
    cleanup_timeout: float = Field(
        default=5.0,
        gt=0,
        description="Time budget for deleting the build pod",
    )
    rollout_timeout: float = Field(
        default=300.0,
        gt=0,
        description="Wait for a deployment rollout to finish",
    )

    # Diagnostics
    diagnostic_event_count: int = Field(
        default=20,
        ge=0,
        description="Number of recent events collected on failure",
    )
    diagnostic_log_lines: int = Field(
        default=50,
        ge=0,
        description="Number of partial output lines collected on failure",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )


def get_settings() -> Settings:
    """Get the application settings.

    Returns:
        Settings instance loaded from environment.
    """
    return Settings()


def print_settings_json(settings: Settings | None = None) -> str:
    """Render effective settings as JSON.

    Args:
        settings: Optional settings instance; uses default if not provided.

    Returns:
        JSON string of effective settings.
    """
    if settings is None:
        settings = get_settings()
    return settings.model_dump_json(indent=2)


__all__ = ["Settings", "get_settings", "print_settings_json"]
