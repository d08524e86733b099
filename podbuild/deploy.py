"""Deployment rollout for freshly built images.

After a build pushes ``image:tag``, the cluster deployment that serves it
is pointed at the new reference and the rollout is awaited.
"""

from __future__ import annotations

import logging
from typing import Protocol

from podbuild.errors import BackendCommandError, DeploymentError

logger = logging.getLogger(__name__)


class DeploymentBackend(Protocol):
    """Backend operations needed to roll out an image."""

    def set_image(
        self,
        deployment: str,
        container: str,
        image_ref: str,
        namespace: str | None = None,
    ) -> None: ...

    def rollout_status(
        self, deployment: str, timeout: float, namespace: str | None = None
    ) -> str: ...


def update_deployment(
    backend: DeploymentBackend,
    deployment: str,
    container: str,
    image_ref: str,
    timeout: float,
    namespace: str | None = None,
) -> str:
    """Point a deployment at a new image and wait for the rollout.

    Args:
        backend: Backend providing set_image and rollout_status.
        deployment: Deployment name.
        container: Container within the deployment to update.
        image_ref: New image reference (``image:tag``).
        timeout: Rollout wait in seconds.
        namespace: Deployment namespace; backend default when omitted.

    Returns:
        Rollout status output.

    Raises:
        DeploymentError: If the image cannot be set or the rollout fails.
    """
    logger.info("Updating deployment %s: %s=%s", deployment, container, image_ref)
    try:
        backend.set_image(deployment, container, image_ref, namespace=namespace)
    except BackendCommandError as e:
        raise DeploymentError(f"Failed to update {deployment}: {e}") from e

    try:
        status = backend.rollout_status(deployment, timeout, namespace=namespace)
    except BackendCommandError as e:
        raise DeploymentError(f"Rollout of {deployment} did not complete: {e}") from e

    logger.info("Deployment %s rolled out %s", deployment, image_ref)
    return status


__all__ = ["DeploymentBackend", "update_deployment"]
