"""podbuild - drive ephemeral container-image build jobs on a cluster.

This package renders a build-pod manifest, submits it through a job backend,
feeds it a packaged build context, streams the build output, and always
removes the pod afterwards.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
