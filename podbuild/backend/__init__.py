"""Job backends.

The driver talks to a JobBackend; KubectlBackend implements it on top of
the kubectl command-line client.
"""

from podbuild.backend.base import JobBackend, JobStatus

__all__ = ["JobBackend", "JobStatus"]
