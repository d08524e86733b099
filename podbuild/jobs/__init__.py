"""Build job module.

This module handles:
- Job specifications and handles
- Manifest rendering
- Build context packaging
- Deadline-bounded polling
- Driving a job from submission to cleanup
"""

from podbuild.jobs.models import ContextArchive, InvocationResult, JobHandle, JobSpec

__all__ = ["ContextArchive", "InvocationResult", "JobHandle", "JobSpec"]

# Lazy imports for submodules to avoid circular imports
# Access via podbuild.jobs.driver, podbuild.jobs.manifest, etc.
