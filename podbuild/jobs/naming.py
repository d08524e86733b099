"""Unique job-name generation.

Names come from an externally supplied build counter when one exists,
otherwise from a UTC timestamp, and are normalised to DNS-1123 labels.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone

MAX_NAME_LENGTH = 63

_INVALID_CHARS = re.compile(r"[^a-z0-9-]+")
_DASH_RUNS = re.compile(r"-{2,}")


def normalize_name(raw: str) -> str:
    """Normalize an arbitrary string into a DNS-1123 label.

    Args:
        raw: Candidate name.

    Returns:
        Lowercased name with invalid characters replaced by '-', trimmed to
        63 characters.

    Raises:
        ValueError: If nothing usable remains.
    """
    name = _INVALID_CHARS.sub("-", raw.lower())
    name = _DASH_RUNS.sub("-", name).strip("-")
    # Keep the suffix (the unique part) when trimming
    if len(name) > MAX_NAME_LENGTH:
        name = name[-MAX_NAME_LENGTH:].lstrip("-")
    if not name:
        raise ValueError(f"Cannot derive a job name from '{raw}'")
    return name


def generate_job_name(
    prefix: str,
    build_number: int | str | None = None,
    now: datetime | None = None,
) -> str:
    """Generate the job name for one invocation.

    Args:
        prefix: Name prefix, e.g. the pipeline name.
        build_number: Monotonic build counter from the CI system.
        now: Timestamp used when no build number is supplied.

    Returns:
        DNS-1123 job name such as ``frontend-build-42``.
    """
    if build_number is not None and str(build_number).strip():
        suffix = str(build_number).strip()
    else:
        moment = now or datetime.now(timezone.utc)
        suffix = moment.strftime("%Y%m%d%H%M%S")
    return normalize_name(f"{prefix}-{suffix}")


__all__ = ["MAX_NAME_LENGTH", "generate_job_name", "normalize_name"]
