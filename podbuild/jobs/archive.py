"""Build context packaging.

This module handles:
- Packing the build descriptor and an optional pre-built output directory
  into a gzip tar archive the image builder can read
- Computing the archive checksum and size

The archive is written once and never modified afterwards.
"""

from __future__ import annotations

import hashlib
import logging
import os
import tarfile
from collections.abc import Iterable
from pathlib import Path

from podbuild.errors import ArchiveError
from podbuild.jobs.models import ContextArchive

logger = logging.getLogger(__name__)

DEFAULT_ARCHIVE_NAME = "context.tar.gz"
DEFAULT_DESCRIPTOR_NAME = "Dockerfile"

# Chunk size for hashing
HASH_CHUNK_SIZE = 64 * 1024  # 64KB


def compute_sha256(path: Path) -> str:
    """Compute the SHA-256 hex digest of a file.

    Args:
        path: File to hash.

    Returns:
        Hex digest string.
    """
    sha256 = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(HASH_CHUNK_SIZE), b""):
            sha256.update(chunk)
    return sha256.hexdigest()


def _normalize_member(info: tarfile.TarInfo) -> tarfile.TarInfo:
    """Strip local ownership from archive members."""
    info.uid = info.gid = 0
    info.uname = info.gname = ""
    return info


def _iter_tree(root: Path) -> list[Path]:
    """List every file and directory under root in a stable order."""
    entries: list[Path] = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames.sort()
        base = Path(dirpath)
        entries.extend(base / d for d in dirnames)
        entries.extend(base / f for f in sorted(filenames))
    return entries


def build_context_archive(
    descriptor: Path,
    output_dir: Path | None = None,
    destination: Path | None = None,
    extra_files: Iterable[Path] = (),
    descriptor_name: str = DEFAULT_DESCRIPTOR_NAME,
) -> ContextArchive:
    """Package a build context archive.

    Args:
        descriptor: Build descriptor (Dockerfile) on the host.
        output_dir: Optional pre-built output directory, stored under its own
            directory name (e.g. ``dist/``).
        destination: Archive path; defaults to ``context.tar.gz`` next to the
            descriptor.
        extra_files: Additional files stored at the archive root.
        descriptor_name: Name of the descriptor inside the archive.

    Returns:
        ContextArchive describing the written archive.

    Raises:
        ArchiveError: If an input is missing or the archive cannot be written.
    """
    if not descriptor.is_file():
        raise ArchiveError(f"Build descriptor not found: {descriptor}")
    if output_dir is not None and not output_dir.is_dir():
        raise ArchiveError(f"Output directory not found: {output_dir}")
    extra = list(extra_files)
    for path in extra:
        if not path.is_file():
            raise ArchiveError(f"Context file not found: {path}")

    if destination is None:
        destination = descriptor.parent / DEFAULT_ARCHIVE_NAME

    members: list[str] = []
    try:
        destination.parent.mkdir(parents=True, exist_ok=True)
        with tarfile.open(destination, "w:gz") as tar:
            tar.add(descriptor, arcname=descriptor_name, filter=_normalize_member)
            members.append(descriptor_name)

            for path in extra:
                tar.add(path, arcname=path.name, filter=_normalize_member)
                members.append(path.name)

            if output_dir is not None:
                prefix = output_dir.name
                tar.add(
                    output_dir,
                    arcname=prefix,
                    recursive=False,
                    filter=_normalize_member,
                )
                members.append(prefix)
                for entry in _iter_tree(output_dir):
                    arcname = f"{prefix}/{entry.relative_to(output_dir).as_posix()}"
                    tar.add(
                        entry,
                        arcname=arcname,
                        recursive=False,
                        filter=_normalize_member,
                    )
                    members.append(arcname)
    except (OSError, tarfile.TarError) as e:
        raise ArchiveError(f"Failed to write context archive {destination}: {e}") from e

    archive = ContextArchive(
        path=destination,
        sha256=compute_sha256(destination),
        size_bytes=destination.stat().st_size,
        members=tuple(members),
    )
    logger.info(
        "Packaged build context %s (%d members, %d bytes, sha256 %s)",
        destination,
        len(members),
        archive.size_bytes,
        archive.sha256[:12],
    )
    return archive


__all__ = [
    "DEFAULT_ARCHIVE_NAME",
    "DEFAULT_DESCRIPTOR_NAME",
    "build_context_archive",
    "compute_sha256",
]
