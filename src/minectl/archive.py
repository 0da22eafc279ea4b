"""Archive snapshots of an instance's live working directory.

Snapshots are gzip-compressed tarballs written to ``<awd>/<name>_<ts>.tgz``
with every entry rooted at ``./`` so they can be unpacked into any instance's
live directory.
"""
from __future__ import annotations

import logging
import os
import shutil
import subprocess
from collections.abc import Sequence
from datetime import datetime
from pathlib import Path

from .errors import StateError, ValidationError
from .paths import InstancePaths

_log = logging.getLogger(__name__)

ARCHIVE_EXTENSION = "tgz"


class ArchiveError(StateError):
    """Raised when tar fails to create or unpack an archive."""


def archive_filename(name: str, when: datetime | None = None) -> str:
    """Return ``<name>_<timestamp>.tgz`` for *when* (default: now)."""
    stamp = (when or datetime.now()).strftime("%Y%m%d-%H%M%S")
    return f"{name}_{stamp}.{ARCHIVE_EXTENSION}"


def _run_tar(args: Sequence[str], *, action: str) -> None:
    tar_bin = shutil.which("tar")
    if tar_bin is None:
        raise ArchiveError(f"The 'tar' command is required to {action} archives.")
    result = subprocess.run(  # noqa: S603 - controlled command execution
        [tar_bin, *args],
        capture_output=True,
        text=True,
        check=False,
    )
    if result.returncode != 0:
        message = result.stderr or result.stdout or "tar command failed"
        raise ArchiveError(f"Failed to {action} archive: {message.strip()}")


def create_archive(source_dir: Path, archive_path: Path) -> None:
    """Write a gzip tarball of *source_dir*'s contents, rooted at ``./``."""
    archive_path.parent.mkdir(parents=True, exist_ok=True)
    _run_tar(["-czf", str(archive_path), "-C", str(source_dir), "."], action="create")
    try:
        os.chmod(archive_path, 0o640)
    except OSError:
        pass


def extract_archive(archive_path: Path, destination: Path) -> None:
    """Unpack a gzip tarball into *destination*."""
    destination.mkdir(parents=True, exist_ok=True)
    _run_tar(["-xzf", str(archive_path), "-C", str(destination)], action="extract")


class ArchiveManager:
    """Snapshot and restore the live directory of one instance."""

    def __init__(self, paths: InstancePaths) -> None:
        """Bind the manager to *paths*."""
        self.paths = paths

    def archive(self) -> str:
        """Snapshot ``cwd`` into ``awd`` and return the bare archive filename."""
        if not self.paths.cwd.is_dir():
            raise StateError("cannot archive a server without a live directory")
        filename = self._unique_filename()
        target = self.paths.awd / filename
        _log.info("archiving %s into %s", self.paths.cwd, target)
        create_archive(self.paths.cwd, target)
        return filename

    def list_archives(self) -> list[str]:
        """Return archive filenames in ``awd``, newest first."""
        if not self.paths.awd.is_dir():
            return []
        entries = [
            item
            for item in self.paths.awd.iterdir()
            if item.is_file() and item.name.endswith(f".{ARCHIVE_EXTENSION}")
        ]
        entries.sort(key=lambda item: (item.stat().st_mtime, item.name), reverse=True)
        return [item.name for item in entries]

    def restore_into(self, target: InstancePaths, archive_path: Path) -> None:
        """Unpack *archive_path* into *target*'s live directory.

        Refuses to touch a target that already has a ``server.config``,
        wherever the archive came from.
        """
        restore_archive(Path(archive_path), target)

    def _unique_filename(self) -> str:
        filename = archive_filename(self.paths.name)
        if not (self.paths.awd / filename).exists():
            return filename
        stem = filename[: -len(ARCHIVE_EXTENSION) - 1]
        counter = 1
        while (self.paths.awd / f"{stem}-{counter}.{ARCHIVE_EXTENSION}").exists():
            counter += 1
        return f"{stem}-{counter}.{ARCHIVE_EXTENSION}"


def restore_archive(archive_path: Path, target: InstancePaths) -> None:
    """Create *target*'s directories and unpack *archive_path* into its ``cwd``."""
    if target.sc.exists():
        raise StateError("cannot restore into a server with an existing server.config")
    if not archive_path.is_file():
        raise ValidationError(f"archive not found: {archive_path}")
    target.create()
    _log.info("restoring %s into %s", archive_path, target.cwd)
    extract_archive(archive_path, target.cwd)


__all__ = [
    "ARCHIVE_EXTENSION",
    "ArchiveError",
    "ArchiveManager",
    "archive_filename",
    "create_archive",
    "extract_archive",
    "restore_archive",
]
