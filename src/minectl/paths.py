"""On-disk layout of a managed instance.

::

    <base>/servers/<name>/   live working directory (cwd)
    <base>/backup/<name>/    reserved backup directory (bwd)
    <base>/archive/<name>/   archive snapshots (awd)
"""
from __future__ import annotations

import re
import shutil
from dataclasses import dataclass
from pathlib import Path

from .errors import ValidationError
from .server_config import CONFIG_FILENAME
from .server_properties import PROPERTIES_FILENAME

SERVERS_DIRNAME = "servers"
BACKUP_DIRNAME = "backup"
ARCHIVE_DIRNAME = "archive"
EULA_FILENAME = "eula.txt"

_NAME_PATTERN = re.compile(r"[a-z0-9_.-]+")


def validate_instance_name(name: str) -> str:
    """Return *name* if it is a valid instance identifier."""
    if not isinstance(name, str) or not _NAME_PATTERN.fullmatch(name):
        raise ValidationError(f"invalid server name: {name!r}")
    return name


@dataclass(frozen=True, slots=True)
class InstancePaths:
    """Filesystem paths derived from an instance name and base directory."""

    base_dir: Path
    name: str

    @property
    def cwd(self) -> Path:
        """Live working directory."""
        return self.base_dir / SERVERS_DIRNAME / self.name

    @property
    def bwd(self) -> Path:
        """Backup directory."""
        return self.base_dir / BACKUP_DIRNAME / self.name

    @property
    def awd(self) -> Path:
        """Archive directory."""
        return self.base_dir / ARCHIVE_DIRNAME / self.name

    @property
    def sc(self) -> Path:
        """``server.config`` path."""
        return self.cwd / CONFIG_FILENAME

    @property
    def sp(self) -> Path:
        """``server.properties`` path."""
        return self.cwd / PROPERTIES_FILENAME

    @property
    def eula(self) -> Path:
        """``eula.txt`` path."""
        return self.cwd / EULA_FILENAME

    def directories(self) -> tuple[Path, Path, Path]:
        """Return ``(cwd, bwd, awd)``."""
        return (self.cwd, self.bwd, self.awd)

    def create(self) -> list[Path]:
        """Create whichever of the three directories are missing; return those created."""
        created: list[Path] = []
        for directory in self.directories():
            if not directory.is_dir():
                directory.mkdir(parents=True, exist_ok=True)
                created.append(directory)
        return created

    def delete(self) -> list[Path]:
        """Remove the three directories if present; return those removed."""
        removed: list[Path] = []
        for directory in self.directories():
            if directory.exists():
                shutil.rmtree(directory)
                removed.append(directory)
        return removed

    def to_dict(self) -> dict[str, str]:
        """Return a serialisable representation."""
        return {
            "cwd": str(self.cwd),
            "bwd": str(self.bwd),
            "awd": str(self.awd),
            "sc": str(self.sc),
            "sp": str(self.sp),
        }


__all__ = [
    "ARCHIVE_DIRNAME",
    "BACKUP_DIRNAME",
    "EULA_FILENAME",
    "InstancePaths",
    "SERVERS_DIRNAME",
    "validate_instance_name",
]
