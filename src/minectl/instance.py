"""The managed instance facade.

A :class:`ManagedInstance` binds a validated name to a base directory and
composes the stores, the start argument builder, the process supervisor and
the archive manager behind one object. It holds no lifecycle state of its own:
whether the instance is running is always asked of the supervisor, which asks
the OS.
"""
from __future__ import annotations

import logging
import queue
from collections.abc import Mapping
from pathlib import Path
from typing import IO

from .archive import ArchiveManager, restore_archive
from .errors import StateError, ValidationError
from .paths import InstancePaths, validate_instance_name
from .server_config import ServerConfig, ServerConfigStore
from .server_properties import ServerProperties, ServerPropertiesStore
from .start_args import ServerType, build_start_args
from .storage import ConfigValue, atomic_write_text
from .supervisor import ConsoleItem, MemoryUsage, ProcessSupervisor

_log = logging.getLogger(__name__)

# server.config location of the type chosen at creation time
TYPE_SECTION = "minectl"
TYPE_KEY = "server_type"


class ManagedInstance:
    """One named, independently supervised server and its directories."""

    def __init__(
        self,
        name: str,
        base_dir: str | Path,
        *,
        executables: Mapping[str, str] | None = None,
        user: str | int | None = None,
    ) -> None:
        """Validate *name* and derive every path from *base_dir*."""
        self.name = validate_instance_name(name)
        self.base_dir = Path(base_dir).expanduser()
        self.paths = InstancePaths(self.base_dir, self.name)
        self.config = ServerConfigStore(self.paths.sc)
        self.properties = ServerPropertiesStore(self.paths.sp)
        self.supervisor = ProcessSupervisor(self.name, user=user)
        self.archives = ArchiveManager(self.paths)
        self.executables = dict(executables or {})
        self._server_type: ServerType | None = None

    def __repr__(self) -> str:
        return f"ManagedInstance(name={self.name!r}, base_dir={str(self.base_dir)!r})"

    # ------------------------------------------------------------------
    # Identity and layout
    # ------------------------------------------------------------------
    @property
    def cwd(self) -> Path:
        return self.paths.cwd

    @property
    def bwd(self) -> Path:
        return self.paths.bwd

    @property
    def awd(self) -> Path:
        return self.paths.awd

    @property
    def env(self) -> dict[str, Path]:
        """All derived paths keyed ``cwd``/``bwd``/``awd``/``sc``/``sp``."""
        return {
            "cwd": self.paths.cwd,
            "bwd": self.paths.bwd,
            "awd": self.paths.awd,
            "sc": self.paths.sc,
            "sp": self.paths.sp,
        }

    @property
    def server_type(self) -> ServerType | None:
        """Type set by :meth:`create`, or the one recorded in ``server.config``."""
        if self._server_type is None:
            recorded = self.config.get(TYPE_SECTION, TYPE_KEY)
            if recorded is not None:
                self._server_type = ServerType.coerce(recorded)
        return self._server_type

    def create_paths(self) -> list[Path]:
        """Create missing live, backup and archive directories."""
        return self.paths.create()

    def delete_paths(self) -> list[Path]:
        """Remove the live, backup and archive directories."""
        return self.paths.delete()

    def exists(self) -> bool:
        """Return True when the live directory is present."""
        return self.paths.cwd.is_dir()

    # ------------------------------------------------------------------
    # Creation and removal
    # ------------------------------------------------------------------
    def create(self, server_type: ServerType | str) -> None:
        """Lay out a new instance of *server_type*."""
        resolved = ServerType.coerce(server_type)
        if resolved is None:
            symbol = str(server_type).strip().lstrip(":")
            raise ValidationError(f"unrecognized server type: {symbol}")
        self.create_paths()
        self._server_type = resolved
        self.config.upsert(TYPE_KEY, resolved.value, TYPE_SECTION)
        if resolved is ServerType.CONVENTIONAL_JAR:
            self.properties.materialize()
        _log.info("created %s as %s", self.name, resolved.value)

    def delete(self) -> None:
        """Remove every directory of a stopped instance."""
        if self.is_running():
            raise StateError("cannot delete a server that is running")
        self.delete_paths()
        self._server_type = None
        _log.info("deleted %s", self.name)

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------
    @property
    def sc(self) -> ServerConfig:
        """Current ``server.config`` contents (never creates the file)."""
        return self.config.read()

    def materialize_config(self) -> None:
        """Ensure ``server.config`` exists."""
        self.config.materialize()

    def modify_config(self, key: str, value: ConfigValue, section: str) -> None:
        """Set one ``server.config`` value."""
        self.config.upsert(key, value, section)
        if section == TYPE_SECTION and key == TYPE_KEY:
            self._server_type = None

    @property
    def sp(self) -> ServerProperties:
        """Current ``server.properties`` contents with defaults applied."""
        return self.properties.read()

    def materialize_properties(self) -> None:
        """Ensure ``server.properties`` exists."""
        self.properties.materialize()

    def modify_properties(self, key: str, value: ConfigValue) -> None:
        """Set one ``server.properties`` value."""
        self.properties.upsert(key, value)

    def overlay_properties(self, values: Mapping[str, ConfigValue]) -> None:
        """Apply several ``server.properties`` values at once."""
        self.properties.overlay(values)

    # ------------------------------------------------------------------
    # EULA
    # ------------------------------------------------------------------
    @property
    def eula(self) -> bool:
        """Return whether ``eula.txt`` records acceptance."""
        path = self.paths.eula
        if not path.is_file():
            return False
        for line in path.read_text(encoding="utf-8").splitlines():
            key, sep, value = line.strip().partition("=")
            if sep and key.strip() == "eula":
                return value.strip().lower() == "true"
        return False

    def accept_eula(self) -> None:
        """Rewrite ``eula.txt`` so that it records acceptance."""
        path = self.paths.eula
        lines: list[str] = []
        replaced = False
        if path.is_file():
            for line in path.read_text(encoding="utf-8").splitlines():
                key, sep, _ = line.strip().partition("=")
                if sep and key.strip() == "eula":
                    lines.append("eula=true")
                    replaced = True
                else:
                    lines.append(line)
        if not replaced:
            lines.append("eula=true")
        atomic_write_text(path, "\n".join(lines) + "\n")

    # ------------------------------------------------------------------
    # Process
    # ------------------------------------------------------------------
    def get_start_args(self, server_type: ServerType | str | None = None) -> list[str]:
        """Return the argv for *server_type* (default: this instance's type)."""
        requested = server_type
        if requested is None:
            recorded = self.config.get(TYPE_SECTION, TYPE_KEY)
            if recorded is not None and ServerType.coerce(recorded) is None:
                raise ValidationError(f"unrecognized server type: {recorded}")
            requested = self.server_type or ServerType.CONVENTIONAL_JAR
        return build_start_args(requested, self.config.read(), self.executables)

    def start(self) -> int:
        """Start the server process in ``cwd`` and return its pid."""
        if self.is_running():
            raise StateError("server is already running")
        argv = self.get_start_args()
        return self.supervisor.start(argv, self.paths.cwd)

    @property
    def pid(self) -> int | None:
        return self.supervisor.pid

    def is_running(self) -> bool:
        return self.supervisor.is_running()

    def console(self, text: str) -> None:
        """Send one line to the server's stdin."""
        self.supervisor.console(text)

    @property
    def console_log(self) -> queue.Queue[ConsoleItem]:
        return self.supervisor.console_log

    def next_line(self, timeout: float | None = None) -> str:
        return self.supervisor.next_line(timeout)

    @property
    def pipes(self) -> dict[str, IO[bytes]]:
        return self.supervisor.pipes

    def memory(self) -> MemoryUsage:
        return self.supervisor.memory()

    @property
    def mem(self) -> dict[str, float]:
        """Memory usage keyed ``kb``/``mb``/``gb``."""
        return self.memory().to_dict()

    # ------------------------------------------------------------------
    # Archives
    # ------------------------------------------------------------------
    def archive(self) -> str:
        """Snapshot ``cwd``; return the archive's bare filename."""
        return self.archives.archive()

    def list_archives(self) -> list[str]:
        return self.archives.list_archives()

    def restore_into(self, target: ManagedInstance, archive_path: str | Path) -> None:
        """Unpack *archive_path* into *target*'s live directory."""
        self.archives.restore_into(target.paths, Path(archive_path))
        target._server_type = None

    def create_from_archive(self, archive_path: str | Path) -> None:
        """Populate this instance from *archive_path*."""
        restore_archive(Path(archive_path), self.paths)
        self._server_type = None

    # ------------------------------------------------------------------
    def status(self) -> dict[str, object]:
        """Return a JSON-friendly summary of the instance."""
        server_type = self.server_type
        return {
            "name": self.name,
            "server_type": server_type.value if server_type else None,
            "exists": self.exists(),
            "running": self.is_running(),
            "pid": self.pid,
            "memory": self.mem,
            "eula": self.eula,
            "paths": self.paths.to_dict(),
        }


__all__ = ["ManagedInstance", "TYPE_KEY", "TYPE_SECTION"]
