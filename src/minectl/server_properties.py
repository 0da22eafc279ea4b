"""Typed persistence for ``server.properties``.

``server.properties`` belongs to the supervised process: it is a flat list of
``key=value`` lines which the server reads at start-up. The store types values
on the way in (``true``/``false`` become booleans, integer literals become
integers) and writes them back in the same bare form, so the file stays
readable by the server.
"""
from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

from .errors import ValidationError
from .storage import ConfigValue, atomic_write_text, check_scalar, format_scalar, parse_scalar

PROPERTIES_FILENAME = "server.properties"

ServerProperties = dict[str, ConfigValue]

DEFAULT_PROPERTIES: Mapping[str, ConfigValue] = {
    "server-port": 25565,
    "server-ip": "",
}


def parse_properties(text: str) -> ServerProperties:
    """Parse properties *text* into a typed mapping (comments dropped)."""
    result: ServerProperties = {}
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line or line[0] in "#!":
            continue
        key, sep, value = line.partition("=")
        if not sep:
            # Bare key with no value, e.g. a hand-edited "motd"
            result[key.strip()] = ""
            continue
        result[key.strip()] = parse_scalar(value.strip())
    return result


def render_properties(values: Mapping[str, ConfigValue]) -> str:
    """Render *values* as ``key=value`` lines."""
    return "".join(f"{key}={format_scalar(value)}\n" for key, value in values.items())


@dataclass(slots=True)
class ServerPropertiesStore:
    """Read and mutate one ``server.properties`` file."""

    path: Path
    defaults: Mapping[str, ConfigValue] = field(default_factory=lambda: dict(DEFAULT_PROPERTIES))

    def exists(self) -> bool:
        """Return True when the file is present on disk."""
        return self.path.is_file()

    def read(self) -> ServerProperties:
        """Return file contents layered over the well-known defaults."""
        merged: ServerProperties = dict(self.defaults)
        merged.update(self._read_file())
        return merged

    def materialize(self) -> None:
        """Create the file if needed, keeping whatever it already holds."""
        self._write(self._read_file())

    def upsert(self, key: str, value: ConfigValue) -> None:
        """Set *key* to *value*, creating the file (and the key) if needed."""
        key = _require_key(key)
        check_scalar(value, f"value for {key}")
        current = self._read_file()
        current[key] = value
        self._write(current)

    def overlay(self, values: Mapping[str, ConfigValue]) -> None:
        """Apply every pair in *values*; keys not mentioned are left alone."""
        current = self._read_file()
        for key, value in values.items():
            key = _require_key(key)
            check_scalar(value, f"value for {key}")
            current[key] = value
        self._write(current)

    def _read_file(self) -> ServerProperties:
        if not self.path.exists():
            return {}
        return parse_properties(self.path.read_text(encoding="utf-8"))

    def _write(self, values: Mapping[str, ConfigValue]) -> None:
        atomic_write_text(self.path, render_properties(values))


def _require_key(key: str) -> str:
    normalised = str(key).strip()
    if not normalised:
        raise ValidationError("property key must be a non-empty string")
    if "=" in normalised or normalised[0] in "#!" or "\n" in normalised:
        raise ValidationError(f"property key contains forbidden characters: {normalised!r}")
    return normalised


__all__ = [
    "DEFAULT_PROPERTIES",
    "PROPERTIES_FILENAME",
    "ServerProperties",
    "ServerPropertiesStore",
    "parse_properties",
    "render_properties",
]
