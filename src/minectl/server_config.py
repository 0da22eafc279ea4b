"""Typed persistence for an instance's ``server.config``.

``server.config`` is the engine's own sectioned configuration (jarfile, heap
sizes, start flags). It is never read by the supervised process. The file is
INI formatted::

    [java]
    jarfile = minecraft_server.1.8.9.jar
    java_xmx = 384

Values come back with the type they were written with. Integers and
``true``/``false`` are written bare; strings that would otherwise read back as
one of those are written in double quotes.
"""
from __future__ import annotations

import configparser
import io
from dataclasses import dataclass
from pathlib import Path

from .errors import ValidationError
from .storage import (
    ConfigValue,
    atomic_write_text,
    check_scalar,
    format_scalar,
    is_ambiguous,
    parse_scalar,
)

CONFIG_FILENAME = "server.config"

ServerConfig = dict[str, dict[str, ConfigValue]]

# A section literally named DEFAULT must behave like any other section.
_DEFAULT_SECTION = "\x00defaults"


def _parser() -> configparser.ConfigParser:
    parser = configparser.ConfigParser(
        interpolation=None,
        delimiters=("=",),
        comment_prefixes=("#", ";"),
        default_section=_DEFAULT_SECTION,
        strict=False,
    )
    parser.optionxform = str  # type: ignore[assignment, method-assign]
    return parser


def _decode(raw: str) -> ConfigValue:
    if len(raw) >= 2 and raw.startswith('"') and raw.endswith('"'):
        return raw[1:-1]
    return parse_scalar(raw)


def _encode(value: ConfigValue) -> str:
    if isinstance(value, str):
        if is_ambiguous(value) or value != value.strip() or value.startswith('"'):
            return f'"{value}"'
        return value
    return format_scalar(value)


@dataclass(slots=True)
class ServerConfigStore:
    """Read and mutate one ``server.config`` file."""

    path: Path

    def exists(self) -> bool:
        """Return True when the file is present on disk."""
        return self.path.is_file()

    def read(self) -> ServerConfig:
        """Return the parsed configuration; an absent file reads as ``{}``."""
        if not self.path.exists():
            return {}
        parser = _parser()
        try:
            parser.read_string(self.path.read_text(encoding="utf-8"), source=str(self.path))
        except configparser.Error as exc:
            raise ValidationError(f"malformed server.config {self.path}: {exc}") from exc
        result: ServerConfig = {}
        for section in parser.sections():
            result[section] = {
                key: _decode(raw) for key, raw in parser.items(section, raw=True)
            }
        return result

    @property
    def data(self) -> ServerConfig:
        """Alias of :meth:`read`."""
        return self.read()

    def materialize(self) -> None:
        """Write the current (possibly empty) contents so the file exists."""
        self._write(self.read())

    def upsert(self, key: str, value: ConfigValue, section: str) -> None:
        """Set ``section.key = value`` and persist immediately."""
        key = _require_name(key, "config key")
        section = _require_name(section, "config section")
        check_scalar(value, f"value for {section}.{key}")
        data = self.read()
        data.setdefault(section, {})[key] = value
        self._write(data)

    def get(self, section: str, key: str, default: ConfigValue | None = None) -> ConfigValue | None:
        """Return a single value or *default*."""
        return self.read().get(section, {}).get(key, default)

    def _write(self, data: ServerConfig) -> None:
        parser = _parser()
        for section, values in data.items():
            parser.add_section(section)
            for key, value in values.items():
                parser.set(section, key, _encode(value))
        buffer = io.StringIO()
        parser.write(buffer)
        atomic_write_text(self.path, buffer.getvalue())


def _require_name(value: str, label: str) -> str:
    normalised = str(value).strip()
    if not normalised:
        raise ValidationError(f"{label} must be a non-empty string")
    if normalised[0] in "#;" or any(char in normalised for char in "[]=\n\r"):
        raise ValidationError(f"{label} contains forbidden characters: {normalised!r}")
    return normalised


__all__ = ["CONFIG_FILENAME", "ServerConfig", "ServerConfigStore"]
