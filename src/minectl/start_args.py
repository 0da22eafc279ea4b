"""Derive the process argument vector for an instance.

:func:`build_start_args` is pure: it reads nothing but the server type and the
``server.config`` mapping handed to it, and either returns an argv list or
raises a :class:`~minectl.errors.ValidationError` whose message names exactly
what is wrong. Callers (and remote consumers of those callers) match on the
message text, so the wording below is fixed.
"""
from __future__ import annotations

import re
import shlex
import shutil
from collections.abc import Mapping
from enum import Enum

from .errors import NotSupportedError, ValidationError
from .storage import ConfigValue

_INTEGER = re.compile(r"[+-]?[0-9]+")


class ServerType(str, Enum):
    """Kinds of server process the engine knows how to launch."""

    CONVENTIONAL_JAR = "conventional_jar"
    UNCONVENTIONAL_JAR = "unconventional_jar"
    PHAR = "phar"

    @classmethod
    def coerce(cls, value: object) -> ServerType | None:
        """Return the member for *value* (``:phar`` style symbols allowed) or None."""
        if isinstance(value, cls):
            return value
        text = str(value).strip().lstrip(":")
        try:
            return cls(text)
        except ValueError:
            return None


def resolve_executable(name: str, overrides: Mapping[str, str] | None = None) -> str:
    """Return the interpreter path for *name* (``java`` or ``php``)."""
    if overrides and overrides.get(name):
        return overrides[name]
    return shutil.which(name) or f"/usr/bin/{name}"


def build_start_args(
    server_type: ServerType | str,
    config: Mapping[str, Mapping[str, ConfigValue]],
    executables: Mapping[str, str] | None = None,
) -> list[str]:
    """Return the argv that starts a server of *server_type* with *config*."""
    resolved = ServerType.coerce(server_type)
    if resolved is ServerType.CONVENTIONAL_JAR:
        return _conventional_jar(config, resolve_executable("java", executables))
    if resolved is ServerType.UNCONVENTIONAL_JAR:
        return _unconventional_jar(config, resolve_executable("java", executables))
    if resolved is ServerType.PHAR:
        return _phar(config, resolve_executable("php", executables))
    symbol = server_type.value if isinstance(server_type, Enum) else str(server_type).lstrip(":")
    raise NotSupportedError(f"unrecognized get_start_args argument: {symbol}")


def _conventional_jar(config: Mapping[str, Mapping[str, ConfigValue]], java: str) -> list[str]:
    section = config.get("java", {})
    jarfile = _require_jarfile(section)

    raw_xmx = section.get("java_xmx")
    if _is_blank(raw_xmx):
        raise ValidationError("missing java argument: Xmx")
    xmx = _as_int(raw_xmx)
    if xmx is None or xmx <= 0:
        raise ValidationError("invalid java argument: Xmx must be an integer > 0")

    raw_xms = section.get("java_xms")
    xms: int | None = None
    if not _is_blank(raw_xms):
        xms = _as_int(raw_xms)
        if xms is None or xms < 0:
            raise ValidationError("invalid java argument: Xms must be unset or an integer > 0")
    if not xms:
        xms = xmx
    if xms > xmx:
        raise ValidationError("invalid java argument: Xmx must be > Xms")

    argv = [java, "-server", f"-Xmx{xmx}M", f"-Xms{xms}M"]
    argv.extend(_split(section.get("java_tweaks")))
    argv.extend(["-jar", jarfile])
    argv.extend(_split(section.get("jar_args")) or ["nogui"])
    return argv


def _unconventional_jar(config: Mapping[str, Mapping[str, ConfigValue]], java: str) -> list[str]:
    section = config.get("java", {})
    jarfile = _require_jarfile(section)

    xmx = _optional_heap(section.get("java_xmx"), "Xmx")
    xms = _optional_heap(section.get("java_xms"), "Xms")
    if xms and not xmx:
        raise ValidationError("invalid java argument: Xms may not be set without Xmx")
    if xms and xmx and xms > xmx:
        raise ValidationError("invalid java argument: Xmx may not be lower than Xms")

    argv = [java, "-server"]
    if xmx:
        argv.append(f"-Xmx{xmx}M")
    if xms:
        argv.append(f"-Xms{xms}M")
    argv.extend(_split(section.get("java_tweaks")))
    argv.extend(["-jar", jarfile])
    argv.extend(_split(section.get("jar_args")))
    return argv


def _phar(config: Mapping[str, Mapping[str, ConfigValue]], php: str) -> list[str]:
    executable = config.get("nonjava", {}).get("executable")
    if _is_blank(executable):
        # older front ends stored the phar under [java] jarfile
        executable = config.get("java", {}).get("jarfile")
    if _is_blank(executable):
        raise ValidationError("no runnable pharfile selected")
    return [php, str(executable)]


def _require_jarfile(section: Mapping[str, ConfigValue]) -> str:
    jarfile = section.get("jarfile")
    if _is_blank(jarfile):
        raise ValidationError("no runnable jarfile selected")
    return str(jarfile)


def _optional_heap(value: ConfigValue | None, label: str) -> int | None:
    """Validate an optional heap size where ``0`` means unset."""
    if _is_blank(value):
        return None
    parsed = _as_int(value)
    if parsed is None:
        raise ValidationError(f"invalid java argument: {label} must be unset or an integer > 0")
    if parsed < 0:
        raise ValidationError(f"invalid java argument: {label} must be unset or > 0")
    return parsed or None


def _as_int(value: ConfigValue | None) -> int | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, int):
        return value
    text = str(value).strip()
    if _INTEGER.fullmatch(text):
        return int(text)
    return None


def _is_blank(value: ConfigValue | None) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _split(value: ConfigValue | None) -> list[str]:
    if _is_blank(value) or isinstance(value, bool):
        return []
    return shlex.split(str(value))


__all__ = ["ServerType", "build_start_args", "resolve_executable"]
