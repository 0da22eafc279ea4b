"""Scalar typing and atomic file writes shared by the instance stores."""
from __future__ import annotations

import os
import re
import tempfile
from pathlib import Path
from typing import Union

from .errors import ValidationError

ConfigValue = Union[str, int, bool]

_INT_PATTERN = re.compile(r"[+-]?(0|[1-9][0-9]*)")
_TRUE = "true"
_FALSE = "false"


def parse_scalar(text: str) -> ConfigValue:
    """Return *text* as a bool, int, or str (in that order of preference)."""
    if text == _TRUE:
        return True
    if text == _FALSE:
        return False
    if _INT_PATTERN.fullmatch(text):
        return int(text)
    return text


def is_ambiguous(text: str) -> bool:
    """Return True when a plain string would be read back as another type."""
    return not isinstance(parse_scalar(text), str)


def format_scalar(value: ConfigValue) -> str:
    """Render *value* the way :func:`parse_scalar` reads it back."""
    # bool before int: bool is an int subclass
    if isinstance(value, bool):
        return _TRUE if value else _FALSE
    if isinstance(value, int):
        return str(value)
    return value


def check_scalar(value: object, label: str) -> ConfigValue:
    """Return *value* if it is a supported scalar, else raise ``ValidationError``."""
    if isinstance(value, (bool, int, str)):
        if isinstance(value, str) and ("\n" in value or "\r" in value):
            raise ValidationError(f"{label} may not contain line breaks")
        return value
    raise ValidationError(
        f"{label} must be a string, integer or boolean, got {type(value).__name__}"
    )


def atomic_write_text(path: Path, text: str, *, mode: int = 0o644) -> None:
    """Replace *path* with *text* without exposing a partially written file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
            handle.write(text)
        os.chmod(tmp_path, mode)
        os.replace(tmp_path, path)
    finally:
        tmp_path.unlink(missing_ok=True)


__all__ = [
    "ConfigValue",
    "atomic_write_text",
    "check_scalar",
    "format_scalar",
    "is_ambiguous",
    "parse_scalar",
]
