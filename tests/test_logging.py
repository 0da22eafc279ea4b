"""Failure-mode tests for the structured operation log."""
from __future__ import annotations

import json
from pathlib import Path

import pytest

from minectl.errors import StateError
from minectl.logging import StructuredLogger


def _records(logger: StructuredLogger) -> list[dict[str, object]]:
    lines = logger.path.read_text(encoding="utf-8").splitlines()
    return [json.loads(line) for line in lines]


def test_structured_logger_disables_when_directory_unavailable(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Logger gracefully disables itself when log directory cannot be created."""
    log_dir = tmp_path / "logs"

    original_mkdir = Path.mkdir

    def fail_mkdir(self: Path, *args: object, **kwargs: object) -> None:
        if self == log_dir:
            raise PermissionError("no access")
        original_mkdir(self, *args, **kwargs)

    monkeypatch.setattr(Path, "mkdir", fail_mkdir)

    logger = StructuredLogger(log_dir)
    assert logger._enabled is False  # type: ignore[attr-defined]

    with logger.operation("instance create", args={"name": "alpha"}) as op:
        op.success("created", changed=1)


def test_structured_logger_disables_after_write_failure(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Write failures mark the logger disabled so subsequent writes are skipped."""
    logger = StructuredLogger(tmp_path / "logs")
    operations_path = logger._operations_log_path  # type: ignore[attr-defined]

    original_open = Path.open

    def fail_once(self: Path, *args: object, **kwargs: object) -> object:
        if self == operations_path:
            raise OSError("disk full")
        return original_open(self, *args, **kwargs)

    monkeypatch.setattr(Path, "open", fail_once)

    with logger.operation("instance archive") as op:
        op.success("archived", changed=1)

    assert logger._enabled is False  # type: ignore[attr-defined]

    with logger.operation("instance archive") as op:
        op.success("archived", changed=1)


def test_operation_record_shape(tmp_path: Path) -> None:
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation(
        "config set",
        args={"section": "java", "key": "java_xmx"},
        target={"kind": "instance", "name": "alpha"},
    ) as op:
        op.set_lock_wait_ms(7)
        op.add_step("server_config.upsert", detail="java.java_xmx")
        op.success("updated", changed=1)

    (record,) = _records(logger)
    assert record["command"] == "config set"
    assert record["target"] == {"kind": "instance", "name": "alpha"}
    assert record["lock_wait_ms"] == 7
    assert record["steps"] == [
        {"name": "server_config.upsert", "status": "success", "detail": "java.java_xmx"}
    ]
    assert record["result"]["status"] == "success"  # type: ignore[index]
    assert str(record["ts"]).endswith("Z")
    assert isinstance(record["duration_ms"], int)


def test_operation_scope_warning_sanitises_context(tmp_path: Path) -> None:
    """Warnings should be recorded with JSON-safe context values."""
    logger = StructuredLogger(tmp_path / "logs")

    class Custom:
        def __str__(self) -> str:
            return "<custom>"

    with logger.operation("instance restore", args={"archive": Path("alpha.tgz")}) as op:
        op.warning(
            "restored with notes",
            warnings=("note",),
            errors=("err",),
            changed=1,
            backups=["alpha_20160102-030405.tgz"],
            context={"path": Path("/var/games"), "obj": Custom()},
        )

    (record,) = _records(logger)
    assert record["args"] == {"archive": "alpha.tgz"}
    result = record["result"]
    assert result["status"] == "warning"  # type: ignore[index]
    assert result["warnings"] == ["note"]  # type: ignore[index]
    assert result["errors"] == ["err"]  # type: ignore[index]
    assert result["backups"] == ["alpha_20160102-030405.tgz"]  # type: ignore[index]
    assert result["context"] == {"path": "/var/games", "obj": "<custom>"}  # type: ignore[index]


def test_operation_scope_error_defaults_error_list(tmp_path: Path) -> None:
    """Errors should default to the message when not provided."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("instance start") as op:
        op.error("boom", errors=None, context={"value": {1, 2}})

    (record,) = _records(logger)
    result = record["result"]
    assert result["status"] == "error"  # type: ignore[index]
    assert result["errors"] == ["boom"]  # type: ignore[index]
    assert result["context"] == {"value": "{1, 2}"}  # type: ignore[index]


def test_uncaught_exception_is_recorded_and_reraised(tmp_path: Path) -> None:
    logger = StructuredLogger(tmp_path / "logs")

    with pytest.raises(StateError):
        with logger.operation("instance delete"):
            raise StateError("cannot delete a server that is running")

    (record,) = _records(logger)
    result = record["result"]
    assert result["status"] == "error"  # type: ignore[index]
    assert result["errors"] == ["StateError: cannot delete a server that is running"]  # type: ignore[index]
