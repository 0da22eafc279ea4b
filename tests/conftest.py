"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import os
import stat
from collections.abc import Callable, Iterator
from pathlib import Path

import psutil
import pytest

from minectl.instance import ManagedInstance

# Stands in for the java binary: echoes its argv, then echoes stdin until "stop".
FAKE_SERVER_SCRIPT = """#!/bin/sh
echo "argv: $*"
while IFS= read -r line; do
  echo "console: $line"
  if [ "$line" = "stop" ]; then
    echo "stopping"
    exit 0
  fi
done
"""


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip tests that spawn child processes during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "process" in item.keywords:
            item.add_marker(skip_marker)


@pytest.fixture
def base_dir(tmp_path: Path) -> Path:
    """Base directory holding servers/, backup/ and archive/."""
    return tmp_path / "minecraft"


@pytest.fixture
def fake_java(tmp_path: Path) -> Path:
    """Executable shell script used in place of the java interpreter."""
    script = tmp_path / "bin" / "java"
    script.parent.mkdir(parents=True, exist_ok=True)
    script.write_text(FAKE_SERVER_SCRIPT, encoding="utf-8")
    script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return script


@pytest.fixture
def executables(fake_java: Path) -> dict[str, str]:
    """Interpreter overrides pointing java at the fake server."""
    return {"java": str(fake_java), "php": "/usr/bin/php"}


@pytest.fixture
def make_instance(
    base_dir: Path,
    executables: dict[str, str],
) -> Iterator[Callable[..., ManagedInstance]]:
    """Factory for instances under ``base_dir``; kills leftover children on teardown."""
    created: list[ManagedInstance] = []

    def factory(name: str = "test") -> ManagedInstance:
        inst = ManagedInstance(name, base_dir, executables=executables)
        created.append(inst)
        return inst

    yield factory

    for inst in created:
        pid = inst.pid
        if pid is None:
            continue
        try:
            psutil.Process(pid).kill()
        except psutil.NoSuchProcess:
            pass
        inst.supervisor.wait(timeout=5)
