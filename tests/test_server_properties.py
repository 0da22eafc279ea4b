"""Tests for server.properties persistence."""
from __future__ import annotations

from pathlib import Path

import pytest

from minectl.errors import ValidationError
from minectl.server_properties import (
    ServerPropertiesStore,
    parse_properties,
    render_properties,
)

SAMPLE_PROPERTIES = """#Minecraft server properties
#Sat Jan 02 10:00:00 UTC 2016
spawn-protection=16
server-ip=
enable-rcon=false
motd=A Minecraft Server
server-port=25565
enable-query=false
level-seed=
"""


def test_read_applies_defaults_without_creating_file(tmp_path: Path) -> None:
    store = ServerPropertiesStore(tmp_path / "server.properties")

    assert store.read() == {"server-port": 25565, "server-ip": ""}
    assert not store.exists()


def test_materialize_creates_file(tmp_path: Path) -> None:
    store = ServerPropertiesStore(tmp_path / "server.properties")

    store.materialize()

    assert store.exists()
    assert store.read()["server-port"] == 25565


def test_reads_server_written_file(tmp_path: Path) -> None:
    path = tmp_path / "server.properties"
    path.write_text(SAMPLE_PROPERTIES, encoding="utf-8")

    props = ServerPropertiesStore(path).read()

    assert props["server-port"] == 25565
    assert props["server-ip"] == ""
    assert props["enable-rcon"] is False
    assert props["enable-query"] is False
    assert props["motd"] == "A Minecraft Server"
    assert props["spawn-protection"] == 16


def test_upsert_types_and_new_keys(tmp_path: Path) -> None:
    path = tmp_path / "server.properties"
    path.write_text(SAMPLE_PROPERTIES, encoding="utf-8")
    store = ServerPropertiesStore(path)
    before = len(store.read())

    store.upsert("server-port", 25570)
    store.upsert("enable-rcon", True)
    store.upsert("do-awesomeness", True)

    props = store.read()
    assert props["server-port"] == 25570
    assert props["enable-rcon"] is True
    assert props["do-awesomeness"] is True
    assert len(props) == before + 1

    on_disk = parse_properties(path.read_text(encoding="utf-8"))
    assert on_disk["server-port"] == 25570
    assert on_disk["enable-rcon"] is True
    assert "server-port=25570\n" in path.read_text(encoding="utf-8")


def test_upsert_creates_missing_file(tmp_path: Path) -> None:
    store = ServerPropertiesStore(tmp_path / "server.properties")

    store.upsert("difficulty", 2)

    assert store.exists()
    assert store.read() == {"server-port": 25565, "server-ip": "", "difficulty": 2}


def test_overlay_adds_and_preserves(tmp_path: Path) -> None:
    """overlay writes every pair and leaves unmentioned keys untouched."""
    store = ServerPropertiesStore(tmp_path / "server.properties")
    store.upsert("motd", "hello world")

    store.overlay({"server-port": 25565, "difficulty": 1, "enable-query": False})

    props = store.read()
    assert props["server-port"] == 25565
    assert props["difficulty"] == 1
    assert props["enable-query"] is False
    assert props["motd"] == "hello world"

    on_disk = parse_properties(store.path.read_text(encoding="utf-8"))
    assert on_disk == {
        "motd": "hello world",
        "server-port": 25565,
        "difficulty": 1,
        "enable-query": False,
    }


def test_overlay_rejects_bad_value_before_writing(tmp_path: Path) -> None:
    store = ServerPropertiesStore(tmp_path / "server.properties")

    with pytest.raises(ValidationError):
        store.overlay({"difficulty": 1, "level-seed": 1.5})  # type: ignore[dict-item]

    assert not store.exists()


@pytest.mark.parametrize("key", ["", "a=b", "#comment"])
def test_upsert_rejects_bad_keys(tmp_path: Path, key: str) -> None:
    with pytest.raises(ValidationError):
        ServerPropertiesStore(tmp_path / "server.properties").upsert(key, 1)


def test_render_properties_uses_bare_values() -> None:
    rendered = render_properties({"pvp": True, "max-players": 20, "motd": "hi"})

    assert rendered == "pvp=true\nmax-players=20\nmotd=hi\n"
