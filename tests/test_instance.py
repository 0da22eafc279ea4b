"""Managed instance facade tests (no child process involved)."""
from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import pytest

from minectl.errors import NotSupportedError, ValidationError
from minectl.instance import ManagedInstance
from minectl.paths import InstancePaths, validate_instance_name
from minectl.start_args import ServerType

EULA_TEMPLATE = (
    "#By changing the setting below to TRUE you are indicating your agreement to our EULA "
    "(https://account.mojang.com/documents/minecraft_eula).\n"
    "#Sat Jan 02 10:00:00 UTC 2016\n"
    "eula=false\n"
)

MakeInstance = Callable[..., ManagedInstance]


@pytest.mark.parametrize("name", ["test", "a", "server_1", "my-server", "v1.8.9", "0"])
def test_valid_names(base_dir: Path, name: str) -> None:
    inst = ManagedInstance(name, base_dir)

    assert inst.name == name
    assert inst.cwd == base_dir / "servers" / name
    assert inst.bwd == base_dir / "backup" / name
    assert inst.awd == base_dir / "archive" / name
    assert inst.env["sc"] == base_dir / "servers" / name / "server.config"
    assert inst.env["sp"] == base_dir / "servers" / name / "server.properties"


@pytest.mark.parametrize(
    "name",
    ["", "Test", "my server", "a/b", "name!", "café", "tab\tname", "UPPER", "semi;colon"],
)
def test_invalid_names(base_dir: Path, name: str) -> None:
    with pytest.raises(ValidationError, match="invalid server name"):
        ManagedInstance(name, base_dir)


def test_validate_instance_name_rejects_non_strings() -> None:
    with pytest.raises(ValidationError):
        validate_instance_name(None)  # type: ignore[arg-type]


def test_create_paths_only_creates_missing(make_instance: MakeInstance) -> None:
    inst = make_instance()
    inst.cwd.mkdir(parents=True)

    created = inst.create_paths()

    assert created == [inst.bwd, inst.awd]
    assert all(path.is_dir() for path in (inst.cwd, inst.bwd, inst.awd))
    assert inst.create_paths() == []


def test_delete_paths(make_instance: MakeInstance) -> None:
    inst = make_instance()
    inst.create_paths()
    (inst.cwd / "world").mkdir()

    inst.delete_paths()

    assert not inst.cwd.exists()
    assert not inst.bwd.exists()
    assert not inst.awd.exists()


def test_instance_paths_to_dict(base_dir: Path) -> None:
    paths = InstancePaths(base_dir, "test")

    assert paths.to_dict()["cwd"] == str(base_dir / "servers" / "test")
    assert paths.directories() == (paths.cwd, paths.bwd, paths.awd)


def test_create_conventional_jar(make_instance: MakeInstance) -> None:
    inst = make_instance("test")

    inst.create(ServerType.CONVENTIONAL_JAR)

    assert inst.server_type is ServerType.CONVENTIONAL_JAR
    assert inst.exists()
    assert inst.bwd.is_dir()
    assert inst.awd.is_dir()
    assert inst.paths.sc.is_file()
    assert inst.paths.sp.is_file()


@pytest.mark.parametrize("server_type", ["unconventional_jar", ":phar"])
def test_create_other_types_skip_properties(make_instance: MakeInstance, server_type: str) -> None:
    inst = make_instance("test2")

    inst.create(server_type)

    assert inst.server_type is ServerType.coerce(server_type)
    assert inst.paths.sc.is_file()
    assert not inst.paths.sp.exists()


def test_server_type_survives_new_facade(make_instance: MakeInstance, base_dir: Path) -> None:
    make_instance("test3").create("phar")

    assert ManagedInstance("test3", base_dir).server_type is ServerType.PHAR


@pytest.mark.parametrize("server_type", ["bogus", ":bogus_again"])
def test_create_unknown_type(make_instance: MakeInstance, server_type: str) -> None:
    inst = make_instance("test4")

    with pytest.raises(ValidationError) as excinfo:
        inst.create(server_type)

    assert str(excinfo.value) == f"unrecognized server type: {server_type.lstrip(':')}"
    assert not inst.exists()


def test_modify_config_without_create_paths(make_instance: MakeInstance) -> None:
    """Config writes create the live directory if needed."""
    inst = make_instance()

    inst.modify_config("java_xmx", 256, "java")

    assert inst.sc == {"java": {"java_xmx": 256}}


def test_sc_is_read_only_until_materialized(make_instance: MakeInstance) -> None:
    inst = make_instance()
    inst.create_paths()

    assert inst.sc == {}
    assert not inst.paths.sc.exists()

    inst.materialize_config()

    assert inst.paths.sc.exists()


def test_sp_defaults_and_overlay(make_instance: MakeInstance) -> None:
    inst = make_instance()
    inst.create_paths()

    assert inst.sp == {"server-port": 25565, "server-ip": ""}
    assert not inst.paths.sp.exists()

    inst.modify_properties("motd", "welcome")
    inst.overlay_properties({"server-port": 25570, "pvp": False})

    assert inst.sp == {"server-port": 25570, "server-ip": "", "motd": "welcome", "pvp": False}


def test_eula_state(make_instance: MakeInstance) -> None:
    inst = make_instance()
    inst.create_paths()

    assert inst.eula is False

    inst.paths.eula.write_text(EULA_TEMPLATE, encoding="utf-8")
    assert inst.eula is False

    inst.accept_eula()

    assert inst.eula is True
    text = inst.paths.eula.read_text(encoding="utf-8")
    assert text.startswith("#By changing the setting below")
    assert text.count("eula=") == 1


def test_accept_eula_without_existing_file(make_instance: MakeInstance) -> None:
    inst = make_instance()
    inst.create_paths()

    inst.accept_eula()

    assert inst.paths.eula.read_text(encoding="utf-8") == "eula=true\n"
    assert inst.eula is True


def test_get_start_args_uses_instance_type(
    make_instance: MakeInstance,
    executables: dict[str, str],
) -> None:
    inst = make_instance()
    inst.create("unconventional_jar")
    inst.modify_config("jarfile", "mc.jar", "java")

    assert inst.get_start_args() == [executables["java"], "-server", "-jar", "mc.jar"]
    assert inst.get_start_args("phar") == ["/usr/bin/php", "mc.jar"]
    with pytest.raises(NotSupportedError):
        inst.get_start_args("bogus")


def test_get_start_args_defaults_to_conventional(
    make_instance: MakeInstance,
    executables: dict[str, str],
) -> None:
    inst = make_instance()
    inst.modify_config("jarfile", "mc.jar", "java")
    inst.modify_config("java_xmx", 384, "java")

    assert inst.server_type is None
    assert inst.get_start_args() == [
        executables["java"], "-server", "-Xmx384M", "-Xms384M", "-jar", "mc.jar", "nogui",
    ]


def test_get_start_args_rejects_corrupt_recorded_type(make_instance: MakeInstance) -> None:
    inst = make_instance()
    inst.create("conventional_jar")
    inst.modify_config("jarfile", "mc.jar", "java")
    inst.modify_config("java_xmx", 384, "java")
    inst.modify_config("server_type", "bedrock", "minectl")

    with pytest.raises(ValidationError) as excinfo:
        inst.get_start_args()

    assert str(excinfo.value) == "unrecognized server type: bedrock"
    assert inst.get_start_args("conventional_jar")[-1] == "nogui"


def test_delete_stopped_instance(make_instance: MakeInstance) -> None:
    inst = make_instance()
    inst.create("conventional_jar")

    inst.delete()

    assert not inst.exists()
    assert inst.server_type is None


def test_status_of_idle_instance(make_instance: MakeInstance) -> None:
    inst = make_instance()
    inst.create("conventional_jar")

    status = inst.status()

    assert status["name"] == "test"
    assert status["server_type"] == "conventional_jar"
    assert status["running"] is False
    assert status["pid"] is None
    assert status["memory"] == {"kb": 0.0, "mb": 0.0, "gb": 0.0}
    assert status["eula"] is False
