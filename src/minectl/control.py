"""Command dispatch for a fleet of managed instances.

The control plane owns the ``name -> ManagedInstance`` registry of one worker
host. Remote commands are dispatched through an explicit table of verbs, each
declaring the parameters it accepts. Every command produces a receipt; errors
raised by an instance are captured verbatim in the receipt rather than
propagated, so one bad command never takes the worker down.

Console output of running instances is relayed to subscribers by one relay
thread per instance. A relay blocks on the instance's console log, is started
when ``start`` succeeds and retires by itself at the end-of-stream marker,
after reaping the exited process.
"""
from __future__ import annotations

import logging
import os
import socket
import threading
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import psutil

from .errors import MinectlError, NotSupportedError, ValidationError
from .instance import ManagedInstance
from .paths import SERVERS_DIRNAME, validate_instance_name
from .start_args import ServerType
from .supervisor import ConsoleSignal

_log = logging.getLogger(__name__)

RELAY_JOIN_TIMEOUT = 1.0

Handler = Callable[..., Any]
Subscriber = Callable[["ConsoleLine"], None]


@dataclass(frozen=True, slots=True)
class Param:
    """One declared parameter of a command."""

    name: str
    required: bool = True
    coerce: Callable[[Any], Any] | None = None


@dataclass(frozen=True, slots=True)
class CommandSpec:
    """A registered verb: its handler and the parameters it takes."""

    handler: Handler
    params: tuple[Param, ...] = ()

    def bind(self, payload: Mapping[str, Any]) -> dict[str, Any]:
        """Pick and coerce this command's arguments out of *payload*."""
        kwargs: dict[str, Any] = {}
        for param in self.params:
            if param.name not in payload or payload[param.name] is None:
                if param.required:
                    raise ValidationError(f"missing parameter: {param.name}")
                continue
            value = payload[param.name]
            if param.coerce is not None:
                try:
                    value = param.coerce(value)
                except (TypeError, ValueError) as exc:
                    raise ValidationError(f"invalid parameter: {param.name}") from exc
            kwargs[param.name] = value
        return kwargs


@dataclass(frozen=True, slots=True)
class ConsoleLine:
    """One line of console output from a named instance."""

    server_name: str
    msg: str

    def to_dict(self) -> dict[str, str]:
        return {"msg": self.msg, "server_name": self.server_name}


@dataclass(slots=True)
class Receipt:
    """Outcome of one dispatched command."""

    server_name: str
    cmd: str
    success: bool = False
    retval: Any = None
    exception: dict[str, str] | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "server_name": self.server_name,
            "cmd": self.cmd,
            "success": self.success,
            "retval": self.retval,
        }
        if self.exception is not None:
            payload["exception"] = self.exception
        return payload


@dataclass(slots=True)
class _Relay:
    inst: ManagedInstance
    thread: threading.Thread
    stop: threading.Event = field(default_factory=threading.Event)


def _symbol(value: Any) -> Any:
    """Strip the leading ``:`` some clients use to mark symbolic values."""
    if isinstance(value, str) and value.startswith(":"):
        return value[1:]
    return value


def _json_ready(value: Any) -> Any:
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, ServerType):
        return value.value
    if isinstance(value, Mapping):
        return {str(key): _json_ready(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_ready(item) for item in value]
    return value


class ControlPlane:
    """Registry of instances under one base directory plus a command table."""

    DIRECTIVES = ("IDENT", "LIST", "USAGE")

    def __init__(
        self,
        base_dir: str | Path,
        *,
        worker_name: str | None = None,
        hostname: str | None = None,
        executables: Mapping[str, str] | None = None,
        user: str | int | None = None,
    ) -> None:
        self.base_dir = Path(base_dir).expanduser()
        self.worker_name = worker_name or os.environ.get("USER", "")
        self.hostname = hostname or socket.gethostname()
        self.executables = dict(executables or {})
        self.user = user
        self.instances: dict[str, ManagedInstance] = {}
        self.commands: dict[str, CommandSpec] = _default_commands(self)
        self._registry_lock = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}
        self._subscribers: dict[str, list[Subscriber]] = {}
        self._relays: dict[str, _Relay] = {}

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------
    def startup(self) -> list[str]:
        """Register every instance directory found under ``<base>/servers``."""
        servers_dir = self.base_dir / SERVERS_DIRNAME
        found: list[str] = []
        if servers_dir.is_dir():
            for entry in sorted(servers_dir.iterdir()):
                if not entry.is_dir():
                    continue
                try:
                    self.instance(entry.name)
                except ValidationError:
                    _log.warning("skipping directory with invalid server name: %s", entry)
                    continue
                found.append(entry.name)
        _log.info("registered %d server(s) from %s", len(found), servers_dir)
        return found

    def shutdown(self) -> None:
        """Stop every console relay; running servers are left alone."""
        with self._registry_lock:
            relays = list(self._relays.values())
            self._relays.clear()
        for relay in relays:
            relay.stop.set()
            relay.inst.supervisor.wake()
        for relay in relays:
            relay.thread.join(RELAY_JOIN_TIMEOUT)

    def instance(self, name: str) -> ManagedInstance:
        """Return the registered instance called *name*, registering it if needed."""
        inst, _ = self._checkout(name)
        return inst

    def _checkout(self, name: str) -> tuple[ManagedInstance, threading.Lock]:
        """Return *name*'s instance and command lock as one consistent pair."""
        validate_instance_name(name)
        with self._registry_lock:
            inst = self.instances.get(name)
            if inst is None:
                inst = ManagedInstance(
                    name,
                    self.base_dir,
                    executables=self.executables,
                    user=self.user,
                )
                self.instances[name] = inst
                self._locks[name] = threading.Lock()
            return inst, self._locks[name]

    def server_names(self) -> list[str]:
        """Names of instance directories currently on disk."""
        servers_dir = self.base_dir / SERVERS_DIRNAME
        if not servers_dir.is_dir():
            return []
        return sorted(entry.name for entry in servers_dir.iterdir() if entry.is_dir())

    def _forget(self, name: str) -> None:
        with self._registry_lock:
            self.instances.pop(name, None)
            self._locks.pop(name, None)
            relay = self._relays.pop(name, None)
        if relay is not None:
            relay.stop.set()
            relay.inst.supervisor.wake()

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------
    def register(self, verb: str, handler: Handler, *params: Param) -> None:
        """Add or replace a verb in the command table."""
        self.commands[verb] = CommandSpec(handler, tuple(params))

    def execute(
        self,
        server_name: str,
        cmd: str,
        params: Mapping[str, Any] | None = None,
    ) -> Receipt:
        """Run *cmd* against *server_name* and return its receipt."""
        receipt = Receipt(server_name=server_name, cmd=cmd)
        _log.info("received %s for server %s", cmd, server_name)
        try:
            spec = self.commands.get(cmd)
            if spec is None:
                raise NotSupportedError(f"unsupported operation: {cmd}")
            inst, lock = self._checkout(server_name)
            kwargs = spec.bind(params or {})
            with lock:
                retval = spec.handler(inst, **kwargs)
        except (MinectlError, OSError) as exc:
            _log.error("%s for server %s failed: %s", cmd, server_name, exc)
            receipt.exception = {"name": type(exc).__name__, "detail": str(exc)}
            return receipt

        receipt.success = True
        receipt.retval = _json_ready(retval)
        if cmd == "delete":
            self._forget(server_name)
        elif cmd == "start":
            self._ensure_relay(server_name)
        return receipt

    def dispatch(self, message: Mapping[str, Any]) -> Receipt:
        """Execute a ``{"server_name", "cmd", ...params}`` message."""
        payload = dict(message)
        server_name = str(payload.pop("server_name", "") or "")
        cmd = str(payload.pop("cmd", "") or "")
        return self.execute(server_name, cmd, payload)

    # ------------------------------------------------------------------
    # Host directives
    # ------------------------------------------------------------------
    def directive(self, name: str) -> tuple[str, dict[str, Any]]:
        """Answer a host directive; unknown names come back as ``BOGUS``."""
        if name == "IDENT":
            return name, {"host": self.hostname, "workername": self.worker_name}
        if name == "LIST":
            return name, {"servers": self.server_names()}
        if name == "USAGE":
            return name, {"usage": self.usage()}
        _log.warning("ignoring bogus directive: %r", name)
        return "BOGUS", {}

    def usage(self) -> dict[str, Any]:
        """Host resource usage: cpu, memory, load and disk of the base directory."""
        memory = psutil.virtual_memory()
        try:
            load = list(psutil.getloadavg())
        except (AttributeError, OSError):
            load = []
        disk_root = self.base_dir if self.base_dir.exists() else Path(self.base_dir.anchor or "/")
        disk = psutil.disk_usage(str(disk_root))
        return {
            "cpu_percent": psutil.cpu_percent(interval=None),
            "mem_percent": memory.percent,
            "load": load,
            "disk_used": disk.used,
            "disk_percent": disk.percent,
        }

    # ------------------------------------------------------------------
    # Console relay
    # ------------------------------------------------------------------
    def subscribe(self, name: str, callback: Subscriber) -> None:
        """Deliver *name*'s console lines to *callback* from now on."""
        validate_instance_name(name)
        with self._registry_lock:
            self._subscribers.setdefault(name, []).append(callback)
        inst = self.instances.get(name)
        if inst is not None and inst.is_running():
            self._ensure_relay(name)

    def unsubscribe(self, name: str, callback: Subscriber) -> None:
        with self._registry_lock:
            callbacks = self._subscribers.get(name, [])
            if callback in callbacks:
                callbacks.remove(callback)

    def relaying(self, name: str) -> bool:
        """Return True while a relay thread serves *name*."""
        relay = self._relays.get(name)
        return relay is not None and relay.thread.is_alive()

    def _ensure_relay(self, name: str) -> None:
        with self._registry_lock:
            relay = self._relays.get(name)
            if relay is not None and relay.thread.is_alive():
                return
            inst = self.instances[name]
            stop = threading.Event()
            thread = threading.Thread(
                target=self._relay_loop,
                args=(inst, stop),
                name=f"{name}-relay",
                daemon=True,
            )
            self._relays[name] = _Relay(inst=inst, thread=thread, stop=stop)
            thread.start()

    def _relay_loop(self, inst: ManagedInstance, stop: threading.Event) -> None:
        supervisor = inst.supervisor
        while True:
            item = supervisor.next_item()
            if stop.is_set():
                break
            if item is ConsoleSignal.WAKE:
                continue
            if item is ConsoleSignal.EOF:
                supervisor.wait()
                break
            self._publish(ConsoleLine(inst.name, item.strip()))
        with self._registry_lock:
            relay = self._relays.get(inst.name)
            if relay is not None and relay.stop is stop:
                del self._relays[inst.name]
        _log.info("console relay for %s retired", inst.name)

    def _publish(self, line: ConsoleLine) -> None:
        with self._registry_lock:
            callbacks = list(self._subscribers.get(line.server_name, []))
        for callback in callbacks:
            try:
                callback(line)
            except Exception:  # noqa: BLE001 - a failing subscriber must not stop the relay
                _log.exception("console subscriber for %s failed", line.server_name)


def _restore_into(inst: ManagedInstance, plane: ControlPlane, target: str, archive: str) -> None:
    archive_path = Path(archive)
    if not archive_path.is_absolute():
        archive_path = inst.awd / archive_path
    inst.restore_into(plane.instance(target), archive_path)


def _default_commands(plane: ControlPlane) -> dict[str, CommandSpec]:
    text = Param("text", coerce=str)
    key = Param("key", coerce=str)
    value = Param("value")
    section = Param("section", coerce=str)

    table: dict[str, CommandSpec] = {
        "create": CommandSpec(
            lambda inst, server_type: inst.create(server_type),
            (Param("server_type", coerce=_symbol),),
        ),
        "create_paths": CommandSpec(lambda inst: inst.create_paths()),
        "delete_paths": CommandSpec(lambda inst: inst.delete_paths()),
        "delete": CommandSpec(lambda inst: inst.delete()),
        "start": CommandSpec(lambda inst: inst.start()),
        "console": CommandSpec(lambda inst, text: inst.console(text), (text,)),
        "pid": CommandSpec(lambda inst: inst.pid),
        "mem": CommandSpec(lambda inst: inst.mem),
        "status": CommandSpec(lambda inst: inst.status()),
        "sc": CommandSpec(lambda inst: inst.sc),
        "modify_config": CommandSpec(
            lambda inst, key, value, section: inst.modify_config(key, value, section),
            (key, value, section),
        ),
        "sp": CommandSpec(lambda inst: inst.sp),
        "modify_properties": CommandSpec(
            lambda inst, key, value: inst.modify_properties(key, value),
            (key, value),
        ),
        "overlay_properties": CommandSpec(
            lambda inst, values: inst.overlay_properties(values),
            (Param("values", coerce=dict),),
        ),
        "eula": CommandSpec(lambda inst: inst.eula),
        "accept_eula": CommandSpec(lambda inst: inst.accept_eula()),
        "get_start_args": CommandSpec(
            lambda inst, server_type=None: inst.get_start_args(server_type),
            (Param("server_type", required=False, coerce=_symbol),),
        ),
        "archive": CommandSpec(lambda inst: inst.archive()),
        "list_archives": CommandSpec(lambda inst: inst.list_archives()),
        "restore_into": CommandSpec(
            lambda inst, target, archive: _restore_into(inst, plane, target, archive),
            (Param("target", coerce=str), Param("archive", coerce=str)),
        ),
        "create_from_archive": CommandSpec(
            lambda inst, archive: _restore_into(inst, plane, inst.name, archive),
            (Param("archive", coerce=str),),
        ),
    }
    return table


__all__ = [
    "CommandSpec",
    "ConsoleLine",
    "ControlPlane",
    "Param",
    "Receipt",
]
