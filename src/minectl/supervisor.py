"""Supervision of one instance's OS child process.

The supervisor never caches "running": every query re-probes the OS for the
last pid it started and forgets that pid as soon as the process is seen to
have exited. Standard output is drained by a dedicated reader thread into an
unbounded FIFO of complete lines, closed by a :attr:`ConsoleSignal.EOF` marker
once the child's stdout ends; standard error is drained into a short tail so
the child can never block on a full pipe.

There is no kill, restart or timeout here. A process runs until it exits on
its own or is told to stop through :meth:`ProcessSupervisor.console`.
"""
from __future__ import annotations

import logging
import queue
import subprocess
import threading
import time
from collections import deque
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import IO, Union

import psutil

from .errors import ChannelError, StateError

_log = logging.getLogger(__name__)

STDERR_TAIL_LINES = 200
READER_JOIN_TIMEOUT = 5.0


class ConsoleSignal(Enum):
    """Markers queued in the console log alongside output lines."""

    EOF = "eof"  # the child's stdout is closed; no line follows
    WAKE = "wake"  # a blocked consumer should re-check whether to stop


ConsoleItem = Union[str, ConsoleSignal]


@dataclass(frozen=True, slots=True)
class MemoryUsage:
    """Resident memory of the supervised process."""

    kb: float = 0.0
    mb: float = 0.0
    gb: float = 0.0

    @classmethod
    def from_bytes(cls, rss: int) -> MemoryUsage:
        """Build a usage record from a byte count."""
        kb = rss / 1024.0
        return cls(kb=kb, mb=kb / 1024.0, gb=kb / (1024.0 * 1024.0))

    def to_dict(self) -> dict[str, float]:
        """Return a serialisable representation."""
        return {"kb": self.kb, "mb": self.mb, "gb": self.gb}


def _pump_lines(stream: IO[bytes], sink: queue.Queue[ConsoleItem] | deque[str], label: str) -> None:
    """Copy lines from *stream* into *sink* until EOF, then mark the end of a queue."""
    try:
        for raw in iter(stream.readline, b""):
            line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            if isinstance(sink, queue.Queue):
                sink.put(line)
            else:
                sink.append(line)
    except (OSError, ValueError) as exc:
        _log.debug("%s reader stopped: %s", label, exc)
    finally:
        try:
            stream.close()
        except OSError:
            pass
        if isinstance(sink, queue.Queue):
            sink.put(ConsoleSignal.EOF)


def pid_alive(pid: int) -> bool:
    """Return True if *pid* names a live (non-zombie) process."""
    try:
        proc = psutil.Process(pid)
        return proc.is_running() and proc.status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        # exists, but owned by someone else
        return True


class ProcessSupervisor:
    """Own at most one child process for a named instance."""

    def __init__(self, name: str, *, user: str | int | None = None) -> None:
        """Create an idle supervisor; *user* runs the child under that identity."""
        self.name = name
        self.user = user
        self._process: subprocess.Popen[bytes] | None = None
        self._pid: int | None = None
        self._console_log: queue.Queue[ConsoleItem] = queue.Queue()
        self._stderr_tail: deque[str] = deque(maxlen=STDERR_TAIL_LINES)
        self._readers: list[threading.Thread] = []
        self._state_lock = threading.Lock()
        self._stdin_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start(
        self,
        argv: Sequence[str],
        cwd: Path,
        *,
        env: Mapping[str, str] | None = None,
    ) -> int:
        """Spawn *argv* in *cwd* and return the new pid."""
        with self._state_lock:
            if self._alive_locked():
                raise StateError("server is already running")
            self._join_readers()
            self._discard_signals()

            popen_kwargs: dict[str, object] = {
                "cwd": str(cwd),
                "stdin": subprocess.PIPE,
                "stdout": subprocess.PIPE,
                "stderr": subprocess.PIPE,
                "start_new_session": True,
            }
            if env is not None:
                popen_kwargs["env"] = dict(env)
            if self.user is not None:
                popen_kwargs["user"] = self.user

            _log.info("starting %s: %s (cwd=%s)", self.name, " ".join(argv), cwd)
            try:
                process = subprocess.Popen(list(argv), **popen_kwargs)  # type: ignore[call-overload]  # noqa: S603
            except OSError as exc:
                raise StateError(f"failed to spawn {argv[0]}: {exc.strerror or exc}") from exc

            self._process = process
            self._pid = process.pid
            self._readers = [
                self._spawn_reader(process.stdout, self._console_log, "stdout"),
                self._spawn_reader(process.stderr, self._stderr_tail, "stderr"),
            ]
            _log.info("%s started with pid %s", self.name, process.pid)
            return process.pid

    def _spawn_reader(
        self,
        stream: IO[bytes] | None,
        sink: queue.Queue[ConsoleItem] | deque[str],
        label: str,
    ) -> threading.Thread:
        thread = threading.Thread(
            target=_pump_lines,
            args=(stream, sink, f"{self.name} {label}"),
            name=f"{self.name}-{label}",
            daemon=True,
        )
        if stream is not None:
            thread.start()
        return thread

    @property
    def pid(self) -> int | None:
        """Return the pid while the process lives, otherwise ``None``."""
        with self._state_lock:
            if self._alive_locked():
                return self._pid
            return None

    def is_running(self) -> bool:
        """Return True while the supervised process is alive."""
        return self.pid is not None

    def wait(self, timeout: float | None = None) -> int | None:
        """Block until the process exits; return its exit code (None if never started)."""
        process = self._process
        if process is None:
            return None
        code = process.wait(timeout=timeout)
        self.reap()
        return code

    def reap(self, timeout: float = READER_JOIN_TIMEOUT) -> bool:
        """Join reader threads once the process has exited; True when fully drained."""
        if self.is_running():
            return False
        with self._state_lock:
            return self._join_readers(timeout)

    def _alive_locked(self) -> bool:
        if self._pid is None:
            return False
        if self._process is not None and self._process.poll() is not None:
            self._forget_locked()
            return False
        if not pid_alive(self._pid):
            self._forget_locked()
            return False
        return True

    def _forget_locked(self) -> None:
        process = self._process
        _log.info(
            "%s (pid %s) exited with code %s",
            self.name,
            self._pid,
            process.returncode if process is not None else "unknown",
        )
        self._pid = None
        if process is not None and process.stdin is not None:
            try:
                process.stdin.close()
            except OSError:
                pass

    def _join_readers(self, timeout: float = READER_JOIN_TIMEOUT) -> bool:
        drained = True
        for thread in self._readers:
            if thread.is_alive():
                thread.join(timeout)
            if thread.is_alive():
                _log.warning("%s reader %s still attached, discarding", self.name, thread.name)
                drained = False
        self._readers = []
        return drained

    def _discard_signals(self) -> None:
        """Drop markers left by a previous run; unread lines stay queued."""
        leftover: list[ConsoleItem] = []
        while True:
            try:
                leftover.append(self._console_log.get_nowait())
            except queue.Empty:
                break
        for item in leftover:
            if isinstance(item, str):
                self._console_log.put(item)

    # ------------------------------------------------------------------
    # I/O
    # ------------------------------------------------------------------
    def console(self, text: str) -> None:
        """Write *text* as one line to the process' stdin."""
        with self._state_lock:
            alive = self._alive_locked()
            process = self._process
        if not alive or process is None or process.stdin is None:
            raise ChannelError("I/O channel is down")
        payload = f"{text}\n".encode()
        with self._stdin_lock:
            try:
                process.stdin.write(payload)
                process.stdin.flush()
            except (BrokenPipeError, OSError, ValueError) as exc:
                raise ChannelError("I/O channel is down") from exc

    @property
    def console_log(self) -> queue.Queue[ConsoleItem]:
        """Unbounded FIFO of complete stdout lines and :class:`ConsoleSignal` markers."""
        return self._console_log

    def next_line(self, timeout: float | None = None) -> str:
        """Pop the next console line, blocking until one is available.

        Markers are skipped. Raises :class:`queue.Empty` when *timeout*
        elapses first.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            item = self._console_log.get(timeout=remaining)
            if isinstance(item, str):
                return item

    def next_item(self) -> ConsoleItem:
        """Block until the next line or marker is queued and return it."""
        return self._console_log.get()

    def wake(self) -> None:
        """Release a consumer blocked in :meth:`next_item`."""
        self._console_log.put(ConsoleSignal.WAKE)

    @property
    def stderr_tail(self) -> list[str]:
        """Most recent stderr lines of the current or last process."""
        return list(self._stderr_tail)

    @property
    def pipes(self) -> dict[str, IO[bytes]]:
        """Return the live child's stdin/stdout/stderr (empty when down)."""
        process = self._process
        if process is None or not self.is_running():
            return {}
        pipes: dict[str, IO[bytes]] = {}
        for key in ("stdin", "stdout", "stderr"):
            stream = getattr(process, key)
            if stream is not None:
                pipes[key] = stream
        return pipes

    # ------------------------------------------------------------------
    # Accounting
    # ------------------------------------------------------------------
    def memory(self) -> MemoryUsage:
        """Return resident memory of the live process (zeros when not running)."""
        pid = self.pid
        if pid is None:
            return MemoryUsage()
        try:
            rss = psutil.Process(pid).memory_info().rss
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return MemoryUsage()
        return MemoryUsage.from_bytes(rss)


__all__ = ["ConsoleItem", "ConsoleSignal", "MemoryUsage", "ProcessSupervisor", "pid_alive"]
