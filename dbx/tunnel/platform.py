# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Process platform - process table and port queries behind one interface.

The tunnel manager never parses ``ps`` or ``lsof`` output. It asks a
ProcessPlatform, whose default implementation is backed by psutil and works
the same on Linux and macOS. Tests pass in a fake.
"""

import os
import socket
from dataclasses import dataclass
from typing import List, NamedTuple, Protocol, Sequence, Tuple

import psutil
import structlog

logger = structlog.get_logger()

TERMINATE_TIMEOUT = 5.0


@dataclass(frozen=True)
class ProcessInfo:
    """A process as seen in the process table."""

    pid: int
    name: str
    cmdline: Tuple[str, ...]

    @property
    def is_ssh(self) -> bool:
        if self.name == "ssh":
            return True
        return bool(self.cmdline) and os.path.basename(self.cmdline[0]) == "ssh"


class Forward(NamedTuple):
    """One ``-L [bind:]local:host:hostport`` local forward."""

    local_port: int
    target_host: str
    target_port: int
    bind_address: str | None = None


def _parse_forward_spec(value: str) -> Forward | None:
    parts = value.split(":")
    bind_address = None
    if len(parts) == 4:
        bind_address, parts = parts[0], parts[1:]
    if len(parts) != 3:
        return None
    local, host, remote = parts
    if not (local.isdigit() and remote.isdigit()):
        return None
    return Forward(int(local), host, int(remote), bind_address or None)


def parse_forwards(cmdline: Sequence[str]) -> List[Forward]:
    """Extract every local forward from an ssh argv (``-L spec`` or ``-Lspec``)."""
    forwards: List[Forward] = []
    args = list(cmdline)
    for index, arg in enumerate(args):
        if arg == "-L" and index + 1 < len(args):
            value = args[index + 1]
        elif arg.startswith("-L") and len(arg) > 2:
            value = arg[2:]
        else:
            continue
        forward = _parse_forward_spec(value)
        if forward is not None:
            forwards.append(forward)
    return forwards


class ProcessPlatform(Protocol):
    """Capabilities the tunnel manager needs from the operating system."""

    def list_processes(self) -> List[ProcessInfo]: ...

    def find_listener(self, port: int) -> int | None: ...

    def is_port_free(self, port: int) -> bool: ...

    def terminate(self, pid: int) -> None: ...


class PsutilPlatform:
    """ProcessPlatform backed by psutil."""

    def list_processes(self) -> List[ProcessInfo]:
        processes: List[ProcessInfo] = []
        for proc in psutil.process_iter(["pid", "name", "cmdline"]):
            info = proc.info
            cmdline = info.get("cmdline")
            if not cmdline:
                # Zombies and processes we may not inspect
                continue
            processes.append(
                ProcessInfo(
                    pid=info["pid"],
                    name=info.get("name") or "",
                    cmdline=tuple(cmdline),
                )
            )
        return processes

    def find_listener(self, port: int) -> int | None:
        try:
            connections = psutil.net_connections(kind="inet")
        except psutil.AccessDenied:
            # macOS requires root for the system-wide table; walk our own processes
            return self._find_listener_per_process(port)

        for conn in connections:
            if conn.status == psutil.CONN_LISTEN and conn.laddr and conn.laddr.port == port:
                if conn.pid is not None:
                    return conn.pid
        return self._find_listener_per_process(port)

    def _find_listener_per_process(self, port: int) -> int | None:
        for proc in psutil.process_iter(["pid"]):
            try:
                for conn in proc.net_connections(kind="inet"):
                    if conn.status == psutil.CONN_LISTEN and conn.laddr and conn.laddr.port == port:
                        return proc.pid
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
        return None

    def is_port_free(self, port: int) -> bool:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            try:
                sock.bind(("127.0.0.1", port))
            except OSError:
                return False
        return True

    def terminate(self, pid: int) -> None:
        try:
            proc = psutil.Process(pid)
            proc.terminate()
            try:
                proc.wait(timeout=TERMINATE_TIMEOUT)
            except psutil.TimeoutExpired:
                logger.warning("tunnel_kill_after_timeout", pid=pid)
                proc.kill()
        except psutil.NoSuchProcess:
            logger.debug("tunnel_already_gone", pid=pid)
