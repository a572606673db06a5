# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Tunnel Manager - SSH local port-forward lifecycle.

acquire() first looks for an ssh process already forwarding to the same
target through the same jump host and reuses it. Otherwise it picks a
free random local port, starts ``ssh -fN -L ...`` and locates the
backgrounded process.

A handle is either Reused or Created. release() terminates Created
handles only, at most once; reused tunnels belong to whoever started them.
Created handles are also released from atexit and SIGTERM handlers so an
interrupted job does not leak its forward.

The scan-then-create check is not locked: two concurrent jobs may both
create a tunnel to the same target, and each tears down its own.
"""

import asyncio
import atexit
import contextlib
import platform
import random
import signal
import tempfile
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable, Dict, List, Tuple

import structlog

from dbx.config import HostConfig, TunnelConfig
from dbx.exceptions import PortExhausted, TunnelError, TunnelNotFound
from dbx.tunnel.platform import ProcessPlatform, ProcessInfo, PsutilPlatform, parse_forwards

logger = structlog.get_logger()

PORT_RANGE = (10000, 60000)
MAX_PORT_ATTEMPTS = 5
SSH_OPTIONS = [
    "-o", "ExitOnForwardFailure=yes",
    "-o", "ServerAliveInterval=60",
    "-o", "ServerAliveCountMax=3",
]

# Host that containerized client tools use to reach a port on this machine
DOCKER_HOST_GATEWAY = {
    "Darwin": "host.docker.internal",
    "Windows": "host.docker.internal",
}
LINUX_BRIDGE_GATEWAY = "172.17.0.1"

Launcher = Callable[[List[str]], Awaitable[Tuple[int, str]]]


@dataclass(frozen=True)
class TunnelSpec:
    """Where a tunnel forwards to."""

    jump_host: str
    target_port: int
    target_host: str = "localhost"

    @classmethod
    def from_config(cls, config: TunnelConfig) -> "TunnelSpec":
        return cls(
            jump_host=config.jump_host,
            target_port=config.target_port,
            target_host=config.target_host,
        )


class TunnelState(str, Enum):
    REUSED = "reused"
    CREATED = "created"
    CLOSED = "closed"


@dataclass(frozen=True)
class TunnelHandle:
    """An acquired forward: connect to 127.0.0.1:local_port."""

    local_port: int
    owning_pid: int
    reused: bool
    spec: TunnelSpec


def build_ssh_argv(
    spec: TunnelSpec,
    local_port: int,
    ssh: str = "ssh",
    bind_address: str | None = None,
) -> List[str]:
    forward = f"{local_port}:{spec.target_host}:{spec.target_port}"
    if bind_address:
        forward = f"{bind_address}:{forward}"
    return [
        ssh,
        "-fN",
        *SSH_OPTIONS,
        "-L", forward,
        spec.jump_host,
    ]


async def launch_ssh(argv: List[str]) -> Tuple[int, str]:
    """
    Run the ssh launcher and wait until it has backgrounded itself.

    stderr goes to a temporary file rather than a pipe: the forked ssh
    inherits it and would otherwise hold the pipe open for its lifetime.
    """
    with tempfile.TemporaryFile() as err:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=err,
        )
        returncode = await proc.wait()
        err.seek(0)
        stderr = err.read().decode("utf-8", errors="replace")
    return returncode, stderr


class TunnelManager:
    """
    Acquire and release SSH tunnels for one process.

    Args:
        process_table: Process table / port capability (default: psutil)
        launcher: Coroutine running the ssh argv, returning (status, stderr)
        settle_seconds: Wait after launching before looking up the process
        rng: Random source for local port selection
        ssh_executable: ssh client to launch
        install_handlers: Release created tunnels from atexit and SIGTERM handlers
    """

    def __init__(
        self,
        process_table: ProcessPlatform | None = None,
        launcher: Launcher | None = None,
        settle_seconds: float = 1.0,
        rng: random.Random | None = None,
        ssh_executable: str = "ssh",
        install_handlers: bool = True,
    ):
        self._table = process_table or PsutilPlatform()
        self._launcher = launcher or launch_ssh
        self._settle_seconds = settle_seconds
        self._rng = rng or random.Random()
        self._ssh = ssh_executable
        self._owned: Dict[int, TunnelHandle] = {}
        self._handlers_installed = not install_handlers

    # ------------------------------------------------------------------
    # Acquire
    # ------------------------------------------------------------------

    async def acquire(self, spec: TunnelSpec, bind_address: str | None = None) -> TunnelHandle:
        """
        Reuse or create a tunnel for ``spec``.

        ssh binds the forward on loopback unless ``bind_address`` is given;
        only a tunnel bound to that same address is reused then.
        The process table scans run in a worker thread.

        Raises:
            PortExhausted: No free local port within the attempt budget
            TunnelError: The ssh launcher exited non-zero
            TunnelNotFound: The forward process could not be located
        """
        existing = await asyncio.to_thread(self._find_existing, spec, bind_address)
        if existing is not None:
            logger.info(
                "tunnel_reused",
                local_port=existing.local_port,
                pid=existing.owning_pid,
                target=f"{spec.target_host}:{spec.target_port}",
                jump_host=spec.jump_host,
            )
            return existing

        port = await asyncio.to_thread(self._pick_port)
        argv = build_ssh_argv(spec, port, self._ssh, bind_address)
        logger.info(
            "tunnel_creating",
            local_port=port,
            target=f"{spec.target_host}:{spec.target_port}",
            jump_host=spec.jump_host,
            bind_address=bind_address,
        )

        returncode, stderr = await self._launcher(argv)
        if returncode != 0:
            raise TunnelError(
                f"SSH tunnel via {spec.jump_host} failed with status {returncode}",
                details={
                    "jump_host": spec.jump_host,
                    "local_port": port,
                    "returncode": returncode,
                    "stderr": stderr.strip(),
                },
            )

        await asyncio.sleep(self._settle_seconds)
        pid = await asyncio.to_thread(self._find_forward_pid, port)
        if pid is None:
            await asyncio.sleep(self._settle_seconds)
            pid = await asyncio.to_thread(self._table.find_listener, port)
        if pid is None:
            raise TunnelNotFound(
                "Failed to create SSH tunnel (could not find tunnel process)",
                details={"jump_host": spec.jump_host, "local_port": port},
            )

        handle = TunnelHandle(local_port=port, owning_pid=pid, reused=False, spec=spec)
        self._owned[pid] = handle
        self._install_handlers()
        logger.info("tunnel_established", local_port=port, pid=pid)
        return handle

    def _find_existing(self, spec: TunnelSpec, bind_address: str | None) -> TunnelHandle | None:
        for proc in self._table.list_processes():
            if not proc.is_ssh or spec.jump_host not in proc.cmdline:
                continue
            for forward in parse_forwards(proc.cmdline):
                if (
                    forward.target_host == spec.target_host
                    and forward.target_port == spec.target_port
                    and (bind_address is None or forward.bind_address == bind_address)
                ):
                    return TunnelHandle(
                        local_port=forward.local_port,
                        owning_pid=proc.pid,
                        reused=True,
                        spec=spec,
                    )
        return None

    def _find_forward_pid(self, port: int) -> int | None:
        matches: List[ProcessInfo] = [
            proc
            for proc in self._table.list_processes()
            if proc.is_ssh
            and any(forward.local_port == port for forward in parse_forwards(proc.cmdline))
        ]
        # The launcher and its forked child can both be listed briefly; the child comes last
        return matches[-1].pid if matches else None

    def _pick_port(self) -> int:
        low, high = PORT_RANGE
        for attempt in range(1, MAX_PORT_ATTEMPTS + 1):
            port = self._rng.randrange(low, high)
            if self._table.is_port_free(port):
                return port
            logger.debug("tunnel_port_busy", port=port, attempt=attempt)
        raise PortExhausted(
            f"Could not find available port after {MAX_PORT_ATTEMPTS} attempts",
            details={"attempts": MAX_PORT_ATTEMPTS, "range": list(PORT_RANGE)},
        )

    # ------------------------------------------------------------------
    # Release
    # ------------------------------------------------------------------

    def state(self, handle: TunnelHandle) -> TunnelState:
        if handle.reused:
            return TunnelState.REUSED
        if handle.owning_pid in self._owned:
            return TunnelState.CREATED
        return TunnelState.CLOSED

    def release(self, handle: TunnelHandle) -> None:
        """Terminate a tunnel this manager created; no-op for reused or closed ones."""
        if handle.reused:
            logger.debug("tunnel_left_running", pid=handle.owning_pid, local_port=handle.local_port)
            return
        owned = self._owned.pop(handle.owning_pid, None)
        if owned is None:
            return
        logger.info("tunnel_closing", pid=handle.owning_pid, local_port=handle.local_port)
        self._table.terminate(handle.owning_pid)

    def release_all(self) -> None:
        for handle in list(self._owned.values()):
            self.release(handle)

    @contextlib.asynccontextmanager
    async def tunnel(
        self,
        spec: TunnelSpec,
        bind_address: str | None = None,
    ) -> AsyncIterator[TunnelHandle]:
        """Acquire a tunnel for the duration of a block."""
        handle = await self.acquire(spec, bind_address)
        try:
            yield handle
        finally:
            self.release(handle)

    def _install_handlers(self) -> None:
        if self._handlers_installed:
            return
        self._handlers_installed = True
        atexit.register(self.release_all)

        try:
            previous = signal.getsignal(signal.SIGTERM)
        except ValueError:
            previous = None

        def on_sigterm(signum, frame):
            self.release_all()
            if callable(previous):
                previous(signum, frame)
            elif previous is signal.SIG_IGN:
                return
            else:
                raise SystemExit(128 + signum)

        try:
            signal.signal(signal.SIGTERM, on_sigterm)
        except ValueError:
            # Not the main thread; atexit still covers normal shutdown
            logger.debug("tunnel_sigterm_handler_skipped")


def docker_gateway(system: str | None = None) -> str:
    """Address of this machine as seen from inside a container."""
    system = system or platform.system()
    return DOCKER_HOST_GATEWAY.get(system, LINUX_BRIDGE_GATEWAY)


def container_bind_address(system: str | None = None) -> str | None:
    """
    Address a tunnel must listen on for containerized tools to reach it.

    On Linux containers reach the host through the bridge gateway, so the
    forward has to bind there; Docker Desktop routes host.docker.internal
    to loopback and needs no bind address.
    """
    system = system or platform.system()
    if system in DOCKER_HOST_GATEWAY:
        return None
    return LINUX_BRIDGE_GATEWAY


def resolve_endpoint(
    host: HostConfig,
    handle: TunnelHandle | None,
    *,
    containerized: bool,
    system: str | None = None,
) -> Tuple[str, int]:
    """
    Host and port the client tools should connect to.

    Through a tunnel that is the local forward (reached via the Docker
    gateway when the tools run in a container); otherwise the configured
    host and port.
    """
    if handle is None:
        return host.host, host.effective_default_port
    if containerized:
        return docker_gateway(system), handle.local_port
    return "127.0.0.1", handle.local_port
