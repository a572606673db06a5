# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""SSH tunnel lifecycle and the process table it relies on."""

from dbx.tunnel.manager import (
    TunnelHandle,
    TunnelManager,
    TunnelSpec,
    TunnelState,
    build_ssh_argv,
    container_bind_address,
    resolve_endpoint,
)
from dbx.tunnel.platform import ProcessPlatform, ProcessInfo, PsutilPlatform, parse_forwards

__all__ = [
    "ProcessPlatform",
    "ProcessInfo",
    "PsutilPlatform",
    "TunnelHandle",
    "TunnelManager",
    "TunnelSpec",
    "TunnelState",
    "build_ssh_argv",
    "container_bind_address",
    "parse_forwards",
    "resolve_endpoint",
]
