# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Restore runtime - where restores are applied.

Provisioning local database servers (containers, services) is outside
dbx. A RuntimeProvider only answers "which server receives a restore
for this engine". StaticRuntime answers from a fixed table, usually
built from DBX_RESTORE_PG_* / DBX_RESTORE_MYSQL_* environment variables.
"""

import os
from typing import Dict, Mapping, Protocol

from dbx.config import Engine
from dbx.engines.base import ConnectionEndpoint
from dbx.exceptions import ConfigurationError

_DEFAULTS = {
    Engine.POSTGRES: ("localhost", 5432, "postgres"),
    Engine.MYSQL: ("localhost", 3306, "root"),
}
_ENV_PREFIX = {
    Engine.POSTGRES: "DBX_RESTORE_PG",
    Engine.MYSQL: "DBX_RESTORE_MYSQL",
}


class RuntimeProvider(Protocol):
    async def ensure_running(self, engine: Engine) -> ConnectionEndpoint: ...


class StaticRuntime:
    """RuntimeProvider with fixed endpoints per engine."""

    def __init__(self, endpoints: Mapping[Engine, ConnectionEndpoint]):
        self._endpoints: Dict[Engine, ConnectionEndpoint] = dict(endpoints)

    async def ensure_running(self, engine: Engine) -> ConnectionEndpoint:
        try:
            return self._endpoints[Engine(engine)]
        except KeyError:
            raise ConfigurationError(
                f"No restore endpoint configured for {Engine(engine).value}",
                details={"engine": Engine(engine).value},
            ) from None


def static_runtime_from_env(env: Mapping[str, str] | None = None) -> StaticRuntime:
    """
    Build a StaticRuntime from the environment.

    Variables (PG shown, MYSQL analogous):
        - DBX_RESTORE_PG_HOST (default: localhost)
        - DBX_RESTORE_PG_PORT (default: 5432)
        - DBX_RESTORE_PG_USER (default: postgres; root for MySQL)
        - DBX_RESTORE_PG_PASSWORD (default: empty)
    """
    env = os.environ if env is None else env
    endpoints: Dict[Engine, ConnectionEndpoint] = {}

    for engine, prefix in _ENV_PREFIX.items():
        host, port, user = _DEFAULTS[engine]
        raw_port = env.get(f"{prefix}_PORT")
        try:
            port = int(raw_port) if raw_port else port
        except ValueError as exc:
            raise ConfigurationError(
                f"Invalid {prefix}_PORT value: {raw_port!r}",
                details={"variable": f"{prefix}_PORT"},
            ) from exc
        endpoints[engine] = ConnectionEndpoint(
            host=env.get(f"{prefix}_HOST") or host,
            port=port,
            user=env.get(f"{prefix}_USER") or user,
            password=env.get(f"{prefix}_PASSWORD", ""),
        )

    return StaticRuntime(endpoints)
