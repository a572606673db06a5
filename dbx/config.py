# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
dbx Configuration - Immutable configuration data structures.

All configuration is frozen (immutable) after creation so a job cannot
accidentally change host settings halfway through a backup.
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Dict, List
import re


class Engine(str, Enum):
    """Database engine family."""

    POSTGRES = "postgres"
    MYSQL = "mysql"

    @classmethod
    def _missing_(cls, value: object) -> "Engine | None":
        aliases = {
            "postgresql": cls.POSTGRES,
            "pg": cls.POSTGRES,
            "mariadb": cls.MYSQL,
        }
        if isinstance(value, str):
            return aliases.get(value.lower())
        return None


class EncryptionType(str, Enum):
    """Encryption applied to a backup artifact at rest."""

    NONE = "none"
    AGE = "age"
    GPG = "gpg"

    @property
    def extension(self) -> str:
        """File suffix appended to encrypted artifacts."""
        return "" if self is EncryptionType.NONE else f".{self.value}"


class DefinerHandling(str, Enum):
    """How MySQL DEFINER clauses are treated in the schema pass."""

    STRIP = "strip"  # Remove the clause entirely
    CURRENT_USER = "current_user"  # Rewrite to DEFINER=CURRENT_USER
    PASSTHROUGH = "passthrough"  # Leave bytes untouched

    @classmethod
    def _missing_(cls, value: object) -> "DefinerHandling | None":
        aliases = {
            "keep": cls.PASSTHROUGH,
            "rewrite": cls.CURRENT_USER,
            "rewrite-to-current-user": cls.CURRENT_USER,
        }
        if isinstance(value, str):
            return aliases.get(value.lower())
        return None


_TABLE_NAME = re.compile(r"^[A-Za-z0-9_$.\-]+$")


def _validate_port(port: int) -> bool:
    return isinstance(port, int) and 0 < port < 65536


@dataclass(frozen=True)
class TunnelConfig:
    """SSH local port-forward settings for a remote host."""

    # SSH destination used as jump host (anything `ssh` accepts: alias, user@host)
    jump_host: str

    # Database port as seen from the jump host
    target_port: int

    # Database host as seen from the jump host
    target_host: str = "localhost"


@dataclass(frozen=True)
class DatabaseOptions:
    """Per-database backup options."""

    # Tables whose data is skipped (schema is always kept)
    exclude_data: List[str] = field(default_factory=list)

    # Overrides DbxConfig.parallel_jobs when set
    parallel_jobs: int | None = None


@dataclass(frozen=True)
class HostConfig:
    """A configured database host."""

    name: str
    type: Engine
    host: str = "localhost"
    port: int | None = None
    user: str = ""

    # Plaintext password (dev only, a warning is logged when used)
    password: str | None = field(default=None, repr=False)

    # Shell command printing the password (e.g. a password manager CLI)
    password_cmd: str | None = None

    ssh_tunnel: TunnelConfig | None = None
    databases: Dict[str, DatabaseOptions] = field(default_factory=dict)
    definer_handling: DefinerHandling = DefinerHandling.STRIP

    @property
    def effective_default_port(self) -> int:
        if self.port is not None:
            return self.port
        return 5432 if self.type is Engine.POSTGRES else 3306


@dataclass(frozen=True)
class DbxConfig:
    """
    Immutable configuration for backup and restore jobs.

    This configuration is frozen after creation; use with_updates() to
    derive a modified copy.
    """

    # Root directory for artifacts: <data_dir>/<host>/<database>/...
    data_dir: Path = field(default_factory=lambda: Path.home() / ".data" / "dbx")

    # Directory holding config.json, age recipients, audit database
    config_dir: Path = field(default_factory=lambda: Path.home() / ".config" / "dbx")

    # Configured hosts keyed by name
    hosts: Dict[str, HostConfig] = field(default_factory=dict)

    # Encryption applied to new backups
    encryption_type: EncryptionType = EncryptionType.NONE

    # age public keys (one per line); defaults to <config_dir>/age-recipients.txt
    age_recipients: Path | None = None

    # age private key used for restore/verify
    age_identity: Path = field(
        default_factory=lambda: Path.home() / ".config" / "sops" / "age" / "keys.txt"
    )

    # gpg public-key recipient; when unset, symmetric encryption with the passphrase file
    gpg_recipient: str | None = None
    gpg_passphrase_file: Path | None = None

    # Default worker count (zstd threads)
    parallel_jobs: int = 4

    # zstd level for new backups
    zstd_level: int = 3

    # Run client tools inside these containers (docker exec) instead of on the host
    use_containers: bool = True
    postgres_container: str = "postgres-dbx"
    mysql_container: str = "mysql-dbx"

    # Seconds to wait for a freshly spawned tunnel before looking it up
    tunnel_settle_seconds: float = 1.0

    def __post_init__(self) -> None:
        """Validate configuration after creation."""
        errors: List[str] = []

        for name, host in self.hosts.items():
            if name != host.name:
                errors.append(f"Host key {name!r} does not match host name {host.name!r}")
            if host.port is not None and not _validate_port(host.port):
                errors.append(f"Invalid port for host {name}: {host.port}")
            if host.ssh_tunnel is not None:
                if not host.ssh_tunnel.jump_host:
                    errors.append(f"ssh_tunnel.jump_host required for host {name}")
                if not _validate_port(host.ssh_tunnel.target_port):
                    errors.append(
                        f"Invalid ssh_tunnel.target_port for host {name}: "
                        f"{host.ssh_tunnel.target_port}"
                    )
            for db_name, options in host.databases.items():
                for table in options.exclude_data:
                    if not table or not _TABLE_NAME.match(table):
                        errors.append(f"Invalid excluded table name for {name}/{db_name}: {table!r}")
                if options.parallel_jobs is not None and options.parallel_jobs < 1:
                    errors.append(
                        f"parallel_jobs must be >= 1 for {name}/{db_name}, got {options.parallel_jobs}"
                    )

        if self.parallel_jobs < 1:
            errors.append(f"parallel_jobs must be >= 1, got {self.parallel_jobs}")

        if not 1 <= self.zstd_level <= 22:
            errors.append(f"zstd_level must be between 1 and 22, got {self.zstd_level}")

        if self.tunnel_settle_seconds < 0:
            errors.append(
                f"tunnel_settle_seconds must be >= 0, got {self.tunnel_settle_seconds}"
            )

        # Raise all errors at once
        if errors:
            from dbx.exceptions import ConfigurationError

            raise ConfigurationError(
                "Configuration validation failed",
                details={"errors": errors},
            )

    @property
    def age_recipients_file(self) -> Path:
        return self.age_recipients or self.config_dir / "age-recipients.txt"

    @property
    def audit_db_path(self) -> Path:
        return self.data_dir / "audit.db"

    def get_host(self, name: str) -> HostConfig:
        """Look up a host, raising ConfigurationError when it is unknown."""
        try:
            return self.hosts[name]
        except KeyError:
            from dbx.errors import explain_unknown_host
            from dbx.exceptions import ConfigurationError

            raise ConfigurationError(
                explain_unknown_host(name, list(self.hosts)),
                details={"host": name},
            ) from None

    def excluded_tables(self, host: str, database: str) -> List[str]:
        options = self.get_host(host).databases.get(database)
        return list(options.exclude_data) if options else []

    def parallel_jobs_for(self, host: str, database: str) -> int:
        options = self.get_host(host).databases.get(database)
        if options and options.parallel_jobs is not None:
            return options.parallel_jobs
        return self.parallel_jobs

    def container_for(self, engine: Engine) -> str | None:
        """Container that hosts the client tools for an engine, if any."""
        if not self.use_containers:
            return None
        if engine is Engine.POSTGRES:
            return self.postgres_container
        return self.mysql_container

    def with_updates(self, **kwargs) -> "DbxConfig":
        """
        Create a new config with updated values.

        Since the config is frozen, this creates a new instance.
        """
        return replace(self, **kwargs)
