# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
dbx Builder - Functional builder pattern for configuration.

This module provides pure functions for building DbxConfig objects.
Each function takes a config dict and returns a new dict with the
modification applied (immutable updates). config_from_dict() accepts the
parsed config.json document; reading the file itself is left to the caller.
"""

from pathlib import Path
from typing import Any, Dict

from dbx.config import (
    DatabaseOptions,
    DbxConfig,
    DefinerHandling,
    EncryptionType,
    Engine,
    HostConfig,
    TunnelConfig,
)
from dbx.exceptions import ConfigurationError


ConfigDict = Dict[str, Any]


def create_empty_config() -> ConfigDict:
    """
    Create an initial empty configuration dictionary.

    Returns:
        Dict with no overrides; DbxConfig supplies the defaults
    """
    return {"hosts": {}}


def with_host(config: ConfigDict, host: HostConfig) -> ConfigDict:
    """
    Add (or replace) a host.

    Args:
        config: Current configuration dictionary
        host: Host definition

    Returns:
        New configuration dictionary with the host added
    """
    return {**config, "hosts": {**config.get("hosts", {}), host.name: host}}


def with_data_dir(config: ConfigDict, data_dir: Path | str) -> ConfigDict:
    """Set the artifact root directory."""
    return {**config, "data_dir": Path(data_dir).expanduser()}


def build_config(config: ConfigDict) -> DbxConfig:
    """
    Finalize a configuration dictionary into an immutable DbxConfig.

    Raises:
        ConfigurationError: If validation fails
    """
    return DbxConfig(**config)


def create_config(**kwargs: Any) -> DbxConfig:
    """
    Create a DbxConfig from keyword arguments.

    Example:
        config = create_config(
            data_dir="~/backups",
            hosts={"prod": HostConfig(name="prod", type=Engine.POSTGRES, host="db1")},
            encryption_type="age",
        )
    """
    config = create_empty_config()
    if "data_dir" in kwargs:
        config = with_data_dir(config, kwargs.pop("data_dir"))
    if "config_dir" in kwargs:
        kwargs["config_dir"] = Path(kwargs["config_dir"]).expanduser()
    if "encryption_type" in kwargs:
        kwargs["encryption_type"] = EncryptionType(kwargs["encryption_type"])
    for host in (kwargs.pop("hosts", None) or {}).values():
        config = with_host(config, host)
    return build_config({**config, **kwargs})


# ============================================================================
# config.json parsing
# ============================================================================

def _as_int(value: Any, field_name: str, **context: Any) -> int | None:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(
            f"Invalid {field_name}: {value!r} is not an integer",
            details={"field": field_name, **context},
        ) from exc


def _parse_tunnel(host_name: str, data: Dict[str, Any] | None) -> TunnelConfig | None:
    if not data:
        return None
    try:
        return TunnelConfig(
            jump_host=data["jump_host"],
            target_port=int(data["target_port"]),
            target_host=data.get("target_host") or "localhost",
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise ConfigurationError(
            f"Invalid ssh_tunnel for host {host_name}: {exc}",
            details={"host": host_name},
        ) from exc


def _parse_databases(host_name: str, data: Dict[str, Any] | None) -> Dict[str, DatabaseOptions]:
    databases: Dict[str, DatabaseOptions] = {}
    for name, options in (data or {}).items():
        options = options or {}
        databases[name] = DatabaseOptions(
            exclude_data=list(options.get("exclude_data") or []),
            parallel_jobs=_as_int(options.get("parallel_jobs"), "parallel_jobs", host=host_name, database=name),
        )
    return databases


def _parse_host(name: str, data: Dict[str, Any]) -> HostConfig:
    try:
        engine = Engine(data.get("type", "postgres"))
        definer = DefinerHandling(data.get("definer_handling") or "strip")
    except ValueError as exc:
        raise ConfigurationError(
            f"Invalid host {name}: {exc}",
            details={"host": name},
        ) from exc

    return HostConfig(
        name=name,
        type=engine,
        host=data.get("host") or "localhost",
        port=_as_int(data.get("port"), "port", host=name),
        user=data.get("user") or "",
        password=data.get("password"),
        password_cmd=data.get("password_cmd"),
        ssh_tunnel=_parse_tunnel(name, data.get("ssh_tunnel")),
        databases=_parse_databases(name, data.get("databases")),
        definer_handling=definer,
    )


def _parse_encryption(defaults: Dict[str, Any]) -> EncryptionType:
    enc_type = defaults.get("encryption_type")
    # Legacy: "encryption": true without a type meant gpg
    if not enc_type and defaults.get("encryption") is True:
        return EncryptionType.GPG
    try:
        return EncryptionType(enc_type or "none")
    except ValueError as exc:
        raise ConfigurationError(
            f"Unknown encryption type: {enc_type}",
            details={"encryption_type": enc_type},
        ) from exc


def config_from_dict(data: Dict[str, Any], **overrides: Any) -> DbxConfig:
    """
    Build a DbxConfig from a parsed config.json document.

    Recognized layout:
        {
          "defaults": {"encryption_type": "age", "parallel_jobs": 4,
                       "age_recipients": "...", "age_identity": "..."},
          "hosts": {
            "prod": {"type": "mysql", "host": "db1", "port": 3306, "user": "backup",
                     "password_cmd": "pass show db/prod",
                     "definer_handling": "strip",
                     "ssh_tunnel": {"jump_host": "bastion", "target_port": 3306},
                     "databases": {"app": {"exclude_data": ["sessions"]}}}
          }
        }

    Args:
        data: Parsed JSON document
        overrides: Extra DbxConfig fields (e.g. data_dir) taking precedence

    Returns:
        Validated DbxConfig
    """
    defaults = data.get("defaults") or {}

    config = create_empty_config()
    for name, host_data in (data.get("hosts") or {}).items():
        config = with_host(config, _parse_host(name, host_data or {}))

    fields: Dict[str, Any] = {"encryption_type": _parse_encryption(defaults)}
    if defaults.get("parallel_jobs") is not None:
        fields["parallel_jobs"] = _as_int(defaults["parallel_jobs"], "parallel_jobs")
    for key in ("age_recipients", "age_identity", "gpg_passphrase_file"):
        if defaults.get(key):
            fields[key] = Path(defaults[key]).expanduser()
    if defaults.get("gpg_recipient"):
        fields["gpg_recipient"] = defaults["gpg_recipient"]

    merged = {**config, **fields, **overrides}
    for key in ("data_dir", "config_dir"):
        if key in merged:
            merged[key] = Path(merged[key]).expanduser()
    return build_config(merged)
