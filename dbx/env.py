# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Environment-based configuration helpers.

These helpers are small wrappers around create_config(). They read the
DBX_* environment variables the shell tooling has always honoured, so a
job can be configured without a config.json.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Dict

from dbx.builder import create_config
from dbx.config import DbxConfig, EncryptionType, HostConfig
from dbx.errors import explain_invalid_bool_env, explain_invalid_encryption_env
from dbx.exceptions import ConfigurationError

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


def _parse_encryption(value: str | None) -> EncryptionType:
    if not value:
        return EncryptionType.NONE
    try:
        return EncryptionType(value.lower())
    except ValueError as exc:
        raise ConfigurationError(explain_invalid_encryption_env(value)) from exc


def _parse_bool(name: str, value: str | None, default: bool) -> bool:
    if value is None or value == "":
        return default
    lowered = value.strip().lower()
    if lowered in _TRUE:
        return True
    if lowered in _FALSE:
        return False
    raise ConfigurationError(explain_invalid_bool_env(name, value))


def _path(value: str | None) -> Path | None:
    return Path(value).expanduser() if value else None


def create_config_from_env(*, hosts: Dict[str, HostConfig] | None = None) -> DbxConfig:
    """
    Create a DbxConfig from environment variables plus explicit hosts.

    Optional environment variables:
        - DBX_DATA_DIR: Artifact root (default: ~/.data/dbx)
        - DBX_CONFIG_DIR: Config directory (default: ~/.config/dbx)
        - DBX_ENCRYPTION: 'none' | 'age' | 'gpg' (default: none)
        - DBX_AGE_RECIPIENTS: age recipients file
        - DBX_AGE_IDENTITY: age identity (private key) file
        - DBX_GPG_RECIPIENT: gpg key id / email for asymmetric encryption
        - DBX_GPG_PASSPHRASE_FILE: passphrase file for symmetric gpg
        - DBX_USE_CONTAINERS: run client tools via docker exec (default: true)
        - DBX_POSTGRES_CONTAINER: default postgres-dbx
        - DBX_MYSQL_CONTAINER: default mysql-dbx
    """

    kwargs: Dict[str, object] = {
        "hosts": hosts or {},
        "encryption_type": _parse_encryption(os.getenv("DBX_ENCRYPTION")),
        "use_containers": _parse_bool(
            "DBX_USE_CONTAINERS", os.getenv("DBX_USE_CONTAINERS"), True
        ),
        "postgres_container": os.getenv("DBX_POSTGRES_CONTAINER", "postgres-dbx"),
        "mysql_container": os.getenv("DBX_MYSQL_CONTAINER", "mysql-dbx"),
    }

    optional_paths = {
        "data_dir": "DBX_DATA_DIR",
        "config_dir": "DBX_CONFIG_DIR",
        "age_recipients": "DBX_AGE_RECIPIENTS",
        "age_identity": "DBX_AGE_IDENTITY",
        "gpg_passphrase_file": "DBX_GPG_PASSPHRASE_FILE",
    }
    for field_name, env_name in optional_paths.items():
        value = _path(os.getenv(env_name))
        if value is not None:
            kwargs[field_name] = value

    gpg_recipient = os.getenv("DBX_GPG_RECIPIENT")
    if gpg_recipient:
        kwargs["gpg_recipient"] = gpg_recipient

    return create_config(**kwargs)
