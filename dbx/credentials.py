# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Credential resolution.

A resolver turns a host name into a password. The default one reads the
host configuration: ``password_cmd`` is run through the shell (password
managers, ``pass``, ``op read`` ...) and its stdout used; a plaintext
``password`` is accepted as a fallback with a warning.
"""

import asyncio
from typing import Protocol

import structlog

from dbx.config import DbxConfig
from dbx.errors import explain_missing_credentials
from dbx.exceptions import ConfigurationError, CredentialError, CredentialNotConfigured

logger = structlog.get_logger()


class CredentialResolver(Protocol):
    """Looks up the password for a configured host."""

    async def get_password(self, host: str) -> str: ...


class ConfigCredentialResolver:
    """Resolve passwords from password_cmd, then plaintext password."""

    def __init__(self, config: DbxConfig):
        self.config = config

    async def get_password(self, host: str) -> str:
        """
        Raises:
            CredentialNotConfigured: Neither password_cmd nor password is set
            CredentialError: password_cmd failed
            ConfigurationError: password_cmd printed non-UTF-8 output
        """
        host_config = self.config.get_host(host)

        if host_config.password_cmd:
            return await self._run_password_cmd(host, host_config.password_cmd)

        if host_config.password is not None:
            logger.warning(
                "plaintext_password_in_config",
                host=host,
                hint="use password_cmd instead",
            )
            return host_config.password

        raise CredentialNotConfigured(explain_missing_credentials(host), details={"host": host})

    async def _run_password_cmd(self, host: str, command: str) -> str:
        try:
            proc = await asyncio.create_subprocess_shell(
                command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            stdout, stderr = await proc.communicate()
        except OSError as e:
            raise CredentialError(
                f"Failed to run password_cmd for host {host}: {e}",
                details={"host": host},
            ) from e

        if proc.returncode != 0:
            raise CredentialError(
                f"password_cmd for host {host} exited with status {proc.returncode}",
                details={
                    "host": host,
                    "returncode": proc.returncode,
                    "stderr": stderr.decode("utf-8", errors="replace").strip(),
                },
            )

        # Only the trailing newline is dropped; passwords may contain spaces
        try:
            password = stdout.decode("utf-8").rstrip("\r\n")
        except UnicodeDecodeError as e:
            raise ConfigurationError(
                f"password_cmd for host {host} printed bytes that are not UTF-8",
                details={"host": host, "position": e.start},
            ) from e
        logger.debug("password_resolved", host=host, source="password_cmd")
        return password
