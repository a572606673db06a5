# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
dbx Exceptions - Custom exceptions for the dbx package.
"""


class DbxError(Exception):
    """Base exception for all dbx errors."""

    def __init__(self, message: str, details: dict | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class ConfigurationError(DbxError):
    """Raised when configuration is invalid."""

    pass


class CredentialError(DbxError):
    """Raised when a credential cannot be resolved."""

    pass


class CredentialNotConfigured(CredentialError):
    """Raised when no credential source is configured for a host."""

    pass


class TunnelError(DbxError):
    """Raised when an SSH tunnel cannot be established."""

    pass


class PortExhausted(TunnelError):
    """Raised when no free local port was found within the retry budget."""

    pass


class TunnelNotFound(TunnelError):
    """Raised when the spawned forwarding process cannot be located."""

    pass


class PipelineError(DbxError):
    """Base class for failures of a backup/restore pipeline stage."""

    @property
    def stderr(self) -> str:
        """Diagnostic output captured from the failing stage, if any."""
        return self.details.get("stderr", "")


class DumpError(PipelineError):
    """Raised when a dump tool fails or produces no output."""

    pass


class CompressionError(PipelineError):
    """Raised when compression or decompression fails."""

    pass


class EncryptionError(PipelineError):
    """Raised when encryption or decryption fails."""

    pass


class RestoreError(PipelineError):
    """Raised when a restore fails fatally."""

    pass


class VerificationError(DbxError):
    """Raised when an artifact cannot be verified at all (e.g. missing file)."""

    pass


class AuditError(DbxError):
    """Raised when the audit trail cannot be initialized."""

    pass


class AnalysisError(DbxError):
    """Raised when table statistics cannot be read from a source database."""

    pass
