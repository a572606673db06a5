# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Artifact format detection.

The file name decides first. When the name leaves the compression open
(e.g. a bare ``.age`` file, or no known suffix at all) the leading bytes
of the decrypted stream decide.
"""

from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from dbx.config import EncryptionType


class Compression(str, Enum):
    """Compression codec of the inner (decrypted) stream."""

    NONE = "none"
    ZSTD = "zstd"
    GZIP = "gzip"


ZSTD_MAGIC = b"\x28\xb5\x2f\xfd"
GZIP_MAGIC = b"\x1f\x8b"

# Longest suffix first so ".sql.zst.age" never matches as ".age"
_SUFFIXES: list[tuple[str, EncryptionType, Compression | None]] = [
    (".sql.zst.age", EncryptionType.AGE, Compression.ZSTD),
    (".sql.zst.gpg", EncryptionType.GPG, Compression.ZSTD),
    (".sql.gz.age", EncryptionType.AGE, Compression.GZIP),
    (".sql.gz.gpg", EncryptionType.GPG, Compression.GZIP),
    (".sql.age", EncryptionType.AGE, Compression.NONE),
    (".sql.gpg", EncryptionType.GPG, Compression.NONE),
    (".zst.age", EncryptionType.AGE, Compression.ZSTD),
    (".zst.gpg", EncryptionType.GPG, Compression.ZSTD),
    (".gz.age", EncryptionType.AGE, Compression.GZIP),
    (".gz.gpg", EncryptionType.GPG, Compression.GZIP),
    (".sql.zst", EncryptionType.NONE, Compression.ZSTD),
    (".sql.gz", EncryptionType.NONE, Compression.GZIP),
    (".zst", EncryptionType.NONE, Compression.ZSTD),
    (".gz", EncryptionType.NONE, Compression.GZIP),
    (".sql", EncryptionType.NONE, Compression.NONE),
    (".dump", EncryptionType.NONE, Compression.NONE),
    (".age", EncryptionType.AGE, None),
    (".gpg", EncryptionType.GPG, None),
]


@dataclass(frozen=True)
class ArtifactFormat:
    """Encryption and compression of an artifact; compression None means undetermined."""

    encryption: EncryptionType
    compression: Compression | None

    @property
    def determined(self) -> bool:
        return self.compression is not None


def classify_path(path: Path | str) -> ArtifactFormat:
    """Derive the artifact format from its file name."""
    name = Path(path).name.lower()
    for suffix, encryption, compression in _SUFFIXES:
        if name.endswith(suffix):
            return ArtifactFormat(encryption, compression)
    return ArtifactFormat(EncryptionType.NONE, None)


def sniff_bytes(prefix: bytes) -> Compression:
    """Classify the leading bytes of a decrypted stream."""
    if prefix.startswith(ZSTD_MAGIC):
        return Compression.ZSTD
    if prefix.startswith(GZIP_MAGIC):
        return Compression.GZIP
    return Compression.NONE


def artifact_suffix(encryption: EncryptionType) -> str:
    """Suffix of newly written artifacts."""
    return ".sql.zst" + encryption.extension
