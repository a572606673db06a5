# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
dbx Verification - Check a stored artifact without restoring it.

With a sidecar checksum the file is re-hashed and compared. Without one,
the best available evidence is that the artifact still decodes: a short
prefix is run through decryption and decompression. Nothing here ever
modifies the artifact or its sidecar.
"""

from dataclasses import asdict, dataclass
from enum import Enum
from pathlib import Path

import structlog

from dbx.backup.integrity import expected_checksum, load_metadata, sha256_file
from dbx.config import DbxConfig
from dbx.exceptions import DbxError, VerificationError
from dbx.pipeline.composer import open_artifact
from dbx.pipeline.stages import take

logger = structlog.get_logger()

DECODE_CHECK_BYTES = 4096


class VerificationStatus(str, Enum):
    VERIFIED = "verified"
    CHECKSUM_MISMATCH = "checksum_mismatch"
    UNREADABLE = "unreadable"
    NO_METADATA = "no_metadata"


@dataclass
class VerificationResult:
    """Outcome of verifying one artifact."""

    status: VerificationStatus
    path: Path
    expected: str | None = None
    actual: str | None = None
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.status is VerificationStatus.VERIFIED

    def to_dict(self) -> dict:
        data = asdict(self)
        data["status"] = self.status.value
        data["path"] = str(self.path)
        return data


async def _check_decodes(path: Path, config: DbxConfig) -> VerificationResult:
    try:
        prefix = await take(open_artifact(path, config), DECODE_CHECK_BYTES)
    except (DbxError, OSError) as e:
        message = e.message if isinstance(e, DbxError) else str(e)
        logger.warning("verify_decode_failed", path=str(path), error=message)
        return VerificationResult(
            status=VerificationStatus.UNREADABLE,
            path=path,
            message=message,
        )

    if not prefix:
        return VerificationResult(
            status=VerificationStatus.UNREADABLE,
            path=path,
            message="Artifact decodes to no data",
        )
    return VerificationResult(
        status=VerificationStatus.NO_METADATA,
        path=path,
        message=f"No checksum recorded; first {len(prefix)} bytes decode",
    )


async def verify(path: Path, config: DbxConfig) -> VerificationResult:
    """
    Verify an artifact.

    Args:
        path: Artifact file
        config: Supplies key material for the decode check

    Returns:
        VerificationResult (VERIFIED, CHECKSUM_MISMATCH, UNREADABLE or NO_METADATA)

    Raises:
        VerificationError: If the artifact does not exist
    """
    path = Path(path)
    if not path.is_file():
        raise VerificationError(
            f"Backup file not found: {path}",
            details={"path": str(path)},
        )

    expected = expected_checksum(await load_metadata(path))
    if expected is None:
        result = await _check_decodes(path, config)
    else:
        actual = await sha256_file(path)
        if actual == expected:
            result = VerificationResult(
                status=VerificationStatus.VERIFIED,
                path=path,
                expected=expected,
                actual=actual,
            )
        else:
            result = VerificationResult(
                status=VerificationStatus.CHECKSUM_MISMATCH,
                path=path,
                expected=expected,
                actual=actual,
                message="Checksum does not match the recorded value",
            )

    log = logger.info if result.status is VerificationStatus.VERIFIED else logger.warning
    log(
        "backup_verified",
        path=str(path),
        status=result.status.value,
        expected=result.expected,
        actual=result.actual,
    )
    return result
