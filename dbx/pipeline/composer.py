# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Pipeline Composer - Assemble stages for backup and restore.

Backup:  dump -> zstd -> [age|gpg] -> atomic file write
Restore: file -> [age|gpg] -> zstd|gzip|plain -> (engine filter) -> import

Backup composition depends only on the configured encryption type.
Restore composition is read from the artifact name, with a magic-byte
sniff on the decrypted stream when the name leaves the codec open.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Tuple

import structlog

from dbx.config import DbxConfig, EncryptionType
from dbx.pipeline.compression import gzip_decompress, zstd_compress, zstd_decompress
from dbx.pipeline.encryption import decryption_stage, encryption_stage
from dbx.pipeline.formats import ArtifactFormat, Compression, classify_path, sniff_bytes
from dbx.pipeline.stages import ByteStream, Stage, aclose_stream, read_file, write_atomic

logger = structlog.get_logger()

# Bytes needed to tell zstd from gzip from plain
SNIFF_SIZE = 4


@dataclass
class Pipeline:
    """A named, ordered list of stream stages."""

    name: str
    stages: List[Tuple[str, Stage]] = field(default_factory=list)

    def then(self, name: str, stage: Stage) -> "Pipeline":
        self.stages.append((name, stage))
        return self

    @property
    def stage_names(self) -> List[str]:
        return [name for name, _ in self.stages]

    def apply(self, source: ByteStream) -> ByteStream:
        """Chain every stage onto ``source``; nothing runs until iterated."""
        stream = source
        for _, stage in self.stages:
            stream = stage(stream)
        return stream


async def _plain(upstream: ByteStream) -> ByteStream:
    try:
        async for chunk in upstream:
            yield chunk
    finally:
        await aclose_stream(upstream)


DECODERS: Dict[Compression, Stage] = {
    Compression.NONE: _plain,
    Compression.ZSTD: zstd_decompress,
    Compression.GZIP: gzip_decompress,
}


async def _replay(prefix: bytes, upstream: ByteStream) -> ByteStream:
    try:
        if prefix:
            yield prefix
        async for chunk in upstream:
            yield chunk
    finally:
        await aclose_stream(upstream)


async def decompress_sniffed(upstream: ByteStream) -> ByteStream:
    """Pick the decoder from the stream's leading bytes."""
    buffer = bytearray()
    try:
        async for chunk in upstream:
            buffer.extend(chunk)
            if len(buffer) >= SNIFF_SIZE:
                break
    except BaseException:
        await aclose_stream(upstream)
        raise

    compression = sniff_bytes(bytes(buffer))
    logger.debug("compression_sniffed", compression=compression.value)

    decoded = DECODERS[compression](_replay(bytes(buffer), upstream))
    try:
        async for chunk in decoded:
            yield chunk
    finally:
        await aclose_stream(decoded)


def backup_pipeline(
    config: DbxConfig,
    parallelism: int | None = None,
    encryption: EncryptionType | None = None,
) -> Pipeline:
    """
    Stages applied to dump output before it is written.

    Encryption stages are built here, so missing key material raises
    ConfigurationError before the dump process is started.
    """
    encryption = EncryptionType(encryption or config.encryption_type)
    threads = parallelism or config.parallel_jobs

    pipeline = Pipeline("backup").then("zstd", zstd_compress(config.zstd_level, threads))
    if encryption is not EncryptionType.NONE:
        pipeline.then(encryption.value, encryption_stage(encryption, config))
    return pipeline


def restore_decode_pipeline(
    artifact_format: ArtifactFormat,
    config: DbxConfig,
) -> Pipeline:
    """Stages turning stored artifact bytes back into dump bytes."""
    pipeline = Pipeline("restore")
    if artifact_format.encryption is not EncryptionType.NONE:
        pipeline.then(
            artifact_format.encryption.value,
            decryption_stage(artifact_format.encryption, config),
        )

    if not artifact_format.determined:
        pipeline.then("sniff", decompress_sniffed)
    elif artifact_format.compression is not Compression.NONE:
        pipeline.then(artifact_format.compression.value, DECODERS[artifact_format.compression])
    return pipeline


def open_artifact(path: Path, config: DbxConfig) -> ByteStream:
    """
    Stream the decoded (decrypted, decompressed) content of an artifact.

    Raises:
        ConfigurationError: If decryption key material is missing
    """
    artifact_format = classify_path(path)
    pipeline = restore_decode_pipeline(artifact_format, config)
    logger.debug(
        "restore_pipeline_composed",
        path=str(path),
        encryption=artifact_format.encryption.value,
        stages=pipeline.stage_names,
    )
    return pipeline.apply(read_file(path))


async def run_to_file(source: ByteStream, pipeline: Pipeline, dest: Path) -> int:
    """
    Drive ``source`` through ``pipeline`` into ``dest`` atomically.

    Returns:
        Bytes written to ``dest``
    """
    logger.debug("pipeline_started", pipeline=pipeline.name, stages=pipeline.stage_names)
    return await write_atomic(pipeline.apply(source), dest)
