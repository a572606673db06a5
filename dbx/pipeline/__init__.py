# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""Streaming pipeline: process stages, codecs, encryption and composition."""

from dbx.pipeline.composer import (
    Pipeline,
    backup_pipeline,
    open_artifact,
    restore_decode_pipeline,
    run_to_file,
)
from dbx.pipeline.encryption import decrypt_stream, encrypt_stream, init_age_keys
from dbx.pipeline.formats import ArtifactFormat, Compression, classify_path, sniff_bytes
from dbx.pipeline.stages import ByteStream, ProcessResult, Stage, process_stream, run_process

__all__ = [
    "ArtifactFormat",
    "ByteStream",
    "Compression",
    "Pipeline",
    "ProcessResult",
    "Stage",
    "backup_pipeline",
    "classify_path",
    "decrypt_stream",
    "encrypt_stream",
    "init_age_keys",
    "open_artifact",
    "process_stream",
    "restore_decode_pipeline",
    "run_process",
    "run_to_file",
    "sniff_bytes",
]
