# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
dbx Encryption - age / gpg stream transforms.

Both tools run as pipeline processes reading stdin and writing stdout, so
plaintext never touches the disk. Key material is checked before any
process starts: a missing recipients or identity file is a configuration
problem, not a pipeline failure.
"""

import os
from pathlib import Path
from typing import Callable, Dict, List

import structlog

from dbx.config import DbxConfig, EncryptionType
from dbx.errors import (
    explain_missing_age_identity,
    explain_missing_age_recipients,
    explain_missing_gpg_key,
)
from dbx.exceptions import ConfigurationError, EncryptionError
from dbx.pipeline.stages import ByteStream, Stage, iter_bytes, process_stream, run_process, write_atomic

logger = structlog.get_logger()

AGE_EXECUTABLE = "age"
AGE_KEYGEN_EXECUTABLE = "age-keygen"
GPG_EXECUTABLE = "gpg"

StageFactory = Callable[[DbxConfig], Stage]


def _passthrough(config: DbxConfig) -> Stage:
    def stage(upstream: ByteStream) -> ByteStream:
        return upstream

    return stage


def _age_encrypt(config: DbxConfig) -> Stage:
    recipients = config.age_recipients_file
    if not recipients.is_file():
        raise ConfigurationError(
            explain_missing_age_recipients(str(recipients)),
            details={"path": str(recipients)},
        )
    argv = [AGE_EXECUTABLE, "-R", str(recipients), "-"]

    def stage(upstream: ByteStream) -> ByteStream:
        return process_stream(argv, upstream, name="age", error_cls=EncryptionError)

    return stage


def _age_decrypt(config: DbxConfig) -> Stage:
    identity = config.age_identity
    if not identity.is_file():
        raise ConfigurationError(
            explain_missing_age_identity(str(identity)),
            details={"path": str(identity)},
        )
    argv = [AGE_EXECUTABLE, "-d", "-i", str(identity), "-"]

    def stage(upstream: ByteStream) -> ByteStream:
        return process_stream(argv, upstream, name="age", error_cls=EncryptionError)

    return stage


def _gpg_base() -> List[str]:
    return [GPG_EXECUTABLE, "--batch", "--yes", "--quiet", "--output", "-"]


def _gpg_passphrase_args(config: DbxConfig) -> List[str]:
    passphrase_file = config.gpg_passphrase_file
    if passphrase_file is None:
        return []
    if not passphrase_file.is_file():
        raise ConfigurationError(
            f"GPG passphrase file not found: {passphrase_file}",
            details={"path": str(passphrase_file)},
        )
    return ["--pinentry-mode", "loopback", "--passphrase-file", str(passphrase_file)]


def _gpg_encrypt(config: DbxConfig) -> Stage:
    if config.gpg_recipient:
        argv = _gpg_base() + [
            "--trust-model", "always",
            "--encrypt", "--recipient", config.gpg_recipient,
        ]
    elif config.gpg_passphrase_file is not None:
        argv = _gpg_base() + _gpg_passphrase_args(config) + [
            "--symmetric", "--cipher-algo", "AES256",
        ]
    else:
        raise ConfigurationError(explain_missing_gpg_key())

    def stage(upstream: ByteStream) -> ByteStream:
        return process_stream(argv, upstream, name="gpg", error_cls=EncryptionError)

    return stage


def _gpg_decrypt(config: DbxConfig) -> Stage:
    # Asymmetric decryption uses the keyring / agent; symmetric needs the file
    argv = _gpg_base() + _gpg_passphrase_args(config) + ["--decrypt"]

    def stage(upstream: ByteStream) -> ByteStream:
        return process_stream(argv, upstream, name="gpg", error_cls=EncryptionError)

    return stage


_ENCRYPTORS: Dict[EncryptionType, StageFactory] = {
    EncryptionType.NONE: _passthrough,
    EncryptionType.AGE: _age_encrypt,
    EncryptionType.GPG: _gpg_encrypt,
}

_DECRYPTORS: Dict[EncryptionType, StageFactory] = {
    EncryptionType.NONE: _passthrough,
    EncryptionType.AGE: _age_decrypt,
    EncryptionType.GPG: _gpg_decrypt,
}


def encryption_stage(encryption: EncryptionType, config: DbxConfig) -> Stage:
    """
    Build the encryption stage for a type.

    Raises:
        ConfigurationError: If the key material for the type is missing
    """
    return _ENCRYPTORS[EncryptionType(encryption)](config)


def decryption_stage(encryption: EncryptionType, config: DbxConfig) -> Stage:
    """
    Build the decryption stage for a type.

    Raises:
        ConfigurationError: If the key material for the type is missing
    """
    return _DECRYPTORS[EncryptionType(encryption)](config)


def encrypt_stream(
    stream: ByteStream,
    encryption: EncryptionType,
    config: DbxConfig,
) -> ByteStream:
    """Encrypt a stream with the given method ('none' returns it unchanged)."""
    return encryption_stage(encryption, config)(stream)


def decrypt_stream(
    stream: ByteStream,
    encryption: EncryptionType,
    config: DbxConfig,
) -> ByteStream:
    """Decrypt a stream with the given method ('none' returns it unchanged)."""
    return decryption_stage(encryption, config)(stream)


async def _age_keygen(argv: List[str]) -> str:
    result = await run_process(argv, name="age-keygen", error_cls=EncryptionError)
    if result.returncode != 0:
        raise EncryptionError(
            f"age-keygen exited with status {result.returncode}",
            details={"stage": "age-keygen", "stderr": result.stderr},
        )
    return result.stdout


async def init_age_keys(config: DbxConfig) -> Path:
    """
    Make sure an age recipients file exists for new backups.

    An existing recipients file is left alone. Otherwise the public key is
    derived from the identity file, which is generated first (mode 0600)
    when it does not exist either. Nothing is ever overwritten.

    Returns:
        Path of the recipients file

    Raises:
        EncryptionError: age-keygen failed
    """
    recipients = config.age_recipients_file
    identity = config.age_identity
    if recipients.is_file():
        logger.info("age_recipients_exist", path=str(recipients))
        return recipients

    if not identity.is_file():
        identity.parent.mkdir(parents=True, exist_ok=True)
        await _age_keygen([AGE_KEYGEN_EXECUTABLE, "-o", str(identity)])
        os.chmod(identity, 0o600)
        logger.info("age_identity_generated", path=str(identity))

    public_key = (await _age_keygen([AGE_KEYGEN_EXECUTABLE, "-y", str(identity)])).strip()
    if not public_key:
        raise EncryptionError(
            f"age-keygen printed no public key for {identity}",
            details={"stage": "age-keygen", "stderr": ""},
        )

    await write_atomic(iter_bytes(public_key.encode() + b"\n"), recipients)
    logger.info("age_recipients_created", path=str(recipients), identity=str(identity))
    return recipients
