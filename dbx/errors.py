# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Human-friendly error message helpers for dbx.

These helpers centralize wording for common configuration errors so that
all modules present consistent, actionable messages.
"""


def explain_unknown_host(host: str, known: list[str]) -> str:
    """
    Explain that a host name is not present in the configuration.
    """

    listing = ", ".join(sorted(known)) if known else "none configured"
    return (
        f"Unknown host {host!r}. "
        f"Configured hosts: {listing}. Add it under 'hosts' in config.json."
    )


def explain_missing_age_recipients(path: str) -> str:
    """
    Explain that age encryption is enabled but no recipients file exists.
    """

    return (
        f"Age recipients file not found: {path}. "
        "Create one with 'age-keygen -y <identity> > <recipients>' or set DBX_AGE_RECIPIENTS."
    )


def explain_missing_age_identity(path: str) -> str:
    """
    Explain that an age-encrypted artifact cannot be decrypted without an identity.
    """

    return (
        f"Age identity file not found: {path}. "
        "Set DBX_AGE_IDENTITY or defaults.age_identity to your private key file."
    )


def explain_missing_gpg_key() -> str:
    """
    Explain that gpg encryption needs either a recipient or a passphrase file.
    """

    return (
        "GPG encryption is enabled but neither defaults.gpg_recipient nor "
        "defaults.gpg_passphrase_file is configured."
    )


def explain_invalid_encryption_env(value: str | None) -> str:
    """
    Explain that DBX_ENCRYPTION is invalid.
    """

    return (
        f"Invalid DBX_ENCRYPTION value: {value!r}. "
        "Expected one of: 'none', 'age', or 'gpg'."
    )


def explain_invalid_bool_env(name: str, value: str | None) -> str:
    """
    Explain that a boolean environment variable could not be parsed.
    """

    return (
        f"Invalid {name} value: {value!r}. "
        "Use one of: 1, 0, true, false, yes, no."
    )


def explain_missing_credentials(host: str) -> str:
    """
    Explain that no password source is configured for a host.
    """

    return (
        f"No credentials configured for host {host!r}. "
        "Set hosts.<name>.password_cmd (preferred) or hosts.<name>.password."
    )


def explain_unknown_engine(host: str) -> str:
    """
    Explain that the restore engine could not be determined.
    """

    return (
        f"Cannot determine the database engine for {host!r}. "
        "Pass engine='postgres' or engine='mysql', or keep the .meta.json sidecar next to the artifact."
    )
