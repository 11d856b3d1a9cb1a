"""Execution backends."""

from __future__ import annotations

from deepsentry.config import AppConfig

from .base import NO_OUTPUT_MARKER, Executor, TransferRequest, UsageError, parse_transfer
from .local import LocalExecutor
from .remote import SSHExecutor, TransportError


def create_executor(config: AppConfig) -> Executor:
    """Connect to the configured SSH host, or fall back to local execution."""
    if config.ssh_host:
        host, port = config.ssh_address
        return SSHExecutor.connect(
            host,
            port=port,
            username=config.ssh_user,
            password=config.ssh_password,
            key_path=config.ssh_key_path,
            timeout=config.connect_timeout,
            legacy_encoding=config.legacy_encoding,
            transcode_output=config.transcode_output,
        )
    return LocalExecutor(
        legacy_encoding=config.legacy_encoding,
        transcode_output=config.transcode_output,
    )


__all__ = [
    "NO_OUTPUT_MARKER",
    "Executor",
    "LocalExecutor",
    "SSHExecutor",
    "TransferRequest",
    "TransportError",
    "UsageError",
    "create_executor",
    "parse_transfer",
]
