"""Executor contract and the command surface shared by both backends."""

from __future__ import annotations

import abc
import logging
import re
import time
from dataclasses import dataclass
from typing import BinaryIO, Literal

from deepsentry.agent.models import LOCAL_RUN_MARKER, TRANSFER_VERBS, CommandResult

LOGGER = logging.getLogger(__name__)

NO_OUTPUT_MARKER = "(command succeeded, no output)"

_SECRET_PATTERNS = [
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"(--?(?:password|token|secret|api[-_]?key)\s+)([^\s]+)",
        r"((?:password|token|secret|api[-_]?key)\s*=\s*)([^\s]+)",
    )
]


class UsageError(ValueError):
    """A special command was given the wrong number of arguments."""


@dataclass(frozen=True, slots=True)
class TransferRequest:
    verb: Literal["upload", "download"]
    source: str
    destination: str


def parse_transfer(command: str) -> TransferRequest | None:
    """Return the transfer described by ``command`` or ``None`` for plain shell text."""
    parts = command.split()
    if not parts or parts[0] not in TRANSFER_VERBS or not command.startswith(f"{parts[0]} "):
        return None
    if len(parts) != 3:
        msg = f"usage: {parts[0]} <source> <destination>"
        raise UsageError(msg)
    verb: Literal["upload", "download"] = "upload" if parts[0] == "upload" else "download"
    return TransferRequest(verb=verb, source=parts[1], destination=parts[2])


def has_local_marker(command: str) -> bool:
    return LOCAL_RUN_MARKER in command


def strip_local_marker(command: str) -> str:
    return command.replace(LOCAL_RUN_MARKER, "").strip()


def copy_stream(source: BinaryIO, destination: BinaryIO, *, chunk_size: int = 32768) -> int:
    """Copy everything from ``source`` to ``destination`` and return the byte count."""
    total = 0
    while True:
        chunk = source.read(chunk_size)
        if not chunk:
            return total
        destination.write(chunk)
        total += len(chunk)


def transfer_summary(label: str, size: int, source: str, destination: str) -> str:
    return f"{label} (Bytes: {size}): {source} -> {destination}"


class Executor(abc.ABC):
    """Runs one command at a time and reports output alongside any error."""

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Friendly backend name."""

    @abc.abstractmethod
    def run(self, command: str) -> CommandResult:
        """Execute ``command`` and return a normalized result; never raises for command failures."""

    @abc.abstractmethod
    def is_remote(self) -> bool:
        """Whether commands reach a remote host."""

    def close(self) -> None:
        """Release held resources."""

    def __enter__(self) -> Executor:
        return self

    def __exit__(self, *_exc: object) -> None:
        self.close()

    def log_request(self, command: str) -> None:
        LOGGER.info(
            "command_request",
            extra={"executor": self.name, "command": sanitize_command(command)},
        )

    def log_result(self, result: CommandResult) -> None:
        LOGGER.info(
            "command_result",
            extra={
                "executor": self.name,
                "returncode": result.returncode,
                "error": result.error,
                "duration_seconds": round(result.duration_seconds, 4),
                "output_length": len(result.output),
                "bytes_transferred": result.bytes_transferred,
            },
        )

    @staticmethod
    def monotonic_now() -> float:
        return time.monotonic()


def sanitize_command(command: str) -> str:
    sanitized = command
    for pattern in _SECRET_PATTERNS:
        sanitized = pattern.sub(r"\1***", sanitized)
    return sanitized
