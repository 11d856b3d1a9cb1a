"""Local process executor."""

from __future__ import annotations

import os
import re
import subprocess
from pathlib import Path

from deepsentry.agent.models import CommandResult

from .base import (
    NO_OUTPUT_MARKER,
    Executor,
    UsageError,
    copy_stream,
    has_local_marker,
    parse_transfer,
    strip_local_marker,
    transfer_summary,
)
from .encoding import decode_output

_POWERSHELL_PREFIX = re.compile(r"^(?:powershell|pwsh)(?:\.exe)?\b\s*", re.IGNORECASE)
_POWERSHELL_COMMAND_FLAG = re.compile(r"^-(?:command|c)\s+", re.IGNORECASE)


class LocalExecutor(Executor):
    """Runs commands on this machine through the platform shell."""

    def __init__(self, *, legacy_encoding: str = "gbk", transcode_output: bool = True) -> None:
        self.legacy_encoding = legacy_encoding
        self.transcode_output = transcode_output

    @property
    def name(self) -> str:
        return "local"

    def is_remote(self) -> bool:
        return False

    def run(self, command: str) -> CommandResult:
        self.log_request(command)
        started = self.monotonic_now()
        if has_local_marker(command):
            command = strip_local_marker(command)
        command = command.strip()

        try:
            transfer = parse_transfer(command)
        except UsageError as exc:
            result = CommandResult(command=command, output="", error=str(exc))
            self.log_result(result)
            return result

        if transfer is not None:
            try:
                size = copy_local_file(transfer.source, transfer.destination)
            except OSError as exc:
                result = CommandResult(
                    command=command,
                    output="",
                    error=f"file transfer failed: {exc}",
                    duration_seconds=self.monotonic_now() - started,
                )
            else:
                result = CommandResult(
                    command=command,
                    output=transfer_summary(
                        "File transfer succeeded", size, transfer.source, transfer.destination
                    ),
                    returncode=0,
                    bytes_transferred=size,
                    duration_seconds=self.monotonic_now() - started,
                )
            self.log_result(result)
            return result

        output, error, returncode = run_local_process(
            command,
            legacy_encoding=self.legacy_encoding,
            transcode_output=self.transcode_output,
        )
        if not output and error is None:
            output = NO_OUTPUT_MARKER
        result = CommandResult(
            command=command,
            output=output,
            error=error,
            returncode=returncode,
            duration_seconds=self.monotonic_now() - started,
        )
        self.log_result(result)
        return result


def build_local_argv(command: str, *, windows: bool) -> list[str]:
    if not windows:
        return ["sh", "-c", f"{command} 2>&1"]

    prefix = _POWERSHELL_PREFIX.match(command)
    if prefix is None:
        return ["cmd", "/c", command]

    script = command[prefix.end() :].strip()
    script = _POWERSHELL_COMMAND_FLAG.sub("", script, count=1)
    script = script.strip(" \"'")
    return ["powershell", "-NoProfile", "-NonInteractive", "-Command", script]


def run_local_process(
    command: str,
    *,
    legacy_encoding: str = "gbk",
    transcode_output: bool = True,
) -> tuple[str, str | None, int | None]:
    """Run ``command`` through the platform shell with stderr merged into stdout."""
    windows = os.name == "nt"
    argv = build_local_argv(command, windows=windows)
    try:
        process = subprocess.run(
            argv,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            check=False,
        )
    except OSError as exc:
        return "", f"failed to start {argv[0]}: {exc}", None

    output = decode_output(
        process.stdout,
        windows=windows,
        legacy_encoding=legacy_encoding,
        transcode=transcode_output,
    ).strip()
    error = None if process.returncode == 0 else f"exit status {process.returncode}"
    return output, error, process.returncode


def copy_local_file(source: str, destination: str) -> int:
    Path(destination).parent.mkdir(parents=True, exist_ok=True)
    with open(source, "rb") as src, open(destination, "wb") as dst:
        return copy_stream(src, dst)
