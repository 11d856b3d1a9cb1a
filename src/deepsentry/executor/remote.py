"""Persistent remote shell executor over SSH."""

from __future__ import annotations

import logging
import posixpath
import threading
import time
from pathlib import Path

import paramiko

from deepsentry.agent.models import CommandResult

from .base import (
    Executor,
    TransferRequest,
    UsageError,
    copy_stream,
    has_local_marker,
    parse_transfer,
    strip_local_marker,
    transfer_summary,
)
from .local import run_local_process

LOGGER = logging.getLogger(__name__)

REMOTE_SHELLS = ("/bin/bash", "/bin/sh")
SESSION_SETUP_COMMAND = "export TERM=xterm; export LANG=en_US.UTF-8"
MARKER_PREFIX = "__END_"
MARKER_SUFFIX = "__"


class TransportError(ConnectionError):
    """The SSH connection or its shell session could not be established."""


class SSHExecutor(Executor):
    """One long-lived shell channel plus an SFTP sub-channel on a single SSH connection.

    Commands are framed with a per-call end marker because a raw shell channel has
    no other way to signal that a command finished. There is no timeout on that
    wait: a remote command that never returns blocks until the transport fails.
    """

    def __init__(
        self,
        client: paramiko.SSHClient,
        channel: paramiko.Channel,
        sftp: paramiko.SFTPClient,
        *,
        host: str = "",
        legacy_encoding: str = "gbk",
        transcode_output: bool = True,
    ) -> None:
        self._client = client
        self._channel = channel
        self._sftp = sftp
        self._stdout = channel.makefile("rb")
        self._lock = threading.Lock()
        self._last_token = 0
        self.host = host
        self.legacy_encoding = legacy_encoding
        self.transcode_output = transcode_output

    @classmethod
    def connect(
        cls,
        host: str,
        *,
        port: int = 22,
        username: str = "root",
        password: str | None = None,
        key_path: str | None = None,
        timeout: float = 10.0,
        legacy_encoding: str = "gbk",
        transcode_output: bool = True,
    ) -> SSHExecutor:
        client = paramiko.SSHClient()
        # targets are trusted by the operator; host keys are not pinned
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        connect_kwargs: dict[str, object] = {
            "hostname": host,
            "port": port,
            "username": username,
            "timeout": timeout,
            "banner_timeout": timeout,
            "auth_timeout": timeout,
            "allow_agent": False,
            "look_for_keys": False,
        }
        if key_path:
            connect_kwargs["key_filename"] = key_path
        else:
            connect_kwargs["password"] = password or ""

        try:
            client.connect(**connect_kwargs)
        except (paramiko.SSHException, OSError) as exc:
            client.close()
            msg = f"SSH connection to {username}@{host}:{port} failed: {exc}"
            raise TransportError(msg) from exc

        try:
            sftp = client.open_sftp()
        except (paramiko.SSHException, OSError) as exc:
            client.close()
            msg = f"SFTP initialization failed: {exc}"
            raise TransportError(msg) from exc

        last_error = "no shell available"
        for shell in REMOTE_SHELLS:
            try:
                channel = _open_shell_channel(client, shell)
            except (paramiko.SSHException, OSError) as exc:
                last_error = str(exc)
                continue
            executor = cls(
                client,
                channel,
                sftp,
                host=f"{username}@{host}:{port}",
                legacy_encoding=legacy_encoding,
                transcode_output=transcode_output,
            )
            probe = executor.run(SESSION_SETUP_COMMAND)
            if probe.error is None:
                LOGGER.info("ssh_session_started", extra={"host": executor.host, "shell": shell})
                return executor
            last_error = probe.error
            channel.close()

        sftp.close()
        client.close()
        msg = f"could not start a remote shell: {last_error}"
        raise TransportError(msg)

    @property
    def name(self) -> str:
        return "ssh"

    def is_remote(self) -> bool:
        return True

    def run(self, command: str) -> CommandResult:
        with self._lock:
            self.log_request(command)
            started = self.monotonic_now()
            if has_local_marker(command):
                result = self._run_local(strip_local_marker(command))
            else:
                result = self._run_remote(command.strip())
            result.duration_seconds = self.monotonic_now() - started
            self.log_result(result)
            return result

    def close(self) -> None:
        for resource in (self._sftp, self._channel, self._client):
            if resource is not None:
                resource.close()

    def next_marker(self) -> str:
        token = max(time.time_ns(), self._last_token + 1)
        self._last_token = token
        return f"{MARKER_PREFIX}{token}{MARKER_SUFFIX}"

    def _run_local(self, command: str) -> CommandResult:
        output, error, returncode = run_local_process(
            command,
            legacy_encoding=self.legacy_encoding,
            transcode_output=self.transcode_output,
        )
        if error is not None:
            text = f"[Local Exec Error]: {error}\nOutput:\n{output}"
        else:
            text = f"[Local Exec Success]:\n{output}"
        return CommandResult(command=command, output=text, returncode=returncode)

    def _run_remote(self, command: str) -> CommandResult:
        try:
            transfer = parse_transfer(command)
        except UsageError as exc:
            return CommandResult(command=command, output="", error=str(exc), remote=True)
        if transfer is not None:
            return self._transfer(command, transfer)
        return self._run_shell(command)

    def _run_shell(self, command: str) -> CommandResult:
        marker = self.next_marker()
        framed = f'{command}; echo ""; echo "{marker}:$?"\n'
        try:
            self._channel.sendall(framed.encode("utf-8"))
        except (paramiko.SSHException, OSError) as exc:
            return CommandResult(
                command=command, output="", error=f"failed to write command: {exc}", remote=True
            )

        lines: list[str] = []
        while True:
            try:
                raw = self._stdout.readline()
            except (paramiko.SSHException, OSError) as exc:
                return self._interrupted(command, lines, str(exc))
            if not raw:
                return self._interrupted(command, lines, "remote shell closed the channel")
            line = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw
            if marker in line:
                break
            lines.append(line)

        # the status echoed after the marker belongs to `echo ""`, not the command
        return CommandResult(command=command, output="".join(lines).strip(), remote=True)

    @staticmethod
    def _interrupted(command: str, lines: list[str], reason: str) -> CommandResult:
        LOGGER.error("ssh_read_interrupted", extra={"reason": reason})
        return CommandResult(
            command=command,
            output="".join(lines).strip(),
            error=f"read interrupted: {reason}",
            remote=True,
        )

    def _transfer(self, command: str, transfer: TransferRequest) -> CommandResult:
        try:
            if transfer.verb == "upload":
                size = self._upload(transfer.source, transfer.destination)
                label = "Upload succeeded"
            else:
                size = self._download(transfer.source, transfer.destination)
                label = "Download succeeded"
        except (paramiko.SSHException, OSError) as exc:
            return CommandResult(
                command=command, output="", error=f"{transfer.verb} failed: {exc}", remote=True
            )
        return CommandResult(
            command=command,
            output=transfer_summary(label, size, transfer.source, transfer.destination),
            returncode=0,
            bytes_transferred=size,
            remote=True,
        )

    def _upload(self, local_path: str, remote_path: str) -> int:
        with open(local_path, "rb") as src:
            sftp_makedirs(self._sftp, posixpath.dirname(remote_path))
            with self._sftp.open(remote_path, "wb") as dst:
                return copy_stream(src, dst)

    def _download(self, remote_path: str, local_path: str) -> int:
        with self._sftp.open(remote_path, "rb") as src:
            Path(local_path).parent.mkdir(parents=True, exist_ok=True)
            with open(local_path, "wb") as dst:
                return copy_stream(src, dst)


def _open_shell_channel(client: paramiko.SSHClient, shell: str) -> paramiko.Channel:
    transport = client.get_transport()
    if transport is None or not transport.is_active():
        msg = "SSH transport is not active"
        raise paramiko.SSHException(msg)
    channel = transport.open_session()
    channel.set_combine_stderr(True)
    try:
        channel.exec_command(shell)
    except paramiko.SSHException:
        channel.close()
        raise
    return channel


def sftp_makedirs(sftp: paramiko.SFTPClient, directory: str) -> None:
    """Create ``directory`` and any missing parents on the remote side."""
    if not directory or directory in {"/", "."}:
        return
    current = "/" if directory.startswith("/") else ""
    for part in directory.strip("/").split("/"):
        if not part:
            continue
        current = posixpath.join(current, part) if current else part
        try:
            sftp.stat(current)
        except OSError:
            sftp.mkdir(current)
