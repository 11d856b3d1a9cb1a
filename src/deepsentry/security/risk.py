"""Command risk classification backed by a session-scoped approval cache."""

from __future__ import annotations

import hashlib
import logging
import re
import threading
from collections.abc import Iterator
from contextlib import contextmanager

from deepsentry.agent.models import LOCAL_RUN_MARKER, RiskVerdict

LOGGER = logging.getLogger(__name__)

_SHELL_WRAPPERS = (
    "/bin/sh -c",
    "sh -c",
    "/bin/bash -c",
    "bash -c",
    "cmd /c",
    "powershell -Command",
    "powershell -c",
)

_COMPOUND_SEPARATOR = re.compile(r"&&|;|\|\|")

LOW_RISK_VERBS = frozenset(
    {
        # browsing and viewing
        "ls", "dir", "pwd", "cd", "cat", "echo", "head", "tail", "more", "less", "tree",
        "find", "grep", "findstr", "stat", "file", "where", "which",
        # system and network inspection
        "whoami", "id", "hostname", "uname", "uptime", "date", "w",
        "ps", "top", "tasklist", "free", "df", "du",
        "ipconfig", "ifconfig", "ip", "netstat", "ss",
        "ping", "arp", "route", "nslookup", "dig", "wmic", "ver",
        # non-destructive file operations
        "mkdir", "touch", "type",
        # powershell read-only cmdlets and aliases
        "get-childitem", "gci", "get-content", "gc", "get-location", "gl",
        "get-process", "gps", "get-service", "gsv", "get-date", "get-host",
        "write-host", "write-output", "select-object", "where-object", "foreach-object",
    }
)

HIGH_RISK_VERBS = frozenset(
    {
        # destructive
        "rm", "del", "erase", "rmdir", "mv", "move", "cp", "copy",
        "mkfs", "format", "fdisk", "dd", "shred", "wipe",
        # system control and privileges
        "reboot", "shutdown", "halt", "poweroff", "init",
        "systemctl", "service", "sc", "reg",
        "chmod", "chown", "chgrp", "attrib",
        "useradd", "usermod", "userdel", "passwd", "sudo", "su",
        # process control and network transfer
        "kill", "pkill", "killall", "taskkill", "wget", "curl", "nc", "ncat",
        # script injection
        "invoke-expression", "iex", "start-process",
    }
)


def fingerprint(command: str) -> str:
    """Digest of the trimmed command text used for cache membership."""
    return hashlib.sha256(command.strip().encode("utf-8")).hexdigest()


class _ReadWriteLock:
    """Many concurrent readers, one exclusive writer."""

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writing = False

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writing:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            while self._writing or self._readers:
                self._cond.wait()
            self._writing = True
        try:
            yield
        finally:
            with self._cond:
                self._writing = False
                self._cond.notify_all()


class ApprovalCache:
    """Fingerprints of commands the operator approved during this process run."""

    def __init__(self) -> None:
        self._approved: set[str] = set()
        self._lock = _ReadWriteLock()

    def add(self, command: str) -> None:
        command = command.strip()
        if not command:
            return
        digest = fingerprint(command)
        with self._lock.write():
            self._approved.add(digest)

    def __contains__(self, command: object) -> bool:
        if not isinstance(command, str) or not command.strip():
            return False
        digest = fingerprint(command)
        with self._lock.read():
            return digest in self._approved

    def __len__(self) -> int:
        with self._lock.read():
            return len(self._approved)


class RiskClassifier:
    """Fail-closed verb policy for proposed shell commands."""

    def __init__(self, cache: ApprovalCache | None = None) -> None:
        self.cache = cache if cache is not None else ApprovalCache()

    def classify(self, command: str) -> RiskVerdict:
        command = command.strip()
        if not command:
            return RiskVerdict("low", "empty command")

        if command in self.cache:
            return RiskVerdict("low", "previously authorized this session")

        analyzed = command
        if analyzed.startswith(LOCAL_RUN_MARKER):
            analyzed = analyzed[len(LOCAL_RUN_MARKER) :]
        analyzed = strip_shell_wrapper(analyzed)

        if ">" in analyzed:
            return RiskVerdict("high", "output redirection (>) may overwrite files")

        for sub_command in _COMPOUND_SEPARATOR.split(analyzed):
            verdict = self._classify_single(sub_command)
            if verdict.is_high:
                return verdict

        return RiskVerdict("low", "read-only operation")

    def record_approval(self, command: str) -> None:
        self.cache.add(command)
        LOGGER.info("command_approved", extra={"approved_commands": len(self.cache)})

    @staticmethod
    def _classify_single(sub_command: str) -> RiskVerdict:
        parts = sub_command.split()
        if not parts:
            return RiskVerdict("low", "")

        verb = parts[0].lower().strip("\"'")
        if verb in LOW_RISK_VERBS:
            return RiskVerdict("low", "read-only operation")
        if verb in HIGH_RISK_VERBS:
            return RiskVerdict("high", f"sensitive instruction: {verb}")
        return RiskVerdict("high", f"unknown instruction ({verb}), requires manual confirmation")


def strip_shell_wrapper(command: str) -> str:
    """Remove one shell launcher prefix and one layer of surrounding quotes."""
    command = command.strip()
    lowered = command.lower()
    for prefix in _SHELL_WRAPPERS:
        if len(command) > len(prefix) and lowered.startswith(prefix.lower()):
            command = command[len(prefix) :].strip()
            break

    if len(command) >= 2 and command[0] == command[-1] and command[0] in {'"', "'"}:
        command = command[1:-1]
    return command.strip()
