"""Turns raw model text into an :class:`AgentAction`, repairing it where possible."""

from __future__ import annotations

import enum
import json
import logging
import re

from deepsentry.agent.models import AgentAction, FinalReport, RiskLevel
from deepsentry.security.risk import RiskClassifier

LOGGER = logging.getLogger(__name__)

COMMAND_KEY = '"command"'

PLACEHOLDER_REPORTS = frozenset(
    {"done", "finished", "complete", "completed", "task complete", "task completed", "完成", "任务完成"}
)

_ESCAPES = {'"': '"', "\\": "\\", "/": "/", "n": "\n", "r": "\r", "t": "\t"}
_VALUE_TERMINATORS = {",", "}"}
# a backslash-pipe that is not itself escaped
_BARE_PIPE_ESCAPE = re.compile(r"(?<!\\)((?:\\\\)*)\\\|")


class _ScanState(enum.Enum):
    NORMAL = "normal"
    ESCAPE = "escape"


class CommandScanner:
    """Two-state scanner that pulls the ``command`` string out of broken JSON.

    Only an unescaped quote that is followed by ``,``, ``}`` or the end of the
    text closes the value; any other bare quote is kept as part of the command.
    """

    def __init__(self, key: str = COMMAND_KEY) -> None:
        self.key = key

    def extract(self, text: str) -> str | None:
        start = self._value_start(text)
        if start is None:
            return None

        state = _ScanState.NORMAL
        chars: list[str] = []
        for index in range(start, len(text)):
            char = text[index]
            if state is _ScanState.ESCAPE:
                replacement = _ESCAPES.get(char)
                chars.append(replacement if replacement is not None else "\\" + char)
                state = _ScanState.NORMAL
            elif char == "\\":
                state = _ScanState.ESCAPE
            elif char == '"' and self._closes_value(text, index + 1):
                return "".join(chars)
            else:
                chars.append(char)
        return None

    def _value_start(self, text: str) -> int | None:
        key_index = text.find(self.key)
        if key_index == -1:
            return None
        cursor = key_index + len(self.key)
        while cursor < len(text) and (text[cursor].isspace() or text[cursor] == ":"):
            cursor += 1
        if cursor >= len(text) or text[cursor] != '"':
            return None
        return cursor + 1

    @staticmethod
    def _closes_value(text: str, position: int) -> bool:
        rest = text[position:].lstrip()
        return not rest or rest[0] in _VALUE_TERMINATORS


class ResponseInterpreter:
    """Strict parse, bracket repair, then character scan; never raises."""

    def __init__(self, classifier: RiskClassifier, scanner: CommandScanner | None = None) -> None:
        self.classifier = classifier
        self.scanner = scanner or CommandScanner()

    def interpret(self, raw_text: str) -> AgentAction:
        cleaned = clean_model_text(raw_text)
        parsed, error = _parse_object(cleaned)

        if parsed is None and not cleaned.rstrip().endswith("}"):
            parsed, _ = _parse_object(cleaned + "}")
            if parsed is not None:
                LOGGER.info("model_response_bracket_repaired")

        if parsed is None:
            command = self.scanner.extract(cleaned)
            if not command:
                LOGGER.warning("model_response_unreadable", extra={"error": error})
                return AgentAction(
                    thought="Model response could not be read.",
                    is_finished=True,
                    final_report=FinalReport(
                        text=f"Failed to parse model response: {error}\nRaw response:\n{raw_text}"
                    ),
                )
            LOGGER.info("model_response_scanned", extra={"command_length": len(command)})
            parsed = {
                "command": command,
                "thought": (
                    "Model output was not valid JSON; the command was recovered by "
                    "character scanning."
                ),
            }

        return self._to_action(parsed)

    def _to_action(self, parsed: dict[str, object]) -> AgentAction:
        command = _coerce_command(parsed.get("command"))
        if not command:
            command = _coerce_command(parsed.get("cmd"))

        thought = _coerce_text(parsed.get("thought")) or _coerce_text(parsed.get("explanation"))
        if not thought:
            thought = infer_thought(command)

        risk_level = _coerce_risk(parsed.get("risk_level"))
        reason = _coerce_text(parsed.get("reason"))
        if command:
            verdict = self.classifier.classify(command)
            risk_level, reason = verdict.level, verdict.reason

        is_finished = parsed.get("is_finished") is True
        report = FinalReport.from_value(parsed.get("final_report"))
        if is_finished and _is_placeholder(report.text):
            report = FinalReport(
                text=f"Task summary: {thought}"
                if thought
                else "Task ended (see the execution log above for details)."
            )

        return AgentAction(
            thought=thought,
            command=command,
            risk_level=risk_level,
            reason=reason,
            is_finished=is_finished,
            final_report=report,
        )


def clean_model_text(text: str) -> str:
    """Strip markdown fences and pre-repair shell escapes JSON rejects."""
    text = text.strip()
    for prefix in ("```json", "```"):
        if text.startswith(prefix):
            text = text[len(prefix) :]
            break
    if text.endswith("```"):
        text = text[:-3]
    return _BARE_PIPE_ESCAPE.sub(r"\1\\\\|", text.strip())


def infer_thought(command: str) -> str:
    if command.startswith("upload"):
        return "Uploading a file to the target host..."
    if command.startswith("download"):
        return "Downloading a file for local analysis..."
    if not command:
        return "Analyzing..."
    return f"Executing: {command}"


def _parse_object(text: str) -> tuple[dict[str, object] | None, str | None]:
    try:
        value = json.loads(text)
    except json.JSONDecodeError as exc:
        return None, str(exc)
    if not isinstance(value, dict):
        return None, "expected a JSON object"
    return {str(key): item for key, item in value.items()}, None


def _coerce_command(value: object) -> str:
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, list):
        commands = [item for item in value if isinstance(item, str) and item.strip()]
        if commands:
            return commands[-1].strip()
    return ""


def _coerce_text(value: object) -> str:
    if isinstance(value, str):
        return value.strip()
    return ""


def _coerce_risk(value: object) -> RiskLevel:
    if isinstance(value, str) and value.strip().lower() == "high":
        return "high"
    return "low"


def _is_placeholder(report: str) -> bool:
    normalized = report.strip().lower().rstrip(".!")
    return not normalized or normalized in PLACEHOLDER_REPORTS
