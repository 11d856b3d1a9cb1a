"""Thin chat-completions client used by the agent loop and history compression."""

from __future__ import annotations

import http.client
import json
import logging
from collections.abc import Sequence
from urllib import request
from urllib.error import HTTPError, URLError

from deepsentry.agent.models import Message

LOGGER = logging.getLogger(__name__)

BASE_SYSTEM_PROMPT_PARTS = [
    "You are DeepSentry, an autonomous system administration and incident response agent.",
    (
        "Work toward the operator's goal one shell command at a time, reading the output of"
        " each command before choosing the next."
    ),
    "Prefer read-only inspection first; avoid destructive commands unless the goal needs them.",
    (
        "Always reply with a single JSON object with keys: thought (string), command"
        " (string, empty when no command is needed), risk_level (low|high), reason (string),"
        " is_finished (boolean), final_report (string, required when is_finished is true)."
    ),
    (
        "Inside JSON strings, double quotes must be escaped as \\\" and backslashes as \\\\."
        ' Wrong: {"command": "grep "eval" file"}. Right: {"command": "grep \\"eval\\" file"}.'
    ),
    (
        "Special commands: 'upload <local> <remote>' and 'download <remote> <local>' move"
        " whole files; prefix a command with 'local_run ' to run it on the operator's own"
        " machine instead of the target."
    ),
    "Never delete or move this tool's own configuration, binaries or reports directory.",
]


class LLMRequestError(RuntimeError):
    """The model endpoint could not produce a usable reply."""

    def __init__(self, message: str, *, status: int | None = None, body: str | None = None) -> None:
        super().__init__(message)
        self.status = status
        self.body = body


class LLMClient:
    """Small HTTP client for OpenAI-compatible chat completion endpoints."""

    def __init__(
        self,
        *,
        api_key: str | None,
        model: str,
        api_url: str = "https://api.deepseek.com/chat/completions",
        temperature: float = 0.1,
        timeout: float = 300.0,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.api_url = api_url
        self.temperature = temperature
        self.timeout = timeout

    def chat(self, messages: Sequence[Message]) -> str:
        """Send the conversation and return the first choice's message content."""
        payload = self._build_payload(messages)
        body = json.dumps(payload).encode("utf-8")
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        LOGGER.debug(
            "llm_request_prepared",
            extra={
                "api_url": self.api_url,
                "model": self.model,
                "payload_bytes": len(body),
                "messages": len(messages),
            },
        )

        req = request.Request(self.api_url, data=body, headers=headers, method="POST")
        try:
            with request.urlopen(req, timeout=self.timeout) as resp:  # noqa: S310
                raw_response = json.loads(resp.read().decode("utf-8"))
        except HTTPError as exc:
            body_text = self._read_error_body(exc)
            LOGGER.error(
                "llm_request_http_error",
                extra={
                    "api_url": self.api_url,
                    "model": self.model,
                    "http_status": exc.code,
                    "response_excerpt": (body_text or "")[:500],
                },
            )
            raise LLMRequestError(
                f"API error {exc.code}: {body_text or exc.reason}",
                status=exc.code,
                body=body_text,
            ) from exc
        except URLError as exc:
            LOGGER.error(
                "llm_request_transport_error",
                extra={"api_url": self.api_url, "model": self.model, "reason": str(exc.reason)},
            )
            raise LLMRequestError(f"Model request transport error: {exc.reason}") from exc
        except TimeoutError as exc:
            LOGGER.error(
                "llm_request_timeout",
                extra={"api_url": self.api_url, "model": self.model, "timeout_seconds": self.timeout},
            )
            raise LLMRequestError(f"Model request timed out after {self.timeout:.1f}s") from exc
        except (OSError, http.client.HTTPException) as exc:
            LOGGER.error(
                "llm_request_transport_error",
                extra={"api_url": self.api_url, "model": self.model, "reason": str(exc)},
            )
            raise LLMRequestError(f"Model request transport error: {exc}") from exc
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            LOGGER.error(
                "llm_response_parse_error",
                extra={"api_url": self.api_url, "model": self.model, "error": str(exc)},
            )
            raise LLMRequestError(f"Model response parsing error: {exc}") from exc

        return self._extract_content(raw_response)

    def _build_payload(self, messages: Sequence[Message]) -> dict[str, object]:
        return {
            "model": self.model,
            "messages": [message.to_payload() for message in messages],
            "stream": False,
            "temperature": self.temperature,
        }

    @staticmethod
    def _extract_content(payload: object) -> str:
        if not isinstance(payload, dict):
            raise LLMRequestError("Model response parsing error: expected top-level object")
        choices = payload.get("choices")
        if not isinstance(choices, list) or not choices:
            raise LLMRequestError("Model returned an empty response")
        first = choices[0]
        message = first.get("message") if isinstance(first, dict) else None
        content = message.get("content") if isinstance(message, dict) else None
        if not isinstance(content, str):
            raise LLMRequestError("Model response parsing error: missing message content")
        return content

    @staticmethod
    def _read_error_body(exc: HTTPError) -> str | None:
        if exc.fp is None:
            return None
        try:
            raw = exc.read()
        except OSError:
            return None
        if not raw:
            return None
        return raw.decode("utf-8", errors="replace").strip()


def build_system_prompt(runtime_context: str | None = None) -> str:
    parts = [*BASE_SYSTEM_PROMPT_PARTS]
    if runtime_context:
        parts.append(runtime_context)
    return "\n".join(parts)
