"""Conversation compression that keeps the prompt within a bounded size."""

from __future__ import annotations

import logging
from collections.abc import Callable

from deepsentry.agent.models import Message
from deepsentry.llm.client import LLMRequestError

LOGGER = logging.getLogger(__name__)

Summarize = Callable[[list[Message]], str]

SUMMARY_SYSTEM_PROMPT = (
    "You are a meticulous note taker. Read the conversation below and compress it into a"
    " short recap of the session so far. Keep key system facts, discovered hosts and"
    " paths, commands that were executed, and any findings or errors."
)
SUMMARY_REQUEST = "Write the recap now."
SUMMARY_PREFIX = "[Session summary]:\n"


class HistoryController:
    """Replaces the oldest slice of the conversation with one summary message."""

    def __init__(self, summarize: Summarize, *, threshold: int = 15, chunk_size: int = 10) -> None:
        if chunk_size < 1 or threshold < chunk_size:
            msg = f"invalid compression window: threshold={threshold} chunk_size={chunk_size}"
            raise ValueError(msg)
        self.summarize = summarize
        self.threshold = threshold
        self.chunk_size = chunk_size

    def maybe_compress(self, history: list[Message]) -> bool:
        if len(history) <= self.threshold:
            return False

        oldest = history[: self.chunk_size]
        request = [
            Message(role="system", content=SUMMARY_SYSTEM_PROMPT),
            *oldest,
            Message(role="user", content=SUMMARY_REQUEST),
        ]
        try:
            summary = self.summarize(request)
        except LLMRequestError as exc:
            LOGGER.warning(
                "history_compression_failed",
                extra={"history_length": len(history), "error": str(exc)},
            )
            return False

        history[: self.chunk_size] = [Message(role="system", content=SUMMARY_PREFIX + summary)]
        LOGGER.info(
            "history_compressed",
            extra={"summarized": len(oldest), "history_length": len(history)},
        )
        return True
