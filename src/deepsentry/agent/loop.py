"""Think / gate / execute / observe cycle that drives one operator task."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol

from deepsentry.agent.history import HistoryController
from deepsentry.agent.interpreter import ResponseInterpreter
from deepsentry.agent.models import (
    AgentAction,
    CommandResult,
    LoopResult,
    LoopState,
    Message,
    StepRecord,
)
from deepsentry.executor.base import Executor
from deepsentry.security.risk import RiskClassifier

LOGGER = logging.getLogger(__name__)

ConfirmCommand = Callable[[AgentAction], bool]
StepCallback = Callable[[StepRecord], None]

DECLINED_OBSERVATION = "The operator declined to run this command. Choose a safer alternative."
NO_COMMAND_OBSERVATION = (
    "No command was provided and the task is not marked finished. Provide the next command,"
    " or set is_finished to true with a final_report."
)


class ChatClient(Protocol):
    def chat(self, messages: list[Message]) -> str: ...


class AgentLoop:
    """Runs the propose/gate/execute/observe cycle until the model finishes."""

    def __init__(
        self,
        *,
        client: ChatClient,
        executor: Executor,
        classifier: RiskClassifier,
        system_prompt: str,
        history: HistoryController | None = None,
        interpreter: ResponseInterpreter | None = None,
        confirm_command: ConfirmCommand | None = None,
        on_step: StepCallback | None = None,
        log_dir: str | Path | None = None,
        max_steps: int = 30,
    ) -> None:
        self.client = client
        self.executor = executor
        self.classifier = classifier
        self.system_prompt = system_prompt
        self.history = history
        self.interpreter = interpreter or ResponseInterpreter(classifier)
        self.confirm_command = confirm_command
        self.on_step = on_step
        self.log_dir = Path(log_dir) if log_dir is not None else None
        self.max_steps = max_steps
        self.state = LoopState.FINISHED

    def run(self, goal: str) -> LoopResult:
        """Drive ``goal`` to completion.

        Errors from the model endpoint propagate; command failures do not, they
        are appended to the conversation for the model to react to.
        """
        conversation: list[Message] = [Message(role="user", content=goal)]
        steps: list[StepRecord] = []

        for index in range(1, self.max_steps + 1):
            self.state = LoopState.THINKING
            action = self._think(conversation)
            step = StepRecord(index=index, action=action)
            steps.append(step)

            if not action.command:
                if action.is_finished:
                    return self._finish(goal, action.final_report.text, steps, conversation, step)
                conversation.append(Message(role="user", content=NO_COMMAND_OBSERVATION))
                self._record(goal, step)
                continue

            self.state = LoopState.GATING
            if action.requires_confirmation and not self._gate(action, step):
                self.state = LoopState.OBSERVING
                conversation.append(
                    Message(role="user", content=format_observation(action.command, None))
                )
                if action.is_finished:
                    return self._finish(goal, action.final_report.text, steps, conversation, step)
                self._record(goal, step)
                continue

            self.state = LoopState.EXECUTING
            step.result = self.executor.run(action.command)

            self.state = LoopState.OBSERVING
            conversation.append(
                Message(role="user", content=format_observation(action.command, step.result))
            )
            if action.is_finished:
                return self._finish(goal, action.final_report.text, steps, conversation, step)
            self._record(goal, step)

        report = (
            f"Step budget exhausted after {self.max_steps} steps before the task was marked"
            " finished."
        )
        LOGGER.warning("step_budget_exhausted", extra={"goal": goal, "max_steps": self.max_steps})
        self.state = LoopState.FINISHED
        return LoopResult(
            goal=goal,
            final_report=report,
            state=self.state,
            steps=steps,
            history=conversation,
        )

    def _think(self, conversation: list[Message]) -> AgentAction:
        if self.history is not None:
            self.history.maybe_compress(conversation)
        messages = [Message(role="system", content=self.system_prompt), *conversation]
        raw = self.client.chat(messages)
        conversation.append(Message(role="assistant", content=raw))
        return self.interpreter.interpret(raw)

    def _gate(self, action: AgentAction, step: StepRecord) -> bool:
        approved = bool(self.confirm_command and self.confirm_command(action))
        step.approved = approved
        step.declined = not approved
        LOGGER.info(
            "command_gated",
            extra={"approved": approved, "reason": action.reason, "step": step.index},
        )
        if approved:
            self.classifier.record_approval(action.command)
        return approved

    def _finish(
        self,
        goal: str,
        report: str,
        steps: list[StepRecord],
        conversation: list[Message],
        step: StepRecord,
    ) -> LoopResult:
        self.state = LoopState.FINISHED
        self._record(goal, step)
        return LoopResult(
            goal=goal,
            final_report=report,
            state=self.state,
            steps=steps,
            history=conversation,
        )

    def _record(self, goal: str, step: StepRecord) -> None:
        if self.on_step is not None:
            self.on_step(step)
        if self.log_dir is None:
            return

        self.log_dir.mkdir(parents=True, exist_ok=True)
        day_file = self.log_dir / f"session-{datetime.now(timezone.utc).date().isoformat()}.log"
        result = step.result
        entry = {
            "log_version": 1,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "goal": goal,
            "model": getattr(self.client, "model", None),
            "executor": getattr(self.executor, "name", self.executor.__class__.__name__),
            "step_index": step.index,
            "state": self.state.value,
            "thought": step.action.thought,
            "command": step.action.command,
            "risk_level": step.action.risk_level,
            "reason": step.action.reason,
            "approved": step.approved,
            "declined": step.declined,
            "output": result.output if result else None,
            "error": result.error if result else None,
            "returncode": result.returncode if result else None,
            "duration": result.duration_seconds if result else None,
            "is_finished": step.action.is_finished,
        }
        with day_file.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(entry, ensure_ascii=False) + "\n")


def format_observation(command: str, result: CommandResult | None) -> str:
    """Render an executed (or declined) command as the next user message."""
    if result is None:
        return f"Command: {command}\nResult: {DECLINED_OBSERVATION}"
    lines = [f"Command: {command}", "Output:", result.output or "(no output)"]
    if result.error:
        lines.append(f"Error: {result.error}")
    return "\n".join(lines)
