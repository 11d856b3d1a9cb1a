from __future__ import annotations

import json

import pytest

from deepsentry.agent.history import SUMMARY_PREFIX, HistoryController
from deepsentry.agent.loop import DECLINED_OBSERVATION, AgentLoop, format_observation
from deepsentry.agent.models import CommandResult, LoopState, Message
from deepsentry.llm.client import LLMRequestError
from deepsentry.security.risk import RiskClassifier


def _reply(command: str = "", *, finished: bool = False, report: str = "", thought: str = "t") -> str:
    return json.dumps(
        {
            "thought": thought,
            "command": command,
            "risk_level": "low",
            "is_finished": finished,
            "final_report": report,
        }
    )


class FakeClient:
    model = "fake-model"

    def __init__(self, replies: list[str]) -> None:
        self.replies = list(replies)
        self.requests: list[list[Message]] = []

    def chat(self, messages: list[Message]) -> str:
        self.requests.append(list(messages))
        return self.replies.pop(0)


class FakeExecutor:
    name = "fake"

    def __init__(self) -> None:
        self.commands: list[str] = []

    def run(self, command: str) -> CommandResult:
        self.commands.append(command)
        return CommandResult(command=command, output=f"ran {command}", returncode=0)

    def is_remote(self) -> bool:
        return False

    def close(self) -> None:
        return None


class RecordingClassifier(RiskClassifier):
    def __init__(self) -> None:
        super().__init__()
        self.approved: list[str] = []

    def record_approval(self, command: str) -> None:
        self.approved.append(command)
        super().record_approval(command)


def _loop(client: FakeClient, executor: FakeExecutor, **kwargs: object) -> AgentLoop:
    return AgentLoop(
        client=client,
        executor=executor,
        classifier=kwargs.pop("classifier", RiskClassifier()),
        system_prompt="system prompt",
        **kwargs,
    )


def test_executes_then_finishes_with_report() -> None:
    client = FakeClient(
        [_reply("uname -a"), _reply(finished=True, report="Kernel 6.1, nothing unusual")]
    )
    executor = FakeExecutor()

    result = _loop(client, executor).run("check the kernel")

    assert executor.commands == ["uname -a"]
    assert result.final_report == "Kernel 6.1, nothing unusual"
    assert result.state is LoopState.FINISHED
    assert len(result.steps) == 2
    assert result.steps[0].result is not None
    assert client.requests[0][0] == Message(role="system", content="system prompt")
    assert client.requests[0][1] == Message(role="user", content="check the kernel")
    observation = client.requests[1][-1]
    assert observation.role == "user"
    assert "ran uname -a" in observation.content


def test_command_with_finished_flag_runs_before_finishing() -> None:
    client = FakeClient([_reply("df -h", finished=True, report="disks ok")])
    executor = FakeExecutor()

    result = _loop(client, executor).run("disks")

    assert executor.commands == ["df -h"]
    assert result.final_report == "disks ok"


def test_high_risk_command_runs_after_approval() -> None:
    client = FakeClient([_reply("rm -rf /tmp/cache"), _reply(finished=True, report="cleaned")])
    executor = FakeExecutor()
    classifier = RecordingClassifier()
    prompts: list[str] = []

    def confirm(action) -> bool:
        prompts.append(action.reason)
        return True

    result = _loop(client, executor, classifier=classifier, confirm_command=confirm).run("clean")

    assert executor.commands == ["rm -rf /tmp/cache"]
    assert classifier.approved == ["rm -rf /tmp/cache"]
    assert result.steps[0].approved is True
    assert result.steps[0].action.risk_level == "high"
    assert "rm" in prompts[0]
    assert classifier.classify("rm -rf /tmp/cache").level == "low"


def test_declined_command_is_not_executed_and_model_is_told() -> None:
    client = FakeClient([_reply("shutdown -h now"), _reply(finished=True, report="stopped")])
    executor = FakeExecutor()

    result = _loop(client, executor, confirm_command=lambda _action: False).run("power off")

    assert executor.commands == []
    assert result.steps[0].declined is True
    assert result.steps[0].result is None
    assert DECLINED_OBSERVATION in client.requests[1][-1].content


def test_high_risk_without_confirmation_callback_is_declined() -> None:
    client = FakeClient([_reply("reboot"), _reply(finished=True, report="skipped")])
    executor = FakeExecutor()

    result = _loop(client, executor).run("reboot the box")

    assert executor.commands == []
    assert result.steps[0].declined is True


def test_missing_command_without_finish_prompts_model_again() -> None:
    client = FakeClient([_reply(), _reply(finished=True, report="done")])
    executor = FakeExecutor()

    result = _loop(client, executor).run("anything")

    assert executor.commands == []
    assert "No command was provided" in client.requests[1][-1].content
    assert result.final_report == "done"


def test_model_errors_propagate() -> None:
    class FailingClient:
        def chat(self, _messages: list[Message]) -> str:
            raise LLMRequestError("API error 401: bad key", status=401, body="bad key")

    loop = AgentLoop(
        client=FailingClient(),
        executor=FakeExecutor(),
        classifier=RiskClassifier(),
        system_prompt="p",
    )

    with pytest.raises(LLMRequestError) as excinfo:
        loop.run("goal")

    assert excinfo.value.status == 401


def test_step_budget_exhaustion_returns_report() -> None:
    client = FakeClient([_reply("uptime")] * 3)
    executor = FakeExecutor()

    result = _loop(client, executor, max_steps=3).run("loop forever")

    assert executor.commands == ["uptime"] * 3
    assert "Step budget exhausted after 3 steps" in result.final_report
    assert result.state is LoopState.FINISHED


def test_history_is_compressed_before_thinking() -> None:
    replies = [_reply(f"echo {index}") for index in range(8)]
    replies.append(_reply(finished=True, report="done"))
    client = FakeClient(replies)
    summaries: list[int] = []

    def summarize(messages: list[Message]) -> str:
        summaries.append(len(messages))
        return "earlier echoes"

    history = HistoryController(summarize, threshold=15, chunk_size=10)

    result = _loop(client, FakeExecutor(), history=history).run("echo a lot")

    assert summaries == [12]
    assert result.history[0].content == SUMMARY_PREFIX + "earlier echoes"
    assert all(len(request) <= 17 for request in client.requests)


def test_on_step_callback_and_session_log(tmp_path) -> None:
    client = FakeClient([_reply("whoami"), _reply(finished=True, report="root")])
    seen: list[int] = []

    _loop(client, FakeExecutor(), on_step=lambda step: seen.append(step.index), log_dir=tmp_path).run(
        "who am i"
    )

    assert seen == [1, 2]
    log_files = list(tmp_path.glob("session-*.log"))
    assert len(log_files) == 1
    entries = [json.loads(line) for line in log_files[0].read_text(encoding="utf-8").splitlines()]
    assert [entry["step_index"] for entry in entries] == [1, 2]
    assert entries[0]["command"] == "whoami"
    assert entries[0]["output"] == "ran whoami"
    assert entries[0]["model"] == "fake-model"
    assert entries[0]["executor"] == "fake"
    assert entries[1]["is_finished"] is True


def test_format_observation() -> None:
    failed = CommandResult(command="ls x", output="", error="exit status 2", returncode=2)

    assert format_observation("ls x", failed) == "Command: ls x\nOutput:\n(no output)\nError: exit status 2"
    assert format_observation("rm x", None).endswith(DECLINED_OBSERVATION)


def test_declined_final_command_still_finishes_with_report() -> None:
    client = FakeClient([_reply("reboot", finished=True, report="patched; reboot pending")])
    executor = FakeExecutor()

    result = _loop(client, executor, confirm_command=lambda _action: False).run("patch")

    assert executor.commands == []
    assert len(client.requests) == 1
    assert result.steps[0].declined is True
    assert result.final_report == "patched; reboot pending"
    assert result.state is LoopState.FINISHED
    assert DECLINED_OBSERVATION in result.history[-1].content
