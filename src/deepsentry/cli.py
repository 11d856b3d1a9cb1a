"""Command-line interface for deepsentry."""

from __future__ import annotations

import argparse
import logging
import os
import platform
from typing import cast

from .agent.history import HistoryController
from .agent.loop import AgentLoop
from .agent.models import AgentAction, StepRecord
from .config import AppConfig
from .executor import TransportError, create_executor
from .llm.client import LLMClient, LLMRequestError, build_system_prompt
from .security.risk import RiskClassifier

LOGGER = logging.getLogger(__name__)


class CLIArgs(argparse.Namespace):
    goal: str | None
    config_file: str | None
    ssh_host: str | None
    verbose: bool


def build_runtime_context(config: AppConfig) -> str:
    """Describe where commands will run so the model picks suitable syntax."""
    lines = [
        "Runtime environment context:",
        f"- operator_os: {platform.system()} {platform.release()}",
        f"- platform: {platform.platform()}",
        f"- os_name: {os.name}",
    ]
    if config.ssh_host:
        lines.append(f"- mode: remote (ssh {config.ssh_user}@{config.ssh_host})")
        lines.append("- commands run in a persistent remote shell; use local_run for local ones")
    else:
        lines.append("- mode: local")
    return "\n".join(lines)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="deepsentry", description="Autonomous remote administration agent"
    )
    parser.add_argument("--config", dest="config_file", help="Path to a JSON config file.")
    parser.add_argument(
        "--ssh-host",
        dest="ssh_host",
        help="Target host (host or host:port). Overrides the configured ssh_host.",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")
    parser.add_argument("goal", nargs="?", help="Goal for the agent session")
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = cast(CLIArgs, parser.parse_args(argv))
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    config = AppConfig.from_env(args.config_file)
    if args.ssh_host:
        config.ssh_host = args.ssh_host

    goal = args.goal or _prompt("Goal: ")
    if not goal:
        print("No goal provided.")
        return 1

    try:
        executor = create_executor(config)
    except TransportError as exc:
        print(f"Connection failed: {exc}")
        return 1
    print(f"Mode: {'remote ' + config.ssh_host if executor.is_remote() else 'local'}")

    client = LLMClient(
        api_key=config.api_key,
        model=config.model,
        api_url=config.api_url,
        temperature=config.temperature,
        timeout=config.llm_timeout,
    )
    classifier = RiskClassifier()
    loop = AgentLoop(
        client=client,
        executor=executor,
        classifier=classifier,
        system_prompt=build_system_prompt(build_runtime_context(config)),
        history=HistoryController(
            client.chat,
            threshold=config.history_threshold,
            chunk_size=min(config.history_chunk, config.history_threshold),
        ),
        confirm_command=_confirm_command,
        on_step=_print_step,
        log_dir=config.log_dir,
        max_steps=config.max_steps,
    )

    try:
        result = loop.run(goal)
    except LLMRequestError as exc:
        print(f"Model request failed: {exc}")
        return 2
    finally:
        executor.close()

    print("\n=== Final report ===")
    print(result.final_report)
    return 0


def _confirm_command(action: AgentAction) -> bool:
    print("\n=== HIGH RISK COMMAND ===")
    print(f"Command: {action.command}")
    print(f"Reason: {action.reason}")
    print("=========================")
    choice = _prompt("Run this command? [y/N]: ").lower()
    return choice in {"y", "yes"}


def _prompt(text: str) -> str:
    try:
        return input(text).strip()
    except EOFError:
        # closed stdin reads as an empty answer
        print()
        return ""


def _print_step(step: StepRecord) -> None:
    print(render_step(step))


def render_step(step: StepRecord) -> str:
    lines = [f"=== Step {step.index} ===", f"[thought] {step.action.thought}"]
    if step.action.command:
        lines.append(f"[command] ({step.action.risk_level}) {step.action.command}")
    if step.declined:
        lines.append("[declined by operator]")
    if step.result is not None:
        output = step.result.output.rstrip()
        if output:
            lines.append("[output]")
            lines.append(output)
        if step.result.error:
            lines.append(f"[error] {step.result.error}")
    return "\n".join(lines)


if __name__ == "__main__":
    raise SystemExit(main())
