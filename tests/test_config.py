import json
import os

import pytest

from deepsentry.config import DEFAULT_API_URL, AppConfig


@pytest.fixture(autouse=True)
def isolated_env(tmp_path, monkeypatch) -> None:
    for key in list(os.environ):
        if key.startswith("DEEPSENTRY_"):
            monkeypatch.delenv(key)
    monkeypatch.chdir(tmp_path)


def test_defaults_without_file_or_env() -> None:
    config = AppConfig.from_env()

    assert config.api_url == DEFAULT_API_URL
    assert config.model == "deepseek-chat"
    assert config.api_key is None
    assert config.temperature == 0.1
    assert config.ssh_host is None
    assert config.ssh_user == "root"
    assert config.log_dir == "logs"
    assert config.max_steps == 30
    assert config.llm_timeout == 300.0
    assert config.history_threshold == 15
    assert config.history_chunk == 10
    assert config.legacy_encoding == "gbk"
    assert config.transcode_output is True


def test_loads_explicit_config_file(tmp_path) -> None:
    config_path = tmp_path / "custom.json"
    config_path.write_text(
        json.dumps(
            {
                "api_key": "file-key",
                "model_name": "deepseek-reasoner",
                "ssh_host": "10.0.0.5:2222",
                "ssh_user": "admin",
                "ssh_key_path": "~/.ssh/id_ed25519",
                "max_steps": 12,
                "transcode_output": False,
            }
        ),
        encoding="utf-8",
    )

    config = AppConfig.from_env(str(config_path))

    assert config.api_key == "file-key"
    assert config.model == "deepseek-reasoner"
    assert config.ssh_user == "admin"
    assert config.ssh_address == ("10.0.0.5", 2222)
    assert config.ssh_key_path is not None
    assert not config.ssh_key_path.startswith("~")
    assert config.max_steps == 12
    assert config.transcode_output is False


def test_env_overrides_file(tmp_path, monkeypatch) -> None:
    config_path = tmp_path / "deepsentry.config.json"
    config_path.write_text(json.dumps({"api_key": "file-key", "max_steps": 5}), encoding="utf-8")
    monkeypatch.setenv("DEEPSENTRY_CONFIG_FILE", str(config_path))
    monkeypatch.setenv("DEEPSENTRY_API_KEY", "env-key")
    monkeypatch.setenv("DEEPSENTRY_TRANSCODE_OUTPUT", "off")

    config = AppConfig.from_env()

    assert config.api_key == "env-key"
    assert config.max_steps == 5
    assert config.transcode_output is False


def test_local_override_file_is_merged(tmp_path) -> None:
    (tmp_path / "deepsentry.config.json").write_text(
        json.dumps({"api_key": "shared", "ssh_user": "ops"}), encoding="utf-8"
    )
    (tmp_path / "deepsentry.config.local.json").write_text(
        json.dumps({"api_key": "mine"}), encoding="utf-8"
    )

    config = AppConfig.from_env()

    assert config.api_key == "mine"
    assert config.ssh_user == "ops"


def test_invalid_values_fall_back_to_defaults(monkeypatch) -> None:
    monkeypatch.setenv("DEEPSENTRY_MAX_STEPS", "-4")
    monkeypatch.setenv("DEEPSENTRY_TEMPERATURE", "warm")
    monkeypatch.setenv("DEEPSENTRY_LLM_TIMEOUT", "0")
    monkeypatch.setenv("DEEPSENTRY_HISTORY_CHUNK", "lots")

    config = AppConfig.from_env()

    assert config.max_steps == 30
    assert config.temperature == 0.1
    assert config.llm_timeout == 300.0
    assert config.history_chunk == 10


def test_malformed_file_is_ignored(tmp_path) -> None:
    config_path = tmp_path / "broken.json"
    config_path.write_text("{not json", encoding="utf-8")

    assert AppConfig.from_env(str(config_path)).model == "deepseek-chat"


@pytest.mark.parametrize(
    ("host", "expected"),
    [
        ("web01", ("web01", 22)),
        ("web01:2200", ("web01", 2200)),
        ("web01:bad", ("web01", 22)),
        ("[fe80::1]:2201", ("fe80::1", 2201)),
        ("fe80::1", ("fe80::1", 22)),
    ],
)
def test_ssh_address(monkeypatch, host: str, expected: tuple[str, int]) -> None:
    monkeypatch.setenv("DEEPSENTRY_SSH_HOST", host)

    assert AppConfig.from_env().ssh_address == expected
