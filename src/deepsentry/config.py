"""Environment-backed application configuration."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path

ENV_PREFIX = "DEEPSENTRY_"
DEFAULT_API_URL = "https://api.deepseek.com/chat/completions"
DEFAULT_MODEL = "deepseek-chat"
DEFAULT_SSH_PORT = 22


def _to_bool(value: object, default: bool = False) -> bool:
    """Convert common env var truthy/falsy values into booleans."""
    if isinstance(value, bool):
        return value
    if not isinstance(value, str):
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


@dataclass(slots=True)
class AppConfig:
    """Runtime settings loaded from environment variables and an optional JSON file."""

    api_url: str
    model: str
    api_key: str | None
    temperature: float
    ssh_host: str | None
    ssh_user: str
    ssh_password: str | None
    ssh_key_path: str | None
    log_dir: str
    max_steps: int
    llm_timeout: float
    connect_timeout: float
    history_threshold: int
    history_chunk: int
    legacy_encoding: str
    transcode_output: bool

    @property
    def ssh_address(self) -> tuple[str, int]:
        """Split ``ssh_host`` into host and port; ``host:port`` and bare hosts are accepted."""
        host = (self.ssh_host or "").strip()
        if host.startswith("[") and "]" in host:
            address, _, rest = host[1:].partition("]")
            port = rest.lstrip(":")
            return address, _to_positive_int(port, default=DEFAULT_SSH_PORT)
        if host.count(":") == 1:
            address, _, port = host.partition(":")
            return address, _to_positive_int(port, default=DEFAULT_SSH_PORT)
        return host, DEFAULT_SSH_PORT

    @classmethod
    def from_env(cls, config_file: str | None = None) -> AppConfig:
        file_config = _load_preferred_file_config(config_file)

        def setting(key: str) -> object:
            env_value = os.getenv(f"{ENV_PREFIX}{key.upper()}")
            if env_value is not None and env_value.strip():
                return env_value
            return file_config.get(key)

        return cls(
            api_url=_to_optional_string(setting("api_url")) or DEFAULT_API_URL,
            model=_to_optional_string(setting("model_name")) or DEFAULT_MODEL,
            api_key=_to_optional_string(setting("api_key")),
            temperature=_to_float(setting("temperature"), default=0.1, minimum=0.0),
            ssh_host=_to_optional_string(setting("ssh_host")),
            ssh_user=_to_optional_string(setting("ssh_user")) or "root",
            ssh_password=_to_optional_string(setting("ssh_password")),
            ssh_key_path=_expand_path(_to_optional_string(setting("ssh_key_path"))),
            log_dir=_to_optional_string(setting("log_dir")) or "logs",
            max_steps=_to_positive_int(setting("max_steps"), default=30),
            llm_timeout=_to_float(setting("llm_timeout"), default=300.0, minimum=1.0),
            connect_timeout=_to_float(setting("connect_timeout"), default=10.0, minimum=1.0),
            history_threshold=_to_positive_int(setting("history_threshold"), default=15),
            history_chunk=_to_positive_int(setting("history_chunk"), default=10),
            legacy_encoding=_to_optional_string(setting("legacy_encoding")) or "gbk",
            transcode_output=_to_bool(setting("transcode_output"), default=True),
        )


def _to_optional_string(value: object) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _expand_path(value: str | None) -> str | None:
    if value is None:
        return None
    return str(Path(value).expanduser())


def _load_file_config(path_value: str) -> dict[str, object]:
    path = Path(path_value).expanduser()
    if not path.exists() or not path.is_file():
        return {}
    try:
        with path.open("r", encoding="utf-8") as fh:
            parsed = json.load(fh)
    except (OSError, json.JSONDecodeError):
        return {}
    if isinstance(parsed, dict):
        return parsed
    return {}


def _load_preferred_file_config(config_file: str | None = None) -> dict[str, object]:
    explicit_path = config_file or os.getenv(f"{ENV_PREFIX}CONFIG_FILE")
    if explicit_path:
        return _load_file_config(explicit_path)

    shared_config = _load_file_config("deepsentry.config.json")
    local_override = _load_file_config("deepsentry.config.local.json")
    return {**shared_config, **local_override}


def _to_positive_int(value: object, *, default: int) -> int:
    if isinstance(value, bool):
        return default
    if isinstance(value, int):
        return value if value > 0 else default
    if isinstance(value, str):
        try:
            parsed = int(value.strip())
        except ValueError:
            return default
        return parsed if parsed > 0 else default
    return default


def _to_float(value: object, *, default: float, minimum: float) -> float:
    if isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        parsed = float(value)
    elif isinstance(value, str):
        try:
            parsed = float(value.strip())
        except ValueError:
            return default
    else:
        return default
    return parsed if parsed >= minimum else default
