import dataclasses
import json
import logging
import os
import shlex
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, cast

import yaml
from dotenv import load_dotenv

from .exceptions import ConfigError

logger = logging.getLogger("agent_relay.core.config")

HOME_ENV_VAR = "AGENT_RELAY_HOME"
DEFAULT_HOME_DIRNAME = ".agent-relay"
CONFIG_FILENAME = "config.yml"
OVERRIDE_FILENAME = "config.override.yml"
SETTINGS_FILENAME = "settings.json"
PERMISSION_MODES = ("default", "read-only", "safe-yolo", "yolo")
UNKNOWN_EVENT_POLICIES = ("text", "drop")
AGENT_FLAVORS = ("gemini", "cursor", "claude", "codex")
_TRUTHY = {"1", "true", "yes", "on"}


def _default_agents_section() -> Dict[str, Any]:
    return {
        "gemini": {"binary": "gemini", "extra_args": []},
        "cursor": {"binary": "cursor-agent", "extra_args": []},
        "claude": {"binary": "claude", "extra_args": []},
        "codex": {"binary": "codex", "extra_args": []},
    }


def _default_session_section() -> Dict[str, Any]:
    return {
        "activity_debounce_seconds": 0.5,
        "approval_timeout_seconds": None,
        "keepalive_interval_seconds": 2.0,
        "message_separator": "\n",
        "resume_on_restart": True,
        "title_prompt": True,
        "unknown_event_policy": "text",
        "terminate_grace_seconds": 3.0,
    }


def _default_config() -> Dict[str, Any]:
    return {
        "log": {
            "path": "logs/agent-relay.log",
            "max_bytes": 5 * 1024 * 1024,
            "backup_count": 3,
            "level": "INFO",
        },
        "session": _default_session_section(),
        "agents": _default_agents_section(),
    }


@dataclasses.dataclass
class LogConfig:
    path: Path
    max_bytes: int
    backup_count: int
    level: int = logging.INFO


@dataclasses.dataclass
class SessionSettings:
    activity_debounce_seconds: float = 0.5
    approval_timeout_seconds: Optional[float] = None
    keepalive_interval_seconds: float = 2.0
    message_separator: str = "\n"
    resume_on_restart: bool = True
    title_prompt: bool = True
    unknown_event_policy: str = "text"
    terminate_grace_seconds: float = 3.0


@dataclasses.dataclass
class AgentBinaryConfig:
    binary: str
    extra_args: List[str] = dataclasses.field(default_factory=list)


@dataclasses.dataclass
class RelayConfig:
    home_dir: Path
    logs_dir: Path
    settings_file: Path
    log: LogConfig
    session: SessionSettings
    agents: Dict[str, AgentBinaryConfig]
    raw: Dict[str, Any] = dataclasses.field(default_factory=dict)

    def agent(self, flavor: str) -> AgentBinaryConfig:
        try:
            return self.agents[flavor]
        except KeyError:
            raise ConfigError(f"Unknown agent flavor: {flavor}") from None


def parse_bool_text(value: Any, *, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    return str(value).strip().lower() in _TRUTHY


def resolve_home_dir(env: Optional[Mapping[str, str]] = None) -> Path:
    env = os.environ if env is None else env
    raw = env.get(HOME_ENV_VAR)
    if raw and raw.strip():
        return Path(raw.strip()).expanduser()
    return Path.home() / DEFAULT_HOME_DIRNAME


def _merge_defaults(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    merged = cast(Dict[str, Any], json.loads(json.dumps(base)))
    for key, value in overrides.items():
        if isinstance(value, dict) and key in merged and isinstance(merged[key], dict):
            merged[key] = _merge_defaults(merged[key], value)
        else:
            merged[key] = value
    return merged


def _load_yaml_dict(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc
    except OSError as exc:
        raise ConfigError(f"Failed to read config file {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"Config file must be a mapping: {path}")
    return data


def load_dotenv_for_home(home_dir: Path) -> None:
    """Best-effort load of ``.env`` from the relay home directory."""
    candidate = home_dir / ".env"
    try:
        if candidate.exists():
            load_dotenv(dotenv_path=candidate, override=False)
    except OSError as exc:
        logger.debug("Failed to load .env file: %s", exc)


def _parse_float(
    cfg: Mapping[str, Any], key: str, *, minimum: float = 0.0, optional: bool = False
) -> Optional[float]:
    raw = cfg.get(key)
    if raw is None:
        if optional:
            return None
        raise ConfigError(f"session.{key} is required")
    try:
        value = float(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"session.{key} must be a number, got {raw!r}") from exc
    if value < minimum:
        raise ConfigError(f"session.{key} must be >= {minimum}")
    if optional and value <= 0:
        return None
    return value


def _parse_session_settings(cfg: Mapping[str, Any]) -> SessionSettings:
    policy = str(cfg.get("unknown_event_policy") or "text").strip().lower()
    if policy not in UNKNOWN_EVENT_POLICIES:
        raise ConfigError(
            f"session.unknown_event_policy must be one of {UNKNOWN_EVENT_POLICIES}"
        )
    separator = cfg.get("message_separator")
    if not isinstance(separator, str):
        raise ConfigError("session.message_separator must be a string")
    return SessionSettings(
        activity_debounce_seconds=cast(
            float, _parse_float(cfg, "activity_debounce_seconds")
        ),
        approval_timeout_seconds=_parse_float(
            cfg, "approval_timeout_seconds", optional=True
        ),
        keepalive_interval_seconds=cast(
            float, _parse_float(cfg, "keepalive_interval_seconds", minimum=0.1)
        ),
        message_separator=separator,
        resume_on_restart=parse_bool_text(cfg.get("resume_on_restart"), default=True),
        title_prompt=parse_bool_text(cfg.get("title_prompt"), default=True),
        unknown_event_policy=policy,
        terminate_grace_seconds=cast(
            float, _parse_float(cfg, "terminate_grace_seconds")
        ),
    )


def _parse_command_args(raw: Any, *, scope: str) -> List[str]:
    if raw is None:
        return []
    if isinstance(raw, str):
        return shlex.split(raw)
    if isinstance(raw, list) and all(isinstance(item, str) for item in raw):
        return list(raw)
    raise ConfigError(f"{scope} must be a string or a list of strings")


def _parse_agents(cfg: Mapping[str, Any]) -> Dict[str, AgentBinaryConfig]:
    agents: Dict[str, AgentBinaryConfig] = {}
    for flavor, entry in cfg.items():
        if not isinstance(entry, dict):
            raise ConfigError(f"agents.{flavor} must be a mapping")
        binary = entry.get("binary")
        if not isinstance(binary, str) or not binary.strip():
            raise ConfigError(f"agents.{flavor}.binary is required")
        agents[str(flavor)] = AgentBinaryConfig(
            binary=os.path.expanduser(binary.strip()),
            extra_args=_parse_command_args(
                entry.get("extra_args"), scope=f"agents.{flavor}.extra_args"
            ),
        )
    return agents


def _parse_log_config(cfg: Mapping[str, Any], home_dir: Path) -> LogConfig:
    path = Path(os.path.expanduser(str(cfg.get("path") or "logs/agent-relay.log")))
    if not path.is_absolute():
        path = home_dir / path
    level_name = str(cfg.get("level") or "INFO").upper()
    level = logging.getLevelName(level_name)
    if not isinstance(level, int):
        raise ConfigError(f"log.level is not a valid level: {level_name}")
    try:
        max_bytes = int(cfg.get("max_bytes") or 0)
        backup_count = int(cfg.get("backup_count") or 0)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid log rotation settings: {exc}") from exc
    return LogConfig(
        path=path, max_bytes=max_bytes, backup_count=backup_count, level=level
    )


def collect_env_overrides(env: Mapping[str, str]) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    if env.get("AGENT_RELAY_LOG_LEVEL"):
        overrides["log"] = {"level": env["AGENT_RELAY_LOG_LEVEL"]}
    if env.get("AGENT_RELAY_UNKNOWN_EVENTS"):
        overrides["session"] = {"unknown_event_policy": env["AGENT_RELAY_UNKNOWN_EVENTS"]}
    return overrides


def load_relay_config(
    home_dir: Optional[Path] = None,
    *,
    env: Optional[Mapping[str, str]] = None,
    create_dirs: bool = True,
) -> RelayConfig:
    """
    Load the relay configuration.

    Precedence, lowest first: built-in defaults, ``<home>/config.yml``,
    ``<home>/config.override.yml``, environment variables.
    """
    env = os.environ if env is None else env
    home = (home_dir or resolve_home_dir(env)).expanduser()
    if create_dirs:
        load_dotenv_for_home(home)
    data = _default_config()
    for filename in (CONFIG_FILENAME, OVERRIDE_FILENAME):
        path = home / filename
        try:
            loaded = _load_yaml_dict(path)
        except ConfigError as exc:
            raise ConfigError(f"Invalid config {path}; fix or delete it: {exc}") from exc
        if loaded:
            data = _merge_defaults(data, loaded)
    data = _merge_defaults(data, collect_env_overrides(env))

    log_cfg = _parse_log_config(data.get("log") or {}, home)
    config = RelayConfig(
        home_dir=home,
        logs_dir=log_cfg.path.parent,
        settings_file=home / SETTINGS_FILENAME,
        log=log_cfg,
        session=_parse_session_settings(data.get("session") or {}),
        agents=_parse_agents(data.get("agents") or {}),
        raw=data,
    )
    if create_dirs:
        config.home_dir.mkdir(parents=True, exist_ok=True)
        config.logs_dir.mkdir(parents=True, exist_ok=True)
    return config


__all__ = [
    "AGENT_FLAVORS",
    "AgentBinaryConfig",
    "ConfigError",
    "LogConfig",
    "PERMISSION_MODES",
    "RelayConfig",
    "SessionSettings",
    "collect_env_overrides",
    "load_relay_config",
    "parse_bool_text",
    "resolve_home_dir",
]
