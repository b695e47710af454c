from __future__ import annotations

import os
import tomllib
from collections.abc import Callable
from pathlib import Path

CHANNEL_ID = "telegram-user"

# Environment variable names for secrets (default account only)
ENV_API_ID = "TELEGRAM_USER_API_ID"
ENV_API_HASH = "TELEGRAM_USER_API_HASH"
ENV_PASSWORD = "TELEGRAM_USER_PASSWORD"
ENV_STATE_DIR = "MTGATE_STATE_DIR"

LOCAL_CONFIG_NAME = Path(".mtgate") / "mtgate.toml"
HOME_STATE_DIR = Path.home() / ".mtgate"
HOME_CONFIG_PATH = HOME_STATE_DIR / "mtgate.toml"

DEFAULT_TEXT_CHUNK_LIMIT = 4000
DEFAULT_MEDIA_MAX_MB = 5.0


class ConfigError(RuntimeError):
    pass


class MissingSessionError(ConfigError):
    pass


def _config_candidates() -> list[Path]:
    candidates = [Path.cwd() / LOCAL_CONFIG_NAME, HOME_CONFIG_PATH]
    if candidates[0] == candidates[1]:
        return [candidates[0]]
    return candidates


def _read_config(cfg_path: Path) -> dict:
    try:
        raw = cfg_path.read_text(encoding="utf-8")
    except FileNotFoundError:
        raise ConfigError(f"Missing config file {cfg_path}.") from None
    except OSError as e:
        raise ConfigError(f"Failed to read config file {cfg_path}: {e}") from e
    try:
        return tomllib.loads(raw)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Malformed TOML in {cfg_path}: {e}") from None


def resolve_config_path(path: str | Path | None = None) -> Path:
    if path:
        return Path(path).expanduser()
    for candidate in _config_candidates():
        if candidate.is_file():
            return candidate
    raise ConfigError("Missing mtgate config.")


def toml_config_loader(path: str | Path | None = None) -> Callable[[], dict]:
    """Pin the config file now; re-read it on every call so edits are picked up."""
    cfg_path = resolve_config_path(path)

    def load() -> dict:
        return _read_config(cfg_path)

    return load


def channel_section(config: dict) -> dict:
    channels = config.get("channels")
    if not isinstance(channels, dict):
        return {}
    section = channels.get(CHANNEL_ID)
    if not isinstance(section, dict):
        return {}
    return section


def messages_section(config: dict) -> dict:
    section = config.get("messages")
    return section if isinstance(section, dict) else {}


def resolve_state_dir(state_dir: str | Path | None = None) -> Path:
    """Resolve the state directory.

    An explicit directory wins, then MTGATE_STATE_DIR, then ~/.mtgate.
    """
    if state_dir is not None:
        return Path(state_dir).expanduser()
    env_dir = os.environ.get(ENV_STATE_DIR)
    if env_dir and env_dir.strip():
        return Path(env_dir.strip()).expanduser()
    return HOME_STATE_DIR
