"""Account resolution: channel base config, per-account overrides and env secrets."""

from __future__ import annotations

import copy
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

from .config import (
    CHANNEL_ID,
    DEFAULT_MEDIA_MAX_MB,
    DEFAULT_TEXT_CHUNK_LIMIT,
    ENV_API_HASH,
    ENV_API_ID,
    ENV_PASSWORD,
    channel_section,
    resolve_state_dir,
)
from .settings import AccountSettings, DmPolicy, ReplyToMode, validate_account_config

DEFAULT_ACCOUNT_ID = "default"

CredentialSource = Literal["env", "config", "none"]

_INVALID_ACCOUNT_CHARS_RE = re.compile(r"[^a-z0-9_-]+")

_DELETE_BASE_FIELDS = ("api_id", "api_hash", "name")


def normalize_account_id(raw: str | None) -> str:
    if raw is None:
        return DEFAULT_ACCOUNT_ID
    value = _INVALID_ACCOUNT_CHARS_RE.sub("-", str(raw).strip().lower()).strip("-")
    return value or DEFAULT_ACCOUNT_ID


@dataclass(frozen=True, slots=True)
class Credentials:
    api_id: int | None
    api_hash: str | None
    password: str | None
    api_id_source: CredentialSource
    api_hash_source: CredentialSource
    password_source: CredentialSource

    @property
    def complete(self) -> bool:
        return bool(self.api_id and self.api_hash)


@dataclass(frozen=True, slots=True)
class ResolvedAccount:
    account_id: str
    enabled: bool
    name: str | None
    credentials: Credentials
    config: AccountSettings

    @property
    def configured(self) -> bool:
        return self.credentials.complete

    @property
    def dm_policy(self) -> DmPolicy:
        return self.config.dm_policy

    @property
    def allow_from(self) -> list[str | int]:
        return list(self.config.allow_from or [])

    @property
    def reply_to_mode(self) -> ReplyToMode:
        return self.config.reply_to_mode or "first"

    @property
    def text_chunk_limit(self) -> int:
        return self.config.text_chunk_limit or DEFAULT_TEXT_CHUNK_LIMIT

    @property
    def media_max_mb(self) -> float:
        return self.config.media_max_mb or DEFAULT_MEDIA_MAX_MB


def _accounts_map(config: dict) -> dict:
    accounts = channel_section(config).get("accounts")
    return accounts if isinstance(accounts, dict) else {}


def _account_entry(config: dict, account_id: str) -> dict | None:
    accounts = _accounts_map(config)
    direct = accounts.get(account_id)
    if isinstance(direct, dict):
        return direct
    normalized = normalize_account_id(account_id)
    for key, value in accounts.items():
        if normalize_account_id(key) == normalized and isinstance(value, dict):
            return value
    return None


def merge_account_config(config: dict, account_id: str) -> dict:
    base = {k: v for k, v in channel_section(config).items() if k != "accounts"}
    account = _account_entry(config, account_id) or {}
    return {**base, **account}


def _env_api_id() -> int | None:
    raw = os.environ.get(ENV_API_ID, "").strip()
    try:
        value = int(raw)
    except ValueError:
        return None
    return value if value > 0 else None


def _env_text(name: str) -> str | None:
    value = os.environ.get(name)
    if value is None:
        return None
    return value.strip() or None


def resolve_credentials(merged: AccountSettings, account_id: str) -> Credentials:
    use_env = account_id == DEFAULT_ACCOUNT_ID
    env_api_id = _env_api_id() if use_env else None
    env_api_hash = _env_text(ENV_API_HASH) if use_env else None
    env_password = _env_text(ENV_PASSWORD) if use_env else None

    config_hash = (
        merged.api_hash.get_secret_value().strip() if merged.api_hash else None
    ) or None

    api_id_source: CredentialSource = (
        "env" if env_api_id else ("config" if merged.api_id else "none")
    )
    api_hash_source: CredentialSource = (
        "env" if env_api_hash else ("config" if config_hash else "none")
    )
    return Credentials(
        api_id=env_api_id or merged.api_id,
        api_hash=env_api_hash or config_hash,
        password=env_password,
        api_id_source=api_id_source,
        api_hash_source=api_hash_source,
        password_source="env" if env_password else "none",
    )


def resolve_account(config: dict, account_id: str | None = None) -> ResolvedAccount:
    normalized = normalize_account_id(account_id)
    merged = validate_account_config(merge_account_config(config, normalized))
    base_enabled = channel_section(config).get("enabled") is not False
    enabled = base_enabled and merged.enabled is not False
    name = merged.name.strip() if merged.name else None
    return ResolvedAccount(
        account_id=normalized,
        enabled=enabled,
        name=name or None,
        credentials=resolve_credentials(merged, normalized),
        config=merged,
    )


def list_account_ids(config: dict) -> list[str]:
    ids = [key for key in _accounts_map(config) if key]
    if DEFAULT_ACCOUNT_ID not in ids:
        ids.append(DEFAULT_ACCOUNT_ID)
    return sorted(ids)


def resolve_default_account_id(config: dict) -> str:
    ids = list_account_ids(config)
    if DEFAULT_ACCOUNT_ID in ids:
        return DEFAULT_ACCOUNT_ID
    return ids[0] if ids else DEFAULT_ACCOUNT_ID


def _with_channel_section(config: dict) -> tuple[dict, dict]:
    updated = copy.deepcopy(config)
    channels = updated.setdefault("channels", {})
    section = channels.setdefault(CHANNEL_ID, {})
    return updated, section


def set_account_enabled(config: dict, account_id: str | None, enabled: bool) -> dict:
    normalized = normalize_account_id(account_id)
    updated, section = _with_channel_section(config)
    accounts = section.get("accounts")
    if normalized == DEFAULT_ACCOUNT_ID and not (
        isinstance(accounts, dict) and DEFAULT_ACCOUNT_ID in accounts
    ):
        section["enabled"] = enabled
        return updated
    accounts = section.setdefault("accounts", {})
    entry = accounts.setdefault(normalized, {})
    entry["enabled"] = enabled
    return updated


def delete_account(config: dict, account_id: str | None) -> dict:
    normalized = normalize_account_id(account_id)
    updated, section = _with_channel_section(config)
    accounts = section.get("accounts")
    if isinstance(accounts, dict):
        for key in [k for k in accounts if normalize_account_id(k) == normalized]:
            del accounts[key]
        if not accounts:
            section.pop("accounts", None)
    if normalized == DEFAULT_ACCOUNT_ID:
        for field in _DELETE_BASE_FIELDS:
            section.pop(field, None)
    return updated


def resolve_session_path(
    account_id: str | None, state_dir: str | Path | None = None
) -> Path:
    normalized = normalize_account_id(account_id)
    return resolve_state_dir(state_dir) / CHANNEL_ID / f"session-{normalized}.session"


def ensure_session_dir(session_path: Path) -> None:
    session_path.parent.mkdir(parents=True, exist_ok=True)


def is_session_linked(account_id: str | None, state_dir: str | Path | None = None) -> bool:
    return resolve_session_path(account_id, state_dir).is_file()
