from __future__ import annotations

from typing import Literal

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    SecretStr,
    ValidationError,
    model_validator,
)

from .config import CHANNEL_ID, ConfigError, channel_section, messages_section

DmPolicy = Literal["pairing", "allowlist", "open", "disabled"]
ReplyToMode = Literal["off", "first", "all"]
AckReactionScope = Literal["all", "direct", "group-all", "group-mentions", "off"]
HumanDelayMode = Literal["off", "natural", "custom"]

OPEN_REQUIRES_WILDCARD = (
    f'channels.{CHANNEL_ID}.dm_policy="open" requires '
    f'channels.{CHANNEL_ID}.allow_from to include "*"'
)


def _require_open_allow_from(
    policy: DmPolicy | None, allow_from: list[str | int] | None
) -> None:
    if policy != "open":
        return
    entries = [str(entry).strip() for entry in allow_from or []]
    if "*" not in entries:
        raise ValueError(OPEN_REQUIRES_WILDCARD)


class AccountSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str | None = None
    enabled: bool | None = None
    api_id: int | None = Field(default=None, gt=0)
    api_hash: SecretStr | None = None
    dm_policy: DmPolicy = "pairing"
    allow_from: list[str | int] | None = None
    reply_to_mode: ReplyToMode | None = None
    text_chunk_limit: int | None = Field(default=None, gt=0)
    media_max_mb: float | None = Field(default=None, gt=0)

    @model_validator(mode="after")
    def _check_open_policy(self) -> "AccountSettings":
        _require_open_allow_from(self.dm_policy, self.allow_from)
        return self


class ChannelSettings(AccountSettings):
    accounts: dict[str, AccountSettings | None] | None = None


class HumanDelaySettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    mode: HumanDelayMode = "off"
    min_ms: int = Field(default=800, ge=0)
    max_ms: int = Field(default=2500, ge=0)

    @model_validator(mode="after")
    def _check_bounds(self) -> "HumanDelaySettings":
        if self.max_ms < self.min_ms:
            raise ValueError("human_delay.max_ms must be >= human_delay.min_ms")
        return self


class MessagesSettings(BaseModel):
    model_config = ConfigDict(extra="ignore")

    ack_reaction: str | None = None
    ack_reaction_scope: AckReactionScope = "group-mentions"
    remove_ack_after_reply: bool = False
    human_delay: HumanDelaySettings = Field(default_factory=HumanDelaySettings)
    response_prefix: str | None = None


def validate_channel_config(config: dict) -> ChannelSettings:
    try:
        return ChannelSettings.model_validate(channel_section(config))
    except ValidationError as exc:
        raise ConfigError(f"Invalid `channels.{CHANNEL_ID}` config: {exc}") from exc


def validate_account_config(raw: dict) -> AccountSettings:
    try:
        return AccountSettings.model_validate(raw)
    except ValidationError as exc:
        raise ConfigError(f"Invalid `channels.{CHANNEL_ID}` account config: {exc}") from exc


def load_messages_settings(config: dict) -> MessagesSettings:
    try:
        return MessagesSettings.model_validate(messages_section(config))
    except ValidationError as exc:
        raise ConfigError(f"Invalid `messages` config: {exc}") from exc
