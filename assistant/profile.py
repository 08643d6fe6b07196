"""Bot profile configuration loader and path resolver."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any

import yaml

from assistant.errors import ConfigurationError
from assistant.llm import read_secret
from assistant.messages import Message, system_message


@dataclass(frozen=True)
class ProfilePaths:
    base_data_dir: Path
    db_path: Path
    logs_dir: Path
    secrets_dir: Path
    temp_dir: Path


@dataclass(frozen=True)
class BotStrings:
    help_string: str
    reset_message: str
    no_openai_key_error: str
    trial_ended_error: str
    trial_not_enabled_error: str
    no_video_error: str
    no_photo_error: str
    no_answer_error: str
    unsupported_file_error: str
    error_string: str
    web_search_notice: str
    no_tools_prompt: str


@dataclass(frozen=True)
class LongTermMemoryConfig:
    enabled: bool
    recent_user_messages: int
    top_k: int
    embedding_model: str


@dataclass(frozen=True)
class BotProfile:
    name: str
    display_name: str
    gpt_model: str
    gpt_model_for_image_url: str
    tokenizer_model: str
    max_context_tokens: int
    average_answer_tokens: int
    max_trial_tokens: int
    quiet_period_seconds: float
    history_window_hours: int | None
    completion_timeout_seconds: float
    completion_attempts: int
    transcription_timeout_seconds: float
    transcription_attempts: int
    embedding_attempts: int
    web_search_timeout_seconds: float
    web_search_attempts: int
    max_tool_rounds: int
    leading_prompt: str | None
    strings: BotStrings
    long_term_memory: LongTermMemoryConfig
    paths: ProfilePaths

    @property
    def token_budget(self) -> int:
        return self.max_context_tokens - self.average_answer_tokens

    def leading_message(self) -> Message | None:
        return system_message(self.leading_prompt) if self.leading_prompt else None


@dataclass(frozen=True)
class BotSecrets:
    telegram_bot_token: str | None
    openai_api_key: str | None
    llm_base_url: str | None
    perplexity_api_key: str | None = None


class ProfileError(ConfigurationError):
    """Raised when profile configuration is invalid."""


DEFAULT_STRINGS: dict[str, str] = {
    "help_string": "Send me text, voice, audio or photos and I will answer. Use /reset to start over.",
    "reset_message": "Old messages deleted",
    "no_openai_key_error": "No OpenAI key provided. Please contact the bot owner.",
    "trial_ended_error": "Trial period ended. Please contact the bot owner.",
    "trial_not_enabled_error": "Trial period is not enabled. Please contact the bot owner.",
    "no_video_error": "Bot can not process videos.",
    "no_photo_error": "Bot can not find a photo in this message.",
    "no_answer_error": "Bot can not answer to this message.",
    "unsupported_file_error": "I can only process audio files and compressed photos for now.",
    "error_string": "An error occurred. Please try again later.",
    "web_search_notice": "\U0001f50d\U0001f310 searching via Perplexity... One moment please...",
    "no_tools_prompt": (
        "You have no access to external tools or the internet. "
        "Please respond using only your built-in knowledge."
    ),
}


def _validate_raw_profile(raw: dict[str, Any], expected_name: str) -> None:
    required = {"name", "gpt_model"}
    missing = required.difference(raw.keys())
    if missing:
        missing_joined = ", ".join(sorted(missing))
        raise ProfileError(f"Missing required profile keys: {missing_joined}")

    if raw["name"] != expected_name:
        raise ProfileError(
            f"Profile filename/name mismatch: expected '{expected_name}', got '{raw['name']}'"
        )

    prompts = raw.get("prompts", [])
    if not isinstance(prompts, list) or not all(isinstance(p, dict) for p in prompts):
        raise ProfileError("prompts must be a list of {name, text} mappings")


def _positive_int(raw: dict[str, Any], key: str, default: int) -> int:
    try:
        value = int(raw.get(key, default))
    except (TypeError, ValueError) as exc:
        raise ProfileError(f"{key} must be an integer") from exc
    if value <= 0:
        raise ProfileError(f"{key} must be positive, got {value}")
    return value


def _leading_prompt(prompts: list[dict[str, Any]], today: date) -> str | None:
    text = next((str(p.get("text") or "") for p in prompts if p.get("name") == "default"), "")
    if not text.strip():
        return None
    return f"{text.strip()}\n\nCurrent date (UTC): {today.isoformat()}"


def resolve_paths(profile_name: str, base_data_dir: Path | None = None) -> ProfilePaths:
    base = base_data_dir or Path.home() / "agentdata" / profile_name
    return ProfilePaths(
        base_data_dir=base,
        db_path=base / "memory.db",
        logs_dir=base / "logs",
        secrets_dir=base / "secrets",
        temp_dir=base / "temp",
    )


def parse_profile(
    raw: dict[str, Any],
    *,
    expected_name: str,
    paths: ProfilePaths,
    today: date | None = None,
) -> BotProfile:
    _validate_raw_profile(raw, expected_name)
    today = today or datetime.now(timezone.utc).date()

    strings_raw = raw.get("strings") or {}
    if not isinstance(strings_raw, dict):
        raise ProfileError("strings must be a mapping")
    strings = BotStrings(
        **{key: str(strings_raw.get(key) or default) for key, default in DEFAULT_STRINGS.items()}
    )

    ltm_raw = raw.get("long_term_memory") or {}
    if not isinstance(ltm_raw, dict):
        raise ProfileError("long_term_memory must be a mapping")
    long_term_memory = LongTermMemoryConfig(
        enabled=bool(ltm_raw.get("enabled", False)),
        recent_user_messages=_positive_int(ltm_raw, "recent_user_messages", 4),
        top_k=_positive_int(ltm_raw, "top_k", 50),
        embedding_model=str(ltm_raw.get("embedding_model", "text-embedding-ada-002")),
    )

    gpt_model = str(raw["gpt_model"]).strip()
    max_context_tokens = _positive_int(raw, "max_context_tokens", 128_000)
    average_answer_tokens = _positive_int(raw, "average_answer_tokens", 8_000)
    if max_context_tokens - average_answer_tokens <= 0:
        raise ProfileError(
            f"max_context_tokens ({max_context_tokens}) must exceed average_answer_tokens ({average_answer_tokens})"
        )
    max_trial_tokens = int(raw.get("max_trial_tokens", 200_000) or 0)
    if max_trial_tokens < 0:
        raise ProfileError("max_trial_tokens must not be negative")
    history_window = raw.get("history_window_hours", 16)

    return BotProfile(
        name=raw["name"],
        display_name=str(raw.get("display_name") or raw["name"]),
        gpt_model=gpt_model,
        gpt_model_for_image_url=str(raw.get("gpt_model_for_image_url") or gpt_model),
        tokenizer_model=str(raw.get("tokenizer_model") or gpt_model),
        max_context_tokens=max_context_tokens,
        average_answer_tokens=average_answer_tokens,
        max_trial_tokens=max_trial_tokens,
        quiet_period_seconds=_positive_int(raw, "quiet_period_ms", 4000) / 1000.0,
        history_window_hours=None if history_window is None else int(history_window),
        completion_timeout_seconds=float(_positive_int(raw, "completion_timeout_seconds", 360)),
        completion_attempts=_positive_int(raw, "completion_attempts", 5),
        transcription_timeout_seconds=float(_positive_int(raw, "transcription_timeout_seconds", 120)),
        transcription_attempts=_positive_int(raw, "transcription_attempts", 3),
        embedding_attempts=_positive_int(raw, "embedding_attempts", 3),
        web_search_timeout_seconds=float(_positive_int(raw, "web_search_timeout_seconds", 60)),
        web_search_attempts=_positive_int(raw, "web_search_attempts", 3),
        max_tool_rounds=_positive_int(raw, "max_tool_rounds", 3),
        leading_prompt=_leading_prompt(list(raw.get("prompts") or []), today),
        strings=strings,
        long_term_memory=long_term_memory,
        paths=paths,
    )


def load_profile(
    profile_name: str,
    repo_root: Path | None = None,
    *,
    base_data_dir: Path | None = None,
) -> BotProfile:
    """Load a profile from config and resolve data paths."""
    if repo_root is None:
        repo_root = Path(__file__).resolve().parent.parent

    profile_path = repo_root / "config" / "profiles" / f"{profile_name}.yaml"
    if not profile_path.exists():
        raise ProfileError(f"Profile not found: {profile_path}")

    with profile_path.open("r", encoding="utf-8") as fh:
        raw = yaml.safe_load(fh) or {}

    if not isinstance(raw, dict):
        raise ProfileError(f"Profile file must contain a mapping: {profile_path}")

    return parse_profile(
        raw,
        expected_name=profile_name,
        paths=resolve_paths(profile_name, base_data_dir),
    )


def load_secrets(paths: ProfilePaths) -> BotSecrets:
    secrets = paths.secrets_dir
    return BotSecrets(
        telegram_bot_token=read_secret(secrets, "telegram_bot_token.txt"),
        openai_api_key=read_secret(secrets, "openai_api_key.txt"),
        llm_base_url=read_secret(secrets, "llm_base_url.txt"),
        perplexity_api_key=read_secret(secrets, "perplexity_api_key.txt"),
    )


def ensure_profile_directories(profile: BotProfile) -> None:
    """Create profile directories without touching existing data."""
    profile.paths.base_data_dir.mkdir(parents=True, exist_ok=True)
    profile.paths.logs_dir.mkdir(parents=True, exist_ok=True)
    profile.paths.secrets_dir.mkdir(parents=True, exist_ok=True)
    profile.paths.temp_dir.mkdir(parents=True, exist_ok=True)
