from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv


load_dotenv()

PACKAGE_ROOT = Path(__file__).resolve().parent
PROJECT_ROOT = PACKAGE_ROOT.parent


def _env_lookup(name: str, aliases: tuple[str, ...] = ()) -> str | None:
    for key in (name, *aliases):
        # Be tolerant to UTF-8 BOM accidentally saved in .env key names.
        for candidate in (key, f"\ufeff{key}"):
            raw = os.getenv(candidate)
            if raw is not None:
                return raw
    return None


def _env_bool(name: str, default: bool, aliases: tuple[str, ...] = ()) -> bool:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int, aliases: tuple[str, ...] = ()) -> int:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    try:
        return int(raw.strip())
    except ValueError:
        return default


def _env_float(name: str, default: float, aliases: tuple[str, ...] = ()) -> float:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    try:
        return float(raw.strip())
    except ValueError:
        return default


def _clean_secret(value: str) -> str:
    cleaned = value.strip()
    if cleaned.lower().startswith("bearer "):
        cleaned = cleaned[7:].strip()
    if (cleaned.startswith('"') and cleaned.endswith('"')) or (
        cleaned.startswith("'") and cleaned.endswith("'")
    ):
        cleaned = cleaned[1:-1].strip()
    return cleaned


def _env_str(name: str, default: str, aliases: tuple[str, ...] = ()) -> str:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    value = raw.strip()
    return value if value else default


def _env_path(name: str, default: Path, aliases: tuple[str, ...] = ()) -> Path:
    raw = _env_str(name, "", aliases)
    if not raw:
        return default
    path = Path(raw).expanduser()
    if not path.is_absolute():
        path = PROJECT_ROOT / path
    return path


@dataclass(slots=True)
class Settings:
    anthropic_api_key: str
    anthropic_base_url: str
    generation_model: str
    generation_max_tokens: int
    generation_temperature: float
    generation_timeout_seconds: int

    classifier_api_key: str
    classifier_base_url: str
    classifier_model: str
    classifier_timeout_seconds: int

    sqlite_path: Path
    domain_config_dir: Path
    domain_config_mirror_dir: Path

    safety_flag_threshold: float
    safety_keyword_confidence: float
    domain_initial_threshold: float
    domain_switch_threshold: float
    domain_tie_margin: float

    reflection_min_sessions: int
    reflection_cooldown_days: int
    reflection_max_chars: int

    context_deadline_ms: int
    safety_tier2_deadline_ms: int
    domain_classify_deadline_ms: int

    max_recent_messages: int
    history_conversation_limit: int
    history_messages_per_conversation: int
    style_min_sessions: int
    pattern_min_sessions: int

    host: str
    port: int

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            anthropic_api_key=_clean_secret(_env_str("ANTHROPIC_API_KEY", "")),
            anthropic_base_url=_env_str("ANTHROPIC_BASE_URL", "https://api.anthropic.com"),
            generation_model=_env_str("GENERATION_MODEL", "claude-sonnet-4-5", aliases=("ANTHROPIC_MODEL",)),
            generation_max_tokens=max(64, _env_int("GENERATION_MAX_TOKENS", 1024)),
            generation_temperature=_env_float("GENERATION_TEMPERATURE", 0.7),
            generation_timeout_seconds=max(5, _env_int("GENERATION_TIMEOUT_SECONDS", 60)),
            classifier_api_key=_clean_secret(_env_str("CLASSIFIER_API_KEY", "", aliases=("OPENAI_API_KEY",))),
            classifier_base_url=_env_str("CLASSIFIER_BASE_URL", "https://api.openai.com/v1"),
            classifier_model=_env_str("CLASSIFIER_MODEL", "gpt-4o-mini"),
            classifier_timeout_seconds=max(1, _env_int("CLASSIFIER_TIMEOUT_SECONDS", 10)),
            sqlite_path=_env_path("SQLITE_PATH", PROJECT_ROOT / "data" / "coach.db"),
            domain_config_dir=_env_path("DOMAIN_CONFIG_DIR", PACKAGE_ROOT / "domains" / "data"),
            domain_config_mirror_dir=_env_path(
                "DOMAIN_CONFIG_MIRROR_DIR",
                PROJECT_ROOT / "resources" / "domain_configs",
            ),
            safety_flag_threshold=_env_float("SAFETY_FLAG_THRESHOLD", 0.6),
            safety_keyword_confidence=_env_float("SAFETY_KEYWORD_CONFIDENCE", 0.9),
            domain_initial_threshold=_env_float("DOMAIN_INITIAL_THRESHOLD", 0.7),
            domain_switch_threshold=_env_float("DOMAIN_SWITCH_THRESHOLD", 0.85),
            domain_tie_margin=max(0.0, _env_float("DOMAIN_TIE_MARGIN", 0.05)),
            reflection_min_sessions=max(0, _env_int("REFLECTION_MIN_SESSIONS", 8)),
            reflection_cooldown_days=max(0, _env_int("REFLECTION_COOLDOWN_DAYS", 25)),
            reflection_max_chars=max(200, _env_int("REFLECTION_MAX_CHARS", 1400)),
            context_deadline_ms=max(10, _env_int("CONTEXT_DEADLINE_MS", 200)),
            safety_tier2_deadline_ms=max(10, _env_int("SAFETY_TIER2_DEADLINE_MS", 150)),
            domain_classify_deadline_ms=max(10, _env_int("DOMAIN_CLASSIFY_DEADLINE_MS", 1000)),
            max_recent_messages=max(1, _env_int("MAX_RECENT_MESSAGES", 20)),
            history_conversation_limit=max(0, _env_int("HISTORY_CONVERSATION_LIMIT", 5)),
            history_messages_per_conversation=max(1, _env_int("HISTORY_MESSAGES_PER_CONVERSATION", 3)),
            style_min_sessions=max(0, _env_int("STYLE_MIN_SESSIONS", 5)),
            pattern_min_sessions=max(0, _env_int("PATTERN_MIN_SESSIONS", 5)),
            host=_env_str("COACH_HOST", "127.0.0.1"),
            port=max(1, min(_env_int("COACH_PORT", 8000), 65535)),
        )

    def validate(self) -> None:
        for name in ("safety_flag_threshold", "safety_keyword_confidence", "domain_initial_threshold", "domain_switch_threshold"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"{name.upper()} must be within [0, 1], got {value}")
        if self.safety_keyword_confidence < self.safety_flag_threshold:
            raise ValueError("SAFETY_KEYWORD_CONFIDENCE must not be lower than SAFETY_FLAG_THRESHOLD")
        if self.domain_switch_threshold < self.domain_initial_threshold:
            raise ValueError("DOMAIN_SWITCH_THRESHOLD must not be lower than DOMAIN_INITIAL_THRESHOLD")
        if not self.anthropic_api_key:
            raise ValueError("ANTHROPIC_API_KEY is required")
