from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent
DEFAULT_MAX_IMAGE_BYTES = 10 * 1024 * 1024


@dataclass
class AppConfig:
    vision_provider: str = "gemini"
    gemini_api_key: str = ""
    gemini_model: str = "gemini-1.5-flash"
    gemini_base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    openai_api_key: str = ""
    openai_model: str = "gpt-4o"
    openai_base_url: str = "https://api.openai.com/v1"
    request_timeout_seconds: float = 60.0
    max_output_tokens: int = 1000
    temperature: float = 0.2
    max_image_bytes: int = DEFAULT_MAX_IMAGE_BYTES
    history_enabled: bool = True
    history_backend: str = "local"
    supabase_url: str = ""
    supabase_key: str = ""
    history_table: str = "detection_history"
    image_bucket: str = "plant-images"
    local_data_dir: Path = field(default_factory=lambda: BASE_DIR / "data")
    history_limit: int = 10
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "AppConfig":
        defaults = cls()
        return cls(
            vision_provider=os.getenv("VISION_PROVIDER", defaults.vision_provider).strip().lower(),
            gemini_api_key=os.getenv("GEMINI_API_KEY", ""),
            gemini_model=os.getenv("GEMINI_MODEL", defaults.gemini_model),
            gemini_base_url=os.getenv("GEMINI_BASE_URL", defaults.gemini_base_url),
            openai_api_key=os.getenv("OPENAI_API_KEY", ""),
            openai_model=os.getenv("OPENAI_MODEL", defaults.openai_model),
            openai_base_url=os.getenv("OPENAI_BASE_URL", defaults.openai_base_url),
            request_timeout_seconds=_parse_positive_float(
                os.getenv("VISION_REQUEST_TIMEOUT_SECONDS"),
                fallback=defaults.request_timeout_seconds,
            ),
            max_output_tokens=_parse_positive_int(
                os.getenv("VISION_MAX_OUTPUT_TOKENS"),
                fallback=defaults.max_output_tokens,
            ),
            temperature=_parse_float(
                os.getenv("VISION_TEMPERATURE"),
                fallback=defaults.temperature,
            ),
            max_image_bytes=_parse_positive_int(
                os.getenv("MAX_IMAGE_BYTES"),
                fallback=defaults.max_image_bytes,
            ),
            history_enabled=_parse_bool(os.getenv("HISTORY_ENABLED"), default=defaults.history_enabled),
            history_backend=os.getenv("HISTORY_BACKEND", defaults.history_backend).strip().lower(),
            supabase_url=os.getenv("SUPABASE_URL", ""),
            # The service-role key wins so server-side inserts bypass row-level policies.
            supabase_key=os.getenv("SUPABASE_SERVICE_ROLE_KEY") or os.getenv("SUPABASE_ANON_KEY", ""),
            history_table=os.getenv("HISTORY_TABLE", defaults.history_table),
            image_bucket=os.getenv("IMAGE_BUCKET", defaults.image_bucket),
            local_data_dir=Path(os.getenv("LOCAL_DATA_DIR") or defaults.local_data_dir),
            history_limit=_parse_positive_int(
                os.getenv("HISTORY_LIMIT"),
                fallback=defaults.history_limit,
            ),
            log_level=os.getenv("LOG_LEVEL", defaults.log_level).strip().upper() or "INFO",
        )

    @property
    def supabase_configured(self) -> bool:
        return bool(self.supabase_url.strip() and self.supabase_key.strip())


def _parse_bool(raw_value: str | None, *, default: bool) -> bool:
    if raw_value is None:
        return default
    value = raw_value.strip().lower()
    if value in {"1", "true", "yes", "on"}:
        return True
    if value in {"0", "false", "no", "off"}:
        return False
    return default


def _parse_float(raw_value: str | None, *, fallback: float) -> float:
    if raw_value is None:
        return fallback
    try:
        return float(raw_value)
    except ValueError:
        return fallback


def _parse_positive_float(raw_value: str | None, *, fallback: float) -> float:
    parsed = _parse_float(raw_value, fallback=fallback)
    if parsed <= 0:
        return fallback
    return parsed


def _parse_positive_int(raw_value: str | None, *, fallback: int) -> int:
    if raw_value is None:
        return fallback
    try:
        parsed = int(raw_value)
    except ValueError:
        return fallback
    if parsed <= 0:
        return fallback
    return parsed
