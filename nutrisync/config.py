"""Runtime configuration.

All settings come from environment variables (``.env`` is loaded when
present). ``Settings.from_env()`` validates them once at startup.

Example .env:
    NUTRISYNC_DATA_DIR=~/.nutrisync
    ANALYSIS_API_URL=https://api.example.com
    ANALYSIS_PROVIDERS=openai,edamam
    OPENAI_API_KEY=sk-...
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional, Tuple

from dotenv import load_dotenv

DEFAULT_MIME_TYPES: Tuple[str, ...] = ("image/jpeg", "image/png", "image/webp", "image/heic")


def _get_int(env: Mapping[str, str], key: str, default: int, minimum: int = 0) -> int:
    raw = env.get(key)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError as e:
        raise ValueError(f"{key} must be an integer, got {raw!r}") from e
    if value < minimum:
        raise ValueError(f"{key} must be >= {minimum}, got {value}")
    return value


def _get_float(env: Mapping[str, str], key: str, default: float, minimum: float = 0.0) -> float:
    raw = env.get(key)
    if raw is None or raw == "":
        return default
    try:
        value = float(raw)
    except ValueError as e:
        raise ValueError(f"{key} must be a number, got {raw!r}") from e
    if value < minimum:
        raise ValueError(f"{key} must be >= {minimum}, got {value}")
    return value


def _get_optional_float(env: Mapping[str, str], key: str) -> Optional[float]:
    if not env.get(key):
        return None
    return _get_float(env, key, 0.0)


def _get_bool(env: Mapping[str, str], key: str, default: bool) -> bool:
    raw = env.get(key)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _get_list(env: Mapping[str, str], key: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    raw = env.get(key)
    if not raw:
        return default
    return tuple(part.strip().lower() for part in raw.split(",") if part.strip())


@dataclass(frozen=True)
class Settings:
    """Validated configuration for both the device runtime and the API."""

    # Device-side sync
    data_dir: Path = field(default_factory=lambda: Path.home() / ".nutrisync")
    retry_max_attempts: int = 5
    retry_base_delay_s: float = 1.0
    retry_max_delay_s: Optional[float] = None
    rate_limit_min_delay_s: float = 5.0
    claim_timeout_s: float = 600.0
    failure_cooldown_s: float = 300.0
    worker_count: int = 2
    reconciliation_interval_s: float = 300.0
    retention_days: int = 30
    max_synced_records: int = 1000
    api_base_url: str = "http://localhost:8080"
    api_timeout_s: float = 90.0
    api_token: Optional[str] = None

    # Server-side analysis
    analysis_providers: Tuple[str, ...] = ("stub",)
    openai_api_key: Optional[str] = None
    openai_model: str = "gpt-4o"
    openai_timeout_s: float = 60.0
    edamam_app_id: Optional[str] = None
    edamam_app_key: Optional[str] = None
    edamam_timeout_s: float = 30.0
    max_image_bytes: int = 10 * 1024 * 1024
    allowed_mime_types: Tuple[str, ...] = DEFAULT_MIME_TYPES
    result_ttl_s: int = 24 * 3600
    auth_required: bool = True
    auth_jwt_secret: Optional[str] = None
    auth_jwt_audience: Optional[str] = None

    # Ambient
    log_level: str = "INFO"
    log_json: bool = False
    app_version: str = "0.3.0"
    host: str = "0.0.0.0"
    port: int = 8080

    @property
    def records_file(self) -> Path:
        return self.data_dir / "captures.json"

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None, load_env_file: bool = True) -> Settings:
        """
        Build settings from the environment.

        Args:
            env: Mapping to read instead of ``os.environ`` (tests)
            load_env_file: Load ``.env`` into ``os.environ`` first

        Raises:
            ValueError: If a value is malformed or out of range
        """
        if env is None:
            if load_env_file:
                load_dotenv()
            env = os.environ

        data_dir = env.get("NUTRISYNC_DATA_DIR")
        return cls(
            data_dir=Path(data_dir).expanduser() if data_dir else Path.home() / ".nutrisync",
            retry_max_attempts=_get_int(env, "SYNC_MAX_ATTEMPTS", 5, minimum=1),
            retry_base_delay_s=_get_float(env, "SYNC_BASE_DELAY_S", 1.0),
            retry_max_delay_s=_get_optional_float(env, "SYNC_MAX_DELAY_S"),
            rate_limit_min_delay_s=_get_float(env, "SYNC_RATE_LIMIT_DELAY_S", 5.0),
            claim_timeout_s=_get_float(env, "SYNC_CLAIM_TIMEOUT_S", 600.0, minimum=1.0),
            failure_cooldown_s=_get_float(env, "SYNC_FAILURE_COOLDOWN_S", 300.0),
            worker_count=_get_int(env, "SYNC_WORKERS", 2, minimum=1),
            reconciliation_interval_s=_get_float(env, "RECONCILE_INTERVAL_S", 300.0, minimum=1.0),
            retention_days=_get_int(env, "SYNCED_RETENTION_DAYS", 30, minimum=1),
            max_synced_records=_get_int(env, "MAX_SYNCED_RECORDS", 1000, minimum=1),
            api_base_url=env.get("ANALYSIS_API_URL", "http://localhost:8080").rstrip("/"),
            api_timeout_s=_get_float(env, "ANALYSIS_API_TIMEOUT_S", 90.0, minimum=1.0),
            api_token=env.get("ANALYSIS_API_TOKEN") or None,
            analysis_providers=_get_list(env, "ANALYSIS_PROVIDERS", ("stub",)),
            openai_api_key=env.get("OPENAI_API_KEY") or None,
            openai_model=env.get("OPENAI_VISION_MODEL", "gpt-4o"),
            openai_timeout_s=_get_float(env, "OPENAI_TIMEOUT_S", 60.0, minimum=1.0),
            edamam_app_id=env.get("EDAMAM_APP_ID") or None,
            edamam_app_key=env.get("EDAMAM_APP_KEY") or None,
            edamam_timeout_s=_get_float(env, "EDAMAM_TIMEOUT_S", 30.0, minimum=1.0),
            max_image_bytes=_get_int(env, "MAX_IMAGE_BYTES", 10 * 1024 * 1024, minimum=1),
            allowed_mime_types=_get_list(env, "ALLOWED_MIME_TYPES", DEFAULT_MIME_TYPES),
            result_ttl_s=_get_int(env, "RESULT_TTL_S", 24 * 3600, minimum=1),
            auth_required=_get_bool(env, "AUTH_REQUIRED", True),
            auth_jwt_secret=env.get("AUTH_JWT_SECRET") or None,
            auth_jwt_audience=env.get("AUTH_JWT_AUDIENCE") or None,
            log_level=env.get("LOG_LEVEL", "INFO").upper(),
            log_json=_get_bool(env, "LOG_JSON", False),
            app_version=env.get("APP_VERSION", "0.3.0"),
            host=env.get("HOST", "0.0.0.0"),
            port=_get_int(env, "PORT", 8080, minimum=1),
        )
