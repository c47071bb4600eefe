"""Centralised application settings loaded from environment / .env file."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict

_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent


def _resolve_db_dir() -> Path:
    """Return (and create) the directory that holds the SQLite file."""
    d = _PROJECT_ROOT / "data"
    d.mkdir(parents=True, exist_ok=True)
    return d


_DEFAULT_DB_URL = f"sqlite+aiosqlite:///{_resolve_db_dir() / 'therapy_affect.db'}"


class Settings(BaseSettings):
    """All runtime configuration for the affect-inference core.

    Values are read from environment variables first, then from a *.env* file
    located at the project root.  Every variable lives in a flat namespace
    (``FACIAL_INTERVAL_MS``, ``TEXT_CONFIDENCE_CAP`` ...).
    """

    model_config = SettingsConfigDict(
        env_file=str(_PROJECT_ROOT / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Logging ───────────────────────────────────────────────
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # ── Key-value cache ───────────────────────────────────────
    database_url: str = _DEFAULT_DB_URL

    # ── Conversation collaborator ─────────────────────────────
    chat_api_url: str = ""  # empty → canned local responses only
    chat_api_key: str = ""
    chat_timeout_seconds: float = 10.0

    # ── Detection scheduling ──────────────────────────────────
    facial_interval_ms: int = 500
    speech_pause_threshold_ms: int = 1500
    retry_settle_delay_ms: int = 500
    model_load_retry_backoff_seconds: float = 1.0
    transient_error_escalation: int = 3  # consecutive failed ticks before a notice
    observation_max_age_seconds: float = 30.0

    # ── Scoring ───────────────────────────────────────────────
    min_confidence: float = 0.5
    neutral_floor_score: float = 0.5  # max score below this → neutral
    min_expression_probability: float = 0.2
    audio_voiced_rms_threshold: float = 0.02

    # ── Smoothing (shared) ────────────────────────────────────
    high_confidence_bypass: float = 0.85
    cold_start_entries: int = 3

    # ── Smoothing (facial) ────────────────────────────────────
    facial_history_capacity: int = 50
    facial_smoothing_window: int = 7
    facial_current_boost: float = 1.8
    facial_confidence_cap: float = 0.97

    # ── Smoothing (vocal audio) ───────────────────────────────
    vocal_history_capacity: int = 50
    vocal_smoothing_window: int = 5
    vocal_current_boost: float = 1.5
    vocal_confidence_cap: float = 0.95

    # ── Smoothing (transcript text) ───────────────────────────
    text_history_capacity: int = 100
    text_smoothing_window: int = 3
    text_current_boost: float = 1.5
    text_confidence_cap: float = 0.95


@lru_cache
def get_settings() -> Settings:
    """Return a cached :class:`Settings` singleton."""
    return Settings()
