"""
Environment knobs shared by the capture, transcription, and export scripts.

Each script calls load_dotenv() first, so values may come from a local .env
file; command-line flags then override what is collected here.
"""

from __future__ import annotations

import os
from dataclasses import dataclass

DEFAULT_PROVISIONAL_TOTAL = 9999


def env_str(name: str, default: str | None = None) -> str | None:
    value = os.environ.get(name)
    if value is None or not value.strip():
        return default
    return value.strip()


def env_int(name: str, default: int) -> int:
    value = env_str(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {value!r}") from None


def env_flag(name: str) -> bool:
    return (env_str(name) or "").lower() in {"1", "true", "yes", "on"}


def get_book_id() -> str | None:
    return env_str("BOOK_ID") or env_str("IA_ID") or env_str("ASIN")


@dataclass(frozen=True)
class CaptureSettings:
    start_page: int = 1
    resume: bool = False
    max_pages: int = 0
    max_retries: int = 10
    tile_stable_ms: int = 800
    page_delay_ms: int = 1200
    spinner_timeout_ms: int = 45_000
    reader_timeout_ms: int = 60_000
    headless: bool = False

    @classmethod
    def from_env(cls) -> CaptureSettings:
        return cls(
            start_page=env_int("IA_START_PAGE", 1),
            resume=env_flag("IA_RESUME"),
            max_pages=env_int("IA_MAX_PAGES", 0),
            max_retries=env_int("IA_MAX_RETRIES", 10),
            tile_stable_ms=env_int("IA_TILE_STABLE_MS", 800),
            page_delay_ms=env_int("IA_PAGE_DELAY_MS", 1200),
            spinner_timeout_ms=env_int("IA_SPINNER_TIMEOUT_MS", 45_000),
            reader_timeout_ms=env_int("IA_READER_TIMEOUT_MS", 60_000),
            headless=env_flag("IA_HEADLESS"),
        )


@dataclass(frozen=True)
class TranscribeSettings:
    model: str = "gpt-4o"
    concurrency: int = 6
    max_retries: int = 30
    backoff_base_ms: int = 500
    backoff_max_ms: int = 5000

    @classmethod
    def from_env(cls) -> TranscribeSettings:
        return cls(
            model=env_str("OCR_MODEL", "gpt-4o"),
            concurrency=env_int("OCR_CONCURRENCY", 6),
            max_retries=env_int("OCR_MAX_RETRIES", 30),
            backoff_base_ms=env_int("OCR_BACKOFF_BASE_MS", 500),
            backoff_max_ms=env_int("OCR_BACKOFF_MAX_MS", 5000),
        )
