"""Tests for environment-driven settings."""

import pytest

from env_settings import CaptureSettings, TranscribeSettings, get_book_id


def test_capture_defaults(monkeypatch):
    for name in ("IA_START_PAGE", "IA_RESUME", "IA_MAX_PAGES", "IA_MAX_RETRIES", "IA_HEADLESS"):
        monkeypatch.delenv(name, raising=False)

    settings = CaptureSettings.from_env()

    assert settings.start_page == 1
    assert settings.max_retries == 10
    assert settings.max_pages == 0
    assert not settings.resume


def test_capture_reads_environment(monkeypatch):
    monkeypatch.setenv("IA_MAX_RETRIES", "3")
    monkeypatch.setenv("IA_RESUME", "yes")
    monkeypatch.setenv("IA_PAGE_DELAY_MS", " 50 ")

    settings = CaptureSettings.from_env()

    assert settings.max_retries == 3
    assert settings.resume
    assert settings.page_delay_ms == 50


def test_malformed_integer_names_the_variable(monkeypatch):
    monkeypatch.setenv("OCR_CONCURRENCY", "many")
    with pytest.raises(ValueError, match="OCR_CONCURRENCY"):
        TranscribeSettings.from_env()


def test_book_id_resolution_order(monkeypatch):
    monkeypatch.delenv("BOOK_ID", raising=False)
    monkeypatch.setenv("IA_ID", "from-ia")
    monkeypatch.setenv("ASIN", "from-asin")
    assert get_book_id() == "from-ia"

    monkeypatch.setenv("BOOK_ID", "explicit")
    assert get_book_id() == "explicit"
