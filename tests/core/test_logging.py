"""Tests for structlog configuration and processors."""

import logging

import structlog

from src.config import Settings
from src.core.context import set_request_id, set_user
from src.core.logging import (
    NOISY_LOGGERS,
    add_context_processor,
    configure_structlog,
    filter_sensitive_data,
)


def test_filter_sensitive_data_masks_secrets() -> None:
    event = filter_sensitive_data(
        None,
        "info",
        {
            "event": "payment_recorded",
            "transaction_id": "txn_1234567890",
            "token": "abc",
            "course_id": "c-1",
            "headers": {"authorization": "Bearer abcdefgh"},
        },
    )

    assert event["transaction_id"] == "tx**********90"
    assert event["token"] == "***"
    assert event["course_id"] == "c-1"
    assert event["headers"]["authorization"].startswith("Be")
    assert "abcdefgh" not in event["headers"]["authorization"]


def test_context_processor_adds_request_values() -> None:
    set_request_id("req-42")
    set_user("user-1", "student")

    event = add_context_processor(None, "info", {"event": "lesson_completed"})

    assert event["request_id"] == "req-42"
    assert event["user_id"] == "user-1"
    assert event["user_role"] == "student"


def test_configure_writes_json_files(tmp_path) -> None:
    settings = Settings(log_format="json", log_level="INFO", app_name="coursemarket")

    configure_structlog(settings, log_dir=tmp_path)
    try:
        structlog.get_logger("tests").error("certificate_issued", certificate_id="C-1")
        for handler in logging.getLogger().handlers:
            handler.flush()

        assert "certificate_issued" in (tmp_path / "coursemarket.log").read_text()
        assert "certificate_issued" in (tmp_path / "coursemarket.error.log").read_text()
        for name in NOISY_LOGGERS:
            assert logging.getLogger(name).level == logging.WARNING
    finally:
        configure_structlog(Settings(), to_files=False)


def test_configure_without_files(tmp_path) -> None:
    configure_structlog(Settings(), log_dir=tmp_path, to_files=False)
    assert list(tmp_path.iterdir()) == []
