"""
Test suite for provider client setup, fatal error detection and report logging
"""
import asyncio
import logging

import pytest

from chapterindex.core.llm_client import LLMClient
from chapterindex.utils.error_handler import fatal_error_hint, is_fatal_llm_error
from chapterindex.utils.logger_utils import close_report_logger, create_report_logger


def test_fatal_error_detection():
    assert is_fatal_llm_error(Exception("Error code: 402 - Insufficient Balance"))
    assert is_fatal_llm_error(Exception("Incorrect API key provided"))
    assert not is_fatal_llm_error(Exception("Request timed out"))
    assert not is_fatal_llm_error(Exception("Error code: 429 - rate limit"))


def test_fatal_error_hints():
    assert "Recharge" in fatal_error_hint(Exception("insufficient balance"))
    assert ".env" in fatal_error_hint(Exception("invalid api key"))
    assert "access" in fatal_error_hint(Exception("Error code: 403 forbidden"))


def test_provider_defaults(monkeypatch):
    monkeypatch.setenv("DEEPSEEK_API_KEY", "sk-test-deepseek-key")
    client = LLMClient(provider="DeepSeek")

    assert client.provider == "deepseek"
    assert client.model == "deepseek-chat"
    assert client.base_url == "https://api.deepseek.com/v1"
    assert client.client is not None
    asyncio.run(client.close())
    assert client.client is None


def test_missing_api_key_fails_on_call(monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    client = LLMClient(provider="openai")

    assert client.client is None
    with pytest.raises(ValueError, match="not initialized"):
        asyncio.run(client.complete([{"role": "user", "content": "hi"}]))


def test_report_logger_writes_file(tmp_path):
    logger = create_report_logger("report-log", str(tmp_path))
    assert logger is create_report_logger("report-log", str(tmp_path)), "Loggers are cached per report"

    logger.info("[DocumentProcessor] hello")
    logging.getLogger("chapterindex.toc_finder").warning("[TocFinder] component line")
    close_report_logger("report-log")
    logging.getLogger("chapterindex.toc_finder").warning("[TocFinder] after close")

    content = (tmp_path / "report-log.log").read_text(encoding="utf-8")
    assert "Session start - report: report-log" in content
    assert "[DocumentProcessor] hello" in content
    assert "[TocFinder] component line" in content, "Component loggers reach the report file"
    assert "after close" not in content
    assert not any(
        isinstance(h, logging.FileHandler) for h in logging.getLogger("chapterindex").handlers
    ), "File handler is detached when the report closes"
