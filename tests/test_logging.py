from __future__ import annotations

import logging
from pathlib import Path

from shareholder_pipeline.logging_config import configure_logging, level_from_name


def test_configure_logging_adds_stream_handler() -> None:
    # Ensure configuring logging doesn't raise and attaches a StreamHandler
    configure_logging(None)
    root = logging.getLogger()
    assert any(isinstance(h, logging.StreamHandler) for h in root.handlers)


def test_configure_logging_writes_file(tmp_path: Path) -> None:
    log_path = tmp_path / "logs" / "import.log"
    configure_logging(log_path, logging.DEBUG)
    logging.getLogger("shareholder_pipeline.test").info("hello")
    for h in logging.getLogger().handlers:
        h.flush()
    assert "hello" in log_path.read_text(encoding="utf-8")
    assert logging.getLogger("pymongo").level == logging.INFO
    configure_logging(None)


def test_level_from_name() -> None:
    assert level_from_name("debug") == logging.DEBUG
    assert level_from_name(None) == logging.INFO
    assert level_from_name("nonsense", logging.WARNING) == logging.WARNING
