"""Tests for the file/console logger wrapper."""

import logging

from utils.logger import MonitorLogger


class TestMonitorLogger:
    def test_writes_log_file(self, tmp_path) -> None:
        logger = MonitorLogger("test_monitor_file", log_dir=str(tmp_path))
        logger.info("feed connected")
        for handler in logger.logger.handlers:
            handler.flush()

        files = list(tmp_path.glob("monitor_*.log"))
        assert len(files) == 1
        assert "feed connected" in files[0].read_text()

    def test_recreating_does_not_duplicate_handlers(self, tmp_path) -> None:
        first = MonitorLogger("test_monitor_dupes", log_dir=str(tmp_path), console_output=True)
        second = MonitorLogger("test_monitor_dupes", log_dir=str(tmp_path), console_output=True)
        assert len(second.logger.handlers) == len(first.logger.handlers) == 2

    def test_console_level(self, tmp_path) -> None:
        logger = MonitorLogger("test_monitor_level", log_dir=str(tmp_path), console_output=True,
                               console_level="warning")
        levels = sorted(h.level for h in logger.logger.handlers)
        assert levels == [logging.DEBUG, logging.WARNING]
