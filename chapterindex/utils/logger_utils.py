"""
Logging helpers - per-report log files under debug_logs/{report_id}.log
"""
import logging
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

PACKAGE_LOGGER = "chapterindex"


class ReportLogger:
    """
    Attaches one file handler per report to the package logger
    Log file path: {base_dir}/{report_id}.log

    Every component logs to a child of the package logger, so the file
    collects the whole run until close_logger() detaches the handler.
    """

    def __init__(self, base_dir: str = "debug_logs"):
        self.base_dir = Path(base_dir)
        self._handlers: Dict[str, logging.FileHandler] = {}

    def get_logger(self, report_id: str) -> logging.Logger:
        logger = logging.getLogger(PACKAGE_LOGGER)
        if report_id in self._handlers:
            return logger

        self.base_dir.mkdir(parents=True, exist_ok=True)
        if logger.level == logging.NOTSET or logger.level > logging.DEBUG:
            logger.setLevel(logging.DEBUG)

        log_file = self.base_dir / f"{report_id}.log"
        file_handler = logging.FileHandler(log_file, encoding='utf-8')
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
        logger.addHandler(file_handler)
        self._handlers[report_id] = file_handler

        logger.info("=" * 80)
        logger.info(f"Session start - report: {report_id}")
        logger.info(f"Log file: {log_file.absolute()}")
        logger.info(f"Time: {datetime.now().strftime(DATE_FORMAT)}")
        logger.info("=" * 80)
        return logger

    def close_logger(self, report_id: str):
        handler = self._handlers.pop(report_id, None)
        if handler is None:
            return
        logger = logging.getLogger(PACKAGE_LOGGER)
        logger.info(f"Session end - report: {report_id}")
        logger.removeHandler(handler)
        handler.close()


_report_logger: Optional[ReportLogger] = None


def create_report_logger(report_id: str, base_dir: str = "debug_logs") -> logging.Logger:
    """Module-level convenience wrapper around a shared ReportLogger"""
    global _report_logger
    if _report_logger is None or str(_report_logger.base_dir) != str(Path(base_dir)):
        _report_logger = ReportLogger(base_dir)
    return _report_logger.get_logger(report_id)


def close_report_logger(report_id: str):
    if _report_logger is not None:
        _report_logger.close_logger(report_id)


def setup_console_logging(debug: bool = False):
    """Console handler for the chapterindex package logger (CLI use)"""
    root = logging.getLogger(PACKAGE_LOGGER)
    # Logger stays at DEBUG so report files get everything; the console handler filters
    root.setLevel(logging.DEBUG)
    if not any(isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler)
               for h in root.handlers):
        handler = logging.StreamHandler()
        handler.setLevel(logging.DEBUG if debug else logging.INFO)
        handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
        root.addHandler(handler)
