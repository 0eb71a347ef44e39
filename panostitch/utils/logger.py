"""Logging utilities"""

import logging
import os
import sys
from pathlib import Path
from typing import Optional

LOG_FILE_NAME = "panostitch.log"

# Path of the file handler's log file, once set up
_log_file_path = None


def _is_writable(log_dir: Path) -> bool:
    test_file = log_dir / ".test_write"
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
        test_file.write_text("test")
        test_file.unlink()
        return True
    except OSError:
        return False


def get_logs_directory() -> Path:
    """Get logs directory with fallbacks"""
    # Explicit override first
    override = os.environ.get("PANOSTITCH_LOG_DIR")
    if override:
        log_dir = Path(override).expanduser()
        if _is_writable(log_dir):
            return log_dir

    # Fallback 1: per-user directory
    log_dir = Path.home() / ".panostitch" / "logs"
    if _is_writable(log_dir):
        return log_dir

    # Fallback 2: local logs directory
    log_dir = Path("logs")
    if _is_writable(log_dir):
        return log_dir

    # Fallback 3: current directory
    return Path(".")


def setup_logger(name: str, level: int = logging.INFO) -> logging.Logger:
    """Setup logger with consistent formatting"""
    global _log_file_path

    logger = logging.getLogger(name)
    logger.setLevel(level)

    if not logger.handlers:
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

        # Console handler
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

        # File handler
        try:
            log_file = get_logs_directory() / LOG_FILE_NAME
            file_handler = logging.FileHandler(str(log_file), mode='a', encoding='utf-8')
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)
            _log_file_path = log_file
            logger.debug(f"Logging to: {log_file.absolute()}")
        except OSError as e:
            # Console logging still works without the file
            print(f"Could not set up file logging: {e}", file=sys.stderr)

    return logger


def get_log_file_path() -> Optional[Path]:
    """Get the path to the log file"""
    return _log_file_path
