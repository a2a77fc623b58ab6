# utils/logger.py
from loguru import logger
import os
import sys
from datetime import datetime
from pathlib import Path

logger.remove()

logger.add(
    sys.stdout,
    level=os.getenv("LOG_LEVEL", "INFO"),
    enqueue=True,
    format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | {level} | {message}",
)


def configure_file_logging(log_dir: str | Path | None = None, level: str = "DEBUG") -> Path:
    """Add a rotating file sink; returns the log file path."""
    base = Path(log_dir) if log_dir else Path(__file__).resolve().parents[1] / "logs"
    base.mkdir(parents=True, exist_ok=True)

    start_time = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = base / f"session_{start_time}.log"

    logger.add(
        log_file,
        level=level,
        rotation="100 MB",
        retention="90 days",
        enqueue=True,
        encoding="utf-8",
        format="{time:YYYY-MM-DD HH:mm:ss} | {level} | {message}",
    )
    logger.info(f"Logger initialized. Writing logs to {log_file}")
    return log_file


def mask(s: str | None) -> str:
    """Hide the middle of secrets/addresses before they reach a sink."""
    if not s:
        return ""
    if len(s) <= 8:
        return "*" * len(s)
    return s[:4] + "*" * (len(s) - 8) + s[-4:]
