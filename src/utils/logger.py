"""Logging helper"""
import sys

from loguru import logger
from src.config import LOG_DIR

LOG_FILE = LOG_DIR / "wa_session_{time}.log"


def configure_logging(level: str = "INFO") -> None:
    logger.remove()
    logger.add(
        LOG_FILE,
        rotation="20 MB",
        retention="14 days",
        enqueue=True,
        level=level,
    )
    # stdout carries the MCP stdio transport, keep console logs on stderr
    logger.add(sys.stderr, level=level)


__all__ = ["configure_logging", "logger"]
