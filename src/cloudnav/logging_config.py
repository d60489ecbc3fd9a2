#!/usr/bin/env python3
"""Logging configuration for cloudnav."""

import logging
import os
import sys
from pathlib import Path
from typing import Optional

NOISY_LOGGERS = ('httpx', 'httpcore', 'hpack', 'aiohttp.access', 'asyncio')


def setup_logging(level: Optional[str] = None, log_file: Optional[Path] = None) -> None:
    """Setup logging configuration for cloudnav.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
               If None, reads from CLOUDNAV_LOG_LEVEL env var, defaults to INFO
        log_file: Optional path to log file. If None, logs to console only
    """
    if level is None:
        level = os.environ.get('CLOUDNAV_LOG_LEVEL', 'INFO')
    level = level.upper()

    numeric_level = getattr(logging, level, logging.INFO)

    detailed_formatter = logging.Formatter(
        fmt='%(asctime)s - %(name)s - %(levelname)s - [%(threadName)s %(filename)s:%(lineno)d] - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    simple_formatter = logging.Formatter(
        fmt='%(asctime)s - %(levelname)s - %(message)s',
        datefmt='%H:%M:%S'
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG if log_file else numeric_level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    # Console goes to stderr so CLI listings stay pipeable
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(numeric_level)

    if numeric_level == logging.DEBUG:
        console_handler.setFormatter(detailed_formatter)
    else:
        console_handler.setFormatter(simple_formatter)

    root_logger.addHandler(console_handler)

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.DEBUG)  # Always log everything to file
        file_handler.setFormatter(detailed_formatter)
        root_logger.addHandler(file_handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logger = logging.getLogger(__name__)
    logger.debug(f"Logging initialized at {level} level")
    if log_file:
        logger.debug(f"Logging to file: {log_file}")
