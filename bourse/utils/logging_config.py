"""Logging configuration."""
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

import structlog

from bourse.core.config import logging_config


def setup_logging(level: Optional[str] = None, log_file: Optional[str] = None):
    """Configure structured JSON logging to stdout and a rotating file."""
    level_name = (level or logging_config.log_level).upper()
    log_path = Path(log_file or logging_config.log_file)
    log_path.parent.mkdir(parents=True, exist_ok=True)

    # Configure standard library logging
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, level_name)
    )

    # Configure structlog
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer()
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    # Add rotating file handler
    file_handler = RotatingFileHandler(
        log_path,
        maxBytes=logging_config.log_file_max_size_mb * 1024 * 1024,
        backupCount=logging_config.log_file_backup_count
    )
    file_handler.setLevel(getattr(logging, level_name))

    root_logger = logging.getLogger()
    root_logger.addHandler(file_handler)
