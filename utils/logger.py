"""Logging setup for the DORA metrics pipeline."""

import logging
import sys


def setup_logger(log_level: str = "INFO", name: str = "dora_pipeline") -> logging.Logger:
    """
    Set up and configure application logger.

    Creates a logger with a simple, readable format suitable for CLI output
    and for the background fetch workers (thread name is included so
    interleaved batches can be told apart).

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        name: Logger name (default: dora_pipeline)

    Returns:
        logging.Logger: Configured logger instance
    """
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)

    logging.basicConfig(
        level=numeric_level,
        format='%(asctime)s - %(name)s - %(levelname)s - [%(threadName)s] %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
        stream=sys.stdout,
        force=True,  # Override any existing configuration
    )

    logger = logging.getLogger(name)
    logger.setLevel(numeric_level)

    return logger
