import os
import sys
import logging
from datetime import datetime

import click


__version__ = '1.0.0'

# Custom level between INFO and WARNING for "stage completed" lines
SUCCESS = 25
logging.addLevelName(SUCCESS, 'SUCCESS')

LEVEL_COLORS = {
    logging.DEBUG: 'bright_black',
    logging.INFO: 'cyan',
    SUCCESS: 'green',
    logging.WARNING: 'yellow',
    logging.ERROR: 'red',
    logging.CRITICAL: 'red',
}


class ColoredFormatter(logging.Formatter):
    """Formatter that colors the level tag of console lines."""

    def format(self, record):
        message = super().format(record)
        color = LEVEL_COLORS.get(record.levelno)
        if color is None:
            return message
        return click.style(message, fg=color, bold=record.levelno >= logging.ERROR)


def configure_logging(logs_dir: str, command: str, level: int = logging.INFO) -> str:
    """
    Configure logging for one invocation.

    Every invocation writes to its own timestamped log file under logs_dir and
    duplicates all output to the console.

    Args:
        logs_dir: Directory receiving the log files
        command: Name of the CLI command being run (used in the file name)
        level: Log level for both handlers

    Returns:
        Path of the log file created for this invocation
    """
    os.makedirs(logs_dir, exist_ok=True)
    timestamp = datetime.now().strftime('%Y-%m-%dT%H%M%S')
    log_path = os.path.join(logs_dir, f'{command}-{timestamp}.log')

    logger = logging.getLogger('snapkeeper')
    logger.setLevel(level)

    # Drop handlers left by a previous invocation in the same process (scheduler)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    # Console handler
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(ColoredFormatter(
        '[%(asctime)s] %(levelname)s: %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    ))

    # File handler
    file_handler = logging.FileHandler(log_path, encoding='utf-8')
    file_handler.setLevel(level)
    file_handler.setFormatter(logging.Formatter(
        '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
    ))

    logger.addHandler(console_handler)
    logger.addHandler(file_handler)

    logger.debug(f"Logging configured (level: {logging.getLevelName(level)}, file: {log_path})")
    return log_path
