import os
import sys
import logging
import datetime

from typing import List

logger = logging.getLogger(__name__)

LOG_FILE_ENV_KEY = "FEISHU_SYNC_LOG_PATH"
DEFAULT_LOG_DIR = os.path.join("logs", "cli")
DEFAULT_LOG_PREFIX = "feishu_sync"
DEFAULT_WEB_LOG_DIR = os.path.join("logs", "web")
DEFAULT_WEB_LOG_PREFIX = "feishu_sync_web"
DEFAULT_MAX_LOG_FILES = 10
DEFAULT_LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
# Chatty third-party loggers kept at WARNING.
QUIET_LOGGERS = ("httpx", "httpcore")


def configure_runtime_logging(
    log_dir: str = DEFAULT_LOG_DIR,
    log_prefix: str = DEFAULT_LOG_PREFIX,
    max_files: int = DEFAULT_MAX_LOG_FILES,
    level: int = logging.INFO
) -> str:
    """Configure stream + file logging and cleanup old log files.

    Args:
        log_dir: Log directory path.
        log_prefix: Log file name prefix.
        max_files: Max log files to retain.
        level: Root logger level.
    """

    log_path = _new_run_log_path(log_dir = log_dir, log_prefix = log_prefix)
    _install_handlers(
        handlers = [
            logging.StreamHandler(stream = sys.stdout),
            logging.FileHandler(log_path, encoding = "utf-8")
        ],
        level = level
    )
    os.environ[LOG_FILE_ENV_KEY] = log_path
    _cleanup_old_log_files(
        log_dir = log_dir,
        log_prefix = log_prefix,
        max_files = max_files
    )
    logger.info("main log file ready: %s", log_path)
    return log_path


def configure_web_logging(
    log_dir: str = DEFAULT_WEB_LOG_DIR,
    log_prefix: str = DEFAULT_WEB_LOG_PREFIX,
    max_files: int = DEFAULT_MAX_LOG_FILES,
    level: int = logging.INFO
) -> str:
    """Configure stream + file logging for web service.

    Args:
        log_dir: Log directory path.
        log_prefix: Log file name prefix.
        max_files: Max log files to retain.
        level: Root logger level.
    """

    return configure_runtime_logging(
        log_dir = log_dir,
        log_prefix = log_prefix,
        max_files = max_files,
        level = level
    )


def _install_handlers(handlers: List[logging.Handler], level: int) -> None:
    """Replace root handlers with the given ones.

    Args:
        handlers: New root handlers.
        level: Root logger level.
    """

    formatter = logging.Formatter(DEFAULT_LOG_FORMAT)
    root_logger = logging.getLogger()
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
    for handler in handlers:
        handler.setFormatter(formatter)
        root_logger.addHandler(handler)
    root_logger.setLevel(level)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))


def _new_run_log_path(log_dir: str, log_prefix: str) -> str:
    """Build one per-run log file path.

    Args:
        log_dir: Log directory path.
        log_prefix: Log file name prefix.
    """

    os.makedirs(log_dir, exist_ok = True)
    timestamp = datetime.datetime.now().strftime("%Y%m%d_%H%M%S_%f")
    filename = f"{log_prefix}_{timestamp}_{os.getpid()}.log"
    return os.path.join(log_dir, filename)


def _cleanup_old_log_files(log_dir: str, log_prefix: str, max_files: int) -> None:
    """Keep only the latest log files under one prefix.

    Args:
        log_dir: Log directory path.
        log_prefix: Log file name prefix.
        max_files: Max log files to retain.
    """

    if max_files < 1:
        return

    try:
        filenames = os.listdir(log_dir)
    except FileNotFoundError:
        return

    candidates = [
        os.path.join(log_dir, filename)
        for filename in filenames
        if filename.startswith(f"{log_prefix}_") and filename.endswith(".log")
        and os.path.isfile(os.path.join(log_dir, filename))
    ]
    candidates.sort(key = os.path.getmtime, reverse = True)
    for stale_path in candidates[max_files:]:
        try:
            os.remove(stale_path)
        except OSError as exc:
            logger.debug("Failed to remove stale log %s: %s", stale_path, str(exc))
