import logging
import os
import sys
from logging.handlers import RotatingFileHandler

# The engine runs inside a native-messaging host: stdout belongs to the
# protocol, so logs only ever go to a file and stderr.


def _default_log_dir() -> str:
    return os.environ.get(
        "POPUP_GUARD_LOG_DIR",
        os.path.join(os.path.expanduser("~"), ".popup_guard", "logs"),
    )


def setup_logger(name="popup_guard", log_dir=None, level=logging.INFO):
    """
    Configure a logger writing to a rotating file and stderr.
    NEVER stdout.

    Calling it again for the same name does not stack handlers.
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)

    if getattr(logger, "_popup_guard_configured", False):
        return logger

    formatter = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    log_dir = log_dir or _default_log_dir()
    try:
        os.makedirs(log_dir, exist_ok=True)
        # Max 5MB, keep 3 backups
        file_handler = RotatingFileHandler(
            os.path.join(log_dir, "engine.log"),
            maxBytes=5 * 1024 * 1024,
            backupCount=3,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
    except OSError as e:
        # Read-only home: keep going with stderr only
        sys.stderr.write(f"popup_guard: file logging disabled ({e})\n")

    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)

    logger._popup_guard_configured = True
    return logger


def set_log_level(level_name: str) -> None:
    """Apply a textual level (e.g. from config) to the package logger."""
    level = getattr(logging, str(level_name).upper(), logging.INFO)
    logger.setLevel(level)


logger = setup_logger()
