# zonekpi/logging_utils.py
import logging
from pathlib import Path
from typing import Optional

_MAX_LOGGED_IDENT = 64


def setup_logger(name: str, log_file: Optional[Path] = None, level=logging.INFO):
    logger = logging.getLogger(name)
    logger.setLevel(level)
    logger.handlers.clear()

    fmt = logging.Formatter(
        "[%(asctime)s][%(levelname)s] %(message)s",
        datefmt="%H:%M:%S",
    )

    # console
    ch = logging.StreamHandler()
    ch.setFormatter(fmt)
    logger.addHandler(ch)

    # file
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(log_file, encoding="utf-8")
        fh.setFormatter(fmt)
        logger.addHandler(fh)

    return logger


def log_safe(value) -> str:
    """Render a caller-supplied identifier so it cannot forge log lines.

    Non-printable characters (newlines included) are escaped and the result
    is capped in length.
    """
    s = "" if value is None else str(value)
    s = "".join(ch if ch.isprintable() else ch.encode("unicode_escape").decode("ascii") for ch in s)
    if len(s) > _MAX_LOGGED_IDENT:
        s = s[:_MAX_LOGGED_IDENT] + "..."
    return s
