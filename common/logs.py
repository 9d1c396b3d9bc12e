"""
Logging setup: rich console output plus a rotating error log file.
"""

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from rich.logging import RichHandler

FILE_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def setup_logging(level: str = "INFO", log_file: Optional[Path] = None, console: bool = True) -> logging.Logger:
    """
    Configure the root logger once for CLI and server processes.

    The file handler only receives WARNING and above so it stays a usable
    error log; categories are carried by logger names.
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, str(level).upper(), logging.INFO))

    for handler in list(root.handlers):
        if getattr(handler, "_medialib", False):
            root.removeHandler(handler)

    if console:
        rich_handler = RichHandler(rich_tracebacks=True, show_path=False)
        rich_handler._medialib = True
        root.addHandler(rich_handler)

    if log_file:
        log_file = Path(log_file).expanduser()
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(log_file, maxBytes=5 * 1024 * 1024, backupCount=3, encoding="utf-8")
        file_handler.setLevel(logging.WARNING)
        file_handler.setFormatter(logging.Formatter(FILE_FORMAT))
        file_handler._medialib = True
        root.addHandler(file_handler)

    # werkzeug logs every request at INFO
    logging.getLogger("werkzeug").setLevel(logging.WARNING)
    return root
