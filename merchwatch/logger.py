import logging
import os
from pathlib import Path
from typing import Literal, Optional

from rich.console import Console
from rich.logging import RichHandler

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]

_configured = False


def configure_logging(level: LogLevel = "INFO") -> None:
    """Sets up the rich console logger once per process."""
    global _configured
    if _configured:
        logging.getLogger().setLevel(level)
        return
    console = Console(stderr=True)
    handlers: list[logging.Handler] = [
        RichHandler(console=console, show_path=False, markup=False, rich_tracebacks=True)
    ]
    file_handler = _build_file_handler(console)
    if file_handler:
        handlers.append(file_handler)
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=handlers,
        force=True,
    )
    # httpx logs every request at INFO.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    _configured = True


def get_logger(name: Optional[str] = None) -> logging.Logger:
    configure_logging()
    return logging.getLogger(name)


def _build_file_handler(console: Console) -> logging.Handler | None:
    """Adds a plain-text file handler when LOG_FILE_PATH is set."""
    log_path_str = os.getenv("LOG_FILE_PATH")
    if not log_path_str:
        return None
    try:
        log_path = Path(log_path_str).expanduser()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(log_path, encoding="utf-8")
    except OSError as exc:  # pragma: no cover
        console.print(f"[yellow]Cannot open log file '{log_path_str}': {exc}[/yellow]")
        return None
    handler.setFormatter(
        logging.Formatter(
            fmt="%(asctime)s %(levelname)s %(name)s %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    return handler
