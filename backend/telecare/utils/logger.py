import logging
import sys
from pathlib import Path
from logging.handlers import RotatingFileHandler
from telecare.config import get_settings

settings = get_settings()

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
FILE_LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(funcName)s:%(lineno)d - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
MAX_LOG_BYTES = 10 * 1024 * 1024
LOG_BACKUPS = 5


def _rotating(path: Path, level: int) -> RotatingFileHandler:
    handler = RotatingFileHandler(path, maxBytes=MAX_LOG_BYTES, backupCount=LOG_BACKUPS)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(FILE_LOG_FORMAT, datefmt=DATE_FORMAT))
    return handler


def _configure() -> logging.Logger:
    """Console plus app.log for everything, errors.log for ERROR and above."""
    logs_dir = Path(settings.LOG_DIR)
    logs_dir.mkdir(parents=True, exist_ok=True)
    level = logging.DEBUG if settings.APP_DEBUG else logging.INFO

    root = logging.getLogger("telecare")
    root.setLevel(level)
    # Re-imports must not stack handlers
    if root.handlers:
        root.handlers.clear()

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(level)
    console.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
    root.addHandler(console)
    root.addHandler(_rotating(logs_dir / "app.log", logging.INFO))
    root.addHandler(_rotating(logs_dir / "errors.log", logging.ERROR))
    return root


logger = _configure()

_audit_logger = logger.getChild("audit")


def get_logger(name: str = None) -> logging.Logger:
    """Get a logger instance. If name is provided, returns a child logger."""
    if name:
        return logger.getChild(name)
    return logger


def redact_email(email: str | None) -> str:
    """Mask the local part of an address for logs: ``johnsmith@x.io`` -> ``joh***@x.io``.

    At least one character of the local part is always hidden.
    """
    if not email:
        return ""
    local, at, domain = email.rpartition("@")
    if not at:
        local, domain = email, ""
    keep = max(min(3, len(local) - 1), 0)
    return f"{local[:keep]}***{at}{domain}"


def audit(event: str, level: int = logging.INFO, **fields) -> None:
    """Write a security audit record as ``event key=value ...``.

    Never pass passwords or tokens here; emails should go through redact_email.
    """
    parts = " ".join(f"{key}={value}" for key, value in fields.items() if value is not None)
    _audit_logger.log(level, f"{event} {parts}".rstrip())
