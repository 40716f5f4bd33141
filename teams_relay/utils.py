"""
teams_relay/utils.py — shared helpers: logging, data directory, private files.
"""
import os
import logging
from pathlib import Path

from rich.logging import RichHandler
from rich.console import Console

console = Console(stderr=True)


# ─── Logging ──────────────────────────────────────────────────────────────────

def setup_logging(level: int = logging.INFO) -> None:
    """Configure Rich-based logging for the whole application."""
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
    )
    # httpx logs every request URL at INFO, and our URLs carry conversation ids
    logging.getLogger("httpx").setLevel(logging.WARNING)


log = logging.getLogger("teams_relay")


# ─── Data directory / permissions ─────────────────────────────────────────────

PRIVATE_DIR_MODE  = 0o700
PRIVATE_FILE_MODE = 0o600


def get_data_dir() -> Path:
    """
    Read TEAMS_RELAY_DATA_DIR from the environment.
    Falls back to ~/.teams-relay. The directory is created owner-only.
    """
    root = Path(os.getenv("TEAMS_RELAY_DATA_DIR", "~/.teams-relay")).expanduser()
    ensure_private_dir(root)
    return root


def ensure_private_dir(path: Path) -> Path:
    """Create `path` (and parents) if missing and restrict it to the owner."""
    path.mkdir(parents=True, exist_ok=True, mode=PRIVATE_DIR_MODE)
    try:
        os.chmod(path, PRIVATE_DIR_MODE)
    except OSError as exc:
        log.debug("Could not chmod %s: %s", path, exc)
    return path


def atomic_write_bytes(path: Path, data: bytes) -> None:
    """
    Write `data` to a sibling temp file with owner-only permissions, then
    rename it over `path`. Readers see either the old or the new file.
    """
    tmp = path.with_name(f".{path.name}.{os.getpid()}.tmp")
    fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, PRIVATE_FILE_MODE)
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(data)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp, path)
    except BaseException:
        tmp.unlink(missing_ok=True)
        raise
    os.chmod(path, PRIVATE_FILE_MODE)
