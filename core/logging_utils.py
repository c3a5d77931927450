from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional


_TRUTHY = {"1", "true", "yes", "on"}
_FORMAT = "%(asctime)s %(levelname)s [%(name)s] [rank %(rank)s/%(nranks)s] %(message)s"


def _is_truthy(value: Optional[str]) -> bool:
    if value is None:
        return False
    return str(value).strip().lower() in _TRUTHY


def parse_level(value, default_level: int = logging.INFO) -> int:
    """Accept ints, digit strings, or level names ("debug", "WARNING")."""
    if value is None:
        return default_level
    if isinstance(value, int):
        return int(value)
    text = str(value).strip().upper()
    if not text:
        return default_level
    if text.isdigit():
        return int(text)
    resolved = logging.getLevelName(text)
    if isinstance(resolved, int):
        return resolved
    return default_level


def get_log_level_from_env(default: str | int = "INFO") -> int:
    """
    Resolve log level from env (CDR_LOG_LEVEL, or DEBUG if CDR_PETSC_DEBUG is truthy).
    """
    default_level = parse_level(default, logging.INFO)
    env_level = os.environ.get("CDR_LOG_LEVEL")
    if env_level:
        return parse_level(env_level, default_level)
    if _is_truthy(os.environ.get("CDR_PETSC_DEBUG")):
        return logging.DEBUG
    return default_level


class RankFilter(logging.Filter):
    """Stamp every record with the process rank so interleaved output stays readable."""

    def __init__(self, rank: int, size: int) -> None:
        super().__init__()
        self.rank = int(rank)
        self.size = int(size)

    def filter(self, record: logging.LogRecord) -> bool:
        record.rank = self.rank
        record.nranks = self.size
        return True


def setup_logging(
    rank: int,
    *,
    level: int,
    size: int = 1,
    quiet_nonroot: bool = True,
    log_file: Optional[Path] = None,
) -> None:
    """
    Configure root logging once and quiet non-root console handlers by default.

    A per-rank log file (``<stem>.<rank:04d><suffix>``) is attached when
    ``log_file`` is given; file handlers always keep the full level.
    """
    root = logging.getLogger()
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(_FORMAT))
        root.addHandler(handler)
    root.setLevel(level)

    if log_file is not None:
        log_file = Path(log_file)
        per_rank = log_file.with_name(f"{log_file.stem}.{int(rank):04d}{log_file.suffix or '.log'}")
        per_rank.parent.mkdir(parents=True, exist_ok=True)
        if not any(
            isinstance(h, logging.FileHandler) and Path(h.baseFilename) == per_rank.resolve()
            for h in root.handlers
        ):
            fh = logging.FileHandler(per_rank, mode="w")
            fh.setFormatter(logging.Formatter(_FORMAT))
            root.addHandler(fh)

    rank_filter = RankFilter(rank, size)
    for handler in root.handlers:
        for old in [f for f in handler.filters if isinstance(f, RankFilter)]:
            handler.removeFilter(old)
        handler.addFilter(rank_filter)
        if isinstance(handler, logging.FileHandler):
            handler.setLevel(level)
            continue
        if quiet_nonroot and rank != 0:
            handler.setLevel(max(level, logging.WARNING))
        else:
            handler.setLevel(level)
