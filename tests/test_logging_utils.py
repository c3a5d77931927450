"""
Rank-aware logging setup.

Tests:
1. parse_level accepts names, digits and ints
2. CDR_LOG_LEVEL / CDR_PETSC_DEBUG override the default level
3. setup_logging stamps records with the rank and quiets non-root consoles
"""

from __future__ import annotations

import logging

import pytest

from core.logging_utils import RankFilter, get_log_level_from_env, parse_level, setup_logging


@pytest.mark.parametrize(
    "value, expected",
    [("debug", logging.DEBUG), ("WARNING", logging.WARNING), ("15", 15), (30, 30), ("", logging.INFO), ("nope", logging.INFO)],
)
def test_parse_level(value, expected):
    assert parse_level(value) == expected


def test_env_level(monkeypatch):
    monkeypatch.delenv("CDR_LOG_LEVEL", raising=False)
    monkeypatch.delenv("CDR_PETSC_DEBUG", raising=False)
    assert get_log_level_from_env("ERROR") == logging.ERROR
    monkeypatch.setenv("CDR_PETSC_DEBUG", "yes")
    assert get_log_level_from_env() == logging.DEBUG
    monkeypatch.setenv("CDR_LOG_LEVEL", "warning")
    assert get_log_level_from_env() == logging.WARNING


def test_rank_filter_stamps_records():
    record = logging.LogRecord("x", logging.INFO, __file__, 1, "msg", None, None)
    assert RankFilter(3, 4).filter(record)
    assert (record.rank, record.nranks) == (3, 4)


def test_setup_logging_nonroot_is_quiet():
    root = logging.getLogger()
    handler = logging.StreamHandler()
    root.addHandler(handler)
    old_level = root.level
    try:
        setup_logging(2, level=logging.INFO, size=4)
        assert handler.level == logging.WARNING
        assert any(isinstance(f, RankFilter) for f in handler.filters)

        setup_logging(0, level=logging.DEBUG, size=4)
        assert handler.level == logging.DEBUG
        assert sum(isinstance(f, RankFilter) for f in handler.filters) == 1
    finally:
        root.removeHandler(handler)
        root.setLevel(old_level)
