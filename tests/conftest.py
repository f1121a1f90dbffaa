"""
Test configuration: ensures repo root is in sys.path + isolation guards.

Every test runs with TASKLEDGER_HOME pointed at a temporary directory and
with sqlite3.connect guarded, so nothing can touch the real ledger at
~/.taskledger.
"""

import sqlite3
import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest

# Add repo root to sys.path so tests can import taskledger.*
REPO_ROOT = Path(__file__).parent.parent
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from taskledger.config import ENV_OVERRIDES, LedgerSettings  # noqa: E402
from taskledger.ledger import Ledger  # noqa: E402
from taskledger.timeline.store import TimelineStore  # noqa: E402

# =============================================================================
# ISOLATION GUARD: Block live database access
# =============================================================================

HOME_DB_ABSOLUTE = Path.home() / ".taskledger" / "data" / "taskledger.db"

_original_sqlite_connect = sqlite3.connect


def _guarded_sqlite_connect(database, *args, **kwargs):
    """Intercept sqlite3.connect to block the user's real ledger."""
    db_str = str(database)
    if db_str != ":memory:":
        try:
            abs_path = Path(db_str).resolve()
        except (OSError, ValueError):
            abs_path = Path(db_str)
        if abs_path == HOME_DB_ABSOLUTE:
            raise RuntimeError(
                f"ISOLATION VIOLATION: test attempted to open the live ledger at {database}.\n"
                "Use the `store` or `ledger` fixtures instead."
            )
    return _original_sqlite_connect(database, *args, **kwargs)


@pytest.fixture(autouse=True)
def guard_live_db_access(monkeypatch):
    """Automatically guard all tests against live DB access."""
    monkeypatch.setattr(sqlite3, "connect", _guarded_sqlite_connect)


@pytest.fixture(autouse=True)
def isolated_home(tmp_path, monkeypatch):
    """Point TASKLEDGER_HOME at a temp dir and clear every override."""
    home = tmp_path / "home"
    monkeypatch.setenv("TASKLEDGER_HOME", str(home))
    monkeypatch.delenv("TASKLEDGER_DB", raising=False)
    for env_var in ENV_OVERRIDES:
        monkeypatch.delenv(env_var, raising=False)
    return home


# =============================================================================
# TIME
# =============================================================================


def utc_ts(year: int, month: int, day: int, hour: int = 0, minute: int = 0, second: int = 0) -> int:
    return int(datetime(year, month, day, hour, minute, second, tzinfo=timezone.utc).timestamp())


class FakeClock:
    """Controllable clock: call it for the current epoch second."""

    def __init__(self, now: int):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: int) -> int:
        self.now += seconds
        return self.now

    def set(self, ts: int) -> int:
        self.now = ts
        return self.now


@pytest.fixture
def ts():
    """ts(hour, minute=0) on Monday 2026-01-05 UTC; day/month/year overridable."""

    def _ts(hour: int, minute: int = 0, second: int = 0, day: int = 5, month: int = 1, year: int = 2026):
        return utc_ts(year, month, day, hour, minute, second)

    return _ts


@pytest.fixture
def clock():
    """FakeClock starting at 2026-01-05 08:00 UTC."""
    return FakeClock(utc_ts(2026, 1, 5, 8, 0))


# =============================================================================
# STORE / LEDGER
# =============================================================================


@pytest.fixture
def db_path(tmp_path) -> str:
    return str(tmp_path / "ledger.db")


@pytest.fixture
def store(db_path):
    """TimelineStore on a fresh on-disk database."""
    s = TimelineStore(db_path)
    yield s
    s.close()


@pytest.fixture
def settings():
    return LedgerSettings()


@pytest.fixture
def ledger(db_path, settings, clock):
    """Ledger on a fresh database with the fake clock."""
    led = Ledger(db_path=db_path, settings=settings, clock=clock)
    yield led
    led.close()
