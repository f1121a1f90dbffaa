from __future__ import annotations

import os
from pathlib import Path

APP_ENV_HOME = "TASKLEDGER_HOME"
APP_ENV_DB = "TASKLEDGER_DB"


def app_home() -> Path:
    """
    User-writable home for the ledger.
    Override with TASKLEDGER_HOME.
    """
    if os.environ.get(APP_ENV_HOME):
        return Path(os.environ[APP_ENV_HOME]).expanduser().resolve()
    return (Path.home() / ".taskledger").resolve()


def config_file() -> Path:
    """Settings file location. Not created; absence means defaults."""
    return app_home() / "config" / "ledger.yaml"


def data_dir() -> Path:
    d = app_home() / "data"
    d.mkdir(parents=True, exist_ok=True)
    return d


def db_path() -> Path:
    """
    Canonical DB path for the ledger.

    Resolution order:
    1. TASKLEDGER_DB env var (explicit override)
    2. ~/.taskledger/data/taskledger.db (default)
    """
    if os.environ.get(APP_ENV_DB):
        return Path(os.environ[APP_ENV_DB]).expanduser().resolve()
    return data_dir() / "taskledger.db"
