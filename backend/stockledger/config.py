# backend/stockledger/config.py
from __future__ import annotations
import os


def _allow_all(user_id, action, business_id) -> bool:
    return True


class Config:
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored next to the working directory by default
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        "sqlite:///stockledger.sqlite3",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Upper bound on how long a writer waits for a locked row/database
    LOCK_TIMEOUT_SECONDS = float(os.environ.get("STOCKLEDGER_LOCK_TIMEOUT", "5"))
    SQLALCHEMY_ENGINE_OPTIONS = {
        "connect_args": {"timeout": LOCK_TIMEOUT_SECONDS},
    }

    # Contention retry policy (exponential backoff)
    RETRY_ATTEMPTS = int(os.environ.get("STOCKLEDGER_RETRY_ATTEMPTS", "3"))
    RETRY_BACKOFF_SECONDS = float(os.environ.get("STOCKLEDGER_RETRY_BACKOFF", "0.1"))

    # can_perform(user_id, action, business_id) -> bool, supplied by the authorization layer
    PERMISSION_CHECK = _allow_all

    # Zero-arg callable returning a UTC-naive datetime; None means the system clock
    CLOCK = None

    # Callables invoked after commit when a product drops to/below its reorder threshold
    LOW_STOCK_LISTENERS: list = []
