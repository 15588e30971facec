# backend/invman/config.py
from __future__ import annotations
import os


class Config:
    # SQLite DB stored next to the working directory unless overridden
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "INVMAN_DATABASE_URL", #optional alternative location
        "sqlite:///invman.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # How long a writer waits on a locked database before StorageBusy is raised
    SQLITE_BUSY_TIMEOUT_MS = int(os.environ.get("INVMAN_BUSY_TIMEOUT_MS", "5000"))

    # bcrypt cost factor; tests lower this
    BCRYPT_ROUNDS = int(os.environ.get("INVMAN_BCRYPT_ROUNDS", "12"))

    LOG_LEVEL = os.environ.get("INVMAN_LOG_LEVEL", "WARNING")


# Runtime settings stored in the config table, seeded by `invman system init`
DEFAULT_RUNTIME_CONFIG = {
    "allow_registration": "true",
    "session_ttl_minutes": "1440",
}
