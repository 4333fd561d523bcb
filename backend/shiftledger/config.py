# backend/shiftledger/config.py
from __future__ import annotations
import os


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored next to the working directory unless DATABASE_URL is set
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        "sqlite:///shiftledger.sqlite3",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Register group used when a request does not name one
    DEFAULT_REGISTER_GROUP = os.environ.get("DEFAULT_REGISTER_GROUP", "MAIN")

    # Ledger policy (see policies.LedgerPolicy)
    # MANUAL: receipts start PENDING; AUTO_SETTLE_ON_PRINT: receipts start CREATED
    SETTLEMENT_MODE = os.environ.get("SETTLEMENT_MODE", "MANUAL")
    # ALLOW_SETTLED or PENDING_ONLY
    RECEIPT_VOID_POLICY = os.environ.get("RECEIPT_VOID_POLICY", "ALLOW_SETTLED")
    # BLOCK or WARN
    UNSETTLED_ON_CLOSE = os.environ.get("UNSETTLED_ON_CLOSE", "BLOCK")
    ALLOW_OVERSELL = _env_bool("ALLOW_OVERSELL", False)

    PERIOD_CLOSE_WAIT_SECONDS = float(os.environ.get("PERIOD_CLOSE_WAIT_SECONDS", "2.0"))
    OVERRIDE_GRANT_TTL_SECONDS = int(os.environ.get("OVERRIDE_GRANT_TTL_SECONDS", "300"))
    LEDGER_RETRY_ATTEMPTS = int(os.environ.get("LEDGER_RETRY_ATTEMPTS", "3"))

    # Side-effect outbox (printing, payment and tax notifications)
    DISPATCH_WORKER_ENABLED = _env_bool("DISPATCH_WORKER_ENABLED", False)
    DISPATCH_POLL_SECONDS = float(os.environ.get("DISPATCH_POLL_SECONDS", "2.0"))
    DISPATCH_MAX_ATTEMPTS = int(os.environ.get("DISPATCH_MAX_ATTEMPTS", "5"))

    # bcrypt cost factor for passwords and PINs
    BCRYPT_ROUNDS = int(os.environ.get("BCRYPT_ROUNDS", "12"))
