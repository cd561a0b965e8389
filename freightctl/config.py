import os

DB_FILE = os.environ.get("FREIGHTCTL_DB", "freight.db")

DEFAULT_CONFIG = {
    "default_currency": "USD",
    "list_limit": "100",
    "push_enabled": "1",
    "poll_interval_seconds": "0.5",
}

ALLOWED_CONFIG_KEYS = set(DEFAULT_CONFIG.keys())
