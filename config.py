"""Configuration from environment."""

import os
from typing import Dict

# Empty REDIS_URL keeps the snapshot mirror in-process
REDIS_URL = os.environ.get("REDIS_URL", "")
SNAPSHOT_KEY = os.environ.get("SNAPSHOT_KEY", "relief:priority_queue")
SWEEP_INTERVAL_SECONDS = float(os.environ.get("SWEEP_INTERVAL_SECONDS", "300"))
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"

# token:user_id:name:role, comma separated
API_TOKENS = os.environ.get("API_TOKENS", "")

ROLES = ("victim", "volunteer", "admin")


def parse_api_tokens(raw: str) -> Dict[str, dict]:
    """Parse API_TOKENS into {token: {"id", "name", "role"}}. Malformed items are rejected."""
    tokens = {}
    for item in raw.split(","):
        item = item.strip()
        if not item:
            continue
        parts = item.split(":")
        if len(parts) != 4 or not all(parts):
            raise ValueError(f"Malformed API_TOKENS entry: {item!r}")
        token, user_id, name, role = parts
        if role not in ROLES:
            raise ValueError(f"Unknown role {role!r} in API_TOKENS")
        tokens[token] = {"id": user_id, "name": name, "role": role}
    return tokens
