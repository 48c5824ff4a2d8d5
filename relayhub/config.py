"""
RelayHub Configuration
"""
import os
import json
from pathlib import Path

# Project root
BASE_DIR = Path(__file__).resolve().parent.parent

# SQLite database file
_repo_default_db = BASE_DIR / "data" / "relayhub.db"
_user_default_db = Path.home() / ".relayhub" / "relayhub.db"

config_data = {}
_config_file = BASE_DIR / "data" / "config.json"
if _config_file.exists():
    try:
        with open(_config_file, "r", encoding="utf-8") as _f:
            config_data = json.load(_f)
    except (OSError, ValueError):
        config_data = {}

if os.getenv("RELAYHUB_DB"):
    DB_PATH = os.getenv("RELAYHUB_DB")
elif _repo_default_db.parent.exists():
    DB_PATH = str(_repo_default_db)
else:
    # Installed package mode normally runs outside repository checkout.
    DB_PATH = str(_user_default_db)

# HTTP server - default to localhost only for security
HOST = os.getenv("RELAYHUB_HOST", config_data.get("HOST", "127.0.0.1"))
PORT = int(os.getenv("RELAYHUB_PORT", config_data.get("PORT", "3006")))

# Base URL used to build deep links inside push notifications
PUBLIC_URL = os.getenv("RELAYHUB_PUBLIC_URL", config_data.get("PUBLIC_URL", f"http://localhost:{PORT}"))

# Notification hub tunables (milliseconds)
PERMISSION_DEBOUNCE_MS = int(os.getenv(
    "RELAYHUB_PERMISSION_DEBOUNCE_MS", config_data.get("PERMISSION_DEBOUNCE_MS", "500")))
READY_COOLDOWN_MS = int(os.getenv(
    "RELAYHUB_READY_COOLDOWN_MS", config_data.get("READY_COOLDOWN_MS", "5000")))

# Outbound push delivery timeout (seconds)
PUSH_TIMEOUT = float(os.getenv("RELAYHUB_PUSH_TIMEOUT", config_data.get("PUSH_TIMEOUT", "10")))

LOG_LEVEL = os.getenv("RELAYHUB_LOG_LEVEL", config_data.get("LOG_LEVEL", "INFO")).upper()
HUB_VERSION = "0.1.0"


def get_config_dict():
    return {
        "HOST": HOST,
        "PORT": PORT,
        "PUBLIC_URL": PUBLIC_URL,
        "PERMISSION_DEBOUNCE_MS": PERMISSION_DEBOUNCE_MS,
        "READY_COOLDOWN_MS": READY_COOLDOWN_MS,
        "PUSH_TIMEOUT": PUSH_TIMEOUT,
        "LOG_LEVEL": LOG_LEVEL,
    }
