"""
Krysselista Configuration
"""
import os
import json
from pathlib import Path

# Project root
BASE_DIR = Path(__file__).resolve().parent.parent

# SQLite database file
_repo_default_db = BASE_DIR / "data" / "krysselista.db"
_user_default_db = Path.home() / ".krysselista" / "krysselista.db"

config_data = {}
_config_file = BASE_DIR / "data" / "config.json"
if _config_file.exists():
    try:
        with open(_config_file, "r", encoding="utf-8") as _f:
            config_data = json.load(_f)
    except (OSError, ValueError):
        config_data = {}

if os.getenv("KRYSSELISTA_DB"):
    DB_PATH = os.getenv("KRYSSELISTA_DB")
elif _repo_default_db.parent.exists():
    DB_PATH = str(_repo_default_db)
else:
    # Installed package mode normally runs outside repository checkout.
    DB_PATH = str(_user_default_db)

# HTTP server - default to localhost only
HOST = os.getenv("KRYSSELISTA_HOST", config_data.get("HOST", "127.0.0.1"))
PORT = int(os.getenv("KRYSSELISTA_PORT", config_data.get("PORT", "39780")))
APP_VERSION = "0.1.0"

# Collections in the backing store
SUBJECTS_COLLECTION = "children"
MESSAGES_COLLECTION = "messages"
ATTENDANCE_COLLECTION = "logs"

# Departments, in display order. Staff always see one broadcast thread per entry.
DEFAULT_DEPARTMENTS = ("Småbarna", "Mellombarna", "Storbarna")
DEPARTMENTS = tuple(
    d.strip()
    for d in os.getenv(
        "KRYSSELISTA_DEPARTMENTS",
        config_data.get("DEPARTMENTS", ",".join(DEFAULT_DEPARTMENTS)),
    ).split(",")
    if d.strip()
)

# Max concurrent readBy updates issued by one read-mark pass
READ_MARK_CONCURRENCY = int(os.getenv("KRYSSELISTA_READ_CONCURRENCY", config_data.get("READ_MARK_CONCURRENCY", "8")))

# How often subscriptions poll the events table for changes (seconds)
SNAPSHOT_POLL_INTERVAL = float(os.getenv("KRYSSELISTA_SNAPSHOT_POLL_INTERVAL", config_data.get("SNAPSHOT_POLL_INTERVAL", "0.5")))

# Change events older than this are pruned (seconds)
EVENT_RETENTION_SECONDS = int(os.getenv("KRYSSELISTA_EVENT_RETENTION", "600"))

# Activity log page sizes (collapsed / expanded)
ACTIVITY_LOG_LIMIT = 2
ACTIVITY_LOG_EXPANDED_LIMIT = 100


def get_config_dict():
    return {
        "HOST": HOST,
        "PORT": PORT,
        "DEPARTMENTS": ",".join(DEPARTMENTS),
        "READ_MARK_CONCURRENCY": READ_MARK_CONCURRENCY,
        "SNAPSHOT_POLL_INTERVAL": SNAPSHOT_POLL_INTERVAL,
    }


def save_config_dict(new_data: dict):
    config_file = BASE_DIR / "data" / "config.json"
    config_file.parent.mkdir(parents=True, exist_ok=True)

    current = {}
    if config_file.exists():
        with open(config_file, "r", encoding="utf-8") as f:
            current = json.load(f)

    current.update(new_data)
    with open(config_file, "w", encoding="utf-8") as f:
        json.dump(current, f, indent=2)
