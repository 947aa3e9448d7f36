from __future__ import annotations

import os
from pathlib import Path

SETTINGS_PATH = Path(os.getenv("LMCHAT_SETTINGS_PATH", str(Path.home() / ".lmchat" / "settings.json")))

LMSTUDIO_BASE_URL = os.getenv("LMSTUDIO_BASE_URL", "http://localhost:1234").rstrip("/")
LMSTUDIO_MODEL = os.getenv("LMSTUDIO_MODEL") or None

GOOGLE_SEARCH_API_KEY = os.getenv("GOOGLE_SEARCH_API_KEY") or None
GOOGLE_SEARCH_ENGINE_ID = os.getenv("GOOGLE_SEARCH_ENGINE_ID") or None
SEARCH_PROVIDER = os.getenv("LMCHAT_SEARCH_PROVIDER", "google").strip().lower()

LOCAL_SEARCH_URL = os.getenv("LMCHAT_LOCAL_SEARCH_URL", "http://localhost:3001/api").rstrip("/")

LOG_LEVEL = os.getenv("LMCHAT_LOG_LEVEL", "INFO")

MAX_SESSIONS = int(os.getenv("LMCHAT_MAX_SESSIONS", "100"))
