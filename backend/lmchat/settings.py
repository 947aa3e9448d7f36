from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

import httpx

from .config import LMSTUDIO_BASE_URL, SETTINGS_PATH
from .logging_utils import get_logger

log = get_logger(__name__)

MAX_HISTORY_ITEMS = 10

DEFAULT_SERVERS: tuple[str, ...] = (LMSTUDIO_BASE_URL,)

# "" matches files without an extension.
DEFAULT_FILE_TYPES: tuple[str, ...] = (
    ".txt",
    ".doc",
    ".docx",
    ".xls",
    ".xlsx",
    ".pdf",
    ".csv",
    ".rtf",
    ".odt",
    ".ods",
    ".md",
    ".json",
    ".xml",
    ".html",
    ".htm",
    "",
)


class SettingsError(RuntimeError):
    pass


def is_complete_server_url(url: str) -> bool:
    u = str(url or "").strip()
    if not u.startswith("http://"):
        return False
    return ":" in u[len("http://") :] and not u.endswith(":")


def is_valid_server_url(url: str) -> bool:
    try:
        u = httpx.URL(url)
    except httpx.InvalidURL:
        return False
    return u.scheme in ("http", "https") and bool(u.host)


@dataclass
class ChatSettings:
    server_url: str = LMSTUDIO_BASE_URL
    server_history: list[str] = field(default_factory=lambda: list(DEFAULT_SERVERS))
    search_paths: list[str] = field(default_factory=list)
    file_types: list[str] = field(default_factory=lambda: list(DEFAULT_FILE_TYPES))
    last_model: str | None = None

    def set_server_url(self, url: str) -> None:
        u = str(url or "").strip().rstrip("/")
        if not u:
            raise SettingsError("server url must be a non-empty string")
        if not is_valid_server_url(u):
            raise SettingsError(f"Invalid server url: {u}")
        self.server_url = u
        self.add_server_to_history(u)

    def reset_server_url(self) -> None:
        self.server_url = LMSTUDIO_BASE_URL

    def add_server_to_history(self, url: str) -> None:
        if not is_complete_server_url(url):
            return
        history = [u for u in self.server_history if u != url]
        history.insert(0, url)
        self.server_history = history[:MAX_HISTORY_ITEMS]

    def clear_server_history(self) -> None:
        self.server_history = list(DEFAULT_SERVERS)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _read_json(path: Path) -> dict[str, Any]:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except Exception as e:
        raise SettingsError(f"Failed to read settings file {path}: {e}") from e
    if not isinstance(data, dict):
        raise SettingsError(f"Settings file {path} must contain a JSON object")
    return data


def _str_list(value: Any, default: list[str]) -> list[str]:
    if not isinstance(value, list):
        return default
    return [str(v) for v in value if isinstance(v, str)]


def settings_from_dict(raw: dict[str, Any]) -> ChatSettings:
    defaults = ChatSettings()

    server_url = raw.get("server_url")
    if not isinstance(server_url, str) or not is_valid_server_url(server_url.strip()):
        if server_url:
            log.warning("Discarding invalid server url in settings: %r", server_url)
        server_url = defaults.server_url

    history = _str_list(raw.get("server_history"), defaults.server_history)
    # A history with anything but complete URLs is reset rather than repaired.
    if any(not is_complete_server_url(u) for u in history):
        log.warning("Discarding invalid server history in settings")
        history = list(DEFAULT_SERVERS)

    last_model = raw.get("last_model")
    return ChatSettings(
        server_url=server_url.strip().rstrip("/"),
        server_history=history[:MAX_HISTORY_ITEMS],
        search_paths=_str_list(raw.get("search_paths"), defaults.search_paths),
        file_types=_str_list(raw.get("file_types"), defaults.file_types),
        last_model=last_model if isinstance(last_model, str) and last_model else None,
    )


def load_settings(path: Path = SETTINGS_PATH) -> ChatSettings:
    if not path.exists():
        return ChatSettings()
    return settings_from_dict(_read_json(path))


def save_settings(settings: ChatSettings, path: Path = SETTINGS_PATH) -> None:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(path.suffix + ".tmp")
        tmp.write_text(json.dumps(settings.to_dict(), indent=2, ensure_ascii=False), encoding="utf-8")
        tmp.replace(path)
    except OSError as e:
        raise SettingsError(f"Failed to write settings file {path}: {e}") from e
    log.info("Saved settings to %s", path)
