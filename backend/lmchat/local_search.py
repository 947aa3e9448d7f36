from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Sequence

import httpx

from .config import LOCAL_SEARCH_URL
from .logging_utils import get_logger
from .settings import ChatSettings

log = get_logger(__name__)

IGNORED_DIRS = {"node_modules"}
SNIPPET_BEFORE = 100
SNIPPET_AFTER = 200

MATCH_FILENAME_AND_CONTENT = "filename and content"
MATCH_FILENAME_ONLY = "filename only"
MATCH_CONTENT_ONLY = "content only"


class LocalSearchError(RuntimeError):
    pass


@dataclass(frozen=True)
class LocalSearchResult:
    file_path: str
    file_name: str
    file_type: str
    snippet: str
    last_modified: datetime
    relevance_score: float
    match_type: str


def validate_path(path: str) -> bool:
    try:
        ok = Path(path).is_dir()
    except (OSError, ValueError) as e:
        log.warning("Error validating path %s: %s", path, e)
        return False
    log.debug("Path %s is %s directory", path, "a" if ok else "not a")
    return ok


def search_terms(query: str) -> list[str]:
    return [t for t in query.lower().split(" ") if len(t) > 1]


def _iter_files(root: Path) -> Iterator[Path]:
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = [d for d in dirnames if d not in IGNORED_DIRS and not d.startswith(".")]
        for name in filenames:
            yield Path(dirpath) / name


def _allowed(file_type: str, file_types: Sequence[str]) -> bool:
    return file_type in file_types or "" in file_types


def _read_content(path: Path) -> str | None:
    try:
        return path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError):
        log.debug("Could not read content of %s; checking filename only", path)
        return None


def _snippet(content: str, terms: list[str]) -> str:
    low = content.lower()
    positions = [i for i in (low.find(t) for t in terms) if i != -1]
    if not positions:
        return ""
    first = min(positions)
    start = max(0, first - SNIPPET_BEFORE)
    end = min(len(content), first + SNIPPET_AFTER)
    return " ".join(content[start:end].split())


def score_file(path: Path, query: str, terms: list[str]) -> LocalSearchResult | None:
    """Relevance of one file: term frequency weighted by term length, plus 1 for a filename hit."""
    file_name = path.name
    name_low = file_name.lower()
    filename_match = any(t in name_low for t in terms)

    content = _read_content(path)
    counts = {t: content.lower().count(t) for t in terms} if content is not None else {}
    content_match = any(c > 0 for c in counts.values())
    if not filename_match and not content_match:
        return None

    score = sum(c * (len(t) / len(query)) for t, c in counts.items())
    if filename_match:
        score += 1

    if filename_match:
        match_type = MATCH_FILENAME_AND_CONTENT if content_match else MATCH_FILENAME_ONLY
    else:
        match_type = MATCH_CONTENT_ONLY

    snippet = _snippet(content, terms) if content_match and content else ""
    mtime = datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)
    return LocalSearchResult(
        file_path=str(path.resolve()),
        file_name=file_name,
        file_type=path.suffix.lower(),
        snippet=snippet or f"File name match: {file_name}",
        last_modified=mtime,
        relevance_score=score,
        match_type=match_type,
    )


def search_documents(
    query: str,
    search_paths: Sequence[str],
    file_types: Sequence[str],
) -> tuple[list[LocalSearchResult], list[str]]:
    """Search every valid root; returns results sorted by score and the roots that were valid."""
    terms = search_terms(query)
    valid = {p: validate_path(p) for p in search_paths}
    results: list[LocalSearchResult] = []

    for root, ok in valid.items():
        if not ok:
            log.info("Skipping invalid path: %s", root)
            continue
        count = 0
        for path in _iter_files(Path(root)):
            if not _allowed(path.suffix.lower(), file_types):
                continue
            count += 1
            try:
                res = score_file(path, query, terms)
            except OSError as e:
                log.warning("Error processing file %s: %s", path, e)
                continue
            if res is not None:
                results.append(res)
        log.info("Scanned %d files in %s", count, root)

    results.sort(key=lambda r: r.relevance_score, reverse=True)
    return results, [p for p, ok in valid.items() if ok]


def _parse_result(raw: dict[str, Any]) -> LocalSearchResult:
    last_modified = raw.get("lastModified")
    try:
        ts = datetime.fromisoformat(str(last_modified).replace("Z", "+00:00"))
    except ValueError:
        ts = datetime.fromtimestamp(0, tz=timezone.utc)
    return LocalSearchResult(
        file_path=str(raw.get("filePath") or ""),
        file_name=str(raw.get("fileName") or ""),
        file_type=str(raw.get("fileType") or ""),
        snippet=str(raw.get("snippet") or ""),
        last_modified=ts,
        relevance_score=float(raw.get("relevanceScore") or 0.0),
        match_type=str(raw.get("matchType") or ""),
    )


class LocalSearchClient:
    def __init__(self, base_url: str = LOCAL_SEARCH_URL, client: httpx.AsyncClient | None = None) -> None:
        self.base_url = base_url.rstrip("/")
        self.client = client or httpx.AsyncClient(timeout=30.0)

    async def aclose(self) -> None:
        await self.client.aclose()

    async def check_server(self) -> bool:
        try:
            resp = await self.client.post(f"{self.base_url}/validate-path", json={"path": "."})
        except httpx.HTTPError:
            return False
        return resp.is_success

    async def validate_path(self, path: str) -> bool:
        if not await self.check_server():
            raise LocalSearchError("Search server is not running. Please start the server first.")
        resp = await self.client.post(f"{self.base_url}/validate-path", json={"path": path})
        if not resp.is_success:
            try:
                message = resp.json().get("message")
            except ValueError:
                message = "Invalid server response"
            raise LocalSearchError(message or "Failed to validate path")
        return bool(resp.json().get("isValid"))

    async def search(self, query: str, settings: ChatSettings) -> list[LocalSearchResult]:
        if not settings.search_paths:
            raise LocalSearchError("No search paths configured. Please add search paths in settings.")
        if not settings.file_types:
            raise LocalSearchError("No file types selected. Please select at least one file type in settings.")
        if not await self.check_server():
            raise LocalSearchError("Search server is not running. Please start the server first.")

        payload = {"query": query, "searchPaths": settings.search_paths, "fileTypes": settings.file_types}
        try:
            resp = await self.client.post(f"{self.base_url}/search", json=payload)
        except httpx.HTTPError as e:
            raise LocalSearchError(f"Failed to search documents: {e}") from e

        if not resp.is_success:
            message = "Failed to search documents"
            try:
                message = resp.json().get("message") or message
            except ValueError:
                log.error("Failed to parse error response from local search")
            raise LocalSearchError(message)

        if "application/json" not in resp.headers.get("content-type", ""):
            raise LocalSearchError("Invalid response from server (not JSON)")
        data = resp.json()
        results = data.get("results") if isinstance(data, dict) else None
        if not isinstance(results, list):
            raise LocalSearchError("Invalid response format from server")
        return [_parse_result(r) for r in results if isinstance(r, dict)]
