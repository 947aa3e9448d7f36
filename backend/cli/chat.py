from __future__ import annotations

import argparse
import asyncio
import contextlib
import signal
import sys
from pathlib import Path

import httpx

from lmchat.chat import Conversation
from lmchat.config import LOCAL_SEARCH_URL, LOG_LEVEL, SETTINGS_PATH
from lmchat.lmstudio import StreamChunk, list_models, test_model_availability
from lmchat.local_search import LocalSearchClient, LocalSearchError
from lmchat.logging_utils import configure_logging
from lmchat.research import WebResearcher
from lmchat.settings import ChatSettings, SettingsError, load_settings, save_settings
from lmchat.web_tools import build_search_transport

HELP = """Commands:
  /models            list models loaded in LM Studio
  /use <model>       switch model (loads it in LM Studio first)
  /files <query>     search local documents
  /quit              exit
Add @web to a message to research it on the web (e.g. '@web who is "Ada Lovelace"').
Ctrl-C while an answer is streaming stops it."""


def log(msg: str) -> None:
    print(msg, file=sys.stderr)


class _Printer:
    def __init__(self) -> None:
        self.printed = 0

    def __call__(self, chunk: StreamChunk) -> None:
        sys.stdout.write(chunk.content[self.printed :])
        self.printed = len(chunk.content)
        if chunk.done:
            sys.stdout.write("\n")
        sys.stdout.flush()


async def _files(query: str, args: argparse.Namespace, settings: ChatSettings) -> None:
    client = LocalSearchClient(args.local_search_url)
    try:
        results = await client.search(query, settings)
    except LocalSearchError as e:
        log(f"Local search failed: {e}")
        return
    finally:
        await client.aclose()
    if not results:
        print("No matching files.")
    for r in results[:20]:
        print(f"{r.relevance_score:6.2f}  {r.file_path}  ({r.match_type})")
        print(f"        {r.snippet[:160]}")


async def _repl(args: argparse.Namespace) -> int:
    try:
        settings = load_settings(args.settings)
        if args.server_url:
            settings.set_server_url(args.server_url)
    except SettingsError as e:
        log(str(e))
        return 2
    model_id = args.model or settings.last_model

    loop = asyncio.get_running_loop()
    async with httpx.AsyncClient(timeout=httpx.Timeout(15.0), follow_redirects=True) as web_client:
        researcher = WebResearcher(build_search_transport(web_client), web_client)
        conv = Conversation(settings, researcher)
        log(f"Connected to {settings.server_url} (model: {model_id or 'auto'}). Type /help for commands.")

        while True:
            try:
                line = (await asyncio.to_thread(input, "> ")).strip()
            except (EOFError, KeyboardInterrupt):
                break
            if not line:
                continue
            if line in ("/quit", "/exit"):
                break
            if line == "/help":
                print(HELP)
                continue
            if line == "/models":
                for m in await list_models(settings.server_url):
                    print(f"{'*' if m.id == model_id else ' '} {m.id}")
                continue
            if line.startswith("/use "):
                candidate = line[len("/use ") :].strip()
                if await test_model_availability(candidate, settings.server_url):
                    model_id = settings.last_model = candidate
                    log(f"Using {model_id}")
                else:
                    log("Failed to load the model. Please check LM Studio.")
                continue
            if line.startswith("/files "):
                await _files(line[len("/files ") :].strip(), args, settings)
                continue

            with contextlib.suppress(NotImplementedError):
                loop.add_signal_handler(signal.SIGINT, conv.stop)
            try:
                result = await conv.send(line, model_id, on_chunk=_Printer())
            finally:
                with contextlib.suppress(NotImplementedError):
                    loop.remove_signal_handler(signal.SIGINT)
            if result.error:
                log(f"[{result.status.value}] {result.error}")

    if args.save:
        save_settings(settings, args.settings)
    return 0


def main() -> int:
    ap = argparse.ArgumentParser(description="Chat with a local LM Studio model, with optional @web research.")
    ap.add_argument("--server-url", type=str, default="", help="LM Studio base URL (overrides saved settings)")
    ap.add_argument("--model", type=str, default="", help="Model id (defaults to last used, then the first loaded model)")
    ap.add_argument("--settings", type=Path, default=SETTINGS_PATH, help="Settings JSON file")
    ap.add_argument("--local-search-url", type=str, default=LOCAL_SEARCH_URL, help="Local document search API base URL")
    ap.add_argument("--save", action="store_true", help="Save server URL and model choice on exit")
    ap.add_argument("--log-level", type=str, default=LOG_LEVEL, help="Log level")
    args = ap.parse_args()

    configure_logging(args.log_level)
    return asyncio.run(_repl(args))


if __name__ == "__main__":
    raise SystemExit(main())
