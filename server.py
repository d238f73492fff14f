from __future__ import annotations

import asyncio
import atexit
import logging
import signal
from typing import Any, Dict

from fastmcp import FastMCP

from joplin_search.app import NoteSearchApp
from joplin_search.config import load_config
from joplin_search.errors import NoteSearchError


cfg = load_config()

mcp = FastMCP(name="Joplin Semantic Search")

app = NoteSearchApp(cfg)


def _log_status(status) -> None:
    logging.debug(
        "index-status",
        extra={"operation": "status", **status.to_dict()},
    )


app.coordinator.subscribe(_log_status)


def _error(exc: NoteSearchError) -> Dict[str, Any]:
    return {"error": exc.code, "detail": str(exc)}


async def _startup_tasks() -> None:
    logging.info("Storage: data_dir=%s db=%s", cfg.data_dir, cfg.db_path or "<not configured>")
    logging.info("Embedding model: %s (%s)", cfg.model_name, cfg.device)
    await app.startup()


def _schedule_startup_tasks() -> None:
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        return

    task = loop.create_task(_startup_tasks())

    def _on_startup_done(t: "asyncio.Task[None]") -> None:
        if t.cancelled():
            return
        exc = t.exception()
        if exc is None:
            return
        logging.critical("Startup indexing failed.", exc_info=exc)

    task.add_done_callback(_on_startup_done)


_shutdown_lock = asyncio.Lock()
_shutdown_started = False


async def _shutdown(reason: str) -> None:
    global _shutdown_started
    async with _shutdown_lock:
        if _shutdown_started:
            return
        _shutdown_started = True
    logging.info("Shutdown initiated (%s)", reason)
    try:
        await asyncio.wait_for(app.shutdown(), timeout=10.0)
    except Exception:
        logging.warning("Shutdown cleanup failed", exc_info=True)


def _sync_cleanup() -> None:
    if _shutdown_started:
        return
    try:
        asyncio.run(_shutdown("atexit"))
    except RuntimeError:
        # still inside a running loop; the SIGTERM path handles that case
        logging.debug("Skipping atexit cleanup inside a running loop")


atexit.register(_sync_cleanup)


def _register_signal_handlers(loop: asyncio.AbstractEventLoop) -> None:
    try:
        loop.add_signal_handler(
            signal.SIGTERM,
            lambda: asyncio.ensure_future(_shutdown("SIGTERM")),
        )
    except (NotImplementedError, RuntimeError):
        pass


@mcp.tool
async def set_joplin_db_path(path: str) -> Dict[str, Any]:
    """Point the index at a Joplin database.sqlite and start a full rebuild."""
    job = await app.set_db_path(path)
    return {"status": "indexing", "job_id": job.job_id}


@mcp.tool
async def search_notes(query: str) -> Dict[str, Any]:
    """Semantic search. Returns up to 10 notes ranked by similarity."""
    try:
        results = await app.search(query)
    except NoteSearchError as exc:
        return _error(exc)
    return {
        "query": query,
        "count": len(results),
        "results": [r.to_dict() for r in results],
    }


@mcp.tool
async def get_index_status() -> Dict[str, Any]:
    """Current indexing progress and readiness."""
    status = await app.get_index_status()
    return status.to_dict()


@mcp.tool
async def get_note(note_id: str) -> Dict[str, Any]:
    """Fetch a full note (including body) by id."""
    try:
        note = await app.get_note(note_id)
    except NoteSearchError as exc:
        return _error(exc)
    return note.to_dict()


@mcp.tool
async def trigger_reindex() -> Dict[str, Any]:
    """Pick up notes added, edited or deleted since the last scan."""
    try:
        job = await app.trigger_reindex()
    except NoteSearchError as exc:
        return _error(exc)
    return {"status": "refreshing", "job_id": job.job_id}


@mcp.tool
async def open_in_joplin(note_id: str) -> Dict[str, Any]:
    """Open a note in the Joplin desktop app."""
    try:
        url = app.open_note(note_id)
    except NoteSearchError as exc:
        return _error(exc)
    return {"opened": url}


async def _serve() -> None:
    loop = asyncio.get_running_loop()
    _register_signal_handlers(loop)
    _schedule_startup_tasks()
    try:
        await mcp.run_async()
    finally:
        await _shutdown("server exit")


def main() -> None:
    logging.basicConfig(
        level=getattr(logging, cfg.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(message)s",
    )
    asyncio.run(_serve())


if __name__ == "__main__":
    # Stdio transport by default
    main()
