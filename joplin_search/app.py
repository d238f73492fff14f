from __future__ import annotations

import logging
import webbrowser
from typing import List, Optional

from . import db as dbmod
from .config import SearchConfig
from .errors import DatabaseNotConfigured, InvalidNoteId, NoteNotFound
from .indexing import Indexer, PipelineFactory, is_valid_note_id
from .jobs import BackgroundJobs, Job
from .search import SearchService
from .state import Coordinator
from .types import IndexStatus, Note, SearchResult
from .watcher import ChangeWatcher


JOPLIN_OPEN_URL = "joplin://x-callback-url/openNote?id={note_id}"


class NoteSearchApp:
    """Request/response operations offered to a front end.

    Long-running work (rebuilds, delta passes, the watcher) is spawned in
    the background; callers follow progress through ``get_index_status`` or
    a status subscription on the coordinator.
    """

    def __init__(
        self,
        cfg: SearchConfig,
        *,
        pipeline_factory: Optional[PipelineFactory] = None,
        coordinator: Optional[Coordinator] = None,
    ) -> None:
        self.cfg = cfg
        self.coordinator = coordinator or Coordinator()
        self.jobs = BackgroundJobs()
        self.indexer = Indexer(cfg, self.coordinator, self.jobs, pipeline_factory)
        self.search_service = SearchService(cfg, self.coordinator)
        self.watcher = ChangeWatcher(
            self.coordinator,
            self.indexer.run_delta_update,
            poll_interval_s=cfg.poll_interval_s,
            debounce_s=cfg.debounce_s,
        )

    async def startup(self) -> None:
        """Index the configured database, catch up on changes made while we
        were not running, then start watching.

        Without a configured path nothing happens; the front end is expected
        to call ``set_db_path``.
        """
        if not self.cfg.db_path:
            logging.info("No database path configured; waiting for set_db_path.")
            return
        await self.coordinator.set_db_path(self.cfg.db_path)
        await self.indexer.run_full_indexing()
        # the saved index may predate edits made while the app was closed
        await self.indexer.run_delta_update()
        self.watcher.start()

    async def shutdown(self) -> None:
        await self.watcher.stop()
        await self.jobs.shutdown()
        pipeline = await self.coordinator.pipeline()
        if pipeline is not None:
            pipeline.close()

    async def set_db_path(self, path: str) -> Job:
        await self.coordinator.set_db_path(path)
        job = self.jobs.spawn("full_rebuild", self.indexer.run_full_indexing())
        self.watcher.start()
        return job

    async def search(self, query: str) -> List[SearchResult]:
        return await self.search_service.search(query)

    async def get_index_status(self) -> IndexStatus:
        return await self.coordinator.status()

    async def get_note(self, note_id: str) -> Note:
        db_path = await self.coordinator.get_db_path()
        if not db_path:
            raise DatabaseNotConfigured()
        async with dbmod.connect(db_path, busy_timeout_ms=self.cfg.busy_timeout_ms) as conn:
            note = await dbmod.get_note_by_id(conn, note_id)
        if note is None:
            raise NoteNotFound(f"Note not found: {note_id}")
        return note

    async def trigger_reindex(self) -> Job:
        if not await self.coordinator.get_db_path():
            raise DatabaseNotConfigured()
        return self.jobs.spawn("delta_update", self.indexer.run_delta_update())

    def open_note(self, note_id: str) -> str:
        if not is_valid_note_id(note_id):
            raise InvalidNoteId(f"Invalid note id: {note_id!r}")
        url = JOPLIN_OPEN_URL.format(note_id=note_id)
        webbrowser.open(url)
        return url
