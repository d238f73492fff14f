from __future__ import annotations

import asyncio
import logging
import os
import re
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np

from . import db as dbmod
from .config import SearchConfig
from .embeddings import EmbeddingPipeline
from .errors import DatabaseError, EmbeddingError, VectorIndexError
from .index import SharedIndex, VectorIndex, capacity_for
from .jobs import BackgroundJobs
from .state import Coordinator, ScanWindow
from .types import IndexStatus, Note, NoteMetadata


_NOTE_ID_PATTERN = re.compile(r"[0-9a-f]{32}")


def is_valid_note_id(note_id: object) -> bool:
    """Joplin ids are 32 lowercase hex characters."""
    return isinstance(note_id, str) and _NOTE_ID_PATTERN.fullmatch(note_id) is not None


PipelineFactory = Callable[[], EmbeddingPipeline]


@dataclass
class Indexer:
    cfg: SearchConfig
    coordinator: Coordinator
    jobs: BackgroundJobs
    pipeline_factory: Optional[PipelineFactory] = None

    @property
    def index_path(self) -> str:
        return self.cfg.index_path

    def _load_pipeline(self) -> EmbeddingPipeline:
        if self.pipeline_factory is not None:
            return self.pipeline_factory()
        return EmbeddingPipeline.load(
            self.cfg.model_name,
            device=self.cfg.device,
            cache_dir=self.cfg.model_cache_dir,
            dim=self.cfg.embedding_dim,
        )

    def _new_index(self, note_count: int) -> VectorIndex:
        return VectorIndex(
            capacity_for(note_count, minimum=self.cfg.min_index_capacity),
            dim=self.cfg.embedding_dim,
            m=self.cfg.hnsw_m,
            ef_construction=self.cfg.hnsw_ef_construction,
            ef_search=self.cfg.hnsw_ef_search,
        )

    async def ensure_pipeline_loaded(self) -> Optional[EmbeddingPipeline]:
        """Load the embedding model once per session.

        A caller that finds a load already in flight waits for it instead of
        starting a second download.
        """
        if not await self.coordinator.try_begin_pipeline_load():
            return await self.coordinator.wait_pipeline_load()

        start = time.time()
        try:
            pipeline = await asyncio.to_thread(self._load_pipeline)
        except Exception as exc:
            logging.error("Failed to load embedding model", exc_info=True)
            await self.coordinator.finish_pipeline_load(None, error=f"Failed to load embedding model: {exc}")
            return None
        await self.coordinator.finish_pipeline_load(pipeline)
        logging.info(
            "Embedding model loaded (%s)",
            pipeline.model_name,
            extra={"operation": "load_model", "duration_ms": int((time.time() - start) * 1000)},
        )
        return pipeline

    async def _embed_entries(
        self, pipeline: EmbeddingPipeline, notes: Sequence[Note]
    ) -> Optional[List[Tuple[str, np.ndarray]]]:
        texts = [note.embedding_text() for note in notes]
        try:
            vectors = await pipeline.aembed_batch(texts)
        except EmbeddingError:
            logging.warning(
                "Embedding failed for a batch of %d notes; they stay unindexed until the next pass.",
                len(notes),
                exc_info=True,
            )
            return None
        return [(note.id, vec) for note, vec in zip(notes, vectors) if is_valid_note_id(note.id)]

    # ------------------------------------------------------------------
    # Full rebuild
    # ------------------------------------------------------------------

    async def run_full_indexing(self) -> bool:
        """Build (or load) the whole index. Returns False if one was already running."""
        if not await self.coordinator.try_begin_full_rebuild():
            logging.debug("Full rebuild already running; ignoring trigger.")
            return False
        try:
            allow_snapshot = True
            while True:
                db_path = await self.coordinator.get_db_path()
                if not db_path:
                    break
                await self._run_full_indexing(db_path, allow_snapshot=allow_snapshot)
                if await self.coordinator.get_db_path() == db_path:
                    break
                # set_db_path landed mid-build; its own trigger was refused
                logging.info("Database path changed during rebuild; rebuilding for the new path.")
                allow_snapshot = False
        finally:
            await self.coordinator.end_full_rebuild()
        return True

    async def _run_full_indexing(self, db_path: str, *, allow_snapshot: bool = True) -> None:
        # Only a cold start (nothing installed yet) may reuse the saved index;
        # later rebuilds always re-embed.
        if (
            allow_snapshot
            and await self.coordinator.search_index() is None
            and os.path.exists(self.index_path)
            and await self._load_saved_index(db_path)
        ):
            return

        start = time.time()
        await self.coordinator.update_status(is_downloading_model=True)
        pipeline = await self.ensure_pipeline_loaded()
        await self.coordinator.update_status(is_downloading_model=False)
        if pipeline is None:
            # finish_pipeline_load already recorded the error
            return

        try:
            async with dbmod.connect(db_path, busy_timeout_ms=self.cfg.busy_timeout_ms) as conn:
                notes = await dbmod.get_all_notes(conn)
        except DatabaseError as exc:
            logging.error("Full rebuild aborted: cannot read notes", exc_info=True)
            await self.coordinator.update_status(error=f"Failed to read database: {exc}")
            return

        total = len(notes)
        await self.coordinator.update_status(total_notes=total)

        try:
            index = self._new_index(total)
        except VectorIndexError as exc:
            logging.error("Full rebuild aborted: cannot create index", exc_info=True)
            await self.coordinator.update_status(error=f"Failed to create index: {exc}")
            return

        note_cache: Dict[str, NoteMetadata] = {}
        max_ts = 0
        indexed = 0
        skipped_batches = 0
        batch_size = max(1, int(self.cfg.embedding_batch_size))

        for offset in range(0, total, batch_size):
            batch = notes[offset:offset + batch_size]
            entries = await self._embed_entries(pipeline, batch)
            if entries is None:
                skipped_batches += 1
            elif entries:
                try:
                    await asyncio.to_thread(index.add_batch, entries)
                except VectorIndexError:
                    logging.warning("Skipping index insert for %d notes", len(entries), exc_info=True)
                    skipped_batches += 1

            # Every note goes into the cache, even ones the index rejected.
            for note in batch:
                max_ts = max(max_ts, note.updated_time)
                note_cache[note.id] = note.metadata()

            indexed += len(batch)
            await self.coordinator.update_status(
                indexed_notes=indexed,
                download_progress=indexed / max(total, 1),
            )

        if await self.coordinator.get_db_path() != db_path:
            logging.info("Discarding index built for %s; database path changed.", db_path)
            return

        try:
            await asyncio.to_thread(index.save, self.index_path)
        except VectorIndexError:
            logging.warning("Failed to persist index to %s", self.index_path, exc_info=True)

        installed = await self.coordinator.install_index(
            SharedIndex(index),
            note_cache,
            last_scan_timestamp=max_ts,
            status=IndexStatus(
                total_notes=total,
                indexed_notes=indexed,
                download_progress=1.0,
                error=None,
            ),
            mark_ready=True,
            db_path=db_path,
        )
        if installed is None:
            logging.info("Discarding index built for %s; database path changed.", db_path)
            return
        logging.info(
            "full_rebuild",
            extra={
                "operation": "full_rebuild",
                "duration_ms": int((time.time() - start) * 1000),
                "notes": total,
                "vectors": len(index),
                "skipped_batches": skipped_batches,
            },
        )

    async def _load_saved_index(self, db_path: str) -> bool:
        """Reuse the persisted index and rebuild only the cache from the database."""
        try:
            loaded = await asyncio.to_thread(VectorIndex.load, self.index_path)
        except VectorIndexError:
            logging.warning("Saved index unusable; rebuilding from scratch.", exc_info=True)
            return False
        if loaded.dim != int(self.cfg.embedding_dim):
            logging.warning(
                "Saved index has dimension %s, model produces %s; rebuilding from scratch.",
                loaded.dim,
                self.cfg.embedding_dim,
            )
            return False

        try:
            async with dbmod.connect(db_path, busy_timeout_ms=self.cfg.busy_timeout_ms) as conn:
                notes = await dbmod.get_all_notes(conn)
        except DatabaseError:
            logging.warning("Cannot read notes for the saved index; trying a full rebuild.", exc_info=True)
            return False

        total = len(notes)
        loaded.capacity = max(loaded.capacity, capacity_for(total, minimum=self.cfg.min_index_capacity))
        note_cache = {note.id: note.metadata() for note in notes}
        max_ts = max((note.updated_time for note in notes), default=0)

        installed = await self.coordinator.install_index(
            SharedIndex(loaded),
            note_cache,
            last_scan_timestamp=max_ts,
            status=IndexStatus(
                total_notes=total,
                indexed_notes=total,
                is_downloading_model=True,
                download_progress=1.0,
            ),
            mark_ready=False,
            db_path=db_path,
        )
        if installed is None:
            # path changed while loading; the caller rebuilds for the new one
            return True
        logging.info("Loaded saved index (%d vectors, %d notes)", len(loaded), total)

        await self.ensure_pipeline_loaded()
        await self.coordinator.mark_ready_if_loaded()
        return True

    # ------------------------------------------------------------------
    # Delta update
    # ------------------------------------------------------------------

    async def run_delta_update(self) -> bool:
        """Process notes changed since the last scan. Returns False if skipped."""
        if not await self.coordinator.try_begin_delta():
            logging.debug("Delta update or full rebuild in flight; ignoring trigger.")
            return False
        try:
            await self._run_delta_update()
        finally:
            await self.coordinator.end_delta()
        return True

    async def _run_delta_update(self) -> None:
        window = await self.coordinator.scan_window()
        if not window.db_path:
            return
        start = time.time()
        since = window.last_scan_timestamp

        try:
            async with dbmod.connect(window.db_path, busy_timeout_ms=self.cfg.busy_timeout_ms) as conn:
                if not await dbmod.has_notes_since(conn, since):
                    return
                deleted_ids = await dbmod.get_deleted_note_ids_since(conn, since)
                changed = await dbmod.get_notes_since(conn, since)
        except DatabaseError:
            logging.warning("Delta update skipped: database unavailable", exc_info=True)
            return

        if deleted_ids:
            await self.coordinator.apply_deletions(deleted_ids)

        force_rebuild = False
        inserted = 0
        if changed:
            pipeline = await self.coordinator.pipeline()
            entries = await self._embed_entries(pipeline, changed) if pipeline is not None else None
            if entries is not None:
                shared = await self.coordinator.search_index()
                if shared is not None and entries:
                    try:
                        # write lock covers the insert only, not the embedding above
                        await shared.add_batch(entries)
                        inserted = len(entries)
                    except VectorIndexError:
                        logging.warning("Delta insert failed; scheduling a full rebuild.", exc_info=True)
                        force_rebuild = True

                await self.coordinator.apply_changes(changed)

                if shared is not None:
                    try:
                        await shared.save(self.index_path)
                    except VectorIndexError:
                        logging.warning("Failed to persist index to %s", self.index_path, exc_info=True)

        logging.info(
            "delta_update",
            extra={
                "operation": "delta_update",
                "duration_ms": int((time.time() - start) * 1000),
                "deleted": len(deleted_ids),
                "changed": len(changed),
                "inserted": inserted,
            },
        )
        self._maybe_schedule_rebuild(window, force=force_rebuild)

    def _maybe_schedule_rebuild(self, window: ScanWindow, *, force: bool = False) -> None:
        elapsed = time.monotonic() - window.last_full_rebuild
        if force or elapsed >= float(self.cfg.rebuild_interval_s):
            self.jobs.spawn("full_rebuild", self.run_full_indexing())
