from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from .embeddings import EmbeddingPipeline
from .errors import IndexNotReady, ModelNotLoaded
from .index import SharedIndex
from .types import IndexStatus, Note, NoteMetadata


StatusListener = Callable[[IndexStatus], None]


@dataclass
class AppState:
    db_path: Optional[str] = None
    embedding_pipeline: Optional[EmbeddingPipeline] = None
    search_index: Optional[SharedIndex] = None
    # id -> metadata for every note believed live (no bodies kept in RAM)
    note_cache: Dict[str, NoteMetadata] = field(default_factory=dict)
    # updated_time (ms) boundary for delta queries
    last_scan_timestamp: int = 0
    # soft-deleted since the last full rebuild; search filters against these
    deleted_note_ids: Set[str] = field(default_factory=set)
    last_full_rebuild: float = field(default_factory=time.monotonic)
    index_status: IndexStatus = field(default_factory=IndexStatus)
    is_indexing: bool = False
    is_pipeline_loading: bool = False
    is_delta_updating: bool = False


@dataclass(frozen=True)
class SearchSnapshot:
    pipeline: EmbeddingPipeline
    index: SharedIndex
    note_cache: Dict[str, NoteMetadata]
    tombstones: Set[str]


@dataclass(frozen=True)
class ScanWindow:
    db_path: Optional[str]
    last_scan_timestamp: int
    last_full_rebuild: float


class Coordinator:
    """Owns AppState behind one coarse lock.

    Every method holds the lock only for a handful of field reads/writes and
    hands back copies or shared handles. Nothing here may await inference or
    an index search while the lock is held.
    """

    def __init__(self, state: Optional[AppState] = None) -> None:
        self._state = state or AppState()
        self._lock = asyncio.Lock()
        self._listeners: List[StatusListener] = []
        # set when the in-flight model load finishes, successfully or not
        self._pipeline_loaded: Optional[asyncio.Event] = None

    @property
    def state(self) -> AppState:
        # Unlocked access; tests and diagnostics only.
        return self._state

    def subscribe(self, listener: StatusListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _publish_locked(self) -> None:
        status = self._state.index_status.copy()
        for listener in list(self._listeners):
            try:
                listener(status)
            except Exception:
                logging.warning("Status listener failed", exc_info=True)

    # -- configuration -----------------------------------------------------

    async def set_db_path(self, db_path: str) -> None:
        async with self._lock:
            self._state.db_path = db_path
            self._state.index_status.is_ready = False
            self._state.index_status.indexed_notes = 0
            self._publish_locked()

    async def get_db_path(self) -> Optional[str]:
        async with self._lock:
            return self._state.db_path

    # -- mutual exclusion flags ---------------------------------------------

    async def try_begin_full_rebuild(self) -> bool:
        async with self._lock:
            if self._state.is_indexing:
                return False
            self._state.is_indexing = True
            return True

    async def end_full_rebuild(self) -> None:
        async with self._lock:
            self._state.is_indexing = False

    async def try_begin_delta(self) -> bool:
        async with self._lock:
            if self._state.is_delta_updating or self._state.is_indexing:
                return False
            self._state.is_delta_updating = True
            return True

    async def end_delta(self) -> None:
        async with self._lock:
            self._state.is_delta_updating = False

    async def try_begin_pipeline_load(self) -> bool:
        async with self._lock:
            if self._state.embedding_pipeline is not None or self._state.is_pipeline_loading:
                return False
            self._state.is_pipeline_loading = True
            self._pipeline_loaded = asyncio.Event()
            return True

    async def finish_pipeline_load(self, pipeline: Optional[EmbeddingPipeline], error: Optional[str] = None) -> None:
        async with self._lock:
            self._state.is_pipeline_loading = False
            if self._pipeline_loaded is not None:
                self._pipeline_loaded.set()
                self._pipeline_loaded = None
            if pipeline is not None:
                self._state.embedding_pipeline = pipeline
            else:
                self._state.index_status.error = error or "Failed to load embedding model"
                self._publish_locked()

    async def wait_pipeline_load(self) -> Optional[EmbeddingPipeline]:
        """Block until an in-flight model load finishes; returns the pipeline, if any."""
        async with self._lock:
            loaded = self._pipeline_loaded
        if loaded is not None:
            await loaded.wait()
        return await self.pipeline()

    # -- handles -----------------------------------------------------------

    async def pipeline(self) -> Optional[EmbeddingPipeline]:
        async with self._lock:
            return self._state.embedding_pipeline

    async def search_index(self) -> Optional[SharedIndex]:
        async with self._lock:
            return self._state.search_index

    async def search_snapshot(self) -> SearchSnapshot:
        async with self._lock:
            if not self._state.index_status.is_ready:
                raise IndexNotReady()
            if self._state.embedding_pipeline is None:
                raise ModelNotLoaded()
            if self._state.search_index is None:
                raise IndexNotReady()
            return SearchSnapshot(
                pipeline=self._state.embedding_pipeline,
                index=self._state.search_index,
                note_cache=dict(self._state.note_cache),
                tombstones=set(self._state.deleted_note_ids),
            )

    async def scan_window(self) -> ScanWindow:
        async with self._lock:
            return ScanWindow(
                db_path=self._state.db_path,
                last_scan_timestamp=self._state.last_scan_timestamp,
                last_full_rebuild=self._state.last_full_rebuild,
            )

    # -- status ------------------------------------------------------------

    async def status(self) -> IndexStatus:
        async with self._lock:
            return self._state.index_status.copy()

    async def update_status(self, **fields) -> IndexStatus:
        async with self._lock:
            for name, value in fields.items():
                if not hasattr(self._state.index_status, name):
                    raise AttributeError(f"IndexStatus has no field {name!r}")
                setattr(self._state.index_status, name, value)
            self._publish_locked()
            return self._state.index_status.copy()

    # -- index lifecycle ---------------------------------------------------

    async def install_index(
        self,
        index: SharedIndex,
        note_cache: Dict[str, NoteMetadata],
        *,
        last_scan_timestamp: int,
        status: IndexStatus,
        mark_ready: bool,
        db_path: Optional[str] = None,
    ) -> Optional[IndexStatus]:
        """Swap in a freshly built or loaded index and its cache.

        Clears tombstones and restarts the rebuild clock. ``mark_ready`` only
        takes effect when the embedding pipeline is actually loaded. When
        ``db_path`` is given and no longer matches the configured path, the
        index is stale: nothing is installed and None is returned.
        """
        async with self._lock:
            if db_path is not None and db_path != self._state.db_path:
                return None
            self._state.search_index = index
            self._state.note_cache = dict(note_cache)
            self._state.last_scan_timestamp = int(last_scan_timestamp)
            self._state.deleted_note_ids.clear()
            self._state.last_full_rebuild = time.monotonic()
            status = status.copy()
            status.is_ready = bool(mark_ready and self._state.embedding_pipeline is not None)
            self._state.index_status = status
            self._publish_locked()
            return status.copy()

    async def mark_ready_if_loaded(self) -> IndexStatus:
        async with self._lock:
            self._state.index_status.is_downloading_model = False
            if self._state.embedding_pipeline is not None and self._state.search_index is not None:
                self._state.index_status.is_ready = True
            self._publish_locked()
            return self._state.index_status.copy()

    async def apply_deletions(self, note_ids: Iterable[str]) -> int:
        async with self._lock:
            count = 0
            for note_id in note_ids:
                self._state.deleted_note_ids.add(note_id)
                self._state.note_cache.pop(note_id, None)
                count += 1
            if count:
                live = len(self._state.note_cache)
                self._state.index_status.indexed_notes = live
                self._state.index_status.total_notes = live
                self._publish_locked()
            return count

    async def apply_changes(self, notes: Iterable[Note]) -> Tuple[int, IndexStatus]:
        """Un-tombstone and upsert changed notes, then advance the scan boundary.

        The boundary moves to one millisecond before the newest processed
        note so a note sharing that exact timestamp is looked at again next
        pass.
        """
        async with self._lock:
            max_ts: Optional[int] = None
            for note in notes:
                self._state.deleted_note_ids.discard(note.id)
                self._state.note_cache[note.id] = note.metadata()
                max_ts = note.updated_time if max_ts is None else max(max_ts, note.updated_time)
            if max_ts is not None:
                self._state.last_scan_timestamp = max(self._state.last_scan_timestamp, max_ts - 1)
            live = len(self._state.note_cache)
            self._state.index_status.indexed_notes = live
            self._state.index_status.total_notes = live
            self._publish_locked()
            return self._state.last_scan_timestamp, self._state.index_status.copy()
