from __future__ import annotations

import asyncio
import json
import os
import struct
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np

from .errors import VectorIndexError
from .locks import RWLock


DIMENSIONS = 384

HNSW_M = 16
HNSW_EF_CONSTRUCTION = 200
HNSW_EF_SEARCH = 50
MIN_CAPACITY = 2000

_MAGIC = b"JSIX"
_FORMAT_VERSION = 1
# magic, format version, header length
_PREAMBLE = struct.Struct("<4sIQ")

# rebuild and delta saves share one temp path
_SAVE_LOCK = threading.Lock()


def capacity_for(note_count: int, *, minimum: int = MIN_CAPACITY) -> int:
    """Twice the known note count so delta inserts fit until the next rebuild."""
    return max(2 * int(note_count), int(minimum))


@dataclass(frozen=True)
class IndexHit:
    note_id: str
    score: float  # cosine similarity in [0, 1]


class VectorIndex:
    """HNSW graph over note embeddings, keyed by Joplin note id.

    faiss assigns sequential labels in insertion order; ``_ids[label]`` maps
    them back to note ids. The same note id may appear under several labels
    when a note is re-indexed between rebuilds.
    """

    def __init__(
        self,
        capacity: int,
        *,
        dim: int = DIMENSIONS,
        m: int = HNSW_M,
        ef_construction: int = HNSW_EF_CONSTRUCTION,
        ef_search: int = HNSW_EF_SEARCH,
        _faiss_index: Any = None,
        _ids: Optional[List[str]] = None,
    ) -> None:
        self.dim = int(dim)
        self.capacity = int(capacity)
        self.m = int(m)
        self.ef_construction = int(ef_construction)
        self.ef_search = int(ef_search)
        if _faiss_index is None:
            _faiss_index = self._create()
        self._index = _faiss_index
        self._ids: List[str] = list(_ids or [])

    def _create(self) -> Any:
        import faiss

        try:
            index = faiss.IndexHNSWFlat(self.dim, self.m, faiss.METRIC_INNER_PRODUCT)
            index.hnsw.efConstruction = self.ef_construction
            index.hnsw.efSearch = self.ef_search
        except Exception as exc:
            raise VectorIndexError(f"Failed to create HNSW index: {exc}") from exc
        return index

    def __len__(self) -> int:
        return len(self._ids)

    def is_empty(self) -> bool:
        return len(self._ids) == 0

    @property
    def note_ids(self) -> List[str]:
        return list(self._ids)

    def _prepare(self, vectors: Any) -> np.ndarray:
        import faiss

        x = np.array(vectors, dtype=np.float32, copy=True)
        if x.ndim == 1:
            x = x.reshape(1, -1)
        if x.ndim != 2 or x.shape[1] != self.dim:
            raise VectorIndexError(f"Expected vectors of dimension {self.dim}, got shape {x.shape}")
        x = np.ascontiguousarray(x)
        faiss.normalize_L2(x)
        return x

    def add(self, note_id: str, vector: Any) -> None:
        self.add_batch([(note_id, vector)])

    def add_batch(self, entries: Sequence[Tuple[str, Any]]) -> None:
        if not entries:
            return
        if len(self._ids) + len(entries) > self.capacity:
            raise VectorIndexError(
                f"Index capacity exceeded ({len(self._ids)} + {len(entries)} > {self.capacity})"
            )
        ids = [str(note_id) for note_id, _ in entries]
        x = self._prepare(np.vstack([np.asarray(v, dtype=np.float32).reshape(1, -1) for _, v in entries]))
        try:
            self._index.add(x)
        except Exception as exc:
            raise VectorIndexError(f"Index batch add failed: {exc}") from exc
        self._ids.extend(ids)

    def search(self, query: Any, k: int) -> List[IndexHit]:
        """Up to k nearest notes, highest similarity first."""
        if self.is_empty() or k <= 0:
            return []
        q = self._prepare(query)
        try:
            sims, labels = self._index.search(q, min(int(k), len(self._ids)))
        except Exception as exc:
            raise VectorIndexError(f"Index search failed: {exc}") from exc

        hits: List[IndexHit] = []
        for sim, label in zip(sims[0], labels[0]):
            label = int(label)
            if label < 0 or label >= len(self._ids):
                continue
            # Inner product on unit vectors; cosine distance is 1 - similarity.
            distance = 1.0 - float(sim)
            score = min(1.0, max(0.0, 1.0 - distance))
            hits.append(IndexHit(note_id=self._ids[label], score=score))
        hits.sort(key=lambda h: h.score, reverse=True)
        return hits

    def to_bytes(self) -> bytes:
        import faiss

        header = {
            "dim": self.dim,
            "capacity": self.capacity,
            "m": self.m,
            "ef_construction": self.ef_construction,
            "ef_search": self.ef_search,
            "ids": self._ids,
        }
        try:
            payload = faiss.serialize_index(self._index).tobytes()
        except Exception as exc:
            raise VectorIndexError(f"Index serialize failed: {exc}") from exc
        header_bytes = json.dumps(header, separators=(",", ":")).encode("utf-8")
        return _PREAMBLE.pack(_MAGIC, _FORMAT_VERSION, len(header_bytes)) + header_bytes + payload

    @classmethod
    def from_bytes(cls, data: bytes) -> "VectorIndex":
        import faiss

        if len(data) < _PREAMBLE.size:
            raise VectorIndexError("Index file is truncated")
        magic, version, header_len = _PREAMBLE.unpack_from(data, 0)
        if magic != _MAGIC or version != _FORMAT_VERSION:
            raise VectorIndexError("Not a note index file (bad magic or version)")
        start = _PREAMBLE.size
        try:
            header: Dict[str, Any] = json.loads(data[start:start + header_len].decode("utf-8"))
            ids = [str(i) for i in header["ids"]]
            payload = np.frombuffer(data[start + header_len:], dtype=np.uint8).copy()
            index = faiss.downcast_index(faiss.deserialize_index(payload))
        except VectorIndexError:
            raise
        except Exception as exc:
            raise VectorIndexError(f"Index deserialize failed: {exc}") from exc
        if int(index.ntotal) != len(ids) or int(index.d) != int(header["dim"]):
            raise VectorIndexError("Index header does not match stored vectors")
        ef_search = int(header.get("ef_search", HNSW_EF_SEARCH))
        index.hnsw.efSearch = ef_search
        return cls(
            int(header["capacity"]),
            dim=int(header["dim"]),
            m=int(header.get("m", HNSW_M)),
            ef_construction=int(header.get("ef_construction", HNSW_EF_CONSTRUCTION)),
            ef_search=ef_search,
            _faiss_index=index,
            _ids=ids,
        )

    def save(self, path: str) -> None:
        """Write atomically: ``<path>.tmp`` next to the target, then rename over it.

        The temp name is fixed, so a write interrupted by a crash leaves one
        file that the next save truncates.
        """
        data = self.to_bytes()
        dir_path = os.path.dirname(os.path.abspath(path)) or "."
        tmp_path = f"{path}.tmp"
        try:
            os.makedirs(dir_path, exist_ok=True)
        except OSError as exc:
            raise VectorIndexError(f"Failed to prepare index file {path}: {exc}") from exc
        with _SAVE_LOCK:
            try:
                with open(tmp_path, "wb") as f:
                    f.write(data)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_path, path)
            except Exception as exc:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
                raise VectorIndexError(f"Failed to write index file {path}: {exc}") from exc

    @classmethod
    def load(cls, path: str) -> "VectorIndex":
        try:
            with open(path, "rb") as f:
                data = f.read()
        except OSError as exc:
            raise VectorIndexError(f"Failed to read index file {path}: {exc}") from exc
        return cls.from_bytes(data)


@dataclass
class SharedIndex:
    """The index handle held by the coordinator and by in-flight operations.

    A rebuild installs a fresh SharedIndex; searches still holding the old one
    finish against it undisturbed.
    """

    index: VectorIndex
    lock: RWLock = field(default_factory=RWLock)

    async def search(self, query: Any, k: int) -> List[IndexHit]:
        async with self.lock.read_lock():
            return await asyncio.to_thread(self.index.search, query, k)

    async def add_batch(self, entries: Sequence[Tuple[str, Any]]) -> None:
        async with self.lock.write_lock():
            await asyncio.to_thread(self.index.add_batch, entries)

    async def save(self, path: str) -> None:
        async with self.lock.read_lock():
            await asyncio.to_thread(self.index.save, path)

    def __len__(self) -> int:
        return len(self.index)
