import hashlib
import re
import sqlite3
import threading
from typing import Dict, Iterable, List, Optional

import numpy as np
import pytest

from joplin_search.config import SearchConfig
from joplin_search.embeddings import EmbeddingPipeline


DIM = 256

SCHEMA = """
CREATE TABLE notes (
    id TEXT PRIMARY KEY,
    parent_id TEXT NOT NULL DEFAULT '',
    title TEXT,
    body TEXT,
    created_time INT NOT NULL DEFAULT 0,
    updated_time INT NOT NULL,
    is_conflict INT NOT NULL DEFAULT 0,
    deleted_time INT NOT NULL DEFAULT 0
);
"""


def note_id(n: int) -> str:
    return f"{n:032x}"


class FakeEncoder:
    """Bag-of-words hashing encoder: texts sharing words get similar vectors."""

    def __init__(self, dim: int = DIM, fail: bool = False) -> None:
        self.dim = dim
        self.fail = fail
        self.calls = 0
        self.texts: List[str] = []
        self._active = 0
        self._guard = threading.Lock()
        self.overlapped = False

    def vector(self, text: str) -> np.ndarray:
        vec = np.zeros(self.dim, dtype=np.float32)
        for word in re.findall(r"\w+", text.lower()):
            bucket = int(hashlib.sha256(word.encode("utf-8")).hexdigest(), 16) % self.dim
            vec[bucket] += 1.0
        return vec

    def encode(self, sentences, **kwargs):
        with self._guard:
            self._active += 1
            if self._active > 1:
                self.overlapped = True
        try:
            self.calls += 1
            self.texts.extend(sentences)
            if self.fail:
                raise RuntimeError("inference exploded")
            # unnormalized on purpose
            return np.vstack([self.vector(t) * 3.0 for t in sentences])
        finally:
            with self._guard:
                self._active -= 1


class JoplinDB:
    """A Joplin-shaped notes table for tests."""

    def __init__(self, path: str) -> None:
        self.path = path
        conn = sqlite3.connect(path)
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.executescript(SCHEMA)
        conn.commit()
        conn.close()

    def _execute(self, sql: str, params: Iterable = ()) -> None:
        conn = sqlite3.connect(self.path)
        try:
            conn.execute(sql, tuple(params))
            conn.commit()
        finally:
            conn.close()

    def upsert(self, nid: str, title: str, body: str, updated_time: int, *, is_conflict: int = 0) -> None:
        self._execute(
            """
            INSERT INTO notes (id, title, body, updated_time, is_conflict, deleted_time)
            VALUES (?, ?, ?, ?, ?, 0)
            ON CONFLICT(id) DO UPDATE SET
                title = excluded.title,
                body = excluded.body,
                updated_time = excluded.updated_time,
                is_conflict = excluded.is_conflict,
                deleted_time = 0
            """,
            (nid, title, body, updated_time, is_conflict),
        )

    def soft_delete(self, nid: str, deleted_time: int) -> None:
        self._execute(
            "UPDATE notes SET deleted_time = ?, updated_time = ? WHERE id = ?",
            (deleted_time, deleted_time, nid),
        )

    def raw(self, sql: str, params: Iterable = ()) -> None:
        self._execute(sql, params)


SAMPLE_NOTES: Dict[str, tuple] = {
    note_id(1): ("Sourdough", "starter flour water bread baking oven", 1_000),
    note_id(2): ("Tax return", "invoice receipts accountant deadline", 2_000),
    note_id(3): ("Hiking trip", "mountain trail boots tent camping", 3_000),
    note_id(4): ("Garden", "tomatoes compost seedlings watering", 4_000),
}


@pytest.fixture
def joplin_db(tmp_path) -> JoplinDB:
    db = JoplinDB(str(tmp_path / "database.sqlite"))
    for nid, (title, body, ts) in SAMPLE_NOTES.items():
        db.upsert(nid, title, body, ts)
    return db


@pytest.fixture
def cfg(tmp_path, joplin_db) -> SearchConfig:
    return SearchConfig(
        db_path=joplin_db.path,
        data_dir=str(tmp_path / "data"),
        embedding_dim=DIM,
        embedding_batch_size=2,
        min_index_capacity=16,
        rebuild_interval_s=3600.0,
        poll_interval_s=0.01,
        debounce_s=0.0,
    )


@pytest.fixture
def encoder() -> FakeEncoder:
    return FakeEncoder()


@pytest.fixture
def pipeline_factory(encoder):
    loads: List[EmbeddingPipeline] = []

    def _factory() -> EmbeddingPipeline:
        pipeline = EmbeddingPipeline(encoder, dim=encoder.dim, model_name="fake")
        loads.append(pipeline)
        return pipeline

    _factory.loads = loads  # type: ignore[attr-defined]
    return _factory


def fake_pipeline(encoder: Optional[FakeEncoder] = None) -> EmbeddingPipeline:
    encoder = encoder or FakeEncoder()
    return EmbeddingPipeline(encoder, dim=encoder.dim, model_name="fake")
