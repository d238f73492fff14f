import asyncio

import pytest

np = pytest.importorskip("numpy")
pytest.importorskip("faiss")

from conftest import DIM, FakeEncoder, fake_pipeline, note_id
from joplin_search.errors import IndexNotReady, ModelNotLoaded
from joplin_search.index import IndexHit, SharedIndex, VectorIndex
from joplin_search.search import SearchService, rank_hits
from joplin_search.state import Coordinator
from joplin_search.types import IndexStatus, NoteMetadata


def _meta(n: int, title: str = "") -> NoteMetadata:
    return NoteMetadata(id=note_id(n), title=title or f"note {n}", updated_time=n)


def test_rank_hits_applies_score_floor():
    cache = {note_id(n): _meta(n) for n in range(1, 5)}
    hits = [
        IndexHit(note_id(1), 0.95),
        IndexHit(note_id(2), 0.5),
        IndexHit(note_id(3), 0.29),
        IndexHit(note_id(4), 0.1),
    ]
    results = rank_hits(hits, tombstones=set(), note_cache=cache, min_score=0.30, limit=10)
    assert [r.note.id for r in results] == [note_id(1), note_id(2)]
    assert [r.score for r in results] == [0.95, 0.5]


def test_rank_hits_keeps_best_duplicate():
    cache = {note_id(1): _meta(1), note_id(2): _meta(2)}
    hits = [
        IndexHit(note_id(1), 0.9),
        IndexHit(note_id(2), 0.8),
        IndexHit(note_id(1), 0.7),
    ]
    results = rank_hits(hits, tombstones=set(), note_cache=cache, min_score=0.0, limit=10)
    assert [(r.note.id, r.score) for r in results] == [(note_id(1), 0.9), (note_id(2), 0.8)]


def test_rank_hits_drops_tombstones_and_unknown_ids():
    cache = {note_id(1): _meta(1), note_id(3): _meta(3)}
    hits = [
        IndexHit(note_id(1), 0.9),
        IndexHit(note_id(2), 0.85),  # not in cache
        IndexHit(note_id(3), 0.8),
    ]
    results = rank_hits(hits, tombstones={note_id(1)}, note_cache=cache, min_score=0.0, limit=10)
    assert [r.note.id for r in results] == [note_id(3)]


def test_rank_hits_limit():
    cache = {note_id(n): _meta(n) for n in range(1, 30)}
    hits = [IndexHit(note_id(n), 1.0 - n / 100) for n in range(1, 30)]
    results = rank_hits(hits, tombstones=set(), note_cache=cache, min_score=0.3, limit=10)
    assert len(results) == 10
    assert results[0].note.id == note_id(1)
    assert [r.score for r in results] == sorted((r.score for r in results), reverse=True)


async def _ready_coordinator(encoder: FakeEncoder, notes) -> Coordinator:
    coordinator = Coordinator()
    pipeline = fake_pipeline(encoder)
    assert await coordinator.try_begin_pipeline_load()
    await coordinator.finish_pipeline_load(pipeline)

    index = VectorIndex(capacity=16, dim=DIM)
    index.add_batch([(nid, encoder.vector(f"{title}\n\n{body}")) for nid, title, body in notes])
    cache = {nid: NoteMetadata(id=nid, title=title, updated_time=1) for nid, title, _ in notes}
    await coordinator.install_index(
        SharedIndex(index),
        cache,
        last_scan_timestamp=1,
        status=IndexStatus(total_notes=len(notes), indexed_notes=len(notes)),
        mark_ready=True,
    )
    encoder.calls = 0
    return coordinator


NOTES = [
    (note_id(1), "Sourdough", "starter flour water bread baking oven"),
    (note_id(2), "Tax return", "invoice receipts accountant deadline"),
]


@pytest.mark.asyncio
async def test_search_returns_best_match(cfg):
    encoder = FakeEncoder()
    coordinator = await _ready_coordinator(encoder, NOTES)
    service = SearchService(cfg, coordinator)

    results = await service.search("bread baking")
    assert results
    assert results[0].note.id == note_id(1)
    assert results[0].note.title == "Sourdough"
    assert note_id(2) not in [r.note.id for r in results]
    assert encoder.calls == 1


@pytest.mark.asyncio
async def test_search_hides_tombstoned_notes(cfg):
    encoder = FakeEncoder()
    coordinator = await _ready_coordinator(encoder, NOTES)
    await coordinator.apply_deletions([note_id(1)])

    results = await SearchService(cfg, coordinator).search("bread baking")
    assert note_id(1) not in [r.note.id for r in results]


@pytest.mark.asyncio
async def test_search_before_ready_skips_inference(cfg):
    encoder = FakeEncoder()
    coordinator = Coordinator()
    assert await coordinator.try_begin_pipeline_load()
    await coordinator.finish_pipeline_load(fake_pipeline(encoder))

    with pytest.raises(IndexNotReady):
        await SearchService(cfg, coordinator).search("anything")
    assert encoder.calls == 0


@pytest.mark.asyncio
async def test_search_without_model(cfg):
    coordinator = Coordinator()
    coordinator.state.index_status.is_ready = True
    coordinator.state.search_index = SharedIndex(VectorIndex(capacity=4, dim=DIM))

    with pytest.raises(ModelNotLoaded):
        await SearchService(cfg, coordinator).search("anything")


@pytest.mark.asyncio
async def test_blank_query_returns_nothing(cfg):
    encoder = FakeEncoder()
    coordinator = await _ready_coordinator(encoder, NOTES)
    service = SearchService(cfg, coordinator)

    assert await service.search("") == []
    assert await service.search("   \n") == []
    assert encoder.calls == 0


@pytest.mark.asyncio
async def test_concurrent_searches(cfg):
    encoder = FakeEncoder()
    coordinator = await _ready_coordinator(encoder, NOTES)
    service = SearchService(cfg, coordinator)

    results = await asyncio.gather(*(service.search("invoice deadline") for _ in range(8)))
    assert all(r and r[0].note.id == note_id(2) for r in results)
    assert not encoder.overlapped
