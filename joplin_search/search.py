from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Iterable, List, Mapping, Set

from .config import SearchConfig
from .index import IndexHit
from .state import Coordinator
from .types import NoteMetadata, SearchResult


def rank_hits(
    hits: Iterable[IndexHit],
    *,
    tombstones: Set[str],
    note_cache: Mapping[str, NoteMetadata],
    min_score: float,
    limit: int,
) -> List[SearchResult]:
    """Turn raw index hits into results.

    Hits must arrive sorted by descending score. Tombstoned ids and ids with
    no cache entry are dropped, as is anything under ``min_score``; the first
    (best) hit per note wins.
    """
    seen: Set[str] = set()
    results: List[SearchResult] = []
    for hit in hits:
        if hit.note_id in tombstones:
            continue
        meta = note_cache.get(hit.note_id)
        if meta is None:
            continue
        if hit.score < min_score:
            continue
        if hit.note_id in seen:
            continue
        seen.add(hit.note_id)
        results.append(SearchResult(note=meta, score=hit.score))
        if len(results) >= limit:
            break
    return results


@dataclass
class SearchService:
    cfg: SearchConfig
    coordinator: Coordinator

    async def search(self, query: str) -> List[SearchResult]:
        """Semantic search over the live notes.

        Raises IndexNotReady / ModelNotLoaded before any inference when the
        index cannot serve queries yet.
        """
        snapshot = await self.coordinator.search_snapshot()
        # coordinator lock is released from here on
        if not query or not query.strip():
            return []

        start = time.time()
        query_vec = await snapshot.pipeline.aembed_one(query)
        hits = await snapshot.index.search(query_vec, int(self.cfg.candidate_k))
        results = rank_hits(
            hits,
            tombstones=snapshot.tombstones,
            note_cache=snapshot.note_cache,
            min_score=float(self.cfg.min_score),
            limit=int(self.cfg.return_k),
        )
        logging.info(
            "search",
            extra={
                "operation": "search",
                "duration_ms": int((time.time() - start) * 1000),
                "candidate_count": len(hits),
                "result_count": len(results),
            },
        )
        return results
