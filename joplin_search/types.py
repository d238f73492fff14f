from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class Note:
    id: str
    title: str
    body: str
    updated_time: int  # Unix ms

    def metadata(self) -> "NoteMetadata":
        return NoteMetadata(id=self.id, title=self.title, updated_time=self.updated_time)

    def embedding_text(self) -> str:
        return f"{self.title}\n\n{self.body}"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class NoteMetadata:
    """Body-less projection of a note kept resident for result assembly."""

    id: str
    title: str
    updated_time: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class SearchResult:
    note: NoteMetadata
    score: float

    def to_dict(self) -> Dict[str, Any]:
        return {"note": self.note.to_dict(), "score": float(self.score)}


@dataclass
class IndexStatus:
    total_notes: int = 0
    indexed_notes: int = 0
    is_ready: bool = False
    is_downloading_model: bool = False
    download_progress: float = 0.0
    error: Optional[str] = None

    def copy(self) -> "IndexStatus":
        return IndexStatus(**asdict(self))

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
