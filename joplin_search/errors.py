from __future__ import annotations


class NoteSearchError(Exception):
    """Base class for failures reported to callers as a short string code."""

    code = "internal_error"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.code)


class DatabaseNotConfigured(NoteSearchError):
    """Raised when an operation needs the Joplin database but no path is set."""

    code = "db_not_configured"


class IndexNotReady(NoteSearchError):
    code = "index_not_ready"


class ModelNotLoaded(NoteSearchError):
    code = "model_not_loaded"


class NoteNotFound(NoteSearchError):
    code = "note_not_found"


class InvalidNoteId(NoteSearchError):
    """Raised when a note identifier is not 32 lowercase hex characters."""

    code = "invalid_note_id"


class DatabaseError(NoteSearchError):
    """Raised when the Joplin database cannot be opened or read."""

    code = "database_error"


class EmbeddingError(NoteSearchError):
    """Raised when model loading or inference fails. Batches fail as a whole."""

    code = "embedding_failed"


class VectorIndexError(NoteSearchError):
    """Raised on index creation, insertion, serialization or load failure."""

    code = "index_error"
