"""Title-keyed encrypted notes.

A note is stored under the SHA-256 fingerprint of its title and encrypted
with AES-256-GCM under a key derived from that same title.
"""

from .crypto import decrypt_text, derive_key, encrypt_text, fingerprint
from .errors import (
    AuthenticationError,
    InvalidInputError,
    MalformedInputError,
    PrivateNoteError,
    ReadOnlyStoreError,
    StoreUnavailableError,
)
from .repository import LoadResult, NoteRepository, SaveOutcome, SaveResult, validate_title
from .store import JsonFileRecordStore, MemoryRecordStore, SnapshotRecordStore, StoredNote

__all__ = [
    "AuthenticationError",
    "InvalidInputError",
    "JsonFileRecordStore",
    "LoadResult",
    "MalformedInputError",
    "MemoryRecordStore",
    "NoteRepository",
    "PrivateNoteError",
    "ReadOnlyStoreError",
    "SaveOutcome",
    "SaveResult",
    "SnapshotRecordStore",
    "StoreUnavailableError",
    "StoredNote",
    "decrypt_text",
    "derive_key",
    "encrypt_text",
    "fingerprint",
    "validate_title",
]
