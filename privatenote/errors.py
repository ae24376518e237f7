from __future__ import annotations


class PrivateNoteError(Exception):
    """Base class for every failure the note protocol reports."""


class InvalidInputError(PrivateNoteError):
    pass


class AuthenticationError(PrivateNoteError):
    """The GCM tag did not verify: wrong title or tampered record."""


class MalformedInputError(PrivateNoteError):
    pass


class StoreUnavailableError(PrivateNoteError):
    pass


class ReadOnlyStoreError(StoreUnavailableError):
    pass
