"""
Exception classes for encrypted-field operations.

Callers are expected to branch on the concrete class: a KeyServiceError can be
retried with backoff, the others cannot.
"""

from __future__ import annotations


class EnvelopeError(Exception):
    """Base exception for all encrypted-field operations."""

    retryable: bool = False


class ConfigurationError(EnvelopeError):
    """Required key material (master key id, index key) missing or malformed."""

    pass


class KeyServiceError(EnvelopeError):
    """The key-management service call failed (network, auth, key id, timeout)."""

    retryable = True


class DecryptionError(EnvelopeError):
    """Authenticated decryption failed or the packaged blob is malformed."""

    pass


class IntegrityError(EnvelopeError):
    """A wrapped data key is malformed or its master key is no longer held."""

    pass


class StorageError(EnvelopeError):
    """Record store error (database, in-memory)."""

    pass


class DuplicateRecordError(StorageError):
    """A unique index column already holds the same tag."""

    pass
