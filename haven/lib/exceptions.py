"""
Custom exception hierarchy for Haven.

Provides structured exception types for the client-side data layer:
- Configuration, key management, field encryption
- Identity resolution, record store access
- External text generation

All exceptions inherit from HavenError, enabling catch-all for
Haven-specific errors at the service boundary while keeping the
ability to catch specific error types closer to the primitive that
raised them.

Only the cipher and key primitives raise these to their immediate
caller. Domain services translate them into ServiceResult pairs.
"""

from __future__ import annotations


class HavenError(Exception):
    """Base exception for all Haven errors."""


class ConfigurationError(HavenError):
    """Missing or invalid environment configuration."""


class EncryptionError(HavenError):
    """Encryption or decryption failures (key errors, corrupted data)."""


class KeyNotInitialized(EncryptionError):
    """The cipher was used before a key was established for the session."""


class DecryptionFailed(EncryptionError):
    """Ciphertext could not be read with the current key (mismatch or tampering)."""


class SerializationError(HavenError):
    """Decrypted bytes were not valid serialized data."""


class NoActivePrincipal(HavenError):
    """A write was attempted without an authenticated or anonymous principal."""


class StoreError(HavenError):
    """Wraps any failure reported by the external record store."""


class ExternalServiceUnavailable(HavenError):
    """Text generation is unconfigured or failed. Always recoverable."""


class InvalidTransition(HavenError):
    """A lifecycle state change that the state table does not allow."""


class CapacityReached(HavenError):
    """A group or supporter has no remaining capacity."""


__all__ = [
    "HavenError",
    "ConfigurationError",
    "EncryptionError",
    "KeyNotInitialized",
    "DecryptionFailed",
    "SerializationError",
    "NoActivePrincipal",
    "StoreError",
    "ExternalServiceUnavailable",
    "InvalidTransition",
    "CapacityReached",
]
