"""
Haven shared library.

- exceptions.py: HavenError hierarchy
- errors.py: error codes and user-facing messages
- encryption.py: KeyDerivation, FieldCipher (AES-256-GCM)
- device_storage.py: keyring / file / memory device storage
- circuit_breaker.py: guard for the text-generation endpoint
- security.py: log-safe principal hashes, prompt sanitization
- logging.py: structlog setup
"""
