"""
Local device persistent storage for Haven.

Key-value string storage that survives application restarts. Holds the
two device-bound secrets of an anonymous principal:

- ANONYMOUS_ID_KEY: the locally generated 16-character anonymous id
- DEVICE_KEY_KEY:   the hex-encoded random device encryption key

Backends:
- KeyringDeviceStorage: OS keyring (preferred), with a file fallback when
  no keyring backend is usable on this machine
- FileDeviceStorage:    JSON file under HAVEN_STORAGE_DIR, mode 0600
- MemoryDeviceStorage:  process-local dict (tests, ephemeral sessions)

Clearing this storage makes anonymous data unrecoverable. That is the
documented property of anonymous mode, not a bug.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Protocol, runtime_checkable

import keyring
import keyring.errors

from haven.config.settings import DeviceStorageBackend, Settings, get_settings

logger = logging.getLogger(__name__)

ANONYMOUS_ID_KEY = "haven_anonymous_id"
DEVICE_KEY_KEY = "haven_device_key"


@runtime_checkable
class DeviceStorage(Protocol):
    """Minimal key-value contract for device-local persistence."""

    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str) -> None: ...

    def remove(self, key: str) -> None: ...


class MemoryDeviceStorage:
    """Dict-backed storage. Lives as long as the instance."""

    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self._values: dict[str, str] = dict(initial or {})

    def get(self, key: str) -> str | None:
        return self._values.get(key)

    def set(self, key: str, value: str) -> None:
        self._values[key] = value

    def remove(self, key: str) -> None:
        self._values.pop(key, None)

    def clear(self) -> None:
        self._values.clear()


class FileDeviceStorage:
    """
    JSON file storage with owner-only permissions.

    The directory is created with mode 0700 and the file with 0600. The
    whole file is rewritten on every set/remove.
    """

    FILE_NAME = "device.json"

    def __init__(self, directory: Path) -> None:
        self._directory = Path(directory)
        self._path = self._directory / self.FILE_NAME

    @property
    def path(self) -> Path:
        return self._path

    def _read(self) -> dict[str, str]:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(
                "device_storage_file_unreadable",
                extra={"error": type(e).__name__},
            )
            return {}
        if not isinstance(data, dict):
            return {}
        return {str(k): str(v) for k, v in data.items()}

    def _write(self, values: dict[str, str]) -> None:
        os.makedirs(self._directory, mode=0o700, exist_ok=True)
        tmp_path = self._path.with_suffix(".tmp")
        tmp_path.write_text(json.dumps(values), encoding="utf-8")
        os.chmod(tmp_path, 0o600)
        os.replace(tmp_path, self._path)

    def get(self, key: str) -> str | None:
        return self._read().get(key)

    def set(self, key: str, value: str) -> None:
        values = self._read()
        values[key] = value
        self._write(values)

    def remove(self, key: str) -> None:
        values = self._read()
        if key in values:
            del values[key]
            self._write(values)


class KeyringDeviceStorage:
    """
    OS keyring storage with a file fallback.

    Reads try the keyring first, then the fallback file. Writes go to the
    keyring when it works and to the file otherwise, so a machine without a
    usable keyring backend still keeps its device key across restarts.
    """

    SERVICE_NAME = "haven"

    def __init__(
        self,
        fallback: FileDeviceStorage,
        service_name: str | None = None,
    ) -> None:
        self._fallback = fallback
        self._service = service_name or self.SERVICE_NAME

    def get(self, key: str) -> str | None:
        try:
            value = keyring.get_password(self._service, key)
            if value:
                return value
        except keyring.errors.KeyringError as e:
            logger.debug(
                "keyring_read_failed_using_file",
                extra={"error": type(e).__name__},
            )
        return self._fallback.get(key)

    def set(self, key: str, value: str) -> None:
        try:
            keyring.set_password(self._service, key, value)
            return
        except keyring.errors.KeyringError as e:
            logger.warning(
                "keyring_write_failed_using_file",
                extra={"error": type(e).__name__},
            )
        self._fallback.set(key, value)

    def remove(self, key: str) -> None:
        try:
            keyring.delete_password(self._service, key)
        except keyring.errors.PasswordDeleteError:
            pass  # not stored in the keyring
        except keyring.errors.KeyringError as e:
            logger.debug(
                "keyring_delete_failed",
                extra={"error": type(e).__name__},
            )
        self._fallback.remove(key)


def create_device_storage(settings: Settings | None = None) -> DeviceStorage:
    """Build the device storage backend selected by HAVEN_DEVICE_STORAGE."""
    settings = settings or get_settings()
    if settings.device_storage == DeviceStorageBackend.MEMORY:
        return MemoryDeviceStorage()
    file_storage = FileDeviceStorage(settings.storage_dir)
    if settings.device_storage == DeviceStorageBackend.FILE:
        return file_storage
    return KeyringDeviceStorage(fallback=file_storage)


__all__ = [
    "ANONYMOUS_ID_KEY",
    "DEVICE_KEY_KEY",
    "DeviceStorage",
    "FileDeviceStorage",
    "KeyringDeviceStorage",
    "MemoryDeviceStorage",
    "create_device_storage",
]
