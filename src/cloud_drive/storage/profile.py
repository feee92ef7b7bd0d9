"""Per-profile persistence of credential and endpoint records."""

from __future__ import annotations

import contextlib
import json
import logging
import os
import tempfile
from typing import TYPE_CHECKING, Any, Protocol

from azure.core.exceptions import ResourceExistsError, ResourceNotFoundError
from azure.storage.blob import BlobServiceClient

if TYPE_CHECKING:
    from cloud_drive.config import AppConfig

logger = logging.getLogger(__name__)

RECORD_SUFFIX = ".json"


class ProfileStore(Protocol):
    """Loads and saves JSON-serializable records by key."""

    def load(self, key: str) -> dict[str, Any] | None: ...

    def save(self, key: str, record: dict[str, Any]) -> None: ...


def _parse_record(key: str, data: bytes) -> dict[str, Any] | None:
    """Decode a stored record; unreadable records are treated as absent."""
    try:
        record = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        logger.warning("[load] ignoring unreadable profile record; key:%s", key)
        return None
    if not isinstance(record, dict):
        logger.warning("[load] ignoring profile record that is not an object; key:%s", key)
        return None
    return record


class LocalProfileStore:
    """Stores each record as ``<profile_dir>/<key>.json``."""

    def __init__(self, profile_dir: str) -> None:
        """Initialise the store, creating ``profile_dir`` if needed.

        Args:
            profile_dir: Directory dedicated to one client profile.
        """
        os.makedirs(profile_dir, exist_ok=True)
        self._profile_dir = profile_dir

    @property
    def profile_dir(self) -> str:
        """Directory holding this profile's records."""
        return self._profile_dir

    def _path(self, key: str) -> str:
        return os.path.join(self._profile_dir, f"{key}{RECORD_SUFFIX}")

    def load(self, key: str) -> dict[str, Any] | None:
        """Return the record stored under ``key``, or None if there is none."""
        try:
            with open(self._path(key), "rb") as f:
                data = f.read()
        except FileNotFoundError:
            return None
        return _parse_record(key, data)

    def save(self, key: str, record: dict[str, Any]) -> None:
        """Write ``record`` atomically, replacing any previous version."""
        fd, tmp_path = tempfile.mkstemp(dir=self._profile_dir, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(record, f)
            os.replace(tmp_path, self._path(key))
        except BaseException:
            os.unlink(tmp_path)
            raise
        logger.debug("[save] stored profile record; key:%s", key)


class BlobProfileStore:
    """Stores each record as the blob ``<profile_key>/<key>.json`` in one container."""

    def __init__(self, storage_connection_string: str, container: str, profile_key: str) -> None:
        """Initialise the store.

        Args:
            storage_connection_string: Azure Storage connection string.
            container: Blob container shared by all profiles.
            profile_key: Prefix isolating this profile's records.
        """
        self._blob_service = BlobServiceClient.from_connection_string(storage_connection_string)
        self._container = container
        self._profile_key = profile_key

    def _blob_path(self, key: str) -> str:
        return f"{self._profile_key}/{key}{RECORD_SUFFIX}"

    def load(self, key: str) -> dict[str, Any] | None:
        """Return the record stored in the profile's blob for ``key``, or None."""
        try:
            container_client = self._blob_service.get_container_client(self._container)
            blob_client = container_client.get_blob_client(self._blob_path(key))
            data = blob_client.download_blob().readall()
        except ResourceNotFoundError:
            logger.info("[load] no profile record in blob storage; key:%s", key)
            return None
        return _parse_record(key, data)

    def save(self, key: str, record: dict[str, Any]) -> None:
        """Upload ``record``, creating the container if it does not exist."""
        container_client = self._blob_service.get_container_client(self._container)
        with contextlib.suppress(ResourceExistsError):
            container_client.create_container()

        blob_client = container_client.get_blob_client(self._blob_path(key))
        blob_client.upload_blob(json.dumps(record).encode("utf-8"), overwrite=True)
        logger.debug("[save] stored profile record in blob storage; key:%s", key)


def profile_store_from_config(config: AppConfig) -> ProfileStore:
    """Construct the profile store selected by the configuration.

    Blob storage is used when a storage connection string is configured,
    otherwise records live in the local profile directory.
    """
    if config.storage_connection_string:
        return BlobProfileStore(
            storage_connection_string=config.storage_connection_string,
            container=config.profile_container,
            profile_key=config.profile_key,
        )
    return LocalProfileStore(config.profile_dir)
