"""
Blob stores receiving exported content and XML side-cars.

Every blob is tagged with the object id it belongs to, so a document's
artifacts can be removed without knowing their names or extensions.
"""

import json
import threading
from pathlib import Path
from typing import Dict, List, Optional

from azure.core.exceptions import AzureError, ResourceExistsError
from azure.storage.blob import BlobServiceClient, ContentSettings

from .error_tracker import ExternalServiceError
from .logging_manager import get_logger

logger = get_logger(__name__)

OBJECT_ID_TAG = "ObjectId"


class ContentStore:
    """
    Interface for blob storage.
    """

    def put(self, container: str, name: str, data: bytes, content_type: str, tag: str) -> None:
        raise NotImplementedError

    def delete_by_tag(self, container: str, tag: str, keep: Optional[str] = None) -> int:
        """Delete every blob in ``container`` tagged with ``tag`` except ``keep``; returns the number deleted."""
        raise NotImplementedError

    def list_by_tag(self, container: str, tag: str) -> List[str]:
        raise NotImplementedError


class LocalContentStore(ContentStore):
    """Filesystem store; tags are kept in a JSON index per container."""

    INDEX_NAME = ".tags.json"

    def __init__(self, root_directory: str = "./cache/blobs"):
        self.root = Path(root_directory)
        self.root.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def _container_dir(self, container: str) -> Path:
        path = self.root / container
        path.mkdir(parents=True, exist_ok=True)
        return path

    def _read_index(self, container: str) -> Dict[str, str]:
        index_path = self._container_dir(container) / self.INDEX_NAME
        if not index_path.exists():
            return {}
        with open(index_path, "r", encoding="utf-8") as f:
            return json.load(f)

    def _write_index(self, container: str, index: Dict[str, str]) -> None:
        index_path = self._container_dir(container) / self.INDEX_NAME
        with open(index_path, "w", encoding="utf-8") as f:
            json.dump(index, f, indent=2, ensure_ascii=False)

    def put(self, container: str, name: str, data: bytes, content_type: str, tag: str) -> None:
        with self._lock:
            (self._container_dir(container) / name).write_bytes(data)
            index = self._read_index(container)
            index[name] = tag
            self._write_index(container, index)
        logger.debug("Stored blob", extra={'details': {'container': container, 'name': name, 'tag': tag}})

    def list_by_tag(self, container: str, tag: str) -> List[str]:
        with self._lock:
            index = self._read_index(container)
        return sorted(name for name, value in index.items() if value == tag)

    def delete_by_tag(self, container: str, tag: str, keep: Optional[str] = None) -> int:
        with self._lock:
            index = self._read_index(container)
            names = [name for name, value in index.items() if value == tag and name != keep]
            for name in names:
                (self._container_dir(container) / name).unlink(missing_ok=True)
                del index[name]
            self._write_index(container, index)
        return len(names)

    def read(self, container: str, name: str) -> Optional[bytes]:
        path = self._container_dir(container) / name
        return path.read_bytes() if path.exists() else None


class AzureBlobContentStore(ContentStore):
    """Azure Blob Storage with blob index tags."""

    def __init__(self, connection_string: str):
        self.service = BlobServiceClient.from_connection_string(connection_string)
        self._known_containers = set()

    def _container(self, container: str):
        client = self.service.get_container_client(container)
        if container not in self._known_containers:
            try:
                client.create_container()
            except ResourceExistsError:
                pass
            self._known_containers.add(container)
        return client

    def put(self, container: str, name: str, data: bytes, content_type: str, tag: str) -> None:
        try:
            self._container(container).upload_blob(
                name=name,
                data=data,
                overwrite=True,
                content_settings=ContentSettings(content_type=content_type),
                tags={OBJECT_ID_TAG: tag},
            )
        except AzureError as e:
            raise ExternalServiceError(f"Failed to upload {container}/{name}: {e}", source_id=tag) from e

    def list_by_tag(self, container: str, tag: str) -> List[str]:
        query = f"@container='{container}' AND \"{OBJECT_ID_TAG}\"='{tag}'"
        try:
            return sorted(blob.name for blob in self.service.find_blobs_by_tags(query))
        except AzureError as e:
            raise ExternalServiceError(f"Failed to find blobs tagged {tag} in {container}: {e}", source_id=tag) from e

    def delete_by_tag(self, container: str, tag: str, keep: Optional[str] = None) -> int:
        names = [name for name in self.list_by_tag(container, tag) if name != keep]
        client = self._container(container)
        for name in names:
            try:
                client.delete_blob(name, delete_snapshots="include")
            except AzureError as e:
                raise ExternalServiceError(f"Failed to delete {container}/{name}: {e}", source_id=tag) from e
        return len(names)
