"""
Export of a single document to the content store.

An export writes two blobs, both tagged with the object id:
``<objectId>.<ext>`` (content) and ``<objectId>.xml`` (metadata side-car),
then notifies the callback. Documents whose publication date lies in the
future are parked in the publication queue instead.
"""

from datetime import date, datetime, timezone
from typing import Callable, Optional

from .callback import CallbackSink
from .content_store import ContentStore
from .error_tracker import IdentityRecordNotFoundError
from .graph_client import RepositoryClient
from .logging_manager import get_logger
from .metadata import MetadataMapper
from .models import ExportOutcome, ObjectIdentifiers, PublicationQueueEntry, SyncType
from .table_store import PublicationTable

logger = get_logger(__name__)


class DocumentExporter:
    def __init__(self, repository: RepositoryClient, content_store: ContentStore, mapper: MetadataMapper,
                 publication: PublicationTable, callback: CallbackSink,
                 content_container: str = "content", metadata_container: str = "metadata",
                 clock: Optional[Callable[[], datetime]] = None):
        self.repository = repository
        self.content_store = content_store
        self.mapper = mapper
        self.publication = publication
        self.callback = callback
        self.content_container = content_container
        self.metadata_container = metadata_container
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def export(self, ids: ObjectIdentifiers, sync_type: SyncType, today: Optional[date] = None) -> ExportOutcome:
        """
        Export the document identified by fully resolved ``ids``.

        Returns SKIPPED when the file carries no metadata yet, DEFERRED when its
        publication date is after ``today``, EXPORTED otherwise.
        """
        drive_item = self.repository.get_drive_item(ids.drive_id, ids.drive_item_id)
        fields = (drive_item.get("listItem") or {}).get("fields") or {}
        if not self.mapper.has_metadata(fields):
            logger.info(
                "Skipping file without metadata",
                extra={'details': {'drive_id': ids.drive_id, 'drive_item_id': ids.drive_item_id}},
            )
            return ExportOutcome.SKIPPED

        if not ids.object_id:
            raise IdentityRecordNotFoundError(
                f"Drive item {ids.drive_item_id} has no registered object id",
                source_id=ids.drive_item_id,
                recovery_suggestion="Register the document so an object id is minted",
            )

        metadata = self.mapper.read(ids, drive_item)
        object_id = ids.object_id
        today = today or self.clock().date()

        publication_date = self.mapper.publication_date(metadata)
        if publication_date and publication_date.date() > today:
            self.publication.upsert(PublicationQueueEntry(object_id, publication_date))
            logger.info(
                f"Deferred {object_id} until {publication_date.date().isoformat()}",
                extra={'details': {'object_id': object_id, 'publication_date': publication_date.isoformat()}},
            )
            return ExportOutcome.DEFERRED

        content = self.repository.download_content(ids.drive_id, ids.drive_item_id)
        content_name = f"{object_id}.{metadata.file_extension}" if metadata.file_extension else object_id
        self.content_store.put(
            self.content_container, content_name, content,
            metadata.mime_type or "application/octet-stream", object_id,
        )
        self.content_store.put(
            self.metadata_container, f"{object_id}.xml", self.mapper.to_xml(metadata),
            "application/xml", object_id,
        )
        # Only once the new blobs are stored: drop content left under a previous extension
        self.content_store.delete_by_tag(self.content_container, object_id, keep=content_name)
        self.callback.notify(object_id, sync_type, self.mapper.to_callback_view(metadata))

        logger.info(f"Exported {object_id}", extra={'details': {'object_id': object_id, 'sync_type': sync_type.value}})
        return ExportOutcome.EXPORTED

    def delete(self, ids: ObjectIdentifiers) -> None:
        """Remove every exported artifact of a deleted document."""
        if not ids.object_id:
            raise IdentityRecordNotFoundError(
                f"Deleted drive item {ids.drive_item_id} has no registered object id",
                source_id=ids.drive_item_id,
            )
        object_id = ids.object_id
        removed = self.content_store.delete_by_tag(self.content_container, object_id)
        removed += self.content_store.delete_by_tag(self.metadata_container, object_id)
        if self.publication.delete(object_id):
            logger.info(f"Removed {object_id} from the publication queue")
        self.callback.notify(object_id, SyncType.DELETED)
        logger.info(f"Deleted {object_id}", extra={'details': {'object_id': object_id, 'blobs_removed': removed}})
