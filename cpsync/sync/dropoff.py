"""
Processing of drop-off list items.

Authors upload a file to a drop-off library, fill in its metadata and mark it
complete. The processor then routes it to the library selected by the
location mapping (classification + source): a first submission creates a new
document there and mints its object id, a resubmission replaces the content
of the registered document. The drop-off item is marked processed or failed
and its author is informed either way.
"""

from typing import Any, Dict, Optional

from .config import SyncConfig, WebhookListConfig
from .error_tracker import DataIntegrityError, ErrorTracker, SyncException
from .graph_client import RepositoryClient
from .identity import IdentityResolver
from .logging_manager import get_logger
from .mailer import AuthorNotifier
from .metadata import DocumentMetadata, MetadataMapper
from .minter import ObjectIdMinter
from .models import ObjectIdentifiers

logger = get_logger(__name__)


def _is_set(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes")
    return bool(value)


def _author_email(list_item: Dict[str, Any]) -> Optional[str]:
    return (((list_item.get("createdBy") or {}).get("user") or {}).get("email")) or None


class DropOffProcessor:
    def __init__(self, repository: RepositoryClient, config: SyncConfig, resolver: IdentityResolver,
                 minter: ObjectIdMinter, mapper: MetadataMapper, notifier: AuthorNotifier,
                 error_tracker: Optional[ErrorTracker] = None):
        self.repository = repository
        self.config = config
        self.resolver = resolver
        self.minter = minter
        self.mapper = mapper
        self.notifier = notifier
        self.error_tracker = error_tracker or ErrorTracker()

    def process(self, dropoff: WebhookListConfig, list_item_id: str) -> Optional[bool]:
        """
        Process one drop-off item.

        Returns None when the item is not ready or already processed, True when
        it was processed and False when processing failed. Failures to read the
        drop-off item itself propagate.
        """
        list_item = self.repository.get_list_item(dropoff.site_id, dropoff.list_id, list_item_id)
        fields = list_item.get("fields") or {}
        if not _is_set(fields.get(dropoff.completeness_column)) or fields.get(dropoff.status_column) == dropoff.processed_status:
            logger.debug("Drop-off item not ready", extra={'details': {'list_item_id': list_item_id}})
            return None

        author = _author_email(list_item)
        file_name = (list_item.get("driveItem") or {}).get("name") or list_item_id
        try:
            object_id = self._submit(dropoff, list_item_id, fields)
        except Exception as e:
            self.error_tracker.report_exception(e, source_id=list_item_id)
            logger.error(
                f"Failed to process drop-off item {list_item_id}: {e}",
                extra={'details': {'list_id': dropoff.list_id, 'list_item_id': list_item_id}},
            )
            self._set_status(dropoff, list_item_id, {dropoff.status_column: dropoff.error_status})
            self.notifier.notify(
                author,
                f"Drop-off file could not be processed: {file_name}",
                f"Processing the file \"{file_name}\" failed: {e}. Please check its metadata and submit it again.",
            )
            return False

        self._set_status(dropoff, list_item_id, {
            dropoff.status_column: dropoff.processed_status,
            dropoff.object_id_column: object_id,
        })
        self.notifier.notify(
            author,
            f"Drop-off file processed: {object_id}",
            f"The file \"{file_name}\" was processed and is now available at its target location.",
        )
        return True

    def _set_status(self, dropoff: WebhookListConfig, list_item_id: str, values: Dict[str, Any]) -> None:
        try:
            self.repository.update_list_item_fields(dropoff.site_id, dropoff.list_id, list_item_id, values)
        except SyncException as e:
            logger.error(f"Failed to update drop-off status of {list_item_id}: {e.message}", extra={'details': values})

    def _submit(self, dropoff: WebhookListConfig, list_item_id: str, fields: Dict[str, Any]) -> str:
        source_ids = self.resolver.resolve(
            ObjectIdentifiers(site_id=dropoff.site_id, list_id=dropoff.list_id, list_item_id=list_item_id)
        )
        drive_item = self.repository.get_drive_item(source_ids.drive_id, source_ids.drive_item_id)
        metadata = self.mapper.read(source_ids, drive_item)

        missing = self.mapper.missing_required(metadata)
        if missing:
            raise DataIntegrityError(f"Required fields are empty: {', '.join(missing)}", source_id=list_item_id)

        classification = fields.get(dropoff.classification_column) or ""
        source = fields.get(dropoff.source_column) or ""
        location = self.config.find_location(classification, source)
        if location is None:
            raise DataIntegrityError(
                f"No location mapping for classification '{classification}' and source '{source}'",
                source_id=list_item_id,
                recovery_suggestion="Add the combination to location_mapping",
            )

        content = self.repository.download_content(source_ids.drive_id, source_ids.drive_item_id)
        existing_object_id = fields.get(dropoff.object_id_column)
        if existing_object_id:
            return self._update_existing(str(existing_object_id), content, metadata)
        return self._create_new(location, content, metadata)

    def _update_existing(self, object_id: str, content: bytes, metadata: DocumentMetadata) -> str:
        target = self.resolver.resolve(ObjectIdentifiers(object_id=object_id))
        self.repository.replace_content(target.drive_id, target.drive_item_id, content)
        self.repository.update_list_item_fields(
            target.site_id, target.list_id, target.list_item_id, self.mapper.to_repository_fields(metadata)
        )
        logger.info(f"Updated {target.object_id} from drop-off", extra={'details': target.to_dict()})
        return target.object_id

    def _create_new(self, location, content: bytes, metadata: DocumentMetadata) -> str:
        drive_id = self.repository.get_drive_id(location.site_id, location.list_id)
        created = self.repository.upload_content(drive_id, metadata.file_name, content, location.folder_name)
        new_ids = ObjectIdentifiers(
            site_id=location.site_id,
            list_id=location.list_id,
            drive_id=drive_id,
            drive_item_id=created["id"],
            external_reference_list_id=location.external_reference_list_id,
        )
        try:
            object_id = self.minter.mint(new_ids)
        except Exception:
            self._rollback_upload(drive_id, created["id"])
            raise

        target = self.resolver.resolve(ObjectIdentifiers(object_id=object_id))
        self.repository.update_list_item_fields(
            target.site_id, target.list_id, target.list_item_id, self.mapper.to_repository_fields(metadata)
        )
        logger.info(f"Created {object_id} from drop-off", extra={'details': target.to_dict()})
        return object_id

    def _rollback_upload(self, drive_id: str, drive_item_id: str) -> None:
        try:
            self.repository.delete_drive_item(drive_id, drive_item_id)
            logger.warning("Rolled back upload after minting failed", extra={'details': {'drive_id': drive_id, 'drive_item_id': drive_item_id}})
        except SyncException as e:
            logger.error(
                f"Rollback of uploaded drive item {drive_item_id} failed: {e.message}",
                extra={'details': {'drive_id': drive_id, 'drive_item_id': drive_item_id}},
            )
