"""
Identity resolution across the three identifier spaces.

A document is known by its repository coordinates (site, list, list item),
its storage coordinates (drive, drive item) and its public object id. Given
any partial set, ``IdentityResolver.resolve`` fills in what it can:

1. storage pair from the repository triple (remote)
2. repository triple from the storage pair's sharepointIds (remote)
3. stored identity record, by object id, storage pair or natural key
4. external reference list id from the location mapping

Resolution only ever fills empty fields, so calling it again on its own
result is a no-op.
"""

from typing import List, Optional

from .config import LocationMapping
from .error_tracker import IdentityRecordNotFoundError
from .graph_client import RepositoryClient
from .logging_manager import get_logger
from .models import ObjectIdentifiers
from .table_store import IdentityTable

logger = get_logger(__name__)


class IdentityResolver:
    def __init__(self, repository: RepositoryClient, identities: IdentityTable,
                 location_mapping: Optional[List[LocationMapping]] = None):
        self.repository = repository
        self.identities = identities
        self.location_mapping = location_mapping or []

    def resolve(self, ids: ObjectIdentifiers, allow_remote: bool = True) -> ObjectIdentifiers:
        """
        Fill missing coordinates of ``ids``.

        Args:
            ids: Partial identifiers
            allow_remote: Query the repository for coordinates. Disabled for
                deleted items whose remote coordinates no longer exist.

        Raises:
            ContainerNotFoundError / ItemNotFoundError: a remote coordinate does not exist
            IdentityRecordNotFoundError: ``ids.object_id`` is set but not registered
        """
        resolved = ids

        if allow_remote:
            resolved = self._resolve_storage_pair(resolved)
            resolved = self._resolve_repository_triple(resolved)

        resolved = self._merge_stored_record(resolved)
        resolved = self._resolve_external_reference_list(resolved)

        if resolved != ids:
            logger.debug("Resolved identifiers", extra={'details': {'before': ids.to_dict(), 'after': resolved.to_dict()}})
        return resolved

    def _resolve_storage_pair(self, ids: ObjectIdentifiers) -> ObjectIdentifiers:
        if ids.has_storage_pair or not (ids.site_id and ids.list_id):
            return ids
        if not ids.drive_id:
            ids = ids.merge({"drive_id": self.repository.get_drive_id(ids.site_id, ids.list_id)})
        if not ids.drive_item_id and ids.list_item_id:
            ids = ids.merge({
                "drive_item_id": self.repository.get_drive_item_id(ids.site_id, ids.list_id, ids.list_item_id)
            })
        return ids

    def _resolve_repository_triple(self, ids: ObjectIdentifiers) -> ObjectIdentifiers:
        if ids.has_repository_triple or not ids.has_storage_pair:
            return ids
        return ids.merge(self.repository.get_repository_ids(ids.drive_id, ids.drive_item_id))

    def _merge_stored_record(self, ids: ObjectIdentifiers) -> ObjectIdentifiers:
        if ids.object_id:
            if ids.has_repository_triple and ids.has_storage_pair and ids.external_reference_list_id:
                return ids
            record = self.identities.get(ids.object_id)
            if record is None:
                raise IdentityRecordNotFoundError(
                    f"No identity record for object id {ids.object_id}", source_id=ids.object_id
                )
            return ids.merge(record)

        # Not registered yet is a normal state for documents seen for the first time.
        record = self.identities.find_by_storage_pair(*ids.storage_pair) \
            or self.identities.find_by_natural_key(ids.natural_key)
        return ids.merge(record) if record else ids

    def _resolve_external_reference_list(self, ids: ObjectIdentifiers) -> ObjectIdentifiers:
        if ids.external_reference_list_id or not (ids.site_id and ids.list_id):
            return ids
        for mapping in self.location_mapping:
            if mapping.site_id == ids.site_id and mapping.list_id == ids.list_id and mapping.external_reference_list_id:
                return ids.merge({"external_reference_list_id": mapping.external_reference_list_id})
        return ids
