"""
Deferred publication.

Documents exported before their publication date wait in the publication
queue. A daily drain exports every entry that has come due and removes it
once the export succeeded; failed entries stay for the next drain.
"""

from datetime import date, datetime, timezone
from typing import List, Optional

from .error_tracker import ErrorSeverity, ErrorTracker
from .exporter import DocumentExporter
from .identity import IdentityResolver
from .logging_manager import get_logger
from .models import (
    ExportOutcome, ObjectIdentifiers, PublicationDrainResult, PublicationQueueEntry, SyncType,
)
from .table_store import PublicationTable

logger = get_logger(__name__)


class PublicationQueue:
    def __init__(self, table: PublicationTable, error_tracker: Optional[ErrorTracker] = None):
        self.table = table
        self.error_tracker = error_tracker or ErrorTracker()

    def enqueue(self, object_id: str, publication_date: datetime) -> None:
        self.table.upsert(PublicationQueueEntry(object_id, publication_date))

    def remove_if_exists(self, object_id: str) -> bool:
        return self.table.delete(object_id)

    def due_entries(self, today: date) -> List[PublicationQueueEntry]:
        return self.table.list_due(today)

    def drain(self, exporter: DocumentExporter, resolver: IdentityResolver,
              today: Optional[date] = None) -> PublicationDrainResult:
        today = today or datetime.now(timezone.utc).date()
        result = PublicationDrainResult()
        entries = self.due_entries(today)
        logger.info(f"Publication drain: {len(entries)} entries due", extra={'details': {'today': today.isoformat()}})

        for entry in entries:
            try:
                ids = resolver.resolve(ObjectIdentifiers(object_id=entry.object_id))
                outcome = exporter.export(ids, SyncType.NEW, today=today)
            except Exception as e:
                self.error_tracker.report_exception(e, source_id=entry.object_id)
                logger.error(f"Failed to publish {entry.object_id}: {e}", extra={'details': {'object_id': entry.object_id}})
                result.failed.append(entry.object_id)
                continue

            if outcome == ExportOutcome.EXPORTED:
                self.table.delete(entry.object_id)
                result.succeeded.append(entry.object_id)
            else:
                self.error_tracker.report(
                    f"Publication of {entry.object_id} returned {outcome.value}",
                    source_id=entry.object_id,
                    severity=ErrorSeverity.WARNING,
                )

        logger.info(
            f"Publication drain finished: {len(result.succeeded)} published, {len(result.failed)} failed",
            extra={'details': {'failed': result.failed}},
        )
        return result
