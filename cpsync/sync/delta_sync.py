"""
Delta synchronization of monitored drives.

A run of one feed type (new, updated or deleted) goes through:

1. Fetching: page through every monitored drive's delta feed from its stored
   token (or from the run's start timestamp on a first run), retrying
   transient failures. Any remaining failure aborts the run with
   SourceFetchError and leaves the checkpoint untouched.
2. Classifying: split the deduplicated items into new, updated and deleted.
3. Processing: export (or delete) each item of the run's feed type.
   Failures are isolated per item and reported in the response.
4. Checkpointing: persist the final token map and, for new/updated, the run
   start timestamp. A cancelled run does not advance the checkpoint.
"""

import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from .error_tracker import (
    ErrorSeverity, ErrorTracker, SourceFetchError, SyncAlreadyRunningError,
)
from .exporter import DocumentExporter
from .graph_client import RepositoryClient
from .identity import IdentityResolver
from .logging_manager import get_logger
from .models import ChangeFeedItem, ExportOutcome, ExportResponse, SyncType
from .resilience import RetryPolicy, with_retry
from .state_manager import StateManager
from .table_store import IdentityTable

logger = get_logger(__name__)

# One run per feed type at a time within this process
_FEED_LOCKS = {sync_type: threading.Lock() for sync_type in SyncType}

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def classify_items(items: Iterable[ChangeFeedItem], since: datetime) -> Dict[SyncType, List[ChangeFeedItem]]:
    """
    Split change feed items into the three feeds.

    Folders are dropped. New: not deleted and created at or after ``since``,
    ordered by creation. Updated: not deleted and created before ``since``,
    ordered by modification. Deleted: deleted, ordered by modification.
    Items without a creation time are neither new nor updated.
    """
    new: List[ChangeFeedItem] = []
    updated: List[ChangeFeedItem] = []
    deleted: List[ChangeFeedItem] = []
    for item in items:
        if item.is_folder:
            continue
        if item.is_deleted:
            deleted.append(item)
        elif item.created_at is None:
            continue
        elif item.created_at >= since:
            new.append(item)
        else:
            updated.append(item)

    new.sort(key=lambda i: i.created_at)
    updated.sort(key=lambda i: i.modified_at or _EPOCH)
    deleted.sort(key=lambda i: i.modified_at or _EPOCH)
    return {SyncType.NEW: new, SyncType.UPDATED: updated, SyncType.DELETED: deleted}


def _timestamp_token(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class DeltaSyncEngine:
    def __init__(self, repository: RepositoryClient, identities: IdentityTable, resolver: IdentityResolver,
                 exporter: DocumentExporter, state: StateManager, containers: Optional[List[str]] = None,
                 include_known_drives: bool = True, error_tracker: Optional[ErrorTracker] = None,
                 retry_policy: Optional[RetryPolicy] = None, max_workers: int = 1,
                 clock: Optional[Callable[[], datetime]] = None):
        self.repository = repository
        self.identities = identities
        self.resolver = resolver
        self.exporter = exporter
        self.state = state
        self.containers = list(containers or [])
        self.include_known_drives = include_known_drives
        self.error_tracker = error_tracker or ErrorTracker()
        self.retry_policy = retry_policy or RetryPolicy.for_transport()
        self.max_workers = max(1, max_workers)
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def monitored_containers(self) -> List[str]:
        containers = list(self.containers)
        if self.include_known_drives:
            containers += [d for d in self.identities.known_drive_ids() if d not in containers]
        return containers

    # -- fetching ----------------------------------------------------------

    def _fetch_container(self, container_id: str, token: str) -> Tuple[List[ChangeFeedItem], str]:
        items: List[ChangeFeedItem] = []
        while True:
            page = with_retry(
                lambda: self.repository.get_change_feed_page(container_id, token),
                policy=self.retry_policy,
            )
            items.extend(page.items)
            token = page.next_token or token
            if not page.has_more:
                return items, token

    def fetch(self, token_map: Dict[str, str], since: datetime) -> Tuple[List[ChangeFeedItem], Dict[str, str]]:
        """All changes since the stored tokens, deduplicated by (container, id); later pages win."""
        containers = self.monitored_containers()
        if not containers:
            raise SourceFetchError(
                "Error while getting new documents: no drives to monitor",
                recovery_suggestion="Configure at least one container id",
            )
        by_key: Dict[Tuple[str, str], ChangeFeedItem] = {}
        new_tokens: Dict[str, str] = {}
        for container_id in containers:
            items, token = self._fetch_container(container_id, token_map.get(container_id) or _timestamp_token(since))
            for item in items:
                by_key[item.key] = item
            new_tokens[container_id] = token
        return list(by_key.values()), new_tokens

    # -- processing --------------------------------------------------------

    def process_item(self, item: ChangeFeedItem, sync_type: SyncType) -> ExportOutcome:
        if sync_type == SyncType.DELETED:
            ids = self.resolver.resolve(item.identifiers, allow_remote=False)
            self.exporter.delete(ids)
            return ExportOutcome.EXPORTED
        ids = self.resolver.resolve(item.identifiers)
        return self.exporter.export(ids, sync_type)

    def _record(self, response: ExportResponse, item: ChangeFeedItem, outcome: Optional[ExportOutcome],
                error: Optional[BaseException]) -> None:
        if error is not None:
            response.failed_items.append(item.id)
            self.error_tracker.report_exception(error, source_id=item.id)
            logger.error(
                f"{response.sync_type.value} synchronisation failed for {item.id}: {error}",
                extra={'details': {'drive_id': item.container_id, 'drive_item_id': item.id, 'name': item.name}},
            )
        elif outcome == ExportOutcome.EXPORTED:
            response.succeeded += 1
        elif outcome == ExportOutcome.DEFERRED:
            response.deferred += 1
        else:
            response.skipped += 1

    def _process_sequential(self, items: List[ChangeFeedItem], response: ExportResponse,
                            cancel_event: Optional[threading.Event]) -> None:
        for item in items:
            if cancel_event is not None and cancel_event.is_set():
                response.cancelled = True
                return
            try:
                outcome = self.process_item(item, response.sync_type)
            except Exception as e:
                self._record(response, item, None, e)
                continue
            self._record(response, item, outcome, None)

    def _process_parallel(self, items: List[ChangeFeedItem], response: ExportResponse,
                          cancel_event: Optional[threading.Event]) -> None:
        def run_one(item: ChangeFeedItem) -> Optional[ExportOutcome]:
            if cancel_event is not None and cancel_event.is_set():
                return None
            return self.process_item(item, response.sync_type)

        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            futures = {executor.submit(run_one, item): item for item in items}
            for future in as_completed(futures):
                item = futures[future]
                try:
                    outcome = future.result()
                except Exception as e:
                    self._record(response, item, None, e)
                    continue
                if outcome is None:
                    response.cancelled = True
                    continue
                self._record(response, item, outcome, None)

    # -- run ---------------------------------------------------------------

    def run(self, sync_type: SyncType, cancel_event: Optional[threading.Event] = None) -> ExportResponse:
        """
        Synchronise one feed type.

        Raises:
            SyncAlreadyRunningError: a run of the same feed is in progress
            SourceFetchError: the change feed could not be read
        """
        lock = _FEED_LOCKS[sync_type]
        if not lock.acquire(blocking=False):
            raise SyncAlreadyRunningError(f"{sync_type.value} synchronisation is already running", source_id=sync_type.value)
        try:
            return self._run_locked(sync_type, cancel_event)
        finally:
            lock.release()

    def _run_locked(self, sync_type: SyncType, cancel_event: Optional[threading.Event]) -> ExportResponse:
        started_at = self.clock()
        checkpoint = self.state.read_checkpoint(sync_type)
        since = checkpoint.since(started_at)
        self.state.set_running(sync_type, True)
        logger.info(f"Starting {sync_type.value} synchronisation", extra={'details': {'since': since.isoformat()}})

        try:
            try:
                items, token_map = self.fetch(checkpoint.token_map, since)
            except SourceFetchError as e:
                self.error_tracker.report_exception(e, severity=ErrorSeverity.CRITICAL)
                self.state.record_run(sync_type, "failed", {"error": e.message})
                raise
            except Exception as e:
                self.error_tracker.report(
                    "Error while getting new documents", severity=ErrorSeverity.CRITICAL,
                    details={"exception": str(e), "sync_type": sync_type.value},
                )
                self.state.record_run(sync_type, "failed", {"error": str(e)})
                raise SourceFetchError(
                    f"Error while getting new documents: {e}", source_id=sync_type.value,
                    recovery_suggestion="The checkpoint was not advanced; the next run retries from the same tokens",
                ) from e

            selected = classify_items(items, since)[sync_type]
            response = ExportResponse(sync_type=sync_type, token_map=token_map, items=len(selected))
            logger.info(f"Found {len(selected)} {sync_type.value} items", extra={'details': {'fetched': len(items)}})

            if self.max_workers > 1:
                self._process_parallel(selected, response, cancel_event)
            else:
                self._process_sequential(selected, response, cancel_event)

            if response.cancelled:
                logger.warning(f"{sync_type.value} synchronisation cancelled; checkpoint not advanced")
                self.state.record_run(sync_type, "cancelled", response.to_dict())
                return response

            self.state.write_checkpoint(sync_type, token_map, started_at)
            self.state.record_run(sync_type, "completed", response.to_dict())
            logger.info(
                f"Finished {sync_type.value} synchronisation: {response.succeeded} exported, "
                f"{response.deferred} deferred, {response.skipped} skipped, {len(response.failed_items)} failed",
                extra={'details': response.to_dict()},
            )
            return response
        finally:
            self.state.set_running(sync_type, False)
