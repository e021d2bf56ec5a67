"""
Broker orchestration.

Wires every component from a ``SyncConfig`` and the environment's secrets
and exposes the operations the scheduler, CLI and HTTP surface trigger:

- delta synchronisation of the new, updated and deleted feeds
- the daily publication drain
- webhook intake, subscription management and notification processing
- object id minting and identity resolution
"""

import threading
import time
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from ..config import (
    DEFAULT_ENVIRONMENT, GraphCredentials, get_blob_connection_string, get_callback_access_token,
)
from .callback import CallbackSink
from .config import SyncConfig
from .content_store import AzureBlobContentStore, ContentStore, LocalContentStore
from .delta_sync import DeltaSyncEngine
from .dropoff import DropOffProcessor
from .error_tracker import ConfigurationError, ErrorSeverity, ErrorTracker, SyncAlreadyRunningError, SyncException
from .exporter import DocumentExporter
from .external_monitor import build_report, get_monitor_from_config
from .graph_client import GraphRepositoryClient, MsalTokenProvider, RepositoryClient
from .identity import IdentityResolver
from .logging_manager import LoggingManager
from .mailer import AuthorNotifier
from .metadata import MetadataMapper
from .minter import ObjectIdMinter, SequenceCounter
from .models import (
    ExportResponse, NotificationProcessResult, ObjectIdentifiers, PublicationDrainResult, SyncType,
    WebhookNotification, WebhookSubscriptionState,
)
from .publication import PublicationQueue
from .resilience import CircuitBreaker, RetryPolicy
from .state_manager import StateManager
from .table_store import (
    IdentityTable, NotificationQueue, PublicationTable, SettingsTable, SubscriptionTable, TableStore,
)
from .webhook import WebhookPipeline

logger = LoggingManager.get_logger(__name__)


@dataclass
class SyncRunResult:
    """Result of one feed run."""
    sync_type: str
    status: str  # success, failed, skipped, cancelled
    processing_time: float
    response: Optional[ExportResponse] = None
    error_message: Optional[str] = None


@dataclass
class SyncSummary:
    """Summary of a synchronisation over one or more feeds."""
    total_runs: int
    successful_runs: int
    failed_runs: int
    skipped_runs: int
    total_items: int
    total_exported: int
    total_deferred: int
    total_skipped_items: int
    total_failed_items: int
    total_processing_time: float
    errors: List[Dict[str, Any]]
    results: List[SyncRunResult] = field(default_factory=list)
    circuit_snapshot: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['results'] = [
            {**asdict(r), 'response': r.response.to_dict() if r.response else None}
            for r in self.results
        ]
        return data


class SyncOrchestrator:
    """
    Composition root of the broker.

    The repository client and content store can be injected; otherwise they
    are built from the environment's Graph credentials and blob connection
    string (local filesystem storage when no connection string is set).
    """

    def __init__(self, config: SyncConfig, environment: str = DEFAULT_ENVIRONMENT,
                 repository: Optional[RepositoryClient] = None,
                 content_store: Optional[ContentStore] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        self.config = config
        self.environment = environment
        self.clock = clock or (lambda: datetime.now(timezone.utc))

        self.logging_manager = LoggingManager()
        self.logging_manager.configure(log_level=config.log_level, log_file=config.log_file, environment=environment)
        self.error_tracker = ErrorTracker()
        self.logger = self.logging_manager.get_logger(__name__)

        try:
            self._init_components(repository, content_store)
        except SyncException:
            raise
        except Exception as e:
            raise ConfigurationError(f"Failed to initialize broker components: {e}") from e

        self.monitor = get_monitor_from_config(config)
        self.logger.info(f"Broker initialized for environment: {environment}", extra={'details': {'config_name': config.name}})

    def _init_components(self, repository: Optional[RepositoryClient], content_store: Optional[ContentStore]):
        try:
            # Tables
            self.table_store = TableStore(storage_directory=self.config.storage_directory)
            self.identities = IdentityTable(self.table_store)
            self.settings = SettingsTable(self.table_store)
            self.publication_table = PublicationTable(self.table_store)
            self.subscriptions = SubscriptionTable(self.table_store)
            self.notification_queue = NotificationQueue(self.table_store, self.config.webhooks.queue_name)

            # Resilience + state
            self.retry_policy = RetryPolicy.for_transport(self.config.retry_attempts)
            self.circuit_breaker = CircuitBreaker(failure_threshold=3, reset_timeout_seconds=60.0)
            self.state_manager = StateManager(self.settings, state_dir=self.config.storage_directory)

            # External services
            if repository is None:
                credentials = GraphCredentials.from_environment(self.environment)
                repository = GraphRepositoryClient(
                    MsalTokenProvider(credentials),
                    timeout=self.config.request_timeout,
                    retry_policy=self.retry_policy,
                    circuit_breaker=self.circuit_breaker,
                )
            self.repository = repository

            if content_store is None:
                connection_string = get_blob_connection_string(self.environment)
                if connection_string:
                    content_store = AzureBlobContentStore(connection_string)
                else:
                    content_store = LocalContentStore(self.config.content_directory)
            self.content_store = content_store

            self.callback = CallbackSink(
                self.config.callback_url,
                access_token=get_callback_access_token(self.environment),
                timeout=self.config.request_timeout,
            )

            # Identity
            self.resolver = IdentityResolver(self.repository, self.identities, self.config.location_mapping)
            self.counter = SequenceCounter(self.settings, initial_value=self.config.initial_sequence)
            self.minter = ObjectIdMinter(
                self.resolver, self.identities, self.counter,
                prefix=self.config.object_id_prefix, clock=self.clock,
            )

            # Export
            self.mapper = MetadataMapper(self.config.metadata_mapping)
            self.exporter = DocumentExporter(
                self.repository, self.content_store, self.mapper, self.publication_table, self.callback,
                content_container=self.config.content_container,
                metadata_container=self.config.metadata_container,
                clock=self.clock,
            )
            self.engine = DeltaSyncEngine(
                self.repository, self.identities, self.resolver, self.exporter, self.state_manager,
                containers=self.config.containers,
                include_known_drives=self.config.include_known_drives,
                error_tracker=self.error_tracker,
                retry_policy=self.retry_policy,
                max_workers=self.config.max_workers,
                clock=self.clock,
            )
            self.publication_queue = PublicationQueue(self.publication_table, self.error_tracker)

            # Drop-off webhooks
            self.notifier = AuthorNotifier(self.repository, self.config.mail_sender)
            self.dropoff_processor = DropOffProcessor(
                self.repository, self.config, self.resolver, self.minter, self.mapper, self.notifier,
                error_tracker=self.error_tracker,
            )
            self.webhook_pipeline = WebhookPipeline(
                self.repository, self.config.webhooks, self.subscriptions, self.notification_queue,
                self.dropoff_processor, error_tracker=self.error_tracker,
                retry_policy=self.retry_policy, clock=self.clock,
            )

            self.logger.info("All broker components initialized successfully")

        except Exception as e:
            self.error_tracker.report("Failed to initialize broker components", severity=ErrorSeverity.CRITICAL, details={"exception": str(e)})
            self.logger.error(f"Failed to initialize broker components: {e}", extra={'details': {'exception': str(e)}})
            raise

    # -- delta synchronisation ---------------------------------------------

    def run_feed(self, sync_type: SyncType, cancel_event: Optional[threading.Event] = None) -> ExportResponse:
        """Run one feed; errors propagate (used by the HTTP export triggers)."""
        return self.engine.run(sync_type, cancel_event=cancel_event)

    def _run_one(self, sync_type: SyncType, cancel_event: Optional[threading.Event]) -> SyncRunResult:
        started = time.time()
        try:
            response = self.engine.run(sync_type, cancel_event=cancel_event)
        except SyncAlreadyRunningError as e:
            self.logger.warning(e.message)
            return SyncRunResult(sync_type.value, 'skipped', time.time() - started, error_message=e.message)
        except SyncException as e:
            self.logger.error(f"{sync_type.value} synchronisation failed: {e.message}")
            return SyncRunResult(sync_type.value, 'failed', time.time() - started, error_message=e.message)
        status = 'cancelled' if response.cancelled else 'success'
        return SyncRunResult(sync_type.value, status, time.time() - started, response=response)

    def run_sync(self, sync_types: Optional[List[SyncType]] = None,
                 cancel_event: Optional[threading.Event] = None) -> SyncSummary:
        """
        Run the given feeds one after the other (all three by default).

        A failing feed does not prevent the others from running.
        """
        sync_types = sync_types or [SyncType.NEW, SyncType.UPDATED, SyncType.DELETED]
        started = time.time()
        self.logger.info(f"Starting synchronisation of {', '.join(t.value for t in sync_types)}")

        results = [self._run_one(sync_type, cancel_event) for sync_type in sync_types]
        summary = self._generate_summary(results, time.time() - started)

        if self.monitor:
            self.monitor.send_report(build_report("sync", summary.to_dict(), self.error_tracker, self.environment))

        self.logger.info(
            f"Synchronisation finished: {summary.successful_runs}/{summary.total_runs} feeds succeeded",
            extra={'details': {'exported': summary.total_exported, 'failed_items': summary.total_failed_items}},
        )
        return summary

    def _generate_summary(self, results: List[SyncRunResult], processing_time: float) -> SyncSummary:
        responses = [r.response for r in results if r.response]
        return SyncSummary(
            total_runs=len(results),
            successful_runs=sum(1 for r in results if r.status == 'success'),
            failed_runs=sum(1 for r in results if r.status == 'failed'),
            skipped_runs=sum(1 for r in results if r.status == 'skipped'),
            total_items=sum(r.items for r in responses),
            total_exported=sum(r.succeeded for r in responses),
            total_deferred=sum(r.deferred for r in responses),
            total_skipped_items=sum(r.skipped for r in responses),
            total_failed_items=sum(len(r.failed_items) for r in responses),
            total_processing_time=processing_time,
            errors=[e.to_dict() for e in self.error_tracker.get_errors()],
            results=results,
            circuit_snapshot=self.circuit_breaker.get_state_snapshot() or None,
        )

    # -- publication -------------------------------------------------------

    def drain_publication(self, today: Optional[date] = None) -> PublicationDrainResult:
        result = self.publication_queue.drain(self.exporter, self.resolver, today=today)
        if self.monitor:
            self.monitor.send_report(build_report(
                "publication", {'succeeded': result.succeeded, 'failed': result.failed},
                self.error_tracker, self.environment,
            ))
        return result

    # -- identities --------------------------------------------------------

    def mint(self, ids: ObjectIdentifiers) -> str:
        return self.minter.mint(ids)

    def resolve(self, ids: ObjectIdentifiers) -> ObjectIdentifiers:
        return self.resolver.resolve(ids)

    # -- webhooks ----------------------------------------------------------

    def handle_webhook(self, validation_token: Optional[str], payload: Optional[Dict[str, Any]]) -> Optional[str]:
        return self.webhook_pipeline.handle_inbound(validation_token, payload)

    def subscribe(self, list_id: Optional[str] = None) -> List[WebhookSubscriptionState]:
        """Create subscriptions for every watched list, or only ``list_id``."""
        lists = self.config.webhooks.lists
        if list_id:
            lists = [l for l in lists if l.list_id.lower() == list_id.lower() or l.id == list_id]
            if not lists:
                raise ConfigurationError(f"List {list_id} is not configured under webhooks.lists", source_id=list_id)
        return [self.webhook_pipeline.create_subscription(l) for l in lists]

    def process_notifications(self, max_messages: int = 16) -> Dict[str, int]:
        stats = self.webhook_pipeline.process_queue(max_messages)
        if self.monitor and stats['received']:
            self.monitor.send_report(build_report("notifications", stats, self.error_tracker, self.environment))
        return stats

    def process_notification_payload(self, payload: Dict[str, Any]) -> List[NotificationProcessResult]:
        """Process a batch directly, bypassing the queue."""
        return [
            self.webhook_pipeline.process_with_resync(WebhookNotification.from_dict(entry))
            for entry in payload.get("value", [])
        ]

    # -- status ------------------------------------------------------------

    def get_status(self) -> Dict[str, Any]:
        return {
            'environment': self.environment,
            'config_name': self.config.name,
            'checkpoints': self.state_manager.checkpoint_summary(),
            'registered_documents': self.identities.count(),
            'sequence': self.counter.current(),
            'publication_queue': len(self.publication_table.list_all()),
            'notification_queue': len(self.notification_queue),
            'monitored_containers': self.engine.monitored_containers(),
            'errors': self.error_tracker.generate_report(),
        }


def load_orchestrator(config_path: str, environment: str = DEFAULT_ENVIRONMENT) -> SyncOrchestrator:
    config = SyncConfig.from_yaml(config_path)
    logger.info(f"Loaded broker configuration: {config.name}")
    return SyncOrchestrator(config, environment)
