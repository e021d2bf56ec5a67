"""
SharePoint list webhook pipeline.

Inbound notification batches are queued as-is. Processing a notification
reads the list's changes since the stored change token, keeps the last
change per item, ignores deleted items and hands the rest to the drop-off
processor. The new change token is saved only after every item was handled.
"""

import json
import threading
from collections import OrderedDict
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from .config import WebhookConfig, WebhookListConfig
from .dropoff import DropOffProcessor
from .error_tracker import ConfigurationError, ErrorTracker, InvalidChangeTokenError, SyncException
from .graph_client import RepositoryClient
from .logging_manager import get_logger
from .models import (
    ChangeType, ListItemChange, NotificationProcessResult, WebhookNotification,
    WebhookSubscriptionState, parse_datetime,
)
from .resilience import RetryPolicy, with_retry
from .table_store import NotificationQueue, SubscriptionTable

logger = get_logger(__name__)


class WebhookPipeline:
    def __init__(self, repository: RepositoryClient, config: WebhookConfig, subscriptions: SubscriptionTable,
                 queue: NotificationQueue, processor: DropOffProcessor,
                 error_tracker: Optional[ErrorTracker] = None, retry_policy: Optional[RetryPolicy] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        self.repository = repository
        self.config = config
        self.subscriptions = subscriptions
        self.queue = queue
        self.processor = processor
        self.error_tracker = error_tracker or ErrorTracker()
        self.retry_policy = retry_policy or RetryPolicy.for_transport()
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        # The change token cursor is read and written per notification
        self._lock = threading.Lock()

    def find_list(self, resource: str) -> Optional[WebhookListConfig]:
        """The watched list a notification's resource (list id) refers to."""
        for webhook_list in self.config.lists:
            if webhook_list.list_id.lower() == (resource or "").lower():
                return webhook_list
        return None

    # -- subscriptions -----------------------------------------------------

    def create_subscription(self, list_config: WebhookListConfig) -> WebhookSubscriptionState:
        if not self.config.notification_url:
            raise ConfigurationError(
                "No notification URL configured",
                source_id=list_config.id,
                recovery_suggestion="Set webhooks.notification_url",
            )
        expiration = self.clock() + timedelta(days=self.config.validity_days)
        response = self.repository.create_subscription(
            list_config.site_url, list_config.list_id, self.config.notification_url,
            expiration, self.config.client_state,
        )
        previous = self.subscriptions.get(list_config.id)
        state = WebhookSubscriptionState(
            feed=list_config.id,
            container_id=list_config.list_id,
            subscription_id=response.get("id", ""),
            expiration=parse_datetime(response.get("expirationDateTime")) or expiration,
            last_change_token=previous.last_change_token if previous else None,
        )
        self.subscriptions.save(state)
        logger.info(
            f"Created subscription for {list_config.id}",
            extra={'details': {'subscription_id': state.subscription_id, 'expiration': state.expiration.isoformat()}},
        )
        return state

    def renew_if_expiring(self, list_config: WebhookListConfig, notification: WebhookNotification) -> bool:
        """Extend the subscription when it expires within the renewal horizon."""
        state = self.subscriptions.get(list_config.id)
        expiration = notification.expiration or (state.expiration if state else None)
        now = self.clock()
        if expiration is not None and expiration - now > timedelta(days=self.config.renewal_horizon_days):
            return False

        new_expiration = now + timedelta(days=self.config.validity_days)
        try:
            self.repository.renew_subscription(
                list_config.site_url, list_config.list_id, notification.subscription_id, new_expiration
            )
        except SyncException as e:
            self.error_tracker.report_exception(e, source_id=notification.subscription_id)
            logger.error(f"Failed to renew subscription {notification.subscription_id}: {e.message}")
            return False

        state = state or WebhookSubscriptionState(feed=list_config.id, container_id=list_config.list_id)
        state.subscription_id = notification.subscription_id
        state.expiration = new_expiration
        self.subscriptions.save(state)
        logger.info(
            f"Renewed subscription {notification.subscription_id}",
            extra={'details': {'feed': list_config.id, 'expiration': new_expiration.isoformat()}},
        )
        return True

    # -- intake ------------------------------------------------------------

    def handle_inbound(self, validation_token: Optional[str], payload: Optional[Dict[str, Any]]) -> Optional[str]:
        """
        Accept a webhook request.

        Returns the validation token when SharePoint validates the endpoint,
        otherwise queues the batch and returns None.
        """
        if validation_token:
            logger.info("Answering webhook validation request")
            return validation_token
        if not payload or not payload.get("value"):
            logger.warning("Ignoring webhook request without notifications")
            return None
        message_id = self.queue.enqueue(json.dumps(payload))
        logger.info(
            f"Queued {len(payload['value'])} notifications",
            extra={'details': {'message_id': message_id, 'queue': self.queue.queue_name}},
        )
        return None

    # -- processing --------------------------------------------------------

    def _collect_changes(self, list_config: WebhookListConfig, token: Optional[str]):
        latest: "OrderedDict[str, ListItemChange]" = OrderedDict()
        while True:
            page = with_retry(
                lambda: self.repository.get_list_changes(list_config.site_url, list_config.list_id, token),
                policy=self.retry_policy,
            )
            for change in page.changes:
                latest.pop(change.item_id, None)
                latest[change.item_id] = change
            token = page.new_token or token
            if not page.has_more:
                return list(latest.values()), token

    def process_notification(self, notification: WebhookNotification) -> NotificationProcessResult:
        """
        Raises:
            InvalidChangeTokenError: the stored change token was rejected
        """
        result = NotificationProcessResult()
        list_config = self.find_list(notification.resource)
        if list_config is None:
            logger.warning(f"Notification for unknown list {notification.resource}", extra={'details': notification.to_dict()})
            return result

        with self._lock:
            self.renew_if_expiring(list_config, notification)
            state = self.subscriptions.get(list_config.id) or WebhookSubscriptionState(
                feed=list_config.id, container_id=list_config.list_id,
                subscription_id=notification.subscription_id,
            )
            changes, new_token = self._collect_changes(list_config, state.last_change_token)

            for change in changes:
                if change.change_type == ChangeType.DELETE:
                    result.skipped.append(change.item_id)
                    continue
                try:
                    outcome = self.processor.process(list_config, change.item_id)
                except Exception as e:
                    self.error_tracker.report_exception(e, source_id=change.item_id)
                    logger.error(f"Could not process item {change.item_id}: {e}", extra={'details': {'feed': list_config.id}})
                    result.not_processed.append(change.item_id)
                    continue
                if outcome is None:
                    result.skipped.append(change.item_id)
                elif outcome:
                    result.processed.append(change.item_id)
                else:
                    result.not_processed.append(change.item_id)

            state.last_change_token = new_token
            self.subscriptions.save(state)

        logger.info(result.summary(), extra={'details': {'feed': list_config.id, 'skipped': result.skipped}})
        return result

    def process_with_resync(self, notification: WebhookNotification) -> NotificationProcessResult:
        """Process a notification, restarting from full history once if the change token is rejected."""
        try:
            return self.process_notification(notification)
        except InvalidChangeTokenError as e:
            list_config = self.find_list(notification.resource)
            logger.warning(
                f"Change token rejected, resetting: {e.message}",
                extra={'details': {'feed': list_config.id if list_config else None}},
            )
            self.reset_change_token(list_config)
            return self.process_notification(notification)

    def reset_change_token(self, list_config: WebhookListConfig) -> None:
        with self._lock:
            state = self.subscriptions.get(list_config.id) or WebhookSubscriptionState(
                feed=list_config.id, container_id=list_config.list_id,
            )
            state.last_change_token = ""
            self.subscriptions.save(state)

    def process_message(self, body: str) -> List[NotificationProcessResult]:
        data = json.loads(body)
        entries = data.get("value", []) if isinstance(data, dict) else data
        return [self.process_with_resync(WebhookNotification.from_dict(entry)) for entry in entries]

    def process_queue(self, max_messages: int = 16) -> Dict[str, int]:
        """
        Work off queued notification batches.

        A message is deleted after it was processed; a failing message stays
        queued until it has been received ``max_dequeue_count`` times.
        """
        stats = {'received': 0, 'processed': 0, 'failed': 0, 'dropped': 0}
        messages = self.queue.receive(max_messages)
        stats['received'] = len(messages)
        for message in messages:
            try:
                self.process_message(message.body)
            except Exception as e:
                self.error_tracker.report_exception(e, source_id=str(message.id))
                if message.dequeue_count >= self.config.max_dequeue_count:
                    logger.error(
                        f"Dropping notification message {message.id} after {message.dequeue_count} attempts: {e}",
                        extra={'details': {'body': message.body}},
                    )
                    self.queue.delete(message.id)
                    stats['dropped'] += 1
                else:
                    logger.warning(f"Notification message {message.id} failed, will retry: {e}")
                    stats['failed'] += 1
                continue
            self.queue.delete(message.id)
            stats['processed'] += 1
        logger.info("Notification queue processed", extra={'details': stats})
        return stats
