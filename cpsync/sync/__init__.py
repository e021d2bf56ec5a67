"""
Document broker between SharePoint document libraries and blob storage.

This module provides identity resolution and object id minting across the
repository, storage and public identifier spaces, delta synchronization of
document libraries into blob containers, deferred publication, and drop-off
processing driven by SharePoint list webhooks.
"""

from .config import (
    SyncConfig, FieldMapping, FieldType, LocationMapping,
    WebhookConfig, WebhookListConfig, create_example_config
)

from .models import (
    ObjectIdentifiers, SyncType, ChangeFeedItem, ExportOutcome, ExportResponse,
    PublicationQueueEntry, WebhookNotification, NotificationProcessResult
)

from .identity import IdentityResolver
from .minter import ObjectIdMinter, SequenceCounter
from .delta_sync import DeltaSyncEngine, classify_items
from .publication import PublicationQueue
from .webhook import WebhookPipeline
from .orchestrator import SyncOrchestrator, SyncSummary

__all__ = [
    # Configuration
    'SyncConfig',
    'FieldMapping',
    'FieldType',
    'LocationMapping',
    'WebhookConfig',
    'WebhookListConfig',
    'create_example_config',

    # Records
    'ObjectIdentifiers',
    'SyncType',
    'ChangeFeedItem',
    'ExportOutcome',
    'ExportResponse',
    'PublicationQueueEntry',
    'WebhookNotification',
    'NotificationProcessResult',

    # Components
    'IdentityResolver',
    'ObjectIdMinter',
    'SequenceCounter',
    'DeltaSyncEngine',
    'classify_items',
    'PublicationQueue',
    'WebhookPipeline',
    'SyncOrchestrator',
    'SyncSummary',
]
