"""
Key-value table store for the document broker.

A single sqlite database holds:
1. Identity records, keyed by object id with a unique natural key
   (site id + list id + list item id) and a secondary storage-pair index
2. Settings rows with a version column for compare-and-set updates
   (sequence counter, checkpoints, running flags)
3. The publication queue
4. The durable webhook notification queue
5. Webhook subscription state
"""

import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Iterator, List, Optional, Tuple

from .error_tracker import DataIntegrityError, DuplicateRecordError
from .logging_manager import get_logger
from .models import (
    ObjectIdentifiers, PublicationQueueEntry, WebhookSubscriptionState, parse_datetime
)

logger = get_logger(__name__)


def _utc_iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


class TableStore:
    """Owns the database file and its schema."""

    def __init__(self, storage_directory: str = "./cache", filename: str = "cpsync.sqlite"):
        self.storage_directory = Path(storage_directory)
        self.storage_directory.mkdir(parents=True, exist_ok=True)
        self.db_path = self.storage_directory / filename
        self._init_schema()

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.db_path, timeout=30)
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    def _init_schema(self):
        with self.connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS object_identifiers (
                    object_id TEXT PRIMARY KEY,
                    natural_key TEXT UNIQUE,
                    site_id TEXT NOT NULL DEFAULT '',
                    list_id TEXT NOT NULL DEFAULT '',
                    list_item_id TEXT NOT NULL DEFAULT '',
                    drive_id TEXT NOT NULL DEFAULT '',
                    drive_item_id TEXT NOT NULL DEFAULT '',
                    external_reference_list_id TEXT NOT NULL DEFAULT '',
                    additional_object_id TEXT NOT NULL DEFAULT '',
                    created_at TEXT NOT NULL
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_storage_pair ON object_identifiers(drive_id, drive_item_id)")

            conn.execute("""
                CREATE TABLE IF NOT EXISTS settings (
                    key TEXT PRIMARY KEY,
                    value TEXT,
                    version INTEGER NOT NULL DEFAULT 1,
                    updated_at TEXT NOT NULL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS to_be_published (
                    object_id TEXT PRIMARY KEY,
                    publication_date TEXT NOT NULL
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_publication_date ON to_be_published(publication_date)")

            conn.execute("""
                CREATE TABLE IF NOT EXISTS notification_queue (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    queue_name TEXT NOT NULL,
                    body TEXT NOT NULL,
                    enqueued_at TEXT NOT NULL,
                    dequeue_count INTEGER NOT NULL DEFAULT 0
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS webhook_subscriptions (
                    feed TEXT PRIMARY KEY,
                    container_id TEXT NOT NULL,
                    subscription_id TEXT NOT NULL DEFAULT '',
                    expiration TEXT,
                    last_change_token TEXT
                )
            """)


IDENTITY_COLUMNS = (
    "object_id", "site_id", "list_id", "list_item_id", "drive_id", "drive_item_id",
    "external_reference_list_id", "additional_object_id",
)


class IdentityTable:
    """Identity records. Object ids are stored upper-cased."""

    def __init__(self, store: TableStore):
        self.store = store

    def _row_to_ids(self, row) -> ObjectIdentifiers:
        return ObjectIdentifiers(**dict(zip(IDENTITY_COLUMNS, row)))

    def _select_one(self, where: str, params: Tuple) -> Optional[ObjectIdentifiers]:
        with self.store.connect() as conn:
            row = conn.execute(
                f"SELECT {', '.join(IDENTITY_COLUMNS)} FROM object_identifiers WHERE {where}",
                params,
            ).fetchone()
        return self._row_to_ids(row) if row else None

    def get(self, object_id: str) -> Optional[ObjectIdentifiers]:
        if not object_id:
            return None
        return self._select_one("object_id = ?", (object_id.upper(),))

    def find_by_natural_key(self, natural_key: str) -> Optional[ObjectIdentifiers]:
        if not natural_key:
            return None
        return self._select_one("natural_key = ?", (natural_key,))

    def find_by_storage_pair(self, drive_id: str, drive_item_id: str) -> Optional[ObjectIdentifiers]:
        if not drive_id or not drive_item_id:
            return None
        return self._select_one("drive_id = ? AND drive_item_id = ?", (drive_id, drive_item_id))

    def insert(self, ids: ObjectIdentifiers) -> None:
        """Insert a new record; raises DuplicateRecordError on an object id or natural key clash."""
        if not ids.object_id:
            raise DataIntegrityError("Cannot store identifiers without an object id")
        values = [getattr(ids, column) for column in IDENTITY_COLUMNS]
        values[0] = ids.object_id.upper()
        try:
            with self.store.connect() as conn:
                conn.execute(
                    f"INSERT INTO object_identifiers ({', '.join(IDENTITY_COLUMNS)}, natural_key, created_at) "
                    f"VALUES ({', '.join('?' for _ in IDENTITY_COLUMNS)}, ?, ?)",
                    (*values, ids.natural_key or None, datetime.now(timezone.utc).isoformat()),
                )
        except sqlite3.IntegrityError as e:
            raise DuplicateRecordError(
                f"Identity record already exists: {e}", source_id=ids.object_id
            ) from e

    def update(self, ids: ObjectIdentifiers) -> None:
        """Overwrite the coordinates of an existing record."""
        with self.store.connect() as conn:
            cursor = conn.execute(
                "UPDATE object_identifiers SET natural_key = ?, site_id = ?, list_id = ?, list_item_id = ?, "
                "drive_id = ?, drive_item_id = ?, external_reference_list_id = ?, additional_object_id = ? "
                "WHERE object_id = ?",
                (
                    ids.natural_key or None, ids.site_id, ids.list_id, ids.list_item_id,
                    ids.drive_id, ids.drive_item_id, ids.external_reference_list_id,
                    ids.additional_object_id, ids.object_id.upper(),
                ),
            )
            if cursor.rowcount == 0:
                raise DataIntegrityError(f"No identity record to update for {ids.object_id}", source_id=ids.object_id)

    def known_drive_ids(self) -> List[str]:
        with self.store.connect() as conn:
            rows = conn.execute(
                "SELECT DISTINCT drive_id FROM object_identifiers WHERE drive_id != '' ORDER BY drive_id"
            ).fetchall()
        return [row[0] for row in rows]

    def count(self) -> int:
        with self.store.connect() as conn:
            return conn.execute("SELECT COUNT(*) FROM object_identifiers").fetchone()[0]


class SettingsTable:
    """Versioned key-value settings."""

    def __init__(self, store: TableStore):
        self.store = store

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        value, version = self.get_versioned(key)
        return default if version == 0 else value

    def get_versioned(self, key: str) -> Tuple[Optional[str], int]:
        """Value and version; version 0 means the row does not exist."""
        with self.store.connect() as conn:
            row = conn.execute("SELECT value, version FROM settings WHERE key = ?", (key,)).fetchone()
        if not row:
            return None, 0
        return row[0], row[1]

    def set(self, key: str, value: Optional[str]) -> None:
        now = datetime.now(timezone.utc).isoformat()
        with self.store.connect() as conn:
            conn.execute(
                "INSERT INTO settings (key, value, version, updated_at) VALUES (?, ?, 1, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value, version = settings.version + 1, "
                "updated_at = excluded.updated_at",
                (key, value, now),
            )

    def compare_and_set(self, key: str, expected_version: int, value: str) -> bool:
        """Write ``value`` only if the row is still at ``expected_version``."""
        now = datetime.now(timezone.utc).isoformat()
        with self.store.connect() as conn:
            if expected_version == 0:
                cursor = conn.execute(
                    "INSERT OR IGNORE INTO settings (key, value, version, updated_at) VALUES (?, ?, 1, ?)",
                    (key, value, now),
                )
            else:
                cursor = conn.execute(
                    "UPDATE settings SET value = ?, version = version + 1, updated_at = ? WHERE key = ? AND version = ?",
                    (value, now, key, expected_version),
                )
            return cursor.rowcount == 1

    def delete(self, key: str) -> None:
        with self.store.connect() as conn:
            conn.execute("DELETE FROM settings WHERE key = ?", (key,))


class PublicationTable:
    """Documents waiting for their publication date."""

    def __init__(self, store: TableStore):
        self.store = store

    def upsert(self, entry: PublicationQueueEntry) -> None:
        with self.store.connect() as conn:
            conn.execute(
                "INSERT INTO to_be_published (object_id, publication_date) VALUES (?, ?) "
                "ON CONFLICT(object_id) DO UPDATE SET publication_date = excluded.publication_date",
                (entry.object_id.upper(), _utc_iso(entry.publication_date)),
            )

    def get(self, object_id: str) -> Optional[PublicationQueueEntry]:
        with self.store.connect() as conn:
            row = conn.execute(
                "SELECT object_id, publication_date FROM to_be_published WHERE object_id = ?",
                (object_id.upper(),),
            ).fetchone()
        return PublicationQueueEntry(row[0], parse_datetime(row[1])) if row else None

    def delete(self, object_id: str) -> bool:
        with self.store.connect() as conn:
            cursor = conn.execute("DELETE FROM to_be_published WHERE object_id = ?", (object_id.upper(),))
            return cursor.rowcount > 0

    def list_due(self, today: date) -> List[PublicationQueueEntry]:
        """Entries whose publication date (UTC) is on or before ``today``."""
        with self.store.connect() as conn:
            rows = conn.execute(
                "SELECT object_id, publication_date FROM to_be_published "
                "WHERE substr(publication_date, 1, 10) <= ? ORDER BY publication_date",
                (today.isoformat(),),
            ).fetchall()
        return [PublicationQueueEntry(row[0], parse_datetime(row[1])) for row in rows]

    def list_all(self) -> List[PublicationQueueEntry]:
        with self.store.connect() as conn:
            rows = conn.execute(
                "SELECT object_id, publication_date FROM to_be_published ORDER BY publication_date"
            ).fetchall()
        return [PublicationQueueEntry(row[0], parse_datetime(row[1])) for row in rows]


@dataclass
class QueueMessage:
    id: int
    body: str
    dequeue_count: int


class NotificationQueue:
    """Durable FIFO queue of raw webhook batches."""

    def __init__(self, store: TableStore, queue_name: str = "sharepointlistwebhooknotifications"):
        self.store = store
        self.queue_name = queue_name

    def enqueue(self, body: str) -> int:
        with self.store.connect() as conn:
            cursor = conn.execute(
                "INSERT INTO notification_queue (queue_name, body, enqueued_at) VALUES (?, ?, ?)",
                (self.queue_name, body, datetime.now(timezone.utc).isoformat()),
            )
            return cursor.lastrowid

    def receive(self, max_messages: int = 16) -> List[QueueMessage]:
        """Oldest messages first; each receive increments the dequeue count."""
        with self.store.connect() as conn:
            rows = conn.execute(
                "SELECT id, body, dequeue_count FROM notification_queue WHERE queue_name = ? ORDER BY id LIMIT ?",
                (self.queue_name, max_messages),
            ).fetchall()
            conn.executemany(
                "UPDATE notification_queue SET dequeue_count = dequeue_count + 1 WHERE id = ?",
                [(row[0],) for row in rows],
            )
        return [QueueMessage(id=row[0], body=row[1], dequeue_count=row[2] + 1) for row in rows]

    def delete(self, message_id: int) -> None:
        with self.store.connect() as conn:
            conn.execute("DELETE FROM notification_queue WHERE id = ?", (message_id,))

    def __len__(self) -> int:
        with self.store.connect() as conn:
            return conn.execute(
                "SELECT COUNT(*) FROM notification_queue WHERE queue_name = ?", (self.queue_name,)
            ).fetchone()[0]


class SubscriptionTable:
    """Webhook subscription id, expiration and change-token cursor per feed."""

    def __init__(self, store: TableStore):
        self.store = store

    def get(self, feed: str) -> Optional[WebhookSubscriptionState]:
        with self.store.connect() as conn:
            row = conn.execute(
                "SELECT feed, container_id, subscription_id, expiration, last_change_token "
                "FROM webhook_subscriptions WHERE feed = ?",
                (feed,),
            ).fetchone()
        if not row:
            return None
        return WebhookSubscriptionState(
            feed=row[0],
            container_id=row[1],
            subscription_id=row[2],
            expiration=parse_datetime(row[3]),
            last_change_token=row[4],
        )

    def save(self, state: WebhookSubscriptionState) -> None:
        with self.store.connect() as conn:
            conn.execute(
                "INSERT INTO webhook_subscriptions (feed, container_id, subscription_id, expiration, last_change_token) "
                "VALUES (?, ?, ?, ?, ?) ON CONFLICT(feed) DO UPDATE SET container_id = excluded.container_id, "
                "subscription_id = excluded.subscription_id, expiration = excluded.expiration, "
                "last_change_token = excluded.last_change_token",
                (
                    state.feed,
                    state.container_id,
                    state.subscription_id,
                    _utc_iso(state.expiration) if state.expiration else None,
                    state.last_change_token,
                ),
            )
