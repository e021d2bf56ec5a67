"""
Records shared by the identity, synchronization, publication and webhook
components.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple


IDENTIFIER_FIELDS = (
    "object_id",
    "site_id",
    "list_id",
    "list_item_id",
    "drive_id",
    "drive_item_id",
    "external_reference_list_id",
    "additional_object_id",
)

# Coordinates that must all be known before an object id can be minted.
MINT_REQUIRED_FIELDS = ("site_id", "list_id", "list_item_id", "drive_id", "drive_item_id")


@dataclass(frozen=True)
class ObjectIdentifiers:
    """Snapshot of every known coordinate of one document.

    Instances are immutable; ``merge`` returns a new snapshot in which only
    empty fields are filled from the patch.
    """
    object_id: str = ""
    site_id: str = ""
    list_id: str = ""
    list_item_id: str = ""
    drive_id: str = ""
    drive_item_id: str = ""
    external_reference_list_id: str = ""
    additional_object_id: str = ""

    @property
    def has_repository_triple(self) -> bool:
        return bool(self.site_id and self.list_id and self.list_item_id)

    @property
    def has_storage_pair(self) -> bool:
        return bool(self.drive_id and self.drive_item_id)

    @property
    def natural_key(self) -> str:
        """site id + list id + list item id, empty when any part is missing."""
        if not self.has_repository_triple:
            return ""
        return f"{self.site_id}{self.list_id}{self.list_item_id}"

    @property
    def storage_pair(self) -> Tuple[str, str]:
        return (self.drive_id, self.drive_item_id)

    def missing_fields(self, names: Iterable[str] = MINT_REQUIRED_FIELDS) -> List[str]:
        return [name for name in names if not getattr(self, name)]

    def merge(self, patch: "ObjectIdentifiers | Dict[str, Any]") -> "ObjectIdentifiers":
        if isinstance(patch, ObjectIdentifiers):
            patch = asdict(patch)
        changes = {
            name: str(value)
            for name, value in patch.items()
            if name in IDENTIFIER_FIELDS and value and not getattr(self, name)
        }
        if not changes:
            return self
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, str]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ObjectIdentifiers":
        return cls(**{k: str(v) for k, v in data.items() if k in IDENTIFIER_FIELDS and v is not None})


class SyncType(str, Enum):
    """Change feed a synchronization run works on."""
    NEW = "new"
    UPDATED = "updated"
    DELETED = "deleted"

    @property
    def callback_label(self) -> str:
        return {"new": "create", "updated": "update", "deleted": "delete"}[self.value]


@dataclass(frozen=True)
class ChangeFeedItem:
    """One entry of a drive's delta feed."""
    id: str
    container_id: str
    name: str = ""
    is_folder: bool = False
    is_deleted: bool = False
    created_at: Optional[datetime] = None
    modified_at: Optional[datetime] = None

    @property
    def key(self) -> Tuple[str, str]:
        return (self.container_id, self.id)

    @property
    def identifiers(self) -> ObjectIdentifiers:
        return ObjectIdentifiers(drive_id=self.container_id, drive_item_id=self.id)


@dataclass
class ChangeFeedPage:
    items: List[ChangeFeedItem]
    next_token: Optional[str] = None
    has_more: bool = False


class ChangeType(str, Enum):
    """SharePoint list change kinds (SP.ChangeType)."""
    NONE = "none"
    ADD = "add"
    UPDATE = "update"
    DELETE = "delete"
    RENAME = "rename"
    MOVE_AWAY = "move_away"
    MOVE_INTO = "move_into"
    RESTORE = "restore"
    OTHER = "other"

    @classmethod
    def from_sharepoint(cls, value: Any) -> "ChangeType":
        codes = {
            0: cls.NONE, 1: cls.ADD, 2: cls.UPDATE, 3: cls.DELETE, 4: cls.RENAME,
            5: cls.MOVE_AWAY, 6: cls.MOVE_INTO, 7: cls.RESTORE,
        }
        try:
            return codes.get(int(value), cls.OTHER)
        except (TypeError, ValueError):
            return cls.OTHER


@dataclass(frozen=True)
class ListItemChange:
    item_id: str
    change_type: ChangeType
    change_token: Optional[str] = None


@dataclass
class ListChangesPage:
    changes: List[ListItemChange]
    new_token: Optional[str] = None
    has_more: bool = False


@dataclass
class PublicationQueueEntry:
    object_id: str
    publication_date: datetime


@dataclass
class WebhookSubscriptionState:
    feed: str
    container_id: str
    subscription_id: str = ""
    expiration: Optional[datetime] = None
    last_change_token: Optional[str] = None


def format_token_map(token_map: Dict[str, str]) -> str:
    """``{'a': '1', 'b': '2'}`` -> ``'a=1;b=2'``"""
    return ";".join(f"{key}={value}" for key, value in token_map.items())


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 value (Graph uses a trailing Z) into an aware datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    # Graph sometimes returns 7 fractional digits
    if "." in text:
        head, _, tail = text.partition(".")
        digits = ""
        rest = ""
        for i, ch in enumerate(tail):
            if ch.isdigit():
                digits += ch
            else:
                rest = tail[i:]
                break
        text = f"{head}.{digits[:6]}{rest}" if digits else f"{head}{rest}"
    parsed = datetime.fromisoformat(text)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


@dataclass
class WebhookNotification:
    """A single SharePoint webhook notification."""
    subscription_id: str
    resource: str
    client_state: str = ""
    expiration: Optional[datetime] = None
    tenant_id: str = ""
    site_url: str = ""
    web_id: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WebhookNotification":
        return cls(
            subscription_id=data.get("subscriptionId", ""),
            resource=data.get("resource", ""),
            client_state=data.get("clientState") or "",
            expiration=parse_datetime(data.get("expirationDateTime")),
            tenant_id=data.get("tenantId", ""),
            site_url=data.get("siteUrl", ""),
            web_id=data.get("webId", ""),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subscriptionId": self.subscription_id,
            "resource": self.resource,
            "clientState": self.client_state,
            "expirationDateTime": self.expiration.isoformat() if self.expiration else None,
            "tenantId": self.tenant_id,
            "siteUrl": self.site_url,
            "webId": self.web_id,
        }


class ExportOutcome(str, Enum):
    EXPORTED = "exported"
    DEFERRED = "deferred"
    SKIPPED = "skipped"


@dataclass
class ExportResponse:
    """Result of one synchronization run."""
    sync_type: SyncType
    token_map: Dict[str, str] = field(default_factory=dict)
    items: int = 0
    succeeded: int = 0
    deferred: int = 0
    skipped: int = 0
    failed_items: List[str] = field(default_factory=list)
    cancelled: bool = False

    @property
    def token_map_string(self) -> str:
        return format_token_map(self.token_map)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sync_type": self.sync_type.value,
            "token_map": self.token_map_string,
            "items": self.items,
            "succeeded": self.succeeded,
            "deferred": self.deferred,
            "skipped": self.skipped,
            "failed_items": list(self.failed_items),
            "cancelled": self.cancelled,
        }


@dataclass
class PublicationDrainResult:
    succeeded: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)


@dataclass
class NotificationProcessResult:
    processed: List[str] = field(default_factory=list)
    not_processed: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)

    def summary(self) -> str:
        found = len(self.processed) + len(self.not_processed)
        return (
            f"Notification processed. Found {found} items, "
            f"{len(self.processed)} items successfully processed, "
            f"{len(self.not_processed)} items not processed ({', '.join(self.not_processed)})"
        )
