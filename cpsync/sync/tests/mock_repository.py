"""
In-memory repository client for tests.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from ..error_tracker import ContainerNotFoundError, InvalidChangeTokenError, ItemNotFoundError
from ..graph_client import RepositoryClient
from ..models import ChangeFeedItem, ChangeFeedPage, ListChangesPage, ListItemChange, ObjectIdentifiers


class MockRepositoryClient(RepositoryClient):
    def __init__(self):
        self.drives: Dict[Tuple[str, str], str] = {}
        self.documents: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self.list_items: Dict[Tuple[str, str, str], Dict[str, Any]] = {}
        self.feed: Dict[str, List[ChangeFeedItem]] = {}
        self.feed_page_size: Optional[int] = None
        self.feed_error: Optional[Exception] = None
        self.feed_calls: List[Tuple[str, Optional[str]]] = []
        self.list_changes: Dict[str, List[ListItemChange]] = {}
        self.invalid_tokens = set()
        self.list_change_calls: List[Tuple[str, Optional[str]]] = []
        self.field_updates: List[Tuple[str, str, str, Dict[str, Any]]] = []
        self.deleted_items: List[Tuple[str, str]] = []
        self.subscriptions: List[Dict[str, Any]] = []
        self.renewals: List[Tuple[str, datetime]] = []
        self.mails: List[Dict[str, str]] = []
        self.calls: List[str] = []
        self._next_id = 1000

    # -- test setup --------------------------------------------------------

    def add_drive(self, site_id: str, list_id: str, drive_id: str) -> None:
        self.drives[(site_id, list_id)] = drive_id

    def add_document(self, drive_id: str, drive_item_id: str, list_item_id: str, name: str = "file.pdf",
                     fields: Optional[Dict[str, Any]] = None, content: bytes = b"content",
                     created: str = "2024-01-01T10:00:00Z", modified: Optional[str] = None,
                     mime_type: str = "application/pdf", author_email: str = "author@example.org") -> None:
        self.documents[(drive_id, drive_item_id)] = {
            "list_item_id": list_item_id,
            "content": content,
            "graph": {
                "id": drive_item_id,
                "name": name,
                "file": {"mimeType": mime_type},
                "createdDateTime": created,
                "lastModifiedDateTime": modified or created,
                "createdBy": {"user": {"displayName": "Author", "email": author_email}},
                "lastModifiedBy": {"user": {"displayName": "Editor"}},
                "listItem": {"id": list_item_id, "fields": dict(fields or {})},
            },
        }

    def add_list_item(self, site_id: str, list_id: str, list_item_id: str, fields: Dict[str, Any],
                      author_email: str = "author@example.org", name: str = "dropoff.pdf") -> None:
        self.list_items[(site_id, list_id, list_item_id)] = {
            "id": list_item_id,
            "fields": dict(fields),
            "createdBy": {"user": {"displayName": "Author", "email": author_email}},
            "driveItem": {"name": name},
        }

    def feed_item(self, drive_id: str, drive_item_id: str, created: datetime, modified: Optional[datetime] = None,
                  deleted: bool = False, folder: bool = False) -> ChangeFeedItem:
        item = ChangeFeedItem(
            id=drive_item_id, container_id=drive_id, name=drive_item_id, is_folder=folder,
            is_deleted=deleted, created_at=created, modified_at=modified or created,
        )
        self.feed.setdefault(drive_id, []).append(item)
        return item

    def _site_list_for_drive(self, drive_id: str) -> Tuple[str, str]:
        for (site_id, list_id), known in self.drives.items():
            if known == drive_id:
                return site_id, list_id
        raise ContainerNotFoundError(f"Drive {drive_id} not found", source_id=drive_id)

    def _document(self, drive_id: str, drive_item_id: str) -> Dict[str, Any]:
        document = self.documents.get((drive_id, drive_item_id))
        if document is None:
            raise ItemNotFoundError(f"Item {drive_item_id} not found", source_id=drive_item_id)
        return document

    # -- RepositoryClient --------------------------------------------------

    def get_drive_id(self, site_id: str, list_id: str) -> str:
        self.calls.append("get_drive_id")
        if (site_id, list_id) not in self.drives:
            raise ContainerNotFoundError(f"No drive for list {list_id}", source_id=list_id)
        return self.drives[(site_id, list_id)]

    def get_drive_item_id(self, site_id: str, list_id: str, list_item_id: str) -> str:
        self.calls.append("get_drive_item_id")
        drive_id = self.get_drive_id(site_id, list_id)
        for (known_drive, drive_item_id), document in self.documents.items():
            if known_drive == drive_id and document["list_item_id"] == list_item_id:
                return drive_item_id
        raise ItemNotFoundError(f"List item {list_item_id} not found", source_id=list_item_id)

    def get_repository_ids(self, drive_id: str, drive_item_id: str) -> ObjectIdentifiers:
        self.calls.append("get_repository_ids")
        document = self._document(drive_id, drive_item_id)
        site_id, list_id = self._site_list_for_drive(drive_id)
        return ObjectIdentifiers(site_id=site_id, list_id=list_id, list_item_id=document["list_item_id"])

    def get_drive_item(self, drive_id: str, drive_item_id: str) -> Dict[str, Any]:
        return self._document(drive_id, drive_item_id)["graph"]

    def get_change_feed_page(self, container_id: str, token: Optional[str] = None) -> ChangeFeedPage:
        self.feed_calls.append((container_id, token))
        if self.feed_error is not None:
            raise self.feed_error
        items = self.feed.get(container_id, [])
        if self.feed_page_size is None:
            return ChangeFeedPage(items=list(items), next_token=f"{container_id}-token-{len(items)}", has_more=False)
        offset = int(token.split(":")[1]) if token and token.startswith("page:") else 0
        chunk = items[offset:offset + self.feed_page_size]
        end = offset + len(chunk)
        if end < len(items):
            return ChangeFeedPage(items=chunk, next_token=f"page:{end}", has_more=True)
        return ChangeFeedPage(items=chunk, next_token=f"{container_id}-token-{len(items)}", has_more=False)

    def get_list_item(self, site_id: str, list_id: str, list_item_id: str) -> Dict[str, Any]:
        item = self.list_items.get((site_id, list_id, list_item_id))
        if item is None:
            raise ItemNotFoundError(f"List item {list_item_id} not found", source_id=list_item_id)
        return item

    def update_list_item_fields(self, site_id: str, list_id: str, list_item_id: str, fields: Dict[str, Any]) -> None:
        self.field_updates.append((site_id, list_id, list_item_id, dict(fields)))
        if (site_id, list_id, list_item_id) in self.list_items:
            self.list_items[(site_id, list_id, list_item_id)]["fields"].update(fields)
        drive_id = self.drives.get((site_id, list_id))
        for (known_drive, _), document in self.documents.items():
            if known_drive == drive_id and document["list_item_id"] == list_item_id:
                document["graph"]["listItem"]["fields"].update(fields)

    def download_content(self, drive_id: str, drive_item_id: str) -> bytes:
        return self._document(drive_id, drive_item_id)["content"]

    def upload_content(self, drive_id: str, file_name: str, data: bytes, folder_name: str = "") -> Dict[str, Any]:
        self._site_list_for_drive(drive_id)
        self._next_id += 1
        drive_item_id = f"item-{self._next_id}"
        self.add_document(drive_id, drive_item_id, str(self._next_id), name=file_name, content=data)
        return {"id": drive_item_id, "name": file_name}

    def replace_content(self, drive_id: str, drive_item_id: str, data: bytes) -> None:
        self._document(drive_id, drive_item_id)["content"] = data

    def delete_drive_item(self, drive_id: str, drive_item_id: str) -> None:
        self._document(drive_id, drive_item_id)
        del self.documents[(drive_id, drive_item_id)]
        self.deleted_items.append((drive_id, drive_item_id))

    def get_list_changes(self, site_url: str, list_id: str, change_token: Optional[str]) -> ListChangesPage:
        self.list_change_calls.append((list_id, change_token))
        if change_token in self.invalid_tokens:
            raise InvalidChangeTokenError(f"Change token {change_token} is invalid", source_id=list_id)
        changes = self.list_changes.get(list_id, [])
        offset = int(change_token.split(":")[1]) if change_token and change_token.startswith("ct:") else 0
        return ListChangesPage(changes=changes[offset:], new_token=f"ct:{len(changes)}", has_more=False)

    def get_site(self, site_id: str) -> Dict[str, Any]:
        return {"id": site_id, "webUrl": f"https://contoso.sharepoint.com/sites/{site_id}"}

    def create_subscription(self, site_url: str, list_id: str, notification_url: str,
                            expiration: datetime, client_state: str) -> Dict[str, Any]:
        subscription = {
            "id": f"sub-{len(self.subscriptions) + 1}",
            "resource": list_id,
            "notificationUrl": notification_url,
            "clientState": client_state,
            "expirationDateTime": expiration.isoformat(),
        }
        self.subscriptions.append(subscription)
        return subscription

    def renew_subscription(self, site_url: str, list_id: str, subscription_id: str, expiration: datetime) -> None:
        self.renewals.append((subscription_id, expiration))

    def send_mail(self, sender: str, recipient: str, subject: str, body: str) -> None:
        self.mails.append({"sender": sender, "recipient": recipient, "subject": subject, "body": body})
