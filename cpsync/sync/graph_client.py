"""
Repository client for SharePoint Online.

``RepositoryClient`` is the interface the broker depends on.
``GraphRepositoryClient`` implements it on top of Microsoft Graph v1.0 and,
for list change tokens and list webhook subscriptions, the SharePoint REST
API. App-only tokens are obtained with msal; transient failures are retried
with the shared retry policy and a per-host circuit breaker.

HTTP status codes are translated into the broker's error taxonomy:

- 404 -> NotFoundError (ContainerNotFoundError / ItemNotFoundError where the
  caller knows which coordinate was looked up)
- 401 / 403 -> ForbiddenError
- 408 / 429 / 5xx, timeouts, connection errors -> TransientTransportError
- SharePoint change-token error codes -> InvalidChangeTokenError
"""

from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import parse_qs, quote, urlparse

import msal
import requests

from ..config import GRAPH_API_BASE, GRAPH_SCOPE, GraphCredentials
from .error_tracker import (
    ContainerNotFoundError, ExternalServiceError, ForbiddenError, InvalidChangeTokenError,
    ItemNotFoundError, NotFoundError, TransientTransportError,
)
from .logging_manager import get_logger
from .models import (
    ChangeFeedItem, ChangeFeedPage, ChangeType, ListChangesPage, ListItemChange,
    ObjectIdentifiers, parse_datetime,
)
from .resilience import CircuitBreaker, RetryPolicy, with_retry

logger = get_logger(__name__)

# SharePoint server error codes raised for unusable change tokens
INVALID_CHANGE_TOKEN_CODES = {
    "-2146233086",  # System.ArgumentOutOfRangeException
    "-2130575172",  # token refers to a time before the start of the change log
    "-2130575173",  # token belongs to a different object
}
INVALID_CHANGE_TOKEN_TYPES = {
    "System.ArgumentOutOfRangeException",
    "System.FormatException",
    "System.InvalidOperationException",
}
CHANGE_QUERY_ROW_LIMIT = 1000
TRANSIENT_STATUS_CODES = {408, 429, 500, 502, 503, 504}


def _retry_after(response: requests.Response) -> Optional[float]:
    """Seconds from a Retry-After header; the HTTP-date form is ignored."""
    value = response.headers.get("Retry-After")
    try:
        return float(value) if value is not None else None
    except ValueError:
        return None


class RepositoryClient:
    """
    Operations the broker needs from the document repository.
    """

    def get_drive_id(self, site_id: str, list_id: str) -> str:
        raise NotImplementedError

    def get_drive_item_id(self, site_id: str, list_id: str, list_item_id: str) -> str:
        raise NotImplementedError

    def get_repository_ids(self, drive_id: str, drive_item_id: str) -> ObjectIdentifiers:
        """Site, list and list item id from the drive item's sharepointIds."""
        raise NotImplementedError

    def get_drive_item(self, drive_id: str, drive_item_id: str) -> Dict[str, Any]:
        """Drive item with its list item fields expanded."""
        raise NotImplementedError

    def get_change_feed_page(self, container_id: str, token: Optional[str] = None) -> ChangeFeedPage:
        raise NotImplementedError

    def get_list_item(self, site_id: str, list_id: str, list_item_id: str) -> Dict[str, Any]:
        raise NotImplementedError

    def update_list_item_fields(self, site_id: str, list_id: str, list_item_id: str, fields: Dict[str, Any]) -> None:
        raise NotImplementedError

    def download_content(self, drive_id: str, drive_item_id: str) -> bytes:
        raise NotImplementedError

    def upload_content(self, drive_id: str, file_name: str, data: bytes, folder_name: str = "") -> Dict[str, Any]:
        """Create a new file; returns the created drive item."""
        raise NotImplementedError

    def replace_content(self, drive_id: str, drive_item_id: str, data: bytes) -> None:
        raise NotImplementedError

    def delete_drive_item(self, drive_id: str, drive_item_id: str) -> None:
        raise NotImplementedError

    def get_list_changes(self, site_url: str, list_id: str, change_token: Optional[str]) -> ListChangesPage:
        raise NotImplementedError

    def get_site(self, site_id: str) -> Dict[str, Any]:
        raise NotImplementedError

    def create_subscription(self, site_url: str, list_id: str, notification_url: str,
                            expiration: datetime, client_state: str) -> Dict[str, Any]:
        raise NotImplementedError

    def renew_subscription(self, site_url: str, list_id: str, subscription_id: str, expiration: datetime) -> None:
        raise NotImplementedError

    def send_mail(self, sender: str, recipient: str, subject: str, body: str) -> None:
        raise NotImplementedError


def _parse_drive_item(item: Dict[str, Any], container_id: str) -> ChangeFeedItem:
    return ChangeFeedItem(
        id=item["id"],
        container_id=container_id,
        name=item.get("name", ""),
        is_folder="folder" in item or "root" in item,
        is_deleted="deleted" in item,
        created_at=parse_datetime(item.get("createdDateTime")),
        modified_at=parse_datetime(item.get("lastModifiedDateTime")),
    )


def _token_from_link(link: Optional[str]) -> Optional[str]:
    if not link:
        return None
    values = parse_qs(urlparse(link).query).get("token")
    return values[0] if values else None


def _raise_for_sharepoint_error(response: requests.Response, source_id: str) -> None:
    """Map SharePoint REST error payloads carrying change-token error codes."""
    try:
        error = response.json().get("odata.error") or response.json().get("error") or {}
    except ValueError:
        return
    code = str(error.get("code", ""))
    number, _, type_name = code.partition(",")
    number = number.strip()
    type_name = type_name.strip()
    message = error.get("message")
    if isinstance(message, dict):
        message = message.get("value", "")
    if number in INVALID_CHANGE_TOKEN_CODES or (number == "-1" and type_name in INVALID_CHANGE_TOKEN_TYPES):
        raise InvalidChangeTokenError(
            f"Invalid change token: {message or code}",
            source_id=source_id,
            recovery_suggestion="Reset the stored change token and resynchronize from full history",
        )


class MsalTokenProvider:
    """App-only access tokens per scope, cached by msal."""

    def __init__(self, credentials: GraphCredentials):
        self.app = msal.ConfidentialClientApplication(**credentials.to_msal_kwargs())

    def get_token(self, scope: str = GRAPH_SCOPE) -> str:
        result = self.app.acquire_token_for_client(scopes=[scope])
        if "access_token" not in result:
            raise ForbiddenError(
                f"Could not acquire token for {scope}: {result.get('error_description') or result.get('error')}",
                recovery_suggestion="Check GRAPH_TENANT_ID, GRAPH_CLIENT_ID and GRAPH_CLIENT_SECRET",
            )
        return result["access_token"]


class GraphRepositoryClient(RepositoryClient):
    """
    Microsoft Graph and SharePoint REST implementation.
    """

    def __init__(self, token_provider: MsalTokenProvider, timeout: int = 30,
                 retry_policy: Optional[RetryPolicy] = None,
                 circuit_breaker: Optional[CircuitBreaker] = None,
                 session: Optional[requests.Session] = None,
                 api_base: str = GRAPH_API_BASE):
        self.token_provider = token_provider
        self.timeout = timeout
        self.retry_policy = retry_policy or RetryPolicy.for_transport()
        self.circuit_breaker = circuit_breaker or CircuitBreaker()
        self.session = session or requests.Session()
        self.api_base = api_base.rstrip("/")

    # -- transport ---------------------------------------------------------

    def _request(self, method: str, url: str, *, scope: str = GRAPH_SCOPE, source_id: str = "",
                 headers: Optional[Dict[str, str]] = None,
                 on_error: Optional[Callable[[requests.Response, str], None]] = None, **kwargs) -> requests.Response:
        if not url.startswith("http"):
            url = f"{self.api_base}{url}"
        host = urlparse(url).netloc

        def send() -> requests.Response:
            request_headers = {"Authorization": f"Bearer {self.token_provider.get_token(scope)}"}
            request_headers.update(headers or {})
            try:
                response = self.session.request(method, url, headers=request_headers, timeout=self.timeout, **kwargs)
            except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
                raise TransientTransportError(f"{method} {url} failed: {e}", source_id=source_id) from e
            if response.status_code >= 400 and on_error:
                # SharePoint reports SPException failures (stale change tokens among them) as 500
                on_error(response, source_id)
            if response.status_code in TRANSIENT_STATUS_CODES:
                raise TransientTransportError(
                    f"{method} {url} returned {response.status_code}", source_id=source_id,
                    retry_after=_retry_after(response),
                )
            return response

        response = with_retry(send, policy=self.retry_policy, circuit_breaker=self.circuit_breaker, circuit_key=host)

        if response.status_code == 404:
            raise NotFoundError(f"{method} {url} returned 404", source_id=source_id)
        if response.status_code in (401, 403):
            raise ForbiddenError(f"{method} {url} returned {response.status_code}", source_id=source_id)
        if response.status_code >= 400:
            raise ExternalServiceError(
                f"{method} {url} returned {response.status_code}: {response.text[:500]}", source_id=source_id
            )
        return response

    def _sharepoint_scope(self, site_url: str) -> str:
        return f"https://{urlparse(site_url).netloc}/.default"

    # -- identity ----------------------------------------------------------

    def get_drive_id(self, site_id: str, list_id: str) -> str:
        try:
            response = self._request("GET", f"/sites/{site_id}/lists/{list_id}/drive", params={"$select": "id"},
                                     source_id=list_id)
        except NotFoundError as e:
            raise ContainerNotFoundError(
                f"Drive not found for site {site_id}, list {list_id}", source_id=list_id
            ) from e
        return response.json()["id"]

    def get_drive_item_id(self, site_id: str, list_id: str, list_item_id: str) -> str:
        try:
            response = self._request(
                "GET", f"/sites/{site_id}/lists/{list_id}/items/{list_item_id}/driveItem",
                params={"$select": "id"}, source_id=list_item_id,
            )
        except NotFoundError as e:
            raise ItemNotFoundError(
                f"Drive item not found for list item {list_item_id}", source_id=list_item_id
            ) from e
        return response.json()["id"]

    def get_repository_ids(self, drive_id: str, drive_item_id: str) -> ObjectIdentifiers:
        try:
            response = self._request(
                "GET", f"/drives/{drive_id}/items/{drive_item_id}",
                params={"$select": "id,sharepointIds"}, source_id=drive_item_id,
            )
        except NotFoundError as e:
            raise ItemNotFoundError(f"Drive item {drive_item_id} not found in {drive_id}", source_id=drive_item_id) from e
        sharepoint_ids = response.json().get("sharepointIds") or {}
        return ObjectIdentifiers(
            site_id=sharepoint_ids.get("siteId", ""),
            list_id=sharepoint_ids.get("listId", ""),
            list_item_id=str(sharepoint_ids.get("listItemId", "")),
        )

    def get_drive_item(self, drive_id: str, drive_item_id: str) -> Dict[str, Any]:
        try:
            response = self._request(
                "GET", f"/drives/{drive_id}/items/{drive_item_id}",
                params={"$expand": "listItem($expand=fields)"}, source_id=drive_item_id,
            )
        except NotFoundError as e:
            raise ItemNotFoundError(f"Drive item {drive_item_id} not found in {drive_id}", source_id=drive_item_id) from e
        return response.json()

    # -- delta feed --------------------------------------------------------

    def get_change_feed_page(self, container_id: str, token: Optional[str] = None) -> ChangeFeedPage:
        params = {"$select": "id,name,folder,root,deleted,file,createdDateTime,lastModifiedDateTime"}
        if token:
            params["token"] = token
        try:
            response = self._request("GET", f"/drives/{container_id}/root/delta", params=params, source_id=container_id)
        except NotFoundError as e:
            raise ContainerNotFoundError(f"Drive {container_id} not found", source_id=container_id) from e
        payload = response.json()
        items = [_parse_drive_item(item, container_id) for item in payload.get("value", [])]
        next_link = payload.get("@odata.nextLink")
        delta_link = payload.get("@odata.deltaLink")
        return ChangeFeedPage(
            items=items,
            next_token=_token_from_link(next_link or delta_link),
            has_more=bool(next_link),
        )

    # -- list items and content --------------------------------------------

    def get_list_item(self, site_id: str, list_id: str, list_item_id: str) -> Dict[str, Any]:
        try:
            response = self._request(
                "GET", f"/sites/{site_id}/lists/{list_id}/items/{list_item_id}",
                params={"$expand": "fields,driveItem"}, source_id=list_item_id,
            )
        except NotFoundError as e:
            raise ItemNotFoundError(f"List item {list_item_id} not found in {list_id}", source_id=list_item_id) from e
        return response.json()

    def update_list_item_fields(self, site_id: str, list_id: str, list_item_id: str, fields: Dict[str, Any]) -> None:
        self._request(
            "PATCH", f"/sites/{site_id}/lists/{list_id}/items/{list_item_id}/fields",
            json=fields, source_id=list_item_id,
        )

    def download_content(self, drive_id: str, drive_item_id: str) -> bytes:
        try:
            response = self._request("GET", f"/drives/{drive_id}/items/{drive_item_id}/content", source_id=drive_item_id)
        except NotFoundError as e:
            raise ItemNotFoundError(f"Content of {drive_item_id} not found", source_id=drive_item_id) from e
        return response.content

    def upload_content(self, drive_id: str, file_name: str, data: bytes, folder_name: str = "") -> Dict[str, Any]:
        path = f"{folder_name.strip('/')}/{file_name}" if folder_name else file_name
        response = self._request(
            "PUT", f"/drives/{drive_id}/root:/{quote(path)}:/content",
            params={"@microsoft.graph.conflictBehavior": "fail"},
            data=data, headers={"Content-Type": "application/octet-stream"}, source_id=file_name,
        )
        return response.json()

    def replace_content(self, drive_id: str, drive_item_id: str, data: bytes) -> None:
        self._request(
            "PUT", f"/drives/{drive_id}/items/{drive_item_id}/content",
            data=data, headers={"Content-Type": "application/octet-stream"}, source_id=drive_item_id,
        )

    def delete_drive_item(self, drive_id: str, drive_item_id: str) -> None:
        self._request("DELETE", f"/drives/{drive_id}/items/{drive_item_id}", source_id=drive_item_id)

    # -- sites, change tokens and subscriptions ----------------------------

    def get_site(self, site_id: str) -> Dict[str, Any]:
        return self._request("GET", f"/sites/{site_id}", source_id=site_id).json()

    def get_list_changes(self, site_url: str, list_id: str, change_token: Optional[str]) -> ListChangesPage:
        query: Dict[str, Any] = {
            "Item": True,
            "Add": True,
            "Update": True,
            "DeleteObject": True,
            "Restore": True,
            "RowLimit": CHANGE_QUERY_ROW_LIMIT,
        }
        if change_token:
            query["ChangeTokenStart"] = {"StringValue": change_token}
        response = self._request(
            "POST", f"{site_url}/_api/web/lists(guid'{list_id}')/GetChanges",
            scope=self._sharepoint_scope(site_url),
            json={"query": query},
            headers={"Accept": "application/json;odata=nometadata",
                     "Content-Type": "application/json;odata=nometadata"},
            source_id=list_id,
            on_error=_raise_for_sharepoint_error,
        )
        rows: List[Dict[str, Any]] = response.json().get("value", [])
        changes = [
            ListItemChange(
                item_id=str(row.get("ItemId")),
                change_type=ChangeType.from_sharepoint(row.get("ChangeType")),
                change_token=(row.get("ChangeToken") or {}).get("StringValue"),
            )
            for row in rows
            if row.get("ItemId") is not None
        ]
        new_token = change_token
        if rows:
            new_token = (rows[-1].get("ChangeToken") or {}).get("StringValue") or change_token
        return ListChangesPage(changes=changes, new_token=new_token, has_more=len(rows) >= CHANGE_QUERY_ROW_LIMIT)

    def create_subscription(self, site_url: str, list_id: str, notification_url: str,
                            expiration: datetime, client_state: str) -> Dict[str, Any]:
        response = self._request(
            "POST", f"{site_url}/_api/web/lists('{list_id}')/subscriptions",
            scope=self._sharepoint_scope(site_url),
            json={
                "resource": f"{site_url}/_api/web/lists('{list_id}')",
                "notificationUrl": notification_url,
                "expirationDateTime": expiration.isoformat(),
                "clientState": client_state,
            },
            headers={"Accept": "application/json;odata=nometadata",
                     "Content-Type": "application/json;odata=nometadata"},
            source_id=list_id,
        )
        return response.json()

    def renew_subscription(self, site_url: str, list_id: str, subscription_id: str, expiration: datetime) -> None:
        self._request(
            "PATCH", f"{site_url}/_api/web/lists('{list_id}')/subscriptions('{subscription_id}')",
            scope=self._sharepoint_scope(site_url),
            json={"expirationDateTime": expiration.isoformat()},
            headers={"Accept": "application/json;odata=nometadata",
                     "Content-Type": "application/json;odata=nometadata"},
            source_id=subscription_id,
        )

    def send_mail(self, sender: str, recipient: str, subject: str, body: str) -> None:
        self._request(
            "POST", f"/users/{sender}/sendMail",
            json={
                "message": {
                    "subject": subject,
                    "body": {"contentType": "Text", "content": body},
                    "toRecipients": [{"emailAddress": {"address": recipient}}],
                },
                "saveToSentItems": False,
            },
            source_id=recipient,
        )
