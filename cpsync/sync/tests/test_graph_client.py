"""
Tests for the Graph repository client with a mocked HTTP session.
"""

import pytest
import requests
from unittest.mock import Mock, patch

from ..error_tracker import (
    ContainerNotFoundError, ForbiddenError, InvalidChangeTokenError, ItemNotFoundError,
    TransientTransportError,
)
from ..graph_client import GraphRepositoryClient, _token_from_link
from ..models import ChangeType
from ..resilience import CircuitBreaker, RetryPolicy

NO_WAIT = RetryPolicy(max_attempts=3, base_delay_seconds=0, max_delay_seconds=0, jitter=False)


def _response(status_code=200, payload=None, content=b"", headers=None):
    response = Mock(spec=requests.Response)
    response.status_code = status_code
    response.headers = headers or {}
    response.json.return_value = payload if payload is not None else {}
    response.content = content
    response.text = str(payload)
    return response


@pytest.fixture
def session():
    return Mock(spec=requests.Session)


@pytest.fixture
def client(session):
    token_provider = Mock()
    token_provider.get_token.return_value = "token"
    return GraphRepositoryClient(token_provider, retry_policy=NO_WAIT, circuit_breaker=CircuitBreaker(),
                                 session=session)


class TestChangeFeed:
    def test_page_with_next_link(self, client, session):
        session.request.return_value = _response(payload={
            "value": [
                {"id": "a", "name": "a.pdf", "file": {}, "createdDateTime": "2024-01-03T10:00:00Z",
                 "lastModifiedDateTime": "2024-01-03T11:00:00.1234567Z"},
                {"id": "f", "name": "folder", "folder": {}},
                {"id": "root", "root": {}},
                {"id": "d", "deleted": {"state": "deleted"}},
            ],
            "@odata.nextLink": "https://graph.microsoft.com/v1.0/drives/x/root/delta?token=next-1",
        })

        page = client.get_change_feed_page("drive", "prev")

        assert page.has_more
        assert page.next_token == "next-1"
        assert [i.id for i in page.items] == ["a", "f", "root", "d"]
        assert [i.is_folder for i in page.items] == [False, True, True, False]
        assert page.items[3].is_deleted
        assert page.items[0].modified_at.microsecond == 123456
        assert session.request.call_args.kwargs["params"]["token"] == "prev"
        assert session.request.call_args.kwargs["headers"]["Authorization"] == "Bearer token"

    def test_last_page_returns_delta_token(self, client, session):
        session.request.return_value = _response(payload={
            "value": [],
            "@odata.deltaLink": "https://graph.microsoft.com/v1.0/drives/x/root/delta?token=final",
        })
        page = client.get_change_feed_page("drive")
        assert not page.has_more
        assert page.next_token == "final"
        assert "token" not in session.request.call_args.kwargs["params"]

    def test_unknown_drive(self, client, session):
        session.request.return_value = _response(404)
        with pytest.raises(ContainerNotFoundError):
            client.get_change_feed_page("missing")

    def test_token_from_link(self):
        assert _token_from_link(None) is None
        assert _token_from_link("https://graph.microsoft.com/v1.0/drives/x/root/delta") is None
        assert _token_from_link("https://graph.microsoft.com/v1.0/drives/x/root/delta?token=abc%3D") == "abc="


class TestTransport:
    def test_transient_status_is_retried(self, client, session):
        session.request.side_effect = [_response(503), _response(429), _response(payload={"id": "drive-1"})]
        assert client.get_drive_id("site", "list") == "drive-1"
        assert session.request.call_count == 3

    def test_retry_after_is_honoured(self, session):
        token_provider = Mock()
        token_provider.get_token.return_value = "token"
        policy = RetryPolicy(max_attempts=2, base_delay_seconds=0, max_delay_seconds=10, jitter=False)
        client = GraphRepositoryClient(token_provider, retry_policy=policy, circuit_breaker=CircuitBreaker(),
                                       session=session)
        session.request.side_effect = [
            _response(429, headers={"Retry-After": "7"}), _response(payload={"id": "drive-1"}),
        ]

        with patch("cpsync.sync.resilience.time.sleep") as sleep:
            assert client.get_drive_id("site", "list") == "drive-1"

        sleep.assert_called_once_with(7.0)

    def test_retries_exhausted(self, client, session):
        session.request.return_value = _response(503)
        with pytest.raises(TransientTransportError):
            client.get_drive_id("site", "list")
        assert session.request.call_count == 3

    def test_timeout_is_transient(self, client, session):
        session.request.side_effect = [requests.exceptions.Timeout("slow"), _response(payload={"id": "drive-1"})]
        assert client.get_drive_id("site", "list") == "drive-1"

    def test_forbidden(self, client, session):
        session.request.return_value = _response(403)
        with pytest.raises(ForbiddenError):
            client.get_drive_item("drive", "item")
        assert session.request.call_count == 1

    def test_not_found_maps_to_item(self, client, session):
        session.request.return_value = _response(404)
        with pytest.raises(ItemNotFoundError):
            client.get_drive_item_id("site", "list", "7")


class TestIdentityCalls:
    def test_repository_ids_from_sharepoint_ids(self, client, session):
        session.request.return_value = _response(payload={
            "id": "item", "sharepointIds": {"siteId": "site", "listId": "list", "listItemId": 12},
        })
        ids = client.get_repository_ids("drive", "item")
        assert (ids.site_id, ids.list_id, ids.list_item_id) == ("site", "list", "12")


class TestListChanges:
    SITE_URL = "https://contoso.sharepoint.com/sites/dropoff"

    def test_changes_and_new_token(self, client, session):
        session.request.return_value = _response(payload={"value": [
            {"ItemId": 3, "ChangeType": 1, "ChangeToken": {"StringValue": "t1"}},
            {"ItemId": 4, "ChangeType": 3, "ChangeToken": {"StringValue": "t2"}},
        ]})

        page = client.get_list_changes(self.SITE_URL, "list-guid", "t0")

        assert [(c.item_id, c.change_type) for c in page.changes] == [("3", ChangeType.ADD), ("4", ChangeType.DELETE)]
        assert page.new_token == "t2"
        assert not page.has_more
        body = session.request.call_args.kwargs["json"]
        assert body["query"]["ChangeTokenStart"] == {"StringValue": "t0"}

    def test_empty_result_keeps_token(self, client, session):
        session.request.return_value = _response(payload={"value": []})
        assert client.get_list_changes(self.SITE_URL, "list-guid", "t0").new_token == "t0"

    def test_invalid_change_token(self, client, session):
        session.request.return_value = _response(400, payload={
            "odata.error": {
                "code": "-2130575172, Microsoft.SharePoint.SPException",
                "message": {"lang": "en-US", "value": "The change token refers to a time before the start of the current change log."},
            },
        })
        with pytest.raises(InvalidChangeTokenError):
            client.get_list_changes(self.SITE_URL, "list-guid", "stale")

    def test_stale_change_token_reported_as_server_error(self, client, session):
        session.request.return_value = _response(500, payload={
            "odata.error": {
                "code": "-2130575172, Microsoft.SharePoint.SPException",
                "message": {"lang": "en-US", "value": "The change token refers to a time before the start of the current change log."},
            },
        })
        with pytest.raises(InvalidChangeTokenError):
            client.get_list_changes(self.SITE_URL, "list-guid", "stale")
        assert session.request.call_count == 1

    def test_plain_server_error_is_still_transient(self, client, session):
        session.request.return_value = _response(500, payload={"odata.error": {"code": "-1, System.Exception"}})
        with pytest.raises(TransientTransportError):
            client.get_list_changes(self.SITE_URL, "list-guid", "token")
        assert session.request.call_count == 3

    def test_sharepoint_scope(self, client, session):
        session.request.return_value = _response(payload={"value": []})
        client.get_list_changes(self.SITE_URL, "list-guid", None)
        client.token_provider.get_token.assert_called_with("https://contoso.sharepoint.com/.default")
