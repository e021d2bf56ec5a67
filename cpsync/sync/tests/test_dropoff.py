"""
Tests for drop-off item processing.
"""

import pytest
import tempfile
from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import Mock

from ..config import FieldMapping, LocationMapping, SyncConfig, WebhookListConfig
from ..dropoff import DropOffProcessor
from ..error_tracker import DataIntegrityError
from ..identity import IdentityResolver
from ..mailer import AuthorNotifier
from ..metadata import MetadataMapper
from ..minter import ObjectIdMinter, SequenceCounter
from ..table_store import IdentityTable, SettingsTable, TableStore
from .mock_repository import MockRepositoryClient

DROPOFF = WebhookListConfig(
    id="dropoff", site_id="dsite", site_url="https://contoso.sharepoint.com/sites/dropoff", list_id="dlist",
)
METADATA = {"Title": "Report", "Classification": "Public", "Source": "Intranet"}


@pytest.fixture
def broker():
    with tempfile.TemporaryDirectory() as temp_dir:
        store = TableStore(storage_directory=temp_dir)
        identities = IdentityTable(store)
        repository = MockRepositoryClient()
        repository.add_drive("dsite", "dlist", "ddrive")
        repository.add_drive("tsite", "tlist", "tdrive")

        config = SyncConfig(
            name="test",
            metadata_mapping=[
                FieldMapping(field_name="Title", column_name="Title", required=True),
                FieldMapping(field_name="Classification", column_name="Classification"),
            ],
            location_mapping=[LocationMapping(
                classification="Public", source="Intranet", site_id="tsite", list_id="tlist",
                external_reference_list_id="refs",
            )],
            mail_sender="broker@example.org",
        )
        resolver = IdentityResolver(repository, identities, config.location_mapping)
        minter = ObjectIdMinter(
            resolver, identities, SequenceCounter(SettingsTable(store)), prefix="ZLD",
            clock=lambda: datetime(2024, 5, 17, tzinfo=timezone.utc),
        )
        processor = DropOffProcessor(
            repository, config, resolver, minter, MetadataMapper(config.metadata_mapping),
            AuthorNotifier(repository, config.mail_sender),
        )

        def submit(fields=None, list_fields=None, content=b"draft"):
            repository.add_document("ddrive", "d-1", "1", name="report.pdf", fields=fields or METADATA, content=content)
            repository.add_list_item("dsite", "dlist", "1", dict({"IsComplete": True}, **(list_fields or METADATA)),
                                     name="report.pdf")

        yield SimpleNamespace(
            repository=repository, identities=identities, processor=processor, submit=submit,
        )


def _target_documents(repository):
    return {key: doc for key, doc in repository.documents.items() if key[0] == "tdrive"}


class TestDropOffProcessor:
    """Routing drop-off items to their target library."""

    def test_incomplete_item_is_skipped(self, broker):
        broker.submit(list_fields={"IsComplete": False, **METADATA})

        assert broker.processor.process(DROPOFF, "1") is None
        assert broker.repository.field_updates == []

    def test_processed_item_is_skipped(self, broker):
        broker.submit(list_fields={**METADATA, "Status": "Verwerkt"})
        assert broker.processor.process(DROPOFF, "1") is None

    def test_first_submission_creates_and_mints(self, broker):
        broker.submit()

        assert broker.processor.process(DROPOFF, "1") is True

        record = broker.identities.get("ZLD2024-1")
        assert (record.site_id, record.list_id, record.drive_id) == ("tsite", "tlist", "tdrive")
        assert record.external_reference_list_id == "refs"
        target = broker.repository.documents[("tdrive", record.drive_item_id)]
        assert target["content"] == b"draft"
        assert target["graph"]["name"] == "report.pdf"
        assert target["graph"]["listItem"]["fields"]["Title"] == "Report"

        dropoff_fields = broker.repository.list_items[("dsite", "dlist", "1")]["fields"]
        assert dropoff_fields["Status"] == "Verwerkt"
        assert dropoff_fields["ObjectId"] == "ZLD2024-1"
        assert broker.repository.mails[-1]["subject"] == "Drop-off file processed: ZLD2024-1"
        assert broker.repository.mails[-1]["recipient"] == "author@example.org"

    def test_resubmission_replaces_content(self, broker):
        broker.submit()
        broker.processor.process(DROPOFF, "1")
        broker.submit(list_fields={**METADATA, "ObjectId": "ZLD2024-1"}, content=b"final")

        assert broker.processor.process(DROPOFF, "1") is True

        targets = _target_documents(broker.repository)
        assert len(targets) == 1
        assert list(targets.values())[0]["content"] == b"final"
        assert broker.identities.count() == 1

    def test_unmapped_location_marks_error(self, broker):
        broker.submit(list_fields={**METADATA, "Classification": "Secret"})

        assert broker.processor.process(DROPOFF, "1") is False

        assert broker.repository.list_items[("dsite", "dlist", "1")]["fields"]["Status"] == "Er gaat iets mis"
        assert broker.repository.mails[-1]["subject"] == "Drop-off file could not be processed: report.pdf"
        assert _target_documents(broker.repository) == {}

    def test_missing_required_metadata(self, broker):
        broker.submit(fields={"Classification": "Public"})
        assert broker.processor.process(DROPOFF, "1") is False
        assert broker.identities.count() == 0

    def test_upload_is_rolled_back_when_minting_fails(self, broker):
        broker.submit()
        broker.processor.minter = Mock()
        broker.processor.minter.mint.side_effect = DataIntegrityError("Failed to register")

        assert broker.processor.process(DROPOFF, "1") is False

        assert _target_documents(broker.repository) == {}
        assert broker.repository.deleted_items[0][0] == "tdrive"
