"""
Tests for metadata mapping, XML side-cars and callback views.
"""

import pytest
import xml.etree.ElementTree as ET
from datetime import datetime, timezone

from ..config import FieldMapping, FieldType
from ..error_tracker import DataIntegrityError
from ..metadata import MetadataMapper
from ..models import ObjectIdentifiers


@pytest.fixture
def mapper():
    return MetadataMapper([
        FieldMapping(field_name="Title", column_name="Title", required=True),
        FieldMapping(field_name="Source", column_name="Bron", export=False),
        FieldMapping(field_name="RetentionPeriod", column_name="Retention", type=FieldType.INTEGER, default_value=0),
        FieldMapping(field_name="PublicationDate", column_name="PublicationDate", type=FieldType.DATETIME),
        FieldMapping(field_name="Confidential", column_name="Confidential", type=FieldType.BOOLEAN),
        FieldMapping(field_name="ObjectId", column_name="ObjectId"),
    ])


def _drive_item(fields):
    return {
        "id": "item-1",
        "name": "Annual Report.PDF",
        "file": {"mimeType": "application/pdf"},
        "createdDateTime": "2024-01-01T10:00:00Z",
        "lastModifiedDateTime": "2024-01-02T10:00:00Z",
        "createdBy": {"user": {"displayName": "Ann Author", "email": "ann@example.org"}},
        "lastModifiedBy": {"user": {"displayName": "Ed Editor"}},
        "listItem": {"id": "1", "fields": fields},
    }


class TestHasMetadata:
    def test_empty_fields(self, mapper):
        assert not mapper.has_metadata({})

    def test_default_values_do_not_count(self, mapper):
        assert not mapper.has_metadata({"Retention": 0, "Title": None})
        assert not mapper.has_metadata({"Retention": "0"})

    def test_object_id_alone_does_not_count(self, mapper):
        assert not mapper.has_metadata({"ObjectId": "ZLD2024-1"})

    def test_value_differing_from_default(self, mapper):
        assert mapper.has_metadata({"Retention": 7})
        assert mapper.has_metadata({"Title": "Report"})


class TestRead:
    def test_typed_fields(self, mapper):
        metadata = mapper.read(ObjectIdentifiers(object_id="ZLD2024-1"), _drive_item({
            "Title": "Report", "Retention": "10", "PublicationDate": "2024-03-01T00:00:00Z",
            "Confidential": "Yes", "Bron": "Intranet",
        }))

        assert metadata.file_extension == "pdf"
        assert metadata.mime_type == "application/pdf"
        assert metadata.created_by == "Ann Author"
        assert metadata.author_email == "ann@example.org"
        assert metadata.modified_by == "Ed Editor"
        assert metadata.fields["RetentionPeriod"] == 10
        assert metadata.fields["Confidential"] is True
        assert mapper.publication_date(metadata) == datetime(2024, 3, 1, tzinfo=timezone.utc)
        assert mapper.missing_required(metadata) == []

    def test_missing_required(self, mapper):
        metadata = mapper.read(ObjectIdentifiers(), _drive_item({"Bron": "Intranet"}))
        assert mapper.missing_required(metadata) == ["Title"]

    def test_invalid_integer(self, mapper):
        with pytest.raises(DataIntegrityError):
            mapper.read(ObjectIdentifiers(), _drive_item({"Retention": "ten"}))

    def test_repository_fields(self, mapper):
        metadata = mapper.read(ObjectIdentifiers(), _drive_item({
            "Title": "Report", "PublicationDate": "2024-03-01T00:00:00Z", "ObjectId": "ZLD2024-1",
        }))
        assert mapper.to_repository_fields(metadata) == {
            "Title": "Report", "PublicationDate": "2024-03-01T00:00:00+00:00",
        }


class TestRendering:
    def test_xml_side_car(self, mapper):
        metadata = mapper.read(ObjectIdentifiers(object_id="ZLD2024-1"), _drive_item({
            "Title": "Report", "Bron": "Intranet", "Confidential": False,
        }))

        root = ET.fromstring(mapper.to_xml(metadata))

        assert root.tag == "Document"
        assert root.get("id") == "ZLD2024-1"
        assert root.findtext("FileName") == "Annual Report.PDF"
        assert root.findtext("CreatedOn") == "2024-01-01T10:00:00+00:00"
        assert root.findtext("Title") == "Report"
        assert root.findtext("Confidential") == "false"
        assert root.find("Source") is None

    def test_xml_requires_object_id(self, mapper):
        metadata = mapper.read(ObjectIdentifiers(), _drive_item({"Title": "Report"}))
        with pytest.raises(DataIntegrityError):
            mapper.to_xml(metadata)

    def test_callback_view(self, mapper):
        metadata = mapper.read(ObjectIdentifiers(object_id="ZLD2024-1"), _drive_item({
            "Title": "Report", "PublicationDate": "2024-03-01T00:00:00Z",
        }))

        view = mapper.to_callback_view(metadata)

        assert view["ObjectId"] == "ZLD2024-1"
        assert view["Metadata"]["FileExtension"] == "pdf"
        additional = view["Metadata"]["AdditionalMetadata"]
        assert additional["PublicationDate"] == "2024-03-01T00:00:00+00:00"
        assert "Source" not in additional
