"""
Document metadata mapping.

Repository list columns are mapped to document metadata fields through a
table of ``FieldMapping`` descriptors built once from configuration. The
mapper reads typed metadata from a drive item, decides whether a file carries
metadata at all, and renders the XML side-car and the callback payload.
"""

import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from .config import FieldMapping, FieldType
from .error_tracker import DataIntegrityError
from .models import ObjectIdentifiers, parse_datetime

PUBLICATION_DATE_FIELD = "PublicationDate"
OBJECT_ID_FIELD = "ObjectId"


@dataclass
class DocumentMetadata:
    ids: ObjectIdentifiers
    file_name: str = ""
    file_extension: str = ""
    mime_type: str = ""
    created_on: Optional[datetime] = None
    created_by: str = ""
    modified_on: Optional[datetime] = None
    modified_by: str = ""
    author_email: str = ""
    fields: Dict[str, Any] = field(default_factory=dict)

    @property
    def object_id(self) -> str:
        return self.ids.object_id


def _format_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _json_value(value: Any) -> Any:
    return value.isoformat() if isinstance(value, datetime) else value


def _identity_display(identity_set: Optional[Dict[str, Any]]) -> str:
    user = (identity_set or {}).get("user") or {}
    return user.get("displayName") or user.get("email") or ""


class MetadataMapper:
    def __init__(self, mappings: List[FieldMapping]):
        self.mappings = list(mappings)
        self._by_field = {mapping.field_name: mapping for mapping in self.mappings}

    def mapping_for(self, field_name: str) -> Optional[FieldMapping]:
        return self._by_field.get(field_name)

    def coerce(self, mapping: FieldMapping, raw: Any) -> Any:
        """Convert a raw column value to the mapping's type."""
        if raw is None or raw == "":
            return None
        try:
            if mapping.type == FieldType.INTEGER:
                return int(raw)
            if mapping.type == FieldType.DATETIME:
                return parse_datetime(raw)
            if mapping.type == FieldType.BOOLEAN:
                if isinstance(raw, str):
                    return raw.strip().lower() in ("1", "true", "yes")
                return bool(raw)
        except (TypeError, ValueError) as e:
            raise DataIntegrityError(
                f"Column {mapping.column_name} has an invalid {mapping.type.value} value: {raw!r}"
            ) from e
        return raw if isinstance(raw, str) else str(raw)

    def has_metadata(self, fields: Dict[str, Any]) -> bool:
        """
        A file carries metadata when at least one mapped column holds a value
        that differs from the column's default.
        """
        for mapping in self.mappings:
            if mapping.field_name == OBJECT_ID_FIELD or mapping.column_name not in fields:
                continue
            value = fields[mapping.column_name]
            if value is None:
                continue
            if mapping.default_value is None:
                return True
            if self.coerce(mapping, value) != self.coerce(mapping, mapping.default_value):
                return True
        return False

    def read_fields(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        return {
            mapping.field_name: self.coerce(mapping, fields.get(mapping.column_name))
            for mapping in self.mappings
        }

    def read(self, ids: ObjectIdentifiers, drive_item: Dict[str, Any]) -> DocumentMetadata:
        """Build metadata from a drive item with its list item fields expanded."""
        name = drive_item.get("name", "")
        extension = name.rsplit(".", 1)[1].lower() if "." in name else ""
        list_item = drive_item.get("listItem") or {}
        created_by = drive_item.get("createdBy") or list_item.get("createdBy") or {}
        return DocumentMetadata(
            ids=ids,
            file_name=name,
            file_extension=extension,
            mime_type=(drive_item.get("file") or {}).get("mimeType", ""),
            created_on=parse_datetime(drive_item.get("createdDateTime")),
            created_by=_identity_display(created_by),
            modified_on=parse_datetime(drive_item.get("lastModifiedDateTime")),
            modified_by=_identity_display(drive_item.get("lastModifiedBy")),
            author_email=((created_by.get("user") or {}).get("email") or ""),
            fields=self.read_fields(list_item.get("fields") or {}),
        )

    def publication_date(self, metadata: DocumentMetadata) -> Optional[datetime]:
        value = metadata.fields.get(PUBLICATION_DATE_FIELD)
        return value if isinstance(value, datetime) else None

    def missing_required(self, metadata: DocumentMetadata) -> List[str]:
        return [
            mapping.field_name for mapping in self.mappings
            if mapping.required and metadata.fields.get(mapping.field_name) in (None, "")
        ]

    def to_repository_fields(self, metadata: DocumentMetadata) -> Dict[str, Any]:
        """Column values for writing the metadata onto a list item."""
        values = {}
        for mapping in self.mappings:
            value = metadata.fields.get(mapping.field_name)
            if value is None or mapping.field_name == OBJECT_ID_FIELD:
                continue
            values[mapping.column_name] = value.isoformat() if isinstance(value, datetime) else value
        return values

    def to_xml(self, metadata: DocumentMetadata) -> bytes:
        if not metadata.object_id:
            raise DataIntegrityError("No object id found for metadata while rendering XML")
        document = ET.Element("Document", {"id": metadata.object_id})
        for tag, value in (
            ("MimeType", metadata.mime_type),
            ("FileName", metadata.file_name),
            ("FileExtension", metadata.file_extension),
            ("CreatedOn", metadata.created_on),
            ("CreatedBy", metadata.created_by),
            ("ModifiedOn", metadata.modified_on),
            ("ModifiedBy", metadata.modified_by),
        ):
            ET.SubElement(document, tag).text = _format_value(value)
        for mapping in self.mappings:
            if not mapping.export:
                continue
            ET.SubElement(document, mapping.field_name).text = _format_value(metadata.fields.get(mapping.field_name))
        ET.indent(document)
        return ET.tostring(document, encoding="utf-8", xml_declaration=True)

    def to_callback_view(self, metadata: DocumentMetadata) -> Dict[str, Any]:
        return {
            "ObjectId": metadata.object_id,
            "Metadata": {
                "MimeType": metadata.mime_type,
                "FileName": metadata.file_name,
                "FileExtension": metadata.file_extension,
                "CreatedOn": _format_value(metadata.created_on),
                "CreatedBy": metadata.created_by,
                "ModifiedOn": _format_value(metadata.modified_on),
                "ModifiedBy": metadata.modified_by,
                "AdditionalMetadata": {
                    mapping.field_name: _json_value(metadata.fields.get(mapping.field_name))
                    for mapping in self.mappings
                    if mapping.export
                },
            },
        }
