"""
Broker configuration schema.

Defines the YAML configuration for the document broker: which drives are
monitored, where exported artifacts go, how repository columns map to
document metadata, how drop-off lists are routed to their target libraries,
and which lists are watched through webhook subscriptions. Secrets are not
part of this file; they come from the environment (see ``cpsync.config``).
"""

import re
import yaml
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Union
from urllib.parse import urlparse
from pydantic import BaseModel, Field, field_validator, model_validator


OBJECT_ID_PREFIX_PATTERN = re.compile(r'^[A-Za-z]+$')


class FieldType(str, Enum):
    """Value types a mapped metadata column can carry."""
    STRING = "string"
    INTEGER = "integer"
    DATETIME = "datetime"
    BOOLEAN = "boolean"


class FieldMapping(BaseModel):
    """Maps one document metadata field to a repository list column."""
    field_name: str = Field(..., description="Metadata field name (e.g. PublicationDate)")
    column_name: str = Field(..., description="Repository list column name")
    type: FieldType = Field(default=FieldType.STRING, description="Value type")
    default_value: Optional[Any] = Field(None, description="Value treated as 'not filled in'")
    required: bool = Field(default=False, description="Whether the field must be set on create")
    export: bool = Field(default=True, description="Whether the field is written to the XML side-car")


class LocationMapping(BaseModel):
    """Routes a classification/source pair to a site, list and external reference list."""
    classification: str = Field(default="", description="Classification value")
    source: str = Field(default="", description="Source value")
    site_id: str = Field(..., description="Target site id")
    list_id: str = Field(..., description="Target list id")
    external_reference_list_id: str = Field(default="", description="List holding external references")
    folder_name: str = Field(default="", description="Optional target folder")


class WebhookListConfig(BaseModel):
    """A drop-off list watched through a SharePoint webhook subscription."""
    id: str = Field(..., description="Unique feed identifier")
    site_id: str = Field(..., description="Graph site id of the drop-off list")
    site_url: str = Field(..., description="Absolute SharePoint site URL")
    list_id: str = Field(..., description="Drop-off list id")
    completeness_column: str = Field(default="IsComplete", description="Boolean column marking an item ready")
    status_column: str = Field(default="Status", description="Processing status column")
    classification_column: str = Field(default="Classification", description="Column used for location routing")
    source_column: str = Field(default="Source", description="Column used for location routing")
    object_id_column: str = Field(default="ObjectId", description="Column holding the object id once registered")
    processed_status: str = Field(default="Verwerkt", description="Status written after successful processing")
    error_status: str = Field(default="Er gaat iets mis", description="Status written after a failure")

    @field_validator('site_url')
    @classmethod
    def validate_url(cls, v):
        """Validate URL format."""
        result = urlparse(v)
        if not all([result.scheme, result.netloc]):
            raise ValueError('Invalid URL format')
        return v.rstrip('/')


class WebhookConfig(BaseModel):
    """Webhook subscription settings."""
    notification_url: Optional[str] = Field(None, description="Public URL receiving notifications")
    client_state: str = Field(default="", description="Shared secret echoed by SharePoint")
    validity_days: int = Field(default=90, description="Requested subscription lifetime")
    renewal_horizon_days: int = Field(default=7, description="Renew when expiring within this many days")
    queue_name: str = Field(default="sharepointlistwebhooknotifications", description="Notification queue name")
    max_dequeue_count: int = Field(default=5, description="Attempts before a queue message is dropped")
    lists: List[WebhookListConfig] = Field(default_factory=list, description="Watched drop-off lists")

    @field_validator('validity_days')
    @classmethod
    def validate_validity(cls, v):
        # SharePoint caps list subscriptions at 180 days
        if v < 1 or v > 180:
            raise ValueError('validity_days must be between 1 and 180')
        return v


class SyncConfig(BaseModel):
    """Main configuration for the document broker."""
    version: str = Field(default="1.0.0", description="Configuration version")
    name: str = Field(..., description="Configuration name")
    description: Optional[str] = Field(None, description="Configuration description")

    # Identity
    object_id_prefix: str = Field(default="ZLD", description="Prefix of minted object ids")
    initial_sequence: int = Field(default=0, description="Sequence value before the first mint")

    # Delta synchronization
    containers: List[str] = Field(default_factory=list, description="Drive ids whose change feed is monitored")
    include_known_drives: bool = Field(default=True, description="Also monitor every drive with registered documents")
    max_workers: int = Field(default=1, description="Items exported in parallel per run")

    # Storage
    storage_directory: str = Field(default="./cache", description="Directory for the table store")
    content_directory: str = Field(default="./cache/blobs", description="Directory for the local content store")
    content_container: str = Field(default="content", description="Blob container receiving document content")
    metadata_container: str = Field(default="metadata", description="Blob container receiving XML side-cars")

    # Metadata and routing
    metadata_mapping: List[FieldMapping] = Field(default_factory=list, description="Metadata field mapping")
    location_mapping: List[LocationMapping] = Field(default_factory=list, description="Location mapping")

    # Callback
    callback_url: Optional[str] = Field(None, description="Third-party callback base URL")

    # Author notification
    mail_sender: Optional[str] = Field(None, description="Mailbox (UPN or id) used to notify drop-off authors")

    # Webhooks
    webhooks: WebhookConfig = Field(default_factory=WebhookConfig, description="Webhook settings")

    # Transport
    request_timeout: int = Field(default=30, description="Per request timeout in seconds")
    retry_attempts: int = Field(default=3, description="Attempts for transient repository failures")

    # Logging configuration
    log_level: str = Field(default="INFO", description="Logging level")
    log_file: Optional[str] = Field(None, description="Log file path")

    # External monitoring
    monitoring: Optional[Dict[str, Any]] = Field(None, description="External monitor settings")

    @field_validator('object_id_prefix')
    @classmethod
    def validate_prefix(cls, v):
        if not OBJECT_ID_PREFIX_PATTERN.match(v):
            raise ValueError('object_id_prefix must contain letters only')
        return v.upper()

    @field_validator('callback_url')
    @classmethod
    def validate_callback_url(cls, v):
        if v is None or v == "":
            return None
        result = urlparse(v)
        if not all([result.scheme, result.netloc]):
            raise ValueError('Invalid URL format')
        return v.rstrip('/')

    @model_validator(mode='after')
    def validate_field_names(self):
        """Field names must be unique so lookups by name are unambiguous."""
        names = [m.field_name for m in self.metadata_mapping]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"Duplicate metadata field mappings: {', '.join(duplicates)}")
        return self

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> 'SyncConfig':
        """Load configuration from YAML file."""
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {path}")

        with open(path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f)

        return cls(**data)

    def to_yaml(self, path: Union[str, Path]) -> None:
        """Save configuration to YAML file."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)

        data = self.model_dump(mode='json')

        with open(path, 'w', encoding='utf-8') as f:
            yaml.dump(data, f, default_flow_style=False, allow_unicode=True, sort_keys=False)

    def find_location(self, classification: str, source: str) -> Optional[LocationMapping]:
        """Location for a classification/source pair, case-insensitive."""
        for mapping in self.location_mapping:
            if mapping.classification.lower() == (classification or "").lower() \
                    and mapping.source.lower() == (source or "").lower():
                return mapping
        return None


def create_example_config() -> SyncConfig:
    """Create an example configuration for bootstrapping a deployment."""
    return SyncConfig(
        name="Example Broker Configuration",
        description="Two document libraries, one drop-off list",
        containers=["b!exampleDriveId"],
        metadata_mapping=[
            FieldMapping(field_name="Title", column_name="Title", required=True),
            FieldMapping(field_name="Author", column_name="Author"),
            FieldMapping(field_name="DocumentType", column_name="DocumentType"),
            FieldMapping(field_name="Classification", column_name="Classification", required=True),
            FieldMapping(field_name="Source", column_name="Source", required=True, export=False),
            FieldMapping(field_name="RetentionPeriod", column_name="RetentionPeriod", type=FieldType.INTEGER, default_value=0),
            FieldMapping(field_name="PublicationDate", column_name="PublicationDate", type=FieldType.DATETIME),
            FieldMapping(field_name="ArchiveDate", column_name="ArchiveDate", type=FieldType.DATETIME),
        ],
        location_mapping=[
            LocationMapping(
                classification="Public",
                source="Intranet",
                site_id="contoso.sharepoint.com,site-guid,web-guid",
                list_id="list-guid",
                external_reference_list_id="external-reference-list-guid",
            ),
        ],
        webhooks=WebhookConfig(
            notification_url="https://broker.example.org/webhook/notifications",
            client_state="change-me",
            lists=[
                WebhookListConfig(
                    id="dropoff",
                    site_id="contoso.sharepoint.com,dropoff-site-guid,dropoff-web-guid",
                    site_url="https://contoso.sharepoint.com/sites/dropoff",
                    list_id="dropoff-list-guid",
                ),
            ],
        ),
    )
