import json
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

# Version 1 documents were written without a schema_version key and may lack
# link_type, max_downloads, root_path and cancel_json_file.
SCHEMA_VERSION = 2


class AccessType(str, Enum):
    PUBLIC = "public"
    REGISTERED = "registered"


class LinkRecord(BaseModel):
    """One persisted token. Attribute names are ours, aliases are the document keys."""

    model_config = ConfigDict(populate_by_name=True, coerce_numbers_to_str=True)

    schema_version: int = SCHEMA_VERSION
    token: str
    owner_id: str = Field(alias="user_id")
    owner_name: str = Field("Unknown", alias="user_name")
    file_reference: str = Field(alias="file_hash")
    root_path: str = ""
    file_name: str
    file_size: int = Field(0, ge=0)
    access_type: AccessType = Field(AccessType.PUBLIC, alias="link_type")
    wait_seconds: int = Field(0, ge=0)
    max_downloads: int = Field(0, ge=0)
    download_count: int = Field(0, ge=0)
    created_at: int
    expires_at: int
    last_download_at: int | None = None
    auto_delete_on_expiry: bool = Field(True, alias="cancel_json_file")

    @model_validator(mode="after")
    def _expiry_after_creation(self) -> "LinkRecord":
        if self.expires_at <= self.created_at:
            raise ValueError("expires_at must be later than created_at")
        return self

    @classmethod
    def from_document(cls, document: dict[str, Any]) -> "LinkRecord":
        document = dict(document)
        document.setdefault("schema_version", 1)
        return cls.model_validate(document)

    @classmethod
    def from_json(cls, raw: str | bytes) -> "LinkRecord":
        document = json.loads(raw)
        if not isinstance(document, dict):
            raise ValueError("link document must be a JSON object")
        return cls.from_document(document)

    def to_document(self) -> dict[str, Any]:
        document = self.model_dump(mode="json", by_alias=True)
        document["schema_version"] = SCHEMA_VERSION
        return document

    def to_json(self) -> str:
        return json.dumps(self.to_document(), indent=4)

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    def limit_reached(self) -> bool:
        return self.max_downloads > 0 and self.download_count >= self.max_downloads


class Owner(BaseModel):
    id: str = Field(min_length=1, max_length=128)
    name: str = "Unknown"


class CreateLinkRequest(BaseModel):
    owner_id: str = Field(min_length=1, max_length=128)
    owner_name: str | None = None
    file_hash: str
    file_name: str
    file_size: int = 0
    link_type: str = "public"
    expiration_minutes: int | None = None
    wait_seconds: int | None = None
    max_downloads: int = 0
    cancel_json_file: bool | None = None


class LinkPolicy(BaseModel):
    model_config = ConfigDict(frozen=True)

    file_reference: str
    file_name: str
    file_size: int
    access_type: AccessType
    expiration_minutes: int
    wait_seconds: int
    max_downloads: int
    auto_delete_on_expiry: bool


class CreateLinkResponse(BaseModel):
    success: bool = True
    token: str
    download_url: str
    expires_at: int


class LinkSummary(BaseModel):
    token: str
    owner_name: str
    file_name: str
    file_size: int
    access_type: AccessType
    wait_seconds: int
    max_downloads: int
    download_count: int
    created_at: int
    expires_at: int
    last_download_at: int | None
    auto_delete_on_expiry: bool
    is_expired: bool

    @classmethod
    def from_record(cls, record: LinkRecord, now: float) -> "LinkSummary":
        return cls(
            token=record.token,
            owner_name=record.owner_name,
            file_name=record.file_name,
            file_size=record.file_size,
            access_type=record.access_type,
            wait_seconds=record.wait_seconds,
            max_downloads=record.max_downloads,
            download_count=record.download_count,
            created_at=record.created_at,
            expires_at=record.expires_at,
            last_download_at=record.last_download_at,
            auto_delete_on_expiry=record.auto_delete_on_expiry,
            is_expired=record.is_expired(now),
        )


class LinkListResponse(BaseModel):
    success: bool = True
    links: list[LinkSummary]


class ConfigResponse(BaseModel):
    expiration_minutes: list[int]
    wait_seconds: list[int]
    default_auto_delete: bool
    max_downloads_ceiling: int
    registered_links_enabled: bool


class LinkStatus(BaseModel):
    token: str
    file_name: str
    file_size: int
    access_type: AccessType
    download_count: int
    max_downloads: int
    wait_seconds: int
    wait_remaining: int
    expires_at: int
