"""
Typed records for manifest entries and the features built from them.
"""

import re
from dataclasses import dataclass, field
from posixpath import dirname
from typing import Any
from urllib.parse import urljoin

from pathvalidate import is_valid_filepath
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

FEATURE_TYPE_TERRITORY = "territory"
PRETTY_SEPARATOR = " / "

_VERSION_TOKEN = re.compile(r"(\d+)")


def default_data_path(feature_id: str, feature_type: str) -> str:
    """Relative data path of a feature whose manifest entry names none."""
    return f"{feature_id}/{feature_type}"


def version_key(version: str) -> tuple:
    """
    Builds a natural sort key for a version string, so that "v10" sorts
    after "v9" and "1.2.10" after "1.2.9".
    """
    parts = []
    for token in _VERSION_TOKEN.split(version.strip().lower()):
        if not token:
            continue
        parts.append((1, int(token), "") if token.isdigit() else (0, 0, token))
    return tuple(parts)


def _check_data_path(v: str) -> str:
    """Ensures a data path is a safe path relative to the storage root."""
    if v.startswith(("/", "\\")) or ".." in v.split("/"):
        raise ValueError(f"Path must be relative and inside storage: {v}")
    if not is_valid_filepath(v, platform="posix"):
        raise ValueError(f"Path contains invalid characters: {v}")
    return v


class FeatureRecord(BaseModel):
    """A single manifest entry describing an installable dataset."""

    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    id: str
    type: str
    pretty_name: str = Field(alias="prettyName")
    version: str
    datetime: str
    dependencies: list[str] = Field(default_factory=list)
    path: str = ""
    url: str | None = None
    size: int = 0

    @field_validator("id", "type", "version", "datetime")
    @classmethod
    def validate_not_empty(cls, v: str) -> str:
        if not v:
            raise ValueError("Field cannot be empty.")
        return v

    @field_validator("size")
    @classmethod
    def validate_size(cls, v: int) -> int:
        if v < 0:
            raise ValueError("Size cannot be negative.")
        return v

    @field_validator("path")
    @classmethod
    def validate_path(cls, v: str) -> str:
        return _check_data_path(v) if v else v

    @model_validator(mode="after")
    def default_path(self) -> "FeatureRecord":
        """
        Places the data file inside a directory named after the feature id
        when no path is given. A country's file and the directories of its
        sub-features ("XX" and "XX/postal") can then share one tree.
        """
        if not self.path:
            self.path = _check_data_path(default_data_path(self.id, self.type))
        if self.id in self.dependencies:
            raise ValueError(f"Feature '{self.id}' cannot depend on itself.")
        return self

    @classmethod
    def from_manifest(cls, feature_id: str, entry: dict[str, Any]) -> "FeatureRecord":
        """Validates a raw manifest entry keyed by feature id."""
        if not isinstance(entry, dict):
            raise ValueError("Manifest entry must be a JSON object.")
        return cls.model_validate({**entry, "id": feature_id})

    def to_manifest(self) -> dict[str, Any]:
        """Serializes the record back to its manifest form (without the id key)."""
        data = self.model_dump(by_alias=True, exclude={"id"}, exclude_none=True)
        if data.get("path") == default_data_path(self.id, self.type):
            data.pop("path")
        return data


class ServerUrlManifest(BaseModel):
    """Contents of `url.json`: where the provided list and data files live."""

    model_config = ConfigDict(populate_by_name=True)

    provided_list_url: str = Field(alias="providedListUrl")
    base_url: str = Field("", alias="baseUrl")

    @field_validator("provided_list_url")
    @classmethod
    def validate_provided_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"Provided list URL must be absolute, but got: {v}")
        return v

    @model_validator(mode="after")
    def default_base_url(self) -> "ServerUrlManifest":
        """Defaults the data base URL to the provided list's directory."""
        if not self.base_url:
            self.base_url = dirname(self.provided_list_url) + "/"
        elif not self.base_url.endswith("/"):
            self.base_url += "/"
        return self

    def feature_url(self, record: FeatureRecord) -> str:
        """Returns the download URL for a feature's data file."""
        return record.url or urljoin(self.base_url, record.path)


@dataclass(frozen=True)
class CatalogEntry:
    """An installed file as recorded in the catalog."""

    path: str
    version: str
    datetime: str


@dataclass
class Feature:
    """A feature in the graph: its manifest record plus computed state."""

    record: FeatureRecord
    requested: bool = False
    required: bool = False
    provided: bool = False
    data_available: bool = False
    available: bool = False
    compatible: bool = False
    installed: CatalogEntry | None = None
    sub_features: list[str] = field(default_factory=list)

    @property
    def id(self) -> str:
        return self.record.id

    @property
    def type(self) -> str:
        return self.record.type

    @property
    def pretty_name(self) -> str:
        return self.record.pretty_name

    @property
    def path(self) -> str:
        return self.record.path

    @property
    def dependencies(self) -> list[str]:
        return self.record.dependencies

    @property
    def is_country(self) -> bool:
        return self.record.type == FEATURE_TYPE_TERRITORY

    @property
    def sort_key(self) -> tuple[str, str]:
        return (self.pretty_name.casefold(), self.id)
