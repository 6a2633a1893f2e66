"""Architecture document validation and loading."""
from __future__ import annotations

import enum
from typing import Any, Iterable, Mapping

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..persistence.models import Category
from .errors import ArchitectureValidationError, UnknownCategoryError
from .types import Architecture


class ArtifactType(str, enum.Enum):
    service = "service"
    resource = "resource"


class DependencyDocument(BaseModel):
    resource_id: str | None = Field(default=None, alias="resourceId")
    output: bool = False

    model_config = ConfigDict(populate_by_name=True, extra="allow")


class ResourceDocument(BaseModel):
    id: str | None = None
    service: str | None = None
    dependencies: dict[str, DependencyDocument] = Field(default_factory=dict)

    model_config = ConfigDict(extra="allow")


class ArchitectureDocument(BaseModel):
    ids: dict[str, Any] = Field(default_factory=dict)
    accounts: dict[str, Any] = Field(default_factory=dict)
    services: dict[str, dict[str, Any]] = Field(default_factory=dict)
    layers: dict[str, dict[str, Any]] = Field(default_factory=dict)
    resources: dict[str, ResourceDocument] = Field(default_factory=dict)

    model_config = ConfigDict(extra="forbid")


class ArtifactDocument(BaseModel):
    type: str
    name: str
    url: str | None = None
    crc32c: str | None = None

    model_config = ConfigDict(extra="allow")


def parse_category(name: Any) -> Category:
    """Resolve an entity category name, failing fast on anything unsupported."""
    try:
        return Category(name)
    except ValueError as exc:
        supported = ", ".join(category.value for category in Category)
        raise UnknownCategoryError(f"Unsupported category {name!r}; expected one of {supported}") from exc


def parse_categories(names: Iterable[Any] | None) -> list[Category] | None:
    if names is None:
        return None
    return [parse_category(name) for name in names]


def load_architecture(document: Mapping[str, Any] | None, label: str = "architecture") -> Architecture:
    """Validate a raw architecture document and wrap it without normalising values.

    Definitions are kept exactly as submitted so that structural comparison
    against previously deployed definitions is not disturbed by defaults.
    Top-level keys must be entity categories.
    """
    if document is None:
        raise ArchitectureValidationError(f"The {label} must be provided")
    if not isinstance(document, Mapping):
        raise ArchitectureValidationError(f"The {label} must be an object of categories")
    for key in document:
        parse_category(key)
    try:
        ArchitectureDocument.model_validate(document)
    except ValidationError as exc:
        raise ArchitectureValidationError(f"Malformed {label}: {exc}") from exc
    return Architecture(
        ids=dict(document.get("ids") or {}),
        accounts=dict(document.get("accounts") or {}),
        services=dict(document.get("services") or {}),
        layers=dict(document.get("layers") or {}),
        resources=dict(document.get("resources") or {}),
    )


def load_artifacts(artifacts: Iterable[Mapping[str, Any]] | None) -> list[ArtifactDocument]:
    """Validate the artifacts attached to a deployment request."""
    documents = []
    for artifact in artifacts or ():
        try:
            document = ArtifactDocument.model_validate(artifact)
        except ValidationError as exc:
            raise ArchitectureValidationError(f"Malformed artifact: {exc}") from exc
        try:
            ArtifactType(document.type)
        except ValueError as exc:
            raise UnknownCategoryError(f"Invalid artifact type {document.type!r} for {document.name}") from exc
        documents.append(document)
    return documents


__all__ = [
    "ArchitectureDocument",
    "ArtifactDocument",
    "ArtifactType",
    "load_architecture",
    "load_artifacts",
    "parse_categories",
    "parse_category",
]
