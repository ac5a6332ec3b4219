from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from app.models.repository import ManifestState, Repository


class _CamelResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class RepositorySummary(_CamelResponse):
    """Row shown in listings and search results."""
    id: int
    path: str
    full_name: str = Field(alias="fullName")
    display_name: str = Field(alias="displayName")
    url: str
    description: str
    stars: int
    language: str
    icon: str
    manifest: Optional[List[Dict[str, Any]]] = None
    metadata: Dict[str, str] = {}
    manifest_state: ManifestState = Field(alias="manifestState")

    @classmethod
    def from_record(cls, repository: Repository) -> "RepositorySummary":
        return cls(
            id=repository.id,
            path=repository.path or "",
            full_name=repository.full_name,
            display_name=repository.display_name or "",
            url=repository.url or "",
            description=repository.description or "",
            stars=repository.stars or 0,
            language=repository.language or "",
            icon=repository.icon or "",
            manifest=repository.manifest,
            metadata=repository.metadata_ or {},
            manifest_state=repository.manifest_state,
        )


class RepositoryDetail(RepositorySummary):
    readme_content: str = Field(alias="readmeContent")
    proposed_manifest: Optional[List[Dict[str, Any]]] = Field(default=None, alias="proposedManifest")
    tool_definitions: Optional[List[Dict[str, Any]]] = Field(default=None, alias="toolDefinitions")
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")
    updated_at: Optional[datetime] = Field(default=None, alias="updatedAt")

    @classmethod
    def from_record(cls, repository: Repository) -> "RepositoryDetail":
        summary = RepositorySummary.from_record(repository)
        return cls(
            **summary.model_dump(),
            readme_content=repository.readme_content or "",
            proposed_manifest=repository.proposed_manifest,
            tool_definitions=repository.tool_definitions,
            created_at=repository.created_at,
            updated_at=repository.updated_at,
        )


class CountResponse(BaseModel):
    count: int


class AddRepositoryRequest(_CamelResponse):
    full_name: str = Field(alias="fullName")
    force: bool = False


class IngestionResponse(_CamelResponse):
    status: str
    full_name: str = Field(alias="fullName")
    id: Optional[int] = None


class CollectionResponse(BaseModel):
    status: str
    force: bool
