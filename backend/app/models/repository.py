"""Repository model: one catalog entry per discovered README."""
import enum
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import Integer, String, Text, JSON, DateTime
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ManifestState(str, enum.Enum):
    """Review state of a repository's launch manifest."""
    ABSENT = "absent"
    ACCEPTED = "accepted"
    PROPOSED = "proposed"


class Repository(Base):
    """
    SQLAlchemy model for a cataloged MCP server repository.

    One row exists per repository *plus subdirectory*, so monorepos that ship
    several servers produce several rows. `full_name` is the unique key used
    for upserts.

    Attributes:
        full_name: owner/repo[/subpath], unique
        path: Location of the README inside the repository
        readme_content: README text at last fetch, used for change detection
        manifest: Accepted list of server configs (NULL when none yet)
        proposed_manifest: Pending re-analysis awaiting approval (NULL when none)
        tool_definitions: Discovered tools (NULL until the first backfill)
        metadata_: String map stored in the `metadata` column; holds `categories`
    """
    __tablename__ = "repositories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)

    # Identity
    full_name: Mapped[str] = mapped_column(String(512), unique=True, index=True, nullable=False)
    path: Mapped[str] = mapped_column(String(1024), default="")

    # Descriptive fields
    display_name: Mapped[str] = mapped_column(String(512), default="")
    description: Mapped[str] = mapped_column(Text, default="")
    url: Mapped[str] = mapped_column(String(1024), default="")
    stars: Mapped[int] = mapped_column(Integer, default=0, index=True)
    language: Mapped[str] = mapped_column(String(128), default="")
    icon: Mapped[str] = mapped_column(String(1024), default="")

    # Content snapshot used as a change-detection fingerprint
    readme_content: Mapped[str] = mapped_column(Text, default="")

    # JSON blobs
    manifest: Mapped[Optional[List[Dict[str, Any]]]] = mapped_column(JSON, nullable=True)
    proposed_manifest: Mapped[Optional[List[Dict[str, Any]]]] = mapped_column(JSON, nullable=True)
    tool_definitions: Mapped[Optional[List[Dict[str, Any]]]] = mapped_column(JSON, nullable=True)
    # `metadata` is reserved on declarative classes, hence the trailing underscore
    metadata_: Mapped[Dict[str, str]] = mapped_column("metadata", JSON, default=dict)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    @property
    def has_accepted_manifest(self) -> bool:
        return bool(self.manifest)

    @property
    def manifest_state(self) -> ManifestState:
        if self.proposed_manifest:
            return ManifestState.PROPOSED
        if self.manifest:
            return ManifestState.ACCEPTED
        return ManifestState.ABSENT

    @property
    def categories(self) -> List[str]:
        raw = (self.metadata_ or {}).get("categories", "")
        return [tag.strip() for tag in raw.split(",") if tag.strip()]

    def __repr__(self) -> str:
        return f"<Repository {self.full_name} ({self.manifest_state.value})>"
