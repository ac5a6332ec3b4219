import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.repository import ManifestState, Repository

logger = logging.getLogger(__name__)

SORT_COLUMNS = {
    "stars": Repository.stars,
    "name": Repository.full_name,
    "id": Repository.id,
}


@dataclass
class RepositoryFields:
    """Everything ingestion derives for one record, ready to be written."""
    full_name: str
    path: str
    url: str
    display_name: str
    description: str
    stars: int
    language: str
    icon: str
    readme_content: str
    configs: List[Dict[str, Any]]
    metadata: Dict[str, str] = field(default_factory=dict)
    tool_definitions: Optional[List[Dict[str, Any]]] = None


class RepositoryStore:
    """
    Access layer for the `repositories` table, addressed by full_name.

    Note:
        Methods flush but never commit. The caller owns the transaction so an
        ingestion is persisted exactly once, or not at all.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_full_name(self, full_name: str) -> Optional[Repository]:
        stmt = select(Repository).where(Repository.full_name == full_name)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_id(self, repo_id: int) -> Optional[Repository]:
        return await self.session.get(Repository, repo_id)

    async def save(self, fields: RepositoryFields, target: ManifestState) -> Tuple[Repository, bool]:
        """
        Insert or update the record for `fields.full_name`.

        Args:
            fields: Derived values for the record
            target: ACCEPTED writes `manifest` and clears any proposal,
                PROPOSED writes `proposed_manifest` and leaves `manifest` alone

        Returns:
            (record, created)
        """
        repository = await self.get_by_full_name(fields.full_name)
        created = repository is None

        if created:
            repository = Repository(full_name=fields.full_name)
            self.session.add(repository)

        repository.path = fields.path
        repository.url = fields.url
        repository.display_name = fields.display_name
        repository.description = fields.description
        repository.stars = fields.stars
        repository.language = fields.language
        repository.icon = fields.icon
        repository.readme_content = fields.readme_content
        repository.metadata_ = dict(fields.metadata)
        repository.tool_definitions = fields.tool_definitions

        if target is ManifestState.PROPOSED and not created:
            logger.info(f"Updating repository {fields.full_name} with proposed manifest")
            repository.proposed_manifest = fields.configs
        else:
            logger.info(f"{'Inserting' if created else 'Updating'} repository {fields.full_name}")
            repository.manifest = fields.configs
            repository.proposed_manifest = None

        await self.session.flush()
        return repository, created

    async def update_icon(self, repository: Repository, icon: str) -> None:
        repository.icon = icon
        await self.session.flush()

    async def update_metadata(self, repository: Repository, metadata: Dict[str, str]) -> None:
        repository.metadata_ = dict(metadata)
        await self.session.flush()

    async def update_manifest(self, repository: Repository, configs: List[Dict[str, Any]]) -> None:
        repository.manifest = configs
        await self.session.flush()

    async def update_proposed_manifest(
        self, repository: Repository, configs: Optional[List[Dict[str, Any]]]
    ) -> None:
        repository.proposed_manifest = configs
        await self.session.flush()

    async def update_tool_definitions(self, repository: Repository, tools: List[Dict[str, Any]]) -> None:
        repository.tool_definitions = tools
        await self.session.flush()

    async def list_repositories(
        self,
        tag: Optional[str] = None,
        sort: str = "stars",
        order: str = "desc",
        limit: int = 100,
        offset: int = 0,
    ) -> Tuple[List[Repository], int]:
        """
        Page through repositories, optionally only those carrying `tag`.

        Returns:
            (page of repositories, total number matching)
        """
        column = SORT_COLUMNS.get(sort, Repository.stars)
        ordering = column.asc() if order == "asc" else column.desc()

        if not tag or tag == "all":
            total = await self.session.scalar(select(func.count(Repository.id)))
            stmt = select(Repository).order_by(ordering, Repository.id).offset(offset).limit(limit)
            result = await self.session.execute(stmt)
            return list(result.scalars().all()), total or 0

        # Categories live in a comma-joined JSON string, so tag filtering is done here
        stmt = select(Repository).order_by(ordering, Repository.id)
        result = await self.session.execute(stmt)
        matching = [repository for repository in result.scalars().all() if tag in repository.categories]
        return matching[offset:offset + limit], len(matching)

    async def count(self, tag: Optional[str] = None) -> int:
        if not tag or tag == "all":
            return await self.session.scalar(select(func.count(Repository.id))) or 0
        _, total = await self.list_repositories(tag=tag, limit=0)
        return total

    async def search(self, query: str, field: str = "description") -> List[Repository]:
        """
        Case-insensitive substring search, ordered by stars.

        Args:
            query: Text to look for
            field: 'description' (description or display name) or 'readme'
        """
        pattern = f"%{query}%"
        if field == "readme":
            condition = Repository.readme_content.ilike(pattern)
        else:
            condition = or_(Repository.description.ilike(pattern), Repository.display_name.ilike(pattern))
        stmt = select(Repository).where(condition).order_by(Repository.stars.desc(), Repository.id)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())
