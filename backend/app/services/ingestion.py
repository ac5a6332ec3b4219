import enum
import logging
from dataclasses import dataclass
from typing import List, Optional

from app.core.config import settings
from app.models.repository import ManifestState, Repository
from app.schemas.catalog import dump_configs, dump_tools
from app.services.analysis import AnalysisService, ExtractionError
from app.services.catalog_rules import (
    BackfillNeed,
    backfill_need,
    derive_identity,
    has_manifest_keywords,
    manifest_target,
    mark_preferred,
    merge_categories,
)
from app.services.github_service import GitHubService
from app.services.repository_store import RepositoryFields, RepositoryStore
from app.services.tool_backfill import ToolBackfillService

logger = logging.getLogger(__name__)


class IngestionOutcome(str, enum.Enum):
    CREATED = "created"
    UPDATED = "updated"
    PROPOSED = "proposed"
    UNCHANGED = "unchanged"
    ICON_UPDATED = "icon_updated"
    SKIPPED_NO_KEYWORDS = "skipped_no_keywords"
    SKIPPED_NO_MANIFEST = "skipped_no_manifest"


@dataclass
class IngestionResult:
    full_name: str
    outcome: IngestionOutcome
    repository: Optional[Repository] = None


class RepositoryNotFoundError(Exception):
    """No repository with the requested id."""


class NoProposedManifestError(Exception):
    """Approval was requested but nothing is pending."""


class InvalidRepositoryNameError(ValueError):
    """A repository reference could not be parsed."""


@dataclass
class _Candidate:
    # Everything known about a README before it is analysed
    owner: str
    repo: str
    path: str
    full_name: str
    url: str
    display_name: str
    description: str
    stars: int
    language: str
    icon: str
    readme: str


class IngestionService:
    """
    Turns one (owner, repo, path) candidate into a catalog record.

    The service never commits: callers wrap each call in a transaction and
    commit once it returns, so a failed backfill leaves nothing behind.
    """

    def __init__(
        self,
        github: GitHubService,
        analysis: AnalysisService,
        backfill: ToolBackfillService,
        manifest_keywords: Optional[List[str]] = None,
    ):
        self.github = github
        self.analysis = analysis
        self.backfill = backfill
        self.manifest_keywords = manifest_keywords or settings.MANIFEST_KEYWORDS

    async def ingest(
        self,
        store: RepositoryStore,
        owner: str,
        repo: str,
        path: str,
        force: bool = False,
    ) -> IngestionResult:
        """
        Fetch, analyse and persist one README.

        Args:
            store: Store bound to the caller's session
            owner: Repository owner
            repo: Repository name
            path: README path inside the repository
            force: Re-analyse even if the README is unchanged, write the
                accepted manifest directly and refresh tool definitions

        Raises:
            GitHubAPIError: If repository metadata or the README cannot be fetched
            ToolBackfillError: If tool definitions were needed but could not be recovered
        """
        info = await self.github.get_repository(owner, repo)
        readme = await self.github.get_contents(info.owner, info.name, path)
        identity = derive_identity(info, path)

        if not has_manifest_keywords(readme, self.manifest_keywords):
            logger.info(f"No MCP server keywords in {identity.full_name}, skipping")
            return IngestionResult(identity.full_name, IngestionOutcome.SKIPPED_NO_KEYWORDS)

        existing = await store.get_by_full_name(identity.full_name)
        if existing is not None and existing.readme_content == readme and not force:
            if not existing.icon and info.owner_avatar_url:
                await store.update_icon(existing, info.owner_avatar_url)
                logger.info(f"Repository {identity.full_name} unchanged, filled in missing icon")
                return IngestionResult(identity.full_name, IngestionOutcome.ICON_UPDATED, existing)
            logger.info(f"Repository {identity.full_name} unchanged, skipping")
            return IngestionResult(identity.full_name, IngestionOutcome.UNCHANGED, existing)

        candidate = _Candidate(
            owner=info.owner,
            repo=info.name,
            path=path,
            full_name=identity.full_name,
            url=identity.url,
            display_name=existing.display_name if existing else info.name,
            description=info.description,
            stars=info.stars,
            language=info.language,
            icon=info.owner_avatar_url,
            readme=readme,
        )
        return await self._analyze_and_save(store, candidate, existing, force)

    async def reanalyze(self, store: RepositoryStore, repo_id: int, force: bool = False) -> IngestionResult:
        """
        Re-run extraction on the stored README of an existing record.

        Raises:
            RepositoryNotFoundError: If `repo_id` is unknown
            ToolBackfillError: If tool definitions were needed but could not be recovered
        """
        existing = await store.get_by_id(repo_id)
        if existing is None:
            raise RepositoryNotFoundError(f"Repository {repo_id} not found")

        owner, _, rest = existing.full_name.partition("/")
        repo = rest.split("/", 1)[0]
        candidate = _Candidate(
            owner=owner,
            repo=repo,
            path=existing.path,
            full_name=existing.full_name,
            url=existing.url,
            display_name=existing.display_name,
            description=existing.description,
            stars=existing.stars,
            language=existing.language,
            icon=existing.icon,
            readme=existing.readme_content,
        )
        return await self._analyze_and_save(store, candidate, existing, force)

    async def approve_proposed(self, store: RepositoryStore, repo_id: int) -> Repository:
        """
        Promote the pending proposal to the accepted manifest.

        Raises:
            RepositoryNotFoundError: If `repo_id` is unknown
            NoProposedManifestError: If there is nothing to approve
        """
        repository = await store.get_by_id(repo_id)
        if repository is None:
            raise RepositoryNotFoundError(f"Repository {repo_id} not found")
        if repository.manifest_state is not ManifestState.PROPOSED:
            raise NoProposedManifestError(f"Repository {repository.full_name} has no proposed manifest")

        await store.update_manifest(repository, list(repository.proposed_manifest))
        await store.update_proposed_manifest(repository, None)
        logger.info(f"Approved proposed manifest for {repository.full_name}")
        return repository

    async def add_repository(self, store: RepositoryStore, reference: str, force: bool = False) -> IngestionResult:
        """
        Ingest a single repository named by `owner/repo[/sub/dir]` or a GitHub URL.

        Raises:
            InvalidRepositoryNameError: If the reference cannot be parsed
        """
        reference = (reference or "").strip().strip("/")
        if reference.startswith(("http://", "https://", "git@")):
            parsed = self.github.parse_github_url(reference)
            if not parsed:
                raise InvalidRepositoryNameError(f"Not a GitHub repository URL: {reference}")
            owner, repo, subdir = parsed
        else:
            parts = [part for part in reference.split("/") if part]
            if len(parts) < 2:
                raise InvalidRepositoryNameError(f"Expected owner/repo[/path], got: {reference!r}")
            owner, repo, subdir = parts[0], parts[1], "/".join(parts[2:])

        path = f"{subdir}/README.md" if subdir else "README.md"
        return await self.ingest(store, owner, repo, path, force=force)

    async def _analyze_and_save(
        self,
        store: RepositoryStore,
        candidate: _Candidate,
        existing: Optional[Repository],
        force: bool,
    ) -> IngestionResult:
        target = manifest_target(existing, force)

        try:
            analysis = await self.analysis.analyze_readme(
                candidate.full_name,
                candidate.readme,
                existing.manifest if existing else None,
            )
        except ExtractionError as e:
            logger.error(f"Error analyzing repository {candidate.full_name}: {e}")
            return IngestionResult(candidate.full_name, IngestionOutcome.SKIPPED_NO_MANIFEST, existing)

        if not analysis.configs:
            logger.info(f"No MCP server found in repository {candidate.full_name}")
            return IngestionResult(candidate.full_name, IngestionOutcome.SKIPPED_NO_MANIFEST, existing)

        preferred = mark_preferred(analysis.configs)
        metadata = merge_categories(existing.metadata_ if existing else None, analysis.category)

        tool_definitions = existing.tool_definitions if existing else None
        if backfill_need(preferred, existing, force) is BackfillNeed.REQUIRED:
            # Failure propagates: nothing about this candidate gets persisted
            tools = await self.backfill.backfill(candidate.owner, candidate.repo, candidate.path, candidate.readme)
            tool_definitions = dump_tools(tools)

        fields = RepositoryFields(
            full_name=candidate.full_name,
            path=candidate.path,
            url=candidate.url,
            display_name=analysis.name or candidate.display_name,
            description=analysis.description or candidate.description,
            stars=candidate.stars,
            language=candidate.language,
            icon=candidate.icon,
            readme_content=candidate.readme,
            configs=dump_configs(analysis.configs),
            metadata=metadata,
            tool_definitions=tool_definitions,
        )
        repository, created = await store.save(fields, target)

        if created:
            outcome = IngestionOutcome.CREATED
        elif target is ManifestState.PROPOSED:
            outcome = IngestionOutcome.PROPOSED
        else:
            outcome = IngestionOutcome.UPDATED
        return IngestionResult(candidate.full_name, outcome, repository)
