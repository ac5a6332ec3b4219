import asyncio
import logging
import re
from typing import Iterable, List, Optional

from app.core.config import settings
from app.schemas.github import CodeSearchResult
from app.services.github_service import GitHubAPIError, GitHubService

logger = logging.getLogger(__name__)

# github.com/<owner>/<repo> links inside aggregator READMEs
REPO_LINK_PATTERN = re.compile(r"github\.com/([A-Za-z0-9_.-]+/[A-Za-z0-9_.-]+)")


def extract_repo_links(content: str) -> List[str]:
    """Return owner/repo names linked from `content`, first occurrence order, no repeats."""
    links: List[str] = []
    seen = set()
    for match in REPO_LINK_PATTERN.findall(content):
        name = match.rstrip(".")
        if name.endswith(".git"):
            name = name[:-4]
        key = name.lower()
        if key in seen:
            continue
        seen.add(key)
        links.append(name)
    return links


def dedupe_candidates(results: Iterable[CodeSearchResult]) -> List[CodeSearchResult]:
    """Keep one candidate per (repository full name, path)."""
    unique = {}
    for result in results:
        unique.setdefault(result.key, result)
    return list(unique.values())


class DiscoveryService:
    """
    Finds README files that are likely to contain an MCP launch manifest.

    1. Harvest repository links from a few well-known aggregator READMEs.
    2. Search those repositories in batches with a scoped code-search query.
    3. Page through an unscoped code search for the same pattern.
    4. Deduplicate by (repository, path).
    """

    def __init__(
        self,
        github: GitHubService,
        seed_repositories: Optional[List[str]] = None,
        batch_size: Optional[int] = None,
        delay_seconds: Optional[float] = None,
        max_pages: Optional[int] = None,
    ):
        self.github = github
        self.seed_repositories = seed_repositories if seed_repositories is not None else settings.SEED_REPOSITORIES
        self.batch_size = batch_size or settings.SEARCH_BATCH_SIZE
        self.delay_seconds = settings.SEARCH_DELAY_SECONDS if delay_seconds is None else delay_seconds
        self.max_pages = max_pages or settings.SEARCH_MAX_PAGES
        self.search_suffix = f"{settings.SEARCH_KEYWORD} filename:{settings.SEARCH_FILENAME}"

    async def harvest_seed_links(self) -> List[str]:
        links: List[str] = []
        seen = set()
        for seed in self.seed_repositories:
            owner, _, repo = seed.partition("/")
            try:
                content = await self.github.get_contents(owner, repo, "README.md")
            except GitHubAPIError as e:
                logger.error(f"Error getting README for {seed}: {e}")
                continue
            for link in extract_repo_links(content):
                if link.lower() not in seen:
                    seen.add(link.lower())
                    links.append(link)

        logger.info(f"Found {len(links)} repos to check")
        return links

    async def search_seeded(self, repo_links: List[str], limit: int) -> List[CodeSearchResult]:
        """One scoped query per batch of repositories."""
        found: List[CodeSearchResult] = []
        batches = [repo_links[i:i + self.batch_size] for i in range(0, len(repo_links), self.batch_size)]

        for number, batch in enumerate(batches, start=1):
            scope = " ".join(f"repo:{name}" for name in batch)
            query = f"{scope} {self.search_suffix}"
            try:
                page = await self.github.search_code(query)
            except GitHubAPIError as e:
                logger.error(f"Error searching batch {number}: {e}")
            else:
                logger.info(f"Found {len(page.results)} repos in batch {number}")
                found.extend(page.results)

            if len(found) >= limit:
                break
            if number < len(batches):
                await asyncio.sleep(self.delay_seconds)
        return found

    async def search_global(self, limit: int) -> List[CodeSearchResult]:
        """Page through the unscoped query until results run out or `limit` is reached."""
        found: List[CodeSearchResult] = []
        page_number: Optional[int] = 1

        while page_number is not None and page_number <= self.max_pages and len(found) < limit:
            try:
                page = await self.github.search_code(self.search_suffix, page=page_number)
            except GitHubAPIError as e:
                logger.error(f"Error searching repositories (page {page_number}): {e}")
                page_number += 1
            else:
                logger.info(f"Found {len(page.results)} repositories on page {page_number}")
                found.extend(page.results)
                page_number = page.next_page

            if page_number is not None:
                await asyncio.sleep(self.delay_seconds)
        return found

    async def discover(self, limit: Optional[int] = None) -> List[CodeSearchResult]:
        """
        Run the full discovery pass.

        Args:
            limit: Stop searching once this many hits are collected

        Returns:
            Unique (repository, README path) candidates
        """
        limit = limit or settings.COLLECTION_LIMIT

        repo_links = await self.harvest_seed_links()
        found = await self.search_seeded(repo_links, limit)
        if len(found) < limit:
            found.extend(await self.search_global(limit - len(found)))

        candidates = dedupe_candidates(found)
        logger.info(f"Found {len(candidates)} unique repositories")
        return candidates
