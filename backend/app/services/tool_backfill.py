import logging
from typing import Dict, List, Optional, Tuple

from app.core.config import settings
from app.schemas.catalog import ToolDescriptor
from app.schemas.github import CodeSearchResult
from app.services.analysis import AnalysisService, ExtractionError
from app.services.github_service import GitHubAPIError, GitHubService

logger = logging.getLogger(__name__)

# (keyword, extension) pairs that find tool registrations:
# server.tool(...) in TypeScript and @mcp.tool() in Python
TOOL_SEARCHES: List[Tuple[str, str]] = [
    ("tool", "ts"),
    ("mcp.tool", "py"),
]


class ToolBackfillError(Exception):
    """Tool definitions could not be recovered for a repository."""


def readme_directory(readme_path: str) -> str:
    """'src/server/README.md' -> 'src/server/', 'README.md' -> ''."""
    if "/" not in readme_path:
        return ""
    return readme_path.rsplit("/", 1)[0] + "/"


def select_source_files(results: List[CodeSearchResult], readme_path: str) -> List[CodeSearchResult]:
    """
    Deduplicate search hits by (owner, repo, path) and keep only files under
    the README's directory, so sibling projects in a monorepo are ignored.
    """
    prefix = readme_directory(readme_path)
    seen: Dict[Tuple[str, str, str], CodeSearchResult] = {}
    for result in results:
        key = (result.owner, result.repo, result.path)
        if key in seen or not result.path.startswith(prefix):
            continue
        seen[key] = result
    return list(seen.values())


class ToolBackfillService:
    """Recovers the tool catalog of a repository by scanning its source."""

    def __init__(
        self,
        github: GitHubService,
        analysis: AnalysisService,
        max_source_chars: Optional[int] = None,
    ):
        self.github = github
        self.analysis = analysis
        self.max_source_chars = max_source_chars or settings.TOOL_SOURCE_MAX_CHARS

    async def find_source_files(self, owner: str, repo: str, readme_path: str) -> List[CodeSearchResult]:
        results: List[CodeSearchResult] = []
        for keyword, extension in TOOL_SEARCHES:
            query = f"{keyword} extension:{extension} repo:{owner}/{repo}"
            page = await self.github.search_code(query)
            results.extend(page.results)
        return select_source_files(results, readme_path)

    async def collect_source(self, files: List[CodeSearchResult]) -> str:
        chunks: List[str] = []
        size = 0
        for source_file in files:
            content = await self.github.get_contents(source_file.owner, source_file.repo, source_file.path)
            chunk = f"// File: {source_file.path}\n{content}\n"
            if size + len(chunk) > self.max_source_chars:
                logger.info(
                    f"Source for {source_file.owner}/{source_file.repo} truncated at "
                    f"{self.max_source_chars} characters"
                )
                chunks.append(chunk[: self.max_source_chars - size])
                break
            chunks.append(chunk)
            size += len(chunk)
        return "".join(chunks)

    async def backfill(self, owner: str, repo: str, readme_path: str, readme: str) -> List[ToolDescriptor]:
        """
        Search, fetch and summarise tool declarations for one repository.

        Args:
            owner: Repository owner
            repo: Repository name (without any subdirectory)
            readme_path: Path of the README the record was built from
            readme: README text, used when the source has no declarations

        Returns:
            Tool descriptors, possibly empty

        Raises:
            ToolBackfillError: If searching, fetching or extraction fails
        """
        try:
            files = await self.find_source_files(owner, repo, readme_path)
            logger.info(f"Found {len(files)} tool source files for {owner}/{repo}/{readme_path}")
            source = await self.collect_source(files)
            tools = await self.analysis.extract_tools(source, readme)
        except (GitHubAPIError, ExtractionError) as e:
            raise ToolBackfillError(f"Could not backfill tools for {owner}/{repo}: {e}") from e

        logger.info(f"Updating tool definitions for {owner}/{repo}/{readme_path}: {len(tools)} tools")
        return tools
