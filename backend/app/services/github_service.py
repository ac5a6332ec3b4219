import asyncio
import base64
import logging
import re
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, TypeVar
from urllib.parse import parse_qs, quote, urlparse

import httpx
import redis.asyncio as redis
from redis.exceptions import RedisError

from app.core.config import settings
from app.schemas.github import CodeSearchPage, CodeSearchResult, RepositoryInfo

logger = logging.getLogger(__name__)

T = TypeVar("T")

# GitHub API constants
GITHUB_API_BASE = "https://api.github.com"
DEFAULT_TIMEOUT_SECONDS = 30.0
CACHE_TTL_SECONDS = 3600  # 1 hour
BACKOFF_FACTOR = 2

# GitHub URL patterns
GITHUB_URL_PATTERNS = [
    re.compile(r"^https?://(?:www\.)?github\.com/([^/]+)/([^/]+?)(?:\.git)?/?$"),
    re.compile(r"^git@github\.com:([^/]+)/([^/]+?)(?:\.git)?$"),
]
# https://github.com/owner/repo/tree/<branch>/<subdir>
GITHUB_TREE_URL_PATTERN = re.compile(
    r"^https?://(?:www\.)?github\.com/([^/]+)/([^/]+)/tree/[^/]+/(.+?)/?$"
)


class GitHubAPIError(Exception):
    """Raised when a GitHub API call fails."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class RateLimitError(GitHubAPIError):
    """GitHub refused the call because a rate limit is exhausted."""

    def __init__(self, message: str, reset_at: Optional[datetime] = None, status_code: Optional[int] = None):
        super().__init__(message, status_code)
        self.reset_at = reset_at


class RateLimitExceededError(GitHubAPIError):
    """Still rate limited after the maximum number of waits."""


class GitHubService:
    """
    Client for the parts of the GitHub REST API the catalog needs.

    Features:
    - Code search with page tracking
    - File content fetching (base64 and raw download fallback)
    - Repository metadata with optional Redis caching
    - Provider-directed rate-limit waits with a hard retry ceiling
    """

    def __init__(
        self,
        token: Optional[str] = None,
        redis_url: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        max_retries: Optional[int] = None,
        max_wait_seconds: Optional[float] = None,
    ):
        self._token = token
        self._redis_url = redis_url
        self._http_client = http_client
        self._redis_client: Optional[redis.Redis] = None
        self._redis_available = False
        self.max_retries = settings.RATE_LIMIT_MAX_RETRIES if max_retries is None else max_retries
        self.max_wait_seconds = (
            settings.RATE_LIMIT_MAX_WAIT_SECONDS if max_wait_seconds is None else max_wait_seconds
        )

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
            "User-Agent": "MCP-Catalog/1.0",
        }
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    def _get_http_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                base_url=GITHUB_API_BASE,
                headers=self._headers(),
                timeout=httpx.Timeout(DEFAULT_TIMEOUT_SECONDS),
            )
        return self._http_client

    async def _get_redis_client(self) -> Optional[redis.Redis]:
        """Get Redis client with connection validation."""
        if not self._redis_url:
            return None
        if self._redis_client is None:
            try:
                self._redis_client = redis.from_url(
                    self._redis_url,
                    decode_responses=True,
                    socket_timeout=5.0,
                    socket_connect_timeout=5.0,
                )
                # Test connection
                await self._redis_client.ping()
                self._redis_available = True
                logger.info("Redis connection established")
            except (RedisError, OSError, ValueError) as e:
                logger.warning(f"Redis connection failed: {e}. Proceeding without cache.")
                self._redis_available = False
                self._redis_client = None
                # Don't try again on every lookup
                self._redis_url = None

        return self._redis_client if self._redis_available else None

    def parse_github_url(self, url: str) -> Optional[Tuple[str, str, str]]:
        """
        Parse GitHub repository URL to extract owner, repository name and subdirectory.

        Supports various GitHub URL formats:
        - https://github.com/owner/repo
        - https://github.com/owner/repo.git
        - git@github.com:owner/repo.git
        - https://www.github.com/owner/repo
        - https://github.com/owner/repo/tree/main/src/server

        Args:
            url: GitHub repository URL

        Returns:
            Tuple of (owner, repo, subdirectory) if valid GitHub URL, None otherwise.
            subdirectory is "" when the URL points at the repository root.
        """
        if not url or not isinstance(url, str):
            return None

        url = url.strip()
        if not url:
            return None

        match = GITHUB_TREE_URL_PATTERN.match(url)
        if match:
            owner, repo, subdir = match.groups()
            return owner, repo, subdir

        for pattern in GITHUB_URL_PATTERNS:
            match = pattern.match(url)
            if match:
                owner, repo = match.groups()
                if repo.endswith('.git'):
                    repo = repo[:-4]
                return owner, repo, ""

        return None

    @staticmethod
    def _rate_limit_from_response(response: httpx.Response) -> Optional[RateLimitError]:
        """Return a RateLimitError if the response is a primary or secondary rate limit."""
        if response.status_code not in (403, 429):
            return None

        retry_after = response.headers.get("Retry-After")
        if retry_after and retry_after.isdigit():
            reset_at = datetime.fromtimestamp(
                datetime.now(timezone.utc).timestamp() + int(retry_after), tz=timezone.utc
            )
            return RateLimitError("GitHub secondary rate limit hit", reset_at, response.status_code)

        if response.headers.get("X-RateLimit-Remaining") == "0":
            reset_header = response.headers.get("X-RateLimit-Reset")
            reset_at = None
            if reset_header and reset_header.isdigit():
                reset_at = datetime.fromtimestamp(int(reset_header), tz=timezone.utc)
            return RateLimitError("GitHub API rate limit exceeded", reset_at, response.status_code)

        if response.status_code == 429:
            return RateLimitError("GitHub API rate limit exceeded", None, response.status_code)
        return None

    async def _get(self, url: str, params: Optional[Dict[str, Any]] = None) -> httpx.Response:
        client = self._get_http_client()
        try:
            response = await client.get(url, params=params)
        except httpx.HTTPError as e:
            raise GitHubAPIError(f"Request to {url} failed: {e}") from e

        rate_limit = self._rate_limit_from_response(response)
        if rate_limit:
            raise rate_limit

        if response.status_code == 404:
            raise GitHubAPIError(f"{url} not found or private", 404)

        if response.is_error:
            raise GitHubAPIError(
                f"GitHub API returned {response.status_code} for {url}: {response.text[:200]}",
                response.status_code,
            )
        return response

    def _wait_seconds(self, error: RateLimitError, attempt: int) -> float:
        if error.reset_at is not None:
            wait = (error.reset_at - datetime.now(timezone.utc)).total_seconds()
            # Reset timestamps have one-second resolution
            wait = max(wait, 0.0) + 1.0
        else:
            wait = float(BACKOFF_FACTOR ** (attempt + 1))
        return min(wait, self.max_wait_seconds)

    async def _with_rate_limit_retry(self, description: str, call: Callable[[], Awaitable[T]]) -> T:
        """
        Run `call`, sleeping until the provider's reset time whenever it is rate limited.

        Gives up with RateLimitExceededError after `max_retries` waits.
        """
        attempt = 0
        while True:
            try:
                return await call()
            except RateLimitError as e:
                if attempt >= self.max_retries:
                    raise RateLimitExceededError(
                        f"Still rate limited after {attempt} retries: {description}",
                        e.status_code,
                    ) from e
                wait = self._wait_seconds(e, attempt)
                logger.warning(
                    f"Hit rate limit on {description}, waiting {wait:.0f}s for reset "
                    f"(retry {attempt + 1}/{self.max_retries})"
                )
                await asyncio.sleep(wait)
                attempt += 1

    @staticmethod
    def _next_page(response: httpx.Response) -> Optional[int]:
        next_link = response.links.get("next", {}).get("url")
        if not next_link:
            return None
        page = parse_qs(urlparse(next_link).query).get("page")
        if not page or not page[0].isdigit():
            return None
        return int(page[0])

    async def search_code(self, query: str, page: int = 1, per_page: Optional[int] = None) -> CodeSearchPage:
        """
        Run one page of a GitHub code search.

        Args:
            query: Search query, e.g. 'mcpServers filename:README.md'
            page: 1-based page number
            per_page: Page size (GitHub caps this at 100)

        Returns:
            CodeSearchPage with the hits and the next page number, if any

        Raises:
            RateLimitExceededError: If still rate limited after the retry ceiling
            GitHubAPIError: For any other API failure
        """
        params = {"q": query, "page": page, "per_page": per_page or settings.SEARCH_PER_PAGE}

        async def call() -> CodeSearchPage:
            response = await self._get("/search/code", params=params)
            data = response.json()
            results = []
            for item in data.get("items", []):
                repository = item.get("repository") or {}
                owner = (repository.get("owner") or {}).get("login")
                if not owner or not repository.get("name") or not item.get("path"):
                    continue
                results.append(CodeSearchResult(
                    owner=owner,
                    repo=repository["name"],
                    repository_full_name=repository.get("full_name") or f"{owner}/{repository['name']}",
                    path=item["path"],
                ))
            return CodeSearchPage(
                results=results,
                total_count=data.get("total_count", 0),
                next_page=self._next_page(response),
            )

        return await self._with_rate_limit_retry(f"code search '{query}' page {page}", call)

    async def get_contents(self, owner: str, repo: str, path: str) -> str:
        """
        Fetch the text of a single file.

        Raises:
            GitHubAPIError: If the path is missing, is a directory, or cannot be decoded
        """
        url = f"/repos/{owner}/{repo}/contents/{quote(path)}"

        async def call() -> str:
            response = await self._get(url)
            data = response.json()
            if isinstance(data, list) or data.get("type") not in (None, "file"):
                raise GitHubAPIError(f"{owner}/{repo}/{path} is not a file")

            encoding = data.get("encoding")
            content = data.get("content") or ""
            if encoding == "base64" and content:
                try:
                    return base64.b64decode(content).decode("utf-8", errors="replace")
                except ValueError as e:
                    raise GitHubAPIError(f"Could not decode {owner}/{repo}/{path}: {e}") from e

            # Files over 1MB come back without inline content
            download_url = data.get("download_url")
            if download_url:
                raw = await self._get(download_url)
                return raw.text
            return content

        return await self._with_rate_limit_retry(f"contents of {owner}/{repo}/{path}", call)

    async def get_repository(self, owner: str, repo: str) -> RepositoryInfo:
        """
        Get repository metadata, served from Redis when a fresh copy is cached.

        Raises:
            GitHubAPIError: If the repository cannot be fetched
        """
        cache_key = f"github:repo:{owner}/{repo}"

        redis_client = await self._get_redis_client()
        if redis_client:
            try:
                cached = await redis_client.get(cache_key)
                if cached is not None:
                    logger.debug(f"Cache hit for {owner}/{repo}")
                    return RepositoryInfo.model_validate_json(cached)
            except (RedisError, ValueError) as e:
                logger.warning(f"Cache read error for {owner}/{repo}: {e}")

        async def call() -> RepositoryInfo:
            response = await self._get(f"/repos/{owner}/{repo}")
            data = response.json()
            owner_data = data.get("owner") or {}
            return RepositoryInfo(
                owner=owner_data.get("login") or owner,
                name=data.get("name") or repo,
                full_name=data.get("full_name") or f"{owner}/{repo}",
                description=data.get("description") or "",
                stars=data.get("stargazers_count") or 0,
                language=data.get("language") or "",
                html_url=data.get("html_url") or f"https://github.com/{owner}/{repo}",
                default_branch=data.get("default_branch") or "main",
                owner_avatar_url=owner_data.get("avatar_url") or "",
            )

        info = await self._with_rate_limit_retry(f"repository {owner}/{repo}", call)

        if redis_client:
            try:
                await redis_client.setex(cache_key, CACHE_TTL_SECONDS, info.model_dump_json())
            except RedisError as e:
                logger.warning(f"Cache write error for {owner}/{repo}: {e}")

        return info

    async def close(self):
        """Close the HTTP client and Redis connection if open."""
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None
        if self._redis_client:
            try:
                await self._redis_client.aclose()
                logger.debug("Redis connection closed")
            except RedisError as e:
                logger.warning(f"Error closing Redis connection: {e}")
            finally:
                self._redis_client = None
                self._redis_available = False
