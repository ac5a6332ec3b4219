import os

# Set environment variables for tests before importing the app
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["CATALOG_ACCESS_TOKEN"] = "test-access-token"
os.environ["GITHUB_TOKEN"] = "test-github-token"
os.environ["OPENAI_API_KEY"] = "test-openai-key"
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ["SEARCH_DELAY_SECONDS"] = "0"
os.environ.pop("REDIS_URL", None)

from typing import AsyncGenerator, Dict, List, Optional, Tuple, Union
from unittest.mock import MagicMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.main import app
from app.core.config import settings
from app.db.base import Base
from app.db.session import get_db
from app.models.repository import ManifestState
from app.schemas.catalog import InputSchema, ManifestAnalysis, ServerConfig, ToolDescriptor, ToolProperty
from app.schemas.github import CodeSearchPage, RepositoryInfo
from app.services.analysis import AnalysisService
from app.services.collector import CollectionService
from app.services.discovery import DiscoveryService
from app.services.github_service import GitHubAPIError, GitHubService
from app.services.ingestion import IngestionService
from app.services.repository_store import RepositoryFields, RepositoryStore
from app.services.tool_backfill import ToolBackfillService

# Use in-memory SQLite for fast integration tests
DATABASE_URL = "sqlite+aiosqlite:///:memory:"

engine = create_async_engine(
    DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

TestingSessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)

MANIFEST_README = """# Weather MCP

Add this to your client config:

```json
{"mcpServers": {"weather": {"command": "npx", "args": ["-y", "weather-mcp"]}}}
```
"""

PLAIN_README = "# A library\n\nNothing to launch here.\n"


class FakeGitHub(GitHubService):
    """In-memory stand-in for the GitHub API."""

    def __init__(self):
        super().__init__(token="test", max_retries=0)
        self.repositories: Dict[str, Union[RepositoryInfo, Exception]] = {}
        self.files: Dict[Tuple[str, str, str], str] = {}
        self.search_pages: Dict[Tuple[str, int], Union[CodeSearchPage, Exception]] = {}
        self.queries: List[Tuple[str, int]] = []

    def add_repository(
        self,
        full_name: str,
        stars: int = 10,
        description: str = "GitHub description",
        language: str = "TypeScript",
        avatar: str = "https://avatars.githubusercontent.com/u/1",
        default_branch: str = "main",
    ) -> RepositoryInfo:
        owner, name = full_name.split("/")
        info = RepositoryInfo(
            owner=owner,
            name=name,
            full_name=full_name,
            description=description,
            stars=stars,
            language=language,
            html_url=f"https://github.com/{full_name}",
            default_branch=default_branch,
            owner_avatar_url=avatar,
        )
        self.repositories[full_name] = info
        return info

    def add_file(self, full_name: str, path: str, content: str) -> None:
        owner, name = full_name.split("/")
        self.files[(owner, name, path)] = content

    async def get_repository(self, owner: str, repo: str) -> RepositoryInfo:
        info = self.repositories.get(f"{owner}/{repo}")
        if info is None:
            raise GitHubAPIError(f"/repos/{owner}/{repo} not found or private", 404)
        if isinstance(info, Exception):
            raise info
        return info

    async def get_contents(self, owner: str, repo: str, path: str) -> str:
        content = self.files.get((owner, repo, path))
        if content is None:
            raise GitHubAPIError(f"{owner}/{repo}/{path} not found or private", 404)
        return content

    async def search_code(self, query: str, page: int = 1, per_page: Optional[int] = None) -> CodeSearchPage:
        self.queries.append((query, page))
        result = self.search_pages.get((query, page), CodeSearchPage())
        if isinstance(result, Exception):
            raise result
        return result


class FakeAnalysis(AnalysisService):
    """Returns canned analyses instead of calling a model."""

    def __init__(self):
        super().__init__(client=MagicMock())
        self.analysis: Union[ManifestAnalysis, Exception] = ManifestAnalysis()
        self.tools: Union[List[ToolDescriptor], Exception] = []
        self.readme_calls: List[Tuple[str, str, Optional[list]]] = []
        self.tool_calls: List[Tuple[str, str]] = []

    async def analyze_readme(self, repo_name, readme, existing_manifest=None) -> ManifestAnalysis:
        self.readme_calls.append((repo_name, readme, existing_manifest))
        if isinstance(self.analysis, Exception):
            raise self.analysis
        return self.analysis.model_copy(deep=True)

    async def extract_tools(self, source, readme) -> List[ToolDescriptor]:
        self.tool_calls.append((source, readme))
        if isinstance(self.tools, Exception):
            raise self.tools
        return list(self.tools)


def make_analysis(*commands: str, name: str = "Weather", category: str = "Weather & Location") -> ManifestAnalysis:
    configs = [
        ServerConfig(command=command, args=["weather-mcp"]) if command != "url"
        else ServerConfig(url="https://weather.example.com/mcp")
        for command in commands
    ]
    return ManifestAnalysis(
        name=name,
        description="Forecasts for any city",
        category=category,
        configs=configs,
    )


def make_tool(name: str = "get_forecast") -> ToolDescriptor:
    return ToolDescriptor(
        name=name,
        description="Get the forecast for a city",
        input_schema=InputSchema(properties={"city": ToolProperty(description="City name", required=True)}),
    )


@pytest_asyncio.fixture
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    """Provide a clean database session for each test by recreating tables."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with TestingSessionLocal() as session:
        yield session

    # Drop all tables after each test to ensure isolation
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture
def store(db_session: AsyncSession) -> RepositoryStore:
    return RepositoryStore(db_session)


@pytest.fixture
def fake_github() -> FakeGitHub:
    return FakeGitHub()


@pytest.fixture
def fake_analysis() -> FakeAnalysis:
    analysis = FakeAnalysis()
    analysis.analysis = make_analysis("npx")
    analysis.tools = [make_tool()]
    return analysis


@pytest.fixture
def ingestion_service(fake_github: FakeGitHub, fake_analysis: FakeAnalysis) -> IngestionService:
    return IngestionService(
        fake_github,
        fake_analysis,
        ToolBackfillService(fake_github, fake_analysis),
        manifest_keywords=["mcpServers", "npx", "docker", "uv"],
    )


@pytest.fixture
def collection_service(fake_github: FakeGitHub, ingestion_service: IngestionService) -> CollectionService:
    discovery = DiscoveryService(fake_github, seed_repositories=[], delay_seconds=0)
    return CollectionService(discovery, ingestion_service, TestingSessionLocal, limit=100)


@pytest.fixture
def seed_repository(store: RepositoryStore):
    """Write a record directly, bypassing GitHub and the model."""

    async def _seed(
        full_name: str = "acme/weather",
        stars: int = 10,
        description: str = "Forecasts for any city",
        readme: str = MANIFEST_README,
        categories: str = "Weather & Location",
        configs: Optional[list] = None,
        tool_definitions: Optional[list] = None,
        target: ManifestState = ManifestState.ACCEPTED,
    ):
        fields = RepositoryFields(
            full_name=full_name,
            path="README.md",
            url=f"https://github.com/{full_name}",
            display_name=full_name.split("/")[-1],
            description=description,
            stars=stars,
            language="TypeScript",
            icon="https://avatars.githubusercontent.com/u/1",
            readme_content=readme,
            configs=configs if configs is not None else [{"command": "npx", "args": ["weather-mcp"], "preferred": True}],
            metadata={"categories": categories},
            tool_definitions=tool_definitions,
        )
        repository, _ = await store.save(fields, target)
        await store.session.commit()
        return repository

    return _seed


@pytest_asyncio.fixture
async def client(
    db_session: AsyncSession,
    ingestion_service: IngestionService,
    collection_service: CollectionService,
) -> AsyncGenerator[AsyncClient, None]:
    """Provide an AsyncClient for the FastAPI app with DB and service overrides."""

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.state.ingestion_service = ingestion_service
    app.state.collection_service = collection_service

    # Use ASGITransport for testing FastAPI apps
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    # Clean up overrides
    app.dependency_overrides.clear()


@pytest.fixture
def admin_client(client: AsyncClient) -> AsyncClient:
    """Same client, carrying the admin access cookie."""
    client.cookies.set(settings.ACCESS_COOKIE_NAME, "test-access-token")
    return client


@pytest.fixture
def manifest_readme() -> str:
    return MANIFEST_README


@pytest.fixture
def plain_readme() -> str:
    return PLAIN_README


@pytest.fixture(name="make_analysis")
def make_analysis_fixture():
    return make_analysis


@pytest.fixture(name="make_tool")
def make_tool_fixture():
    return make_tool
