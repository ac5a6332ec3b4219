import copy
from typing import Any, Dict

import pytest
from sqlalchemy import inspect

from app.models.repository import ManifestState, Repository
from app.schemas.github import CodeSearchPage, CodeSearchResult
from app.services.analysis import ExtractionError
from app.services.github_service import GitHubAPIError
from app.services.ingestion import (
    IngestionOutcome,
    InvalidRepositoryNameError,
    NoProposedManifestError,
    RepositoryNotFoundError,
)
from app.services.tool_backfill import ToolBackfillError


def snapshot(repository: Repository) -> Dict[str, Any]:
    return {column.key: copy.deepcopy(getattr(repository, column.key)) for column in inspect(Repository).column_attrs}


CHANGED_README = "# Weather MCP v2\n\nUse npx weather-mcp@2 with mcpServers.\n"


@pytest.fixture
def weather_repo(fake_github, manifest_readme):
    fake_github.add_repository("acme/weather", stars=120, description="Weather data for agents")
    fake_github.add_file("acme/weather", "README.md", manifest_readme)
    return fake_github


@pytest.mark.asyncio
async def test_new_repository_is_created(store, ingestion_service, weather_repo, fake_analysis):
    result = await ingestion_service.ingest(store, "acme", "weather", "README.md")

    assert result.outcome is IngestionOutcome.CREATED
    repository = await store.get_by_full_name("acme/weather")
    assert repository is result.repository
    assert repository.display_name == "Weather"
    assert repository.description == "Forecasts for any city"
    assert repository.stars == 120
    assert repository.url == "https://github.com/acme/weather"
    assert repository.icon == "https://avatars.githubusercontent.com/u/1"
    assert repository.manifest_state is ManifestState.ACCEPTED
    assert repository.manifest == [{"env": [], "command": "npx", "args": ["weather-mcp"], "preferred": True}]
    assert repository.proposed_manifest is None
    assert repository.metadata_ == {"categories": "Weather & Location"}
    assert repository.tool_definitions == [
        {
            "name": "get_forecast",
            "description": "Get the forecast for a city",
            "inputSchema": {"properties": {"city": {"type": "string", "description": "City name", "required": True}}},
        }
    ]
    assert len(fake_analysis.tool_calls) == 1


@pytest.mark.asyncio
async def test_readme_without_keywords_is_skipped(store, ingestion_service, fake_github, fake_analysis, plain_readme):
    fake_github.add_repository("acme/lib")
    fake_github.add_file("acme/lib", "README.md", plain_readme)

    result = await ingestion_service.ingest(store, "acme", "lib", "README.md")

    assert result.outcome is IngestionOutcome.SKIPPED_NO_KEYWORDS
    assert fake_analysis.readme_calls == []
    assert await store.get_by_full_name("acme/lib") is None


@pytest.mark.asyncio
async def test_readme_losing_keywords_leaves_existing_record_alone(store, ingestion_service, weather_repo, fake_analysis, plain_readme):
    await ingestion_service.ingest(store, "acme", "weather", "README.md")
    before = snapshot(await store.get_by_full_name("acme/weather"))

    weather_repo.add_file("acme/weather", "README.md", plain_readme)
    result = await ingestion_service.ingest(store, "acme", "weather", "README.md", force=True)
    await store.session.flush()

    assert result.outcome is IngestionOutcome.SKIPPED_NO_KEYWORDS
    assert result.repository is None
    assert len(fake_analysis.readme_calls) == 1
    assert snapshot(await store.get_by_full_name("acme/weather")) == before


@pytest.mark.asyncio
async def test_nested_readme_gets_its_own_record(store, ingestion_service, fake_github, manifest_readme):
    fake_github.add_repository("acme/tools", default_branch="develop")
    fake_github.add_file("acme/tools", "servers/weather/README.md", manifest_readme)

    result = await ingestion_service.ingest(store, "acme", "tools", "servers/weather/README.md")

    repository = result.repository
    assert repository.full_name == "acme/tools/servers/weather"
    assert repository.path == "servers/weather/README.md"
    assert repository.url == "https://github.com/acme/tools/tree/develop/servers/weather"


@pytest.mark.asyncio
async def test_unchanged_readme_is_not_reanalysed(store, ingestion_service, weather_repo, fake_analysis):
    await ingestion_service.ingest(store, "acme", "weather", "README.md")
    before = snapshot(await store.get_by_full_name("acme/weather"))

    result = await ingestion_service.ingest(store, "acme", "weather", "README.md")
    await store.session.flush()

    assert result.outcome is IngestionOutcome.UNCHANGED
    assert len(fake_analysis.readme_calls) == 1
    assert snapshot(result.repository) == before


@pytest.mark.asyncio
async def test_unchanged_readme_fills_missing_icon(store, ingestion_service, fake_github, manifest_readme, fake_analysis):
    info = fake_github.add_repository("acme/weather", avatar="")
    fake_github.add_file("acme/weather", "README.md", manifest_readme)
    await ingestion_service.ingest(store, "acme", "weather", "README.md")

    fake_github.repositories["acme/weather"] = info.model_copy(update={"owner_avatar_url": "https://avatars.example/acme.png"})
    result = await ingestion_service.ingest(store, "acme", "weather", "README.md")

    assert result.outcome is IngestionOutcome.ICON_UPDATED
    assert result.repository.icon == "https://avatars.example/acme.png"
    assert len(fake_analysis.readme_calls) == 1


@pytest.mark.asyncio
async def test_changed_readme_becomes_a_proposal(store, ingestion_service, weather_repo, fake_analysis, make_analysis):
    await ingestion_service.ingest(store, "acme", "weather", "README.md")
    accepted = list((await store.get_by_full_name("acme/weather")).manifest)

    weather_repo.add_file("acme/weather", "README.md", CHANGED_README)
    fake_analysis.analysis = make_analysis("docker")
    result = await ingestion_service.ingest(store, "acme", "weather", "README.md")

    assert result.outcome is IngestionOutcome.PROPOSED
    repository = result.repository
    assert repository.manifest == accepted
    assert repository.proposed_manifest[0]["command"] == "docker"
    assert repository.manifest_state is ManifestState.PROPOSED
    assert repository.readme_content == CHANGED_README
    # The accepted manifest is shown to the model as context
    assert fake_analysis.readme_calls[-1][2] == accepted


@pytest.mark.asyncio
async def test_approve_promotes_proposal(store, ingestion_service, weather_repo, fake_analysis, make_analysis):
    await ingestion_service.ingest(store, "acme", "weather", "README.md")
    weather_repo.add_file("acme/weather", "README.md", CHANGED_README)
    fake_analysis.analysis = make_analysis("docker")
    result = await ingestion_service.ingest(store, "acme", "weather", "README.md")
    proposed = result.repository.proposed_manifest

    approved = await ingestion_service.approve_proposed(store, result.repository.id)

    assert approved.manifest == proposed
    assert approved.proposed_manifest is None
    assert approved.manifest_state is ManifestState.ACCEPTED


@pytest.mark.asyncio
async def test_approve_without_proposal(store, ingestion_service, weather_repo):
    result = await ingestion_service.ingest(store, "acme", "weather", "README.md")
    with pytest.raises(NoProposedManifestError):
        await ingestion_service.approve_proposed(store, result.repository.id)


@pytest.mark.asyncio
async def test_approve_unknown_repository(store, ingestion_service):
    with pytest.raises(RepositoryNotFoundError):
        await ingestion_service.approve_proposed(store, 999)


@pytest.mark.asyncio
async def test_force_overwrites_accepted_manifest(store, ingestion_service, weather_repo, fake_analysis, make_analysis):
    await ingestion_service.ingest(store, "acme", "weather", "README.md")
    fake_analysis.analysis = make_analysis("uvx", name="Weather Pro")

    result = await ingestion_service.ingest(store, "acme", "weather", "README.md", force=True)

    assert result.outcome is IngestionOutcome.UPDATED
    assert result.repository.manifest[0]["command"] == "uvx"
    assert result.repository.proposed_manifest is None
    assert result.repository.display_name == "Weather Pro"
    # Forced runs refresh tool definitions
    assert len(fake_analysis.tool_calls) == 2


@pytest.mark.asyncio
async def test_force_clears_pending_proposal(store, ingestion_service, weather_repo, fake_analysis, make_analysis):
    await ingestion_service.ingest(store, "acme", "weather", "README.md")
    weather_repo.add_file("acme/weather", "README.md", CHANGED_README)
    fake_analysis.analysis = make_analysis("docker")
    await ingestion_service.ingest(store, "acme", "weather", "README.md")

    result = await ingestion_service.ingest(store, "acme", "weather", "README.md", force=True)

    assert result.repository.manifest[0]["command"] == "docker"
    assert result.repository.manifest_state is ManifestState.ACCEPTED


@pytest.mark.asyncio
async def test_analysis_failure_persists_nothing(store, ingestion_service, weather_repo, fake_analysis):
    fake_analysis.analysis = ExtractionError("not json")

    result = await ingestion_service.ingest(store, "acme", "weather", "README.md")

    assert result.outcome is IngestionOutcome.SKIPPED_NO_MANIFEST
    assert await store.get_by_full_name("acme/weather") is None


@pytest.mark.asyncio
async def test_analysis_failure_leaves_existing_record_alone(store, ingestion_service, weather_repo, fake_analysis):
    await ingestion_service.ingest(store, "acme", "weather", "README.md")
    weather_repo.add_file("acme/weather", "README.md", CHANGED_README)
    fake_analysis.analysis = ExtractionError("not json")

    result = await ingestion_service.ingest(store, "acme", "weather", "README.md")

    assert result.outcome is IngestionOutcome.SKIPPED_NO_MANIFEST
    repository = await store.get_by_full_name("acme/weather")
    assert repository.proposed_manifest is None
    assert repository.readme_content != CHANGED_README


@pytest.mark.asyncio
async def test_no_configs_found(store, ingestion_service, weather_repo, fake_analysis, make_analysis):
    fake_analysis.analysis = make_analysis()

    result = await ingestion_service.ingest(store, "acme", "weather", "README.md")

    assert result.outcome is IngestionOutcome.SKIPPED_NO_MANIFEST
    assert await store.get_by_full_name("acme/weather") is None


@pytest.mark.asyncio
async def test_url_only_server_is_not_backfilled(store, ingestion_service, weather_repo, fake_analysis, make_analysis):
    fake_analysis.analysis = make_analysis("url")

    result = await ingestion_service.ingest(store, "acme", "weather", "README.md")

    assert result.outcome is IngestionOutcome.CREATED
    assert result.repository.tool_definitions is None
    assert result.repository.manifest[0]["preferred"] is False
    assert fake_analysis.tool_calls == []


@pytest.mark.asyncio
async def test_existing_tool_definitions_are_kept(store, ingestion_service, weather_repo, fake_analysis):
    fake_analysis.tools = []
    await ingestion_service.ingest(store, "acme", "weather", "README.md")
    weather_repo.add_file("acme/weather", "README.md", CHANGED_README)

    result = await ingestion_service.ingest(store, "acme", "weather", "README.md")

    # An empty list means "scanned, nothing found" and is not retried
    assert result.repository.tool_definitions == []
    assert len(fake_analysis.tool_calls) == 1


@pytest.mark.asyncio
async def test_backfill_failure_aborts_ingestion(store, ingestion_service, weather_repo):
    weather_repo.search_pages[("tool extension:ts repo:acme/weather", 1)] = GitHubAPIError("search failed", 500)

    with pytest.raises(ToolBackfillError):
        await ingestion_service.ingest(store, "acme", "weather", "README.md")

    await store.session.rollback()
    assert await store.get_by_full_name("acme/weather") is None


@pytest.mark.asyncio
async def test_backfill_scans_only_the_readme_directory(store, ingestion_service, fake_github, fake_analysis, manifest_readme):
    fake_github.add_repository("acme/tools")
    fake_github.add_file("acme/tools", "servers/weather/README.md", manifest_readme)
    fake_github.search_pages[("tool extension:ts repo:acme/tools", 1)] = CodeSearchPage(results=[])
    fake_github.search_pages[("mcp.tool extension:py repo:acme/tools", 1)] = CodeSearchPage(results=[
        CodeSearchResult(owner="acme", repo="tools", repository_full_name="acme/tools", path="servers/weather/server.py"),
        CodeSearchResult(owner="acme", repo="tools", repository_full_name="acme/tools", path="servers/maps/server.py"),
    ])
    fake_github.add_file("acme/tools", "servers/weather/server.py", "@mcp.tool()\ndef forecast(): ...")

    await ingestion_service.ingest(store, "acme", "tools", "servers/weather/README.md")

    source, _ = fake_analysis.tool_calls[0]
    assert "servers/weather/server.py" in source
    assert "servers/maps" not in source


@pytest.mark.asyncio
async def test_verified_tag_and_extra_metadata_survive(store, ingestion_service, weather_repo, fake_analysis, make_analysis):
    result = await ingestion_service.ingest(store, "acme", "weather", "README.md")
    await store.update_metadata(result.repository, {"categories": "Weather & Location,Verified", "homepage": "https://acme.dev"})
    weather_repo.add_file("acme/weather", "README.md", CHANGED_README)
    fake_analysis.analysis = make_analysis("npx", category="Data & Analytics")

    result = await ingestion_service.ingest(store, "acme", "weather", "README.md")

    assert result.repository.metadata_ == {"categories": "Data & Analytics,Verified", "homepage": "https://acme.dev"}


@pytest.mark.asyncio
async def test_missing_readme_raises(store, ingestion_service, fake_github):
    fake_github.add_repository("acme/empty")
    with pytest.raises(GitHubAPIError):
        await ingestion_service.ingest(store, "acme", "empty", "README.md")


@pytest.mark.asyncio
async def test_reanalyze_uses_stored_readme(store, ingestion_service, weather_repo, fake_analysis, make_analysis, manifest_readme):
    created = await ingestion_service.ingest(store, "acme", "weather", "README.md")
    fake_analysis.analysis = make_analysis("docker")

    result = await ingestion_service.reanalyze(store, created.repository.id)

    assert result.outcome is IngestionOutcome.PROPOSED
    assert fake_analysis.readme_calls[-1][1] == manifest_readme
    assert result.repository.proposed_manifest[0]["command"] == "docker"


@pytest.mark.asyncio
async def test_reanalyze_unknown_repository(store, ingestion_service):
    with pytest.raises(RepositoryNotFoundError):
        await ingestion_service.reanalyze(store, 42)


@pytest.mark.asyncio
@pytest.mark.parametrize("reference", [
    "acme/tools/servers/weather",
    "https://github.com/acme/tools/tree/main/servers/weather",
])
async def test_add_repository_with_subdirectory(store, ingestion_service, fake_github, manifest_readme, reference):
    fake_github.add_repository("acme/tools")
    fake_github.add_file("acme/tools", "servers/weather/README.md", manifest_readme)

    result = await ingestion_service.add_repository(store, reference)

    assert result.outcome is IngestionOutcome.CREATED
    assert result.full_name == "acme/tools/servers/weather"


@pytest.mark.asyncio
@pytest.mark.parametrize("reference", ["", "acme", "https://gitlab.com/acme/tools"])
async def test_add_repository_rejects_bad_references(store, ingestion_service, reference):
    with pytest.raises(InvalidRepositoryNameError):
        await ingestion_service.add_repository(store, reference)


@pytest.mark.asyncio
async def test_same_full_name_is_upserted(store, ingestion_service, weather_repo):
    await ingestion_service.ingest(store, "acme", "weather", "README.md")
    await ingestion_service.ingest(store, "acme", "weather", "README.md", force=True)
    await ingestion_service.add_repository(store, "https://github.com/acme/weather", force=True)

    assert await store.count() == 1


@pytest.mark.asyncio
async def test_proposal_marks_npx_over_docker(store, ingestion_service, weather_repo, fake_analysis, make_analysis):
    await ingestion_service.ingest(store, "acme", "weather", "README.md")
    accepted = list((await store.get_by_full_name("acme/weather")).manifest)
    weather_repo.add_file("acme/weather", "README.md", CHANGED_README)
    fake_analysis.analysis = make_analysis("docker", "npx")

    result = await ingestion_service.ingest(store, "acme", "weather", "README.md")

    assert result.outcome is IngestionOutcome.PROPOSED
    assert [(c["command"], c["preferred"]) for c in result.repository.proposed_manifest] == [
        ("docker", False),
        ("npx", True),
    ]
    assert result.repository.manifest == accepted
