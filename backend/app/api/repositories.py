import logging
from typing import Dict, List, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response

from app.api.deps import commit_or_500, get_ingestion_service, get_repository_store, storage_errors_as_500
from app.core.auth import require_admin
from app.models.repository import Repository
from app.schemas.catalog import ServerConfig, ToolDescriptor, dump_configs, dump_tools
from app.schemas.repository import CountResponse, IngestionResponse, RepositoryDetail, RepositorySummary
from app.services.github_service import GitHubAPIError
from app.services.ingestion import (
    IngestionService,
    NoProposedManifestError,
    RepositoryNotFoundError,
)
from app.services.repository_store import RepositoryStore
from app.services.tool_backfill import ToolBackfillError

router = APIRouter()
logger = logging.getLogger(__name__)


async def _get_or_404(store: RepositoryStore, repo_id: int) -> Repository:
    repository = await store.get_by_id(repo_id)
    if repository is None:
        raise HTTPException(status_code=404, detail="Repository not found")
    return repository


@router.get("/repos", response_model=List[RepositorySummary])
async def list_repositories(
    response: Response,
    filter: Optional[str] = None,
    sort: Literal["stars", "name", "id"] = "stars",
    order: Literal["asc", "desc"] = "desc",
    limit: int = Query(10000, gt=0),
    offset: int = Query(0, ge=0),
    store: RepositoryStore = Depends(get_repository_store),
):
    """List repositories, optionally only those tagged with `filter`."""
    repositories, total = await store.list_repositories(
        tag=filter, sort=sort, order=order, limit=limit, offset=offset
    )
    response.headers["X-Total-Count"] = str(total)
    return [RepositorySummary.from_record(repository) for repository in repositories]


@router.get("/repos/count", response_model=CountResponse)
async def count_repositories(
    filter: Optional[str] = None,
    store: RepositoryStore = Depends(get_repository_store),
):
    return CountResponse(count=await store.count(tag=filter))


@router.get("/search", response_model=List[RepositorySummary])
async def search_repositories(
    q: str = "",
    store: RepositoryStore = Depends(get_repository_store),
):
    """Search description and display name."""
    if not q:
        raise HTTPException(status_code=400, detail="Search query is required")
    return [RepositorySummary.from_record(repository) for repository in await store.search(q)]


@router.get("/search-readme", response_model=List[RepositorySummary])
async def search_repositories_by_readme(
    q: str = "",
    store: RepositoryStore = Depends(get_repository_store),
):
    """Search README content."""
    if not q:
        raise HTTPException(status_code=400, detail="Search query is required")
    return [RepositorySummary.from_record(repository) for repository in await store.search(q, field="readme")]


@router.get("/repos/{repo_id}", response_model=RepositoryDetail)
async def get_repository(
    repo_id: int,
    store: RepositoryStore = Depends(get_repository_store),
):
    return RepositoryDetail.from_record(await _get_or_404(store, repo_id))


@router.put("/repos/{repo_id}", response_model=RepositoryDetail, dependencies=[Depends(require_admin)])
async def update_manifest(
    repo_id: int,
    configs: List[ServerConfig],
    store: RepositoryStore = Depends(get_repository_store),
):
    """Replace the accepted manifest by hand."""
    repository = await _get_or_404(store, repo_id)
    async with storage_errors_as_500(store):
        await store.update_manifest(repository, dump_configs(configs))
    await commit_or_500(store)
    return RepositoryDetail.from_record(repository)


@router.put("/repos/{repo_id}/metadata", response_model=RepositoryDetail, dependencies=[Depends(require_admin)])
async def update_metadata(
    repo_id: int,
    metadata: Dict[str, str],
    store: RepositoryStore = Depends(get_repository_store),
):
    repository = await _get_or_404(store, repo_id)
    async with storage_errors_as_500(store):
        await store.update_metadata(repository, metadata)
    await commit_or_500(store)
    return RepositoryDetail.from_record(repository)


@router.put("/repos/{repo_id}/tools", response_model=RepositoryDetail, dependencies=[Depends(require_admin)])
async def update_tool_definitions(
    repo_id: int,
    tools: List[ToolDescriptor],
    store: RepositoryStore = Depends(get_repository_store),
):
    repository = await _get_or_404(store, repo_id)
    async with storage_errors_as_500(store):
        await store.update_tool_definitions(repository, dump_tools(tools))
    await commit_or_500(store)
    return RepositoryDetail.from_record(repository)


@router.post("/repos/{repo_id}/generate", response_model=IngestionResponse, dependencies=[Depends(require_admin)])
async def regenerate_manifest(
    repo_id: int,
    force: bool = False,
    store: RepositoryStore = Depends(get_repository_store),
    ingestion: IngestionService = Depends(get_ingestion_service),
):
    """
    Re-run extraction on the stored README.

    Without `force` the result becomes a proposal when an accepted manifest exists.
    """
    async with storage_errors_as_500(store):
        try:
            result = await ingestion.reanalyze(store, repo_id, force=force)
        except RepositoryNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))
        except (ToolBackfillError, GitHubAPIError) as e:
            await store.session.rollback()
            logger.error(f"Re-analysis of repository {repo_id} failed: {e}")
            raise HTTPException(status_code=502, detail=str(e))

    await commit_or_500(store)
    return IngestionResponse(
        status=result.outcome.value,
        full_name=result.full_name,
        id=result.repository.id if result.repository else None,
    )


@router.post("/repos/{repo_id}/approve", response_model=RepositoryDetail, dependencies=[Depends(require_admin)])
async def approve_proposed_manifest(
    repo_id: int,
    store: RepositoryStore = Depends(get_repository_store),
    ingestion: IngestionService = Depends(get_ingestion_service),
):
    """Accept the pending proposal and clear it."""
    async with storage_errors_as_500(store):
        try:
            repository = await ingestion.approve_proposed(store, repo_id)
        except RepositoryNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))
        except NoProposedManifestError as e:
            raise HTTPException(status_code=409, detail=str(e))

    await commit_or_500(store)
    return RepositoryDetail.from_record(repository)
