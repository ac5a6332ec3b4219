import logging

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, status

from app.api.deps import (
    commit_or_500,
    get_collection_service,
    get_ingestion_service,
    get_repository_store,
    storage_errors_as_500,
)
from app.core.auth import require_admin
from app.schemas.repository import AddRepositoryRequest, CollectionResponse, IngestionResponse
from app.services.collector import CollectionAlreadyRunningError, CollectionService
from app.services.github_service import GitHubAPIError
from app.services.ingestion import IngestionService, InvalidRepositoryNameError
from app.services.repository_store import RepositoryStore
from app.services.tool_backfill import ToolBackfillError

router = APIRouter(dependencies=[Depends(require_admin)])
logger = logging.getLogger(__name__)


async def _run_collection(collector: CollectionService, force: bool) -> None:
    try:
        await collector.run(force=force)
    except CollectionAlreadyRunningError:
        logger.warning("Collection already in progress, dropping manual trigger")


@router.post("/collect", response_model=CollectionResponse, status_code=status.HTTP_202_ACCEPTED)
async def trigger_collection(
    background_tasks: BackgroundTasks,
    force: bool = False,
    collector: CollectionService = Depends(get_collection_service),
):
    """
    Start a full discovery + ingestion run in the background.

    Returns immediately; progress is reported in the logs.
    """
    if collector.is_running:
        raise HTTPException(status_code=409, detail="A collection run is already in progress")

    logger.info(f"Manual collection triggered (force={force})")
    background_tasks.add_task(_run_collection, collector, force)
    return CollectionResponse(status="started", force=force)


@router.post("/repos", response_model=IngestionResponse)
async def add_repository(
    request: AddRepositoryRequest,
    store: RepositoryStore = Depends(get_repository_store),
    ingestion: IngestionService = Depends(get_ingestion_service),
):
    """Ingest a single repository by owner/repo[/path] or GitHub URL."""
    async with storage_errors_as_500(store):
        try:
            result = await ingestion.add_repository(store, request.full_name, force=request.force)
        except InvalidRepositoryNameError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except (GitHubAPIError, ToolBackfillError) as e:
            await store.session.rollback()
            logger.error(f"Adding repository {request.full_name} failed: {e}")
            raise HTTPException(status_code=502, detail=str(e))

    await commit_or_500(store)
    return IngestionResponse(
        status=result.outcome.value,
        full_name=result.full_name,
        id=result.repository.id if result.repository else None,
    )
