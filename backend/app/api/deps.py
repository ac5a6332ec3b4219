import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import Depends, HTTPException, Request
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.session import get_db
from app.services.collector import CollectionService
from app.services.ingestion import IngestionService
from app.services.repository_store import RepositoryStore

logger = logging.getLogger(__name__)

# Service clients are built once in the application lifespan and hung on
# app.state; these dependencies hand them to route handlers so tests can
# override them with fakes.

def get_ingestion_service(request: Request) -> IngestionService:
    return request.app.state.ingestion_service

def get_collection_service(request: Request) -> CollectionService:
    return request.app.state.collection_service

def get_repository_store(db: AsyncSession = Depends(get_db)) -> RepositoryStore:
    return RepositoryStore(db)


@asynccontextmanager
async def storage_errors_as_500(store: RepositoryStore) -> AsyncIterator[None]:
    """Roll back and report any storage failure in the block as a 500 with its text."""
    try:
        yield
    except SQLAlchemyError as e:
        await store.session.rollback()
        logger.error(f"Failed to save repository: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Failed to save repository: {e}")


async def commit_or_500(store: RepositoryStore) -> None:
    """Commit the request's unit of work, mapping storage failures to 500."""
    async with storage_errors_as_500(store):
        await store.session.commit()
