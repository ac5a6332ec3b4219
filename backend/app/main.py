from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from app.api import admin, health, repositories
from app.core.config import settings
from app.db.session import AsyncSessionLocal, init_db
from app.services.analysis import AnalysisService
from app.services.collector import CollectionService
from app.services.discovery import DiscoveryService
from app.services.github_service import GitHubService
from app.services.ingestion import IngestionService
from app.services.scheduler import DailyScheduler
from app.services.tool_backfill import ToolBackfillService
import logging

logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def _require_credentials() -> None:
    missing = [
        name for name in ("GITHUB_TOKEN", "OPENAI_API_KEY")
        if not getattr(settings, name)
    ]
    if missing:
        raise RuntimeError(f"Missing required configuration: {', '.join(missing)}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle startup and shutdown events."""
    # Startup
    logger.info("MCP Catalog starting up...")
    _require_credentials()
    await init_db()

    github = GitHubService(token=settings.GITHUB_TOKEN, redis_url=settings.REDIS_URL)
    analysis = AnalysisService(
        api_key=settings.OPENAI_API_KEY,
        base_url=settings.OPENAI_BASE_URL,
        model=settings.OPENAI_MODEL,
    )
    backfill = ToolBackfillService(github, analysis)
    ingestion = IngestionService(github, analysis, backfill)
    collector = CollectionService(
        DiscoveryService(github),
        ingestion,
        AsyncSessionLocal,
        limit=settings.COLLECTION_LIMIT,
    )
    app.state.ingestion_service = ingestion
    app.state.collection_service = collector

    scheduler = None
    if settings.SCHEDULER_ENABLED:
        scheduler = DailyScheduler(collector, hour=settings.COLLECTION_HOUR_UTC)
        scheduler.start()

    yield

    # Shutdown
    logger.info("MCP Catalog shutting down...")
    if scheduler is not None:
        await scheduler.stop()
    await github.close()


app = FastAPI(
    title=settings.PROJECT_NAME,
    description="Catalog of MCP servers discovered on GitHub",
    version="0.1.0",
    lifespan=lifespan
)

# Add validation error handler to log 422 errors
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.error(f"[VALIDATION ERROR] on {request.url}: {exc.errors()}")
    return JSONResponse(
        status_code=422,
        content={"detail": jsonable_encoder(exc.errors())},
    )

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Total-Count"],
)

app.include_router(health.router, prefix=f"{settings.API_V1_STR}/health", tags=["health"])
app.include_router(repositories.router, prefix=settings.API_V1_STR, tags=["repositories"])
app.include_router(admin.router, prefix=f"{settings.API_V1_STR}/admin", tags=["admin"])
