"""
Run a catalog collection from the command line.

    python scripts/collect.py                 # full discovery + ingestion
    python scripts/collect.py --force         # re-analyse everything
    python scripts/collect.py --repo owner/repo[/sub/dir]
"""
import argparse
import asyncio
import logging
import os
import sys

# Add project root/backend to path
sys.path.append(os.path.join(os.path.dirname(os.path.abspath(__file__)), "..", "backend"))

from app.core.config import settings
from app.db.session import AsyncSessionLocal, engine, init_db
from app.services.analysis import AnalysisService
from app.services.collector import CollectionService
from app.services.discovery import DiscoveryService
from app.services.github_service import GitHubService
from app.services.ingestion import IngestionService
from app.services.repository_store import RepositoryStore
from app.services.tool_backfill import ToolBackfillService

logger = logging.getLogger("collect")


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Collect MCP servers from GitHub into the catalog")
    parser.add_argument("--repo", help="Ingest a single repository (owner/repo[/path] or GitHub URL)")
    parser.add_argument("--force", action="store_true", help="Re-analyse unchanged READMEs and overwrite manifests")
    parser.add_argument("--limit", type=int, default=settings.COLLECTION_LIMIT, help="Maximum search hits to process")
    return parser.parse_args(argv)


async def main(args: argparse.Namespace) -> int:
    if not settings.GITHUB_TOKEN or not settings.OPENAI_API_KEY:
        logger.error("GITHUB_TOKEN and OPENAI_API_KEY must be set")
        return 1

    await init_db()
    github = GitHubService(token=settings.GITHUB_TOKEN, redis_url=settings.REDIS_URL)
    analysis = AnalysisService(
        api_key=settings.OPENAI_API_KEY,
        base_url=settings.OPENAI_BASE_URL,
        model=settings.OPENAI_MODEL,
    )
    ingestion = IngestionService(github, analysis, ToolBackfillService(github, analysis))

    try:
        if args.repo:
            async with AsyncSessionLocal() as session:
                result = await ingestion.add_repository(RepositoryStore(session), args.repo, force=args.force)
                await session.commit()
            print(f"{result.full_name}: {result.outcome.value}")
        else:
            collector = CollectionService(DiscoveryService(github), ingestion, AsyncSessionLocal, limit=args.limit)
            report = await collector.run(force=args.force)
            print(f"Processed {report.candidates} candidates, {report.failures} failures")
            for outcome, count in sorted(report.outcomes.items()):
                print(f"  {outcome}: {count}")
    finally:
        await github.close()
        await engine.dispose()
    return 0


if __name__ == "__main__":
    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    sys.exit(asyncio.run(main(parse_args())))
