import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.services.discovery import DiscoveryService
from app.services.ingestion import IngestionOutcome, IngestionService
from app.services.repository_store import RepositoryStore

logger = logging.getLogger(__name__)


class CollectionAlreadyRunningError(Exception):
    """A collection run is already in progress in this process."""


@dataclass
class CollectionReport:
    candidates: int = 0
    failures: int = 0
    outcomes: Counter = field(default_factory=Counter)

    def record(self, outcome: IngestionOutcome) -> None:
        self.outcomes[outcome.value] += 1


class CollectionService:
    """
    One full ingestion run: discovery, then each candidate in order.

    Candidates are processed sequentially to stay inside GitHub and LLM rate
    limits. Each candidate gets its own session and a single commit; any
    failure rolls that candidate back and the run moves on.
    """

    def __init__(
        self,
        discovery: DiscoveryService,
        ingestion: IngestionService,
        session_factory: Callable[[], AsyncSession],
        limit: Optional[int] = None,
    ):
        self.discovery = discovery
        self.ingestion = ingestion
        self.session_factory = session_factory
        self.limit = limit
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    async def run(self, force: bool = False) -> CollectionReport:
        """
        Raises:
            CollectionAlreadyRunningError: If another run is in flight in this process
        """
        if self._running:
            raise CollectionAlreadyRunningError("A collection run is already in progress")

        self._running = True
        report = CollectionReport()
        try:
            logger.info("Searching repositories by README content...")
            candidates = await self.discovery.discover(self.limit)
            report.candidates = len(candidates)

            for candidate in candidates:
                logger.info(f"Processing repository: {candidate.owner}/{candidate.repo}/{candidate.path}")
                async with self.session_factory() as session:
                    try:
                        result = await self.ingestion.ingest(
                            RepositoryStore(session),
                            candidate.owner,
                            candidate.repo,
                            candidate.path,
                            force=force,
                        )
                        await session.commit()
                    except Exception as e:
                        await session.rollback()
                        report.failures += 1
                        logger.error(
                            f"Error processing repository {candidate.repository_full_name}/{candidate.path}: {e}"
                        )
                        continue
                report.record(result.outcome)
        finally:
            self._running = False

        logger.info(
            f"Collection finished: {report.candidates} candidates, "
            f"{report.failures} failures, outcomes {dict(report.outcomes)}"
        )
        return report
