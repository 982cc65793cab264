"""Service building session queues and grading rounds."""
import logging
from datetime import datetime
from typing import Dict, List, Optional

from flashdrill.config import settings
from flashdrill.exceptions import InvalidSessionError
from flashdrill.models.study_models import GradeResult, RoundResult, SessionFilters, WordSet
from flashdrill.monitoring import rounds_graded
from flashdrill.services.catalog_service import MIN_ITEMS, CatalogService
from flashdrill.services.scheduling import SchedulingPolicy, filter_pool, srs_stats
from flashdrill.services.sync_service import SyncService

logger = logging.getLogger(__name__)


class SchedulerService:
    """Service connecting the catalog, the review state and a scheduling policy."""

    def __init__(self, catalog: CatalogService, sync: SyncService, policy: SchedulingPolicy):
        """Initialize the service with its collaborators."""
        self.catalog = catalog
        self.sync = sync
        self.policy = policy

    def get_pool(self, filters: SessionFilters) -> List[WordSet]:
        return filter_pool(self.catalog.all_sets(), filters)

    def pool_stats(self, filters: SessionFilters, now: Optional[datetime] = None) -> Dict[str, int]:
        """Due and unseen counts for the filtered pool."""
        pool = self.get_pool(filters)
        return {"total": len(pool), **srs_stats(pool, self.sync.get_review_states(), now)}

    def build_session_queue(
        self,
        filters: SessionFilters,
        count: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> List[WordSet]:
        """Ordered sets for one session; refuses an empty pool or undersized sets."""
        pool = self.get_pool(filters)
        if not pool:
            logger.info(f"No sets match {filters}")
            raise InvalidSessionError("No word sets match the selected filters")

        queue = self.policy.select(
            pool,
            self.sync.get_review_states(),
            settings.session.session_size if count is None else count,
            now,
        )
        undersized = [s.id for s in queue if s.size < MIN_ITEMS]
        if undersized:
            raise InvalidSessionError(f"Word sets need at least {MIN_ITEMS} items: {', '.join(undersized)}")
        if not queue:
            raise InvalidSessionError("No word sets selected for the session")

        logger.info(f"Built queue of {len(queue)} sets with the {self.policy.name} policy")
        return queue

    def grade_set(self, word_set: WordSet, count: int, now: Optional[datetime] = None) -> GradeResult:
        """Apply a self-reported recall count to a set's review state."""
        if not 0 <= count <= word_set.size:
            raise InvalidSessionError(f"Recall count must be between 0 and {word_set.size}")

        previous = self.sync.get_review_states().get(word_set.id)
        state = self.policy.grade(previous, count, word_set.size, now)
        self.sync.put_review_state(word_set.id, state)
        rounds_graded.labels(policy=self.policy.name).inc()

        result = RoundResult(word_set=word_set, score=count, total=word_set.size)
        logger.debug(f"Graded {word_set.id}: {count}/{word_set.size}")
        return GradeResult(state=state, percentage=result.percentage, result=result)
