"""State machine walking a session queue: flash, recall, grade, next."""
import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable, List, Optional

from flashdrill.config import settings
from flashdrill.exceptions import InvalidSessionError
from flashdrill.models.study_models import (
    GradeResult,
    Phase,
    RoundResult,
    SessionFilters,
    SessionSummary,
    WordSet,
)
from flashdrill.monitoring import sessions_completed
from flashdrill.services.scheduler_service import SchedulerService
from flashdrill.services.stats_service import StatsService

logger = logging.getLogger(__name__)

RecallCallback = Callable[[WordSet], Awaitable[None]]


class SessionRunner:
    """Runs one study session.

    Ready -> Flash -> Recall -> Result -> (Ready ... ) -> Summary. The flash
    countdown is the only timed phase; it runs as a task owned by the
    runner and is cancelled by ``exit``/``close``. Graded rounds update
    review state immediately, session records are written only when the
    session completes.
    """

    def __init__(
        self,
        scheduler: SchedulerService,
        stats: StatsService,
        flash_time: Optional[float] = None,
        grace_delay: Optional[float] = None,
    ):
        """Initialize the runner with its services and timing."""
        self.scheduler = scheduler
        self.stats = stats
        self.flash_time = settings.session.flash_time if flash_time is None else flash_time
        self.grace_delay = settings.session.recall_grace_delay if grace_delay is None else grace_delay

        self.phase: Optional[Phase] = None
        self.queue: List[WordSet] = []
        self.position = 0
        self.history: List[RoundResult] = []
        self.summary: Optional[SessionSummary] = None
        self.flash_visible = False
        self._flash_task: Optional[asyncio.Task] = None

    @property
    def current_set(self) -> Optional[WordSet]:
        if 0 <= self.position < len(self.queue):
            return self.queue[self.position]
        return None

    @property
    def is_active(self) -> bool:
        return self.phase not in (None, Phase.SUMMARY, Phase.EXITED)

    def _require(self, *phases: Phase) -> None:
        if self.phase not in phases:
            expected = ", ".join(p.value for p in phases)
            current = self.phase.value if self.phase else "not started"
            raise InvalidSessionError(f"Expected phase {expected}, session is {current}")

    def start(
        self,
        filters: SessionFilters,
        count: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> WordSet:
        """Build the queue and move to Ready on its first set."""
        if self.is_active:
            raise InvalidSessionError("A session is already running")
        self.queue = self.scheduler.build_session_queue(filters, count, now)
        self.position = 0
        self.history = []
        self.summary = None
        self.phase = Phase.READY
        logger.info(f"Session started with {len(self.queue)} sets")
        return self.queue[0]

    def begin_flash(self, on_recall: Optional[RecallCallback] = None) -> asyncio.Task:
        """Show the current set for ``flash_time`` seconds, then move to Recall."""
        self._require(Phase.READY)
        self.phase = Phase.FLASH
        self.flash_visible = True
        self._flash_task = asyncio.get_running_loop().create_task(self._run_flash(on_recall))
        return self._flash_task

    async def _run_flash(self, on_recall: Optional[RecallCallback]) -> None:
        word_set = self.current_set
        try:
            await asyncio.sleep(self.flash_time)
            self.flash_visible = False
            await asyncio.sleep(self.grace_delay)
        except asyncio.CancelledError:
            logger.debug(f"Flash of {word_set.id} cancelled")
            self.flash_visible = False
            raise
        self.phase = Phase.RECALL
        if on_recall:
            try:
                await on_recall(word_set)
            except Exception as e:
                logger.error(f"Recall prompt for {word_set.id} failed: {e}")

    def grade_current_set(self, count: int, now: Optional[datetime] = None) -> GradeResult:
        """Grade the current set with the number of items recalled."""
        self._require(Phase.RECALL)
        graded = self.scheduler.grade_set(self.current_set, count, now)
        self.history.append(graded.result)
        self.phase = Phase.RESULT
        return graded

    def advance_queue(self, now: Optional[datetime] = None) -> Optional[WordSet]:
        """Move to the next set, or complete the session and return None."""
        self._require(Phase.RESULT)
        self.position += 1
        if self.position >= len(self.queue):
            self._complete(now)
            return None
        self.phase = Phase.READY
        return self.current_set

    def finish(self, now: Optional[datetime] = None) -> SessionSummary:
        """End the session early, keeping the rounds graded so far."""
        self._require(Phase.RESULT)
        return self._complete(now)

    def _complete(self, now: Optional[datetime]) -> SessionSummary:
        records = self.stats.save_session(self.history, now)
        self.summary = SessionSummary(rounds=list(self.history), records=records)
        self.phase = Phase.SUMMARY
        sessions_completed.labels(account=self.stats.sync.account).inc()
        logger.info(
            f"Session complete: {self.summary.correct}/{self.summary.total} "
            f"over {len(self.history)} rounds"
        )
        return self.summary

    def exit(self) -> None:
        """Abandon the session; graded review states stay, no record is written."""
        if self._flash_task and not self._flash_task.done():
            self._flash_task.cancel()
        self.flash_visible = False
        if self.is_active:
            logger.info(f"Session exited after {len(self.history)} graded rounds")
            self.phase = Phase.EXITED

    async def close(self) -> None:
        """Exit and wait for the flash timer to unwind."""
        task = self._flash_task
        self.exit()
        if task:
            await asyncio.gather(task, return_exceptions=True)
