"""Spaced-repetition math and the scheduling policies built on it."""
import logging
import math
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import UTC, date, datetime, timedelta
from typing import ClassVar, Dict, Iterable, List, Mapping, Optional, Sequence, Type

from flashdrill.config import SRS_DAYS
from flashdrill.models.study_models import (
    ALL,
    UNSEEN_DUE,
    ReviewState,
    SessionFilters,
    WordSet,
)

logger = logging.getLogger(__name__)

MS_PER_DAY = 86_400_000
MAX_LEVEL = 4
MIN_EASE = 1.3
MAX_EASE = 2.5
DEFAULT_EASE = 2.0
IMPORTANCE_SCORES = {3: 5, 2: 3, 1: 1, 0: 0}
NEVER_DUE_DAYS = 999  # days-overdue assumed for a record without a due timestamp


def utc_now() -> datetime:
    return datetime.now(UTC)


def today_str(now: Optional[datetime] = None) -> str:
    """Current UTC date as a fixed-width ISO string."""
    return (now or utc_now()).date().isoformat()


def add_days(day: str, days: int) -> str:
    """Shift an ISO date string by a number of days."""
    return (date.fromisoformat(day) + timedelta(days=days)).isoformat()


def to_epoch_ms(moment: datetime) -> int:
    return int(moment.timestamp() * 1000)


# --------------------------------------------------------------------------
# Level policy math
# --------------------------------------------------------------------------

def next_level(prev_level: int, ratio: float) -> int:
    """Promote on a perfect round, keep on >= 75%, demote otherwise."""
    if ratio >= 1.0:
        return min(prev_level + 1, MAX_LEVEL)
    if ratio >= 0.75:
        return prev_level
    return max(prev_level - 1, 0)


def level_due(level: int, now: Optional[datetime] = None, srs_days: Sequence[int] = SRS_DAYS) -> str:
    """Due date for a maturity level, counted from today."""
    level = max(0, min(level, len(srs_days) - 1))
    return add_days(today_str(now), srs_days[level])


def build_queue(
    pool: Sequence[WordSet],
    states: Mapping[str, ReviewState],
    count: int,
    now: Optional[datetime] = None,
) -> List[WordSet]:
    """Order a pool by (urgency, level, due) and keep the first ``count``.

    An unseen set has level 0 and due ``0000-00-00``, so it is always due
    and sorts ahead of every seen set of the same level. The sort is
    stable, so ties keep the pool's order.
    """
    today = today_str(now)

    def sort_key(word_set: WordSet):
        state = states.get(word_set.id)
        level = state.level if state else 0
        due = (state.due if state else None) or UNSEEN_DUE
        urgency = 0 if due <= today else 1
        return urgency, level, due

    return sorted(pool, key=sort_key)[:count]


def filter_pool(sets: Iterable[WordSet], filters: SessionFilters) -> List[WordSet]:
    """Keep sets matching minimum priority, mode and owner."""
    pool = [s for s in sets if s.priority >= filters.min_priority]
    if filters.mode != ALL:
        pool = [s for s in pool if s.mode == filters.mode]
    if filters.owner != ALL:
        pool = [s for s in pool if s.owner == filters.owner]
    return pool


def srs_stats(
    pool: Iterable[WordSet],
    states: Mapping[str, ReviewState],
    now: Optional[datetime] = None,
) -> Dict[str, int]:
    """Count due and never-seen sets in a pool."""
    today = today_str(now)
    due = unseen = 0
    for word_set in pool:
        state = states.get(word_set.id)
        if state is None:
            unseen += 1
        if ((state.due if state else None) or "0") <= today:
            due += 1
    return {"due": due, "unseen": unseen}


# --------------------------------------------------------------------------
# Interval policy math
# --------------------------------------------------------------------------

def calc_next_interval(interval: int, ease_factor: float, score: float) -> tuple[int, float]:
    """Next review interval (days) and ease factor for a normalized score."""
    if score < 0.3:
        return 1, max(MIN_EASE, ease_factor - 0.2)
    if score < 0.6:
        return max(1, math.floor(interval * 0.8)), max(MIN_EASE, ease_factor - 0.1)

    new_ease = min(MAX_EASE, ease_factor + 0.1 * (score - 0.6))
    if interval == 0:
        new_interval = 1
    elif interval == 1:
        new_interval = 3
    else:
        # JS Math.round semantics: halves round up
        new_interval = math.floor(interval * new_ease + 0.5)
    return new_interval, new_ease


def is_due(state: Optional[ReviewState], now: Optional[datetime] = None) -> bool:
    """A missing record or a record without a due timestamp is due."""
    if state is None or state.next_due is None:
        return True
    return to_epoch_ms(now or utc_now()) >= state.next_due


def importance_score(importance: int) -> int:
    return IMPORTANCE_SCORES.get(importance, 0)


def select_session_sets(
    sets: Sequence[WordSet],
    states: Mapping[str, ReviewState],
    importance_filter: Iterable[int] = (),
    max_sets: int = 5,
    now: Optional[datetime] = None,
) -> List[WordSet]:
    """Pick the highest scoring sets for a session.

    Never studied sets score ``1000 + 10*importance``, due sets
    ``500 + 10*importance + days overdue`` and the rest their importance
    score alone. An empty ``importance_filter`` does not restrict.
    """
    allowed = set(importance_filter)
    now_ms = to_epoch_ms(now or utc_now())

    scored = []
    for word_set in sets:
        if allowed and word_set.priority not in allowed:
            continue
        state = states.get(word_set.id)
        imp = importance_score(word_set.priority)
        if state is None:
            score = 1000 + imp * 10
        elif is_due(state, now):
            if state.next_due is not None:
                overdue = max(0, now_ms - state.next_due) / MS_PER_DAY
            else:
                overdue = NEVER_DUE_DAYS
            score = 500 + imp * 10 + overdue
        else:
            score = imp
        scored.append((score, word_set))

    scored.sort(key=lambda pair: pair[0], reverse=True)
    return [word_set for _, word_set in scored[:max_sets]]


def update_record(
    previous: Optional[ReviewState],
    correct: int,
    total: int,
    now: Optional[datetime] = None,
) -> ReviewState:
    """Apply one graded round to a record under the interval policy."""
    now = now or utc_now()
    score = correct / total if total > 0 else 0.0
    prev = previous or ReviewState(interval=0, ease_factor=DEFAULT_EASE)

    interval, ease_factor = calc_next_interval(prev.interval, prev.ease_factor, score)
    now_ms = to_epoch_ms(now)
    return replace(
        prev,
        interval=interval,
        ease_factor=ease_factor,
        last_studied=now_ms,
        next_due=now_ms + interval * MS_PER_DAY,
        total_sessions=prev.total_sessions + 1,
        total_correct=prev.total_correct + correct,
        total_items=prev.total_items + total,
        last_score=score,
    )


def days_until_due(state: Optional[ReviewState], now: Optional[datetime] = None) -> int:
    """Whole days until the next review; 0 means review now."""
    if state is None or state.next_due is None:
        return 0
    diff = state.next_due - to_epoch_ms(now or utc_now())
    if diff <= 0:
        return 0
    return math.ceil(diff / MS_PER_DAY)


# --------------------------------------------------------------------------
# Policies
# --------------------------------------------------------------------------

class SchedulingPolicy(ABC):
    """Selects sets for a session and grades rounds."""
    name: ClassVar[str]

    @abstractmethod
    def select(
        self,
        pool: Sequence[WordSet],
        states: Mapping[str, ReviewState],
        count: int,
        now: Optional[datetime] = None,
    ) -> List[WordSet]:
        """Return the ordered session queue."""

    @abstractmethod
    def grade(
        self,
        previous: Optional[ReviewState],
        correct: int,
        total: int,
        now: Optional[datetime] = None,
    ) -> ReviewState:
        """Return the review state after a graded round."""

    @abstractmethod
    def is_due(self, state: Optional[ReviewState], now: Optional[datetime] = None) -> bool:
        """Check whether a set should be reviewed now."""


class LevelPolicy(SchedulingPolicy):
    """Coarse maturity levels 0-4 mapped to fixed day offsets."""
    name = "level"

    def __init__(self, srs_days: Sequence[int] = SRS_DAYS):
        self.srs_days = list(srs_days)

    def select(self, pool, states, count, now=None):
        return build_queue(pool, states, count, now)

    def grade(self, previous, correct, total, now=None):
        ratio = correct / total if total > 0 else 0.0
        prev = previous or ReviewState()
        level = next_level(prev.level, ratio)
        return replace(
            prev,
            level=level,
            due=level_due(level, now, self.srs_days),
            last_seen=today_str(now),
            total_sessions=prev.total_sessions + 1,
            total_correct=prev.total_correct + correct,
            total_items=prev.total_items + total,
            last_score=ratio,
        )

    def is_due(self, state, now=None):
        if state is None or state.due is None:
            return True
        return state.due <= today_str(now)


class IntervalPolicy(SchedulingPolicy):
    """Interval and ease factor per set, selection weighted by importance."""
    name = "interval"

    def __init__(self, importance_filter: Iterable[int] = ()):
        self.importance_filter = tuple(importance_filter)

    def select(self, pool, states, count, now=None):
        return select_session_sets(pool, states, self.importance_filter, count, now)

    def grade(self, previous, correct, total, now=None):
        return update_record(previous, correct, total, now)

    def is_due(self, state, now=None):
        return is_due(state, now)


POLICIES: Dict[str, Type[SchedulingPolicy]] = {
    LevelPolicy.name: LevelPolicy,
    IntervalPolicy.name: IntervalPolicy,
}


def get_policy(name: str, **kwargs) -> SchedulingPolicy:
    """Instantiate a scheduling policy by name."""
    try:
        policy_class = POLICIES[name]
    except KeyError:
        raise ValueError(f"Unknown scheduling policy: {name}") from None
    return policy_class(**kwargs)
