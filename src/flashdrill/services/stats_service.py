"""Service for session history and dashboard aggregates."""
import csv
import io
import logging
from datetime import datetime
from typing import Dict, List, Optional, Sequence

from flashdrill.config import settings
from flashdrill.exceptions import AuthorizationError
from flashdrill.models.study_models import ALL, Account, ReviewState, RoundResult, SessionRecord
from flashdrill.services.scheduling import add_days, today_str
from flashdrill.services.sync_service import Bucket, SyncService

logger = logging.getLogger(__name__)

CSV_HEADER = ["date", "mode", "sets", "correct", "words"]


class StatsService:
    """Service for writing session records and reading aggregates."""

    def __init__(self, sync: SyncService, retention_days: Optional[int] = None):
        """Initialize the service with the sync layer."""
        self.sync = sync
        self.retention_days = retention_days or settings.sync.retention_days

    def save_session(self, rounds: Sequence[RoundResult], now: Optional[datetime] = None) -> List[SessionRecord]:
        """Append one record per mode for a finished session and prune old ones."""
        if not rounds:
            return []
        today = today_str(now)
        cutoff = add_days(today, -self.retention_days)

        by_mode: Dict[str, Dict[str, int]] = {}
        for result in rounds:
            totals = by_mode.setdefault(result.word_set.mode, {"sets": 0, "correct": 0, "words": 0})
            totals["sets"] += 1
            totals["correct"] += result.score
            totals["words"] += result.total
        new_records = [SessionRecord(date=today, mode=mode, **totals) for mode, totals in by_mode.items()]

        kept = [r for r in self.sync.records if isinstance(r, dict) and str(r.get("date", "")) > cutoff]
        pruned = len(self.sync.records) - len(kept)
        if pruned:
            logger.info(f"Pruned {pruned} records older than {cutoff}")
        self.sync.set_records(kept + [r.to_dict() for r in new_records])
        return new_records

    def _filtered(self, account: str, mode: str) -> List[SessionRecord]:
        records = self.sync.get_records(account)
        return records if mode == ALL else [r for r in records if r.mode == mode]

    def get_dashboard_series(self, account: str, mode: str = ALL) -> List[Dict[str, object]]:
        """Per-date sums of sets, correct answers and words, oldest first."""
        by_date: Dict[str, Dict[str, object]] = {}
        for record in self._filtered(account, mode):
            row = by_date.setdefault(record.date, {"date": record.date, "sets": 0, "correct": 0, "words": 0})
            row["sets"] += record.sets
            row["correct"] += record.correct
            row["words"] += record.words
        return sorted(by_date.values(), key=lambda row: row["date"])

    def total_stats(self, account: str, mode: str = ALL) -> Dict[str, int]:
        totals = {"sets": 0, "correct": 0, "words": 0}
        for row in self.get_dashboard_series(account, mode):
            for key in totals:
                totals[key] += row[key]
        return totals

    def recent_records(self, account: str, mode: str = ALL, limit: int = 30) -> List[SessionRecord]:
        """Newest records first."""
        return list(reversed(self._filtered(account, mode)))[:limit]

    def export_csv(self, account: str) -> str:
        buffer = io.StringIO()
        writer = csv.writer(buffer, lineterminator="\n")
        writer.writerow(CSV_HEADER)
        for record in self.sync.get_records(account):
            writer.writerow([record.date, record.mode, record.sets, record.correct, record.words])
        return buffer.getvalue()

    def reset_records(self, account: str) -> None:
        """Delete an account's history (parent only)."""
        if self.sync.account != Account.PARENT.value:
            raise AuthorizationError("Only parent can reset records.")
        logger.info(f"Resetting records for {account}")
        self.sync.reset_records(account)

    def review_totals(self, account: str) -> Dict[str, int]:
        """Lifetime totals across an account's review states."""
        if account == self.sync.account:
            raw_states = self.sync.review_state
        else:
            raw_states = self.sync.local_slice(Bucket.REVIEW_STATE, account)
        states = [ReviewState.from_dict(raw) for raw in raw_states.values()]
        return {
            "totalSessions": sum(s.total_sessions for s in states),
            "totalCorrect": sum(s.total_correct for s in states),
            "totalItems": sum(s.total_items for s in states),
        }
