"""Models for study-related data structures."""
import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

ALL = "all"  # filter sentinel matching every mode/owner
DELETED_PRIORITY = -1  # priority override that hides a seed set
UNSEEN_DUE = "0000-00-00"  # sorts before every real ISO date


class Mode(str, Enum):
    """Kinds of word sets."""
    CHUNK = "chunk"
    COLLOCATION = "collocation"
    SENTENCE = "sentence"
    CVC = "cvc"


class Owner(str, Enum):
    """Audience a word set belongs to."""
    CHILD = "child"
    PARENT = "parent"
    SHARED = "shared"


class Account(str, Enum):
    """The two accounts sharing one device."""
    CHILD = "child"
    PARENT = "parent"


class SyncStatus(str, Enum):
    """Observable state of the sync layer."""
    IDLE = "idle"
    SYNCING = "syncing"
    OK = "ok"
    ERROR = "error"


class Phase(str, Enum):
    """Phases of a study session."""
    READY = "ready"
    FLASH = "flash"
    RECALL = "recall"
    RESULT = "result"
    SUMMARY = "summary"
    EXITED = "exited"


def _as_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _opt_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _opt_float(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _opt_str(value: Any) -> Optional[str]:
    return value if isinstance(value, str) and value else None


@dataclass(frozen=True)
class WordSet:
    """Immutable definition of a group of items flashed together."""
    id: str
    mode: str
    owner: str
    label: str
    priority: int
    items: Tuple[str, ...]
    note: str = ""

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> Optional["WordSet"]:
        """Build a word set from a stored row, or None if the row has no items."""
        if not isinstance(raw, dict):
            return None
        items = raw.get("items")
        if not isinstance(items, (list, tuple)) or not raw.get("id"):
            return None
        priority = raw.get("priority", raw.get("importance", 1))
        return cls(
            id=str(raw["id"]),
            mode=str(raw.get("mode") or raw.get("level") or Mode.COLLOCATION.value),
            owner=str(raw.get("owner") or Owner.SHARED.value),
            label=str(raw.get("label") or raw.get("note") or raw["id"]),
            priority=_as_int(priority, 1),
            items=tuple(str(item) for item in items),
            note=str(raw.get("note") or ""),
        )

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "mode": self.mode,
            "owner": self.owner,
            "label": self.label,
            "priority": self.priority,
            "items": list(self.items),
        }
        if self.note:
            data["note"] = self.note
        return data

    def with_priority(self, priority: int) -> "WordSet":
        return replace(self, priority=priority)

    @property
    def size(self) -> int:
        return len(self.items)


# Python attribute -> persisted JSON key
_REVIEW_KEYS = {
    "level": "level",
    "due": "due",
    "last_seen": "lastSeen",
    "interval": "interval",
    "ease_factor": "easeFactor",
    "last_studied": "lastStudied",
    "next_due": "nextDue",
    "total_sessions": "totalSessions",
    "total_correct": "totalCorrect",
    "total_items": "totalItems",
    "last_score": "lastScore",
}

# Python attribute -> coercion of a stored value, None when unusable
_REVIEW_COERCE = {
    "level": _opt_int,
    "due": _opt_str,
    "last_seen": _opt_str,
    "interval": _opt_int,
    "ease_factor": _opt_float,
    "last_studied": _opt_int,
    "next_due": _opt_int,
    "total_sessions": _opt_int,
    "total_correct": _opt_int,
    "total_items": _opt_int,
    "last_score": _opt_float,
}


@dataclass(frozen=True)
class ReviewState:
    """Spaced-repetition state of one word set for one account.

    The level fields belong to the level policy and the interval fields to
    the interval policy; each policy leaves the other's fields untouched.
    """
    level: int = 0
    due: Optional[str] = None  # ISO date
    last_seen: Optional[str] = None  # ISO date
    interval: int = 0  # days
    ease_factor: float = 2.0
    last_studied: Optional[int] = None  # epoch ms
    next_due: Optional[int] = None  # epoch ms
    total_sessions: int = 0
    total_correct: int = 0
    total_items: int = 0
    last_score: Optional[float] = None

    @classmethod
    def from_dict(cls, raw: Any) -> "ReviewState":
        if not isinstance(raw, dict):
            return cls()
        values = {}
        for attr, key in _REVIEW_KEYS.items():
            if raw.get(key) is None:
                continue
            value = _REVIEW_COERCE[attr](raw[key])
            if value is None:
                logger.warning(f"Ignoring malformed review field {key}={raw[key]!r}")
                continue
            values[attr] = value
        return cls(**values)

    def to_dict(self) -> Dict[str, Any]:
        return {
            key: getattr(self, attr) for attr, key in _REVIEW_KEYS.items()
            if getattr(self, attr) is not None
        }


@dataclass(frozen=True)
class SessionRecord:
    """Aggregate of one finished session for one mode on one date."""
    date: str
    mode: str
    sets: int
    correct: int
    words: int

    @classmethod
    def from_dict(cls, raw: Any) -> Optional["SessionRecord"]:
        if not isinstance(raw, dict) or not raw.get("date"):
            return None
        return cls(
            date=str(raw["date"]),
            mode=str(raw.get("mode", "")),
            sets=_as_int(raw.get("sets"), 0),
            correct=_as_int(raw.get("correct"), 0),
            words=_as_int(raw.get("words", raw.get("total")), 0),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "date": self.date,
            "mode": self.mode,
            "sets": self.sets,
            "correct": self.correct,
            "words": self.words,
        }


@dataclass(frozen=True)
class SyncBucket:
    """Versioned envelope around a shared bucket payload."""
    data: Any
    updated_at: int
    version: int = 1

    def to_dict(self) -> Dict[str, Any]:
        return {"version": self.version, "updatedAt": self.updated_at, "data": self.data}

    @staticmethod
    def unwrap(raw: Any, fallback: Any) -> Any:
        """Return the payload of an envelope; bare values are their own payload."""
        if isinstance(raw, dict):
            for key in ("data", "payload"):
                if key in raw:
                    return fallback if raw[key] is None else raw[key]
        return fallback if raw is None else raw


@dataclass
class RoundResult:
    """Self-graded outcome of one flashed set."""
    word_set: WordSet
    score: int
    total: int

    @property
    def ratio(self) -> float:
        return self.score / self.total if self.total else 0.0

    @property
    def percentage(self) -> int:
        return round(self.ratio * 100)


@dataclass
class GradeResult:
    """Returned to the caller after a round is graded."""
    state: ReviewState
    percentage: int
    result: RoundResult


@dataclass
class SessionSummary:
    """Totals of a finished session."""
    rounds: List[RoundResult] = field(default_factory=list)
    records: List[SessionRecord] = field(default_factory=list)

    @property
    def correct(self) -> int:
        return sum(r.score for r in self.rounds)

    @property
    def total(self) -> int:
        return sum(r.total for r in self.rounds)

    @property
    def percentage(self) -> int:
        return round(self.correct / self.total * 100) if self.total else 0


@dataclass(frozen=True)
class SessionFilters:
    """Pool filter configuration supplied by the front end."""
    min_priority: int = 3
    mode: str = ALL
    owner: str = ALL
