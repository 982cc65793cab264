"""Service merging seed word sets with custom sets and priority overrides."""
import json
import logging
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from flashdrill.config import settings
from flashdrill.exceptions import AuthorizationError, CatalogValidationError
from flashdrill.models.study_models import (
    DELETED_PRIORITY,
    Account,
    Mode,
    Owner,
    WordSet,
)
from flashdrill.monitoring import authorization_rejections
from flashdrill.services.sync_service import Bucket, SyncService

logger = logging.getLogger(__name__)

MIN_ITEMS = 2
DATASETS = ("words", "collocations")

SetLike = Union[WordSet, Dict[str, Any]]


def importance_to_priority(raw: Any) -> int:
    """Star-rated importance (e.g. ``★★``) to a 0-3 priority; 1 if unrated."""
    if not isinstance(raw, str):
        return 1
    stars = raw.count("★")
    return max(0, min(3, stars or 1))


def normalize_source_sets(source_key: str, source_data: Any) -> List[Dict[str, Any]]:
    """Turn a seed source into set rows.

    Sources already shaped as sets pass through. Flat phrase rows
    (``words``/``category``/``importance``) are grouped by category into
    collocation sets.
    """
    if not isinstance(source_data, list):
        return []
    if all(isinstance(row, dict) and row.get("id") and "items" in row for row in source_data):
        return source_data
    if not all(isinstance(row, dict) and isinstance(row.get("words"), str) for row in source_data):
        # Mixed sources: keep only rows that look like sets
        return [row for row in source_data if isinstance(row, dict) and row.get("id")]

    grouped: Dict[str, List[Dict[str, Any]]] = {}
    for row in source_data:
        category = (row.get("category") or "Collocations").strip()
        phrase = row["words"].strip()
        if not phrase:
            continue
        grouped.setdefault(category, []).append({"phrase": phrase, "importance": row.get("importance")})

    return [
        {
            "id": f"{source_key}_col_{i:02d}",
            "mode": Mode.COLLOCATION.value,
            "owner": Owner.CHILD.value,
            "label": category,
            "priority": max([1] + [importance_to_priority(r["importance"]) for r in rows]),
            "items": [r["phrase"] for r in rows],
        }
        for i, (category, rows) in enumerate(grouped.items(), start=1)
    ]


def load_seed_sets(dataset: str, seed_dir: Optional[Path] = None) -> List[WordSet]:
    """Load and normalize a bundled seed dataset."""
    path = (seed_dir or settings.paths.seed_dir) / f"{dataset}.json"
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        logger.error(f"Could not load seed dataset {dataset}: {e}")
        return []
    rows = normalize_source_sets(dataset, data)
    sets = [WordSet.from_dict(row) for row in rows]
    return [s for s in sets if s is not None]


def _coerce(rows: Iterable[SetLike]) -> List[WordSet]:
    sets = []
    for row in rows:
        word_set = row if isinstance(row, WordSet) else WordSet.from_dict(row)
        if word_set is not None:
            sets.append(word_set)
    return sets


def resolve(
    seed_sets: Iterable[SetLike],
    overrides: Dict[str, Any],
    custom_sets: Iterable[SetLike],
) -> List[WordSet]:
    """Merge seed sets with priority overrides, then append custom sets.

    An override replaces the seed priority; ``-1`` removes the set. Rows
    without items are dropped.
    """
    resolved = []
    for word_set in _coerce(seed_sets):
        override = overrides.get(word_set.id)
        if isinstance(override, int) and not isinstance(override, bool):
            word_set = word_set.with_priority(override)
        if word_set.priority >= 0:
            resolved.append(word_set)
    return resolved + _coerce(custom_sets)


def new_set_id() -> str:
    return f"custom_{uuid.uuid4().hex[:10]}"


@dataclass
class DuplicateReport:
    """Overlap of a new set with the existing catalog."""
    label_exists: bool = False
    items: List[Tuple[str, str]] = field(default_factory=list)  # (item, label of set holding it)

    @property
    def has_duplicates(self) -> bool:
        return self.label_exists or bool(self.items)


class CatalogService:
    """Service for reading and mutating the merged word set catalog."""

    def __init__(self, sync: SyncService, seed_sets: Sequence[WordSet]):
        """Initialize the service with the sync layer and the seed catalog."""
        self.sync = sync
        self.seed_sets = list(seed_sets)
        self._seed_ids = {s.id for s in self.seed_sets}

    def all_sets(self) -> List[WordSet]:
        """The merged catalog."""
        return resolve(self.seed_sets, self.sync.priority_overrides, self.sync.custom_sets)

    def get_set(self, set_id: str) -> Optional[WordSet]:
        return next((s for s in self.all_sets() if s.id == set_id), None)

    def is_seed(self, set_id: str) -> bool:
        return set_id in self._seed_ids

    def authorize(self, owner: str, action: str) -> None:
        """Only the parent account may mutate shared sets."""
        if owner == Owner.SHARED.value and self.sync.account != Account.PARENT.value:
            authorization_rejections.labels(action=action).inc()
            logger.warning(f"Account {self.sync.account} may not {action} a shared set")
            raise AuthorizationError(f"Only parent can {action} shared sets.")

    def check_duplicates(self, label: str, items: Sequence[str]) -> DuplicateReport:
        """Report a reused label and items already present in other sets."""
        existing = self.all_sets()
        report = DuplicateReport(label_exists=any(s.label.strip() == label.strip() for s in existing))
        seen = set()
        for item in items:
            key = item.lower().strip()
            if key in seen:
                continue
            for word_set in existing:
                if any(x.lower().strip() == key for x in word_set.items):
                    report.items.append((item, word_set.label))
                    seen.add(key)
                    break
        return report

    def build_custom_set(
        self,
        label: str,
        items: Iterable[str],
        mode: str = Mode.COLLOCATION.value,
        owner: str = Owner.CHILD.value,
        priority: int = 2,
    ) -> WordSet:
        """Validate authored input and build a new custom set."""
        label = label.strip()
        cleaned = tuple(item.strip() for item in items if item and item.strip())
        if not label:
            raise CatalogValidationError("A set needs a label")
        if len(cleaned) < MIN_ITEMS:
            raise CatalogValidationError(f"A set needs at least {MIN_ITEMS} items")
        if mode not in {m.value for m in Mode}:
            raise CatalogValidationError(f"Unknown mode: {mode}")
        if owner not in {o.value for o in Owner}:
            raise CatalogValidationError(f"Unknown owner: {owner}")
        if not 0 <= priority <= 3:
            raise CatalogValidationError("Priority must be between 0 and 3")
        self.authorize(owner, "write")
        return WordSet(id=new_set_id(), mode=mode, owner=owner, label=label, priority=priority, items=cleaned)

    async def add_custom_set(
        self,
        label: str,
        items: Iterable[str],
        mode: str = Mode.COLLOCATION.value,
        owner: str = Owner.CHILD.value,
        priority: int = 2,
    ) -> Tuple[WordSet, DuplicateReport]:
        """Author a custom set and push it to the shared catalog."""
        items = list(items)
        report = self.check_duplicates(label, [i.strip() for i in items if i and i.strip()])
        word_set = self.build_custom_set(label, items, mode, owner, priority)
        row = word_set.to_dict()
        await self.sync.push_catalog(Bucket.CUSTOM_SETS, lambda sets: sets + [row])
        logger.info(f"Added custom set {word_set.id} ({word_set.label})")
        return word_set, report

    async def bulk_add_custom_sets(self, rows: Iterable[Dict[str, Any]]) -> List[WordSet]:
        """Author several sets at once; nothing is written if any row is invalid."""
        created = [
            self.build_custom_set(
                row.get("label", ""),
                row.get("items", []),
                row.get("mode", Mode.COLLOCATION.value),
                row.get("owner", Owner.CHILD.value),
                row.get("priority", 2),
            )
            for row in rows
        ]
        if not created:
            return []
        new_rows = [s.to_dict() for s in created]
        await self.sync.push_catalog(Bucket.CUSTOM_SETS, lambda sets: sets + new_rows)
        logger.info(f"Added {len(created)} custom sets")
        return created

    async def update_priority(self, set_id: str, priority: int) -> None:
        """Override the priority of a set."""
        word_set = self.get_set(set_id)
        if word_set is None:
            raise ValueError(f"Word set {set_id} not found")
        if not 0 <= priority <= 3:
            raise CatalogValidationError("Priority must be between 0 and 3")
        self.authorize(word_set.owner, "update")

        if self.is_seed(set_id):
            await self.sync.push_catalog(Bucket.PRIORITY, lambda prev: {**prev, set_id: priority})
        else:
            await self.sync.push_catalog(
                Bucket.CUSTOM_SETS,
                lambda sets: [{**s, "priority": priority} if s.get("id") == set_id else s for s in sets],
            )

    async def delete_set(self, word_set: WordSet) -> None:
        """Hide a seed set via override or drop a custom set."""
        self.authorize(word_set.owner, "delete")
        if self.is_seed(word_set.id):
            await self.sync.push_catalog(
                Bucket.PRIORITY, lambda prev: {**prev, word_set.id: DELETED_PRIORITY}
            )
        else:
            await self.sync.push_catalog(
                Bucket.CUSTOM_SETS, lambda sets: [s for s in sets if s.get("id") != word_set.id]
            )
        logger.info(f"Deleted word set {word_set.id}")

    async def reset_priorities(self) -> None:
        """Restore every seed priority and undelete seed sets."""
        self.authorize(Owner.SHARED.value, "reset")
        await self.sync.push_catalog(Bucket.PRIORITY, lambda prev: {})
