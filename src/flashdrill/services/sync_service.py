"""Service mirroring shared buckets between the local and the shared store."""
import asyncio
import copy
import json
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from flashdrill.config import settings
from flashdrill.exceptions import RemoteStoreError
from flashdrill.models.study_models import (
    Account,
    ReviewState,
    SessionRecord,
    SyncBucket,
    SyncStatus,
)
from flashdrill.monitoring import sync_operations
from flashdrill.services.local_store import LocalStore
from flashdrill.services.remote_store import RemoteStore
from flashdrill.services.scheduling import to_epoch_ms, utc_now

logger = logging.getLogger(__name__)

# Storage keys. Existing user data depends on these exact names.
SYNC_CUSTOM = "fr_custom_v7"
SYNC_PRIORITY = "fr_priority_v7"
SYNC_RECORDS = "fr_records_v7"
SYNC_SRS = "fr_srs_v7"
LOCAL_ACCOUNT = "fr_account_v7"


def local_records_key(account: str) -> str:
    return f"fr_records_v7_{account}"


def local_srs_key(account: str) -> str:
    return f"fr_srs_v7_{account}"


class Bucket(str, Enum):
    """Named units of shared state."""
    CUSTOM_SETS = "custom_sets"
    PRIORITY = "priority"
    RECORDS = "records"
    REVIEW_STATE = "review_state"


BUCKET_KEYS = {
    Bucket.CUSTOM_SETS: SYNC_CUSTOM,
    Bucket.PRIORITY: SYNC_PRIORITY,
    Bucket.RECORDS: SYNC_RECORDS,
    Bucket.REVIEW_STATE: SYNC_SRS,
}
CATALOG_BUCKETS = (Bucket.CUSTOM_SETS, Bucket.PRIORITY)
ACCOUNT_BUCKETS = (Bucket.RECORDS, Bucket.REVIEW_STATE)
ACCOUNTS = tuple(a.value for a in Account)


def _empty(bucket: Bucket) -> Any:
    """Fresh default payload for a bucket (or for one account's slice)."""
    return [] if bucket in (Bucket.CUSTOM_SETS, Bucket.RECORDS) else {}


def _has_shape(bucket: Bucket, value: Any) -> bool:
    return isinstance(value, type(_empty(bucket)))


def load_account(local: LocalStore) -> str:
    """Read the active-account marker, defaulting to the child account."""
    account = local.get(LOCAL_ACCOUNT, Account.CHILD.value)
    return account if account in ACCOUNTS else Account.CHILD.value


def save_account(local: LocalStore, account: str) -> None:
    local.set(LOCAL_ACCOUNT, account)


class SyncService:
    """Local-first state with best-effort reconciliation against a shared store.

    Every mutation is applied to memory and the local store first; the
    remote write that follows may fail without rolling anything back.
    Per-account buckets only replace the active account's entry in the
    shared map, catalog buckets re-apply the caller's updater to the
    freshly read remote payload. Nothing is pushed until the first pull
    has finished (successfully or not), so defaults never overwrite
    shared data.
    """

    def __init__(
        self,
        local: LocalStore,
        remote: RemoteStore,
        account: str,
        settle_delay: Optional[float] = None,
    ):
        """Initialize the service from the locally cached values."""
        if account not in ACCOUNTS:
            raise ValueError(f"Unknown account: {account}")
        self.local = local
        self.remote = remote
        self.account = account
        self.settle_delay = settings.sync.settle_delay if settle_delay is None else settle_delay

        self.status = SyncStatus.IDLE
        self.ready = False
        self.custom_sets: List[Dict[str, Any]] = self._cached_catalog(Bucket.CUSTOM_SETS)
        self.priority_overrides: Dict[str, int] = self._cached_catalog(Bucket.PRIORITY)
        self.records: List[Dict[str, Any]] = self.local_slice(Bucket.RECORDS, account)
        self.review_state: Dict[str, Dict[str, Any]] = self.local_slice(Bucket.REVIEW_STATE, account)

        self._listeners: List[Callable[[SyncStatus], None]] = []
        self._settle_handle: Optional[asyncio.TimerHandle] = None
        self._pending: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def add_status_listener(self, listener: Callable[[SyncStatus], None]) -> None:
        """Register a callback invoked on every status change."""
        self._listeners.append(listener)

    def _set_status(self, status: SyncStatus) -> None:
        if status == self.status:
            return
        self.status = status
        for listener in self._listeners:
            listener(status)

    def _settle_later(self) -> None:
        """Revert a settled ``ok`` to ``idle`` after the settle delay."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        if self._settle_handle:
            self._settle_handle.cancel()
        self._settle_handle = loop.call_later(self.settle_delay, self._settle)

    def _settle(self) -> None:
        self._settle_handle = None
        if self.status == SyncStatus.OK:
            self._set_status(SyncStatus.IDLE)

    def _finish(self, bucket: str, ok: bool) -> None:
        sync_operations.labels(bucket=bucket, outcome="ok" if ok else "error").inc()
        self._set_status(SyncStatus.OK if ok else SyncStatus.ERROR)
        self._settle_later()

    # ------------------------------------------------------------------
    # Local cache
    # ------------------------------------------------------------------

    def _cached_catalog(self, bucket: Bucket) -> Any:
        value = SyncBucket.unwrap(self.local.get(BUCKET_KEYS[bucket]), _empty(bucket))
        return value if _has_shape(bucket, value) else _empty(bucket)

    def _apply_catalog(self, bucket: Bucket, value: Any) -> None:
        if bucket == Bucket.CUSTOM_SETS:
            self.custom_sets = value
        else:
            self.priority_overrides = value
        self.local.set(BUCKET_KEYS[bucket], SyncBucket(value, to_epoch_ms(utc_now())).to_dict())

    def local_slice(self, bucket: Bucket, account: str) -> Any:
        """Locally stored slice of a per-account bucket for any account."""
        key = local_records_key(account) if bucket == Bucket.RECORDS else local_srs_key(account)
        value = self.local.get(key, _empty(bucket))
        return value if _has_shape(bucket, value) else _empty(bucket)

    def _store_slice(self, bucket: Bucket, account: str, value: Any) -> None:
        key = local_records_key(account) if bucket == Bucket.RECORDS else local_srs_key(account)
        self.local.set(key, value)

    # ------------------------------------------------------------------
    # Remote helpers
    # ------------------------------------------------------------------

    async def _fetch(self, key: str) -> Any:
        """Read and decode a remote bucket; malformed or absent -> None."""
        raw = await self.remote.get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (TypeError, ValueError):
            logger.warning(f"Shared bucket {key} is not valid JSON, ignoring it")
            return None

    async def _write(self, key: str, payload: Any) -> None:
        envelope = SyncBucket(payload, to_epoch_ms(utc_now())).to_dict()
        await self.remote.set(key, json.dumps(envelope, ensure_ascii=False))

    def _unwrap_by_account(self, bucket: Bucket, raw: Any) -> Optional[Dict[str, Any]]:
        """Per-account map from a remote envelope, or None if unusable.

        An account entry of the wrong shape is replaced by that account's
        locally cached slice.
        """
        payload = SyncBucket.unwrap(raw, None)
        if not isinstance(payload, dict):
            return None
        merged = {account: _empty(bucket) for account in ACCOUNTS}
        for account, value in payload.items():
            if _has_shape(bucket, value):
                merged[account] = value
            else:
                logger.warning(f"Shared {bucket.value} of {account} is malformed, using the local copy")
                merged[account] = self.local_slice(bucket, account)
        return merged

    # ------------------------------------------------------------------
    # Pull
    # ------------------------------------------------------------------

    async def pull(self) -> bool:
        """Fetch all buckets and refresh the local cache and memory."""
        self._set_status(SyncStatus.SYNCING)
        try:
            cs_raw, bp_raw, rec_raw, srs_raw = await asyncio.gather(
                *(self._fetch(BUCKET_KEYS[bucket]) for bucket in Bucket)
            )
        except RemoteStoreError as e:
            logger.warning(f"Pull failed, keeping cached values: {e}")
            self.ready = True
            self._finish("all", ok=False)
            return False
        except Exception as e:
            logger.error(f"Unexpected error during pull: {e}")
            self.ready = True
            self._finish("all", ok=False)
            return False

        for bucket, raw in ((Bucket.CUSTOM_SETS, cs_raw), (Bucket.PRIORITY, bp_raw)):
            value = SyncBucket.unwrap(raw, None)
            if not _has_shape(bucket, value):
                value = self._cached_catalog(bucket)
            self._apply_catalog(bucket, value)

        for bucket, raw in ((Bucket.RECORDS, rec_raw), (Bucket.REVIEW_STATE, srs_raw)):
            by_account = self._unwrap_by_account(bucket, raw)
            if by_account is None:
                by_account = {account: self.local_slice(bucket, account) for account in ACCOUNTS}
            for account in ACCOUNTS:
                self._store_slice(bucket, account, by_account[account])
            if bucket == Bucket.RECORDS:
                self.records = by_account[self.account]
            else:
                self.review_state = by_account[self.account]

        self.ready = True
        logger.info(f"Pulled shared buckets for account {self.account}")
        self._finish("all", ok=True)
        return True

    # ------------------------------------------------------------------
    # Push
    # ------------------------------------------------------------------

    async def push(self, bucket: Bucket, updater: Callable[[Any], Any]) -> bool:
        """Apply an updater to a bucket locally, then to the shared copy.

        For per-account buckets the updater receives the active account's
        slice. The updater may run twice (local then remote payload) and
        must not depend on anything but its argument.
        """
        if bucket in CATALOG_BUCKETS:
            return await self.push_catalog(bucket, updater)
        current = self.records if bucket == Bucket.RECORDS else self.review_state
        value = updater(copy.deepcopy(current))
        self._apply_slice(bucket, value)
        return await self.push_account(bucket, value)

    async def push_catalog(self, bucket: Bucket, updater: Callable[[Any], Any]) -> bool:
        """Merge a catalog-level change into the freshly read shared payload."""
        if bucket not in CATALOG_BUCKETS:
            raise ValueError(f"{bucket.value} is not a catalog bucket")
        current = self.custom_sets if bucket == Bucket.CUSTOM_SETS else self.priority_overrides
        self._apply_catalog(bucket, updater(copy.deepcopy(current)))
        if not self.ready:
            logger.info(f"Deferring push of {bucket.value} until the first pull")
            return False

        key = BUCKET_KEYS[bucket]
        self._set_status(SyncStatus.SYNCING)
        try:
            remote = SyncBucket.unwrap(await self._fetch(key), _empty(bucket))
            if not _has_shape(bucket, remote):
                remote = _empty(bucket)
            merged = updater(remote)
            await self._write(key, merged)
        except RemoteStoreError as e:
            logger.warning(f"Push of {bucket.value} failed, local value kept: {e}")
            self._finish(bucket.value, ok=False)
            return False

        self._apply_catalog(bucket, merged)
        self._finish(bucket.value, ok=True)
        return True

    async def push_account(self, bucket: Bucket, value: Any) -> bool:
        """Replace the active account's entry in a shared per-account bucket."""
        if bucket not in ACCOUNT_BUCKETS:
            raise ValueError(f"{bucket.value} is not a per-account bucket")
        if not self.ready:
            logger.info(f"Deferring push of {bucket.value} until the first pull")
            return False

        key = BUCKET_KEYS[bucket]
        self._set_status(SyncStatus.SYNCING)
        try:
            remote = self._unwrap_by_account(bucket, await self._fetch(key))
            if remote is None:
                remote = {account: _empty(bucket) for account in ACCOUNTS}
            remote[self.account] = value
            await self._write(key, remote)
        except RemoteStoreError as e:
            logger.warning(f"Push of {bucket.value} for {self.account} failed, local value kept: {e}")
            self._finish(bucket.value, ok=False)
            return False

        self._finish(bucket.value, ok=True)
        return True

    # ------------------------------------------------------------------
    # Local-first setters
    # ------------------------------------------------------------------

    def _apply_slice(self, bucket: Bucket, value: Any) -> None:
        if bucket == Bucket.RECORDS:
            self.records = value
        else:
            self.review_state = value
        self._store_slice(bucket, self.account, value)

    def _spawn(self, factory: Callable[[], Awaitable[bool]]) -> None:
        """Run a push in the background if pushing is allowed."""
        if not self.ready:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop, skipping background push")
            return
        task = loop.create_task(factory())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def set_records(self, records: List[Dict[str, Any]]) -> None:
        """Replace the active account's session records."""
        self._apply_slice(Bucket.RECORDS, records)
        self._spawn(lambda: self.push_account(Bucket.RECORDS, records))

    def set_review_state(self, review_state: Dict[str, Dict[str, Any]]) -> None:
        """Replace the active account's review state map."""
        self._apply_slice(Bucket.REVIEW_STATE, review_state)
        self._spawn(lambda: self.push_account(Bucket.REVIEW_STATE, review_state))

    def get_review_states(self) -> Dict[str, ReviewState]:
        return {set_id: ReviewState.from_dict(raw) for set_id, raw in self.review_state.items()}

    def put_review_state(self, set_id: str, state: ReviewState) -> None:
        """Store the graded state of one set."""
        self.set_review_state({**self.review_state, set_id: state.to_dict()})

    def reset_review_state(self) -> None:
        """Explicit bulk reset of the active account's review state."""
        logger.info(f"Resetting review state for {self.account}")
        self.set_review_state({})

    def get_records(self, account: Optional[str] = None) -> List[SessionRecord]:
        """Session records of any account, active account from memory."""
        raw = self.records if account in (None, self.account) else self.local_slice(Bucket.RECORDS, account)
        records = (SessionRecord.from_dict(r) for r in raw)
        return [r for r in records if r is not None]

    def reset_records(self, account: str) -> None:
        """Clear an account's records; other accounts are reset locally only."""
        if account == self.account:
            self.set_records([])
        else:
            self._store_slice(Bucket.RECORDS, account, [])

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def drain(self) -> None:
        """Wait for background pushes to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def close(self) -> None:
        """Stop the settle timer and wait for in-flight pushes."""
        await self.drain()
        if self._settle_handle:
            self._settle_handle.cancel()
            self._settle_handle = None
