"""Explicit wiring of the study services for the active account."""
import logging
from typing import Optional

from sqlalchemy.orm import Session

from flashdrill.config import settings
from flashdrill.services.catalog_service import DATASETS, CatalogService, load_seed_sets
from flashdrill.services.local_store import LocalStore
from flashdrill.services.remote_store import HttpRemoteStore, NullRemoteStore, RemoteStore
from flashdrill.services.scheduler_service import SchedulerService
from flashdrill.services.scheduling import SchedulingPolicy, get_policy
from flashdrill.services.session_runner import SessionRunner
from flashdrill.services.stats_service import StatsService
from flashdrill.services.sync_service import ACCOUNTS, SyncService, load_account, save_account

logger = logging.getLogger(__name__)


def create_remote_store() -> RemoteStore:
    """Shared store from settings; offline-only when no URL is configured."""
    if not settings.remote.enabled:
        logger.info("No shared store configured, running local-only")
        return NullRemoteStore()
    return HttpRemoteStore(settings.remote.url, settings.remote.token, settings.remote.timeout)


class StudyContext:
    """Holds the services of one running account.

    Built once at startup and rebuilt by ``switch_account``; nothing in the
    services reaches for module-level state.
    """

    def __init__(
        self,
        db: Session,
        remote: RemoteStore,
        account: Optional[str] = None,
        dataset: Optional[str] = None,
        policy_name: Optional[str] = None,
    ):
        """Initialize the context and build the services."""
        self.db = db
        self.local = LocalStore(db)
        self.remote = remote
        self.account = account or load_account(self.local)
        self.dataset = dataset or settings.session.dataset
        self.policy_name = policy_name or settings.session.scheduling_policy
        self._build()

    def _build(self) -> None:
        self.sync = SyncService(self.local, self.remote, self.account)
        self.catalog = CatalogService(self.sync, load_seed_sets(self.dataset))
        self.scheduler = SchedulerService(self.catalog, self.sync, self._policy())
        self.stats = StatsService(self.sync)
        logger.info(f"Study context ready for {self.account} ({self.dataset}, {self.policy_name} policy)")

    def _policy(self) -> SchedulingPolicy:
        if self.policy_name == "level":
            return get_policy(self.policy_name, srs_days=settings.session.srs_days)
        return get_policy(self.policy_name)

    def new_runner(self, flash_time: Optional[float] = None) -> SessionRunner:
        return SessionRunner(self.scheduler, self.stats, flash_time=flash_time)

    async def start(self) -> bool:
        """Initial pull."""
        return await self.sync.pull()

    async def switch_account(self, account: str) -> None:
        """Tear down the current account's services and load another account."""
        if account not in ACCOUNTS:
            raise ValueError(f"Unknown account: {account}")
        await self.sync.close()
        save_account(self.local, account)
        self.account = account
        self._build()
        await self.sync.pull()

    def set_dataset(self, dataset: str) -> None:
        """Switch the bundled seed catalog."""
        if dataset not in DATASETS:
            raise ValueError(f"Unknown dataset: {dataset}")
        self.dataset = dataset
        self.catalog = CatalogService(self.sync, load_seed_sets(dataset))
        self.scheduler = SchedulerService(self.catalog, self.sync, self.scheduler.policy)

    async def close(self) -> None:
        await self.sync.close()
        await self.remote.close()
