"""
Reconciliation Scheduler

APScheduler setup for the periodic jobs of the payments backend:
- the follow-up sweep over pending orders whose provider notification
  never arrived
- pruning of idle chat sessions

Job definitions live in a SQLAlchemyJobStore (its own SQLite file, next to
the ledger database) so the schedule carries over across restarts.
"""
import logging
from typing import Optional
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.jobstores.sqlalchemy import SQLAlchemyJobStore
from apscheduler.triggers.interval import IntervalTrigger
from apscheduler.executors.asyncio import AsyncIOExecutor

from ..config import settings

logger = logging.getLogger(__name__)

SWEEP_JOB_ID = "reconcile_pending_orders"
SESSION_CLEANUP_JOB_ID = "cleanup_chat_sessions"
SESSION_CLEANUP_INTERVAL_MINUTES = 24 * 60
SESSION_IDLE_DAYS = 7


def _job_store_url() -> str:
    stem = settings.database_path[:-3] if settings.database_path.endswith(".db") else settings.database_path
    return f"sqlite:///{stem}_scheduler.db"


class ReconciliationScheduler:
    """Process-wide AsyncIOScheduler holder (one instance per process)."""

    _instance: Optional["ReconciliationScheduler"] = None
    _scheduler: Optional[AsyncIOScheduler] = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self):
        if self._scheduler is None:
            self._scheduler = self._build()

    @staticmethod
    def _build() -> AsyncIOScheduler:
        """
        Jobs run on the event loop; a sweep still running when its next
        tick comes due is not started twice, and missed ticks collapse
        into one run.
        """
        job_store = SQLAlchemyJobStore(
            url=_job_store_url(),
            tablename="apscheduler_jobs",
            engine_options={
                "connect_args": {"timeout": 30, "check_same_thread": False},
                "pool_pre_ping": True,
            },
        )
        built = AsyncIOScheduler(
            jobstores={"default": job_store},
            executors={"default": AsyncIOExecutor()},
            job_defaults={"coalesce": True, "max_instances": 1, "misfire_grace_time": 300},
            timezone="UTC",
        )
        logger.info(f"Reconciliation scheduler configured (job store {_job_store_url()})")
        return built

    @property
    def running(self) -> bool:
        return bool(self._scheduler and self._scheduler.running)

    def start(self):
        if self.running:
            logger.warning("Reconciliation scheduler is already running")
            return

        self._scheduler.start()
        jobs = self._scheduler.get_jobs()
        logger.info(f"Reconciliation scheduler started with {len(jobs)} persisted job(s)")
        for job in jobs:
            logger.debug(f"Persisted job {job.id} next runs at {job.next_run_time}")

    def shutdown(self, wait: bool = True):
        if self.running:
            self._scheduler.shutdown(wait=wait)
            logger.info("Reconciliation scheduler stopped")

    def add_interval_job(
        self,
        job_id: str,
        job_func,
        interval_minutes: float,
        **kwargs
    ) -> str:
        """
        Register a periodic job, replacing any persisted job with the same id.

        Args:
            job_id: Stable job identifier
            job_func: Module-level coroutine function (the job store pickles a reference to it)
            interval_minutes: Period between runs
            **kwargs: Keyword arguments for job_func

        Returns:
            Job ID
        """
        self._scheduler.add_job(
            job_func,
            trigger=IntervalTrigger(minutes=interval_minutes),
            id=job_id,
            name=job_id.replace("_", " ").title(),
            replace_existing=True,
            kwargs=kwargs
        )

        job = self._scheduler.get_job(job_id)
        logger.info(f"Scheduled {job_id} every {interval_minutes} min (first run {job.next_run_time})")
        return job_id

    def get_job(self, job_id: str):
        return self._scheduler.get_job(job_id)


scheduler = ReconciliationScheduler()


def get_sweep_interval_minutes() -> float:
    """Minutes between sweeps; one minute in demo mode."""
    if settings.demo_mode:
        return 1
    return settings.reconcile_sweep_interval_minutes


# ============================================================================
# Jobs
# ============================================================================

async def run_reconciliation_sweep():
    """Scheduled job: re-query stale pending orders."""
    from ..db.init_db import AsyncSessionLocal
    from ..providers.registry import get_provider_registry
    from .chat_gateway import get_chat_gateway
    from .follow_up import sweep_pending_orders
    from .fulfillment import ChatFulfillmentNotifier
    from .storage import get_storage

    notifier = ChatFulfillmentNotifier(get_chat_gateway(), get_storage())
    async with AsyncSessionLocal() as db:
        try:
            await sweep_pending_orders(db, get_provider_registry(), notifier)
        except Exception as e:
            logger.error(f"Reconciliation sweep failed: {e}", exc_info=True)


async def run_chat_session_cleanup(days_inactive: int = SESSION_IDLE_DAYS):
    """Scheduled job: drop chat sessions idle for days_inactive days."""
    from ..db.init_db import AsyncSessionLocal
    from .chat_sessions import delete_inactive_sessions

    async with AsyncSessionLocal() as db:
        await delete_inactive_sessions(db, days_inactive=days_inactive)


# ============================================================================
# Lifespan hooks
# ============================================================================

def start_scheduler():
    """Start the scheduler and (re)register both jobs. Called from the app lifespan."""
    scheduler.start()
    scheduler.add_interval_job(SWEEP_JOB_ID, run_reconciliation_sweep, get_sweep_interval_minutes())
    scheduler.add_interval_job(
        SESSION_CLEANUP_JOB_ID,
        run_chat_session_cleanup,
        SESSION_CLEANUP_INTERVAL_MINUTES,
        days_inactive=SESSION_IDLE_DAYS,
    )


def shutdown_scheduler(wait: bool = True):
    scheduler.shutdown(wait=wait)
