"""
Scheduled jobs: registration against a persistent job store, and one
pass of each job body.
"""
from datetime import datetime, timedelta

import pytest
from apscheduler.jobstores.sqlalchemy import SQLAlchemyJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from sqlalchemy import update

import storefront.db.init_db
import storefront.providers.registry
import storefront.services.chat_gateway
import storefront.services.storage
from storefront.config import settings
from storefront.db.models import ChatSessionModel
from storefront.models.orders import LineItem
from storefront.services import chat_sessions, ledger
from storefront.services import scheduler as scheduler_module
from storefront.services.scheduler import (
    SESSION_CLEANUP_JOB_ID, SESSION_IDLE_DAYS, SWEEP_JOB_ID,
    run_chat_session_cleanup, run_reconciliation_sweep, shutdown_scheduler, start_scheduler,
)

from helpers import BUYER_ID


@pytest.fixture
async def job_scheduler(monkeypatch, tmp_path):
    fresh = AsyncIOScheduler(
        jobstores={"default": SQLAlchemyJobStore(url=f"sqlite:///{tmp_path / 'jobs.db'}")},
        timezone="UTC",
    )
    monkeypatch.setattr(scheduler_module.scheduler, "_scheduler", fresh)
    yield scheduler_module.scheduler
    shutdown_scheduler(wait=False)


@pytest.fixture
def job_environment(monkeypatch, session_factory, registry, gateway, storage):
    """Point the job bodies at the test database, providers and fakes."""
    monkeypatch.setattr(storefront.db.init_db, "AsyncSessionLocal", session_factory)
    monkeypatch.setattr(storefront.providers.registry, "get_provider_registry", lambda: registry)
    monkeypatch.setattr(storefront.services.chat_gateway, "get_chat_gateway", lambda: gateway)
    monkeypatch.setattr(storefront.services.storage, "get_storage", lambda: storage)


async def test_start_registers_both_jobs(job_scheduler):
    start_scheduler()

    assert job_scheduler.running
    sweep = job_scheduler.get_job(SWEEP_JOB_ID)
    cleanup = job_scheduler.get_job(SESSION_CLEANUP_JOB_ID)
    assert sweep.func is run_reconciliation_sweep
    assert cleanup.func is run_chat_session_cleanup
    assert cleanup.kwargs == {"days_inactive": SESSION_IDLE_DAYS}


async def test_restart_replaces_persisted_jobs(job_scheduler):
    start_scheduler()
    start_scheduler()

    assert len(job_scheduler._scheduler.get_jobs()) == 2


async def test_sweep_job_completes_stale_hosted_order(job_environment, products, session_factory, monkeypatch):
    monkeypatch.setattr(settings, "reconcile_sweep_min_age_minutes", -1)
    async with session_factory() as db:
        order = await ledger.create_pending_order(
            db, user_id=BUYER_ID, channel="pesapal", items=[LineItem(product_id="A", amount=500.0)]
        )
        await ledger.attach_tracking_id(db, order.id, "trk-1")

    await run_reconciliation_sweep()

    async with session_factory() as db:
        assert (await ledger.get_order(db, order.id)).status == "completed"
        assert await ledger.count_purchases(db, order_id=order.id) == 1


async def test_sweep_job_leaves_fresh_orders_alone(job_environment, products, session_factory, pesapal_stub):
    async with session_factory() as db:
        order = await ledger.create_pending_order(
            db, user_id=BUYER_ID, channel="pesapal", items=[LineItem(product_id="A", amount=500.0)]
        )
        await ledger.attach_tracking_id(db, order.id, "trk-1")

    await run_reconciliation_sweep()

    assert pesapal_stub.calls("/api/Transactions/GetTransactionStatus") == []
    async with session_factory() as db:
        assert (await ledger.get_order(db, order.id)).status == "pending"


async def test_cleanup_job_prunes_idle_sessions(job_environment, session_factory):
    async with session_factory() as db:
        await chat_sessions.get_or_create_session(db, "old")
        await chat_sessions.get_or_create_session(db, "new")
        await db.execute(
            update(ChatSessionModel)
            .where(ChatSessionModel.chat_id == "old")
            .values(last_activity_at=datetime.utcnow() - timedelta(days=SESSION_IDLE_DAYS + 1))
        )
        await db.commit()

    await run_chat_session_cleanup()

    async with session_factory() as db:
        assert await chat_sessions.get_session(db, "old") is None
        assert await chat_sessions.get_session(db, "new") is not None
