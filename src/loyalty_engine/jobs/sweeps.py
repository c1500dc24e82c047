"""Background scheduler for point and voucher expiry sweeps."""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import FastAPI

from ..core.config import get_settings
from ..core.database import SessionLocal
from ..services import ledger_service, voucher_service

logger = logging.getLogger(__name__)

_scheduler = AsyncIOScheduler(timezone="UTC")
_stop_requested = threading.Event()


def _expire_points(current_time: datetime | None = None) -> dict[str, int]:
    session = SessionLocal()
    try:
        return ledger_service.sweep_expired_points(
            session,
            now=current_time,
            should_stop=_stop_requested.is_set,
            commit_each=True,
        )
    finally:
        session.close()


def _expire_vouchers(current_time: datetime | None = None) -> int:
    session = SessionLocal()
    try:
        expired = voucher_service.sweep_expired(session, now=current_time)
        session.commit()
        return expired
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


async def _point_expiry_job() -> None:
    try:
        summary = _expire_points(datetime.now(timezone.utc))
        logger.info("point expiry sweep completed: %s", summary)
    except Exception:  # pragma: no cover - safeguard for background job
        logger.exception("point expiry sweep failed")
        raise


async def _voucher_expiry_job() -> None:
    try:
        expired = _expire_vouchers(datetime.now(timezone.utc))
        logger.info("voucher expiry sweep completed: %d expired", expired)
    except Exception:  # pragma: no cover - safeguard for background job
        logger.exception("voucher expiry sweep failed")
        raise


def register_scheduler(app: FastAPI) -> None:
    """Attach APScheduler lifecycle hooks to the FastAPI app."""

    settings = get_settings()
    if not settings.scheduler_enabled:
        logger.info("sweep scheduler disabled by configuration")
        return

    @app.on_event("startup")
    async def start_scheduler() -> None:
        if _scheduler.running:
            return
        _stop_requested.clear()
        _scheduler.add_job(
            _point_expiry_job,
            "interval",
            minutes=settings.point_expiry_sweep_minutes,
            id="point_expiry",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        _scheduler.add_job(
            _voucher_expiry_job,
            "interval",
            minutes=settings.voucher_expiry_sweep_minutes,
            id="voucher_expiry",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        _scheduler.start()
        logger.info("sweep scheduler started")

    @app.on_event("shutdown")
    async def shutdown_scheduler() -> None:
        _stop_requested.set()
        if _scheduler.running:
            _scheduler.shutdown(wait=False)
            logger.info("sweep scheduler stopped")


def request_stop() -> None:
    """Ask an in-flight point expiry sweep to stop before the next account."""

    _stop_requested.set()


def run_sweeps_once(current_time: datetime | None = None) -> dict[str, int]:
    """Convenience helper to run both sweeps synchronously for manual runs."""

    _stop_requested.clear()
    summary = _expire_points(current_time)
    summary["vouchers_expired"] = _expire_vouchers(current_time)
    return summary
