import logging
from typing import Any

from arq import cron

from paybridge.core.config import settings
from paybridge.core.database import SessionLocal
from paybridge.core.logging import configure_logging
from paybridge.repositories.idempotency_repository import IdempotencyRepository
from paybridge.services.event_broadcaster import EventBroadcaster
from paybridge.services.payment_service import PaymentService
from paybridge.services.token_cache import InMemoryTokenCache
from paybridge.tasks import redis_settings

logger = logging.getLogger(__name__)


async def startup(ctx: dict[str, Any]) -> None:
    """Create the worker's process-wide token cache and broadcaster."""
    configure_logging()
    ctx["token_cache"] = InMemoryTokenCache(ttl_seconds=settings.mpesa_token_reuse_seconds)
    ctx["broadcaster"] = EventBroadcaster()


async def reconcile_pending_payments_task(ctx: dict[str, Any]) -> dict[str, int]:
    """Background task: settle payments whose webhook never arrived.

    Runs every 5 minutes. Polls the processor for old pending payments and
    fails pending payments whose charge request never reached the processor.
    """
    db = SessionLocal()
    try:
        service = PaymentService(
            db,
            broadcaster=ctx.get("broadcaster"),
            token_cache=ctx.get("token_cache"),
        )
        counts = await service.reconcile_stale_payments()
        if counts["applied"] or counts["abandoned"] or counts["errors"]:
            logger.info(
                "Reconciled %d of %d stale payments, abandoned %d, %d errors",
                counts["applied"],
                counts["checked"],
                counts["abandoned"],
                counts["errors"],
            )
        return counts
    finally:
        db.close()


async def cleanup_idempotency_records_task(ctx: dict[str, Any]) -> int:
    """Background task: drop Idempotency-Key records older than a day. Runs daily."""
    db = SessionLocal()
    try:
        count = IdempotencyRepository(db).delete_expired(max_age_hours=24)
        if count:
            logger.info("Deleted %d expired idempotency records", count)
        return count
    finally:
        db.close()


class WorkerSettings:
    functions = [
        reconcile_pending_payments_task,
        cleanup_idempotency_records_task,
    ]
    cron_jobs = [
        cron(
            reconcile_pending_payments_task,
            minute={0, 5, 10, 15, 20, 25, 30, 35, 40, 45, 50, 55},
        ),
        cron(cleanup_idempotency_records_task, hour=3, minute=0),  # daily at 03:00
    ]
    on_startup = startup
    redis_settings = redis_settings
