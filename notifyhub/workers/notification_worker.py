from __future__ import annotations

import asyncio
import logging

from arq import cron
from arq.connections import RedisSettings

from notifyhub.core.config import get_settings
from notifyhub.core.logging import configure_logging
from notifyhub.services.retention import purge_expired
from notifyhub.services.runtime import Runtime, build_runtime

logger = logging.getLogger(__name__)


async def purge_retention(ctx) -> str:
    # Drop terminal items and ledger rows that aged past their retention windows.
    runtime: Runtime = ctx["runtime"]
    result = await purge_expired(
        runtime.store,
        notification_retention_days=runtime.settings.notification_retention_days,
        ledger_retention_days=runtime.settings.ledger_retention_days,
        clock=runtime.clock,
    )
    return f"notifications={result.notifications_purged} ledger={result.ledger_entries_purged}"


async def _scheduler_loop(runtime: Runtime) -> None:
    # Claim due items on a bounded cadence so retries continue even when API traffic is idle.
    await runtime.scheduler.run_forever(poll_interval_s=max(0.05, runtime.settings.retry_poll_interval_s))


async def _startup(ctx) -> None:
    configure_logging()
    runtime = build_runtime(get_settings())
    await runtime.init_schema()
    ctx["runtime"] = runtime
    ctx["scheduler_task"] = asyncio.create_task(_scheduler_loop(runtime))
    logger.info("notification_worker_started")


async def _shutdown(ctx) -> None:
    # Cancel scheduler task on shutdown; unfinished leases expire and are reclaimed by peers.
    task = ctx.get("scheduler_task")
    if task:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
    runtime: Runtime | None = ctx.get("runtime")
    if runtime is not None:
        await runtime.close()


class WorkerSettings:
    # Keep worker settings as class attributes for ARQ CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url or "redis://localhost:6379/0")
    queue_name = settings.notify_queue_name
    functions = [purge_retention]
    cron_jobs = [cron(purge_retention, hour={3}, minute={15}, run_at_startup=False)]
    on_startup = _startup
    on_shutdown = _shutdown
