from __future__ import annotations

import asyncio

from notifyhub.core.config import get_settings
from notifyhub.core.logging import configure_logging
from notifyhub.services.retention import purge_expired
from notifyhub.services.runtime import build_runtime


async def prune() -> None:
    # Remove terminal notifications and ledger rows past their retention windows.
    configure_logging()
    settings = get_settings()
    runtime = build_runtime(settings)
    try:
        result = await purge_expired(
            runtime.store,
            notification_retention_days=settings.notification_retention_days,
            ledger_retention_days=settings.ledger_retention_days,
            clock=runtime.clock,
        )
    finally:
        await runtime.close()
    print(f"pruned_notifications={result.notifications_purged}")
    print(f"pruned_ledger_entries={result.ledger_entries_purged}")


if __name__ == "__main__":
    asyncio.run(prune())
