from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
import logging

from notifyhub.core.clock import Clock
from notifyhub.persistence.repos.base import NotificationStore
from notifyhub.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PurgeResult:
    notifications_purged: int
    ledger_entries_purged: int


async def purge_expired(
    store: NotificationStore,
    *,
    notification_retention_days: int,
    ledger_retention_days: int,
    clock: Clock | None = None,
) -> PurgeResult:
    # Terminal items (failed ones included) stay inspectable for the retention window.
    now = (clock or Clock()).now()
    notifications = await store.purge_terminal(before=now - timedelta(days=max(0, notification_retention_days)))
    ledger = await store.purge_ledger(before=now - timedelta(days=max(0, ledger_retention_days)))
    increment_counter("retention_notifications_purged_total", notifications)
    increment_counter("retention_ledger_purged_total", ledger)
    logger.info("retention_purge_completed notifications=%s ledger_entries=%s", notifications, ledger)
    return PurgeResult(notifications_purged=notifications, ledger_entries_purged=ledger)
