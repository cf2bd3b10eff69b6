from __future__ import annotations

import pytest

from notifyhub.workers.notification_worker import WorkerSettings, purge_retention


def test_worker_settings_register_retention_cron() -> None:
    assert purge_retention in WorkerSettings.functions
    assert len(WorkerSettings.cron_jobs) == 1
    assert WorkerSettings.queue_name == WorkerSettings.settings.notify_queue_name


@pytest.mark.asyncio
async def test_purge_retention_job_uses_runtime_settings(runtime, make_request, fake_time) -> None:
    await runtime.gateway.admit(make_request())
    await runtime.scheduler.run_once()
    fake_time.advance((runtime.settings.notification_retention_days + 1) * 86400)

    summary = await purge_retention({"runtime": runtime})
    assert summary == "notifications=1 ledger=0"
