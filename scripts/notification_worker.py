from __future__ import annotations

import asyncio

from notifyhub.core.config import get_settings
from notifyhub.core.logging import configure_logging
from notifyhub.services.runtime import build_runtime


async def _main() -> None:
    # Run the retry polling loop without arq, for local runs against one Redis.
    configure_logging()
    settings = get_settings()
    runtime = build_runtime(settings)
    try:
        await runtime.scheduler.run_forever(poll_interval_s=settings.retry_poll_interval_s)
    finally:
        await runtime.close()


if __name__ == "__main__":
    asyncio.run(_main())
