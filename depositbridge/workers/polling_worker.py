from __future__ import annotations

import logging

from arq import cron
from arq.connections import RedisSettings

from depositbridge.core.config import get_settings
from depositbridge.core.logging import configure_logging
from depositbridge.services.runtime import build_runtime


logger = logging.getLogger(__name__)


async def run_polling_tick(ctx) -> dict[str, int]:
    # One tick per cron firing; overlapping ticks are safe because claims are conditional.
    runtime = ctx["runtime"]
    result = await runtime.polling.run_tick()
    return result.to_dict()


async def _startup(ctx) -> None:
    configure_logging()
    ctx["runtime"] = await build_runtime(get_settings())
    logger.info("polling_worker_started")


async def _shutdown(ctx) -> None:
    runtime = ctx.get("runtime")
    if runtime is not None:
        await runtime.dispose()


def _tick_minutes(interval: int) -> set[int]:
    step = min(max(1, int(interval)), 60)
    return set(range(0, 60, step))


class WorkerSettings:
    # Keep worker configuration as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.polling_queue_name
    functions = [run_polling_tick]
    cron_jobs = [
        cron(
            run_polling_tick,
            minute=_tick_minutes(settings.tick_interval_minutes),
            run_at_startup=False,
            unique=True,
        )
    ]
    on_startup = _startup
    on_shutdown = _shutdown
