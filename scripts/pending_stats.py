from __future__ import annotations

import argparse
import asyncio

from depositbridge.core.config import get_settings
from depositbridge.core.logging import configure_logging
from depositbridge.services.runtime import build_runtime


async def _print_stats() -> None:
    runtime = await build_runtime(get_settings())
    try:
        stats = await runtime.lease.stats()
        config = await runtime.polling_settings.current()
    finally:
        await runtime.dispose()
    print(f"total={stats['total']}")
    for status, count in sorted(stats["by_status"].items()):
        print(f"status_{status.lower()}={count}")
    print(f"ready_for_poll={stats['ready_for_poll']}")
    print(f"average_attempts={stats['average_attempts']}")
    print(f"oldest_created_at={stats['oldest_created_at']}")
    print(f"polling_settings_source={config.source}")
    print(f"max_attempts={config.max_attempts}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Print pending queue statistics")
    parser.parse_args()
    configure_logging()
    asyncio.run(_print_stats())


if __name__ == "__main__":
    main()
