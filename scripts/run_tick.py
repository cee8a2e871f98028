from __future__ import annotations

import argparse
import asyncio

from depositbridge.core.config import get_settings
from depositbridge.core.logging import configure_logging
from depositbridge.services.runtime import build_runtime


async def _run_ticks(count: int) -> None:
    # Run polling ticks from the CLI when no worker is deployed.
    runtime = await build_runtime(get_settings())
    try:
        for index in range(count):
            result = await runtime.polling.run_tick()
            for key, value in result.to_dict().items():
                print(f"tick{index + 1}_{key}={value}")
    finally:
        await runtime.dispose()


def main() -> None:
    parser = argparse.ArgumentParser(description="Run polling ticks against the pending queue")
    parser.add_argument("--count", type=int, default=1)
    args = parser.parse_args()
    configure_logging()
    asyncio.run(_run_ticks(max(1, args.count)))


if __name__ == "__main__":
    main()
