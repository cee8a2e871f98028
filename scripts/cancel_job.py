from __future__ import annotations

import argparse
import asyncio

from depositbridge.core.config import get_settings
from depositbridge.core.errors import JobNotFoundError
from depositbridge.core.logging import configure_logging
from depositbridge.services.runtime import build_runtime


async def _cancel(job_id: str, reason: str) -> int:
    runtime = await build_runtime(get_settings())
    try:
        result = await runtime.lease.cancel(job_id, reason=reason)
    except JobNotFoundError:
        print(f"job_id={job_id}")
        print("outcome=not_found")
        return 1
    finally:
        await runtime.dispose()
    print(f"job_id={result.job_id}")
    print(f"outcome={result.outcome}")
    return 0


def main() -> None:
    # Operator cancel; in-flight jobs are flagged and stop at their next release.
    parser = argparse.ArgumentParser(description="Cancel an active integration job")
    parser.add_argument("job_id")
    parser.add_argument("--reason", default="Cancelled by operator")
    args = parser.parse_args()
    configure_logging()
    raise SystemExit(asyncio.run(_cancel(args.job_id, args.reason)))


if __name__ == "__main__":
    main()
