from __future__ import annotations

import asyncio

from pushrelay.core.logging import configure_logging
from pushrelay.workers.push_worker import run_push_worker


async def _main() -> None:
    # Boot the delivery pool and orphan reaper independently from any API process.
    configure_logging()
    await run_push_worker()


if __name__ == "__main__":
    asyncio.run(_main())
