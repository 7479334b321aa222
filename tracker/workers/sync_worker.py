from __future__ import annotations

import argparse
import asyncio
import logging
from typing import Awaitable, Optional, Set

logger = logging.getLogger(__name__)


class SyncDispatcher:
    """Runs calendar sync coroutines beside the request that triggered them.

    Nothing on the request path awaits these tasks; failures end up in the log
    and the counters, never in the caller.
    """

    def __init__(self):
        self._tasks: Set[asyncio.Task] = set()
        self.dispatched = 0
        self.failed = 0
        self.last_error: Optional[str] = None

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def fire_and_forget(self, label: str, coro: Awaitable) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro, name=label)
        self._tasks.add(task)
        self.dispatched += 1
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.warning("Sync task %s was cancelled", task.get_name())
            return
        exc = task.exception()
        if exc is not None:
            self.failed += 1
            self.last_error = f"{task.get_name()}: {exc}"
            logger.error("Sync task %s failed", task.get_name(), exc_info=exc)

    async def drain(self, timeout: Optional[float] = None) -> None:
        if not self._tasks:
            return
        logger.info("Waiting for %s sync task(s)", len(self._tasks))
        await asyncio.wait(set(self._tasks), timeout=timeout)

    def stats(self) -> dict:
        return {
            "dispatched": self.dispatched,
            "failed": self.failed,
            "pending": self.pending,
            "last_error": self.last_error,
        }


async def resync_users(user_email: Optional[str] = None) -> int:
    from tracker.context import open_context
    from tracker.settings import get_settings

    context = await open_context(get_settings())
    failures = 0
    try:
        users = [user_email] if user_email else await context.repo.list_connected_users()
        if not users:
            logger.info("No connected calendar accounts to resync")
        for email in users:
            report = await context.reconciler.full_resync(email)
            if not report.connected:
                logger.warning("Skipped %s: calendar not connected", email)
                continue
            failures += report.failures
    finally:
        await context.aclose()
    return failures


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Push every todo and habit to the connected calendar.")
    parser.add_argument("--user", help="Only resync this account (email).")
    args = parser.parse_args(argv)

    from tracker.logging_config import configure_logging
    from tracker.settings import get_settings

    configure_logging(get_settings().log_level)
    failures = asyncio.run(resync_users(args.user.strip().lower() if args.user else None))
    return 1 if failures else 0


if __name__ == "__main__":
    raise SystemExit(main())
