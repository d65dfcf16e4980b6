"""
Async Scheduler: runs both entry points on a fixed cadence in one event loop.

For deployments without an external cron. Every SCHEDULER_INTERVAL_SECONDS
it runs the program runner, then the automation engine ("a tick"). Writes a
heartbeat document for health monitoring and shuts down gracefully on
SIGTERM / SIGINT, letting an in-flight tick finish.

    ┌──────────────────────────────────────────┐
    │           AsyncIO Event Loop             │
    │                                          │
    │  ┌────────────────┐  ┌────────────────┐  │
    │  │ scheduler loop │  │   heartbeat    │  │
    │  │  (every 60s)   │  │  (every 300s)  │  │
    │  └───────┬────────┘  └────────────────┘  │
    │          │                               │
    │  ┌───────┴──────────────────────────┐    │
    │  │ tick:                            │    │
    │  │  • run_program_scheduler         │    │
    │  │  • run_automation_scheduler      │    │
    │  │  • alert on failures             │    │
    │  └──────────────────────────────────┘    │
    └──────────────────────────────────────────┘
"""

import asyncio
import logging
import os
import signal
from datetime import datetime
from typing import Dict, Optional

from pymongo.errors import PyMongoError

import config
from database import ensure_indexes, heartbeat_collection, utcnow
from delivery.alerts import alert_invocation_crashed, alert_invocation_failures
from delivery.automation_engine import run_automation_scheduler
from delivery.batch import SchedulerResult
from delivery.program_runner import run_program_scheduler
from delivery.send_gateway import SendGateway

logger = logging.getLogger("mailscheduler.scheduler")

HEARTBEAT_ID = "delivery_scheduler"


async def run_tick(now: datetime = None, gateway: SendGateway = None) -> Dict[str, SchedulerResult]:
    """
    Run both entry points once and alert on failures.

    A crash in one entry point is reported and does not stop the other.
    """
    results: Dict[str, SchedulerResult] = {}
    entry_points = (
        ("Program", run_program_scheduler),
        ("Automation", run_automation_scheduler),
    )
    for name, entry_point in entry_points:
        try:
            result = await entry_point(now, gateway)
        except Exception as e:
            logger.error(f"{name.lower()}_scheduler_crashed: {e}", exc_info=True)
            await alert_invocation_crashed(name, e)
            result = SchedulerResult(errors=[f"{name} scheduler crashed: {e}"])
        else:
            if result.has_failures:
                await alert_invocation_failures(name, result)
        results[name.lower()] = result
    return results


class AsyncScheduler:
    """
    Lifecycle:
        scheduler = AsyncScheduler()
        await scheduler.start()   # blocks until SIGTERM/SIGINT
    """

    def __init__(self, gateway: SendGateway = None, interval_seconds: int = None):
        self.gateway = gateway
        self.interval = interval_seconds or config.SCHEDULER_INTERVAL_SECONDS
        self._shutdown = asyncio.Event()
        self._tasks: list = []
        self._last_tick: Optional[Dict] = None

    async def start(self):
        logger.info("=" * 60)
        logger.info("Email Delivery Scheduler: Starting")
        logger.info("=" * 60)
        logger.info(f"Interval: {self.interval}s")
        logger.info(f"Gateway: {config.SEND_GATEWAY} (batch size {config.SEND_BATCH_SIZE})")
        logger.info(f"Concurrency: {config.SCHEDULER_CONCURRENCY} items, {config.GATEWAY_MAX_CONCURRENCY} gateway calls")
        logger.info(f"Default timezone: {config.DEFAULT_TIMEZONE}")

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._handle_signal, sig)

        try:
            await asyncio.to_thread(ensure_indexes)
        except PyMongoError as e:
            logger.error(f"Index bootstrap failed: {e}")

        self._tasks = [
            asyncio.create_task(self._scheduler_loop(), name="scheduler_loop"),
            asyncio.create_task(self._heartbeat_loop(), name="heartbeat"),
        ]
        logger.info(f"Workers launched: {[t.get_name() for t in self._tasks]}")

        await self._shutdown.wait()
        await self._graceful_shutdown()

    async def tick(self, now: datetime = None) -> Dict[str, SchedulerResult]:
        results = await run_tick(now, self.gateway)
        self._last_tick = {
            "at": utcnow(),
            **{name: result.to_dict() for name, result in results.items()},
        }
        return results

    async def _scheduler_loop(self):
        logger.info("Scheduler loop started")

        while not self._shutdown.is_set():
            try:
                results = await self.tick()
                summary = ", ".join(
                    f"{name}: {r.processed} processed/{r.sent} sent/{r.failed} failed"
                    for name, r in results.items()
                )
                logger.info(f"tick_complete: {summary}")
            except Exception as e:
                logger.error(f"Scheduler loop error: {e}", exc_info=True)

            try:
                await asyncio.wait_for(self._shutdown.wait(), timeout=self.interval)
                break
            except asyncio.TimeoutError:
                continue

        logger.info("Scheduler loop stopped")

    def _write_heartbeat(self):
        heartbeat_collection.update_one(
            {"_id": HEARTBEAT_ID},
            {
                "$set": {
                    "last_heartbeat": utcnow(),
                    "pid": os.getpid(),
                    "status": "running",
                    "last_tick": self._last_tick,
                }
            },
            upsert=True,
        )

    async def _heartbeat_loop(self):
        """Write heartbeat to MongoDB for health monitoring."""
        while not self._shutdown.is_set():
            try:
                self._write_heartbeat()
            except PyMongoError as e:
                logger.error(f"Heartbeat write failed: {e}")

            try:
                await asyncio.wait_for(self._shutdown.wait(), timeout=config.HEARTBEAT_INTERVAL_SECONDS)
                break
            except asyncio.TimeoutError:
                continue

    def _handle_signal(self, sig):
        logger.info(f"Received signal {sig.name}, initiating graceful shutdown")
        self._shutdown.set()

    def request_shutdown(self):
        self._shutdown.set()

    async def _graceful_shutdown(self):
        """Let the in-flight tick finish (max 30s), then record the stop."""
        logger.info("── Graceful Shutdown ──")

        if self._tasks:
            done, pending = await asyncio.wait(
                self._tasks, timeout=30, return_when=asyncio.ALL_COMPLETED
            )
            for task in pending:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    logger.warning(f"Task {task.get_name()} cancelled during shutdown")

        try:
            heartbeat_collection.update_one(
                {"_id": HEARTBEAT_ID},
                {"$set": {"status": "stopped", "stopped_at": utcnow()}},
            )
        except PyMongoError as e:
            logger.warning(f"Final heartbeat failed: {e}")

        logger.info("Shutdown complete")


async def main():
    """Entry point for `main.py loop`."""
    scheduler = AsyncScheduler()
    await scheduler.start()
