"""
Shared invocation machinery for the program and automation runners.

`process_due_items` fans the due list out to a handler with bounded
concurrency. Items start in due order; each runs inside its own failure
boundary so one bad item never stops the rest. Items not started before the
invocation deadline are left untouched and stay due for the next run.
"""

import asyncio
import logging
import os
import socket
from dataclasses import asdict, dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

import config

logger = logging.getLogger("mailscheduler.batch")

OUTCOME_SENT = "sent"          # content handed to the gateway
OUTCOME_FAILED = "failed"      # send or resolution failure
OUTCOME_SKIPPED = "skipped"    # not processed (claim lost, deadline)
OUTCOME_DONE = "done"          # processed without a send (idempotent advance, empty audience, ...)


@dataclass
class ItemOutcome:
    status: str
    errors: List[str] = field(default_factory=list)
    notices: List[str] = field(default_factory=list)


@dataclass
class SchedulerResult:
    processed: int = 0
    sent: int = 0
    failed: int = 0
    skipped: int = 0
    errors: List[str] = field(default_factory=list)
    notices: List[str] = field(default_factory=list)

    def add(self, outcome: ItemOutcome):
        if outcome.status == OUTCOME_SKIPPED:
            self.skipped += 1
        else:
            self.processed += 1
            if outcome.status == OUTCOME_SENT:
                self.sent += 1
            elif outcome.status == OUTCOME_FAILED:
                self.failed += 1
        self.errors.extend(outcome.errors)
        self.notices.extend(outcome.notices)

    def merge(self, other: "SchedulerResult") -> "SchedulerResult":
        return SchedulerResult(
            processed=self.processed + other.processed,
            sent=self.sent + other.sent,
            failed=self.failed + other.failed,
            skipped=self.skipped + other.skipped,
            errors=self.errors + other.errors,
            notices=self.notices + other.notices,
        )

    @property
    def has_failures(self) -> bool:
        return self.failed > 0 or bool(self.errors)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


async def process_due_items(
    items: List[Dict],
    handler: Callable[[Dict], Awaitable[ItemOutcome]],
    *,
    label: str = "Item",
    concurrency: int = None,
    deadline_seconds: float = None,
) -> SchedulerResult:
    """
    Run `handler` over due items and aggregate the outcomes.

    Args:
        items: due documents, already sorted earliest-due first
        handler: coroutine returning an ItemOutcome for one item
        label: used in error strings ("Program <id>: ...")
        concurrency: max items in flight (default SCHEDULER_CONCURRENCY)
        deadline_seconds: stop starting new items after this long
            (default INVOCATION_DEADLINE_SECONDS, 0 = no deadline)
    """
    concurrency = max(1, concurrency or config.SCHEDULER_CONCURRENCY)
    if deadline_seconds is None:
        deadline_seconds = config.INVOCATION_DEADLINE_SECONDS

    loop = asyncio.get_running_loop()
    deadline: Optional[float] = loop.time() + deadline_seconds if deadline_seconds > 0 else None
    semaphore = asyncio.Semaphore(concurrency)
    deferred = 0

    async def _run(item: Dict) -> ItemOutcome:
        nonlocal deferred
        async with semaphore:
            if deadline is not None and loop.time() >= deadline:
                deferred += 1
                return ItemOutcome(OUTCOME_SKIPPED)
            item_id = item.get("_id")
            try:
                return await handler(item)
            except Exception as e:
                logger.error(f"{label.lower()}_failed: {item_id}: {e}", exc_info=True)
                return ItemOutcome(OUTCOME_FAILED, errors=[f"{label} {item_id}: {e}"])

    outcomes = await asyncio.gather(*(_run(item) for item in items))

    result = SchedulerResult()
    for outcome in outcomes:
        result.add(outcome)

    if deferred:
        result.notices.append(
            f"{deferred} due {label.lower()}(s) deferred to the next invocation (deadline {deadline_seconds}s)"
        )
        logger.warning("invocation_deadline_reached", extra={"label": label, "deferred": deferred})
    return result
