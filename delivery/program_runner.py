"""
Program Runner: fires every due program once per invocation.

Per program:
    claim → approved version → audience → Run(sending) → batches → Run(sent|failed)
    → reschedule (or pause a one-shot)

Rescheduling happens whatever the outcome of the send: a failed firing is
not retried, the next opportunity is the next computed next_run_at.
A firing interrupted by an exception marks its Run failed and stays due.
Recipients already recorded as sent for this firing are not sent again on
the next attempt, and a still-open Run for the firing is closed or reused.
"""

import logging
from datetime import datetime
from typing import Dict, List, Optional

from pymongo.errors import PyMongoError

import config
from database import DeliveryLedger, Program, Run, Version, utcnow
from delivery.audience import resolve_audience
from delivery.batch import (
    OUTCOME_DONE,
    OUTCOME_FAILED,
    OUTCOME_SENT,
    OUTCOME_SKIPPED,
    ItemOutcome,
    SchedulerResult,
    default_worker_id,
    process_due_items,
)
from delivery.schedule_parser import get_next_run_time
from delivery.send_gateway import (
    OutboundMessage,
    SendGateway,
    get_gateway,
    personalize_unsubscribe,
    unsubscribe_url,
)
from delivery.states import LedgerStatus, ProgramType

logger = logging.getLogger("mailscheduler.program_runner")


class ProgramRunner:
    """
    Lifecycle:
        runner = ProgramRunner()
        result = await runner.run()
    """

    def __init__(self, gateway: SendGateway = None, worker_id: str = None):
        self.gateway = gateway or get_gateway()
        self.worker_id = worker_id or default_worker_id()

    async def run(self, now: datetime = None) -> SchedulerResult:
        now = now or utcnow()
        try:
            due = Program.get_due(now)
        except PyMongoError as e:
            logger.error(f"program_fetch_failed: {e}", exc_info=True)
            return SchedulerResult(errors=[f"Failed to fetch due programs: {e}"])

        logger.info("program_scheduler_started", extra={"due": len(due), "worker": self.worker_id})

        async def handler(program: Dict) -> ItemOutcome:
            return await self.process_program(program, now)

        result = await process_due_items(due, handler, label="Program")
        logger.info("program_scheduler_finished", extra=result.to_dict())
        return result

    async def process_program(self, program: Dict, now: datetime) -> ItemOutcome:
        claimed = Program.claim(program, now, self.worker_id)
        if not claimed:
            return ItemOutcome(OUTCOME_SKIPPED)

        try:
            return await self._fire(claimed, now)
        except Exception:
            # Leave it due; recipients already sent are filtered by the ledger next time
            Program.release_claim(claimed["_id"])
            raise

    async def _fire(self, program: Dict, now: datetime) -> ItemOutcome:
        program_id = program["_id"]

        version = Version.get_approved(program.get("current_version_id"))
        if not version:
            logger.error("program_no_approved_version", extra={"program_id": str(program_id)})
            errors = [f"Program {program_id}: no approved version to send"]
            errors.extend(self._reschedule(program, now))
            return ItemOutcome(OUTCOME_FAILED, errors=errors)

        try:
            recipients = resolve_audience(program)
        except ValueError as e:
            errors = [f"Program {program_id}: {e}"]
            errors.extend(self._reschedule(program, now))
            return ItemOutcome(OUTCOME_FAILED, errors=errors)

        if not recipients:
            logger.info("program_empty_audience", extra={"program_id": str(program_id)})
            errors = self._reschedule(program, now)
            return ItemOutcome(
                OUTCOME_DONE,
                errors=errors,
                notices=[f"Program {program_id}: audience is empty, nothing sent"],
            )

        scheduled_for = program.get("next_run_at") or now
        content_key = DeliveryLedger.program_key(program_id, version["_id"], scheduled_for)
        already_sent = DeliveryLedger.sent_recipients(content_key, recipients)
        pending = [email for email in recipients if email not in already_sent]
        if already_sent:
            logger.info(
                "program_resuming_firing",
                extra={"program_id": str(program_id), "already_sent": len(already_sent)},
            )
        if not pending:
            # Delivered by an earlier attempt that failed before finishing
            Run.close_open(program_id, version["_id"], scheduled_for, len(already_sent))
            errors = self._reschedule(program, now)
            return ItemOutcome(
                OUTCOME_DONE,
                errors=errors,
                notices=[f"Program {program_id}: firing already delivered, nothing resent"],
            )

        run_id = Run.create(program, version, recipients, scheduled_for, now)
        progress = {"batch_ids": [], "delivered": len(already_sent)}
        try:
            send_errors = await self._send(program, version, pending, content_key, run_id, now, progress)
        except Exception as e:
            Run.mark_failed(run_id, f"interrupted: {e}", progress["batch_ids"], progress["delivered"])
            logger.error(
                "run_interrupted",
                extra={"program_id": str(program_id), "run_id": run_id, "delivered": progress["delivered"]},
            )
            raise

        batch_ids, delivered = progress["batch_ids"], progress["delivered"]
        errors: List[str] = []
        if send_errors:
            Run.mark_failed(run_id, "; ".join(send_errors), batch_ids, delivered)
            errors.append(f"Program {program_id}: run {run_id} failed: {'; '.join(send_errors)}")
            status = OUTCOME_FAILED
            logger.error(
                "run_failed",
                extra={"program_id": str(program_id), "run_id": run_id, "delivered": delivered},
            )
        else:
            Run.mark_sent(run_id, batch_ids, delivered)
            status = OUTCOME_SENT
            logger.info(
                "run_sent",
                extra={"program_id": str(program_id), "run_id": run_id, "delivered": delivered},
            )

        errors.extend(self._reschedule(program, now))
        return ItemOutcome(status, errors=errors)

    async def _send(self, program: Dict, version: Dict, recipients: List[str],
                    content_key: str, run_id: str, now: datetime, progress: Dict) -> List[str]:
        """
        Send in SEND_BATCH_SIZE chunks. Returns batch error strings.

        `progress` ("batch_ids", "delivered") is updated after every batch so
        an interrupted send can still be recorded on the Run.
        """
        errors: List[str] = []
        size = config.SEND_BATCH_SIZE
        metadata = {"program_id": str(program["_id"]), "run_id": run_id}

        for number, start in enumerate(range(0, len(recipients), size), 1):
            chunk = recipients[start:start + size]
            messages = [self._build_message(program, version, email) for email in chunk]
            result = await self.gateway.send_batch(messages)

            failed = set(result.failed_recipients)
            if not result.success and not failed:
                failed = set(chunk)
            ok = [email for email in chunk if email not in failed]

            if result.batch_id:
                progress["batch_ids"].append(result.batch_id)
            progress["delivered"] += len(ok)
            if not result.success:
                errors.append(f"batch {number}: {result.error}")

            DeliveryLedger.record_many(
                ok, content_key, LedgerStatus.SENT,
                gateway_id=result.batch_id, metadata=metadata, now=now,
            )
            if failed:
                DeliveryLedger.record_many(
                    [email for email in chunk if email in failed], content_key, LedgerStatus.FAILED,
                    gateway_id=result.batch_id, error=result.error, metadata=metadata, now=now,
                )

        return errors

    def _build_message(self, program: Dict, version: Dict, email: str) -> OutboundMessage:
        html = version.get("html_content") or ""
        text = version.get("plain_text") or ""
        headers = {}
        if version.get("preview_text"):
            headers["X-Preview-Text"] = version["preview_text"]

        # Transactional content goes out verbatim
        if program.get("type", ProgramType.BROADCAST) == ProgramType.BROADCAST:
            html = personalize_unsubscribe(html, email)
            text = personalize_unsubscribe(text, email)
            headers["List-Unsubscribe"] = f"<{unsubscribe_url(email)}>"

        return OutboundMessage(
            to=email,
            subject=version.get("subject") or "",
            html=html,
            text=text,
            headers=headers,
        )

    def _reschedule(self, program: Dict, now: datetime) -> List[str]:
        """Move the program to its next cycle. Returns error strings, if any."""
        program_id = program["_id"]
        schedule = program.get("schedule_text") or program.get("schedule_cron")

        if not schedule:
            Program.pause(program_id, now)
            logger.info("program_paused_one_shot", extra={"program_id": str(program_id)})
            return []

        try:
            next_run_at = get_next_run_time(schedule, program.get("timezone"), now)
        except ValueError as e:
            Program.pause(program_id, now, reason=str(e))
            logger.error("program_schedule_invalid", extra={"program_id": str(program_id), "error": str(e)})
            return [f"Program {program_id}: unusable schedule {schedule!r}, paused: {e}"]

        Program.reschedule(program_id, next_run_at, now)
        logger.info(
            "program_rescheduled",
            extra={"program_id": str(program_id), "next_run_at": next_run_at.isoformat()},
        )
        return []


async def run_program_scheduler(now: datetime = None,
                                gateway: Optional[SendGateway] = None) -> SchedulerResult:
    """Fire all due programs. Safe to call more often than needed."""
    return await ProgramRunner(gateway).run(now)
