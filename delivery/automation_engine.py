"""
Automation Enrollment Engine: moves each due enrollment one step forward.

Per enrollment:
    claim → active steps → current step → ledger check → send → ledger → advance

An enrollment only advances after its current step is delivered (now or in
an earlier invocation, per the ledger). A failed send leaves current_step and
next_step_at untouched so the step is retried on the next invocation.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from pymongo.errors import PyMongoError

from database import (
    Automation,
    AutomationStep,
    DeliveryLedger,
    Enrollment,
    utcnow,
)
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
from delivery.send_gateway import (
    OutboundMessage,
    SendGateway,
    get_gateway,
    personalize_unsubscribe,
)
from delivery.states import LedgerStatus

logger = logging.getLogger("mailscheduler.automation_engine")

DELAY_UNITS = {
    "minutes": timedelta(minutes=1),
    "hours": timedelta(hours=1),
    "days": timedelta(days=1),
    "weeks": timedelta(weeks=1),
}
DEFAULT_DELAY_UNIT = "days"


def calculate_next_step_at(base: datetime, value: Any, unit: Optional[str]) -> datetime:
    """base + value * unit. Unknown units count as days, negative delays as zero."""
    unit_name = (unit or DEFAULT_DELAY_UNIT).lower()
    step = DELAY_UNITS.get(unit_name)
    if step is None:
        logger.warning(f"unknown_delay_unit: {unit!r}, using {DEFAULT_DELAY_UNIT}")
        step = DELAY_UNITS[DEFAULT_DELAY_UNIT]
    return base + step * max(0, int(value or 0))


class AutomationEngine:
    """
    Lifecycle:
        engine = AutomationEngine()
        result = await engine.run()
    """

    def __init__(self, gateway: SendGateway = None, worker_id: str = None):
        self.gateway = gateway or get_gateway()
        self.worker_id = worker_id or default_worker_id()

    async def run(self, now: datetime = None) -> SchedulerResult:
        now = now or utcnow()
        try:
            due = Enrollment.get_due(now)
        except PyMongoError as e:
            logger.error(f"enrollment_fetch_failed: {e}", exc_info=True)
            return SchedulerResult(errors=[f"Failed to fetch due enrollments: {e}"])

        logger.info("automation_scheduler_started", extra={"due": len(due), "worker": self.worker_id})

        async def handler(enrollment: Dict) -> ItemOutcome:
            return await self.process_enrollment(enrollment, now)

        result = await process_due_items(due, handler, label="Enrollment")
        logger.info("automation_scheduler_finished", extra=result.to_dict())
        return result

    async def process_enrollment(self, enrollment: Dict, now: datetime) -> ItemOutcome:
        claimed = Enrollment.claim(enrollment, now, self.worker_id)
        if not claimed:
            return ItemOutcome(OUTCOME_SKIPPED)

        try:
            return await self._process_claimed(claimed, now)
        except Exception:
            Enrollment.release_claim(claimed["_id"])
            raise

    async def _process_claimed(self, enrollment: Dict, now: datetime) -> ItemOutcome:
        enrollment_id = enrollment["_id"]
        automation_id = enrollment["automation_id"]
        current_step = enrollment.get("current_step")

        steps = AutomationStep.get_active_steps(automation_id)
        if not steps:
            Enrollment.complete(enrollment, now)
            logger.info("enrollment_completed_no_steps", extra={"enrollment_id": str(enrollment_id)})
            return ItemOutcome(
                OUTCOME_DONE,
                notices=[f"Enrollment {enrollment_id}: automation {automation_id} has no active steps, completed"],
            )

        index = next(
            (i for i, s in enumerate(steps) if s.get("step_order") == current_step), None
        )
        if index is None:
            # Step deactivated or removed after enrollment
            Enrollment.complete(enrollment, now)
            logger.warning(
                "enrollment_dangling_step",
                extra={"enrollment_id": str(enrollment_id), "current_step": current_step},
            )
            return ItemOutcome(
                OUTCOME_DONE,
                errors=[f"Enrollment {enrollment_id}: step {current_step} is not an active step, completed"],
            )

        step = steps[index]
        email = enrollment["email"]
        content_key = DeliveryLedger.automation_key(automation_id, step["_id"])
        metadata = {
            "automation_id": str(automation_id),
            "enrollment_id": str(enrollment_id),
            "step_order": step.get("step_order"),
        }

        status = OUTCOME_DONE
        if DeliveryLedger.has_sent(email, content_key):
            logger.info(
                "step_already_delivered",
                extra={"enrollment_id": str(enrollment_id), "content_key": content_key},
            )
        else:
            result = await self.gateway.send_one(self._build_message(email, step))
            if not result.success:
                DeliveryLedger.record(
                    email, content_key, LedgerStatus.FAILED,
                    error=result.error, user_id=enrollment.get("user_id"), metadata=metadata, now=now,
                )
                Enrollment.release_claim(enrollment_id)
                logger.error(
                    "step_send_failed",
                    extra={"enrollment_id": str(enrollment_id), "step_order": current_step, "error": result.error},
                )
                return ItemOutcome(
                    OUTCOME_FAILED,
                    errors=[f"Enrollment {enrollment_id}: step {current_step} send failed: {result.error}"],
                )

            DeliveryLedger.record(
                email, content_key, LedgerStatus.SENT,
                gateway_id=result.batch_id, user_id=enrollment.get("user_id"), metadata=metadata, now=now,
            )
            status = OUTCOME_SENT
            logger.info(
                "step_sent",
                extra={"enrollment_id": str(enrollment_id), "step_order": current_step, "to": email},
            )

        self._advance(enrollment, steps, index, now)
        return ItemOutcome(status)

    def _advance(self, enrollment: Dict, steps: List[Dict], index: int, now: datetime):
        enrollment_id = enrollment["_id"]

        if index + 1 >= len(steps):
            if Enrollment.complete(enrollment, now):
                logger.info("enrollment_completed", extra={"enrollment_id": str(enrollment_id)})
            return

        next_step = steps[index + 1]
        next_step_at = calculate_next_step_at(now, next_step.get("delay_value"), next_step.get("delay_unit"))
        if Enrollment.advance(enrollment, next_step["step_order"], next_step_at):
            logger.info(
                "enrollment_advanced",
                extra={
                    "enrollment_id": str(enrollment_id),
                    "step_order": next_step["step_order"],
                    "next_step_at": next_step_at.isoformat(),
                },
            )
        else:
            logger.warning("enrollment_advance_ignored", extra={"enrollment_id": str(enrollment_id)})

    def _build_message(self, email: str, step: Dict) -> OutboundMessage:
        headers = {}
        if step.get("preview_text"):
            headers["X-Preview-Text"] = step["preview_text"]
        return OutboundMessage(
            to=email,
            subject=step.get("subject") or "",
            html=personalize_unsubscribe(step.get("html_content") or "", email),
            text=personalize_unsubscribe(step.get("plain_text") or "", email),
            headers=headers,
        )


async def run_automation_scheduler(now: datetime = None,
                                   gateway: Optional[SendGateway] = None) -> SchedulerResult:
    """Advance all due enrollments. Safe to call more often than needed."""
    return await AutomationEngine(gateway).run(now)


# ── Enrollment entry points ──────────────────────────────────────────


def enroll_in_automation(automation_id: Any, email: str, user_id: str = None,
                         trigger_data: Dict = None, now: datetime = None) -> Dict:
    """
    Enroll a recipient in an automation.

    An existing active enrollment is returned unchanged. Otherwise a new one
    is created at the first active step, due after that step's delay, so even
    a zero-delay first step is delivered by the next scheduler pass rather
    than synchronously.

    Returns:
        {"success": bool, "enrollment_id": str|None, "created": bool, "error": str|None}
    """
    email = (email or "").strip().lower()
    if not email:
        return {"success": False, "enrollment_id": None, "created": False, "error": "Email is required"}

    now = now or utcnow()
    try:
        automation = Automation.get_by_id(automation_id)
        if not automation:
            return {
                "success": False,
                "enrollment_id": None,
                "created": False,
                "error": f"Automation {automation_id} not found",
            }

        existing = Enrollment.get_active(automation["_id"], email)
        if existing:
            logger.info("already_enrolled", extra={"automation_id": str(automation["_id"]), "to": email})
            return {"success": True, "enrollment_id": str(existing["_id"]), "created": False, "error": None}

        first_step = AutomationStep.get_first_active_step(automation["_id"])
        if not first_step:
            return {
                "success": False,
                "enrollment_id": None,
                "created": False,
                "error": "No active steps in automation",
            }

        next_step_at = calculate_next_step_at(now, first_step.get("delay_value"), first_step.get("delay_unit"))
        enrollment_id, created = Enrollment.create_active(
            automation["_id"],
            email,
            user_id,
            first_step["step_order"],
            next_step_at,
            trigger_data=trigger_data,
            now=now,
        )
    except PyMongoError as e:
        logger.error(f"enroll_failed: {automation_id} {email}: {e}", exc_info=True)
        return {"success": False, "enrollment_id": None, "created": False, "error": str(e)}

    if created:
        logger.info(
            "enrolled",
            extra={"automation_id": str(automation["_id"]), "to": email, "next_step_at": next_step_at.isoformat()},
        )
    return {"success": True, "enrollment_id": enrollment_id, "created": created, "error": None}


def enroll_for_trigger(trigger_event: str, email: str, user_id: str = None,
                       trigger_data: Dict = None) -> List[Dict]:
    """Enroll a recipient in every active automation listening for `trigger_event`."""
    if trigger_event not in Automation.TRIGGER_EVENTS:
        raise ValueError(
            f"Unknown trigger event: {trigger_event!r} (expected one of {', '.join(Automation.TRIGGER_EVENTS)})"
        )

    results = []
    for automation in Automation.get_active_for_trigger(trigger_event):
        result = enroll_in_automation(automation["_id"], email, user_id, trigger_data)
        result["automation_id"] = str(automation["_id"])
        results.append(result)

    logger.info("trigger_processed", extra={"trigger_event": trigger_event, "automations": len(results)})
    return results
