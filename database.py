import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

import pytz
from bson import ObjectId
from pymongo import ASCENDING, MongoClient, ReturnDocument, UpdateOne
from pymongo.errors import AutoReconnect, BulkWriteError, DuplicateKeyError

import config
from delivery.states import (
    EnrollmentStatus,
    LedgerStatus,
    ProgramStatus,
    RunStatus,
    check_step_advance,
    check_transition,
)
from utils.logging_utils import retry_with_backoff

logger = logging.getLogger("mailscheduler.database")

# connect=False: no network I/O until the first query
client = MongoClient(
    config.DATABASE_URL,
    connect=False,
    serverSelectionTimeoutMS=config.DATABASE_TIMEOUT_MS,
)
db = client[config.DATABASE_NAME]

# Collections
programs_collection = db["email_programs"]
versions_collection = db["email_versions"]
runs_collection = db["email_runs"]
automations_collection = db["email_automations"]
steps_collection = db["automation_steps"]
enrollments_collection = db["automation_enrollments"]
sends_collection = db["email_sends"]
contacts_collection = db["email_contacts"]
heartbeat_collection = db["heartbeat"]

DUPLICATE_KEY_ERROR = 11000


def utcnow() -> datetime:
    """Naive UTC now, matching what pymongo hands back for stored dates."""
    return datetime.now(pytz.utc).replace(tzinfo=None)


def ensure_indexes():
    """Create the indexes the scheduler relies on (idempotent)."""
    programs_collection.create_index([("status", ASCENDING), ("next_run_at", ASCENDING)])
    runs_collection.create_index([("program_id", ASCENDING), ("started_at", ASCENDING)])
    runs_collection.create_index([("program_id", ASCENDING), ("scheduled_for", ASCENDING), ("status", ASCENDING)])
    automations_collection.create_index("trigger_event")
    steps_collection.create_index(
        [("automation_id", ASCENDING), ("step_order", ASCENDING)], unique=True
    )
    enrollments_collection.create_index([("status", ASCENDING), ("next_step_at", ASCENDING)])
    # One *active* enrollment per (automation, email); completed ones are history
    enrollments_collection.create_index(
        [("automation_id", ASCENDING), ("email", ASCENDING)],
        unique=True,
        partialFilterExpression={"status": EnrollmentStatus.ACTIVE},
        name="active_enrollment_unique",
    )
    sends_collection.create_index([("email", ASCENDING), ("template", ASCENDING)], unique=True)
    contacts_collection.create_index("email", unique=True)
    logger.info("indexes_ensured")


def to_object_id(value: Any) -> Any:
    if isinstance(value, ObjectId):
        return value
    if isinstance(value, str) and ObjectId.is_valid(value):
        return ObjectId(value)
    return value


def _claim_filter(now: datetime, stale_minutes: int) -> Dict:
    stale_cutoff = now - timedelta(minutes=stale_minutes)
    return {"$or": [{"claimed_at": None}, {"claimed_at": {"$lt": stale_cutoff}}]}


class Program:
    """Scheduled campaign (broadcast or transactional)"""

    @staticmethod
    @retry_with_backoff(max_retries=2, initial_delay=0.5, exceptions=(AutoReconnect,))
    def get_due(now: datetime) -> List[Dict]:
        """Active programs whose next_run_at has arrived, earliest first."""
        return list(
            programs_collection.find(
                {"status": ProgramStatus.ACTIVE, "next_run_at": {"$lte": now}}
            ).sort("next_run_at", ASCENDING)
        )

    @staticmethod
    def get_by_id(program_id: Any) -> Optional[Dict]:
        return programs_collection.find_one({"_id": to_object_id(program_id)})

    @staticmethod
    def claim(program: Dict, now: datetime, worker_id: str,
              stale_minutes: int = None) -> Optional[Dict]:
        """
        Atomically claim a due program for this worker.

        Only succeeds while the program is still active, still due and not
        held by another worker (claims older than stale_minutes are taken over).
        Returns the claimed document or None.
        """
        stale = stale_minutes if stale_minutes is not None else config.CLAIM_STALE_MINUTES
        query = {
            "_id": program["_id"],
            "status": ProgramStatus.ACTIVE,
            "next_run_at": {"$lte": now},
        }
        query.update(_claim_filter(now, stale))
        doc = programs_collection.find_one_and_update(
            query,
            {"$set": {"claimed_at": now, "claimed_by": worker_id}},
            return_document=ReturnDocument.AFTER,
        )
        if doc:
            logger.info(f"program_claimed: {program['_id']} by {worker_id}")
        else:
            logger.info(f"program_claim_lost: {program['_id']}")
        return doc

    @staticmethod
    def release_claim(program_id: Any):
        programs_collection.update_one(
            {"_id": to_object_id(program_id)},
            {"$set": {"claimed_at": None, "claimed_by": None}},
        )

    @staticmethod
    def reschedule(program_id: Any, next_run_at: datetime, now: datetime):
        """Move a recurring program to its next cycle and release the claim."""
        check_transition("program", ProgramStatus.ACTIVE, ProgramStatus.ACTIVE)
        if next_run_at <= now:
            raise ValueError(f"next_run_at {next_run_at} is not after {now}")
        programs_collection.update_one(
            {"_id": to_object_id(program_id), "status": ProgramStatus.ACTIVE},
            {
                "$set": {
                    "next_run_at": next_run_at,
                    "last_run_at": now,
                    "claimed_at": None,
                    "claimed_by": None,
                }
            },
        )

    @staticmethod
    def pause(program_id: Any, now: datetime, reason: str = None):
        """Pause after a one-shot firing (or an unusable schedule)."""
        check_transition("program", ProgramStatus.ACTIVE, ProgramStatus.PAUSED)
        update = {
            "status": ProgramStatus.PAUSED,
            "next_run_at": None,
            "last_run_at": now,
            "claimed_at": None,
            "claimed_by": None,
        }
        if reason:
            update["paused_reason"] = reason
        programs_collection.update_one(
            {"_id": to_object_id(program_id), "status": ProgramStatus.ACTIVE},
            {"$set": update},
        )


class Version:
    """Immutable content snapshot for a program"""

    STATUS_APPROVED = "approved"

    @staticmethod
    def get_approved(version_id: Any) -> Optional[Dict]:
        if not version_id:
            return None
        return versions_collection.find_one(
            {"_id": to_object_id(version_id), "status": Version.STATUS_APPROVED}
        )


class Run:
    """Append-only execution record, one per program firing"""

    @staticmethod
    def create(program: Dict, version: Dict, recipients: List[str],
               scheduled_for: datetime, now: datetime) -> str:
        """
        Open the Run for this firing.

        A firing resumed after an interrupted attempt reuses the Run still
        `sending` for the same (program, version, scheduled_for).
        """
        check_transition("run", None, RunStatus.SENDING)
        query = {
            "program_id": program["_id"],
            "version_id": version["_id"],
            "scheduled_for": scheduled_for,
            "status": RunStatus.SENDING,
        }
        result = runs_collection.update_one(
            query,
            {
                "$setOnInsert": {
                    "started_at": now,
                    "completed_at": None,
                    "recipient_count": len(recipients),
                    "delivered_count": 0,
                    "audience_snapshot": {
                        "emails": recipients[:config.AUDIENCE_SNAPSHOT_SIZE],
                        "total": len(recipients),
                    },
                    "batch_ids": [],
                    "error_message": None,
                }
            },
            upsert=True,
        )
        if result.upserted_id:
            return str(result.upserted_id)

        existing = runs_collection.find_one(query, {"_id": 1})
        logger.info(f"run_resumed: {existing['_id']} for program {program['_id']}")
        return str(existing["_id"])

    @staticmethod
    def _finish(run_id: str, status: str, batch_ids: List[str], delivered_count: int,
                error: str = None) -> bool:
        check_transition("run", RunStatus.SENDING, status)
        # Conditioned on SENDING so a terminal run is never rewritten
        result = runs_collection.update_one(
            {"_id": to_object_id(run_id), "status": RunStatus.SENDING},
            {
                "$set": {
                    "status": status,
                    "completed_at": utcnow(),
                    "batch_ids": batch_ids,
                    "delivered_count": delivered_count,
                    "error_message": error,
                }
            },
        )
        if not result.modified_count:
            logger.warning(f"run_finish_ignored: {run_id} is no longer sending")
            return False
        return True

    @staticmethod
    def close_open(program_id: Any, version_id: Any, scheduled_for: datetime,
                   delivered_count: int) -> int:
        """Mark any Run still `sending` for this firing as sent. Returns the count closed."""
        check_transition("run", RunStatus.SENDING, RunStatus.SENT)
        result = runs_collection.update_many(
            {
                "program_id": program_id,
                "version_id": version_id,
                "scheduled_for": scheduled_for,
                "status": RunStatus.SENDING,
            },
            {
                "$set": {
                    "status": RunStatus.SENT,
                    "completed_at": utcnow(),
                    "delivered_count": delivered_count,
                }
            },
        )
        if result.modified_count:
            logger.info(f"run_closed: {result.modified_count} open run(s) for program {program_id}")
        return result.modified_count

    @staticmethod
    def mark_sent(run_id: str, batch_ids: List[str], delivered_count: int) -> bool:
        return Run._finish(run_id, RunStatus.SENT, batch_ids, delivered_count)

    @staticmethod
    def mark_failed(run_id: str, error: str, batch_ids: List[str], delivered_count: int) -> bool:
        return Run._finish(run_id, RunStatus.FAILED, batch_ids, delivered_count, error)


class Automation:
    """Drip sequence definition"""

    STATUS_ACTIVE = "active"

    TRIGGER_EVENTS = (
        "lead_created",
        "purchase_completed",
        "course_started",
        "subscription_created",
        "trial_started",
    )

    @staticmethod
    def get_by_id(automation_id: Any) -> Optional[Dict]:
        return automations_collection.find_one({"_id": to_object_id(automation_id)})

    @staticmethod
    def get_active_for_trigger(trigger_event: str) -> List[Dict]:
        return list(automations_collection.find(
            {"trigger_event": trigger_event, "status": Automation.STATUS_ACTIVE}
        ))


class AutomationStep:
    """One delayed email in a drip sequence"""

    STATUS_ACTIVE = "active"

    @staticmethod
    def get_active_steps(automation_id: Any) -> List[Dict]:
        return list(
            steps_collection.find(
                {"automation_id": to_object_id(automation_id), "status": AutomationStep.STATUS_ACTIVE}
            ).sort("step_order", ASCENDING)
        )

    @staticmethod
    def get_first_active_step(automation_id: Any) -> Optional[Dict]:
        steps = list(
            steps_collection.find(
                {"automation_id": to_object_id(automation_id), "status": AutomationStep.STATUS_ACTIVE}
            ).sort("step_order", ASCENDING).limit(1)
        )
        return steps[0] if steps else None


class Enrollment:
    """One recipient's progress through an automation"""

    @staticmethod
    @retry_with_backoff(max_retries=2, initial_delay=0.5, exceptions=(AutoReconnect,))
    def get_due(now: datetime) -> List[Dict]:
        return list(
            enrollments_collection.find(
                {"status": EnrollmentStatus.ACTIVE, "next_step_at": {"$lte": now}}
            ).sort("next_step_at", ASCENDING)
        )

    @staticmethod
    def get_active(automation_id: Any, email: str) -> Optional[Dict]:
        return enrollments_collection.find_one({
            "automation_id": to_object_id(automation_id),
            "email": email,
            "status": EnrollmentStatus.ACTIVE,
        })

    @staticmethod
    def create_active(automation_id: Any, email: str, user_id: Optional[str],
                      first_step_order: int, next_step_at: datetime,
                      trigger_data: Dict = None, now: datetime = None) -> Tuple[str, bool]:
        """
        Insert an active enrollment unless one already exists.

        Returns (enrollment_id, created). Completed enrollments for the same
        pair are left untouched as history.
        """
        check_transition("enrollment", None, EnrollmentStatus.ACTIVE)
        now = now or utcnow()
        query = {
            "automation_id": to_object_id(automation_id),
            "email": email,
            "status": EnrollmentStatus.ACTIVE,
        }
        try:
            result = enrollments_collection.update_one(
                query,
                {
                    "$setOnInsert": {
                        "user_id": user_id,
                        "current_step": first_step_order,
                        "next_step_at": next_step_at,
                        "trigger_data": trigger_data or {},
                        "enrolled_at": now,
                        "completed_at": None,
                        "claimed_at": None,
                        "claimed_by": None,
                    }
                },
                upsert=True,
            )
        except DuplicateKeyError:
            # Lost a race with a concurrent enroll for the same pair
            existing = Enrollment.get_active(automation_id, email)
            return str(existing["_id"]), False

        if result.upserted_id:
            return str(result.upserted_id), True

        existing = Enrollment.get_active(automation_id, email)
        return str(existing["_id"]), False

    @staticmethod
    def claim(enrollment: Dict, now: datetime, worker_id: str,
              stale_minutes: int = None) -> Optional[Dict]:
        stale = stale_minutes if stale_minutes is not None else config.CLAIM_STALE_MINUTES
        query = {
            "_id": enrollment["_id"],
            "status": EnrollmentStatus.ACTIVE,
            "current_step": enrollment["current_step"],
            "next_step_at": {"$lte": now},
        }
        query.update(_claim_filter(now, stale))
        doc = enrollments_collection.find_one_and_update(
            query,
            {"$set": {"claimed_at": now, "claimed_by": worker_id}},
            return_document=ReturnDocument.AFTER,
        )
        if not doc:
            logger.info(f"enrollment_claim_lost: {enrollment['_id']}")
        return doc

    @staticmethod
    def release_claim(enrollment_id: Any):
        enrollments_collection.update_one(
            {"_id": to_object_id(enrollment_id)},
            {"$set": {"claimed_at": None, "claimed_by": None}},
        )

    @staticmethod
    def advance(enrollment: Dict, next_step_order: int, next_step_at: datetime) -> bool:
        check_transition("enrollment", enrollment.get("status"), EnrollmentStatus.ACTIVE)
        check_step_advance(enrollment["current_step"], next_step_order)
        result = enrollments_collection.update_one(
            {
                "_id": enrollment["_id"],
                "status": EnrollmentStatus.ACTIVE,
                "current_step": enrollment["current_step"],
            },
            {
                "$set": {
                    "current_step": next_step_order,
                    "next_step_at": next_step_at,
                    "claimed_at": None,
                    "claimed_by": None,
                }
            },
        )
        return result.modified_count > 0

    @staticmethod
    def complete(enrollment: Dict, now: datetime) -> bool:
        check_transition("enrollment", enrollment.get("status"), EnrollmentStatus.COMPLETED)
        result = enrollments_collection.update_one(
            {"_id": enrollment["_id"], "status": EnrollmentStatus.ACTIVE},
            {
                "$set": {
                    "status": EnrollmentStatus.COMPLETED,
                    "completed_at": now,
                    "next_step_at": None,
                    "claimed_at": None,
                    "claimed_by": None,
                }
            },
        )
        return result.modified_count > 0


class DeliveryLedger:
    """
    Idempotency guard for sends, keyed by (recipient email, content key).

    A `sent` entry is final: recording over it raises a duplicate key error
    inside Mongo (the filter excludes it, the upsert collides with the unique
    index), which is reported back as "not recorded".
    """

    @staticmethod
    def automation_key(automation_id: Any, step_id: Any) -> str:
        return f"automation_{automation_id}_step_{step_id}"

    @staticmethod
    def program_key(program_id: Any, version_id: Any, slot: datetime) -> str:
        return f"program_{program_id}_version_{version_id}_{slot.strftime('%Y%m%d%H%M')}"

    @staticmethod
    def has_sent(email: str, content_key: str) -> bool:
        return sends_collection.find_one(
            {"email": email, "template": content_key, "status": LedgerStatus.SENT},
            {"_id": 1},
        ) is not None

    @staticmethod
    def sent_recipients(content_key: str, emails: Iterable[str]) -> Set[str]:
        emails = list(emails)
        if not emails:
            return set()
        cursor = sends_collection.find(
            {"template": content_key, "status": LedgerStatus.SENT, "email": {"$in": emails}},
            {"email": 1, "_id": 0},
        )
        return {doc["email"] for doc in cursor}

    @staticmethod
    def _entry_update(status: str, gateway_id: str = None, error: str = None,
                      user_id: str = None, metadata: Dict = None, now: datetime = None) -> Dict:
        check_transition("ledger", None, status)
        now = now or utcnow()
        return {
            "$set": {
                "status": status,
                "gateway_id": gateway_id,
                "error_message": error,
                "user_id": user_id,
                "metadata": metadata or {},
                "updated_at": now,
            },
            "$setOnInsert": {"created_at": now},
        }

    @staticmethod
    def record(email: str, content_key: str, status: str, gateway_id: str = None,
               error: str = None, user_id: str = None, metadata: Dict = None,
               now: datetime = None) -> bool:
        """Write one delivery outcome. Returns False if a `sent` entry already exists."""
        try:
            sends_collection.update_one(
                {"email": email, "template": content_key, "status": {"$ne": LedgerStatus.SENT}},
                DeliveryLedger._entry_update(status, gateway_id, error, user_id, metadata, now),
                upsert=True,
            )
        except DuplicateKeyError:
            logger.info(f"ledger_already_sent: {email} {content_key}")
            return False
        return True

    @staticmethod
    def record_many(emails: List[str], content_key: str, status: str, gateway_id: str = None,
                    error: str = None, metadata: Dict = None, now: datetime = None) -> int:
        """Bulk version of record(); returns how many entries were written."""
        if not emails:
            return 0
        update = DeliveryLedger._entry_update(status, gateway_id, error, None, metadata, now)
        ops = [
            UpdateOne(
                {"email": email, "template": content_key, "status": {"$ne": LedgerStatus.SENT}},
                update,
                upsert=True,
            )
            for email in emails
        ]
        try:
            result = sends_collection.bulk_write(ops, ordered=False)
        except BulkWriteError as e:
            write_errors = e.details.get("writeErrors", [])
            if any(err.get("code") != DUPLICATE_KEY_ERROR for err in write_errors):
                raise
            return len(emails) - len(write_errors)
        return result.upserted_count + result.modified_count
