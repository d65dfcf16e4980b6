"""
State machines for programs, runs, enrollments and ledger entries.

Statuses are stored as plain strings; the transition tables below are the
only legal moves. Record updates call `check_transition` before writing and
condition the write on the current status, so an illegal or stale move is
rejected instead of silently applied.
"""

import logging
from typing import Dict, Optional, Set

logger = logging.getLogger("mailscheduler.states")


class ProgramType:
    BROADCAST = "broadcast"        # marketing, gets unsubscribe links
    TRANSACTIONAL = "transactional"


class ProgramStatus:
    ACTIVE = "active"
    PAUSED = "paused"


class RunStatus:
    SENDING = "sending"
    SENT = "sent"
    FAILED = "failed"


class EnrollmentStatus:
    ACTIVE = "active"
    COMPLETED = "completed"


class LedgerStatus:
    SENT = "sent"
    FAILED = "failed"


# None = record does not exist yet
PROGRAM_TRANSITIONS: Dict[Optional[str], Set[str]] = {
    None: {ProgramStatus.ACTIVE, ProgramStatus.PAUSED},
    ProgramStatus.ACTIVE: {ProgramStatus.ACTIVE, ProgramStatus.PAUSED},
    # reactivation is an operator action
    ProgramStatus.PAUSED: {ProgramStatus.ACTIVE},
}

RUN_TRANSITIONS: Dict[Optional[str], Set[str]] = {
    None: {RunStatus.SENDING},
    RunStatus.SENDING: {RunStatus.SENT, RunStatus.FAILED},
    RunStatus.SENT: set(),
    RunStatus.FAILED: set(),
}

# Re-enrolling after completion creates a new enrollment record, so
# COMPLETED has no outgoing moves.
ENROLLMENT_TRANSITIONS: Dict[Optional[str], Set[str]] = {
    None: {EnrollmentStatus.ACTIVE},
    EnrollmentStatus.ACTIVE: {EnrollmentStatus.ACTIVE, EnrollmentStatus.COMPLETED},
    EnrollmentStatus.COMPLETED: set(),
}

LEDGER_TRANSITIONS: Dict[Optional[str], Set[str]] = {
    None: {LedgerStatus.SENT, LedgerStatus.FAILED},
    LedgerStatus.FAILED: {LedgerStatus.SENT, LedgerStatus.FAILED},
    LedgerStatus.SENT: set(),
}

MACHINES = {
    "program": PROGRAM_TRANSITIONS,
    "run": RUN_TRANSITIONS,
    "enrollment": ENROLLMENT_TRANSITIONS,
    "ledger": LEDGER_TRANSITIONS,
}


class IllegalTransition(ValueError):
    """Raised when a record is asked to make a move its state machine forbids."""

    def __init__(self, machine: str, current: Optional[str], target: str):
        self.machine = machine
        self.current = current
        self.target = target
        super().__init__(f"Illegal {machine} transition: {current} -> {target}")


def can_transition(machine: str, current: Optional[str], target: str) -> bool:
    table = MACHINES[machine]
    return target in table.get(current, set())


def check_transition(machine: str, current: Optional[str], target: str) -> None:
    if not can_transition(machine, current, target):
        logger.error(
            "illegal_transition",
            extra={"machine": machine, "current": current, "target": target},
        )
        raise IllegalTransition(machine, current, target)


def check_step_advance(current_step: int, next_step: int) -> None:
    """An enrollment's step pointer only ever moves forward."""
    if next_step <= current_step:
        logger.error(
            "illegal_step_advance",
            extra={"current_step": current_step, "next_step": next_step},
        )
        raise IllegalTransition("enrollment", f"step {current_step}", f"step {next_step}")
