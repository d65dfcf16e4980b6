#!/usr/bin/env python3
"""
Email Delivery Scheduler
========================

Fires scheduled programs and drives drip automations. Meant to be invoked by
an external cron every minute (`tick`), or left running (`loop`).

Usage:
    python main.py tick
    python main.py programs
    python main.py automations
    python main.py loop
    python main.py enroll <automation_id> <email>
    python main.py trigger <event> <email>
    python main.py schedule-preview "every tuesday at 3pm" --timezone Europe/London
    python main.py init-db
"""

import argparse
import asyncio
import json
import logging
import sys

import config
from utils import setup_logging

logger = logging.getLogger("mailscheduler.main")


def _print_result(name: str, result) -> bool:
    """Print an invocation summary. Returns True when it had failures."""
    print(f"\n📊 {name}")
    print(f"   Processed: {result.processed} | Sent: {result.sent} | "
          f"Failed: {result.failed} | Skipped: {result.skipped}")
    for notice in result.notices:
        print(f"   ℹ️  {notice}")
    for error in result.errors:
        print(f"   ❌ {error}")
    return result.has_failures


def run_programs() -> int:
    from delivery.program_runner import run_program_scheduler

    result = asyncio.run(run_program_scheduler())
    return 1 if _print_result("Programs", result) else 0


def run_automations() -> int:
    from delivery.automation_engine import run_automation_scheduler

    result = asyncio.run(run_automation_scheduler())
    return 1 if _print_result("Automations", result) else 0


def run_tick() -> int:
    from delivery.scheduler import run_tick as tick

    results = asyncio.run(tick())
    failed = [_print_result(name.title(), result) for name, result in results.items()]
    return 1 if any(failed) else 0


def run_loop() -> int:
    from delivery.scheduler import main as scheduler_main

    asyncio.run(scheduler_main())
    return 0


def _load_trigger_data(raw: str):
    """Parse the --data option. Raises ValueError unless it is a JSON object."""
    if not raw:
        return None
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid --data JSON: {e}") from e
    if not isinstance(data, dict):
        raise ValueError("--data must be a JSON object")
    return data


def enroll(automation_id: str, email: str, user_id: str = None, trigger_data: str = None) -> int:
    from delivery.automation_engine import enroll_in_automation

    try:
        data = _load_trigger_data(trigger_data)
    except ValueError as e:
        print(f"❌ {e}")
        return 2
    result = enroll_in_automation(automation_id, email, user_id=user_id, trigger_data=data)
    if not result["success"]:
        print(f"❌ {result['error']}")
        return 1
    state = "Enrolled" if result["created"] else "Already enrolled"
    print(f"✅ {state}: {email} (enrollment {result['enrollment_id']})")
    return 0


def trigger(event: str, email: str, user_id: str = None, trigger_data: str = None) -> int:
    from delivery.automation_engine import enroll_for_trigger

    try:
        data = _load_trigger_data(trigger_data)
        results = enroll_for_trigger(event, email, user_id=user_id, trigger_data=data)
    except ValueError as e:
        print(f"❌ {e}")
        return 2

    if not results:
        print(f"📭 No active automations for '{event}'")
        return 0

    exit_code = 0
    for r in results:
        if r["success"]:
            state = "enrolled" if r["created"] else "already enrolled"
            print(f"✅ Automation {r['automation_id']}: {state} ({r['enrollment_id']})")
        else:
            print(f"❌ Automation {r['automation_id']}: {r['error']}")
            exit_code = 1
    return exit_code


def schedule_preview(text: str, timezone: str = None) -> int:
    from delivery.schedule_parser import (
        format_schedule_for_display,
        next_run_for_spec,
        parse_schedule,
        spec_to_cron,
    )

    try:
        spec = parse_schedule(text)
    except ValueError as e:
        print(f"❌ {e}")
        return 2

    tz = timezone or config.DEFAULT_TIMEZONE
    print(f"\n🗓️  \"{text}\"")
    print(f"   Display:  {format_schedule_for_display(spec)}")
    print(f"   Cron:     {spec_to_cron(spec) or '(none: no time of day)'}")
    print(f"   Next run: {next_run_for_spec(spec, tz).isoformat()} UTC ({tz})")
    for warning in spec.warnings:
        print(f"   ⚠️  {warning}")
    return 0


def init_db() -> int:
    from database import ensure_indexes

    ensure_indexes()
    print(f"✅ Indexes ensured on '{config.DATABASE_NAME}'")
    return 0


def main():
    parser = argparse.ArgumentParser(
        description="Email Delivery Scheduler",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # From cron, every minute
  * * * * *  cd /srv/mailscheduler && python main.py tick

  # Long-running alternative
  python main.py loop

  # Enrollment
  python main.py trigger lead_created jane@example.com
  python main.py enroll 65f0c0ffee... jane@example.com
        """
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    subparsers.add_parser("programs", help="Fire due programs once")
    subparsers.add_parser("automations", help="Advance due automation enrollments once")
    subparsers.add_parser("tick", help="Run programs, then automations, once")
    subparsers.add_parser("loop", help="Run both on a fixed interval until stopped")

    enroll_parser = subparsers.add_parser("enroll", help="Enroll a recipient in an automation")
    enroll_parser.add_argument("automation_id", help="Automation ID")
    enroll_parser.add_argument("email", help="Recipient email")
    enroll_parser.add_argument("--user-id", help="Optional user ID")
    enroll_parser.add_argument("--data", help="Trigger data as JSON")

    trigger_parser = subparsers.add_parser("trigger", help="Enroll a recipient in every automation for an event")
    trigger_parser.add_argument("event", help="Trigger event, e.g. lead_created")
    trigger_parser.add_argument("email", help="Recipient email")
    trigger_parser.add_argument("--user-id", help="Optional user ID")
    trigger_parser.add_argument("--data", help="Trigger data as JSON")

    preview_parser = subparsers.add_parser("schedule-preview", help="Show how a schedule is understood")
    preview_parser.add_argument("text", help='Schedule text, e.g. "every tuesday at 3pm"')
    preview_parser.add_argument("--timezone", help="IANA timezone (default DEFAULT_TIMEZONE)")

    subparsers.add_parser("init-db", help="Create MongoDB indexes")

    args = parser.parse_args()
    setup_logging(config.LOG_LEVEL, config.LOG_FILE or None)

    if args.command == "programs":
        exit_code = run_programs()
    elif args.command == "automations":
        exit_code = run_automations()
    elif args.command == "tick":
        exit_code = run_tick()
    elif args.command == "loop":
        exit_code = run_loop()
    elif args.command == "enroll":
        exit_code = enroll(args.automation_id, args.email, args.user_id, args.data)
    elif args.command == "trigger":
        exit_code = trigger(args.event, args.email, args.user_id, args.data)
    elif args.command == "schedule-preview":
        exit_code = schedule_preview(args.text, args.timezone)
    elif args.command == "init-db":
        exit_code = init_db()
    else:
        parser.print_help()
        print("\n💡 Quick start:")
        print("   python main.py init-db")
        print("   python main.py tick")
        exit_code = 0

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
