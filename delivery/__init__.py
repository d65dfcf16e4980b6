"""
Email delivery scheduler: time-driven programs and drip automations.

Modules:
    schedule_parser.py    free text / cron schedules to next fire time
    states.py             status constants and transition tables
    audience.py           program audience selection from email_contacts
    send_gateway.py       batch send via SMTP (aiosmtplib) or Resend (aiohttp)
    batch.py              invocation result + bounded fan-out with a deadline
    program_runner.py     fires due programs (run_program_scheduler)
    automation_engine.py  advances due enrollments (run_automation_scheduler)
    alerts.py             webhook alerting (Slack/Telegram/Discord)
    scheduler.py          long-running loop invoking both runners
"""
