"""
Audience resolution for programs.

A program names an audience_type and an optional audience_filter; this
module turns them into a Mongo query over email_contacts and returns the
de-duplicated recipient list. Unsubscribed, suppressed and bounced contacts
are never included.
"""

import logging
from typing import Dict, List, Optional

from database import contacts_collection

logger = logging.getLogger("mailscheduler.audience")

AUDIENCE_ALL = "all"
AUDIENCE_LEADS = "leads"
AUDIENCE_CUSTOMERS = "customers"
AUDIENCE_SEGMENT = "segment"

AUDIENCE_TYPES = (AUDIENCE_ALL, AUDIENCE_LEADS, AUDIENCE_CUSTOMERS, AUDIENCE_SEGMENT)

# Filter keys a program may narrow its audience by
SEGMENT_FILTER_FIELDS = ("utm_campaign", "source")

EXCLUDED_FLAGS = ("unsubscribed", "suppressed", "bounced")


def build_audience_query(audience_type: str, audience_filter: Optional[Dict] = None) -> Dict:
    """
    Build the contacts query for an audience.

    Raises:
        ValueError: unknown audience_type
    """
    audience_type = (audience_type or AUDIENCE_ALL).lower()
    if audience_type not in AUDIENCE_TYPES:
        raise ValueError(f"Unknown audience type: {audience_type!r}")

    query: Dict = {flag: {"$ne": True} for flag in EXCLUDED_FLAGS}

    if audience_type == AUDIENCE_LEADS:
        query["is_customer"] = {"$ne": True}
    elif audience_type == AUDIENCE_CUSTOMERS:
        query["is_customer"] = True
    elif audience_type == AUDIENCE_SEGMENT:
        # A leftover filter on any other type is ignored
        for field in SEGMENT_FILTER_FIELDS:
            value = (audience_filter or {}).get(field)
            if value:
                query[field] = value

    return query


def resolve_audience(program: Dict) -> List[str]:
    """Recipient emails for a program, lower-cased, de-duplicated, in store order."""
    audience_type = program.get("audience_type") or AUDIENCE_ALL
    audience_filter = program.get("audience_filter") or {}
    query = build_audience_query(audience_type, audience_filter)

    if audience_type == AUDIENCE_SEGMENT and not any(
        audience_filter.get(f) for f in SEGMENT_FILTER_FIELDS
    ):
        logger.warning(f"segment_without_filter: program {program.get('_id')} targets all contacts")

    seen = set()
    emails = []
    for doc in contacts_collection.find(query, {"email": 1, "_id": 0}):
        email = (doc.get("email") or "").strip().lower()
        if email and email not in seen:
            seen.add(email)
            emails.append(email)

    logger.info(
        "audience_resolved",
        extra={"program_id": str(program.get("_id")), "audience_type": audience_type, "count": len(emails)},
    )
    return emails
