"""
Response cleaners for Northpass API resources.

Northpass speaks JSON:API: every resource is ``{"id", "type", "attributes",
"relationships", "links"}``. Each cleaner flattens one resource object into
a small dict with the fields the rest of the package uses. Values stay
JSON-compatible so cleaned data can go straight into the cache.
"""

from datetime import datetime, timezone
from typing import Any


def _attrs(item: dict) -> dict:
    return item.get("attributes") or {}


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse an API timestamp ("2024-06-01T10:00:00Z") into an aware datetime."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (TypeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def person_display_name(first_name: str, last_name: str, email: str, person_id: str) -> str:
    """Full name, else whichever name part exists, else email, else a short id."""
    first = (first_name or "").strip()
    last = (last_name or "").strip()
    if first or last:
        return f"{first} {last}".strip()
    if email:
        return email
    return f"User {person_id[:8]}..."


# ==================== Individual Cleaners ====================


def clean_person(item: dict) -> dict:
    attrs = _attrs(item)
    email = attrs.get("email") or ""
    return {
        "id": item["id"],
        "email": email,
        "name": person_display_name(
            attrs.get("first_name", ""), attrs.get("last_name", ""), email, item["id"]
        ),
    }


def clean_group(item: dict) -> dict:
    return {"id": item["id"], "name": _attrs(item).get("name") or ""}


def clean_membership(item: dict) -> dict:
    """Membership -> the person it points at."""
    person = ((item.get("relationships") or {}).get("person") or {}).get("data") or {}
    return {"membership_id": item.get("id"), "person_id": person.get("id")}


def clean_course(item: dict) -> dict:
    attrs = _attrs(item)
    return {
        "course_id": item["id"],
        "name": attrs.get("name") or "",
        "status": attrs.get("status") or ("live" if attrs.get("published") else None),
    }


def clean_course_properties(item: dict) -> dict:
    """Properties resource -> the raw npcu value (normalised later)."""
    properties = _attrs(item).get("properties") or {}
    return {
        "course_id": item.get("id"),
        "name": properties.get("name"),
        "npcu": properties.get("npcu"),
    }


def clean_transcript_item(item: dict) -> dict:
    attrs = _attrs(item)
    links = item.get("links") or {}
    return {
        "id": item["id"],
        "resource_id": attrs.get("resource_id"),
        "resource_type": attrs.get("resource_type"),
        "name": attrs.get("name") or "Unknown Course",
        "progress_status": attrs.get("progress_status"),
        "completed_at": attrs.get("completed_at"),
        "enrolled_at": attrs.get("enrolled_at"),
        "started_at": attrs.get("started_at"),
        "attempt_number": attrs.get("attempt_number"),
        "certificate_url": links.get("certificate"),
    }


# ==================== Registry ====================

CLEANERS = {
    "person": clean_person,
    "group": clean_group,
    "membership": clean_membership,
    "course": clean_course,
    "course-properties": clean_course_properties,
    "transcript-item": clean_transcript_item,
}


def clean_item(name: str, item: dict) -> dict:
    """Clean a single resource object with the named cleaner."""
    cleaner = CLEANERS.get(name)
    if not cleaner:
        return item
    return cleaner(item)


def clean_response(name: str, raw: Any) -> Any:
    """Clean a raw API response: a list for collections, a dict for one resource."""
    cleaner = CLEANERS.get(name)
    if not cleaner or not isinstance(raw, dict):
        return raw
    data = raw.get("data")
    if isinstance(data, list):
        return [cleaner(item) for item in data]
    if isinstance(data, dict):
        return cleaner(data)
    return raw
