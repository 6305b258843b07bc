"""Routing policy of the agent network.

``select_next_agent`` is a pure function of the network state: the same
summary, waiting flag and business info always produce the same decision.
The iteration cap is enforced by the graph on top of this policy.
"""

from collections.abc import Mapping
from enum import StrEnum
from typing import Any


class NextStep(StrEnum):
    """What the network does next."""

    GATHER_BUSINESS_INFO = "gather_business_info"
    GENERATE_CODE = "generate_code"
    PAUSED = "paused"
    DONE = "done"


REQUIRED_BUSINESS_FIELDS: tuple[str, ...] = (
    "name",
    "description",
    "industry",
    "sub_industry",
    "address",
    "contact_info",
)

# Keys the gatherer sometimes reports instead of the canonical ones
BUSINESS_FIELD_ALIASES: dict[str, str] = {
    "businessName": "name",
    "businessDescription": "description",
    "businessIndustry": "industry",
    "businessSubIndustry": "sub_industry",
    "subIndustry": "sub_industry",
    "businessAddress": "address",
    "businessContactInfo": "contact_info",
    "contactInfo": "contact_info",
}


def empty_business_info() -> dict[str, str]:
    """Return a business info mapping with every required field blank."""
    return {name: "" for name in REQUIRED_BUSINESS_FIELDS}


def normalize_business_info(raw: Mapping[str, Any]) -> dict[str, str]:
    """Map alias keys onto canonical field names and drop unknown keys.

    Non-string values are stringified; ``None`` becomes an empty string.
    """
    normalized: dict[str, str] = {}
    for key, value in raw.items():
        name = BUSINESS_FIELD_ALIASES.get(key, key)
        if name not in REQUIRED_BUSINESS_FIELDS:
            continue
        normalized[name] = "" if value is None else str(value).strip()
    return normalized


def merge_business_info(
    current: Mapping[str, str],
    update: Mapping[str, Any],
) -> dict[str, str]:
    """Merge newly reported fields, never blanking a known value."""
    merged = {**empty_business_info(), **current}
    for name, value in normalize_business_info(update).items():
        if value:
            merged[name] = value
    return merged


def missing_business_fields(business_info: Mapping[str, str]) -> list[str]:
    """Return required fields that are absent or blank."""
    return [
        name
        for name in REQUIRED_BUSINESS_FIELDS
        if not str(business_info.get(name) or "").strip()
    ]


def select_next_agent(state: Mapping[str, Any]) -> NextStep:
    """Pick the next step of the network from its current state.

    Order matters: a finished summary ends the run even if a question is
    still flagged, and a pending question pauses the run even if business
    info is incomplete.
    """
    if state.get("summary"):
        return NextStep.DONE

    if state.get("waiting_for_user_response"):
        return NextStep.PAUSED

    if missing_business_fields(state.get("business_info") or {}):
        return NextStep.GATHER_BUSINESS_INFO

    return NextStep.GENERATE_CODE
