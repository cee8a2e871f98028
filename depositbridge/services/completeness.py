from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any

from depositbridge.persistence.serialization import is_truncated


CATEGORIES = ("tenancy", "property", "contacts", "deposit")

# Identity and structural markers; a record missing any of these can never be submitted.
FATAL_FIELDS = {
    "tenancy": frozenset({"entire tenancy data", "id"}),
    "property": frozenset({"entire property data", "id"}),
}

_NAME_IN_PARENS = re.compile(r"\(([^)]+)\)")


@dataclass(frozen=True)
class CompletenessResult:
    is_complete: bool
    missing_fields: dict[str, list[str]] = field(default_factory=dict)
    deferrable: bool = False
    summary: str = ""


def _text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ("" if value is None else str(value))


def _positive(value: Any) -> bool:
    try:
        return value is not None and float(value) > 0
    except (TypeError, ValueError):
        return False


def has_deposit(tenancy: dict[str, Any] | None) -> bool:
    if not tenancy:
        return False
    return _positive(tenancy.get("depositRequested")) or _positive(tenancy.get("depositAmount"))


def collect_tenants(record: dict[str, Any]) -> list[dict[str, Any]]:
    """Flatten tenant people across every tenant contact record.

    Each person gains ``contactId`` from the contact item it came from.
    """

    people: list[dict[str, Any]] = []
    for contact in record.get("tenants") or []:
        items = (contact or {}).get("items") or []
        if not items:
            continue
        first = items[0] or {}
        for person in first.get("people") or []:
            people.append({**person, "contactId": first.get("id")})
    return people


def collect_landlords(record: dict[str, Any]) -> list[dict[str, Any]]:
    # Prefer the landlords listing (it carries addresses), else the property owners.
    landlords = record.get("landlords")
    if landlords:
        if isinstance(landlords, dict):
            return list(landlords.get("items") or [])
        return list(landlords)
    prop = record.get("property") or {}
    return list(prop.get("owners") or [])


def landlord_name(landlord: dict[str, Any]) -> tuple[str | None, str | None, str | None]:
    nested = landlord.get("name") if isinstance(landlord.get("name"), dict) else {}
    return (
        landlord.get("title") or nested.get("title"),
        landlord.get("forename") or nested.get("forename"),
        landlord.get("surname") or nested.get("surname"),
    )


def landlord_contact(landlord: dict[str, Any]) -> tuple[str | None, str | None]:
    emails = landlord.get("emailAddresses") or []
    phones = landlord.get("phoneNumbers") or []
    email = landlord.get("email") or (emails[0].get("address") if emails else None)
    phone = landlord.get("phone") or (phones[0].get("number") if phones else None)
    return email, phone


def person_contact(person: dict[str, Any]) -> tuple[str | None, str | None]:
    emails = person.get("emailAddresses") or []
    phones = person.get("phoneNumbers") or []
    return (
        emails[0].get("address") if emails else None,
        phones[0].get("number") if phones else None,
    )


def _address_complete(address: Any) -> bool:
    if not isinstance(address, dict):
        return False
    if not _text(address.get("postcode")) or not _text(address.get("nameNo")) or not _text(address.get("street")):
        return False
    return bool(_text(address.get("town")) or _text(address.get("locality")))


def _check_tenants(record: dict[str, Any], missing: list[str]) -> None:
    tenants = collect_tenants(record)
    if not tenants:
        missing.append("tenant contacts")
        return
    for index, tenant in enumerate(tenants):
        label = "lead tenant" if index == 0 else f"tenant {index + 1}"
        forename, surname = tenant.get("forename"), tenant.get("surname")
        if not forename or not surname:
            missing.append(f"{label} name ({forename or 'unknown'} {surname or 'unknown'})")
        email, phone = person_contact(tenant)
        if not email and not phone:
            missing.append(f"{label} contact ({forename} {surname})")


def _check_landlords(record: dict[str, Any], missing: list[str]) -> None:
    landlords = collect_landlords(record)
    if not landlords:
        missing.append("landlord information")
        return
    for index, landlord in enumerate(landlords):
        label = "primary landlord" if index == 0 else f"landlord {index + 1}"
        _, forename, surname = landlord_name(landlord)
        if not forename or not surname:
            missing.append(f"{label} name")
        email, phone = landlord_contact(landlord)
        if not email and not phone:
            missing.append(f"{label} contact ({forename} {surname})")
        if not _address_complete(landlord.get("address")):
            missing.append(f"{label} address ({forename} {surname})")


def _contact_message(entry: str) -> str | None:
    match = _NAME_IN_PARENS.search(entry)
    name = match.group(1) if match else None
    if " contact (" in entry and ("tenant" in entry or "landlord" in entry):
        fallback = "tenant" if "tenant" in entry else "landlord"
        return f"Please add email or phone number for {name or fallback}"
    if "landlord" in entry and "address" in entry:
        return f"Please add complete address for {name or 'landlord'}"
    if "landlord" in entry and "name" in entry:
        return "Please add landlord name"
    if "tenant" in entry and "name" in entry:
        return "Please add tenant name"
    if "tenant contacts" in entry:
        return "Please add tenant information"
    if "landlord information" in entry:
        return "Please add landlord information"
    return None


def summarize_missing(missing_fields: dict[str, list[str]]) -> str:
    messages: list[str] = []
    if missing_fields.get("deposit"):
        messages.append("Please add the deposit amount")
    if missing_fields.get("tenancy"):
        messages.append("Please complete tenancy details")
    if missing_fields.get("property"):
        messages.append("Please complete property details")
    for entry in missing_fields.get("contacts") or []:
        message = _contact_message(entry)
        if message and message not in messages:
            messages.append(message)
    return ". ".join(messages) if messages else "Missing required information"


def is_deferrable(missing_fields: dict[str, list[str]]) -> bool:
    for category, fatal in FATAL_FIELDS.items():
        if fatal.intersection(missing_fields.get(category) or []):
            return False
    return True


def waits_for_submission(missing_fields: dict[str, Any] | None) -> bool:
    """True when nothing beyond the deposit amount is known to be missing.

    A size-capped envelope stands for gaps too large to store, which always
    means more than the deposit.
    """

    if is_truncated(missing_fields):
        return False
    gaps = {category for category in CATEGORIES if (missing_fields or {}).get(category)}
    return gaps <= {"deposit"}


def validate_completeness(record: dict[str, Any] | None) -> CompletenessResult:
    """Check a fetched source record for everything a submission needs.

    Pure function of its input. Categories with nothing missing are omitted
    from ``missing_fields``.
    """

    record = record or {}
    missing: dict[str, list[str]] = {category: [] for category in CATEGORIES}

    tenancy = record.get("tenancy")
    if tenancy:
        for name in ("id", "startDate"):
            if not tenancy.get(name):
                missing["tenancy"].append(name)
    else:
        missing["tenancy"].append("entire tenancy data")

    prop = record.get("property")
    if prop:
        if not prop.get("address"):
            missing["property"].append("address")
        if not prop.get("id"):
            missing["property"].append("id")
    else:
        missing["property"].append("entire property data")

    _check_tenants(record, missing["contacts"])
    _check_landlords(record, missing["contacts"])

    if not has_deposit(tenancy):
        missing["deposit"].append("deposit amount")

    missing_fields = {category: fields for category, fields in missing.items() if fields}
    if not missing_fields:
        return CompletenessResult(is_complete=True)
    return CompletenessResult(
        is_complete=False,
        missing_fields=missing_fields,
        deferrable=is_deferrable(missing_fields),
        summary=summarize_missing(missing_fields),
    )
