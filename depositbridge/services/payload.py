from __future__ import annotations

from typing import Any

from depositbridge.core.errors import PayloadBuildError
from depositbridge.domain.job import TenantKey
from depositbridge.services.completeness import (
    collect_landlords,
    collect_tenants,
    landlord_contact,
    landlord_name,
    person_contact,
)
from depositbridge.services.enrichment import EnrichmentResult


# Downstream accepts only these honorifics; anything else is omitted.
_TITLE_MAP = {
    "mr": "Mr.",
    "mrs": "Mrs.",
    "miss": "Ms.",
    "ms": "Ms.",
    "dr": "Dr.",
    "prof": "Prof.",
    "mx": "Mx.",
}


def normalize_title(title: Any) -> str | None:
    # Unknown titles are omitted from the payload rather than guessed.
    if not isinstance(title, str) or not title.strip():
        return None
    return _TITLE_MAP.get(title.strip().lower().replace(".", ""))


def _landlord_entry(landlord: dict[str, Any], index: int, region: str | None) -> dict[str, Any]:
    # Each landlord needs at least one contact channel or the payload is rejected.
    title, forename, surname = landlord_name(landlord)
    email, phone = landlord_contact(landlord)
    if not email and not phone:
        raise PayloadBuildError(
            f"Landlord {index + 1} ({forename} {surname}) must have either email or phone number"
        )
    entry: dict[str, Any] = {
        "id": landlord.get("id") or landlord.get("ownerId") or landlord.get("contactId"),
        "firstName": forename,
        "lastName": surname,
        "email": email,
        "phone": phone,
        "address": landlord.get("address"),
        "county": region,
    }
    normalized = normalize_title(title)
    if normalized:
        entry["title"] = normalized
    return entry


def _tenant_entry(tenant: dict[str, Any], index: int) -> dict[str, Any]:
    email, phone = person_contact(tenant)
    if not email and not phone:
        raise PayloadBuildError(
            f"Tenant {index + 1} ({tenant.get('forename')} {tenant.get('surname')}) must have either email or phone number"
        )
    entry: dict[str, Any] = {
        "id": tenant.get("contactId"),
        "firstName": tenant.get("forename"),
        "lastName": tenant.get("surname"),
        "email": email,
        "phone": phone,
    }
    normalized = normalize_title(tenant.get("title"))
    if normalized:
        entry["title"] = normalized
    return entry


def build_payload(record: dict[str, Any], enrichment: EnrichmentResult, tenant_key: TenantKey) -> dict[str, Any]:
    """Map a complete source record to the downstream deposit payload.

    Raises PayloadBuildError when a downstream-required invariant does not
    hold; the record will not get better by waiting.
    """

    tenancy = record.get("tenancy") or {}
    prop = record.get("property") or {}

    agency_ref = tenant_key.organization_id
    branch_id = tenant_key.branch_id or tenancy.get("branchId")
    if not agency_ref:
        raise PayloadBuildError("Missing required field: organization id")
    if not branch_id:
        raise PayloadBuildError("Missing required field: branch id")

    landlord_region = enrichment.landlord_region.region
    landlords = [
        _landlord_entry(landlord, index, landlord_region)
        for index, landlord in enumerate(collect_landlords(record))
    ]
    tenants = [_tenant_entry(tenant, index) for index, tenant in enumerate(collect_tenants(record))]
    if not landlords:
        raise PayloadBuildError("At least one landlord is required")
    if not tenants:
        raise PayloadBuildError("At least one tenant is required")

    return {
        "tenancyId": tenancy.get("id"),
        "depositAmount": tenancy.get("depositRequested") or tenancy.get("depositAmount"),
        "rentAmount": prop.get("rent") or tenancy.get("rent"),
        "tenancyStartDate": tenancy.get("startDate"),
        "tenancyEndDate": tenancy.get("endDate"),
        "property": {
            "id": prop.get("id"),
            "address": prop.get("address"),
            "county": enrichment.property_region.region,
            "propertyType": prop.get("propertyType"),
            "bedrooms": prop.get("bedrooms"),
            "receptions": prop.get("receptions"),
        },
        "landlords": landlords,
        "landlord": landlords[0],
        "tenants": tenants,
        "agencyRef": agency_ref,
        "branchId": branch_id,
        "agency": {"ref": agency_ref, "branchId": branch_id},
    }
