from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

from depositbridge.domain.job import Job, JobStatus, TenantKey


TENANT = TenantKey(organization_id="org-1", branch_id="br-1")
PROPERTY_POSTCODE = "HP20 1AA"
LANDLORD_POSTCODE = "W1U 4EG"


class FakeClock:
    """Callable clock that tests move forward explicitly."""

    def __init__(self, now: datetime | None = None) -> None:
        self.now = now or datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, *, minutes: float = 0, hours: float = 0) -> datetime:
        self.now = self.now + timedelta(minutes=minutes, hours=hours)
        return self.now


def complete_record(tenancy_id: str = "ten-1", *, deposit: float | None = 1200.0) -> dict[str, Any]:
    # Mirrors the shape of a source tenancy bundle with one tenant and one landlord.
    return {
        "tenancy": {
            "id": tenancy_id,
            "startDate": "2026-04-01",
            "endDate": "2027-03-31",
            "depositRequested": deposit,
            "branchId": "br-1",
            "rent": 1150,
        },
        "property": {
            "id": "prop-1",
            "address": {"nameNo": "12", "street": "High Street", "town": "Aylesbury", "postcode": PROPERTY_POSTCODE},
            "propertyType": "house",
            "bedrooms": 3,
            "receptions": 1,
            "rent": 1150,
        },
        "tenants": [
            {
                "items": [
                    {
                        "id": "contact-1",
                        "people": [
                            {
                                "title": "Mrs",
                                "forename": "Ada",
                                "surname": "Lovelace",
                                "emailAddresses": [{"address": "ada@example.com"}],
                                "phoneNumbers": [],
                            }
                        ],
                    }
                ]
            }
        ],
        "landlords": [
            {
                "id": "ll-1",
                "title": "Mr",
                "forename": "Charles",
                "surname": "Babbage",
                "email": "charles@example.com",
                "address": {"nameNo": "1", "street": "Dorset Street", "town": "London", "postcode": LANDLORD_POSTCODE},
            }
        ],
    }


def pending_job(
    clock: FakeClock,
    external_record_id: str = "rec-1",
    *,
    status: JobStatus = JobStatus.PENDING_DATA,
    max_attempts: int = 20,
) -> Job:
    # A job that has been deferred once and is due now.
    job = Job.new(external_record_id=external_record_id, tenant_key=TENANT, max_attempts=max_attempts, now=clock())
    return job.deferred(status=status, next_attempt_at=clock(), now=clock(), reason="Waiting for data")
