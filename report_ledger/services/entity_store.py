"""
Entity Store: read-only, organization-scoped access to job data.

Everything returned here is a plain dict of strings, numbers, bools and
nested lists, ready for canonical serialization:
- ids are strings, timestamps are ISO-8601 UTC strings
- collections are ordered by (created_at, id)
- values that change independently of the job (display names, signed URLs)
  are never included
"""

from datetime import datetime, timezone
from typing import Any, Protocol, Sequence
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import (
    AuditLog,
    Document,
    Job,
    JobRiskScore,
    MitigationItem,
    Organization,
)

# Ledger bookkeeping is never part of a job's own history
LEDGER_RESOURCE_TYPES = ("report_run", "report_signature")


def to_iso(value: datetime | None) -> str | None:
    """Normalize a timestamp to an ISO-8601 UTC string."""
    if value is None:
        return None
    if value.tzinfo is None:
        # SQLite drops the offset; stored values are always UTC
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _id(value: UUID | None) -> str | None:
    return str(value) if value is not None else None


class EntityStore(Protocol):
    """Source of the job data a report is assembled from."""

    async def get_organization(self, organization_id: UUID) -> dict[str, Any] | None: ...

    async def get_job(self, organization_id: UUID, job_id: UUID) -> dict[str, Any] | None: ...

    async def get_risk_score(self, job_id: UUID) -> dict[str, Any] | None: ...

    async def list_risk_factors(self, job_id: UUID) -> list[dict[str, Any]]: ...

    async def list_mitigations(self, job_id: UUID) -> list[dict[str, Any]]: ...

    async def list_documents(
        self, organization_id: UUID, job_id: UUID
    ) -> list[dict[str, Any]]: ...

    async def list_audit_entries(
        self, organization_id: UUID, job_id: UUID, as_of: datetime | None = None
    ) -> list[dict[str, Any]]: ...

    async def get_audit_entries(
        self, organization_id: UUID, job_id: UUID, entry_ids: Sequence[str]
    ) -> list[dict[str, Any]]: ...


class SqlEntityStore:
    """EntityStore backed by the entity tables in the request session."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def get_organization(self, organization_id: UUID) -> dict[str, Any] | None:
        result = await self._session.execute(
            select(Organization).where(
                Organization.id == organization_id,
                Organization.deleted_at.is_(None),
            )
        )
        org = result.scalar_one_or_none()
        if not org:
            return None
        return {
            "id": str(org.id),
            "name": org.name,
            "logo_url": org.logo_url,
            "accent_color": org.accent_color,
            "subscription_tier": org.subscription_tier,
        }

    async def get_job(self, organization_id: UUID, job_id: UUID) -> dict[str, Any] | None:
        result = await self._session.execute(
            select(Job).where(
                Job.id == job_id,
                Job.organization_id == organization_id,
                Job.deleted_at.is_(None),
            )
        )
        job = result.scalar_one_or_none()
        if not job:
            return None
        return {
            "id": str(job.id),
            "client_name": job.client_name,
            "location": job.location,
            "job_type": job.job_type,
            "status": job.status,
            "description": job.description,
            "start_date": to_iso(job.start_date),
            "end_date": to_iso(job.end_date),
            "created_at": to_iso(job.created_at),
        }

    async def _risk_row(self, job_id: UUID) -> JobRiskScore | None:
        result = await self._session.execute(
            select(JobRiskScore).where(JobRiskScore.job_id == job_id)
        )
        return result.scalar_one_or_none()

    async def get_risk_score(self, job_id: UUID) -> dict[str, Any] | None:
        score = await self._risk_row(job_id)
        if not score:
            return None
        # updated_at is left out: a recompute with the same result is not a change
        return {
            "overall_score": score.overall_score,
            "risk_level": score.risk_level,
        }

    async def list_risk_factors(self, job_id: UUID) -> list[dict[str, Any]]:
        score = await self._risk_row(job_id)
        if not score or not score.factors:
            return []
        return [dict(factor) for factor in score.factors]

    async def list_mitigations(self, job_id: UUID) -> list[dict[str, Any]]:
        result = await self._session.execute(
            select(MitigationItem)
            .where(MitigationItem.job_id == job_id)
            .order_by(MitigationItem.created_at, MitigationItem.id)
        )
        return [
            {
                "id": str(item.id),
                "title": item.title,
                "description": item.description,
                "done": item.done,
                "completed_at": to_iso(item.completed_at),
                "created_at": to_iso(item.created_at),
            }
            for item in result.scalars().all()
        ]

    async def list_documents(
        self, organization_id: UUID, job_id: UUID
    ) -> list[dict[str, Any]]:
        result = await self._session.execute(
            select(Document)
            .where(
                Document.organization_id == organization_id,
                Document.job_id == job_id,
                Document.deleted_at.is_(None),
            )
            .order_by(Document.created_at, Document.id)
        )
        return [
            {
                "id": str(doc.id),
                "name": doc.name,
                "type": doc.type,
                "file_path": doc.file_path,
                "mime_type": doc.mime_type,
                "description": doc.description,
                "category": doc.category,
                "uploaded_by": _id(doc.uploaded_by),
                "created_at": to_iso(doc.created_at),
            }
            for doc in result.scalars().all()
        ]

    def _audit_query(self, organization_id: UUID, job_id: UUID):
        return select(AuditLog).where(
            AuditLog.organization_id == organization_id,
            AuditLog.job_id == job_id,
            AuditLog.resource_type.not_in(LEDGER_RESOURCE_TYPES),
        )

    async def list_audit_entries(
        self, organization_id: UUID, job_id: UUID, as_of: datetime | None = None
    ) -> list[dict[str, Any]]:
        """Entries visible now, bounded by ``as_of``. Used when a run is generated."""
        query = self._audit_query(organization_id, job_id)
        if as_of is not None:
            if as_of.tzinfo is not None:
                as_of = as_of.astimezone(timezone.utc)
            query = query.where(AuditLog.created_at <= as_of)

        result = await self._session.execute(
            query.order_by(AuditLog.created_at, AuditLog.id)
        )
        return [_audit_entry(entry) for entry in result.scalars().all()]

    async def get_audit_entries(
        self, organization_id: UUID, job_id: UUID, entry_ids: Sequence[str]
    ) -> list[dict[str, Any]]:
        """Exactly the given entries (those that still resolve), in timeline order."""
        if not entry_ids:
            return []
        ids = [UUID(entry_id) for entry_id in entry_ids]
        result = await self._session.execute(
            self._audit_query(organization_id, job_id)
            .where(AuditLog.id.in_(ids))
            .order_by(AuditLog.created_at, AuditLog.id)
        )
        return [_audit_entry(entry) for entry in result.scalars().all()]


def _audit_entry(entry: AuditLog) -> dict[str, Any]:
    return {
        "id": str(entry.id),
        "action": entry.action,
        "resource_type": entry.resource_type,
        "resource_id": str(entry.resource_id),
        "user_id": _id(entry.user_id),
        "details": entry.details or {},
        "created_at": to_iso(entry.created_at),
    }
