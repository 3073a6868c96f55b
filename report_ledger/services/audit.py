"""Audit service: ledger events in the shared audit log."""

from typing import Any, Sequence
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import AuditAction, AuditLog, ReportRun
from .entity_store import LEDGER_RESOURCE_TYPES


class AuditService:
    """Writes and reads report-ledger events."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def log_event(
        self,
        organization_id: UUID,
        action: AuditAction,
        resource_type: str,
        resource_id: UUID,
        user_id: UUID | None = None,
        job_id: UUID | None = None,
        details: dict[str, Any] | None = None,
    ) -> AuditLog:
        """Add an audit entry to the current transaction."""
        entry = AuditLog(
            organization_id=organization_id,
            user_id=user_id,
            job_id=job_id,
            action=action.value,
            resource_type=resource_type,
            resource_id=resource_id,
            details=details or {},
        )
        self.session.add(entry)
        # Don't flush here - let it be part of the transaction
        return entry

    async def list_for_run(self, run: ReportRun) -> Sequence[AuditLog]:
        """Ledger events for one run, including its signatures, oldest first."""
        await self.session.flush()
        result = await self.session.execute(
            select(AuditLog)
            .where(
                AuditLog.organization_id == run.organization_id,
                AuditLog.job_id == run.job_id,
                AuditLog.resource_type.in_(LEDGER_RESOURCE_TYPES),
            )
            .order_by(AuditLog.created_at, AuditLog.id)
        )
        run_key = str(run.id)
        return [
            entry
            for entry in result.scalars().all()
            if entry.resource_id == run.id
            or (entry.details or {}).get("report_run_id") == run_key
        ]
