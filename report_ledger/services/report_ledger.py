"""
Report Run Ledger: the lifecycle of frozen report snapshots.

    draft ──attach_artifact──> final ──finalize──> complete
      └────────attach_artifact (all roles signed)────────┘

Rules:
- data_hash is written once, at creation, and never changes
- a different payload never overwrites a run; it becomes a new run
- an identical payload re-uses the existing draft
- every transition is a single flush inside the caller's transaction
- a run never returns to draft
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Sequence
from uuid import UUID

from sqlalchemy import String, cast, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import (
    REFERENCE_PREFIX,
    AuditAction,
    PacketType,
    ReportRun,
    ReportRunStatus,
    utc_now,
)
from .audit import AuditService
from .errors import (
    AlreadyFinalizedError,
    FinalizationBlockedError,
    InvalidOperationError,
    ReportRunNotFoundError,
)
from .packets import parse_packet_type
from .signatures import SignatureChain
from .verification import VerificationEngine

logger = logging.getLogger(__name__)

SHORT_REFERENCE_RE = re.compile(r"[0-9a-f]{8}")


@dataclass
class ReportRunPage:
    """A page of report runs."""
    items: Sequence[ReportRun]
    total: int
    limit: int
    offset: int


class ReportRunLedger:
    """
    Owns report run rows and their state machine.

    Guarantees:
    1. data_hash is never rewritten
    2. Duplicate drafts for identical content are impossible, even under races
    3. Artifact path, artifact hash and status change together or not at all
    4. complete is only reached with all required roles signed and verified
    """

    def __init__(
        self,
        session: AsyncSession,
        verifier: VerificationEngine | None = None,
    ):
        self._session = session
        self._signatures = SignatureChain(session)
        self._verifier = verifier or VerificationEngine(session)
        self._audit = AuditService(session)

    # =========================================================================
    # CREATE DRAFT
    # =========================================================================

    async def create_draft(
        self,
        organization_id: UUID,
        job_id: UUID,
        packet_type: PacketType | str,
        builder_version: int,
        data_hash: str,
        generated_at: datetime,
        generated_by: UUID | None = None,
        audit_entry_ids: list[str] | None = None,
    ) -> ReportRun:
        """
        Create a draft run, or return the draft that already holds this hash.

        Concurrent identical requests race on the partial unique index; the
        loser re-reads and returns the winner's row.
        """
        packet_type = parse_packet_type(packet_type)

        existing = await self._find_draft(job_id, packet_type, data_hash)
        if existing:
            logger.debug(f"Re-using draft {existing.id} for job {job_id} ({packet_type.value})")
            return existing

        run = ReportRun(
            organization_id=organization_id,
            job_id=job_id,
            packet_type=packet_type,
            builder_version=builder_version,
            status=ReportRunStatus.DRAFT,
            data_hash=data_hash,
            generated_by=generated_by,
            generated_at=generated_at,
            audit_entry_ids=audit_entry_ids,
        )

        try:
            async with self._session.begin_nested():
                self._session.add(run)
                await self._session.flush()
        except IntegrityError:
            winner = await self._find_draft(job_id, packet_type, data_hash)
            if winner is None:
                raise
            logger.info(f"Concurrent draft creation for job {job_id}; using {winner.id}")
            return winner

        await self._audit.log_event(
            organization_id=organization_id,
            action=AuditAction.GENERATE,
            resource_type="report_run",
            resource_id=run.id,
            user_id=generated_by,
            job_id=job_id,
            details={
                "packet_type": packet_type.value,
                "builder_version": builder_version,
                "data_hash": data_hash,
                "audit_entries": None if audit_entry_ids is None else len(audit_entry_ids),
            },
        )
        await self._session.flush()

        logger.info(
            f"Created draft report run {run.id} for job {job_id} "
            f"({packet_type.value}, v{builder_version}, hash {data_hash[:12]})"
        )
        return run

    # =========================================================================
    # ATTACH ARTIFACT
    # =========================================================================

    async def attach_artifact(
        self,
        run_id: UUID,
        storage_path: str,
        artifact_hash: str | None = None,
        acting_user_id: UUID | None = None,
    ) -> ReportRun:
        """
        Record the stored artifact and leave draft.

        Re-attaching the same path is a no-op. Any other attach on a run that
        already left draft raises AlreadyFinalizedError.
        """
        run = await self.get(run_id)

        if run.storage_path is not None:
            if run.storage_path == storage_path:
                return run
            raise AlreadyFinalizedError(
                f"Report run {run_id} already has an artifact at {run.storage_path}. "
                "Create a new report run instead."
            )
        if run.status != ReportRunStatus.DRAFT:
            raise AlreadyFinalizedError(
                f"Report run {run_id} is {run.status.value}; its artifact cannot change"
            )

        completeness = await self._signatures.completeness(run)
        now = utc_now()

        # Single write: path, hash and status land together
        run.storage_path = storage_path
        run.artifact_hash = artifact_hash
        run.artifact_stored_at = now
        if completeness.is_complete:
            run.status = ReportRunStatus.COMPLETE
            run.completed_at = now
        else:
            run.status = ReportRunStatus.FINAL

        await self._audit.log_event(
            organization_id=run.organization_id,
            action=AuditAction.ATTACH_ARTIFACT,
            resource_type="report_run",
            resource_id=run.id,
            user_id=acting_user_id,
            job_id=run.job_id,
            details={
                "storage_path": storage_path,
                "artifact_hash": artifact_hash,
                "status": run.status.value,
                "missing_roles": [role.value for role in completeness.missing_roles],
            },
        )
        await self._session.flush()

        logger.info(f"Report run {run.id} artifact stored; status {run.status.value}")
        return run

    # =========================================================================
    # FINALIZE
    # =========================================================================

    async def finalize(
        self,
        run_id: UUID,
        acting_user_id: UUID | None = None,
    ) -> ReportRun:
        """
        Promote a final run to complete after a clean verification.

        Raises:
            AlreadyFinalizedError: run is already complete
            InvalidOperationError: run is still a draft (no artifact)
            FinalizationBlockedError: verification did not pass
        """
        run = await self.get(run_id)

        if run.status == ReportRunStatus.COMPLETE:
            raise AlreadyFinalizedError(f"Report run {run_id} is already complete")
        if run.status == ReportRunStatus.DRAFT:
            raise InvalidOperationError(
                f"Report run {run_id} has no stored artifact yet; publish it before finalizing"
            )

        result = await self._verifier.verify(run_id)
        if not result.hash_match:
            raise FinalizationBlockedError(
                "Report content no longer matches its data hash", result
            )
        if not result.all_signatures_verified:
            raise FinalizationBlockedError(
                "One or more signatures failed verification", result
            )
        if not result.is_complete:
            missing = ", ".join(role.value for role in result.missing_roles)
            raise FinalizationBlockedError(f"Missing required signatures: {missing}", result)

        run.status = ReportRunStatus.COMPLETE
        run.completed_at = utc_now()

        await self._audit.log_event(
            organization_id=run.organization_id,
            action=AuditAction.FINALIZE,
            resource_type="report_run",
            resource_id=run.id,
            user_id=acting_user_id,
            job_id=run.job_id,
            details={
                "data_hash": run.data_hash,
                "signed_roles": [role.value for role in result.signed_roles],
            },
        )
        await self._session.flush()

        logger.info(f"Report run {run.id} finalized")
        return run

    # =========================================================================
    # READS
    # =========================================================================

    async def get(self, run_id: UUID) -> ReportRun:
        result = await self._session.execute(
            select(ReportRun).where(ReportRun.id == run_id)
        )
        run = result.scalar_one_or_none()
        if not run:
            raise ReportRunNotFoundError(f"Report run {run_id} not found")
        return run

    async def find_by_reference(self, reference: str) -> ReportRun:
        """
        Resolve a full run id or a short ``RM-xxxxxxxx`` reference.

        Short references are not unique; the newest matching run wins.
        """
        reference = reference.strip()
        if reference.upper().startswith(REFERENCE_PREFIX):
            prefix = reference[len(REFERENCE_PREFIX):].lower()
            if not SHORT_REFERENCE_RE.fullmatch(prefix):
                raise ReportRunNotFoundError(f"Report run {reference} not found")
            # First 8 characters are the same with or without dashes
            result = await self._session.execute(
                select(ReportRun)
                .where(cast(ReportRun.id, String).like(f"{prefix}%"))
                .order_by(ReportRun.generated_at.desc(), ReportRun.id)
                .limit(1)
            )
            run = result.scalar_one_or_none()
            if run is None:
                raise ReportRunNotFoundError(f"Report run {reference} not found")
            return run

        try:
            run_id = UUID(reference)
        except ValueError:
            raise ReportRunNotFoundError(f"Report run {reference} not found")
        return await self.get(run_id)

    async def list_runs(
        self,
        organization_id: UUID,
        job_id: UUID | None = None,
        packet_type: PacketType | str | None = None,
        status: ReportRunStatus | str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> ReportRunPage:
        """Runs for an organization, newest first."""
        conditions = [ReportRun.organization_id == organization_id]
        if job_id is not None:
            conditions.append(ReportRun.job_id == job_id)
        if packet_type is not None:
            conditions.append(ReportRun.packet_type == parse_packet_type(packet_type))
        if status is not None:
            try:
                conditions.append(ReportRun.status == ReportRunStatus(status))
            except ValueError:
                raise InvalidOperationError(f"Unknown report run status: {status!r}")

        total = (
            await self._session.execute(
                select(func.count()).select_from(ReportRun).where(*conditions)
            )
        ).scalar_one()

        result = await self._session.execute(
            select(ReportRun)
            .where(*conditions)
            .order_by(ReportRun.generated_at.desc(), ReportRun.id)
            .limit(limit)
            .offset(offset)
        )
        return ReportRunPage(
            items=result.scalars().all(),
            total=total,
            limit=limit,
            offset=offset,
        )

    async def get_active(
        self,
        organization_id: UUID,
        job_id: UUID,
        packet_type: PacketType | str,
    ) -> ReportRun | None:
        """Latest run for the job and packet that is not yet complete."""
        result = await self._session.execute(
            select(ReportRun)
            .where(
                ReportRun.organization_id == organization_id,
                ReportRun.job_id == job_id,
                ReportRun.packet_type == parse_packet_type(packet_type),
                ReportRun.status != ReportRunStatus.COMPLETE,
            )
            .order_by(ReportRun.generated_at.desc(), ReportRun.id)
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def _find_draft(
        self,
        job_id: UUID,
        packet_type: PacketType,
        data_hash: str,
    ) -> ReportRun | None:
        result = await self._session.execute(
            select(ReportRun).where(
                ReportRun.job_id == job_id,
                ReportRun.packet_type == packet_type,
                ReportRun.data_hash == data_hash,
                ReportRun.status == ReportRunStatus.DRAFT,
            )
        )
        return result.scalar_one_or_none()
