"""
Report Service: the operations exposed to routes and jobs.

Every operation that takes a run or signature id accepts an optional
organization_id; when given, rows belonging to another organization are
reported as not found.
"""

import logging
from dataclasses import dataclass
from typing import Sequence
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import get_settings
from ..core.security import hashes_match, sha256_hex
from ..models import (
    AuditLog,
    PacketType,
    ReportRun,
    ReportRunStatus,
    ReportSignature,
    SignatureRole,
    utc_now,
)
from .audit import AuditService
from .canonical import canonical_hash
from .entity_store import EntityStore, SqlEntityStore
from .errors import (
    InvalidOperationError,
    ReportRunNotFoundError,
    SignatureNotFoundError,
)
from .packets import (
    CURRENT_BUILDER_VERSION,
    ReportPayloadBuilder,
    parse_packet_type,
    pinned_audit_entry_ids,
)
from .renderer import ArtifactRenderer, PdfArtifactRenderer
from .report_ledger import ReportRunLedger, ReportRunPage
from .signatures import SignatureChain
from .storage import ObjectStorage, RetryPolicy, put_with_retry
from .verification import VerificationEngine, VerificationResult

logger = logging.getLogger(__name__)


@dataclass
class PublicVerification:
    """Verification of a published run for a caller outside the organization."""
    run: ReportRun
    organization_name: str | None
    result: VerificationResult


def artifact_path(run: ReportRun) -> str:
    """Storage key of a run's rendered artifact."""
    return f"{run.organization_id}/{run.job_id}/{run.id}/{run.packet_type.value}.pdf"


class ReportService:
    """Facade over payload building, the run ledger and signatures."""

    def __init__(
        self,
        session: AsyncSession,
        storage: ObjectStorage | None = None,
        renderer: ArtifactRenderer | None = None,
        retry_policy: RetryPolicy | None = None,
        entity_store: EntityStore | None = None,
    ):
        self.session = session
        self.storage = storage
        self.renderer = renderer or PdfArtifactRenderer()
        self.retry_policy = retry_policy or RetryPolicy.from_settings()
        self.entity_store = entity_store or SqlEntityStore(session)
        self.builder = ReportPayloadBuilder(self.entity_store)
        self.verifier = VerificationEngine(session, self.builder, storage)
        self.ledger = ReportRunLedger(session, self.verifier)
        self.signatures = SignatureChain(session)
        self.audit = AuditService(session)

    # =========================================================================
    # GENERATE
    # =========================================================================

    async def generate_report_run(
        self,
        organization_id: UUID,
        job_id: UUID,
        packet_type: PacketType | str,
        generated_by: UUID | None = None,
    ) -> ReportRun:
        """
        Freeze the current job data into a draft run.

        The audit entries the timeline used are pinned on the run, so rows
        committed later with an earlier created_at never enter a rebuild.
        Builder and serializer errors surface before any row is written.
        """
        packet_type = parse_packet_type(packet_type)
        generated_at = utc_now()

        payload = await self.builder.build(
            packet_type,
            organization_id,
            job_id,
            as_of=generated_at,
            builder_version=CURRENT_BUILDER_VERSION,
        )
        data_hash = canonical_hash(payload)

        return await self.ledger.create_draft(
            organization_id=organization_id,
            job_id=job_id,
            packet_type=packet_type,
            builder_version=CURRENT_BUILDER_VERSION,
            data_hash=data_hash,
            generated_at=generated_at,
            generated_by=generated_by,
            audit_entry_ids=pinned_audit_entry_ids(payload),
        )

    async def get_active_report_run(
        self,
        organization_id: UUID,
        job_id: UUID,
        packet_type: PacketType | str,
        generated_by: UUID | None = None,
    ) -> tuple[ReportRun, bool]:
        """Latest incomplete run, generating one when none exists. Returns (run, created)."""
        packet_type = parse_packet_type(packet_type)
        run = await self.ledger.get_active(organization_id, job_id, packet_type)
        if run is not None:
            return run, False
        run = await self.generate_report_run(organization_id, job_id, packet_type, generated_by)
        return run, True

    # =========================================================================
    # READ
    # =========================================================================

    async def get_report_run(
        self,
        run_id: UUID,
        organization_id: UUID | None = None,
    ) -> ReportRun:
        run = await self.ledger.get(run_id)
        if organization_id is not None and run.organization_id != organization_id:
            raise ReportRunNotFoundError(f"Report run {run_id} not found")
        return run

    async def list_report_runs(
        self,
        organization_id: UUID,
        job_id: UUID | None = None,
        packet_type: PacketType | str | None = None,
        status: ReportRunStatus | str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> ReportRunPage:
        return await self.ledger.list_runs(
            organization_id,
            job_id=job_id,
            packet_type=packet_type,
            status=status,
            limit=limit,
            offset=offset,
        )

    async def get_report_run_history(
        self,
        run_id: UUID,
        organization_id: UUID | None = None,
    ) -> Sequence[AuditLog]:
        run = await self.get_report_run(run_id, organization_id)
        return await self.audit.list_for_run(run)

    # =========================================================================
    # SIGNATURES
    # =========================================================================

    async def sign_report_run(
        self,
        run_id: UUID,
        role: SignatureRole | str,
        signer_name: str,
        signer_title: str,
        signature_svg: str,
        attestation_text: str,
        *,
        signer_user_id: UUID | None = None,
        attestation_accepted: bool = True,
        acting_user_id: UUID | None = None,
        organization_id: UUID | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> ReportSignature:
        await self.get_report_run(run_id, organization_id)
        return await self.signatures.sign(
            run_id,
            role,
            signer_name,
            signer_title,
            signature_svg,
            attestation_text,
            signer_user_id=signer_user_id,
            attestation_accepted=attestation_accepted,
            acting_user_id=acting_user_id,
            ip_address=ip_address,
            user_agent=user_agent,
        )

    async def revoke_signature(
        self,
        signature_id: UUID,
        *,
        revoked_by: UUID | None = None,
        reason: str | None = None,
        organization_id: UUID | None = None,
    ) -> ReportSignature:
        signature = await self.signatures.get_signature(signature_id)
        if organization_id is not None and signature.organization_id != organization_id:
            raise SignatureNotFoundError(f"Signature {signature_id} not found")
        return await self.signatures.revoke(
            signature_id, revoked_by=revoked_by, reason=reason
        )

    async def list_signatures(
        self,
        run_id: UUID,
        include_revoked: bool = True,
        organization_id: UUID | None = None,
    ) -> Sequence[ReportSignature]:
        await self.get_report_run(run_id, organization_id)
        return await self.signatures.list_signatures(run_id, include_revoked)

    # =========================================================================
    # VERIFY / ARTIFACT / FINALIZE
    # =========================================================================

    async def verify_report_run(
        self,
        run_id: UUID,
        organization_id: UUID | None = None,
    ) -> VerificationResult:
        await self.get_report_run(run_id, organization_id)
        return await self.verifier.verify(run_id)

    async def verify_by_reference(self, reference: str) -> PublicVerification:
        """
        Verify a published run by its id or short reference, without tenant scope.

        Drafts have never been distributed, so they are reported as not found.
        """
        run = await self.ledger.find_by_reference(reference)
        if run.status == ReportRunStatus.DRAFT:
            raise ReportRunNotFoundError(f"Report run {reference} not found")

        result = await self.verifier.verify(run.id)
        organization = await self.entity_store.get_organization(run.organization_id)
        return PublicVerification(
            run=run,
            organization_name=organization["name"] if organization else None,
            result=result,
        )

    async def publish_artifact(
        self,
        run_id: UUID,
        acting_user_id: UUID | None = None,
        organization_id: UUID | None = None,
    ) -> ReportRun:
        """
        Render the frozen payload, store it and attach it to the run.

        Flow:
        1. Rebuild the payload exactly as it was hashed
        2. Refuse if the source data has drifted since generation
        3. Render and hash the artifact
        4. Upload with retry (the run stays draft if storage gives up)
        5. Attach path, hash and new status in one write
        """
        run = await self.get_report_run(run_id, organization_id)
        if run.storage_path is not None:
            return run
        if self.storage is None:
            raise InvalidOperationError("No artifact storage is configured")

        payload = await self.builder.build(
            run.packet_type,
            run.organization_id,
            run.job_id,
            as_of=run.generated_at,
            builder_version=run.builder_version,
            audit_entry_ids=run.audit_entry_ids,
        )
        if not hashes_match(run.data_hash, canonical_hash(payload)):
            raise InvalidOperationError(
                f"Job data changed since report run {run_id} was generated; "
                "generate a new report run"
            )

        signatures = await self.signatures.list_signatures(run.id, include_revoked=False)
        artifact = self.renderer.render(payload, signatures, run)
        artifact_hash = sha256_hex(artifact)
        path = artifact_path(run)

        await put_with_retry(
            self.storage,
            path,
            artifact,
            self.retry_policy,
            content_type=self.renderer.content_type,
        )
        return await self.ledger.attach_artifact(
            run.id, path, artifact_hash, acting_user_id=acting_user_id
        )

    async def finalize_report_run(
        self,
        run_id: UUID,
        acting_user_id: UUID | None = None,
        organization_id: UUID | None = None,
    ) -> ReportRun:
        await self.get_report_run(run_id, organization_id)
        return await self.ledger.finalize(run_id, acting_user_id=acting_user_id)

    async def get_artifact_url(
        self,
        run_id: UUID,
        ttl_seconds: int | None = None,
        organization_id: UUID | None = None,
    ) -> str:
        run = await self.get_report_run(run_id, organization_id)
        if not run.storage_path:
            raise InvalidOperationError(f"Report run {run_id} has no stored artifact")
        if self.storage is None:
            raise InvalidOperationError("No artifact storage is configured")
        ttl = ttl_seconds or get_settings().signed_url_ttl_seconds
        return await self.storage.sign_url(run.storage_path, ttl)
