"""
Verification Engine: proves a report run was not altered after generation.

Verification is read-only and always rebuilds from source:
1. Load the run and the builder version that produced it
2. Rebuild the payload pinned to the run's generated_at
3. Recompute the canonical hash and compare to data_hash
4. Recompute every active signature hash
5. Evaluate role completeness
6. Check the stored artifact against artifact_hash (when storage is wired)

Mismatches are reported in the result. Exceptions are reserved for runs that
cannot be checked at all (missing run, unknown builder).
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum as PyEnum
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.security import hashes_match, sha256_hex
from ..models import ReportRun, ReportRunStatus, SignatureRole, utc_now
from .canonical import canonical_hash
from .entity_store import SqlEntityStore
from .errors import BuilderVersionUnavailableError, ReportRunNotFoundError, StorageError
from .packets import ReportPayloadBuilder, parse_packet_type, required_roles_for
from .signatures import SignatureChain, evaluate_completeness
from .storage import ObjectStorage

logger = logging.getLogger(__name__)


class ContentIntegrity(str, PyEnum):
    MATCH = "match"
    MISMATCH = "mismatch"


class ArtifactIntegrity(str, PyEnum):
    NOT_STORED = "not_stored"  # Run has no artifact yet
    NOT_RECORDED = "not_recorded"  # Artifact stored without a hash
    MATCH = "match"
    MISMATCH = "mismatch"
    UNAVAILABLE = "unavailable"  # Storage unreachable or object missing
    SKIPPED = "skipped"  # No storage configured for this check


# =============================================================================
# RESULT TYPES
# =============================================================================


@dataclass
class SignatureVerification:
    """Outcome for one active signature."""
    signature_id: UUID
    signature_role: SignatureRole
    signer_name: str
    signer_title: str
    signed_at: datetime
    stored_hash: str
    computed_hash: str
    verified: bool


@dataclass
class RevokedSignature:
    signature_id: UUID
    signature_role: SignatureRole
    signer_name: str
    revoked_at: datetime
    revoked_by: UUID | None
    revoked_reason: str | None


@dataclass
class ArtifactCheck:
    status: ArtifactIntegrity
    storage_path: str | None = None
    stored_hash: str | None = None
    computed_hash: str | None = None


@dataclass
class VerificationResult:
    """Structured verification outcome for a report run."""
    report_run_id: UUID
    packet_type: str
    builder_version: int
    status: ReportRunStatus
    stored_hash: str
    computed_hash: str
    content_integrity: ContentIntegrity
    signatures: list[SignatureVerification]
    revoked_signatures: list[RevokedSignature]
    required_roles: list[SignatureRole]
    signed_roles: list[SignatureRole]
    missing_roles: list[SignatureRole]
    artifact: ArtifactCheck
    verified_at: datetime = field(default_factory=utc_now)

    @property
    def hash_match(self) -> bool:
        return self.content_integrity == ContentIntegrity.MATCH

    @property
    def all_signatures_verified(self) -> bool:
        return all(sig.verified for sig in self.signatures)

    @property
    def is_complete(self) -> bool:
        return not self.missing_roles

    @property
    def is_valid(self) -> bool:
        """Content intact, every active signature intact, artifact not contradicted."""
        return (
            self.hash_match
            and self.all_signatures_verified
            and self.artifact.status != ArtifactIntegrity.MISMATCH
        )

    @property
    def problems(self) -> list[str]:
        issues = []
        if not self.hash_match:
            issues.append("content hash mismatch")
        for sig in self.signatures:
            if not sig.verified:
                issues.append(f"signature {sig.signature_id} ({sig.signature_role.value}) failed verification")
        if self.artifact.status == ArtifactIntegrity.MISMATCH:
            issues.append("artifact hash mismatch")
        return issues


# =============================================================================
# VERIFICATION ENGINE
# =============================================================================


class VerificationEngine:
    """Re-derives and compares every commitment of a report run."""

    def __init__(
        self,
        session: AsyncSession,
        builder: ReportPayloadBuilder | None = None,
        storage: ObjectStorage | None = None,
    ):
        self._session = session
        self._builder = builder or ReportPayloadBuilder(SqlEntityStore(session))
        self._signatures = SignatureChain(session)
        self._storage = storage

    async def verify(self, run_id: UUID) -> VerificationResult:
        """
        Verify a report run.

        Raises:
            ReportRunNotFoundError: run does not exist
            BuilderVersionUnavailableError: the producing builder cannot be
                reproduced, so the run cannot be checked
            NotFoundError: the job or organization no longer resolves
        """
        run = await self._get_run_or_raise(run_id)

        if run.packet_type is None or run.builder_version is None:
            raise BuilderVersionUnavailableError(
                f"Report run {run_id} has no recorded packet type or builder version"
            )
        packet_type = parse_packet_type(run.packet_type)
        if not self._builder.supports(run.builder_version):
            raise BuilderVersionUnavailableError(
                f"Builder version {run.builder_version} for report run {run_id} "
                "is not available"
            )

        payload = await self._builder.build(
            packet_type,
            run.organization_id,
            run.job_id,
            as_of=run.generated_at,
            builder_version=run.builder_version,
            audit_entry_ids=run.audit_entry_ids,
        )
        computed = canonical_hash(payload)
        content = (
            ContentIntegrity.MATCH
            if hashes_match(run.data_hash, computed)
            else ContentIntegrity.MISMATCH
        )

        checks = await self._signatures.check_signatures(run.id)
        active = [check for check in checks if check.signature.is_active]
        completeness = evaluate_completeness(
            required_roles_for(packet_type), active
        )

        result = VerificationResult(
            report_run_id=run.id,
            packet_type=packet_type.value,
            builder_version=run.builder_version,
            status=run.status,
            stored_hash=run.data_hash,
            computed_hash=computed,
            content_integrity=content,
            signatures=[
                SignatureVerification(
                    signature_id=check.signature.id,
                    signature_role=check.signature.signature_role,
                    signer_name=check.signature.signer_name,
                    signer_title=check.signature.signer_title,
                    signed_at=check.signature.signed_at,
                    stored_hash=check.signature.signature_hash,
                    computed_hash=check.computed_hash,
                    verified=check.verified,
                )
                for check in active
            ],
            revoked_signatures=[
                RevokedSignature(
                    signature_id=check.signature.id,
                    signature_role=check.signature.signature_role,
                    signer_name=check.signature.signer_name,
                    revoked_at=check.signature.revoked_at,
                    revoked_by=check.signature.revoked_by,
                    revoked_reason=check.signature.revoked_reason,
                )
                for check in checks
                if not check.signature.is_active
            ],
            required_roles=completeness.required_roles,
            signed_roles=completeness.signed_roles,
            missing_roles=completeness.missing_roles,
            artifact=await self._check_artifact(run),
        )

        if result.problems:
            logger.warning(
                f"Verification of report run {run.id} found problems: "
                f"{'; '.join(result.problems)}"
            )
        else:
            logger.info(
                f"Report run {run.id} verified "
                f"(complete={result.is_complete}, artifact={result.artifact.status.value})"
            )
        return result

    # =========================================================================
    # INTERNAL HELPERS
    # =========================================================================

    async def _get_run_or_raise(self, run_id: UUID) -> ReportRun:
        await self._session.flush()
        result = await self._session.execute(
            select(ReportRun).where(ReportRun.id == run_id)
        )
        run = result.scalar_one_or_none()
        if not run:
            raise ReportRunNotFoundError(f"Report run {run_id} not found")
        return run

    async def _check_artifact(self, run: ReportRun) -> ArtifactCheck:
        if not run.storage_path:
            return ArtifactCheck(status=ArtifactIntegrity.NOT_STORED)

        check = ArtifactCheck(
            status=ArtifactIntegrity.SKIPPED,
            storage_path=run.storage_path,
            stored_hash=run.artifact_hash,
        )
        if self._storage is None:
            return check
        if not run.artifact_hash:
            check.status = ArtifactIntegrity.NOT_RECORDED
            return check

        try:
            data = await self._storage.get(run.storage_path)
        except StorageError as e:
            logger.warning(f"Artifact for report run {run.id} unavailable: {e}")
            check.status = ArtifactIntegrity.UNAVAILABLE
            return check

        if data is None:
            check.status = ArtifactIntegrity.UNAVAILABLE
            return check

        check.computed_hash = sha256_hex(data)
        check.status = (
            ArtifactIntegrity.MATCH
            if hashes_match(run.artifact_hash, check.computed_hash)
            else ArtifactIntegrity.MISMATCH
        )
        return check

