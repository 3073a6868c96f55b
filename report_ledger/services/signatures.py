"""
Signature Chain: role attestations bound to a report run.

A signature commits to exactly four fields: the drawn SVG, signer name,
signer title and role. Each field is length-prefixed before hashing, so
moving characters across a field boundary always changes the hash.

Signatures are never deleted. Revocation stamps ``revoked_at`` and the row
stays readable; revoked signatures never count toward completeness.
"""

import hashlib
import logging
import re
import struct
from dataclasses import dataclass
from typing import Sequence
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import get_settings
from ..core.security import hashes_match
from ..models import (
    AuditAction,
    OrganizationMember,
    ReportRun,
    ReportRunStatus,
    ReportSignature,
    SignatureRole,
    utc_now,
)
from .audit import AuditService
from .errors import (
    AlreadyFinalizedError,
    InvalidSignatureError,
    ReportRunNotFoundError,
    SignatureNotFoundError,
)
from .packets import required_roles_for

logger = logging.getLogger(__name__)


# =============================================================================
# HASHING & VALIDATION
# =============================================================================


def compute_signature_hash(
    signature_svg: str,
    signer_name: str,
    signer_title: str,
    signature_role: SignatureRole | str,
) -> str:
    """SHA-256 over the length-prefixed svg, name, title and role."""
    role = signature_role.value if isinstance(signature_role, SignatureRole) else signature_role
    digest = hashlib.sha256()
    for field in (signature_svg, signer_name, signer_title, role):
        encoded = field.encode("utf-8")
        digest.update(struct.pack(">Q", len(encoded)))
        digest.update(encoded)
    return digest.hexdigest()


# Path data as produced by signature pads: commands and coordinates only
_PATH_DATA = re.compile(r"^[MmLlHhVvCcSsQqTtAaZz0-9eE\s,.+-]+$")
_FORBIDDEN = (
    re.compile(r"<\s*script", re.IGNORECASE),
    re.compile(r"javascript\s*:", re.IGNORECASE),
    re.compile(r"\son[a-z]+\s*=", re.IGNORECASE),
    re.compile(r"<\s*foreignObject", re.IGNORECASE),
)


def validate_signature_svg(signature_svg: str, max_bytes: int | None = None) -> None:
    """Raise InvalidSignatureError unless the SVG is a plausible drawn signature."""
    if max_bytes is None:
        max_bytes = get_settings().signature_svg_max_bytes

    if not isinstance(signature_svg, str) or not signature_svg.strip():
        raise InvalidSignatureError("Signature SVG is required")

    if len(signature_svg.encode("utf-8")) > max_bytes:
        raise InvalidSignatureError(f"Signature SVG exceeds {max_bytes} bytes")

    for pattern in _FORBIDDEN:
        if pattern.search(signature_svg):
            raise InvalidSignatureError("Signature SVG contains active content")

    body = signature_svg.strip()
    is_document = body.lower().startswith("<svg") or (
        body.startswith("<?xml") and "<svg" in body.lower()
    )
    if not is_document and not _PATH_DATA.match(body):
        raise InvalidSignatureError("Signature must be an SVG document or SVG path data")


# =============================================================================
# DATA TRANSFER OBJECTS
# =============================================================================


@dataclass
class SignatureCheck:
    """A signature with the outcome of recomputing its hash."""
    signature: ReportSignature
    computed_hash: str

    @property
    def verified(self) -> bool:
        return hashes_match(self.signature.signature_hash, self.computed_hash)


@dataclass
class Completeness:
    """Role coverage of a run by active, verified signatures."""
    required_roles: list[SignatureRole]
    signed_roles: list[SignatureRole]
    missing_roles: list[SignatureRole]

    @property
    def is_complete(self) -> bool:
        return not self.missing_roles


def check_signature(signature: ReportSignature) -> SignatureCheck:
    return SignatureCheck(
        signature=signature,
        computed_hash=compute_signature_hash(
            signature.signature_svg,
            signature.signer_name,
            signature.signer_title,
            signature.signature_role,
        ),
    )


def evaluate_completeness(
    required_roles: Sequence[SignatureRole],
    checks: Sequence[SignatureCheck],
) -> Completeness:
    """Any active signature whose hash verifies satisfies its role."""
    satisfied = {
        check.signature.signature_role
        for check in checks
        if check.verified and check.signature.is_active
    }
    return Completeness(
        required_roles=list(required_roles),
        signed_roles=[role for role in SignatureRole if role in satisfied],
        missing_roles=[role for role in required_roles if role not in satisfied],
    )


# =============================================================================
# SIGNATURE CHAIN
# =============================================================================


class SignatureChain:
    """Creates, revokes and evaluates signatures on report runs."""

    def __init__(self, session: AsyncSession):
        self._session = session
        self._audit = AuditService(session)

    async def sign(
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
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> ReportSignature:
        """
        Record a signature on a draft or final run.

        ip_address and user_agent describe the signing request for the audit
        trail; they are stored beside the signature, outside its hash.

        Several signatures may exist for the same role (resubmission or
        concurrent signers); completeness only needs one that verifies.
        """
        try:
            role = SignatureRole(role)
        except ValueError:
            raise InvalidSignatureError(
                f"Invalid signature_role {role!r}. "
                f"Must be one of: {', '.join(r.value for r in SignatureRole)}"
            )

        signer_name = (signer_name or "").strip()
        signer_title = (signer_title or "").strip()
        if not signer_name or not signer_title:
            raise InvalidSignatureError("Signer name and title are required")
        attestation_text = (attestation_text or "").strip()
        if not attestation_text:
            raise InvalidSignatureError("Attestation text is required")
        if not attestation_accepted:
            raise InvalidSignatureError("Attestation acceptance is required to sign")
        validate_signature_svg(signature_svg)

        run = await self._get_run_or_raise(run_id)
        if run.status == ReportRunStatus.COMPLETE:
            raise AlreadyFinalizedError(
                f"Report run {run_id} is complete and sealed. "
                "Create a new report run to collect new signatures."
            )

        if signer_user_id is not None:
            await self._ensure_member(run.organization_id, signer_user_id)

        signature = ReportSignature(
            organization_id=run.organization_id,
            report_run_id=run.id,
            signature_role=role,
            signer_name=signer_name,
            signer_title=signer_title,
            signature_svg=signature_svg,
            signature_hash=compute_signature_hash(
                signature_svg, signer_name, signer_title, role
            ),
            signer_user_id=signer_user_id,
            attestation_text=attestation_text,
            ip_address=ip_address,
            user_agent=user_agent[:500] if user_agent else None,
            signed_at=utc_now(),
        )
        self._session.add(signature)
        await self._session.flush()

        await self._audit.log_event(
            organization_id=run.organization_id,
            action=AuditAction.SIGN,
            resource_type="report_signature",
            resource_id=signature.id,
            user_id=acting_user_id or signer_user_id,
            job_id=run.job_id,
            details={
                "report_run_id": str(run.id),
                "signature_role": role.value,
                "signer_name": signer_name,
                "signature_hash": signature.signature_hash,
                "ip_address": ip_address,
            },
        )

        logger.info(f"Signature {signature.id} ({role.value}) recorded on run {run.id}")
        return signature

    async def revoke(
        self,
        signature_id: UUID,
        *,
        revoked_by: UUID | None = None,
        reason: str | None = None,
    ) -> ReportSignature:
        """Soft-revoke a signature. Revoking twice changes nothing."""
        signature = await self.get_signature(signature_id)
        if not signature.is_active:
            return signature

        signature.revoked_at = utc_now()
        signature.revoked_by = revoked_by
        signature.revoked_reason = reason

        run = await self._get_run_or_raise(signature.report_run_id)
        await self._audit.log_event(
            organization_id=signature.organization_id,
            action=AuditAction.REVOKE,
            resource_type="report_signature",
            resource_id=signature.id,
            user_id=revoked_by,
            job_id=run.job_id,
            details={
                "report_run_id": str(signature.report_run_id),
                "signature_role": signature.signature_role.value,
                "reason": reason,
            },
        )
        await self._session.flush()

        logger.info(f"Signature {signature.id} revoked on run {signature.report_run_id}")
        return signature

    async def get_signature(self, signature_id: UUID) -> ReportSignature:
        result = await self._session.execute(
            select(ReportSignature).where(ReportSignature.id == signature_id)
        )
        signature = result.scalar_one_or_none()
        if not signature:
            raise SignatureNotFoundError(f"Signature {signature_id} not found")
        return signature

    async def list_signatures(
        self,
        run_id: UUID,
        include_revoked: bool = True,
    ) -> Sequence[ReportSignature]:
        await self._session.flush()
        query = select(ReportSignature).where(ReportSignature.report_run_id == run_id)
        if not include_revoked:
            query = query.where(ReportSignature.revoked_at.is_(None))
        result = await self._session.execute(
            query.order_by(ReportSignature.signed_at, ReportSignature.id)
        )
        return result.scalars().all()

    async def check_signatures(self, run_id: UUID) -> list[SignatureCheck]:
        """Recompute the hash of every signature on a run."""
        return [check_signature(signature) for signature in await self.list_signatures(run_id)]

    async def completeness(self, run: ReportRun) -> Completeness:
        checks = await self.check_signatures(run.id)
        return evaluate_completeness(required_roles_for(run.packet_type), checks)

    # =========================================================================
    # INTERNAL HELPERS
    # =========================================================================

    async def _get_run_or_raise(self, run_id: UUID) -> ReportRun:
        result = await self._session.execute(
            select(ReportRun).where(ReportRun.id == run_id)
        )
        run = result.scalar_one_or_none()
        if not run:
            raise ReportRunNotFoundError(f"Report run {run_id} not found")
        return run

    async def _ensure_member(self, organization_id: UUID, user_id: UUID) -> None:
        result = await self._session.execute(
            select(OrganizationMember.id).where(
                OrganizationMember.organization_id == organization_id,
                OrganizationMember.user_id == user_id,
            )
        )
        if result.scalar_one_or_none() is None:
            raise InvalidSignatureError(
                "Signer must belong to the same organization as the report run"
            )
