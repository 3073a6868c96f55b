"""Schemas for report runs, signatures and verification."""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field

from ..services.report_service import PublicVerification
from ..services.verification import VerificationResult
from .base import LedgerBaseModel


# =============================================================================
# REQUESTS
# =============================================================================


class GenerateReportRunRequest(BaseModel):
    """Request to freeze a job into a new report run."""
    job_id: UUID
    packet_type: str = Field(
        default="insurance",
        description="insurance, audit, incident, client_compliance or executive_brief",
    )


class SignReportRunRequest(BaseModel):
    """Request to sign a report run in a given role."""
    signature_role: str = Field(
        ...,
        description="prepared_by, reviewed_by, approved_by or other",
    )
    signer_name: str = Field(..., min_length=1, max_length=255)
    signer_title: str = Field(..., min_length=1, max_length=255)
    signature_svg: str = Field(..., min_length=1)
    signer_user_id: UUID | None = Field(
        default=None,
        description="Omit for signers without an account",
    )
    attestation_text: str = Field(
        ...,
        min_length=1,
        max_length=2000,
        description="Attestation wording the signer agreed to",
    )
    attestation_accepted: bool = Field(
        ...,
        description="Signer accepted the attestation wording",
    )


class RevokeSignatureRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=1000)


# =============================================================================
# RESPONSES
# =============================================================================


class ReportRunResponse(LedgerBaseModel):
    """A report run."""
    id: UUID
    reference: str
    organization_id: UUID
    job_id: UUID
    packet_type: str
    builder_version: int
    status: str
    data_hash: str
    generated_by: UUID | None = None
    generated_at: datetime
    storage_path: str | None = None
    artifact_hash: str | None = None
    artifact_stored_at: datetime | None = None
    completed_at: datetime | None = None


class ActiveReportRunResponse(LedgerBaseModel):
    run: ReportRunResponse
    created: bool


class ReportRunListResponse(LedgerBaseModel):
    """A page of report runs."""
    items: list[ReportRunResponse]
    total: int
    limit: int
    offset: int


class SignatureResponse(LedgerBaseModel):
    """A signature on a report run."""
    id: UUID
    report_run_id: UUID
    signature_role: str
    signer_name: str
    signer_title: str
    signature_svg: str
    signature_hash: str
    signer_user_id: UUID | None = None
    attestation_text: str | None = None
    signed_at: datetime
    ip_address: str | None = None
    user_agent: str | None = None
    revoked_at: datetime | None = None
    revoked_by: UUID | None = None
    revoked_reason: str | None = None
    is_active: bool


class SignatureListResponse(LedgerBaseModel):
    items: list[SignatureResponse]
    total: int


class SignatureVerificationResponse(LedgerBaseModel):
    signature_id: UUID
    signature_role: str
    signer_name: str
    signer_title: str
    signed_at: datetime
    stored_hash: str
    computed_hash: str
    verified: bool


class RevokedSignatureResponse(LedgerBaseModel):
    signature_id: UUID
    signature_role: str
    signer_name: str
    revoked_at: datetime
    revoked_by: UUID | None = None
    revoked_reason: str | None = None


class ArtifactCheckResponse(LedgerBaseModel):
    status: str
    storage_path: str | None = None
    stored_hash: str | None = None
    computed_hash: str | None = None


class VerificationResponse(LedgerBaseModel):
    """Outcome of re-verifying a report run."""
    report_run_id: UUID
    packet_type: str
    builder_version: int
    status: str
    valid: bool
    content_integrity: str
    hash_match: bool
    stored_hash: str
    computed_hash: str
    signatures: list[SignatureVerificationResponse]
    revoked_signatures: list[RevokedSignatureResponse]
    all_signatures_verified: bool
    required_roles: list[str]
    signed_roles: list[str]
    missing_roles: list[str]
    is_complete: bool
    artifact: ArtifactCheckResponse
    problems: list[str]
    verified_at: datetime

    @classmethod
    def from_result(cls, result: VerificationResult) -> "VerificationResponse":
        return cls(
            report_run_id=result.report_run_id,
            packet_type=result.packet_type,
            builder_version=result.builder_version,
            status=result.status.value,
            valid=result.is_valid,
            content_integrity=result.content_integrity.value,
            hash_match=result.hash_match,
            stored_hash=result.stored_hash,
            computed_hash=result.computed_hash,
            signatures=[
                SignatureVerificationResponse.model_validate(sig)
                for sig in result.signatures
            ],
            revoked_signatures=[
                RevokedSignatureResponse.model_validate(sig)
                for sig in result.revoked_signatures
            ],
            all_signatures_verified=result.all_signatures_verified,
            required_roles=[role.value for role in result.required_roles],
            signed_roles=[role.value for role in result.signed_roles],
            missing_roles=[role.value for role in result.missing_roles],
            is_complete=result.is_complete,
            artifact=ArtifactCheckResponse.model_validate(result.artifact),
            problems=result.problems,
            verified_at=result.verified_at,
        )


class PublicVerificationResponse(LedgerBaseModel):
    """What an outside verifier learns about a published run."""
    reference: str
    report_run_id: UUID
    organization: str | None = None
    packet_type: str
    status: str
    generated_at: datetime
    data_hash: str
    artifact_hash: str | None = None
    valid: bool
    content_integrity: str
    artifact_integrity: str
    is_complete: bool
    signed_roles: list[str]
    missing_roles: list[str]
    verified_at: datetime

    @classmethod
    def from_public(cls, verification: PublicVerification) -> "PublicVerificationResponse":
        run, result = verification.run, verification.result
        return cls(
            reference=run.reference,
            report_run_id=run.id,
            organization=verification.organization_name,
            packet_type=result.packet_type,
            status=result.status.value,
            generated_at=run.generated_at,
            data_hash=run.data_hash,
            artifact_hash=run.artifact_hash,
            valid=result.is_valid,
            content_integrity=result.content_integrity.value,
            artifact_integrity=result.artifact.status.value,
            is_complete=result.is_complete,
            signed_roles=[role.value for role in result.signed_roles],
            missing_roles=[role.value for role in result.missing_roles],
            verified_at=result.verified_at,
        )


class ArtifactUrlResponse(LedgerBaseModel):
    url: str
    expires_in: int


class HistoryEntryResponse(LedgerBaseModel):
    """A ledger event from the audit log."""
    id: UUID
    action: str
    resource_type: str
    resource_id: UUID
    user_id: UUID | None = None
    details: dict[str, Any]
    created_at: datetime


class HistoryResponse(LedgerBaseModel):
    report_run_id: UUID
    events: list[HistoryEntryResponse]
